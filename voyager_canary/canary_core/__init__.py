"""Core package for the Voyager progressive-delivery controller."""

from .config import ControllerConfig, load_config

__all__ = ["ControllerConfig", "load_config"]
