from .splitter import HttpTrafficBackend, InMemoryTrafficBackend, TrafficBackend, TrafficSplitter

__all__ = ["HttpTrafficBackend", "InMemoryTrafficBackend", "TrafficBackend", "TrafficSplitter"]
