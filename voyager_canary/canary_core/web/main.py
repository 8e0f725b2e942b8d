from __future__ import annotations

import os

import uvicorn


if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run("canary_core.web.app:create_app", factory=True, host="0.0.0.0", port=port, log_level="info")
