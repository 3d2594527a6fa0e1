"""ASGI entry point: ``uvicorn main:app``.

Reads the topology from ``SLC_CONFIG_PATH`` and drives the local Docker daemon.
"""
from __future__ import annotations

import os

from slc.api import create_app

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("SLC_HOST", "0.0.0.0"), port=int(os.getenv("SLC_PORT", "8000")))
