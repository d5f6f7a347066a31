"""ASGI entrypoint for running the service."""
from __future__ import annotations

import logging

import uvicorn

from .config import get_settings


def run() -> None:
    """Convenience wrapper used by ``python -m supply_service.main``."""

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s:%(name)s:%(message)s")
    uvicorn.run(
        "supply_service.api:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
    )


if __name__ == "__main__":
    run()
