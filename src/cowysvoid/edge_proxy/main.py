"""Uvicorn entrypoint for the cowysvoid edge proxy."""

from __future__ import annotations

import uvicorn

from ..common.settings import EdgeProxySettings
from .app import create_app


def run() -> None:
    settings = EdgeProxySettings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
