# server.py
from __future__ import annotations

import sys

import uvicorn

import config as cfg
from backend.util.logging_setup import init_logging
from backend.api.app import create_app


def main() -> int:
    s = cfg.settings
    init_logging(s.log_level)

    app = create_app()
    config = uvicorn.Config(
        app=app,
        host=s.server_host,
        port=int(s.server_port),
        log_level=s.log_level,
        access_log=s.uvicorn_access_log,
        timeout_graceful_shutdown=3,  # generation is cancelled on shutdown anyway
    )
    server = uvicorn.Server(config)

    try:
        server.run()
        return 0
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
