# backend/api/app.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.api.routes.dashboard import router as dashboard_router
from backend.api.routes.health import router as health_router
from backend.api.routes.session import router as session_router
from backend.session.controller import SessionController

log = logging.getLogger("hearth")


def _lifespan_for(session: Optional[SessionController]):
    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        app.state.session = session or SessionController()
        try:
            await app.state.session.restore_messages()
        except Exception as e:
            log.exception("Restoring chat history failed: %s", e)

        try:
            yield
        except (asyncio.CancelledError, KeyboardInterrupt):
            log.debug("Lifespan cancellation received during shutdown; suppressing exception.")
        finally:
            log.info("🛑 Shutting down session…")
            try:
                await app.state.session.aclose()
            except Exception as e:
                log.warning("Error closing session during shutdown: %s", e)
            log.info("✅ Session closed.")

    return _lifespan


def create_app(session: Optional[SessionController] = None) -> FastAPI:
    app = FastAPI(title="Hearth Local", lifespan=_lifespan_for(session))
    app.include_router(health_router)
    app.include_router(session_router)
    app.include_router(dashboard_router)
    return app
