"""ASGI wiring for uvicorn.

Usage:
    python main.py
    mail-spool serve --config config.ini
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Mapping

import uvicorn
from fastapi import FastAPI

from .api import create_app
from .logger import get_logger
from .service import MailSpoolService

logger = get_logger("MailSpoolServer")


def build_app(settings: Mapping[str, Any], svc: MailSpoolService | None = None) -> FastAPI:
    """Create the service described by ``settings`` and an app whose lifespan runs it."""
    svc = svc or MailSpoolService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the spool loops."""
        await svc.start()
        yield
        await svc.stop()

    return create_app(svc, api_token=settings.get("api_token"), lifespan=lifespan)


def run(settings: Mapping[str, Any]) -> None:
    app = build_app(settings)
    host = str(settings.get("http_host") or "0.0.0.0")
    port = int(settings.get("http_port") or 8885)
    logger.info("Listening on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None)
