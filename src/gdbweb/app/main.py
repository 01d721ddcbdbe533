"""FastAPI entry point for the gdbweb browser UI."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles

from gdbcopilot.config import AppConfig, load_config

from .api.routes import router as api_router
from .services.container import Services, build_services, shutdown_services, start_services
from .ws.routes import ws_router

logger = logging.getLogger(__name__)


def _static_dir() -> Path:
    here = Path(__file__).resolve()
    return here.parent.parent / "static"


def create_app(config: Optional[AppConfig] = None, services: Optional[Services] = None, **overrides: Any) -> FastAPI:
    """Build the app. Tests pass ready-made *services* or overrides for build_services."""
    if services is None:
        services = build_services(config or load_config(), **overrides)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        start_services(services)
        try:
            yield
        finally:
            shutdown_services(services)

    app = FastAPI(title="GDB Copilot", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    static_dir = _static_dir()
    if static_dir.exists():
        app.mount("/static", StaticFiles(directory=static_dir, html=False), name="static")

        @app.get("/", response_class=HTMLResponse)
        def serve_root() -> HTMLResponse:
            """Serve the single-page application shell."""
            return HTMLResponse((static_dir / "index.html").read_text(encoding="utf-8"))

    app.include_router(api_router)
    app.include_router(ws_router)
    return app
