"""Composition root: builds the process-wide services once.

Handlers reach them through ``request.app.state.services``; nothing here is
a module-level global.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from fastapi import Request, WebSocket

from gdbcopilot.backends.gdb_subprocess import GdbEngine
from gdbcopilot.config import AppConfig
from gdbcopilot.core.orchestrator import ChatOrchestrator
from gdbcopilot.llm.cache import ResponseCache
from gdbcopilot.llm.context import ContextManager
from gdbcopilot.llm.metrics import MetricsCollector
from gdbcopilot.llm.providers import ProviderClient
from gdbcopilot.llm.resilience import ResilientExecutor
from gdbcopilot.session_log import SessionLogHolder
from gdbcopilot.settings import SettingsStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    settings: SettingsStore
    engine: Any
    client: ProviderClient
    metrics: MetricsCollector
    resilience: ResilientExecutor
    cache: ResponseCache
    context: ContextManager
    session_logs: SessionLogHolder
    orchestrator: ChatOrchestrator

    @property
    def upload_dir(self) -> Path:
        return Path(self.config.uploads.directory)

    @property
    def log_dir(self) -> Path:
        return Path(self.config.logs.directory)


def build_services(
    config: AppConfig,
    engine: Any = None,
    session_factory: Optional[Callable[[], Any]] = None,
    settings: Optional[SettingsStore] = None,
) -> Services:
    metrics = MetricsCollector()
    if engine is None:
        engine = GdbEngine(
            gdb_path=config.gdb.path,
            capture_timeout=config.gdb.capture_timeout,
            stop_grace=config.gdb.stop_grace,
            subscriber_buffer=config.gdb.subscriber_buffer,
            command_timeout=config.gdb.command_timeout,
        )
    if settings is None:
        settings = SettingsStore(
            Path(config.settings_file).expanduser() if config.settings_file else None,
            fallback_api_key=config.api_key,
        )
    settings.load()
    if session_factory is not None:
        client = ProviderClient(config.providers, session_factory=session_factory, metrics=metrics)
    else:
        client = ProviderClient(config.providers, metrics=metrics)
    resilience = ResilientExecutor(config.chat.retry, config.chat.circuit_breaker, metrics=metrics)
    cache = ResponseCache(config.chat.cache)
    context = ContextManager(config.chat.context)
    session_logs = SessionLogHolder()
    orchestrator = ChatOrchestrator(
        settings,
        client,
        resilience,
        engine,
        cache=cache,
        context_manager=context,
        metrics=metrics,
        session_logs=session_logs,
        capture_timeout=config.gdb.capture_timeout,
        request_timeout=config.chat.request_timeout,
        reformat_enabled=config.chat.reformat_enabled,
    )
    return Services(
        config=config,
        settings=settings,
        engine=engine,
        client=client,
        metrics=metrics,
        resilience=resilience,
        cache=cache,
        context=context,
        session_logs=session_logs,
        orchestrator=orchestrator,
    )


def start_services(services: Services) -> None:
    if services.cache.enabled:
        services.cache.start_sweeper()


def shutdown_services(services: Services) -> None:
    """Stop the debugger and release the session log."""
    try:
        services.engine.stop()
    finally:
        services.cache.stop_sweeper()
        services.session_logs.close()
    logger.info("services shut down")


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_ws_services(websocket: WebSocket) -> Services:
    return websocket.app.state.services
