"""REST endpoints for gdbweb."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import JSONResponse

from gdbcopilot.core.cancel import CancelToken
from gdbcopilot.core.state import ChatRequest
from gdbcopilot.errors import (
    CircuitOpenError,
    DebuggerNotRunning,
    DebuggerStartError,
    ErrorKind,
    OperationCancelled,
    ProviderError,
    SettingsError,
)
from gdbcopilot.llm.providers import PROVIDER_MODELS, is_supported, list_providers
from gdbcopilot.session_log import SessionLogger
from gdbcopilot.settings import Settings
from gdbcopilot.utils.tools import gdb_available

from ..services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

UPLOAD_CHUNK = 1024 * 1024


def _provider_http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, CircuitOpenError):
        return HTTPException(status_code=503, detail=f"{exc.provider} is temporarily unavailable (circuit open)")
    if isinstance(exc, ProviderError):
        if exc.kind is ErrorKind.VALIDATION:
            return HTTPException(status_code=400, detail=exc.message)
        return HTTPException(status_code=502, detail=f"LLM request failed ({exc.kind.value})")
    if isinstance(exc, OperationCancelled):
        return HTTPException(status_code=504, detail="LLM request timed out")
    return HTTPException(status_code=500, detail="internal error")


@router.get("/status")
async def api_status() -> JSONResponse:
    return JSONResponse({"status": "ok"})


@router.post("/chat")
async def chat(payload: Dict[str, Any], services: Services = Depends(get_services)) -> JSONResponse:
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="message is required")
    request = ChatRequest.from_payload(payload)
    token = CancelToken(services.config.chat.request_timeout)
    try:
        result = await asyncio.to_thread(services.orchestrator.handle, request, token)
    except asyncio.CancelledError:
        token.cancel("client disconnected")
        raise
    except (ProviderError, OperationCancelled) as e:
        logger.warning("chat failed: %s", e)
        raise _provider_http_error(e)
    return JSONResponse(
        {
            "response": result.text,
            "executedCommands": result.executed_commands,
            "commandOutput": result.combined_output,
            "fromCache": result.from_cache,
        }
    )


# Settings
@router.get("/settings")
async def get_settings(services: Services = Depends(get_services)) -> JSONResponse:
    return JSONResponse(services.settings.get().masked())


@router.post("/settings")
async def save_settings(payload: Dict[str, Any], services: Services = Depends(get_services)) -> JSONResponse:
    current = services.settings.get()
    provider = payload.get("provider") or current.provider
    api_key = payload.get("apiKey")
    # a masked key echoed back by the UI means "unchanged"
    if api_key is None or (isinstance(api_key, str) and "*" in api_key):
        api_key = current.api_key
    settings = Settings(provider=str(provider), model=str(payload.get("model") or ""), api_key=str(api_key))
    try:
        saved = await asyncio.to_thread(services.settings.update, settings)
    except SettingsError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return JSONResponse({"success": True, "settings": saved.masked()})


@router.get("/providers")
async def providers() -> JSONResponse:
    return JSONResponse({"providers": [{"id": p, "models": PROVIDER_MODELS.get(p, [])} for p in list_providers()]})


@router.post("/test-connection")
async def test_connection(payload: Dict[str, Any], services: Services = Depends(get_services)) -> JSONResponse:
    provider = payload.get("provider")
    if not provider or not is_supported(provider):
        raise HTTPException(status_code=400, detail="a supported provider is required")
    api_key = payload.get("apiKey") or ""
    if not api_key or "*" in api_key:
        api_key = services.settings.get().api_key
    model = payload.get("model") or None
    try:
        await asyncio.to_thread(services.client.test_connection, provider, api_key, model)
    except ProviderError as e:
        return JSONResponse({"success": False, "message": e.message, "errorType": e.kind.value})
    return JSONResponse({"success": True, "message": "Connection successful"})


# Debugger
def _resolve_executable(services: Services, filepath: str) -> Path:
    p = Path(filepath).expanduser()
    if not p.is_absolute() and not p.exists():
        p = services.upload_dir / p
    return p.resolve()


@router.post("/debugger/start")
async def start_debugger(payload: Dict[str, Any], services: Services = Depends(get_services)) -> JSONResponse:
    filepath = payload.get("filepath")
    if not filepath:
        raise HTTPException(status_code=400, detail="filepath is required")
    target = _resolve_executable(services, str(filepath))
    try:
        await asyncio.to_thread(services.engine.start, str(target))
    except DebuggerStartError as e:
        services.session_logs.error(f"failed to start gdb: {e}", filepath=str(target))
        raise HTTPException(status_code=400, detail=str(e))
    services.session_logs.event("gdb.start", f"gdb started on {target}", filepath=str(target))
    return JSONResponse({"success": True, "filepath": str(target)})


@router.post("/debugger/stop")
async def stop_debugger(services: Services = Depends(get_services)) -> JSONResponse:
    await asyncio.to_thread(services.engine.stop)
    services.session_logs.event("gdb.stop", "gdb stopped")
    return JSONResponse({"success": True})


@router.post("/debugger/command")
async def debugger_command(payload: Dict[str, Any], services: Services = Depends(get_services)) -> JSONResponse:
    command = payload.get("command")
    if command is None:
        raise HTTPException(status_code=400, detail="command is required")
    try:
        services.engine.send_line(str(command))
    except DebuggerNotRunning:
        raise HTTPException(status_code=409, detail="GDB is not running")
    services.session_logs.event("gdb.command", str(command), source="terminal")
    return JSONResponse({"status": "sent"})


@router.get("/debugger/status")
async def debugger_status(services: Services = Depends(get_services)) -> JSONResponse:
    return JSONResponse(
        {
            "running": services.engine.is_running(),
            "executable": getattr(services.engine, "executable", None),
        }
    )


# Upload
@router.post("/upload")
async def upload(file: UploadFile = File(...), services: Services = Depends(get_services)) -> JSONResponse:
    filename = os.path.basename(file.filename or "")
    if not filename or filename in (".", ".."):
        raise HTTPException(status_code=400, detail="a file name is required")
    limit = services.config.uploads.max_file_size
    services.upload_dir.mkdir(parents=True, exist_ok=True)
    target = services.upload_dir / filename
    size = 0
    try:
        with target.open("wb") as out:
            while True:
                chunk = await file.read(UPLOAD_CHUNK)
                if not chunk:
                    break
                size += len(chunk)
                if size > limit:
                    raise HTTPException(status_code=413, detail=f"file exceeds {limit} bytes")
                out.write(chunk)
        os.chmod(target, 0o755)
    except HTTPException:
        target.unlink(missing_ok=True)
        raise
    except OSError as e:
        logger.error("upload failed: %s", e)
        raise HTTPException(status_code=500, detail=f"failed to save file: {e}")
    finally:
        await file.close()

    session_log = SessionLogger.create(services.log_dir, executable=str(target))
    services.session_logs.set(session_log)
    session_log.event("upload", f"uploaded {filename}", filepath=str(target), size=size)
    logger.info("uploaded %s (%d bytes), session %s", target, size, session_log.session_id)
    return JSONResponse(
        {"success": True, "filename": filename, "filepath": str(target), "sessionId": session_log.session_id}
    )


# Observability
@router.get("/metrics")
async def metrics(services: Services = Depends(get_services)) -> JSONResponse:
    snapshot = services.metrics.snapshot()
    return JSONResponse(
        {
            "timestamp": time.time(),
            "provider_metrics": snapshot["providers"],
            "global": snapshot["global"],
            "cache_stats": services.cache.stats(),
            "circuit_breakers": services.resilience.stats(),
            "context": services.context.stats(),
        }
    )


@router.get("/health")
async def health(services: Services = Depends(get_services)) -> JSONResponse:
    breakers = services.resilience.stats()
    providers = {}
    for name in list_providers():
        state = breakers.get(name, {}).get("state", "closed")
        providers[name] = {"circuit": state, "healthy": state != "open"}
    status = "healthy" if all(p["healthy"] for p in providers.values()) else "degraded"
    return JSONResponse(
        {
            "status": status,
            "debugger_running": services.engine.is_running(),
            "providers": providers,
            "components": {
                "gdb": "found" if gdb_available(services.config.gdb.path) else "missing",
                "cache": "enabled" if services.cache.enabled else "disabled",
                "context_manager": "enabled" if services.context.enabled else "disabled",
                "session_log": "active" if services.session_logs.get() is not None else "none",
            },
        }
    )
