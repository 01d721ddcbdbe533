"""WebSocket terminal: debugger output out, command lines in."""
from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from gdbcopilot.errors import DebuggerNotRunning

from ..services.container import Services, get_ws_services

logger = logging.getLogger(__name__)

ws_router = APIRouter()

NOT_RUNNING_MESSAGE = "Error: GDB is not running. Upload and start an executable first."
POLL_INTERVAL = 0.25


async def _pump_output(websocket: WebSocket, services: Services) -> None:
    sub = services.engine.subscribe()
    try:
        while True:
            line = await asyncio.to_thread(sub.get, POLL_INTERVAL)
            if line is not None:
                await websocket.send_text(line)
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("terminal output pump stopped: %s", e)
    finally:
        sub.close()


@ws_router.websocket("/ws")
async def terminal(websocket: WebSocket, services: Services = Depends(get_ws_services)) -> None:
    await websocket.accept()
    pump = asyncio.create_task(_pump_output(websocket, services))
    try:
        while True:
            line = await websocket.receive_text()
            try:
                services.engine.send_line(line)
            except DebuggerNotRunning:
                await websocket.send_text(NOT_RUNNING_MESSAGE)
                continue
            services.session_logs.event("gdb.command", line, source="websocket")
    except WebSocketDisconnect:
        logger.debug("terminal websocket closed")
    finally:
        pump.cancel()
