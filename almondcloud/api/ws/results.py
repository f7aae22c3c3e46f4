"""Helpers for the /api/results WebSocket flow."""

from __future__ import annotations

from typing import Callable

from fastapi import WebSocket

from almondcloud.api.ws.conversation import close_quietly
from almondcloud.assistant.delegates import ResultsDelegate
from almondcloud.backend.client import BackendClient
from almondcloud.utils.exceptions import AlmondError


async def run_results_ws(
    *,
    websocket: WebSocket,
    backend: BackendClient,
    logger_error: Callable[..., None],
) -> None:
    """Register a results output for this socket until the browser disconnects."""
    delegate = ResultsDelegate(websocket)
    registered = False
    try:
        await backend.assistant.add_output(delegate)
        registered = True
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
    except AlmondError as exc:
        logger_error("Error in results websocket: {}", exc)
        await close_quietly(websocket, code=1011)
    finally:
        if registered:
            try:
                await backend.assistant.remove_output(delegate)
            except AlmondError:
                # engine died; nothing left to unregister
                pass
        backend.release(delegate)
