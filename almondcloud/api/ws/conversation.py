"""Helpers for the /api/conversation WebSocket flow."""

from __future__ import annotations

import json
import secrets
from typing import Any, Callable

from fastapi import WebSocket

from almondcloud.assistant.delegates import AssistantDelegate
from almondcloud.assistant.proxies import ConversationHandle
from almondcloud.assistant.sessions import SessionManager
from almondcloud.auth.users import AlmondUser
from almondcloud.backend.client import BackendClient
from almondcloud.utils.exceptions import AlmondError, InvalidCommandError

WELCOME_OPTIONS = {"showWelcome": True}


def make_session_id(cloud_id: str) -> str:
    return f"enterprise:{cloud_id}:{secrets.token_hex(4)}"


def _error_message(exc: Exception) -> str:
    return exc.message if isinstance(exc, AlmondError) else str(exc)


async def dispatch_conversation_frame(*, data: Any, conversation: ConversationHandle) -> Any:
    """Route one browser frame to the matching conversation method."""
    kind = data.get("type") if isinstance(data, dict) else None
    if kind == "command":
        return await conversation.handle_command(data.get("text"))
    if kind == "parsed":
        return await conversation.handle_parsed_command(data.get("json"))
    if kind == "tt":
        return await conversation.handle_thingtalk(data.get("code"))
    raise InvalidCommandError(kind)


async def process_conversation_frame(
    *,
    raw: str,
    conversation: ConversationHandle,
    websocket: Any,
    logger_error: Callable[..., None],
) -> None:
    """Process one text frame; failures are reported back as an error frame."""
    try:
        await dispatch_conversation_frame(data=json.loads(raw), conversation=conversation)
    except (AlmondError, ValueError, TypeError) as exc:
        logger_error("Conversation command failed: {}", exc)
        await websocket.send_json({"type": "error", "error": _error_message(exc)})


def _frame_text(message: dict[str, Any]) -> str | None:
    text = message.get("text")
    if text is not None:
        return text
    data = message.get("bytes")
    if data is not None:
        return data.decode("utf-8", "replace")
    return None


async def run_conversation_ws(
    *,
    websocket: WebSocket,
    user: AlmondUser,
    backend: BackendClient,
    sessions: SessionManager,
    logger_error: Callable[..., None],
    session_id: str | None = None,
) -> None:
    """Open a conversation for this socket and pump browser commands into it.

    The socket must already be accepted. The session is closed and the
    delegate released when the socket goes away.
    """
    session_id = session_id or make_session_id(user.cloud_id)
    delegate = AssistantDelegate(websocket)
    opened = False
    try:
        session = await sessions.open(session_id, user, delegate, dict(WELCOME_OPTIONS))
        opened = True
        await session.handle.start()
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            raw = _frame_text(message)
            if raw is None:
                continue
            await process_conversation_frame(
                raw=raw,
                conversation=session.handle,
                websocket=websocket,
                logger_error=logger_error,
            )
    except AlmondError as exc:
        logger_error("Error in conversation websocket: {}", exc)
        await close_quietly(websocket, code=1011)
    finally:
        if opened:
            try:
                await sessions.close(session_id)
            except AlmondError as exc:
                logger_error("Failed to close conversation {}: {}", session_id, exc)
        backend.release(delegate)


async def close_quietly(websocket: Any, *, code: int = 1000) -> None:
    """Close a socket that may already be gone."""
    try:
        await websocket.close(code=code)
    except RuntimeError:
        pass
