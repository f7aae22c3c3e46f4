"""Remote-callable adapters that push engine output to a browser WebSocket."""

from __future__ import annotations

from typing import Any

from fastapi import WebSocket, WebSocketDisconnect
from loguru import logger
from starlette.websockets import WebSocketState

from almondcloud.rpc.channel import RpcObject


def _socket_gone(websocket: Any) -> bool:
    return (
        getattr(websocket, "application_state", None) == WebSocketState.DISCONNECTED
        or getattr(websocket, "client_state", None) == WebSocketState.DISCONNECTED
    )


class _WebSocketDelegate(RpcObject):
    def __init__(self, websocket: WebSocket):
        self._ws = websocket

    @property
    def websocket(self) -> WebSocket:
        return self._ws

    async def _push(self, payload: Any) -> None:
        """Write one frame; a socket that is already closed drops it silently."""
        if _socket_gone(self._ws):
            logger.debug("Dropping push to closed websocket")
            return
        try:
            if isinstance(payload, (str, bytes)):
                text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
                await self._ws.send_text(text)
            else:
                await self._ws.send_json(payload)
        except WebSocketDisconnect:
            logger.debug("Dropping push to disconnected websocket")
        except RuntimeError as exc:
            # Starlette raises RuntimeError for sends after a close frame.
            if not _socket_gone(self._ws) and "close" not in str(exc).lower():
                raise
            logger.debug("Dropping push to closed websocket: {}", exc)


class ResultsDelegate(_WebSocketDelegate):
    """Forwards opaque result payloads verbatim."""

    rpc_methods = {"send": "send"}

    async def send(self, payload: Any) -> None:
        await self._push(payload)


class AssistantDelegate(_WebSocketDelegate):
    """Serializes conversation output into the browser's tagged message shapes."""

    rpc_methods = {
        "send": "send",
        "sendPicture": "send_picture",
        "sendRDL": "send_rdl",
        "sendChoice": "send_choice",
        "sendButton": "send_button",
        "sendLink": "send_link",
        "sendAskSpecial": "send_ask_special",
    }

    async def send(self, text: str, icon: str | None = None) -> None:
        await self._push({"type": "text", "text": text, "icon": icon})

    async def send_picture(self, url: str, icon: str | None = None) -> None:
        await self._push({"type": "picture", "url": url, "icon": icon})

    async def send_rdl(self, rdl: dict[str, Any], icon: str | None = None) -> None:
        await self._push({"type": "rdl", "rdl": rdl, "icon": icon})

    async def send_choice(self, idx: int, what: str, title: str, text: str | None = None) -> None:
        # "what" is accepted for the engine's calling convention but not shown to the browser
        await self._push({"type": "choice", "idx": idx, "title": title, "text": text})

    async def send_button(self, title: str, json: Any) -> None:
        await self._push({"type": "button", "title": title, "json": json})

    async def send_link(self, title: str, url: str) -> None:
        await self._push({"type": "link", "title": title, "url": url})

    async def send_ask_special(self, what: str | None) -> None:
        await self._push({"type": "askSpecial", "ask": what})
