"""Typed wrappers over the engine's assistant and conversation objects.

One ``async def`` per remote operation; the wire names live here and nowhere
else.
"""

from __future__ import annotations

from typing import Any

from almondcloud.rpc.channel import RemoteProxy, RpcObject
from almondcloud.utils.exceptions import ProtocolError


class ConversationHandle:
    """A conversation object living in the engine process."""

    def __init__(self, proxy: RemoteProxy):
        self._proxy = proxy

    @property
    def proxy(self) -> RemoteProxy:
        return self._proxy

    @property
    def released(self) -> bool:
        return self._proxy.released

    async def start(self) -> Any:
        return await self._proxy.call("start")

    async def handle_command(self, text: str) -> Any:
        return await self._proxy.call("handleCommand", text)

    async def handle_parsed_command(self, json: Any) -> Any:
        return await self._proxy.call("handleParsedCommand", json)

    async def handle_thingtalk(self, code: str) -> Any:
        return await self._proxy.call("handleThingTalk", code)

    async def notify(self, *data: Any) -> Any:
        return await self._proxy.call("notify", *data)

    async def notify_error(self, *data: Any) -> Any:
        return await self._proxy.call("notifyError", *data)

    async def release(self) -> None:
        await self._proxy.release()

    def __repr__(self) -> str:
        return f"<ConversationHandle {self._proxy.obj_id}>"


def _as_conversation(value: Any, method: str) -> ConversationHandle | None:
    if value is None:
        return None
    if not isinstance(value, RemoteProxy):
        raise ProtocolError(f"{method} returned {type(value).__name__}, expected a remote object", details={"method": method})
    return ConversationHandle(value)


class AssistantProxy:
    """The engine's assistant object, reached as the ``assistant`` property of the root."""

    def __init__(self, proxy: RemoteProxy):
        self._proxy = proxy

    @property
    def proxy(self) -> RemoteProxy:
        return self._proxy

    async def open_conversation(
        self,
        session_id: str,
        user: dict[str, Any],
        delegate: RpcObject,
        options: dict[str, Any] | None = None,
    ) -> ConversationHandle:
        result = await self._proxy.call("openConversation", session_id, user, delegate, options or {})
        handle = _as_conversation(result, "openConversation")
        if handle is None:
            raise ProtocolError("openConversation returned nothing", details={"session_id": session_id})
        return handle

    async def close_conversation(self, session_id: str) -> None:
        await self._proxy.call("closeConversation", session_id)

    async def get_conversation(self, session_id: str | None = None) -> ConversationHandle | None:
        result = await self._proxy.call("getConversation", session_id)
        return _as_conversation(result, "getConversation")

    async def get_or_open_conversation(
        self,
        session_id: str,
        user: dict[str, Any],
        delegate: RpcObject,
        options: dict[str, Any] | None = None,
    ) -> ConversationHandle:
        result = await self._proxy.call("getOrOpenConversation", session_id, user, delegate, options or {})
        handle = _as_conversation(result, "getOrOpenConversation")
        if handle is None:
            raise ProtocolError("getOrOpenConversation returned nothing", details={"session_id": session_id})
        return handle

    async def parse(self, sentence: str, target_json: Any = None) -> Any:
        return await self._proxy.call("parse", sentence, target_json)

    async def create_app(self, data: dict[str, Any]) -> Any:
        return await self._proxy.call("createApp", data)

    async def add_output(self, delegate: RpcObject) -> Any:
        return await self._proxy.call("addOutput", delegate)

    async def remove_output(self, delegate: RpcObject) -> Any:
        return await self._proxy.call("removeOutput", delegate)
