"""Control channel from the front-end process to the engine process.

The client owns at most one socket and one RPC channel at a time. It waits for
the engine's ``{"control": "ready", "rpcId": ...}`` message, resolves the root
object and its ``assistant`` property, and forwards a fixed set of root
methods. When the channel drops without ``stop()`` having been called, a
single reconnect is scheduled after ``reconnect_delay`` seconds.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Callable

from loguru import logger

from almondcloud.assistant.proxies import AssistantProxy
from almondcloud.config.schema import BackendConfig
from almondcloud.rpc.channel import RemoteObjectReference, RemoteProxy, RpcChannel, RpcObject
from almondcloud.rpc.framing import JsonDatagramStream
from almondcloud.rpc.protocol import parse_control_ready
from almondcloud.utils.exceptions import (
    AlmondError,
    BackendUnavailableError,
    ProtocolError,
)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    READY = "ready"


StateCallback = Callable[[ConnectionState], None]


def parse_address(address: str) -> tuple[str, int]:
    """Split ``host:port``; IPv6 hosts are written ``[::1]:8001``."""
    value = address.strip()
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ValueError(f"invalid backend address: {address!r}")
        port_text = rest[1:]
    else:
        host, sep, port_text = value.rpartition(":")
        if not sep:
            raise ValueError(f"invalid backend address: {address!r}")
    if not host:
        raise ValueError(f"invalid backend address: {address!r}")
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"invalid port in backend address: {address!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"port out of range in backend address: {address!r}")
    return host, port


async def read_ready(stream: JsonDatagramStream) -> str:
    """Consume messages until the engine's ready frame and return the root object id."""
    while True:
        message = await stream.receive()
        if message is None:
            raise ProtocolError("engine closed the connection before ready", code="BAD_HANDSHAKE")
        root_id = parse_control_ready(message)
        if root_id is not None:
            return root_id
        logger.debug("Ignoring message before ready: {}", message)


async def probe_engine(config: BackendConfig, timeout: float = 5.0) -> str:
    """Connect, wait for the handshake, and disconnect. Returns the root object id."""
    host, port = parse_address(config.address)
    stream = await asyncio.wait_for(
        JsonDatagramStream.connect(host, port, max_frame_bytes=config.max_frame_bytes), timeout
    )
    try:
        return await asyncio.wait_for(read_ready(stream), timeout)
    finally:
        await stream.close()


class BackendClient:
    """Durable logical connection to the engine's root object."""

    def __init__(self, config: BackendConfig | None = None):
        self.config = config or BackendConfig()
        self.host, self.port = parse_address(self.config.address)
        self._state = ConnectionState.DISCONNECTED
        self._channel: RpcChannel | None = None
        self._root: RemoteProxy | None = None
        self._assistant: AssistantProxy | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._expect_close = False
        self._ready = asyncio.Event()
        self._state_callbacks: list[StateCallback] = []

    # -- lifecycle ----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._state == ConnectionState.READY

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def on_state_change(self, callback: StateCallback) -> None:
        self._state_callbacks.append(callback)

    def start(self) -> None:
        """Begin connecting. Requires a running event loop."""
        self._expect_close = False
        self._connect_soon()

    async def stop(self) -> None:
        """Shut the connection down and cancel any pending reconnect. Idempotent."""
        self._expect_close = True
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._connect_task = None
        channel = self._channel
        if channel is not None:
            logger.info("Closing control channel to engine")
            await channel.close()
        self._drop_connection()

    async def wait_ready(self, timeout: float | None = None) -> None:
        """Wait until the handshake completes; raises ``asyncio.TimeoutError``."""
        await asyncio.wait_for(self._ready.wait(), timeout)

    # -- connection ---------------------------------------------------------

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        if state == ConnectionState.READY:
            self._ready.set()
        else:
            self._ready.clear()
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception:
                logger.exception("Control channel state listener failed")

    def _connect_soon(self) -> None:
        if self._channel is not None:
            return
        if self._connect_task is not None and not self._connect_task.done():
            return
        self._connect_task = asyncio.get_running_loop().create_task(self._connect(), name="backend-connect")

    async def _connect(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        logger.info("Connecting to engine control channel at {}:{}", self.host, self.port)
        try:
            stream = await JsonDatagramStream.connect(
                self.host, self.port, max_frame_bytes=self.config.max_frame_bytes
            )
        except OSError as exc:
            logger.warning("Control channel connect failed: {}", exc)
            self._connection_lost()
            return

        self._set_state(ConnectionState.HANDSHAKING)
        try:
            root_id = await asyncio.wait_for(read_ready(stream), self.config.handshake_timeout)
        except (ProtocolError, OSError, asyncio.TimeoutError) as exc:
            reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            logger.warning("Control channel handshake failed: {}", reason)
            await stream.close()
            self._connection_lost()
            return
        except asyncio.CancelledError:
            await stream.close()
            raise

        channel = RpcChannel(
            stream,
            name="control",
            id_prefix="frontend",
            call_timeout=self.config.call_timeout,
        )
        self._channel = channel
        self._root = channel.get_proxy(RemoteObjectReference(obj_id=root_id))
        channel.on_close(lambda error: self._on_channel_close(channel, error))
        channel.start()
        logger.info("Control channel to engine ready")

        try:
            assistant = await self._root.get("assistant")
        except AlmondError as exc:
            logger.warning("Failed to resolve the assistant object: {}", exc)
            assistant = None
        if channel is not self._channel:
            return
        if isinstance(assistant, RemoteProxy):
            self._assistant = AssistantProxy(assistant)
        elif assistant is not None:
            logger.warning("Engine returned a non-object assistant: {!r}", assistant)
        self._set_state(ConnectionState.READY)

    def _on_channel_close(self, channel: RpcChannel, error: BaseException | None) -> None:
        if channel is not self._channel:
            return
        if self._expect_close:
            self._drop_connection()
            return
        if error is not None:
            logger.warning("Control channel to engine severed: {}", error)
        else:
            logger.warning("Control channel to engine severed")
        self._connection_lost()

    def _drop_connection(self) -> None:
        self._channel = None
        self._root = None
        self._assistant = None
        self._set_state(ConnectionState.DISCONNECTED)

    def _connection_lost(self) -> None:
        self._drop_connection()
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._expect_close or self._reconnect_handle is not None:
            return
        delay = self.config.reconnect_delay
        logger.info("Reconnecting in {}s...", delay)
        self._reconnect_handle = asyncio.get_running_loop().call_later(delay, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._expect_close:
            return
        self._connect_soon()

    # -- forwarded surface --------------------------------------------------

    @property
    def channel(self) -> RpcChannel | None:
        return self._channel

    @property
    def assistant(self) -> AssistantProxy:
        if not self._live() or self._assistant is None:
            raise BackendUnavailableError(method="assistant")
        return self._assistant

    def _live(self) -> bool:
        return self._state == ConnectionState.READY and self._channel is not None and not self._channel.closed

    def release(self, obj: RpcObject) -> bool:
        """Revoke a local object published on the live channel."""
        if self._channel is None:
            return False
        return self._channel.release(obj)

    async def _call_root(self, method: str, *args: Any) -> Any:
        if not self._live() or self._root is None:
            raise BackendUnavailableError(method=method)
        return await self._root.call(method, *args)

    async def get_all_apps(self) -> list[dict[str, Any]]:
        return await self._call_root("getAllApps")

    async def get_app(self, app_id: str) -> dict[str, Any] | None:
        return await self._call_root("getApp", app_id)

    async def delete_app(self, app_id: str) -> bool:
        return await self._call_root("deleteApp", app_id)

    async def get_all_devices(self) -> list[dict[str, Any]]:
        return await self._call_root("getAllDevices")

    async def add_device(self, state: dict[str, Any]) -> dict[str, Any]:
        return await self._call_root("addDevice", state)

    async def delete_device(self, device_id: str) -> bool:
        return await self._call_root("deleteDevice", device_id)

    async def start_oauth2(self, kind: str) -> list[Any]:
        return await self._call_root("startOAuth2", kind)

    async def handle_oauth2_callback(self, kind: str, redirect_uri: str, session: dict[str, Any]) -> None:
        await self._call_root("handleOAuth2Callback", kind, redirect_uri, session)
