"""Symmetric remote-object RPC channel over a JSON datagram stream.

Either side publishes local objects and calls methods on objects the peer
published. Calls are correlated by a numeric id, so replies may arrive in any
order; each reply resolves exactly the pending call that carries its id.

Lifetime is explicit: the owner of a ``RemoteProxy`` calls ``release()`` when
done, and the owner of a published object calls ``RpcChannel.release(obj)``.
Closing the channel revokes everything at once and rejects every pending call
with ``ChannelClosedError``.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

from loguru import logger

from almondcloud.rpc.framing import JsonDatagramStream
from almondcloud.rpc.protocol import (
    LOCAL_MARKER,
    OBJECT_MARKER,
    RpcCall,
    RpcGet,
    RpcRelease,
    RpcReply,
    decode_frame,
    encode_call,
    encode_get,
    encode_release,
    encode_reply,
    error_from_exception,
    to_remote_error,
)
from almondcloud.utils.exceptions import (
    AlmondError,
    ChannelClosedError,
    MethodNotFoundError,
    ObjectNotFoundError,
    ProtocolError,
    RpcTimeoutError,
)

CloseCallback = Callable[[BaseException | None], None]


class RpcObject:
    """Base class for objects that can be published to the peer.

    ``rpc_methods`` maps wire names to attribute names; only those are
    callable remotely. ``rpc_properties`` does the same for property reads.
    """

    rpc_methods: ClassVar[dict[str, str]] = {}
    rpc_properties: ClassVar[dict[str, str]] = {}


@dataclass(frozen=True, slots=True)
class RemoteObjectReference:
    """Capability to call methods on an object living on one side of a channel."""

    obj_id: str
    methods: tuple[str, ...] = ()

    def to_wire(self) -> dict[str, Any]:
        return {OBJECT_MARKER: self.obj_id, "methods": list(self.methods)}

    @classmethod
    def from_wire(cls, value: Any) -> "RemoteObjectReference | None":
        if not isinstance(value, dict) or OBJECT_MARKER not in value:
            return None
        obj_id = value[OBJECT_MARKER]
        if not isinstance(obj_id, str):
            raise ProtocolError("object reference with non-string id", code="MALFORMED_FRAME")
        methods = value.get("methods")
        return cls(obj_id=obj_id, methods=tuple(str(m) for m in methods) if isinstance(methods, list) else ())


@dataclass(slots=True)
class PendingCall:
    """One in-flight remote invocation."""

    call_id: int
    method: str
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)


class RemoteProxy:
    """Local handle for an object published by the peer."""

    def __init__(self, channel: "RpcChannel", reference: RemoteObjectReference):
        self._channel = channel
        self._reference = reference
        self._released = False

    @property
    def reference(self) -> RemoteObjectReference:
        return self._reference

    @property
    def obj_id(self) -> str:
        return self._reference.obj_id

    @property
    def channel(self) -> "RpcChannel":
        return self._channel

    @property
    def released(self) -> bool:
        return self._released

    def _check_usable(self, method: str) -> None:
        if self._released:
            raise ObjectNotFoundError(self.obj_id)
        methods = self._reference.methods
        if methods and method not in methods:
            raise MethodNotFoundError(self.obj_id, method)

    async def call(self, method: str, *args: Any, timeout: float | None = None) -> Any:
        """Invoke ``method`` on the remote object and wait for its reply."""
        self._check_usable(method)
        return await self._channel.call(self.obj_id, method, args, timeout=timeout)

    async def get(self, name: str, *, timeout: float | None = None) -> Any:
        """Read a property of the remote object."""
        if self._released:
            raise ObjectNotFoundError(self.obj_id)
        return await self._channel.get_property(self.obj_id, name, timeout=timeout)

    async def release(self) -> None:
        """Drop this reference; the peer revokes the object."""
        if self._released:
            return
        self._released = True
        await self._channel.release_remote(self)

    async def __aenter__(self) -> "RemoteProxy":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()

    def __repr__(self) -> str:
        state = " released" if self._released else ""
        return f"<RemoteProxy {self.obj_id} on {self._channel.name}{state}>"


class RpcChannel:
    """Bidirectional call multiplexer over one ``JsonDatagramStream``."""

    def __init__(
        self,
        stream: JsonDatagramStream,
        *,
        name: str = "rpc",
        id_prefix: str = "l",
        call_timeout: float | None = None,
    ):
        self.name = name
        self._stream = stream
        self._id_prefix = id_prefix
        self._call_timeout = call_timeout
        self._call_ids = itertools.count(1)
        self._object_ids = itertools.count(1)
        self._pending: dict[int, PendingCall] = {}
        self._objects: dict[str, RpcObject] = {}
        self._published: dict[int, RemoteObjectReference] = {}
        self._proxies: dict[str, RemoteProxy] = {}
        self._handler_tasks: set[asyncio.Task[None]] = set()
        self._close_callbacks: list[CloseCallback] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._close_error: BaseException | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def published_count(self) -> int:
        return len(self._objects)

    def start(self) -> None:
        """Start dispatching incoming frames. Requires a running loop."""
        if self._reader_task is not None or self._closed:
            return
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(), name=f"{self.name}-reader")

    def on_close(self, callback: CloseCallback) -> None:
        """Register ``callback(error)``; fired once when the channel closes."""
        if self._closed:
            callback(self._close_error)
            return
        self._close_callbacks.append(callback)

    # -- publishing ---------------------------------------------------------

    def publish(self, obj: RpcObject) -> RemoteObjectReference:
        """Expose ``obj`` to the peer. Publishing twice returns the same reference."""
        if self._closed:
            raise ChannelClosedError()
        if not isinstance(obj, RpcObject):
            raise TypeError(f"{type(obj).__name__} is not an RpcObject")
        existing = self._published.get(id(obj))
        if existing is not None:
            return existing
        reference = RemoteObjectReference(
            obj_id=f"{self._id_prefix}:{next(self._object_ids)}",
            methods=tuple(obj.rpc_methods),
        )
        self._objects[reference.obj_id] = obj
        self._published[id(obj)] = reference
        logger.debug("[{}] published {} as {}", self.name, type(obj).__name__, reference.obj_id)
        return reference

    def release(self, target: RpcObject | RemoteObjectReference | str) -> bool:
        """Revoke a published local object. Returns False when it was not published."""
        if isinstance(target, RpcObject):
            reference = self._published.get(id(target))
            if reference is None:
                return False
            obj_id = reference.obj_id
        elif isinstance(target, RemoteObjectReference):
            obj_id = target.obj_id
        else:
            obj_id = target
        obj = self._objects.pop(obj_id, None)
        if obj is None:
            return False
        self._published.pop(id(obj), None)
        logger.debug("[{}] released local object {}", self.name, obj_id)
        return True

    def is_published(self, obj: RpcObject) -> bool:
        return id(obj) in self._published

    def get_proxy(self, reference: RemoteObjectReference | str) -> RemoteProxy:
        """Return the local proxy for an object the peer published."""
        if isinstance(reference, str):
            reference = RemoteObjectReference(obj_id=reference)
        proxy = self._proxies.get(reference.obj_id)
        if proxy is None or proxy.released:
            proxy = RemoteProxy(self, reference)
            self._proxies[reference.obj_id] = proxy
        return proxy

    async def release_remote(self, proxy: RemoteProxy) -> None:
        """Tell the peer we no longer hold ``proxy``."""
        if self._proxies.get(proxy.obj_id) is proxy:
            del self._proxies[proxy.obj_id]
        if self._closed:
            return
        try:
            await self._send(encode_release(RpcRelease(obj=proxy.obj_id)))
        except ChannelClosedError:
            logger.debug("[{}] channel closed before release of {}", self.name, proxy.obj_id)

    # -- outgoing calls -----------------------------------------------------

    async def call(
        self,
        obj_id: str,
        method: str,
        params: tuple[Any, ...] | list[Any] = (),
        *,
        timeout: float | None = None,
    ) -> Any:
        call_id = self._register_pending(method)
        frame = encode_call(RpcCall(id=call_id, obj=obj_id, method=method, params=self._marshal(list(params))))
        return await self._send_and_wait(call_id, method, frame, timeout)

    async def get_property(self, obj_id: str, name: str, *, timeout: float | None = None) -> Any:
        call_id = self._register_pending(f"get {name}")
        frame = encode_get(RpcGet(id=call_id, obj=obj_id, name=name))
        return await self._send_and_wait(call_id, f"get {name}", frame, timeout)

    def _register_pending(self, method: str) -> int:
        if self._closed:
            raise ChannelClosedError()
        call_id = next(self._call_ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[call_id] = PendingCall(call_id=call_id, method=method, future=future)
        return call_id

    async def _send_and_wait(self, call_id: int, method: str, frame: dict[str, Any], timeout: float | None) -> Any:
        pending = self._pending[call_id]
        try:
            await self._send(frame)
            effective = timeout if timeout is not None else self._call_timeout
            if effective is None:
                return await pending.future
            try:
                return await asyncio.wait_for(pending.future, effective)
            except asyncio.TimeoutError as exc:
                raise RpcTimeoutError(method, effective) from exc
        finally:
            self._pending.pop(call_id, None)
            if pending.future.done() and not pending.future.cancelled():
                pending.future.exception()

    async def _send(self, frame: dict[str, Any]) -> None:
        if self._closed:
            raise ChannelClosedError()
        try:
            await self._stream.send(frame)
        except (OSError, ChannelClosedError) as exc:
            logger.debug("[{}] send failed: {}", self.name, exc)
            await self.close(exc)
            raise ChannelClosedError() from exc

    # -- marshalling --------------------------------------------------------

    def _marshal(self, value: Any) -> Any:
        if isinstance(value, RpcObject):
            return self.publish(value).to_wire()
        if isinstance(value, RemoteProxy):
            if value.channel is not self:
                raise TypeError("cannot pass a proxy across channels")
            return {LOCAL_MARKER: value.obj_id}
        if isinstance(value, dict):
            return {str(k): self._marshal(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._marshal(v) for v in value]
        return value

    def _unmarshal(self, value: Any) -> Any:
        if isinstance(value, dict):
            reference = RemoteObjectReference.from_wire(value)
            if reference is not None:
                return self.get_proxy(reference)
            if LOCAL_MARKER in value:
                obj_id = str(value[LOCAL_MARKER])
                obj = self._objects.get(obj_id)
                if obj is None:
                    raise ObjectNotFoundError(obj_id)
                return obj
            return {k: self._unmarshal(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._unmarshal(v) for v in value]
        return value

    # -- incoming frames ----------------------------------------------------

    async def _read_loop(self) -> None:
        error: BaseException | None = None
        try:
            async for payload in self._stream:
                frame = decode_frame(payload)
                if isinstance(frame, RpcReply):
                    self._handle_reply(frame)
                elif isinstance(frame, RpcRelease):
                    self.release(frame.obj)
                else:
                    task = asyncio.get_running_loop().create_task(self._handle_request(frame))
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._handler_tasks.discard)
        except asyncio.CancelledError:
            return
        except (ProtocolError, OSError) as exc:
            logger.warning("[{}] closing after stream error: {}", self.name, exc)
            error = exc
        await self.close(error)

    def _handle_reply(self, frame: RpcReply) -> None:
        pending = self._pending.get(frame.id)
        if pending is None or pending.future.done():
            logger.debug("[{}] reply for unknown call id {}", self.name, frame.id)
            return
        if frame.ok:
            try:
                pending.future.set_result(self._unmarshal(frame.result))
            except AlmondError as exc:
                pending.future.set_exception(exc)
        else:
            assert frame.error is not None
            pending.future.set_exception(to_remote_error(frame.error))

    async def _handle_request(self, frame: RpcCall | RpcGet) -> None:
        try:
            result = await self._invoke_local(frame)
            reply = RpcReply(id=frame.id, ok=True, result=self._marshal(result))
        except Exception as exc:
            if not isinstance(exc, AlmondError):
                logger.warning("[{}] local handler for {} failed: {}", self.name, _describe(frame), exc)
            reply = RpcReply(id=frame.id, ok=False, error=error_from_exception(exc))
        if self._closed:
            return
        try:
            await self._send(encode_reply(reply))
        except ChannelClosedError:
            logger.debug("[{}] dropped reply for call id {}", self.name, frame.id)

    async def _invoke_local(self, frame: RpcCall | RpcGet) -> Any:
        obj = self._objects.get(frame.obj)
        if obj is None:
            raise ObjectNotFoundError(frame.obj)
        if isinstance(frame, RpcGet):
            attr = obj.rpc_properties.get(frame.name)
            if attr is None:
                raise MethodNotFoundError(frame.obj, f"get {frame.name}")
            result = getattr(obj, attr)
        else:
            attr = obj.rpc_methods.get(frame.method)
            if attr is None:
                raise MethodNotFoundError(frame.obj, frame.method)
            args = self._unmarshal(frame.params)
            result = getattr(obj, attr)(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    # -- shutdown -----------------------------------------------------------

    async def close(self, error: BaseException | None = None) -> None:
        """Close the channel. Pending calls are rejected and published objects revoked."""
        if self._closed:
            return
        self._closed = True
        self._close_error = error
        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
        current = asyncio.current_task()
        for task in list(self._handler_tasks):
            if task is not current:
                task.cancel()

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(ChannelClosedError())
        if pending:
            logger.debug("[{}] rejected {} pending call(s) on close", self.name, len(pending))

        self._objects.clear()
        self._published.clear()
        for proxy in self._proxies.values():
            proxy._released = True
        self._proxies.clear()

        # Listeners see the close before the first await.
        callbacks = list(self._close_callbacks)
        self._close_callbacks.clear()
        for callback in callbacks:
            try:
                callback(error)
            except Exception:
                logger.exception("[{}] close callback failed", self.name)

        await self._stream.close()


def _describe(frame: RpcCall | RpcGet) -> str:
    if isinstance(frame, RpcGet):
        return f"{frame.obj}.get {frame.name}"
    return f"{frame.obj}.{frame.method}"
