"""Wire protocol models and codecs for the engine control channel."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from almondcloud.utils.exceptions import (
    AlmondError,
    ObjectNotFoundError,
    ProtocolError,
    RemoteInvocationError,
)

# Marshalled object markers.
OBJECT_MARKER = "$rpcObject"
LOCAL_MARKER = "$rpcLocal"


@dataclass(slots=True)
class RpcError:
    """Normalized RPC error payload."""

    code: str
    message: str
    data: dict[str, Any] | None = None


@dataclass(slots=True)
class RpcCall:
    """Method invocation on an object published by the receiver."""

    id: int
    obj: str
    method: str
    params: list[Any]


@dataclass(slots=True)
class RpcGet:
    """Property read on an object published by the receiver."""

    id: int
    obj: str
    name: str


@dataclass(slots=True)
class RpcReply:
    """Reply to a call or property read, correlated by id."""

    id: int
    ok: bool
    result: Any = None
    error: RpcError | None = None


@dataclass(slots=True)
class RpcRelease:
    """The sender dropped its reference to an object the receiver published."""

    obj: str


RpcFrame = RpcCall | RpcGet | RpcReply | RpcRelease


def safe_dict(value: Any) -> dict[str, Any]:
    """Return the value when dict-like, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def encode_call(call: RpcCall) -> dict[str, Any]:
    return {"id": call.id, "obj": call.obj, "call": call.method, "params": call.params}


def encode_get(get: RpcGet) -> dict[str, Any]:
    return {"id": get.id, "obj": get.obj, "get": get.name}


def encode_reply(reply: RpcReply) -> dict[str, Any]:
    if reply.ok:
        return {"id": reply.id, "reply": reply.result}
    err = reply.error or RpcError(code="RPC_ERROR", message="rpc failed")
    payload: dict[str, Any] = {"code": err.code, "message": err.message}
    if err.data:
        payload["data"] = err.data
    return {"id": reply.id, "error": payload}


def encode_release(release: RpcRelease) -> dict[str, Any]:
    return {"obj": release.obj, "free": True}


def normalize_rpc_error(error: Any) -> RpcError:
    """Normalize unknown error payloads into RpcError."""
    if isinstance(error, str):
        return RpcError(code="RPC_ERROR", message=error)
    row = safe_dict(error)
    data = row.get("data")
    return RpcError(
        code=str(row.get("code") or "RPC_ERROR"),
        message=str(row.get("message") or "rpc failed"),
        data=data if isinstance(data, dict) else None,
    )


def decode_frame(payload: Any) -> RpcFrame:
    """Decode one raw JSON value into a typed frame.

    :raises ProtocolError: when the value is not a recognizable envelope.
    """
    if not isinstance(payload, dict):
        raise ProtocolError(f"expected an object frame, got {type(payload).__name__}", code="MALFORMED_FRAME")
    if payload.get("free") is True:
        obj = payload.get("obj")
        if not isinstance(obj, str):
            raise ProtocolError("release frame without object id", code="MALFORMED_FRAME")
        return RpcRelease(obj=obj)

    call_id = payload.get("id")
    if not isinstance(call_id, int) or isinstance(call_id, bool):
        raise ProtocolError("frame without a numeric id", code="MALFORMED_FRAME", details={"frame": str(payload)[:200]})

    if "call" in payload:
        obj = payload.get("obj")
        params = payload.get("params", [])
        if not isinstance(obj, str) or not isinstance(payload["call"], str) or not isinstance(params, list):
            raise ProtocolError("malformed call frame", code="MALFORMED_FRAME")
        return RpcCall(id=call_id, obj=obj, method=payload["call"], params=params)
    if "get" in payload:
        obj = payload.get("obj")
        if not isinstance(obj, str) or not isinstance(payload["get"], str):
            raise ProtocolError("malformed property frame", code="MALFORMED_FRAME")
        return RpcGet(id=call_id, obj=obj, name=payload["get"])
    if "error" in payload:
        return RpcReply(id=call_id, ok=False, error=normalize_rpc_error(payload["error"]))
    if "reply" in payload:
        return RpcReply(id=call_id, ok=True, result=payload["reply"])
    raise ProtocolError("unknown frame kind", code="MALFORMED_FRAME", details={"frame": str(payload)[:200]})


def error_from_exception(exc: BaseException) -> RpcError:
    """Convert a local handler failure into an error payload for the peer."""
    if isinstance(exc, AlmondError):
        return RpcError(code=exc.code, message=exc.message, data=exc.details or None)
    code = getattr(exc, "code", None)
    return RpcError(code=str(code) if code else type(exc).__name__, message=str(exc) or type(exc).__name__)


def to_remote_error(error: RpcError) -> AlmondError:
    """Convert an error payload from the peer into the exception raised to the caller."""
    if error.code == "OBJECT_NOT_FOUND":
        obj = (error.data or {}).get("obj")
        return ObjectNotFoundError(str(obj) if obj is not None else error.message)
    return RemoteInvocationError(error.code, error.message, error.data)


def parse_control_ready(payload: Any) -> str | None:
    """Return the root object id when ``payload`` is the handshake frame.

    Any other message yields ``None`` and is ignored by the caller.

    :raises ProtocolError: when the frame says ready but carries no usable id.
    """
    if not isinstance(payload, dict) or payload.get("control") != "ready":
        return None
    rpc_id = payload.get("rpcId")
    if isinstance(rpc_id, dict):
        rpc_id = rpc_id.get(OBJECT_MARKER)
    if isinstance(rpc_id, int) and not isinstance(rpc_id, bool):
        rpc_id = str(rpc_id)
    if not isinstance(rpc_id, str) or not rpc_id:
        raise ProtocolError("ready message without rpcId", code="BAD_HANDSHAKE")
    return rpc_id
