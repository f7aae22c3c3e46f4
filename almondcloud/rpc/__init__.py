"""Remote-object RPC over newline-delimited JSON."""

from almondcloud.rpc.channel import PendingCall, RemoteObjectReference, RemoteProxy, RpcChannel, RpcObject
from almondcloud.rpc.framing import JsonDatagramStream, encode_frame

__all__ = [
    "JsonDatagramStream",
    "PendingCall",
    "RemoteObjectReference",
    "RemoteProxy",
    "RpcChannel",
    "RpcObject",
    "encode_frame",
]
