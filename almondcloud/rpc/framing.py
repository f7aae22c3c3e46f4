"""Newline-delimited JSON framing over an asyncio byte stream."""

from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

from loguru import logger

from almondcloud.utils.exceptions import ChannelClosedError, ProtocolError

DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024
_READ_CHUNK = 64 * 1024


def encode_frame(value: Any) -> bytes:
    """Encode one JSON value as a single line.

    Compact separators and JSON string escaping guarantee the body holds no raw newline.
    """
    return json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8") + b"\n"


class JsonDatagramStream:
    """Sends and receives whole JSON values over one duplex stream.

    Each direction is independent: writes are serialized by a lock, reads are
    buffered until a full line is available, so a partial read never yields a
    partial value.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ):
        if max_frame_bytes <= 0:
            raise ValueError("max_frame_bytes must be positive")
        self._reader = reader
        self._writer = writer
        self._max_frame_bytes = max_frame_bytes
        self._buffer = bytearray()
        self._scan_from = 0  # buffer prefix known to hold no newline
        self._write_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        *,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
    ) -> "JsonDatagramStream":
        reader, writer = await asyncio.open_connection(host, port)
        return cls(reader, writer, max_frame_bytes=max_frame_bytes)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def peername(self) -> Any:
        return self._writer.get_extra_info("peername")

    async def send(self, value: Any) -> None:
        """Write one value atomically."""
        data = encode_frame(value)
        if len(data) > self._max_frame_bytes:
            raise ProtocolError(
                f"outgoing frame of {len(data)} bytes exceeds limit",
                code="FRAME_TOO_LARGE",
                details={"size": len(data), "limit": self._max_frame_bytes},
            )
        async with self._write_lock:
            if self._closed:
                raise ChannelClosedError("stream closed")
            self._writer.write(data)
            await self._writer.drain()

    async def receive(self) -> Any | None:
        """Return the next value, or ``None`` at a clean end of stream.

        :raises ProtocolError: on an oversized, truncated or malformed frame;
            the stream is closed before raising.
        """
        while True:
            newline = self._buffer.find(b"\n", self._scan_from)
            if newline >= 0:
                line = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                self._scan_from = 0
                if len(line) > self._max_frame_bytes:
                    await self._fail(ProtocolError("incoming frame exceeds limit", code="FRAME_TOO_LARGE"))
                if not line.strip():
                    continue
                return await self._decode(line)

            if len(self._buffer) > self._max_frame_bytes:
                await self._fail(
                    ProtocolError(
                        "incoming frame exceeds limit",
                        code="FRAME_TOO_LARGE",
                        details={"buffered": len(self._buffer), "limit": self._max_frame_bytes},
                    )
                )
            self._scan_from = len(self._buffer)
            if self._closed:
                return None
            chunk = await self._reader.read(_READ_CHUNK)
            if not chunk:
                if self._buffer.strip():
                    await self._fail(ProtocolError("stream ended in the middle of a frame", code="TRUNCATED_FRAME"))
                return None
            self._buffer.extend(chunk)

    async def _decode(self, line: bytes) -> Any:
        try:
            return json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            await self._fail(
                ProtocolError(f"malformed frame: {exc}", code="MALFORMED_FRAME", details={"frame": line[:200].decode("utf-8", "replace")})
            )

    async def _fail(self, error: ProtocolError) -> None:
        logger.warning("Closing JSON stream: {}", error.message)
        await self.close()
        raise error

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        while True:
            value = await self.receive()
            if value is None:
                return
            yield value

    async def close(self) -> None:
        """Close the underlying stream. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        try:
            if self._writer.can_write_eof():
                self._writer.write_eof()
        except (OSError, RuntimeError) as exc:
            logger.debug("write_eof failed on close: {}", exc)
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as exc:
            # The peer may already have reset the socket.
            logger.debug("wait_closed failed on close: {}", exc)
