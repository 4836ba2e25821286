# Copyright 2015-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Internal network layer: framing, the asyncio protocol and message unpacking."""
from __future__ import annotations

import asyncio
import struct
from asyncio import BaseTransport, Future, Protocol, Transport
from typing import TYPE_CHECKING, Any, Optional, Union

from mongowire.common import MAX_MESSAGE_SIZE
from mongowire.compression_support import decompress
from mongowire.errors import ProtocolError
from mongowire.message import (
    _COMPRESSION_HEADER_SIZE,
    _HEADER_SIZE,
    _UNPACK_REPLY,
    OP_COMPRESSED,
    _OpMsg,
    _OpReply,
)

if TYPE_CHECKING:
    from mongowire.connection import Connection

_UNPACK_HEADER = struct.Struct("<iiii").unpack_from
_UNPACK_LENGTH = struct.Struct("<i").unpack_from
_UNPACK_COMPRESSION_HEADER = struct.Struct("<iiB").unpack_from


class _MessageBuffer:
    """Accumulates socket bytes and slices out complete wire messages.

    Bytes are appended in arrival order. :meth:`next_message` returns the
    next complete length prefixed message, or None when more bytes are
    needed. The declared length is checked as soon as its four bytes are
    buffered, before the rest of the message arrives.
    """

    __slots__ = ("_buffer", "max_message_size")

    def __init__(self, max_message_size: int = MAX_MESSAGE_SIZE):
        self._buffer = bytearray()
        self.max_message_size = max_message_size

    def __len__(self) -> int:
        return len(self._buffer)

    def append(self, data: Union[bytes, bytearray, memoryview]) -> None:
        self._buffer += data

    def next_message(self) -> Optional[bytes]:
        if len(self._buffer) < 4:
            return None
        (length,) = _UNPACK_LENGTH(self._buffer)
        if length < 0:
            raise ProtocolError(f"Invalid message size: {length!r}")
        if length < 4:
            raise ProtocolError(
                f"Message length ({length!r}) is smaller than its own length field (4)"
            )
        if length > self.max_message_size:
            raise ProtocolError(
                f"Message length ({length!r}) is larger than server max "
                f"message size ({self.max_message_size!r})"
            )
        if length > len(self._buffer):
            return None
        message = bytes(self._buffer[:length])
        del self._buffer[:length]
        return message

    def clear(self) -> None:
        self._buffer.clear()


def _unpack_message(data: bytes) -> Union[_OpReply, _OpMsg]:
    """Unpack one framed message, unwrapping OP_COMPRESSED first."""
    length, request_id, response_to, op_code = _unpack_header(data)
    body = memoryview(data)[_HEADER_SIZE:length]
    if op_code == OP_COMPRESSED:
        if length <= _COMPRESSION_HEADER_SIZE:
            raise ProtocolError(
                f"Message length ({length!r}) not longer than standard OP_COMPRESSED message header size (25)"
            )
        op_code, uncompressed_size, compressor_id = _UNPACK_COMPRESSION_HEADER(body)
        body = memoryview(decompress(body[9:], compressor_id))
        if len(body) != uncompressed_size:
            raise ProtocolError(
                f"Decompressed message length ({len(body)!r}) does not match "
                f"declared uncompressed size ({uncompressed_size!r})"
            )
    try:
        unpack_reply = _UNPACK_REPLY[op_code]
    except KeyError:
        raise ProtocolError(
            f"Got opcode {op_code!r} but expected {list(_UNPACK_REPLY.keys())!r}"
        ) from None
    return unpack_reply(request_id, response_to, body)


def _unpack_header(data: bytes) -> tuple[int, int, int, int]:
    """Unpack a MongoDB Wire Protocol header."""
    if len(data) < _HEADER_SIZE:
        raise ProtocolError(
            f"Message length ({len(data)!r}) not longer than standard message header size (16)"
        )
    length, request_id, response_to, op_code = _UNPACK_HEADER(data)
    if length <= _HEADER_SIZE:
        raise ProtocolError(
            f"Message length ({length!r}) not longer than standard message header size (16)"
        )
    return length, request_id, response_to, op_code


class MongoWireProtocol(Protocol):
    """The asyncio protocol under one :class:`~mongowire.connection.Connection`.

    Socket data is framed in arrival order and every complete message is
    handed to the attached connection. The protocol also owns the idle
    socket timer (restarted by every received chunk) and write
    back-pressure.
    """

    def __init__(self, max_message_size: int = MAX_MESSAGE_SIZE):
        self.transport: Optional[Transport] = None
        self._buffer = _MessageBuffer(max_message_size)
        self._sink: Optional[Connection] = None
        self._timeout: Optional[float] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._paused = False
        self._drain_waiters: list[Future[None]] = []
        self._connection_lost = False
        self._closed: Future[None] = asyncio.get_running_loop().create_future()

    @property
    def max_message_size(self) -> int:
        return self._buffer.max_message_size

    @max_message_size.setter
    def max_message_size(self, value: int) -> None:
        self._buffer.max_message_size = value

    def attach(self, sink: Connection) -> None:
        """Deliver framed messages and transport events to ``sink``."""
        self._sink = sink
        if len(self._buffer):
            self._process_buffer()

    def settimeout(self, timeout: Optional[float]) -> None:
        """Set the idle socket timeout in seconds, None or 0 disables it."""
        self._timeout = timeout or None
        self._restart_timer()

    def gettimeout(self) -> Optional[float]:
        """The configured timeout for the socket that underlies our protocol pair."""
        return self._timeout

    def _restart_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._timeout and not self._connection_lost:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self._timeout, self._timed_out)

    def _timed_out(self) -> None:
        self._timer = None
        if self._sink is not None:
            self._sink._on_timeout()

    def connection_made(self, transport: BaseTransport) -> None:
        """Called exactly once when a connection is made.
        The transport argument is the transport representing the write side of the connection.
        """
        self.transport = transport  # type: ignore[assignment]

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        if self.transport is None:
            return default
        return self.transport.get_extra_info(name, default)

    def data_received(self, data: bytes) -> None:
        if self._connection_lost:
            return
        self._buffer.append(data)
        if self._timer is not None:
            self._restart_timer()
        if self._sink is not None:
            self._process_buffer()

    def _process_buffer(self) -> None:
        assert self._sink is not None
        while not self._connection_lost:
            try:
                message = self._buffer.next_message()
            except ProtocolError as exc:
                self._buffer.clear()
                self._sink._on_error(exc)
                return
            if message is None:
                return
            self._sink._on_message(message)

    def eof_received(self) -> Optional[bool]:
        # Close the transport, connection_lost reports the closure.
        return None

    async def write(self, message: bytes) -> None:
        """Write a message to this connection's transport, waiting while
        the transport's write buffer is above its high-water mark.
        """
        if self.transport is None or self.transport.is_closing() or self._connection_lost:
            raise OSError("connection is closed")
        self.transport.write(message)
        if self._paused:
            waiter = asyncio.get_running_loop().create_future()
            self._drain_waiters.append(waiter)
            try:
                await waiter
            finally:
                if waiter in self._drain_waiters:
                    self._drain_waiters.remove(waiter)

    def pause_writing(self) -> None:
        self._paused = True

    def resume_writing(self) -> None:
        self._paused = False
        self._wake_writers(None)

    def _wake_writers(self, exc: Optional[Exception]) -> None:
        waiters, self._drain_waiters = self._drain_waiters, []
        for waiter in waiters:
            if not waiter.done():
                if exc is None:
                    waiter.set_result(None)
                else:
                    waiter.set_exception(exc)

    def is_closing(self) -> bool:
        return self._connection_lost or self.transport is None or self.transport.is_closing()

    def close(self) -> None:
        """Close gracefully, flushing buffered writes first."""
        if self.transport is not None and not self.transport.is_closing():
            self.transport.close()

    def abort(self) -> None:
        """Close immediately, discarding buffered writes."""
        if self.transport is not None:
            self.transport.abort()

    def connection_lost(self, exc: Optional[Exception] = None) -> None:
        self._connection_lost = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._wake_writers(OSError("connection closed") if exc is None else exc)
        if not self._closed.done():
            self._closed.set_result(None)
        if self._sink is not None:
            self._sink._on_close(exc)

    async def wait_closed(self) -> None:
        await asyncio.shield(self._closed)
