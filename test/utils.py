# Copyright 2012-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Utilities for testing mongowire without a server."""
from __future__ import annotations

import asyncio
import itertools
import struct
import zlib
from collections import defaultdict
from typing import Any, Callable, List, Mapping, Optional, Sequence

import bson

from mongowire import message, monitoring
from mongowire.connection import Connection
from mongowire.connection_options import ConnectionOptions
from mongowire.encryption import AutoEncrypter
from mongowire.network_layer import MongoWireProtocol

_pack_header = struct.Struct("<iiii").pack
_unpack_header = struct.Struct("<iiii").unpack_from

# Reply ids live far away from the request id counter.
_REPLY_ID = itertools.count(1_000_000_000)

HELLO = {
    "isWritablePrimary": True,
    "maxBsonObjectSize": 16 * 1024 * 1024,
    "maxMessageSizeBytes": 48000000,
    "maxWriteBatchSize": 100000,
    "logicalSessionTimeoutMinutes": 30,
    "connectionId": 7,
    "minWireVersion": 0,
    "maxWireVersion": 21,
    "ok": 1.0,
}

LEGACY_HELLO = {
    "ismaster": True,
    "maxBsonObjectSize": 16 * 1024 * 1024,
    "maxMessageSizeBytes": 48000000,
    "minWireVersion": 0,
    "maxWireVersion": 5,
    "ok": 1.0,
}


class MockTransport(asyncio.Transport):
    """An in memory transport that records written bytes."""

    def __init__(self, protocol: asyncio.Protocol, peername: Any = ("localhost", 27017)):
        super().__init__({"peername": peername, "socket": None})
        self.protocol = protocol
        self.written: List[bytes] = []
        self.closing = False
        self.aborted = False
        self.write_error: Optional[BaseException] = None

    def write(self, data: Any) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.append(bytes(data))

    def is_closing(self) -> bool:
        return self.closing

    def _lose(self) -> None:
        if self.closing:
            return
        self.closing = True
        asyncio.get_running_loop().call_soon(self.protocol.connection_lost, None)

    def close(self) -> None:
        self._lose()

    def abort(self) -> None:
        self.aborted = True
        self._lose()


def create_connection(
    options: Optional[ConnectionOptions] = None,
    *,
    id: Any = 1,
    is_monitoring: bool = False,
    hello: Optional[Mapping[str, Any]] = None,
    peername: Any = ("localhost", 27017),
) -> tuple[Connection, MongoWireProtocol, MockTransport]:
    """Create a ready Connection over a MockTransport.

    Must be called with a running event loop.
    """
    options = options or ConnectionOptions()
    protocol = MongoWireProtocol(options.max_message_size)
    transport = MockTransport(protocol, peername)
    protocol.connection_made(transport)
    conn = Connection(protocol, options, id=id, is_monitoring=is_monitoring)
    if hello is not None:
        conn.hello = hello
    return conn, protocol, transport


async def wait_for_writes(transport: MockTransport, count: int = 1) -> None:
    """Yield to the event loop until ``count`` messages have been written."""
    for _ in range(100):
        if len(transport.written) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"Didn't ever write {count} message(s)")


def op_msg(
    doc: Mapping[str, Any],
    response_to: int = 0,
    request_id: Optional[int] = None,
    flags: int = 0,
    sequences: Optional[Mapping[str, Sequence[Mapping[str, Any]]]] = None,
) -> bytes:
    """Build an OP_MSG reply."""
    body = struct.pack("<I", flags) + b"\x00" + bson.encode(doc)
    for identifier, docs in (sequences or {}).items():
        payload = identifier.encode() + b"\x00" + b"".join(bson.encode(d) for d in docs)
        body += b"\x01" + struct.pack("<i", len(payload) + 4) + payload
    if request_id is None:
        request_id = next(_REPLY_ID)
    return _pack_header(16 + len(body), request_id, response_to, message.OP_MSG) + body


def op_reply(
    docs: Sequence[Mapping[str, Any]],
    response_to: int = 0,
    request_id: Optional[int] = None,
    flags: int = 0,
    cursor_id: int = 0,
    number_returned: Optional[int] = None,
) -> bytes:
    """Build an OP_REPLY reply."""
    if number_returned is None:
        number_returned = len(docs)
    body = struct.pack("<iqii", flags, cursor_id, 0, number_returned)
    body += b"".join(bson.encode(doc) for doc in docs)
    if request_id is None:
        request_id = next(_REPLY_ID)
    return _pack_header(16 + len(body), request_id, response_to, message.OP_REPLY) + body


def compressed(data: bytes, compressor_id: int = 2, level: int = -1) -> bytes:
    """Wrap a framed message in a zlib OP_COMPRESSED envelope."""
    length, request_id, response_to, op_code = _unpack_header(data)
    payload = zlib.compress(data[16:], level)
    header = struct.pack(
        "<iiiiiiB",
        25 + len(payload),
        request_id,
        response_to,
        message.OP_COMPRESSED,
        op_code,
        length - 16,
        compressor_id,
    )
    return header + payload


def _read_cstring(data: bytes, position: int) -> tuple[str, int]:
    end = data.index(b"\x00", position)
    return data[position:end].decode(), end + 1


def parse_request(data: bytes) -> dict[str, Any]:
    """Decode a request written by a connection.

    OP_COMPRESSED requests are unwrapped (zlib only). Returns the header
    fields and the decoded command.
    """
    length, request_id, response_to, op_code = _unpack_header(data)
    result: dict[str, Any] = {
        "length": length,
        "request_id": request_id,
        "response_to": response_to,
        "op_code": op_code,
    }
    body = data[16:length]
    if op_code == message.OP_COMPRESSED:
        op_code, size, compressor_id = struct.unpack_from("<iiB", body)
        assert compressor_id == 2
        body = zlib.decompress(body[9:])
        assert len(body) == size
        result["compressed"] = True
        result["op_code"] = op_code
    if op_code == message.OP_MSG:
        (flags,) = struct.unpack_from("<I", body)
        result["flags"] = flags
        sequences: dict[str, list[Any]] = {}
        position = 4
        while position < len(body):
            kind = body[position]
            position += 1
            (size,) = struct.unpack_from("<i", body, position)
            if kind == 0:
                result["command"] = bson.decode(body[position : position + size])
            else:
                identifier, start = _read_cstring(body, position + 4)
                sequences[identifier] = bson.decode_all(body[start : position + size])
            position += size
        result["sequences"] = sequences
    elif op_code == message.OP_QUERY:
        (flags,) = struct.unpack_from("<i", body)
        namespace, position = _read_cstring(body, 4)
        skip, number_to_return = struct.unpack_from("<ii", body, position)
        position += 8
        (size,) = struct.unpack_from("<i", body, position)
        result.update(
            flags=flags,
            namespace=namespace,
            number_to_skip=skip,
            number_to_return=number_to_return,
            command=bson.decode(body[position : position + size]),
        )
    return result


class RecordingEncrypter(AutoEncrypter):
    """Marks commands as encrypted and replies as decrypted."""

    def __init__(self):
        self.encrypted = []
        self.decrypted = []

    async def encrypt(self, database, cmd, codec_options):
        self.encrypted.append((database, cmd))
        # Encryption libraries may reorder fields they do not touch.
        encrypted = {key: value for key, value in cmd.items() if key != "sort"}
        encrypted["sort"] = {"reordered": 1}
        encrypted["encrypted"] = True
        return encrypted

    async def decrypt(self, response):
        self.decrypted.append(response)
        return dict(response, decrypted=True)


class BaseListener:
    def __init__(self) -> None:
        self.events: List[Any] = []

    def reset(self) -> None:
        self.events = []

    def add_event(self, event: Any) -> None:
        self.events.append(event)

    def event_count(self, event_type: Any) -> int:
        return len(self.events_by_type(event_type))

    def events_by_type(self, event_type: Any) -> List[Any]:
        """Return the matching events by event class.

        event_type can be a single class or a tuple of classes.
        """
        return self.matching(lambda e: isinstance(e, event_type))

    def matching(self, matcher: Callable[[Any], bool]) -> List[Any]:
        """Return the matching events."""
        return [event for event in self.events[:] if matcher(event)]


class EventListener(BaseListener, monitoring.CommandListener):
    def __init__(self) -> None:
        super().__init__()
        self.results: defaultdict[str, list] = defaultdict(list)

    @property
    def started_events(self) -> List[monitoring.CommandStartedEvent]:
        return self.results["started"]

    @property
    def succeeded_events(self) -> List[monitoring.CommandSucceededEvent]:
        return self.results["succeeded"]

    @property
    def failed_events(self) -> List[monitoring.CommandFailedEvent]:
        return self.results["failed"]

    def started(self, event: monitoring.CommandStartedEvent) -> None:
        self.started_events.append(event)
        self.add_event(event)

    def succeeded(self, event: monitoring.CommandSucceededEvent) -> None:
        self.succeeded_events.append(event)
        self.add_event(event)

    def failed(self, event: monitoring.CommandFailedEvent) -> None:
        self.failed_events.append(event)
        self.add_event(event)

    def started_command_names(self) -> List[str]:
        """Return list of command names started."""
        return [event.command_name for event in self.started_events]

    def reset(self) -> None:
        """Reset the state of this listener."""
        self.results.clear()
        super().reset()


class ConnectionEventListener(BaseListener, monitoring.ConnectionListener):
    def cluster_time_received(self, event: monitoring.ClusterTimeReceivedEvent) -> None:
        self.add_event(event)

    def closed(self, event: monitoring.ConnectionClosedEvent) -> None:
        self.add_event(event)

    def pinned(self, event: monitoring.ConnectionPinnedEvent) -> None:
        self.add_event(event)

    def unpinned(self, event: monitoring.ConnectionUnpinnedEvent) -> None:
        self.add_event(event)
