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

"""Command assembly and reply correlation for one connection."""
from __future__ import annotations

import asyncio
import datetime
from typing import TYPE_CHECKING, Any, Mapping, MutableMapping, Optional, Union

from bson import CodecOptions
from bson.codec_options import DEFAULT_CODEC_OPTIONS

from mongowire import common, message
from mongowire.errors import (
    CompatibilityError,
    CursorNotFound,
    ExecutionTimeout,
    InvalidPendingOperationCount,
    OperationFailure,
    ProtocolError,
    WriteConcernError,
)
from mongowire.message import _DecodeOptions, _OpMsg, _OpReply, _RequestMessage
from mongowire.server_api import _add_to_command

if TYPE_CHECKING:
    from mongowire.client_session import ClientSession
    from mongowire.connection import Connection
    from mongowire.read_preferences import _ServerMode


def _prepare_command(
    conn: Connection,
    dbname: str,
    spec: Mapping[str, Any],
    read_preference: Optional[_ServerMode] = None,
    session: Optional[ClientSession] = None,
    write_concern: Optional[Mapping[str, Any]] = None,
    codec_options: CodecOptions = DEFAULT_CODEC_OPTIONS,
    no_response: bool = False,
    exhaust_allowed: bool = False,
    retryable_write: bool = False,
) -> tuple[_RequestMessage, MutableMapping[str, Any]]:
    """Build the wire message for ``spec``.

    The caller's document is never modified. Returns the message and the
    command document as it will be published to command listeners.

    Raises :exc:`~mongowire.errors.CompatibilityError` when an explicit
    session is used over a connection without session support and
    :exc:`~mongowire.errors.DocumentTooLarge` when the encoded command is
    over the server's limit. Nothing is written in either case.
    """
    if not spec:
        raise ValueError(f"{spec!r} is not a valid command")
    description = conn.description
    name = next(iter(spec))
    cmd: MutableMapping[str, Any] = dict(spec)

    _add_to_command(cmd, conn.server_api)

    in_transaction = session is not None and session.in_transaction
    if write_concern and not in_transaction:
        cmd["writeConcern"] = dict(write_concern)

    cluster_time = conn.cluster_time
    if session is not None and description.supports_sessions:
        session_time = session.cluster_time
        if session_time is not None and (
            cluster_time is None or session_time["clusterTime"] > cluster_time["clusterTime"]
        ):
            cluster_time = session_time
        session._apply_to(cmd, retryable_write)
    elif session is not None and session.explicit:
        raise CompatibilityError("Current topology does not support sessions")

    # Gossip the highest known cluster time.
    if cluster_time is not None:
        cmd["$clusterTime"] = cluster_time

    msg: _RequestMessage
    if description.supports_op_msg:
        flags = _OpMsg.MORE_TO_COME if no_response else 0
        flags |= _OpMsg.EXHAUST_ALLOWED if exhaust_allowed else 0
        msg = message._op_msg(flags, cmd, dbname, read_preference, codec_options)
        # An unacknowledged write gets no server error, so check each document.
        if no_response and msg.max_doc_size > description.max_bson_size:
            message._raise_document_too_large(name, msg.max_doc_size, description.max_bson_size)
    else:
        if exhaust_allowed:
            raise CompatibilityError(
                "Exhaust commands require a server with maxWireVersion >= %d"
                % (common.MIN_OP_MSG_WIRE_VERSION,)
            )
        query: MutableMapping[str, Any] = cmd
        if description.is_sharded:
            query = message._maybe_add_read_preference(cmd, read_preference)
        options = 0
        if read_preference is not None and read_preference.secondary_ok:
            options |= message._QUERY_OPTIONS["secondary_okay"]
        msg = message._query(options, dbname + ".$cmd", 0, -1, query, None, codec_options)

    max_bson_size = description.max_bson_size
    if msg.size > max_bson_size + message._COMMAND_OVERHEAD:
        message._raise_document_too_large(
            name, msg.size, max_bson_size + message._COMMAND_OVERHEAD
        )
    return msg, cmd


def _check_command_response(
    response: Mapping[str, Any], max_wire_version: Optional[int] = None
) -> None:
    """Check the response to a command for errors.

    A ``writeConcernError`` raises :exc:`~mongowire.errors.WriteConcernError`
    even though ``ok`` is 1. A reply with ``ok: 0``, ``$err``, ``errmsg``
    or ``code`` raises :exc:`~mongowire.errors.OperationFailure`.
    """
    if "writeConcernError" in response:
        error = response["writeConcernError"]
        raise WriteConcernError(
            error.get("errmsg", "write concern error"),
            error.get("code"),
            response,
            max_wire_version,
        )

    if not (
        response.get("ok", 1) == 0
        or "$err" in response
        or "errmsg" in response
        or "code" in response
    ):
        return

    errmsg = response.get("errmsg", response.get("$err", "command failed"))
    code = response.get("code")
    if code == 50:
        raise ExecutionTimeout(errmsg, code, response, max_wire_version)
    elif code == 43:
        raise CursorNotFound(errmsg, code, response, max_wire_version)
    raise OperationFailure(errmsg, code, response, max_wire_version)


_Reply = Union[_OpMsg, _OpReply]
_Result = tuple[Optional[BaseException], Any, bool]


class _Operation:
    """A request waiting for its reply (or replies, for exhaust commands).

    Results are queued by the connection as replies are matched and
    consumed by the caller with :meth:`next_reply`, so a reply that arrives
    before the caller resumes is never lost.
    """

    __slots__ = (
        "request_id",
        "command_name",
        "dbname",
        "session",
        "decode_options",
        "no_response",
        "started",
        "_results",
        "_finished",
    )

    def __init__(
        self,
        request_id: int,
        command_name: str,
        dbname: str,
        session: Optional[ClientSession] = None,
        decode_options: Optional[_DecodeOptions] = None,
        no_response: bool = False,
    ):
        self.request_id = request_id
        self.command_name = command_name
        self.dbname = dbname
        self.session = session
        self.decode_options = decode_options or _DecodeOptions()
        self.no_response = no_response
        self.started = datetime.datetime.now()
        self._results: asyncio.Queue[_Result] = asyncio.Queue()
        self._finished = False

    @property
    def finished(self) -> bool:
        """True once a terminal result has been delivered."""
        return self._finished

    def complete(
        self,
        error: Optional[BaseException] = None,
        reply: Any = None,
        more_to_come: bool = False,
    ) -> None:
        """Deliver an error or a reply. Results after a terminal one are dropped."""
        if self._finished:
            return
        if error is not None or not more_to_come:
            self._finished = True
        self._results.put_nowait((error, reply, more_to_come))

    async def next_reply(self) -> tuple[Any, bool]:
        """Wait for the next reply, returning ``(document, more_to_come)``."""
        error, reply, more_to_come = await self._results.get()
        if error is not None:
            raise error
        return reply, more_to_come

    def __repr__(self) -> str:
        return f"<_Operation {self.command_name!r} request_id={self.request_id}>"


class _PendingOperations:
    """Maps request ids to the operations waiting on them.

    Only the owning connection mutates this map.
    """

    __slots__ = ("_operations", "is_monitoring")

    def __init__(self, is_monitoring: bool = False):
        self._operations: dict[int, _Operation] = {}
        self.is_monitoring = is_monitoring

    def __len__(self) -> int:
        return len(self._operations)

    def add(self, operation: _Operation) -> None:
        if operation.request_id in self._operations:
            raise ProtocolError(f"Request id {operation.request_id} is already pending")
        self._operations[operation.request_id] = operation

    def discard_operation(self, operation: _Operation) -> None:
        """Remove ``operation`` under whichever key it is currently stored."""
        for key, value in list(self._operations.items()):
            if value is operation:
                del self._operations[key]

    def match(self, reply: _Reply) -> Optional[_Operation]:
        """Take the operation ``reply`` answers out of the map.

        When the reply announces more replies, the operation is stored again
        under the reply's own request id, which the next reply will answer.
        Raises :exc:`~mongowire.errors.ProtocolError` if that id belongs to
        another pending operation. Returns None when nothing matches.

        On a monitoring connection an unmatched reply is assigned to the only
        pending operation. With more than one pending operation this raises
        :exc:`~mongowire.errors.InvalidPendingOperationCount`.
        """
        key = reply.response_to
        operation = self._operations.get(key)
        if operation is None and self.is_monitoring and self._operations:
            if len(self._operations) > 1:
                raise InvalidPendingOperationCount(
                    "Connection internal queue contains more than 1 operation description"
                )
            key, operation = next(iter(self._operations.items()))
        if operation is None:
            return None
        if reply.more_to_come and self._operations.get(reply.request_id, operation) is not operation:
            raise ProtocolError(
                f"Reply request id {reply.request_id} collides with a pending request"
            )
        del self._operations[key]
        if reply.more_to_come:
            self._operations[reply.request_id] = operation
        return operation

    def fail_all(self, error: BaseException) -> None:
        """Deliver ``error`` to every pending operation and empty the map."""
        operations = list(self._operations.values())
        self._operations.clear()
        for operation in operations:
            operation.complete(error=error)
