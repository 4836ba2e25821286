# Copyright 2017 MongoDB, Inc.
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

"""Logical session state attached to commands.

A connection does not own sessions. It only reads the fields a session
contributes to an outgoing command (``lsid``, ``txnNumber``, the
transaction fields and the session's cluster time) and feeds every reply
back through :meth:`ClientSession._process_response`.

.. code-block:: python

  session = ClientSession()
  await conn.command("test", {"insert": "coll", "documents": [{"x": 1}]}, session=session)
  print(session.cluster_time, session.operation_time)
"""
from __future__ import annotations

import uuid
from collections.abc import Mapping as _Mapping
from typing import Any, Mapping, MutableMapping, Optional

from bson.binary import Binary
from bson.int64 import Int64
from bson.timestamp import Timestamp

from mongowire.errors import InvalidOperation
from mongowire.typings import ClusterTime


class _ServerSession:
    def __init__(self) -> None:
        # Ensure id is type 4, regardless of CodecOptions.uuid_representation.
        self.session_id = {"id": Binary(uuid.uuid4().bytes, 4)}
        self._transaction_id = 0

    @property
    def transaction_id(self) -> Int64:
        """Positive 64-bit integer."""
        return Int64(self._transaction_id)

    def inc_transaction_id(self) -> None:
        self._transaction_id += 1


class ClientSession:
    """A session for ordering sequential operations.

    :param server_session: The server session to use, a new one is created
        when omitted.
    :param explicit: False for sessions the client creates implicitly
        around a single operation. Only explicit sessions raise
        :exc:`~mongowire.errors.CompatibilityError` when sent over a
        connection without session support.
    :param causal_consistency: If True, reads carry the session's
        operation time as ``afterClusterTime``.
    """

    def __init__(
        self,
        server_session: Optional[_ServerSession] = None,
        explicit: bool = True,
        causal_consistency: bool = True,
    ) -> None:
        self._server_session: Optional[_ServerSession] = server_session or _ServerSession()
        self._explicit = explicit
        self._causal_consistency = causal_consistency
        self._cluster_time: Optional[ClusterTime] = None
        self._operation_time: Optional[Timestamp] = None
        self._in_transaction = False
        self._starting_transaction = False
        self._recovery_token: Optional[Mapping[str, Any]] = None

    def end_session(self) -> None:
        """Finish this session.

        It is an error to send a command with the session after it has ended.
        """
        self._server_session = None
        self._in_transaction = False

    def _check_ended(self) -> None:
        if self._server_session is None:
            raise InvalidOperation("Cannot use ended session")

    def __enter__(self) -> ClientSession:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.end_session()

    @property
    def explicit(self) -> bool:
        """Whether this session was started by the application."""
        return self._explicit

    @property
    def session_id(self) -> Mapping[str, Any]:
        """A BSON document, the opaque server session identifier."""
        self._check_ended()
        assert self._server_session is not None
        return self._server_session.session_id

    @property
    def cluster_time(self) -> Optional[ClusterTime]:
        """The cluster time returned by the last operation executed
        in this session.
        """
        return self._cluster_time

    @property
    def operation_time(self) -> Optional[Timestamp]:
        """The operation time returned by the last operation executed
        in this session.
        """
        return self._operation_time

    @property
    def has_ended(self) -> bool:
        """True if this session is finished."""
        return self._server_session is None

    @property
    def in_transaction(self) -> bool:
        """True if this session has an active multi-statement transaction."""
        return self._in_transaction

    def start_transaction(self) -> None:
        """Start a multi-statement transaction.

        The next command sent with this session carries ``startTransaction``
        and every command until :meth:`end_transaction` carries
        ``autocommit: false``.
        """
        self._check_ended()
        if self._in_transaction:
            raise InvalidOperation("Transaction already in progress")
        assert self._server_session is not None
        self._server_session.inc_transaction_id()
        self._in_transaction = True
        self._starting_transaction = True
        self._recovery_token = None

    def end_transaction(self) -> None:
        """Leave the current transaction without sending anything."""
        if not self._in_transaction:
            raise InvalidOperation("No transaction started")
        self._in_transaction = False
        self._starting_transaction = False

    def _advance_cluster_time(self, cluster_time: Optional[Mapping[str, Any]]) -> None:
        """Internal cluster time helper."""
        if self._cluster_time is None:
            self._cluster_time = cluster_time
        elif cluster_time is not None:
            if cluster_time["clusterTime"] > self._cluster_time["clusterTime"]:
                self._cluster_time = cluster_time

    def advance_cluster_time(self, cluster_time: Mapping[str, Any]) -> None:
        """Update the cluster time for this session.

        :param cluster_time: The
            :data:`~mongowire.client_session.ClientSession.cluster_time` from
            another `ClientSession` instance.
        """
        if not isinstance(cluster_time, _Mapping):
            raise TypeError(
                f"cluster_time must be a subclass of collections.Mapping, not {type(cluster_time)}"
            )
        if not isinstance(cluster_time.get("clusterTime"), Timestamp):
            raise ValueError("Invalid cluster_time")
        self._advance_cluster_time(cluster_time)

    def _advance_operation_time(self, operation_time: Optional[Timestamp]) -> None:
        """Internal operation time helper."""
        if self._operation_time is None:
            self._operation_time = operation_time
        elif operation_time is not None:
            if operation_time > self._operation_time:
                self._operation_time = operation_time

    def _process_response(self, reply: Mapping[str, Any]) -> None:
        """Process a response to a command that was run with this session."""
        self._advance_cluster_time(reply.get("$clusterTime"))
        self._advance_operation_time(reply.get("operationTime"))
        if self._in_transaction:
            recovery_token = reply.get("recoveryToken")
            if recovery_token:
                self._recovery_token = recovery_token

    def _apply_to(self, command: MutableMapping[str, Any], is_retryable: bool) -> None:
        self._check_ended()
        assert self._server_session is not None
        command["lsid"] = self._server_session.session_id

        if is_retryable:
            self._server_session.inc_transaction_id()
            command["txnNumber"] = self._server_session.transaction_id
            return

        if self._in_transaction:
            command["txnNumber"] = self._server_session.transaction_id
            command["autocommit"] = False
            if self._starting_transaction:
                command["startTransaction"] = True
                self._starting_transaction = False
            if self._recovery_token and next(iter(command)) == "commitTransaction":
                command["recoveryToken"] = self._recovery_token
        elif self._causal_consistency and self._operation_time is not None:
            if "readConcern" in command:
                read_concern = dict(command["readConcern"])
                read_concern["afterClusterTime"] = self._operation_time
                command["readConcern"] = read_concern
