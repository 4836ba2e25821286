# Copyright 2024-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you
# may not use this file except in compliance with the License.  You
# may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.  See the License for the specific language governing
# permissions and limitations under the License.

"""One connection to a MongoDB server: command dispatch, reply matching and
the connection lifecycle.

A :class:`Connection` is created by an external factory (a pool, or
:func:`connect`) around an established stream. It is *ready* as soon as it
exists and *closed* after :meth:`Connection.destroy` or any fatal transport
or framing error. Closed connections are never reused.
"""
from __future__ import annotations

import asyncio
import datetime
import inspect
import logging
import socket
import time
import uuid
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncGenerator,
    Mapping,
    Optional,
    Union,
)

from bson import CodecOptions
from bson.codec_options import DEFAULT_CODEC_OPTIONS
from bson.objectid import ObjectId

from mongowire.connection_options import ConnectionOptions
from mongowire.encryption import EncryptedConnection
from mongowire.errors import (
    MongoWireError,
    NetworkError,
    NetworkTimeout,
    OperationFailure,
    UnexpectedServerResponseError,
    WriteConcernError,
    _OperationCancelled,
)
from mongowire.logger import (
    _COMMAND_LOGGER,
    _CONNECTION_LOGGER,
    _HELLO_COMMANDS,
    _CommandStatusMessage,
    _ConnectionStatusMessage,
    _debug_log,
)
from mongowire.message import _convert_exception, _DecodeOptions, _RequestMessage
from mongowire.monitoring import _EventListener, _EventListeners
from mongowire.network import (
    _check_command_response,
    _Operation,
    _PendingOperations,
    _prepare_command,
)
from mongowire.network_layer import MongoWireProtocol, _unpack_message
from mongowire.stream_description import StreamDescription

if TYPE_CHECKING:
    from mongowire.client_session import ClientSession
    from mongowire.read_preferences import _ServerMode
    from mongowire.server_api import ServerApi
    from mongowire.typings import ClusterTime, _Address, _ReplyHandler

# The id of connections dedicated to server monitoring.
MONITOR_CONNECTION_ID = "<monitor>"

# Delay between the socket timer firing and the timeout error, a reply
# processed in between cancels the error.
_DELAYED_TIMEOUT = 0.001


class _CancellationContext:
    """The cancellation signal of one connection, tripped when it closes."""

    def __init__(self) -> None:
        self._cancelled = False
        self._error: Optional[BaseException] = None

    def cancel(self, error: Optional[BaseException] = None) -> None:
        """Cancel this context."""
        self._cancelled = True
        if self._error is None:
            self._error = error

    @property
    def cancelled(self) -> bool:
        """Was cancel called?"""
        return self._cancelled

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def check(self) -> None:
        """Raise :exc:`~mongowire.errors._OperationCancelled` once cancelled."""
        if self._cancelled:
            raise _OperationCancelled(str(self._error or "operation cancelled"))


def _format_address(host: str, port: Optional[int]) -> str:
    if port is None:
        return host
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _split_address(address: str) -> tuple[str, Optional[int]]:
    """Split a formatted address into the host and port log fields."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        return address, None
    return host.strip("[]"), int(port)


def _stream_identifier(
    protocol: MongoWireProtocol, options: ConnectionOptions, host_address: Optional[_Address]
) -> str:
    if options.proxy_host and host_address is not None:
        return _format_address(*host_address)
    peer = protocol.get_extra_info("peername")
    if isinstance(peer, (tuple, list)) and len(peer) >= 2:
        return _format_address(peer[0], peer[1])
    return uuid.uuid4().hex


class Connection:
    """A connection to a MongoDB server.

    :param protocol: The :class:`~mongowire.network_layer.MongoWireProtocol`
        bound to an established transport.
    :param options: The :class:`~mongowire.connection_options.ConnectionOptions`.
    :param id: The id of this connection in its pool, or
        :data:`MONITOR_CONNECTION_ID`.
    :param generation: The pool generation this connection was created in.
    :param is_monitoring: This connection only runs heartbeats.
    :param host_address: The configured ``(host, port)`` of the server.
    """

    def __init__(
        self,
        protocol: MongoWireProtocol,
        options: Optional[ConnectionOptions] = None,
        *,
        id: Union[int, str],
        generation: int = 0,
        is_monitoring: bool = False,
        host_address: Optional[_Address] = None,
    ):
        self.options = options or ConnectionOptions()
        self.id = id
        self.generation = generation
        self.is_monitoring_connection = is_monitoring or id == MONITOR_CONNECTION_ID
        self.address = _stream_identifier(protocol, self.options, host_address)
        self.description = StreamDescription(
            self.address, self.options.compression_settings, self.options.load_balanced
        )
        self.cancel_context = _CancellationContext()
        self.closed = False
        self.last_hello_ms: Optional[float] = None
        self.last_use_time = time.monotonic()
        self.pinned: set[str] = set()
        self._protocol = protocol
        self._listeners = _EventListeners(
            self.options.event_listeners, self.options.monitor_commands
        )
        self._pending = _PendingOperations(self.is_monitoring_connection)
        self._hello: Optional[Mapping[str, Any]] = None
        self._cluster_time: Optional[ClusterTime] = None
        self._last_timeout: Optional[float] = self.options.socket_timeout
        self._delayed_timeout: Optional[asyncio.TimerHandle] = None
        self._closed_waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        protocol.attach(self)

    @property
    def hello(self) -> Optional[Mapping[str, Any]]:
        """The handshake reply, None until it is recorded."""
        return self._hello

    @hello.setter
    def hello(self, response: Mapping[str, Any]) -> None:
        self.description.receive_response(response)
        self._hello = response
        self._protocol.max_message_size = self.description.max_message_size

    @property
    def hello_ok(self) -> bool:
        """True once the server has advertised support for ``hello``."""
        return self.description.hello_ok

    @property
    def service_id(self) -> Optional[ObjectId]:
        return self.description.service_id

    @property
    def load_balanced(self) -> bool:
        return self.description.load_balanced

    @property
    def cluster_time(self) -> Optional[ClusterTime]:
        """The last ``$clusterTime`` received on this connection."""
        return self._cluster_time

    @property
    def server_api(self) -> Optional[ServerApi]:
        return self.options.server_api

    @property
    def max_wire_version(self) -> int:
        return self.description.max_wire_version

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def mark_available(self) -> None:
        self.last_use_time = time.monotonic()

    def idle_time_seconds(self) -> float:
        """Seconds since this connection was last marked available."""
        return time.monotonic() - self.last_use_time

    def add_listener(self, listener: _EventListener) -> None:
        self._listeners.add(listener)

    def remove_listener(self, listener: _EventListener) -> None:
        self._listeners.remove(listener)

    def pin(self, pin_type: str) -> None:
        """Pin this connection to a transaction or cursor."""
        self.pinned.add(pin_type)
        self._listeners.publish_connection_pinned(pin_type, self.id, self.address)
        self._log_connection(_ConnectionStatusMessage.CONN_PINNED, pinType=pin_type)

    def unpin(self, pin_type: str) -> None:
        self.pinned.discard(pin_type)
        self._listeners.publish_connection_unpinned(pin_type, self.id, self.address)
        self._log_connection(_ConnectionStatusMessage.CONN_UNPINNED, pinType=pin_type)

    def _log_connection(self, message: _ConnectionStatusMessage, **fields: Any) -> None:
        if _CONNECTION_LOGGER.isEnabledFor(logging.DEBUG):
            host, port = _split_address(self.address)
            _debug_log(
                _CONNECTION_LOGGER,
                message=message,
                serverHost=host,
                serverPort=port,
                driverConnectionId=self.id,
                **fields,
            )

    # Protocol callbacks.

    def _on_message(self, data: bytes) -> None:
        self._cancel_delayed_timeout()
        self._protocol.settimeout(None)
        try:
            reply = _unpack_message(data)
        except MongoWireError as exc:
            self._on_error(exc)
            return

        try:
            operation = self._pending.match(reply)
        except MongoWireError as exc:
            self._on_error(exc)
            return
        if self._pending:
            # Still waiting on this exchange or a pipelined one.
            self._protocol.settimeout(self._last_timeout)
        if operation is None:
            return

        try:
            docs = reply.parse(operation.decode_options)
        except Exception as exc:
            self._pending.discard_operation(operation)
            operation.complete(error=exc)
            return

        document = docs[0] if docs else None
        if document is not None:
            if operation.session is not None:
                operation.session._process_response(document)
            cluster_time = document.get("$clusterTime")
            if cluster_time is not None:
                self._receive_cluster_time(cluster_time)
            try:
                _check_command_response(document, self.description.max_wire_version)
            except OperationFailure as exc:
                self._pending.discard_operation(operation)
                operation.complete(error=exc)
                return
        operation.complete(reply=document, more_to_come=reply.more_to_come)

    def _receive_cluster_time(self, cluster_time: ClusterTime) -> None:
        self._cluster_time = cluster_time
        self._listeners.publish_cluster_time_received(cluster_time, self.id, self.address)
        self._log_connection(
            _ConnectionStatusMessage.CLUSTER_TIME_RECEIVED, clusterTime=cluster_time
        )

    def _on_error(self, error: BaseException) -> None:
        self._cleanup(error, force=True)

    def _on_close(self, exc: Optional[BaseException] = None) -> None:
        if self.closed:
            return
        error = NetworkError(f"connection {self.id} to {self.address} closed")
        error.__cause__ = exc
        self._cleanup(error, force=True)

    def _on_timeout(self) -> None:
        if self.closed:
            return
        loop = asyncio.get_running_loop()
        self._delayed_timeout = loop.call_later(_DELAYED_TIMEOUT, self._timed_out)

    def _timed_out(self) -> None:
        self._delayed_timeout = None
        error = NetworkTimeout(
            f"connection {self.id} to {self.address} timed out",
            before_handshake=self._hello is None,
        )
        self._cleanup(error, force=True)

    def _cancel_delayed_timeout(self) -> None:
        if self._delayed_timeout is not None:
            self._delayed_timeout.cancel()
            self._delayed_timeout = None

    # Lifecycle.

    def _cleanup(self, error: Optional[BaseException], force: bool) -> None:
        """Close this connection exactly once.

        Every pending operation receives the closing error before the
        closed event is published.
        """
        if self.closed:
            return
        self.closed = True
        closing_error = error or NetworkError(f"connection {self.id} to {self.address} closed")
        self.cancel_context.cancel(closing_error)
        self._cancel_delayed_timeout()
        self._protocol.settimeout(None)
        if force:
            self._protocol.abort()
        else:
            self._protocol.close()

        self._pending.fail_all(closing_error)

        self._listeners.publish_connection_closed(self.id, self.address, error)
        self._log_connection(
            _ConnectionStatusMessage.CONN_CLOSED,
            reason="An error occurred while using the connection" if error else "Connection closed",
            error=error,
        )
        if not self._closed_waiter.done():
            self._closed_waiter.set_result(None)

    async def destroy(self, force: bool = False) -> None:
        """Close this connection.

        Safe to call more than once. Returns once the closed notification
        has been published, immediately when the connection is already
        closed.

        :param force: Abort the transport instead of flushing buffered writes.
        """
        self._cleanup(None, force)
        await asyncio.shield(self._closed_waiter)

    # Commands.

    async def _write(
        self,
        msg: _RequestMessage,
        operation: Optional[_Operation],
        socket_timeout: Optional[float],
    ) -> None:
        """Register ``operation`` then write ``msg``.

        The operation is unregistered again when the write fails.
        """
        self.cancel_context.check()
        if operation is not None:
            self._pending.add(operation)
            self._last_timeout = socket_timeout
            self._protocol.settimeout(socket_timeout)
        try:
            await self._protocol.write(msg.to_wire(self.description.compression_context))
        except BaseException as exc:
            if operation is not None:
                self._pending.discard_operation(operation)
            if self.cancel_context.cancelled:
                raise _OperationCancelled(str(self.cancel_context.error)) from exc
            if isinstance(exc, OSError):
                error = NetworkError(f"connection {self.id} to {self.address}: {exc}")
                self._cleanup(error, force=True)
                raise error from exc
            raise

    async def _exchange(
        self,
        dbname: str,
        spec: Mapping[str, Any],
        read_preference: Optional[_ServerMode] = None,
        session: Optional[ClientSession] = None,
        write_concern: Optional[Mapping[str, Any]] = None,
        codec_options: CodecOptions = DEFAULT_CODEC_OPTIONS,
        raw: bool = False,
        validate_utf8: bool = True,
        documents_returned_in: Optional[str] = None,
        no_response: bool = False,
        exhaust_allowed: bool = False,
        socket_timeout: Optional[float] = None,
        retryable_write: bool = False,
    ) -> AsyncGenerator[tuple[Optional[Mapping[str, Any]], bool], None]:
        """Send one command and yield ``(reply, more_to_come)`` for each reply."""
        self.cancel_context.check()
        dbname = dbname.split(".", 1)[0]
        decode_options = _DecodeOptions(codec_options, raw, validate_utf8, documents_returned_in)
        msg, cmd = _prepare_command(
            self,
            dbname,
            spec,
            read_preference,
            session,
            write_concern,
            codec_options,
            no_response,
            exhaust_allowed,
            retryable_write,
        )
        name = next(iter(spec))
        request_id = msg.request_id
        speculative_hello = name.lower() in _HELLO_COMMANDS and "speculativeAuthenticate" in cmd
        publish = self._listeners.enabled_for_commands
        host, port = _split_address(self.address)
        start = datetime.datetime.now()

        if publish:
            self._listeners.publish_command_start(
                cmd, dbname, request_id, self.id, self.address, self.service_id
            )
        if _COMMAND_LOGGER.isEnabledFor(logging.DEBUG):
            _debug_log(
                _COMMAND_LOGGER,
                message=_CommandStatusMessage.STARTED,
                command=cmd,
                commandName=name,
                databaseName=dbname,
                requestId=request_id,
                operationId=request_id,
                driverConnectionId=self.id,
                serverConnectionId=self.description.server_connection_id,
                serverHost=host,
                serverPort=port,
                serviceId=self.service_id,
            )

        def succeeded(reply: Mapping[str, Any]) -> None:
            duration = datetime.datetime.now() - start
            if name.lower() in _HELLO_COMMANDS:
                self.last_hello_ms = duration.total_seconds() * 1000
            if publish:
                self._listeners.publish_command_success(
                    duration,
                    reply,
                    name,
                    request_id,
                    self.id,
                    self.address,
                    dbname,
                    self.service_id,
                    speculative_authenticate=speculative_hello,
                )
            if _COMMAND_LOGGER.isEnabledFor(logging.DEBUG):
                _debug_log(
                    _COMMAND_LOGGER,
                    message=_CommandStatusMessage.SUCCEEDED,
                    durationMS=duration,
                    reply=reply,
                    commandName=name,
                    databaseName=dbname,
                    requestId=request_id,
                    operationId=request_id,
                    driverConnectionId=self.id,
                    serverConnectionId=self.description.server_connection_id,
                    serverHost=host,
                    serverPort=port,
                    serviceId=self.service_id,
                    speculative_authenticate=speculative_hello,
                )

        operation = None
        if not no_response:
            operation = _Operation(request_id, name, dbname, session, decode_options)
        if socket_timeout is None:
            socket_timeout = self.options.socket_timeout
        try:
            await self._write(msg, operation, socket_timeout)
            if operation is None:
                succeeded({"ok": 1})
                yield None, False
                return
            more_to_come = True
            while more_to_come:
                reply, more_to_come = await operation.next_reply()
                succeeded(reply if reply is not None else {})
                yield reply, more_to_come
        except WriteConcernError as exc:
            # The reply itself was ok: 1.
            succeeded(exc.details or {})
            raise
        except (Exception, asyncio.CancelledError) as exc:
            duration = datetime.datetime.now() - start
            if isinstance(exc, OperationFailure):
                failure: Mapping[str, Any] = exc.details or {}
            else:
                failure = _convert_exception(exc)
            if publish:
                self._listeners.publish_command_failure(
                    duration,
                    failure,
                    name,
                    request_id,
                    self.id,
                    self.address,
                    dbname,
                    self.service_id,
                )
            if _COMMAND_LOGGER.isEnabledFor(logging.DEBUG):
                _debug_log(
                    _COMMAND_LOGGER,
                    message=_CommandStatusMessage.FAILED,
                    durationMS=duration,
                    failure=failure,
                    commandName=name,
                    databaseName=dbname,
                    requestId=request_id,
                    operationId=request_id,
                    driverConnectionId=self.id,
                    serverConnectionId=self.description.server_connection_id,
                    serverHost=host,
                    serverPort=port,
                    serviceId=self.service_id,
                    isServerSideError=isinstance(exc, OperationFailure),
                )
            raise
        finally:
            if operation is not None and not operation.finished:
                self._pending.discard_operation(operation)

    async def stream_command(
        self, dbname: str, spec: Mapping[str, Any], **kwargs: Any
    ) -> AsyncGenerator[Optional[Mapping[str, Any]], None]:
        """Send one command and yield every reply the server sends for it.

        Takes the same options as :meth:`command`. With
        ``exhaust_allowed=True`` the server may stream several replies, the
        generator finishes after the reply without ``moreToCome``.
        """
        exchange = self._exchange(dbname, spec, **kwargs)
        try:
            async for reply, _ in exchange:
                yield reply
        finally:
            await exchange.aclose()

    async def command(
        self,
        dbname: str,
        spec: Mapping[str, Any],
        read_preference: Optional[_ServerMode] = None,
        session: Optional[ClientSession] = None,
        write_concern: Optional[Mapping[str, Any]] = None,
        codec_options: CodecOptions = DEFAULT_CODEC_OPTIONS,
        raw: bool = False,
        validate_utf8: bool = True,
        documents_returned_in: Optional[str] = None,
        no_response: bool = False,
        socket_timeout: Optional[float] = None,
        retryable_write: bool = False,
    ) -> Optional[Mapping[str, Any]]:
        """Execute a command and return its reply.

        :param dbname: name of the database on which to run the command. A
            namespace such as ``"db.collection"`` is accepted.
        :param spec: a command document as an ordered dict type, eg SON.
        :param read_preference: a read preference
        :param session: optional ClientSession instance.
        :param write_concern: the write concern document for this command.
        :param codec_options: a CodecOptions instance
        :param raw: return :class:`~bson.raw_bson.RawBSONDocument` replies.
        :param validate_utf8: when False, replace invalid UTF-8 instead of
            raising.
        :param documents_returned_in: with ``raw``, the field under
            ``cursor`` returned as raw documents.
        :param no_response: do not wait for a reply and return None.
        :param socket_timeout: override the connection's socket timeout.
        :param retryable_write: increment the session's transaction number.
        """
        exchange = self._exchange(
            dbname,
            spec,
            read_preference,
            session,
            write_concern,
            codec_options,
            raw,
            validate_utf8,
            documents_returned_in,
            no_response,
            False,
            socket_timeout,
            retryable_write,
        )
        try:
            async for reply, _ in exchange:
                return reply
        finally:
            await exchange.aclose()
        raise UnexpectedServerResponseError("Unable to get response from server")

    async def exhaust_command(
        self,
        dbname: str,
        spec: Mapping[str, Any],
        reply_handler: _ReplyHandler,
        **kwargs: Any,
    ) -> None:
        """Execute a command that may stream several replies.

        ``reply_handler`` is called (and awaited, if it returns an
        awaitable) with each reply in order. Returns once the server sends a
        reply without ``moreToCome``. Takes the same options as
        :meth:`command`.
        """
        kwargs["exhaust_allowed"] = True
        exchange = self._exchange(dbname, spec, **kwargs)
        try:
            async for reply, more_to_come in exchange:
                result = reply_handler(reply)
                if inspect.isawaitable(result):
                    await result
                if not more_to_come:
                    return
        finally:
            await exchange.aclose()
        raise UnexpectedServerResponseError("Server ended moreToCome unexpectedly")

    def __repr__(self) -> str:
        return "Connection(id={!r}, address={!r}){} at {}".format(
            self.id,
            self.address,
            self.closed and " CLOSED" or "",
            id(self),
        )


async def connect(
    address: _Address,
    options: Optional[ConnectionOptions] = None,
    *,
    id: Union[int, str],
    generation: int = 0,
    is_monitoring: bool = False,
) -> Union[Connection, EncryptedConnection]:
    """Open a TCP stream to ``address`` and return a ready :class:`Connection`.

    The handshake is left to the caller: send ``hello`` with
    :meth:`Connection.command` and record the reply with
    :attr:`Connection.hello`. With an ``auto_encrypter`` configured the
    connection is returned wrapped in an
    :class:`~mongowire.encryption.EncryptedConnection`.
    """
    options = options or ConnectionOptions()
    host, port = address
    loop = asyncio.get_running_loop()
    try:
        transport, protocol = await asyncio.wait_for(
            loop.create_connection(
                lambda: MongoWireProtocol(options.max_message_size), host=host, port=port
            ),
            timeout=options.connect_timeout,
        )
    except asyncio.TimeoutError as exc:
        raise NetworkTimeout(
            f"{_format_address(host, port)}: timed out", before_handshake=True
        ) from exc
    except OSError as exc:
        raise NetworkError(f"{_format_address(host, port)}: {exc}") from exc

    sock = transport.get_extra_info("socket")
    if sock is not None and sock.family in (socket.AF_INET, socket.AF_INET6):
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, True)
    conn = Connection(
        protocol,
        options,
        id=id,
        generation=generation,
        is_monitoring=is_monitoring,
        host_address=address,
    )
    if options.auto_encrypter is not None:
        return EncryptedConnection(conn)
    return conn
