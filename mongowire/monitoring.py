# Copyright 2015-present MongoDB, Inc.
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

"""Tools to monitor connection events.

Listeners are registered per connection, either through the
``event_listeners`` option of
:class:`~mongowire.connection_options.ConnectionOptions` or with
:meth:`~mongowire.connection.Connection.add_listener`. Command listeners
must be a subclass of :class:`CommandListener` and implement
:meth:`~CommandListener.started`, :meth:`~CommandListener.succeeded`, and
:meth:`~CommandListener.failed`. Command events are only published when
``monitor_commands`` is enabled.

For example, a simple command logger might be implemented like this::

    import logging

    from mongowire import monitoring

    class CommandLogger(monitoring.CommandListener):

        def started(self, event):
            logging.info("Command {0.command_name} with request id "
                         "{0.request_id} started on connection "
                         "{0.connection_id}".format(event))

        def succeeded(self, event):
            logging.info("Command {0.command_name} with request id "
                         "{0.request_id} on connection {0.connection_id} "
                         "succeeded in {0.duration_micros} "
                         "microseconds".format(event))

        def failed(self, event):
            logging.info("Command {0.command_name} with request id "
                         "{0.request_id} on connection {0.connection_id} "
                         "failed in {0.duration_micros} "
                         "microseconds".format(event))

Connection level notifications (cluster time received, closed, pinned and
unpinned) go to subclasses of :class:`ConnectionListener` and are always
published.

.. note:: Events are delivered **synchronously** on the event loop thread.
  An exception raised by a listener is logged and never reaches the
  connection.

.. warning:: The command documents published through this API are *not* copies.
  If you intend to modify them in any way you must copy them in your event
  handler first.
"""
from __future__ import annotations

import datetime
import enum
from collections import abc
from typing import Any, Mapping, Optional, Sequence, Union

from bson.objectid import ObjectId

from mongowire.logger import _CONNECTION_LOGGER, _is_sensitive_command
from mongowire.typings import ClusterTime


class ConnectionEventType(enum.Enum):
    """The closed set of events a connection publishes."""

    COMMAND_STARTED = "commandStarted"
    COMMAND_SUCCEEDED = "commandSucceeded"
    COMMAND_FAILED = "commandFailed"
    CLUSTER_TIME_RECEIVED = "clusterTimeReceived"
    CONNECTION_CLOSED = "connectionClosed"
    CONNECTION_PINNED = "connectionPinned"
    CONNECTION_UNPINNED = "connectionUnpinned"


class _EventListener:
    """Abstract base class for all event listeners."""


class CommandListener(_EventListener):
    """Abstract base class for command listeners.

    Handles `CommandStartedEvent`, `CommandSucceededEvent`,
    and `CommandFailedEvent`.
    """

    def started(self, event: CommandStartedEvent) -> None:
        """Abstract method to handle a `CommandStartedEvent`.

        :param event: An instance of :class:`CommandStartedEvent`.
        """
        raise NotImplementedError

    def succeeded(self, event: CommandSucceededEvent) -> None:
        """Abstract method to handle a `CommandSucceededEvent`.

        :param event: An instance of :class:`CommandSucceededEvent`.
        """
        raise NotImplementedError

    def failed(self, event: CommandFailedEvent) -> None:
        """Abstract method to handle a `CommandFailedEvent`.

        :param event: An instance of :class:`CommandFailedEvent`.
        """
        raise NotImplementedError


class ConnectionListener(_EventListener):
    """Abstract base class for connection lifecycle listeners."""

    def cluster_time_received(self, event: ClusterTimeReceivedEvent) -> None:
        """Abstract method to handle a :class:`ClusterTimeReceivedEvent`."""
        raise NotImplementedError

    def closed(self, event: ConnectionClosedEvent) -> None:
        """Abstract method to handle a :class:`ConnectionClosedEvent`."""
        raise NotImplementedError

    def pinned(self, event: ConnectionPinnedEvent) -> None:
        """Abstract method to handle a :class:`ConnectionPinnedEvent`."""
        raise NotImplementedError

    def unpinned(self, event: ConnectionUnpinnedEvent) -> None:
        """Abstract method to handle a :class:`ConnectionUnpinnedEvent`."""
        raise NotImplementedError


def _to_micros(dur: datetime.timedelta) -> int:
    """Convert duration 'dur' to microseconds."""
    return int(dur.total_seconds() * 10e5)


def _validate_event_listeners(
    option: str, listeners: Sequence[_EventListener]
) -> Sequence[_EventListener]:
    """Validate event listeners"""
    if not isinstance(listeners, abc.Sequence):
        raise TypeError(f"{option} must be a list or tuple")
    for listener in listeners:
        if not isinstance(listener, _EventListener):
            raise TypeError(
                f"Listeners for {option} must be either a "
                "CommandListener or a ConnectionListener."
            )
    return listeners


def _handle_exception(event: Any) -> None:
    """Log an exception raised by a listener."""
    _CONNECTION_LOGGER.exception("Event listener raised while handling %r", event)


_ConnectionId = Union[int, str]


class _ConnectionEvent:
    """Base class for all events published by a connection."""

    __slots__ = ("__conn_id", "__address")

    event_type: ConnectionEventType

    def __init__(self, connection_id: _ConnectionId, address: str) -> None:
        self.__conn_id = connection_id
        self.__address = address

    @property
    def connection_id(self) -> _ConnectionId:
        """The id of the connection, or the monitor sentinel."""
        return self.__conn_id

    @property
    def address(self) -> str:
        """The address ("host:port") of the server."""
        return self.__address

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} connection_id: {self.connection_id!r}, address: {self.address!r}>"


class _CommandEvent(_ConnectionEvent):
    """Base class for command events."""

    __slots__ = ("__cmd_name", "__rqst_id", "__db", "__service_id")

    def __init__(
        self,
        command_name: str,
        request_id: int,
        connection_id: _ConnectionId,
        address: str,
        database_name: str,
        service_id: Optional[ObjectId] = None,
    ) -> None:
        super().__init__(connection_id, address)
        self.__cmd_name = command_name
        self.__rqst_id = request_id
        self.__db = database_name
        self.__service_id = service_id

    @property
    def command_name(self) -> str:
        """The command name."""
        return self.__cmd_name

    @property
    def request_id(self) -> int:
        """The request id for this operation."""
        return self.__rqst_id

    @property
    def database_name(self) -> str:
        """The database_name this command was sent to."""
        return self.__db

    @property
    def service_id(self) -> Optional[ObjectId]:
        """The service_id this command was sent to, or ``None``."""
        return self.__service_id

    def __repr__(self) -> str:
        return "<{} {} db: {!r}, command: {!r}, request_id: {}, connection_id: {!r}>".format(
            self.__class__.__name__,
            self.address,
            self.database_name,
            self.command_name,
            self.request_id,
            self.connection_id,
        )


class CommandStartedEvent(_CommandEvent):
    """Event published when a command starts.

    :param command: The command document as sent.
    :param database_name: The name of the database this command was run against.
    :param request_id: The request id for this operation.
    :param connection_id: The id of the connection the command was sent on.
    :param address: The address of the server.
    :param service_id: The service_id this command was sent to, or ``None``.
    """

    __slots__ = ("__cmd",)
    event_type = ConnectionEventType.COMMAND_STARTED

    def __init__(
        self,
        command: Mapping[str, Any],
        database_name: str,
        request_id: int,
        connection_id: _ConnectionId,
        address: str,
        service_id: Optional[ObjectId] = None,
    ) -> None:
        if not command:
            raise ValueError(f"{command!r} is not a valid command")
        # Command name must be first key.
        command_name = next(iter(command))
        super().__init__(
            command_name, request_id, connection_id, address, database_name, service_id
        )
        if _is_sensitive_command(command_name, command):
            self.__cmd: Mapping[str, Any] = {}
        else:
            self.__cmd = command

    @property
    def command(self) -> Mapping[str, Any]:
        """The command document."""
        return self.__cmd


class CommandSucceededEvent(_CommandEvent):
    """Event published when a command succeeds.

    A reply carrying a ``writeConcernError`` is still a success at this level.
    """

    __slots__ = ("__duration_micros", "__reply")
    event_type = ConnectionEventType.COMMAND_SUCCEEDED

    def __init__(
        self,
        duration: datetime.timedelta,
        reply: Mapping[str, Any],
        command_name: str,
        request_id: int,
        connection_id: _ConnectionId,
        address: str,
        database_name: str,
        service_id: Optional[ObjectId] = None,
        speculative_authenticate: bool = False,
    ) -> None:
        super().__init__(
            command_name, request_id, connection_id, address, database_name, service_id
        )
        self.__duration_micros = _to_micros(duration)
        if _is_sensitive_command(command_name, None, speculative_authenticate):
            self.__reply: Mapping[str, Any] = {}
        else:
            self.__reply = reply

    @property
    def duration_micros(self) -> int:
        """The duration of this operation in microseconds."""
        return self.__duration_micros

    @property
    def reply(self) -> Mapping[str, Any]:
        """The server reply document for this operation."""
        return self.__reply


class CommandFailedEvent(_CommandEvent):
    """Event published when a command fails."""

    __slots__ = ("__duration_micros", "__failure")
    event_type = ConnectionEventType.COMMAND_FAILED

    def __init__(
        self,
        duration: datetime.timedelta,
        failure: Mapping[str, Any],
        command_name: str,
        request_id: int,
        connection_id: _ConnectionId,
        address: str,
        database_name: str,
        service_id: Optional[ObjectId] = None,
    ) -> None:
        super().__init__(
            command_name, request_id, connection_id, address, database_name, service_id
        )
        self.__duration_micros = _to_micros(duration)
        self.__failure = failure

    @property
    def duration_micros(self) -> int:
        """The duration of this operation in microseconds."""
        return self.__duration_micros

    @property
    def failure(self) -> Mapping[str, Any]:
        """The server failure document for this operation."""
        return self.__failure


class ClusterTimeReceivedEvent(_ConnectionEvent):
    """Published when a reply carries ``$clusterTime``."""

    __slots__ = ("__cluster_time",)
    event_type = ConnectionEventType.CLUSTER_TIME_RECEIVED

    def __init__(self, cluster_time: ClusterTime, connection_id: _ConnectionId, address: str):
        super().__init__(connection_id, address)
        self.__cluster_time = cluster_time

    @property
    def cluster_time(self) -> ClusterTime:
        return self.__cluster_time


class ConnectionClosedEvent(_ConnectionEvent):
    """Published exactly once, after every pending operation has been failed."""

    __slots__ = ("__error",)
    event_type = ConnectionEventType.CONNECTION_CLOSED

    def __init__(
        self, connection_id: _ConnectionId, address: str, error: Optional[Exception] = None
    ):
        super().__init__(connection_id, address)
        self.__error = error

    @property
    def error(self) -> Optional[Exception]:
        """The error that closed the connection, None for a requested close."""
        return self.__error


class ConnectionPinnedEvent(_ConnectionEvent):
    """Published when a connection is pinned to a cursor or transaction."""

    __slots__ = ("__pin_type",)
    event_type = ConnectionEventType.CONNECTION_PINNED

    def __init__(self, pin_type: str, connection_id: _ConnectionId, address: str):
        super().__init__(connection_id, address)
        self.__pin_type = pin_type

    @property
    def pin_type(self) -> str:
        return self.__pin_type


class ConnectionUnpinnedEvent(ConnectionPinnedEvent):
    """Published when a pinned connection is released."""

    __slots__ = ()
    event_type = ConnectionEventType.CONNECTION_UNPINNED


class _EventListeners:
    """The listeners registered on one connection.

    :param listeners: A list of event listeners.
    :param monitor_commands: Publish command events.
    """

    def __init__(
        self, listeners: Optional[Sequence[_EventListener]] = None, monitor_commands: bool = False
    ):
        self.__command_listeners: list[CommandListener] = []
        self.__connection_listeners: list[ConnectionListener] = []
        self.__monitor_commands = monitor_commands
        for lst in listeners or ():
            self.add(lst)

    def add(self, listener: _EventListener) -> None:
        _validate_event_listeners("listener", [listener])
        if isinstance(listener, CommandListener):
            self.__command_listeners.append(listener)
        if isinstance(listener, ConnectionListener):
            self.__connection_listeners.append(listener)

    def remove(self, listener: _EventListener) -> None:
        if listener in self.__command_listeners:
            self.__command_listeners.remove(listener)
        if listener in self.__connection_listeners:
            self.__connection_listeners.remove(listener)

    @property
    def enabled_for_commands(self) -> bool:
        """Are command events published and is any CommandListener registered?"""
        return self.__monitor_commands and bool(self.__command_listeners)

    @property
    def enabled_for_connection(self) -> bool:
        """Are any ConnectionListener instances registered?"""
        return bool(self.__connection_listeners)

    @property
    def event_listeners(self) -> list[_EventListener]:
        """List of registered event listeners."""
        return [*self.__command_listeners, *self.__connection_listeners]

    def publish_command_start(
        self,
        command: Mapping[str, Any],
        database_name: str,
        request_id: int,
        connection_id: _ConnectionId,
        address: str,
        service_id: Optional[ObjectId] = None,
    ) -> None:
        """Publish a CommandStartedEvent to all command listeners."""
        event = CommandStartedEvent(
            command, database_name, request_id, connection_id, address, service_id
        )
        for subscriber in self.__command_listeners:
            try:
                subscriber.started(event)
            except Exception:
                _handle_exception(event)

    def publish_command_success(
        self,
        duration: datetime.timedelta,
        reply: Mapping[str, Any],
        command_name: str,
        request_id: int,
        connection_id: _ConnectionId,
        address: str,
        database_name: str,
        service_id: Optional[ObjectId] = None,
        speculative_authenticate: bool = False,
    ) -> None:
        """Publish a CommandSucceededEvent to all command listeners."""
        event = CommandSucceededEvent(
            duration,
            reply,
            command_name,
            request_id,
            connection_id,
            address,
            database_name,
            service_id,
            speculative_authenticate,
        )
        for subscriber in self.__command_listeners:
            try:
                subscriber.succeeded(event)
            except Exception:
                _handle_exception(event)

    def publish_command_failure(
        self,
        duration: datetime.timedelta,
        failure: Mapping[str, Any],
        command_name: str,
        request_id: int,
        connection_id: _ConnectionId,
        address: str,
        database_name: str,
        service_id: Optional[ObjectId] = None,
    ) -> None:
        """Publish a CommandFailedEvent to all command listeners."""
        event = CommandFailedEvent(
            duration,
            failure,
            command_name,
            request_id,
            connection_id,
            address,
            database_name,
            service_id,
        )
        for subscriber in self.__command_listeners:
            try:
                subscriber.failed(event)
            except Exception:
                _handle_exception(event)

    def publish_cluster_time_received(
        self, cluster_time: ClusterTime, connection_id: _ConnectionId, address: str
    ) -> None:
        event = ClusterTimeReceivedEvent(cluster_time, connection_id, address)
        for subscriber in self.__connection_listeners:
            try:
                subscriber.cluster_time_received(event)
            except Exception:
                _handle_exception(event)

    def publish_connection_closed(
        self, connection_id: _ConnectionId, address: str, error: Optional[Exception] = None
    ) -> None:
        event = ConnectionClosedEvent(connection_id, address, error)
        for subscriber in self.__connection_listeners:
            try:
                subscriber.closed(event)
            except Exception:
                _handle_exception(event)

    def publish_connection_pinned(
        self, pin_type: str, connection_id: _ConnectionId, address: str
    ) -> None:
        event = ConnectionPinnedEvent(pin_type, connection_id, address)
        for subscriber in self.__connection_listeners:
            try:
                subscriber.pinned(event)
            except Exception:
                _handle_exception(event)

    def publish_connection_unpinned(
        self, pin_type: str, connection_id: _ConnectionId, address: str
    ) -> None:
        event = ConnectionUnpinnedEvent(pin_type, connection_id, address)
        for subscriber in self.__connection_listeners:
            try:
                subscriber.unpinned(event)
            except Exception:
                _handle_exception(event)
