# Copyright 2009-present MongoDB, Inc.
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

"""Exceptions raised by mongowire."""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional

from bson.errors import InvalidDocument


class MongoWireError(Exception):
    """Base class for all mongowire exceptions."""

    def __init__(self, message: str = "", error_labels: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self._message = message
        self._error_labels = set(error_labels or [])

    def has_error_label(self, label: str) -> bool:
        """Return True if this error contains the given label."""
        return label in self._error_labels

    def _add_error_label(self, label: str) -> None:
        """Add the given label to this error."""
        self._error_labels.add(label)

    def _remove_error_label(self, label: str) -> None:
        """Remove the given label from this error."""
        self._error_labels.discard(label)

    @property
    def timeout(self) -> bool:
        """True if this error was caused by a timeout."""
        return False


class ProtocolError(MongoWireError):
    """Raised for failures related to the wire protocol.

    This covers malformed frames, declared message lengths that are
    negative or exceed the server's maximum message size, unsupported
    opcodes or flags and malformed message sections.
    """


class InvalidPendingOperationCount(ProtocolError):
    """Raised when a monitoring connection receives a reply that matches no
    pending operation while more than one operation is pending.
    """


class ConnectionFailure(MongoWireError):
    """Raised when a connection to the database cannot be made or is lost."""


class NetworkError(ConnectionFailure):
    """Raised when the transport underlying a connection is closed or broken.

    Subclass of :exc:`~mongowire.errors.ConnectionFailure`.
    """

    errors: Any
    details: Any

    def __init__(self, message: str = "", errors: Optional[Mapping[str, Any]] = None) -> None:
        error_labels = None
        if errors is not None and isinstance(errors, dict):
            error_labels = errors.get("errorLabels")
        super().__init__(message, error_labels)
        self.errors = self.details = errors or {}


class NetworkTimeout(NetworkError):
    """An operation on an open connection exceeded its socket timeout.

    :attr:`before_handshake` is True when the connection timed out before
    the handshake reply was recorded.
    """

    def __init__(
        self,
        message: str = "",
        errors: Optional[Mapping[str, Any]] = None,
        before_handshake: bool = False,
    ) -> None:
        super().__init__(message, errors)
        self.before_handshake = before_handshake

    @property
    def timeout(self) -> bool:
        return True


class ConfigurationError(MongoWireError):
    """Raised when something is incorrectly configured."""


class CompatibilityError(ConfigurationError):
    """Raised when a feature is requested that the negotiated server or
    session capabilities do not support.
    """


class MissingDependencyError(ConfigurationError):
    """Raised when an optional subsystem or library is required but is not
    available, for example a compression library or an auto encrypter.
    """


class InvalidOperation(MongoWireError):
    """Raised when a client attempts to perform an invalid operation."""


class UnexpectedServerResponseError(MongoWireError):
    """Raised when the server ends a reply stream without a terminal reply."""


def _format_detailed_error(message: str, details: Optional[Any]) -> str:
    if details is not None:
        message = f"{message}, full error: {details}"
    return message


class OperationFailure(MongoWireError):
    """Raised when a database operation fails."""

    def __init__(
        self,
        error: str,
        code: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
        max_wire_version: Optional[int] = None,
    ) -> None:
        error_labels = None
        if details is not None:
            error_labels = details.get("errorLabels")
        super().__init__(_format_detailed_error(error, details), error_labels=error_labels)
        self.__code = code
        self.__details = details
        self.__max_wire_version = max_wire_version

    @property
    def _max_wire_version(self) -> Optional[int]:
        return self.__max_wire_version

    @property
    def code(self) -> Optional[int]:
        """The error code returned by the server, if any."""
        return self.__code

    @property
    def details(self) -> Optional[Mapping[str, Any]]:
        """The complete error document returned by the server."""
        return self.__details

    @property
    def timeout(self) -> bool:
        return self.__code in (50,)


class CursorNotFound(OperationFailure):
    """Raised when the server reports that a cursor id is no longer valid."""


class ExecutionTimeout(OperationFailure):
    """Raised when a database operation times out, exceeding the $maxTimeMS
    set in the query or command option.
    """

    @property
    def timeout(self) -> bool:
        return True


class WriteConcernError(OperationFailure):
    """Raised when a command succeeded but its write concern was not
    satisfied.

    :attr:`details` is the complete reply document, whose ``ok`` field is
    still 1.
    """

    @property
    def timeout(self) -> bool:
        error = (self.details or {}).get("writeConcernError") or {}
        return error.get("code") == 50 or bool(error.get("errInfo", {}).get("wtimeout"))


class DocumentTooLarge(InvalidDocument):
    """Raised when an encoded document is too large for the connected server."""


class _OperationCancelled(NetworkError):
    """Internal error raised when a socket operation is cancelled."""
