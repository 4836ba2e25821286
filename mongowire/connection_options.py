# Copyright 2024-present MongoDB, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License"); you
# may not use this file except in compliance with the License.  You
# may obtain a copy of the License at
#
# https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or
# implied.  See the License for the specific language governing
# permissions and limitations under the License.

"""Options for a single connection."""
from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

from mongowire import common
from mongowire.compression_support import CompressionSettings
from mongowire.server_api import ServerApi

if TYPE_CHECKING:
    from mongowire.encryption import AutoEncrypter
    from mongowire.monitoring import _EventListener


class ConnectionOptions:
    """Read only options for a :class:`~mongowire.connection.Connection`.

    :param socket_timeout: Default per-command socket timeout in seconds.
        ``None`` or 0 means no timeout.
    :param connect_timeout: Timeout in seconds for establishing the TCP
        stream in :func:`~mongowire.connection.connect`.
    :param monitor_commands: Publish command started, succeeded and failed
        events to the registered command listeners.
    :param event_listeners: Listeners registered on every connection created
        with these options.
    :param compression_settings: The compressors offered in the handshake.
    :param server_api: Stamped onto every command.
    :param load_balanced: The server is behind a load balancer.
    :param proxy_host: When set, the connection's address is the configured
        host address instead of the socket peer.
    :param proxy_port: The proxy port.
    :param max_message_size: Override of the framing limit used before the
        server declares its own.
    :param auto_encrypter: Encrypts commands and decrypts replies for
        :class:`~mongowire.encryption.EncryptedConnection`, which
        :func:`~mongowire.connection.connect` returns when this is set.
    """

    __slots__ = (
        "__socket_timeout",
        "__connect_timeout",
        "__monitor_commands",
        "__event_listeners",
        "__compression_settings",
        "__server_api",
        "__load_balanced",
        "__proxy_host",
        "__proxy_port",
        "__max_message_size",
        "__auto_encrypter",
    )

    def __init__(
        self,
        socket_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = common.CONNECT_TIMEOUT,
        monitor_commands: bool = False,
        event_listeners: Optional[Sequence[_EventListener]] = None,
        compression_settings: Optional[CompressionSettings] = None,
        server_api: Optional[ServerApi] = None,
        load_balanced: bool = False,
        proxy_host: Optional[str] = None,
        proxy_port: Optional[int] = None,
        max_message_size: Optional[int] = None,
        auto_encrypter: Optional[AutoEncrypter] = None,
    ):
        self.__socket_timeout = common.validate("socket_timeout", socket_timeout)[1]
        self.__connect_timeout = common.validate("connect_timeout", connect_timeout)[1]
        self.__monitor_commands = common.validate("monitor_commands", monitor_commands)[1]
        self.__event_listeners = list(
            common.validate("event_listeners", event_listeners or [])[1]
        )
        if compression_settings is not None and not isinstance(
            compression_settings, CompressionSettings
        ):
            raise TypeError(
                "compression_settings must be an instance of CompressionSettings, "
                f"not {type(compression_settings)}"
            )
        self.__compression_settings = compression_settings
        if server_api is not None and not isinstance(server_api, ServerApi):
            raise TypeError(f"server_api must be an instance of ServerApi, not {type(server_api)}")
        self.__server_api = server_api
        self.__load_balanced = common.validate("load_balanced", load_balanced)[1]
        self.__proxy_host = common.validate("proxy_host", proxy_host)[1]
        self.__proxy_port = (
            common.validate("proxy_port", proxy_port)[1] if proxy_port is not None else None
        )
        self.__max_message_size = common.validate("max_message_size", max_message_size)[1]
        self.__auto_encrypter = auto_encrypter

    @property
    def socket_timeout(self) -> Optional[float]:
        """How long a send or receive on a socket can take before timing out."""
        return self.__socket_timeout

    @property
    def connect_timeout(self) -> Optional[float]:
        """How long a connection can take to be opened before timing out."""
        return self.__connect_timeout

    @property
    def monitor_commands(self) -> bool:
        return self.__monitor_commands

    @property
    def event_listeners(self) -> list[_EventListener]:
        """A copy of the configured event listeners."""
        return self.__event_listeners[:]

    @property
    def compression_settings(self) -> Optional[CompressionSettings]:
        return self.__compression_settings

    @property
    def server_api(self) -> Optional[ServerApi]:
        """A ServerApi or None."""
        return self.__server_api

    @property
    def load_balanced(self) -> bool:
        """True if this Connection is configured in load balanced mode."""
        return self.__load_balanced

    @property
    def proxy_host(self) -> Optional[str]:
        return self.__proxy_host

    @property
    def proxy_port(self) -> Optional[int]:
        return self.__proxy_port

    @property
    def max_message_size(self) -> int:
        """The framing limit until the server declares maxMessageSizeBytes."""
        return self.__max_message_size or common.MAX_MESSAGE_SIZE

    @property
    def auto_encrypter(self) -> Optional[AutoEncrypter]:
        return self.__auto_encrypter

    def __repr__(self) -> str:
        return (
            "ConnectionOptions(socket_timeout={!r}, connect_timeout={!r}, "
            "monitor_commands={!r}, compression_settings={!r}, load_balanced={!r})".format(
                self.__socket_timeout,
                self.__connect_timeout,
                self.__monitor_commands,
                self.__compression_settings,
                self.__load_balanced,
            )
        )

    def _replace(self, **kwargs: Any) -> ConnectionOptions:
        """Return a copy of these options with ``kwargs`` replaced."""
        values = {
            "socket_timeout": self.__socket_timeout,
            "connect_timeout": self.__connect_timeout,
            "monitor_commands": self.__monitor_commands,
            "event_listeners": self.__event_listeners,
            "compression_settings": self.__compression_settings,
            "server_api": self.__server_api,
            "load_balanced": self.__load_balanced,
            "proxy_host": self.__proxy_host,
            "proxy_port": self.__proxy_port,
            "max_message_size": self.__max_message_size,
            "auto_encrypter": self.__auto_encrypter,
        }
        values.update(kwargs)
        return ConnectionOptions(**values)
