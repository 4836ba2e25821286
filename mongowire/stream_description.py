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

"""The negotiated capabilities of one connection."""
from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from bson.objectid import ObjectId

from mongowire import common
from mongowire.compression_support import (
    CompressionSettings,
    SnappyContext,
    ZlibContext,
    ZstdContext,
)
from mongowire.errors import InvalidOperation


class StreamDescription:
    """Server capability snapshot for one connection.

    Before the handshake reply is recorded the description reports wire
    version 0 and the default size limits. :meth:`receive_response` fills it
    from a hello reply exactly once, after which the description is frozen
    and every further assignment raises
    :exc:`~mongowire.errors.InvalidOperation`.
    """

    __slots__ = (
        "address",
        "load_balanced",
        "compression_settings",
        "_hello",
        "_compressor",
        "_compression_context",
        "_frozen",
    )

    def __init__(
        self,
        address: str,
        compression_settings: Optional[CompressionSettings] = None,
        load_balanced: bool = False,
    ) -> None:
        self.address = address
        self.load_balanced = load_balanced
        self.compression_settings = compression_settings
        self._hello: Mapping[str, Any] = {}
        self._compressor: Optional[str] = None
        self._compression_context: Union[SnappyContext, ZlibContext, ZstdContext, None] = None
        self._frozen = False

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_frozen", False):
            raise InvalidOperation(
                f"Cannot set {name!r}: the stream description of {self.address} is frozen"
            )
        object.__setattr__(self, name, value)

    def receive_response(self, hello: Mapping[str, Any]) -> None:
        """Record the handshake reply and freeze this description."""
        if self._frozen:
            raise InvalidOperation(
                f"The stream description of {self.address} has already received a handshake reply"
            )
        self._hello = hello
        if self.compression_settings is not None:
            offered = self.compression_settings.compressors
            agreed = [name for name in hello.get("compression", []) if name in offered]
            if agreed:
                self._compressor = agreed[0]
                self._compression_context = self.compression_settings.get_compression_context(
                    agreed
                )
        if "serviceId" in hello:
            self.load_balanced = True
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def hello(self) -> Mapping[str, Any]:
        return self._hello

    @property
    def min_wire_version(self) -> int:
        return self._hello.get("minWireVersion", common.MIN_WIRE_VERSION)

    @property
    def max_wire_version(self) -> int:
        return self._hello.get("maxWireVersion", common.MAX_WIRE_VERSION)

    @property
    def max_bson_size(self) -> int:
        return self._hello.get("maxBsonObjectSize", common.MAX_BSON_SIZE)

    @property
    def max_message_size(self) -> int:
        """The framing limit: the server's maxMessageSizeBytes, 64 MiB when unknown."""
        return self._hello.get("maxMessageSizeBytes", common.MAX_MESSAGE_SIZE)

    @property
    def logical_session_timeout_minutes(self) -> Optional[int]:
        return self._hello.get("logicalSessionTimeoutMinutes")

    @property
    def compressors(self) -> Optional[list[str]]:
        """The compressors the server offered in its handshake reply."""
        return self._hello.get("compression")

    @property
    def compressor(self) -> Optional[str]:
        """The negotiated compressor name, or None."""
        return self._compressor

    @property
    def compression_context(self) -> Union[SnappyContext, ZlibContext, ZstdContext, None]:
        return self._compression_context

    @property
    def zlib_compression_level(self) -> Optional[int]:
        if self.compression_settings is None:
            return None
        return self.compression_settings.zlib_compression_level

    @property
    def is_sharded(self) -> bool:
        """True when the server is a mongos."""
        return self._hello.get("msg") == "isdbgrid"

    @property
    def service_id(self) -> Optional[ObjectId]:
        return self._hello.get("serviceId")

    @property
    def server_connection_id(self) -> Optional[int]:
        return self._hello.get("connectionId")

    @property
    def hello_ok(self) -> bool:
        return self._hello.get("helloOk", False)

    @property
    def supports_sessions(self) -> bool:
        return self.logical_session_timeout_minutes is not None

    @property
    def supports_op_msg(self) -> bool:
        return self.max_wire_version >= common.MIN_OP_MSG_WIRE_VERSION

    def __repr__(self) -> str:
        return "<{} {} frozen={!r} max_wire_version={!r} compressor={!r}>".format(
            self.__class__.__name__,
            self.address,
            self._frozen,
            self.max_wire_version,
            self._compressor,
        )
