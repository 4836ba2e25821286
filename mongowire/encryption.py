# Copyright 2019-present MongoDB, Inc.
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

"""Transparent automatic encryption of commands sent over a connection."""
from __future__ import annotations

import abc
from typing import TYPE_CHECKING, Any, Mapping, MutableMapping, Optional

from bson import CodecOptions
from bson.codec_options import DEFAULT_CODEC_OPTIONS

from mongowire import common
from mongowire.errors import CompatibilityError, MissingDependencyError

if TYPE_CHECKING:
    from mongowire.connection import Connection


class AutoEncrypter(abc.ABC):
    """Encrypts and decrypts MongoDB commands.

    Implementations wrap a field level encryption library. Fields such as
    ``sort`` are never encrypted, the connection restores them after
    :meth:`encrypt` returns.
    """

    @abc.abstractmethod
    async def encrypt(
        self, database: str, cmd: Mapping[str, Any], codec_options: CodecOptions
    ) -> MutableMapping[str, Any]:
        """Encrypt a MongoDB command.

        :param database: The database for this command.
        :param cmd: A command document.
        :param codec_options: The CodecOptions to use while encoding `cmd`.

        :return: The encrypted command to execute.
        """

    @abc.abstractmethod
    async def decrypt(self, response: Mapping[str, Any]) -> Mapping[str, Any]:
        """Decrypt a MongoDB command response.

        :param response: A MongoDB command response.

        :return: The decrypted command response.
        """

    def close(self) -> None:
        """Cleanup resources."""


class EncryptedConnection:
    """Wraps a :class:`~mongowire.connection.Connection` so that
    :meth:`command` encrypts every command and decrypts every reply.

    Everything else is delegated to the wrapped connection.

    :param connection: The connection to wrap.
    :param auto_encrypter: The :class:`AutoEncrypter`, by default the
        ``auto_encrypter`` of the connection's options.
    """

    def __init__(self, connection: Connection, auto_encrypter: Optional[AutoEncrypter] = None):
        self._connection = connection
        self._auto_encrypter = auto_encrypter or connection.options.auto_encrypter

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def auto_encrypter(self) -> Optional[AutoEncrypter]:
        return self._auto_encrypter

    def __getattr__(self, name: str) -> Any:
        return getattr(self._connection, name)

    async def command(
        self,
        dbname: str,
        spec: Mapping[str, Any],
        codec_options: CodecOptions = DEFAULT_CODEC_OPTIONS,
        **kwargs: Any,
    ) -> Optional[Mapping[str, Any]]:
        """Encrypt ``spec``, run it and return the decrypted reply.

        Commands sent before the handshake reply is recorded bypass
        encryption.
        """
        auto_encrypter = self._auto_encrypter
        if auto_encrypter is None:
            raise MissingDependencyError("No AutoEncrypter available for encryption")

        wire_version = self._connection.max_wire_version
        if wire_version == 0:
            return await self._connection.command(
                dbname, spec, codec_options=codec_options, **kwargs
            )
        if wire_version < common.MIN_ENCRYPTION_WIRE_VERSION:
            raise CompatibilityError("Auto-encryption requires a minimum MongoDB version of 4.2")

        # These fields are never encrypted, keep the caller's key order.
        sort = spec.get("sort") if ("find" in spec or "findAndModify" in spec) else None
        index_keys = None
        if "createIndexes" in spec:
            index_keys = [index["key"] for index in spec.get("indexes", [])]

        encrypted = await auto_encrypter.encrypt(dbname.split(".", 1)[0], spec, codec_options)
        if sort is not None:
            encrypted["sort"] = sort
        if index_keys is not None:
            for index, key in zip(encrypted["indexes"], index_keys):
                index["key"] = key

        response = await self._connection.command(
            dbname, encrypted, codec_options=codec_options, **kwargs
        )
        if response is None:
            return None
        return await auto_encrypter.decrypt(response)

    def __repr__(self) -> str:
        return f"EncryptedConnection({self._connection!r})"
