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

"""Connection level wire protocol engine for MongoDB."""
from __future__ import annotations

from mongowire._version import __version__, version, version_tuple  # noqa: F401
from mongowire.client_session import ClientSession  # noqa: F401
from mongowire.common import (  # noqa: F401
    MAX_BSON_SIZE,
    MAX_MESSAGE_SIZE,
    MIN_OP_MSG_WIRE_VERSION,
)
from mongowire.compression_support import CompressionSettings  # noqa: F401
from mongowire.connection import MONITOR_CONNECTION_ID, Connection, connect  # noqa: F401
from mongowire.connection_options import ConnectionOptions  # noqa: F401
from mongowire.encryption import AutoEncrypter, EncryptedConnection  # noqa: F401
from mongowire.read_preferences import ReadPreference  # noqa: F401
from mongowire.server_api import ServerApi, ServerApiVersion  # noqa: F401

__all__ = [
    "AutoEncrypter",
    "ClientSession",
    "CompressionSettings",
    "Connection",
    "ConnectionOptions",
    "EncryptedConnection",
    "MAX_BSON_SIZE",
    "MAX_MESSAGE_SIZE",
    "MIN_OP_MSG_WIRE_VERSION",
    "MONITOR_CONNECTION_ID",
    "ReadPreference",
    "ServerApi",
    "ServerApiVersion",
    "connect",
    "version",
    "version_tuple",
]
