# Copyright 2023-present MongoDB, Inc.
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
from __future__ import annotations

import enum
import logging
import os
from typing import Any

from bson import UuidRepresentation, json_util
from bson.json_util import JSONOptions, _truncate_documents


class _CommandStatusMessage(str, enum.Enum):
    STARTED = "Command started"
    SUCCEEDED = "Command succeeded"
    FAILED = "Command failed"


class _ConnectionStatusMessage(str, enum.Enum):
    CONN_CLOSED = "Connection closed"
    CONN_PINNED = "Connection pinned"
    CONN_UNPINNED = "Connection unpinned"
    CLUSTER_TIME_RECEIVED = "Cluster time received"


_DEFAULT_DOCUMENT_LENGTH = 1000
_SENSITIVE_COMMANDS = [
    "authenticate",
    "saslstart",
    "saslcontinue",
    "getnonce",
    "createuser",
    "updateuser",
    "copydbgetnonce",
    "copydbsaslstart",
    "copydb",
]
_HELLO_COMMANDS = ["hello", "ismaster"]
_REDACTED_FAILURE_FIELDS = ["code", "codeName", "errorLabels"]
_DOCUMENT_NAMES = ["command", "reply", "failure"]
_JSON_OPTIONS = JSONOptions(uuid_representation=UuidRepresentation.STANDARD)
_COMMAND_LOGGER = logging.getLogger("mongowire.command")
_CONNECTION_LOGGER = logging.getLogger("mongowire.connection")


def _debug_log(logger: logging.Logger, **fields: Any) -> None:
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(LogMessage(**fields))


def _is_sensitive_command(command_name: str, doc: Any, speculative_authenticate: bool = False) -> bool:
    """True if the body of this command or reply must not be published."""
    name = command_name.lower()
    if name in _SENSITIVE_COMMANDS:
        return True
    if name in _HELLO_COMMANDS:
        return speculative_authenticate or (doc is not None and "speculativeAuthenticate" in doc)
    return False


def _max_document_length() -> int:
    length = int(os.getenv("MONGOWIRE_LOG_MAX_DOCUMENT_LENGTH", _DEFAULT_DOCUMENT_LENGTH))
    if length < 0:
        return _DEFAULT_DOCUMENT_LENGTH
    return length


def _to_json(doc: Any) -> str:
    return json_util.dumps(doc, json_options=_JSON_OPTIONS, default=repr)


class LogMessage:
    """A structured log record rendered as extended JSON on demand.

    Documents under ``command``, ``reply`` and ``failure`` are truncated to
    ``MONGOWIRE_LOG_MAX_DOCUMENT_LENGTH`` characters and redacted when the
    command is sensitive. Server side failures keep only
    ``code``, ``codeName`` and ``errorLabels``.
    """

    __slots__ = ["_fields", "_speculative_authenticate", "_server_side_error"]

    def __init__(self, **fields: Any):
        self._speculative_authenticate = fields.pop("speculative_authenticate", False)
        self._server_side_error = fields.pop("isServerSideError", False)
        duration = fields.get("durationMS")
        if duration is not None:
            fields["durationMS"] = duration.total_seconds() * 1000
        if "serviceId" in fields and fields["serviceId"] is None:
            del fields["serviceId"]
        self._fields = fields

    def __str__(self) -> str:
        fields = dict(self._fields)
        max_length = _max_document_length()
        for name in _DOCUMENT_NAMES:
            if fields.get(name):
                fields[name] = self._render(name, fields[name], max_length)
        return _to_json(fields)

    def _render(self, name: str, doc: Any, max_length: int) -> str:
        if name == "failure":
            if self._server_side_error:
                doc = {k: v for k, v in doc.items() if k in _REDACTED_FAILURE_FIELDS}
        elif _is_sensitive_command(
            self._fields.get("commandName", ""), doc, self._speculative_authenticate
        ):
            return _to_json({})
        rendered = _to_json(_truncate_documents(doc, max_length)[0])
        if len(rendered) > max_length:
            rendered = rendered.encode()[:max_length].decode("unicode-escape", "ignore") + "..."
        return rendered
