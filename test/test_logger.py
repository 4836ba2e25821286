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

import asyncio
import datetime
import os
from test import AsyncUnitTest, UnitTest, unittest
from test.utils import HELLO, create_connection, op_msg, parse_request, wait_for_writes
from unittest.mock import patch

from bson import json_util

from mongowire.errors import OperationFailure
from mongowire.logger import _DEFAULT_DOCUMENT_LENGTH, LogMessage


class TestLogger(AsyncUnitTest):
    async def asyncSetUp(self):
        self.conn, self.protocol, self.transport = create_connection(hello=HELLO)

    async def run_command(self, spec, reply):
        task = asyncio.ensure_future(self.conn.command("db", spec))
        await wait_for_writes(self.transport, len(self.transport.written) + 1)
        request = parse_request(self.transport.written[-1])
        self.protocol.data_received(op_msg(reply, request["request_id"]))
        return await task

    async def test_command_started_and_succeeded(self):
        with self.assertLogs("mongowire.command", level="DEBUG") as cm:
            await self.run_command({"ping": 1}, {"ok": 1})

        started = json_util.loads(cm.records[0].message)
        self.assertEqual(started["message"], "Command started")
        self.assertEqual(started["commandName"], "ping")
        self.assertEqual(started["databaseName"], "db")
        self.assertEqual(started["driverConnectionId"], 1)
        self.assertEqual(started["serverConnectionId"], HELLO["connectionId"])
        self.assertEqual(started["serverHost"], "localhost")
        self.assertEqual(started["serverPort"], 27017)
        self.assertNotIn("serviceId", started)
        self.assertEqual(json_util.loads(started["command"]), {"ping": 1, "$db": "db"})

        succeeded = json_util.loads(cm.records[1].message)
        self.assertEqual(succeeded["message"], "Command succeeded")
        self.assertEqual(succeeded["requestId"], started["requestId"])
        self.assertGreaterEqual(succeeded["durationMS"], 0)
        self.assertEqual(json_util.loads(succeeded["reply"]), {"ok": 1})

    async def test_command_failed(self):
        with self.assertLogs("mongowire.command", level="DEBUG") as cm:
            with self.assertRaises(OperationFailure):
                await self.run_command(
                    {"notARealCommand": True},
                    {"ok": 0, "errmsg": "no such command", "code": 59, "codeName": "x"},
                )
        failed = json_util.loads(cm.records[-1].message)
        self.assertEqual(failed["message"], "Command failed")
        # Server side failures only log the error code fields.
        self.assertEqual(json_util.loads(failed["failure"]), {"code": 59, "codeName": "x"})

    async def test_default_truncation_limit(self):
        docs = [{"x": "y"} for _ in range(100)]
        with patch.dict("os.environ"):
            os.environ.pop("MONGOWIRE_LOG_MAX_DOCUMENT_LENGTH", None)
            with self.assertLogs("mongowire.command", level="DEBUG") as cm:
                await self.run_command({"insert": "test", "documents": docs}, {"ok": 1, "n": 100})
            cmd_started_log = json_util.loads(cm.records[0].message)
            self.assertEqual(len(cmd_started_log["command"]), _DEFAULT_DOCUMENT_LENGTH + 3)

    async def test_configured_truncation_limit(self):
        with patch.dict("os.environ", {"MONGOWIRE_LOG_MAX_DOCUMENT_LENGTH": "5"}):
            with self.assertLogs("mongowire.command", level="DEBUG") as cm:
                await self.run_command({"hello": True}, {"ok": 1, "isWritablePrimary": True})
                cmd_started_log = json_util.loads(cm.records[0].message)
                self.assertEqual(len(cmd_started_log["command"]), 5 + 3)

                cmd_succeeded_log = json_util.loads(cm.records[1].message)
                self.assertLessEqual(len(cmd_succeeded_log["reply"]), 5 + 3)
                with self.assertRaises(OperationFailure):
                    await self.run_command(
                        {"notARealCommand": True}, {"ok": 0, "errmsg": "no", "code": 59}
                    )
                cmd_failed_log = json_util.loads(cm.records[-1].message)
                self.assertEqual(len(cmd_failed_log["failure"]), 5 + 3)

    async def test_sensitive_command_redacted(self):
        with self.assertLogs("mongowire.command", level="DEBUG") as cm:
            await self.run_command(
                {"saslStart": 1, "mechanism": "SCRAM-SHA-256", "payload": b"secret"},
                {"ok": 1, "conversationId": 1, "payload": b"reply"},
            )
        self.assertEqual(json_util.loads(cm.records[0].message)["command"], "{}")
        self.assertEqual(json_util.loads(cm.records[1].message)["reply"], "{}")

    async def test_connection_closed(self):
        with self.assertLogs("mongowire.connection", level="DEBUG") as cm:
            await self.conn.destroy()
        closed = json_util.loads(cm.records[0].message)
        self.assertEqual(closed["message"], "Connection closed")
        self.assertEqual(closed["reason"], "Connection closed")
        self.assertEqual(closed["driverConnectionId"], 1)

    async def test_connection_pinned(self):
        with self.assertLogs("mongowire.connection", level="DEBUG") as cm:
            self.conn.pin("cursor")
            self.conn.unpin("cursor")
        messages = [json_util.loads(r.message)["message"] for r in cm.records]
        self.assertEqual(messages, ["Connection pinned", "Connection unpinned"])


class TestLogMessage(UnitTest):
    def test_duration(self):
        msg = LogMessage(durationMS=datetime.timedelta(milliseconds=5), serviceId=None)
        doc = json_util.loads(str(msg))
        self.assertEqual(doc["durationMS"], 5.0)
        self.assertNotIn("serviceId", doc)

    def test_speculative_hello_redacted(self):
        msg = LogMessage(
            commandName="hello",
            command={"hello": 1, "speculativeAuthenticate": {"mechanism": "SCRAM-SHA-256"}},
        )
        self.assertEqual(json_util.loads(str(msg))["command"], "{}")

    def test_hello_not_redacted(self):
        msg = LogMessage(commandName="hello", command={"hello": 1})
        self.assertEqual(json_util.loads(json_util.loads(str(msg))["command"]), {"hello": 1})


if __name__ == "__main__":
    unittest.main()
