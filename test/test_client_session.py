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

"""Test the client_session module."""
from __future__ import annotations

from test import UnitTest, unittest

from bson.binary import Binary
from bson.timestamp import Timestamp

from mongowire.client_session import ClientSession
from mongowire.errors import InvalidOperation


class TestClientSession(UnitTest):
    def test_session_id(self):
        session = ClientSession()
        self.assertIsInstance(session.session_id["id"], Binary)
        self.assertEqual(session.session_id["id"].subtype, 4)
        self.assertNotEqual(session.session_id, ClientSession().session_id)

    def test_end_session(self):
        with ClientSession() as session:
            self.assertFalse(session.has_ended)
        self.assertTrue(session.has_ended)
        with self.assertRaisesRegex(InvalidOperation, "ended session"):
            session.session_id
        with self.assertRaises(InvalidOperation):
            session._apply_to({"find": "c"}, False)

    def test_advance_cluster_time(self):
        session = ClientSession()
        session.advance_cluster_time({"clusterTime": Timestamp(2, 1)})
        session.advance_cluster_time({"clusterTime": Timestamp(1, 1)})
        self.assertEqual(session.cluster_time, {"clusterTime": Timestamp(2, 1)})
        with self.assertRaises(TypeError):
            session.advance_cluster_time(1)
        with self.assertRaises(ValueError):
            session.advance_cluster_time({"clusterTime": 1})

    def test_process_response(self):
        session = ClientSession()
        session._process_response(
            {"ok": 1, "$clusterTime": {"clusterTime": Timestamp(5, 1)}, "operationTime": Timestamp(4, 1)}
        )
        session._process_response({"ok": 1, "operationTime": Timestamp(3, 1)})
        self.assertEqual(session.cluster_time, {"clusterTime": Timestamp(5, 1)})
        self.assertEqual(session.operation_time, Timestamp(4, 1))

    def test_apply_to(self):
        session = ClientSession()
        cmd = {"find": "c"}
        session._apply_to(cmd, False)
        self.assertEqual(cmd, {"find": "c", "lsid": session.session_id})

    def test_retryable_write(self):
        session = ClientSession()
        first = {"insert": "c"}
        second = {"insert": "c"}
        session._apply_to(first, True)
        session._apply_to(second, True)
        self.assertEqual(first["txnNumber"], 1)
        self.assertEqual(second["txnNumber"], 2)

    def test_causal_consistency(self):
        session = ClientSession()
        session._process_response({"ok": 1, "operationTime": Timestamp(7, 1)})
        cmd = {"find": "c", "readConcern": {"level": "majority"}}
        session._apply_to(cmd, False)
        self.assertEqual(
            cmd["readConcern"], {"level": "majority", "afterClusterTime": Timestamp(7, 1)}
        )

        session = ClientSession(causal_consistency=False)
        session._process_response({"ok": 1, "operationTime": Timestamp(7, 1)})
        cmd = {"find": "c", "readConcern": {"level": "majority"}}
        session._apply_to(cmd, False)
        self.assertEqual(cmd["readConcern"], {"level": "majority"})

    def test_transaction(self):
        session = ClientSession()
        session.start_transaction()
        self.assertTrue(session.in_transaction)
        with self.assertRaisesRegex(InvalidOperation, "already in progress"):
            session.start_transaction()
        first = {"insert": "c"}
        session._apply_to(first, False)
        self.assertTrue(first["startTransaction"])
        self.assertFalse(first["autocommit"])
        second = {"insert": "c"}
        session._apply_to(second, False)
        self.assertNotIn("startTransaction", second)
        self.assertEqual(first["txnNumber"], second["txnNumber"])
        session.end_transaction()
        self.assertFalse(session.in_transaction)
        with self.assertRaisesRegex(InvalidOperation, "No transaction started"):
            session.end_transaction()


if __name__ == "__main__":
    unittest.main()
