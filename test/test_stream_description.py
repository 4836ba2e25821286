# Copyright 2024-present MongoDB, Inc.
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

from test import UnitTest, unittest
from test.utils import HELLO, LEGACY_HELLO

from bson.objectid import ObjectId

from mongowire import common
from mongowire.compression_support import CompressionSettings, ZlibContext
from mongowire.errors import InvalidOperation
from mongowire.stream_description import StreamDescription


class TestStreamDescription(UnitTest):
    def test_defaults(self):
        description = StreamDescription("localhost:27017")
        self.assertFalse(description.frozen)
        self.assertEqual(description.max_wire_version, 0)
        self.assertEqual(description.max_bson_size, common.MAX_BSON_SIZE)
        self.assertEqual(description.max_message_size, 64 * 1024 * 1024)
        self.assertFalse(description.supports_op_msg)
        self.assertFalse(description.supports_sessions)
        self.assertIsNone(description.compressor)

    def test_receive_response(self):
        description = StreamDescription("localhost:27017")
        description.receive_response(HELLO)
        self.assertTrue(description.frozen)
        self.assertEqual(description.max_wire_version, 21)
        self.assertEqual(description.max_message_size, 48000000)
        self.assertEqual(description.server_connection_id, 7)
        self.assertEqual(description.min_wire_version, 0)
        self.assertFalse(description.hello_ok)
        self.assertIs(description.hello, HELLO)
        self.assertEqual(description.logical_session_timeout_minutes, 30)
        self.assertTrue(description.supports_op_msg)
        self.assertTrue(description.supports_sessions)
        self.assertFalse(description.is_sharded)

    def test_frozen(self):
        description = StreamDescription("localhost:27017")
        description.receive_response(LEGACY_HELLO)
        with self.assertRaises(InvalidOperation):
            description.receive_response(HELLO)
        with self.assertRaises(InvalidOperation):
            description.load_balanced = True
        self.assertEqual(description.max_wire_version, 5)
        self.assertFalse(description.supports_op_msg)

    def test_compression_negotiation(self):
        description = StreamDescription("a:1", CompressionSettings(["zlib"], 4))
        description.receive_response(dict(HELLO, compression=["snappy", "zlib"]))
        self.assertEqual(description.compressors, ["snappy", "zlib"])
        self.assertEqual(description.compressor, "zlib")
        self.assertIsInstance(description.compression_context, ZlibContext)
        self.assertEqual(description.zlib_compression_level, 4)

    def test_load_balanced(self):
        service_id = ObjectId()
        description = StreamDescription("a:1")
        description.receive_response(dict(HELLO, serviceId=service_id))
        self.assertTrue(description.load_balanced)
        self.assertEqual(description.service_id, service_id)

    def test_mongos(self):
        description = StreamDescription("a:1")
        description.receive_response(dict(HELLO, msg="isdbgrid"))
        self.assertTrue(description.is_sharded)


if __name__ == "__main__":
    unittest.main()
