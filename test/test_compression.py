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

"""Test compressor negotiation and the codecs."""
from __future__ import annotations

import warnings
import zlib
from test import UnitTest, unittest

from mongowire import compression_support
from mongowire.compression_support import (
    CompressionSettings,
    SnappyContext,
    ZlibContext,
    ZstdContext,
    decompress,
)
from mongowire.errors import ProtocolError


class TestCompressionSettings(UnitTest):
    def test_unsupported_compressor(self):
        with warnings.catch_warnings(record=True) as ctx:
            warnings.simplefilter("always")
            settings = CompressionSettings(["lz4", "zlib"])
        self.assertEqual(settings.compressors, ["zlib"])
        self.assertIn("Unsupported compressor: lz4", str(ctx[0].message))

    def test_comma_separated(self):
        settings = CompressionSettings("zlib")
        self.assertEqual(settings.compressors, ["zlib"])

    def test_missing_library(self):
        if compression_support._have_zstd():
            raise unittest.SkipTest("zstandard is installed")
        with warnings.catch_warnings(record=True) as ctx:
            warnings.simplefilter("always")
            settings = CompressionSettings(["zstd", "zlib"])
        self.assertEqual(settings.compressors, ["zlib"])
        self.assertIn("zstandard", str(ctx[0].message))

    def test_zlib_compression_level(self):
        self.assertEqual(CompressionSettings(["zlib"]).zlib_compression_level, -1)
        self.assertEqual(CompressionSettings(["zlib"], 9).zlib_compression_level, 9)
        with self.assertRaises(ValueError):
            CompressionSettings(["zlib"], 10)
        with self.assertRaises(ValueError):
            CompressionSettings(["zlib"], -2)
        with self.assertRaises(TypeError):
            CompressionSettings(["zlib"], "high")

    def test_get_compression_context(self):
        settings = CompressionSettings(["zlib"], 6)
        context = settings.get_compression_context(["zlib", "snappy"])
        self.assertIsInstance(context, ZlibContext)
        self.assertEqual(context.level, 6)
        self.assertIsInstance(settings.get_compression_context(["snappy"]), SnappyContext)
        self.assertIsInstance(settings.get_compression_context(["zstd"]), ZstdContext)
        self.assertIsNone(settings.get_compression_context([]))
        self.assertIsNone(settings.get_compression_context(None))


class TestCodecs(UnitTest):
    def test_zlib(self):
        data = b"mongowire" * 100
        compressed = ZlibContext(-1).compress(data)
        self.assertEqual(zlib.decompress(compressed), data)
        self.assertEqual(decompress(memoryview(compressed), ZlibContext.compressor_id), data)

    def test_snappy(self):
        if not compression_support._have_snappy():
            raise unittest.SkipTest("python-snappy is not installed")
        data = b"mongowire" * 100
        self.assertEqual(decompress(SnappyContext.compress(data), 1), data)
        with self.assertRaises(ProtocolError):
            decompress(b"\xff\xff\xff\xff", 1)

    def test_zstd(self):
        if not compression_support._have_zstd():
            raise unittest.SkipTest("zstandard is not installed")
        data = b"mongowire" * 100
        self.assertEqual(decompress(ZstdContext.compress(data), 3), data)
        with self.assertRaises(ProtocolError):
            decompress(b"not zstd", 3)

    def test_unknown_compressor(self):
        with self.assertRaisesRegex(ProtocolError, "Unknown compressorId 0"):
            decompress(b"", 0)


if __name__ == "__main__":
    unittest.main()
