# Copyright 2018 MongoDB, Inc.
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

import warnings
import zlib
from typing import Any, Iterable, Optional, Union

from mongowire.errors import MissingDependencyError, ProtocolError
from mongowire.logger import _HELLO_COMMANDS, _SENSITIVE_COMMANDS

_SUPPORTED_COMPRESSORS = {"snappy", "zlib", "zstd"}
_NO_COMPRESSION = set(_HELLO_COMMANDS)
_NO_COMPRESSION.update(_SENSITIVE_COMMANDS)


def _have_snappy() -> bool:
    try:
        import snappy  # type:ignore[import]  # noqa: F401

        return True
    except ImportError:
        return False


def _have_zstd() -> bool:
    try:
        import zstandard  # noqa: F401

        return True
    except ImportError:
        return False


def validate_compressors(dummy: Any, value: Union[str, Iterable[str]]) -> list[str]:
    try:
        # `value` is string.
        compressors = value.split(",")  # type: ignore[union-attr]
    except AttributeError:
        # `value` is an iterable.
        compressors = list(value)

    for compressor in compressors[:]:
        if compressor not in _SUPPORTED_COMPRESSORS:
            compressors.remove(compressor)
            warnings.warn(f"Unsupported compressor: {compressor}", stacklevel=2)
        elif compressor == "snappy" and not _have_snappy():
            compressors.remove(compressor)
            warnings.warn(
                "Wire protocol compression with snappy is not available. "
                "You must install the python-snappy module for snappy support.",
                stacklevel=2,
            )
        elif compressor == "zstd" and not _have_zstd():
            compressors.remove(compressor)
            warnings.warn(
                "Wire protocol compression with zstandard is not available. "
                "You must install the zstandard module for zstandard support.",
                stacklevel=2,
            )
    return compressors


def validate_zlib_compression_level(option: str, value: Any) -> int:
    try:
        level = int(value)
    except Exception:
        raise TypeError(f"{option} must be an integer, not {value!r}.") from None
    if level < -1 or level > 9:
        raise ValueError("%s must be between -1 and 9, not %d." % (option, level))
    return level


class CompressionSettings:
    """The compressors a connection offers during its handshake, in order of
    preference, and the zlib level used if zlib is agreed on.
    """

    def __init__(self, compressors: Iterable[str] = (), zlib_compression_level: int = -1):
        self.compressors = validate_compressors("compressors", compressors)
        self.zlib_compression_level = validate_zlib_compression_level(
            "zlib_compression_level", zlib_compression_level
        )

    def get_compression_context(
        self, compressors: Optional[list[str]]
    ) -> Union[SnappyContext, ZlibContext, ZstdContext, None]:
        """Return the context for the first compressor the server agreed to."""
        if compressors:
            chosen = compressors[0]
            if chosen == "snappy":
                return SnappyContext()
            elif chosen == "zlib":
                return ZlibContext(self.zlib_compression_level)
            elif chosen == "zstd":
                return ZstdContext()
            return None
        return None

    def __repr__(self) -> str:
        return "CompressionSettings(compressors={!r}, zlib_compression_level={!r})".format(
            self.compressors,
            self.zlib_compression_level,
        )


class SnappyContext:
    compressor_id = 1

    @staticmethod
    def compress(data: bytes) -> bytes:
        import snappy

        return snappy.compress(data)


class ZlibContext:
    compressor_id = 2

    def __init__(self, level: int):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level)


class ZstdContext:
    compressor_id = 3

    @staticmethod
    def compress(data: bytes) -> bytes:
        # ZstdCompressor is not thread safe.
        import zstandard

        return zstandard.ZstdCompressor().compress(data)


def decompress(data: Union[bytes, memoryview], compressor_id: int) -> bytes:
    """Decompress the payload of an OP_COMPRESSED message.

    Raises :exc:`~mongowire.errors.MissingDependencyError` when the library
    for ``compressor_id`` is not installed and
    :exc:`~mongowire.errors.ProtocolError` when the id is unknown or the
    payload is corrupt.
    """
    if compressor_id == SnappyContext.compressor_id:
        if not _have_snappy():
            raise MissingDependencyError(
                "Received a snappy compressed message but python-snappy is not installed"
            )
        # python-snappy doesn't support the buffer interface.
        # https://github.com/andrix/python-snappy/issues/65
        import snappy

        try:
            return snappy.uncompress(bytes(data))
        except Exception as exc:
            raise ProtocolError(f"Invalid snappy compressed message: {exc}") from exc
    elif compressor_id == ZlibContext.compressor_id:
        try:
            return zlib.decompress(data)
        except zlib.error as exc:
            raise ProtocolError(f"Invalid zlib compressed message: {exc}") from exc
    elif compressor_id == ZstdContext.compressor_id:
        if not _have_zstd():
            raise MissingDependencyError(
                "Received a zstd compressed message but zstandard is not installed"
            )
        # ZstdDecompressor is not thread safe.
        import zstandard

        try:
            return zstandard.ZstdDecompressor().decompress(data)
        except zstandard.ZstdError as exc:
            raise ProtocolError(f"Invalid zstd compressed message: {exc}") from exc
    else:
        raise ProtocolError("Unknown compressorId %d" % (compressor_id,))
