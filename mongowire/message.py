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

"""Tools for creating and parsing `messages
<https://www.mongodb.com/docs/manual/reference/mongodb-wire-protocol/>`_
exchanged with MongoDB.

Requests are built as :class:`_RequestMessage` objects, which are
serialized with :meth:`_RequestMessage.to_wire` (optionally inside an
OP_COMPRESSED envelope). Replies are unpacked into :class:`_OpMsg` or
:class:`_OpReply` envelopes whose payload is decoded lazily by ``parse``.

.. note:: This module is for internal use and is generally not needed by
   application developers.
"""
from __future__ import annotations

import itertools
import struct
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Mapping,
    MutableMapping,
    NoReturn,
    Optional,
    Union,
)

import bson
from bson import CodecOptions, _dict_to_bson
from bson.codec_options import DEFAULT_CODEC_OPTIONS
from bson.int64 import Int64
from bson.raw_bson import RawBSONDocument

from mongowire.compression_support import _NO_COMPRESSION
from mongowire.errors import CursorNotFound, DocumentTooLarge, ProtocolError
from mongowire.read_preferences import _ServerMode

if TYPE_CHECKING:
    from mongowire.compression_support import SnappyContext, ZlibContext, ZstdContext

    _CompressionContext = Union[SnappyContext, ZlibContext, ZstdContext]

MAX_INT32 = 2147483647

# Overhead allowed for encoded command documents.
_COMMAND_OVERHEAD = 16382

OP_REPLY = 1
OP_QUERY = 2004
OP_COMPRESSED = 2012
OP_MSG = 2013

_HEADER_SIZE = 16
_COMPRESSION_HEADER_SIZE = 25

# OP_QUERY flag bits.
_QUERY_OPTIONS = {
    "tailable_cursor": 2,
    "secondary_okay": 4,
    "oplog_replay": 8,
    "no_timeout": 16,
    "await_data": 32,
    "exhaust": 64,
    "partial": 128,
}

_FIELD_MAP = {"insert": "documents", "update": "updates", "delete": "deletes"}

_REQUEST_ID = itertools.count()


def _next_request_id() -> int:
    """Return the next request id, a positive int32 shared by all
    connections in this process.
    """
    return next(_REQUEST_ID) % MAX_INT32 + 1


def _maybe_add_read_preference(
    spec: MutableMapping[str, Any], read_preference: Optional[_ServerMode]
) -> MutableMapping[str, Any]:
    """Wrap spec as ``{$query: spec, $readPreference: ...}`` for a
    non-primary read preference sent as OP_QUERY through mongos.
    """
    if read_preference is not None and read_preference.mode:
        if "$query" not in spec:
            spec = {"$query": spec}
        spec["$readPreference"] = read_preference.document
    return spec


def _convert_exception(exception: Exception) -> dict[str, Any]:
    """Convert an Exception into a failure document for publishing."""
    return {"errmsg": str(exception), "errtype": exception.__class__.__name__}


_pack_header = struct.Struct("<iiii").pack
_pack_compression_header = struct.Struct("<iiiiiiB").pack
_pack_int = struct.Struct("<i").pack
_pack_op_msg_flags_type = struct.Struct("<IB").pack
_pack_byte = struct.Struct("<B").pack
_UNPACK_INT = struct.Struct("<i").unpack_from


def _compress(
    operation: int, request_id: int, data: bytes, ctx: _CompressionContext
) -> bytes:
    """Takes message data, compresses it, and adds an OP_COMPRESSED header.

    The envelope reuses the request id of the message it wraps.
    """
    compressed = ctx.compress(data)
    header = _pack_compression_header(
        _COMPRESSION_HEADER_SIZE + len(compressed),  # Total message length
        request_id,  # Request id
        0,  # responseTo
        OP_COMPRESSED,  # operation id
        operation,  # original operation id
        len(data),  # uncompressed message length
        ctx.compressor_id,
    )  # compressor id
    return header + compressed


class _RequestMessage:
    """An outbound message that has been encoded but not yet framed.

    ``body`` holds everything after the 16 byte header. ``size`` is the
    encoded size of the command (and document sequence) used to enforce
    the server's document size limit, ``max_doc_size`` the size of the
    largest document in a sequence.
    """

    __slots__ = (
        "request_id",
        "op_code",
        "body",
        "command_name",
        "size",
        "max_doc_size",
        "more_to_come",
        "exhaust_allowed",
    )

    def __init__(
        self,
        op_code: int,
        body: bytes,
        command_name: str,
        size: int,
        max_doc_size: int = 0,
        more_to_come: bool = False,
        exhaust_allowed: bool = False,
    ):
        self.request_id = _next_request_id()
        self.op_code = op_code
        self.body = body
        self.command_name = command_name
        self.size = size
        self.max_doc_size = max_doc_size
        self.more_to_come = more_to_come
        self.exhaust_allowed = exhaust_allowed

    def compressible(self) -> bool:
        return self.command_name.lower() not in _NO_COMPRESSION

    def to_wire(self, ctx: Optional[_CompressionContext] = None) -> bytes:
        """Serialize this message, compressed with ``ctx`` when allowed."""
        if ctx and self.compressible():
            return _compress(self.op_code, self.request_id, self.body, ctx)
        return (
            _pack_header(_HEADER_SIZE + len(self.body), self.request_id, 0, self.op_code)
            + self.body
        )

    def __repr__(self) -> str:
        return "_RequestMessage(op_code={}, request_id={}, command_name={!r})".format(
            self.op_code,
            self.request_id,
            self.command_name,
        )


def _op_msg_no_header(
    flags: int,
    command: Mapping[str, Any],
    identifier: str,
    docs: Optional[list[Mapping[str, Any]]],
    opts: CodecOptions,
) -> tuple[bytes, int, int]:
    """Get a OP_MSG message.

    Note: this method handles multiple documents in a type one payload but
    it does not perform batch splitting and the total message size is
    only checked *after* generating the entire message.
    """
    # Encode the command document in payload 0 without checking keys.
    encoded = _dict_to_bson(command, False, opts)
    flags_type = _pack_op_msg_flags_type(flags, 0)
    total_size = len(encoded)
    max_doc_size = 0
    if identifier and docs is not None:
        type_one = _pack_byte(1)
        cstring = bson._make_c_string(identifier)
        encoded_docs = [_dict_to_bson(doc, False, opts) for doc in docs]
        size = len(cstring) + sum(len(doc) for doc in encoded_docs) + 4
        encoded_size = _pack_int(size)
        total_size += size
        max_doc_size = max((len(doc) for doc in encoded_docs), default=0)
        data = [flags_type, encoded, type_one, encoded_size, cstring, *encoded_docs]
    else:
        data = [flags_type, encoded]
    return b"".join(data), total_size, max_doc_size


def _op_msg(
    flags: int,
    command: MutableMapping[str, Any],
    dbname: str,
    read_preference: Optional[_ServerMode],
    opts: CodecOptions = DEFAULT_CODEC_OPTIONS,
) -> _RequestMessage:
    """Get a OP_MSG message."""
    command["$db"] = dbname
    # getMore commands do not send $readPreference.
    if read_preference is not None and "$readPreference" not in command:
        # Only send $readPreference if it's not primary (the default).
        if read_preference.mode:
            command["$readPreference"] = read_preference.document
    name = next(iter(command))
    try:
        identifier = _FIELD_MAP[name]
        docs = command.pop(identifier)
    except KeyError:
        identifier = ""
        docs = None
    try:
        data, total_size, max_doc_size = _op_msg_no_header(flags, command, identifier, docs, opts)
    finally:
        # Add the field back to the command.
        if identifier:
            command[identifier] = docs
    return _RequestMessage(
        OP_MSG,
        data,
        name,
        total_size,
        max_doc_size,
        more_to_come=bool(flags & _OpMsg.MORE_TO_COME),
        exhaust_allowed=bool(flags & _OpMsg.EXHAUST_ALLOWED),
    )


def _query_impl(
    options: int,
    collection_name: str,
    num_to_skip: int,
    num_to_return: int,
    query: Mapping[str, Any],
    field_selector: Optional[Mapping[str, Any]],
    opts: CodecOptions,
) -> tuple[bytes, int]:
    """Get an OP_QUERY message."""
    encoded = _dict_to_bson(query, False, opts)
    if field_selector:
        efs = _dict_to_bson(field_selector, False, opts)
    else:
        efs = b""
    max_bson_size = max(len(encoded), len(efs))
    return (
        b"".join(
            [
                _pack_int(options),
                bson._make_c_string(collection_name),
                _pack_int(num_to_skip),
                _pack_int(num_to_return),
                encoded,
                efs,
            ]
        ),
        max_bson_size,
    )


def _query(
    options: int,
    collection_name: str,
    num_to_skip: int,
    num_to_return: int,
    query: Mapping[str, Any],
    field_selector: Optional[Mapping[str, Any]] = None,
    opts: CodecOptions = DEFAULT_CODEC_OPTIONS,
) -> _RequestMessage:
    """Get a **query** message."""
    data, max_bson_size = _query_impl(
        options, collection_name, num_to_skip, num_to_return, query, field_selector, opts
    )
    inner = query.get("$query", query)
    name = next(iter(inner), "")
    return _RequestMessage(OP_QUERY, data, name, max_bson_size)


def _raise_document_too_large(operation: str, doc_size: int, max_size: int) -> NoReturn:
    """Internal helper for raising DocumentTooLarge."""
    if operation == "insert":
        raise DocumentTooLarge(
            "BSON document too large (%d bytes)"
            " - the connected server supports"
            " BSON document sizes up to %d"
            " bytes." % (doc_size, max_size)
        )
    else:
        # There's nothing intelligent we can say
        # about size for update and delete
        raise DocumentTooLarge(f"{operation!r} command document too large")


class _DecodeOptions:
    """How the payload documents of one reply are decoded.

    :param codec_options: The :class:`~bson.codec_options.CodecOptions`
        used for decoded documents.
    :param raw: Return :class:`~bson.raw_bson.RawBSONDocument` instances
        instead of decoding.
    :param validate_utf8: When False, invalid UTF-8 in strings is replaced
        rather than raising.
    :param documents_returned_in: With ``raw``, the name of the array under
        ``cursor`` whose elements are returned as raw documents while the
        rest of the reply is decoded.
    """

    __slots__ = ("codec_options", "raw", "validate_utf8", "documents_returned_in")

    def __init__(
        self,
        codec_options: CodecOptions = DEFAULT_CODEC_OPTIONS,
        raw: bool = False,
        validate_utf8: bool = True,
        documents_returned_in: Optional[str] = None,
    ):
        if not isinstance(codec_options, CodecOptions):
            raise TypeError(
                f"codec_options must be an instance of bson.codec_options.CodecOptions, not {type(codec_options)}"
            )
        if not validate_utf8:
            codec_options = codec_options.with_options(unicode_decode_error_handler="replace")
        self.codec_options = codec_options
        self.raw = raw
        self.validate_utf8 = validate_utf8
        self.documents_returned_in = documents_returned_in

    def decode(self, data: Union[bytes, memoryview]) -> Any:
        """Decode one BSON document honoring these options."""
        data = bytes(data)
        if self.raw and not self.documents_returned_in:
            return RawBSONDocument(
                data, self.codec_options.with_options(document_class=RawBSONDocument)
            )
        doc = bson.decode(data, self.codec_options)
        if self.raw:
            raw_doc = RawBSONDocument(data)
            cursor = doc.get("cursor")
            raw_cursor = raw_doc.get("cursor")
            if isinstance(cursor, MutableMapping) and raw_cursor is not None:
                field = self.documents_returned_in
                if field in raw_cursor:
                    cursor[field] = list(raw_cursor[field])
        return doc


_DEFAULT_DECODE_OPTIONS = _DecodeOptions()


def _split_documents(data: memoryview, where: str) -> list[memoryview]:
    """Split a run of concatenated BSON documents without decoding them."""
    docs = []
    position = 0
    end = len(data)
    while position < end:
        if end - position < 5:
            raise ProtocolError(f"Truncated document in {where}")
        (size,) = _UNPACK_INT(data, position)
        if size < 5 or position + size > end:
            raise ProtocolError(
                f"Invalid document size {size} at offset {position} in {where}"
            )
        docs.append(data[position : position + size])
        position += size
    return docs


class _OpReply:
    """A MongoDB OP_REPLY response message."""

    __slots__ = (
        "request_id",
        "response_to",
        "flags",
        "cursor_id",
        "starting_from",
        "number_returned",
        "documents",
    )

    UNPACK_FROM = struct.Struct("<iqii").unpack_from
    OP_CODE = OP_REPLY

    # Flag bits.
    CURSOR_NOT_FOUND = 1
    QUERY_FAILURE = 2

    def __init__(
        self,
        request_id: int,
        response_to: int,
        flags: int,
        cursor_id: int,
        starting_from: int,
        number_returned: int,
        documents: memoryview,
    ):
        self.request_id = request_id
        self.response_to = response_to
        self.flags = flags
        self.cursor_id = Int64(cursor_id)
        self.starting_from = starting_from
        self.number_returned = number_returned
        self.documents = documents

    @property
    def more_to_come(self) -> bool:
        """Is the moreToCome bit set on this response?"""
        return False

    def parse(self, options: _DecodeOptions = _DEFAULT_DECODE_OPTIONS) -> list[Any]:
        """Decode the documents of this reply.

        Raises :exc:`~mongowire.errors.CursorNotFound` when the server flags
        the cursor as unknown and :exc:`~mongowire.errors.ProtocolError` when
        the document section is malformed. A query failure decodes to its
        ``$err`` document with ``ok`` set to 0.
        """
        if self.flags & self.CURSOR_NOT_FOUND:
            msg = "Cursor not found, cursor id: %d" % (self.cursor_id,)
            errobj = {"ok": 0, "errmsg": msg, "code": 43}
            raise CursorNotFound(msg, 43, errobj)
        raw_docs = _split_documents(self.documents, "OP_REPLY")
        if len(raw_docs) != self.number_returned:
            raise ProtocolError(
                "OP_REPLY declared %d documents but contained %d"
                % (self.number_returned, len(raw_docs))
            )
        if self.flags & self.QUERY_FAILURE:
            error_object = bson.decode(bytes(raw_docs[0]), options.codec_options)
            # Fake the ok field if it doesn't exist.
            error_object.setdefault("ok", 0)
            return [error_object]
        return [options.decode(doc) for doc in raw_docs]

    @classmethod
    def unpack(cls, request_id: int, response_to: int, msg: memoryview) -> _OpReply:
        """Construct an _OpReply from the bytes following the header."""
        if len(msg) < 20:
            raise ProtocolError("OP_REPLY message too short: %d bytes" % (len(msg),))
        flags, cursor_id, starting_from, number_returned = cls.UNPACK_FROM(msg)
        return cls(
            request_id, response_to, flags, cursor_id, starting_from, number_returned, msg[20:]
        )


class _OpMsg:
    """A MongoDB OP_MSG response message."""

    __slots__ = ("request_id", "response_to", "flags", "sections", "sequences")

    UNPACK_FROM = struct.Struct("<I").unpack_from
    OP_CODE = OP_MSG

    # Flag bits.
    CHECKSUM_PRESENT = 1
    MORE_TO_COME = 1 << 1
    EXHAUST_ALLOWED = 1 << 16  # Only present on requests.

    def __init__(self, request_id: int, response_to: int, flags: int, sections: memoryview):
        self.request_id = request_id
        self.response_to = response_to
        self.flags = flags
        self.sections = sections
        self.sequences: dict[str, list[Any]] = {}

    @property
    def more_to_come(self) -> bool:
        """Is the moreToCome bit set on this response?"""
        return bool(self.flags & self.MORE_TO_COME)

    def parse(self, options: _DecodeOptions = _DEFAULT_DECODE_OPTIONS) -> list[Any]:
        """Decode the body section of this reply.

        Document sequence sections are decoded into :attr:`sequences` and,
        when the body is a mutable mapping, also stored in the body under
        their identifier.
        """
        data = self.sections
        body: Optional[memoryview] = None
        position = 0
        end = len(data)
        while position < end:
            kind = data[position]
            position += 1
            if kind == 0:
                if body is not None:
                    raise ProtocolError("OP_MSG reply has more than one body section")
                if end - position < 4:
                    raise ProtocolError("Truncated OP_MSG body section")
                (size,) = _UNPACK_INT(data, position)
                if size < 5 or position + size > end:
                    raise ProtocolError("Invalid OP_MSG body section size %d" % (size,))
                body = data[position : position + size]
                position += size
            elif kind == 1:
                if end - position < 4:
                    raise ProtocolError("Truncated OP_MSG document sequence")
                (size,) = _UNPACK_INT(data, position)
                if size < 5 or position + size > end:
                    raise ProtocolError("Invalid OP_MSG document sequence size %d" % (size,))
                section = data[position + 4 : position + size]
                position += size
                try:
                    terminator = bytes(section).index(b"\x00")
                except ValueError:
                    raise ProtocolError("Unterminated OP_MSG document sequence identifier") from None
                identifier = bytes(section[:terminator]).decode("utf-8", "replace")
                docs = _split_documents(section[terminator + 1 :], "OP_MSG document sequence")
                self.sequences[identifier] = [options.decode(doc) for doc in docs]
            else:
                raise ProtocolError(f"Unsupported OP_MSG payload type: 0x{kind:x}")
        if body is None:
            raise ProtocolError("OP_MSG reply has no body section")
        document = options.decode(body)
        if isinstance(document, MutableMapping):
            for identifier, docs in self.sequences.items():
                document[identifier] = docs
        return [document]

    @classmethod
    def unpack(cls, request_id: int, response_to: int, msg: memoryview) -> _OpMsg:
        """Construct an _OpMsg from the bytes following the header."""
        if len(msg) < 5:
            raise ProtocolError("OP_MSG message too short: %d bytes" % (len(msg),))
        (flags,) = cls.UNPACK_FROM(msg)
        if flags != 0:
            if flags & cls.CHECKSUM_PRESENT:
                raise ProtocolError(f"Unsupported OP_MSG flag checksumPresent: 0x{flags:x}")

            if flags ^ cls.MORE_TO_COME:
                raise ProtocolError(f"Unsupported OP_MSG flags: 0x{flags:x}")
        return cls(request_id, response_to, flags, msg[4:])


_UNPACK_REPLY: dict[int, Callable[[int, int, memoryview], Union[_OpReply, _OpMsg]]] = {
    _OpReply.OP_CODE: _OpReply.unpack,
    _OpMsg.OP_CODE: _OpMsg.unpack,
}
