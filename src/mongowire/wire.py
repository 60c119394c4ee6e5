"""
MongoDB wire protocol message codec

Every message starts with a 16 byte header of little-endian int32 values
(messageLength, requestID, responseTo, opCode) followed by an opcode specific
body. Modern servers speak OP_MSG (2013); OP_QUERY / OP_REPLY are kept for the
initial handshake and for servers that predate OP_MSG.

OP_MSG layout:

    uint32      flagBits
    Section+    sections        kind 0: document
                                kind 1: int32 size, cstring identifier, document*
    [uint32     checksum]       present iff flagBits & checksumPresent

Documents are carried as opaque ``RawBSONDocument`` blobs; only their length
prefix and terminator are inspected here.
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import List, NamedTuple, Optional, Sequence, Tuple, Union

from bson.raw_bson import RawBSONDocument

from .documents import MIN_DOCUMENT_SIZE, Document, encode_document, raw_document
from .errors import (
    ParsingReason,
    ProtocolParsingError,
    ProtocolSerializationError,
    SerializationReason,
)

HEADER = struct.Struct("<iiii")
HEADER_SIZE = HEADER.size

_INT32 = struct.Struct("<i")
_UINT32 = struct.Struct("<I")
_INT64 = struct.Struct("<q")

MAX_INT32 = 2**31 - 1


class OpCode(IntEnum):
    REPLY = 1
    UPDATE = 2001
    INSERT = 2002
    QUERY = 2004
    GET_MORE = 2005
    DELETE = 2006
    KILL_CURSORS = 2007
    MESSAGE = 2013


class OpMsgFlags(IntFlag):
    NONE = 0
    CHECKSUM_PRESENT = 1 << 0
    MORE_TO_COME = 1 << 1
    EXHAUST_ALLOWED = 1 << 16


# Bits a peer may legally set; anything else is rejected while decoding
KNOWN_FLAG_BITS = int(
    OpMsgFlags.CHECKSUM_PRESENT | OpMsgFlags.MORE_TO_COME | OpMsgFlags.EXHAUST_ALLOWED
)


class QueryFlags(IntFlag):
    NONE = 0
    TAILABLE_CURSOR = 1 << 1
    SLAVE_OK = 1 << 2
    NO_CURSOR_TIMEOUT = 1 << 4
    AWAIT_DATA = 1 << 5
    EXHAUST = 1 << 6
    PARTIAL = 1 << 7


class ReplyFlags(IntFlag):
    NONE = 0
    CURSOR_NOT_FOUND = 1 << 0
    QUERY_FAILURE = 1 << 1
    SHARD_CONFIG_STALE = 1 << 2
    AWAIT_CAPABLE = 1 << 3


@dataclass(frozen=True)
class MessageHeader:
    message_length: int
    request_id: int
    response_to: int
    op_code: OpCode

    @property
    def body_length(self) -> int:
        return self.message_length - HEADER_SIZE

    def pack(self) -> bytes:
        return HEADER.pack(self.message_length, self.request_id, self.response_to, int(self.op_code))

    @classmethod
    def unpack(cls, data: Union[bytes, bytearray, memoryview], offset: int = 0) -> "MessageHeader":
        if len(data) - offset < HEADER_SIZE:
            raise ProtocolParsingError(ParsingReason.TRUNCATED_MESSAGE, "incomplete message header")

        length, request_id, response_to, op_code = HEADER.unpack_from(data, offset)
        if length < HEADER_SIZE:
            raise ProtocolParsingError(
                ParsingReason.UNEXPECTED_VALUE, f"message length {length} shorter than header"
            )
        try:
            op = OpCode(op_code)
        except ValueError:
            raise ProtocolParsingError(
                ParsingReason.UNSUPPORTED_OPCODE, f"unknown opcode {op_code}"
            ) from None
        return cls(length, request_id, response_to, op)


@dataclass(frozen=True)
class BodySection:
    """Section kind 0: the command or reply document"""
    document: Document


@dataclass(frozen=True)
class DocumentSequence:
    """Section kind 1: a named batch of documents (e.g. ``documents`` for insert)"""
    identifier: str
    documents: Tuple[Document, ...] = ()


Section = Union[BodySection, DocumentSequence]


@dataclass(frozen=True)
class OpMessage:
    sections: Tuple[Section, ...]
    flags: OpMsgFlags = OpMsgFlags.NONE
    checksum: Optional[int] = None

    op_code = OpCode.MESSAGE

    @property
    def body(self) -> Document:
        for section in self.sections:
            if isinstance(section, BodySection):
                return section.document
        raise ProtocolParsingError(ParsingReason.MISSING_DOCUMENT_BODY, "OP_MSG has no body section")

    @property
    def more_to_come(self) -> bool:
        return bool(self.flags & OpMsgFlags.MORE_TO_COME)

    def sequence(self, identifier: str) -> Tuple[Document, ...]:
        for section in self.sections:
            if isinstance(section, DocumentSequence) and section.identifier == identifier:
                return section.documents
        return ()

    @classmethod
    def command(cls, document: Document, sequences: Sequence[DocumentSequence] = (),
                flags: OpMsgFlags = OpMsgFlags.NONE) -> "OpMessage":
        return cls(sections=(BodySection(document), *sequences), flags=flags)


@dataclass(frozen=True)
class OpQuery:
    full_collection_name: str
    query: Document
    number_to_skip: int = 0
    number_to_return: int = 0
    flags: QueryFlags = QueryFlags.NONE
    projection: Optional[Document] = None

    op_code = OpCode.QUERY


@dataclass(frozen=True)
class OpReply:
    response_flags: ReplyFlags
    cursor_id: int
    starting_from: int
    documents: Tuple[RawBSONDocument, ...] = field(default_factory=tuple)

    op_code = OpCode.REPLY

    @property
    def number_returned(self) -> int:
        return len(self.documents)

    @property
    def cursor_not_found(self) -> bool:
        return bool(self.response_flags & ReplyFlags.CURSOR_NOT_FOUND)

    @property
    def query_failure(self) -> bool:
        return bool(self.response_flags & ReplyFlags.QUERY_FAILURE)


@dataclass(frozen=True)
class OpGetMore:
    full_collection_name: str
    cursor_id: int
    number_to_return: int = 0

    op_code = OpCode.GET_MORE


@dataclass(frozen=True)
class OpKillCursors:
    cursor_ids: Tuple[int, ...]

    op_code = OpCode.KILL_CURSORS


WireMessage = Union[OpMessage, OpQuery, OpReply, OpGetMore, OpKillCursors]


class Frame(NamedTuple):
    header: MessageHeader
    message: WireMessage


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def _cstring(value: str) -> bytes:
    encoded = value.encode("utf-8")
    if b"\x00" in encoded:
        raise ValueError(f"cstring contains NUL: {value!r}")
    return encoded + b"\x00"


def _encode_sections(out: bytearray, sections: Sequence[Section]) -> None:
    bodies = 0
    for section in sections:
        if isinstance(section, BodySection):
            bodies += 1
            out += b"\x00"
            out += encode_document(section.document)
        else:
            payload = bytearray(_cstring(section.identifier))
            for document in section.documents:
                payload += encode_document(document)
            out += b"\x01"
            out += _INT32.pack(4 + len(payload))
            out += payload
    if bodies != 1:
        raise ProtocolSerializationError(
            SerializationReason.MISSING_COMMAND_SECTION,
            f"OP_MSG requires exactly one body section, got {bodies}",
        )


def encode_body(message: WireMessage) -> bytes:
    out = bytearray()

    if isinstance(message, OpMessage):
        out += _UINT32.pack(int(message.flags))
        _encode_sections(out, message.sections)
        if message.flags & OpMsgFlags.CHECKSUM_PRESENT:
            out += _UINT32.pack(message.checksum or 0)

    elif isinstance(message, OpQuery):
        out += _UINT32.pack(int(message.flags))
        out += _cstring(message.full_collection_name)
        out += _INT32.pack(message.number_to_skip)
        out += _INT32.pack(message.number_to_return)
        out += encode_document(message.query)
        if message.projection is not None:
            out += encode_document(message.projection)

    elif isinstance(message, OpReply):
        out += _INT32.pack(int(message.response_flags))
        out += _INT64.pack(message.cursor_id)
        out += _INT32.pack(message.starting_from)
        out += _INT32.pack(len(message.documents))
        for document in message.documents:
            out += encode_document(document)

    elif isinstance(message, OpGetMore):
        out += _INT32.pack(0)  # reserved
        out += _cstring(message.full_collection_name)
        out += _INT32.pack(message.number_to_return)
        out += _INT64.pack(message.cursor_id)

    elif isinstance(message, OpKillCursors):
        out += _INT32.pack(0)  # reserved
        out += _INT32.pack(len(message.cursor_ids))
        for cursor_id in message.cursor_ids:
            out += _INT64.pack(cursor_id)

    else:
        raise TypeError(f"not a wire message: {type(message).__name__}")

    return bytes(out)


def encode_message(message: WireMessage, request_id: int, response_to: int = 0,
                   max_message_size: Optional[int] = None) -> bytes:
    """
    Serialize a message, header included.

    Args:
        message: Any WireMessage variant
        request_id: Identifier the peer will echo back in responseTo
        response_to: Request this message answers (0 for client requests)
        max_message_size: Negotiated limit; larger messages are refused

    Returns:
        The complete message bytes
    """
    body = encode_body(message)
    length = HEADER_SIZE + len(body)
    if length > MAX_INT32 or (max_message_size is not None and length > max_message_size):
        raise ProtocolSerializationError(
            SerializationReason.COMMAND_SIZE_TOO_LARGE,
            f"message of {length} bytes exceeds limit of {max_message_size or MAX_INT32}",
        )
    header = MessageHeader(length, request_id, response_to, message.op_code)
    return header.pack() + body


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------

class _BodyReader:
    """Bounds-checked cursor over a message body"""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self.data = bytes(data)
        self.position = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.position

    def _take(self, fmt: struct.Struct, what: str) -> int:
        if self.remaining < fmt.size:
            raise ProtocolParsingError(ParsingReason.TRUNCATED_MESSAGE, f"truncated {what}")
        (value,) = fmt.unpack_from(self.data, self.position)
        self.position += fmt.size
        return value

    def int32(self, what: str = "int32") -> int:
        return self._take(_INT32, what)

    def uint32(self, what: str = "uint32") -> int:
        return self._take(_UINT32, what)

    def int64(self, what: str = "int64") -> int:
        return self._take(_INT64, what)

    def uint8(self, what: str = "byte") -> int:
        if self.remaining < 1:
            raise ProtocolParsingError(ParsingReason.TRUNCATED_MESSAGE, f"truncated {what}")
        value = self.data[self.position]
        self.position += 1
        return value

    def cstring(self, limit: Optional[int] = None) -> str:
        end = len(self.data) if limit is None else limit
        nul = self.data.find(b"\x00", self.position, end)
        if nul < 0:
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, "unterminated cstring")
        try:
            value = self.data[self.position:nul].decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, "cstring is not utf-8") from e
        self.position = nul + 1
        return value

    def document(self, limit: Optional[int] = None) -> RawBSONDocument:
        end = len(self.data) if limit is None else limit
        available = end - self.position
        if available < 4:
            raise ProtocolParsingError(
                ParsingReason.TRUNCATED_MESSAGE, "truncated document length prefix"
            )
        (size,) = _INT32.unpack_from(self.data, self.position)
        if size < MIN_DOCUMENT_SIZE:
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, f"invalid document size {size}")
        if size > available:
            raise ProtocolParsingError(
                ParsingReason.MISSING_DOCUMENT_BODY,
                f"document of {size} bytes exceeds remaining {available}",
            )
        if self.data[self.position + size - 1] != 0:
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, "document missing terminator")
        document = raw_document(self.data[self.position:self.position + size])
        self.position += size
        return document

    def expect_end(self, what: str) -> None:
        if self.remaining:
            raise ProtocolParsingError(
                ParsingReason.UNEXPECTED_VALUE, f"{self.remaining} trailing bytes after {what}"
            )


def _decode_op_msg(reader: _BodyReader) -> OpMessage:
    raw_flags = reader.uint32("OP_MSG flags")
    unknown = raw_flags & ~KNOWN_FLAG_BITS
    if unknown:
        raise ProtocolParsingError(
            ParsingReason.UNEXPECTED_VALUE, f"unsupported OP_MSG flag bits 0x{unknown:08x}"
        )
    flags = OpMsgFlags(raw_flags)

    end = len(reader.data)
    if flags & OpMsgFlags.CHECKSUM_PRESENT:
        end -= 4
        if end < reader.position:
            raise ProtocolParsingError(ParsingReason.TRUNCATED_MESSAGE, "truncated OP_MSG checksum")

    sections: List[Section] = []
    while reader.position < end:
        kind = reader.uint8("section kind")
        if kind == 0:
            sections.append(BodySection(reader.document(limit=end)))
        elif kind == 1:
            start = reader.position
            if end - start < 4:
                raise ProtocolParsingError(ParsingReason.TRUNCATED_MESSAGE, "truncated sequence size")
            size = reader.int32("sequence size")
            if size <= 0:
                raise ProtocolParsingError(
                    ParsingReason.UNEXPECTED_VALUE, f"invalid document sequence size {size}"
                )
            sequence_end = start + size
            if sequence_end > end:
                raise ProtocolParsingError(
                    ParsingReason.MISSING_DOCUMENT_BODY,
                    f"document sequence of {size} bytes exceeds message body",
                )
            if sequence_end < reader.position:
                raise ProtocolParsingError(
                    ParsingReason.UNEXPECTED_VALUE, f"document sequence size {size} too small"
                )
            identifier = reader.cstring(limit=sequence_end)
            documents = []
            while reader.position < sequence_end:
                documents.append(reader.document(limit=sequence_end))
            sections.append(DocumentSequence(identifier, tuple(documents)))
        else:
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, f"unknown section kind {kind}")

    bodies = sum(1 for s in sections if isinstance(s, BodySection))
    if bodies == 0:
        raise ProtocolParsingError(ParsingReason.MISSING_DOCUMENT_BODY, "OP_MSG has no body section")
    if bodies > 1:
        raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, "OP_MSG has several body sections")

    checksum = reader.uint32("checksum") if flags & OpMsgFlags.CHECKSUM_PRESENT else None
    reader.expect_end("OP_MSG")
    return OpMessage(sections=tuple(sections), flags=flags, checksum=checksum)


def _decode_op_query(reader: _BodyReader) -> OpQuery:
    flags = QueryFlags(reader.uint32("OP_QUERY flags"))
    name = reader.cstring()
    skip = reader.int32("numberToSkip")
    to_return = reader.int32("numberToReturn")
    query = reader.document()
    projection = reader.document() if reader.remaining else None
    reader.expect_end("OP_QUERY")
    return OpQuery(
        full_collection_name=name,
        query=query,
        number_to_skip=skip,
        number_to_return=to_return,
        flags=flags,
        projection=projection,
    )


def _decode_op_reply(reader: _BodyReader) -> OpReply:
    flags = ReplyFlags(reader.int32("OP_REPLY flags") & 0xFF)
    cursor_id = reader.int64("cursorID")
    starting_from = reader.int32("startingFrom")
    number_returned = reader.int32("numberReturned")
    if number_returned < 0:
        raise ProtocolParsingError(
            ParsingReason.UNEXPECTED_VALUE, f"negative numberReturned {number_returned}"
        )
    documents = tuple(reader.document() for _ in range(number_returned))
    reader.expect_end("OP_REPLY")
    return OpReply(flags, cursor_id, starting_from, documents)


def _decode_op_get_more(reader: _BodyReader) -> OpGetMore:
    reader.int32("reserved")
    name = reader.cstring()
    to_return = reader.int32("numberToReturn")
    cursor_id = reader.int64("cursorID")
    reader.expect_end("OP_GET_MORE")
    return OpGetMore(name, cursor_id, to_return)


def _decode_op_kill_cursors(reader: _BodyReader) -> OpKillCursors:
    reader.int32("reserved")
    count = reader.int32("numberOfCursorIDs")
    if count < 0:
        raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, f"negative cursor count {count}")
    cursor_ids = tuple(reader.int64("cursorID") for _ in range(count))
    reader.expect_end("OP_KILL_CURSORS")
    return OpKillCursors(cursor_ids)


_DECODERS = {
    OpCode.MESSAGE: _decode_op_msg,
    OpCode.QUERY: _decode_op_query,
    OpCode.REPLY: _decode_op_reply,
    OpCode.GET_MORE: _decode_op_get_more,
    OpCode.KILL_CURSORS: _decode_op_kill_cursors,
}


def decode_message(header: MessageHeader, body: Union[bytes, bytearray, memoryview]) -> WireMessage:
    """Decode a message body whose header has already been read"""
    if len(body) != header.body_length:
        raise ProtocolParsingError(
            ParsingReason.TRUNCATED_MESSAGE,
            f"body of {len(body)} bytes, header announced {header.body_length}",
        )
    decoder = _DECODERS.get(header.op_code)
    if decoder is None:
        raise ProtocolParsingError(
            ParsingReason.UNSUPPORTED_OPCODE, f"cannot decode {header.op_code.name} messages"
        )
    return decoder(_BodyReader(body))


def decode(data: Union[bytes, bytearray, memoryview]) -> Frame:
    """Decode exactly one complete message"""
    header = MessageHeader.unpack(data)
    if len(data) < header.message_length:
        raise ProtocolParsingError(
            ParsingReason.TRUNCATED_MESSAGE,
            f"have {len(data)} bytes, header announced {header.message_length}",
        )
    if len(data) > header.message_length:
        raise ProtocolParsingError(
            ParsingReason.UNEXPECTED_VALUE,
            f"{len(data) - header.message_length} bytes past end of message",
        )
    return Frame(header, decode_message(header, memoryview(data)[HEADER_SIZE:]))
