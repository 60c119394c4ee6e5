"""
Document codec adapter.

The wire layer treats documents as opaque length-prefixed blobs. Encoding and
decoding of the document format itself is delegated to the ``bson`` package
shipped with pymongo; this module is the only place that touches it directly.
"""

from typing import Any, Dict, Mapping, Union

import bson
from bson.errors import InvalidBSON
from bson.raw_bson import RawBSONDocument

from .errors import ParsingReason, ProtocolParsingError

Document = Union[Mapping[str, Any], RawBSONDocument]

# Smallest valid document: int32 length + terminating NUL
MIN_DOCUMENT_SIZE = 5


def encode_document(document: Document) -> bytes:
    """Serialize a document, passing raw documents through untouched"""
    if isinstance(document, RawBSONDocument):
        return document.raw
    return bson.encode(document)


def raw_document(data: bytes) -> RawBSONDocument:
    """Wrap already-framed bytes without decoding the fields"""
    try:
        return RawBSONDocument(bytes(data))
    except InvalidBSON as e:
        raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, f"invalid document: {e}") from e


def to_dict(document: Document) -> Dict[str, Any]:
    """Fully decode a document into a plain dict"""
    if isinstance(document, RawBSONDocument):
        try:
            return bson.decode(document.raw)
        except InvalidBSON as e:
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, f"invalid document: {e}") from e
    return dict(document)
