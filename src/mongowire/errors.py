"""
Error hierarchy for the MongoWire client.

Every failure raised by the library derives from MongoWireError. Families that
have several distinct causes carry a ``reason`` enum member so callers can
branch on the cause without string matching.
"""

from enum import Enum
from typing import Any, Mapping, Optional


class MongoWireError(Exception):
    """Base class for all MongoWire errors"""


class ParsingReason(str, Enum):
    UNSUPPORTED_OPCODE = "unsupported_opcode"
    UNEXPECTED_VALUE = "unexpected_value"
    MISSING_DOCUMENT_BODY = "missing_document_body"
    TRUNCATED_MESSAGE = "truncated_message"


class SerializationReason(str, Enum):
    COMMAND_SIZE_TOO_LARGE = "command_size_too_large"
    MISSING_COMMAND_SECTION = "missing_command_section"


class AuthenticationReason(str, Enum):
    MALFORMED_CHALLENGE = "malformed_challenge"
    ITERATION_OUT_OF_RANGE = "iteration_out_of_range"
    BASE64_FAILURE = "base64_failure"
    SIGNATURE_MISMATCH = "signature_mismatch"
    INCORRECT_CREDENTIALS = "incorrect_credentials"
    UNSUPPORTED_MECHANISM = "unsupported_mechanism"


class ConnectionReason(str, Enum):
    CANNOT_CONNECT = "cannot_connect"
    NOT_CONNECTED = "not_connected"
    TIMEOUT = "timeout"
    HANDSHAKE_FAILED = "handshake_failed"
    NO_HOST_SPECIFIED = "no_host_specified"
    POOL_EXHAUSTED = "pool_exhausted"


class CursorReason(str, Enum):
    ALREADY_CLOSED = "already_closed"
    CURSOR_NOT_FOUND = "cursor_not_found"
    BATCH_IN_FLIGHT = "batch_in_flight"


class TransactionReason(str, Enum):
    TRANSACTION_TERMINATED = "transaction_terminated"
    TRANSACTION_IN_PROGRESS = "transaction_in_progress"
    TRANSACTIONS_UNSUPPORTED = "transactions_unsupported"


class _ReasonError(MongoWireError):
    """Error that carries a reason code next to its message"""

    def __init__(self, reason: Enum, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason.value)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.reason.name}, {str(self)!r})"


class ProtocolParsingError(_ReasonError):
    """Malformed bytes received from the server; fatal to the connection"""


class ProtocolSerializationError(_ReasonError):
    """A command could not be turned into a wire message"""


class AuthenticationError(_ReasonError):
    """SCRAM conversation failed; the connection is not usable"""


class MongoConnectionError(_ReasonError):
    """Transport level failure: connect, timeout, closed socket, pool limits"""


class CursorError(_ReasonError):
    """Invalid use of a server-side cursor"""


class TransactionError(_ReasonError):
    """Invalid use of a multi-document transaction"""


class InternalError(MongoWireError):
    """A state machine was driven out of order"""


class CommandFailure(MongoWireError):
    """
    The server answered a command with ``ok`` other than 1.

    The full reply document is kept so callers can inspect fields such as
    ``writeErrors`` or ``errorLabels``.
    """

    def __init__(self, document: Mapping[str, Any]):
        self.document = dict(document)
        self.code: Optional[int] = document.get("code")
        self.code_name: Optional[str] = document.get("codeName")
        self.errmsg: str = document.get("errmsg", "command failed")
        super().__init__(f"{self.errmsg} (code={self.code}, codeName={self.code_name})")

    @property
    def error_labels(self) -> list:
        return list(self.document.get("errorLabels", []))

    def has_error_label(self, label: str) -> bool:
        return label in self.error_labels


# Server error code for a getMore/killCursors against an unknown cursor id
CURSOR_NOT_FOUND_CODE = 43
