"""
Connection handshake: client metadata out, server capabilities in.

The handshake is the first command on every socket. It is always sent as a
legacy OP_QUERY against ``admin.$cmd`` because the wire version, and with it
the choice between OP_MSG and OP_QUERY, is only known once it has completed.
"""

import platform
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog

from . import __version__
from .framing import DEFAULT_MAX_MESSAGE_SIZE

logger = structlog.get_logger()

DRIVER_NAME = "mongowire"

# maxWireVersion thresholds
WIRE_VERSION_SCRAM_SHA_1 = 3         # SCRAM-SHA-1 replaces MONGODB-CR (3.0)
WIRE_VERSION_CURSOR_COMMANDS = 4     # find / getMore / killCursors commands (3.2)
WIRE_VERSION_OP_MSG = 6              # OP_MSG and logical sessions (3.6)
WIRE_VERSION_SESSIONS = 6
WIRE_VERSION_TRANSACTIONS = 7        # replica set transactions (4.0)
WIRE_VERSION_SUPPORTED_FLOOR = 8     # anything older is past end of life

DEFAULT_MAX_BSON_OBJECT_SIZE = 16 * 1024 * 1024
DEFAULT_MAX_WRITE_BATCH_SIZE = 100_000

# Servers truncate anything longer than this in the application name
MAX_APP_NAME_BYTES = 128


def build_client_metadata(app_name: Optional[str] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "driver": {"name": DRIVER_NAME, "version": __version__},
        "os": {
            "type": platform.system() or "unknown",
            "name": platform.platform(terse=True),
            "architecture": platform.machine() or "unknown",
            "version": platform.release(),
        },
        "platform": f"{platform.python_implementation()} {sys.version.split()[0]}",
    }
    if app_name:
        metadata["application"] = {"name": app_name}
    return metadata


def build_hello_command(metadata: Mapping[str, Any],
                        user_namespace: Optional[str] = None) -> Dict[str, Any]:
    """
    Handshake command document.

    ``user_namespace`` is ``<source>.<username>``; when given the server lists
    the SASL mechanisms that user may authenticate with.
    """
    command: Dict[str, Any] = {"isMaster": 1, "client": dict(metadata)}
    if user_namespace:
        command["saslSupportedMechs"] = user_namespace
    return command


@dataclass(frozen=True)
class ServerHandshake:
    """Capabilities reported by the server in its handshake reply"""
    max_wire_version: int = 0
    min_wire_version: int = 0
    max_write_batch_size: int = DEFAULT_MAX_WRITE_BATCH_SIZE
    max_message_size_bytes: int = DEFAULT_MAX_MESSAGE_SIZE
    max_bson_object_size: int = DEFAULT_MAX_BSON_OBJECT_SIZE
    read_only: bool = False
    is_writable_primary: bool = True
    logical_session_timeout_minutes: Optional[int] = None
    sasl_supported_mechs: Optional[Tuple[str, ...]] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ServerHandshake":
        mechs = document.get("saslSupportedMechs")
        primary = document.get("isWritablePrimary", document.get("ismaster", True))
        return cls(
            max_wire_version=int(document.get("maxWireVersion", 0)),
            min_wire_version=int(document.get("minWireVersion", 0)),
            max_write_batch_size=int(document.get("maxWriteBatchSize", DEFAULT_MAX_WRITE_BATCH_SIZE)),
            max_message_size_bytes=int(document.get("maxMessageSizeBytes", DEFAULT_MAX_MESSAGE_SIZE)),
            max_bson_object_size=int(document.get("maxBsonObjectSize", DEFAULT_MAX_BSON_OBJECT_SIZE)),
            read_only=bool(document.get("readOnly", False)),
            is_writable_primary=bool(primary),
            logical_session_timeout_minutes=document.get("logicalSessionTimeoutMinutes"),
            sasl_supported_mechs=tuple(mechs) if mechs is not None else None,
            raw=dict(document),
        )

    @property
    def supports_op_msg(self) -> bool:
        return self.max_wire_version >= WIRE_VERSION_OP_MSG

    @property
    def supports_sessions(self) -> bool:
        return self.max_wire_version >= WIRE_VERSION_SESSIONS

    @property
    def supports_cursor_commands(self) -> bool:
        return self.max_wire_version >= WIRE_VERSION_CURSOR_COMMANDS

    @property
    def supports_transactions(self) -> bool:
        return self.max_wire_version >= WIRE_VERSION_TRANSACTIONS

    @property
    def is_deprecated(self) -> bool:
        return self.max_wire_version < WIRE_VERSION_SUPPORTED_FLOOR

    @property
    def writable(self) -> bool:
        return not self.read_only and self.is_writable_primary


def log_server_capabilities(handshake: ServerHandshake, host: str) -> None:
    logger.info("Handshake completed",
                host=host,
                max_wire_version=handshake.max_wire_version,
                op_msg=handshake.supports_op_msg,
                read_only=handshake.read_only,
                writable=handshake.writable)
    if handshake.is_deprecated:
        logger.warning("Server wire version is outdated",
                       host=host,
                       max_wire_version=handshake.max_wire_version,
                       minimum_supported=WIRE_VERSION_SUPPORTED_FLOOR)
