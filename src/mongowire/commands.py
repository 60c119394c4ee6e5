"""
Namespaces and the administrative command documents the driver issues itself.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional

from bson.int64 import Int64

from .errors import CommandFailure

COMMAND_COLLECTION = "$cmd"

# Upper bound on session ids per endSessions command
END_SESSIONS_BATCH_SIZE = 10000


@dataclass(frozen=True)
class Namespace:
    database: str
    collection: str = COMMAND_COLLECTION

    def __post_init__(self):
        if not self.database or "." in self.database or "\x00" in self.database:
            raise ValueError(f"invalid database name: {self.database!r}")

    @classmethod
    def parse(cls, full_name: str) -> "Namespace":
        database, sep, collection = full_name.partition(".")
        if not sep or not collection:
            raise ValueError(f"invalid namespace: {full_name!r}")
        return cls(database, collection)

    @property
    def full_name(self) -> str:
        return f"{self.database}.{self.collection}"

    def __str__(self) -> str:
        return self.full_name


def is_ok(reply: Mapping[str, Any]) -> bool:
    ok = reply.get("ok", 0)
    try:
        return float(ok) == 1.0
    except (TypeError, ValueError):
        return False


def check_reply(reply: Mapping[str, Any]) -> Dict[str, Any]:
    """Return the reply as a dict or raise CommandFailure"""
    if not is_ok(reply):
        raise CommandFailure(reply)
    return dict(reply)


def get_more_command(namespace: Namespace, cursor_id: int, batch_size: Optional[int] = None,
                     max_time_ms: Optional[int] = None) -> Dict[str, Any]:
    command: Dict[str, Any] = {"getMore": Int64(cursor_id), "collection": namespace.collection}
    if batch_size:
        command["batchSize"] = batch_size
    if max_time_ms is not None:
        command["maxTimeMS"] = max_time_ms
    return command


def kill_cursors_command(namespace: Namespace, cursor_ids: Iterable[int]) -> Dict[str, Any]:
    return {"killCursors": namespace.collection, "cursors": [Int64(c) for c in cursor_ids]}


def commit_transaction_command() -> Dict[str, Any]:
    return {"commitTransaction": 1}


def abort_transaction_command() -> Dict[str, Any]:
    return {"abortTransaction": 1}


def end_sessions_commands(session_documents: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Split session ids into endSessions commands the server will accept"""
    return [
        {"endSessions": list(session_documents[i:i + END_SESSIONS_BATCH_SIZE])}
        for i in range(0, len(session_documents), END_SESSIONS_BATCH_SIZE)
    ]
