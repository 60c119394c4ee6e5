"""
Logical sessions and multi-document transactions.

Server sessions are expensive for the server to track, so ended sessions go
back to a LIFO pool owned by a SessionManager and are reused by the next
caller. The manager belongs to a ConnectionPool instance; nothing here is
process-global.
"""

import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional

import structlog
from bson.binary import UUID_SUBTYPE, Binary
from bson.int64 import Int64

from .commands import Namespace, abort_transaction_command, commit_transaction_command
from .errors import TransactionError, TransactionReason

logger = structlog.get_logger()

ADMIN = Namespace("admin")


@dataclass(frozen=True)
class SessionIdentifier:
    """16 random bytes sent as a UUID (binary subtype 4)"""
    value: uuid.UUID = field(default_factory=uuid.uuid4)

    def document(self) -> Dict[str, Any]:
        return {"id": Binary(self.value.bytes, UUID_SUBTYPE)}


@dataclass
class ServerSession:
    session_id: SessionIdentifier = field(default_factory=SessionIdentifier)
    last_use: float = field(default_factory=time.monotonic)
    transaction_number: int = 0
    # Set when a network error leaves the server-side state unknown
    dirty: bool = False

    def touch(self) -> None:
        self.last_use = time.monotonic()

    def next_transaction_number(self) -> int:
        self.transaction_number += 1
        return self.transaction_number

    def is_stale(self, idle_timeout: float, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        return now - self.last_use >= idle_timeout


class Transaction:
    """
    One transaction on a session.

    Created active. The first command carries ``startTransaction``; every
    command carries ``txnNumber`` and ``autocommit``. After commit or abort
    the transaction is terminal and refuses further commands.
    """

    def __init__(self, session: "ClientSession", number: int, autocommit: bool = False):
        self.session = session
        self.number = number
        self.autocommit = autocommit
        self.started = True
        self.active = True
        self._statement_sent = False

    def _require_active(self) -> None:
        if not self.active:
            raise TransactionError(
                TransactionReason.TRANSACTION_TERMINATED,
                f"transaction {self.number} has already been committed or aborted",
            )

    def command_fields(self) -> Dict[str, Any]:
        self._require_active()
        fields: Dict[str, Any] = {"txnNumber": Int64(self.number), "autocommit": self.autocommit}
        if not self._statement_sent:
            fields["startTransaction"] = True
            self._statement_sent = True
        return fields

    async def _finish(self, connection, command: Dict[str, Any], outcome: str) -> Optional[Dict[str, Any]]:
        self._require_active()
        try:
            if not self._statement_sent:
                # Server never saw the transaction; nothing to finish remotely
                return None
            return await connection.execute_command(
                command, ADMIN, session=self.session, transaction=self
            )
        finally:
            self.active = False
            logger.debug("Transaction finished",
                         txn_number=self.number,
                         outcome=outcome,
                         remote=self._statement_sent)

    async def commit(self, connection) -> Optional[Dict[str, Any]]:
        return await self._finish(connection, commit_transaction_command(), "commit")

    async def abort(self, connection) -> Optional[Dict[str, Any]]:
        return await self._finish(connection, abort_transaction_command(), "abort")


class ClientSession:
    """Caller-facing handle around a pooled ServerSession"""

    def __init__(self, manager: "SessionManager", server_session: ServerSession, implicit: bool = False):
        self._manager = manager
        self.server_session = server_session
        self.implicit = implicit
        self.cluster_time: Optional[Dict[str, Any]] = None
        self.transaction: Optional[Transaction] = None
        self.ended = False

    @property
    def session_id(self) -> SessionIdentifier:
        return self.server_session.session_id

    def advance_cluster_time(self, cluster_time: Optional[Mapping[str, Any]]) -> None:
        """Keep the newest ``$clusterTime`` gossiped by the server"""
        if not cluster_time or "clusterTime" not in cluster_time:
            return
        if self.cluster_time is None or cluster_time["clusterTime"] > self.cluster_time["clusterTime"]:
            self.cluster_time = dict(cluster_time)

    def command_fields(self) -> Dict[str, Any]:
        self.server_session.touch()
        fields: Dict[str, Any] = {"lsid": self.session_id.document()}
        if self.cluster_time is not None:
            fields["$clusterTime"] = self.cluster_time
        return fields

    def start_transaction(self, autocommit: bool = False) -> Transaction:
        if self.ended:
            raise TransactionError(TransactionReason.TRANSACTION_TERMINATED, "session has ended")
        if self.transaction is not None and self.transaction.active:
            raise TransactionError(
                TransactionReason.TRANSACTION_IN_PROGRESS,
                f"transaction {self.transaction.number} is still active",
            )
        self.transaction = Transaction(self, self.server_session.next_transaction_number(), autocommit)
        logger.debug("Transaction started", txn_number=self.transaction.number, autocommit=autocommit)
        return self.transaction

    def mark_dirty(self) -> None:
        self.server_session.dirty = True

    def end(self) -> None:
        if self.ended or self.implicit:
            return
        self.ended = True
        self._manager.release_session(self.server_session)

    def __enter__(self) -> "ClientSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.end()


class SessionManager:
    """LIFO pool of server sessions plus the connection-wide implicit session"""

    def __init__(self):
        self._pool: Deque[ServerSession] = deque()
        self._lock = threading.Lock()
        self._implicit: Optional[ClientSession] = None

    def retain_session(self, idle_timeout: Optional[float] = None) -> ClientSession:
        """
        Hand out the most recently released session.

        Args:
            idle_timeout: Seconds after which a pooled session is considered
                expired on the server and is discarded instead of reused
        """
        with self._lock:
            while self._pool:
                candidate = self._pool.pop()
                if idle_timeout is not None and candidate.is_stale(idle_timeout):
                    continue
                candidate.touch()
                return ClientSession(self, candidate)
        return ClientSession(self, ServerSession())

    def release_session(self, server_session: ServerSession) -> None:
        if server_session.dirty:
            logger.debug("Discarding dirty session")
            return
        server_session.touch()
        with self._lock:
            self._pool.append(server_session)

    @property
    def implicit_session(self) -> ClientSession:
        with self._lock:
            if self._implicit is None:
                self._implicit = ClientSession(self, ServerSession(), implicit=True)
            return self._implicit

    def prune(self, idle_timeout: float, now: Optional[float] = None) -> int:
        """Drop pooled sessions idle for at least ``idle_timeout`` seconds"""
        with self._lock:
            kept = deque(s for s in self._pool if not s.is_stale(idle_timeout, now))
            removed = len(self._pool) - len(kept)
            self._pool = kept
        if removed:
            logger.debug("Pruned idle sessions", removed=removed)
        return removed

    def pooled_session_ids(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [s.session_id.document() for s in self._pool]

    def drain(self) -> List[Dict[str, Any]]:
        """Empty the pool and return every session id the server may still hold"""
        with self._lock:
            sessions = list(self._pool)
            self._pool.clear()
            if self._implicit is not None:
                sessions.append(self._implicit.server_session)
                self._implicit = None
        return [s.session_id.document() for s in sessions]

    def __len__(self) -> int:
        with self._lock:
            return len(self._pool)
