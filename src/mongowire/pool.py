"""
Connection pool over a static host list.

There is no topology monitoring: connections are selected by the
capabilities their own handshake reported, grown on demand up to
``max_pool_size``, and evicted as soon as they fail. The next request for a
connection transparently opens a replacement.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .auth import CredentialsCache
from .commands import Namespace, end_sessions_commands
from .config import ConnectionSettings, Host
from .connection import Connection
from .errors import (
    AuthenticationError,
    ConnectionReason,
    MongoConnectionError,
    MongoWireError,
)
from .sessions import ClientSession, SessionManager, Transaction

logger = structlog.get_logger()

ConnectionFactory = Callable[[Host], Awaitable[Connection]]


class ConnectionRequirement(Enum):
    BASIC = "basic"          # any live connection
    WRITABLE = "writable"    # excludes read-only servers and secondaries


def satisfies(connection: Connection, requirement: ConnectionRequirement) -> bool:
    if connection.closed:
        return False
    if requirement is ConnectionRequirement.WRITABLE:
        return connection.writable
    return True


class ConnectionPool:
    """
    Hands out connections that satisfy a capability requirement.

    The pool owns the SessionManager and the SCRAM CredentialsCache shared by
    all of its connections.
    """

    def __init__(self, settings: ConnectionSettings,
                 connection_factory: Optional[ConnectionFactory] = None):
        self.settings = settings
        self.session_manager = SessionManager()
        self.credentials_cache = CredentialsCache()

        self._connections: List[Connection] = []
        self._grow_lock = asyncio.Lock()
        self._next_index = 0
        self._closed = False
        self._factory = connection_factory or self._open

        logger.info("Connection pool initialized",
                    hosts=[str(h) for h in settings.hosts],
                    max_pool_size=settings.max_pool_size,
                    tls=settings.use_tls)

    async def _open(self, host: Host) -> Connection:
        return await Connection.connect(
            host,
            self.settings,
            session_manager=self.session_manager,
            credentials_cache=self.credentials_cache,
        )

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def _select(self, requirement: ConnectionRequirement) -> Optional[Connection]:
        if self._closed:
            raise MongoConnectionError(ConnectionReason.NOT_CONNECTED, "connection pool is closed")

        self._connections = [c for c in self._connections if not c.closed]
        candidates = [c for c in self._connections if satisfies(c, requirement)]
        if not candidates:
            return None
        connection = candidates[self._next_index % len(candidates)]
        self._next_index += 1
        return connection

    async def next(self, requirement: ConnectionRequirement = ConnectionRequirement.BASIC) -> Connection:
        """
        Return a live connection satisfying ``requirement``.

        Existing connections are preferred (round robin); otherwise a new one
        is opened, trying hosts in order. Only growth is serialized, so a
        request an existing connection can serve never waits for a connect.

        Raises:
            MongoConnectionError: POOL_EXHAUSTED when the pool is full and no
                connection matches, CANNOT_CONNECT when no host could be used
            AuthenticationError: credentials were rejected
        """
        connection = self._select(requirement)
        if connection is not None:
            return connection

        async with self._grow_lock:
            # the previous holder may have opened a matching connection
            connection = self._select(requirement)
            if connection is not None:
                return connection
            return await self._grow(requirement)

    async def _grow(self, requirement: ConnectionRequirement) -> Connection:
        if not self.settings.hosts:
            raise MongoConnectionError(ConnectionReason.NO_HOST_SPECIFIED, "no hosts configured")

        # Hosts whose pooled connection already proved unsuitable
        unsuitable = {c.host for c in self._connections if not satisfies(c, requirement)}
        last_error: Optional[MongoConnectionError] = None

        for host in self.settings.hosts:
            if str(host) in unsuitable:
                continue
            if len(self._connections) >= self.settings.max_pool_size:
                raise MongoConnectionError(
                    ConnectionReason.POOL_EXHAUSTED,
                    f"pool is full ({self.settings.max_pool_size}) and no connection is {requirement.value}",
                )

            try:
                connection = await self._factory(host)
            except AuthenticationError:
                raise
            except MongoConnectionError as e:
                logger.warning("Host unavailable", host=str(host), reason=e.reason.value, error=str(e))
                last_error = e
                continue

            if self._closed:
                await connection.close()
                raise MongoConnectionError(ConnectionReason.NOT_CONNECTED,
                                           "connection pool closed while connecting")
            self._register(connection)
            if satisfies(connection, requirement):
                logger.info("Connection opened",
                            connection_id=connection.connection_id,
                            requirement=requirement.value,
                            pool_size=len(self._connections))
                return connection
            logger.info("Connection does not satisfy requirement",
                        connection_id=connection.connection_id,
                        requirement=requirement.value,
                        read_only=connection.read_only)

        if len(self._connections) >= self.settings.max_pool_size:
            raise MongoConnectionError(
                ConnectionReason.POOL_EXHAUSTED,
                f"pool is full ({self.settings.max_pool_size}) and no connection is {requirement.value}",
            )
        raise MongoConnectionError(
            ConnectionReason.CANNOT_CONNECT, f"no host provides a {requirement.value} connection"
        ) from last_error

    def _register(self, connection: Connection) -> None:
        connection.add_close_listener(self._on_connection_closed)
        self._connections.append(connection)

    def _on_connection_closed(self, connection: Connection) -> None:
        if connection in self._connections:
            self._connections.remove(connection)
            logger.info("Connection evicted",
                        connection_id=connection.connection_id,
                        pool_size=len(self._connections))

    async def evict(self, connection: Connection) -> None:
        await connection.close()
        self._on_connection_closed(connection)

    # ------------------------------------------------------------------
    # Sessions and commands
    # ------------------------------------------------------------------

    def _session_idle_timeout(self) -> Optional[float]:
        minutes = [
            c.handshake.logical_session_timeout_minutes
            for c in self._connections
            if c.handshake is not None and c.handshake.logical_session_timeout_minutes
        ]
        if not minutes:
            return None
        # Leave a minute of slack so the server never expires a session in use
        return max(min(minutes) - 1, 0) * 60.0

    def start_session(self) -> ClientSession:
        return self.session_manager.retain_session(self._session_idle_timeout())

    async def run_command(self, database: str, command: Dict[str, Any],
                          requirement: ConnectionRequirement = ConnectionRequirement.BASIC,
                          session: Optional[ClientSession] = None,
                          transaction: Optional[Transaction] = None) -> Dict[str, Any]:
        connection = await self.next(requirement)
        return await connection.execute_command(
            command, Namespace(database), session=session, transaction=transaction
        )

    async def _end_sessions(self) -> None:
        session_ids = self.session_manager.drain()
        live = [c for c in self._connections
                if not c.closed and c.handshake is not None and c.handshake.supports_sessions]
        if not session_ids or not live:
            return
        for command in end_sessions_commands(session_ids):
            try:
                await live[0].execute_command(command, Namespace("admin"), implicit_session=False)
            except MongoWireError as e:
                logger.warning("endSessions failed", error=str(e), sessions=len(command["endSessions"]))
                return

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._end_sessions()
        connections, self._connections = self._connections, []
        await asyncio.gather(*(c.close() for c in connections), return_exceptions=True)
        self.credentials_cache.clear()
        logger.info("Connection pool closed", connections=len(connections))

    async def __aenter__(self) -> "ConnectionPool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
