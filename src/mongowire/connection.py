"""
A single authenticated connection to a mongod / mongos process.

One background task reads the socket and feeds a MessageDecoder; each decoded
reply is routed to the waiting request purely by ``responseTo``, so several
commands can be pipelined on one connection and answered in any order.
"""

import asyncio
import itertools
import ssl
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from .auth import CredentialsCache, authenticate, select_mechanism
from .commands import COMMAND_COLLECTION, Namespace, check_reply
from .config import ConnectionSettings, Credentials, Host
from .cursor import Cursor
from .documents import Document, to_dict
from .errors import (
    CommandFailure,
    ConnectionReason,
    InternalError,
    MongoConnectionError,
    ParsingReason,
    ProtocolParsingError,
    TransactionError,
    TransactionReason,
)
from .framing import MessageDecoder
from .handshake import (
    ServerHandshake,
    build_client_metadata,
    build_hello_command,
    log_server_capabilities,
)
from .sessions import ClientSession, SessionManager, Transaction
from .wire import (
    MAX_INT32,
    DocumentSequence,
    Frame,
    OpGetMore,
    OpKillCursors,
    OpMessage,
    OpMsgFlags,
    OpQuery,
    OpReply,
    QueryFlags,
    WireMessage,
    encode_message,
)

logger = structlog.get_logger()

ADMIN = Namespace("admin")
READ_CHUNK_SIZE = 64 * 1024

_connection_ids = itertools.count(1)


class ResponseSlots:
    """
    Outstanding requests keyed by request id.

    Ids increase monotonically, wrap from 2**31-1 back to 1, and skip any id
    that is still waiting for its reply.
    """

    def __init__(self):
        self._slots: Dict[int, asyncio.Future] = {}
        self._last_id = 0

    def next_id(self) -> int:
        for _ in range(len(self._slots) + 1):
            self._last_id = 1 if self._last_id >= MAX_INT32 else self._last_id + 1
            if self._last_id not in self._slots:
                return self._last_id
        raise InternalError("every request id is waiting for a reply")

    def allocate(self) -> Tuple[int, asyncio.Future]:
        request_id = self.next_id()
        future = asyncio.get_running_loop().create_future()
        self._slots[request_id] = future
        return request_id, future

    def resolve(self, response_to: int, frame: Frame) -> bool:
        future = self._slots.pop(response_to, None)
        if future is None or future.done():
            return False
        future.set_result(frame)
        return True

    def discard(self, request_id: int) -> None:
        self._slots.pop(request_id, None)

    def fail_all(self, error: BaseException) -> int:
        slots, self._slots = self._slots, {}
        failed = 0
        for future in slots.values():
            if not future.done():
                future.set_exception(error)
                failed += 1
        return failed

    def __contains__(self, request_id: int) -> bool:
        return request_id in self._slots

    def __len__(self) -> int:
        return len(self._slots)


class Connection:
    """
    Request/response multiplexing over one stream.

    Use ``Connection.connect`` to obtain a handshaken, authenticated
    connection; the constructor only wraps an already open stream.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, host: str,
                 socket_timeout: Optional[float] = None,
                 session_manager: Optional[SessionManager] = None):
        self.reader = reader
        self.writer = writer
        self.host = host
        self.socket_timeout = socket_timeout
        self.session_manager = session_manager
        self.connection_id = f"{host}#{next(_connection_ids)}"

        self.handshake: Optional[ServerHandshake] = None
        self._decoder = MessageDecoder()
        self._buffer = bytearray()
        self._slots = ResponseSlots()
        self._read_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._closed = False
        self._close_listeners: List[Callable[["Connection"], None]] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    async def connect(cls, host: Host, settings: ConnectionSettings,
                      session_manager: Optional[SessionManager] = None,
                      credentials_cache: Optional[CredentialsCache] = None) -> "Connection":
        """
        Open, handshake and authenticate a connection.

        A connection that fails any step is closed before the error is
        re-raised, so a half-open socket is never handed out.

        Raises:
            MongoConnectionError: connect failure, timeout, failed handshake
            AuthenticationError: SCRAM conversation failed
        """
        tls_context = settings.ssl_context()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(
                    host.hostname,
                    host.port,
                    ssl=tls_context,
                    server_hostname=host.hostname if tls_context else None,
                ),
                timeout=settings.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise MongoConnectionError(
                ConnectionReason.TIMEOUT, f"connect to {host} timed out after {settings.connect_timeout}s"
            ) from None
        except (OSError, ssl.SSLError) as e:
            raise MongoConnectionError(ConnectionReason.CANNOT_CONNECT, f"cannot connect to {host}: {e}") from e

        connection = cls(reader, writer, str(host),
                         socket_timeout=settings.socket_timeout,
                         session_manager=session_manager)
        connection.start()

        try:
            await asyncio.wait_for(
                connection.perform_handshake(settings.app_name, settings.credentials),
                timeout=settings.connect_timeout,
            )
            if settings.credentials is not None:
                await connection.authenticate(settings.credentials, credentials_cache)
        except asyncio.TimeoutError:
            await connection.close()
            raise MongoConnectionError(ConnectionReason.TIMEOUT, f"handshake with {host} timed out") from None
        except BaseException:
            await connection.close()
            raise

        return connection

    def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.get_running_loop().create_task(self._read_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_requests(self) -> int:
        return len(self._slots)

    @property
    def read_only(self) -> bool:
        return self.handshake is not None and self.handshake.read_only

    @property
    def writable(self) -> bool:
        return self.handshake is not None and self.handshake.writable

    def add_close_listener(self, listener: Callable[["Connection"], None]) -> None:
        self._close_listeners.append(listener)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._slots.fail_all(MongoConnectionError(ConnectionReason.NOT_CONNECTED, "connection closed"))

        task = self._read_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (OSError, ssl.SSLError) as e:
            logger.debug("Error while closing socket", connection_id=self.connection_id, error=str(e))

        logger.info("Connection closed", connection_id=self.connection_id)
        for listener in list(self._close_listeners):
            listener(self)

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        try:
            while True:
                chunk = await self.reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    raise MongoConnectionError(ConnectionReason.NOT_CONNECTED, "server closed the connection")
                self._buffer += chunk
                while True:
                    frame = self._decoder.parse(self._buffer)
                    if frame is None:
                        break
                    self._dispatch(frame)
        except asyncio.CancelledError:
            raise
        except ProtocolParsingError as e:
            logger.error("Protocol error, dropping connection",
                         connection_id=self.connection_id,
                         reason=e.reason.value,
                         error=str(e))
            await self._abort(e)
        except MongoConnectionError as e:
            logger.warning("Connection lost", connection_id=self.connection_id, error=str(e))
            await self._abort(e)
        except (OSError, ssl.SSLError) as e:
            logger.warning("Socket error", connection_id=self.connection_id, error=str(e))
            await self._abort(MongoConnectionError(ConnectionReason.NOT_CONNECTED, str(e)))

    def _dispatch(self, frame: Frame) -> None:
        if not self._slots.resolve(frame.header.response_to, frame):
            logger.warning("Dropping unmatched reply",
                           connection_id=self.connection_id,
                           response_to=frame.header.response_to,
                           op_code=frame.header.op_code.name)

    async def _abort(self, error: BaseException) -> None:
        self._slots.fail_all(error)
        await self.close()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def _send(self, message: WireMessage, expect_reply: bool = True,
                    session: Optional[ClientSession] = None) -> Optional[Frame]:
        if self._closed:
            raise MongoConnectionError(ConnectionReason.NOT_CONNECTED, f"{self.connection_id} is closed")

        if expect_reply:
            request_id, future = self._slots.allocate()
        else:
            request_id, future = self._slots.next_id(), None

        try:
            data = encode_message(
                message,
                request_id,
                max_message_size=self.handshake.max_message_size_bytes if self.handshake else None,
            )
        except BaseException:
            self._slots.discard(request_id)
            raise

        try:
            async with self._write_lock:
                self.writer.write(data)
                await self.writer.drain()
        except (OSError, ssl.SSLError) as e:
            self._slots.discard(request_id)
            error = MongoConnectionError(ConnectionReason.NOT_CONNECTED, f"write failed: {e}")
            await self._abort(error)
            raise error from e

        logger.debug("Message sent",
                     connection_id=self.connection_id,
                     request_id=request_id,
                     op_code=message.op_code.name,
                     length=len(data))

        if future is None:
            return None

        try:
            return await asyncio.wait_for(future, timeout=self.socket_timeout)
        except asyncio.TimeoutError:
            if session is not None:
                session.mark_dirty()
            logger.warning("Request timed out",
                           connection_id=self.connection_id,
                           request_id=request_id,
                           timeout=self.socket_timeout)
            raise MongoConnectionError(
                ConnectionReason.TIMEOUT, f"no reply to request {request_id} within {self.socket_timeout}s"
            ) from None
        finally:
            self._slots.discard(request_id)

    @staticmethod
    def _reply_document(frame: Frame) -> Dict[str, Any]:
        message = frame.message
        if isinstance(message, OpMessage):
            return to_dict(message.body)
        if isinstance(message, OpReply):
            if not message.documents:
                raise ProtocolParsingError(ParsingReason.MISSING_DOCUMENT_BODY, "OP_REPLY without a document")
            reply = to_dict(message.documents[0])
            if message.query_failure and "$err" in reply:
                reply = {"ok": 0, "errmsg": reply["$err"], "code": reply.get("code")}
            return reply
        raise ProtocolParsingError(
            ParsingReason.UNEXPECTED_VALUE, f"unexpected {message.op_code.name} in reply to a command"
        )

    async def _command_reply(self, frame: Frame) -> Dict[str, Any]:
        try:
            return self._reply_document(frame)
        except ProtocolParsingError as e:
            await self._abort(e)
            raise

    # ------------------------------------------------------------------
    # Handshake and authentication
    # ------------------------------------------------------------------

    async def perform_handshake(self, app_name: Optional[str] = None,
                                credentials: Optional[Credentials] = None) -> ServerHandshake:
        command = build_hello_command(
            build_client_metadata(app_name),
            credentials.user_namespace if credentials is not None else None,
        )
        try:
            reply = check_reply(await self._legacy_command(ADMIN, command))
        except (CommandFailure, ProtocolParsingError) as e:
            raise MongoConnectionError(ConnectionReason.HANDSHAKE_FAILED, f"handshake failed: {e}") from e

        self.handshake = ServerHandshake.from_document(reply)
        self._decoder.max_message_size = self.handshake.max_message_size_bytes
        log_server_capabilities(self.handshake, self.host)
        return self.handshake

    async def authenticate(self, credentials: Credentials,
                           cache: Optional[CredentialsCache] = None) -> None:
        mechanism = select_mechanism(credentials.mechanism, self.handshake.sasl_supported_mechs,
                                     self.handshake.max_wire_version)

        async def run(database: str, command: Dict[str, Any]) -> Dict[str, Any]:
            return await self.execute_command(command, Namespace(database), implicit_session=False)

        await authenticate(
            run,
            credentials.username,
            credentials.password.get_secret_value(),
            mechanism,
            source=credentials.source,
            cache=cache,
        )

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _require_handshake(self) -> ServerHandshake:
        if self.handshake is None:
            raise MongoConnectionError(ConnectionReason.NOT_CONNECTED, "handshake has not completed")
        return self.handshake

    async def _legacy_command(self, namespace: Namespace, command: Document) -> Dict[str, Any]:
        query = OpQuery(
            full_collection_name=f"{namespace.database}.{COMMAND_COLLECTION}",
            query=command,
            number_to_return=1,
        )
        return await self._command_reply(await self._send(query))

    async def execute(self, command: Dict[str, Any], namespace: Namespace,
                      session: Optional[ClientSession] = None,
                      transaction: Optional[Transaction] = None,
                      sequences: Sequence[DocumentSequence] = (),
                      more_to_come: bool = False,
                      implicit_session: bool = True) -> Dict[str, Any]:
        """
        Send a command and return the decoded reply document.

        The reply is returned whatever its ``ok`` value; use
        ``execute_command`` to turn failures into CommandFailure.

        Args:
            command: Command document, command name first
            namespace: Target database (the collection part is ignored)
            session: Explicit session; the implicit session is used otherwise
            transaction: Transaction the command belongs to
            sequences: OP_MSG document sequences (e.g. insert ``documents``)
            more_to_come: Fire-and-forget; no reply is awaited
            implicit_session: Attach the implicit session when none is given
        """
        handshake = self._require_handshake()
        if transaction is not None:
            if not handshake.supports_transactions:
                raise TransactionError(
                    TransactionReason.TRANSACTIONS_UNSUPPORTED,
                    f"server wire version {handshake.max_wire_version} has no transactions",
                )
            session = transaction.session

        if not handshake.supports_op_msg:
            if sequences:
                command = dict(command)
                for sequence in sequences:
                    command[sequence.identifier] = list(sequence.documents)
            return await self._legacy_command(namespace, command)

        document = dict(command)
        document["$db"] = namespace.database

        if session is None and implicit_session and self.session_manager is not None:
            session = self.session_manager.implicit_session
        if session is not None and handshake.supports_sessions:
            document.update(session.command_fields())
        else:
            session = None
        if transaction is not None:
            document.update(transaction.command_fields())

        flags = OpMsgFlags.MORE_TO_COME if more_to_come else OpMsgFlags.NONE
        frame = await self._send(OpMessage.command(document, sequences, flags), not more_to_come, session)
        if frame is None:
            return {"ok": 1}

        reply = await self._command_reply(frame)
        if session is not None:
            session.advance_cluster_time(reply.get("$clusterTime"))
        return reply

    async def execute_command(self, command: Dict[str, Any], namespace: Namespace,
                              session: Optional[ClientSession] = None,
                              transaction: Optional[Transaction] = None,
                              sequences: Sequence[DocumentSequence] = (),
                              implicit_session: bool = True) -> Dict[str, Any]:
        reply = await self.execute(command, namespace, session=session, transaction=transaction,
                                   sequences=sequences, implicit_session=implicit_session)
        return check_reply(reply)

    async def execute_cursor(self, command: Dict[str, Any], namespace: Namespace,
                             session: Optional[ClientSession] = None,
                             transaction: Optional[Transaction] = None) -> Cursor:
        """Run a cursor-returning command (find, aggregate...) and wrap the reply"""
        reply = await self.execute_command(command, namespace, session=session, transaction=transaction)
        return Cursor.from_reply(reply, self, session=session, transaction=transaction)

    # ------------------------------------------------------------------
    # Legacy cursor opcodes (servers without cursor commands)
    # ------------------------------------------------------------------

    async def query_legacy(self, namespace: Namespace, query: Document,
                           projection: Optional[Document] = None,
                           skip: int = 0, batch_size: int = 0,
                           flags: QueryFlags = QueryFlags.NONE) -> Cursor:
        message = OpQuery(
            full_collection_name=namespace.full_name,
            query=query,
            number_to_skip=skip,
            number_to_return=batch_size,
            flags=flags,
            projection=projection,
        )
        frame = await self._send(message)
        reply = await self._expect_op_reply(frame)
        if reply.query_failure:
            raise CommandFailure(await self._command_reply(frame))
        return Cursor.from_legacy_reply(reply, namespace, self)

    async def get_more_legacy(self, namespace: Namespace, cursor_id: int,
                              number_to_return: int = 0) -> OpReply:
        frame = await self._send(OpGetMore(namespace.full_name, cursor_id, number_to_return))
        return await self._expect_op_reply(frame)

    async def kill_cursors_legacy(self, cursor_ids: Iterable[int]) -> None:
        await self._send(OpKillCursors(tuple(cursor_ids)), expect_reply=False)

    async def _expect_op_reply(self, frame: Frame) -> OpReply:
        if not isinstance(frame.message, OpReply):
            error = ProtocolParsingError(
                ParsingReason.UNEXPECTED_VALUE, f"expected OP_REPLY, got {frame.message.op_code.name}"
            )
            await self._abort(error)
            raise error
        return frame.message

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Connection {self.connection_id} {state} pending={self.pending_requests}>"

