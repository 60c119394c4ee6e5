"""
Integration test configuration

Provides FakeMongoServer, an in-process asyncio server that speaks enough of
the wire protocol (OP_QUERY handshake, OP_MSG commands, SCRAM) to exercise
Connection and ConnectionPool over real sockets on 127.0.0.1.

Each request is answered from its own task, so a slow handler lets later
requests overtake it and replies arrive out of order.
"""

import asyncio
import base64
import hashlib
import hmac
import inspect
import secrets
from itertools import count
from typing import Any, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
import structlog

from mongowire.auth import AuthMechanism, prepare_password
from mongowire.config import ConnectionSettings
from mongowire.documents import to_dict
from mongowire.framing import MessageDecoder
from mongowire.wire import (
    Frame,
    OpGetMore,
    OpKillCursors,
    OpMessage,
    OpQuery,
    OpReply,
    ReplyFlags,
    encode_message,
)

logger = structlog.get_logger()

Handler = Callable[[Dict[str, Any]], Any]

LEGACY_CURSOR_ID = 55


def command_not_found(command: Dict[str, Any]) -> Dict[str, Any]:
    name = next(iter(command))
    return {"ok": 0.0, "errmsg": f"no such command: '{name}'", "code": 59, "codeName": "CommandNotFound"}


def ok(command: Dict[str, Any]) -> Dict[str, Any]:
    return {"ok": 1.0}


class FakeMongoServer:
    """
    Scriptable wire protocol server.

    Handlers map a command name to a callable (sync or async) returning:
        dict  - reply document
        bytes - written verbatim (malformed replies)
        None  - no reply at all
    """

    def __init__(self, max_wire_version: int = 17, read_only: bool = False,
                 writable_primary: bool = True, logical_session_timeout_minutes: int = 30):
        self.max_wire_version = max_wire_version
        self.read_only = read_only
        self.writable_primary = writable_primary
        self.logical_session_timeout_minutes = logical_session_timeout_minutes
        self.sasl_mechanisms: Optional[List[str]] = None

        self.handlers: Dict[str, Handler] = {"ping": ok, "endSessions": ok, "killCursors": ok}
        self.requests: List[Frame] = []
        self.commands: List[Dict[str, Any]] = []
        self.handshakes: List[Dict[str, Any]] = []

        # documents served to OP_QUERY / OP_GET_MORE outside $cmd
        self.legacy_documents: List[Dict[str, Any]] = []
        self.killed_cursors: List[int] = []
        # replaces the OP_REPLY page normally sent for OP_GET_MORE
        self.get_more_reply: Optional[Callable[[OpGetMore], Any]] = None
        self._legacy_remaining: List[Dict[str, Any]] = []

        self._server: Optional[asyncio.AbstractServer] = None
        self._writers: List[asyncio.StreamWriter] = []
        self._tasks = set()
        self._ids = count(1000)
        self.port = 0

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    def settings(self, **overrides) -> ConnectionSettings:
        values = {"hosts": [self.address], "connect_timeout": 2.0, "socket_timeout": 2.0}
        values.update(overrides)
        return ConnectionSettings(**values)

    def command_names(self) -> List[str]:
        return [next(iter(c)) for c in self.commands]

    async def start(self) -> "FakeMongoServer":
        self._server = await asyncio.start_server(self._serve, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        for writer in self._writers:
            writer.close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    async def drop_clients(self) -> None:
        """Close every client socket from the server side"""
        for writer in self._writers:
            writer.close()
        self._writers.clear()

    def hello_reply(self, command: Dict[str, Any]) -> Dict[str, Any]:
        reply = {
            "ismaster": self.writable_primary,
            "maxWireVersion": self.max_wire_version,
            "minWireVersion": 0,
            "maxBsonObjectSize": 16 * 1024 * 1024,
            "maxMessageSizeBytes": 48000000,
            "maxWriteBatchSize": 100000,
            "ok": 1.0,
        }
        if not self.writable_primary:
            reply["secondary"] = True
        if self.read_only:
            reply["readOnly"] = True
        if self.max_wire_version >= 6:
            reply["logicalSessionTimeoutMinutes"] = self.logical_session_timeout_minutes
        if "saslSupportedMechs" in command and self.sasl_mechanisms is not None:
            reply["saslSupportedMechs"] = list(self.sasl_mechanisms)
        return reply

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.append(writer)
        decoder = MessageDecoder()
        buffer = bytearray()
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                buffer += chunk
                for frame in decoder.parse_all(buffer):
                    self.requests.append(frame)
                    task = asyncio.ensure_future(self._respond(frame, writer))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def _handle(self, command: Dict[str, Any]):
        handler = self.handlers.get(next(iter(command)), command_not_found)
        result = handler(command)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _legacy_page(self, number_to_return: int) -> OpReply:
        count = number_to_return if number_to_return > 0 else len(self._legacy_remaining)
        page, self._legacy_remaining = self._legacy_remaining[:count], self._legacy_remaining[count:]
        cursor_id = LEGACY_CURSOR_ID if self._legacy_remaining else 0
        return OpReply(ReplyFlags.NONE, cursor_id, 0, tuple(page))

    async def _respond(self, frame: Frame, writer: asyncio.StreamWriter) -> None:
        header, message = frame
        if isinstance(message, OpQuery) and not message.full_collection_name.endswith(".$cmd"):
            self._legacy_remaining = list(self.legacy_documents[message.number_to_skip:])
            reply = encode_message(self._legacy_page(message.number_to_return), next(self._ids), header.request_id)
        elif isinstance(message, OpGetMore):
            if self.get_more_reply is not None:
                page = self.get_more_reply(message)
            elif message.cursor_id != LEGACY_CURSOR_ID or not self._legacy_remaining:
                page = OpReply(ReplyFlags.CURSOR_NOT_FOUND, 0, 0, ())
            else:
                page = self._legacy_page(message.number_to_return)
            reply = encode_message(page, next(self._ids), header.request_id)
        elif isinstance(message, OpKillCursors):
            self.killed_cursors.extend(message.cursor_ids)
            self._legacy_remaining = []
            return
        elif isinstance(message, OpQuery):
            command = to_dict(message.query)
            if next(iter(command)).lower() in ("ismaster", "hello"):
                self.handshakes.append(command)
                reply = self.hello_reply(command)
            else:
                self.commands.append(command)
                reply = await self._handle(command)
            if reply is None:
                return
            if not isinstance(reply, bytes):
                reply = encode_message(OpReply(ReplyFlags.NONE, 0, 0, (reply,)), next(self._ids), header.request_id)
        elif isinstance(message, OpMessage):
            command = to_dict(message.body)
            self.commands.append(command)
            reply = await self._handle(command)
            if reply is None or message.more_to_come:
                return
            if not isinstance(reply, bytes):
                reply = encode_message(OpMessage.command(reply), next(self._ids), header.request_id)
        else:
            return

        try:
            writer.write(reply)
            await writer.drain()
        except ConnectionError:
            logger.debug("Client went away before reply", response_to=header.request_id)


class ScramServer:
    """Server half of a SCRAM conversation for one user"""

    def __init__(self, username: str, password: str,
                 mechanism: AuthMechanism = AuthMechanism.SCRAM_SHA_256,
                 iterations: int = 4096, skip_empty_exchange: bool = True, advertise: bool = True):
        self.username = username
        self.advertise = advertise
        self.mechanism = mechanism
        self.iterations = iterations
        self.skip_empty_exchange = skip_empty_exchange
        self.salt = secrets.token_bytes(16)
        self.salted_password = mechanism.derive(
            prepare_password(mechanism, username, password), self.salt, iterations
        )
        self.conversations = 0
        self._auth_prefix = ""
        self._nonce = ""
        self._known_user = False
        self._verified = False

    def install(self, server: FakeMongoServer) -> "ScramServer":
        if self.advertise:
            server.sasl_mechanisms = [self.mechanism.value]
        server.handlers["saslStart"] = self.start
        server.handlers["saslContinue"] = self.proceed
        return self

    @staticmethod
    def _attributes(message: str) -> Dict[str, str]:
        return dict(part.split("=", 1) for part in message.split(","))

    @staticmethod
    def _failure() -> Dict[str, Any]:
        return {"ok": 0.0, "errmsg": "Authentication failed.", "code": 18, "codeName": "AuthenticationFailed"}

    def start(self, command: Dict[str, Any]) -> Dict[str, Any]:
        self.conversations += 1
        if command["mechanism"] != self.mechanism.value:
            return {"ok": 0.0, "errmsg": "Received authentication for mechanism which is not enabled",
                    "code": 334, "codeName": "MechanismUnavailable"}
        client_first = bytes(command["payload"]).decode("utf-8")
        client_first_bare = client_first.split(",", 2)[2]
        attributes = self._attributes(client_first_bare)
        self._known_user = attributes.get("n") == self.username
        self._nonce = attributes["r"] + secrets.token_hex(12)
        salt = base64.b64encode(self.salt).decode("ascii")
        server_first = f"r={self._nonce},s={salt},i={self.iterations}"
        self._auth_prefix = f"{client_first_bare},{server_first}"
        self._verified = False
        return {"conversationId": 1, "done": False, "payload": server_first.encode("utf-8"), "ok": 1.0}

    def proceed(self, command: Dict[str, Any]) -> Dict[str, Any]:
        payload = bytes(command["payload"]).decode("utf-8")
        if not payload:
            if not self._verified:
                return self._failure()
            return {"conversationId": 1, "done": True, "payload": b"", "ok": 1.0}

        without_proof, _, proof = payload.rpartition(",p=")
        attributes = self._attributes(without_proof)
        if not self._known_user or attributes.get("r") != self._nonce:
            return self._failure()

        auth_message = f"{self._auth_prefix},{without_proof}".encode("utf-8")
        client_key = self.mechanism.hmac(self.salted_password, b"Client Key")
        stored_key = self.mechanism.hash(client_key)
        signature = self.mechanism.hmac(stored_key, auth_message)
        expected = bytes(a ^ b for a, b in zip(client_key, signature))
        if not hmac.compare_digest(expected, base64.b64decode(proof)):
            return self._failure()

        server_key = self.mechanism.hmac(self.salted_password, b"Server Key")
        verifier = base64.b64encode(self.mechanism.hmac(server_key, auth_message)).decode("ascii")
        self._verified = True
        return {
            "conversationId": 1,
            "done": self.skip_empty_exchange,
            "payload": f"v={verifier}".encode("utf-8"),
            "ok": 1.0,
        }


class ChallengeResponseServer:
    """Server half of MONGODB-CR for one user; nonces are handed out in order"""

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password
        self.nonces: List[str] = []

    def install(self, server: FakeMongoServer) -> "ChallengeResponseServer":
        server.handlers["getnonce"] = self.get_nonce
        server.handlers["authenticate"] = self.authenticate
        return self

    def get_nonce(self, command: Dict[str, Any]) -> Dict[str, Any]:
        self.nonces.append(secrets.token_hex(8))
        return {"nonce": self.nonces[-1], "ok": 1.0}

    def expected_key(self, nonce: str) -> str:
        stored = hashlib.md5(f"{self.username}:mongo:{self.password}".encode()).hexdigest()
        return hashlib.md5(f"{nonce}{self.username}{stored}".encode()).hexdigest()

    def authenticate(self, command: Dict[str, Any]) -> Dict[str, Any]:
        if (command.get("user") == self.username and self.nonces
                and command.get("nonce") == self.nonces[-1]
                and command.get("key") == self.expected_key(self.nonces[-1])):
            return {"dbname": "admin", "user": self.username, "ok": 1.0}
        return {"ok": 0.0, "errmsg": "auth failed", "code": 18, "codeName": "AuthenticationFailed"}


@pytest_asyncio.fixture
async def server_factory():
    """Start FakeMongoServer instances that are stopped after the test"""
    servers: List[FakeMongoServer] = []

    async def make(**kwargs) -> FakeMongoServer:
        server = await FakeMongoServer(**kwargs).start()
        servers.append(server)
        return server

    yield make

    for server in servers:
        await server.stop()


@pytest_asyncio.fixture
async def fake_server(server_factory):
    return await server_factory()


@pytest.fixture
def scram_server():
    return ScramServer


@pytest.fixture
def challenge_response_server():
    return ChallengeResponseServer
