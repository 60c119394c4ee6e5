"""
SCRAM-SHA-1 / SCRAM-SHA-256 client authentication (RFC 5802, RFC 7677) and MONGODB-CR

The ScramClient is a pure state machine that produces and consumes the SASL
payload strings:

    IDLE --first_message()--> CHALLENGED --respond()--> AWAITING_VERIFICATION
         --verify()--> DONE

``authenticate`` drives it over the saslStart / saslContinue commands of a
freshly handshaken connection. Servers older than 3.0 only know the
MONGODB-CR challenge-response (getnonce / authenticate), which is kept for
them.
"""

import base64
import binascii
import hashlib
import hmac
import secrets
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import structlog
from bson.binary import Binary

from .errors import AuthenticationError, AuthenticationReason, CommandFailure, InternalError
from .handshake import WIRE_VERSION_SCRAM_SHA_1

logger = structlog.get_logger()

# Printable characters used for client nonces; never contains ","
NONCE_ALPHABET = "!\"#'$%&()*+-./0123456789:;<=>?@ABCDEFGHIJKLMNOPQRSTUVWXYZ[\\]^_$"
NONCE_LENGTH = 24

MAX_ITERATIONS = 50000

# Authentication is not allowed to take longer than this many round trips
MAX_CONVERSATION_STEPS = 10


class AuthMechanism(str, Enum):
    SCRAM_SHA_1 = "SCRAM-SHA-1"
    SCRAM_SHA_256 = "SCRAM-SHA-256"
    MONGODB_CR = "MONGODB-CR"

    @property
    def is_scram(self) -> bool:
        return self is not AuthMechanism.MONGODB_CR

    @property
    def digest_name(self) -> str:
        if not self.is_scram:
            raise InternalError(f"{self.value} is not a SCRAM mechanism")
        return "sha1" if self is AuthMechanism.SCRAM_SHA_1 else "sha256"

    def hash(self, data: bytes) -> bytes:
        return hashlib.new(self.digest_name, data).digest()

    def hmac(self, key: bytes, data: bytes) -> bytes:
        return hmac.new(key, data, self.digest_name).digest()

    def derive(self, password: str, salt: bytes, iterations: int) -> bytes:
        return hashlib.pbkdf2_hmac(self.digest_name, password.encode("utf-8"), salt, iterations)


class ScramState(Enum):
    IDLE = "idle"
    CHALLENGED = "challenged"
    AWAITING_VERIFICATION = "awaiting_verification"
    DONE = "done"


@dataclass(frozen=True)
class ScramCredentials:
    """Keys derived from the salted password; safe to reuse across connections"""
    salted_password: bytes
    client_key: bytes
    server_key: bytes


class CredentialsCache:
    """
    PBKDF2 results keyed by (mechanism, password, salt, iterations).

    Owned by a connection pool so every connection to the same deployment
    skips the key derivation after the first successful conversation.
    """

    def __init__(self, max_entries: int = 64):
        self.max_entries = max_entries
        self._entries: Dict[str, ScramCredentials] = {}
        self._lock = threading.Lock()

    @staticmethod
    def cache_key(mechanism: AuthMechanism, password: str, salt: bytes, iterations: int) -> str:
        digest = hashlib.sha256()
        digest.update(mechanism.value.encode("ascii"))
        digest.update(b"\x00")
        digest.update(password.encode("utf-8"))
        digest.update(b"\x00")
        digest.update(salt)
        digest.update(iterations.to_bytes(4, "little"))
        return digest.hexdigest()

    def get(self, key: str) -> Optional[ScramCredentials]:
        with self._lock:
            return self._entries.get(key)

    def put(self, key: str, credentials: ScramCredentials) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._entries.pop(next(iter(self._entries)))
            self._entries[key] = credentials

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def generate_nonce(length: int = NONCE_LENGTH) -> str:
    return "".join(secrets.choice(NONCE_ALPHABET) for _ in range(length))


def normalize_username(username: str) -> str:
    """SCRAM saslname escaping: '=' -> '=3D' and ',' -> '=2C'"""
    return username.replace("=", "=3D").replace(",", "=2C")


def prepare_password(mechanism: AuthMechanism, username: str, password: str) -> str:
    """
    Password string fed to PBKDF2.

    MongoDB's SCRAM-SHA-1 hashes the legacy MONGODB-CR digest rather than the
    plain password. SCRAM-SHA-256 uses the password as given.
    """
    if mechanism is AuthMechanism.SCRAM_SHA_1:
        return password_digest(username, password)
    return password


def password_digest(username: str, password: str) -> str:
    """hex md5 of ``<user>:mongo:<password>``, the stored MONGODB-CR credential"""
    return hashlib.md5(f"{username}:mongo:{password}".encode("utf-8")).hexdigest()


def challenge_response_key(nonce: str, username: str, password: str) -> str:
    """MONGODB-CR proof: md5(nonce + user + password_digest)"""
    material = f"{nonce}{username}{password_digest(username, password)}"
    return hashlib.md5(material.encode("utf-8")).hexdigest()


def _parse_attributes(message: str, allowed: Iterable[str]) -> Dict[str, str]:
    allowed = set(allowed)
    attributes: Dict[str, str] = {}
    for part in message.split(","):
        key, sep, value = part.partition("=")
        if not sep or len(key) != 1 or key not in allowed or key in attributes:
            raise AuthenticationError(
                AuthenticationReason.MALFORMED_CHALLENGE, f"unexpected SCRAM attribute {part[:16]!r}"
            )
        attributes[key] = value
    return attributes


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise AuthenticationError(AuthenticationReason.BASE64_FAILURE, "invalid base64 in SCRAM message") from e


def _xor(left: bytes, right: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(left, right))


class ScramClient:
    """Client side of one SCRAM conversation"""

    def __init__(self, mechanism: AuthMechanism, username: str, password: str,
                 cache: Optional[CredentialsCache] = None, nonce: Optional[str] = None):
        self.mechanism = mechanism
        self.username = username
        self._password = password
        self._cache = cache
        self.nonce = nonce or generate_nonce()
        self.state = ScramState.IDLE

        self._client_first_bare: Optional[str] = None
        self._expected_server_signature: Optional[bytes] = None

    def _require(self, state: ScramState, operation: str) -> None:
        if self.state is not state:
            raise InternalError(f"SCRAM {operation} called in state {self.state.name}")

    def first_message(self) -> str:
        self._require(ScramState.IDLE, "first_message")
        self._client_first_bare = f"n={normalize_username(self.username)},r={self.nonce}"
        self.state = ScramState.CHALLENGED
        return "n,," + self._client_first_bare

    def _credentials(self, salt: bytes, iterations: int) -> ScramCredentials:
        key = CredentialsCache.cache_key(self.mechanism, self._password, salt, iterations)
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        salted = self.mechanism.derive(self._password, salt, iterations)
        credentials = ScramCredentials(
            salted_password=salted,
            client_key=self.mechanism.hmac(salted, b"Client Key"),
            server_key=self.mechanism.hmac(salted, b"Server Key"),
        )
        if self._cache is not None:
            self._cache.put(key, credentials)
        return credentials

    def respond(self, server_first: str) -> str:
        """
        Answer the server challenge with the client proof.

        Args:
            server_first: ``r=<nonce>,s=<salt>,i=<iterations>``

        Returns:
            ``c=biws,r=<nonce>,p=<proof>``
        """
        self._require(ScramState.CHALLENGED, "respond")

        attributes = _parse_attributes(server_first, "rsi")
        missing = [k for k in "rsi" if k not in attributes]
        if missing:
            raise AuthenticationError(
                AuthenticationReason.MALFORMED_CHALLENGE, f"server-first missing {','.join(missing)}"
            )

        try:
            iterations = int(attributes["i"])
        except ValueError:
            raise AuthenticationError(
                AuthenticationReason.MALFORMED_CHALLENGE, "iteration count is not an integer"
            ) from None
        if not 0 < iterations <= MAX_ITERATIONS:
            raise AuthenticationError(
                AuthenticationReason.ITERATION_OUT_OF_RANGE,
                f"iteration count {iterations} outside (0, {MAX_ITERATIONS}]",
            )

        server_nonce = attributes["r"]
        if not server_nonce.startswith(self.nonce) or len(server_nonce) <= len(self.nonce):
            raise AuthenticationError(
                AuthenticationReason.MALFORMED_CHALLENGE, "server nonce does not extend client nonce"
            )

        salt = _b64decode(attributes["s"])
        credentials = self._credentials(salt, iterations)

        without_proof = f"c=biws,r={server_nonce}"
        auth_message = f"{self._client_first_bare},{server_first},{without_proof}".encode("utf-8")

        stored_key = self.mechanism.hash(credentials.client_key)
        client_signature = self.mechanism.hmac(stored_key, auth_message)
        proof = _xor(credentials.client_key, client_signature)
        self._expected_server_signature = self.mechanism.hmac(credentials.server_key, auth_message)

        self.state = ScramState.AWAITING_VERIFICATION
        return f"{without_proof},p={base64.b64encode(proof).decode('ascii')}"

    def verify(self, server_final: str) -> None:
        self._require(ScramState.AWAITING_VERIFICATION, "verify")

        attributes = _parse_attributes(server_final, "ve")
        if "e" in attributes:
            raise AuthenticationError(
                AuthenticationReason.INCORRECT_CREDENTIALS, f"server rejected proof: {attributes['e']}"
            )
        if "v" not in attributes:
            raise AuthenticationError(AuthenticationReason.MALFORMED_CHALLENGE, "server-final missing v")

        signature = _b64decode(attributes["v"])
        if not hmac.compare_digest(signature, self._expected_server_signature):
            raise AuthenticationError(
                AuthenticationReason.SIGNATURE_MISMATCH, "server signature does not match"
            )
        self.state = ScramState.DONE

    @property
    def done(self) -> bool:
        return self.state is ScramState.DONE


def select_mechanism(requested: Optional[AuthMechanism],
                     supported: Optional[Iterable[str]],
                     max_wire_version: int = WIRE_VERSION_SCRAM_SHA_1) -> AuthMechanism:
    """
    Pick the mechanism for a connection.

    An explicit choice wins as long as the server lists it. Otherwise
    SCRAM-SHA-256 is preferred when advertised. Servers that send no
    ``saslSupportedMechs`` predate SHA-256 and get SCRAM-SHA-1, or MONGODB-CR
    below wire version 3.
    """
    if requested is not None:
        if supported is not None and requested.value not in supported:
            raise AuthenticationError(
                AuthenticationReason.UNSUPPORTED_MECHANISM,
                f"server does not support {requested.value}",
            )
        return requested
    if supported is None:
        if max_wire_version >= WIRE_VERSION_SCRAM_SHA_1:
            return AuthMechanism.SCRAM_SHA_1
        return AuthMechanism.MONGODB_CR
    if AuthMechanism.SCRAM_SHA_256.value in supported:
        return AuthMechanism.SCRAM_SHA_256
    if AuthMechanism.SCRAM_SHA_1.value in supported:
        return AuthMechanism.SCRAM_SHA_1
    raise AuthenticationError(
        AuthenticationReason.UNSUPPORTED_MECHANISM,
        f"no SCRAM mechanism in {sorted(supported)}",
    )


RunCommand = Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]]


def _payload(reply: Dict[str, Any]) -> str:
    payload = reply.get("payload")
    if not isinstance(payload, (bytes, bytearray)):
        raise AuthenticationError(AuthenticationReason.MALFORMED_CHALLENGE, "SASL reply without payload")
    try:
        return bytes(payload).decode("utf-8")
    except UnicodeDecodeError as e:
        raise AuthenticationError(AuthenticationReason.MALFORMED_CHALLENGE, "SASL payload is not utf-8") from e


async def authenticate(run_command: RunCommand, username: str, password: str,
                       mechanism: AuthMechanism, source: str = "admin",
                       cache: Optional[CredentialsCache] = None) -> None:
    """
    Authenticate a freshly handshaken connection.

    Args:
        run_command: Coroutine sending a command to a database and returning
            the decoded reply; raises CommandFailure on ok != 1
        username: User name as stored on the server
        password: Plain text password
        mechanism: Mechanism negotiated for this user
        source: Database holding the user definition
        cache: Shared key derivation cache (SCRAM only)

    Raises:
        AuthenticationError: any protocol or credential failure
    """
    async def step(command: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await run_command(source, command)
        except CommandFailure as e:
            raise AuthenticationError(AuthenticationReason.INCORRECT_CREDENTIALS, e.errmsg) from e

    if mechanism.is_scram:
        await _scram_conversation(step, username, password, mechanism, source, cache)
    else:
        await _challenge_response(step, username, password, source)

    logger.info("Authenticated", mechanism=mechanism.value, source=source)


async def _scram_conversation(step, username: str, password: str, mechanism: AuthMechanism,
                              source: str, cache: Optional[CredentialsCache]) -> None:
    client = ScramClient(mechanism, username, prepare_password(mechanism, username, password), cache)

    logger.debug("Starting SCRAM conversation", mechanism=mechanism.value, source=source)

    reply = await step({
        "saslStart": 1,
        "mechanism": mechanism.value,
        "payload": Binary(client.first_message().encode("utf-8")),
        "autoAuthorize": 1,
        "options": {"skipEmptyExchange": True},
    })
    conversation_id = reply.get("conversationId")
    final = client.respond(_payload(reply))

    reply = await step({
        "saslContinue": 1,
        "conversationId": conversation_id,
        "payload": Binary(final.encode("utf-8")),
    })
    client.verify(_payload(reply))

    steps = 0
    while not reply.get("done", False):
        steps += 1
        if steps > MAX_CONVERSATION_STEPS:
            raise AuthenticationError(
                AuthenticationReason.MALFORMED_CHALLENGE, "SASL conversation did not complete"
            )
        reply = await step({
            "saslContinue": 1,
            "conversationId": conversation_id,
            "payload": Binary(b""),
        })


async def _challenge_response(step, username: str, password: str, source: str) -> None:
    logger.debug("Starting MONGODB-CR conversation", source=source)

    reply = await step({"getnonce": 1})
    nonce = reply.get("nonce")
    if not isinstance(nonce, str) or not nonce:
        raise AuthenticationError(AuthenticationReason.MALFORMED_CHALLENGE, "getnonce reply without nonce")

    await step({
        "authenticate": 1,
        "nonce": nonce,
        "user": username,
        "key": challenge_response_key(nonce, username, password),
    })
