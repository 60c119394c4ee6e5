"""
Pytest configuration for MongoWire tests

Unit tests run against scripted stand-ins for a Connection; integration tests
(tests/integration) run against an in-process server speaking the wire
protocol.
"""

from collections import deque
from typing import Any, Dict, List, Optional

import pytest
import structlog

from mongowire.handshake import ServerHandshake

logger = structlog.get_logger()


class ScriptedConnection:
    """
    Answers execute_command() calls from a list of canned replies.

    Replies that are exceptions are raised instead of returned. Every command
    is recorded with the session and transaction fields it would carry.
    """

    def __init__(self, replies: Optional[List[Any]] = None, max_wire_version: int = 17):
        self.replies = deque(replies or [])
        self.commands: List[Dict[str, Any]] = []
        self.namespaces: List[str] = []
        self.handshake = ServerHandshake(max_wire_version=max_wire_version)
        self.closed = False

    async def execute_command(self, command, namespace, session=None, transaction=None, **kwargs):
        document = dict(command)
        if transaction is not None:
            document.update(transaction.command_fields())
        self.commands.append(document)
        self.namespaces.append(namespace.database)
        if not self.replies:
            raise AssertionError(f"unexpected command {document}")
        reply = self.replies.popleft()
        if isinstance(reply, BaseException):
            raise reply
        return reply

    def command_names(self) -> List[str]:
        return [next(iter(c)) for c in self.commands]


@pytest.fixture
def scripted_connection():
    """Factory for ScriptedConnection instances"""
    return ScriptedConnection
