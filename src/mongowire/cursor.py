"""
Server-side cursor pagination.

A Cursor wraps the reply of a cursor-returning command (find, aggregate,
listCollections...) and fetches further batches with getMore on the
connection that created it. MappedCursor layers pure transforms over one
shared Cursor, so any chain of map()/decode() still costs exactly one round
trip per batch.
"""

import inspect
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, List, Mapping, Optional, Sequence

import structlog
from pydantic import BaseModel

from .commands import Namespace, get_more_command, kill_cursors_command
from .documents import to_dict
from .errors import (
    CURSOR_NOT_FOUND_CODE,
    CommandFailure,
    CursorError,
    CursorReason,
    ParsingReason,
    ProtocolParsingError,
)

logger = structlog.get_logger()

DEFAULT_BATCH_SIZE = 101

Transform = Callable[[Any], Any]


class _BatchIteration(ABC):
    """Consumption helpers shared by executed and mapped cursors"""

    @abstractmethod
    async def next_batch(self, batch_size: int = DEFAULT_BATCH_SIZE, failable: bool = False) -> List[Any]:
        ...

    @property
    @abstractmethod
    def exhausted(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    async def iterate(self, batch_size: int = DEFAULT_BATCH_SIZE,
                      failable: bool = False) -> AsyncIterator[Any]:
        # Cancellation lands between batches; the server cursor stays open
        # until close() is called explicitly.
        while not self.exhausted:
            for item in await self.next_batch(batch_size, failable):
                yield item

    def __aiter__(self) -> AsyncIterator[Any]:
        return self.iterate()

    async def drain(self, batch_size: int = DEFAULT_BATCH_SIZE, failable: bool = False) -> List[Any]:
        results: List[Any] = []
        while not self.exhausted:
            results.extend(await self.next_batch(batch_size, failable))
        return results

    async def for_each(self, callback: Callable[[Any], Any], batch_size: int = DEFAULT_BATCH_SIZE,
                       failable: bool = False) -> None:
        async for item in self.iterate(batch_size, failable):
            result = callback(item)
            if inspect.isawaitable(result):
                await result

    @abstractmethod
    def map(self, transform: Transform) -> "MappedCursor":
        ...

    def decode(self, model: Any) -> "MappedCursor":
        """Validate every document into ``model`` (a pydantic model or any callable)"""
        if isinstance(model, type) and issubclass(model, BaseModel):
            return self.map(model.model_validate)
        return self.map(model)


class Cursor(_BatchIteration):
    """
    An executed server-side cursor.

    ``drained`` turns true, permanently, once the server reports cursor id 0.
    At most one getMore may be in flight at a time.
    """

    def __init__(self, connection, namespace: Namespace, cursor_id: int, first_batch: Sequence[Any] = (),
                 session=None, transaction=None, legacy: bool = False,
                 max_await_time_ms: Optional[int] = None):
        self.connection = connection
        self.namespace = namespace
        self.cursor_id = int(cursor_id)
        self.session = session
        self.transaction = transaction
        self.legacy = legacy
        self.max_await_time_ms = max_await_time_ms

        self._buffer: List[Any] = list(first_batch)
        self.drained = self.cursor_id == 0
        self._in_flight = False

    @classmethod
    def from_reply(cls, reply: Mapping[str, Any], connection, session=None, transaction=None) -> "Cursor":
        """Build from ``{"cursor": {"id", "ns", "firstBatch"}, "ok": 1}``"""
        cursor = reply.get("cursor")
        if not isinstance(cursor, Mapping) or "id" not in cursor or "ns" not in cursor:
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, "reply does not describe a cursor")
        return cls(
            connection,
            Namespace.parse(cursor["ns"]),
            cursor["id"],
            cursor.get("firstBatch", []),
            session=session,
            transaction=transaction,
        )

    @classmethod
    def from_legacy_reply(cls, reply, namespace: Namespace, connection) -> "Cursor":
        """Build from the OP_REPLY answering a legacy OP_QUERY"""
        return cls(
            connection,
            namespace,
            reply.cursor_id,
            [to_dict(document) for document in reply.documents],
            legacy=True,
        )

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def exhausted(self) -> bool:
        return self.drained and not self._buffer

    async def next_batch(self, batch_size: int = DEFAULT_BATCH_SIZE, failable: bool = False) -> List[Any]:
        if self._buffer:
            batch, self._buffer = self._buffer, []
            return batch
        if self.drained:
            return []
        if self._in_flight:
            raise CursorError(
                CursorReason.BATCH_IN_FLIGHT, f"cursor {self.cursor_id} already has a getMore in flight"
            )

        self._in_flight = True
        try:
            if self.legacy:
                return await self._get_more_legacy(batch_size)
            return await self._get_more(batch_size)
        finally:
            self._in_flight = False

    def _mark_not_found(self, message: str) -> CursorError:
        logger.warning("Cursor not found on server", cursor_id=self.cursor_id, namespace=str(self.namespace))
        self.drained = True
        self._buffer.clear()
        return CursorError(CursorReason.CURSOR_NOT_FOUND, message)

    async def _get_more(self, batch_size: int) -> List[Any]:
        command = get_more_command(self.namespace, self.cursor_id, batch_size, self.max_await_time_ms)
        try:
            reply = await self.connection.execute_command(
                command, self.namespace, session=self.session, transaction=self.transaction
            )
        except CommandFailure as e:
            if e.code == CURSOR_NOT_FOUND_CODE:
                raise self._mark_not_found(e.errmsg) from e
            raise

        cursor = reply.get("cursor")
        if not isinstance(cursor, Mapping):
            raise ProtocolParsingError(ParsingReason.UNEXPECTED_VALUE, "getMore reply has no cursor")
        self.cursor_id = int(cursor.get("id", 0))
        if self.cursor_id == 0:
            self.drained = True
        batch = list(cursor.get("nextBatch", []))
        logger.debug("Fetched batch", cursor_id=self.cursor_id, size=len(batch), drained=self.drained)
        return batch

    async def _get_more_legacy(self, batch_size: int) -> List[Any]:
        reply = await self.connection.get_more_legacy(self.namespace, self.cursor_id, batch_size)
        if reply.cursor_not_found:
            raise self._mark_not_found(f"cursor {self.cursor_id} not found")
        if reply.query_failure:
            error = to_dict(reply.documents[0]) if reply.documents else {}
            raise CommandFailure({"ok": 0, "errmsg": error.get("$err", "query failure"), "code": error.get("code")})
        self.cursor_id = reply.cursor_id
        if self.cursor_id == 0:
            self.drained = True
        return [to_dict(document) for document in reply.documents]

    async def close(self) -> None:
        """Kill the server-side cursor; a drained cursor has nothing left to close"""
        if self.drained:
            raise CursorError(CursorReason.ALREADY_CLOSED, "cursor is already drained or closed")
        cursor_id = self.cursor_id
        self.drained = True
        self._buffer.clear()

        if self.legacy:
            await self.connection.kill_cursors_legacy([cursor_id])
        else:
            await self.connection.execute_command(
                kill_cursors_command(self.namespace, [cursor_id]),
                self.namespace,
                session=self.session,
                transaction=self.transaction,
            )
        logger.debug("Cursor closed", cursor_id=cursor_id, namespace=str(self.namespace))

    def map(self, transform: Transform) -> "MappedCursor":
        return MappedCursor(self, transform)


def _compose(first: Transform, second: Transform) -> Transform:
    def composed(value):
        return second(first(value))
    return composed


class MappedCursor(_BatchIteration):
    """A transform chain over one executed Cursor"""

    def __init__(self, base: Cursor, transform: Transform):
        self.base = base
        self._transform = transform

    @property
    def exhausted(self) -> bool:
        return self.base.exhausted

    @property
    def drained(self) -> bool:
        return self.base.drained

    def map(self, transform: Transform) -> "MappedCursor":
        return MappedCursor(self.base, _compose(self._transform, transform))

    async def next_batch(self, batch_size: int = DEFAULT_BATCH_SIZE, failable: bool = False) -> List[Any]:
        documents = await self.base.next_batch(batch_size)
        if not failable:
            return [self._transform(document) for document in documents]

        results = []
        for document in documents:
            try:
                results.append(self._transform(document))
            except Exception as e:
                logger.debug("Dropping document that failed to decode",
                             cursor_id=self.base.cursor_id,
                             error=str(e))
        return results

    async def close(self) -> None:
        await self.base.close()
