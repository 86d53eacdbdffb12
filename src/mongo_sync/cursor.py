"""
Cursor - lazily fetched, batched query results.

A Cursor starts from the first batch of a query reply and fetches further
batches from the server only when its local buffer runs dry. Iteration is
forward only and cannot be restarted.
"""

from __future__ import annotations

import logging
from collections import deque
from types import TracebackType
from typing import TYPE_CHECKING, Any, Callable, Generic, Iterable, Iterator, TypeVar

from .message import GetMore, KillCursors, Reply
from .types import InternalInconsistency, OperationFailure, ReplyFlags, TransportError

if TYPE_CHECKING:
    from .client import MongoClient

T = TypeVar("T")

__all__ = ["Cursor"]

logger = logging.getLogger(__name__)


def _check_reply(reply: Any, cursor_id: int | None = None) -> Reply:
    if not isinstance(reply, Reply):
        raise InternalInconsistency(f"expected a query reply, got {type(reply).__name__}")

    if reply.flags & ReplyFlags.CURSOR_NOT_FOUND:
        raise OperationFailure(f"Cursor not found, cursor id: {cursor_id}", 43)
    if reply.flags & ReplyFlags.QUERY_FAILURE:
        error = reply.documents[0] if reply.documents else {}
        raise OperationFailure(
            f"database error: {error.get('$err', 'unknown')}", error.get("code"), error
        )
    return reply


class Cursor(Generic[T]):
    """
    Iterator over the results of a query.

    Example:
        cursor = collection.find({"status": "active"}, fetch_chunk_size=100)
        for doc in cursor:
            print(doc)

        # Release the server cursor when stopping early
        with collection.find({}) as cursor:
            first = next(cursor)
    """

    __slots__ = (
        "_client",
        "_namespace",
        "_cursor_id",
        "_data",
        "_chunk_size",
        "_limit",
        "_returned",
        "_transform",
        "_killed",
    )

    def __init__(
        self,
        client: MongoClient,
        namespace: str,
        cursor_id: int,
        documents: Iterable[dict[str, Any]],
        chunk_size: int = 10,
        limit: int = 0,
        transform: Callable[[dict[str, Any]], T] | None = None,
    ) -> None:
        """
        Initialize a cursor.

        Args:
            client: The client used for follow-up fetches.
            namespace: Full name of the queried collection.
            cursor_id: Server cursor id, 0 when the first batch is the last.
            documents: The first batch.
            chunk_size: Number of documents fetched per round trip.
            limit: Maximum number of documents to yield, 0 for no limit.
            transform: Applied to every document before it is yielded.
        """
        self._client = client
        self._namespace = namespace
        self._cursor_id = cursor_id
        self._data: deque[dict[str, Any]] = deque(documents)
        self._chunk_size = max(chunk_size, 1)
        self._limit = limit
        self._returned = 0
        self._transform = transform
        self._killed = False

    @classmethod
    def from_reply(
        cls,
        client: MongoClient,
        namespace: str,
        reply: Reply,
        chunk_size: int = 10,
        limit: int = 0,
        transform: Callable[[dict[str, Any]], T] | None = None,
    ) -> Cursor[T]:
        """
        Build a cursor from the reply to a query.

        Raises:
            InternalInconsistency: If the reply is not a valid first batch.
            OperationFailure: If the reply reports a query failure.
        """
        reply = _check_reply(reply)
        if reply.starting_from != 0:
            raise InternalInconsistency(
                f"first batch of {namespace} starts at {reply.starting_from}"
            )
        return cls(
            client,
            namespace,
            reply.cursor_id,
            reply.documents,
            chunk_size=chunk_size,
            limit=limit,
            transform=transform,
        )

    @property
    def namespace(self) -> str:
        """Get the full name of the queried collection."""
        return self._namespace

    @property
    def cursor_id(self) -> int:
        """Get the server cursor id, 0 once the server cursor is closed."""
        return self._cursor_id

    @property
    def alive(self) -> bool:
        """Check if the cursor can still yield documents."""
        return bool(self._data) or self._cursor_id != 0

    def _limit_reached(self) -> bool:
        return bool(self._limit) and self._returned >= self._limit

    def _get_more(self) -> None:
        number_to_return = self._chunk_size
        if self._limit:
            number_to_return = min(number_to_return, self._limit - self._returned)

        logger.debug(f"cursor fetching {number_to_return} documents from {self._namespace}")
        message = GetMore(
            request_id=self._client.get_next_request_id(),
            namespace=self._namespace,
            number_to_return=number_to_return,
            cursor_id=self._cursor_id,
        )
        request_id = self._client.send_message(message)
        try:
            reply = _check_reply(self._client.await_response(request_id), self._cursor_id)
        except OperationFailure:
            # The server no longer knows this cursor.
            self._cursor_id = 0
            raise

        self._cursor_id = reply.cursor_id
        self._data.extend(reply.documents)
        logger.debug(f"cursor received {len(reply.documents)} documents from {self._namespace}")
        if not reply.documents:
            self.close()

    def __iter__(self) -> Iterator[T]:
        """Return self; a cursor is its own iterator."""
        return self

    def __next__(self) -> T:
        """
        Get the next document.

        Raises:
            StopIteration: When all documents have been iterated.
        """
        if self._limit_reached():
            self.close()
        while not self._data:
            if self._cursor_id == 0 or self._killed:
                self.close()
                raise StopIteration
            self._get_more()

        doc = self._data.popleft()
        self._returned += 1
        if self._limit_reached():
            self.close()
        if self._transform is None:
            return doc  # type: ignore[return-value]
        return self._transform(doc)

    def next(self) -> T:
        """Get the next document."""
        return self.__next__()

    def to_list(self, length: int | None = None) -> list[T]:
        """
        Consume the cursor into a list.

        Args:
            length: Maximum number of documents to return.
                    If None, returns all remaining documents.

        Returns:
            List of documents.
        """
        results: list[T] = []
        for doc in self:
            results.append(doc)
            if length is not None and len(results) >= length:
                break
        return results

    def close(self) -> None:
        """
        Release the server cursor and drop buffered documents.

        Safe to call more than once.
        """
        self._data.clear()
        if self._killed:
            return
        self._killed = True

        cursor_id, self._cursor_id = self._cursor_id, 0
        if cursor_id != 0:
            logger.debug(f"killing cursor {cursor_id} on {self._namespace}")
            try:
                self._client.send_message(
                    KillCursors(request_id=self._client.get_next_request_id(), cursor_ids=[cursor_id])
                )
            except TransportError as e:
                # The server times the cursor out on its own.
                logger.warning(f"failed to kill cursor {cursor_id} on {self._namespace}: {e}")

    def __enter__(self) -> Cursor[T]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"Cursor({self._namespace!r}, cursor_id={self._cursor_id})"
