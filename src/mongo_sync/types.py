"""
Type definitions for mongo-sync.

Provides the wire-protocol flag sets, document type aliases and the
exception hierarchy raised by collection, cursor and transport operations.
"""

from __future__ import annotations

from enum import IntFlag
from typing import Any, Mapping, Sequence


class InsertFlags(IntFlag):
    """Flags for an insert operation."""

    CONTINUE_ON_ERROR = 1


class QueryFlags(IntFlag):
    """Flags for a query operation."""

    TAILABLE_CURSOR = 2
    SECONDARY_OK = 4
    OPLOG_REPLAY = 8
    NO_CURSOR_TIMEOUT = 16
    AWAIT_DATA = 32
    EXHAUST = 64
    PARTIAL = 128


class UpdateFlags(IntFlag):
    """Flags for an update operation."""

    UPSERT = 1
    MULTI_UPDATE = 2


class DeleteFlags(IntFlag):
    """Flags for a delete operation."""

    SINGLE_REMOVE = 1


class ReplyFlags(IntFlag):
    """Response flags set by the server on a reply."""

    CURSOR_NOT_FOUND = 1
    QUERY_FAILURE = 2
    SHARD_CONFIG_STALE = 4
    AWAIT_CAPABLE = 8


# Type aliases for clarity
Document = dict[str, Any]
Filter = Mapping[str, Any]
Update = Mapping[str, Any]
Projection = Mapping[str, Any] | Sequence[str] | None


class MongoError(Exception):
    """Base exception for MongoDB operations."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class TransportError(MongoError):
    """Error raised when sending or receiving on the connection fails."""

    pass


class ConnectionError(TransportError):
    """Error raised when the connection cannot be opened or is closed."""

    pass


class InternalInconsistency(MongoError):
    """Error raised when a server reply cannot be interpreted."""

    pass


class OperationFailure(MongoError):
    """Error raised when an operation fails on the server."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, code)
        self.details = dict(details) if details else {}


class CommandFailure(OperationFailure):
    """Error raised when a database command returns a failure status."""

    pass


class WriteError(MongoError):
    """Error raised when a write operation fails."""

    pass


class InsertFailure(WriteError):
    """
    Error raised when an insert fails.

    Attributes:
        documents: The documents that were attempted, including any
            generated ``_id`` values.
    """

    def __init__(
        self,
        documents: Sequence[Document],
        message: str = "Insert failed",
    ) -> None:
        super().__init__(message)
        self.documents = list(documents)
