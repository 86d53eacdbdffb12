"""
Message - MongoDB wire protocol operations.

Encodes insert, query, getMore, update, delete and killCursors operations
into framed wire messages and decodes OP_REPLY frames. Document bodies are
encoded with BSON from the ``bson`` package shipped with PyMongo.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Sequence

import bson
from bson.errors import BSONError

from .types import (
    DeleteFlags,
    InsertFlags,
    InternalInconsistency,
    QueryFlags,
    ReplyFlags,
    UpdateFlags,
)

__all__ = [
    "HEADER_SIZE",
    "Delete",
    "GetMore",
    "Insert",
    "KillCursors",
    "Query",
    "Reply",
    "Update",
    "unpack_header",
]

HEADER_SIZE = 16

OP_REPLY = 1
OP_UPDATE = 2001
OP_INSERT = 2002
OP_QUERY = 2004
OP_GET_MORE = 2005
OP_DELETE = 2006
OP_KILL_CURSORS = 2007

_ZERO_32 = b"\x00\x00\x00\x00"

_pack_header = struct.Struct("<iiii").pack
_unpack_header = struct.Struct("<iiii").unpack_from
_pack_int = struct.Struct("<i").pack
_pack_long_long = struct.Struct("<q").pack
_unpack_reply = struct.Struct("<iqii").unpack_from


def _make_c_string(value: str) -> bytes:
    encoded = value.encode("utf-8")
    if b"\x00" in encoded:
        raise ValueError(f"namespace must not contain NUL bytes: {value!r}")
    return encoded + b"\x00"


def unpack_header(data: bytes) -> tuple[int, int, int, int]:
    """Return ``(message_length, request_id, response_to, op_code)``."""
    if len(data) < HEADER_SIZE:
        raise InternalInconsistency(f"short message header: {len(data)} bytes")
    return _unpack_header(data)


class _Operation:
    """Base for client to server operations."""

    op_code: ClassVar[int]
    expects_reply: ClassVar[bool] = False
    request_id: int

    def _body(self) -> bytes:
        raise NotImplementedError

    def to_bytes(self) -> bytes:
        """Encode the operation with its message header."""
        body = self._body()
        return _pack_header(HEADER_SIZE + len(body), self.request_id, 0, self.op_code) + body


@dataclass
class Insert(_Operation):
    """OP_INSERT: insert one or more documents."""

    op_code: ClassVar[int] = OP_INSERT

    request_id: int
    flags: InsertFlags
    namespace: str
    documents: Sequence[Mapping[str, Any]]

    def _body(self) -> bytes:
        if not self.documents:
            raise ValueError("cannot do an empty bulk insert")
        return b"".join([
            _pack_int(self.flags),
            _make_c_string(self.namespace),
            b"".join(bson.encode(doc) for doc in self.documents),
        ])


@dataclass
class Query(_Operation):
    """OP_QUERY: open a cursor or run a command."""

    op_code: ClassVar[int] = OP_QUERY
    expects_reply: ClassVar[bool] = True

    request_id: int
    flags: QueryFlags
    namespace: str
    number_to_skip: int
    number_to_return: int
    query: Mapping[str, Any]
    return_fields: Mapping[str, Any] | None = None

    def _body(self) -> bytes:
        return b"".join([
            _pack_int(self.flags),
            _make_c_string(self.namespace),
            _pack_int(self.number_to_skip),
            _pack_int(self.number_to_return),
            bson.encode(self.query),
            bson.encode(self.return_fields) if self.return_fields else b"",
        ])


@dataclass
class GetMore(_Operation):
    """OP_GET_MORE: fetch the next batch of an open cursor."""

    op_code: ClassVar[int] = OP_GET_MORE
    expects_reply: ClassVar[bool] = True

    request_id: int
    namespace: str
    number_to_return: int
    cursor_id: int

    def _body(self) -> bytes:
        return b"".join([
            _ZERO_32,
            _make_c_string(self.namespace),
            _pack_int(self.number_to_return),
            _pack_long_long(self.cursor_id),
        ])


@dataclass
class Update(_Operation):
    """OP_UPDATE: update documents matching a selector."""

    op_code: ClassVar[int] = OP_UPDATE

    request_id: int
    flags: UpdateFlags
    namespace: str
    selector: Mapping[str, Any]
    update: Mapping[str, Any]

    def _body(self) -> bytes:
        return b"".join([
            _ZERO_32,
            _make_c_string(self.namespace),
            _pack_int(self.flags),
            bson.encode(self.selector),
            bson.encode(self.update),
        ])


@dataclass
class Delete(_Operation):
    """OP_DELETE: remove documents matching a selector."""

    op_code: ClassVar[int] = OP_DELETE

    request_id: int
    flags: DeleteFlags
    namespace: str
    selector: Mapping[str, Any]

    def _body(self) -> bytes:
        return b"".join([
            _ZERO_32,
            _make_c_string(self.namespace),
            _pack_int(self.flags),
            bson.encode(self.selector),
        ])


@dataclass
class KillCursors(_Operation):
    """OP_KILL_CURSORS: release server side cursors."""

    op_code: ClassVar[int] = OP_KILL_CURSORS

    request_id: int
    cursor_ids: Sequence[int] = field(default_factory=list)

    def _body(self) -> bytes:
        return _ZERO_32 + _pack_int(len(self.cursor_ids)) + b"".join(
            _pack_long_long(cursor_id) for cursor_id in self.cursor_ids
        )


@dataclass
class Reply:
    """
    OP_REPLY: the server's answer to a query or getMore.

    Attributes:
        response_to: Request id of the operation this reply answers.
        flags: Response flags.
        cursor_id: Server cursor id, 0 when no more batches exist.
        starting_from: Position of the first document in the cursor.
        documents: Decoded documents of this batch.
    """

    op_code: ClassVar[int] = OP_REPLY

    response_to: int
    flags: ReplyFlags
    cursor_id: int
    starting_from: int
    documents: list[dict[str, Any]] = field(default_factory=list)

    @property
    def number_returned(self) -> int:
        return len(self.documents)

    @classmethod
    def unpack(cls, header: bytes, body: bytes) -> Reply:
        """
        Decode a reply frame.

        Args:
            header: The 16 byte message header.
            body: The remainder of the frame.

        Raises:
            InternalInconsistency: If the frame is not a well formed OP_REPLY.
        """
        length, _request_id, response_to, op_code = unpack_header(header)
        if op_code != OP_REPLY:
            raise InternalInconsistency(f"unexpected opcode {op_code} in reply")
        if length != HEADER_SIZE + len(body) or len(body) < 20:
            raise InternalInconsistency("reply length does not match its header")

        flags, cursor_id, starting_from, number_returned = _unpack_reply(body)
        try:
            documents = bson.decode_all(body[20:])
        except BSONError as e:
            raise InternalInconsistency(f"undecodable reply documents: {e}") from e

        if len(documents) != number_returned:
            raise InternalInconsistency(
                f"reply announced {number_returned} documents but carried {len(documents)}"
            )

        return cls(
            response_to=response_to,
            flags=ReplyFlags(flags),
            cursor_id=cursor_id,
            starting_from=starting_from,
            documents=documents,
        )

    def to_bytes(self) -> bytes:
        """Encode the reply, as a server would."""
        body = b"".join([
            struct.pack("<iqii", self.flags, self.cursor_id, self.starting_from, len(self.documents)),
            b"".join(bson.encode(doc) for doc in self.documents),
        ])
        return _pack_header(HEADER_SIZE + len(body), 0, self.response_to, OP_REPLY) + body
