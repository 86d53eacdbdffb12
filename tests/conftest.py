"""
Pytest fixtures for mongo-sync tests.

Provides an in-memory connection that interprets wire operations the way
a MongoDB server would, so collection, cursor and database behaviour can
be tested without a network.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections import deque
from typing import Any
from unittest.mock import MagicMock

import pytest

from mongo_sync.message import Delete, GetMore, Insert, KillCursors, Query, Reply, Update
from mongo_sync.types import (
    ConnectionError,
    DeleteFlags,
    MongoError,
    ReplyFlags,
    TransportError,
    UpdateFlags,
)

DEFAULT_BATCH = 101


class MockConnection:
    """In-memory stand-in for mongo_sync.connection.Connection."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 27017,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.data: dict[str, list[dict[str, Any]]] = {}
        self.sent: list[Any] = []
        self.cursors: dict[int, tuple[str, list[dict[str, Any]]]] = {}
        self.killed_cursors: list[int] = []
        self.queued_replies: deque[Reply] = deque()
        self.fail_sends = False
        self.close_calls = 0
        self._connected = False
        self._ids = itertools.count(1)
        self._cursor_ids = itertools.count(1000)
        self._replies: dict[int, Reply] = {}
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> MockConnection:
        self._connected = True
        return self

    def close(self) -> None:
        self.close_calls += 1
        self._connected = False

    def next_request_id(self) -> int:
        with self._lock:
            return next(self._ids)

    def send(self, message: Any) -> int:
        if not self._connected:
            raise ConnectionError("Connection is closed")
        if self.fail_sends:
            raise TransportError("Failed to send request: broken pipe")

        # Encoding must succeed for every message, as on a real socket.
        message.to_bytes()

        with self._lock:
            self.sent.append(message)
            reply = self._handle(message)
            if message.expects_reply:
                if self.queued_replies:
                    reply = self.queued_replies.popleft()
                reply.response_to = message.request_id
                self._replies[message.request_id] = reply
        return message.request_id

    def await_response(self, request_id: int, timeout: float | None = None) -> Reply:
        with self._lock:
            reply = self._replies.pop(request_id, None)
        if reply is None:
            raise MongoError(f"No outstanding request with id {request_id}")
        return reply

    def sent_of(self, kind: type) -> list[Any]:
        """Return sent messages of one operation type."""
        return [message for message in self.sent if isinstance(message, kind)]

    def _handle(self, message: Any) -> Reply | None:
        if isinstance(message, Insert):
            collection = self.data.setdefault(message.namespace, [])
            collection.extend(copy.deepcopy(list(message.documents)))
            return None
        if isinstance(message, Update):
            self._update(message)
            return None
        if isinstance(message, Delete):
            self._delete(message)
            return None
        if isinstance(message, KillCursors):
            for cursor_id in message.cursor_ids:
                self.cursors.pop(cursor_id, None)
                self.killed_cursors.append(cursor_id)
            return None
        if isinstance(message, GetMore):
            return self._get_more(message)
        if isinstance(message, Query):
            if message.namespace.endswith(".$cmd"):
                database = message.namespace[: -len(".$cmd")]
                return self._reply([self._command(database, dict(message.query))])
            return self._query(message)
        raise AssertionError(f"unexpected message {message!r}")

    def _reply(
        self,
        documents: list[dict[str, Any]],
        cursor_id: int = 0,
        flags: ReplyFlags = ReplyFlags(0),
        starting_from: int = 0,
    ) -> Reply:
        return Reply(
            response_to=0,
            flags=flags,
            cursor_id=cursor_id,
            starting_from=starting_from,
            documents=documents,
        )

    def _query(self, message: Query) -> Reply:
        documents = [
            self._project(doc, message.return_fields)
            for doc in self.data.get(message.namespace, [])
            if self._matches(doc, message.query)
        ]
        documents = copy.deepcopy(documents[message.number_to_skip :])

        number = message.number_to_return
        if number in (-1, 1):
            return self._reply(documents[:1])
        if number < 0:
            return self._reply(documents[: -number])
        return self._open_cursor(message.namespace, documents, number or DEFAULT_BATCH)

    def _open_cursor(self, namespace: str, documents: list[dict[str, Any]], batch: int) -> Reply:
        first, rest = documents[:batch], documents[batch:]
        if not rest:
            return self._reply(first)
        cursor_id = next(self._cursor_ids)
        self.cursors[cursor_id] = (namespace, rest)
        return self._reply(first, cursor_id=cursor_id)

    def _get_more(self, message: GetMore) -> Reply:
        if message.cursor_id not in self.cursors:
            return self._reply([], flags=ReplyFlags.CURSOR_NOT_FOUND)
        namespace, remaining = self.cursors.pop(message.cursor_id)
        batch = message.number_to_return or DEFAULT_BATCH
        first, rest = remaining[:batch], remaining[batch:]
        if not rest:
            return self._reply(first, starting_from=1)
        self.cursors[message.cursor_id] = (namespace, rest)
        return self._reply(first, cursor_id=message.cursor_id, starting_from=1)

    def _update(self, message: Update) -> None:
        collection = self.data.setdefault(message.namespace, [])
        matched = [doc for doc in collection if self._matches(doc, message.selector)]
        if not (message.flags & UpdateFlags.MULTI_UPDATE):
            matched = matched[:1]
        for doc in matched:
            self._apply_update(doc, dict(message.update))
        if not matched and message.flags & UpdateFlags.UPSERT:
            new_doc = dict(message.selector)
            self._apply_update(new_doc, dict(message.update))
            collection.append(new_doc)

    def _delete(self, message: Delete) -> None:
        if message.namespace not in self.data:
            return
        collection = self.data[message.namespace]
        kept = []
        removed = 0
        for doc in collection:
            single = message.flags & DeleteFlags.SINGLE_REMOVE
            if self._matches(doc, message.selector) and not (single and removed):
                removed += 1
                continue
            kept.append(doc)
        self.data[message.namespace] = kept

    def _command(self, database: str, command: dict[str, Any]) -> dict[str, Any]:
        name, value = next(iter(command.items()))
        if name == "ping":
            return {"ok": 1.0}
        if name == "buildInfo":
            return {"version": "3.6.23", "ok": 1.0}
        if name == "drop":
            namespace = f"{database}.{value}"
            if namespace not in self.data:
                return {"ok": 0.0, "errmsg": "ns not found", "code": 26}
            del self.data[namespace]
            return {"ok": 1.0, "ns": namespace}
        if name == "create":
            namespace = f"{database}.{value}"
            if namespace in self.data:
                return {"ok": 0.0, "errmsg": "collection already exists", "code": 48}
            self.data[namespace] = []
            return {"ok": 1.0}
        if name == "renameCollection":
            return self._rename(database, value, command)
        if name == "listCollections":
            prefix = f"{database}."
            batch = [{"name": ns[len(prefix) :]} for ns in self.data if ns.startswith(prefix)]
            return {"cursor": {"id": 0, "ns": f"{database}.$cmd.listCollections", "firstBatch": batch}, "ok": 1.0}
        if name == "listDatabases":
            names = sorted({ns.split(".", 1)[0] for ns in self.data})
            return {"databases": [{"name": n, "empty": False} for n in names], "ok": 1.0}
        if name == "dropDatabase":
            prefix = f"{database}."
            for namespace in [ns for ns in self.data if ns.startswith(prefix)]:
                del self.data[namespace]
            return {"dropped": database, "ok": 1.0}
        return {"ok": 0.0, "errmsg": f"no such command: '{name}'", "code": 59}

    def _rename(self, database: str, source: str, command: dict[str, Any]) -> dict[str, Any]:
        if database != "admin":
            return {
                "ok": 0.0,
                "errmsg": "renameCollection may only be run against the admin database.",
                "code": 13,
            }
        target = command["to"]
        if source not in self.data:
            return {"ok": 0.0, "errmsg": "source namespace does not exist", "code": 26}
        if target in self.data:
            if not command.get("dropTarget"):
                return {"ok": 0.0, "errmsg": "target namespace exists", "code": 48}
            del self.data[target]
        self.data[target] = self.data.pop(source)
        return {"ok": 1.0}

    def _matches(self, doc: dict[str, Any], filter: dict[str, Any]) -> bool:
        return all(doc.get(key) == value for key, value in filter.items())

    def _apply_update(self, doc: dict[str, Any], update: dict[str, Any]) -> None:
        if not any(key.startswith("$") for key in update):
            doc_id = doc.get("_id")
            doc.clear()
            doc.update(update)
            if doc_id is not None:
                doc.setdefault("_id", doc_id)
            return
        for op, fields in update.items():
            if op == "$set":
                doc.update(fields)
            elif op == "$unset":
                for key in fields:
                    doc.pop(key, None)
            elif op == "$inc":
                for key, value in fields.items():
                    doc[key] = doc.get(key, 0) + value

    def _project(self, doc: dict[str, Any], projection: dict[str, Any] | None) -> dict[str, Any]:
        if not projection:
            return doc
        result = {key: doc[key] for key, include in projection.items() if include and key in doc}
        if "_id" in doc and projection.get("_id", 1):
            result = {"_id": doc["_id"], **result}
        return result


@pytest.fixture
def mock_connection() -> MockConnection:
    """Create an in-memory connection."""
    return MockConnection()


@pytest.fixture
def mock_connect(mock_connection: MockConnection, monkeypatch: pytest.MonkeyPatch):
    """Make MongoClient open the in-memory connection."""
    factory = MagicMock(return_value=mock_connection)
    monkeypatch.setattr("mongo_sync.client.Connection", factory)
    return factory


@pytest.fixture
def client(mock_connect):
    """Create a connected MongoClient."""
    from mongo_sync import MongoClient

    client = MongoClient("mongodb://test.mongo.local:27017")
    client.connect()
    return client


@pytest.fixture
def database(client):
    """Create a database."""
    return client["testdb"]


@pytest.fixture
def collection(database):
    """Create a collection."""
    return database["testcollection"]
