"""
Collection - MongoDB collection operations.

Provides a PyMongo-style Collection interface. Inserts, updates and
removes are sent without waiting for an acknowledgment; queries wait for
their correlated reply and return a lazily fetched Cursor.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from bson import ObjectId

from .cursor import Cursor
from .message import Delete, Insert, Query, Update
from .types import (
    DeleteFlags,
    InsertFailure,
    InsertFlags,
    QueryFlags,
    TransportError,
    UpdateFlags,
)

if TYPE_CHECKING:
    from .database import Database
    from .types import Document, Filter, Projection

__all__ = ["Collection"]

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10


def _sanitize_name(name: str) -> str:
    # Dots would split the namespace into the wrong database/collection pair.
    return name.replace(".", "")


def _projection_document(projection: Projection) -> dict[str, Any] | None:
    if not projection:
        return None
    if isinstance(projection, Mapping):
        return dict(projection)
    return {field: 1 for field in projection}


class Collection:
    """
    MongoDB collection with synchronous CRUD operations.

    Collections are obtained from a Database (``db["users"]``) and are not
    meant to be constructed directly. The name and owning database change
    only through :meth:`rename` and :meth:`move`.

    Example:
        users = db["users"]

        # Insert
        user = users.insert_one({"name": "Alice"})
        print(user["_id"])

        # Find
        user = users.find_one({"name": "Alice"})
        for user in users.find({"status": "active"}):
            print(user)

        # Update
        users.update({"name": "Alice"}, {"$set": {"status": "vip"}})

        # Remove
        users.remove({"name": "Alice"})
    """

    __slots__ = ("_database", "_name", "_lock")

    def __init__(self, database: Database, name: str) -> None:
        """
        Initialize a collection.

        Args:
            database: Parent database instance.
            name: Collection name. Dots are removed.
        """
        self._database = database
        self._name = _sanitize_name(name)
        self._lock = threading.RLock()

    @property
    def name(self) -> str:
        """Get the collection name."""
        with self._lock:
            return self._name

    @property
    def database(self) -> Database:
        """Get the parent database."""
        with self._lock:
            return self._database

    @property
    def full_name(self) -> str:
        """Get the full collection name (database.collection)."""
        with self._lock:
            return f"{self._database.name}.{self._name}"

    def _generate_id(self) -> ObjectId:
        """Generate a unique document ID."""
        return ObjectId()

    def insert_one(self, document: Mapping[str, Any], flags: InsertFlags = InsertFlags(0)) -> Document:
        """
        Insert a single document, adding an ``_id`` if none is present.

        Args:
            document: The document to insert. It is not modified.
            flags: Insert flags.

        Returns:
            A copy of the inserted document, carrying its ``_id``.

        Raises:
            InsertFailure: If the document could not be inserted.
        """
        result = self.insert_many([document], flags=flags)
        if not result:
            raise InsertFailure([document])
        return result[0]

    def insert_many(
        self,
        documents: Iterable[Mapping[str, Any]],
        flags: InsertFlags = InsertFlags(0),
    ) -> list[Document]:
        """
        Insert documents, adding an ``_id`` to each that has none.

        The documents are sent as one batch and no acknowledgment is
        awaited; the result describes what was sent.

        Args:
            documents: The documents to insert. Neither the sequence nor
                its documents are modified.
            flags: Insert flags.

        Returns:
            Copies of the inserted documents, each carrying an ``_id``.

        Raises:
            InsertFailure: If sending fails. Its ``documents`` attribute
                holds the copies that were attempted.
        """
        docs = []
        for document in documents:
            doc = copy.deepcopy(dict(document))
            if "_id" not in doc:
                doc = {"_id": self._generate_id(), **doc}
            docs.append(doc)

        if not docs:
            return docs

        server = self.database.server
        try:
            message = Insert(
                request_id=server.get_next_request_id(),
                flags=flags,
                namespace=self.full_name,
                documents=docs,
            )
            server.send_message(message)
        except TransportError as e:
            raise InsertFailure(docs, f"Insert failed: {e}") from e

        logger.debug(f"inserted {len(docs)} documents into {message.namespace}")
        return docs

    def find(
        self,
        query: Filter | None = None,
        flags: QueryFlags = QueryFlags(0),
        fetch_chunk_size: int = DEFAULT_CHUNK_SIZE,
        skip: int = 0,
        limit: int = 0,
        projection: Projection = None,
    ) -> Cursor:
        """
        Find documents matching the query.

        The first batch is fetched before returning; later batches are
        fetched as the cursor is iterated.

        Args:
            query: Selector; selects every document by default.
            flags: Query flags.
            fetch_chunk_size: Number of documents fetched per round trip.
            skip: Number of matching documents to skip.
            limit: Maximum number of documents to return, 0 for no limit.
            projection: Fields to include/exclude.

        Returns:
            Cursor for iterating over results.

        Raises:
            InternalInconsistency: If the reply is not a valid first batch.
            OperationFailure: If the server rejects the query.

        Example:
            for doc in collection.find({"status": "active"}):
                print(doc)

            docs = collection.find({}, limit=10).to_list()
        """
        if fetch_chunk_size < 1:
            raise ValueError("fetch_chunk_size must be at least 1")
        if limit < 0 or skip < 0:
            raise ValueError("skip and limit must not be negative")

        number_to_return = fetch_chunk_size
        if limit:
            number_to_return = min(limit, fetch_chunk_size)
            if number_to_return == limit:
                # Negative: a single batch, the server closes the cursor.
                number_to_return = -number_to_return
        if number_to_return == 1:
            # A positive 1 also closes the server cursor after one batch.
            number_to_return = 2

        server = self.database.server
        namespace = self.full_name
        message = Query(
            request_id=server.get_next_request_id(),
            flags=flags,
            namespace=namespace,
            number_to_skip=skip,
            number_to_return=number_to_return,
            query=dict(query or {}),
            return_fields=_projection_document(projection),
        )
        request_id = server.send_message(message)
        reply = server.await_response(request_id)

        return Cursor.from_reply(
            server,
            namespace,
            reply,
            chunk_size=fetch_chunk_size,
            limit=limit,
        )

    def find_one(
        self,
        query: Filter | None = None,
        flags: QueryFlags = QueryFlags(0),
        projection: Projection = None,
    ) -> Document | None:
        """
        Find a single document.

        Args:
            query: Selector; selects every document by default.
            flags: Query flags.
            projection: Fields to include/exclude.

        Returns:
            The first matching document, or None if not found.
        """
        with self.find(query, flags=flags, fetch_chunk_size=1, limit=1, projection=projection) as cursor:
            return next(cursor, None)

    def update(
        self,
        query: Filter,
        updated: Mapping[str, Any],
        flags: UpdateFlags = UpdateFlags(0),
    ) -> None:
        """
        Update documents matching the query.

        Sent without waiting for an acknowledgment.

        Args:
            query: Selector for the documents to update.
            updated: Replacement document or update operators.
            flags: Update flags (UPSERT, MULTI_UPDATE).
        """
        server = self.database.server
        message = Update(
            request_id=server.get_next_request_id(),
            flags=flags,
            namespace=self.full_name,
            selector=dict(query),
            update=dict(updated),
        )
        server.send_message(message)

    def remove(
        self,
        query: Filter | None = None,
        flags: DeleteFlags = DeleteFlags(0),
    ) -> None:
        """
        Remove all documents matching the query.

        Sent without waiting for an acknowledgment.

        Args:
            query: Selector; removes every document by default.
            flags: Delete flags (SINGLE_REMOVE).
        """
        server = self.database.server
        message = Delete(
            request_id=server.get_next_request_id(),
            flags=flags,
            namespace=self.full_name,
            selector=dict(query or {}),
        )
        server.send_message(message)

    def drop(self) -> None:
        """
        Drop the collection and its indexes.

        Raises:
            CommandFailure: If the server refuses the command.
        """
        with self._lock:
            database, name = self._database, self._name
        database.command({"drop": name})

    def rename(self, new_name: str) -> None:
        """
        Rename the collection within its database.

        Args:
            new_name: The new collection name.

        Raises:
            CommandFailure: If the server refuses the rename.
        """
        with self._lock:
            self.move(self._database, new_name=new_name)

    def move(
        self,
        to_database: Database,
        new_name: str | None = None,
        drop_target: bool | None = None,
    ) -> None:
        """
        Move the collection to another database, optionally renaming it.

        Runs ``renameCollection`` on the admin database, so the user must
        have access to it. The collection's name and database are only
        updated once the server has accepted the command.

        Args:
            to_database: The database to move the collection to.
            new_name: The new collection name; keeps the current one if None.
            drop_target: Whether an existing target collection is dropped.

        Raises:
            CommandFailure: If the server refuses the command.
        """
        with self._lock:
            name = self._name if new_name is None else _sanitize_name(new_name)
            command: dict[str, Any] = {
                "renameCollection": self.full_name,
                "to": f"{to_database.name}.{name}",
            }
            if drop_target is not None:
                command["dropTarget"] = drop_target

            self._database.server["admin"].command(command)

            logger.debug(f"moved {command['renameCollection']} to {command['to']}")
            self._database = to_database
            self._name = name

    def __repr__(self) -> str:
        return f"Collection({self.full_name!r})"
