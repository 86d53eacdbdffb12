"""
mongo-sync - synchronous MongoDB driver core.

This package speaks the MongoDB wire protocol over a single connection and
provides:
- CRUD operations (insert, find, update, remove) with ``_id`` generation
- Lazily fetched, batched cursors
- Administrative operations (drop, rename, move between databases)
- Thread-safe request/response correlation

Example usage:
    from mongo_sync import MongoClient

    with MongoClient("mongodb://localhost:27017") as client:
        # Access database and collection
        db = client["myapp"]
        users = db["users"]

        # Insert documents
        user = users.insert_one({"name": "Alice", "email": "alice@example.com"})
        print(user["_id"])

        # Find documents
        user = users.find_one({"email": "alice@example.com"})
        print(user)

        # Iterate over results
        for user in users.find({"status": "active"}):
            print(user["name"])

        # Update documents
        users.update({"email": "alice@example.com"}, {"$set": {"status": "vip"}})

        # Remove documents
        users.remove({"email": "alice@example.com"})

        # Rename the collection
        users.rename("customers")
"""

from __future__ import annotations

__version__ = "0.1.0"

from .client import MongoClient
from .collection import Collection
from .cursor import Cursor
from .database import Database
from .types import (
    CommandFailure,
    ConnectionError,
    DeleteFlags,
    InsertFailure,
    InsertFlags,
    InternalInconsistency,
    MongoError,
    OperationFailure,
    QueryFlags,
    ReplyFlags,
    TransportError,
    UpdateFlags,
    WriteError,
)

__all__ = [
    # Main classes
    "MongoClient",
    "Database",
    "Collection",
    "Cursor",
    # Flags
    "InsertFlags",
    "QueryFlags",
    "UpdateFlags",
    "DeleteFlags",
    "ReplyFlags",
    # Exceptions
    "MongoError",
    "TransportError",
    "ConnectionError",
    "InternalInconsistency",
    "OperationFailure",
    "CommandFailure",
    "WriteError",
    "InsertFailure",
    # Version
    "__version__",
]
