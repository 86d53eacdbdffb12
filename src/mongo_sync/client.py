"""
MongoClient - synchronous MongoDB client.

Provides a PyMongo-style MongoClient interface that owns the wire
connection and hands out Database objects.
"""

from __future__ import annotations

import os
from types import TracebackType
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from .connection import Connection
from .database import Database
from .types import ConnectionError, MongoError

if TYPE_CHECKING:
    from .message import Reply, _Operation

__all__ = ["MongoClient"]

DEFAULT_URI = "mongodb://localhost:27017"
DEFAULT_PORT = 27017


class MongoClient:
    """
    Synchronous MongoDB client.

    Databases can be accessed using either attribute access or subscript
    notation. The client is also the transport every Database, Collection
    and Cursor sends its operations through; it is safe to share between
    threads.

    Example:
        # Create client
        client = MongoClient("mongodb://localhost:27017")
        client.connect()

        # Access databases
        db = client["myapp"]
        db = client.myapp

        # List databases
        names = client.list_database_names()

        # Close connection
        client.close()

        # Or use as a context manager
        with MongoClient("mongodb://localhost:27017") as client:
            db = client["myapp"]
            ...
    """

    __slots__ = ("_uri", "_host", "_port", "_connection", "_databases", "_options")

    def __init__(
        self,
        uri: str | None = None,
        **options: Any,
    ) -> None:
        """
        Initialize the MongoDB client.

        Args:
            uri: Connection URI (e.g., "mongodb://localhost:27017").
                 If not provided, uses MONGO_URL environment variable.
            **options: Additional connection options.
                - timeout: Seconds to wait for a reply (default: 30.0).
                - connect_timeout: Seconds to wait for the socket (default: 10.0).
        """
        self._uri = uri or os.environ.get("MONGO_URL", DEFAULT_URI)
        self._host, self._port = self._parse_uri(self._uri)
        self._connection: Connection | None = None
        self._databases: dict[str, Database] = {}
        self._options = options

    @staticmethod
    def _parse_uri(uri: str) -> tuple[str, int]:
        parts = urlsplit(uri if "://" in uri else f"mongodb://{uri}")
        if parts.scheme != "mongodb":
            raise MongoError(f"Unsupported URI scheme {parts.scheme!r} in {uri!r}")
        try:
            port = parts.port or DEFAULT_PORT
        except ValueError as e:
            raise MongoError(f"Invalid port in {uri!r}") from e
        return parts.hostname or "localhost", port

    @property
    def uri(self) -> str:
        """Get the connection URI."""
        return self._uri

    @property
    def address(self) -> tuple[str, int]:
        """Get the (host, port) pair parsed from the URI."""
        return self._host, self._port

    @property
    def is_connected(self) -> bool:
        """Check if the client is connected."""
        return self._connection is not None and self._connection.is_connected

    def connect(self) -> MongoClient:
        """
        Connect to the MongoDB server.

        Returns:
            Self for chaining.

        Raises:
            ConnectionError: If connection fails.
        """
        if self.is_connected:
            return self
        if self._connection is not None:
            # Release a connection whose reader has stopped.
            self._connection.close()
            self._connection = None

        connection = Connection(
            self._host,
            self._port,
            timeout=self._options.get("timeout", 30.0),
            connect_timeout=self._options.get("connect_timeout", 10.0),
        )
        connection.connect()
        self._connection = connection
        return self

    def close(self) -> None:
        """Close the connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
        self._databases.clear()

    def _ensure_connected(self) -> Connection:
        """Ensure the client is connected."""
        if self._connection is None or not self._connection.is_connected:
            raise MongoError("Client is not connected. Call connect() first.")
        return self._connection

    def get_next_request_id(self) -> int:
        """Return a fresh request id from the connection."""
        return self._ensure_connected().next_request_id()

    def send_message(self, message: _Operation) -> int:
        """
        Send an operation without waiting for a reply.

        Returns:
            The request id of the sent operation.
        """
        return self._ensure_connected().send(message)

    def await_response(self, request_id: int) -> Reply:
        """Block until the reply correlated with ``request_id`` arrives."""
        connection = self._connection
        if connection is None:
            raise ConnectionError("Connection is closed")
        return connection.await_response(request_id)

    def __getitem__(self, name: str) -> Database:
        """
        Get a database by name using subscript notation.

        Args:
            name: Database name.

        Returns:
            Database instance.

        Example:
            db = client["myapp"]
        """
        if name not in self._databases:
            self._databases[name] = Database(self, name)
        return self._databases[name]

    def __getattr__(self, name: str) -> Database:
        """
        Get a database by name using attribute access.

        Example:
            db = client.myapp
        """
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

        return self[name]

    def get_database(self, name: str) -> Database:
        """Get a database by name."""
        return self[name]

    def list_database_names(self) -> list[str]:
        """
        List all database names.

        Returns:
            List of database names.
        """
        return [info["name"] for info in self.list_databases()]

    def list_databases(self) -> list[dict[str, Any]]:
        """
        List all databases with metadata.

        Returns:
            List of database info dicts.
        """
        result = self["admin"].command("listDatabases")
        databases = result.get("databases")
        return databases if isinstance(databases, list) else []

    def drop_database(self, name: str) -> None:
        """
        Drop a database.

        Args:
            name: Name of the database to drop.
        """
        self[name].command("dropDatabase")
        self._databases.pop(name, None)

    def server_info(self) -> dict[str, Any]:
        """
        Get server information.

        Returns:
            Server info dict.
        """
        return self["admin"].command("buildInfo")

    def __enter__(self) -> MongoClient:
        """Context manager entry."""
        return self.connect()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        self.close()

    def __repr__(self) -> str:
        status = "connected" if self.is_connected else "disconnected"
        return f"MongoClient({self._uri!r}, {status})"
