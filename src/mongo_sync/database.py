"""
Database - MongoDB database operations.

Provides a PyMongo-style Database interface; commands are sent as
queries against the database's ``$cmd`` namespace.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping

from .collection import Collection
from .message import Query
from .types import (
    CommandFailure,
    InternalInconsistency,
    QueryFlags,
    ReplyFlags,
)

if TYPE_CHECKING:
    from .client import MongoClient

__all__ = ["Database"]

logger = logging.getLogger(__name__)


class Database:
    """
    MongoDB database.

    Collections can be accessed using either attribute access or
    subscript notation. Each access builds a new Collection, since a
    collection's name can change through ``rename`` or ``move``.

    Example:
        db = client["myapp"]

        # Access collections
        users = db.users
        orders = db["orders"]

        # Run a command
        db.command("ping")

        # List collections
        names = db.list_collection_names()
    """

    __slots__ = ("_client", "_name")

    def __init__(self, client: MongoClient, name: str) -> None:
        """
        Initialize a database.

        Args:
            client: Parent MongoClient instance, also the transport.
            name: Database name.
        """
        self._client = client
        self._name = name

    @property
    def name(self) -> str:
        """Get the database name."""
        return self._name

    @property
    def client(self) -> MongoClient:
        """Get the parent client."""
        return self._client

    @property
    def server(self) -> MongoClient:
        """Get the client this database sends its operations through."""
        return self._client

    def __getitem__(self, name: str) -> Collection:
        """
        Get a collection by name using subscript notation.

        Example:
            users = db["users"]
        """
        return Collection(self, name)

    def __getattr__(self, name: str) -> Collection:
        """
        Get a collection by name using attribute access.

        Example:
            users = db.users
        """
        if name.startswith("_"):
            raise AttributeError(f"'{type(self).__name__}' has no attribute '{name}'")

        return self[name]

    def get_collection(self, name: str) -> Collection:
        """Get a collection by name."""
        return self[name]

    def command(
        self,
        command: str | Mapping[str, Any],
        value: Any = 1,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Run a database command.

        Args:
            command: Command name or command document.
            value: Command value (default 1).
            **kwargs: Additional command options.

        Returns:
            The command's reply document.

        Raises:
            CommandFailure: If the server reports the command failed.
            InternalInconsistency: If the reply carries no result document.
        """
        if isinstance(command, str):
            cmd = {command: value, **kwargs}
        else:
            cmd = dict(command)

        logger.debug(f"running command {next(iter(cmd), '?')!r} on {self._name}")
        message = Query(
            request_id=self._client.get_next_request_id(),
            flags=QueryFlags(0),
            namespace=f"{self._name}.$cmd",
            number_to_skip=0,
            number_to_return=-1,
            query=cmd,
        )
        request_id = self._client.send_message(message)
        reply = self._client.await_response(request_id)

        if not reply.documents:
            raise InternalInconsistency(f"command reply on {self._name} carried no document")
        result = reply.documents[0]
        if reply.flags & ReplyFlags.QUERY_FAILURE:
            raise CommandFailure(
                str(result.get("$err", "command failed")), result.get("code"), result
            )
        if not result.get("ok"):
            raise CommandFailure(
                str(result.get("errmsg", "command failed")), result.get("code"), result
            )
        return result

    def list_collection_names(self) -> list[str]:
        """
        List all collection names in the database.

        Returns:
            List of collection names.
        """
        result = self.command("listCollections")
        batch = result.get("cursor", {}).get("firstBatch", [])
        return [info["name"] for info in batch if "name" in info]

    def create_collection(self, name: str, **kwargs: Any) -> Collection:
        """
        Create a new collection.

        Args:
            name: Collection name.
            **kwargs: Collection options (capped, size, max, etc.).

        Returns:
            The created Collection instance.
        """
        collection = self[name]
        self.command("create", collection.name, **kwargs)
        return collection

    def drop_collection(self, name: str) -> None:
        """
        Drop a collection.

        Args:
            name: Name of the collection to drop.
        """
        self[name].drop()

    def drop_database(self) -> None:
        """Drop the database."""
        self._client.drop_database(self._name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Database):
            return NotImplemented
        return self._client is other._client and self._name == other._name

    def __hash__(self) -> int:
        return hash((id(self._client), self._name))

    def __repr__(self) -> str:
        return f"Database({self._name!r})"
