"""
Connection - socket transport with request/response correlation.

Owns one TCP connection to a MongoDB server. Any number of threads may
send operations concurrently; a background reader thread routes each
incoming reply to the single thread waiting on its request id.
"""

from __future__ import annotations

import itertools
import logging
import socket
import threading
from contextlib import suppress
from types import TracebackType
from typing import TYPE_CHECKING

from .message import HEADER_SIZE, Reply, unpack_header
from .types import ConnectionError, MongoError, TransportError

if TYPE_CHECKING:
    from .message import _Operation

__all__ = ["Connection"]

logger = logging.getLogger(__name__)

_MAX_REQUEST_ID = 2**31 - 1
_MAX_MESSAGE_SIZE = 48 * 1000 * 1000


class _Waiter:
    """A thread blocked on the reply to one request."""

    __slots__ = ("event", "reply", "error")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.reply: Reply | None = None
        self.error: MongoError | None = None

    def resolve(self, reply: Reply) -> None:
        self.reply = reply
        self.event.set()

    def fail(self, error: MongoError) -> None:
        self.error = error
        self.event.set()


class Connection:
    """
    A single connection to a MongoDB server.

    Example:
        connection = Connection("localhost", 27017)
        connection.connect()

        request_id = connection.send(Query(connection.next_request_id(), ...))
        reply = connection.await_response(request_id)

        connection.close()
    """

    def __init__(
        self,
        host: str,
        port: int,
        timeout: float = 30.0,
        connect_timeout: float = 10.0,
    ) -> None:
        """
        Initialize the connection.

        Args:
            host: Server host name.
            port: Server port.
            timeout: Default seconds to wait for a reply.
            connect_timeout: Seconds to wait for the TCP connection.
        """
        self._host = host
        self._port = port
        self._timeout = timeout
        self._connect_timeout = connect_timeout
        self._sock: socket.socket | None = None
        self._reader: threading.Thread | None = None
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._waiters_lock = threading.Lock()
        self._waiters: dict[int, _Waiter] = {}
        self._state_lock = threading.Lock()
        self._closed = False

    @property
    def address(self) -> tuple[str, int]:
        return self._host, self._port

    @property
    def is_connected(self) -> bool:
        """Check if the socket is open."""
        return self._sock is not None and not self._closed

    def connect(self) -> Connection:
        """
        Open the socket and start the reader thread.

        Returns:
            Self for chaining.

        Raises:
            ConnectionError: If the server cannot be reached.
        """
        if self.is_connected:
            return self

        try:
            sock = socket.create_connection(self.address, timeout=self._connect_timeout)
        except OSError as e:
            raise ConnectionError(f"Failed to connect to {self._host}:{self._port}: {e}") from e

        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        sock.settimeout(None)
        with self._state_lock:
            self._sock = sock
            self._closed = False
        # Each reader only ever owns the socket it was started with.
        self._reader = threading.Thread(
            target=self._receive_loop,
            args=(sock,),
            name=f"mongo-sync-reader-{self._host}:{self._port}",
            daemon=True,
        )
        self._reader.start()
        logger.debug(f"connected to {self._host}:{self._port}")
        return self

    def next_request_id(self) -> int:
        """Return a fresh request id, unique and increasing on this connection."""
        with self._id_lock:
            request_id = next(self._ids)
            if request_id > _MAX_REQUEST_ID:
                self._ids = itertools.count(2)
                request_id = 1
            return request_id

    def send(self, message: _Operation) -> int:
        """
        Write an operation to the socket.

        A reply waiter is registered before writing when the operation
        expects a reply, so a fast reply is never missed.

        Args:
            message: The encoded operation.

        Returns:
            The operation's request id.

        Raises:
            ConnectionError: If the connection is closed.
            TransportError: If writing to the socket fails.
        """
        data = message.to_bytes()
        request_id = message.request_id
        sock = self._sock
        if sock is None or self._closed:
            raise ConnectionError("Connection is closed")

        if message.expects_reply:
            with self._waiters_lock:
                self._waiters[request_id] = _Waiter()
            # The reader may have failed every waiter before this one was added.
            if self._closed or self._sock is not sock:
                self._discard_waiter(request_id)
                raise ConnectionError("Connection is closed")

        try:
            with self._write_lock:
                sock.sendall(data)
        except OSError as e:
            self._discard_waiter(request_id)
            raise TransportError(f"Failed to send request {request_id}: {e}") from e

        logger.debug(f"sent opcode {message.op_code} request {request_id} ({len(data)} bytes)")
        return request_id

    def await_response(self, request_id: int, timeout: float | None = None) -> Reply:
        """
        Block until the reply to ``request_id`` arrives.

        Args:
            request_id: Id returned by :meth:`send`.
            timeout: Seconds to wait; defaults to the connection timeout.

        Returns:
            The correlated reply.

        Raises:
            MongoError: If no reply is outstanding for the request id.
            TransportError: On timeout or if the connection fails meanwhile.
        """
        with self._waiters_lock:
            waiter = self._waiters.get(request_id)
        if waiter is None:
            raise MongoError(f"No outstanding request with id {request_id}")

        if not waiter.event.wait(self._timeout if timeout is None else timeout):
            self._discard_waiter(request_id)
            raise TransportError(f"Timed out waiting for reply to request {request_id}")

        self._discard_waiter(request_id)
        if waiter.error is not None:
            raise waiter.error
        if waiter.reply is None:
            raise TransportError(f"No reply received for request {request_id}")
        return waiter.reply

    def close(self) -> None:
        """Close the socket and fail every pending waiter."""
        with self._state_lock:
            self._closed = True
            sock, self._sock = self._sock, None
        if sock is not None:
            self._close_socket(sock)
            logger.debug(f"closed connection to {self._host}:{self._port}")
        self._fail_all(ConnectionError("Connection is closed"))

    @staticmethod
    def _close_socket(sock: socket.socket) -> None:
        with suppress(OSError):
            sock.shutdown(socket.SHUT_RDWR)
        sock.close()

    def _discard_waiter(self, request_id: int) -> None:
        with self._waiters_lock:
            self._waiters.pop(request_id, None)

    def _fail_all(self, error: MongoError) -> None:
        with self._waiters_lock:
            waiters = list(self._waiters.values())
        for waiter in waiters:
            if not waiter.event.is_set():
                waiter.fail(error)

    def _receive_exact(self, sock: socket.socket, size: int) -> bytes:
        chunks = []
        remaining = size
        while remaining:
            chunk = sock.recv(remaining)
            if not chunk:
                raise ConnectionError("Server closed connection")
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def _receive_loop(self, sock: socket.socket) -> None:
        try:
            while True:
                header = self._receive_exact(sock, HEADER_SIZE)
                length = unpack_header(header)[0]
                if not HEADER_SIZE <= length <= _MAX_MESSAGE_SIZE:
                    raise TransportError(f"Invalid message length {length}")
                body = self._receive_exact(sock, length - HEADER_SIZE)
                self._dispatch(header, body)
        except (OSError, MongoError) as e:
            with self._state_lock:
                if sock is not self._sock:
                    # Closed, or already replaced by a later connect().
                    return
                self._closed = True
                self._sock = None
            error = e if isinstance(e, TransportError) else TransportError(f"Receive failed: {e}")
            logger.warning(f"reader for {self._host}:{self._port} stopped: {e}")
            self._close_socket(sock)
            self._fail_all(error)

    def _dispatch(self, header: bytes, body: bytes) -> None:
        response_to = unpack_header(header)[2]
        with self._waiters_lock:
            waiter = self._waiters.get(response_to)
        if waiter is None:
            logger.warning(f"dropping reply to unknown request {response_to}")
            return

        try:
            reply = Reply.unpack(header, body)
        except MongoError as e:
            waiter.fail(e)
            return
        waiter.resolve(reply)

    def __enter__(self) -> Connection:
        return self.connect()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
