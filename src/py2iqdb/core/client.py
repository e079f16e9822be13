"""
Protocol client for the IQDB image search daemon.

IqdbClient owns one TCP connection and the delivery queue fed by its
StreamReader. Queries are strictly request/response: a lock serialises
them, so one client never has two queries in flight and result streams
can never interleave.

Example:
    >>> with IqdbClient.open("iqdb:5566") as client:
    ...     for match in client.query_data("0", 0, 10, image_bytes):
    ...         print(match.img_id, match.score)
"""

import logging
import queue
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from py2iqdb.core.errors import (
    ConnectionError,
    ErrorCodes,
    ProtocolError,
    QueryError,
    TimeoutError,
    ValidationError,
)
from py2iqdb.core.iqdb_protocol import (
    ConnectionLost,
    ErrorResponse,
    ExceptionResponse,
    FatalResponse,
    Info,
    InfoProperty,
    MultiQueryResultResponse,
    QueryResultResponse,
    Ready,
    Response,
    encode_data_query,
    encode_filename_query,
)
from py2iqdb.core.stream_reader import StreamReader

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryResult:
    """One similarity match returned for a query."""
    img_id: int
    score: float
    width: int
    height: int


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split a ``host:port`` address.

    IPv6 hosts may be given in brackets (``[::1]:5566``).

    Raises:
        ValidationError: If the address has no valid port
    """
    if not isinstance(address, str) or ":" not in address:
        raise ValidationError(f"Address must be host:port, got {address!r}", field_name="address")

    host, _, port_text = address.rpartition(":")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]

    try:
        port = int(port_text)
    except ValueError:
        raise ValidationError(f"Invalid port in address {address!r}", field_name="address")

    if not (1 <= port <= 65535):
        raise ValidationError(f"Port must be 1-65535, got {port}", field_name="address")
    if not host:
        raise ValidationError(f"Missing host in address {address!r}", field_name="address")

    return host, port


class IqdbClient:
    """
    Persistent connection to the IQDB daemon.

    Timeouts:
        connect_timeout bounds both the TCP dial and the wait for the
        daemon's initial Ready. query_timeout (or the per-call timeout)
        bounds the whole query, both writing the request and waiting for
        its results; pass query_timeout=None to wait as long as the
        connection stays up. A query that times out closes the connection,
        because its late responses would otherwise be read as the next
        query's results.
    """

    DEFAULT_QUEUE_SIZE = 4
    DEFAULT_QUERY_TIMEOUT = 30.0
    # How long the next query waits for the Ready that trails a daemon error
    STALE_READY_GRACE = 1.0

    def __init__(
        self,
        address: str,
        connect_timeout: float = 5.0,
        query_timeout: Optional[float] = DEFAULT_QUERY_TIMEOUT,
        queue_size: int = DEFAULT_QUEUE_SIZE
    ):
        self.address = address
        self._host, self._port = parse_address(address)
        self._connect_timeout = connect_timeout
        self._query_timeout = query_timeout
        self._queue_size = queue_size

        self._socket: Optional[socket.socket] = None
        self._responses: Optional["queue.Queue[Response]"] = None
        self._reader: Optional[StreamReader] = None

        # Serialises queries; held for the whole write + drain cycle
        self._query_lock = threading.Lock()
        # Guards connection setup and teardown
        self._state_lock = threading.Lock()
        self._connected = False
        self._awaiting_ready = False

    @classmethod
    def open(cls, address: str, **kwargs) -> "IqdbClient":
        """Create a client and perform the connection handshake."""
        client = cls(address, **kwargs)
        client.connect()
        return client

    def __enter__(self) -> "IqdbClient":
        # A connection whose reader has died is reported by the first query
        if self._socket is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ========== Connection lifecycle ==========

    def connect(self) -> None:
        """
        Dial the daemon, start the stream reader and wait for Ready.

        Raises:
            ConnectionError: If the dial fails or the connection drops during setup
            ProtocolError: If the first response is not Ready
            TimeoutError: If Ready does not arrive within connect_timeout
        """
        with self._query_lock:
            self._connect_locked()

    def _connect_locked(self) -> None:
        """Body of connect(); the caller holds the query lock."""
        if self._connected:
            logger.warning("Already connected. Disconnecting first.")
            self._teardown()

        logger.info(f"Connecting to IQDB at {self.address}")
        try:
            sock = socket.create_connection(
                (self._host, self._port), timeout=self._connect_timeout
            )
        except OSError as e:
            logger.error(f"Connection to {self.address} failed: {e}")
            code = (ErrorCodes.CONNECTION_TIMEOUT if isinstance(e, socket.timeout)
                    else ErrorCodes.CONNECTION_REFUSED)
            raise ConnectionError(
                f"cannot connect to {self.address}: {e}",
                address=self.address,
                error_code=code,
                cause=e
            )
        sock.settimeout(None)

        with self._state_lock:
            self._socket = sock
            self._responses = queue.Queue(maxsize=self._queue_size)
            self._reader = StreamReader(sock, self._responses)
            self._connected = True
            self._awaiting_ready = False
            self._reader.start()

        self._await_ready()
        logger.info(f"Connected to IQDB at {self.address}")

    def _await_ready(self) -> None:
        deadline = time.monotonic() + self._connect_timeout
        try:
            response = self._next_response(deadline, self._connect_timeout)
        except TimeoutError as e:
            raise TimeoutError(
                f"daemon at {self.address} did not signal ready",
                timeout_seconds=self._connect_timeout,
                error_code=ErrorCodes.HANDSHAKE_TIMEOUT,
                cause=e
            )

        if isinstance(response, Ready):
            return

        self._teardown()
        if isinstance(response, ConnectionLost):
            raise ConnectionError(
                f"connection lost during handshake: {response.reason}",
                address=self.address,
                error_code=ErrorCodes.CONNECTION_LOST
            )
        logger.error(f"Handshake failed, expected Ready but got {response!r}")
        raise ProtocolError(
            "invalid response",
            response=response,
            error_code=ErrorCodes.HANDSHAKE_FAILED
        )

    def close(self) -> None:
        """
        Close the connection. Safe to call more than once.

        A query blocked in another thread is woken with a ConnectionError.
        """
        self._teardown()

    def _teardown(self) -> None:
        with self._state_lock:
            if not self._connected:
                return
            self._connected = False

            if self._reader:
                try:
                    self._reader.stop()
                except Exception as e:
                    logger.error(f"Error stopping stream reader: {e}")

            if self._socket:
                try:
                    self._socket.close()
                    logger.info(f"Closed connection to {self.address}")
                except OSError as e:
                    logger.error(f"Error closing socket: {e}")
                finally:
                    self._socket = None

    def is_connected(self) -> bool:
        """True while the connection is open and its reader is alive."""
        return self._connected and self._reader is not None and self._reader.is_running()

    def get_stats(self) -> Optional[Dict[str, Any]]:
        """Stream reader statistics, or None before the first connect."""
        if self._reader:
            return self._reader.get_stats()
        return None

    # ========== Queries ==========

    def query_filename(
        self,
        db_id: str,
        flags: int,
        num_results: int,
        filename: str,
        timeout: Optional[float] = None
    ) -> List[QueryResult]:
        """
        Query with an image file the daemon reads from its own filesystem.

        Args:
            db_id: Database identifier on the daemon
            flags: Query flags passed through to the daemon
            num_results: Maximum number of matches to return
            filename: Path as seen by the daemon
            timeout: Seconds allowed for the whole query (default: query_timeout)

        Returns:
            Matches in the order the daemon sent them (possibly empty)

        Raises:
            QueryError: The daemon reported an error, exception or fatal condition
            ConnectionError: Transport failure or connection lost
            ProtocolError: Unexpected response in the result stream
            TimeoutError: No complete result stream before the deadline
        """
        payload = encode_filename_query(db_id, flags, num_results, filename)
        return self._query(payload, timeout)

    def query_data(
        self,
        db_id: str,
        flags: int,
        num_results: int,
        data: bytes,
        timeout: Optional[float] = None
    ) -> List[QueryResult]:
        """
        Query with image bytes sent inline after the request line.

        Same arguments, results and errors as query_filename().
        """
        payload = encode_data_query(db_id, flags, num_results, data)
        return self._query(payload, timeout)

    def _query(self, payload: bytes, timeout: Optional[float]) -> List[QueryResult]:
        if timeout is None:
            timeout = self._query_timeout

        with self._query_lock:
            self._ensure_usable()
            deadline = None if timeout is None else time.monotonic() + timeout

            if self._awaiting_ready:
                self._discard_stale_responses(deadline, timeout)

            self._send(payload, deadline, timeout)
            return self._read_results(deadline, timeout)

    def _ensure_usable(self) -> None:
        if not self._connected:
            raise ConnectionError(
                f"not connected to {self.address}",
                address=self.address,
                error_code=ErrorCodes.NOT_CONNECTED
            )
        if not self._reader.is_running():
            self._teardown()
            raise ConnectionError(
                f"connection to {self.address} was lost",
                address=self.address,
                error_code=ErrorCodes.CONNECTION_LOST
            )

    def _send(self, payload: bytes, deadline: Optional[float], timeout: Optional[float]) -> None:
        """
        Write a request, bounded by the query deadline.

        A partial write leaves the request stream unusable, so both a
        timeout and a transport error close the connection.
        """
        sock = self._socket
        try:
            if deadline is not None:
                sock.settimeout(max(deadline - time.monotonic(), 0.001))

            sock.sendall(payload)

            # Clear timeout
            if deadline is not None:
                sock.settimeout(None)
            logger.debug(f"Sent {len(payload)} bytes to {self.address}")

        except socket.timeout as e:
            logger.warning(f"Timed out after {timeout}s writing to {self.address}")
            self._teardown()
            raise TimeoutError(
                f"write to {self.address} did not complete within {timeout}s",
                timeout_seconds=timeout,
                error_code=ErrorCodes.RESPONSE_TIMEOUT,
                cause=e
            )

        except OSError as e:
            logger.error(f"Failed to send query: {e}")
            self._teardown()
            raise ConnectionError(
                f"write to {self.address} failed: {e}",
                address=self.address,
                error_code=ErrorCodes.SOCKET_ERROR,
                cause=e
            )

    def _next_response(self, deadline: Optional[float], timeout: Optional[float]) -> Response:
        """
        Pop the next response, honouring the deadline.

        Raises:
            TimeoutError: The deadline passed; the connection has been closed
        """
        if deadline is None:
            return self._responses.get()

        remaining = deadline - time.monotonic()
        try:
            if remaining <= 0:
                return self._responses.get_nowait()
            return self._responses.get(timeout=remaining)
        except queue.Empty:
            logger.warning(f"Timed out after {timeout}s waiting for {self.address}")
            self._teardown()
            raise TimeoutError(
                f"no response from {self.address} within {timeout}s",
                timeout_seconds=timeout,
                error_code=ErrorCodes.RESPONSE_TIMEOUT
            )

    def _discard_stale_responses(self, deadline: Optional[float], timeout: Optional[float]) -> None:
        """
        Drop what is left of the previous failed query, up to its Ready.

        The next request is never written while that Ready is outstanding.
        If it does not arrive within STALE_READY_GRACE the stream can no
        longer be trusted, so the connection is replaced by a fresh one.
        """
        grace = self.STALE_READY_GRACE
        if deadline is not None:
            grace = max(0.0, min(grace, deadline - time.monotonic()))
        grace_deadline = time.monotonic() + grace

        while True:
            remaining = grace_deadline - time.monotonic()
            try:
                if remaining <= 0:
                    response = self._responses.get_nowait()
                else:
                    response = self._responses.get(timeout=remaining)
            except queue.Empty:
                break

            if isinstance(response, Ready):
                self._awaiting_ready = False
                return
            if isinstance(response, ConnectionLost):
                self._teardown()
                raise ConnectionError(
                    f"connection lost: {response.reason}",
                    address=self.address,
                    error_code=ErrorCodes.CONNECTION_LOST
                )
            logger.debug(f"Discarding stale response {response!r}")

        if deadline is not None and time.monotonic() >= deadline:
            self._teardown()
            raise TimeoutError(
                f"{self.address} did not finish its previous reply within {timeout}s",
                timeout_seconds=timeout,
                error_code=ErrorCodes.RESPONSE_TIMEOUT
            )

        logger.warning(f"No Ready from {self.address} after previous error; reconnecting")
        self._connect_locked()

    def _read_results(self, deadline: Optional[float], timeout: Optional[float]) -> List[QueryResult]:
        """
        Drain the delivery queue for one query.

        Result lines accumulate until the terminating Ready. Error,
        exception and fatal responses end the query with a QueryError;
        anything else that cannot appear in a result stream is treated as
        a protocol desync and closes the connection.
        """
        results: List[QueryResult] = []

        while True:
            response = self._next_response(deadline, timeout)

            if isinstance(response, (QueryResultResponse, MultiQueryResultResponse)):
                results.append(QueryResult(
                    img_id=response.img_id,
                    score=response.score,
                    width=response.width,
                    height=response.height,
                ))

            elif isinstance(response, (Info, InfoProperty)):
                continue

            elif isinstance(response, Ready):
                logger.debug(f"Query returned {len(results)} results")
                return results

            elif isinstance(response, ErrorResponse):
                self._awaiting_ready = True
                raise QueryError(
                    f"error: {response.text}",
                    severity='error',
                    error_code=ErrorCodes.QUERY_ERROR
                )

            elif isinstance(response, ExceptionResponse):
                self._awaiting_ready = True
                raise QueryError(
                    f"exception {response.name}: {response.text}",
                    severity='exception',
                    error_code=ErrorCodes.QUERY_EXCEPTION
                )

            elif isinstance(response, FatalResponse):
                self._awaiting_ready = True
                raise QueryError(
                    f"fatal {response.name}: {response.text}",
                    severity='fatal',
                    error_code=ErrorCodes.QUERY_FATAL
                )

            elif isinstance(response, ConnectionLost):
                self._teardown()
                raise ConnectionError(
                    f"connection lost: {response.reason}",
                    address=self.address,
                    error_code=ErrorCodes.CONNECTION_LOST
                )

            else:
                logger.error(f"Unexpected response in result stream: {response!r}")
                self._teardown()
                raise ProtocolError(
                    "invalid response",
                    response=response,
                    error_code=ErrorCodes.INVALID_RESPONSE
                )


def query_filename(
    address: str,
    db_id: str,
    flags: int,
    num_results: int,
    filename: str,
    timeout: Optional[float] = IqdbClient.DEFAULT_QUERY_TIMEOUT,
    connect_timeout: float = 5.0
) -> List[QueryResult]:
    """
    Open a connection, run one filename query, and close it again.

    timeout bounds the query as in IqdbClient; None disables the limit.
    """
    with IqdbClient.open(address, connect_timeout=connect_timeout, query_timeout=timeout) as client:
        return client.query_filename(db_id, flags, num_results, filename)


def query_data(
    address: str,
    db_id: str,
    flags: int,
    num_results: int,
    data: bytes,
    timeout: Optional[float] = IqdbClient.DEFAULT_QUERY_TIMEOUT,
    connect_timeout: float = 5.0
) -> List[QueryResult]:
    """Open a connection, run one inline-data query, and close it again."""
    with IqdbClient.open(address, connect_timeout=connect_timeout, query_timeout=timeout) as client:
        return client.query_data(db_id, flags, num_results, data)
