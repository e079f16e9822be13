"""
Background stream reader for the IQDB line protocol.

The reader owns the receive side of the daemon connection for its whole
lifetime. It drains the socket continuously, reassembles logical lines,
decodes them and publishes the typed responses, in order, onto a bounded
delivery queue shared with the protocol client.

Architecture:
    StreamReader (background thread)
        └── recv() raw bytes, accumulate until a newline completes a line
        └── ResponseDecoder turns each line into zero or one response
        └── bounded queue.Queue delivers responses in daemon order

When the reader stops for any reason (daemon closed the connection, socket
error, or an explicit stop) it publishes a single ConnectionLost response so
that a consumer waiting on the queue is woken with a definitive answer.
"""

import logging
import queue
import socket
import threading
from typing import Dict, Optional

from py2iqdb.core.iqdb_protocol import ConnectionLost, Response, ResponseDecoder

logger = logging.getLogger(__name__)


class StreamReader:
    """
    Background thread that continuously reads lines from the daemon socket.

    Pushing onto a full queue blocks the reader, which in turn stops it
    from reading the socket; this is the only flow control between the
    daemon and the client.
    """

    DEFAULT_RECV_SIZE = 4096
    PUT_POLL_INTERVAL = 0.5

    def __init__(
        self,
        sock: socket.socket,
        response_queue: "queue.Queue[Response]",
        decoder: Optional[ResponseDecoder] = None,
        recv_size: int = DEFAULT_RECV_SIZE
    ):
        """
        Initialize the stream reader.

        Args:
            sock: Connected socket to read from
            response_queue: Bounded queue receiving decoded responses
            decoder: Line decoder (default: a new ResponseDecoder)
            recv_size: Maximum bytes requested per recv() call
        """
        if recv_size <= 0:
            raise ValueError(f"recv_size must be positive, got {recv_size}")

        self._socket = sock
        self._queue = response_queue
        self._decoder = decoder or ResponseDecoder()
        self._recv_size = recv_size
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._running = False

        self._stats = {
            'bytes_read': 0,
            'lines_read': 0,
            'responses_queued': 0,
            'lines_dropped': 0,
            'socket_errors': 0,
        }

    def start(self):
        """Start the background reader thread."""
        with self._lock:
            if self._running:
                logger.warning("StreamReader already running")
                return

            self._running = True
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._read_loop,
                name="StreamReader",
                daemon=True
            )
            self._thread.start()
            logger.debug("StreamReader background thread started")

    def stop(self, timeout: float = 2.0):
        """
        Stop the background reader thread.

        Shuts down the socket so a blocked recv() returns, then waits for
        the thread to finish. The socket itself is left for its owner to close.

        Args:
            timeout: Seconds to wait for thread to stop
        """
        self._stop_event.set()

        try:
            self._socket.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already closed or never fully connected
            pass

        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("StreamReader thread did not stop cleanly")

    def is_running(self) -> bool:
        """Check if reader is running."""
        return self._running

    def get_stats(self) -> Dict[str, int]:
        """Get reader statistics."""
        return self._stats.copy()

    def _read_loop(self):
        """Main read loop - runs in background thread."""
        buffer = bytearray()
        reason = "connection closed by daemon"
        eof = False

        try:
            while not self._stop_event.is_set():
                try:
                    chunk = self._socket.recv(self._recv_size)
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._stop_event.is_set():
                        reason = "reader stopped"
                    else:
                        logger.error(f"Socket error in reader: {e}")
                        self._stats['socket_errors'] += 1
                        reason = f"socket error: {e}"
                    break

                if not chunk:
                    if self._stop_event.is_set():
                        reason = "reader stopped"
                    else:
                        logger.info("Daemon closed the connection - reader stopping")
                        eof = True
                    break

                self._stats['bytes_read'] += len(chunk)
                buffer.extend(chunk)

                # A line longer than one recv() stays in the buffer until its newline arrives
                while True:
                    newline = buffer.find(b"\n")
                    if newline < 0:
                        break
                    raw_line = bytes(buffer[:newline])
                    del buffer[:newline + 1]
                    if not self._handle_line(raw_line):
                        reason = "reader stopped"
                        return

            if self._stop_event.is_set():
                reason = "reader stopped"
            elif eof and buffer:
                # Final unterminated line before EOF
                self._handle_line(bytes(buffer))

        except Exception as e:
            logger.error(f"Unexpected error in reader: {e}", exc_info=True)
            reason = f"reader failed: {e}"

        finally:
            self._running = False
            self._publish_final(ConnectionLost(reason=reason))
            logger.debug(f"StreamReader read loop exiting ({reason}). Stats: {self._stats}")

    def _handle_line(self, raw_line: bytes) -> bool:
        """
        Decode one logical line and queue the result.

        Returns:
            False if the reader was stopped while waiting for queue space
        """
        self._stats['lines_read'] += 1
        line = raw_line.rstrip(b"\r").decode("utf-8", errors="replace")

        response = self._decoder.decode_line(line)
        if response is None:
            self._stats['lines_dropped'] += 1
            return True

        if not self._put(response):
            return False
        self._stats['responses_queued'] += 1
        return True

    def _put(self, response: Response) -> bool:
        while True:
            try:
                self._queue.put(response, timeout=self.PUT_POLL_INTERVAL)
                return True
            except queue.Full:
                if self._stop_event.is_set():
                    logger.debug(f"Discarding {type(response).__name__}: reader stopped with full queue")
                    return False

    def _publish_final(self, sentinel: ConnectionLost):
        if not self._put(sentinel):
            logger.debug("Could not publish ConnectionLost: queue full and reader stopped")
