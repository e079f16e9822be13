"""
Service for running image queries against the IQDB daemon.

The gateway talks to the daemon through this service so that the choice
between a connection per request and one shared connection is a
configuration setting rather than a code path in the HTTP layer.
"""

import logging
import threading
from typing import Callable, List, Optional

from py2iqdb.core import client as iqdb_client
from py2iqdb.core.client import IqdbClient, QueryResult
from py2iqdb.core.errors import ConnectionError
from py2iqdb.models.config import GatewayConfig


class IqdbQueryService:
    """
    Runs queries with the database, flags and result cap from the config.

    With ``persistent_connection`` off, every query opens and closes its
    own connection. With it on, one IqdbClient is opened lazily and shared;
    if that connection turns out to be dead the query is retried once on a
    fresh connection. Daemon-reported errors are never retried.

    Attributes:
        config: Gateway configuration in use
        logger: Logger instance
    """

    def __init__(self, config: GatewayConfig):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._client: Optional[IqdbClient] = None
        self._client_lock = threading.Lock()

    def query_data(self, data: bytes) -> List[QueryResult]:
        """Query with inline image bytes."""
        self.logger.info(f"Querying {self.config.iqdb_address} with {len(data)} bytes")
        if not self.config.persistent_connection:
            return iqdb_client.query_data(
                self.config.iqdb_address,
                self.config.db_id,
                self.config.query_flags,
                self.config.num_results,
                data,
                timeout=self.config.query_timeout,
                connect_timeout=self.config.connect_timeout,
            )
        return self._with_shared_client(
            lambda c: c.query_data(self.config.db_id, self.config.query_flags,
                                   self.config.num_results, data)
        )

    def query_filename(self, filename: str) -> List[QueryResult]:
        """Query with a path on the daemon's filesystem."""
        self.logger.info(f"Querying {self.config.iqdb_address} with file {filename}")
        if not self.config.persistent_connection:
            return iqdb_client.query_filename(
                self.config.iqdb_address,
                self.config.db_id,
                self.config.query_flags,
                self.config.num_results,
                filename,
                timeout=self.config.query_timeout,
                connect_timeout=self.config.connect_timeout,
            )
        return self._with_shared_client(
            lambda c: c.query_filename(self.config.db_id, self.config.query_flags,
                                       self.config.num_results, filename)
        )

    def close(self) -> None:
        """Close the shared connection, if one is open."""
        with self._client_lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def _shared_client(self) -> IqdbClient:
        with self._client_lock:
            if self._client is None or not self._client.is_connected():
                if self._client is not None:
                    self.logger.info("Shared IQDB connection is down; reconnecting")
                    self._client.close()
                self._client = IqdbClient.open(
                    self.config.iqdb_address,
                    connect_timeout=self.config.connect_timeout,
                    query_timeout=self.config.query_timeout,
                )
            return self._client

    def _with_shared_client(self, run: Callable[[IqdbClient], List[QueryResult]]) -> List[QueryResult]:
        client = self._shared_client()
        try:
            return run(client)
        except ConnectionError as e:
            self.logger.warning(f"Shared IQDB connection failed ({e}); retrying on a new connection")
            return run(self._shared_client())
