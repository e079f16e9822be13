# py2iqdb package

__version__ = "1.0.0"

from .core.client import IqdbClient, QueryResult, query_data, query_filename
from .core.errors import (
    IqdbError,
    ConnectionError,
    ProtocolError,
    QueryError,
    TimeoutError,
)

__all__ = [
    "IqdbClient",
    "QueryResult",
    "query_data",
    "query_filename",
    "IqdbError",
    "ConnectionError",
    "ProtocolError",
    "QueryError",
    "TimeoutError",
]
