"""
Core layer for IQDB daemon communication.

This package contains the line protocol codec, the background stream
reader and the protocol client that talk to the IQDB image search daemon.
"""

from .iqdb_protocol import (
    ResponseCode,
    ResponseDecoder,
    Response,
    Ready,
    Info,
    InfoProperty,
    DbEntry,
    QueryResultResponse,
    MultiQueryResultResponse,
    DupQueryResult,
    Dup,
    ErrorResponse,
    ExceptionResponse,
    FatalResponse,
    ConnectionLost,
    encode_filename_query,
    encode_data_query,
)
from .stream_reader import StreamReader
from .client import IqdbClient, QueryResult, parse_address, query_filename, query_data

__all__ = [
    'ResponseCode',
    'ResponseDecoder',
    'Response',
    'Ready',
    'Info',
    'InfoProperty',
    'DbEntry',
    'QueryResultResponse',
    'MultiQueryResultResponse',
    'DupQueryResult',
    'Dup',
    'ErrorResponse',
    'ExceptionResponse',
    'FatalResponse',
    'ConnectionLost',
    'encode_filename_query',
    'encode_data_query',
    'StreamReader',
    'IqdbClient',
    'QueryResult',
    'parse_address',
    'query_filename',
    'query_data',
]
