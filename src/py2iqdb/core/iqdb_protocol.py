"""
Line protocol encoding and decoding for the IQDB image search daemon.

The daemon speaks a newline-terminated text protocol. Requests are single
lines, optionally followed by a raw byte payload; responses are lines that
begin with a three digit status code followed by whitespace separated fields.

Request:
    query <db_id> <flags> <num_results> <filename>
    query <db_id> <flags> <num_results> :<byte_length>   (then raw bytes)

Response codes:
    000  Ready                 end of a result stream / daemon ready
    100  Info                  free text
    101  InfoProperty          key=value
    102  DbEntry               db_id db_file
    200  QueryResult           img_id score width height
    201  MultiQueryResult      db_id img_id score width height
    202  DupQueryResult        reserved, not decoded
    300  Error                 free text
    301  Exception             name text...
    302  Fatal                 name text...
"""

import logging
import math
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple, Union

from py2iqdb.core.errors import ValidationError

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")

UINT64_MAX = 2 ** 64 - 1
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

_INFINITY_WORDS = ("inf", "infinity")


class ResponseCode(IntEnum):
    """Status codes that open every response line."""
    READY = 0
    INFO = 100
    INFO_PROPERTY = 101
    DB_ENTRY = 102
    QUERY_RESULT = 200
    MULTI_QUERY_RESULT = 201
    DUP_QUERY_RESULT = 202
    ERROR = 300
    EXCEPTION = 301
    FATAL = 302


@dataclass(frozen=True)
class Ready:
    code = ResponseCode.READY


@dataclass(frozen=True)
class Info:
    text: str
    code = ResponseCode.INFO


@dataclass(frozen=True)
class InfoProperty:
    key: str
    value: str
    code = ResponseCode.INFO_PROPERTY


@dataclass(frozen=True)
class DbEntry:
    db_id: str
    db_file: str
    code = ResponseCode.DB_ENTRY


@dataclass(frozen=True)
class QueryResultResponse:
    img_id: int
    score: float
    width: int
    height: int
    code = ResponseCode.QUERY_RESULT


@dataclass(frozen=True)
class MultiQueryResultResponse:
    db_id: str
    img_id: int
    score: float
    width: int
    height: int
    code = ResponseCode.MULTI_QUERY_RESULT


@dataclass(frozen=True)
class Dup:
    img_id: int
    similarity: float


@dataclass(frozen=True)
class DupQueryResult:
    orig_img_id: int
    deviation: float
    dups: Tuple[Dup, ...] = ()
    code = ResponseCode.DUP_QUERY_RESULT


@dataclass(frozen=True)
class ErrorResponse:
    text: str
    code = ResponseCode.ERROR


@dataclass(frozen=True)
class ExceptionResponse:
    name: str
    text: str
    code = ResponseCode.EXCEPTION


@dataclass(frozen=True)
class FatalResponse:
    name: str
    text: str
    code = ResponseCode.FATAL


@dataclass(frozen=True)
class ConnectionLost:
    """
    Published by the stream reader when it stops.

    Never decoded from the wire; it tells queue consumers that no further
    responses will arrive on this connection.
    """
    reason: str = "connection closed"
    code = None


Response = Union[
    Ready,
    Info,
    InfoProperty,
    DbEntry,
    QueryResultResponse,
    MultiQueryResultResponse,
    DupQueryResult,
    ErrorResponse,
    ExceptionResponse,
    FatalResponse,
    ConnectionLost,
]


def _parse_uint64(text: str) -> int:
    if not (text.isascii() and text.isdigit()):
        raise ValueError(f"not an unsigned integer: {text!r}")
    value = int(text, 10)
    if value > UINT64_MAX:
        raise ValueError(f"out of range for uint64: {text}")
    return value


def _parse_int64(text: str) -> int:
    if not text.isascii() or "_" in text:
        raise ValueError(f"not an integer: {text!r}")
    value = int(text, 10)
    if value < INT64_MIN or value > INT64_MAX:
        raise ValueError(f"out of range for int64: {text}")
    return value


def _parse_float64(text: str) -> float:
    if not text.isascii() or "_" in text:
        raise ValueError(f"not a float: {text!r}")
    value = float(text)
    # Spelled-out infinity is accepted; a finite literal that overflows is not
    if math.isinf(value) and text.lstrip("+-").lower() not in _INFINITY_WORDS:
        raise ValueError(f"out of range for float64: {text}")
    return value


class ResponseDecoder:
    """
    Decodes one logical protocol line into a typed response.

    Malformed lines (unparsable code, too few fields, bad numbers) and
    codes this client does not decode are dropped: ``decode_line`` returns
    None and never raises, so a stray line cannot desynchronise the reader.

    Example:
        >>> decoder = ResponseDecoder()
        >>> decoder.decode_line("200 42 95.5 640 480")
        QueryResultResponse(img_id=42, score=95.5, width=640, height=480)
        >>> decoder.decode_line("garbage") is None
        True
    """

    def decode_line(self, line: str) -> Optional[Response]:
        """
        Decode a single line.

        Args:
            line: One complete logical line without its terminator

        Returns:
            The decoded response, or None if the line was discarded
        """
        parts = [p for p in _WHITESPACE.split(line) if p]
        if not parts:
            return None

        try:
            code = _parse_uint64(parts[0])
        except ValueError:
            logger.debug(f"Dropping line with unparsable status code: {line!r}")
            return None

        try:
            response = self._dispatch(code, parts)
        except ValueError as e:
            logger.debug(f"Dropping malformed {code:03d} line {line!r}: {e}")
            return None

        if response is None:
            logger.debug(f"Dropping unhandled line: {line!r}")
        return response

    def _dispatch(self, code: int, parts) -> Optional[Response]:
        if code == ResponseCode.READY:
            return Ready()

        if code == ResponseCode.INFO:
            return Info(text=" ".join(parts[1:]))

        if code == ResponseCode.INFO_PROPERTY:
            if len(parts) < 2 or "=" not in parts[1]:
                return None
            key, value = parts[1].split("=", 1)
            return InfoProperty(key=key, value=value)

        if code == ResponseCode.DB_ENTRY:
            if len(parts) < 3:
                return None
            return DbEntry(db_id=parts[1], db_file=parts[2])

        if code == ResponseCode.QUERY_RESULT:
            if len(parts) < 5:
                return None
            return QueryResultResponse(
                img_id=_parse_uint64(parts[1]),
                score=_parse_float64(parts[2]),
                width=_parse_int64(parts[3]),
                height=_parse_int64(parts[4]),
            )

        if code == ResponseCode.MULTI_QUERY_RESULT:
            if len(parts) < 6:
                return None
            return MultiQueryResultResponse(
                db_id=parts[1],
                img_id=_parse_uint64(parts[2]),
                score=_parse_float64(parts[3]),
                width=_parse_int64(parts[4]),
                height=_parse_int64(parts[5]),
            )

        if code == ResponseCode.ERROR:
            return ErrorResponse(text=" ".join(parts[1:]))

        if code == ResponseCode.EXCEPTION:
            if len(parts) < 2:
                return None
            return ExceptionResponse(name=parts[1], text=" ".join(parts[2:]))

        if code == ResponseCode.FATAL:
            if len(parts) < 2:
                return None
            return FatalResponse(name=parts[1], text=" ".join(parts[2:]))

        # DUP_QUERY_RESULT and unknown codes
        return None


def _check_token(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{field_name} must be a non-empty string", field_name=field_name)
    if _WHITESPACE.search(value):
        raise ValidationError(f"{field_name} must not contain whitespace: {value!r}",
                              field_name=field_name)
    return value


def _check_count(value: int, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{field_name} must be a non-negative integer, got {value!r}",
                              field_name=field_name)
    return value


def encode_filename_query(db_id: str, flags: int, num_results: int, filename: str) -> bytes:
    """
    Encode a query that asks the daemon to read the image from its own filesystem.

    Raises:
        ValidationError: If a field cannot be represented on the wire
    """
    _check_token(db_id, "db_id")
    _check_count(flags, "flags")
    _check_count(num_results, "num_results")
    _check_token(filename, "filename")
    return f"query {db_id} {flags} {num_results} {filename}\n".encode("utf-8")


def encode_data_query(db_id: str, flags: int, num_results: int, data: bytes) -> bytes:
    """
    Encode a query carrying the image inline.

    The header announces ``:<len>`` and the raw bytes follow it directly,
    with no further framing.

    Raises:
        ValidationError: If a field cannot be represented on the wire
    """
    _check_token(db_id, "db_id")
    _check_count(flags, "flags")
    _check_count(num_results, "num_results")
    if not isinstance(data, (bytes, bytearray)):
        raise ValidationError(f"Data must be bytes, got {type(data)}", field_name="data")
    header = f"query {db_id} {flags} {num_results} :{len(data)}\n".encode("utf-8")
    return header + bytes(data)
