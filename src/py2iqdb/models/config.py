"""
Gateway configuration for py2iqdb.

Settings come from defaults, an optional YAML file, and environment
variables, applied in that order. Environment names match the ones the
deployed gateway has always used (LISTEN_ADDR, IQDB_ADDR, SERVICE_NAME,
MATCH_TRESHOLD).

Classes:
    GatewayConfig: Immutable configuration for the HTTP gateway
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from py2iqdb.core.client import parse_address
from py2iqdb.core.errors import ConfigurationError, ErrorCodes, ValidationError

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

# environment variable -> config field
_ENV_FIELDS = {
    "IQDB_ADDR": "iqdb_address",
    "SERVICE_NAME": "service_name",
    "MATCH_TRESHOLD": "match_threshold",
    "MATCH_THRESHOLD": "match_threshold",
    "IQDB_DB_ID": "db_id",
    "IQDB_FLAGS": "query_flags",
    "IQDB_NUM_RESULTS": "num_results",
    "IQDB_CONNECT_TIMEOUT": "connect_timeout",
    "IQDB_QUERY_TIMEOUT": "query_timeout",
    "IQDB_PERSISTENT": "persistent_connection",
    "MAX_UPLOAD_BYTES": "max_upload_bytes",
    "URL_FETCH_TIMEOUT": "url_fetch_timeout",
}


@dataclass(frozen=True)
class GatewayConfig:
    """
    Immutable configuration for the IQDB HTTP gateway.

    Attributes:
        listen_host: Interface the HTTP server binds to
        listen_port: HTTP port
        iqdb_address: IQDB daemon as host:port
        service_name: Service label written into every XML match
        match_threshold: Threshold attribute of the XML <matches> element
        db_id: Database queried on the daemon
        query_flags: Flags passed with every query
        num_results: Maximum number of matches requested
        connect_timeout: Seconds allowed for dial plus handshake
        query_timeout: Seconds allowed for one query's results (None = no limit)
        persistent_connection: Share one daemon connection across requests
        max_upload_bytes: Largest accepted image, uploaded or fetched
        url_fetch_timeout: Seconds allowed to download an image URL

    Example:
        >>> config = GatewayConfig.from_env({"IQDB_ADDR": "127.0.0.1:5566"})
        >>> valid, errors = config.validate()
    """

    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    iqdb_address: str = "iqdb:5566"
    service_name: str = "iibooru"
    match_threshold: str = "60"
    db_id: str = "0"
    query_flags: int = 0
    num_results: int = 10
    connect_timeout: float = 5.0
    query_timeout: Optional[float] = 30.0
    persistent_connection: bool = False
    max_upload_bytes: int = 100 * 1024 * 1024
    url_fetch_timeout: float = 10.0

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate the configuration.

        Returns:
            Tuple of (is_valid, list_of_error_messages)
        """
        errors = []

        if not (1 <= self.listen_port <= 65535):
            errors.append(f"Listen port out of range (1-65535): {self.listen_port}")

        try:
            parse_address(self.iqdb_address)
        except ValidationError as e:
            errors.append(f"Invalid IQDB address: {e}")

        if not self.db_id or any(c.isspace() for c in self.db_id):
            errors.append(f"Database id must be a non-empty token: {self.db_id!r}")

        if self.query_flags < 0:
            errors.append(f"Query flags must be non-negative: {self.query_flags}")

        if self.num_results <= 0:
            errors.append(f"Number of results must be positive: {self.num_results}")

        if self.connect_timeout <= 0:
            errors.append(f"Connect timeout must be positive: {self.connect_timeout}")

        if self.query_timeout is not None and self.query_timeout <= 0:
            errors.append(f"Query timeout must be positive: {self.query_timeout}")

        if self.max_upload_bytes <= 0:
            errors.append(f"Max upload size must be positive: {self.max_upload_bytes}")

        if self.url_fetch_timeout <= 0:
            errors.append(f"URL fetch timeout must be positive: {self.url_fetch_timeout}")

        return (len(errors) == 0, errors)

    def validated(self) -> "GatewayConfig":
        """Return self, or raise ConfigurationError listing every problem."""
        valid, errors = self.validate()
        if not valid:
            raise ConfigurationError(
                "Invalid gateway configuration: " + "; ".join(errors),
                error_code=ErrorCodes.CONFIG_INVALID
            )
        return self

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], base: Optional["GatewayConfig"] = None) -> "GatewayConfig":
        """
        Build a config from a mapping of field names to raw values.

        Unknown keys raise ConfigurationError; values are coerced to the
        field's type, so strings from the environment are accepted.
        """
        base = base or cls()
        known = {f.name for f in fields(cls)}
        updates: Dict[str, Any] = {}

        for key, raw in values.items():
            if key not in known:
                raise ConfigurationError(f"Unknown setting: {key}", setting_name=key,
                                         error_code=ErrorCodes.CONFIG_INVALID)
            updates[key] = _coerce(key, raw, getattr(base, key))

        return replace(base, **updates)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 base: Optional["GatewayConfig"] = None) -> "GatewayConfig":
        """
        Apply environment variable overrides on top of base (or defaults).

        LISTEN_ADDR takes the ``[host]:port`` form, so ``:8080``
        listens on all interfaces.
        """
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        listen_addr = environ.get("LISTEN_ADDR")
        if listen_addr is not None:
            host, port = _split_listen_addr(listen_addr)
            values["listen_host"] = host
            values["listen_port"] = port

        for env_name, field_name in _ENV_FIELDS.items():
            if env_name in environ:
                values[field_name] = environ[env_name]

        return cls.from_mapping(values, base=base)

    @classmethod
    def from_yaml(cls, path: Union[str, Path],
                  environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        """
        Load settings from a YAML file, then apply environment overrides.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}",
                                     error_code=ErrorCodes.CONFIG_NOT_FOUND)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}",
                                     error_code=ErrorCodes.CONFIG_INVALID, cause=e)

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping",
                                     error_code=ErrorCodes.CONFIG_INVALID)

        logger.info(f"Loaded gateway configuration from {path}")
        return cls.from_env(environ, base=cls.from_mapping(data))


def _split_listen_addr(value: str) -> Tuple[str, int]:
    host, sep, port_text = value.rpartition(":")
    if not sep:
        raise ConfigurationError(f"LISTEN_ADDR must be [host]:port, got {value!r}",
                                 setting_name="LISTEN_ADDR", error_code=ErrorCodes.CONFIG_INVALID)
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigurationError(f"Invalid port in LISTEN_ADDR: {value!r}",
                                 setting_name="LISTEN_ADDR", error_code=ErrorCodes.CONFIG_INVALID)
    host = host.strip("[]") or "0.0.0.0"
    return host, port


def _coerce(name: str, raw: Any, current: Any) -> Any:
    """Convert raw to the type of the field's current value."""
    try:
        if name == "query_timeout":
            if raw is None or (isinstance(raw, str) and raw.strip().lower() in ("", "none")):
                return None
            return float(raw)

        if isinstance(current, bool):
            if isinstance(raw, bool):
                return raw
            text = str(raw).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {raw!r}")

        if isinstance(current, int):
            if isinstance(raw, float) and not raw.is_integer():
                raise ValueError(f"not an integer: {raw!r}")
            return int(raw)

        if isinstance(current, float):
            return float(raw)

        return str(raw)

    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}", setting_name=name,
                                 error_code=ErrorCodes.CONFIG_INVALID, cause=e)
