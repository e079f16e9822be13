"""
Command-Line Interface - Argument Parsing and Entry Point

This module provides the command-line interface for py2iqdb. It handles:
- Command-line argument parsing
- Logging setup
- Running the HTTP gateway (``serve``)
- One-shot queries against a daemon (``query``)

Usage:
    python -m py2iqdb serve --config gateway.yaml
    python -m py2iqdb query iqdb:5566 --file picture.jpg
    python -m py2iqdb --help
"""

import sys
import argparse
import logging
from pathlib import Path
from typing import List, Optional

from py2iqdb.core.client import IqdbClient, query_data, query_filename
from py2iqdb.core.errors import IqdbError
from py2iqdb.models.config import GatewayConfig
from py2iqdb.utils.xml_renderer import render_matches

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def parse_args(args: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Args:
        args: List of arguments to parse. If None, uses sys.argv[1:]

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="py2iqdb",
        description="IQDB image similarity gateway and client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s serve
  %(prog)s serve --config gateway.yaml --port 8080
  %(prog)s query 127.0.0.1:5566 --file picture.jpg --num-results 5
  %(prog)s query 127.0.0.1:5566 --remote-filename /images/picture.jpg --xml
        """
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set logging level (default: INFO)"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP gateway")
    serve.add_argument("--config", type=str, default=None,
                       help="YAML configuration file (environment variables still override it)")
    serve.add_argument("--host", type=str, default=None, help="Bind address (overrides config)")
    serve.add_argument("--port", type=int, default=None, help="HTTP port (overrides config)")

    query = sub.add_parser("query", help="Run one query against a daemon")
    query.add_argument("address", type=str, help="Daemon address as host:port")
    target = query.add_mutually_exclusive_group(required=True)
    target.add_argument("--file", type=str, help="Local image file sent inline")
    target.add_argument("--remote-filename", type=str,
                        help="Image path on the daemon's filesystem")
    query.add_argument("--db-id", type=str, default="0", help="Database id (default: 0)")
    query.add_argument("--flags", type=int, default=0, help="Query flags (default: 0)")
    query.add_argument("--num-results", type=int, default=10,
                       help="Maximum number of matches (default: 10)")
    query.add_argument("--timeout", type=float, default=IqdbClient.DEFAULT_QUERY_TIMEOUT,
                       help="Seconds allowed for the query, 0 for no limit (default: 30)")
    query.add_argument("--xml", action="store_true", help="Print results as gateway XML")
    query.add_argument("--service-name", type=str, default="iibooru",
                       help="Service name used with --xml (default: iibooru)")

    return parser.parse_args(args)


def setup_logging(level: str) -> None:
    """Configure root logging for the command-line tools."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT
    )


def run_serve(args: argparse.Namespace) -> int:
    """Start the gateway under uvicorn."""
    import uvicorn
    from py2iqdb.api.app import create_app

    logger = logging.getLogger(__name__)

    try:
        if args.config:
            config = GatewayConfig.from_yaml(args.config)
        else:
            config = GatewayConfig.from_env()
        overrides = {}
        if args.host is not None:
            overrides["listen_host"] = args.host
        if args.port is not None:
            overrides["listen_port"] = args.port
        if overrides:
            config = GatewayConfig.from_mapping(overrides, base=config)
        app = create_app(config)
    except IqdbError as e:
        logger.error(e.format_log_message())
        print(f"Error: {e}", file=sys.stderr)
        return 1

    logger.info(f"Gateway listening on {config.listen_host}:{config.listen_port}, "
                f"daemon at {config.iqdb_address}")
    uvicorn.run(app, host=config.listen_host, port=config.listen_port,
                log_level=args.log_level.lower())
    return 0


def run_query(args: argparse.Namespace) -> int:
    """Run one query and print the matches."""
    logger = logging.getLogger(__name__)

    timeout = args.timeout if args.timeout and args.timeout > 0 else None

    try:
        if args.file:
            data = Path(args.file).read_bytes()
            results = query_data(args.address, args.db_id, args.flags, args.num_results,
                                 data, timeout=timeout)
        else:
            results = query_filename(args.address, args.db_id, args.flags, args.num_results,
                                     args.remote_filename, timeout=timeout)
    except OSError as e:
        print(f"Error: cannot read {args.file}: {e}", file=sys.stderr)
        return 1
    except IqdbError as e:
        logger.debug(e.format_log_message())
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.xml:
        print(render_matches(results, args.service_name, "0"))
    else:
        for r in results:
            print(f"{r.img_id}\t{r.score:f}\t{r.width}x{r.height}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the command-line tools."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        return run_serve(args)
    return run_query(args)


if __name__ == "__main__":
    sys.exit(main())
