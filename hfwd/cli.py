"""
Command line entry point.

    hfwd [flags] <destination URL>

Flags not given on the command line fall back to HFWD_* environment
variables and then to the YAML file named by HFWD_CONFIG_FILE.
"""

from __future__ import annotations

import argparse
from collections.abc import Sequence

import uvicorn
from pydantic import ValidationError

from hfwd import __version__
from hfwd.app import create_application
from hfwd.config import Settings, load_configuration, parse_destination
from hfwd.errors import ConfigurationError
from hfwd.logging_config import configure_logging, get_logger
from hfwd.proxy.handler import ForwardingHandler

logger = get_logger(__name__)


def _comma_list(value: str) -> list[str]:
    return [v for v in value.split(",") if v]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hfwd",
        description="hfwd is a simple HTTP forward proxy",
    )
    parser.add_argument("destination", nargs="?", help="destination URL")
    parser.add_argument("-u", "--username", help="username for the basic authentication")
    parser.add_argument("-p", "--password", help="password for the basic authentication")
    parser.add_argument(
        "-r",
        "--rewrite",
        action="extend",
        type=_comma_list,
        help="list for path rewrite (-r /old:/new -r /o:/n OR -r /old:/new,/o:/n)",
    )
    parser.add_argument(
        "-H",
        "--header",
        action="append",
        help="additional http header, repeatable (-H Host:custom.example.com -H 'User-Agent:My Agent')",
    )
    parser.add_argument("--ca-cert", help="path of the additional CA certificate PEM")
    parser.add_argument("--pkcs12", help="path of the PKCS12 encoded file for the client certification")
    parser.add_argument("--pkcs12-password", help="password for the PKCS12 file")
    parser.add_argument("--listen-address", help="address to listen on (default 127.0.0.1)")
    parser.add_argument("--listen-port", type=int, help="port to listen on (default 8080)")
    parser.add_argument("--log-level", help="log level (default INFO)")
    parser.add_argument(
        "--json-logs",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="emit JSON log lines",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_settings(args: argparse.Namespace) -> Settings:
    """Merge command line values over environment and YAML settings."""
    overrides = {k: v for k, v in vars(args).items() if v is not None}
    return Settings(**overrides)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = load_settings(args)
    except ValidationError as e:
        configure_logging()
        logger.error("Failed to load configuration", error=str(e))
        return 1
    if not settings.destination:
        parser.error("the following arguments are required: destination")

    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)

    try:
        destination = parse_destination(settings.destination)
        configuration = load_configuration(settings.to_parameters())
    except ConfigurationError as e:
        logger.error("Failed to load configuration", error=str(e))
        return 1

    handler = ForwardingHandler(destination, configuration)
    app = create_application(handler)

    logger.info(
        "hfwd listening",
        address=settings.listen_address,
        port=settings.listen_port,
        destination=str(destination),
    )
    uvicorn.run(
        app,
        host=settings.listen_address,
        port=settings.listen_port,
        log_config=None,
    )
    return 0
