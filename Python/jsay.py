#!/usr/bin/env python3
"""
jsay - send a message to a broker queue or topic

Reads the message body from a file (or stdin), sends it over AMQP and exits.

Examples:
  jsay --broker-uri tcp://localhost:61616 --address orders --file payload.bin
  echo "Hello" | jsay --broker-uri tcp://localhost:61616 --address news --topic
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from typing import BinaryIO, Optional, Sequence

import jsay_client
from jsay_client import JsayError
from jsay_config import PROG, ConfigurationError, build_parser, resolve_configuration
from jsay_log import configure_logging
from jsay_pipeline import send_message

logger = logging.getLogger("jsay")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130


def package_version() -> str:
    try:
        return version(PROG)
    except PackageNotFoundError:
        return "0.0.0"


def main(
    argv: Optional[Sequence[str]] = None,
    stdin: Optional[BinaryIO] = None,
    connect=jsay_client.connect,
) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = build_parser(package_version())
    try:
        config = resolve_configuration(argv, parser=parser)
    except ConfigurationError as e:
        print(f"Error: parameter error: {e.message}", file=sys.stderr)
        parser.print_usage(sys.stderr)
        print(f"{PROG} {package_version()}", file=sys.stderr)
        return EXIT_USAGE

    configure_logging(config.verbose)

    try:
        send_message(config, connect=connect, stdin=stdin)
        return EXIT_OK
    except JsayError as e:
        logger.error("%s", e.message)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        logger.error("interrupted")
        return EXIT_INTERRUPTED


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
