"""
jsay - configuration resolver

Turns command-line arguments (plus the JSAY_USER / JSAY_PASSWORD
environment fallbacks) into an immutable SendConfiguration.
"""

import argparse
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional, Sequence

from jsay_client import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_SEND_TIMEOUT,
    DestinationKind,
    JsayError,
    amqp_url,
)
from jsay_log import LogLevel

PROG = "jsay"
STDIN_MARKER = "-"
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

USER_ENV = "JSAY_USER"
PASSWORD_ENV = "JSAY_PASSWORD"

_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")

# ISO-8601 extended offset date-time, as java.time's ISO_OFFSET_DATE_TIME reads it.
_OFFSET_DATE_TIME = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})[Tt]"
    r"(?P<hour_minute>\d{2}:\d{2})"
    r"(?::(?P<second>\d{2})(?:\.(?P<fraction>\d{1,9}))?)?"
    r"(?P<offset>[Zz]|[+-]\d{2}:\d{2}(?::\d{2})?)$",
    re.ASCII,
)


class ConfigurationProblem(Enum):
    MISSING_OPTION = "MissingOption"
    INVALID_VALUE = "InvalidValue"
    INVALID_URI = "InvalidURI"
    INVALID_EXPIRY = "InvalidExpiry"
    EMPTY_ADDRESS = "EmptyAddress"


class ConfigurationError(JsayError):
    """Bad or missing command-line input."""

    def __init__(self, problem: ConfigurationProblem, option: Optional[str], message: str):
        self.problem = problem
        self.option = option
        super().__init__(message)

    def __repr__(self) -> str:
        return f"ConfigurationError({self.problem.value}, option={self.option!r})"


@dataclass(frozen=True)
class SendConfiguration:
    """Everything one invocation needs to send its message."""

    broker_uri: str
    address: str
    destination_kind: DestinationKind = DestinationKind.QUEUE
    user: Optional[str] = None
    password: Optional[str] = None
    expires: Optional[datetime] = None
    payload_file: Optional[Path] = None
    verbose: LogLevel = LogLevel.INFO
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    send_timeout: float = DEFAULT_SEND_TIMEOUT

    @property
    def reads_stdin(self) -> bool:
        return self.payload_file is None

    @property
    def expiration_millis(self) -> Optional[int]:
        if self.expires is None:
            return None
        return epoch_millis(self.expires)


class _Parser(argparse.ArgumentParser):
    """ArgumentParser that raises ConfigurationError instead of exiting."""

    def error(self, message: str):
        if message.startswith("the following arguments are required"):
            problem = ConfigurationProblem.MISSING_OPTION
        else:
            problem = ConfigurationProblem.INVALID_VALUE
        match = re.search(r"(--[\w-]+)", message)
        raise ConfigurationError(problem, match.group(1) if match else None, message)


def parse_bool(text: str) -> bool:
    value = text.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value: {text!r}")


def parse_level(text: str) -> LogLevel:
    try:
        return LogLevel.parse(text)
    except KeyError:
        choices = ", ".join(level.name for level in LogLevel)
        raise argparse.ArgumentTypeError(f"invalid level {text!r} (choose from {choices})")


def positive_seconds(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}")
    if not value > 0:
        raise argparse.ArgumentTypeError(f"must be positive: {text!r}")
    return value


def parse_expiry(text: str) -> datetime:
    """
    Parse an ISO-8601 offset date-time such as 2030-01-01T00:00:00Z.

    Raises:
        ValueError: Not a date-time, or no UTC offset given
    """
    match = _OFFSET_DATE_TIME.match(text.strip())
    if match is None:
        raise ValueError("expected YYYY-MM-DDTHH:MM[:SS[.fraction]] followed by Z or +HH:MM")

    seconds = match.group("second") or "00"
    # Nanosecond digits beyond microsecond precision are dropped.
    fraction = (match.group("fraction") or "").ljust(6, "0")[:6]
    offset = match.group("offset")
    if offset in ("Z", "z"):
        offset = "+00:00"

    return datetime.fromisoformat(
        f"{match.group('date')}T{match.group('hour_minute')}:{seconds}.{fraction}{offset}"
    )


def epoch_millis(instant: datetime) -> int:
    return (instant - EPOCH) // timedelta(milliseconds=1)


def build_parser(version: str = "0.0.0") -> argparse.ArgumentParser:
    parser = _Parser(
        prog=PROG,
        allow_abbrev=False,
        description="Send a single message to a message broker queue or topic",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Send a file to a queue
  jsay --broker-uri tcp://localhost:61616 --address orders --file payload.bin

  # Publish stdin to a topic, expiring at the start of 2030
  echo "Hello" | jsay --broker-uri tcp://localhost:61616 --address news --topic \\
      --expires 2030-01-01T00:00:00Z
        """,
    )

    parser.add_argument(
        "--verbose",
        type=parse_level,
        default=LogLevel.INFO,
        metavar="LEVEL",
        help="Logging verbosity: TRACE, DEBUG, INFO, WARN or ERROR (default: INFO)",
    )
    parser.add_argument(
        "--user",
        help=f"The message broker user (or {USER_ENV} env)",
    )
    parser.add_argument(
        "--password",
        help=f"The message broker password (or {PASSWORD_ENV} env)",
    )
    parser.add_argument(
        "--broker-uri",
        required=True,
        help="The message broker URI (e.g., tcp://localhost:61616)",
    )
    parser.add_argument(
        "--expires",
        metavar="DATETIME",
        help="The message expiry time, as an ISO-8601 offset date-time",
    )
    parser.add_argument(
        "--address",
        required=True,
        help="The message address",
    )
    parser.add_argument(
        "--topic",
        nargs="?",
        type=parse_bool,
        const=True,
        default=False,
        metavar="BOOL",
        help="The destination is a topic, not a queue",
    )
    parser.add_argument(
        "--file",
        help="The message file (if not specified, data is read from stdin)",
    )
    parser.add_argument(
        "--connect-timeout",
        type=positive_seconds,
        default=DEFAULT_CONNECT_TIMEOUT,
        metavar="SECONDS",
        help="Broker connection timeout in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--send-timeout",
        type=positive_seconds,
        default=DEFAULT_SEND_TIMEOUT,
        metavar="SECONDS",
        help="Message send timeout in seconds (default: %(default)s)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"{PROG} {version}",
    )
    return parser


def resolve_configuration(
    argv: Sequence[str],
    env: Optional[Mapping[str, str]] = None,
    parser: Optional[argparse.ArgumentParser] = None,
) -> SendConfiguration:
    """
    Validate arguments into a SendConfiguration.

    Args:
        argv: Command-line arguments, without the program name
        env: Environment for credential fallbacks (default: os.environ)
        parser: Parser to use (default: build_parser())

    Raises:
        ConfigurationError: Naming the offending option
    """
    if env is None:
        env = os.environ
    parser = parser or build_parser()
    args = parser.parse_args(list(argv))

    try:
        amqp_url(args.broker_uri)
    except ValueError as e:
        raise ConfigurationError(
            ConfigurationProblem.INVALID_URI,
            "--broker-uri",
            f"invalid broker URI {args.broker_uri!r}: {e}",
        ) from e

    if not args.address.strip():
        raise ConfigurationError(
            ConfigurationProblem.EMPTY_ADDRESS,
            "--address",
            "the destination address must not be empty",
        )

    expires = None
    if args.expires is not None:
        try:
            expires = parse_expiry(args.expires)
        except ValueError as e:
            raise ConfigurationError(
                ConfigurationProblem.INVALID_EXPIRY,
                "--expires",
                f"invalid expiry time {args.expires!r}: {e}",
            ) from e

    payload_file = None
    if args.file is not None and args.file != STDIN_MARKER:
        payload_file = Path(args.file)

    user = args.user or env.get(USER_ENV) or None
    password = args.password or env.get(PASSWORD_ENV) or None

    return SendConfiguration(
        broker_uri=args.broker_uri,
        address=args.address,
        destination_kind=DestinationKind.TOPIC if args.topic else DestinationKind.QUEUE,
        user=user,
        password=password,
        expires=expires,
        payload_file=payload_file,
        verbose=args.verbose,
        connect_timeout=args.connect_timeout,
        send_timeout=args.send_timeout,
    )
