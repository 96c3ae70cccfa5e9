"""
jsay - AMQP broker client

Blocking connection/session/producer wrappers over python-qpid-proton.
Every handle is a context manager whose close() releases the underlying
AMQP endpoint exactly once; failures are raised as the JsayError subclass
of the stage that failed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

from proton import Endpoint, Message, ProtonException, symbol
from proton.reactor import AtLeastOnce, Container, LinkOption
from proton.utils import BlockingConnection, BlockingSender

from jsay_log import trace

logger = logging.getLogger("jsay.client")

CONTAINER_ID = "jsay"
CONTENT_TYPE = "application/octet-stream"
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_SEND_TIMEOUT = 30.0

PLAIN_SCHEMES = ("tcp", "amqp")
TLS_SCHEMES = ("ssl", "tls", "amqps")


class AckMode(Enum):
    """Session acknowledgment modes. Only automatic acknowledgment is supported."""

    AUTO = "auto"


class DestinationKind(Enum):
    QUEUE = "queue"
    TOPIC = "topic"


@dataclass(frozen=True)
class Destination:
    """A resolved queue or topic."""

    name: str
    kind: DestinationKind

    def __str__(self) -> str:
        return f"{self.kind.value} {self.name!r}"


def amqp_url(broker_uri: str) -> str:
    """
    Translate a broker URI into the AMQP URL proton connects to.

    tcp:// and amqp:// give plain AMQP; ssl://, tls://, amqps:// or a
    sslEnabled=true query parameter give AMQP over TLS.

    Raises:
        ValueError: If the scheme is not supported, the host is missing or
            the URI carries credentials
    """
    parts = urlsplit(broker_uri.strip())
    scheme = parts.scheme.lower()
    if scheme not in PLAIN_SCHEMES + TLS_SCHEMES:
        raise ValueError(f"unsupported scheme {parts.scheme!r}")
    if not parts.hostname:
        raise ValueError("no host given")
    if parts.username is not None or parts.password is not None:
        raise ValueError("credentials belong in --user and --password, not the URI")

    # Raises ValueError for a non-numeric or out-of-range port.
    port = parts.port

    query = parse_qs(parts.query)
    ssl_enabled = any(v.lower() == "true" for v in query.get("sslEnabled", []))
    target_scheme = "amqps" if scheme in TLS_SCHEMES or ssl_enabled else "amqp"

    host = parts.hostname
    if ":" in host:
        host = f"[{host}]"
    if port is not None:
        return f"{target_scheme}://{host}:{port}"
    return f"{target_scheme}://{host}"


def expiry_seconds(expiration_millis: int) -> Decimal:
    """Epoch milliseconds as the seconds value proton's Message.expiry_time takes."""
    # Decimal keeps the millisecond value exact through proton's secs -> millis step.
    return Decimal(expiration_millis) / 1000


class TargetCapability(LinkOption):
    """Sender option advertising the routing type of the target node."""

    def __init__(self, capability: str):
        self.capability = capability

    def apply(self, link) -> None:
        link.target.capabilities.put_object(symbol(self.capability))

    def test(self, link) -> bool:
        return link.is_sender


def connect(
    broker_uri: str,
    user: Optional[str] = None,
    password: Optional[str] = None,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
) -> "BrokerConnection":
    """
    Open a connection to the broker.

    Args:
        broker_uri: Broker URI (e.g., tcp://localhost:61616)
        user: Broker username; SASL ANONYMOUS is used when omitted
        password: Broker password
        timeout: Seconds to wait for the broker to open the connection

    Returns:
        An open BrokerConnection

    Raises:
        BrokerConnectionError: Broker unreachable, authentication rejected,
            protocol negotiation failure or timeout
    """
    try:
        url = amqp_url(broker_uri)
    except ValueError as e:
        raise BrokerConnectionError(f"invalid broker URI {broker_uri!r}: {e}") from e

    kwargs: Dict[str, Any] = {}
    if user:
        kwargs["user"] = user
        kwargs["password"] = password or ""
        kwargs["allowed_mechs"] = "PLAIN"
    else:
        kwargs["allowed_mechs"] = "ANONYMOUS"

    container = Container()
    container.container_id = CONTAINER_ID

    logger.debug("connecting to %s", url)
    try:
        blocking = BlockingConnection(url, timeout=timeout, container=container, **kwargs)
    except (ProtonException, OSError) as e:
        raise BrokerConnectionError(f"could not connect to {broker_uri}: {e}") from e

    return BrokerConnection(blocking, broker_uri)


class BrokerConnection:
    """An open AMQP connection."""

    def __init__(self, blocking: BlockingConnection, broker_uri: str = ""):
        self._blocking = blocking
        self.broker_uri = broker_uri
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def open_session(self, ack_mode: AckMode = AckMode.AUTO) -> "BrokerSession":
        """
        Begin a session on this connection.

        Raises:
            SessionError: The connection is closing or the broker ended the session
        """
        if ack_mode is not AckMode.AUTO:
            raise SessionError(f"unsupported acknowledgment mode {ack_mode!r}")
        if self._closed or self._blocking.conn.state & Endpoint.LOCAL_CLOSED:
            raise SessionError("connection is closed")

        try:
            ssn = self._blocking.conn.session()
            ssn.open()
            self._blocking.wait(
                lambda: not (ssn.state & Endpoint.REMOTE_UNINIT),
                msg="Opening session",
            )
        except (ProtonException, OSError) as e:
            raise SessionError(f"could not open session: {e}") from e

        if ssn.state & Endpoint.REMOTE_CLOSED:
            condition = ssn.remote_condition
            ssn.close()
            raise SessionError(f"broker refused session: {condition}")

        return BrokerSession(self._blocking, ssn)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        trace(logger, "closing connection")
        try:
            self._blocking.close()
        except (ProtonException, OSError) as e:
            logger.warning("error closing connection: %s", e)

    def __enter__(self) -> "BrokerConnection":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BrokerSession:
    """An AMQP session; producers are sender links on it."""

    def __init__(self, blocking: BlockingConnection, ssn):
        self._blocking = blocking
        self._ssn = ssn
        self._closed = False

    def resolve_destination(self, name: str, kind: DestinationKind) -> Destination:
        """
        Resolve an address into a queue or topic.

        Raises:
            DestinationError: The name is empty or contains control characters
        """
        if self._closed:
            raise DestinationError("session is closed")
        if not name or not name.strip():
            raise DestinationError("destination name is empty")
        if any(ord(ch) < 0x20 or ord(ch) == 0x7f for ch in name):
            raise DestinationError(f"invalid destination name {name!r}")
        return Destination(name=name, kind=kind)

    def create_producer(self, destination: Destination) -> "BrokerProducer":
        """
        Attach a sender link to the destination.

        Raises:
            DestinationError: The broker refused the link to this destination
        """
        if self._closed:
            raise DestinationError("session is closed")

        options: List[LinkOption] = [AtLeastOnce(), TargetCapability(destination.kind.value)]
        try:
            link = self._blocking.container.create_sender(
                self._ssn, destination.name, options=options
            )
            sender = BlockingSender(self._blocking, link)
        except (ProtonException, OSError) as e:
            raise DestinationError(f"broker refused {destination}: {e}") from e

        return BrokerProducer(sender, destination)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        trace(logger, "closing session")
        try:
            self._ssn.close()
            self._blocking.wait(
                lambda: not (self._ssn.state & Endpoint.REMOTE_ACTIVE),
                msg="Closing session",
            )
        except (ProtonException, OSError) as e:
            logger.warning("error closing session: %s", e)

    def __enter__(self) -> "BrokerSession":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class BrokerProducer:
    """A sender bound to one destination."""

    def __init__(self, sender: BlockingSender, destination: Destination):
        self._sender = sender
        self.destination = destination
        self._closed = False

    def send(
        self,
        body: bytes,
        expiration_millis: Optional[int] = None,
        timeout: float = DEFAULT_SEND_TIMEOUT,
    ) -> None:
        """
        Send body as a binary message and wait until the broker settles it.

        Args:
            body: Raw message bytes
            expiration_millis: Absolute expiry time in epoch milliseconds
            timeout: Seconds to wait for the broker to settle the delivery

        Raises:
            SendError: Message construction or transmission failed
        """
        if self._closed:
            raise SendError("producer is closed")
        try:
            message = Message(
                body=bytes(body),
                inferred=True,
                content_type=CONTENT_TYPE,
                durable=True,
            )
            if expiration_millis is not None:
                message.expiry_time = expiry_seconds(expiration_millis)
            self._sender.send(message, timeout=timeout)
        except (ProtonException, OSError) as e:
            raise SendError(f"could not send to {self.destination}: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        trace(logger, "closing producer")
        try:
            self._sender.close()
        except (ProtonException, OSError) as e:
            logger.warning("error closing producer: %s", e)

    def __enter__(self) -> "BrokerProducer":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class JsayError(Exception):
    """Base class for jsay failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BrokerConnectionError(JsayError):
    """The broker could not be reached, refused the credentials or timed out."""


class SessionError(JsayError):
    """The broker refused to open a session."""


class DestinationError(JsayError):
    """The destination name was rejected."""


class SendError(JsayError):
    """Transport failure while building or sending the message."""
