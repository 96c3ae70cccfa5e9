"""
jsay - send pipeline

connect -> session -> destination -> producer -> send, with every
acquired handle released in reverse order on success and on failure.
"""

import logging
import sys
from contextlib import ExitStack
from typing import BinaryIO, Callable, Optional

import jsay_client
from jsay_client import AckMode, JsayError
from jsay_config import SendConfiguration

logger = logging.getLogger("jsay.pipeline")


class PayloadReadError(JsayError):
    """The payload file or standard input could not be read."""


def read_payload(config: SendConfiguration, stdin: Optional[BinaryIO] = None) -> bytes:
    """
    Read the whole payload as raw bytes.

    Args:
        config: Selects the payload file, or standard input when none is set
        stdin: Binary stream used for standard input (default: sys.stdin.buffer)

    Raises:
        PayloadReadError: The payload could not be read
    """
    if config.reads_stdin:
        stream = stdin if stdin is not None else sys.stdin.buffer
        try:
            return stream.read()
        except OSError as e:
            raise PayloadReadError(f"could not read standard input: {e}") from e

    try:
        return config.payload_file.read_bytes()
    except OSError as e:
        raise PayloadReadError(f"could not read {config.payload_file}: {e}") from e


def send_message(
    config: SendConfiguration,
    connect: Callable[..., jsay_client.BrokerConnection] = jsay_client.connect,
    stdin: Optional[BinaryIO] = None,
) -> int:
    """
    Send one message as described by config.

    Args:
        config: The resolved configuration
        connect: Broker connector (default: jsay_client.connect)
        stdin: Binary stream used when the payload comes from standard input

    Returns:
        Number of payload bytes sent

    Raises:
        JsayError: Any connection, session, destination, payload or send failure
    """
    with ExitStack() as stack:
        logger.debug("creating connection")
        connection = stack.enter_context(
            connect(
                config.broker_uri,
                user=config.user,
                password=config.password,
                timeout=config.connect_timeout,
            )
        )

        logger.debug("creating session")
        session = stack.enter_context(connection.open_session(AckMode.AUTO))

        logger.debug("resolving %s %r", config.destination_kind.value, config.address)
        destination = session.resolve_destination(config.address, config.destination_kind)

        logger.debug("creating producer")
        producer = stack.enter_context(session.create_producer(destination))

        body = read_payload(config, stdin)
        expiration = config.expiration_millis
        if expiration is not None:
            logger.debug("message expires at %s (%d)", config.expires.isoformat(), expiration)

        logger.debug("sending message")
        producer.send(body, expiration_millis=expiration, timeout=config.send_timeout)

    logger.info("sent %d bytes to %s", len(body), destination)
    return len(body)
