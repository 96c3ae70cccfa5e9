"""Shared fixtures: a recording in-memory stand-in for the broker client."""

import logging
from typing import List, Optional

import pytest

from jsay_client import (
    AckMode,
    BrokerConnectionError,
    Destination,
    DestinationError,
    SendError,
    SessionError,
)


class FakeHandle:
    def __init__(self, broker: "FakeBroker", name: str):
        self.broker = broker
        self.name = name
        self.close_count = 0

    def close(self) -> None:
        self.close_count += 1
        self.broker.events.append(f"close {self.name}")

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class FakeConnection(FakeHandle):
    def open_session(self, ack_mode):
        self.broker.ack_modes.append(ack_mode)
        if self.broker.fail_at == "session":
            raise SessionError("session refused")
        self.broker.events.append("open session")
        session = FakeSession(self.broker, "session")
        self.broker.handles.append(session)
        return session


class FakeSession(FakeHandle):
    def resolve_destination(self, name, kind):
        if self.broker.fail_at == "destination":
            raise DestinationError(f"bad destination {name!r}")
        self.broker.events.append(f"resolve {kind.value} {name}")
        return Destination(name=name, kind=kind)

    def create_producer(self, destination):
        if self.broker.fail_at == "producer":
            raise DestinationError(f"broker refused {destination}")
        self.broker.events.append("open producer")
        producer = FakeProducer(self.broker, "producer")
        producer.destination = destination
        self.broker.handles.append(producer)
        return producer


class FakeProducer(FakeHandle):
    destination: Optional[Destination] = None

    def send(self, body, expiration_millis=None, timeout=None):
        if self.broker.fail_at == "send":
            raise SendError("broker disconnected")
        self.broker.events.append("send")
        self.broker.sent.append(
            {
                "destination": self.destination,
                "body": body,
                "expiration_millis": expiration_millis,
                "timeout": timeout,
            }
        )


class FakeBroker:
    """Records every acquire/release; fail_at names the stage that raises."""

    def __init__(self, fail_at: Optional[str] = None):
        self.fail_at = fail_at
        self.events: List[str] = []
        self.handles: List[FakeHandle] = []
        self.sent: List[dict] = []
        self.connect_calls: List[dict] = []
        self.ack_modes: List[AckMode] = []

    def connect(self, broker_uri, user=None, password=None, timeout=None):
        self.connect_calls.append(
            {"broker_uri": broker_uri, "user": user, "password": password, "timeout": timeout}
        )
        if self.fail_at == "connect":
            raise BrokerConnectionError(f"could not connect to {broker_uri}")
        self.events.append("open connection")
        connection = FakeConnection(self, "connection")
        self.handles.append(connection)
        return connection


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def payload_file(tmp_path):
    path = tmp_path / "payload.bin"
    path.write_bytes(b"\x00\x01binary\xff\xfe payload\n")
    return path


@pytest.fixture(autouse=True)
def restore_jsay_logger():
    logger = logging.getLogger("jsay")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
