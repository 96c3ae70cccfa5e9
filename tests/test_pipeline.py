"""
Send pipeline tests

Covers:
1. Acquisition order and reverse-order release on success
2. Release under failure injection at every stage
3. Payload bytes, expiration and destination kind handed to the producer

Run with:
    pytest tests/test_pipeline.py -v
"""

import io
from pathlib import Path

import pytest

from conftest import FakeBroker
from jsay_client import (
    AckMode,
    BrokerConnectionError,
    DestinationError,
    DestinationKind,
    SendError,
    SessionError,
)
from jsay_config import SendConfiguration, parse_expiry
from jsay_pipeline import PayloadReadError, read_payload, send_message


def make_config(**overrides):
    fields = dict(broker_uri="tcp://localhost:61616", address="orders")
    fields.update(overrides)
    return SendConfiguration(**fields)


# ============================================================================
# LIFECYCLE
# ============================================================================

def test_success_acquires_and_releases_in_order(broker, payload_file):
    send_message(make_config(payload_file=payload_file), connect=broker.connect)

    assert broker.events == [
        "open connection",
        "open session",
        "resolve queue orders",
        "open producer",
        "send",
        "close producer",
        "close session",
        "close connection",
    ]
    assert all(handle.close_count == 1 for handle in broker.handles)


def test_session_uses_auto_acknowledge(broker, payload_file):
    send_message(make_config(payload_file=payload_file), connect=broker.connect)
    assert broker.ack_modes == [AckMode.AUTO]


def test_connect_receives_credentials_and_timeout(broker, payload_file):
    config = make_config(
        payload_file=payload_file, user="admin", password="secret", connect_timeout=4.0
    )
    send_message(config, connect=broker.connect)
    assert broker.connect_calls == [
        {
            "broker_uri": "tcp://localhost:61616",
            "user": "admin",
            "password": "secret",
            "timeout": 4.0,
        }
    ]


@pytest.mark.parametrize(
    "fail_at,error,released",
    [
        ("connect", BrokerConnectionError, []),
        ("session", SessionError, ["close connection"]),
        ("destination", DestinationError, ["close session", "close connection"]),
        ("producer", DestinationError, ["close session", "close connection"]),
        ("send", SendError, ["close producer", "close session", "close connection"]),
    ],
)
def test_failure_releases_acquired_resources(fail_at, error, released, payload_file):
    broker = FakeBroker(fail_at=fail_at)

    with pytest.raises(error):
        send_message(make_config(payload_file=payload_file), connect=broker.connect)

    closes = [event for event in broker.events if event.startswith("close")]
    assert closes == released
    assert all(handle.close_count == 1 for handle in broker.handles)
    assert broker.sent == []


def test_payload_read_failure_releases_everything(broker, tmp_path):
    config = make_config(payload_file=tmp_path / "missing.bin")

    with pytest.raises(PayloadReadError):
        send_message(config, connect=broker.connect)

    assert broker.events[-3:] == ["close producer", "close session", "close connection"]
    assert broker.sent == []


# ============================================================================
# MESSAGE CONTENT
# ============================================================================

def test_file_bytes_sent_unmodified(broker, payload_file):
    sent = send_message(make_config(payload_file=payload_file), connect=broker.connect)

    assert broker.sent[0]["body"] == payload_file.read_bytes()
    assert sent == len(payload_file.read_bytes())


def test_stdin_payload(broker):
    stdin = io.BytesIO("héllo wörld".encode("utf-8"))
    send_message(make_config(), connect=broker.connect, stdin=stdin)
    assert broker.sent[0]["body"] == "héllo wörld".encode("utf-8")


def test_binary_stdin_payload(broker):
    data = bytes(range(256))
    send_message(make_config(), connect=broker.connect, stdin=io.BytesIO(data))
    assert broker.sent[0]["body"] == data


def test_empty_payload(broker, tmp_path):
    empty = tmp_path / "empty"
    empty.write_bytes(b"")
    send_message(make_config(payload_file=empty), connect=broker.connect)
    assert broker.sent[0]["body"] == b""


def test_topic_destination(broker, payload_file):
    config = make_config(payload_file=payload_file, destination_kind=DestinationKind.TOPIC)
    send_message(config, connect=broker.connect)

    destination = broker.sent[0]["destination"]
    assert destination.kind is DestinationKind.TOPIC
    assert destination.name == "orders"


def test_queue_destination(broker, payload_file):
    send_message(make_config(payload_file=payload_file), connect=broker.connect)

    destination = broker.sent[0]["destination"]
    assert destination.kind is DestinationKind.QUEUE
    assert destination.name == "orders"


def test_expiration_stamped(broker, payload_file):
    config = make_config(
        payload_file=payload_file, expires=parse_expiry("2030-01-01T00:00:00Z")
    )
    send_message(config, connect=broker.connect)
    assert broker.sent[0]["expiration_millis"] == 1893456000000


def test_no_expiration_by_default(broker, payload_file):
    send_message(make_config(payload_file=payload_file), connect=broker.connect)
    assert broker.sent[0]["expiration_millis"] is None


def test_send_timeout_passed(broker, payload_file):
    send_message(make_config(payload_file=payload_file, send_timeout=7.5), connect=broker.connect)
    assert broker.sent[0]["timeout"] == 7.5


# ============================================================================
# read_payload
# ============================================================================

def test_read_payload_file(payload_file):
    assert read_payload(make_config(payload_file=payload_file)) == payload_file.read_bytes()


def test_read_payload_directory_fails(tmp_path):
    with pytest.raises(PayloadReadError):
        read_payload(make_config(payload_file=Path(tmp_path)))


def test_read_payload_stdin_error():
    class BrokenStream:
        def read(self):
            raise OSError("stdin closed")

    with pytest.raises(PayloadReadError, match="stdin closed"):
        read_payload(make_config(), stdin=BrokenStream())
