"""
Tests for log decoding and the reconnecting EventSubscription.
"""
import threading

import pytest
from websockets.exceptions import InvalidHandshake

from compute_relay.exceptions import ConfigurationError
from compute_relay.listener import (
    COMPUTE_REQUEST_EVENT_ABI,
    EventSubscription,
    decode_log,
    event_signature,
    event_topic,
)

from tests.test_helpers import (
    TEST_AGENT,
    TEST_CONTRACT,
    TEST_OWNER,
    TEST_WS_URL,
    FakeConnection,
    make_raw_log,
    notification,
)

TX_1 = "0x" + "01" * 32
TX_2 = "0x" + "02" * 32
TX_3 = "0x" + "03" * 32


def _connector(*connections):
    """connect() stand-in returning the given connections (or raising) in order"""
    pending = list(connections)
    calls = []

    def connect(url):
        calls.append(url)
        item = pending.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    connect.calls = calls
    return connect


def _collect_until(subscription, count):
    received = []

    def handler(event):
        received.append(event)
        if len(received) == count:
            subscription.stop()

    return received, handler


def test_event_signature():
    assert event_signature(COMPUTE_REQUEST_EVENT_ABI) == (
        "AgentComputeRequest(address,uint256,address,bytes,uint256,uint256)"
    )
    assert event_topic(COMPUTE_REQUEST_EVENT_ABI).startswith("0x")
    assert len(event_topic(COMPUTE_REQUEST_EVENT_ABI)) == 66


def test_decode_log_maps_fields():
    log = make_raw_log(
        token_id=2 ** 200,
        data=b"Summarize X",
        estimated_credits=555,
        timestamp=1700000123,
        block_number=0x2a,
        tx_hash="0x" + "AB" * 32,
    )

    event = decode_log(log)

    assert event.agent_contract == TEST_AGENT
    assert event.owner == TEST_OWNER
    assert event.token_id == 2 ** 200
    assert event.data == b"Summarize X"
    assert event.estimated_credits == 555
    assert event.timestamp == 1700000123
    assert event.block_number == 42
    assert event.tx_hash == "0x" + "ab" * 32


def test_decode_log_wrong_topic():
    log = make_raw_log()
    log["topics"][0] = "0x" + "00" * 32
    with pytest.raises(ValueError, match="topic"):
        decode_log(log)


def test_decode_log_missing_topics():
    log = make_raw_log()
    log["topics"] = log["topics"][:2]
    with pytest.raises(ValueError, match="indexed topics"):
        decode_log(log)


def test_requires_contract_address():
    with pytest.raises(ConfigurationError):
        EventSubscription(TEST_WS_URL, "")


def test_subscribe_request():
    connection = FakeConnection([notification(make_raw_log(tx_hash=TX_1))])
    subscription = EventSubscription(TEST_WS_URL, TEST_CONTRACT, connect=_connector(connection))
    received, handler = _collect_until(subscription, 1)

    subscription.start(handler)

    request = connection.sent[0]
    assert request["method"] == "eth_subscribe"
    assert request["params"][0] == "logs"
    assert request["params"][1]["address"] == TEST_CONTRACT
    assert request["params"][1]["topics"] == [event_topic(COMPUTE_REQUEST_EVENT_ABI)]
    assert [e.tx_hash for e in received] == [TX_1]
    assert connection.closed


def test_delivers_in_order_and_skips_noise():
    connection = FakeConnection([
        "not json",
        {"jsonrpc": "2.0", "id": 5, "result": True},
        notification(make_raw_log(tx_hash=TX_1)),
        notification({**make_raw_log(), "topics": ["0x" + "00" * 32]}),
        notification(make_raw_log(tx_hash=TX_2, removed=True)),
        notification(make_raw_log(tx_hash=TX_3)),
    ])
    subscription = EventSubscription(TEST_WS_URL, TEST_CONTRACT, connect=_connector(connection))
    received, handler = _collect_until(subscription, 2)

    subscription.start(handler)

    assert [e.tx_hash for e in received] == [TX_1, TX_3]


def test_malformed_logs_do_not_end_subscription(caplog):
    """Undecodable logs and odd frames are skipped; later events still arrive"""
    short_topic = make_raw_log(tx_hash=TX_2)
    short_topic["topics"][2] = "0x07"
    connection = FakeConnection([
        [1, 2, 3],
        "42",
        {"jsonrpc": "2.0", "method": "eth_subscription", "params": ["0xfeed"]},
        notification({**make_raw_log(tx_hash=TX_1), "data": "0x1234"}),
        notification(short_topic),
        notification(make_raw_log(tx_hash=TX_3)),
    ])
    subscription = EventSubscription(TEST_WS_URL, TEST_CONTRACT, connect=_connector(connection))
    received, handler = _collect_until(subscription, 1)

    with caplog.at_level("ERROR"):
        subscription.start(handler)

    assert [e.tx_hash for e in received] == [TX_3]
    assert TX_1 in caplog.text
    assert TX_2 in caplog.text


def test_reconnects_after_unexpected_close():
    """A dropped connection is replaced and delivery resumes to the same handler"""
    connect = _connector(
        FakeConnection([notification(make_raw_log(tx_hash=TX_1))]),
        FakeConnection([notification(make_raw_log(tx_hash=TX_2))]),
    )
    subscription = EventSubscription(TEST_WS_URL, TEST_CONTRACT, reconnect_delay=0.01, connect=connect)
    received, handler = _collect_until(subscription, 2)

    subscription.start(handler)

    assert [e.tx_hash for e in received] == [TX_1, TX_2]
    assert connect.calls == [TEST_WS_URL, TEST_WS_URL]
    assert subscription.connections == 2


def test_retries_failed_connects_and_rejected_subscriptions():
    connect = _connector(
        OSError("connection refused"),
        InvalidHandshake("bad handshake"),
        FakeConnection(reply={"jsonrpc": "2.0", "id": 1, "error": {"code": -32601, "message": "no"}}),
        FakeConnection([notification(make_raw_log(tx_hash=TX_1))]),
    )
    subscription = EventSubscription(TEST_WS_URL, TEST_CONTRACT, reconnect_delay=0.01, connect=connect)
    received, handler = _collect_until(subscription, 1)

    subscription.start(handler)

    assert [e.tx_hash for e in received] == [TX_1]
    assert len(connect.calls) == 4
    assert subscription.connections == 1


def test_repeated_failures_are_rate_limited(caplog):
    connect = _connector(
        OSError("connection refused"),
        OSError("connection refused"),
        OSError("connection refused"),
        FakeConnection([notification(make_raw_log(tx_hash=TX_1))]),
    )
    subscription = EventSubscription(TEST_WS_URL, TEST_CONTRACT, reconnect_delay=0.01, connect=connect)
    received, handler = _collect_until(subscription, 1)

    with caplog.at_level("ERROR"):
        subscription.start(handler)

    assert caplog.text.count("connection refused") == 1


def test_stop_closes_live_connection():
    connection = FakeConnection(block=True)
    subscription = EventSubscription(TEST_WS_URL, TEST_CONTRACT, connect=_connector(connection))
    received = []

    worker = threading.Thread(target=subscription.start, args=(received.append,))
    worker.start()
    for _ in range(500):
        if subscription.connections:
            break
        worker.join(0.01)
    assert subscription.is_running

    subscription.stop()
    worker.join(5)

    assert not worker.is_alive()
    assert connection.closed
    assert not subscription.is_running
    assert received == []

    # stop is idempotent
    subscription.stop()


def test_events_cannot_restart():
    subscription = EventSubscription(
        TEST_WS_URL, TEST_CONTRACT, connect=_connector(FakeConnection(block=True))
    )
    subscription.stop()
    assert list(subscription.events()) == []
    with pytest.raises(RuntimeError):
        list(subscription.events())
