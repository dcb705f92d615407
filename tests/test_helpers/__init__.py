"""
Shared constants and builders for the compute relay tests.
"""
from .factories import (
    CONFIRMED_TX,
    TEST_AGENT,
    TEST_COMPLETION_URL,
    TEST_CONTRACT,
    TEST_OWNER,
    TEST_PRIV_KEY,
    TEST_RPC_URL,
    TEST_TX_HASH,
    TEST_WS_URL,
    FakeConnection,
    make_event,
    make_raw_log,
    notification,
)

__all__ = [
    "CONFIRMED_TX",
    "TEST_AGENT",
    "TEST_COMPLETION_URL",
    "TEST_CONTRACT",
    "TEST_OWNER",
    "TEST_PRIV_KEY",
    "TEST_RPC_URL",
    "TEST_TX_HASH",
    "TEST_WS_URL",
    "FakeConnection",
    "make_event",
    "make_raw_log",
    "notification",
]
