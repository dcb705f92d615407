"""
Pytest fixtures for the compute relay tests.
"""
from unittest.mock import MagicMock

import pytest

from compute_relay._rate_limited_log import reset_rate_limits
from compute_relay.completion import CompletionClient
from compute_relay.listener import EventSubscription
from compute_relay.models import CompletionResponse, CompletionUsage
from compute_relay.service import RelayService
from compute_relay.submitter import CallbackSubmitter

from tests.test_helpers import CONFIRMED_TX, TEST_CONTRACT, make_event


@pytest.fixture(autouse=True)
def _reset_rate_limited_log():
    reset_rate_limits()
    yield
    reset_rate_limits()


@pytest.fixture
def event():
    return make_event()


@pytest.fixture
def mock_completion_client():
    """Completion client that answers every prompt with 'X summary'"""
    client = MagicMock(spec=CompletionClient)
    client.generate.return_value = CompletionResponse(
        content="X summary",
        model="m1",
        usage=CompletionUsage(prompt_tokens=3, completion_tokens=2, total_tokens=5),
    )
    return client


@pytest.fixture
def mock_submitter():
    """Submitter whose callbacks always confirm"""
    submitter = MagicMock(spec=CallbackSubmitter)
    submitter.address = "0x" + "9" * 40
    submitter.check_balance.return_value = True
    submitter.submit.return_value = CONFIRMED_TX
    return submitter


@pytest.fixture
def mock_subscription():
    subscription = MagicMock(spec=EventSubscription)
    subscription.contract_address = TEST_CONTRACT
    return subscription


@pytest.fixture
def service(mock_subscription, mock_completion_client, mock_submitter):
    relay = RelayService(
        subscription=mock_subscription,
        completion_client=mock_completion_client,
        submitter=mock_submitter,
        default_model="m1",
        max_concurrent=4,
    )
    yield relay
    relay.stop()
