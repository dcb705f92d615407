"""
Tests for the single-writer SubmissionQueue.
"""
import threading
import time
from concurrent.futures import CancelledError
from unittest.mock import MagicMock

import pytest

from compute_relay.exceptions import ErrorKind, RelayError, SubmissionError
from compute_relay.models import CallbackData
from compute_relay.submitter import CallbackSubmitter, SubmissionQueue

from tests.test_helpers import TEST_AGENT


def _callback(token_id):
    return CallbackData(
        agent_contract=TEST_AGENT,
        token_id=token_id,
        request_id="0x" + f"{token_id:064x}",
        result=f"result-{token_id}",
    )


def test_submit_returns_confirmed_hash():
    submitter = MagicMock(spec=CallbackSubmitter)
    submitter.submit.return_value = "0xabc"
    submissions = SubmissionQueue(submitter)
    try:
        assert submissions.submit(_callback(1)).result(timeout=5) == "0xabc"
    finally:
        submissions.close(timeout=5)


def test_submission_errors_reach_the_caller():
    submitter = MagicMock(spec=CallbackSubmitter)
    submitter.submit.side_effect = SubmissionError("low balance", ErrorKind.INSUFFICIENT_GAS)
    submissions = SubmissionQueue(submitter)
    try:
        with pytest.raises(SubmissionError) as exc_info:
            submissions.submit(_callback(1)).result(timeout=5)
        assert exc_info.value.kind == ErrorKind.INSUFFICIENT_GAS
        # The worker survives a failed submission
        submitter.submit.side_effect = None
        submitter.submit.return_value = "0xdef"
        assert submissions.submit(_callback(2)).result(timeout=5) == "0xdef"
    finally:
        submissions.close(timeout=5)


def test_one_submission_in_flight_at_a_time():
    """Concurrent callers are serialized in FIFO order"""
    in_flight = 0
    max_in_flight = 0
    order = []
    lock = threading.Lock()

    def slow_submit(data):
        nonlocal in_flight, max_in_flight
        with lock:
            in_flight += 1
            max_in_flight = max(max_in_flight, in_flight)
        time.sleep(0.01)
        order.append(data.token_id)
        with lock:
            in_flight -= 1
        return f"0x{data.token_id}"

    submitter = MagicMock(spec=CallbackSubmitter)
    submitter.submit.side_effect = slow_submit
    submissions = SubmissionQueue(submitter)
    try:
        futures = [submissions.submit(_callback(i)) for i in range(10)]
        results = [f.result(timeout=5) for f in futures]
    finally:
        submissions.close(timeout=5)

    assert max_in_flight == 1
    assert order == list(range(10))
    assert results == [f"0x{i}" for i in range(10)]


def test_close_cancels_pending_and_rejects_new_work():
    release = threading.Event()
    started = threading.Event()

    def blocking_submit(data):
        started.set()
        release.wait(5)
        return "0xfirst"

    submitter = MagicMock(spec=CallbackSubmitter)
    submitter.submit.side_effect = blocking_submit
    submissions = SubmissionQueue(submitter)

    first = submissions.submit(_callback(1))
    assert started.wait(5)
    second = submissions.submit(_callback(2))

    submissions.close()
    release.set()

    assert first.result(timeout=5) == "0xfirst"
    with pytest.raises(CancelledError):
        second.result(timeout=5)
    with pytest.raises(RelayError, match="closed"):
        submissions.submit(_callback(3))
    assert submitter.submit.call_count == 1

    # Closing twice is harmless
    submissions.close(timeout=5)
