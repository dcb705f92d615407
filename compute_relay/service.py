"""
RelayService - wires the subscription, completion engine and submitter together.
"""
import logging
import queue
import threading
import time
from typing import Any, Callable, List, Optional

from .completion import CompletionClient
from .config import RelayConfig
from .dedup import DedupWindow
from .exceptions import RelayError
from .listener import EventSubscription
from .models import CallbackData, ComputeRequestEvent
from .request_id import compute_request_id, decode_prompt
from .submitter import CallbackSubmitter, SubmissionQueue

PROMPT_PREVIEW_CHARS = 100


def _preview(text: str) -> str:
    if len(text) <= PROMPT_PREVIEW_CHARS:
        return text
    return text[:PROMPT_PREVIEW_CHARS] + "..."


_STOP = object()


class PipelinePool:
    """
    Fixed set of daemon worker threads draining a FIFO of tasks.

    Workers are daemon threads, so work still running at shutdown is
    abandoned instead of holding the process open.
    """

    def __init__(self, max_workers: int, name: str = "relay-pipeline", logger: Optional[logging.Logger] = None):
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self.logger = logger or logging.getLogger(__name__)
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._workers: List[threading.Thread] = []
        for i in range(max_workers):
            worker = threading.Thread(target=self._run, name=f"{name}-{i}", daemon=True)
            worker.start()
            self._workers.append(worker)

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        """
        Queue ``fn(*args)`` for a worker

        Raises:
            RelayError: If the pool has been shut down
        """
        with self._lock:
            if self._closed:
                raise RelayError("Pipeline pool is shut down")
            self._queue.put((fn, args))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            fn, args = item
            try:
                fn(*args)
            except Exception as e:
                self.logger.error(f"Unhandled error in pipeline worker: {e}")

    def shutdown(self) -> None:
        """Drop queued tasks and stop the workers without waiting for running ones."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        for _ in self._workers:
            self._queue.put(_STOP)


class RelayService:
    """
    Processes compute request events end to end.

    Each event runs in its own pipeline on a worker pool: deduplicate by
    transaction hash, decode the prompt, generate a completion, then submit the
    callback through a single-writer queue. A failing event is logged and
    dropped; it never affects the subscription or other events.
    """

    def __init__(
        self,
        subscription: EventSubscription,
        completion_client: CompletionClient,
        submitter: CallbackSubmitter,
        dedup: Optional[DedupWindow] = None,
        default_model: Optional[str] = None,
        max_concurrent: int = 10,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the RelayService

        Args:
            subscription: Source of compute request events
            completion_client: Client for the completion engine
            submitter: Submitter for callback transactions
            dedup: Window of recently seen transaction hashes
            default_model: Model requested for every prompt (client default if None)
            max_concurrent: Maximum number of pipelines in flight
            logger: Optional logger instance
        """
        self.subscription = subscription
        self.completion_client = completion_client
        self.submitter = submitter
        self.dedup = dedup if dedup is not None else DedupWindow()
        self.default_model = default_model
        self.logger = logger or logging.getLogger(__name__)

        self.submissions = SubmissionQueue(submitter)
        self._pool = PipelinePool(max_concurrent, logger=self.logger)
        self._stop_lock = threading.Lock()
        self._stopped = False

    @classmethod
    def from_config(cls, config: RelayConfig) -> "RelayService":
        """
        Build a service from process configuration

        Raises:
            ConfigurationError: If the signing key or contract address is missing
        """
        submitter = CallbackSubmitter(
            rpc_url=config.rpc_url,
            contract_address=config.contract_address,
            private_key=config.private_key,
            min_balance_wei=config.min_balance_wei,
        )
        subscription = EventSubscription(
            ws_url=config.ws_url,
            contract_address=config.contract_address,
            reconnect_delay=config.reconnect_delay,
        )
        completion_client = CompletionClient(
            base_url=config.completion_url,
            api_key=config.completion_api_key,
            default_model=config.default_model,
            max_tokens=config.max_tokens,
        )
        return cls(
            subscription=subscription,
            completion_client=completion_client,
            submitter=submitter,
            default_model=config.default_model,
            max_concurrent=config.max_concurrent,
        )

    def start(self) -> None:
        """Run the relay; blocks until :meth:`stop` is called."""
        self.logger.info("Starting compute relay")
        self.logger.info(f"  Contract: {self.subscription.contract_address}")
        self.logger.info(f"  Signer: {self.submitter.address}")

        if not self.submitter.check_balance():
            self.logger.warning("Signer has insufficient balance. Callbacks will fail until it is funded.")

        self.logger.info("Relay is running. Waiting for compute requests...")
        self.subscription.start(self.dispatch)

    def dispatch(self, event: ComputeRequestEvent) -> None:
        """Hand an event to the worker pool without blocking delivery."""
        try:
            self._pool.submit(self.process_event, event)
        except RelayError:
            self.logger.warning(f"Relay is shutting down, dropping event {event.tx_hash}")

    def process_event(self, event: ComputeRequestEvent) -> Optional[str]:
        """
        Run one event through the pipeline

        Returns:
            Hash of the confirmed callback, or None if the event was a
            duplicate or failed
        """
        if self.dedup.check_and_mark(event.tx_hash):
            self.logger.warning(f"Duplicate request, skipping: tx_hash={event.tx_hash}")
            return None

        try:
            prompt = decode_prompt(event.data)
            if prompt.is_fallback:
                self.logger.warning(
                    f"Payload is not valid UTF-8, using raw hex: agent={event.agent_contract}, "
                    f"token_id={event.token_id}"
                )
            self.logger.info(
                f"Processing compute request: agent={event.agent_contract}, token_id={event.token_id}, "
                f"prompt={_preview(prompt.text)!r}"
            )

            started = time.monotonic()
            response = self.completion_client.generate(prompt.text, model=self.default_model)
            duration_ms = int((time.monotonic() - started) * 1000)
            total_tokens = response.usage.total_tokens if response.usage else None
            self.logger.info(
                f"Completion generated: model={response.model}, duration={duration_ms}ms, tokens={total_tokens}"
            )

            request_id = compute_request_id(event)
            callback = CallbackData(
                agent_contract=event.agent_contract,
                token_id=event.token_id,
                request_id=request_id,
                result=response.content,
            )
            tx_hash = self.submissions.submit(callback).result()
        except Exception as e:
            self.logger.error(
                f"Failed to process compute request: agent={event.agent_contract}, "
                f"token_id={event.token_id}, tx_hash={event.tx_hash}, error={e}"
            )
            return None

        self.logger.info(
            f"Compute request fulfilled: agent={event.agent_contract}, token_id={event.token_id}, "
            f"request_id={request_id}, callback_tx={tx_hash}"
        )
        return tx_hash

    def stop(self) -> None:
        """Stop the subscription and abandon in-flight work. Idempotent."""
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        self.logger.info("Shutting down...")
        self.subscription.stop()
        self._pool.shutdown()
        self.submissions.close()
        self.completion_client.close()
