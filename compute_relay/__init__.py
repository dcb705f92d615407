"""
compute-relay - forwards on-chain compute requests to a completion engine
and submits the results back as callback transactions.
"""
from .completion import CompletionClient
from .config import NetworkConfig, RelayConfig
from .dedup import DedupWindow
from .exceptions import (
    CompletionError,
    ConfigurationError,
    ErrorKind,
    RelayError,
    SubmissionError,
    SubscriptionError,
)
from .listener import EventSubscription, decode_log
from .models import CallbackData, CompletionResponse, ComputeRequestEvent, DecodedPrompt, TxReceipt
from .request_id import compute_request_id, decode_prompt
from .service import RelayService
from .submitter import CallbackSubmitter, SubmissionQueue
from .version import __version__

__all__ = [
    "CallbackData",
    "CallbackSubmitter",
    "CompletionClient",
    "CompletionError",
    "CompletionResponse",
    "ComputeRequestEvent",
    "ConfigurationError",
    "DecodedPrompt",
    "DedupWindow",
    "ErrorKind",
    "EventSubscription",
    "NetworkConfig",
    "RelayConfig",
    "RelayError",
    "RelayService",
    "SubmissionError",
    "SubmissionQueue",
    "SubscriptionError",
    "TxReceipt",
    "__version__",
    "compute_request_id",
    "decode_log",
    "decode_prompt",
]
