"""
EventSubscription - reconnecting log subscription for compute requests.

The subscription speaks raw JSON-RPC over a WebSocket: it sends
``eth_subscribe("logs", ...)`` filtered on one contract address and one event
topic, and decodes each notification into a :class:`ComputeRequestEvent`.
"""
import json
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Optional

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3
from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from ._rate_limited_log import rate_limited_log
from .exceptions import ConfigurationError, SubscriptionError
from .models import ComputeRequestEvent

# Event ABI of the compute request emitted by the agent logic contract
COMPUTE_REQUEST_EVENT_ABI = {
    "anonymous": False,
    "inputs": [
        {"indexed": True, "internalType": "address", "name": "agentContract", "type": "address"},
        {"indexed": True, "internalType": "uint256", "name": "tokenId", "type": "uint256"},
        {"indexed": True, "internalType": "address", "name": "owner", "type": "address"},
        {"indexed": False, "internalType": "bytes", "name": "data", "type": "bytes"},
        {"indexed": False, "internalType": "uint256", "name": "estimatedCredits", "type": "uint256"},
        {"indexed": False, "internalType": "uint256", "name": "timestamp", "type": "uint256"}
    ],
    "name": "AgentComputeRequest",
    "type": "event"
}

# Event argument name -> ComputeRequestEvent field
_FIELD_NAMES = {
    "agentContract": "agent_contract",
    "tokenId": "token_id",
    "owner": "owner",
    "data": "data",
    "estimatedCredits": "estimated_credits",
    "timestamp": "timestamp",
}


def event_signature(event_abi: Dict[str, Any]) -> str:
    types = ",".join(i["type"] for i in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: Dict[str, Any]) -> str:
    return "0x" + bytes(Web3.keccak(text=event_signature(event_abi))).hex()


def _hex_to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    value = str(value)
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(str(value), 16)


def decode_log(log: Dict[str, Any], event_abi: Dict[str, Any] = COMPUTE_REQUEST_EVENT_ABI) -> ComputeRequestEvent:
    """
    Decode a raw JSON-RPC log into a ComputeRequestEvent

    Indexed arguments are read from ``topics[1:]``, the others are ABI-decoded
    from ``data``. Block number and transaction hash come from the log itself.

    Args:
        log: Log object as delivered by ``eth_subscription`` or ``eth_getLogs``
        event_abi: ABI entry of the event

    Returns:
        The decoded event

    Raises:
        ValueError: If the log does not match the event layout
    """
    topics = [_hex_to_bytes(t) for t in log.get("topics", [])]
    if not topics or "0x" + topics[0].hex() != event_topic(event_abi):
        raise ValueError("Log topic does not match the compute request event")

    indexed = [i for i in event_abi["inputs"] if i["indexed"]]
    unindexed = [i for i in event_abi["inputs"] if not i["indexed"]]
    if len(topics) - 1 != len(indexed):
        raise ValueError(f"Expected {len(indexed)} indexed topics, got {len(topics) - 1}")

    args: Dict[str, Any] = {}
    for abi_input, topic in zip(indexed, topics[1:]):
        args[abi_input["name"]] = abi_decode([abi_input["type"]], topic)[0]

    values = abi_decode([i["type"] for i in unindexed], _hex_to_bytes(log.get("data", "0x")))
    for abi_input, value in zip(unindexed, values):
        args[abi_input["name"]] = value

    fields = {_FIELD_NAMES[name]: value for name, value in args.items()}
    return ComputeRequestEvent(
        block_number=_hex_to_int(log["blockNumber"]),
        tx_hash="0x" + _hex_to_bytes(log["transactionHash"]).hex(),
        **fields
    )


class EventSubscription:
    """
    Live subscription to compute request events on one contract.

    The connection is re-established after ``reconnect_delay`` seconds
    whenever it closes or fails, until :meth:`stop` is called. Events emitted
    while disconnected are not replayed.
    """

    def __init__(
        self,
        ws_url: str,
        contract_address: Optional[str],
        reconnect_delay: float = 5.0,
        subscribe_timeout: float = 15.0,
        connect: Callable[..., Any] = ws_connect,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the EventSubscription

        Args:
            ws_url: WebSocket RPC endpoint (e.g., "wss://bsc-rpc.publicnode.com")
            contract_address: Address emitting the compute request events
            reconnect_delay: Seconds to wait before reconnecting
            subscribe_timeout: Seconds to wait for the subscription id
            connect: WebSocket connect function (websockets sync client)
            logger: Optional logger instance

        Raises:
            ConfigurationError: If the contract address is missing
        """
        if not contract_address:
            raise ConfigurationError("Contract address not configured")

        self.ws_url = ws_url
        self.contract_address = Web3.to_checksum_address(contract_address)
        self.topic = event_topic(COMPUTE_REQUEST_EVENT_ABI)
        self.reconnect_delay = reconnect_delay
        self.subscribe_timeout = subscribe_timeout
        self.logger = logger or logging.getLogger(__name__)

        self._connect = connect
        self._connection: Any = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self.connections = 0

    @property
    def is_running(self) -> bool:
        return self._started and not self._stop_event.is_set()

    def _subscription_request(self) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": [
                "logs",
                {"address": self.contract_address, "topics": [self.topic]},
            ],
        }

    def _subscribe(self, connection: Any) -> str:
        connection.send(json.dumps(self._subscription_request()))
        try:
            reply = json.loads(connection.recv(timeout=self.subscribe_timeout))
        except TimeoutError as e:
            raise SubscriptionError(f"No subscription reply within {self.subscribe_timeout}s") from e
        except json.JSONDecodeError as e:
            raise SubscriptionError(f"Invalid subscription reply: {e}") from e

        if "error" in reply:
            raise SubscriptionError(f"Subscription rejected: {reply['error']}")
        if not reply.get("result"):
            raise SubscriptionError(f"Subscription reply without id: {reply}")
        return reply["result"]

    def _decode_message(self, raw: Any) -> Optional[ComputeRequestEvent]:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            self.logger.warning(f"Invalid JSON message from node: {e}")
            return None

        if not isinstance(message, dict) or message.get("method") != "eth_subscription":
            return None
        params = message.get("params")
        log = params.get("result") if isinstance(params, dict) else None
        if not isinstance(log, dict):
            return None
        if log.get("removed"):
            self.logger.info(f"Ignoring removed log from reorg: {log.get('transactionHash')}")
            return None

        try:
            event = decode_log(log)
        except (DecodingError, ValueError, KeyError, TypeError) as e:
            self.logger.error(f"Failed to decode compute request log {log.get('transactionHash')}: {e}")
            return None

        self.logger.info(
            f"AgentComputeRequest: agent={event.agent_contract}, token_id={event.token_id}, "
            f"estimated_credits={event.estimated_credits}, tx_hash={event.tx_hash}"
        )
        return event

    def events(self) -> Iterator[ComputeRequestEvent]:
        """
        Yield compute request events until :meth:`stop` is called

        The iterator reconnects internally and never finishes on its own.
        It cannot be restarted once stopped.
        """
        with self._lock:
            if self._started:
                raise RuntimeError("EventSubscription can only be started once")
            self._started = True

        self.logger.info(f"Starting compute request subscription: contract={self.contract_address}, url={self.ws_url}")

        while not self._stop_event.is_set():
            try:
                with self._connect(self.ws_url) as connection:
                    with self._lock:
                        self._connection = connection
                    if self._stop_event.is_set():
                        break

                    subscription_id = self._subscribe(connection)
                    self.connections += 1
                    self.logger.info(f"Subscribed to compute requests (subscription {subscription_id})")

                    for raw in connection:
                        if self._stop_event.is_set():
                            break
                        event = self._decode_message(raw)
                        if event is not None:
                            yield event
                        if self._stop_event.is_set():
                            break

                if self._stop_event.is_set():
                    break
                self.logger.warning("WebSocket closed, reconnecting...")
            except (WebSocketException, SubscriptionError, OSError) as e:
                if self._stop_event.is_set():
                    break
                rate_limited_log(
                    f"WebSocket connection failed ({type(e).__name__}): {e}",
                    level="error",
                    interval=60,
                    logger_instance=self.logger
                )
            finally:
                with self._lock:
                    self._connection = None

            if self._stop_event.wait(self.reconnect_delay):
                break
            self.logger.info(f"Reconnecting to {self.ws_url}")

        self.logger.info("Compute request subscription stopped")

    def start(self, handler: Callable[[ComputeRequestEvent], Any]) -> None:
        """
        Deliver every event to ``handler`` in order; blocks until stopped.
        """
        for event in self.events():
            handler(event)

    def stop(self) -> None:
        """Stop the subscription and close the live connection. Idempotent."""
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        with self._lock:
            connection = self._connection
        if connection is not None:
            try:
                connection.close()
            except (WebSocketException, OSError) as e:
                self.logger.warning(f"Error closing WebSocket: {e}")
