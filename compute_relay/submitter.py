"""
CallbackSubmitter - signs and confirms onActionExecuted callbacks.
"""
import logging
import queue
import threading
from concurrent.futures import Future
from typing import Any, Dict, Optional, Union

from web3 import Web3
from web3.exceptions import Web3Exception
from web3.types import TxReceipt as Web3TxReceipt
from eth_account import Account
from eth_account.signers.local import LocalAccount

from .exceptions import ConfigurationError, ErrorKind, RelayError, SubmissionError
from .models import CallbackData, TxReceipt

DEFAULT_GAS_LIMIT = 500000


def _to_hex(value: Union[bytes, str]) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value if value.startswith("0x") else "0x" + value


class CallbackSubmitter:
    """
    Submits the result of a compute request back to the target contract.

    The submitter holds one signing identity and one contract binding. It is
    not safe to call :meth:`submit` concurrently for the same identity, since
    nonces are read from the node; route calls through a
    :class:`SubmissionQueue` instead.
    """

    # ABI for the callback entry point of the agent logic contract
    CALLBACK_ABI = [
        {
            "inputs": [
                {"internalType": "address", "name": "agentContract", "type": "address"},
                {"internalType": "uint256", "name": "tokenId", "type": "uint256"},
                {"internalType": "bytes32", "name": "requestId", "type": "bytes32"},
                {"internalType": "bytes", "name": "result", "type": "bytes"}
            ],
            "name": "onActionExecuted",
            "outputs": [],
            "stateMutability": "nonpayable",
            "type": "function"
        }
    ]

    def __init__(
        self,
        rpc_url: str,
        contract_address: Optional[str],
        private_key: Optional[str],
        min_balance_wei: int,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        receipt_timeout: int = 120,
        poll_interval: float = 0.5,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the CallbackSubmitter

        Args:
            rpc_url: Ethereum-compatible RPC endpoint URL
            contract_address: Address of the contract receiving callbacks
            private_key: Private key of the signing identity
            min_balance_wei: Balance the signer must hold before submitting
            gas_limit: Fixed gas ceiling for each callback
            receipt_timeout: Seconds to wait for a receipt
            poll_interval: Receipt polling interval in seconds
            logger: Optional logger instance

        Raises:
            ConfigurationError: If the private key or contract address is missing
        """
        if not private_key:
            raise ConfigurationError("Signing key not configured")
        if not contract_address:
            raise ConfigurationError("Contract address not configured")

        self.rpc_url = rpc_url
        self.min_balance_wei = min_balance_wei
        self.gas_limit = gas_limit
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.logger = logger or logging.getLogger(__name__)

        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        try:
            self.account: LocalAccount = Account.from_key(private_key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid signing key: {e}") from e

        self.contract_address = contract_address
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=self.CALLBACK_ABI
        )

    @property
    def address(self) -> str:
        """Address of the signing identity"""
        return self.account.address

    def check_balance(self) -> bool:
        """
        Check the signer holds at least the configured minimum balance

        Returns:
            True if the balance is sufficient, False otherwise
        """
        balance = self.w3.eth.get_balance(self.address)
        has_enough = balance >= self.min_balance_wei

        if not has_enough:
            self.logger.error(
                f"Signer balance too low: address={self.address}, "
                f"balance={Web3.from_wei(balance, 'ether')}, "
                f"required={Web3.from_wei(self.min_balance_wei, 'ether')}"
            )
        else:
            self.logger.debug(
                f"Signer balance OK: address={self.address}, balance={Web3.from_wei(balance, 'ether')}"
            )
        return has_enough

    def submit(self, data: CallbackData) -> str:
        """
        Submit a callback and wait for it to be confirmed

        Args:
            data: The callback arguments

        Returns:
            Hash of the confirmed transaction

        Raises:
            SubmissionError: INSUFFICIENT_GAS if the balance check fails,
                TRANSACTION_FAILED if signing, sending or execution fails
            Web3Exception: If there's an error with Web3 operations
        """
        if not self.check_balance():
            raise SubmissionError(f"Signer {self.address} balance below minimum", ErrorKind.INSUFFICIENT_GAS)

        result_bytes = data.result.encode("utf-8")

        self.logger.info(
            f"Sending callback: agent={data.agent_contract}, token_id={data.token_id}, "
            f"request_id={data.request_id}, signer={self.address}"
        )

        try:
            tx_hash = self._send(data, result_bytes)
            receipt = self._convert_receipt(
                self.w3.eth.wait_for_transaction_receipt(
                    tx_hash,
                    timeout=self.receipt_timeout,
                    poll_latency=self.poll_interval
                )
            )
        except SubmissionError:
            raise
        except Web3Exception as e:
            self.logger.error(
                f"Callback failed: agent={data.agent_contract}, token_id={data.token_id}, error={e}"
            )
            raise
        except Exception as e:
            self.logger.error(
                f"Callback failed: agent={data.agent_contract}, token_id={data.token_id}, error={e}"
            )
            raise SubmissionError(f"Transaction failed: {e}") from e

        if receipt.status != 1:
            self.logger.error(
                f"Callback reverted: tx_hash={receipt.tx_hash}, agent={data.agent_contract}, "
                f"token_id={data.token_id}"
            )
            raise SubmissionError(f"Transaction {receipt.tx_hash} failed with status {receipt.status}")

        self.logger.info(
            f"Callback confirmed: tx_hash={receipt.tx_hash}, block={receipt.block_number}, "
            f"gas_used={receipt.gas_used}"
        )
        return receipt.tx_hash

    def _send(self, data: CallbackData, result_bytes: bytes) -> Any:
        tx_params: Dict[str, Any] = {
            'from': self.address,
            'nonce': self.w3.eth.get_transaction_count(self.address, 'pending'),
            'gas': self.gas_limit,
            'gasPrice': self.w3.eth.gas_price,
        }
        tx = self.contract.functions.onActionExecuted(
            Web3.to_checksum_address(data.agent_contract),
            data.token_id,
            data.request_id_bytes,
            result_bytes
        ).build_transaction(tx_params)

        try:
            signed_tx = self.account.sign_transaction(tx)
        except Exception as e:
            self.logger.error(f"Transaction signing failed: {e}")
            raise SubmissionError(f"Failed to sign transaction: {e}") from e

        tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        self.logger.info(f"Callback transaction sent: {_to_hex(tx_hash)}")
        return tx_hash

    def _convert_receipt(self, web3_receipt: Web3TxReceipt) -> TxReceipt:
        """
        Convert a Web3 receipt to our TxReceipt model
        """
        receipt_dict = dict(web3_receipt)
        for key, value in list(receipt_dict.items()):
            if isinstance(value, (bytes, bytearray)):
                receipt_dict[key] = _to_hex(value)
        return TxReceipt.model_validate(receipt_dict)


_STOP = object()


class SubmissionQueue:
    """
    Single-writer front for a :class:`CallbackSubmitter`.

    One worker thread drains a FIFO queue, so at most one transaction per
    signing identity is in flight and nonces never race.
    """

    def __init__(self, submitter: CallbackSubmitter, logger: Optional[logging.Logger] = None):
        self.submitter = submitter
        self.logger = logger or logging.getLogger(__name__)
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._closed = False
        self._lock = threading.Lock()
        self._worker = threading.Thread(target=self._run, name="callback-submitter", daemon=True)
        self._worker.start()

    def submit(self, data: CallbackData) -> "Future[str]":
        """
        Queue a callback for submission

        Returns:
            Future resolving to the confirmed transaction hash

        Raises:
            RelayError: If the queue has been closed
        """
        future: "Future[str]" = Future()
        with self._lock:
            if self._closed:
                raise RelayError("Submission queue is closed")
            self._queue.put((data, future))
        return future

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            data, future = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(self.submitter.submit(data))
            except Exception as e:
                future.set_exception(e)

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop the worker; queued submissions that have not started are cancelled."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is not _STOP:
                item[1].cancel()

        self._queue.put(_STOP)
        if timeout is not None:
            self._worker.join(timeout)
