"""
Deterministic request identifiers and payload decoding.
"""
from web3 import Web3

from .models import ComputeRequestEvent, DecodedPrompt

REQUEST_ID_TYPES = ["address", "uint256", "bytes", "uint256", "uint256"]


def compute_request_id(event: ComputeRequestEvent) -> str:
    """
    Derive the request id bound to an event.

    keccak256 over the packed (agentContract, tokenId, data, timestamp,
    blockNumber) tuple, so any replay of the same event maps to the same id.

    Args:
        event: The compute request event

    Returns:
        0x-prefixed 32-byte hex string
    """
    digest = Web3.solidity_keccak(
        REQUEST_ID_TYPES,
        [
            event.agent_contract,
            event.token_id,
            event.data,
            event.timestamp,
            event.block_number,
        ],
    )
    return "0x" + bytes(digest).hex()


def decode_prompt(data: bytes) -> DecodedPrompt:
    """
    Decode an event payload into prompt text.

    Falls back to the raw hex form when the payload is not valid UTF-8.
    """
    try:
        return DecodedPrompt(text=data.decode("utf-8"))
    except UnicodeDecodeError:
        return DecodedPrompt(text="0x" + data.hex(), is_fallback=True)
