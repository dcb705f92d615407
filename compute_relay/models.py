"""
Data models for the compute relay.
"""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from web3 import Web3


def _checksum(value: str) -> str:
    if not Web3.is_address(value):
        raise ValueError(f"Invalid address: {value}")
    return Web3.to_checksum_address(value)


class ComputeRequestEvent(BaseModel):
    """One AgentComputeRequest emission, with its log metadata"""
    agent_contract: str
    token_id: int = Field(..., ge=0)
    owner: str
    data: bytes
    estimated_credits: int = Field(0, ge=0)
    timestamp: int = Field(..., ge=0)
    block_number: int = Field(..., ge=0)
    tx_hash: str

    @field_validator("agent_contract", "owner")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        return _checksum(value)

    @field_validator("tx_hash")
    @classmethod
    def _normalize_tx_hash(cls, value: str) -> str:
        value = value.lower()
        return value if value.startswith("0x") else "0x" + value


class CompletionUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class CompletionResponse(BaseModel):
    """Generated text returned by the completion engine"""
    content: str
    model: str
    usage: Optional[CompletionUsage] = None


class CallbackData(BaseModel):
    """Arguments of one onActionExecuted call"""
    agent_contract: str
    token_id: int = Field(..., ge=0)
    request_id: str
    result: str

    @field_validator("agent_contract")
    @classmethod
    def _validate_address(cls, value: str) -> str:
        return _checksum(value)

    @field_validator("request_id")
    @classmethod
    def _validate_request_id(cls, value: str) -> str:
        hex_part = value[2:] if value.startswith("0x") else value
        if len(hex_part) != 64:
            raise ValueError(f"request_id must be 32 bytes, got {len(hex_part) // 2}")
        bytes.fromhex(hex_part)
        return "0x" + hex_part.lower()

    @property
    def request_id_bytes(self) -> bytes:
        return bytes.fromhex(self.request_id[2:])


class DecodedPrompt(BaseModel):
    """
    Prompt decoded from an event payload.

    ``is_fallback`` is True when the payload was not valid UTF-8 and ``text``
    holds the raw 0x-prefixed hex instead.
    """
    text: str
    is_fallback: bool = False


class TxReceipt(BaseModel):
    """Transaction receipt from the blockchain"""
    tx_hash: str = Field(..., alias="transactionHash")
    block_number: int = Field(..., alias="blockNumber")
    block_hash: Optional[str] = Field(None, alias="blockHash")
    status: int
    gas_used: int = Field(0, alias="gasUsed")
    from_address: Optional[str] = Field(None, alias="from")
    to_address: Optional[str] = Field(None, alias="to")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")
