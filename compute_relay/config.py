"""
Configuration for the compute relay.

Settings are read from the environment (optionally seeded from a ``.env``
file). Network presets for RPC/WebSocket endpoints ship with the package.
"""
import json
import logging
import os
from decimal import Decimal, InvalidOperation
from importlib import resources
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from web3 import Web3

logger = logging.getLogger(__name__)


class NetworkConfig:
    """Network presets loaded from the packaged networks.json"""

    _networks_cache: Optional[Dict[str, Dict[str, Any]]] = None

    @classmethod
    def load_networks(cls) -> Dict[str, Dict[str, Any]]:
        if cls._networks_cache is None:
            text = resources.files("compute_relay").joinpath("data/networks.json").read_text(encoding="utf-8")
            cls._networks_cache = json.loads(text)
        return cls._networks_cache

    @classmethod
    def get_network(cls, network: str) -> Dict[str, Any]:
        networks = cls.load_networks()
        if network not in networks:
            raise ValueError(f"Unknown network '{network}'. Available networks: {', '.join(sorted(networks))}")
        return networks[network]

    @classmethod
    def _env_name(cls, network: str, suffix: str) -> str:
        return f"{network.upper().replace('-', '_')}_{suffix}"

    @classmethod
    def get_rpc_url(cls, network: str, override: Optional[str] = None) -> str:
        """RPC URL for a network: override, then <NETWORK>_RPC_URL, then the preset"""
        if override:
            return override
        return os.environ.get(cls._env_name(network, "RPC_URL")) or cls.get_network(network)["rpc"]

    @classmethod
    def get_ws_url(cls, network: str, override: Optional[str] = None) -> str:
        """WebSocket URL for a network: override, then <NETWORK>_WS_URL, then the preset"""
        if override:
            return override
        return os.environ.get(cls._env_name(network, "WS_URL")) or cls.get_network(network)["ws"]

    @classmethod
    def get_chain_id(cls, network: str) -> int:
        return int(cls.get_network(network)["chainId"])


DEFAULT_NETWORK = "bsc"
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class RelayConfig(BaseModel):
    """Process configuration for the relay"""
    rpc_url: str
    ws_url: str
    contract_address: str = ""
    private_key: str = Field("", repr=False)
    min_balance: str = "0.01"
    completion_url: str = "https://api.hodlai.fun/v1"
    completion_api_key: str = Field("", repr=False)
    default_model: str = "claude-3-5-sonnet"
    max_tokens: int = Field(4000, gt=0)
    max_concurrent: int = Field(10, gt=0)
    reconnect_delay: float = Field(5.0, ge=0)
    log_level: str = "INFO"
    network: str = DEFAULT_NETWORK

    @field_validator("min_balance")
    @classmethod
    def _validate_min_balance(cls, value: str) -> str:
        try:
            amount = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"min_balance must be a decimal amount in ether, got {value!r}")
        if amount < 0:
            raise ValueError("min_balance must not be negative")
        return value

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def min_balance_wei(self) -> int:
        return int(Web3.to_wei(Decimal(self.min_balance), "ether"))

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        dotenv_path: Optional[str] = None
    ) -> "RelayConfig":
        """
        Build the configuration from environment variables

        Args:
            environ: Mapping to read instead of os.environ (skips .env loading)
            dotenv_path: Optional path of a .env file to load first

        Returns:
            RelayConfig instance

        Raises:
            ValueError: If the network is unknown or a value is malformed
        """
        if environ is None:
            load_dotenv(dotenv_path)
            environ = os.environ

        network = environ.get("RELAY_NETWORK", DEFAULT_NETWORK)
        values: Dict[str, Any] = {
            "network": network,
            "rpc_url": NetworkConfig.get_rpc_url(network, override=environ.get("RPC_URL")),
            "ws_url": NetworkConfig.get_ws_url(network, override=environ.get("WS_URL")),
        }
        env_names = {
            "contract_address": "CONTRACT_ADDRESS",
            "private_key": "SIGNER_PRIVATE_KEY",
            "min_balance": "MIN_GAS_BALANCE",
            "completion_url": "COMPLETION_URL",
            "completion_api_key": "COMPLETION_API_KEY",
            "default_model": "DEFAULT_MODEL",
            "max_tokens": "MAX_TOKENS",
            "max_concurrent": "MAX_CONCURRENT",
            "reconnect_delay": "RECONNECT_DELAY",
            "log_level": "LOG_LEVEL",
        }
        for field_name, env_name in env_names.items():
            if environ.get(env_name):
                values[field_name] = environ[env_name]

        config = cls(**values)
        config.warn_missing()
        return config

    def warn_missing(self) -> None:
        """Log the settings whose absence will stop components from starting"""
        if not self.contract_address:
            logger.warning("CONTRACT_ADDRESS not set. The relay cannot subscribe or submit callbacks.")
        if not self.private_key:
            logger.warning("SIGNER_PRIVATE_KEY not set. Callbacks cannot be signed.")
        if not self.completion_api_key:
            logger.warning("COMPLETION_API_KEY not set. Completion requests will likely be rejected.")
