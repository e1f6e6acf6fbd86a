"""Runtime configuration.

One ZappConfig holds everything that varies between deployments: tree
shape, where records live, and how to reach the prover and the chain.

Can be loaded from:
- Environment variables (ZAPP_*, with a .env file honoured)
- A JSON file
- Programmatic construction
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from zkstate.crypto.field import FIELD_BITS
from zkstate.crypto.merkle import DEFAULT_DEPTH
from zkstate.external.retry import CallPolicy


@dataclass
class TreeConfig:
    """Nullifier tree shape."""
    depth: int = DEFAULT_DEPTH
    field_bits: int = FIELD_BITS

    def __post_init__(self) -> None:
        if not 1 <= self.depth <= self.field_bits:
            raise ValueError(
                f"Tree depth must be between 1 and {self.field_bits}, got {self.depth}"
            )


@dataclass
class StoreConfig:
    """Where commitment records and the join log are kept (None: memory only)."""
    path: Optional[Path] = None
    event_log_path: Optional[Path] = None


@dataclass
class ProverConfig:
    url: str = "http://localhost:8080"
    timeout_s: Optional[float] = 600.0
    max_attempts: int = 1
    backoff_s: float = 0.0

    def policy(self) -> CallPolicy:
        return CallPolicy(
            timeout_s=self.timeout_s,
            max_attempts=self.max_attempts,
            backoff_s=self.backoff_s,
        )


@dataclass
class ChainConfig:
    """Account, gas, and contract parameters for transaction submission."""
    rpc_url: str = "http://localhost:8545"
    private_key: Optional[str] = None
    contract_address: Optional[str] = None
    default_account: Optional[str] = None
    default_gas: int = 6_000_000
    default_gas_price_gwei: str = "2"
    chain_id: Optional[int] = None
    timeout_s: Optional[float] = 60.0
    receipt_timeout_s: float = 300.0
    max_attempts: int = 1
    backoff_s: float = 0.0
    abi_path: Optional[Path] = None

    def policy(self) -> CallPolicy:
        """Policy for calls before the transaction is sent."""
        return CallPolicy(
            timeout_s=self.timeout_s,
            max_attempts=self.max_attempts,
            backoff_s=self.backoff_s,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.private_key and self.contract_address and self.abi_path)


@dataclass
class ZappConfig:
    """Complete runtime configuration."""
    tree: TreeConfig = field(default_factory=TreeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    prover: ProverConfig = field(default_factory=ProverConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    log_level: str = "INFO"

    @staticmethod
    def _get_env_overrides() -> dict[str, Any]:
        """
        Get configuration overrides from environment variables.

        Supported variables:
        - ZAPP_TREE_DEPTH, ZAPP_FIELD_BITS
        - ZAPP_STORE_PATH, ZAPP_EVENT_LOG_PATH
        - ZAPP_PROVER_URL, ZAPP_PROVER_TIMEOUT, ZAPP_PROVER_MAX_ATTEMPTS, ZAPP_PROVER_BACKOFF
        - ZAPP_RPC_URL, ZAPP_PRIVATE_KEY, ZAPP_CONTRACT_ADDRESS, ZAPP_DEFAULT_ACCOUNT,
          ZAPP_DEFAULT_GAS, ZAPP_GAS_PRICE_GWEI, ZAPP_CHAIN_ID, ZAPP_CHAIN_TIMEOUT,
          ZAPP_RECEIPT_TIMEOUT, ZAPP_CHAIN_MAX_ATTEMPTS, ZAPP_CHAIN_BACKOFF, ZAPP_ABI_PATH
        - ZAPP_LOG_LEVEL
        """
        mapping = {
            "ZAPP_TREE_DEPTH": ("tree", "depth"),
            "ZAPP_FIELD_BITS": ("tree", "field_bits"),
            "ZAPP_STORE_PATH": ("store", "path"),
            "ZAPP_EVENT_LOG_PATH": ("store", "event_log_path"),
            "ZAPP_PROVER_URL": ("prover", "url"),
            "ZAPP_PROVER_TIMEOUT": ("prover", "timeout_s"),
            "ZAPP_PROVER_MAX_ATTEMPTS": ("prover", "max_attempts"),
            "ZAPP_PROVER_BACKOFF": ("prover", "backoff_s"),
            "ZAPP_RPC_URL": ("chain", "rpc_url"),
            "ZAPP_PRIVATE_KEY": ("chain", "private_key"),
            "ZAPP_CONTRACT_ADDRESS": ("chain", "contract_address"),
            "ZAPP_DEFAULT_ACCOUNT": ("chain", "default_account"),
            "ZAPP_DEFAULT_GAS": ("chain", "default_gas"),
            "ZAPP_GAS_PRICE_GWEI": ("chain", "default_gas_price_gwei"),
            "ZAPP_CHAIN_ID": ("chain", "chain_id"),
            "ZAPP_CHAIN_TIMEOUT": ("chain", "timeout_s"),
            "ZAPP_RECEIPT_TIMEOUT": ("chain", "receipt_timeout_s"),
            "ZAPP_CHAIN_MAX_ATTEMPTS": ("chain", "max_attempts"),
            "ZAPP_CHAIN_BACKOFF": ("chain", "backoff_s"),
            "ZAPP_ABI_PATH": ("chain", "abi_path"),
        }
        overrides: dict[str, Any] = {}
        for env_var, (section, key) in mapping.items():
            value = os.getenv(env_var)
            if value:
                overrides.setdefault(section, {})[key] = value
        if os.getenv("ZAPP_LOG_LEVEL"):
            overrides["log_level"] = os.getenv("ZAPP_LOG_LEVEL")
        return overrides

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> ZappConfig:
        """Load configuration from environment variables, after reading .env."""
        from dotenv import load_dotenv
        load_dotenv(dotenv_path)
        return cls.from_dict(cls._get_env_overrides())

    @classmethod
    def from_json(cls, path: str | Path) -> ZappConfig:
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ZappConfig:
        """Load configuration from a dictionary (supports partial data).

        Values may be strings, as they arrive from the environment.
        """
        tree_data = data.get("tree", {})
        store_data = data.get("store", {})
        prover_data = data.get("prover", {})
        chain_data = data.get("chain", {})

        tree = TreeConfig(
            depth=int(tree_data.get("depth", DEFAULT_DEPTH)),
            field_bits=int(tree_data.get("field_bits", FIELD_BITS)),
        )
        store = StoreConfig(
            path=_optional_path(store_data.get("path")),
            event_log_path=_optional_path(store_data.get("event_log_path")),
        )
        prover = ProverConfig(
            url=prover_data.get("url", ProverConfig.url),
            timeout_s=_optional_float(prover_data.get("timeout_s", ProverConfig.timeout_s)),
            max_attempts=int(prover_data.get("max_attempts", 1)),
            backoff_s=float(prover_data.get("backoff_s", 0.0)),
        )
        chain = ChainConfig(
            rpc_url=chain_data.get("rpc_url", ChainConfig.rpc_url),
            private_key=chain_data.get("private_key"),
            contract_address=chain_data.get("contract_address"),
            default_account=chain_data.get("default_account"),
            default_gas=int(chain_data.get("default_gas", ChainConfig.default_gas)),
            default_gas_price_gwei=str(
                chain_data.get("default_gas_price_gwei", ChainConfig.default_gas_price_gwei)
            ),
            chain_id=_optional_int(chain_data.get("chain_id")),
            timeout_s=_optional_float(chain_data.get("timeout_s", ChainConfig.timeout_s)),
            receipt_timeout_s=float(
                chain_data.get("receipt_timeout_s", ChainConfig.receipt_timeout_s)
            ),
            max_attempts=int(chain_data.get("max_attempts", 1)),
            backoff_s=float(chain_data.get("backoff_s", 0.0)),
            abi_path=_optional_path(chain_data.get("abi_path")),
        )
        return cls(
            tree=tree,
            store=store,
            prover=prover,
            chain=chain,
            log_level=str(data.get("log_level", "INFO")).upper(),
        )


def _optional_path(value: Any) -> Optional[Path]:
    return Path(value) if value else None


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "" or str(value).lower() == "none":
        return None
    return float(value)


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)
