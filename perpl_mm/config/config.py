"""
Environment-driven configuration with validation.

Read once at startup from the process environment, after loading ``.env``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import is_address

from perpl_mm.errors import ConfigError

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _required(key: str) -> str:
    raw = os.getenv(key)
    if raw is None or raw.strip() == "":
        raise ConfigError(f"{key} is required")
    return raw.strip()


def _int_env(key: str, default: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        if default is None:
            raise ConfigError(f"{key} is required")
        return default
    try:
        return int(raw, 0)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    chain_id: int
    collateral_token_address: str
    address: str
    private_key: str
    deployed_at_block: int
    perpetual_id: int
    node_rpc_url: str
    timeout_seconds: float
    state_url: str
    http_timeout: float
    poll_interval_sec: float
    metrics_port: int
    log_level: str
    log_file: Optional[str]
    log_json: bool

    def dump(self) -> dict:
        """Settings for startup logging, with the signing key redacted."""
        data = self.__dict__.copy()
        data["private_key"] = "***"
        return data

    @classmethod
    def load(cls, env_file: Optional[str] = None) -> "Settings":
        load_dotenv(env_file)
        node_rpc_url = _required("PERPL_NODE_RPC_URL")
        cfg = cls(
            chain_id=_int_env("PERPL_CHAIN_ID"),
            collateral_token_address=_required("PERPL_COLLATERAL_TOKEN_ADDRESS"),
            address=_required("PERPL_ADDRESS"),
            private_key=_required("PERPL_PRIVATE_KEY"),
            deployed_at_block=_int_env("PERPL_DEPLOYED_AT_BLOCK"),
            perpetual_id=_int_env("PERPL_PERPETUAL_ID"),
            node_rpc_url=node_rpc_url,
            timeout_seconds=_float_env("PERPL_TIMEOUT_SECONDS", 30.0),
            state_url=os.getenv("PERPL_STATE_URL") or node_rpc_url,
            http_timeout=_float_env("PERPL_HTTP_TIMEOUT", 10.0),
            poll_interval_sec=_float_env("PERPL_POLL_INTERVAL_SEC", 0.5),
            metrics_port=_int_env("PERPL_METRICS_PORT", 0),
            log_level=os.getenv("PERPL_LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("PERPL_LOG_FILE") or None,
            log_json=env_bool("PERPL_LOG_JSON", False),
        )
        cfg._validate()
        return cfg

    def resolve_signer(self) -> LocalAccount:
        try:
            return Account.from_key(self.private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigError("PERPL_PRIVATE_KEY is not a valid private key") from exc

    def resolve_account(self) -> str:
        """Wallet address the bot trades from."""
        return self.resolve_signer().address

    @property
    def log_level_no(self) -> int:
        return getattr(logging, self.log_level)

    def _validate(self) -> None:
        if self.chain_id <= 0:
            raise ConfigError("PERPL_CHAIN_ID must be > 0")
        if not is_address(self.address):
            raise ConfigError(f"PERPL_ADDRESS is not a valid address: {self.address!r}")
        if not is_address(self.collateral_token_address):
            raise ConfigError(
                f"PERPL_COLLATERAL_TOKEN_ADDRESS is not a valid address: {self.collateral_token_address!r}"
            )
        if self.deployed_at_block < 0:
            raise ConfigError("PERPL_DEPLOYED_AT_BLOCK must be >= 0")
        if self.perpetual_id < 0:
            raise ConfigError("PERPL_PERPETUAL_ID must be >= 0")
        if not self.node_rpc_url.startswith(("http://", "https://")):
            raise ConfigError(f"PERPL_NODE_RPC_URL must be an http(s) URL: {self.node_rpc_url!r}")
        if self.timeout_seconds <= 0:
            raise ConfigError("PERPL_TIMEOUT_SECONDS must be > 0")
        if self.http_timeout <= 0:
            raise ConfigError("PERPL_HTTP_TIMEOUT must be > 0")
        if self.poll_interval_sec <= 0:
            raise ConfigError("PERPL_POLL_INTERVAL_SEC must be > 0")
        if not 0 <= self.metrics_port <= 65535:
            raise ConfigError("PERPL_METRICS_PORT must be in 0..65535")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"PERPL_LOG_LEVEL must be one of {sorted(LOG_LEVELS)}")
        self.resolve_signer()
