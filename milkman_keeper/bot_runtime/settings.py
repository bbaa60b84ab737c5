from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Mapping

from eth_utils import is_address, to_checksum_address

from milkman_keeper.chain import DEFAULT_MILKMAN_ADDRESS, DEFAULT_MILKMAN_STATE_HELPER_ADDRESS
from milkman_keeper.cow import COW_API_BASE_URLS
from milkman_keeper.trading.encoder import DEFAULT_APP_DATA
from milkman_keeper.trading.types import ConfigurationError, FeeModel, SigningScheme

INFURA_NETWORK_HOSTS = {
    "mainnet": "mainnet",
    "goerli": "goerli",
    "sepolia": "sepolia",
    "arbitrum_one": "arbitrum-mainnet",
}
PRIVATE_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
BYTES32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")
TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _raw(env: Mapping[str, str], name: str) -> str | None:
    value = env.get(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def env_int(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from error
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def env_float(env: Mapping[str, str], name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = _raw(env, name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from error
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = _raw(env, name)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def env_address(env: Mapping[str, str], name: str, default: str) -> str:
    raw = _raw(env, name) or default
    if not is_address(raw):
        raise ConfigurationError(f"{name} is not a valid address: {raw!r}")
    return to_checksum_address(raw)


def env_choice(env: Mapping[str, str], name: str, default: str, choices: set[str]) -> str:
    raw = (_raw(env, name) or default).lower()
    if raw not in choices:
        raise ConfigurationError(f"{name} must be one of {sorted(choices)}, got {raw!r}")
    return raw


def resolve_rpc_url(env: Mapping[str, str], network: str) -> str:
    rpc_url = _raw(env, "ETH_RPC_URL")
    if rpc_url:
        return rpc_url

    infura_api_key = _raw(env, "INFURA_API_KEY")
    if not infura_api_key:
        raise ConfigurationError("required environment variable ETH_RPC_URL or INFURA_API_KEY not set")
    host = INFURA_NETWORK_HOSTS.get(network)
    if host is None:
        raise ConfigurationError(f"INFURA_API_KEY is not supported for network {network!r}; set ETH_RPC_URL")
    return f"https://{host}.infura.io/v3/{infura_api_key}"


@dataclass(slots=True)
class AppSettings:
    network: str
    rpc_url: str
    keeper_private_key: str
    cow_api_base_url: str
    milkman_address: str
    state_helper_address: str
    starting_block_number: int | None
    discovery_interval_seconds: float
    execution_interval_seconds: float
    finalization_interval_seconds: float
    discovery_block_overlap: int
    min_swap_amount: int
    slippage_bps: int
    order_validity_seconds: int
    fee_model: FeeModel
    signing_scheme: SigningScheme
    estimate_verification_gas: bool
    verification_gas_padding_pct: int
    app_data: str
    http_timeout_seconds: float
    api_max_retries: int
    tx_receipt_timeout_seconds: float
    execution_max_consecutive_failures: int
    execution_circuit_breaker_seconds: float
    log_level: str

    def to_log_fields(self) -> dict[str, object]:
        return {
            "network": self.network,
            "cow_api_base_url": self.cow_api_base_url,
            "milkman_address": self.milkman_address,
            "state_helper_address": self.state_helper_address,
            "starting_block_number": self.starting_block_number,
            "discovery_interval_seconds": self.discovery_interval_seconds,
            "execution_interval_seconds": self.execution_interval_seconds,
            "finalization_interval_seconds": self.finalization_interval_seconds,
            "discovery_block_overlap": self.discovery_block_overlap,
            "min_swap_amount": self.min_swap_amount,
            "slippage_bps": self.slippage_bps,
            "order_validity_seconds": self.order_validity_seconds,
            "fee_model": self.fee_model.value,
            "signing_scheme": self.signing_scheme.value,
            "estimate_verification_gas": self.estimate_verification_gas,
        }

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "AppSettings":
        env = os.environ if env is None else env

        network = env_choice(env, "NETWORK", "mainnet", set(COW_API_BASE_URLS))
        rpc_url = resolve_rpc_url(env, network)

        private_key = _raw(env, "KEEPER_PRIVATE_KEY")
        if not private_key:
            raise ConfigurationError("required environment variable KEEPER_PRIVATE_KEY not set")
        if not PRIVATE_KEY_RE.match(private_key):
            raise ConfigurationError("KEEPER_PRIVATE_KEY must be a 32-byte hex string")

        app_data = _raw(env, "APP_DATA") or DEFAULT_APP_DATA
        if not BYTES32_RE.match(app_data):
            raise ConfigurationError(f"APP_DATA must be a 0x-prefixed 32-byte hex string, got {app_data!r}")

        starting_block_raw = _raw(env, "STARTING_BLOCK_NUMBER")
        starting_block_number = (
            env_int(env, "STARTING_BLOCK_NUMBER", 0) if starting_block_raw is not None else None
        )

        slippage_bps = env_int(env, "SLIPPAGE_BPS", 50)
        if slippage_bps >= 10_000:
            raise ConfigurationError(f"SLIPPAGE_BPS must be below 10000, got {slippage_bps}")

        log_level = (_raw(env, "LOG_LEVEL") or "INFO").upper()
        if log_level not in LOG_LEVELS:
            raise ConfigurationError(f"LOG_LEVEL must be one of {sorted(LOG_LEVELS)}, got {log_level!r}")

        return cls(
            network=network,
            rpc_url=rpc_url,
            keeper_private_key=private_key,
            cow_api_base_url=(_raw(env, "COW_API_BASE_URL") or COW_API_BASE_URLS[network]).rstrip("/"),
            milkman_address=env_address(env, "MILKMAN_ADDRESS", DEFAULT_MILKMAN_ADDRESS),
            state_helper_address=env_address(
                env,
                "MILKMAN_STATE_HELPER_ADDRESS",
                DEFAULT_MILKMAN_STATE_HELPER_ADDRESS,
            ),
            starting_block_number=starting_block_number,
            discovery_interval_seconds=env_float(env, "DISCOVERY_INTERVAL_SECONDS", 60.0, minimum=0.1),
            execution_interval_seconds=env_float(env, "EXECUTION_INTERVAL_SECONDS", 10.0, minimum=0.1),
            finalization_interval_seconds=env_float(env, "FINALIZATION_INTERVAL_SECONDS", 120.0, minimum=0.1),
            discovery_block_overlap=env_int(env, "DISCOVERY_BLOCK_OVERLAP", 0),
            min_swap_amount=env_int(env, "MIN_SWAP_AMOUNT", 100),
            slippage_bps=slippage_bps,
            order_validity_seconds=env_int(env, "ORDER_VALIDITY_SECONDS", 86_400, minimum=60),
            fee_model=FeeModel(env_choice(env, "FEE_MODEL", FeeModel.INCLUDED.value, {m.value for m in FeeModel})),
            signing_scheme=SigningScheme(
                env_choice(
                    env,
                    "ORDER_SIGNING_SCHEME",
                    SigningScheme.PRESIGN.value,
                    {s.value for s in SigningScheme},
                )
            ),
            estimate_verification_gas=env_bool(env, "ESTIMATE_VERIFICATION_GAS", False),
            verification_gas_padding_pct=env_int(env, "VERIFICATION_GAS_PADDING_PCT", 10),
            app_data=app_data,
            http_timeout_seconds=env_float(env, "HTTP_TIMEOUT_SECONDS", 10.0, minimum=0.5),
            api_max_retries=env_int(env, "API_MAX_RETRIES", 2),
            tx_receipt_timeout_seconds=env_float(env, "TX_RECEIPT_TIMEOUT_SECONDS", 300.0, minimum=1.0),
            execution_max_consecutive_failures=env_int(env, "EXECUTION_MAX_CONSECUTIVE_FAILURES", 0),
            execution_circuit_breaker_seconds=env_float(
                env,
                "EXECUTION_CIRCUIT_BREAKER_SECONDS",
                300.0,
                minimum=1.0,
            ),
            log_level=log_level,
        )
