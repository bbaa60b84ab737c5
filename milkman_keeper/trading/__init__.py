from .engine import SwapPricingEngine, apply_slippage, decide_finalization, pad_gas, route_discovered_swap
from .executors import STATUS_PAIRED, STATUS_REQUEUED, SwapFinalizer, SwapPairingExecutor, failure_log_level
from .queue import SwapQueue, SwapRegistry
from .types import (
    ChainRpcError,
    ConfigurationError,
    DiscoveryReport,
    FeeModel,
    FinalizationAction,
    FinalizationResult,
    KeeperError,
    KeeperFatalError,
    MalformedResponseError,
    OrderPlan,
    PairingResult,
    Quote,
    SigningScheme,
    Swap,
    SwapRoute,
    SwapState,
    SwapStateInconsistencyError,
    TradingApiError,
    TransactionRevertedError,
    swap_from_event,
    swap_state_from_code,
)
from .watcher import SwapWatcher

__all__ = [
    "STATUS_PAIRED",
    "STATUS_REQUEUED",
    "ChainRpcError",
    "ConfigurationError",
    "DiscoveryReport",
    "FeeModel",
    "FinalizationAction",
    "FinalizationResult",
    "KeeperError",
    "KeeperFatalError",
    "MalformedResponseError",
    "OrderPlan",
    "PairingResult",
    "Quote",
    "SigningScheme",
    "Swap",
    "SwapFinalizer",
    "SwapPairingExecutor",
    "SwapPricingEngine",
    "SwapQueue",
    "SwapRegistry",
    "SwapRoute",
    "SwapState",
    "SwapStateInconsistencyError",
    "SwapWatcher",
    "TradingApiError",
    "TransactionRevertedError",
    "apply_slippage",
    "decide_finalization",
    "failure_log_level",
    "pad_gas",
    "route_discovered_swap",
    "swap_from_event",
    "swap_state_from_code",
]
