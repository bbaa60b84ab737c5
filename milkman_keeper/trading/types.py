from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Mapping, Protocol

from eth_utils import to_checksum_address

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class KeeperError(RuntimeError):
    """Base class for every error raised by the keeper."""


class KeeperFatalError(KeeperError):
    """The process cannot continue safely; workers must not swallow it."""


class SwapStateInconsistencyError(KeeperFatalError):
    pass


class ConfigurationError(KeeperFatalError):
    pass


class ChainRpcError(KeeperError):
    pass


class TransactionRevertedError(ChainRpcError):
    def __init__(self, message: str, *, tx_hash: str) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class TradingApiError(KeeperError):
    def __init__(self, message: str, *, status: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class MalformedResponseError(TradingApiError):
    """The API answered 2xx but the body does not have the expected shape."""


class SwapState(IntEnum):
    NULL = 0
    REQUESTED = 1
    PAIRED = 2
    PAIRED_AND_UNPAIRABLE = 3
    PAIRED_AND_EXECUTED = 4


class SwapRoute(str, Enum):
    REQUESTED_QUEUE = "requested"
    FINALIZATION_QUEUE = "awaiting_finalization"
    DROP = "drop"


class FinalizationAction(str, Enum):
    DROP = "drop"
    UNPAIR_AND_REQUEUE = "unpair_and_requeue"
    KEEP_WAITING = "keep_waiting"


class FeeModel(str, Enum):
    INCLUDED = "included"
    SUBTRACTED = "subtracted"


class SigningScheme(str, Enum):
    PRESIGN = "presign"
    EIP1271 = "eip1271"


def swap_state_from_code(code: Any) -> SwapState:
    if isinstance(code, bool) or not isinstance(code, int):
        raise SwapStateInconsistencyError(f"swap state code must be an integer, contract returned {code!r}")
    try:
        return SwapState(code)
    except ValueError as error:
        raise SwapStateInconsistencyError(
            f"swap state should be between 0-4 but contract returned {code}"
        ) from error


def to_bytes32(value: Any) -> bytes:
    if isinstance(value, str):
        raw = bytes.fromhex(value[2:] if value.lower().startswith("0x") else value)
    else:
        raw = bytes(value)
    if len(raw) != 32:
        raise ValueError(f"expected 32 bytes, got {len(raw)}")
    return raw


@dataclass(slots=True, frozen=True)
class Swap:
    swap_id: bytes
    user: str
    receiver: str
    from_token: str
    to_token: str
    amount_in: int
    price_checker: str
    price_checker_data: bytes
    nonce: int
    block_number: int | None = field(default=None, compare=False)

    @property
    def swap_id_hex(self) -> str:
        return "0x" + self.swap_id.hex()

    def log_fields(self) -> dict[str, Any]:
        return {
            "swap_id": self.swap_id_hex,
            "from_token": self.from_token,
            "to_token": self.to_token,
            "amount_in": str(self.amount_in),
        }


def swap_from_event(event: Mapping[str, Any]) -> Swap:
    """Build a Swap from a decoded ``SwapRequested`` log.

    ``event`` is either a web3 event (``AttributeDict`` with ``args``) or a
    plain mapping of the event arguments.
    """
    args = event["args"] if "args" in event else event
    block_number = event.get("blockNumber") if "args" in event else None
    return Swap(
        swap_id=to_bytes32(args["swapId"]),
        user=to_checksum_address(args["user"]),
        receiver=to_checksum_address(args["receiver"]),
        from_token=to_checksum_address(args["fromToken"]),
        to_token=to_checksum_address(args["toToken"]),
        amount_in=int(args["amountIn"]),
        price_checker=to_checksum_address(args.get("priceChecker") or ZERO_ADDRESS),
        price_checker_data=bytes(args.get("priceCheckerData") or b""),
        nonce=int(args.get("nonce") or 0),
        block_number=int(block_number) if block_number is not None else None,
    )


@dataclass(slots=True, frozen=True)
class Quote:
    fee_amount: int
    buy_amount_after_fee: int
    valid_to: int
    sell_amount: int
    quote_id: int | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(slots=True, frozen=True)
class OrderPlan:
    sell_amount: int
    buy_amount: int
    fee_amount: int
    valid_to: int
    quote: Quote

    def to_log_fields(self) -> dict[str, Any]:
        return {
            "sell_amount": str(self.sell_amount),
            "buy_amount": str(self.buy_amount),
            "fee_amount": str(self.fee_amount),
            "valid_to": self.valid_to,
            "quote_id": self.quote.quote_id,
        }


@dataclass(slots=True, frozen=True)
class DiscoveryReport:
    from_block: int
    to_block: int
    events_seen: int
    dust_skipped: int
    queued_requested: int
    queued_finalization: int
    dropped_executed: int


@dataclass(slots=True, frozen=True)
class PairingResult:
    swap: Swap
    status: str
    order_uid: str | None = None
    tx_hash: str | None = None
    plan: OrderPlan | None = None
    error: str = ""


@dataclass(slots=True, frozen=True)
class FinalizationResult:
    swap: Swap
    state: SwapState | None
    action: FinalizationAction | None
    tx_hash: str | None = None
    error: str = ""


class SwapChain(Protocol):
    async def get_latest_block_number(self) -> int:
        ...

    async def get_requested_swaps(self, from_block: int, to_block: int) -> list[Swap]:
        ...

    async def get_swap_state(self, swap_id: bytes) -> SwapState:
        ...

    async def get_chain_timestamp(self) -> int:
        ...

    async def estimate_verification_gas(self, swap: Swap, signature: bytes) -> int:
        ...

    async def pair_swap(self, swap: Swap, plan: OrderPlan) -> str:
        ...

    async def unpair_swap(self, swap_id: bytes) -> str:
        ...


class TradingApi(Protocol):
    async def get_quote(
        self,
        *,
        order_from: str,
        sell_token: str,
        buy_token: str,
        amount: int,
        receiver: str,
        signing_scheme: SigningScheme = SigningScheme.PRESIGN,
        verification_gas_limit: int | None = None,
    ) -> Quote:
        ...

    def build_order(
        self,
        swap: Swap,
        plan: OrderPlan,
        *,
        owner: str,
        signing_scheme: SigningScheme,
        signature: str,
    ) -> dict[str, Any]:
        ...

    async def create_order(self, order: dict[str, Any]) -> str:
        ...
