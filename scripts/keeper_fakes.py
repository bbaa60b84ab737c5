from __future__ import annotations

from typing import Any

from eth_utils import to_checksum_address

from milkman_keeper.trading import OrderPlan, Quote, SigningScheme, Swap, SwapState

USER = to_checksum_address("0x" + "11" * 20)
RECEIVER = to_checksum_address("0x" + "22" * 20)
FROM_TOKEN = to_checksum_address("0x" + "33" * 20)
TO_TOKEN = to_checksum_address("0x" + "44" * 20)
PRICE_CHECKER = to_checksum_address("0x" + "55" * 20)
MILKMAN = to_checksum_address("0x" + "66" * 20)


def make_swap(index: int = 1, *, amount_in: int = 10_000, block_number: int | None = None) -> Swap:
    return Swap(
        swap_id=index.to_bytes(32, "big"),
        user=USER,
        receiver=RECEIVER,
        from_token=FROM_TOKEN,
        to_token=TO_TOKEN,
        amount_in=amount_in,
        price_checker=PRICE_CHECKER,
        price_checker_data=b"\x00\x01",
        nonce=index,
        block_number=block_number,
    )


def make_quote(*, fee_amount: int = 100, buy_amount_after_fee: int = 20_000, valid_to: int = 1_700_000_600) -> Quote:
    return Quote(
        fee_amount=fee_amount,
        buy_amount_after_fee=buy_amount_after_fee,
        valid_to=valid_to,
        sell_amount=10_000 - fee_amount,
        quote_id=7,
    )


class FakeChain:
    """In-memory Milkman deployment.

    ``failures`` maps an operation name to an exception raised on the next
    call of that operation (one-shot).
    """

    def __init__(self, *, head: int = 100, timestamp: int = 1_700_000_000) -> None:
        self.head = head
        self.timestamp = timestamp
        self.states: dict[bytes, SwapState] = {}
        self.events: list[Swap] = []
        self.failures: dict[str, Exception] = {}
        self.log_queries: list[tuple[int, int]] = []
        self.pair_calls: list[tuple[Swap, OrderPlan]] = []
        self.unpair_calls: list[bytes] = []
        self.gas_estimates: list[bytes] = []

    def request(self, swap: Swap, state: SwapState = SwapState.REQUESTED) -> None:
        self.events.append(swap)
        self.states[swap.swap_id] = state

    def _maybe_fail(self, operation: str) -> None:
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    async def get_latest_block_number(self) -> int:
        self._maybe_fail("get_latest_block_number")
        return self.head

    async def get_requested_swaps(self, from_block: int, to_block: int) -> list[Swap]:
        self._maybe_fail("get_requested_swaps")
        self.log_queries.append((from_block, to_block))
        return [
            swap
            for swap in self.events
            if swap.block_number is None or from_block <= swap.block_number <= to_block
        ]

    async def get_swap_state(self, swap_id: bytes) -> SwapState:
        self._maybe_fail("get_swap_state")
        return self.states.get(swap_id, SwapState.NULL)

    async def get_chain_timestamp(self) -> int:
        self._maybe_fail("get_chain_timestamp")
        return self.timestamp

    async def estimate_verification_gas(self, swap: Swap, signature: bytes) -> int:
        self._maybe_fail("estimate_verification_gas")
        self.gas_estimates.append(signature)
        return 100_000

    async def pair_swap(self, swap: Swap, plan: OrderPlan) -> str:
        self._maybe_fail("pair_swap")
        self.pair_calls.append((swap, plan))
        self.states[swap.swap_id] = SwapState.PAIRED
        return "0x" + "aa" * 32

    async def unpair_swap(self, swap_id: bytes) -> str:
        self._maybe_fail("unpair_swap")
        self.unpair_calls.append(swap_id)
        self.states[swap_id] = SwapState.REQUESTED
        return "0x" + "bb" * 32


class FakeTradingApi:
    def __init__(self, quote: Quote | None = None) -> None:
        self.quote = quote or make_quote()
        self.failures: dict[str, Exception] = {}
        self.quote_requests: list[dict[str, Any]] = []
        self.orders: list[dict[str, Any]] = []

    def _maybe_fail(self, operation: str) -> None:
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    async def get_quote(self, **kwargs: Any) -> Quote:
        self._maybe_fail("get_quote")
        self.quote_requests.append(kwargs)
        return self.quote

    def build_order(
        self,
        swap: Swap,
        plan: OrderPlan,
        *,
        owner: str,
        signing_scheme: SigningScheme,
        signature: str,
    ) -> dict[str, Any]:
        self._maybe_fail("build_order")
        return {
            "sellToken": swap.from_token,
            "buyToken": swap.to_token,
            "sellAmount": str(plan.sell_amount),
            "buyAmount": str(plan.buy_amount),
            "feeAmount": str(plan.fee_amount),
            "validTo": plan.valid_to,
            "signingScheme": signing_scheme.value,
            "signature": signature,
            "from": owner,
        }

    async def create_order(self, order: dict[str, Any]) -> str:
        self._maybe_fail("create_order")
        self.orders.append(order)
        return "0x" + "cc" * 56
