from __future__ import annotations

from .types import (
    FeeModel,
    FinalizationAction,
    OrderPlan,
    Quote,
    Swap,
    SwapRoute,
    SwapState,
    SwapStateInconsistencyError,
)

BPS_DENOMINATOR = 10_000


def route_discovered_swap(state: SwapState) -> SwapRoute:
    if state == SwapState.REQUESTED:
        return SwapRoute.REQUESTED_QUEUE
    if state in {SwapState.PAIRED, SwapState.PAIRED_AND_UNPAIRABLE}:
        return SwapRoute.FINALIZATION_QUEUE
    if state == SwapState.PAIRED_AND_EXECUTED:
        return SwapRoute.DROP
    raise SwapStateInconsistencyError(f"swap emitted a request event but its state is {state.name}")


def decide_finalization(state: SwapState) -> FinalizationAction:
    if state == SwapState.PAIRED_AND_EXECUTED:
        return FinalizationAction.DROP
    if state == SwapState.PAIRED_AND_UNPAIRABLE:
        return FinalizationAction.UNPAIR_AND_REQUEUE
    if state == SwapState.PAIRED:
        return FinalizationAction.KEEP_WAITING
    raise SwapStateInconsistencyError(f"paired swap regressed to state {state.name}")


def apply_slippage(buy_amount: int, slippage_bps: int) -> int:
    if not 0 <= slippage_bps < BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}), got {slippage_bps}")
    return buy_amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def pad_gas(gas: int, padding_pct: int) -> int:
    return gas * (100 + padding_pct) // 100


class SwapPricingEngine:
    def __init__(
        self,
        *,
        slippage_bps: int,
        order_validity_seconds: int,
        fee_model: FeeModel,
    ) -> None:
        self.slippage_bps = slippage_bps
        self.order_validity_seconds = order_validity_seconds
        self.fee_model = fee_model

    def sell_amount(self, swap: Swap, quote: Quote) -> int:
        if self.fee_model == FeeModel.SUBTRACTED:
            if quote.fee_amount >= swap.amount_in:
                raise ValueError(
                    f"quoted fee {quote.fee_amount} consumes the whole input amount {swap.amount_in}"
                )
            return swap.amount_in - quote.fee_amount
        return swap.amount_in

    def order_fee_amount(self, quote: Quote) -> int:
        if self.fee_model == FeeModel.SUBTRACTED:
            return quote.fee_amount
        return 0

    def plan(self, *, swap: Swap, quote: Quote, chain_timestamp: int) -> OrderPlan:
        return OrderPlan(
            sell_amount=self.sell_amount(swap, quote),
            buy_amount=apply_slippage(quote.buy_amount_after_fee, self.slippage_bps),
            fee_amount=self.order_fee_amount(quote),
            valid_to=chain_timestamp + self.order_validity_seconds,
            quote=quote,
        )
