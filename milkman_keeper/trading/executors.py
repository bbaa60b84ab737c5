from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from milkman_keeper.common import log_event

from .encoder import DEFAULT_APP_DATA, encode_eip1271_signature, encode_plan_signature
from .engine import SwapPricingEngine, decide_finalization, pad_gas, route_discovered_swap
from .queue import SwapQueue
from .types import (
    FinalizationAction,
    FinalizationResult,
    KeeperFatalError,
    MalformedResponseError,
    PairingResult,
    SigningScheme,
    Swap,
    SwapChain,
    SwapRoute,
    SwapState,
    TradingApi,
)

T = TypeVar("T")

STATUS_PAIRED = "paired"
STATUS_REQUEUED = "requeued"
STATUS_ALREADY_PAIRED = "already_paired"
STATUS_ALREADY_EXECUTED = "already_executed"


def failure_log_level(error: Exception) -> str:
    if isinstance(error, MalformedResponseError):
        return "error"
    return "warning"


class _PairingStepError(Exception):
    def __init__(self, step: str, cause: Exception) -> None:
        super().__init__(f"{step}: {cause}")
        self.step = step
        self.cause = cause


class SwapPairingExecutor:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain: SwapChain,
        api: TradingApi,
        pricing: SwapPricingEngine,
        requested_queue: SwapQueue,
        finalization_queue: SwapQueue,
        order_owner: str,
        signing_scheme: SigningScheme = SigningScheme.PRESIGN,
        estimate_verification_gas: bool = False,
        verification_gas_padding_pct: int = 10,
        app_data: str = DEFAULT_APP_DATA,
    ) -> None:
        self._logger = logger
        self._chain = chain
        self._api = api
        self._pricing = pricing
        self._requested_queue = requested_queue
        self._finalization_queue = finalization_queue
        self._order_owner = order_owner
        self._signing_scheme = signing_scheme
        self._estimate_verification_gas = estimate_verification_gas
        self._verification_gas_padding_pct = max(0, int(verification_gas_padding_pct))
        self._app_data = app_data

    async def _step(self, step: str, awaitable: Awaitable[T]) -> T:
        try:
            return await awaitable
        except (asyncio.CancelledError, KeeperFatalError):
            raise
        except Exception as error:
            raise _PairingStepError(step, error) from error

    async def _verification_gas_limit(self, swap: Swap) -> int | None:
        if not self._estimate_verification_gas:
            return None
        # Placeholder amounts; only the gas cost of the check matters here.
        signature = encode_eip1271_signature(
            swap=swap,
            sell_amount=swap.amount_in,
            buy_amount=0,
            valid_to=0,
            fee_amount=0,
            app_data=self._app_data,
        )
        gas = await self._step("estimate_verification_gas", self._chain.estimate_verification_gas(swap, signature))
        return pad_gas(gas, self._verification_gas_padding_pct)

    async def _reconcile(self, swap: Swap) -> PairingResult | None:
        state = await self._step("get_swap_state", self._chain.get_swap_state(swap.swap_id))
        if state == SwapState.REQUESTED:
            return None

        route = route_discovered_swap(state)
        if route == SwapRoute.FINALIZATION_QUEUE:
            self._finalization_queue.push(swap)
            status = STATUS_ALREADY_PAIRED
        else:
            status = STATUS_ALREADY_EXECUTED
        log_event(
            self._logger,
            level="info",
            event="swap_pairing_skipped",
            message="Swap is no longer requested on-chain; skipping pairing",
            state=state.name,
            status=status,
            **swap.log_fields(),
        )
        return PairingResult(swap=swap, status=status)

    async def _pair(self, swap: Swap) -> PairingResult:
        reconciled = await self._reconcile(swap)
        if reconciled is not None:
            return reconciled

        verification_gas_limit = await self._verification_gas_limit(swap)
        quote = await self._step(
            "get_quote",
            self._api.get_quote(
                order_from=self._order_owner,
                sell_token=swap.from_token,
                buy_token=swap.to_token,
                amount=swap.amount_in,
                receiver=swap.receiver,
                signing_scheme=self._signing_scheme,
                verification_gas_limit=verification_gas_limit,
            ),
        )
        chain_timestamp = await self._step("get_chain_timestamp", self._chain.get_chain_timestamp())
        try:
            plan = self._pricing.plan(swap=swap, quote=quote, chain_timestamp=chain_timestamp)
        except ValueError as error:
            raise _PairingStepError("plan_order", error) from error

        log_event(
            self._logger,
            level="info",
            event="swap_order_planned",
            message="Computed order amounts from quote",
            verification_gas_limit=verification_gas_limit,
            quoted_fee_amount=str(quote.fee_amount),
            quoted_buy_amount=str(quote.buy_amount_after_fee),
            **plan.to_log_fields(),
            **swap.log_fields(),
        )

        if self._signing_scheme == SigningScheme.EIP1271:
            signature = "0x" + encode_plan_signature(swap, plan, app_data=self._app_data).hex()
        else:
            signature = self._order_owner
        try:
            order = self._api.build_order(
                swap,
                plan,
                owner=self._order_owner,
                signing_scheme=self._signing_scheme,
                signature=signature,
            )
        except ValueError as error:
            raise _PairingStepError("build_order", error) from error
        order_uid = await self._step("create_order", self._api.create_order(order))
        log_event(
            self._logger,
            level="info",
            event="swap_order_created",
            message="Created order through the trading API",
            order_uid=order_uid,
            **swap.log_fields(),
        )

        tx_hash = await self._step("pair_swap", self._chain.pair_swap(swap, plan))
        self._finalization_queue.push(swap)
        log_event(
            self._logger,
            level="info",
            event="swap_paired",
            message="Swap paired on-chain and moved to finalization",
            order_uid=order_uid,
            tx_hash=tx_hash,
            **swap.log_fields(),
        )
        return PairingResult(swap=swap, status=STATUS_PAIRED, order_uid=order_uid, tx_hash=tx_hash, plan=plan)

    async def pair(self, swap: Swap) -> PairingResult:
        """Pair one requested swap; on any transient failure requeue it unchanged."""
        try:
            return await self._pair(swap)
        except _PairingStepError as error:
            self._requested_queue.push(swap)
            log_event(
                self._logger,
                level=failure_log_level(error.cause),
                event="swap_pairing_failed",
                message="Could not pair swap; returned it to the requested queue",
                step=error.step,
                error=str(error.cause),
                error_type=type(error.cause).__name__,
                **swap.log_fields(),
            )
            return PairingResult(swap=swap, status=STATUS_REQUEUED, error=str(error))


class SwapFinalizer:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain: SwapChain,
        requested_queue: SwapQueue,
        finalization_queue: SwapQueue,
    ) -> None:
        self._logger = logger
        self._chain = chain
        self._requested_queue = requested_queue
        self._finalization_queue = finalization_queue

    async def finalize(self, swap: Swap) -> FinalizationResult:
        try:
            state = await self._chain.get_swap_state(swap.swap_id)
        except (asyncio.CancelledError, KeeperFatalError):
            raise
        except Exception as error:
            self._finalization_queue.push(swap)
            log_event(
                self._logger,
                level="warning",
                event="swap_finalization_state_failed",
                message="Could not query swap state; keeping it in the finalization queue",
                error=str(error),
                **swap.log_fields(),
            )
            return FinalizationResult(swap=swap, state=None, action=None, error=str(error))

        action = decide_finalization(state)

        if action == FinalizationAction.DROP:
            log_event(
                self._logger,
                level="info",
                event="swap_executed",
                message="Swap has been executed; removing it from the queues",
                **swap.log_fields(),
            )
            return FinalizationResult(swap=swap, state=state, action=action)

        if action == FinalizationAction.KEEP_WAITING:
            self._finalization_queue.push(swap)
            log_event(
                self._logger,
                level="debug",
                event="swap_awaiting_execution",
                message="Swap is paired but not yet executed; requeued",
                **swap.log_fields(),
            )
            return FinalizationResult(swap=swap, state=state, action=action)

        try:
            tx_hash = await self._chain.unpair_swap(swap.swap_id)
        except (asyncio.CancelledError, KeeperFatalError):
            raise
        except Exception as error:
            self._finalization_queue.push(swap)
            log_event(
                self._logger,
                level="warning",
                event="swap_unpair_failed",
                message="Could not unpair swap; keeping it in the finalization queue",
                error=str(error),
                error_type=type(error).__name__,
                **swap.log_fields(),
            )
            return FinalizationResult(swap=swap, state=state, action=action, error=str(error))

        self._requested_queue.push(swap)
        log_event(
            self._logger,
            level="info",
            event="swap_unpaired",
            message="Swap was unpairable; unpaired and returned to the requested queue",
            tx_hash=tx_hash,
            **swap.log_fields(),
        )
        return FinalizationResult(swap=swap, state=state, action=action, tx_hash=tx_hash)
