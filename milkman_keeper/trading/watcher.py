from __future__ import annotations

import logging

from milkman_keeper.common import log_event

from .engine import route_discovered_swap
from .queue import SwapQueue
from .types import DiscoveryReport, Swap, SwapChain, SwapRoute


class SwapWatcher:
    """Scans new blocks for ``SwapRequested`` events and routes each swap.

    ``last_processed_block`` only advances after a cycle fully succeeds, so a
    failed cycle rescans the same range next time.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        chain: SwapChain,
        requested_queue: SwapQueue,
        finalization_queue: SwapQueue,
        starting_block: int | None = None,
        min_swap_amount: int = 100,
        block_overlap: int = 0,
    ) -> None:
        self._logger = logger
        self._chain = chain
        self._requested_queue = requested_queue
        self._finalization_queue = finalization_queue
        self.last_processed_block = starting_block
        self._min_swap_amount = max(0, int(min_swap_amount))
        self._block_overlap = max(0, int(block_overlap))

    def is_dust(self, swap: Swap) -> bool:
        return swap.amount_in < self._min_swap_amount

    def scan_range_start(self) -> int:
        if self.last_processed_block is None:
            raise RuntimeError("discovery starting block is not initialized")
        return max(0, self.last_processed_block - self._block_overlap)

    async def initialize(self) -> int:
        if self.last_processed_block is None:
            self.last_processed_block = await self._chain.get_latest_block_number()
            log_event(
                self._logger,
                level="info",
                event="discovery_start_block_from_head",
                message="No starting block configured; discovery starts at chain head",
                starting_block=self.last_processed_block,
            )
        return self.last_processed_block

    async def route(self, swap: Swap) -> SwapRoute:
        state = await self._chain.get_swap_state(swap.swap_id)
        route = route_discovered_swap(state)

        # A swap already queued or held by a worker keeps its placement; the
        # state read here may predate that worker's last transaction.
        if route == SwapRoute.REQUESTED_QUEUE:
            is_new = self._requested_queue.offer(swap)
        elif route == SwapRoute.FINALIZATION_QUEUE:
            is_new = self._finalization_queue.offer(swap)
        else:
            is_new = False

        log_event(
            self._logger,
            level="info" if route != SwapRoute.DROP else "debug",
            event="swap_discovered",
            message="Discovered swap routed by on-chain state",
            state=state.name,
            route=route.value,
            already_tracked=route != SwapRoute.DROP and not is_new,
            block_number=swap.block_number,
            **swap.log_fields(),
        )
        return route

    async def scan_once(self) -> DiscoveryReport:
        await self.initialize()
        from_block = self.scan_range_start()
        to_block = await self._chain.get_latest_block_number()
        if to_block < from_block:
            # Load-balanced RPC nodes can briefly report an older head.
            to_block = from_block

        swaps = await self._chain.get_requested_swaps(from_block, to_block)

        dust_skipped = 0
        counts = {route: 0 for route in SwapRoute}
        for swap in swaps:
            if self.is_dust(swap):
                dust_skipped += 1
                log_event(
                    self._logger,
                    level="info",
                    event="swap_dust_skipped",
                    message="Swap amount is below the dust threshold",
                    min_swap_amount=self._min_swap_amount,
                    **swap.log_fields(),
                )
                continue
            counts[await self.route(swap)] += 1

        self.last_processed_block = to_block
        report = DiscoveryReport(
            from_block=from_block,
            to_block=to_block,
            events_seen=len(swaps),
            dust_skipped=dust_skipped,
            queued_requested=counts[SwapRoute.REQUESTED_QUEUE],
            queued_finalization=counts[SwapRoute.FINALIZATION_QUEUE],
            dropped_executed=counts[SwapRoute.DROP],
        )
        if swaps:
            log_event(
                self._logger,
                level="info",
                event="discovery_cycle_completed",
                message="Found requested swaps",
                from_block=report.from_block,
                to_block=report.to_block,
                events_seen=report.events_seen,
                dust_skipped=report.dust_skipped,
                queued_requested=report.queued_requested,
                queued_finalization=report.queued_finalization,
                dropped_executed=report.dropped_executed,
            )
        return report
