from __future__ import annotations

import logging
import unittest

from keeper_fakes import FakeChain, make_swap

from milkman_keeper.trading import (
    ChainRpcError,
    SwapRegistry,
    SwapState,
    SwapStateInconsistencyError,
    SwapWatcher,
)


class SwapWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.chain = FakeChain(head=120)
        registry = SwapRegistry()
        self.requested = registry.queue("requested")
        self.finalization = registry.queue("awaiting_finalization")

    def _watcher(self, **kwargs: object) -> SwapWatcher:
        options: dict[str, object] = {"starting_block": 100}
        options.update(kwargs)
        return SwapWatcher(
            logger=logging.getLogger("test.watcher"),
            chain=self.chain,
            requested_queue=self.requested,
            finalization_queue=self.finalization,
            **options,
        )

    async def test_initialize_defaults_to_chain_head(self) -> None:
        watcher = self._watcher(starting_block=None)

        self.assertEqual(await watcher.initialize(), 120)
        self.assertEqual(watcher.last_processed_block, 120)

    async def test_configured_starting_block_is_kept(self) -> None:
        watcher = self._watcher(starting_block=90)

        self.assertEqual(await watcher.initialize(), 90)

    async def test_swaps_are_routed_by_state(self) -> None:
        requested = make_swap(1, block_number=101)
        paired = make_swap(2, block_number=102)
        unpairable = make_swap(3, block_number=103)
        executed = make_swap(4, block_number=104)
        self.chain.request(requested, SwapState.REQUESTED)
        self.chain.request(paired, SwapState.PAIRED)
        self.chain.request(unpairable, SwapState.PAIRED_AND_UNPAIRABLE)
        self.chain.request(executed, SwapState.PAIRED_AND_EXECUTED)
        watcher = self._watcher()

        report = await watcher.scan_once()

        self.assertEqual(report.events_seen, 4)
        self.assertEqual(report.queued_requested, 1)
        self.assertEqual(report.queued_finalization, 2)
        self.assertEqual(report.dropped_executed, 1)
        self.assertEqual(self.requested.pop(), requested)
        self.assertEqual(self.finalization.pop(), paired)
        self.assertEqual(self.finalization.pop(), unpairable)
        self.assertIsNone(self.finalization.pop())

    async def test_dust_swaps_are_never_queued(self) -> None:
        for index, amount in enumerate((0, 1, 99, 100, 5_000), start=1):
            self.chain.request(make_swap(index, amount_in=amount, block_number=110))
        watcher = self._watcher(min_swap_amount=100)

        report = await watcher.scan_once()

        self.assertEqual(report.dust_skipped, 3)
        self.assertEqual(len(self.requested), 2)
        self.assertEqual(sorted(swap.amount_in for swap in (self.requested.pop(), self.requested.pop())), [100, 5_000])

    async def test_scan_is_inclusive_and_advances_to_head(self) -> None:
        watcher = self._watcher()

        await watcher.scan_once()
        self.chain.head = 130
        await watcher.scan_once()

        self.assertEqual(self.chain.log_queries, [(100, 120), (120, 130)])
        self.assertEqual(watcher.last_processed_block, 130)

    async def test_block_overlap_rescans_trailing_blocks(self) -> None:
        watcher = self._watcher(block_overlap=5)

        await watcher.scan_once()

        self.assertEqual(self.chain.log_queries, [(95, 120)])
        self.assertEqual(watcher.scan_range_start(), 115)

    async def test_head_behind_last_processed_block_is_clamped(self) -> None:
        watcher = self._watcher(starting_block=150)

        report = await watcher.scan_once()

        self.assertEqual((report.from_block, report.to_block), (150, 150))
        self.assertEqual(watcher.last_processed_block, 150)

    async def test_failed_log_query_does_not_advance(self) -> None:
        self.chain.failures["get_requested_swaps"] = ChainRpcError("eth_getLogs failed")
        watcher = self._watcher()

        with self.assertRaises(ChainRpcError):
            await watcher.scan_once()

        self.assertEqual(watcher.last_processed_block, 100)

    async def test_failed_state_query_does_not_advance(self) -> None:
        self.chain.request(make_swap(1, block_number=110))
        self.chain.failures["get_swap_state"] = ChainRpcError("getState failed")
        watcher = self._watcher()

        with self.assertRaises(ChainRpcError):
            await watcher.scan_once()

        self.assertEqual(watcher.last_processed_block, 100)
        await watcher.scan_once()
        self.assertEqual(self.chain.log_queries[-1], (100, 120))
        self.assertEqual(len(self.requested), 1)

    async def test_null_state_is_fatal(self) -> None:
        self.chain.request(make_swap(1, block_number=110), SwapState.NULL)
        watcher = self._watcher()

        with self.assertRaises(SwapStateInconsistencyError):
            await watcher.scan_once()

    async def test_duplicate_discovery_keeps_one_queue_entry(self) -> None:
        swap = make_swap(1, block_number=120)
        self.chain.request(swap)
        watcher = self._watcher()

        await watcher.scan_once()
        # Same block is scanned again because ranges are inclusive.
        await watcher.scan_once()

        self.assertEqual(len(self.requested), 1)
        self.assertEqual(self.requested.pop(), swap)

    async def test_rediscovered_executed_swap_is_a_no_op(self) -> None:
        swap = make_swap(1, block_number=120)
        self.chain.request(swap, SwapState.PAIRED_AND_EXECUTED)
        watcher = self._watcher()

        await watcher.scan_once()
        await watcher.scan_once()

        self.assertEqual(len(self.requested), 0)
        self.assertEqual(len(self.finalization), 0)


if __name__ == "__main__":
    unittest.main()
