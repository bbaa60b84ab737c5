from __future__ import annotations

import asyncio
import logging
import unittest
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import aiohttp
from eth_utils import to_checksum_address
from keeper_fakes import FROM_TOKEN, MILKMAN, USER, make_quote, make_swap
from web3.datastructures import AttributeDict

from milkman_keeper.chain import EthereumClient
from milkman_keeper.trading import (
    ChainRpcError,
    FeeModel,
    SwapPricingEngine,
    SwapState,
    SwapStateInconsistencyError,
    TransactionRevertedError,
)
from milkman_keeper.trading.encoder import BALANCE_ERC20, KIND_SELL

PRIVATE_KEY = "0x" + "4c" * 32
STATE_HELPER = to_checksum_address("0x" + "77" * 20)
TX_HASH = bytes.fromhex("ab" * 32)


async def _resolve(value: Any) -> Any:
    if isinstance(value, BaseException):
        raise value
    return value


class FakeEth:
    def __init__(self) -> None:
        self.chain_id_value: Any = 1
        self.block_number_value: Any = 123
        self.contracts: dict[str, MagicMock] = {}
        self.get_block = AsyncMock(return_value={"number": 123, "timestamp": 1_700_000_000})
        self.get_transaction_count = AsyncMock(return_value=5)
        self.send_raw_transaction = AsyncMock(return_value=TX_HASH)
        self.wait_for_transaction_receipt = AsyncMock(
            return_value={"status": 1, "blockNumber": 124, "gasUsed": 90_000}
        )

    @property
    def chain_id(self) -> Any:
        return _resolve(self.chain_id_value)

    @property
    def block_number(self) -> Any:
        return _resolve(self.block_number_value)

    def contract(self, *, address: str, abi: list[dict[str, Any]]) -> MagicMock:
        return self.contracts.setdefault(address, MagicMock(name=f"contract:{address}"))


def _transaction(nonce: int = 5) -> dict[str, Any]:
    return {
        "to": MILKMAN,
        "value": 0,
        "gas": 250_000,
        "gasPrice": 20 * 10**9,
        "nonce": nonce,
        "chainId": 1,
        "data": "0x",
    }


class EthereumClientTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.eth = FakeEth()
        self.w3 = MagicMock()
        self.w3.eth = self.eth
        self.w3.provider.disconnect = AsyncMock()
        self.client = EthereumClient(
            logger=logging.getLogger("test.chain"),
            rpc_url="https://rpc.example.org",
            private_key=PRIVATE_KEY,
            milkman_address=MILKMAN,
            state_helper_address=STATE_HELPER,
            web3=self.w3,
        )
        self.milkman = self.eth.contract(address=MILKMAN, abi=[])
        self.state_helper = self.eth.contract(address=STATE_HELPER, abi=[])
        self.swap = make_swap(1)

    def _plan(self):
        engine = SwapPricingEngine(slippage_bps=50, order_validity_seconds=86_400, fee_model=FeeModel.INCLUDED)
        return engine.plan(swap=self.swap, quote=make_quote(), chain_timestamp=1_700_000_000)

    def _expect_transaction(self, function: MagicMock) -> MagicMock:
        function_call = MagicMock()
        function_call.build_transaction = AsyncMock(side_effect=lambda params: _transaction(params["nonce"]))
        function.return_value = function_call
        return function_call

    async def test_connect_reads_chain_id(self) -> None:
        await self.client.connect()
        await self.client.close()

        self.w3.provider.disconnect.assert_awaited_once()

    async def test_block_number_and_timestamp(self) -> None:
        self.assertEqual(await self.client.get_latest_block_number(), 123)
        self.assertEqual(await self.client.get_chain_timestamp(), 1_700_000_000)
        self.eth.get_block.assert_awaited_once_with("latest")

    async def test_rpc_failures_are_wrapped(self) -> None:
        self.eth.block_number_value = aiohttp.ClientConnectionError("connection refused")

        with self.assertRaises(ChainRpcError):
            await self.client.get_latest_block_number()

    async def test_get_requested_swaps_maps_events(self) -> None:
        event = AttributeDict(
            {
                "args": AttributeDict(
                    {
                        "swapId": self.swap.swap_id,
                        "user": self.swap.user,
                        "receiver": self.swap.receiver,
                        "fromToken": self.swap.from_token,
                        "toToken": self.swap.to_token,
                        "amountIn": self.swap.amount_in,
                        "priceChecker": self.swap.price_checker,
                        "priceCheckerData": self.swap.price_checker_data,
                        "nonce": self.swap.nonce,
                    }
                ),
                "blockNumber": 110,
            }
        )
        get_logs = AsyncMock(return_value=[event])
        self.milkman.events.SwapRequested.return_value.get_logs = get_logs

        swaps = await self.client.get_requested_swaps(100, 120)

        self.assertEqual(swaps, [self.swap])
        self.assertEqual(swaps[0].block_number, 110)
        get_logs.assert_awaited_once_with(from_block=100, to_block=120)

    async def test_get_swap_state_reads_state_helper(self) -> None:
        call = AsyncMock(return_value=3)
        self.state_helper.functions.getState.return_value.call = call

        state = await self.client.get_swap_state(self.swap.swap_id)

        self.assertEqual(state, SwapState.PAIRED_AND_UNPAIRABLE)
        self.state_helper.functions.getState.assert_called_with(self.swap.swap_id)

    async def test_unknown_state_code_is_fatal_not_transient(self) -> None:
        self.state_helper.functions.getState.return_value.call = AsyncMock(return_value=9)

        with self.assertRaises(SwapStateInconsistencyError):
            await self.client.get_swap_state(self.swap.swap_id)

    async def test_get_balance_of_uses_erc20_contract(self) -> None:
        token = self.eth.contract(address=FROM_TOKEN, abi=[])
        token.functions.balanceOf.return_value.call = AsyncMock(return_value=10**18)

        balance = await self.client.get_balance_of(FROM_TOKEN.lower(), USER.lower())

        self.assertEqual(balance, 10**18)
        token.functions.balanceOf.assert_called_with(USER)

    async def test_order_struct_matches_plan(self) -> None:
        plan = self._plan()

        struct = self.client.build_order_struct(self.swap, plan)

        self.assertEqual(struct[0:3], (self.swap.from_token, self.swap.to_token, self.swap.receiver))
        self.assertEqual(struct[3:6], (10_000, 19_900, 1_700_086_400))
        self.assertEqual(struct[7], 0)
        self.assertEqual(struct[8], KIND_SELL)
        self.assertFalse(struct[9])
        self.assertEqual(struct[10:], (BALANCE_ERC20, BALANCE_ERC20))

    async def test_pair_swap_signs_and_waits_for_receipt(self) -> None:
        function_call = self._expect_transaction(self.milkman.functions.pairSwap)
        plan = self._plan()

        tx_hash = await self.client.pair_swap(self.swap, plan)

        self.assertEqual(tx_hash, "0x" + "ab" * 32)
        self.milkman.functions.pairSwap.assert_called_once_with(
            self.client.build_order_struct(self.swap, plan),
            self.swap.user,
            self.swap.price_checker,
            self.swap.price_checker_data,
            self.swap.nonce,
        )
        self.eth.get_transaction_count.assert_awaited_once_with(self.client.keeper_address, "pending")
        function_call.build_transaction.assert_awaited_once_with(
            {"from": self.client.keeper_address, "nonce": 5, "chainId": 1}
        )
        self.eth.send_raw_transaction.assert_awaited_once()
        self.eth.wait_for_transaction_receipt.assert_awaited_once_with(TX_HASH, timeout=300.0)

    async def test_reverted_receipt_raises(self) -> None:
        self._expect_transaction(self.milkman.functions.unpairSwap)
        self.eth.wait_for_transaction_receipt.return_value = {"status": 0, "blockNumber": 124}

        with self.assertRaises(TransactionRevertedError) as context:
            await self.client.unpair_swap(self.swap.swap_id)

        self.assertEqual(context.exception.tx_hash, "0x" + "ab" * 32)
        self.assertIsInstance(context.exception, ChainRpcError)
        self.milkman.functions.unpairSwap.assert_called_once_with(self.swap.swap_id)

    async def test_concurrent_transactions_do_not_share_a_nonce_window(self) -> None:
        self._expect_transaction(self.milkman.functions.pairSwap)
        self._expect_transaction(self.milkman.functions.unpairSwap)
        calls: list[str] = []
        nonce = 5

        async def get_transaction_count(address: str, block: str) -> int:
            calls.append("nonce")
            await asyncio.sleep(0)
            return nonce + calls.count("send")

        async def send_raw_transaction(raw: bytes) -> bytes:
            await asyncio.sleep(0)
            calls.append("send")
            return TX_HASH

        self.eth.get_transaction_count.side_effect = get_transaction_count
        self.eth.send_raw_transaction.side_effect = send_raw_transaction

        await asyncio.gather(
            self.client.pair_swap(self.swap, self._plan()),
            self.client.unpair_swap(make_swap(2).swap_id),
        )

        self.assertEqual(calls, ["nonce", "send", "nonce", "send"])


if __name__ == "__main__":
    unittest.main()
