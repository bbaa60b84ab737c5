from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

import aiohttp
from eth_account import Account
from eth_utils import to_checksum_address
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import Web3Exception

from milkman_keeper.common import log_event
from milkman_keeper.trading.encoder import BALANCE_ERC20, DEFAULT_APP_DATA, KIND_SELL
from milkman_keeper.trading.types import (
    ChainRpcError,
    OrderPlan,
    Swap,
    SwapState,
    TransactionRevertedError,
    swap_from_event,
    swap_state_from_code,
    to_bytes32,
)

from .abis import ERC20_ABI, MILKMAN_ABI, MILKMAN_STATE_HELPER_ABI

T = TypeVar("T")

RPC_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    ValueError,
)


class EthereumClient:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        rpc_url: str,
        private_key: str,
        milkman_address: str,
        state_helper_address: str,
        app_data: str = DEFAULT_APP_DATA,
        request_timeout_seconds: float = 10.0,
        receipt_timeout_seconds: float = 300.0,
        web3: AsyncWeb3 | None = None,
    ) -> None:
        self._logger = logger
        self._rpc_url = rpc_url
        self._account = Account.from_key(private_key)
        self._milkman_address = to_checksum_address(milkman_address)
        self._state_helper_address = to_checksum_address(state_helper_address)
        self._app_data = to_bytes32(app_data)
        self._request_timeout_seconds = request_timeout_seconds
        self._receipt_timeout_seconds = receipt_timeout_seconds
        self._w3 = web3
        self._chain_id: int | None = None
        self._milkman: Any = None
        self._state_helper: Any = None
        # Execution and finalization both send transactions from one account.
        self._tx_lock = asyncio.Lock()

    @property
    def keeper_address(self) -> str:
        return self._account.address

    @property
    def milkman_address(self) -> str:
        return self._milkman_address

    def _web3(self) -> AsyncWeb3:
        if self._w3 is None:
            provider = AsyncHTTPProvider(
                self._rpc_url,
                request_kwargs={"timeout": aiohttp.ClientTimeout(total=self._request_timeout_seconds)},
            )
            self._w3 = AsyncWeb3(provider)
        if self._milkman is None:
            self._milkman = self._w3.eth.contract(address=self._milkman_address, abi=MILKMAN_ABI)
        if self._state_helper is None:
            self._state_helper = self._w3.eth.contract(
                address=self._state_helper_address,
                abi=MILKMAN_STATE_HELPER_ABI,
            )
        return self._w3

    async def _call(self, operation: str, action: Callable[[], Awaitable[T]]) -> T:
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except RPC_ERRORS as error:
            raise ChainRpcError(f"{operation} failed: {error}") from error

    async def connect(self) -> None:
        w3 = self._web3()
        if self._chain_id is None:
            self._chain_id = await self._call("eth_chainId", lambda: w3.eth.chain_id)
            log_event(
                self._logger,
                level="info",
                event="ethereum_client_connected",
                message="Connected to Ethereum RPC",
                chain_id=self._chain_id,
                keeper_address=self.keeper_address,
                milkman_address=self._milkman_address,
            )

    async def close(self) -> None:
        if self._w3 is not None:
            disconnect = getattr(self._w3.provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
        self._chain_id = None

    async def healthcheck(self) -> None:
        await self.get_latest_block_number()

    async def get_latest_block_number(self) -> int:
        w3 = self._web3()
        return int(await self._call("eth_blockNumber", lambda: w3.eth.block_number))

    async def get_chain_timestamp(self) -> int:
        w3 = self._web3()
        block = await self._call("eth_getBlockByNumber", lambda: w3.eth.get_block("latest"))
        return int(block["timestamp"])

    async def get_requested_swaps(self, from_block: int, to_block: int) -> list[Swap]:
        self._web3()
        events = await self._call(
            "eth_getLogs",
            lambda: self._milkman.events.SwapRequested().get_logs(
                from_block=from_block,
                to_block=to_block,
            ),
        )
        return [swap_from_event(event) for event in events]

    async def get_swap_state(self, swap_id: bytes) -> SwapState:
        self._web3()
        raw_state = await self._call(
            "getState",
            lambda: self._state_helper.functions.getState(swap_id).call(),
        )
        return swap_state_from_code(raw_state)

    async def get_balance_of(self, token: str, holder: str) -> int:
        w3 = self._web3()
        contract = w3.eth.contract(address=to_checksum_address(token), abi=ERC20_ABI)
        balance = await self._call(
            "balanceOf",
            lambda: contract.functions.balanceOf(to_checksum_address(holder)).call(),
        )
        return int(balance)

    async def estimate_verification_gas(self, swap: Swap, signature: bytes) -> int:
        self._web3()
        gas = await self._call(
            "isValidSignature.estimateGas",
            lambda: self._milkman.functions.isValidSignature(bytes(32), signature).estimate_gas(
                {"from": self.keeper_address}
            ),
        )
        return int(gas)

    def build_order_struct(self, swap: Swap, plan: OrderPlan) -> tuple[Any, ...]:
        return (
            swap.from_token,
            swap.to_token,
            swap.receiver,
            plan.sell_amount,
            plan.buy_amount,
            plan.valid_to,
            self._app_data,
            plan.fee_amount,
            KIND_SELL,
            False,
            BALANCE_ERC20,
            BALANCE_ERC20,
        )

    async def pair_swap(self, swap: Swap, plan: OrderPlan) -> str:
        self._web3()
        function_call = self._milkman.functions.pairSwap(
            self.build_order_struct(swap, plan),
            swap.user,
            swap.price_checker,
            swap.price_checker_data,
            swap.nonce,
        )
        return await self._transact("pairSwap", function_call, swap_id=swap.swap_id_hex)

    async def unpair_swap(self, swap_id: bytes) -> str:
        self._web3()
        function_call = self._milkman.functions.unpairSwap(swap_id)
        return await self._transact("unpairSwap", function_call, swap_id="0x" + swap_id.hex())

    async def _transact(self, operation: str, function_call: Any, *, swap_id: str) -> str:
        w3 = self._web3()
        await self.connect()

        async with self._tx_lock:
            nonce = await self._call(
                "eth_getTransactionCount",
                lambda: w3.eth.get_transaction_count(self.keeper_address, "pending"),
            )
            tx = await self._call(
                f"{operation}.buildTransaction",
                lambda: function_call.build_transaction(
                    {
                        "from": self.keeper_address,
                        "nonce": nonce,
                        "chainId": self._chain_id,
                    }
                ),
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._call(
                "eth_sendRawTransaction",
                lambda: w3.eth.send_raw_transaction(signed.raw_transaction),
            )

        tx_hash_hex = "0x" + bytes(tx_hash).hex()
        log_event(
            self._logger,
            level="info",
            event="transaction_sent",
            message="Transaction sent; waiting for receipt",
            operation=operation,
            swap_id=swap_id,
            tx_hash=tx_hash_hex,
            nonce=nonce,
        )

        receipt = await self._call(
            "waitForTransactionReceipt",
            lambda: w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._receipt_timeout_seconds),
        )
        if int(receipt["status"]) != 1:
            raise TransactionRevertedError(f"{operation} reverted in tx {tx_hash_hex}", tx_hash=tx_hash_hex)

        log_event(
            self._logger,
            level="info",
            event="transaction_mined",
            message="Transaction mined",
            operation=operation,
            swap_id=swap_id,
            tx_hash=tx_hash_hex,
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed"),
        )
        return tx_hash_hex
