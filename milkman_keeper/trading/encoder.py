from __future__ import annotations

from eth_abi import encode

from .types import OrderPlan, Swap, to_bytes32

DEFAULT_APP_DATA = "0x2B8694ED30082129598720860E8E972F07AA10D9B81CAE16CA0E2CFB24743E24"
# keccak256("sell") and keccak256("erc20") as used by GPv2Order.
KIND_SELL = bytes.fromhex("f3b277728b3fee749481eb3e0b3b48980dbbab78658fc419025cb16eee346775")
BALANCE_ERC20 = bytes.fromhex("5a28e9363bb942b639270062aa6bb295f434bcdfc42c97267bf003f272060dc9")

EIP1271_PAYLOAD_TYPES = [
    "address",
    "address",
    "address",
    "uint256",
    "uint256",
    "uint32",
    "bytes32",
    "uint256",
    "bytes32",
    "bool",
    "bytes32",
    "bytes32",
    "address",
    "address",
    "bytes",
]


def encode_eip1271_signature(
    *,
    swap: Swap,
    sell_amount: int,
    buy_amount: int,
    valid_to: int,
    fee_amount: int,
    app_data: str = DEFAULT_APP_DATA,
) -> bytes:
    """ABI-encode the order and swap parameters the order contract checks.

    The order is fill-or-kill (``partiallyFillable`` is false) and uses ERC-20
    balances on both sides.
    """
    return encode(
        EIP1271_PAYLOAD_TYPES,
        [
            swap.from_token,
            swap.to_token,
            swap.receiver,
            sell_amount,
            buy_amount,
            valid_to,
            to_bytes32(app_data),
            fee_amount,
            KIND_SELL,
            False,
            BALANCE_ERC20,
            BALANCE_ERC20,
            swap.user,
            swap.price_checker,
            swap.price_checker_data,
        ],
    )


def encode_plan_signature(swap: Swap, plan: OrderPlan, *, app_data: str = DEFAULT_APP_DATA) -> bytes:
    return encode_eip1271_signature(
        swap=swap,
        sell_amount=plan.sell_amount,
        buy_amount=plan.buy_amount,
        valid_to=plan.valid_to,
        fee_amount=plan.fee_amount,
        app_data=app_data,
    )
