from __future__ import annotations

from typing import Any

from eth_utils import to_checksum_address

# Mainnet deployments.
DEFAULT_MILKMAN_ADDRESS = to_checksum_address("0x9d763cca6a8551283478cec44071d72ec3fd58cb")
DEFAULT_MILKMAN_STATE_HELPER_ADDRESS = to_checksum_address("0xe549bc5c6023e68d4e5af6afacc45a0db67bf01c")

GPV2_ORDER_COMPONENTS: list[dict[str, Any]] = [
    {"name": "sellToken", "type": "address"},
    {"name": "buyToken", "type": "address"},
    {"name": "receiver", "type": "address"},
    {"name": "sellAmount", "type": "uint256"},
    {"name": "buyAmount", "type": "uint256"},
    {"name": "validTo", "type": "uint32"},
    {"name": "appData", "type": "bytes32"},
    {"name": "feeAmount", "type": "uint256"},
    {"name": "kind", "type": "bytes32"},
    {"name": "partiallyFillable", "type": "bool"},
    {"name": "sellTokenBalance", "type": "bytes32"},
    {"name": "buyTokenBalance", "type": "bytes32"},
]

MILKMAN_ABI: list[dict[str, Any]] = [
    {
        "anonymous": False,
        "name": "SwapRequested",
        "type": "event",
        "inputs": [
            {"indexed": False, "name": "swapId", "type": "bytes32"},
            {"indexed": False, "name": "user", "type": "address"},
            {"indexed": False, "name": "receiver", "type": "address"},
            {"indexed": False, "name": "fromToken", "type": "address"},
            {"indexed": False, "name": "toToken", "type": "address"},
            {"indexed": False, "name": "amountIn", "type": "uint256"},
            {"indexed": False, "name": "priceChecker", "type": "address"},
            {"indexed": False, "name": "priceCheckerData", "type": "bytes"},
            {"indexed": False, "name": "nonce", "type": "uint256"},
        ],
    },
    {
        "name": "pairSwap",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {
                "name": "_order",
                "type": "tuple",
                "internalType": "struct GPv2Order.Data",
                "components": GPV2_ORDER_COMPONENTS,
            },
            {"name": "_user", "type": "address"},
            {"name": "_priceChecker", "type": "address"},
            {"name": "_priceCheckerData", "type": "bytes"},
            {"name": "_nonce", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "unpairSwap",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "_swapID", "type": "bytes32"}],
        "outputs": [],
    },
    {
        "name": "isValidSignature",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "_orderDigest", "type": "bytes32"},
            {"name": "_encodedOrder", "type": "bytes"},
        ],
        "outputs": [{"name": "", "type": "bytes4"}],
    },
]

MILKMAN_STATE_HELPER_ABI: list[dict[str, Any]] = [
    {
        "name": "getState",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "_swapId", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]
