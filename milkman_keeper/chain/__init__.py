from .abis import DEFAULT_MILKMAN_ADDRESS, DEFAULT_MILKMAN_STATE_HELPER_ADDRESS
from .ethereum_client import EthereumClient

__all__ = [
    "DEFAULT_MILKMAN_ADDRESS",
    "DEFAULT_MILKMAN_STATE_HELPER_ADDRESS",
    "EthereumClient",
]
