"""
Chain adapters.

Each adapter provides the same leg-level operations:
- Creating source / destination escrows
- Withdrawing and cancelling them
- Waiting for confirmations
"""

from .base import ChainAdapter, SrcEscrow, DstEscrow
from .btc import BTCAdapter, BTCConfig, EsploraClient
from .evm import EVMAdapter, EVMConfig

__all__ = [
    "ChainAdapter",
    "SrcEscrow",
    "DstEscrow",
    "BTCAdapter",
    "BTCConfig",
    "EsploraClient",
    "EVMAdapter",
    "EVMConfig",
]
