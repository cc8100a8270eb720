"""
Cross-chain swap resolver.

Fills swap orders between an EVM chain and a bitcoin chain with hash
time-locked escrows on both sides.

Usage:
    from resolver import ResolverConfig, build_orchestrator

    config = ResolverConfig.from_file("config.json")
    orchestrator = build_orchestrator(config)

    orchestrator.submit(order)
    orchestrator.create_escrows(order.hash)
    orchestrator.withdraw(order.hash, secret)
"""

from .core import (
    ChainKind,
    OrderStatus,
    HashLock,
    Immutables,
    DstComplement,
    LimitOrder,
    Order,
    TxReceipt,
    generate_secret,
)
from .errors import ResolverError
from .timelocks import Leg, TimeLockSchedule, pack, unpack, unpack_for_leg, set_deployed_at
from .signing import Signer, LocalSigner, RemoteSigner
from .store import OrderStore, MemoryOrderStore, JSONFileOrderStore, RedisOrderStore, build_store
from .swap import Orchestrator, OrchestratorConfig, TransitionResult
from .config import ResolverConfig, build_signer, build_adapters, build_orchestrator

__version__ = "0.1.0"
__all__ = [
    # Core types
    "ChainKind",
    "OrderStatus",
    "HashLock",
    "Immutables",
    "DstComplement",
    "LimitOrder",
    "Order",
    "TxReceipt",
    "generate_secret",
    "ResolverError",
    # Time-locks
    "Leg",
    "TimeLockSchedule",
    "pack",
    "unpack",
    "unpack_for_leg",
    "set_deployed_at",
    # Signing
    "Signer",
    "LocalSigner",
    "RemoteSigner",
    # Storage
    "OrderStore",
    "MemoryOrderStore",
    "JSONFileOrderStore",
    "RedisOrderStore",
    "build_store",
    # Orchestration
    "Orchestrator",
    "OrchestratorConfig",
    "TransitionResult",
    "ResolverConfig",
    "build_signer",
    "build_adapters",
    "build_orchestrator",
]
