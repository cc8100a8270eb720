"""
Resolver configuration.

Chains come from a JSON file (RESOLVER_CONFIG), everything else from the
environment:

    RESOLVER_CONFIG     path to the chain JSON
    ORDER_STORE_URL     memory:// | file://<path> | redis://...
    SIGNER_URL          remote signer base URL (local keys when unset)
    EVM_PRIVATE_KEY     local key for key_id "evm"
    BTC_PRIVATE_KEY     local key for key_id "btc" (WIF or hex)
"""

import os
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any

from .chains.base import ChainAdapter
from .chains.btc import BTCAdapter, BTCConfig
from .chains.evm import EVMAdapter, EVMConfig
from .errors import ConfigurationError
from .signing import Signer, LocalSigner, RemoteSigner
from .store import OrderStore, build_store
from .swap.orchestrator import Orchestrator, OrchestratorConfig

log = logging.getLogger(__name__)


@dataclass
class ResolverConfig:
    """Everything needed to wire a resolver."""
    evm_chains: List[EVMConfig] = field(default_factory=list)
    btc_chains: List[BTCConfig] = field(default_factory=list)
    store_url: str = "memory://"
    signer_url: str = ""
    signer_timeout: float = 10.0
    retry_attempts: int = 3
    retry_backoff: float = 1.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolverConfig":
        try:
            return cls(
                evm_chains=[EVMConfig(**c) for c in data.get("evm_chains", [])],
                btc_chains=[BTCConfig(**c) for c in data.get("btc_chains", [])],
                store_url=data.get("store_url", "memory://"),
                signer_url=data.get("signer_url", ""),
                signer_timeout=float(data.get("signer_timeout", 10.0)),
                retry_attempts=int(data.get("retry_attempts", 3)),
                retry_backoff=float(data.get("retry_backoff", 1.0)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid resolver config: {e}")

    @classmethod
    def from_file(cls, path: str) -> "ResolverConfig":
        path = os.path.expanduser(path)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config {path}: {e}")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, environ: Dict[str, str] = None) -> "ResolverConfig":
        environ = os.environ if environ is None else environ
        path = environ.get("RESOLVER_CONFIG")
        config = cls.from_file(path) if path else cls()
        if environ.get("ORDER_STORE_URL"):
            config.store_url = environ["ORDER_STORE_URL"]
        if environ.get("SIGNER_URL"):
            config.signer_url = environ["SIGNER_URL"]
        return config

    def validate(self) -> "ResolverConfig":
        chain_ids = [c.chain_id for c in self.evm_chains] + [c.chain_id for c in self.btc_chains]
        duplicates = {c for c in chain_ids if chain_ids.count(c) > 1}
        if duplicates:
            raise ConfigurationError(f"Duplicate chain ids: {sorted(duplicates)}")
        return self

    def key_ids(self) -> List[str]:
        ids = [c.key_id for c in self.evm_chains] + [c.key_id for c in self.btc_chains]
        return sorted(set(ids))


def build_signer(config: ResolverConfig, environ: Dict[str, str] = None) -> Signer:
    """RemoteSigner when signer_url is set, else LocalSigner from <KEY_ID>_PRIVATE_KEY."""
    if config.signer_url:
        log.info(f"Using remote signer at {config.signer_url}")
        return RemoteSigner(config.signer_url, timeout=config.signer_timeout)

    environ = os.environ if environ is None else environ
    private_keys = {}
    for key_id in config.key_ids():
        value = environ.get(f"{key_id.upper()}_PRIVATE_KEY")
        if value:
            private_keys[key_id] = value
        else:
            log.warning(f"No {key_id.upper()}_PRIVATE_KEY set, chains using '{key_id}' cannot sign")
    return LocalSigner(private_keys)


def build_adapters(config: ResolverConfig, signer: Signer) -> Dict[int, ChainAdapter]:
    """One adapter per configured chain id."""
    config.validate()
    adapters: Dict[int, ChainAdapter] = {}
    for evm in config.evm_chains:
        adapters[evm.chain_id] = EVMAdapter(evm, signer)
    for btc in config.btc_chains:
        adapters[btc.chain_id] = BTCAdapter(btc, signer)
    log.info(f"Configured chains: {sorted(adapters)}")
    return adapters


def build_orchestrator(config: ResolverConfig, signer: Signer = None,
                       store: OrderStore = None) -> Orchestrator:
    signer = signer or build_signer(config)
    store = store or build_store(config.store_url)
    return Orchestrator(
        store=store,
        adapters=build_adapters(config, signer),
        config=OrchestratorConfig(retry_attempts=config.retry_attempts,
                                  retry_backoff=config.retry_backoff),
    )
