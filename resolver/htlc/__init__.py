"""
Lock scripts and escrow addresses.

- btc: P2SH HTLC scripts (claim with secret / refund after timeout)
- escrow: CREATE2 addresses of account-chain escrow clones
"""

from .btc import (
    ClaimableScript,
    build_claimable_script,
    parse_claimable_script,
    build_unlocking_script,
    p2sh_address,
    p2wpkh_address,
    btc_address_to_evm,
    evm_to_btc_address,
)
from .escrow import immutables_hash, create2_address, escrow_address

__all__ = [
    "ClaimableScript",
    "build_claimable_script",
    "parse_claimable_script",
    "build_unlocking_script",
    "p2sh_address",
    "p2wpkh_address",
    "btc_address_to_evm",
    "evm_to_btc_address",
    "immutables_hash",
    "create2_address",
    "escrow_address",
]
