"""
Deterministic escrow addresses on the account chain.

Escrows are minimal proxies (EIP-1167) deployed by the factory with CREATE2,
salted by the hash of their immutables, so an address is known before the
deploy transaction is mined.
"""

from typing import Union

from eth_abi import encode
from web3 import Web3

from ..core import Immutables, keccak256, hex_to_bytes, to_address
from ..errors import ValidationError
from ..timelocks import Leg, get_deployed_at

# EIP-1167 proxy init code around the 20-byte implementation address
PROXY_PREFIX = bytes.fromhex("3d602d80600a3d3981f3363d3d373d3d3d363d73")
PROXY_SUFFIX = bytes.fromhex("5af43d82803e903d91602b57fd5bf3")

IMMUTABLES_TYPES = ["bytes32", "bytes32", "uint256", "uint256", "uint256",
                    "uint256", "uint256", "uint256"]


def immutables_hash(immutables: Immutables) -> bytes:
    """keccak256(abi.encode(immutables)), the CREATE2 salt."""
    return keccak256(encode(IMMUTABLES_TYPES, [
        hex_to_bytes(immutables.order_hash, 32, "order_hash"),
        hex_to_bytes(immutables.hashlock, 32, "hashlock"),
        int(immutables.maker, 16),
        int(immutables.taker, 16),
        int(immutables.token, 16),
        immutables.amount,
        immutables.safety_deposit,
        immutables.timelocks,
    ]))


def proxy_bytecode_hash(implementation: str) -> bytes:
    impl = hex_to_bytes(to_address(implementation, "implementation"), 20)
    return keccak256(PROXY_PREFIX + impl + PROXY_SUFFIX)


def create2_address(deployer: str, salt: Union[bytes, str], init_code_hash: Union[bytes, str]) -> str:
    """keccak256(0xff ++ deployer ++ salt ++ init_code_hash)[12:], checksummed."""
    digest = keccak256(b"\xff"
                       + hex_to_bytes(to_address(deployer, "deployer"), 20)
                       + hex_to_bytes(salt, 32, "salt")
                       + hex_to_bytes(init_code_hash, 32, "init_code_hash"))
    return Web3.to_checksum_address(digest[12:])


def compute_escrow_address(factory: str, immutables: Immutables,
                           implementation_code_hash: Union[bytes, str], kind: Leg) -> str:
    """
    Address the factory deploys (or deployed) an escrow with these immutables at.

    A destination escrow is salted with its deployment time, so its address
    is unknown until deployed_at is stamped into the timelocks.
    """
    if Leg(kind) is Leg.DST and get_deployed_at(immutables.timelocks) == 0:
        raise ValidationError("Destination escrow address needs deployed_at",
                              order_hash=immutables.order_hash)
    return create2_address(factory, immutables_hash(immutables), implementation_code_hash)


def escrow_address(immutables: Immutables, factory: str, implementation: str,
                   kind: Leg = Leg.SRC) -> str:
    return compute_escrow_address(factory, immutables, proxy_bytecode_hash(implementation), kind)
