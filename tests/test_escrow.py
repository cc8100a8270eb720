#!/usr/bin/env python3
"""
Escrow address derivation (CREATE2 over EIP-1167 proxies).
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from resolver.core import Immutables, keccak256
from resolver.htlc.escrow import (
    PROXY_PREFIX, PROXY_SUFFIX, create2_address, escrow_address, immutables_hash,
    proxy_bytecode_hash, compute_escrow_address,
)
from resolver.errors import ValidationError
from resolver.timelocks import Leg

ZERO_SALT = b"\x00" * 32
FACTORY = "0x" + "fa" * 20
SRC_IMPL = "0x" + "11" * 20
DST_IMPL = "0x" + "22" * 20


def _immutables(**kw):
    values = dict(order_hash="0x" + "ab" * 32, hashlock="0x" + "cd" * 32,
                  maker="0x" + "01" * 20, taker="0x" + "02" * 20, token="0x" + "00" * 20,
                  amount=10_000, safety_deposit=0, timelocks=(1_700_000_000 << 224) | 10)
    values.update(kw)
    return Immutables(**values)


class TestCreate2(unittest.TestCase):
    """EIP-1014 reference vectors."""

    def test_zero_deployer(self):
        address = create2_address("0x" + "00" * 20, ZERO_SALT, keccak256(b"\x00"))
        self.assertEqual(address, "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38")

    def test_deadbeef_deployer(self):
        address = create2_address("0xdeadbeef00000000000000000000000000000000",
                                  ZERO_SALT, keccak256(b"\x00"))
        self.assertEqual(address, "0xB928f69Bb1D91Cd65274e3c79d8986362984fDA3")

    def test_hex_inputs(self):
        address = create2_address("0x" + "00" * 20, "0x" + "00" * 32,
                                  "0x" + keccak256(b"\x00").hex())
        self.assertEqual(address, "0x4D1A2e2bB4F88F0250f26Ffff098B0b30B26BF38")


class TestEscrowAddress(unittest.TestCase):

    def test_proxy_bytecode_embeds_implementation(self):
        impl = bytes.fromhex(SRC_IMPL[2:])
        self.assertEqual(proxy_bytecode_hash(SRC_IMPL), keccak256(PROXY_PREFIX + impl + PROXY_SUFFIX))

    def test_deterministic(self):
        self.assertEqual(escrow_address(_immutables(), FACTORY, SRC_IMPL),
                         escrow_address(_immutables(), FACTORY, SRC_IMPL))

    def test_salted_by_immutables(self):
        """A different deployed-at gives a different escrow."""
        a = escrow_address(_immutables(), FACTORY, SRC_IMPL)
        b = escrow_address(_immutables().with_deployed_at(1_700_000_001), FACTORY, SRC_IMPL)
        self.assertNotEqual(a, b)
        self.assertNotEqual(immutables_hash(_immutables()),
                            immutables_hash(_immutables(amount=10_001)))

    def test_implementation_matters(self):
        self.assertNotEqual(escrow_address(_immutables(), FACTORY, SRC_IMPL),
                            escrow_address(_immutables(), FACTORY, DST_IMPL))

    def test_matches_manual_create2(self):
        expected = create2_address(FACTORY, immutables_hash(_immutables()),
                                   proxy_bytecode_hash(DST_IMPL))
        self.assertEqual(escrow_address(_immutables(), FACTORY, DST_IMPL), expected)

    def test_dst_needs_deployed_at(self):
        undeployed = _immutables(timelocks=10)
        code_hash = proxy_bytecode_hash(DST_IMPL)
        with self.assertRaises(ValidationError):
            compute_escrow_address(FACTORY, undeployed, code_hash, Leg.DST)
        compute_escrow_address(FACTORY, undeployed, code_hash, Leg.SRC)
        self.assertEqual(compute_escrow_address(FACTORY, _immutables(), code_hash, Leg.DST),
                         escrow_address(_immutables(), FACTORY, DST_IMPL, Leg.DST))


if __name__ == "__main__":
    unittest.main()
