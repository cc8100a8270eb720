#!/usr/bin/env python3
"""
Order model tests: hash locks, status transitions, write-once fields.
"""

import sys
import os
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from helpers import SECRET, make_evm_order, make_evm_to_btc_order

from resolver.core import (
    ChainKind, OrderStatus, Order, HashLock, Immutables, DstComplement, PendingTx,
    keccak256, sha256, to_address, to_hex32, generate_secret,
)
from resolver.errors import InvalidTransition, SecretMismatch, ValidationError


class TestHashLock(unittest.TestCase):

    def test_from_secret(self):
        raw = bytes.fromhex(SECRET[2:])
        lock = HashLock.from_secret(SECRET)
        self.assertEqual(lock.keccak256, "0x" + keccak256(raw).hex())
        self.assertEqual(lock.sha256, "0x" + sha256(raw).hex())

    def test_for_kind(self):
        lock = HashLock.from_secret(SECRET)
        self.assertEqual(lock.for_kind(ChainKind.BTC), lock.sha256)
        self.assertEqual(lock.for_kind(ChainKind.EVM), lock.keccak256)

    def test_verify_both_kinds(self):
        HashLock.from_secret(SECRET).verify(SECRET, ChainKind.EVM, ChainKind.BTC)

    def test_wrong_secret(self):
        lock = HashLock.from_secret(SECRET)
        with self.assertRaises(SecretMismatch):
            lock.verify("0x" + "00" * 32, ChainKind.EVM)

    def test_short_secret_does_not_match(self):
        self.assertFalse(HashLock.from_secret(SECRET).matches("0x1234", ChainKind.BTC))

    def test_generated_secrets_are_32_bytes(self):
        secret = generate_secret()
        self.assertEqual(len(secret), 66)
        self.assertNotEqual(secret, generate_secret())


class TestHelpers(unittest.TestCase):

    def test_to_address_from_int(self):
        self.assertEqual(to_address(1), "0x" + "00" * 19 + "01")

    def test_to_address_wrong_length(self):
        with self.assertRaises(ValidationError):
            to_address("0x1234")

    def test_to_hex32_rejects_bad_hex(self):
        with self.assertRaises(ValidationError):
            to_hex32("0xzz")


class TestImmutables(unittest.TestCase):

    def _immutables(self):
        return Immutables(order_hash="0x" + "ab" * 32, hashlock="0x" + "cd" * 32,
                          maker="0x" + "01" * 20, taker="0x" + "02" * 20,
                          token="0x" + "03" * 20, amount=100, safety_deposit=5,
                          timelocks=(123 << 224) | 10)

    def test_with_complement(self):
        complement = DstComplement(maker="0x" + "aa" * 20, amount=99, token="0x" + "bb" * 20,
                                   safety_deposit=1, chain_id=2)
        dst = self._immutables().with_complement(complement)
        self.assertEqual(dst.maker, complement.maker)
        self.assertEqual(dst.amount, 99)
        self.assertEqual(dst.token, complement.token)
        self.assertEqual(dst.safety_deposit, 1)
        self.assertEqual(dst.order_hash, self._immutables().order_hash)

    def test_with_deployed_at(self):
        imm = self._immutables().with_deployed_at(456)
        self.assertEqual(imm.deployed_at, 456)
        self.assertEqual(imm.timelocks & 0xffffffff, 10)

    def test_dict_keeps_uint256(self):
        imm = self._immutables()
        data = imm.to_dict()
        self.assertIsInstance(data["timelocks"], str)
        self.assertEqual(Immutables.from_dict(data), imm)


class TestOrderTransitions(unittest.TestCase):

    def test_forward_path(self):
        order = make_evm_order()
        order.advance(OrderStatus.ESCROW_CREATED)
        order.advance(OrderStatus.WITHDRAW_COMPLETED)
        self.assertIs(order.status, OrderStatus.WITHDRAW_COMPLETED)

    def test_skip_rejected(self):
        """created -> withdraw_completed skips escrow creation."""
        order = make_evm_order()
        with self.assertRaises(InvalidTransition):
            order.advance(OrderStatus.WITHDRAW_COMPLETED)
        self.assertIs(order.status, OrderStatus.CREATED)

    def test_backwards_rejected(self):
        order = make_evm_order(status=OrderStatus.WITHDRAW_COMPLETED)
        with self.assertRaises(InvalidTransition):
            order.advance(OrderStatus.ESCROW_CREATED)

    def test_cancel_only_from_escrow_created(self):
        order = make_evm_order()
        with self.assertRaises(InvalidTransition):
            order.advance(OrderStatus.CANCELLED)
        order.advance(OrderStatus.ESCROW_CREATED)
        order.advance(OrderStatus.CANCELLED)
        with self.assertRaises(InvalidTransition):
            order.advance(OrderStatus.WITHDRAW_COMPLETED)


class TestOrderRecord(unittest.TestCase):

    def test_write_once(self):
        order = make_evm_order()
        order.record("src_deploy_tx", "0xaa")
        order.record("src_deploy_tx", "0xaa")
        with self.assertRaises(ValidationError):
            order.record("src_deploy_tx", "0xbb")
        self.assertEqual(order.src_deploy_tx, "0xaa")

    def test_only_execution_fields(self):
        with self.assertRaises(AttributeError):
            make_evm_order().record("making_amount", 1)


class TestOrderValidation(unittest.TestCase):

    def test_evm_source_valid(self):
        make_evm_order().validate(ChainKind.EVM, ChainKind.EVM)

    def test_same_chain(self):
        order = make_evm_order(dst_chain_id=make_evm_order().src_chain_id)
        with self.assertRaises(ValidationError):
            order.validate(ChainKind.EVM, ChainKind.EVM)

    def test_evm_source_needs_signature(self):
        with self.assertRaises(ValidationError):
            make_evm_order(signature=None).validate(ChainKind.EVM, ChainKind.EVM)

    def test_btc_destination_needs_user_key(self):
        order = make_evm_to_btc_order()
        order.btc_user_recipient_key = None
        with self.assertRaises(ValidationError):
            order.validate(ChainKind.EVM, ChainKind.BTC)

    def test_btc_source_needs_funding_tx(self):
        with self.assertRaises(ValidationError):
            make_evm_order().validate(ChainKind.BTC, ChainKind.EVM)


class TestOrderSerialisation(unittest.TestCase):

    def test_dict_round_trip(self):
        order = make_evm_to_btc_order()
        order.record("src_deploy_tx", "0x" + "ee" * 32)
        order.pending_txs["dst_deploy"] = PendingTx(tx_ref="ab" * 32, raw="0200", deployed_at=1_700_000_000)
        restored = Order.from_dict(order.to_dict())
        self.assertEqual(restored.to_dict(), order.to_dict())
        self.assertEqual(restored.pending_txs["dst_deploy"].deployed_at, 1_700_000_000)

    def test_copy_is_independent(self):
        order = make_evm_order()
        clone = order.copy()
        clone.record("src_deploy_tx", "0x01")
        self.assertIsNone(order.src_deploy_tx)

    def test_missing_field(self):
        data = make_evm_order().to_dict()
        del data["hash_lock"]
        with self.assertRaises(ValidationError):
            Order.from_dict(data)

    def test_bad_status(self):
        data = make_evm_order().to_dict()
        data["status"] = "exploded"
        with self.assertRaises(ValidationError):
            Order.from_dict(data)


if __name__ == "__main__":
    unittest.main()
