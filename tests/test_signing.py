#!/usr/bin/env python3
"""
Signer tests: local keys (WIF / hex), EVM recovery, remote signer HTTP mapping.
"""

import sys
import os
import json
import unittest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import httpx
from ecdsa import VerifyingKey, SECP256k1
from ecdsa.util import sigdecode_der
from eth_keys import keys

from helpers import EVM_KEY, EVM_KEY_ADDRESS

from resolver.core import ChainKind, keccak256
from resolver.errors import ConfigurationError, ValidationError, RpcUnavailable, Timeout
from resolver.signing import LocalSigner, RemoteSigner, decode_btc_key, evm_address

ONE_HEX = "00" * 31 + "01"
ONE_WIF = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"
G_PUBKEY = bytes.fromhex("0279BE667EF9DCBBAC55A06295CE870B07029BFCDB2DCE28D959F2815B16F81798")
DIGEST = keccak256(b"resolver")


class TestDecodeBtcKey(unittest.TestCase):

    def test_hex(self):
        self.assertEqual(decode_btc_key("0x" + ONE_HEX), bytes.fromhex(ONE_HEX))

    def test_compressed_wif(self):
        self.assertEqual(decode_btc_key(ONE_WIF), bytes.fromhex(ONE_HEX))

    def test_garbage(self):
        with self.assertRaises(ConfigurationError):
            decode_btc_key("not-a-key")


class TestLocalSignerBtc(unittest.TestCase):

    def setUp(self):
        self.signer = LocalSigner({"btc": ONE_WIF})

    def test_public_key(self):
        self.assertEqual(self.signer.public_key(ChainKind.BTC, "btc"), G_PUBKEY)

    def test_signature_verifies_and_is_low_s(self):
        sig = self.signer.sign(ChainKind.BTC, "btc", DIGEST)
        vk = VerifyingKey.from_string(G_PUBKEY, curve=SECP256k1)
        self.assertTrue(vk.verify_digest(sig, DIGEST, sigdecode=sigdecode_der))
        _, s = sigdecode_der(sig, SECP256k1.order)
        self.assertLessEqual(s, SECP256k1.order // 2)

    def test_unknown_context(self):
        with self.assertRaises(ConfigurationError):
            self.signer.sign(ChainKind.BTC, "other", DIGEST)

    def test_digest_length(self):
        with self.assertRaises(ValidationError):
            self.signer.sign(ChainKind.BTC, "btc", b"\x01" * 31)


class TestLocalSignerEvm(unittest.TestCase):

    def setUp(self):
        self.signer = LocalSigner({"evm": EVM_KEY})

    def test_address(self):
        self.assertEqual(evm_address(self.signer, "evm"), EVM_KEY_ADDRESS)

    def test_signature_recovers_to_address(self):
        sig = self.signer.sign(ChainKind.EVM, "evm", DIGEST)
        self.assertEqual(len(sig), 65)
        self.assertIn(sig[64], (27, 28))
        recovered = keys.Signature(sig[:64] + bytes([sig[64] - 27])).recover_public_key_from_msg_hash(DIGEST)
        self.assertEqual(recovered.to_checksum_address(), EVM_KEY_ADDRESS)


class TestRemoteSigner(unittest.TestCase):

    def _signer(self, handler):
        client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://signer")
        return RemoteSigner("http://signer", client=client)

    def test_sign(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"signature": "0x3044"})

        sig = self._signer(handler).sign(ChainKind.BTC, "btc", DIGEST)
        self.assertEqual(sig, bytes.fromhex("3044"))
        self.assertEqual(seen["path"], "/sign")
        self.assertEqual(seen["body"], {"chain": "btc", "context": "btc", "hash": "0x" + DIGEST.hex()})

    def test_public_key_cached(self):
        calls = []

        def handler(request):
            calls.append(dict(request.url.params))
            return httpx.Response(200, json={"public_key": "0x" + G_PUBKEY.hex()})

        signer = self._signer(handler)
        self.assertEqual(signer.public_key(ChainKind.BTC, "btc"), G_PUBKEY)
        self.assertEqual(signer.public_key(ChainKind.BTC, "btc"), G_PUBKEY)
        self.assertEqual(calls, [{"chain": "btc", "context": "btc"}])

    def test_server_error(self):
        signer = self._signer(lambda request: httpx.Response(503, text="busy"))
        with self.assertRaises(RpcUnavailable):
            signer.sign(ChainKind.EVM, "evm", DIGEST)

    def test_rejected(self):
        signer = self._signer(lambda request: httpx.Response(403, text="policy"))
        with self.assertRaises(ValidationError):
            signer.sign(ChainKind.EVM, "evm", DIGEST)

    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with self.assertRaises(Timeout):
            self._signer(handler).sign(ChainKind.EVM, "evm", DIGEST)

    def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with self.assertRaises(RpcUnavailable):
            self._signer(handler).public_key(ChainKind.EVM, "evm")


if __name__ == "__main__":
    unittest.main()
