"""
Signing capability.

Adapters never hold key material: they ask a Signer to sign a 32-byte
digest under a named key context ("evm", "btc", ...).

- LocalSigner keeps keys in process (development, tests, single-box deploys)
- RemoteSigner delegates to an external signing service over HTTP
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict

import base58
import httpx
from ecdsa import SigningKey, SECP256k1
from ecdsa.util import sigencode_der_canonize
from eth_account import Account
from eth_keys import keys

from .core import ChainKind, hex_to_bytes, strip_0x
from .errors import ConfigurationError, ValidationError, Timeout, RpcUnavailable

log = logging.getLogger(__name__)


class Signer(ABC):
    """Signs digests for a chain kind under a key context."""

    @abstractmethod
    def sign(self, chain_kind: ChainKind, context: str, payload_hash: bytes) -> bytes:
        """
        Sign a 32-byte digest.

        Returns:
            BTC: DER signature, low-S, without sighash byte
            EVM: 65 bytes r || s || v with v in {27, 28}
        """

    @abstractmethod
    def public_key(self, chain_kind: ChainKind, context: str) -> bytes:
        """33-byte compressed secp256k1 public key."""


def evm_address(signer: Signer, context: str) -> str:
    """Checksum account address of an EVM key context."""
    pub = keys.PublicKey.from_compressed_bytes(signer.public_key(ChainKind.EVM, context))
    return pub.to_checksum_address()


def decode_btc_key(value: str) -> bytes:
    """32-byte private key from WIF or (0x) hex."""
    value = value.strip()
    if len(strip_0x(value)) == 64:
        return hex_to_bytes(value, 32, "btc private key")
    try:
        decoded = base58.b58decode_check(value)
    except ValueError:
        raise ConfigurationError("BTC private key is neither hex nor valid WIF")
    if decoded[0] not in (0x80, 0xef):
        raise ConfigurationError(f"Unknown WIF prefix 0x{decoded[0]:02x}")
    if len(decoded) == 34 and decoded[-1] == 0x01:
        return decoded[1:33]
    if len(decoded) == 33:
        return decoded[1:]
    raise ConfigurationError("Malformed WIF payload")


class LocalSigner(Signer):
    """
    In-process signer.

    Args:
        private_keys: context -> private key (EVM hex; BTC WIF or hex)
    """

    def __init__(self, private_keys: Dict[str, str]):
        self._keys = dict(private_keys)

    def _key(self, context: str) -> str:
        try:
            return self._keys[context]
        except KeyError:
            raise ConfigurationError(f"No key configured for context '{context}'")

    def sign(self, chain_kind: ChainKind, context: str, payload_hash: bytes) -> bytes:
        if len(payload_hash) != 32:
            raise ValidationError("payload hash must be 32 bytes")
        key = self._key(context)

        if ChainKind(chain_kind) is ChainKind.BTC:
            sk = SigningKey.from_string(decode_btc_key(key), curve=SECP256k1)
            return sk.sign_digest(payload_hash, sigencode=sigencode_der_canonize)

        account = Account.from_key(hex_to_bytes(key, 32, "evm private key"))
        return bytes(account.unsafe_sign_hash(payload_hash).signature)

    def public_key(self, chain_kind: ChainKind, context: str) -> bytes:
        key = self._key(context)
        if ChainKind(chain_kind) is ChainKind.BTC:
            sk = SigningKey.from_string(decode_btc_key(key), curve=SECP256k1)
            return sk.get_verifying_key().to_string("compressed")
        return keys.PrivateKey(hex_to_bytes(key, 32, "evm private key")).public_key.to_compressed_bytes()


class RemoteSigner(Signer):
    """
    Signer backed by an external signing service.

    POST /sign {chain, context, hash} -> {signature}
    GET /public-key?chain=&context=   -> {public_key}
    """

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.Client = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)
        self._pubkeys: Dict[tuple, bytes] = {}

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.TimeoutException:
            raise Timeout(f"Signer timed out on {path}", url=self.base_url)
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                raise RpcUnavailable(f"Signer error {e.response.status_code}", url=self.base_url)
            raise ValidationError(f"Signer rejected request: {e.response.text}",
                                  status=e.response.status_code)
        except httpx.HTTPError as e:
            raise RpcUnavailable(f"Signer unreachable: {e}", url=self.base_url)

    def sign(self, chain_kind: ChainKind, context: str, payload_hash: bytes) -> bytes:
        data = self._request("POST", "/sign", json={
            "chain": ChainKind(chain_kind).value,
            "context": context,
            "hash": "0x" + payload_hash.hex(),
        })
        return hex_to_bytes(data["signature"], name="signature")

    def public_key(self, chain_kind: ChainKind, context: str) -> bytes:
        cache_key = (ChainKind(chain_kind).value, context)
        if cache_key not in self._pubkeys:
            data = self._request("GET", "/public-key",
                                 params={"chain": cache_key[0], "context": context})
            self._pubkeys[cache_key] = hex_to_bytes(data["public_key"], 33, "public_key")
        return self._pubkeys[cache_key]

    def close(self):
        self._client.close()
