"""
Bitcoin chain adapter.

Talks to an Esplora REST API (blockstream.info / mempool.space / electrs)
and spends from a single P2WPKH wallet owned by the resolver's BTC key.

Source leg (maker locks BTC): the maker funds an HTLC the resolver can claim
with the secret; the resolver only verifies it.
Destination leg (resolver locks BTC): the resolver funds an HTLC the maker
can claim with the secret, refundable to the resolver after cancellation.
"""

import time
import logging
import threading
from dataclasses import dataclass, replace
from typing import Optional, Dict, List, Set, Tuple

import httpx
from bitcoin.core import b2x, b2lx, CTxInWitness, CTxWitness
from bitcoin.core.script import CScriptWitness, SIGHASH_ALL

from ..core import (
    ChainKind, Order, Immutables, DstComplement, TxReceipt, PendingTx, ZERO_ADDRESS,
    hex_to_bytes, to_address,
)
from ..errors import (
    ResolverError, ValidationError, BroadcastRejected, RpcUnavailable, Timeout,
    ConfirmationTimeout, InvalidScriptParameters,
)
from ..htlc.btc import (
    UTXO, build_claimable_script, parse_claimable_script, build_unlocking_script,
    build_funding_tx, build_htlc_spend_tx, htlc_sighash, p2wpkh_sighash,
    p2sh_script_pubkey, p2sh_script_sig, p2sh_address, p2wpkh_address,
    p2wpkh_script_pubkey, pubkey_to_evm, get_network,
)
from ..signing import Signer
from ..timelocks import Leg, pack, set_deployed_at, unpack_for_leg
from .base import ChainAdapter, SrcEscrow, DstEscrow, after_broadcast

log = logging.getLogger(__name__)


@dataclass
class BTCConfig:
    """Bitcoin chain configuration."""
    chain_id: int
    api_url: str                    # Esplora base URL, e.g. https://mempool.space/signet/api
    network: str = "regtest"        # mainnet, testnet, signet, regtest
    key_id: str = "btc"
    fee_sats: int = 10_000          # funding tx fee
    redeem_fee_sats: int = 10_000   # claim / refund tx fee
    dust_limit: int = 546
    poll_interval: float = 5
    confirmation_timeout: float = 300
    request_timeout: float = 10
    wait_for_finality: bool = True


class EsploraClient:
    """Minimal Esplora REST client."""

    def __init__(self, base_url: str, timeout: float = 10.0, client: httpx.Client = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            raise Timeout(f"Esplora timed out on {path}", url=self.base_url)
        except httpx.HTTPError as e:
            raise RpcUnavailable(f"Esplora unreachable: {e}", url=self.base_url)

        if resp.status_code >= 500:
            raise RpcUnavailable(f"Esplora error {resp.status_code} on {path}", url=self.base_url)
        return resp

    def _json(self, resp: httpx.Response, path: str):
        try:
            return resp.json()
        except ValueError:
            raise RpcUnavailable(f"Esplora returned malformed JSON on {path}",
                                 url=self.base_url, body=resp.text[:200])

    def get_utxos(self, address: str) -> List[Dict]:
        resp = self._request("GET", f"/address/{address}/utxo")
        if resp.status_code >= 400:
            raise ValidationError(f"Cannot list UTXOs: {resp.text}", address=address)
        return self._json(resp, f"/address/{address}/utxo")

    def broadcast(self, raw_hex: str) -> str:
        resp = self._request("POST", "/tx", content=raw_hex)
        if resp.status_code >= 400:
            raise BroadcastRejected(resp.text.strip())
        return resp.text.strip()

    def get_tx(self, txid: str) -> Optional[Dict]:
        """Transaction JSON, or None if the node does not know it."""
        resp = self._request("GET", f"/tx/{txid}")
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise ValidationError(f"Cannot fetch tx {txid}: {resp.text}", txid=txid)
        return self._json(resp, f"/tx/{txid}")

    def get_tx_hex(self, txid: str) -> str:
        resp = self._request("GET", f"/tx/{txid}/hex")
        if resp.status_code >= 400:
            raise ValidationError(f"Cannot fetch tx {txid}: {resp.text}", txid=txid)
        return resp.text.strip()

    def get_outspend(self, txid: str, vout: int) -> Dict:
        resp = self._request("GET", f"/tx/{txid}/outspend/{vout}")
        if resp.status_code >= 400:
            raise ValidationError(f"Cannot fetch outspend {txid}:{vout}: {resp.text}", txid=txid)
        return self._json(resp, f"/tx/{txid}/outspend/{vout}")

    def close(self):
        self._client.close()


class BTCAdapter(ChainAdapter):
    """
    Resolver-side client for one bitcoin network.

    Args:
        config: Chain configuration
        signer: Signing capability holding the resolver's BTC key
        client: Optional EsploraClient (defaults to one on config.api_url)
    """

    kind = ChainKind.BTC

    def __init__(self, config: BTCConfig, signer: Signer, client: EsploraClient = None):
        self.config = config
        self.chain_id = config.chain_id
        self.network = get_network(config.network)
        self.signer = signer
        self.client = client or EsploraClient(config.api_url, timeout=config.request_timeout)
        self._pubkey: Optional[bytes] = None
        self._reserved: Set[Tuple[str, int]] = set()
        self._lock = threading.Lock()

    @property
    def pubkey(self) -> bytes:
        if self._pubkey is None:
            self._pubkey = self.signer.public_key(ChainKind.BTC, self.config.key_id)
        return self._pubkey

    @property
    def wallet_address(self) -> str:
        """The resolver's P2WPKH address."""
        return p2wpkh_address(self.pubkey, self.network)

    def _sign(self, digest: bytes) -> bytes:
        return self.signer.sign(ChainKind.BTC, self.config.key_id, digest) + bytes([SIGHASH_ALL])

    # =========================================================================
    # Wallet
    # =========================================================================

    def get_utxos(self, address: str) -> List[UTXO]:
        try:
            return [UTXO(txid=u["txid"], vout=int(u["vout"]), value=int(u["value"]))
                    for u in self.client.get_utxos(address)]
        except (KeyError, TypeError, ValueError) as e:
            raise RpcUnavailable(f"Malformed UTXO listing for {address}: {e!r}",
                                 chain_id=self.chain_id, address=address)

    def get_balance(self, address: str) -> int:
        return sum(u.value for u in self.get_utxos(address))

    def broadcast_raw(self, raw_tx: str) -> str:
        txid = self.client.broadcast(raw_tx)
        log.info(f"[{self.chain_id}] Broadcast {txid}")
        return txid

    def _reserve_inputs(self, script, amount: int):
        """Pick and reserve inputs. Outpoints gone from the listing are unreserved."""
        with self._lock:
            listing = self.get_utxos(self.wallet_address)
            self._reserved &= {(u.txid, u.vout) for u in listing}
            available = [u for u in listing if (u.txid, u.vout) not in self._reserved]
            tx, spent = build_funding_tx(available, script, amount, self.config.fee_sats,
                                         p2wpkh_script_pubkey(self.pubkey), self.config.dust_limit)
            self._reserved |= {(u.txid, u.vout) for u in spent}
            return tx, spent

    def _release(self, spent: List[UTXO]):
        with self._lock:
            self._reserved -= {(u.txid, u.vout) for u in spent}

    def _send_tx(self, tx) -> str:
        """Broadcast tx. Errors that leave its fate unknown carry it as pending."""
        raw = b2x(tx.serialize())
        try:
            return self.broadcast_raw(raw)
        except BroadcastRejected:
            raise
        except ResolverError as e:
            e.pending = PendingTx(tx_ref=b2lx(tx.GetTxid()), raw=raw)
            raise

    def _resume(self, pending: PendingTx) -> TxReceipt:
        """Rebroadcast an earlier transaction verbatim if the node no longer knows it."""
        with after_broadcast(pending):
            if pending.raw and self.client.get_tx(pending.tx_ref) is None:
                log.warning(f"[{self.chain_id}] {pending.tx_ref} unknown to the node, rebroadcasting")
                self.broadcast_raw(pending.raw)
        log.info(f"[{self.chain_id}] Resuming from {pending.tx_ref}")
        return TxReceipt(tx_ref=pending.tx_ref)

    def fund_htlc(self, script, amount: int, pending: Optional[PendingTx] = None) -> TxReceipt:
        """
        Lock amount sats into the P2SH of script.

        Inputs stay reserved when the broadcast outcome is unknown.

        Raises:
            NoUTXOs, InsufficientFunds, BroadcastRejected
        """
        if pending is not None:
            return self._resume(pending)

        tx, spent = self._reserve_inputs(script, amount)
        try:
            signatures = [self._sign(p2wpkh_sighash(tx, i, self.pubkey, utxo.value))
                          for i, utxo in enumerate(spent)]
        except ResolverError:
            self._release(spent)
            raise
        tx.wit = CTxWitness([CTxInWitness(CScriptWitness([sig, self.pubkey]))
                             for sig in signatures])
        try:
            txid = self._send_tx(tx)
        except BroadcastRejected:
            self._release(spent)
            raise

        log.info(f"[{self.chain_id}] Funded HTLC {p2sh_address(script, self.network)} "
                 f"with {amount} sats in {txid}")
        return TxReceipt(tx_ref=txid)

    # =========================================================================
    # HTLC
    # =========================================================================

    def verify_htlc_script_hash_from_tx(self, txid: str, script) -> Tuple[int, int]:
        """
        Locate the output of txid paying to the P2SH of script.

        Returns:
            (vout, value in sats)

        Raises:
            ValidationError: tx unknown or no output pays to the script
        """
        tx = self.client.get_tx(txid)
        if tx is None:
            raise ValidationError(f"Funding transaction {txid} not found", txid=txid)
        expected = p2sh_script_pubkey(script).hex()
        for index, out in enumerate(tx.get("vout") or []):
            if out.get("scriptpubkey") == expected and isinstance(out.get("value"), int):
                return index, out["value"]
        raise ValidationError(f"No output of {txid} pays to the HTLC script", txid=txid)

    def _spend_htlc(self, script, funding_txid: str, secret: Optional[str], claim: bool,
                    pending: Optional[PendingTx] = None) -> TxReceipt:
        if pending is not None:
            return self._resume(pending)
        vout, value = self.verify_htlc_script_hash_from_tx(funding_txid, script)
        tx = build_htlc_spend_tx(funding_txid, vout, value, script,
                                 p2wpkh_script_pubkey(self.pubkey),
                                 self.config.redeem_fee_sats, claim=claim,
                                 dust_limit=self.config.dust_limit)
        sig = self._sign(htlc_sighash(tx, script))
        unlocking = build_unlocking_script(
            sig, hex_to_bytes(secret, 32, "secret") if claim else None, claim=claim)
        tx.vin[0].scriptSig = p2sh_script_sig(unlocking, script)
        return TxReceipt(tx_ref=self._send_tx(tx))

    def redeem_htlc(self, script, funding_txid: str, secret: str,
                    pending: Optional[PendingTx] = None) -> TxReceipt:
        """Spend the claim branch with the secret."""
        return self._spend_htlc(script, funding_txid, secret, claim=True, pending=pending)

    def refund_htlc(self, script, funding_txid: str,
                    pending: Optional[PendingTx] = None) -> TxReceipt:
        """Spend the refund branch after the refund lock."""
        return self._spend_htlc(script, funding_txid, None, claim=False, pending=pending)

    def find_spend(self, txid: str, vout: int) -> Optional[str]:
        """Txid spending txid:vout, if any."""
        outspend = self.client.get_outspend(txid, vout)
        if outspend.get("spent"):
            return outspend.get("txid")
        return None

    # =========================================================================
    # Confirmation
    # =========================================================================

    def wait_for_confirmation(self, tx_ref: str) -> TxReceipt:
        """Poll until tx_ref is mined or confirmation_timeout elapses."""
        deadline = time.monotonic() + self.config.confirmation_timeout
        while True:
            try:
                tx = self.client.get_tx(tx_ref)
                status = (tx or {}).get("status", {})
                if status.get("confirmed"):
                    return TxReceipt(tx_ref=tx_ref,
                                     block_number=status.get("block_height"),
                                     block_timestamp=status.get("block_time"),
                                     block_hash=status.get("block_hash"))
            except (Timeout, RpcUnavailable) as e:
                log.warning(f"[{self.chain_id}] Polling {tx_ref} failed: {e.message}")

            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(f"{tx_ref} not confirmed after "
                                          f"{self.config.confirmation_timeout}s",
                                          chain_id=self.chain_id, tx_ref=tx_ref)
            time.sleep(self.config.poll_interval)

    def wait_for_utxo(self, address: str, timeout: float = None) -> List[UTXO]:
        """Poll until address holds at least one UTXO."""
        timeout = self.config.confirmation_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            try:
                utxos = self.get_utxos(address)
                if utxos:
                    return utxos
            except (Timeout, RpcUnavailable) as e:
                log.warning(f"[{self.chain_id}] Polling UTXOs of {address} failed: {e.message}")
            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(f"No UTXO at {address} after {timeout}s",
                                          chain_id=self.chain_id, address=address)
            time.sleep(self.config.poll_interval)

    # =========================================================================
    # Leg-level operations
    # =========================================================================

    def escrow_taker(self) -> str:
        return pubkey_to_evm(self.pubkey)

    def create_src_escrow(self, order: Order, pending: Optional[PendingTx] = None) -> SrcEscrow:
        """Verify the maker-funded HTLC and derive the source immutables. Nothing is broadcast."""
        params = parse_claimable_script(order.htlc_script)
        user_key = hex_to_bytes(order.btc_user_recipient_key, 33, "btc_user_recipient_key")

        if "0x" + params.hash_lock.hex() != order.hash_lock.sha256:
            raise InvalidScriptParameters("HTLC hash lock does not match the order",
                                          order_hash=order.hash)
        if params.claimer_pubkey != self.pubkey:
            raise InvalidScriptParameters("HTLC is not claimable by the resolver",
                                          order_hash=order.hash)
        if params.refunder_pubkey != user_key:
            raise InvalidScriptParameters("HTLC does not refund to the maker",
                                          order_hash=order.hash)

        vout, value = self.verify_htlc_script_hash_from_tx(order.src_funding_tx, order.htlc_script)
        if value < order.making_amount:
            raise ValidationError("HTLC holds less than the making amount",
                                  order_hash=order.hash, value=value,
                                  making_amount=order.making_amount)

        if self.config.wait_for_finality:
            receipt = self.wait_for_confirmation(order.src_funding_tx)
            deployed_at = receipt.block_timestamp
        else:
            receipt = TxReceipt(tx_ref=order.src_funding_tx)
            deployed_at = int(time.time())
            log.warning(f"[{self.chain_id}] Using wall-clock deployed_at for {order.hash[:18]}..., "
                        f"funding tx {order.src_funding_tx} may not be final")

        immutables = Immutables(
            order_hash=order.hash,
            hashlock=order.hash_lock.sha256,
            maker=pubkey_to_evm(user_key),
            taker=self.escrow_taker(),
            token=ZERO_ADDRESS,
            amount=order.making_amount,
            safety_deposit=0,
            timelocks=set_deployed_at(pack(order.time_locks), deployed_at),
        )
        complement = DstComplement(
            maker=to_address(order.receiver_address, "receiver_address"),
            amount=order.taking_amount,
            token=order.taker_asset,
            safety_deposit=order.dst_safety_deposit,
            chain_id=order.dst_chain_id,
        )
        log.info(f"[{self.chain_id}] Source HTLC verified for {order.hash[:18]}...: "
                 f"{value} sats at {order.src_funding_tx}:{vout}")
        return SrcEscrow(immutables=immutables, complement=complement,
                         address=p2sh_address(order.htlc_script, self.network),
                         receipt=receipt)

    def create_dst_escrow(self, order: Order, dst_immutables: Immutables,
                          src_cancellation: int, pending: Optional[PendingTx] = None) -> DstEscrow:
        """Fund an HTLC the maker claims with the secret."""
        user_key = hex_to_bytes(order.btc_user_recipient_key, 33, "btc_user_recipient_key")
        if dst_immutables.maker != pubkey_to_evm(user_key):
            raise ValidationError("Destination maker does not match btc_user_recipient_key",
                                  order_hash=order.hash, maker=dst_immutables.maker)

        # The script embeds absolute deadlines, so deployed_at is fixed before
        # funding and reused verbatim when resuming.
        if pending is None:
            deployed_at = int(time.time())
        elif pending.deployed_at is None:
            raise ValidationError("Pending destination funding has no deployed_at",
                                  order_hash=order.hash, tx_ref=pending.tx_ref)
        else:
            deployed_at = pending.deployed_at

        immutables = dst_immutables.with_deployed_at(deployed_at)
        locks = unpack_for_leg(immutables.timelocks, Leg.DST)
        if locks.cancellation_deadline > src_cancellation:
            raise ValidationError("Destination cancellation would open after the source's",
                                  order_hash=order.hash,
                                  dst_cancellation=locks.cancellation_deadline,
                                  src_cancellation=src_cancellation)

        script = build_claimable_script(
            order_hash=immutables.order_hash,
            hash_lock=immutables.hashlock,
            claim_lock_time=locks.withdrawal_deadline,
            refund_lock_time=locks.cancellation_deadline,
            claimer_pubkey=user_key,
            refunder_pubkey=self.pubkey,
        )
        try:
            receipt = self.fund_htlc(script, immutables.amount, pending=pending)
        except ResolverError as e:
            if e.pending is not None:
                e.pending = replace(e.pending, deployed_at=deployed_at)
            raise
        if self.config.wait_for_finality:
            with after_broadcast(PendingTx(tx_ref=receipt.tx_ref, deployed_at=deployed_at)):
                receipt = self.wait_for_confirmation(receipt.tx_ref)

        return DstEscrow(immutables=immutables,
                         address=p2sh_address(script, self.network),
                         receipt=receipt,
                         htlc_script=bytes(script).hex())

    def withdraw_escrow(self, leg: Leg, order: Order, secret: str,
                        pending: Optional[PendingTx] = None) -> Optional[TxReceipt]:
        if not order.htlc_script:
            raise ValidationError("No HTLC script recorded", order_hash=order.hash)

        if Leg(leg) is Leg.SRC:
            receipt = self.redeem_htlc(order.htlc_script, order.src_funding_tx, secret,
                                       pending=pending)
            log.info(f"[{self.chain_id}] Claimed source HTLC for {order.hash[:18]}...: {receipt.tx_ref}")
            return receipt

        # The maker claims the destination HTLC with their own key
        vout, _ = self.verify_htlc_script_hash_from_tx(order.dst_deploy_tx, order.htlc_script)
        spend = self.find_spend(order.dst_deploy_tx, vout)
        if spend is None:
            log.info(f"[{self.chain_id}] Destination HTLC for {order.hash[:18]}... not claimed yet")
            return None
        return TxReceipt(tx_ref=spend)

    def cancel_escrow(self, leg: Leg, order: Order,
                      pending: Optional[PendingTx] = None) -> Optional[TxReceipt]:
        if Leg(leg) is Leg.SRC:
            log.info(f"[{self.chain_id}] Source HTLC for {order.hash[:18]}... refunds to the maker")
            return None
        if not order.htlc_script or not order.dst_deploy_tx:
            raise ValidationError("No destination HTLC recorded", order_hash=order.hash)
        return self.refund_htlc(order.htlc_script, order.dst_deploy_tx, pending=pending)

    def status(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "kind": self.kind.value,
            "network": self.network.name,
            "api_url": self.config.api_url,
        }
