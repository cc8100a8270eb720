"""
EVM chain adapter.

Drives the escrow factory through the resolver contract:
- deploySrc: fill the maker's signed limit order, locking maker funds
- deployDst: lock the resolver's funds for the maker
- withdraw / cancel on either side

Transactions are EIP-1559, signed through the Signer so no private key
lives in this module.
"""

import time
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Optional, Dict, Tuple

import requests
from eth_account.typed_transactions import TypedTransaction
from web3 import Web3
from web3.exceptions import (
    ContractLogicError, TimeExhausted, BlockNotFound, TransactionNotFound, Web3Exception,
)
from web3.logs import DISCARD

from ..core import (
    ChainKind, Order, Immutables, DstComplement, TxReceipt, PendingTx, ZERO_ADDRESS,
    hex_to_bytes, to_address, to_hex32,
)
from ..errors import (
    ResolverError, ValidationError, InsufficientFunds, RevertedExecution, BroadcastRejected,
    ConfirmationTimeout, RpcUnavailable,
)
from ..htlc.escrow import escrow_address
from ..signing import Signer, evm_address
from ..timelocks import Leg, pack
from .base import ChainAdapter, SrcEscrow, DstEscrow, after_broadcast

log = logging.getLogger(__name__)


_IMMUTABLES = {
    "name": "immutables",
    "type": "tuple",
    "components": [
        {"name": "orderHash", "type": "bytes32"},
        {"name": "hashlock", "type": "bytes32"},
        {"name": "maker", "type": "uint256"},
        {"name": "taker", "type": "uint256"},
        {"name": "token", "type": "uint256"},
        {"name": "amount", "type": "uint256"},
        {"name": "safetyDeposit", "type": "uint256"},
        {"name": "timelocks", "type": "uint256"},
    ],
}

_ORDER = {
    "name": "order",
    "type": "tuple",
    "components": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "uint256"},
        {"name": "receiver", "type": "uint256"},
        {"name": "makerAsset", "type": "uint256"},
        {"name": "takerAsset", "type": "uint256"},
        {"name": "makingAmount", "type": "uint256"},
        {"name": "takingAmount", "type": "uint256"},
        {"name": "makerTraits", "type": "uint256"},
    ],
}

RESOLVER_ABI = [
    {
        "name": "deploySrc",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            _IMMUTABLES,
            _ORDER,
            {"name": "r", "type": "bytes32"},
            {"name": "vs", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
            {"name": "takerTraits", "type": "uint256"},
            {"name": "args", "type": "bytes"},
        ],
        "outputs": []
    },
    {
        "name": "deployDst",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            dict(_IMMUTABLES, name="dstImmutables"),
            {"name": "srcCancellationTimestamp", "type": "uint256"},
        ],
        "outputs": []
    },
    {
        "name": "withdraw",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "escrow", "type": "address"},
            {"name": "secret", "type": "bytes32"},
            _IMMUTABLES,
        ],
        "outputs": []
    },
    {
        "name": "cancel",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "escrow", "type": "address"},
            _IMMUTABLES,
        ],
        "outputs": []
    },
]

ESCROW_FACTORY_ABI = [
    {
        "name": "SrcEscrowCreated",
        "type": "event",
        "anonymous": False,
        "inputs": [
            dict(_IMMUTABLES, name="srcImmutables", indexed=False),
            {
                "name": "dstImmutablesComplement",
                "type": "tuple",
                "indexed": False,
                "components": [
                    {"name": "maker", "type": "uint256"},
                    {"name": "amount", "type": "uint256"},
                    {"name": "token", "type": "uint256"},
                    {"name": "safetyDeposit", "type": "uint256"},
                    {"name": "chainId", "type": "uint256"},
                ],
            },
        ],
    },
    {
        "name": "ESCROW_SRC_IMPLEMENTATION",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}]
    },
    {
        "name": "ESCROW_DST_IMPLEMENTATION",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}]
    },
]

# Fields of an EIP-1559 transaction that get signed
_TX_FIELDS = ("chainId", "nonce", "maxPriorityFeePerGas", "maxFeePerGas",
              "gas", "to", "value", "data")

MAKER_AMOUNT_FLAG = 1 << 255
ARGS_EXTENSION_LENGTH_OFFSET = 224


@dataclass
class EVMConfig:
    """EVM chain configuration."""
    chain_id: int
    rpc_url: str
    escrow_factory: str
    resolver: str
    limit_order_protocol: str = ""
    src_implementation: str = ""       # read from the factory when empty
    dst_implementation: str = ""
    key_id: str = "evm"
    gas_limit: int = 1_000_000
    receipt_timeout: int = 120
    block_retries: int = 10
    block_retry_delay: float = 5.0


def immutables_tuple(immutables: Immutables) -> Tuple:
    """ABI tuple; addresses travel as uint256."""
    return (
        hex_to_bytes(immutables.order_hash, 32),
        hex_to_bytes(immutables.hashlock, 32),
        int(immutables.maker, 16),
        int(immutables.taker, 16),
        int(immutables.token, 16),
        immutables.amount,
        immutables.safety_deposit,
        immutables.timelocks,
    )


def _field(value, name: str, index: int):
    if isinstance(value, Mapping):
        return value[name]
    return value[index]


def _as_address(value) -> str:
    if isinstance(value, int):
        return to_address(value)
    return to_address(hex_to_bytes(value)[-20:])


def split_signature(signature) -> Tuple[bytes, bytes]:
    """65-byte r || s || v  ->  (r, vs) compact form (EIP-2098)."""
    sig = hex_to_bytes(signature, 65, "signature")
    r, s, v = sig[:32], int.from_bytes(sig[32:64], "big"), sig[64]
    if v < 27:
        v += 27
    if v not in (27, 28):
        raise ValidationError(f"Invalid signature recovery id {v}")
    vs = s | ((v - 27) << 255)
    return r, vs.to_bytes(32, "big")


def taker_traits(order: Order) -> Tuple[int, bytes]:
    """(traits, args) for filling the whole order in maker-amount mode."""
    extension = hex_to_bytes(order.extension or "0x", name="extension")
    traits = (MAKER_AMOUNT_FLAG
              | (len(extension) << ARGS_EXTENSION_LENGTH_OFFSET)
              | order.taking_amount)
    return traits, extension


class EVMAdapter(ChainAdapter):
    """
    Resolver-side client for one EVM chain.

    Args:
        config: Chain configuration
        signer: Signing capability holding the resolver's EVM key
        w3: Optional Web3 instance (defaults to HTTPProvider(config.rpc_url))
    """

    kind = ChainKind.EVM

    def __init__(self, config: EVMConfig, signer: Signer, w3: Web3 = None):
        self.config = config
        self.chain_id = config.chain_id
        self.signer = signer
        self._web3 = w3
        self._address = None
        self._implementations: Dict[Leg, str] = {}

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def address(self) -> str:
        """Resolver EOA that sends every transaction."""
        if self._address is None:
            self._address = evm_address(self.signer, self.config.key_id)
        return self._address

    @property
    def resolver_contract(self):
        return self.web3.eth.contract(address=Web3.to_checksum_address(self.config.resolver),
                                      abi=RESOLVER_ABI)

    @property
    def factory_contract(self):
        return self.web3.eth.contract(address=Web3.to_checksum_address(self.config.escrow_factory),
                                      abi=ESCROW_FACTORY_ABI)

    def implementation(self, leg: Leg) -> str:
        """Escrow implementation the factory clones for a leg."""
        leg = Leg(leg)
        if leg not in self._implementations:
            configured = (self.config.src_implementation if leg is Leg.SRC
                          else self.config.dst_implementation)
            if not configured:
                log.warning(f"[{self.chain_id}] {leg.value} escrow implementation not pinned, "
                            f"reading it from the factory")
                fn = (self.factory_contract.functions.ESCROW_SRC_IMPLEMENTATION if leg is Leg.SRC
                      else self.factory_contract.functions.ESCROW_DST_IMPLEMENTATION)
                configured = self._rpc(lambda: fn().call())
            self._implementations[leg] = to_address(configured)
        return self._implementations[leg]

    # =========================================================================
    # Transaction plumbing
    # =========================================================================

    def _rpc(self, call):
        """Run a read-only call, mapping transport failures."""
        try:
            return call()
        except requests.exceptions.RequestException as e:
            raise RpcUnavailable(f"RPC unreachable: {e}", chain_id=self.chain_id)

    def _fees(self) -> Tuple[int, int]:
        w3 = self.web3
        priority = w3.eth.max_priority_fee
        base = w3.eth.get_block("latest").get("baseFeePerGas", 0)
        return 2 * base + priority, priority

    def _sign(self, tx: Dict) -> bytes:
        tx = {k: tx[k] for k in _TX_FIELDS if k in tx}
        if tx.get("to"):
            tx["to"] = Web3.to_checksum_address(tx["to"])
        tx.update(type=2, accessList=[])
        unsigned = TypedTransaction.from_dict(tx)
        sig = self.signer.sign(ChainKind.EVM, self.config.key_id, unsigned.hash())
        if len(sig) != 65:
            raise ValidationError("Signer returned a malformed EVM signature")
        signed = TypedTransaction.from_dict({
            **unsigned.as_dict(),
            "v": sig[64] - 27 if sig[64] >= 27 else sig[64],
            "r": int.from_bytes(sig[:32], "big"),
            "s": int.from_bytes(sig[32:64], "big"),
        })
        return signed.encode()

    def _broadcast(self, fn, value: int, label: str) -> PendingTx:
        """Build, sign and send a contract call. Nothing is on-chain if this raises without pending."""
        w3 = self.web3
        sender = self.address
        try:
            max_fee, priority = self._fees()
            tx = fn.build_transaction({
                "from": sender,
                "nonce": w3.eth.get_transaction_count(sender, "pending"),
                "value": value,
                "chainId": self.config.chain_id,
                "gas": self.config.gas_limit,
                "maxFeePerGas": max_fee,
                "maxPriorityFeePerGas": priority,
            })
            raw = self._sign(tx)
        except ResolverError:
            raise
        except ContractLogicError as e:
            raise RevertedExecution(getattr(e, "message", None) or str(e), chain_id=self.chain_id, call=label)
        except requests.exceptions.RequestException as e:
            raise RpcUnavailable(f"RPC unreachable: {e}", chain_id=self.chain_id)
        except (ValueError, Web3Exception) as e:
            if "insufficient funds" in str(e).lower():
                raise InsufficientFunds(f"Resolver cannot pay for {label}",
                                        chain_id=self.chain_id, address=sender)
            raise RevertedExecution(str(e), chain_id=self.chain_id, call=label)
        except (TypeError, KeyError) as e:
            raise ValidationError(f"Cannot build {label}: {e}", chain_id=self.chain_id, call=label)

        try:
            tx_ref = Web3.to_hex(w3.eth.send_raw_transaction(raw))
        except requests.exceptions.RequestException as e:
            # The node may have taken it before the connection dropped
            error = RpcUnavailable(f"RPC unreachable sending {label}: {e}", chain_id=self.chain_id)
            error.pending = PendingTx(tx_ref=Web3.to_hex(Web3.keccak(raw)), raw="0x" + bytes(raw).hex())
            raise error
        except (ValueError, Web3Exception) as e:
            if "insufficient funds" in str(e).lower():
                raise InsufficientFunds(f"Resolver cannot pay for {label}",
                                        chain_id=self.chain_id, address=sender)
            raise BroadcastRejected(str(e), chain_id=self.chain_id, call=label)

        log.info(f"[{self.chain_id}] {label} sent: {tx_ref}")
        return PendingTx(tx_ref=tx_ref, raw="0x" + bytes(raw).hex())

    def _rebroadcast_if_dropped(self, pending: PendingTx, label: str):
        if not pending.raw:
            return
        w3 = self.web3
        try:
            w3.eth.get_transaction(pending.tx_ref)
            return
        except TransactionNotFound:
            log.warning(f"[{self.chain_id}] {label} {pending.tx_ref} unknown to the node, rebroadcasting")
        except requests.exceptions.RequestException as e:
            raise RpcUnavailable(f"RPC unreachable: {e}", chain_id=self.chain_id)
        try:
            w3.eth.send_raw_transaction(hex_to_bytes(pending.raw))
        except requests.exceptions.RequestException as e:
            raise RpcUnavailable(f"RPC unreachable: {e}", chain_id=self.chain_id)
        except (ValueError, Web3Exception) as e:
            # Usually "already known" or a mined nonce; the receipt wait decides
            log.warning(f"[{self.chain_id}] Rebroadcast of {pending.tx_ref} refused: {e}")

    def _send(self, fn, value: int = 0, label: str = "tx",
              pending: Optional[PendingTx] = None) -> TxReceipt:
        """Broadcast a contract call (or resume an earlier broadcast) and confirm it."""
        resumed = pending is not None
        if resumed:
            log.info(f"[{self.chain_id}] {label} already sent as {pending.tx_ref}, confirming")
        else:
            pending = self._broadcast(fn, value, label)
        with after_broadcast(pending):
            if resumed:
                self._rebroadcast_if_dropped(pending, label)
            return self.wait_for_confirmation(pending.tx_ref)

    def _confirm(self, tx_hash) -> TxReceipt:
        tx_ref = tx_hash if isinstance(tx_hash, str) else Web3.to_hex(tx_hash)
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.receipt_timeout)
        except TimeExhausted:
            raise ConfirmationTimeout(f"No receipt for {tx_ref}", chain_id=self.chain_id, tx_ref=tx_ref)

        if receipt["status"] != 1:
            raise RevertedExecution("status 0", chain_id=self.chain_id, tx_ref=tx_ref)

        block = self._get_block_with_retry(receipt["blockNumber"])
        return TxReceipt(
            tx_ref=tx_ref,
            block_number=receipt["blockNumber"],
            block_timestamp=block["timestamp"],
            block_hash=Web3.to_hex(block["hash"]),
        )

    def _get_block_with_retry(self, number: int):
        for attempt in range(1, self.config.block_retries + 1):
            try:
                block = self.web3.eth.get_block(number)
                if block:
                    return block
            except (BlockNotFound, requests.exceptions.RequestException) as e:
                log.warning(f"[{self.chain_id}] get_block({number}) attempt {attempt} failed: {e}")
            if attempt < self.config.block_retries:
                time.sleep(self.config.block_retry_delay)
        raise RpcUnavailable(f"Block {number} unavailable", chain_id=self.chain_id)

    # =========================================================================
    # Capabilities
    # =========================================================================

    def deploy_src_escrow(self, order: Order, immutables: Immutables,
                          pending: Optional[PendingTx] = None) -> TxReceipt:
        if order.limit_order is None:
            raise ValidationError("limit_order is required", order_hash=order.hash)
        r, vs = split_signature(order.signature)
        traits, args = taker_traits(order)
        fn = self.resolver_contract.functions.deploySrc(
            immutables_tuple(immutables),
            order.limit_order.as_tuple(),
            r,
            vs,
            order.making_amount,
            traits,
            args,
        )
        return self._send(fn, value=immutables.safety_deposit, label="deploySrc", pending=pending)

    def deploy_dst_escrow(self, immutables: Immutables, src_cancellation: int,
                          pending: Optional[PendingTx] = None) -> TxReceipt:
        value = immutables.safety_deposit
        if immutables.token == ZERO_ADDRESS:
            value += immutables.amount
        fn = self.resolver_contract.functions.deployDst(immutables_tuple(immutables), src_cancellation)
        return self._send(fn, value=value, label="deployDst", pending=pending)

    def withdraw(self, leg: Leg, escrow: str, secret: str, immutables: Immutables,
                 pending: Optional[PendingTx] = None) -> TxReceipt:
        fn = self.resolver_contract.functions.withdraw(
            Web3.to_checksum_address(escrow),
            hex_to_bytes(secret, 32, "secret"),
            immutables_tuple(immutables),
        )
        return self._send(fn, label=f"withdraw({Leg(leg).value})", pending=pending)

    def cancel(self, leg: Leg, escrow: str, immutables: Immutables,
               pending: Optional[PendingTx] = None) -> TxReceipt:
        fn = self.resolver_contract.functions.cancel(
            Web3.to_checksum_address(escrow),
            immutables_tuple(immutables),
        )
        return self._send(fn, label=f"cancel({Leg(leg).value})", pending=pending)

    def wait_for_confirmation(self, tx_ref: str) -> TxReceipt:
        try:
            return self._confirm(tx_ref)
        except requests.exceptions.RequestException as e:
            raise RpcUnavailable(f"RPC unreachable: {e}", chain_id=self.chain_id)
        except (ValueError, Web3Exception) as e:
            raise RpcUnavailable(f"Cannot confirm {tx_ref}: {e}", chain_id=self.chain_id, tx_ref=tx_ref)

    def get_balance(self, address: str) -> int:
        return self._rpc(lambda: self.web3.eth.get_balance(Web3.to_checksum_address(address)))

    def src_deploy_event(self, tx_ref: str) -> Tuple[Immutables, DstComplement]:
        """Decode SrcEscrowCreated from a deploySrc receipt."""
        receipt = self._rpc(lambda: self.web3.eth.get_transaction_receipt(tx_ref))
        events = self.factory_contract.events.SrcEscrowCreated().process_receipt(receipt, errors=DISCARD)
        if not events:
            raise ValidationError("SrcEscrowCreated not found in receipt", tx_ref=tx_ref)

        args = events[0]["args"]
        imm = args["srcImmutables"]
        comp = args["dstImmutablesComplement"]
        immutables = Immutables(
            order_hash=to_hex32(_field(imm, "orderHash", 0)),
            hashlock=to_hex32(_field(imm, "hashlock", 1)),
            maker=_as_address(_field(imm, "maker", 2)),
            taker=_as_address(_field(imm, "taker", 3)),
            token=_as_address(_field(imm, "token", 4)),
            amount=_field(imm, "amount", 5),
            safety_deposit=_field(imm, "safetyDeposit", 6),
            timelocks=_field(imm, "timelocks", 7),
        )
        complement = DstComplement(
            maker=_as_address(_field(comp, "maker", 0)),
            amount=_field(comp, "amount", 1),
            token=_as_address(_field(comp, "token", 2)),
            safety_deposit=_field(comp, "safetyDeposit", 3),
            chain_id=_field(comp, "chainId", 4),
        )
        return immutables, complement

    # =========================================================================
    # Leg-level operations
    # =========================================================================

    def escrow_taker(self) -> str:
        return to_address(self.config.resolver)

    def create_src_escrow(self, order: Order, pending: Optional[PendingTx] = None) -> SrcEscrow:
        immutables = Immutables(
            order_hash=order.hash,
            hashlock=order.hash_lock.keccak256,
            maker=order.limit_order.maker,
            taker=self.escrow_taker(),
            token=order.limit_order.maker_asset,
            amount=order.making_amount,
            safety_deposit=order.src_safety_deposit,
            timelocks=pack(order.time_locks),
        )
        receipt = self.deploy_src_escrow(order, immutables, pending)
        log.info(f"[{self.chain_id}] Source escrow deployed for {order.hash[:18]}... "
                 f"in block {receipt.block_number}")

        with after_broadcast(pending or PendingTx(tx_ref=receipt.tx_ref)):
            src_immutables, complement = self.src_deploy_event(receipt.tx_ref)
            address = escrow_address(src_immutables, self.config.escrow_factory,
                                     self.implementation(Leg.SRC))
        return SrcEscrow(immutables=src_immutables, complement=complement,
                         address=address, receipt=receipt)

    def create_dst_escrow(self, order: Order, dst_immutables: Immutables,
                          src_cancellation: int, pending: Optional[PendingTx] = None) -> DstEscrow:
        receipt = self.deploy_dst_escrow(dst_immutables, src_cancellation, pending)
        # The factory stamps deployedAt with the block timestamp
        immutables = dst_immutables.with_deployed_at(receipt.block_timestamp)
        with after_broadcast(pending or PendingTx(tx_ref=receipt.tx_ref)):
            address = escrow_address(immutables, self.config.escrow_factory,
                                     self.implementation(Leg.DST), Leg.DST)
        log.info(f"[{self.chain_id}] Destination escrow {address} deployed for {order.hash[:18]}...")
        return DstEscrow(immutables=immutables, address=address, receipt=receipt)

    def withdraw_escrow(self, leg: Leg, order: Order, secret: str,
                        pending: Optional[PendingTx] = None) -> Optional[TxReceipt]:
        escrow, immutables = order.leg_fields(leg)
        if not escrow or immutables is None:
            raise ValidationError(f"No {Leg(leg).value} escrow recorded", order_hash=order.hash)
        return self.withdraw(leg, escrow, secret, immutables, pending)

    def cancel_escrow(self, leg: Leg, order: Order,
                      pending: Optional[PendingTx] = None) -> Optional[TxReceipt]:
        escrow, immutables = order.leg_fields(leg)
        if not escrow or immutables is None:
            raise ValidationError(f"No {Leg(leg).value} escrow recorded", order_hash=order.hash)
        return self.cancel(leg, escrow, immutables, pending)

    def status(self) -> dict:
        return {
            "chain_id": self.chain_id,
            "kind": self.kind.value,
            "resolver": self.config.resolver,
            "escrow_factory": self.config.escrow_factory,
        }
