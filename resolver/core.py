"""
Core types for the resolver: orders, immutables, hash locks.
"""

import time
import hashlib
import secrets
import dataclasses
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple

from Crypto.Hash import keccak

from .errors import ValidationError, InvalidTransition, SecretMismatch
from .timelocks import TimeLockSchedule, Leg, set_deployed_at, get_deployed_at


class ChainKind(str, Enum):
    """Ledger family of a chain."""
    EVM = "evm"     # account-based
    BTC = "btc"     # UTXO-based


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    CREATED = "created"                         # Stored by intake, nothing on-chain
    ESCROW_CREATED = "escrow_created"           # Both escrows funded
    WITHDRAW_COMPLETED = "withdraw_completed"   # Both legs withdrawn (terminal)
    CANCELLED = "cancelled"                     # Escrows cancelled (terminal)


_STATUS_RANK = {
    OrderStatus.CREATED: 0,
    OrderStatus.ESCROW_CREATED: 1,
    OrderStatus.WITHDRAW_COMPLETED: 2,
}

# Native asset on escrows, and the token of BTC legs
ZERO_ADDRESS = "0x" + "00" * 20


# =============================================================================
# Hashing / hex helpers
# =============================================================================

def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def strip_0x(value: str) -> str:
    return value[2:] if value[:2] in ("0x", "0X") else value


def hex_to_bytes(value, length: Optional[int] = None, name: str = "value") -> bytes:
    """Decode a 0x-optional hex string (or pass bytes through), checking length."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        try:
            raw = bytes.fromhex(strip_0x(str(value)))
        except ValueError:
            raise ValidationError(f"{name} is not valid hex", field=name)
    if length is not None and len(raw) != length:
        raise ValidationError(f"{name} must be {length} bytes, got {len(raw)}", field=name)
    return raw


def to_hex32(value, name: str = "value") -> str:
    return "0x" + hex_to_bytes(value, 32, name).hex()


def to_address(value, name: str = "address") -> str:
    """Normalise a 20-byte value (hex string, bytes or uint256) to lowercase 0x hex."""
    if isinstance(value, int):
        if value < 0 or value >> 160:
            raise ValidationError(f"{name} does not fit in 20 bytes", field=name)
        return "0x" + value.to_bytes(20, "big").hex()
    return "0x" + hex_to_bytes(value, 20, name).hex()


def to_int(value, name: str = "value") -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer", field=name)
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 0)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer", field=name)


# =============================================================================
# Secrets & hash locks
# =============================================================================

def generate_secret() -> str:
    """Generate a random 32-byte secret (0x hex)."""
    return "0x" + secrets.token_bytes(32).hex()


@dataclass(frozen=True)
class HashLock:
    """One secret committed under both hash functions the ledgers verify."""
    keccak256: str      # account-chain escrows
    sha256: str         # OP_SHA256 in UTXO scripts

    @classmethod
    def from_secret(cls, secret) -> "HashLock":
        raw = hex_to_bytes(secret, 32, "secret")
        return cls(keccak256="0x" + keccak256(raw).hex(), sha256="0x" + sha256(raw).hex())

    def for_kind(self, kind: ChainKind) -> str:
        return self.sha256 if ChainKind(kind) is ChainKind.BTC else self.keccak256

    def matches(self, secret, kind: ChainKind) -> bool:
        try:
            raw = hex_to_bytes(secret, 32, "secret")
        except ValidationError:
            return False
        digest = sha256(raw) if ChainKind(kind) is ChainKind.BTC else keccak256(raw)
        return "0x" + digest.hex() == self.for_kind(kind).lower()

    def verify(self, secret, *kinds: ChainKind):
        """Raise SecretMismatch unless the secret opens the lock for every kind."""
        for kind in kinds:
            if not self.matches(secret, kind):
                raise SecretMismatch(f"Secret does not match {ChainKind(kind).value} hash lock",
                                     chain_kind=ChainKind(kind).value)

    def to_dict(self) -> Dict[str, str]:
        return {"keccak256": self.keccak256, "sha256": self.sha256}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HashLock":
        if not isinstance(data, dict):
            raise ValidationError("hash_lock must be an object with keccak256 and sha256")
        return cls(keccak256=to_hex32(data.get("keccak256", ""), "hash_lock.keccak256"),
                   sha256=to_hex32(data.get("sha256", ""), "hash_lock.sha256"))


# =============================================================================
# Escrow immutables
# =============================================================================

@dataclass(frozen=True)
class DstComplement:
    """Destination-side fields emitted alongside the source escrow."""
    maker: str
    amount: int
    token: str
    safety_deposit: int
    chain_id: int

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DstComplement":
        return cls(maker=to_address(data["maker"], "complement.maker"),
                   amount=to_int(data["amount"], "complement.amount"),
                   token=to_address(data["token"], "complement.token"),
                   safety_deposit=to_int(data["safety_deposit"], "complement.safety_deposit"),
                   chain_id=to_int(data["chain_id"], "complement.chain_id"))


@dataclass(frozen=True)
class Immutables:
    """Parameter set an escrow is deployed with and later authorised by."""
    order_hash: str
    hashlock: str
    maker: str
    taker: str
    token: str
    amount: int
    safety_deposit: int
    timelocks: int

    @property
    def deployed_at(self) -> int:
        return get_deployed_at(self.timelocks)

    def with_complement(self, complement: DstComplement) -> "Immutables":
        return dataclasses.replace(self, maker=complement.maker, token=complement.token,
                                   amount=complement.amount,
                                   safety_deposit=complement.safety_deposit)

    def with_taker(self, taker: str) -> "Immutables":
        return dataclasses.replace(self, taker=to_address(taker, "taker"))

    def with_hashlock(self, hashlock: str) -> "Immutables":
        return dataclasses.replace(self, hashlock=to_hex32(hashlock, "hashlock"))

    def with_deployed_at(self, timestamp: int) -> "Immutables":
        return dataclasses.replace(self, timelocks=set_deployed_at(self.timelocks, timestamp))

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        # uint256 does not survive every JSON consumer
        data["timelocks"] = str(self.timelocks)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Immutables":
        try:
            return cls(order_hash=to_hex32(data["order_hash"], "order_hash"),
                       hashlock=to_hex32(data["hashlock"], "hashlock"),
                       maker=to_address(data["maker"], "maker"),
                       taker=to_address(data["taker"], "taker"),
                       token=to_address(data["token"], "token"),
                       amount=to_int(data["amount"], "amount"),
                       safety_deposit=to_int(data["safety_deposit"], "safety_deposit"),
                       timelocks=to_int(data["timelocks"], "timelocks"))
        except KeyError as e:
            raise ValidationError(f"Missing immutables field: {e.args[0]}")


# =============================================================================
# Limit order (source fill on the account chain)
# =============================================================================

@dataclass(frozen=True)
class LimitOrder:
    """Signed limit-order struct, keyed the way the order SDK serialises it."""
    salt: int
    maker: str
    receiver: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_traits: int

    def as_tuple(self) -> Tuple[int, ...]:
        """ABI tuple; addresses travel as uint256."""
        return (self.salt, int(self.maker, 16), int(self.receiver, 16),
                int(self.maker_asset, 16), int(self.taker_asset, 16),
                self.making_amount, self.taking_amount, self.maker_traits)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "salt": str(self.salt),
            "maker": self.maker,
            "receiver": self.receiver,
            "makerAsset": self.maker_asset,
            "takerAsset": self.taker_asset,
            "makingAmount": str(self.making_amount),
            "takingAmount": str(self.taking_amount),
            "makerTraits": str(self.maker_traits),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LimitOrder":
        try:
            return cls(salt=to_int(data["salt"], "salt"),
                       maker=to_address(data["maker"], "maker"),
                       receiver=to_address(data.get("receiver") or ZERO_ADDRESS, "receiver"),
                       maker_asset=to_address(data["makerAsset"], "makerAsset"),
                       taker_asset=to_address(data["takerAsset"], "takerAsset"),
                       making_amount=to_int(data["makingAmount"], "makingAmount"),
                       taking_amount=to_int(data["takingAmount"], "takingAmount"),
                       maker_traits=to_int(data.get("makerTraits", 0), "makerTraits"))
        except KeyError as e:
            raise ValidationError(f"Missing limit order field: {e.args[0]}")


@dataclass(frozen=True)
class TxReceipt:
    """What an adapter reports once a transaction is broadcast or confirmed."""
    tx_ref: str
    block_number: Optional[int] = None
    block_timestamp: Optional[int] = None
    block_hash: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.block_number is not None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class PendingTx:
    """
    A transaction that went out but whose step has not completed.

    raw is the signed transaction hex, rebroadcast verbatim if the node
    dropped it. deployed_at is the time a UTXO HTLC script committed to.
    """
    tx_ref: str
    raw: Optional[str] = None
    deployed_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingTx":
        return cls(tx_ref=data["tx_ref"], raw=data.get("raw"),
                   deployed_at=data.get("deployed_at"))


# =============================================================================
# Order
# =============================================================================

_WRITE_ONCE = (
    "src_escrow_address", "dst_escrow_address",
    "src_immutables", "dst_immutables", "dst_complement",
    "src_deploy_tx", "dst_deploy_tx",
    "src_withdraw_tx", "dst_withdraw_tx",
    "src_cancel_tx", "dst_cancel_tx",
    "htlc_script",
)


@dataclass
class Order:
    """A swap intent and everything the resolver has done for it."""
    hash: str
    src_chain_id: int
    dst_chain_id: int
    maker_address: str
    making_amount: int
    taking_amount: int
    hash_lock: HashLock
    time_locks: TimeLockSchedule

    taker_address: Optional[str] = None
    receiver_address: Optional[str] = None     # maker's address on the dst chain
    maker_asset: str = ZERO_ADDRESS
    taker_asset: str = ZERO_ADDRESS
    src_safety_deposit: int = 0
    dst_safety_deposit: int = 0

    # Signed limit order (EVM source fill)
    limit_order: Optional[LimitOrder] = None
    extension: Optional[str] = None
    signature: Optional[str] = None

    status: OrderStatus = OrderStatus.CREATED

    # Execution state
    src_escrow_address: Optional[str] = None
    dst_escrow_address: Optional[str] = None
    src_immutables: Optional[Immutables] = None
    dst_immutables: Optional[Immutables] = None
    dst_complement: Optional[DstComplement] = None
    src_deploy_tx: Optional[str] = None
    dst_deploy_tx: Optional[str] = None
    src_withdraw_tx: Optional[str] = None
    dst_withdraw_tx: Optional[str] = None
    src_cancel_tx: Optional[str] = None
    dst_cancel_tx: Optional[str] = None

    # UTXO legs
    src_funding_tx: Optional[str] = None
    htlc_script: Optional[str] = None
    btc_user_recipient_key: Optional[str] = None

    # Sent transactions per step (src_deploy, dst_withdraw, ...) awaiting completion
    pending_txs: Dict[str, PendingTx] = field(default_factory=dict)

    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = 0

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def advance(self, status: OrderStatus):
        """Move to the next status; skipping or going backwards is rejected."""
        status = OrderStatus(status)
        if status is OrderStatus.CANCELLED:
            allowed = self.status is OrderStatus.ESCROW_CREATED
        else:
            allowed = (self.status in _STATUS_RANK and
                       _STATUS_RANK[status] == _STATUS_RANK[self.status] + 1)
        if not allowed:
            raise InvalidTransition(
                f"Cannot move order from {self.status.value} to {status.value}",
                order_hash=self.hash, current=self.status.value, requested=status.value)
        self.status = status
        self.touch()

    def record(self, name: str, value):
        """Set a write-once execution field."""
        if name not in _WRITE_ONCE:
            raise AttributeError(f"{name} is not a recorded field")
        current = getattr(self, name)
        if current is not None and current != value:
            raise ValidationError(f"{name} already recorded", order_hash=self.hash, field=name)
        setattr(self, name, value)
        self.touch()

    def touch(self):
        self.updated_at = int(time.time())

    def copy(self) -> "Order":
        return Order.from_dict(self.to_dict())

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, src_kind: ChainKind, dst_kind: ChainKind) -> "Order":
        """Check the fields a transition will need for this pair of ledgers."""
        to_hex32(self.hash, "hash")
        if self.src_chain_id == self.dst_chain_id:
            raise ValidationError("src and dst chain must differ", order_hash=self.hash)
        if self.making_amount <= 0 or self.taking_amount <= 0:
            raise ValidationError("making/taking amounts must be positive", order_hash=self.hash)
        self.time_locks.validate()

        if src_kind is ChainKind.EVM:
            for name in ("limit_order", "extension", "signature"):
                if not getattr(self, name):
                    raise ValidationError(f"{name} is required to fill an account-chain source",
                                          order_hash=self.hash, field=name)
            hex_to_bytes(self.signature, 65, "signature")
        else:
            for name in ("htlc_script", "src_funding_tx", "receiver_address",
                         "btc_user_recipient_key"):
                if not getattr(self, name):
                    raise ValidationError(f"{name} is required for a UTXO source",
                                          order_hash=self.hash, field=name)

        if dst_kind is ChainKind.BTC and not self.btc_user_recipient_key:
            raise ValidationError("btc_user_recipient_key is required for a UTXO destination",
                                  order_hash=self.hash, field="btc_user_recipient_key")
        if self.btc_user_recipient_key:
            hex_to_bytes(self.btc_user_recipient_key, 33, "btc_user_recipient_key")
        return self

    # -------------------------------------------------------------------------
    # Serialisation
    # -------------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "src_chain_id": self.src_chain_id,
            "dst_chain_id": self.dst_chain_id,
            "maker_address": self.maker_address,
            "taker_address": self.taker_address,
            "receiver_address": self.receiver_address,
            "making_amount": str(self.making_amount),
            "taking_amount": str(self.taking_amount),
            "maker_asset": self.maker_asset,
            "taker_asset": self.taker_asset,
            "src_safety_deposit": str(self.src_safety_deposit),
            "dst_safety_deposit": str(self.dst_safety_deposit),
            "hash_lock": self.hash_lock.to_dict(),
            "time_locks": self.time_locks.to_dict(),
            "limit_order": self.limit_order.to_dict() if self.limit_order else None,
            "extension": self.extension,
            "signature": self.signature,
            "status": self.status.value,
            "src_escrow_address": self.src_escrow_address,
            "dst_escrow_address": self.dst_escrow_address,
            "src_immutables": self.src_immutables.to_dict() if self.src_immutables else None,
            "dst_immutables": self.dst_immutables.to_dict() if self.dst_immutables else None,
            "dst_complement": self.dst_complement.to_dict() if self.dst_complement else None,
            "src_deploy_tx": self.src_deploy_tx,
            "dst_deploy_tx": self.dst_deploy_tx,
            "src_withdraw_tx": self.src_withdraw_tx,
            "dst_withdraw_tx": self.dst_withdraw_tx,
            "src_cancel_tx": self.src_cancel_tx,
            "dst_cancel_tx": self.dst_cancel_tx,
            "src_funding_tx": self.src_funding_tx,
            "htlc_script": self.htlc_script,
            "btc_user_recipient_key": self.btc_user_recipient_key,
            "pending_txs": {step: p.to_dict() for step, p in self.pending_txs.items()},
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Order":
        try:
            limit_order = data.get("limit_order")
            src_imm = data.get("src_immutables")
            dst_imm = data.get("dst_immutables")
            complement = data.get("dst_complement")
            return cls(
                hash=to_hex32(data["hash"], "hash"),
                src_chain_id=to_int(data["src_chain_id"], "src_chain_id"),
                dst_chain_id=to_int(data["dst_chain_id"], "dst_chain_id"),
                maker_address=str(data["maker_address"]),
                making_amount=to_int(data["making_amount"], "making_amount"),
                taking_amount=to_int(data["taking_amount"], "taking_amount"),
                hash_lock=HashLock.from_dict(data["hash_lock"]),
                time_locks=TimeLockSchedule.from_dict(data["time_locks"]),
                taker_address=data.get("taker_address"),
                receiver_address=data.get("receiver_address"),
                maker_asset=to_address(data.get("maker_asset") or ZERO_ADDRESS, "maker_asset"),
                taker_asset=to_address(data.get("taker_asset") or ZERO_ADDRESS, "taker_asset"),
                src_safety_deposit=to_int(data.get("src_safety_deposit", 0), "src_safety_deposit"),
                dst_safety_deposit=to_int(data.get("dst_safety_deposit", 0), "dst_safety_deposit"),
                limit_order=LimitOrder.from_dict(limit_order) if limit_order else None,
                extension=data.get("extension"),
                signature=data.get("signature"),
                status=OrderStatus(data.get("status", OrderStatus.CREATED.value)),
                src_escrow_address=data.get("src_escrow_address"),
                dst_escrow_address=data.get("dst_escrow_address"),
                src_immutables=Immutables.from_dict(src_imm) if src_imm else None,
                dst_immutables=Immutables.from_dict(dst_imm) if dst_imm else None,
                dst_complement=DstComplement.from_dict(complement) if complement else None,
                src_deploy_tx=data.get("src_deploy_tx"),
                dst_deploy_tx=data.get("dst_deploy_tx"),
                src_withdraw_tx=data.get("src_withdraw_tx"),
                dst_withdraw_tx=data.get("dst_withdraw_tx"),
                src_cancel_tx=data.get("src_cancel_tx"),
                dst_cancel_tx=data.get("dst_cancel_tx"),
                src_funding_tx=data.get("src_funding_tx"),
                htlc_script=data.get("htlc_script"),
                btc_user_recipient_key=data.get("btc_user_recipient_key"),
                pending_txs={step: PendingTx.from_dict(p)
                             for step, p in (data.get("pending_txs") or {}).items()},
                created_at=to_int(data.get("created_at") or int(time.time()), "created_at"),
                updated_at=to_int(data.get("updated_at") or 0, "updated_at"),
            )
        except KeyError as e:
            raise ValidationError(f"Missing order field: {e.args[0]}")
        except ValueError as e:
            # bad enum values
            raise ValidationError(str(e))

    def leg_fields(self, leg: Leg) -> Tuple[Optional[str], Optional[Immutables]]:
        """(escrow address, immutables) recorded for a leg."""
        if Leg(leg) is Leg.SRC:
            return self.src_escrow_address, self.src_immutables
        return self.dst_escrow_address, self.dst_immutables
