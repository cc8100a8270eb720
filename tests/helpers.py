"""
Shared fixtures: keys, orders and an in-memory account-chain adapter.
"""

import os
import sys
import time
from typing import Dict, List, Tuple

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from resolver.chains.base import ChainAdapter, SrcEscrow, DstEscrow
from resolver.core import (
    ChainKind, Order, HashLock, LimitOrder, Immutables, DstComplement, TxReceipt, PendingTx,
    ZERO_ADDRESS, to_address,
)
from resolver.htlc.btc import build_claimable_script, pubkey_to_evm
from resolver.signing import LocalSigner
from resolver.timelocks import TimeLockSchedule, Leg, pack, set_deployed_at

EVM_CHAIN = 11155111
EVM_CHAIN_2 = 84532
BTC_CHAIN = 18332

SECRET = "0x" + "5e" * 32
ORDER_HASH = "0x" + "ab" * 32

# Well-known test keys
EVM_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
EVM_KEY_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"
RESOLVER_BTC_KEY = "0x" + "00" * 31 + "03"
USER_BTC_KEY = "0x" + "00" * 31 + "02"

MAKER_EVM = "0x" + "a1" * 20
MAKER_ASSET = "0x" + "c0" * 20

CLAIM_LOCK = 1_700_000_000
REFUND_LOCK = 1_700_086_400


def make_signer() -> LocalSigner:
    return LocalSigner({"evm": EVM_KEY, "btc": RESOLVER_BTC_KEY})


def resolver_pubkey() -> bytes:
    return make_signer().public_key(ChainKind.BTC, "btc")


def user_pubkey() -> bytes:
    return LocalSigner({"user": USER_BTC_KEY}).public_key(ChainKind.BTC, "user")


def schedule() -> TimeLockSchedule:
    return TimeLockSchedule(
        src_withdrawal=10,
        src_public_withdrawal=120,
        src_cancellation=121,
        src_public_cancellation=122,
        dst_withdrawal=10,
        dst_public_withdrawal=100,
        dst_cancellation=101,
    )


def make_evm_order(src_chain_id: int = EVM_CHAIN, dst_chain_id: int = EVM_CHAIN_2, **overrides) -> Order:
    """Account-chain source order (signed limit order)."""
    receiver = overrides.pop("receiver_address", MAKER_EVM)
    limit_order = LimitOrder(
        salt=1,
        maker=MAKER_EVM,
        receiver=receiver,
        maker_asset=MAKER_ASSET,
        taker_asset=ZERO_ADDRESS,
        making_amount=10000,
        taking_amount=9999,
        maker_traits=0,
    )
    fields = dict(
        hash=ORDER_HASH,
        src_chain_id=src_chain_id,
        dst_chain_id=dst_chain_id,
        maker_address=MAKER_EVM,
        making_amount=10000,
        taking_amount=9999,
        hash_lock=HashLock.from_secret(SECRET),
        time_locks=schedule(),
        receiver_address=receiver,
        maker_asset=MAKER_ASSET,
        limit_order=limit_order,
        extension="0x",
        signature="0x" + "11" * 64 + "1b",
    )
    fields.update(overrides)
    return Order(**fields)


def make_evm_to_btc_order(**overrides) -> Order:
    user = user_pubkey()
    return make_evm_order(dst_chain_id=BTC_CHAIN,
                          receiver_address=pubkey_to_evm(user),
                          btc_user_recipient_key="0x" + user.hex(),
                          **overrides)


def maker_htlc_script(claimer: bytes = None, hash_lock: str = None) -> bytes:
    """HTLC a maker funds on the UTXO source chain."""
    return bytes(build_claimable_script(
        order_hash=ORDER_HASH,
        hash_lock=hash_lock or HashLock.from_secret(SECRET).sha256,
        claim_lock_time=CLAIM_LOCK,
        refund_lock_time=REFUND_LOCK,
        claimer_pubkey=claimer or resolver_pubkey(),
        refunder_pubkey=user_pubkey(),
    ))


def make_btc_to_evm_order(funding_txid: str, script: bytes = None, **overrides) -> Order:
    fields = dict(
        hash=ORDER_HASH,
        src_chain_id=BTC_CHAIN,
        dst_chain_id=EVM_CHAIN,
        maker_address=pubkey_to_evm(user_pubkey()),
        making_amount=10000,
        taking_amount=9999,
        hash_lock=HashLock.from_secret(SECRET),
        time_locks=schedule(),
        receiver_address=MAKER_EVM,
        taker_asset=MAKER_ASSET,
        src_funding_tx=funding_txid,
        htlc_script=(script or maker_htlc_script()).hex(),
        btc_user_recipient_key="0x" + user_pubkey().hex(),
    )
    fields.update(overrides)
    return Order(**fields)


class FakeEVMAdapter(ChainAdapter):
    """
    Account-chain adapter that settles instantly.

    fail maps a method name to exceptions raised on its next calls.
    resumed records (method name, PendingTx) for calls handed a pending tx.
    """

    kind = ChainKind.EVM

    def __init__(self, chain_id: int = EVM_CHAIN):
        self.chain_id = chain_id
        self.calls: List[str] = []
        self.fail: Dict[str, List[Exception]] = {}
        self.resumed: List[Tuple[str, PendingTx]] = []

    def _hit(self, name: str, pending: PendingTx = None):
        self.calls.append(name)
        if pending is not None:
            self.resumed.append((name, pending))
        errors = self.fail.get(name)
        if errors:
            raise errors.pop(0)

    def escrow_taker(self) -> str:
        return "0x" + "22" * 20

    def create_src_escrow(self, order: Order, pending: PendingTx = None) -> SrcEscrow:
        self._hit("create_src_escrow", pending)
        now = int(time.time())
        immutables = Immutables(
            order_hash=order.hash,
            hashlock=order.hash_lock.keccak256,
            maker=to_address(order.maker_address),
            taker=self.escrow_taker(),
            token=order.maker_asset,
            amount=order.making_amount,
            safety_deposit=order.src_safety_deposit,
            timelocks=set_deployed_at(pack(order.time_locks), now),
        )
        complement = DstComplement(
            maker=to_address(order.receiver_address),
            amount=order.taking_amount,
            token=order.taker_asset,
            safety_deposit=order.dst_safety_deposit,
            chain_id=order.dst_chain_id,
        )
        return SrcEscrow(immutables=immutables, complement=complement,
                         address="0x" + "5c" * 20,
                         receipt=TxReceipt(f"0xsrcdeploy{self.chain_id}", 1, now))

    def create_dst_escrow(self, order: Order, dst_immutables: Immutables,
                          src_cancellation: int, pending: PendingTx = None) -> DstEscrow:
        self._hit("create_dst_escrow", pending)
        now = int(time.time())
        return DstEscrow(immutables=dst_immutables.with_deployed_at(now),
                         address="0x" + "d5" * 20,
                         receipt=TxReceipt(f"0xdstdeploy{self.chain_id}", 2, now))

    def withdraw_escrow(self, leg: Leg, order: Order, secret: str,
                        pending: PendingTx = None) -> TxReceipt:
        self._hit(f"withdraw_{Leg(leg).value}", pending)
        return TxReceipt(f"0x{Leg(leg).value}withdraw{self.chain_id}")

    def cancel_escrow(self, leg: Leg, order: Order, pending: PendingTx = None) -> TxReceipt:
        self._hit(f"cancel_{Leg(leg).value}", pending)
        return TxReceipt(f"0x{Leg(leg).value}cancel{self.chain_id}")

    def wait_for_confirmation(self, tx_ref: str) -> TxReceipt:
        return TxReceipt(tx_ref, 3, int(time.time()))

    def get_balance(self, address: str) -> int:
        return 0
