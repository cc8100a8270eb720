"""
Chain adapter interface.

Each adapter exposes the same leg-level operations so the orchestrator never
branches on chain type, plus the low-level capabilities of its ledger.
Capabilities a ledger does not have raise UnsupportedOperation.

Leg operations that broadcast take the PendingTx of an earlier attempt and
resume from it instead of sending again. Errors raised once a transaction
is out carry its PendingTx.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, List

from ..core import ChainKind, Order, Immutables, DstComplement, TxReceipt, PendingTx
from ..errors import ResolverError, UnsupportedOperation
from ..timelocks import Leg


@contextmanager
def after_broadcast(pending: PendingTx):
    """Attach pending to ResolverErrors raised inside the block."""
    try:
        yield
    except ResolverError as e:
        if e.pending is None:
            e.pending = pending
        raise


@dataclass
class SrcEscrow:
    """Outcome of locking the maker's funds on the source chain."""
    immutables: Immutables
    complement: DstComplement
    address: str
    receipt: TxReceipt


@dataclass
class DstEscrow:
    """Outcome of locking the resolver's funds on the destination chain."""
    immutables: Immutables
    address: str
    receipt: TxReceipt
    htlc_script: Optional[str] = None


class ChainAdapter(ABC):
    """One configured chain."""

    kind: ChainKind
    chain_id: int

    # =========================================================================
    # Leg-level operations
    # =========================================================================

    @abstractmethod
    def escrow_taker(self) -> str:
        """The resolver's 20-byte identity on this chain (0x hex)."""

    @abstractmethod
    def create_src_escrow(self, order: Order, pending: Optional[PendingTx] = None) -> SrcEscrow:
        pass

    @abstractmethod
    def create_dst_escrow(self, order: Order, dst_immutables: Immutables,
                          src_cancellation: int, pending: Optional[PendingTx] = None) -> DstEscrow:
        pass

    @abstractmethod
    def withdraw_escrow(self, leg: Leg, order: Order, secret: str,
                        pending: Optional[PendingTx] = None) -> Optional[TxReceipt]:
        """Withdraw a leg. None when the counterparty withdraws and it is not yet seen."""

    @abstractmethod
    def cancel_escrow(self, leg: Leg, order: Order,
                      pending: Optional[PendingTx] = None) -> Optional[TxReceipt]:
        """Cancel a leg. None when the counterparty holds the cancellation right."""

    # =========================================================================
    # Capabilities
    # =========================================================================

    def _unsupported(self, name: str):
        raise UnsupportedOperation(f"{name} is not supported on {self.kind.value} chain {self.chain_id}",
                                   chain_id=self.chain_id, operation=name)

    def deploy_src_escrow(self, order: Order, immutables: Immutables,
                          pending: Optional[PendingTx] = None) -> TxReceipt:
        self._unsupported("deploy_src_escrow")

    def deploy_dst_escrow(self, immutables: Immutables, src_cancellation: int,
                          pending: Optional[PendingTx] = None) -> TxReceipt:
        self._unsupported("deploy_dst_escrow")

    def withdraw(self, leg: Leg, escrow: str, secret: str, immutables: Immutables,
                 pending: Optional[PendingTx] = None) -> TxReceipt:
        self._unsupported("withdraw")

    def cancel(self, leg: Leg, escrow: str, immutables: Immutables,
               pending: Optional[PendingTx] = None) -> TxReceipt:
        self._unsupported("cancel")

    def fund_htlc(self, script, amount: int, pending: Optional[PendingTx] = None) -> TxReceipt:
        self._unsupported("fund_htlc")

    def redeem_htlc(self, script, funding_txid: str, secret: str,
                    pending: Optional[PendingTx] = None) -> TxReceipt:
        self._unsupported("redeem_htlc")

    def refund_htlc(self, script, funding_txid: str,
                    pending: Optional[PendingTx] = None) -> TxReceipt:
        self._unsupported("refund_htlc")

    def get_utxos(self, address: str) -> List:
        self._unsupported("get_utxos")

    def broadcast_raw(self, raw_tx: str) -> str:
        self._unsupported("broadcast_raw")

    @abstractmethod
    def wait_for_confirmation(self, tx_ref: str) -> TxReceipt:
        pass

    @abstractmethod
    def get_balance(self, address: str) -> int:
        pass

    def status(self) -> dict:
        """Short health summary for the status endpoint."""
        return {"chain_id": self.chain_id, "kind": self.kind.value}
