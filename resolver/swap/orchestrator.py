"""
Resolver orchestrator.

Drives an order through its lifecycle across two chain adapters:

    created --create_escrows--> escrow_created --withdraw--> withdraw_completed
                                      |
                                      +---------cancel-----> cancelled

Every transition runs under a per-order lock and reports a TransitionResult
instead of raising. Transaction refs are checkpointed to the store as soon
as they exist, so a retried transition resumes where the last one stopped
and never re-broadcasts a step that already went through.

A step whose transaction went out but failed afterwards (say, the receipt
wait lost its RPC) is recorded in Order.pending_txs. Retries of that step
hand the PendingTx back to the adapter, which waits on it instead of signing
a new transaction.
"""

import time
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Dict, List, Callable, Any

from ..chains.base import ChainAdapter
from ..core import Order, OrderStatus, to_hex32
from ..errors import ResolverError, ValidationError, InvalidTransition, InternalError
from ..retry import call_with_retry
from ..store import OrderStore
from ..timelocks import Leg, unpack_for_leg

log = logging.getLogger(__name__)


@dataclass
class OrchestratorConfig:
    retry_attempts: int = 3
    retry_backoff: float = 1.0


@dataclass
class TransitionResult:
    """Outcome of one lifecycle transition."""
    success: bool
    order_hash: str
    status: Optional[OrderStatus] = None
    order: Optional[Order] = None
    error: Optional[ResolverError] = None
    skipped: bool = False       # order was already past this transition

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "order_hash": self.order_hash,
            "status": self.status.value if self.status else None,
            "skipped": self.skipped,
            "error": self.error.to_dict() if self.error else None,
        }


class KeyedLock:
    """One mutex per key, dropped when nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}     # key -> [lock, refcount]

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)


class Orchestrator:
    """
    Executes orders across configured chains.

    Args:
        store: Order persistence
        adapters: chain id -> adapter
        config: Retry policy
        sleep: Sleep function used between retries (injectable for tests)
    """

    def __init__(self, store: OrderStore, adapters: Dict[int, ChainAdapter],
                 config: OrchestratorConfig = None, sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.adapters = adapters
        self.config = config or OrchestratorConfig()
        self._sleep = sleep
        self._locks = KeyedLock()

    def adapter(self, chain_id: int) -> ChainAdapter:
        try:
            return self.adapters[chain_id]
        except KeyError:
            raise ValidationError(f"Chain {chain_id} is not configured", chain_id=chain_id)

    def _call(self, fn, *args):
        return call_with_retry(fn, *args,
                               attempts=self.config.retry_attempts,
                               backoff=self.config.retry_backoff,
                               sleep=self._sleep)

    def _checkpoint(self, order: Order):
        self.store.put(order.hash, order)

    def _leg_call(self, order: Order, step: str, fn, *args):
        """
        Run one leg operation with retries, resuming a transaction already sent.

        The step's PendingTx is checkpointed before the error propagates, so
        the next attempt (or a later transition) picks it up.
        """
        def attempt():
            try:
                return fn(*args, pending=order.pending_txs.get(step))
            except ResolverError as e:
                current = order.pending_txs.get(step)
                if e.pending is not None and (current is None or current.tx_ref != e.pending.tx_ref):
                    order.pending_txs[step] = e.pending
                    self._checkpoint(order)
                    log.warning(f"Order {order.hash[:18]}... {step} sent {e.pending.tx_ref} "
                                f"but did not complete: {e.kind}")
                raise
        attempt.__name__ = step

        result = self._call(attempt)
        order.pending_txs.pop(step, None)
        return result

    def _transition(self, order_hash: str, name: str, step: Callable[[Order], "TransitionResult"]
                    ) -> TransitionResult:
        """Run step on the stored order under its lock, folding errors into the result."""
        order = None
        with self._locks.hold(order_hash.lower()):
            try:
                order = self.store.get(order_hash)
                return step(order)
            except ResolverError as e:
                log.error(f"{name} failed for {order_hash[:18]}...: {e.kind}: {e.message}")
                return TransitionResult(
                    success=False,
                    order_hash=order_hash,
                    status=order.status if order else None,
                    order=order,
                    error=e,
                )
            except Exception as e:
                log.exception(f"{name} crashed for {order_hash[:18]}...")
                return TransitionResult(
                    success=False,
                    order_hash=order_hash,
                    status=order.status if order else None,
                    order=order,
                    error=InternalError(f"Unexpected {type(e).__name__}: {e}"),
                )

    @staticmethod
    def _done(order: Order, skipped: bool = False) -> TransitionResult:
        return TransitionResult(success=True, order_hash=order.hash, status=order.status,
                                order=order, skipped=skipped)

    # =========================================================================
    # Intake
    # =========================================================================

    def submit(self, order: Order) -> TransitionResult:
        """
        Validate and store a new order.

        Resubmitting a known hash returns the stored order untouched.
        """
        with self._locks.hold(order.hash.lower()):
            try:
                order.validate(self.adapter(order.src_chain_id).kind,
                               self.adapter(order.dst_chain_id).kind)
                if self.store.exists(order.hash):
                    return self._done(self.store.get(order.hash), skipped=True)
                order.status = OrderStatus.CREATED
                order.touch()
                self._checkpoint(order)
                log.info(f"Order {order.hash[:18]}... accepted "
                         f"({order.src_chain_id} -> {order.dst_chain_id})")
                return self._done(order)
            except ResolverError as e:
                log.warning(f"Order {order.hash[:18]}... rejected: {e.kind}: {e.message}")
                return TransitionResult(success=False, order_hash=order.hash, error=e)

    # =========================================================================
    # created -> escrow_created
    # =========================================================================

    def create_escrows(self, order_hash: str) -> TransitionResult:
        """Lock funds on the source chain, then on the destination chain."""
        return self._transition(order_hash, "create_escrows", self._create_escrows)

    def _create_escrows(self, order: Order) -> TransitionResult:
        if order.status is not OrderStatus.CREATED:
            log.info(f"Order {order.hash[:18]}... already {order.status.value}, skipping escrows")
            return self._done(order, skipped=True)

        src = self.adapter(order.src_chain_id)
        dst = self.adapter(order.dst_chain_id)
        order.validate(src.kind, dst.kind)

        if order.src_deploy_tx is None:
            escrow = self._leg_call(order, "src_deploy", src.create_src_escrow, order)
            order.record("src_immutables", escrow.immutables)
            order.record("dst_complement", escrow.complement)
            order.record("src_escrow_address", escrow.address)
            order.record("src_deploy_tx", escrow.receipt.tx_ref)
            self._checkpoint(order)
            log.info(f"Order {order.hash[:18]}... source escrow {escrow.address}")

        if order.dst_deploy_tx is None:
            src_cancellation = unpack_for_leg(order.src_immutables.timelocks,
                                              Leg.SRC).cancellation_deadline
            dst_immutables = (order.src_immutables
                              .with_complement(order.dst_complement)
                              .with_taker(dst.escrow_taker())
                              .with_hashlock(order.hash_lock.for_kind(dst.kind)))
            escrow = self._leg_call(order, "dst_deploy", dst.create_dst_escrow,
                                    order, dst_immutables, src_cancellation)
            order.record("dst_immutables", escrow.immutables)
            order.record("dst_escrow_address", escrow.address)
            order.record("dst_deploy_tx", escrow.receipt.tx_ref)
            if escrow.htlc_script:
                order.record("htlc_script", escrow.htlc_script)
            self._checkpoint(order)
            log.info(f"Order {order.hash[:18]}... destination escrow {escrow.address}")

        order.advance(OrderStatus.ESCROW_CREATED)
        self._checkpoint(order)
        return self._done(order)

    # =========================================================================
    # escrow_created -> withdraw_completed
    # =========================================================================

    def withdraw(self, order_hash: str, secret: str) -> TransitionResult:
        """Withdraw the destination leg for the maker, then the source leg for the resolver."""
        return self._transition(order_hash, "withdraw",
                                lambda order: self._withdraw(order, secret))

    def _withdraw(self, order: Order, secret: str) -> TransitionResult:
        if order.status is OrderStatus.WITHDRAW_COMPLETED:
            return self._done(order, skipped=True)
        if order.status is not OrderStatus.ESCROW_CREATED:
            raise InvalidTransition(f"Cannot withdraw an order in status {order.status.value}",
                                    order_hash=order.hash, current=order.status.value)

        src = self.adapter(order.src_chain_id)
        dst = self.adapter(order.dst_chain_id)
        secret = to_hex32(secret, "secret")
        order.hash_lock.verify(secret, src.kind, dst.kind)

        if order.dst_withdraw_tx is None:
            receipt = self._leg_call(order, "dst_withdraw", dst.withdraw_escrow, Leg.DST, order, secret)
            if receipt is not None:
                order.record("dst_withdraw_tx", receipt.tx_ref)
                self._checkpoint(order)
            else:
                log.info(f"Order {order.hash[:18]}... destination is withdrawn by the maker")

        if order.src_withdraw_tx is None:
            receipt = self._leg_call(order, "src_withdraw", src.withdraw_escrow, Leg.SRC, order, secret)
            if receipt is not None:
                order.record("src_withdraw_tx", receipt.tx_ref)
                self._checkpoint(order)

        order.advance(OrderStatus.WITHDRAW_COMPLETED)
        self._checkpoint(order)
        log.info(f"Order {order.hash[:18]}... withdrawn")
        return self._done(order)

    # =========================================================================
    # escrow_created -> cancelled
    # =========================================================================

    def cancel(self, order_hash: str) -> TransitionResult:
        """Cancel the destination leg, then the source leg where the resolver may."""
        return self._transition(order_hash, "cancel", self._cancel)

    def _cancel(self, order: Order) -> TransitionResult:
        if order.status is OrderStatus.CANCELLED:
            return self._done(order, skipped=True)
        if order.status is not OrderStatus.ESCROW_CREATED:
            raise InvalidTransition(f"Cannot cancel an order in status {order.status.value}",
                                    order_hash=order.hash, current=order.status.value)
        if order.src_withdraw_tx or order.dst_withdraw_tx:
            raise InvalidTransition("Order is partially withdrawn", order_hash=order.hash)

        src = self.adapter(order.src_chain_id)
        dst = self.adapter(order.dst_chain_id)

        if order.dst_cancel_tx is None:
            receipt = self._leg_call(order, "dst_cancel", dst.cancel_escrow, Leg.DST, order)
            if receipt is not None:
                order.record("dst_cancel_tx", receipt.tx_ref)
                self._checkpoint(order)

        if order.src_cancel_tx is None:
            receipt = self._leg_call(order, "src_cancel", src.cancel_escrow, Leg.SRC, order)
            if receipt is not None:
                order.record("src_cancel_tx", receipt.tx_ref)
                self._checkpoint(order)

        order.advance(OrderStatus.CANCELLED)
        self._checkpoint(order)
        log.info(f"Order {order.hash[:18]}... cancelled")
        return self._done(order)

    # =========================================================================
    # Recovery
    # =========================================================================

    def process_pending(self) -> List[TransitionResult]:
        """Drive every stored order still in 'created' through create_escrows."""
        pending = [o.hash for o in self.store.list_all() if o.status is OrderStatus.CREATED]
        if pending:
            log.info(f"Resuming {len(pending)} pending orders")
        return [self.create_escrows(order_hash) for order_hash in pending]
