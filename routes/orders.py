"""
Order relay and resolver endpoints.

Handlers that drive chain transactions are sync functions, so FastAPI runs
them in its threadpool; intake schedules escrow creation in the background.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException
from pydantic import BaseModel, Field

from resolver.core import Order
from resolver.errors import (
    ResolverError, ValidationError, SecretMismatch, InvalidScriptParameters,
    OrderNotFound, InvalidTransition, InsufficientFunds, NoUTXOs,
    RevertedExecution, BroadcastRejected, StoreUnavailable, RpcUnavailable, Timeout,
)
from resolver.swap.orchestrator import Orchestrator, TransitionResult

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Wiring (set by server.py at startup)
# ---------------------------------------------------------------------------

_orchestrator: Optional[Orchestrator] = None


def configure(orchestrator: Orchestrator):
    """Attach the orchestrator. Called once at startup by server.py."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> Orchestrator:
    if _orchestrator is None:
        raise HTTPException(503, "Resolver not configured")
    return _orchestrator


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

# Checked in order; subclasses before their bases
_STATUS_CODES = (
    (InvalidTransition, 409),
    (OrderNotFound, 404),
    (ValidationError, 400),
    (SecretMismatch, 400),
    (InvalidScriptParameters, 400),
    (InsufficientFunds, 402),
    (NoUTXOs, 402),
    (RevertedExecution, 502),
    (BroadcastRejected, 502),
    (StoreUnavailable, 503),
    (RpcUnavailable, 503),
    (Timeout, 504),
)


def status_code_for(error: ResolverError) -> int:
    for cls, code in _STATUS_CODES:
        if isinstance(error, cls):
            return code
    return 500


def _raise_for(error: ResolverError):
    raise HTTPException(status_code_for(error), detail=error.to_dict())


def _result(result: TransitionResult) -> Dict[str, Any]:
    if not result.success:
        _raise_for(result.error)
    body = result.to_dict()
    body["order"] = result.order.to_dict() if result.order else None
    return body


def _load(order_hash: str) -> Order:
    try:
        return get_orchestrator().store.get(order_hash)
    except ResolverError as e:
        _raise_for(e)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class HashLockModel(BaseModel):
    keccak256: str
    sha256: str


class TimeLocksModel(BaseModel):
    src_withdrawal: int
    src_public_withdrawal: int
    src_cancellation: int
    src_public_cancellation: int
    dst_withdrawal: int
    dst_public_withdrawal: int
    dst_cancellation: int


class OrderCreateRequest(BaseModel):
    hash: str = Field(..., description="32-byte order hash")
    src_chain_id: int
    dst_chain_id: int
    maker_address: str
    making_amount: int = Field(..., gt=0)
    taking_amount: int = Field(..., gt=0)
    hash_lock: HashLockModel
    time_locks: TimeLocksModel
    taker_address: Optional[str] = None
    receiver_address: Optional[str] = Field(None, description="Maker's address on the destination chain")
    maker_asset: Optional[str] = None
    taker_asset: Optional[str] = None
    src_safety_deposit: int = 0
    dst_safety_deposit: int = 0
    limit_order: Optional[Dict[str, Any]] = Field(None, description="Signed limit order (account-chain source)")
    extension: Optional[str] = None
    signature: Optional[str] = None
    src_funding_tx: Optional[str] = Field(None, description="Maker's HTLC funding txid (UTXO source)")
    htlc_script: Optional[str] = None
    btc_user_recipient_key: Optional[str] = Field(None, description="Maker's compressed BTC public key")


class SecretRequest(BaseModel):
    secret: str = Field(..., description="32-byte preimage of the hash lock")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.get("/api/status")
def get_status():
    """Health check and configured chains."""
    orchestrator = get_orchestrator()
    try:
        orders = orchestrator.store.list_all()
    except ResolverError as e:
        _raise_for(e)
    counts: Dict[str, int] = {}
    for order in orders:
        counts[order.status.value] = counts.get(order.status.value, 0) + 1
    return {
        "status": "ok",
        "timestamp": int(time.time()),
        "chains": [a.status() for _, a in sorted(orchestrator.adapters.items())],
        "orders_total": len(orders),
        "orders_by_status": counts,
    }


@router.post("/api/orders")
def create_order(req: OrderCreateRequest, background_tasks: BackgroundTasks):
    """Accept an order and start escrow creation in the background."""
    orchestrator = get_orchestrator()
    try:
        order = Order.from_dict(req.model_dump())
    except ResolverError as e:
        _raise_for(e)

    result = orchestrator.submit(order)
    body = _result(result)
    if not result.skipped:
        background_tasks.add_task(orchestrator.create_escrows, order.hash)
    return body


@router.get("/api/orders")
def list_orders(status: Optional[str] = None) -> List[Dict[str, Any]]:
    try:
        orders = get_orchestrator().store.list_all()
    except ResolverError as e:
        _raise_for(e)
    if status:
        orders = [o for o in orders if o.status.value == status]
    return [o.to_dict() for o in sorted(orders, key=lambda o: o.created_at)]


@router.get("/api/orders/{order_hash}")
def get_order(order_hash: str):
    return _load(order_hash).to_dict()


@router.get("/api/orders/{order_hash}/status")
def get_order_status(order_hash: str):
    order = _load(order_hash)
    return {
        "hash": order.hash,
        "status": order.status.value,
        "src_escrow_address": order.src_escrow_address,
        "dst_escrow_address": order.dst_escrow_address,
        "updated_at": order.updated_at,
    }


@router.post("/api/orders/{order_hash}/escrow")
def create_escrows(order_hash: str):
    """Create (or resume creating) both escrows."""
    return _result(get_orchestrator().create_escrows(order_hash))


@router.post("/api/orders/{order_hash}/secret")
def submit_secret(order_hash: str, req: SecretRequest):
    """Secret relay: withdraw both legs."""
    return _result(get_orchestrator().withdraw(order_hash, req.secret))


@router.post("/api/orders/{order_hash}/cancel")
def cancel_order(order_hash: str):
    return _result(get_orchestrator().cancel(order_hash))


@router.get("/api/orders/{order_hash}/dst-withdraw-params")
def get_dst_withdraw_params(order_hash: str):
    """What the maker needs to withdraw the destination escrow."""
    order = _load(order_hash)
    if not order.dst_escrow_address or order.dst_immutables is None:
        raise HTTPException(422, "Incomplete order data")
    return {
        "dst_chain_id": order.dst_chain_id,
        "dst_escrow_address": order.dst_escrow_address,
        "dst_immutables": order.dst_immutables.to_dict(),
        "dst_deploy_tx": order.dst_deploy_tx,
        "htlc_script": order.htlc_script,
    }
