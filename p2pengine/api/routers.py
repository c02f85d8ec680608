"""Operator API routers — dispatches, orders, positioning.

No business logic. Every route is scoped by ``merchant_id``; a record that
belongs to another merchant is reported as not found.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Body, HTTPException, Query

from p2pengine.config import validate_interval
from p2pengine.dispatch.models import DispatchSource, DispatchState
from p2pengine.errors import IllegalTransition, IntentValidationError, NotFound
from p2pengine.positioning.models import PositioningConfig, Side, TupleKey
from p2pengine.repos.tuple_state_repo import state_to_dict
from p2pengine.sync.lifecycle import OrderStatus

logger = logging.getLogger("p2pengine.api")
router = APIRouter()

# ── Shared state (set during app startup) ────────────────────────────────

_config = None             # Set via configure_routers()
_merchant_ids: set[str] = set()
_dispatch_queue = None     # Set via configure_routers()
_order_repo = None         # Set via configure_routers()
_synchronizer = None       # Set via configure_routers()
_positioning_repo = None   # Set via configure_routers()
_state_repo = None         # Set via configure_routers()


def configure_routers(
    config,
    merchant_ids,
    dispatch_queue,
    order_repo,
    synchronizer,
    positioning_repo,
    state_repo,
) -> None:
    """Inject dependencies from the application startup.

    Args:
        config: Application ``Config``.
        merchant_ids: Ids of configured merchants; anything else is 404.
        dispatch_queue: A ``DispatchQueue`` (or duck-type for tests).
        order_repo: An ``OrderRepo``.
        synchronizer: An ``OrderSynchronizer``.
        positioning_repo: A ``PositioningRepo``.
        state_repo: A ``TupleStateRepo``.
    """
    global _config, _merchant_ids, _dispatch_queue, _order_repo  # noqa: PLW0603
    global _synchronizer, _positioning_repo, _state_repo  # noqa: PLW0603
    _config = config
    _merchant_ids = set(merchant_ids)
    _dispatch_queue = dispatch_queue
    _order_repo = order_repo
    _synchronizer = synchronizer
    _positioning_repo = positioning_repo
    _state_repo = state_repo


def _require_merchant(merchant_id: str) -> None:
    if merchant_id not in _merchant_ids:
        raise HTTPException(status_code=404, detail=f"Unknown merchant: {merchant_id}")


def _enum_or_422(enum_cls, value: Optional[str]):
    if value is None:
        return None
    try:
        return enum_cls(value.upper())
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid value: {value}")


# ── Dispatches ───────────────────────────────────────────────────────────


@router.get("/merchants/{merchant_id}/dispatches")
async def list_dispatches(
    merchant_id: str,
    status: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    """List a merchant's dispatches, optionally filtered by state."""
    _require_merchant(merchant_id)
    state = _enum_or_422(DispatchState, status)
    dispatches = _dispatch_queue.list_dispatches(merchant_id, state=state, limit=limit)
    return {"dispatches": [d.to_dict() for d in dispatches], "total": len(dispatches)}


@router.post("/merchants/{merchant_id}/dispatches", status_code=201)
async def create_dispatch(merchant_id: str, payload: dict = Body(...)):
    """Enqueue a manual buy intent."""
    _require_merchant(merchant_id)
    try:
        dispatch = _dispatch_queue.enqueue(merchant_id, payload, source=DispatchSource.MANUAL)
    except IntentValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return dispatch.to_dict()


@router.post("/merchants/{merchant_id}/dispatches/{dispatch_id}/retry")
async def retry_dispatch(
    merchant_id: str,
    dispatch_id: str,
    reset_attempts: bool = Query(False),
):
    """Operator retry of a DEAD or RETRYING dispatch."""
    _require_merchant(merchant_id)
    try:
        dispatch = _dispatch_queue.retry(merchant_id, dispatch_id, reset_attempts=reset_attempts)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except IllegalTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return dispatch.to_dict()


@router.post("/merchants/{merchant_id}/dispatches/{dispatch_id}/cancel")
async def cancel_dispatch(merchant_id: str, dispatch_id: str):
    """Cancel a PENDING/RETRYING dispatch, or flag a RUNNING one."""
    _require_merchant(merchant_id)
    try:
        dispatch = _dispatch_queue.cancel(merchant_id, dispatch_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except IllegalTransition as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return dispatch.to_dict()


# ── Orders ───────────────────────────────────────────────────────────────


@router.get("/merchants/{merchant_id}/orders")
async def list_orders(
    merchant_id: str,
    status: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
):
    """List cached orders by status and creation time range."""
    _require_merchant(merchant_id)
    order_status = _enum_or_422(OrderStatus, status)
    orders = _order_repo.list_for_merchant(
        merchant_id, status=order_status, since=since, until=until, limit=limit,
    )
    return {"orders": [o.to_dict() for o in orders], "total": len(orders)}


@router.post("/merchants/{merchant_id}/orders/sync")
async def sync_orders(merchant_id: str):
    """Run one synchronizer pass for the merchant now."""
    _require_merchant(merchant_id)
    return await _synchronizer.sync_merchant(merchant_id)


# ── Positioning ──────────────────────────────────────────────────────────


@router.get("/merchants/{merchant_id}/positioning")
async def get_positioning(merchant_id: str):
    """Current tuple configs and scheduler states."""
    _require_merchant(merchant_id)
    return {
        "configs": [c.to_dict() for c in _positioning_repo.list_configs(merchant_id)],
        "states": [state_to_dict(s) for s in _state_repo.list_for_merchant(merchant_id)],
    }


@router.put("/merchants/{merchant_id}/positioning/{asset}/{fiat}/{side}")
async def update_positioning(
    merchant_id: str,
    asset: str,
    fiat: str,
    side: str,
    updates: dict = Body(...),
):
    """Update a tuple's config; the scheduler picks it up next cycle.

    Identity fields in the body are ignored in favour of the path.
    """
    _require_merchant(merchant_id)
    key = TupleKey(merchant_id, asset.upper(), fiat.upper(), _enum_or_422(Side, side))
    current = _positioning_repo.get_config(key)
    if current is None:
        raise HTTPException(status_code=404, detail=f"No positioning config for {key}")

    merged = {
        **current.to_dict(),
        **updates,
        "merchant_id": key.merchant_id,
        "asset": key.asset,
        "fiat": key.fiat,
        "side": key.side.value,
    }
    try:
        cfg = PositioningConfig.from_dict(merged)
        validate_interval(cfg, _config)
    except (ValueError, TypeError, ArithmeticError) as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    _positioning_repo.upsert_config(cfg)
    logger.info("Positioning config for %s updated: %s", key, sorted(updates))
    return cfg.to_dict()


@router.get("/merchants/{merchant_id}/positioning/decisions")
async def list_decisions(merchant_id: str, limit: int = Query(50, ge=1, le=500)):
    """Recent pricing decisions, newest first."""
    _require_merchant(merchant_id)
    decisions = _positioning_repo.list_decisions(merchant_id, limit=limit)
    return {"decisions": decisions, "total": len(decisions)}
