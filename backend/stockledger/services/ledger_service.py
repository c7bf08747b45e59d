# Overview: Append-only movement log: writes, idempotence checks, verification against Stock.

from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import Stock, StockMovement
from ..models.inventory import (
    MOVEMENT_ADJUSTMENT,
    MOVEMENT_IN,
    MOVEMENT_OUT,
    MOVEMENT_TRANSFER_IN,
    MOVEMENT_TRANSFER_OUT,
)
from stockledger.time_utils import utcnow
from .concurrency import run_with_retry
"""
Ledger invariants (authoritative)

- stock_movements is append-only: rows are never updated or deleted.
- Every change to stocks.qty is written in the same DB transaction as
  exactly one movement whose quantity_delta equals the change.
- For every (outlet, variant): stocks.qty == SUM(quantity_delta).
  When the two disagree the movement log wins (rebuild_stock_from_movements).
- (ref_type, ref_id, variant_id) identifies the cause of a movement; a
  mutator checks movement_exists before applying the same cause again, and
  the unique constraint on the table catches concurrent duplicates.
- occurred_at is business time; created_at is system time (DB default).
"""


POSITIVE_TYPES = (MOVEMENT_IN, MOVEMENT_TRANSFER_IN)
NEGATIVE_TYPES = (MOVEMENT_OUT, MOVEMENT_TRANSFER_OUT)


def signed_delta(movement_type: str, qty: int) -> int:
    """Sign a magnitude according to the movement type (ADJUSTMENT keeps its sign)."""
    if movement_type in POSITIVE_TYPES:
        return abs(qty)
    if movement_type in NEGATIVE_TYPES:
        return -abs(qty)
    if movement_type == MOVEMENT_ADJUSTMENT:
        return qty
    raise ValueError(f"Unknown movement type {movement_type}")


def append_movement(
    *,
    movement_type: str,
    outlet_id: int,
    variant_id: int,
    quantity_delta: int,
    ref_type: str,
    ref_id,
    actor_user_id: int | None = None,
    note: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> StockMovement:
    """
    Append one movement row.

    Called only from inventory_service.apply_stock_delta, inside the same
    transaction that changed Stock.
    """
    if quantity_delta == 0:
        raise ValueError("movement quantity cannot be 0")
    if signed_delta(movement_type, quantity_delta) != quantity_delta:
        raise ValueError(f"{movement_type} movement cannot have delta {quantity_delta}")

    movement = StockMovement(
        type=movement_type,
        outlet_id=outlet_id,
        variant_id=variant_id,
        qty=abs(quantity_delta),
        quantity_delta=quantity_delta,
        ref_type=ref_type,
        ref_id=str(ref_id),
        actor_user_id=actor_user_id,
        note=note,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement


def movement_exists(
    *,
    ref_type: str,
    ref_id,
    variant_id: int,
    outlet_id: int | None = None,
    movement_type: str | None = None,
) -> bool:
    query = db.session.query(StockMovement.id).filter(
        StockMovement.ref_type == ref_type,
        StockMovement.ref_id == str(ref_id),
        StockMovement.variant_id == variant_id,
    )
    if outlet_id is not None:
        query = query.filter(StockMovement.outlet_id == outlet_id)
    if movement_type is not None:
        query = query.filter(StockMovement.type == movement_type)
    return query.first() is not None


def movements_for_ref(ref_type: str, ref_id) -> list[StockMovement]:
    return (
        db.session.query(StockMovement)
        .filter(StockMovement.ref_type == ref_type, StockMovement.ref_id == str(ref_id))
        .order_by(StockMovement.id.asc())
        .all()
    )


def list_movements(
    *,
    outlet_id: int | None = None,
    variant_id: int | None = None,
    ref_type: str | None = None,
    ref_id=None,
    movement_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[StockMovement], int]:
    """Newest-first movement history with optional filters. Returns (rows, total)."""
    query = db.session.query(StockMovement)
    if outlet_id is not None:
        query = query.filter(StockMovement.outlet_id == outlet_id)
    if variant_id is not None:
        query = query.filter(StockMovement.variant_id == variant_id)
    if ref_type:
        query = query.filter(StockMovement.ref_type == ref_type)
    if ref_id is not None:
        query = query.filter(StockMovement.ref_id == str(ref_id))
    if movement_type:
        query = query.filter(StockMovement.type == movement_type)
    if start is not None:
        query = query.filter(StockMovement.occurred_at >= start)
    if end is not None:
        query = query.filter(StockMovement.occurred_at <= end)

    total = query.count()
    rows = (
        query.order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return rows, total


def ledger_quantity(outlet_id: int, variant_id: int) -> int:
    """Signed sum of the movement log for one pair."""
    total = db.session.query(
        func.coalesce(func.sum(StockMovement.quantity_delta), 0)
    ).filter(
        StockMovement.outlet_id == outlet_id,
        StockMovement.variant_id == variant_id,
    ).scalar()
    return int(total or 0)


def verify_ledger() -> list[dict]:
    """
    Compare every Stock row with the signed movement sum.

    Returns one entry per diverging (outlet, variant) pair, including pairs
    that have movements but no Stock row. An empty list means consistent.
    """
    sums = {
        (row.outlet_id, row.variant_id): int(row.total or 0)
        for row in db.session.query(
            StockMovement.outlet_id,
            StockMovement.variant_id,
            func.sum(StockMovement.quantity_delta).label("total"),
        ).group_by(StockMovement.outlet_id, StockMovement.variant_id)
    }
    cached = {
        (row.outlet_id, row.variant_id): row.qty
        for row in db.session.query(Stock.outlet_id, Stock.variant_id, Stock.qty)
    }

    divergences = []
    for key in sorted(set(sums) | set(cached)):
        ledger_qty = sums.get(key, 0)
        stock_qty = cached.get(key, 0)
        if ledger_qty != stock_qty:
            divergences.append({
                "outlet_id": key[0],
                "variant_id": key[1],
                "stock_qty": stock_qty,
                "ledger_qty": ledger_qty,
                "diff": stock_qty - ledger_qty,
            })

    for d in divergences:
        current_app.logger.warning(
            "Ledger divergence outlet=%s variant=%s stock=%s ledger=%s",
            d["outlet_id"], d["variant_id"], d["stock_qty"], d["ledger_qty"],
        )
    return divergences


def rebuild_stock_from_movements() -> list[dict]:
    """
    Repair Stock from the movement log.

    The single sanctioned write to Stock outside apply_stock_delta: the
    movement log is authoritative, so the cache is overwritten with it.
    Returns the divergences that were fixed.
    """
    def _op():
        divergences = verify_ledger()
        for d in divergences:
            if d["ledger_qty"] < 0:
                raise ValueError(
                    f"Movement log sums to {d['ledger_qty']} for outlet {d['outlet_id']} "
                    f"variant {d['variant_id']}; refusing to write a negative stock"
                )
            stock = (
                db.session.query(Stock)
                .filter_by(outlet_id=d["outlet_id"], variant_id=d["variant_id"])
                .first()
            )
            if stock is None:
                stock = Stock(outlet_id=d["outlet_id"], variant_id=d["variant_id"], qty=0)
                db.session.add(stock)
            stock.qty = d["ledger_qty"]
        db.session.commit()
        return divergences

    return run_with_retry(_op)
