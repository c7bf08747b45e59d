# backend/stockledger/services/transfer_service.py
"""
Inter-outlet stock transfer.

WHY: Moving stock from the warehouse to a store (or back) must never lose
or invent units. A transfer is one transaction: TRANSFER_OUT at the source
and TRANSFER_IN at the destination, both with ref_type=STOCK_TRANSFER and
the same ref_id.

RULES:
- Source and destination must differ and both be ACTIVE.
- Every line is checked against the source before any line is applied;
  one short line rejects the whole transfer.
"""
from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import ValidationError
from ..models import StockTransfer, StockTransferItem
from ..models.inventory import MOVEMENT_TRANSFER_IN, MOVEMENT_TRANSFER_OUT, REF_STOCK_TRANSFER
from ..validation import aggregate_lines
from stockledger.time_utils import coerce_occurred_at
from .catalog_service import require_variants
from .concurrency import run_with_retry
from .inventory_service import apply_stock_delta, emit_low_stock, find_shortfalls, lock_stock_rows, raise_for_shortfalls
from .notification_service import emit
from .outlet_service import resolve_outlet


def transfer_stock(
    *,
    from_outlet_id: int,
    to_outlet_id: int,
    items,
    actor_user_id: int | None,
    note: str | None = None,
    occurred_at=None,
) -> StockTransfer:
    """
    Move stock between outlets.

    Raises:
        ValidationError: same outlet on both sides, malformed lines
        InsufficientStock / InsufficientStockBatch: source cannot cover a line
    """
    if from_outlet_id is None or to_outlet_id is None:
        raise ValidationError("from_outlet_id and to_outlet_id are required")
    if from_outlet_id == to_outlet_id:
        raise ValidationError("Cannot transfer to the same outlet")
    lines = aggregate_lines(items)
    occurred = coerce_occurred_at(occurred_at)

    def _op():
        source = resolve_outlet(from_outlet_id)
        destination = resolve_outlet(to_outlet_id)
        require_variants(lines.keys())

        raise_for_shortfalls(find_shortfalls(source.id, lines))
        lock_stock_rows(destination.id, lines.keys())

        transfer = StockTransfer(
            from_outlet_id=source.id,
            to_outlet_id=destination.id,
            note=note,
            occurred_at=occurred,
            created_by_user_id=actor_user_id,
        )
        db.session.add(transfer)
        db.session.flush()

        for variant_id, qty in lines.items():
            db.session.add(StockTransferItem(transfer_id=transfer.id, variant_id=variant_id, qty=qty))
            apply_stock_delta(
                outlet_id=source.id,
                variant_id=variant_id,
                movement_type=MOVEMENT_TRANSFER_OUT,
                qty=qty,
                ref_type=REF_STOCK_TRANSFER,
                ref_id=transfer.id,
                actor_user_id=actor_user_id,
                note=note,
                occurred_at=occurred,
            )
            apply_stock_delta(
                outlet_id=destination.id,
                variant_id=variant_id,
                movement_type=MOVEMENT_TRANSFER_IN,
                qty=qty,
                ref_type=REF_STOCK_TRANSFER,
                ref_id=transfer.id,
                actor_user_id=actor_user_id,
                note=note,
                occurred_at=occurred,
            )

        emit_low_stock(source.id, lines.keys())
        emit("stock.transferred", {
            "transfer_id": transfer.id,
            "from_outlet_id": source.id,
            "to_outlet_id": destination.id,
            "units": sum(lines.values()),
        })
        db.session.commit()
        current_app.logger.info(
            "Transfer id=%s %s -> %s lines=%s by user=%s",
            transfer.id, source.id, destination.id, len(lines), actor_user_id,
        )
        return transfer

    return run_with_retry(_op)
