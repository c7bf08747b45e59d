# Overview: Stock-in (goods received into an outlet).

"""
Stock-In Service

WHY: Deliveries from the production house or a supplier are the only way
new units enter the system. A stock-in always succeeds for existing,
non-deleted variants.

DESIGN:
- One StockIn document per user action, immutable afterwards.
- Duplicate variant lines in the request are merged into one item.
- Each item appends one IN movement: ref_type=STOCK_IN, ref_id=<stock_in.id>.
"""

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import StockIn, StockInItem
from ..models.inventory import MOVEMENT_IN, REF_STOCK_IN
from ..validation import aggregate_lines, optional_text
from stockledger.time_utils import coerce_occurred_at
from .catalog_service import require_variants
from .concurrency import run_with_retry
from .inventory_service import apply_stock_delta
from .notification_service import emit
from .outlet_service import resolve_outlet


def receive_stock(
    *,
    items,
    actor_user_id: int | None,
    outlet_id: int | None = None,
    supplier: str | None = None,
    note: str | None = None,
    occurred_at=None,
) -> StockIn:
    lines = aggregate_lines(items)
    occurred = coerce_occurred_at(occurred_at)

    def _op():
        outlet = resolve_outlet(outlet_id)
        require_variants(lines.keys())

        stock_in = StockIn(
            outlet_id=outlet.id,
            supplier=optional_text(supplier),
            note=optional_text(note),
            occurred_at=occurred,
            created_by_user_id=actor_user_id,
        )
        db.session.add(stock_in)
        db.session.flush()

        for variant_id, qty in lines.items():
            db.session.add(StockInItem(stock_in_id=stock_in.id, variant_id=variant_id, qty=qty))
            apply_stock_delta(
                outlet_id=outlet.id,
                variant_id=variant_id,
                movement_type=MOVEMENT_IN,
                qty=qty,
                ref_type=REF_STOCK_IN,
                ref_id=stock_in.id,
                actor_user_id=actor_user_id,
                note=note,
                occurred_at=occurred,
            )

        emit("stock.received", {
            "stock_in_id": stock_in.id,
            "outlet_id": outlet.id,
            "units": sum(lines.values()),
        })
        db.session.commit()
        current_app.logger.info(
            "Stock-in id=%s outlet=%s lines=%s by user=%s",
            stock_in.id, outlet.id, len(lines), actor_user_id,
        )
        return stock_in

    return run_with_retry(_op)
