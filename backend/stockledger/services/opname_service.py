# backend/stockledger/services/opname_service.py
"""
Stock opname (physical count).

WHY: Counting the shelves is how drift (theft, mis-picks, damaged goods)
gets back into the books. The count replaces the system quantity.

RULES:
- counted_qty >= 0; a variant listed twice keeps its LAST count.
- Each line records system_qty (at count time), counted_qty and diff.
- diff != 0 appends one ADJUSTMENT movement of that signed diff
  (ref_type=STOCK_OPNAME); diff == 0 appends nothing.
- An opname never fails for stock reasons: qty := counted_qty >= 0.
"""
from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import StockOpname, StockOpnameItem
from ..models.inventory import MOVEMENT_ADJUSTMENT, REF_STOCK_OPNAME
from ..validation import MAX_LINE_QTY, pick, require_int, require_items
from stockledger.time_utils import coerce_occurred_at
from .catalog_service import require_variants
from .concurrency import run_with_retry
from .inventory_service import apply_stock_delta, lock_stock_rows
from .notification_service import emit
from .outlet_service import resolve_outlet


def _last_counts(items) -> dict[int, int]:
    counts: dict[int, int] = {}
    for idx, item in enumerate(require_items(items)):
        variant_id = require_int(pick(item, "variant_id", "variantId"), f"items[{idx}].variant_id", minimum=1)
        counted = require_int(
            pick(item, "counted_qty", "countedQty"),
            f"items[{idx}].counted_qty",
            minimum=0,
            maximum=MAX_LINE_QTY,
        )
        # later lines win
        counts.pop(variant_id, None)
        counts[variant_id] = counted
    return counts


def record_opname(
    *,
    items,
    actor_user_id: int | None,
    outlet_id: int | None = None,
    note: str | None = None,
    occurred_at=None,
) -> StockOpname:
    counts = _last_counts(items)
    occurred = coerce_occurred_at(occurred_at)

    def _op():
        outlet = resolve_outlet(outlet_id)
        require_variants(counts.keys())
        rows = lock_stock_rows(outlet.id, counts.keys())

        opname = StockOpname(
            outlet_id=outlet.id,
            note=note,
            occurred_at=occurred,
            created_by_user_id=actor_user_id,
        )
        db.session.add(opname)
        db.session.flush()

        adjusted = 0
        for variant_id, counted in counts.items():
            system_qty = rows[variant_id].qty
            diff = counted - system_qty
            db.session.add(StockOpnameItem(
                opname_id=opname.id,
                variant_id=variant_id,
                system_qty=system_qty,
                counted_qty=counted,
                diff_qty=diff,
            ))
            if diff != 0:
                apply_stock_delta(
                    outlet_id=outlet.id,
                    variant_id=variant_id,
                    movement_type=MOVEMENT_ADJUSTMENT,
                    qty=diff,
                    ref_type=REF_STOCK_OPNAME,
                    ref_id=opname.id,
                    actor_user_id=actor_user_id,
                    note=note or "Stock opname",
                    occurred_at=occurred,
                )
                adjusted += 1

        emit("stock.opname_recorded", {
            "opname_id": opname.id,
            "outlet_id": outlet.id,
            "lines": len(counts),
            "adjusted_lines": adjusted,
        })
        db.session.commit()
        current_app.logger.info(
            "Opname id=%s outlet=%s lines=%s adjusted=%s by user=%s",
            opname.id, outlet.id, len(counts), adjusted, actor_user_id,
        )
        return opname

    return run_with_retry(_op)
