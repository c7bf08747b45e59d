"""
Stock ledger tests: stock-in, adjustments, opname, transfers.

Verifies:
- Every stock change appends exactly one movement with the same delta
- Stock never goes negative; rejected operations change nothing
- Duplicate lines are merged, opname keeps the last count
- verify_ledger reports drift and rebuild repairs it from the movement log
"""

import pytest

from stockledger.errors import (
    InsufficientStock,
    InsufficientStockBatch,
    InvalidDelta,
    OutletUnavailable,
    ProductInactive,
    ValidationError,
)
from stockledger.models import LifecycleState, Outlet, Stock, StockMovement
from stockledger.models.inventory import REF_STOCK_ADJUSTMENT, REF_STOCK_IN, REF_STOCK_OPNAME, REF_STOCK_TRANSFER
from stockledger.services import (
    catalog_service,
    inventory_service,
    ledger_service,
    opname_service,
    outlet_service,
    receive_service,
    transfer_service,
)


def _qty(outlet, variant):
    return inventory_service.get_quantity(outlet.id, variant.id)


# =============================================================================
# STOCK-IN
# =============================================================================


class TestReceiveStock:

    def test_receive_creates_document_and_in_movement(self, db_session, warehouse, variant_m, owner):
        stock_in = receive_service.receive_stock(
            items=[{"variant_id": variant_m.id, "qty": 10}],
            actor_user_id=owner.id,
            outlet_id=warehouse.id,
            supplier="  Konveksi Jaya ",
            note="   ",
        )

        assert _qty(warehouse, variant_m) == 10
        assert stock_in.supplier == "Konveksi Jaya"
        assert stock_in.note is None
        movements = ledger_service.movements_for_ref(REF_STOCK_IN, stock_in.id)
        assert len(movements) == 1
        assert movements[0].type == "IN"
        assert movements[0].quantity_delta == 10
        assert movements[0].actor_user_id == owner.id

    def test_duplicate_lines_are_merged(self, db_session, warehouse, variant_m):
        stock_in = receive_service.receive_stock(
            items=[
                {"variant_id": variant_m.id, "qty": 3},
                {"variantId": variant_m.id, "quantity": 4},
            ],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )

        assert len(stock_in.items) == 1
        assert stock_in.items[0].qty == 7
        assert len(ledger_service.movements_for_ref(REF_STOCK_IN, stock_in.id)) == 1
        assert _qty(warehouse, variant_m) == 7

    def test_defaults_to_warehouse_and_creates_one_when_missing(self, db_session, variant_m):
        assert db_session.query(Outlet).count() == 0

        receive_service.receive_stock(items=[{"variant_id": variant_m.id, "qty": 2}], actor_user_id=None)

        outlet = db_session.query(Outlet).one()
        assert outlet.type == "WAREHOUSE"
        assert outlet.name == "Gudang"
        assert _qty(outlet, variant_m) == 2

    @pytest.mark.parametrize("qty", [0, -1, "1.5", 2.0, True, None])
    def test_invalid_qty_rejected(self, db_session, warehouse, variant_m, qty):
        with pytest.raises(ValidationError):
            receive_service.receive_stock(
                items=[{"variant_id": variant_m.id, "qty": qty}],
                actor_user_id=None,
                outlet_id=warehouse.id,
            )
        assert db_session.query(StockMovement).count() == 0

    def test_empty_items_rejected(self, db_session, warehouse):
        with pytest.raises(ValidationError):
            receive_service.receive_stock(items=[], actor_user_id=None, outlet_id=warehouse.id)

    def test_deleted_variant_rejected(self, db_session, warehouse, variant_m):
        catalog_service.set_variant_lifecycle(variant_m.id, LifecycleState.DELETED)

        with pytest.raises(ProductInactive):
            receive_service.receive_stock(
                items=[{"variant_id": variant_m.id, "qty": 1}],
                actor_user_id=None,
                outlet_id=warehouse.id,
            )
        assert db_session.query(StockMovement).count() == 0

    def test_inactive_outlet_rejected(self, db_session, store_outlet, variant_m):
        outlet_service.set_outlet_lifecycle(store_outlet.id, LifecycleState.DEACTIVATED)

        with pytest.raises(OutletUnavailable):
            receive_service.receive_stock(
                items=[{"variant_id": variant_m.id, "qty": 1}],
                actor_user_id=None,
                outlet_id=store_outlet.id,
            )


# =============================================================================
# ADJUSTMENTS
# =============================================================================


class TestAdjustStock:

    def test_positive_and_negative_adjustments(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 5)

        up = inventory_service.adjust_stock(
            variant_id=variant_m.id, delta_qty=3, reason="found in back room",
            actor_user_id=None, outlet_id=warehouse.id,
        )
        down = inventory_service.adjust_stock(
            variant_id=variant_m.id, delta_qty=-6, reason="damaged",
            actor_user_id=None, outlet_id=warehouse.id,
        )

        assert _qty(warehouse, variant_m) == 2
        assert ledger_service.movements_for_ref(REF_STOCK_ADJUSTMENT, up.id)[0].quantity_delta == 3
        assert ledger_service.movements_for_ref(REF_STOCK_ADJUSTMENT, down.id)[0].quantity_delta == -6

    def test_zero_delta_rejected(self, db_session, warehouse, variant_m):
        with pytest.raises(InvalidDelta):
            inventory_service.adjust_stock(
                variant_id=variant_m.id, delta_qty=0, reason="nothing",
                actor_user_id=None, outlet_id=warehouse.id,
            )

    @pytest.mark.parametrize("reason", [None, "  ", " ab "])
    def test_reason_required(self, db_session, warehouse, variant_m, reason):
        with pytest.raises(ValidationError) as exc_info:
            inventory_service.adjust_stock(
                variant_id=variant_m.id, delta_qty=1, reason=reason,
                actor_user_id=None, outlet_id=warehouse.id,
            )
        assert exc_info.value.message == "reason must be at least 3 characters"
        assert _qty(warehouse, variant_m) == 0

    def test_cannot_go_negative(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 2)

        with pytest.raises(InsufficientStock) as exc_info:
            inventory_service.adjust_stock(
                variant_id=variant_m.id, delta_qty=-3, reason="lost",
                actor_user_id=None, outlet_id=warehouse.id,
            )

        assert exc_info.value.need == 3
        assert exc_info.value.have == 2
        assert _qty(warehouse, variant_m) == 2
        assert db_session.query(StockMovement).count() == 1

    def test_low_stock_notification(self, db_session, warehouse, variant_l, stock_up):
        from stockledger.models import OutboxMessage

        stock_up(warehouse, variant_l, 5)
        inventory_service.adjust_stock(
            variant_id=variant_l.id, delta_qty=-3, reason="damaged",
            actor_user_id=None, outlet_id=warehouse.id,
        )

        topics = [m.topic for m in db_session.query(OutboxMessage).order_by(OutboxMessage.id).all()]
        assert "stock.low" in topics


# =============================================================================
# OPNAME
# =============================================================================


class TestOpname:

    def test_count_replaces_quantity(self, db_session, warehouse, variant_m, variant_l, stock_up):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 4)

        opname = opname_service.record_opname(
            items=[
                {"variant_id": variant_m.id, "counted_qty": 7},
                {"variant_id": variant_l.id, "counted_qty": 4},
            ],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )

        assert _qty(warehouse, variant_m) == 7
        assert _qty(warehouse, variant_l) == 4
        lines = {item.variant_id: item for item in opname.items}
        assert (lines[variant_m.id].system_qty, lines[variant_m.id].diff_qty) == (10, -3)
        assert lines[variant_l.id].diff_qty == 0

        # diff == 0 appends nothing
        movements = ledger_service.movements_for_ref(REF_STOCK_OPNAME, opname.id)
        assert [(m.variant_id, m.quantity_delta) for m in movements] == [(variant_m.id, -3)]

    def test_last_count_wins(self, db_session, warehouse, variant_m):
        opname = opname_service.record_opname(
            items=[
                {"variant_id": variant_m.id, "counted_qty": 5},
                {"variant_id": variant_m.id, "countedQty": 8},
            ],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )

        assert len(opname.items) == 1
        assert opname.items[0].counted_qty == 8
        assert _qty(warehouse, variant_m) == 8

    def test_negative_count_rejected(self, db_session, warehouse, variant_m):
        with pytest.raises(ValidationError):
            opname_service.record_opname(
                items=[{"variant_id": variant_m.id, "counted_qty": -1}],
                actor_user_id=None,
                outlet_id=warehouse.id,
            )

    def test_count_to_zero(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 3)

        opname_service.record_opname(
            items=[{"variant_id": variant_m.id, "counted_qty": 0}],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )

        assert _qty(warehouse, variant_m) == 0
        assert ledger_service.verify_ledger() == []


# =============================================================================
# TRANSFERS
# =============================================================================


class TestTransfer:

    def test_transfer_moves_units(self, db_session, warehouse, store_outlet, variant_m, stock_up):
        stock_up(warehouse, variant_m, 10)

        transfer = transfer_service.transfer_stock(
            from_outlet_id=warehouse.id,
            to_outlet_id=store_outlet.id,
            items=[{"variant_id": variant_m.id, "qty": 4}],
            actor_user_id=None,
        )

        assert _qty(warehouse, variant_m) == 6
        assert _qty(store_outlet, variant_m) == 4
        movements = ledger_service.movements_for_ref(REF_STOCK_TRANSFER, transfer.id)
        assert sorted((m.type, m.quantity_delta) for m in movements) == [("TRANSFER_IN", 4), ("TRANSFER_OUT", -4)]

    def test_same_outlet_rejected(self, db_session, warehouse, variant_m):
        with pytest.raises(ValidationError):
            transfer_service.transfer_stock(
                from_outlet_id=warehouse.id,
                to_outlet_id=warehouse.id,
                items=[{"variant_id": variant_m.id, "qty": 1}],
                actor_user_id=None,
            )

    def test_one_short_line_rejects_whole_transfer(
        self, db_session, warehouse, store_outlet, variant_m, variant_l, stock_up
    ):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 1)
        before = db_session.query(StockMovement).count()

        with pytest.raises(InsufficientStock):
            transfer_service.transfer_stock(
                from_outlet_id=warehouse.id,
                to_outlet_id=store_outlet.id,
                items=[
                    {"variant_id": variant_m.id, "qty": 5},
                    {"variant_id": variant_l.id, "qty": 2},
                ],
                actor_user_id=None,
            )

        assert _qty(warehouse, variant_m) == 10
        assert _qty(store_outlet, variant_m) == 0
        assert db_session.query(StockMovement).count() == before

    def test_every_shortfall_reported(self, db_session, warehouse, store_outlet, variant_m, variant_l):
        with pytest.raises(InsufficientStockBatch) as exc_info:
            transfer_service.transfer_stock(
                from_outlet_id=warehouse.id,
                to_outlet_id=store_outlet.id,
                items=[
                    {"variant_id": variant_m.id, "qty": 1},
                    {"variant_id": variant_l.id, "qty": 2},
                ],
                actor_user_id=None,
            )

        shortfalls = exc_info.value.details()["insufficient"]
        assert {s["variant_id"] for s in shortfalls} == {variant_m.id, variant_l.id}


# =============================================================================
# LEDGER CONSISTENCY
# =============================================================================


class TestLedgerConsistency:

    def test_sequence_matches_movement_sum(self, db_session, warehouse, store_outlet, variant_m, stock_up):
        stock_up(warehouse, variant_m, 20)
        transfer_service.transfer_stock(
            from_outlet_id=warehouse.id,
            to_outlet_id=store_outlet.id,
            items=[{"variant_id": variant_m.id, "qty": 8}],
            actor_user_id=None,
        )
        inventory_service.adjust_stock(
            variant_id=variant_m.id, delta_qty=-2, reason="damaged",
            actor_user_id=None, outlet_id=store_outlet.id,
        )
        opname_service.record_opname(
            items=[{"variant_id": variant_m.id, "counted_qty": 11}],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )

        assert ledger_service.verify_ledger() == []
        assert ledger_service.ledger_quantity(warehouse.id, variant_m.id) == _qty(warehouse, variant_m) == 11
        assert ledger_service.ledger_quantity(store_outlet.id, variant_m.id) == _qty(store_outlet, variant_m) == 6

    def test_verify_reports_and_rebuild_repairs_drift(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 5)
        stock = db_session.query(Stock).filter_by(outlet_id=warehouse.id, variant_id=variant_m.id).one()
        stock.qty = 9
        db_session.commit()

        divergences = ledger_service.verify_ledger()
        assert divergences == [{
            "outlet_id": warehouse.id,
            "variant_id": variant_m.id,
            "stock_qty": 9,
            "ledger_qty": 5,
            "diff": 4,
        }]

        ledger_service.rebuild_stock_from_movements()

        assert ledger_service.verify_ledger() == []
        assert _qty(warehouse, variant_m) == 5
