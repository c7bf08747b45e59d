"""
Order tests: sale stock-out and cancel/return compensation.
"""

import pytest

from stockledger.errors import (
    InsufficientStock,
    InsufficientStockBatch,
    InvalidTransition,
    NotFound,
    ProductInactive,
    ValidationError,
)
from stockledger.models import LifecycleState, Order, StockMovement
from stockledger.models.inventory import REF_ORDER, REF_ORDER_RETURN
from stockledger.services import catalog_service, inventory_service, ledger_service, order_service


def _qty(outlet, variant):
    return inventory_service.get_quantity(outlet.id, variant.id)


# =============================================================================
# CREATE
# =============================================================================


class TestCreateOrder:

    def test_order_takes_stock_and_prices_lines(self, db_session, warehouse, variant_m, variant_l, stock_up, staff):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 10)

        order = order_service.create_order(
            items=[
                {"variant_id": variant_m.id, "qty": 2},
                {"variant_id": variant_l.id, "qty": 1, "price": 60000},
            ],
            actor_user_id=staff.id,
            outlet_id=warehouse.id,
            payment_method="CASH",
        )

        assert order.status == "PAID"
        assert order.order_code.startswith("ORD-")
        assert order.total_amount == 2 * 75000 + 60000
        assert _qty(warehouse, variant_m) == 8
        assert _qty(warehouse, variant_l) == 9

        movements = ledger_service.movements_for_ref(REF_ORDER, order.id)
        assert sorted((m.variant_id, m.quantity_delta) for m in movements) == sorted(
            [(variant_m.id, -2), (variant_l.id, -1)]
        )

    def test_repeated_variant_gets_one_movement(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 10)

        order = order_service.create_order(
            items=[
                {"variant_id": variant_m.id, "qty": 2},
                {"variant_id": variant_m.id, "qty": 3},
            ],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )

        assert len(order.items) == 2
        movements = ledger_service.movements_for_ref(REF_ORDER, order.id)
        assert [m.quantity_delta for m in movements] == [-5]
        assert _qty(warehouse, variant_m) == 5

    def test_shortfall_rejects_whole_order(self, db_session, warehouse, variant_m, variant_l, stock_up):
        stock_up(warehouse, variant_m, 10)
        before = db_session.query(StockMovement).count()

        with pytest.raises(InsufficientStock) as exc_info:
            order_service.create_order(
                items=[
                    {"variant_id": variant_m.id, "qty": 1},
                    {"variant_id": variant_l.id, "qty": 1},
                ],
                actor_user_id=None,
                outlet_id=warehouse.id,
            )

        assert exc_info.value.variant_id == variant_l.id
        assert db_session.query(Order).count() == 0
        assert db_session.query(StockMovement).count() == before
        assert _qty(warehouse, variant_m) == 10

    def test_all_shortfalls_reported(self, db_session, warehouse, variant_m, variant_l):
        with pytest.raises(InsufficientStockBatch) as exc_info:
            order_service.create_order(
                items=[
                    {"variant_id": variant_m.id, "qty": 1},
                    {"variant_id": variant_l.id, "qty": 4},
                ],
                actor_user_id=None,
                outlet_id=warehouse.id,
            )

        body = exc_info.value.to_dict()
        assert body["code"] == "INSUFFICIENT_STOCK"
        assert {(s["variant_id"], s["need"], s["have"]) for s in body["insufficient"]} == {
            (variant_m.id, 1, 0),
            (variant_l.id, 4, 0),
        }

    def test_inactive_product_rejected(self, db_session, warehouse, product, variant_m, stock_up):
        stock_up(warehouse, variant_m, 3)
        catalog_service.set_product_lifecycle(product.id, LifecycleState.DEACTIVATED)

        with pytest.raises(ProductInactive):
            order_service.create_order(
                items=[{"variant_id": variant_m.id, "qty": 1}],
                actor_user_id=None,
                outlet_id=warehouse.id,
            )
        assert _qty(warehouse, variant_m) == 3

    def test_unknown_variant(self, db_session, warehouse):
        with pytest.raises(NotFound):
            order_service.create_order(
                items=[{"variant_id": 999999, "qty": 1}],
                actor_user_id=None,
                outlet_id=warehouse.id,
            )

    def test_invalid_channel(self, db_session, warehouse, variant_m):
        with pytest.raises(ValidationError):
            order_service.create_order(
                items=[{"variant_id": variant_m.id, "qty": 1}],
                actor_user_id=None,
                channel="FAX",
                outlet_id=warehouse.id,
            )


# =============================================================================
# CANCEL / RETURN
# =============================================================================


class TestCancelOrder:

    def test_cancel_restocks_once(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 5)
        order = order_service.create_order(
            items=[{"variant_id": variant_m.id, "qty": 2}],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )
        assert _qty(warehouse, variant_m) == 3

        cancelled = order_service.cancel_order(order.id, actor_user_id=None, note="customer changed mind")

        assert cancelled.status == "CANCELLED"
        assert "customer changed mind" in cancelled.note
        assert _qty(warehouse, variant_m) == 5
        returns = ledger_service.movements_for_ref(REF_ORDER_RETURN, order.id)
        assert [(m.type, m.quantity_delta) for m in returns] == [("IN", 2)]

        with pytest.raises(InvalidTransition):
            order_service.cancel_order(order.id, actor_user_id=None)
        assert _qty(warehouse, variant_m) == 5
        assert len(ledger_service.movements_for_ref(REF_ORDER_RETURN, order.id)) == 1

    def test_return_status(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 5)
        order = order_service.create_order(
            items=[{"variant_id": variant_m.id, "qty": 1}],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )

        returned = order_service.cancel_order(order.id, actor_user_id=None, status="RETURNED")

        assert returned.status == "RETURNED"
        assert _qty(warehouse, variant_m) == 5

    def test_cancel_works_after_product_deactivated(self, db_session, warehouse, product, variant_m, stock_up):
        stock_up(warehouse, variant_m, 5)
        order = order_service.create_order(
            items=[{"variant_id": variant_m.id, "qty": 2}],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )
        catalog_service.set_product_lifecycle(product.id, LifecycleState.DEACTIVATED)

        order_service.cancel_order(order.id, actor_user_id=None)

        assert _qty(warehouse, variant_m) == 5

    def test_invalid_target_status(self, db_session):
        with pytest.raises(ValidationError):
            order_service.cancel_order(1, actor_user_id=None, status="PAID")

    def test_missing_order(self, db_session):
        with pytest.raises(NotFound):
            order_service.cancel_order(424242, actor_user_id=None)

    def test_ledger_consistent_after_cancel(self, db_session, warehouse, variant_m, variant_l, stock_up):
        stock_up(warehouse, variant_m, 4)
        stock_up(warehouse, variant_l, 4)
        order = order_service.create_order(
            items=[
                {"variant_id": variant_m.id, "qty": 4},
                {"variant_id": variant_l.id, "qty": 1},
            ],
            actor_user_id=None,
            outlet_id=warehouse.id,
        )
        order_service.cancel_order(order.id, actor_user_id=None)

        assert ledger_service.verify_ledger() == []
        assert _qty(warehouse, variant_m) == 4
        assert _qty(warehouse, variant_l) == 4


class TestListOrders:

    def test_filters_and_total(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 10)
        first = order_service.create_order(
            items=[{"variant_id": variant_m.id, "qty": 1}], actor_user_id=None, outlet_id=warehouse.id,
        )
        order_service.create_order(
            items=[{"variant_id": variant_m.id, "qty": 1}], actor_user_id=None, outlet_id=warehouse.id,
            channel="RESELLER",
        )
        order_service.cancel_order(first.id, actor_user_id=None)

        rows, total = order_service.list_orders(status="cancelled")
        assert total == 1
        assert rows[0].id == first.id

        rows, total = order_service.list_orders(channel="reseller")
        assert total == 1
        assert rows[0].channel == "RESELLER"
