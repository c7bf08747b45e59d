"""
Marketplace CSV import tests: preview, submit, finalize.
"""

import pytest

from stockledger.errors import NotFound, ValidationError
from stockledger.models import CsvImportBatch, Order, OutboxMessage, StockMovement
from stockledger.models.inventory import REF_CSV_IMPORT
from stockledger.services import csv_import_service, inventory_service, ledger_service, order_service
from stockledger.services.csv_import_service import _to_price, parse_csv


MAPPING = {"orderId": "No. Pesanan", "sku": "SKU Induk", "qty": "Jumlah", "date": "Waktu Pesanan Dibuat", "price": "Harga"}

CSV_TEXT = (
    "No. Pesanan,SKU Induk,Jumlah,Waktu Pesanan Dibuat,Harga\r\n"
    "240501A,SP-M,2,2024-05-01 10:15,\"Rp 75.000\"\r\n"
    "240501A,SP-L,1,2024-05-01 10:15,80000\r\n"
    "240501B,SP-M,1,02/05/2024,75000\r\n"
    ",SP-M,1,,\r\n"
    "\r\n"
)


def _qty(outlet, variant):
    return inventory_service.get_quantity(outlet.id, variant.id)


def _submit(owner, csv_text=CSV_TEXT, channel="SHOPEE"):
    return csv_import_service.run_csv_import(
        channel=channel,
        csv_text=csv_text,
        mode="submit",
        mapping=MAPPING,
        actor_user_id=owner.id,
        source_file_name="Order.all.20240501.csv",
    )


# =============================================================================
# PARSING
# =============================================================================


class TestParsing:

    def test_quoted_fields_bom_and_blank_rows(self):
        headers, rows = parse_csv("\ufeffa,b\r\n\"x, y\",\"say \"\"hi\"\"\"\r\n,\r\n1,2\n")

        assert headers == ["a", "b"]
        assert rows == [(2, ["x, y", 'say "hi"']), (4, ["1", "2"])]

    def test_line_numbers_follow_the_file(self):
        headers, rows = parse_csv("a,b\n\n\"multi\nline\",1\n2,3\n")

        assert headers == ["a", "b"]
        assert rows == [(3, ["multi\nline", "1"]), (5, ["2", "3"])]

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Rp 150.000", 150000),
            ("150000", 150000),
            ("150000.50", 150000),
            ("1.250.000", 1250000),
            ("", None),
            ("gratis", None),
        ],
    )
    def test_price(self, raw, expected):
        assert _to_price(raw) == expected

    def test_missing_column_in_mapping(self, db_session, warehouse):
        with pytest.raises(ValidationError) as exc_info:
            csv_import_service.preview_csv(
                channel="SHOPEE",
                csv_text="order,sku,qty\n1,A,1\n",
                mapping={"orderId": "order", "sku": "sku", "qty": "quantity"},
            )
        assert "column 'quantity' not found" in exc_info.value.message

    def test_required_mapping_keys(self, db_session):
        with pytest.raises(ValidationError):
            csv_import_service.preview_csv(channel="SHOPEE", csv_text="a\n1\n", mapping={"orderId": "a"})

    def test_only_marketplace_channels(self, db_session):
        with pytest.raises(ValidationError):
            csv_import_service.preview_csv(channel="RESELLER", csv_text=CSV_TEXT, mapping=MAPPING)


# =============================================================================
# PREVIEW
# =============================================================================


class TestPreview:

    def test_preview_writes_nothing(self, db_session, warehouse, variant_m, stock_up, map_sku):
        stock_up(warehouse, variant_m, 1)
        map_sku("SHOPEE", "SP-M", variant_m)
        movements_before = db_session.query(StockMovement).count()

        result = csv_import_service.preview_csv(channel="shopee", csv_text=CSV_TEXT, mapping=MAPPING)

        assert result["mode"] == "preview"
        assert result["channel"] == "SHOPEE"
        assert result["missing_skus"] == ["SP-L"]
        assert result["insufficient"] == [{"variant_id": variant_m.id, "need": 3, "have": 1}]
        assert [o["external_order_id"] for o in result["sample"]] == ["240501A", "240501B"]
        assert db_session.query(CsvImportBatch).count() == 0
        assert db_session.query(Order).count() == 0
        assert db_session.query(StockMovement).count() == movements_before

    def test_preview_without_any_outlet(self, db_session, variant_m, map_sku):
        from stockledger.models import Outlet

        map_sku("SHOPEE", "SP-M", variant_m)

        result = csv_import_service.preview_csv(
            channel="SHOPEE",
            csv_text="No. Pesanan,SKU Induk,Jumlah\nA,SP-M,1\n",
            mapping={"orderId": "No. Pesanan", "sku": "SKU Induk", "qty": "Jumlah"},
        )

        assert result["insufficient"] == [{"variant_id": variant_m.id, "need": 1, "have": 0}]
        assert db_session.query(Outlet).count() == 0


# =============================================================================
# SUBMIT / FINALIZE
# =============================================================================


class TestSubmitAndFinalize:

    def test_clean_batch_imports_immediately(
        self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku, owner
    ):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        map_sku("SHOPEE", "SP-L", variant_l)

        result = _submit(owner)

        assert result["status"] == "IMPORTED"
        assert result["imported_orders"] == 2
        assert _qty(warehouse, variant_m) == 7
        assert _qty(warehouse, variant_l) == 9

        orders = {o.external_order_id: o for o in db_session.query(Order).all()}
        first = orders["240501A"]
        assert first.source == "CSV"
        assert first.status == "NEW"
        assert first.order_code == "CSV-SHOPEE-240501A"
        assert first.total_amount == 2 * 75000 + 80000
        assert (first.ordered_at.year, first.ordered_at.month, first.ordered_at.day) == (2024, 5, 1)
        assert (orders["240501B"].ordered_at.month, orders["240501B"].ordered_at.day) == (5, 2)
        assert [m.quantity_delta for m in ledger_service.movements_for_ref(REF_CSV_IMPORT, first.id)] == [-2, -1]

        batch = db_session.get(CsvImportBatch, result["batch_id"])
        assert batch.total_rows == 3
        assert batch.source_file_name == "Order.all.20240501.csv"
        assert {row.status for row in batch.rows} == {"IMPORTED"}
        assert batch.finalized_at is not None
        topics = {m.topic for m in db_session.query(OutboxMessage).all()}
        assert {"order.created", "csv_import.imported"} <= topics

    def test_unmapped_sku_blocks_whole_batch_until_mapped(
        self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku, owner
    ):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 10)
        map_sku("SHOPEE", "SP-M", variant_m)

        result = _submit(owner)

        assert result["status"] == "NEEDS_MAPPING"
        assert result["missing_skus"] == ["SP-L"]
        assert db_session.query(Order).count() == 0
        assert _qty(warehouse, variant_m) == 10
        statuses = {row.external_sku_id: row.status for row in db_session.get(CsvImportBatch, result["batch_id"]).rows}
        assert statuses == {"SP-M": "MAPPED", "SP-L": "UNMAPPED"}

        still_blocked = csv_import_service.finalize_batch(result["batch_id"], actor_user_id=owner.id)
        assert still_blocked["status"] == "NEEDS_MAPPING"

        map_sku("SHOPEE", "SP-L", variant_l)
        finalized = csv_import_service.finalize_batch(result["batch_id"], actor_user_id=owner.id)

        assert finalized["status"] == "IMPORTED"
        assert finalized["imported_orders"] == 2
        assert _qty(warehouse, variant_m) == 7
        assert _qty(warehouse, variant_l) == 9

    def test_insufficient_stock_blocks_whole_batch(
        self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku, owner
    ):
        # 240501A alone fits, but the batch needs 3 x SP-M
        stock_up(warehouse, variant_m, 2)
        stock_up(warehouse, variant_l, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        map_sku("SHOPEE", "SP-L", variant_l)

        result = _submit(owner)

        assert result["status"] == "ERROR"
        assert result["insufficient"] == [{"variant_id": variant_m.id, "need": 3, "have": 2}]
        assert db_session.query(Order).count() == 0
        assert _qty(warehouse, variant_m) == 2

    def test_refinalize_is_noop(self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku, owner):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        map_sku("SHOPEE", "SP-L", variant_l)
        result = _submit(owner)
        movements = db_session.query(StockMovement).count()

        again = csv_import_service.finalize_batch(result["batch_id"], actor_user_id=owner.id)

        assert again["status"] == "IMPORTED"
        assert again["already_imported"] is True
        assert db_session.query(StockMovement).count() == movements
        assert _qty(warehouse, variant_m) == 7

    def test_second_batch_with_same_orders_takes_no_more_stock(
        self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku, owner
    ):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        map_sku("SHOPEE", "SP-L", variant_l)
        _submit(owner)

        second = _submit(owner)

        assert second["status"] == "IMPORTED"
        assert db_session.query(Order).count() == 2
        assert _qty(warehouse, variant_m) == 7
        assert _qty(warehouse, variant_l) == 9
        assert ledger_service.verify_ledger() == []

    def test_finalize_requires_batch_id(self, db_session, owner):
        with pytest.raises(ValidationError):
            csv_import_service.run_csv_import(
                channel="SHOPEE", csv_text=None, mode="finalize", mapping=None, actor_user_id=owner.id,
            )

    def test_finalize_unknown_batch(self, db_session, owner):
        with pytest.raises(NotFound):
            csv_import_service.finalize_batch(987654, actor_user_id=owner.id)

    def test_unknown_mode(self, db_session, owner):
        with pytest.raises(ValidationError):
            csv_import_service.run_csv_import(
                channel="SHOPEE", csv_text=CSV_TEXT, mode="dry-run", mapping=MAPPING, actor_user_id=owner.id,
            )

    def test_rows_keep_their_file_line_numbers(self, db_session, warehouse, owner):
        result = _submit(owner, csv_text=(
            "No. Pesanan,SKU Induk,Jumlah,Waktu Pesanan Dibuat,Harga\r\n"
            "\r\n"
            "240601A,SP-M,1,,\r\n"
            ",,,,\r\n"
            "240601B,SP-L,2,,\r\n"
        ))

        assert result["status"] == "NEEDS_MAPPING"
        rows = db_session.get(CsvImportBatch, result["batch_id"]).rows
        assert [(row.row_number, row.external_order_id) for row in rows] == [(3, "240601A"), (5, "240601B")]

    def test_cancelled_order_is_not_rewritten_by_a_later_batch(
        self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku, owner
    ):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        map_sku("SHOPEE", "SP-L", variant_l)
        _submit(owner)
        order = db_session.query(Order).filter_by(external_order_id="240501A").one()
        order_service.cancel_order(order.id, actor_user_id=owner.id)

        second = _submit(owner, csv_text=(
            "No. Pesanan,SKU Induk,Jumlah,Waktu Pesanan Dibuat,Harga\r\n"
            "240501A,SP-L,40,2024-05-03 09:00,90000\r\n"
        ))

        assert second["status"] == "IMPORTED"
        db_session.expire_all()
        order = db_session.query(Order).filter_by(external_order_id="240501A").one()
        assert order.status == "CANCELLED"
        assert [(i.variant_id, i.qty) for i in order.items] == [(variant_m.id, 2), (variant_l.id, 1)]
        assert order.total_amount == 2 * 75000 + 80000
        assert _qty(warehouse, variant_m) == 9
        assert _qty(warehouse, variant_l) == 10
        assert ledger_service.verify_ledger() == []
