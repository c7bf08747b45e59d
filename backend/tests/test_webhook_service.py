"""
Marketplace webhook tests.

Verifies:
- Same raw bytes are processed once (duplicate, no stock touched)
- Missing order id / items -> IGNORED
- Unmapped SKUs -> UNMAPPED, retried to PROCESSED after mapping
- Shortfall -> ERROR with every line checked before any mutation
- Cancel / return events compensate sale movements exactly once
- Cancelled orders are frozen against later events
- A database failure mid-processing leaves the event RECEIVED
- Request authentication by shared secret or HMAC signature
"""

import hashlib
import hmac
import json

import pytest
from sqlalchemy.exc import OperationalError

from stockledger.errors import ValidationError
from stockledger.models import Order, StockMovement, WebhookEvent
from stockledger.models.inventory import REF_ORDER, REF_ORDER_RETURN
from stockledger.services import inventory_service, ledger_service, sku_service, webhook_service
from stockledger.services.payload_extractors import classify_action, extract_payload


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _qty(outlet, variant):
    return inventory_service.get_quantity(outlet.id, variant.id)


# =============================================================================
# STATUS CLASSIFICATION AND EXTRACTION
# =============================================================================


class TestClassifyAction:

    @pytest.mark.parametrize(
        "status_text,expected",
        [
            ("READY_TO_SHIP", ("OUT", "PAID")),
            ("order.paid", ("OUT", "PAID")),
            ("", ("OUT", "PAID")),
            (None, ("OUT", "PAID")),
            ("CANCELLED", ("IN", "CANCELLED")),
            ("order_canceled", ("IN", "CANCELLED")),
            ("IN_CANCEL", ("IN", "CANCELLED")),
            ("refund_requested", ("IN", "CANCELLED")),
            ("RETURNED", ("IN", "RETURNED")),
            ("return_cancelled", ("IN", "RETURNED")),
            ("RTO", ("IN", "RETURNED")),
        ],
    )
    def test_classification(self, status_text, expected):
        assert classify_action(status_text) == expected


class TestExtractPayload:

    def test_shopee_nested_fields(self):
        extracted = extract_payload("SHOPEE", {
            "data": {
                "order_sn": "2405ABC",
                "items": [
                    {"model_sku": "SP-1", "quantity": "2", "price": 50000},
                    {"model_sku": "SP-2", "quantity": 0},
                    {"quantity": 1},
                ],
                "order_status": "READY_TO_SHIP",
            },
        })

        assert extracted.external_order_id == "2405ABC"
        assert [(i.external_sku_id, i.qty, i.price) for i in extracted.items] == [("SP-1", 2, 50000)]
        assert extracted.status_text == "READY_TO_SHIP"

    def test_tiktok_numeric_order_id(self):
        extracted = extract_payload("TIKTOK", {
            "order_id": 5770001,
            "item_list": [{"seller_sku": "TT-1", "qty": 1}],
            "type": "ORDER_STATUS_CHANGE",
        })

        assert extracted.external_order_id == "5770001"
        assert extracted.items[0].external_sku_id == "TT-1"

    def test_fractional_qty_dropped(self):
        extracted = extract_payload("SHOPEE", {"orderId": "A", "items": [{"sku": "X", "qty": 1.5}]})
        assert extracted.items == []

    def test_non_object_payload(self):
        with pytest.raises(ValueError):
            extract_payload("SHOPEE", [1, 2, 3])


# =============================================================================
# INGESTION
# =============================================================================


class TestIngestWebhook:

    def test_sale_processed_and_duplicate_ignored(self, db_session, warehouse, variant_m, stock_up, map_sku):
        stock_up(warehouse, variant_m, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        body = _body({"orderId": "SO-1", "status": "PAID", "items": [{"sku": "SP-M", "qty": 3}]})

        first = webhook_service.ingest_webhook("shopee", body)
        second = webhook_service.ingest_webhook("SHOPEE", body)

        assert first.status == "PROCESSED"
        assert first.http_status == 200
        assert second.duplicate is True
        assert second.event_id == first.event_id
        assert second.http_status == 200
        assert db_session.query(WebhookEvent).count() == 1
        assert _qty(warehouse, variant_m) == 7

        order = db_session.query(Order).one()
        assert order.channel == "SHOPEE"
        assert order.external_order_id == "SO-1"
        assert order.source == "API"
        assert order.order_code == "API-SHOPEE-SO-1"
        assert [m.quantity_delta for m in ledger_service.movements_for_ref(REF_ORDER, order.id)] == [-3]

    def test_different_bytes_same_order_do_not_double_count(
        self, db_session, warehouse, variant_m, stock_up, map_sku
    ):
        stock_up(warehouse, variant_m, 10)
        map_sku("SHOPEE", "SP-M", variant_m)

        webhook_service.ingest_webhook("SHOPEE", _body({"orderId": "SO-2", "items": [{"sku": "SP-M", "qty": 2}]}))
        result = webhook_service.ingest_webhook(
            "SHOPEE", _body({"orderId": "SO-2", "status": "SHIPPED", "items": [{"sku": "SP-M", "qty": 2}]})
        )

        assert result.status == "PROCESSED"
        assert db_session.query(WebhookEvent).count() == 2
        assert db_session.query(Order).count() == 1
        assert _qty(warehouse, variant_m) == 8

    @pytest.mark.parametrize(
        "payload,message",
        [
            ({"items": [{"sku": "SP-M", "qty": 1}]}, "Missing externalOrderId"),
            ({"orderId": "SO-3", "items": []}, "No items"),
            ({"orderId": "SO-3", "items": [{"sku": "SP-M", "qty": 0}]}, "No items"),
        ],
    )
    def test_ignored(self, db_session, warehouse, payload, message):
        result = webhook_service.ingest_webhook("SHOPEE", _body(payload))

        assert result.status == "IGNORED"
        assert result.message == message
        event = db_session.get(WebhookEvent, result.event_id)
        assert event.processed_at is not None
        assert db_session.query(StockMovement).count() == 0

    def test_invalid_json_not_stored(self, db_session):
        with pytest.raises(ValidationError):
            webhook_service.ingest_webhook("SHOPEE", b"{not json")
        assert db_session.query(WebhookEvent).count() == 0

    def test_unsupported_channel(self, db_session):
        with pytest.raises(ValidationError):
            webhook_service.ingest_webhook("LAZADA", _body({"orderId": "x"}))

    def test_unmapped_then_retry(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 5)
        body = _body({"orderId": "TT-9", "items": [{"sku": "TT-M", "qty": 2}, {"sku": "TT-X", "qty": 1}]})

        result = webhook_service.ingest_webhook("TIKTOK", body)

        assert result.status == "UNMAPPED"
        assert result.http_status == 202
        assert result.missing_skus == ["TT-M", "TT-X"]
        assert db_session.query(Order).count() == 0
        assert _qty(warehouse, variant_m) == 5

        unmapped = sku_service.list_unmapped_skus(channel="TIKTOK")
        assert {row["external_sku_id"] for row in unmapped} == {"TT-M", "TT-X"}
        assert unmapped[0]["sample_order_id"] == "TT-9"

        sku_service.upsert_mapping(channel="TIKTOK", external_sku_id="TT-M", variant_id=variant_m.id)
        sku_service.upsert_mapping(channel="TIKTOK", external_sku_id="TT-X", variant_id=variant_m.id)
        retried = webhook_service.retry_event(result.event_id)

        assert retried.status == "PROCESSED"
        assert _qty(warehouse, variant_m) == 2
        assert sku_service.list_unmapped_skus(channel="TIKTOK") == []

        # terminal events are not re-applied
        again = webhook_service.retry_event(result.event_id)
        assert again.status == "PROCESSED"
        assert _qty(warehouse, variant_m) == 2

    def test_insufficient_stock_is_error_and_nothing_applied(
        self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku
    ):
        stock_up(warehouse, variant_m, 5)
        stock_up(warehouse, variant_l, 1)
        map_sku("SHOPEE", "SP-M", variant_m)
        map_sku("SHOPEE", "SP-L", variant_l)
        before = db_session.query(StockMovement).count()

        result = webhook_service.ingest_webhook("SHOPEE", _body({
            "orderId": "SO-4",
            "items": [{"sku": "SP-M", "qty": 2}, {"sku": "SP-L", "qty": 3}],
        }))

        assert result.status == "ERROR"
        assert result.http_status == 409
        assert "SP-L" in result.message
        assert result.insufficient == [{"variant_id": variant_l.id, "outlet_id": warehouse.id, "need": 3, "have": 1}]
        assert db_session.query(StockMovement).count() == before
        assert db_session.query(Order).count() == 0
        event = db_session.get(WebhookEvent, result.event_id)
        assert event.status == "ERROR"
        assert event.attempts == 1

        stock_up(warehouse, variant_l, 5)
        retried = webhook_service.retry_event(result.event_id)
        assert retried.status == "PROCESSED"
        assert _qty(warehouse, variant_m) == 3
        assert _qty(warehouse, variant_l) == 3

    def test_cancel_compensates_once(self, db_session, warehouse, variant_m, stock_up, map_sku):
        stock_up(warehouse, variant_m, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        webhook_service.ingest_webhook("SHOPEE", _body({
            "orderId": "SO-5", "status": "PAID", "items": [{"sku": "SP-M", "qty": 4}],
        }))
        assert _qty(warehouse, variant_m) == 6

        cancel = webhook_service.ingest_webhook("SHOPEE", _body({
            "orderId": "SO-5", "status": "CANCELLED", "items": [{"sku": "SP-M", "qty": 4}],
        }))
        repeat = webhook_service.ingest_webhook("SHOPEE", _body({
            "orderId": "SO-5", "status": "CANCELLED", "event_id": "evt-2", "items": [{"sku": "SP-M", "qty": 4}],
        }))

        assert cancel.status == "PROCESSED"
        assert repeat.status == "PROCESSED"
        assert repeat.message == "Order already CANCELLED"
        assert _qty(warehouse, variant_m) == 10
        order = db_session.query(Order).one()
        assert order.status == "CANCELLED"
        assert len(ledger_service.movements_for_ref(REF_ORDER_RETURN, order.id)) == 1
        assert ledger_service.verify_ledger() == []

    def test_paid_event_after_cancel_leaves_order_untouched(
        self, db_session, warehouse, variant_m, variant_l, stock_up, map_sku
    ):
        stock_up(warehouse, variant_m, 10)
        stock_up(warehouse, variant_l, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        map_sku("SHOPEE", "SP-L", variant_l)
        webhook_service.ingest_webhook("SHOPEE", _body({
            "orderId": "SO-T1", "status": "PAID", "items": [{"sku": "SP-M", "qty": 2}],
        }))
        webhook_service.ingest_webhook("SHOPEE", _body({
            "orderId": "SO-T1", "status": "CANCELLED", "items": [{"sku": "SP-M", "qty": 2}],
        }))

        late = webhook_service.ingest_webhook("SHOPEE", _body({
            "orderId": "SO-T1", "status": "PAID", "items": [{"sku": "SP-L", "qty": 5}],
        }))

        assert late.status == "PROCESSED"
        assert late.message == "Order already CANCELLED"
        order = db_session.query(Order).one()
        assert order.status == "CANCELLED"
        assert [(i.variant_id, i.qty) for i in order.items] == [(variant_m.id, 2)]
        assert order.total_amount == 2 * 75000
        assert _qty(warehouse, variant_m) == 10
        assert _qty(warehouse, variant_l) == 10
        assert ledger_service.verify_ledger() == []

    def test_database_failure_leaves_event_received(
        self, db_session, warehouse, variant_m, stock_up, map_sku, monkeypatch
    ):
        stock_up(warehouse, variant_m, 10)
        map_sku("SHOPEE", "SP-M", variant_m)
        movements = db_session.query(StockMovement).count()

        def locked(*args, **kwargs):
            raise OperationalError("SELECT channel_sku_mappings", {}, Exception("database is locked"))

        monkeypatch.setattr(webhook_service, "resolve_skus", locked)

        with pytest.raises(OperationalError):
            webhook_service.ingest_webhook("SHOPEE", _body({
                "orderId": "SO-DB", "items": [{"sku": "SP-M", "qty": 1}],
            }))

        db_session.rollback()
        event = db_session.query(WebhookEvent).one()
        assert event.status == "RECEIVED"
        assert event.external_order_id == "SO-DB"
        assert db_session.query(Order).count() == 0
        assert db_session.query(StockMovement).count() == movements
        assert _qty(warehouse, variant_m) == 10

    def test_cancel_before_sale_creates_cancelled_order_without_stock(
        self, db_session, warehouse, variant_m, stock_up, map_sku
    ):
        stock_up(warehouse, variant_m, 3)
        map_sku("TIKTOK", "TT-M", variant_m)

        result = webhook_service.ingest_webhook("TIKTOK", _body({
            "order_id": "TT-10", "status": "CANCELLED", "items": [{"sku": "TT-M", "qty": 1}],
        }))

        assert result.status == "PROCESSED"
        assert db_session.query(Order).one().status == "CANCELLED"
        assert _qty(warehouse, variant_m) == 3

    def test_retry_events_bulk(self, db_session, warehouse, variant_m, stock_up):
        stock_up(warehouse, variant_m, 10)
        for n in range(3):
            webhook_service.ingest_webhook("SHOPEE", _body({"orderId": f"B-{n}", "items": [{"sku": "BULK", "qty": 1}]}))

        sku_service.upsert_mapping(channel="SHOPEE", external_sku_id="BULK", variant_id=variant_m.id)
        outcome = webhook_service.retry_events(status="UNMAPPED")

        assert outcome == {"PROCESSED": 3}
        assert _qty(warehouse, variant_m) == 7


# =============================================================================
# REQUEST AUTHENTICATION
# =============================================================================


class TestVerifyWebhookRequest:

    def test_shared_secret(self, app):
        assert webhook_service.verify_webhook_request("SHOPEE", {"X-Webhook-Secret": "shopee-secret"}, b"{}")
        assert not webhook_service.verify_webhook_request("SHOPEE", {"X-Webhook-Secret": "tiktok-secret"}, b"{}")
        assert not webhook_service.verify_webhook_request("SHOPEE", {}, b"{}")

    def test_hmac_signature(self, app):
        raw = b'{"orderId": "1"}'
        signature = hmac.new(b"tiktok-app-secret", raw, hashlib.sha256).hexdigest()

        assert webhook_service.verify_webhook_request("TIKTOK", {"X-Tiktok-Signature": signature}, raw)
        assert not webhook_service.verify_webhook_request("TIKTOK", {"X-Tiktok-Signature": signature}, raw + b" ")

    def test_idempotency_key_is_channel_scoped(self):
        raw = b'{"orderId": "1"}'
        assert webhook_service.compute_idempotency_key("SHOPEE", raw) != webhook_service.compute_idempotency_key("TIKTOK", raw)
