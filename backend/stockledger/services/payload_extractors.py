# Overview: Per-channel extraction of order id, line items and status text from webhook payloads.

"""
Marketplace payloads carry the same facts under different field names, and
even a single marketplace varies by API version and event type. Each channel
gets one extractor that declares its candidate paths, tried in order; the
first usable value wins. Paths are dotted ("data.order_sn").

Extraction is best effort and never raises for missing fields: a payload
without an order id or without usable items is reported as such and the
caller decides (IGNORED). Only a payload that is not a JSON object raises
ValueError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any


@dataclass(frozen=True)
class ExtractedItem:
    external_sku_id: str
    qty: int
    price: int | None = None


@dataclass
class ExtractedOrder:
    external_order_id: str | None
    items: list[ExtractedItem] = field(default_factory=list)
    status_text: str = ""
    external_event_id: str | None = None
    note: str | None = None


def get_path(payload: Any, path: str) -> Any:
    current = payload
    for part in path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _as_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, int):
        return str(value)
    return None


def _as_number(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None


class PayloadExtractor:
    """
    Base strategy. Subclasses only override the candidate tuples.
    """
    channel = "GENERIC"

    order_id_paths: tuple[str, ...] = (
        "externalOrderId", "orderId", "order_id", "data.orderId", "data.order_id",
    )
    item_list_paths: tuple[str, ...] = (
        "items", "item_list", "order_items", "data.items", "data.item_list", "data.order_items",
    )
    sku_fields: tuple[str, ...] = ("externalSkuId", "sku_id", "sku")
    qty_fields: tuple[str, ...] = ("qty", "quantity", "amount")
    price_fields: tuple[str, ...] = ("price",)
    status_paths: tuple[str, ...] = (
        "status", "order_status", "data.status", "data.order_status", "event", "event_type", "type",
    )
    event_id_paths: tuple[str, ...] = ("event_id", "eventId")
    note_paths: tuple[str, ...] = ("note", "message_to_seller", "buyer_message", "data.note")

    def _first(self, payload: dict, paths: tuple[str, ...]) -> Any:
        for path in paths:
            value = get_path(payload, path)
            if value is not None and value != "":
                return value
        return None

    def order_id(self, payload: dict) -> str | None:
        for path in self.order_id_paths:
            value = _as_id(get_path(payload, path))
            if value:
                return value
        return None

    def item_list(self, payload: dict) -> list:
        for path in self.item_list_paths:
            value = get_path(payload, path)
            if isinstance(value, list):
                return value
        return []

    def item(self, raw: Any) -> ExtractedItem | None:
        if not isinstance(raw, dict):
            return None
        sku = None
        for name in self.sku_fields:
            if raw.get(name) is not None:
                sku = str(raw[name]).strip()
                break
        if not sku:
            return None

        qty = None
        for name in self.qty_fields:
            if raw.get(name) is not None:
                qty = _as_number(raw[name])
                break
        if qty is None or qty <= 0 or qty != qty.to_integral_value():
            return None

        price = None
        for name in self.price_fields:
            if raw.get(name) is not None:
                number = _as_number(raw[name])
                if number is not None and number >= 0:
                    price = int(number)
                break
        return ExtractedItem(external_sku_id=sku, qty=int(qty), price=price)

    def status_text(self, payload: dict) -> str:
        value = self._first(payload, self.status_paths)
        return "" if value is None else str(value)

    def extract(self, payload: Any) -> ExtractedOrder:
        if not isinstance(payload, dict):
            raise ValueError("Webhook payload must be a JSON object")
        items = [it for it in (self.item(raw) for raw in self.item_list(payload)) if it is not None]
        event_id = self._first(payload, self.event_id_paths)
        note = self._first(payload, self.note_paths)
        return ExtractedOrder(
            external_order_id=self.order_id(payload),
            items=items,
            status_text=self.status_text(payload),
            external_event_id=str(event_id) if event_id is not None else None,
            note=str(note) if note is not None else None,
        )


class ShopeeExtractor(PayloadExtractor):
    channel = "SHOPEE"
    order_id_paths = (
        "externalOrderId", "orderId", "order_id", "ordersn", "order_sn", "data.orderId", "data.order_sn",
    )
    item_list_paths = ("items", "item_list", "data.items", "data.item_list")
    sku_fields = ("externalSkuId", "model_sku", "item_sku", "sku_id", "variation_id", "sku")


class TikTokExtractor(PayloadExtractor):
    channel = "TIKTOK"
    order_id_paths = (
        "externalOrderId", "orderId", "order_id", "orderNo", "order_no", "data.order_id", "data.orderNo",
    )
    item_list_paths = ("items", "item_list", "data.items", "data.item_list")
    sku_fields = ("externalSkuId", "sku_id", "variation_id", "seller_sku", "sku")


EXTRACTORS: dict[str, PayloadExtractor] = {
    "SHOPEE": ShopeeExtractor(),
    "TIKTOK": TikTokExtractor(),
}
GENERIC_EXTRACTOR = PayloadExtractor()


def get_extractor(channel: str) -> PayloadExtractor:
    return EXTRACTORS.get((channel or "").upper(), GENERIC_EXTRACTOR)


def extract_payload(channel: str, payload: Any) -> ExtractedOrder:
    return get_extractor(channel).extract(payload)


# Keyword heuristics for the business action of an event. Checked in this
# order: returns first ("return_cancelled" is a return), then cancellations.
RETURN_HINTS = ("return", "returned", "reverse", "rto")
CANCEL_HINTS = ("cancel", "cancelled", "canceled", "void", "closed", "expire", "failed", "refund")

ACTION_OUT = "OUT"
ACTION_IN = "IN"


def classify_action(status_text: str | None) -> tuple[str, str]:
    """
    Map free-text status/event type to (action, order_status).

    ("IN", "RETURNED") | ("IN", "CANCELLED") | ("OUT", "PAID")

    This is the only place that interprets status text; replace it with a
    per-channel status table without touching the pipeline.
    """
    raw = (status_text or "").lower()
    if any(hint in raw for hint in RETURN_HINTS):
        return ACTION_IN, "RETURNED"
    if any(hint in raw for hint in CANCEL_HINTS):
        return ACTION_IN, "CANCELLED"
    return ACTION_OUT, "PAID"
