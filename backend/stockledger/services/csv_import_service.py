# Overview: Marketplace order CSV import: preview, submit (persist batch + rows), finalize.

"""
CSV batch workflow

    preview  -> parse, resolve, stock-check; nothing is written
    submit   -> batch + rows always persisted; status READY / NEEDS_MAPPING /
                ERROR; READY batches are finalized immediately
    finalize -> re-read stored rows, re-resolve, re-check, import

Finalize policy: batch-wide atomic rejection. If any SKU is unmapped or any
variant is short across the WHOLE batch, nothing is imported and the batch
records why. Only a fully clean batch imports, one transaction per order.

Idempotence: orders are upserted by (channel, external_order_id) and a
variant gets an OUT movement only when the order has no sale movement
(CSV_IMPORT or ORDER) for it yet, so re-finalizing, or importing an order a
webhook already applied, never double-counts stock. Re-finalizing an
IMPORTED batch is a no-op.
"""

from __future__ import annotations

import csv
import io
import json
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from flask import current_app

from ..extensions import db
from ..errors import DomainError, InsufficientStock, InsufficientStockBatch, NotFound, ValidationError
from ..models import CsvImportBatch, CsvImportRow, Order
from ..models.imports import (
    BATCH_STATUS_ERROR,
    BATCH_STATUS_IMPORTED,
    BATCH_STATUS_NEEDS_MAPPING,
    BATCH_STATUS_READY,
    ROW_STATUS_IMPORTED,
    ROW_STATUS_INSUFFICIENT,
    ROW_STATUS_MAPPED,
    ROW_STATUS_UNMAPPED,
)
from ..models.inventory import MOVEMENT_OUT, REF_CSV_IMPORT
from ..models.sales import ORDER_STATUS_NEW, TERMINAL_ORDER_STATUSES
from stockledger.time_utils import parse_loose_datetime, utcnow
from .catalog_service import require_sellable_variants
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import get_quantity
from .ledger_service import movement_exists
from .notification_service import emit
from .order_service import SALE_REF_TYPES, OrderLine, apply_sale_movements, needs_by_variant, upsert_external_order
from .outlet_service import find_warehouse_outlet, resolve_outlet
from .sku_service import SkuResolution, resolve_skus
from .webhook_service import normalize_webhook_channel


MODES = ("preview", "submit", "finalize")
REQUIRED_MAPPING_KEYS = ("orderId", "sku", "qty")
OPTIONAL_MAPPING_KEYS = ("date", "price")

_THOUSANDS_DOTS = re.compile(r"^-?\d{1,3}(\.\d{3})+$")


@dataclass(frozen=True)
class CsvLine:
    row_number: int
    external_order_id: str
    external_sku_id: str
    qty: int
    price: int | None = None
    date_raw: str | None = None


@dataclass
class CsvAnalysis:
    lines: list[CsvLine]
    resolution: SkuResolution
    orders: list[dict]
    needs: dict[int, int] = field(default_factory=dict)
    insufficient: list[dict] = field(default_factory=list)

    def stats(self) -> dict:
        unique = len(self.resolution.mapped) + len(self.resolution.missing)
        return {
            "orders": len(self.orders),
            "lines": len(self.lines),
            "mapped_skus": unique - len(self.resolution.missing),
            "missing_skus": len(self.resolution.missing),
            "insufficient": len(self.insufficient),
        }


def parse_csv(text: str) -> tuple[list[str], list[tuple[int, list[str]]]]:
    """
    Header + data rows. Handles quoted fields, embedded commas/quotes/newlines
    and CRLF; rows whose cells are all blank are skipped.

    Each data row comes back as (line_number, cells), where line_number is
    the file line the record starts on (header = 1).
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    reader = csv.reader(io.StringIO(text, newline=""))
    headers = None
    data = []
    start = 1
    for row in reader:
        if headers is None:
            headers = [(h or "").strip() for h in row]
        elif any((cell or "").strip() for cell in row):
            data.append((start, row))
        start = reader.line_num + 1
    if headers is None:
        return [], []
    return headers, data


def _to_qty(raw: str) -> int:
    try:
        return int(Decimal((raw or "0").strip() or "0"))
    except (InvalidOperation, ValueError):
        return 0


def _to_price(raw: str) -> int | None:
    """'Rp 150.000' -> 150000, '150000.50' -> 150000, '' -> None."""
    cleaned = re.sub(r"[^0-9.\-]", "", raw or "")
    if not cleaned:
        return None
    if _THOUSANDS_DOTS.match(cleaned):
        cleaned = cleaned.replace(".", "")
    try:
        return int(Decimal(cleaned))
    except (InvalidOperation, ValueError):
        return None


def validate_mapping(mapping) -> dict:
    if not isinstance(mapping, dict):
        raise ValidationError("mapping is required")
    clean = {}
    for key in REQUIRED_MAPPING_KEYS:
        value = (mapping.get(key) or "").strip() if isinstance(mapping.get(key), str) else ""
        if not value:
            raise ValidationError(f"mapping.{key} is required")
        clean[key] = value
    for key in OPTIONAL_MAPPING_KEYS:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            clean[key] = value.strip()
    return clean


def project_rows(headers: list[str], data: list[tuple[int, list[str]]], mapping: dict) -> list[CsvLine]:
    """Apply the column mapping; drop rows without order id, SKU or a positive qty."""
    index = {}
    for key, column in mapping.items():
        if column not in headers:
            raise ValidationError(f"Mapping is invalid: column '{column}' not found")
        index[key] = headers.index(column)

    def cell(row: list[str], key: str) -> str:
        idx = index.get(key)
        if idx is None or idx >= len(row):
            return ""
        return (row[idx] or "").strip()

    lines = []
    for number, row in data:
        order_id = cell(row, "orderId")
        sku = cell(row, "sku")
        qty = _to_qty(cell(row, "qty"))
        if not order_id or not sku or qty <= 0:
            continue
        lines.append(CsvLine(
            row_number=number,
            external_order_id=order_id,
            external_sku_id=sku,
            qty=qty,
            price=_to_price(cell(row, "price")) if "price" in index else None,
            date_raw=(cell(row, "date") or None) if "date" in index else None,
        ))
    return lines


def group_orders(lines: list[CsvLine]) -> list[dict]:
    """Lines grouped by external order id, in first-seen order."""
    grouped: dict[str, dict] = {}
    for line in lines:
        group = grouped.get(line.external_order_id)
        if group is None:
            group = {"external_order_id": line.external_order_id, "date_raw": line.date_raw, "items": []}
            grouped[line.external_order_id] = group
        if not group["date_raw"] and line.date_raw:
            group["date_raw"] = line.date_raw
        group["items"].append({"external_sku_id": line.external_sku_id, "qty": line.qty, "price": line.price})
    return list(grouped.values())


def _existing_orders(channel: str, external_ids) -> dict:
    ids = list(external_ids)
    if not ids:
        return {}
    rows = (
        db.session.query(Order.id, Order.external_order_id, Order.status)
        .filter(Order.channel == channel, Order.external_order_id.in_(ids))
        .all()
    )
    return {row.external_order_id: row for row in rows}


def _already_applied(order_id: int | None, variant_id: int) -> bool:
    if order_id is None:
        return False
    return any(
        movement_exists(ref_type=rt, ref_id=order_id, variant_id=variant_id, movement_type=MOVEMENT_OUT)
        for rt in SALE_REF_TYPES
    )


def analyze(channel: str, lines: list[CsvLine], outlet_id: int | None) -> CsvAnalysis:
    """
    Read-only resolution and batch-wide stock check.

    Needs skip cancelled/returned orders and variants an existing order
    already took stock for. When no outlet exists yet every need counts
    against zero.
    """
    resolution = resolve_skus(channel, [line.external_sku_id for line in lines])
    orders = group_orders(lines)
    existing = _existing_orders(channel, [o["external_order_id"] for o in orders])

    needs: dict[int, int] = {}
    for line in lines:
        variant_id = resolution.mapped.get(line.external_sku_id)
        if variant_id is None:
            continue
        order = existing.get(line.external_order_id)
        if order is not None and order.status in TERMINAL_ORDER_STATUSES:
            continue
        if _already_applied(order.id if order is not None else None, variant_id):
            continue
        needs[variant_id] = needs.get(variant_id, 0) + line.qty

    insufficient = []
    for variant_id in sorted(needs):
        have = get_quantity(outlet_id, variant_id) if outlet_id is not None else 0
        if have < needs[variant_id]:
            insufficient.append({"variant_id": variant_id, "need": needs[variant_id], "have": have})

    return CsvAnalysis(lines=lines, resolution=resolution, orders=orders, needs=needs, insufficient=insufficient)


def _parse_request(channel: str, csv_text: str, mapping) -> tuple[str, list[str], list[CsvLine], dict]:
    channel = normalize_webhook_channel(channel)
    if not isinstance(csv_text, str) or not csv_text.strip():
        raise ValidationError("csvText is required")
    mapping = validate_mapping(mapping)
    headers, data = parse_csv(csv_text)
    lines = project_rows(headers, data, mapping)
    if not lines:
        raise ValidationError("No valid rows (check the mapping and the CSV content)")
    return channel, headers, lines, mapping


def preview_csv(*, channel: str, csv_text: str, mapping, outlet_id: int | None = None) -> dict:
    channel, headers, lines, _ = _parse_request(channel, csv_text, mapping)
    if outlet_id is not None:
        outlet = resolve_outlet(outlet_id)
    else:
        outlet = find_warehouse_outlet()
    analysis = analyze(channel, lines, outlet.id if outlet is not None else None)

    sample_size = int(current_app.config.get("CSV_PREVIEW_SAMPLE_SIZE", 5))
    return {
        "mode": "preview",
        "channel": channel,
        "headers": headers,
        "stats": analysis.stats(),
        "missing_skus": list(analysis.resolution.missing),
        "insufficient": analysis.insufficient,
        "sample": analysis.orders[:sample_size],
    }


def _classify(batch: CsvImportBatch, analysis: CsvAnalysis) -> None:
    short = {row["variant_id"] for row in analysis.insufficient}
    for row in batch.rows:
        variant_id = analysis.resolution.mapped.get(row.external_sku_id)
        if row.status == ROW_STATUS_IMPORTED:
            continue
        row.variant_id = variant_id
        if variant_id is None:
            row.status = ROW_STATUS_UNMAPPED
            row.error_message = f"Unmapped SKU: {row.external_sku_id}"
        elif variant_id in short:
            row.status = ROW_STATUS_INSUFFICIENT
            row.error_message = f"Insufficient stock for {row.external_sku_id}"
        else:
            row.status = ROW_STATUS_MAPPED
            row.error_message = None

    if analysis.resolution.missing:
        batch.status = BATCH_STATUS_NEEDS_MAPPING
        batch.error_message = f"Unmapped SKU: {', '.join(analysis.resolution.missing)}"
    elif analysis.insufficient:
        batch.status = BATCH_STATUS_ERROR
        batch.error_message = "Insufficient stock for variants: " + ", ".join(
            str(row["variant_id"]) for row in analysis.insufficient
        )
    else:
        batch.status = BATCH_STATUS_READY
        batch.error_message = None

    batch.summary = json.dumps({
        "stats": analysis.stats(),
        "missing_skus": list(analysis.resolution.missing),
        "insufficient": analysis.insufficient,
    })


def _result(batch: CsvImportBatch, **extra) -> dict:
    summary = batch.summary_json()
    body = {
        "batch_id": batch.id,
        "status": batch.status,
        "batch": batch.to_dict(),
        "missing_skus": summary.get("missing_skus", []),
        "insufficient": summary.get("insufficient", []),
    }
    body.update(extra)
    return body


def submit_csv(
    *,
    channel: str,
    csv_text: str,
    mapping,
    actor_user_id: int | None,
    source_file_name: str | None = None,
    outlet_id: int | None = None,
) -> dict:
    """Persist the batch and its rows, classify it, finalize when READY."""
    channel, _, lines, mapping = _parse_request(channel, csv_text, mapping)

    def _op():
        outlet = resolve_outlet(outlet_id)
        batch = CsvImportBatch(
            channel=channel,
            outlet_id=outlet.id,
            mapping=json.dumps(mapping),
            source_file_name=source_file_name,
            total_rows=len(lines),
            imported_orders=0,
            created_by_user_id=actor_user_id,
        )
        db.session.add(batch)
        db.session.flush()
        for line in lines:
            db.session.add(CsvImportRow(
                batch_id=batch.id,
                row_number=line.row_number,
                external_order_id=line.external_order_id[:128],
                external_sku_id=line.external_sku_id[:128],
                qty=line.qty,
                price=line.price,
                date_raw=line.date_raw[:64] if line.date_raw else None,
            ))
        db.session.flush()
        _classify(batch, analyze(channel, lines, outlet.id))
        db.session.commit()
        current_app.logger.info(
            "CSV batch %s submitted channel=%s rows=%s status=%s",
            batch.id, channel, len(lines), batch.status,
        )
        return batch.id, batch.status

    batch_id, status = run_with_retry(_op)
    if status == BATCH_STATUS_READY:
        return finalize_batch(batch_id, actor_user_id=actor_user_id)
    return _result(db.session.get(CsvImportBatch, batch_id), imported_orders=0)


def _stored_lines(batch: CsvImportBatch) -> list[CsvLine]:
    return [
        CsvLine(
            row_number=row.row_number,
            external_order_id=row.external_order_id,
            external_sku_id=row.external_sku_id,
            qty=row.qty,
            price=row.price,
            date_raw=row.date_raw,
        )
        for row in batch.rows
    ]


def _import_order(batch_id: int, group: dict, actor_user_id: int | None) -> int:
    """One order, one transaction. Returns the order id."""
    def _op():
        batch = db.session.get(CsvImportBatch, batch_id)
        rows = [
            row for row in batch.rows
            if row.external_order_id == group["external_order_id"] and row.status != ROW_STATUS_IMPORTED
        ]
        resolution = resolve_skus(batch.channel, [it["external_sku_id"] for it in group["items"]])
        if resolution.missing:
            raise ValidationError(f"Unmapped SKU: {', '.join(resolution.missing)}")

        lines = [
            OrderLine(variant_id=resolution.mapped[it["external_sku_id"]], qty=it["qty"], price=it["price"])
            for it in group["items"]
        ]
        needs = needs_by_variant(lines)
        variants = require_sellable_variants(needs.keys())

        order, created = upsert_external_order(
            channel=batch.channel,
            external_order_id=group["external_order_id"],
            source="CSV",
            code_prefix="CSV",
            outlet_id=batch.outlet_id,
            status=ORDER_STATUS_NEW,
            lines=lines,
            variants=variants,
            ordered_at=parse_loose_datetime(group.get("date_raw")),
            note=f"CSV import batch {batch.id}",
            actor_user_id=actor_user_id,
        )
        if not order.is_terminal:
            apply_sale_movements(order, needs, ref_type=REF_CSV_IMPORT, actor_user_id=actor_user_id)
        if created:
            emit("order.created", {
                "order_id": order.id,
                "order_code": order.order_code,
                "channel": order.channel,
                "total_amount": order.total_amount,
            })

        for row in rows:
            row.status = ROW_STATUS_IMPORTED
            row.order_id = order.id
            row.error_message = None
        db.session.commit()
        return order.id

    return run_with_retry(_op)


def _mark_failed(batch_id: int, exc: DomainError) -> None:
    batch = db.session.get(CsvImportBatch, batch_id)
    batch.status = BATCH_STATUS_ERROR
    batch.error_message = exc.message
    if isinstance(exc, (InsufficientStock, InsufficientStockBatch)):
        summary = batch.summary_json()
        summary["insufficient"] = exc.details()["insufficient"]
        batch.summary = json.dumps(summary)
    db.session.commit()


def finalize_batch(batch_id: int, *, actor_user_id: int | None) -> dict:
    """
    Re-resolve and import a stored batch.

    Returns the batch result; status stays NEEDS_MAPPING / ERROR with the
    missing SKUs or shortfalls when the batch cannot be imported as a whole.
    """
    def _prepare():
        batch = lock_for_update(db.session.query(CsvImportBatch).filter_by(id=batch_id)).populate_existing().first()
        if batch is None:
            raise NotFound("CsvImportBatch", batch_id)
        if batch.status == BATCH_STATUS_IMPORTED:
            return None

        outlet = resolve_outlet(batch.outlet_id) if batch.outlet_id else resolve_outlet(None)
        batch.outlet_id = outlet.id
        lines = _stored_lines(batch)
        analysis = analyze(batch.channel, lines, outlet.id)
        _classify(batch, analysis)
        if batch.status == BATCH_STATUS_READY:
            # product lifecycle is checked batch-wide too
            try:
                require_sellable_variants(set(analysis.resolution.mapped.values()))
            except DomainError as exc:
                batch.status = BATCH_STATUS_ERROR
                batch.error_message = exc.message
        db.session.commit()
        return batch.status, analysis.orders

    prepared = run_with_retry(_prepare)
    batch = db.session.get(CsvImportBatch, batch_id)
    if prepared is None:
        return _result(batch, imported_orders=0, already_imported=True)

    status, orders = prepared
    if status != BATCH_STATUS_READY:
        current_app.logger.info("CSV batch %s not importable: %s", batch_id, batch.error_message)
        return _result(batch, imported_orders=0)

    imported = []
    for group in orders:
        try:
            imported.append({"external_order_id": group["external_order_id"], "order_id": _import_order(batch_id, group, actor_user_id)})
        except DomainError as exc:
            # Stock moved between the batch-wide check and this order
            _mark_failed(batch_id, exc)
            current_app.logger.warning("CSV batch %s stopped at order %s: %s", batch_id, group["external_order_id"], exc.message)
            return _result(db.session.get(CsvImportBatch, batch_id), imported_orders=len(imported), results=imported)

    def _complete():
        batch = lock_for_update(db.session.query(CsvImportBatch).filter_by(id=batch_id)).populate_existing().first()
        batch.status = BATCH_STATUS_IMPORTED
        batch.imported_orders = (batch.imported_orders or 0) + len(imported)
        batch.finalized_at = utcnow()
        batch.error_message = None
        emit("csv_import.imported", {
            "batch_id": batch.id,
            "channel": batch.channel,
            "imported_orders": len(imported),
        })
        db.session.commit()
        return batch

    batch = run_with_retry(_complete)
    current_app.logger.info("CSV batch %s imported %s orders", batch_id, len(imported))
    return _result(batch, imported_orders=len(imported), results=imported)


def run_csv_import(
    *,
    channel: str,
    csv_text: str | None,
    mode: str,
    mapping,
    actor_user_id: int | None,
    batch_id: int | None = None,
    source_file_name: str | None = None,
    outlet_id: int | None = None,
) -> dict:
    mode = (mode or "preview").strip().lower()
    if mode not in MODES:
        raise ValidationError(f"mode must be one of {', '.join(MODES)}")
    if mode == "preview":
        return preview_csv(channel=channel, csv_text=csv_text, mapping=mapping, outlet_id=outlet_id)
    if mode == "submit":
        return submit_csv(
            channel=channel,
            csv_text=csv_text,
            mapping=mapping,
            actor_user_id=actor_user_id,
            source_file_name=source_file_name,
            outlet_id=outlet_id,
        )
    if batch_id is None:
        raise ValidationError("batchId is required for finalize")
    return finalize_batch(batch_id, actor_user_id=actor_user_id)


def get_batch(batch_id: int) -> CsvImportBatch:
    batch = db.session.get(CsvImportBatch, batch_id)
    if batch is None:
        raise NotFound("CsvImportBatch", batch_id)
    return batch


def list_batches(*, status: str | None = None, channel: str | None = None, limit: int = 50) -> list[CsvImportBatch]:
    query = db.session.query(CsvImportBatch)
    if status:
        query = query.filter(CsvImportBatch.status == status.upper())
    if channel:
        query = query.filter(CsvImportBatch.channel == channel.upper())
    return query.order_by(CsvImportBatch.created_at.desc(), CsvImportBatch.id.desc()).limit(limit).all()
