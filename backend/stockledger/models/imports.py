from __future__ import annotations

import json

from ..extensions import db
from stockledger.time_utils import to_utc_z


BATCH_STATUS_NEEDS_MAPPING = "NEEDS_MAPPING"
BATCH_STATUS_ERROR = "ERROR"
BATCH_STATUS_READY = "READY"
BATCH_STATUS_IMPORTED = "IMPORTED"

ROW_STATUS_PENDING = "PENDING"
ROW_STATUS_MAPPED = "MAPPED"
ROW_STATUS_UNMAPPED = "UNMAPPED"
ROW_STATUS_INSUFFICIENT = "INSUFFICIENT"
ROW_STATUS_IMPORTED = "IMPORTED"


class CsvImportBatch(db.Model):
    """
    One uploaded marketplace order export.

    The rows are stored even when they cannot be imported yet so an operator
    can add SKU mappings or stock and re-finalize without re-uploading.

    LIFECYCLE:
    NEEDS_MAPPING / ERROR -> (finalize) READY -> IMPORTED
    """
    __tablename__ = "csv_import_batches"
    __table_args__ = (
        db.Index("ix_csv_import_batches_channel_status", "channel", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.String(32), nullable=False)
    outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=BATCH_STATUS_NEEDS_MAPPING, index=True)

    # Column mapping as JSON: {"orderId": ..., "sku": ..., "qty": ..., "date": ..., "price": ...}
    mapping = db.Column(db.Text, nullable=False)

    source_file_name = db.Column(db.String(255), nullable=True)
    total_rows = db.Column(db.Integer, nullable=False, default=0)
    imported_orders = db.Column(db.Integer, nullable=False, default=0)

    error_message = db.Column(db.Text, nullable=True)

    # Last preview-style stats as JSON (missing skus, shortfalls)
    summary = db.Column(db.Text, nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    finalized_at = db.Column(db.DateTime(timezone=True), nullable=True)

    rows = db.relationship(
        "CsvImportRow",
        backref="batch",
        lazy=True,
        order_by="CsvImportRow.row_number",
    )

    def mapping_json(self) -> dict:
        return json.loads(self.mapping) if self.mapping else {}

    def summary_json(self) -> dict:
        return json.loads(self.summary) if self.summary else {}

    def to_dict(self, include_rows: bool = False) -> dict:
        data = {
            "id": self.id,
            "channel": self.channel,
            "outlet_id": self.outlet_id,
            "status": self.status,
            "mapping": self.mapping_json(),
            "source_file_name": self.source_file_name,
            "total_rows": self.total_rows,
            "imported_orders": self.imported_orders,
            "error_message": self.error_message,
            "summary": self.summary_json(),
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "finalized_at": to_utc_z(self.finalized_at),
        }
        if include_rows:
            data["rows"] = [row.to_dict() for row in self.rows]
        return data


class CsvImportRow(db.Model):
    """A single line of the export, already projected through the column mapping."""
    __tablename__ = "csv_import_rows"
    __table_args__ = (
        db.UniqueConstraint("batch_id", "row_number", name="uq_csv_import_rows_batch_row"),
        db.Index("ix_csv_import_rows_batch_status", "batch_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("csv_import_batches.id"), nullable=False, index=True)

    # 1-based position among data rows (header excluded)
    row_number = db.Column(db.Integer, nullable=False)

    external_order_id = db.Column(db.String(128), nullable=False)
    external_sku_id = db.Column(db.String(128), nullable=False)
    qty = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Integer, nullable=True)
    date_raw = db.Column(db.String(64), nullable=True)

    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=ROW_STATUS_PENDING)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    error_message = db.Column(db.Text, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "row_number": self.row_number,
            "external_order_id": self.external_order_id,
            "external_sku_id": self.external_sku_id,
            "qty": self.qty,
            "price": self.price,
            "date_raw": self.date_raw,
            "variant_id": self.variant_id,
            "status": self.status,
            "order_id": self.order_id,
            "error_message": self.error_message,
        }
