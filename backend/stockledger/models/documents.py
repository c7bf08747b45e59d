from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class StockIn(db.Model):
    """
    Goods received into an outlet (supplier delivery, production run).

    Immutable once written; each item produces one IN movement with
    ref_type=STOCK_IN and ref_id=<stock_in.id>.
    """
    __tablename__ = "stock_ins"
    __table_args__ = (
        db.Index("ix_stock_ins_outlet_occurred", "outlet_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False)

    supplier = db.Column(db.String(255), nullable=True)
    note = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    outlet = db.relationship("Outlet")
    items = db.relationship("StockInItem", backref="stock_in", lazy=True, order_by="StockInItem.id")

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "outlet_id": self.outlet_id,
            "supplier": self.supplier,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class StockInItem(db.Model):
    __tablename__ = "stock_in_items"
    __table_args__ = (
        db.UniqueConstraint("stock_in_id", "variant_id", name="uq_stock_in_items_variant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_in_id = db.Column(db.Integer, db.ForeignKey("stock_ins.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)
    qty = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "variant_id": self.variant_id, "qty": self.qty}


class StockTransfer(db.Model):
    """
    Move stock between two outlets in one step.

    Unlike a shipping workflow there is no in-transit state: TRANSFER_OUT at
    the source and TRANSFER_IN at the destination are written in the same
    transaction and share ref_id.
    """
    __tablename__ = "stock_transfers"
    __table_args__ = (
        db.CheckConstraint("from_outlet_id <> to_outlet_id", name="ck_stock_transfers_distinct_outlets"),
        db.Index("ix_stock_transfers_from_to", "from_outlet_id", "to_outlet_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    from_outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False)
    to_outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False)

    note = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    from_outlet = db.relationship("Outlet", foreign_keys=[from_outlet_id])
    to_outlet = db.relationship("Outlet", foreign_keys=[to_outlet_id])
    items = db.relationship("StockTransferItem", backref="transfer", lazy=True, order_by="StockTransferItem.id")

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "from_outlet_id": self.from_outlet_id,
            "to_outlet_id": self.to_outlet_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class StockTransferItem(db.Model):
    __tablename__ = "stock_transfer_items"
    __table_args__ = (
        db.UniqueConstraint("transfer_id", "variant_id", name="uq_stock_transfer_items_variant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transfer_id = db.Column(db.Integer, db.ForeignKey("stock_transfers.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)
    qty = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {"id": self.id, "variant_id": self.variant_id, "qty": self.qty}


class StockAdjustment(db.Model):
    """Signed correction with a mandatory reason (damage, loss, found stock)."""
    __tablename__ = "stock_adjustments"
    __table_args__ = (
        db.CheckConstraint("delta_qty <> 0", name="ck_stock_adjustments_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)
    delta_qty = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "outlet_id": self.outlet_id,
            "variant_id": self.variant_id,
            "delta_qty": self.delta_qty,
            "reason": self.reason,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }


class StockOpname(db.Model):
    """
    Physical stock count.

    Each line snapshots the system quantity at the moment of the count so the
    document stays meaningful after later movements.
    """
    __tablename__ = "stock_opnames"
    __table_args__ = (
        db.Index("ix_stock_opnames_outlet_occurred", "outlet_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    outlet_id = db.Column(db.Integer, db.ForeignKey("outlets.id"), nullable=False)
    note = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    items = db.relationship("StockOpnameItem", backref="opname", lazy=True, order_by="StockOpnameItem.id")

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "outlet_id": self.outlet_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "created_by_user_id": self.created_by_user_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class StockOpnameItem(db.Model):
    __tablename__ = "stock_opname_items"
    __table_args__ = (
        db.UniqueConstraint("opname_id", "variant_id", name="uq_stock_opname_items_variant"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    opname_id = db.Column(db.Integer, db.ForeignKey("stock_opnames.id"), nullable=False, index=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False)

    system_qty = db.Column(db.Integer, nullable=False)
    counted_qty = db.Column(db.Integer, nullable=False)
    # counted_qty - system_qty
    diff_qty = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "system_qty": self.system_qty,
            "counted_qty": self.counted_qty,
            "diff_qty": self.diff_qty,
        }
