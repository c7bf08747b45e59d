from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..errors import NotFound, OutletUnavailable, ValidationError
from ..models import Outlet, LifecycleState
from ..models.catalog import OUTLET_TYPES
from ..validation import require_text
from .concurrency import lock_for_update, run_with_retry
from .lifecycle import transition


def _validate_type(outlet_type: str) -> str:
    value = (outlet_type or "").strip().upper()
    if value not in OUTLET_TYPES:
        raise ValidationError(f"type must be one of {', '.join(OUTLET_TYPES)}")
    return value


def find_warehouse_outlet() -> Outlet | None:
    """Earliest ACTIVE warehouse, without creating one."""
    return (
        db.session.query(Outlet)
        .filter(Outlet.type == "WAREHOUSE", Outlet.lifecycle == LifecycleState.ACTIVE.value)
        .order_by(Outlet.created_at.asc(), Outlet.id.asc())
        .first()
    )


def get_or_create_warehouse_outlet() -> Outlet:
    """
    Default outlet for operations that omit outlet_id.

    The earliest ACTIVE warehouse wins; when none exists a warehouse named
    DEFAULT_WAREHOUSE_NAME is created in the caller's transaction (flushed,
    not committed).
    """
    outlet = find_warehouse_outlet()
    if outlet is not None:
        return outlet

    outlet = Outlet(
        name=current_app.config.get("DEFAULT_WAREHOUSE_NAME", "Gudang"),
        type="WAREHOUSE",
        lifecycle=LifecycleState.ACTIVE.value,
    )
    db.session.add(outlet)
    db.session.flush()
    current_app.logger.info("Created default warehouse outlet id=%s", outlet.id)
    return outlet


def resolve_outlet(outlet_id: int | None) -> Outlet:
    """Explicit outlet (must be ACTIVE) or the default warehouse."""
    if outlet_id is None:
        return get_or_create_warehouse_outlet()
    outlet = db.session.get(Outlet, outlet_id)
    if outlet is None:
        raise NotFound("Outlet", outlet_id)
    if not outlet.is_active:
        raise OutletUnavailable(outlet.id, outlet.lifecycle)
    return outlet


def create_outlet(*, name: str, outlet_type: str = "WAREHOUSE") -> Outlet:
    name = require_text(name, "name", max_length=120)
    outlet_type = _validate_type(outlet_type)

    def _op():
        outlet = Outlet(name=name, type=outlet_type, lifecycle=LifecycleState.ACTIVE.value)
        db.session.add(outlet)
        db.session.commit()
        return outlet

    return run_with_retry(_op)


def update_outlet(outlet_id: int, *, name: str | None = None, outlet_type: str | None = None) -> Outlet:
    if outlet_type is not None:
        outlet_type = _validate_type(outlet_type)

    def _op():
        outlet = lock_for_update(db.session.query(Outlet).filter_by(id=outlet_id)).first()
        if outlet is None:
            raise NotFound("Outlet", outlet_id)
        if outlet.state is LifecycleState.DELETED:
            raise OutletUnavailable(outlet.id, outlet.lifecycle)
        if name is not None:
            outlet.name = require_text(name, "name", max_length=120)
        if outlet_type is not None:
            outlet.type = outlet_type
        db.session.commit()
        return outlet

    return run_with_retry(_op)


def set_outlet_lifecycle(outlet_id: int, target: LifecycleState) -> Outlet:
    def _op():
        outlet = lock_for_update(db.session.query(Outlet).filter_by(id=outlet_id)).first()
        if outlet is None:
            raise NotFound("Outlet", outlet_id)
        transition(outlet, target)
        db.session.commit()
        return outlet

    return run_with_retry(_op)


def list_outlets(*, include_inactive: bool = False) -> list[Outlet]:
    query = db.session.query(Outlet)
    if include_inactive:
        query = query.filter(Outlet.lifecycle != LifecycleState.DELETED.value)
    else:
        query = query.filter(Outlet.lifecycle == LifecycleState.ACTIVE.value)
    return query.order_by(Outlet.created_at.asc(), Outlet.id.asc()).all()
