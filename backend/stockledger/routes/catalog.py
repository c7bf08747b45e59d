# backend/stockledger/routes/catalog.py
"""
Outlet, product and variant administration.

Reads are open to any authenticated user; writes need OWNER or ADMIN.
Lifecycle actions (deactivate / activate / delete) are soft: rows stay so
movements and orders keep resolving.
"""
from flask import Blueprint, request, jsonify, current_app

from stockledger.extensions import db
from stockledger.decorators import require_auth, require_role
from stockledger.errors import DomainError
from stockledger.models import LifecycleState
from stockledger.models.auth import ADMIN_ROLES
from stockledger.services import catalog_service, outlet_service
from stockledger.validation import optional_int, pick


catalog_bp = Blueprint("catalog", __name__, url_prefix="/api")

LIFECYCLE_ACTIONS = {
    "deactivate": LifecycleState.DEACTIVATED,
    "activate": LifecycleState.ACTIVE,
    "delete": LifecycleState.DELETED,
}


def _include_inactive() -> bool:
    return request.args.get("includeInactive", request.args.get("include_inactive")) in ("1", "true", "yes")


def _failure(message: str):
    db.session.rollback()
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# OUTLETS
# =============================================================================

@catalog_bp.get("/outlets")
@require_auth
def list_outlets():
    outlets = outlet_service.list_outlets(include_inactive=_include_inactive())
    return jsonify({"items": [o.to_dict() for o in outlets]}), 200


@catalog_bp.post("/outlets")
@require_auth
@require_role(*ADMIN_ROLES)
def create_outlet():
    """Request body: {"name": str, "type": "WAREHOUSE" | "OFFLINE_STORE" | "ONLINE"}"""
    data = request.get_json(silent=True) or {}
    try:
        outlet = outlet_service.create_outlet(name=data.get("name"), outlet_type=data.get("type") or "WAREHOUSE")
        return jsonify(outlet.to_dict()), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to create outlet")


@catalog_bp.put("/outlets/<int:outlet_id>")
@require_auth
@require_role(*ADMIN_ROLES)
def update_outlet(outlet_id: int):
    data = request.get_json(silent=True) or {}
    try:
        outlet = outlet_service.update_outlet(outlet_id, name=data.get("name"), outlet_type=data.get("type"))
        return jsonify(outlet.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to update outlet")


@catalog_bp.delete("/outlets/<int:outlet_id>")
@require_auth
@require_role(*ADMIN_ROLES)
def delete_outlet(outlet_id: int):
    try:
        outlet = outlet_service.set_outlet_lifecycle(outlet_id, LifecycleState.DELETED)
        return jsonify(outlet.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to delete outlet")


@catalog_bp.post("/outlets/<int:outlet_id>/<action>")
@require_auth
@require_role(*ADMIN_ROLES)
def outlet_lifecycle(outlet_id: int, action: str):
    target = LIFECYCLE_ACTIONS.get(action)
    if target is None:
        return jsonify({"error": f"Unknown action {action}"}), 404
    try:
        outlet = outlet_service.set_outlet_lifecycle(outlet_id, target)
        return jsonify(outlet.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to change outlet lifecycle")


# =============================================================================
# PRODUCTS & VARIANTS
# =============================================================================

@catalog_bp.get("/products")
@require_auth
def list_products():
    products = catalog_service.list_products(include_inactive=_include_inactive(), q=request.args.get("q"))
    return jsonify({"items": [p.to_dict(include_variants=True) for p in products]}), 200


@catalog_bp.post("/products")
@require_auth
@require_role(*ADMIN_ROLES)
def create_product():
    """
    Create a product, optionally with its variants.

    Request body:
    {
        "name": str, "category": str, "description": str,
        "variants": [{"sku": str, "size": str, "color": str, "price": int, "minQty": int}]
    }
    """
    data = request.get_json(silent=True) or {}
    try:
        variants = data.get("variants") or []
        if not isinstance(variants, list):
            return jsonify({"error": "variants must be a list"}), 400
        product = catalog_service.create_product(
            name=data.get("name"),
            category=data.get("category"),
            description=data.get("description"),
        )
        for idx, variant in enumerate(variants):
            catalog_service.create_variant(
                product_id=product.id,
                sku=variant.get("sku"),
                size=variant.get("size"),
                color=variant.get("color"),
                price=optional_int(variant.get("price"), f"variants[{idx}].price", minimum=0) or 0,
                min_qty=optional_int(pick(variant, "minQty", "min_qty"), f"variants[{idx}].min_qty", minimum=0) or 0,
            )
        return jsonify(catalog_service.get_product(product.id).to_dict(include_variants=True)), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to create product")


@catalog_bp.get("/products/<int:product_id>")
@require_auth
def get_product(product_id: int):
    try:
        return jsonify(catalog_service.get_product(product_id).to_dict(include_variants=True)), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@catalog_bp.post("/products/<int:product_id>/variants")
@require_auth
@require_role(*ADMIN_ROLES)
def create_variant(product_id: int):
    data = request.get_json(silent=True) or {}
    try:
        variant = catalog_service.create_variant(
            product_id=product_id,
            sku=data.get("sku"),
            size=data.get("size"),
            color=data.get("color"),
            price=optional_int(data.get("price"), "price", minimum=0) or 0,
            min_qty=optional_int(pick(data, "minQty", "min_qty"), "min_qty", minimum=0) or 0,
        )
        return jsonify(variant.to_dict()), 201
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to create variant")


@catalog_bp.post("/products/<int:product_id>/<action>")
@require_auth
@require_role(*ADMIN_ROLES)
def product_lifecycle(product_id: int, action: str):
    target = LIFECYCLE_ACTIONS.get(action)
    if target is None:
        return jsonify({"error": f"Unknown action {action}"}), 404
    try:
        product = catalog_service.set_product_lifecycle(product_id, target)
        return jsonify(product.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to change product lifecycle")


@catalog_bp.get("/variants")
@require_auth
def list_variants():
    try:
        variants = catalog_service.list_variants(
            product_id=optional_int(pick(request.args, "productId", "product_id"), "product_id", minimum=1),
            include_inactive=_include_inactive(),
            q=request.args.get("q"),
        )
        return jsonify({"items": [v.to_dict() for v in variants]}), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status


@catalog_bp.post("/variants/<int:variant_id>/<action>")
@require_auth
@require_role(*ADMIN_ROLES)
def variant_lifecycle(variant_id: int, action: str):
    target = LIFECYCLE_ACTIONS.get(action)
    if target is None:
        return jsonify({"error": f"Unknown action {action}"}), 404
    try:
        variant = catalog_service.set_variant_lifecycle(variant_id, target)
        return jsonify(variant.to_dict()), 200
    except DomainError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        return _failure("Failed to change variant lifecycle")
