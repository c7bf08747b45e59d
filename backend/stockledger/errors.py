# Overview: Typed errors shared by services and routes.

"""
Error taxonomy

- ValidationError: malformed input, rejected before a transaction opens (400).
- Domain errors: business rules evaluated inside or just before the
  transaction (InsufficientStock, ProductInactive, UnmappedSku, InvalidDelta).
- Integrity collisions on idempotence keys are NOT errors; services catch
  them and report a duplicate.
- Infrastructure errors (SQLAlchemy OperationalError etc.) are not wrapped
  and propagate as-is.

Every DomainError carries a machine-readable `code` and an HTTP status so
routes can translate it without knowing the concrete class.
"""
from __future__ import annotations


class DomainError(Exception):
    code = "DOMAIN_ERROR"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def details(self) -> dict:
        return {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "code": self.code}
        body.update(self.details())
        return body


class ValidationError(DomainError):
    """400-level input problem."""
    code = "VALIDATION_ERROR"


class NotFound(DomainError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id

    def details(self) -> dict:
        return {"entity": self.entity, "id": self.entity_id}


class OutletUnavailable(DomainError):
    code = "OUTLET_UNAVAILABLE"

    def __init__(self, outlet_id: int, state: str):
        super().__init__(f"Outlet {outlet_id} is {state.lower()}")
        self.outlet_id = outlet_id
        self.state = state

    def details(self) -> dict:
        return {"outlet_id": self.outlet_id, "state": self.state}


class InsufficientStock(DomainError):
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, variant_id: int, need: int, have: int, outlet_id: int | None = None):
        super().__init__(
            f"Insufficient stock for variant {variant_id}: need {need}, have {have}"
        )
        self.variant_id = variant_id
        self.need = need
        self.have = have
        self.outlet_id = outlet_id

    def shortfall(self) -> dict:
        return {
            "variant_id": self.variant_id,
            "outlet_id": self.outlet_id,
            "need": self.need,
            "have": self.have,
        }

    def details(self) -> dict:
        return {"insufficient": [self.shortfall()]}


class InsufficientStockBatch(DomainError):
    """Several lines short at once; raised so operators see every shortfall."""
    code = "INSUFFICIENT_STOCK"
    http_status = 409

    def __init__(self, shortfalls: list[InsufficientStock]):
        variants = ", ".join(str(s.variant_id) for s in shortfalls)
        super().__init__(f"Insufficient stock for variants: {variants}")
        self.shortfalls = shortfalls

    def details(self) -> dict:
        return {"insufficient": [s.shortfall() for s in self.shortfalls]}


class InvalidDelta(DomainError):
    code = "INVALID_DELTA"

    def __init__(self, message: str = "delta_qty cannot be 0"):
        super().__init__(message)


class ProductInactive(DomainError):
    code = "PRODUCT_INACTIVE"

    def __init__(self, variant_id: int, state: str = "DEACTIVATED"):
        super().__init__(f"Variant {variant_id} belongs to an inactive product ({state.lower()})")
        self.variant_id = variant_id
        self.state = state

    def details(self) -> dict:
        return {"variant_id": self.variant_id, "state": self.state}


class UnmappedSku(DomainError):
    code = "UNMAPPED_SKU"
    http_status = 409

    def __init__(self, channel: str, skus: list[str]):
        super().__init__(f"Unmapped SKU: {', '.join(skus)}")
        self.channel = channel
        self.skus = skus

    def details(self) -> dict:
        return {"channel": self.channel, "missing_skus": self.skus}


class InvalidTransition(DomainError):
    code = "INVALID_TRANSITION"
    http_status = 409


class ConflictError(DomainError):
    """409-level business rule conflict (e.g., duplicate SKU)."""
    code = "CONFLICT"
    http_status = 409
