from __future__ import annotations

from typing import Any

from .errors import ValidationError


# Largest quantity accepted on a single line; keeps sums well inside INTEGER
MAX_LINE_QTY = 1_000_000

# Whole rupiah; Rp 999,999,999 per unit is far beyond any apparel price
MAX_PRICE = 999_999_999


def pick(data: dict, *keys: str, default: Any = None) -> Any:
    """
    Return the first present (non-None) value among `keys`.

    Request bodies arrive in camelCase from the dashboard and in snake_case
    from scripts, so routes look up both spellings.
    """
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion.

    Accepts ints and plain digit strings (optional leading minus). Rejects
    bools, floats, decimals and scientific notation.
    """
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    if value is None:
        raise ValidationError(f"{field} is required")
    result = coerce_int(value, field)
    if minimum is not None and result < minimum:
        if minimum == 1:
            raise ValidationError(f"{field} must be positive")
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def optional_int(value: Any, field: str, *, minimum: int | None = None) -> int | None:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    return require_int(value, field, minimum=minimum)


def require_text(value: Any, field: str, *, min_length: int = 1, max_length: int | None = None) -> str:
    text = "" if value is None else str(value).strip()
    if len(text) < min_length:
        if min_length <= 1:
            raise ValidationError(f"{field} is required")
        raise ValidationError(f"{field} must be at least {min_length} characters")
    if max_length is not None and len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text


def optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def require_items(items: Any) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            raise ValidationError(f"items[{idx}] must be an object")
    return items


def aggregate_lines(items: Any, *, qty_keys: tuple[str, ...] = ("qty", "quantity")) -> dict[int, int]:
    """
    Validate [{variant_id, qty}] lines and sum quantities per variant.

    Duplicate variant lines are merged so stock arithmetic sees one need per
    variant. Insertion order follows first appearance.
    """
    totals: dict[int, int] = {}
    for idx, item in enumerate(require_items(items)):
        variant_id = require_int(pick(item, "variant_id", "variantId"), f"items[{idx}].variant_id", minimum=1)
        qty = require_int(pick(item, *qty_keys), f"items[{idx}].qty", minimum=1, maximum=MAX_LINE_QTY)
        totals[variant_id] = totals.get(variant_id, 0) + qty
    return totals
