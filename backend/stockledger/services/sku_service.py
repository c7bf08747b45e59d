# Overview: External marketplace SKU -> internal variant resolution and mapping administration.

"""
SKU resolution rules

- Resolution is a pure read of channel_sku_maps: no side effects, no
  fallback guessing. Callers run it inside the same transaction that then
  applies stock, so the mapping they act on is the one they read.
- Channel and external SKU are compared trimmed; channel is upper-cased.
- Mapping writes are administrative; they never touch stock.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import NotFound, ProductInactive, ValidationError
from ..models import ChannelSkuMap, LifecycleState, ProductVariant, WebhookEvent
from ..models.integrations import WEBHOOK_STATUS_UNMAPPED
from .concurrency import run_with_retry
from .payload_extractors import extract_payload


@dataclass
class SkuResolution:
    """Result of resolving a batch of external SKUs."""
    mapped: dict[str, int] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing


def normalize_channel(channel: str) -> str:
    value = (channel or "").strip().upper()
    if not value:
        raise ValidationError("channel is required")
    return value


def resolve_sku(channel: str, external_sku_id: str) -> int | None:
    sku = (external_sku_id or "").strip()
    if not sku:
        return None
    row = (
        db.session.query(ChannelSkuMap.variant_id)
        .filter(ChannelSkuMap.channel == normalize_channel(channel), ChannelSkuMap.external_sku_id == sku)
        .first()
    )
    return row.variant_id if row is not None else None


def resolve_skus(channel: str, external_sku_ids) -> SkuResolution:
    """
    Resolve many SKUs in one query. `missing` keeps first-seen order and has
    no duplicates.
    """
    channel = normalize_channel(channel)
    wanted = []
    for sku in external_sku_ids:
        sku = (sku or "").strip()
        if sku and sku not in wanted:
            wanted.append(sku)
    if not wanted:
        return SkuResolution()

    rows = (
        db.session.query(ChannelSkuMap.external_sku_id, ChannelSkuMap.variant_id)
        .filter(ChannelSkuMap.channel == channel, ChannelSkuMap.external_sku_id.in_(wanted))
        .all()
    )
    found = {row.external_sku_id: row.variant_id for row in rows}
    return SkuResolution(
        mapped={sku: found[sku] for sku in wanted if sku in found},
        missing=[sku for sku in wanted if sku not in found],
    )


def upsert_mapping(*, channel: str, external_sku_id: str, variant_id: int) -> tuple[ChannelSkuMap, bool]:
    """
    Create or repoint a mapping. Returns (mapping, created).

    The variant must exist and not be DELETED.
    """
    channel = normalize_channel(channel)
    sku = (external_sku_id or "").strip()
    if not sku:
        raise ValidationError("external_sku_id is required")

    def _op():
        variant = db.session.get(ProductVariant, variant_id)
        if variant is None:
            raise NotFound("Variant", variant_id)
        if variant.state is LifecycleState.DELETED:
            raise ProductInactive(variant.id, variant.lifecycle)

        mapping = db.session.query(ChannelSkuMap).filter_by(channel=channel, external_sku_id=sku).first()
        created = mapping is None
        if created:
            mapping = ChannelSkuMap(channel=channel, external_sku_id=sku, variant_id=variant.id)
            db.session.add(mapping)
        else:
            mapping.variant_id = variant.id
        db.session.commit()
        return mapping, created

    try:
        return run_with_retry(_op)
    except IntegrityError:
        # Lost a race with a concurrent insert of the same key; update it instead
        return run_with_retry(_op)


def list_mappings(*, channel: str | None = None, variant_id: int | None = None) -> list[ChannelSkuMap]:
    query = db.session.query(ChannelSkuMap)
    if channel:
        query = query.filter(ChannelSkuMap.channel == normalize_channel(channel))
    if variant_id is not None:
        query = query.filter(ChannelSkuMap.variant_id == variant_id)
    return query.order_by(ChannelSkuMap.channel.asc(), ChannelSkuMap.external_sku_id.asc()).all()


def delete_mapping(mapping_id: int) -> None:
    def _op():
        mapping = db.session.get(ChannelSkuMap, mapping_id)
        if mapping is None:
            raise NotFound("SkuMapping", mapping_id)
        db.session.delete(mapping)
        db.session.commit()

    run_with_retry(_op)


def list_unmapped_skus(*, channel: str | None = None, take: int = 200) -> list[dict]:
    """
    External SKUs referenced by UNMAPPED webhook events that still have no
    mapping, newest first.

    Each entry: {channel, external_sku_id, count, last_seen_at, sample_order_id}
    where count is the number of UNMAPPED events mentioning the SKU.
    """
    query = db.session.query(WebhookEvent).filter(WebhookEvent.status == WEBHOOK_STATUS_UNMAPPED)
    if channel:
        query = query.filter(WebhookEvent.channel == normalize_channel(channel))
    events = query.order_by(WebhookEvent.received_at.desc(), WebhookEvent.id.desc()).limit(1000).all()

    stats: dict[tuple[str, str], dict] = {}
    for event in events:
        try:
            extracted = extract_payload(event.channel, json.loads(event.payload))
        except ValueError:
            continue
        seen_here = set()
        for item in extracted.items:
            key = (event.channel, item.external_sku_id)
            if key in seen_here:
                continue
            seen_here.add(key)
            entry = stats.get(key)
            if entry is None:
                stats[key] = {
                    "channel": event.channel,
                    "external_sku_id": item.external_sku_id,
                    "count": 1,
                    "last_seen_at": event.received_at,
                    "sample_order_id": extracted.external_order_id,
                }
            else:
                entry["count"] += 1

    if not stats:
        return []

    still_missing = []
    by_channel: dict[str, list[str]] = {}
    for ch, sku in stats:
        by_channel.setdefault(ch, []).append(sku)
    for ch, skus in by_channel.items():
        resolution = resolve_skus(ch, skus)
        still_missing.extend((ch, sku) for sku in resolution.missing)

    rows = [stats[key] for key in still_missing]
    rows.sort(key=lambda r: (r["last_seen_at"], r["count"]), reverse=True)
    return rows[:take]
