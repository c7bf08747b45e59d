# Overview: Lifecycle state machine shared by outlets, products and variants.

"""
Lifecycle (authoritative)

    ACTIVE <-> DEACTIVATED
    ACTIVE | DEACTIVATED -> DELETED

- DELETED is terminal; rows are never hard-removed because movements,
  orders and mappings keep referencing them.
- deleted_at is written when entering DELETED, for audit only. Code never
  decides anything from it; `lifecycle` is the source of truth.
"""

from __future__ import annotations

from ..errors import InvalidTransition
from ..models import LifecycleState
from stockledger.time_utils import utcnow


ALLOWED_TRANSITIONS = {
    LifecycleState.ACTIVE: {LifecycleState.DEACTIVATED, LifecycleState.DELETED},
    LifecycleState.DEACTIVATED: {LifecycleState.ACTIVE, LifecycleState.DELETED},
    LifecycleState.DELETED: set(),
}


def transition(entity, target: LifecycleState):
    """Move `entity` (any LifecycleMixin row) to `target`, or raise InvalidTransition."""
    target = LifecycleState(target)
    current = entity.state
    if current is target:
        return entity
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"{type(entity).__name__} {entity.id} cannot go from {current.value} to {target.value}"
        )
    entity.lifecycle = target.value
    if target is LifecycleState.DELETED:
        entity.deleted_at = utcnow()
    return entity
