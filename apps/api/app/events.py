from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.events import event_bus

WORKPACKAGE_EVENT_TYPES: tuple[str, ...] = (
    "workpackage.assembled",
    "workpackage.csv_imported",
    "workpackage.schedule.recalculated",
    "workpackage.phase.status_changed",
    "workpackage.item.status_changed",
    "workpackage.deleted",
)

published_events: list[dict[str, Any]] = []


def publish(
    event_type: str,
    *,
    actor_user_id: str,
    payload: dict[str, Any],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Record a domain event envelope and fan it out on the in-process bus."""
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": correlation_id or get_correlation_id(),
        "payload": payload,
    }
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
