from __future__ import annotations

import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from partnerhub.context import get_correlation_id

PROSPECT_ENTITY = "referrals.prospect"
CLIENT_ENTITY = "referrals.client"

audit_entries: list[dict[str, Any]] = []
_entries_lock = Lock()


def record(
    actor_user_id: str,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Append a prospect or client change to the in-process audit trail.

    ``before``/``after`` are snapshots taken by the caller; the entry keeps the
    ambient correlation id when none is passed explicitly.
    """

    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    with _entries_lock:
        audit_entries.append(entry)
    return entry


def entries_for(entity_type: str, entity_id: str) -> list[dict[str, Any]]:
    with _entries_lock:
        return [
            entry
            for entry in audit_entries
            if entry["entity_type"] == entity_type and entry["entity_id"] == entity_id
        ]
