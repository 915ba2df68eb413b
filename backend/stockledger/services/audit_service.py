# Overview: Service-layer operations for the audit spine; append-only business events.

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from ..extensions import db
from ..models import AuditEvent
from ..time_utils import utcnow
"""
Audit Invariants (authoritative)

- Append-only log of business-level facts (batch.received, order.created, ...).
- No domain/business logic in the audit spine itself.
- Events are written inside the same DB transaction as the fact they record,
  so a rolled-back operation leaves no event behind.
- occurred_at is business time (engine clock); created_at is system time (DB default).
"""


def append_audit_event(
    *,
    business_id: int,
    event_type: str,
    entity_type: str,
    entity_id: int,
    actor_user_id: int | None = None,
    order_id: int | None = None,
    occurred_at: Optional[datetime] = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
) -> AuditEvent:
    """
    Append one audit event to the current transaction (flushes, does not commit).
    """
    ev = AuditEvent(
        business_id=business_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_user_id=actor_user_id,
        order_id=order_id,
        occurred_at=occurred_at or utcnow(),
        note=note,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
    )
    db.session.add(ev)
    db.session.flush()
    return ev


def list_audit_events(
    business_id: int,
    *,
    event_type: str | None = None,
    entity_type: str | None = None,
    entity_id: int | None = None,
) -> list[AuditEvent]:
    q = db.session.query(AuditEvent).filter(AuditEvent.business_id == business_id)
    if event_type:
        q = q.filter(AuditEvent.event_type == event_type)
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        q = q.filter(AuditEvent.entity_id == entity_id)
    return q.order_by(AuditEvent.id.asc()).all()
