# Overview: Service-layer operations for permissions; delegates the decision and records denials.

from __future__ import annotations

from flask import current_app

from ..errors import LedgerError, PermissionDeniedError
from ..extensions import db
from ..models import SecurityEvent


def require_permission(user_id: int | None, action: str, business_id: int) -> None:
    """
    Ask the configured can_perform(user_id, action, business_id) predicate.

    A denial is a caller-side precondition failure: PermissionDeniedError is
    raised before any engine state is touched.
    """
    check = current_app.config.get("PERMISSION_CHECK")
    if check is None or check(user_id, action, business_id):
        return
    raise PermissionDeniedError(
        "Permission denied",
        {"action": action, "business_id": business_id, "user_id": user_id},
        context={"business_id": business_id, "user_id": user_id, "action": action},
    )


def log_security_event(exc: LedgerError) -> SecurityEvent:
    """
    Record a security-relevant rejection in its own commit.

    Called after the failed operation has been rolled back, so the event is
    the only thing this commit writes.

    event_type examples:
    - CROSS_TENANT_ACCESS_DENIED
    - PERMISSION_DENIED
    """
    ctx = exc.context
    event = SecurityEvent(
        business_id=ctx.get("business_id"),
        user_id=ctx.get("user_id"),
        event_type=exc.security_event_type,
        resource=ctx.get("resource"),
        action=ctx.get("action"),
        reason=ctx.get("reason") or exc.message,
    )
    db.session.add(event)
    db.session.commit()

    current_app.logger.warning(
        "%s business_id=%s user_id=%s resource=%s action=%s",
        exc.security_event_type,
        event.business_id,
        event.user_id,
        event.resource,
        event.action,
    )
    return event
