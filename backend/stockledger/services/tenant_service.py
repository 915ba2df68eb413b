"""
Multi-Tenant Service: tenant-scoped persistence access

Every read and write the engine performs goes through a TenantScope bound to
one business_id, so a query built here cannot cross a tenant boundary.

SECURITY INVARIANTS:
1. Entity ids from callers are resolved only through TenantScope.get/get_many
2. An id owned by another business raises TenantMismatchError whose message
   and details are identical to NotFoundError's
3. Cross-tenant attempts are logged as CROSS_TENANT_ACCESS_DENIED security events
   (run_with_retry records them after rolling back)

USAGE:
    scope = TenantScope(business_id, user_id=user_id)
    order = scope.get(Order, order_id, lock=True)
    products = scope.query(Product).filter(Product.is_active.is_(True)).all()
"""

from __future__ import annotations

from ..errors import NotFoundError, TenantMismatchError
from ..extensions import db
from ..models import Business
from .concurrency import lock_for_update


class TenantScope:
    def __init__(self, business_id: int, user_id: int | None = None):
        self.business_id = business_id
        self.user_id = user_id

    def __repr__(self) -> str:
        return f"<TenantScope business_id={self.business_id}>"

    def require_business(self) -> Business:
        """Validate the bound business exists and is active."""
        business = db.session.get(Business, self.business_id)
        if business is None or not business.is_active:
            raise NotFoundError("Business not found", {"entity": "Business", "id": self.business_id})
        return business

    def query(self, model):
        """Query over `model` restricted to this business."""
        return db.session.query(model).filter(model.business_id == self.business_id)

    def get(self, model, entity_id: int, *, lock: bool = False):
        """
        Load one tenant-owned row by id.

        Raises:
            NotFoundError if no such row exists
            TenantMismatchError if it belongs to a different business
        """
        name = model.__name__
        details = {"entity": name, "id": entity_id}
        if entity_id is None:
            raise NotFoundError(f"{name} not found", details)

        q = db.session.query(model).filter(model.id == entity_id)
        if lock:
            q = lock_for_update(q)
        obj = q.first()

        if obj is None:
            raise NotFoundError(f"{name} not found", details)
        if obj.business_id != self.business_id:
            raise self._mismatch(name, entity_id, obj.business_id)
        return obj

    def get_many(self, model, entity_ids, *, lock: bool = False) -> list:
        """
        Load several tenant-owned rows, returned in ascending id order.

        Locks (when requested) are taken in ascending id order as well, so two
        transactions touching overlapping rows cannot deadlock on each other.
        The first missing or foreign id, in the order the caller gave them, raises.
        """
        requested = list(dict.fromkeys(entity_ids))
        ids = sorted(requested)
        if not ids:
            return []

        q = db.session.query(model).filter(model.id.in_(ids)).order_by(model.id.asc())
        if lock:
            q = lock_for_update(q)
        rows = {row.id: row for row in q.all()}

        name = model.__name__
        for entity_id in requested:
            row = rows.get(entity_id)
            if row is None:
                raise NotFoundError(f"{name} not found", {"entity": name, "id": entity_id})
            if row.business_id != self.business_id:
                raise self._mismatch(name, entity_id, row.business_id)
        return [rows[entity_id] for entity_id in ids]

    def _mismatch(self, name: str, entity_id: int, owner_business_id: int) -> TenantMismatchError:
        # Same wording as NotFoundError; the owner only reaches the security log
        return TenantMismatchError(
            f"{name} not found",
            {"entity": name, "id": entity_id},
            context={
                "business_id": self.business_id,
                "user_id": self.user_id,
                "resource": f"{name}:{entity_id}",
                "reason": f"{name} {entity_id} belongs to business {owner_business_id}, not {self.business_id}",
            },
        )
