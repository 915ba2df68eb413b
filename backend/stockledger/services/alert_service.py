# Overview: Post-commit low-stock notifications.

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Product


def notify_low_stock(business_id: int, product_ids) -> list[Product]:
    """
    Call every LOW_STOCK_LISTENERS callable for products at or below their threshold.

    Must only be called after the stock change has committed. Listeners are
    external side effects; one failing listener is logged and does not stop
    the others or undo the committed change.
    """
    ids = sorted(set(product_ids))
    listeners = current_app.config.get("LOW_STOCK_LISTENERS") or []
    if not ids or not listeners:
        return []

    products = (
        db.session.query(Product)
        .filter(Product.business_id == business_id, Product.id.in_(ids))
        .order_by(Product.id.asc())
        .all()
    )
    low = [p for p in products if p.is_low_stock]
    for product in low:
        payload = product.to_dict()
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                current_app.logger.exception(
                    "Low-stock listener %r failed for product %s", listener, product.id
                )
    return low
