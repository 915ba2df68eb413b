# Overview: Service-layer operations for document numbers; per-business sequences.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..errors import ValidationError
from ..extensions import db
from ..models import DocumentSequence


PREFIXES = {
    "BATCH": "BATCH",
    "ORDER": "ORD",
    "REFUND": "RF",
}


def _bump(business_id: int, document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(
            DocumentSequence.business_id == business_id,
            DocumentSequence.document_type == document_type,
        )
        .values(next_number=DocumentSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(business_id=business_id, document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(*, business_id: int, document_type: str, pad: int = 4) -> str:
    """
    Allocate the next document number for a business/type inside the caller's transaction.

    The UPDATE takes the sequence row lock, so the number is held until the
    caller commits or rolls back; a rolled-back operation releases its number.
    Format: <PREFIX>-<business:03d>-<NNNN>, e.g. ORD-001-0042.
    """
    if not business_id:
        raise ValidationError("business_id is required", {"field": "business_id"})
    prefix = PREFIXES.get(document_type)
    if prefix is None:
        raise ValidationError("Unknown document type", {"document_type": document_type})

    number = _bump(business_id, document_type)
    if number is None:
        try:
            with db.session.begin_nested():
                db.session.add(
                    DocumentSequence(business_id=business_id, document_type=document_type, next_number=2)
                )
            number = 1
        except IntegrityError:
            # Another transaction created the row first
            number = _bump(business_id, document_type)
            if number is None:
                raise

    return f"{prefix}-{business_id:03d}-{number:0{pad}d}"
