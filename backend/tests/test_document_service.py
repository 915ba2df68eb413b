# Overview: Pytest coverage for per-business document numbering.

import pytest

from stockledger.errors import ValidationError
from stockledger.services.document_service import next_document_number


def test_sequences_are_independent_per_business_and_type(db_session, business_a, business_b):
    a1 = next_document_number(business_id=business_a.id, document_type="ORDER")
    a2 = next_document_number(business_id=business_a.id, document_type="ORDER")
    b1 = next_document_number(business_id=business_b.id, document_type="ORDER")
    r1 = next_document_number(business_id=business_a.id, document_type="REFUND")
    db_session.commit()

    assert a1 == f"ORD-{business_a.id:03d}-0001"
    assert a2 == f"ORD-{business_a.id:03d}-0002"
    assert b1 == f"ORD-{business_b.id:03d}-0001"
    assert r1 == f"RF-{business_a.id:03d}-0001"


def test_rolled_back_numbers_are_reused(db_session, business_a):
    next_document_number(business_id=business_a.id, document_type="BATCH")
    db_session.rollback()
    assert next_document_number(business_id=business_a.id, document_type="BATCH").endswith("-0001")


def test_unknown_type(db_session, business_a):
    with pytest.raises(ValidationError):
        next_document_number(business_id=business_a.id, document_type="INVOICE")
