"""
Tests for DisputeHandler outcomes across every settlement status.
"""

from unittest.mock import patch

import pytest

from fiatgate.models.pending_settlement import DisputeKind, SettlementStatus
from fiatgate.schemas import ChargeRefunded, DisputeCreated
from fiatgate.services.dispute_handler import DisputeHandler, DisputeOutcome


@pytest.fixture
def handler(store) -> DisputeHandler:
    return DisputeHandler(store)


def dispute(payment_event_id: str, event_id: str = "dp_1", reason: str = "fraudulent") -> DisputeCreated:
    return DisputeCreated(event_id=event_id, payment_event_id=payment_event_id, reason=reason)


def test_dispute_before_release_holds_payment(handler, store, make_payment):
    record = store.create(make_payment(event_id="pi_1", risk_score=75))

    assert handler.handle_dispute(dispute("pi_1")) == DisputeOutcome.DISPUTED

    assert store.get(record.id).status == SettlementStatus.DISPUTED
    assert store.due_for_release() == []


def test_dispute_during_release(handler, store, make_payment):
    record = store.create(make_payment(event_id="pi_1"))
    store.claim_for_release(record.id)

    assert handler.handle_dispute(dispute("pi_1")) == DisputeOutcome.DISPUTED
    assert store.get(record.id).status == SettlementStatus.DISPUTED


def test_dispute_after_settlement_flags_conflict(handler, store, make_payment):
    record = store.create(make_payment(event_id="pi_1"))
    store.claim_for_release(record.id)
    store.mark_settled(record.id, "0xabc")

    with patch("fiatgate.services.dispute_handler.capture_message") as captured:
        outcome = handler.handle_dispute(dispute("pi_1"))

    assert outcome == DisputeOutcome.SETTLED_CONFLICT
    loaded = store.get(record.id)
    assert loaded.status == SettlementStatus.DISPUTED
    assert loaded.release_reference == "0xabc"

    captured.assert_called_once()
    kwargs = captured.call_args.kwargs
    assert kwargs["level"] == "error"
    assert kwargs["tags"] == {"conflict": "dispute_after_settlement"}
    assert kwargs["context"]["settlement_id"] == record.id
    assert kwargs["context"]["release_reference"] == "0xabc"


def test_second_dispute_reports_already_disputed(handler, store, make_payment):
    store.create(make_payment(event_id="pi_1"))
    handler.handle_dispute(dispute("pi_1", event_id="dp_1"))

    outcome = handler.handle_dispute(dispute("pi_1", event_id="dp_2"))

    assert outcome == DisputeOutcome.ALREADY_DISPUTED


def test_redelivered_dispute_is_duplicate(handler, store, make_payment):
    record = store.create(make_payment(event_id="pi_1"))
    handler.handle_dispute(dispute("pi_1"))

    assert handler.handle_dispute(dispute("pi_1")) == DisputeOutcome.DUPLICATE
    assert len(store.disputes_for(record.id)) == 1


def test_dispute_on_failed_record_leaves_status(handler, store, make_payment):
    store.max_retries = 1
    record = store.create(make_payment(event_id="pi_1"))
    store.claim_for_release(record.id)
    store.increment_retry(record.id, "boom")

    assert handler.handle_dispute(dispute("pi_1")) == DisputeOutcome.UNCHANGED

    assert store.get(record.id).status == SettlementStatus.FAILED
    assert [d.status_at_receipt for d in store.disputes_for(record.id)] == ["failed"]


def test_dispute_for_unknown_payment_is_orphaned(handler, store, make_payment):
    assert handler.handle_dispute(dispute("pi_later")) == DisputeOutcome.ORPHANED

    record = store.create(make_payment(event_id="pi_later"))
    assert record.status == SettlementStatus.DISPUTED


def test_refund_treated_as_dispute(handler, store, make_payment):
    record = store.create(make_payment(event_id="pi_1", risk_score=35))

    outcome = handler.handle_refund(ChargeRefunded(event_id="ch_1", payment_event_id="pi_1"))

    assert outcome == DisputeOutcome.DISPUTED
    disputes = store.disputes_for(record.id)
    assert disputes[0].kind == DisputeKind.REFUND
    assert disputes[0].reason == "refund"
