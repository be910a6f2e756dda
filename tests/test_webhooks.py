"""
Tests for the payment processor webhook.

Tests cover:
- Signature verification (valid, stale, tampered, missing)
- payment_intent.succeeded -> pending settlement with risk-tiered hold
- charge.dispute.created / charge.refunded -> dispute handling
- Event deduplication and the webhook_event log
- Malformed payloads
"""

import json
from typing import Any, Dict, Optional

import pytest
from sqlmodel import Session, select

from fiatgate.api.webhooks import SIGNATURE_HEADER, compute_signature, verify_signature
from fiatgate.models.pending_settlement import SettlementStatus
from fiatgate.models.webhook_event import WebhookEvent

WEBHOOK_URL = "/api/v1/webhooks/processor"


def payment_event(
    event_id: str = "evt_1",
    payment_id: str = "pi_1",
    amount: int = 2500,
    risk_score: Optional[int] = 15,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": payment_id,
        "amount": amount,
        "metadata": metadata
        if metadata is not None
        else {"projectId": "7", "chainId": "10", "beneficiaryAddress": "0x" + "ab" * 20},
    }
    if risk_score is not None:
        obj["latest_charge"] = {"id": "ch_1", "outcome": {"risk_score": risk_score}}
    return {"id": event_id, "type": "payment_intent.succeeded", "data": {"object": obj}}


def dispute_event(event_id: str = "evt_d1", dispute_id: str = "dp_1", payment_id: str = "pi_1") -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": "charge.dispute.created",
        "data": {"object": {"id": dispute_id, "payment_intent": payment_id, "reason": "fraudulent"}},
    }


def refund_event(event_id: str = "evt_r1", refunded: int = 2500, amount: int = 2500) -> Dict[str, Any]:
    return {
        "id": event_id,
        "type": "charge.refunded",
        "data": {
            "object": {"id": "ch_1", "payment_intent": "pi_1", "amount": amount, "amount_refunded": refunded}
        },
    }


@pytest.fixture
def post_event(client, test_settings, clock):
    """POST an envelope signed with the test secret at the fake clock's time."""

    def _post(envelope: Dict[str, Any], timestamp: Optional[int] = None, secret: Optional[str] = None):
        body = json.dumps(envelope).encode("utf-8")
        ts = timestamp if timestamp is not None else int(clock.now.timestamp())
        signature = compute_signature(body, secret or test_settings.PROCESSOR_WEBHOOK_SECRET, ts)
        return client.post(
            WEBHOOK_URL,
            content=body,
            headers={SIGNATURE_HEADER: f"t={ts},v1={signature}", "Content-Type": "application/json"},
        )

    return _post


def webhook_rows(engine):
    with Session(engine) as session:
        return session.exec(select(WebhookEvent)).all()


class TestVerifySignature:
    def test_valid_signature(self):
        sig = compute_signature(b"{}", "secret", 1000)
        assert verify_signature(b"{}", f"t=1000,v1={sig}", "secret", 300, now=1100) is True

    def test_any_v1_signature_may_match(self):
        sig = compute_signature(b"{}", "secret", 1000)
        assert verify_signature(b"{}", f"t=1000,v1=deadbeef,v1={sig}", "secret", 300, now=1000) is True

    def test_tampered_payload(self):
        sig = compute_signature(b"{}", "secret", 1000)
        assert verify_signature(b'{"x":1}', f"t=1000,v1={sig}", "secret", 300, now=1000) is False

    def test_stale_timestamp(self):
        sig = compute_signature(b"{}", "secret", 1000)
        assert verify_signature(b"{}", f"t=1000,v1={sig}", "secret", 300, now=1301) is False

    @pytest.mark.parametrize("header", ["", "t=abc,v1=00", "v1=00", "t=1000"])
    def test_malformed_header(self, header):
        assert verify_signature(b"{}", header, "secret", 300, now=1000) is False

    def test_empty_secret_never_verifies(self):
        sig = compute_signature(b"{}", "", 1000)
        assert verify_signature(b"{}", f"t=1000,v1={sig}", "", 300, now=1000) is False


class TestSignatureEnforcement:
    def test_missing_signature_rejected(self, client, store):
        response = client.post(WEBHOOK_URL, json=payment_event())

        assert response.status_code == 401
        assert response.json()["code"] == "unauthorized"
        assert store.get_by_event_id("pi_1") is None

    def test_wrong_secret_rejected(self, post_event):
        assert post_event(payment_event(), secret="whsec_other").status_code == 401

    def test_replayed_delivery_rejected(self, post_event, clock):
        stale = int(clock.now.timestamp()) - 301
        assert post_event(payment_event(), timestamp=stale).status_code == 401


class TestPaymentSucceeded:
    def test_creates_pending_settlement(self, post_event, store, clock):
        response = post_event(payment_event(amount=4250, risk_score=55))

        assert response.status_code == 200
        body = response.json()
        assert body["received"] is True
        assert body["outcome"] == "created"

        record = store.get(body["settlement_id"])
        assert record.event_id == "pi_1"
        assert record.amount_usd == 42.5
        assert record.settlement_delay_days == 30
        assert record.status == SettlementStatus.PENDING
        assert record.project_id == 7
        assert record.chain_id == 10

    def test_missing_risk_score_uses_default(self, post_event, store):
        response = post_event(payment_event(risk_score=None))

        record = store.get(response.json()["settlement_id"])
        assert record.risk_score == 50
        assert record.settlement_delay_days == 30

    def test_missing_release_metadata_ignored(self, post_event, store, test_engine):
        response = post_event(payment_event(metadata={"projectId": "7"}))

        assert response.json()["outcome"] == "ignored"
        assert store.get_by_event_id("pi_1") is None
        assert [row.status for row in webhook_rows(test_engine)] == ["ignored"]

    def test_redelivered_event_is_skipped(self, post_event, store):
        first = post_event(payment_event())
        second = post_event(payment_event())

        assert second.status_code == 200
        assert second.json()["outcome"] == "already_processed"
        assert store.status_counts()["pending_settlement"] == 1
        assert first.json()["settlement_id"] is not None

    def test_same_payment_under_new_event_id_is_duplicate(self, post_event, store):
        first = post_event(payment_event(event_id="evt_1"))
        second = post_event(payment_event(event_id="evt_2"))

        assert second.json()["outcome"] == "duplicate"
        assert second.json()["settlement_id"] == first.json()["settlement_id"]
        assert store.status_counts()["pending_settlement"] == 1

    def test_out_of_range_risk_score_rejected_and_logged(self, post_event, store, test_engine):
        response = post_event(payment_event(risk_score=150))

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"
        assert store.get_by_event_id("pi_1") is None

        rows = webhook_rows(test_engine)
        assert len(rows) == 1
        assert rows[0].status == "failed"
        assert rows[0].error_message

    def test_fractional_amount_rejected(self, post_event):
        assert post_event(payment_event(amount=12.5)).status_code == 422


class TestDisputes:
    def test_dispute_holds_pending_settlement(self, post_event, store):
        created = post_event(payment_event(risk_score=75)).json()

        response = post_event(dispute_event())

        assert response.json()["outcome"] == "disputed"
        assert response.json()["settlement_id"] == created["settlement_id"]
        assert store.get(created["settlement_id"]).status == SettlementStatus.DISPUTED

    def test_dispute_before_payment_is_applied_later(self, post_event, store):
        assert post_event(dispute_event()).json()["outcome"] == "orphaned"

        created = post_event(payment_event()).json()

        assert store.get(created["settlement_id"]).status == SettlementStatus.DISPUTED

    def test_full_refund_disputes(self, post_event, store):
        created = post_event(payment_event(risk_score=35)).json()

        response = post_event(refund_event())

        assert response.json()["outcome"] == "disputed"
        assert store.get(created["settlement_id"]).status == SettlementStatus.DISPUTED

    def test_partial_refund_ignored(self, post_event, store):
        created = post_event(payment_event(risk_score=35)).json()

        response = post_event(refund_event(refunded=1000))

        assert response.json()["outcome"] == "ignored"
        assert store.get(created["settlement_id"]).status == SettlementStatus.PENDING


class TestMalformedPayloads:
    def test_unhandled_event_type_ignored(self, post_event):
        response = post_event({"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}})

        assert response.status_code == 200
        assert response.json()["outcome"] == "ignored"

    def test_envelope_without_data_rejected(self, post_event):
        response = post_event({"id": "evt_x", "type": "payment_intent.succeeded"})
        assert response.status_code == 422

    def test_invalid_json_rejected(self, client, test_settings, clock):
        body = b"not json"
        ts = int(clock.now.timestamp())
        signature = compute_signature(body, test_settings.PROCESSOR_WEBHOOK_SECRET, ts)

        response = client.post(WEBHOOK_URL, content=body, headers={SIGNATURE_HEADER: f"t={ts},v1={signature}"})

        assert response.status_code == 422
        assert response.json()["message"] == "Webhook body is not valid JSON"
