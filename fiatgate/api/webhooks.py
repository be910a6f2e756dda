"""
Payment processor webhook.

Events handled:
- payment_intent.succeeded: create the pending settlement (risk-tiered hold)
- charge.dispute.created: chargeback, hold back or flag the settlement
- charge.refunded: full refunds only, treated like a dispute

Every delivery is deduplicated by its event id and recorded in webhook_event.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional, Tuple

import pydantic
from fastapi import APIRouter, Depends, Request
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

from fiatgate.api.deps import get_container
from fiatgate.container import Container
from fiatgate.core.context import set_event_id
from fiatgate.core.errors import ConflictError, UnauthorizedError, ValidationError
from fiatgate.core.logging_config import get_logger
from fiatgate.core.typing import col
from fiatgate.models.webhook_event import WebhookEvent
from fiatgate.schemas import ChargeRefunded, DisputeCreated, PaymentSucceeded

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "Processor-Signature"

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
DISPUTE_CREATED = "charge.dispute.created"
CHARGE_REFUNDED = "charge.refunded"


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, header: str, secret: str, tolerance_seconds: int, now: float) -> bool:
    """
    Verify a `t=<unix ts>,v1=<hex hmac>` signature header.

    Rejects timestamps further than tolerance_seconds from now, in either
    direction, so captured deliveries cannot be replayed later.
    """
    if not header or not secret:
        return False

    timestamp: Optional[int] = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                return False
        elif key == "v1" and value:
            signatures.append(value)

    if timestamp is None or not signatures:
        return False
    if abs(now - timestamp) > tolerance_seconds:
        return False

    expected = compute_signature(payload, secret, timestamp)
    return any(hmac.compare_digest(expected, candidate) for candidate in signatures)


def is_event_processed(event_id: str, engine: Engine) -> bool:
    """Check if a webhook event has already been processed."""
    with Session(engine) as session:
        existing = session.exec(select(WebhookEvent).where(col(WebhookEvent.event_id) == event_id)).first()
        return existing is not None


def record_event(
    event_id: str,
    event_type: str,
    engine: Engine,
    settlement_id: Optional[int] = None,
    status: str = "processed",
    error_message: Optional[str] = None,
) -> None:
    """Record a processed webhook event. A concurrent duplicate delivery may have recorded it first."""
    with Session(engine) as session:
        session.add(
            WebhookEvent(
                event_id=event_id,
                event_type=event_type,
                settlement_id=settlement_id,
                status=status,
                error_message=error_message[:1000] if error_message else None,
            )
        )
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info("Webhook event recorded concurrently", event_id=event_id)


def _risk_score(obj: Dict[str, Any], default: int) -> Any:
    # Radar risk score lives on the expanded charge's outcome
    charge = obj.get("latest_charge")
    if isinstance(charge, dict):
        outcome = charge.get("outcome") or {}
        if outcome.get("risk_score") is not None:
            return outcome["risk_score"]
    return default


def parse_payment(obj: Dict[str, Any], default_risk_score: int) -> Optional[PaymentSucceeded]:
    """Map a payment intent to PaymentSucceeded. None when it carries no release metadata."""
    metadata = obj.get("metadata") or {}
    if not metadata.get("projectId") or not metadata.get("chainId") or not metadata.get("beneficiaryAddress"):
        logger.warning("Payment intent missing release metadata", payment_intent=obj.get("id"))
        return None

    amount_cents = obj.get("amount")
    if not isinstance(amount_cents, int) or isinstance(amount_cents, bool):
        raise ValidationError("Payment amount must be an integer number of cents", metadata={"amount": amount_cents})

    try:
        return PaymentSucceeded(
            event_id=obj.get("id") or "",
            amount_usd=amount_cents / 100,
            risk_score=_risk_score(obj, default_risk_score),
            beneficiary_address=metadata["beneficiaryAddress"],
            project_id=metadata["projectId"],
            chain_id=metadata["chainId"],
            memo=metadata.get("memo"),
        )
    except pydantic.ValidationError as e:
        raise ValidationError(
            "Malformed payment event",
            metadata={"errors": [err["msg"] for err in e.errors()]},
        )


def parse_dispute(obj: Dict[str, Any]) -> Optional[DisputeCreated]:
    payment_intent = obj.get("payment_intent")
    if not isinstance(payment_intent, str) or not obj.get("id"):
        logger.warning("Dispute missing payment_intent", dispute_id=obj.get("id"))
        return None
    return DisputeCreated(event_id=obj["id"], payment_event_id=payment_intent, reason=obj.get("reason"))


def parse_refund(obj: Dict[str, Any]) -> Optional[ChargeRefunded]:
    payment_intent = obj.get("payment_intent")
    if not isinstance(payment_intent, str) or not obj.get("id"):
        logger.warning("Refunded charge missing payment_intent", charge_id=obj.get("id"))
        return None
    if (obj.get("amount_refunded") or 0) < (obj.get("amount") or 0):
        logger.info("Partial refund, settlement unchanged", charge_id=obj["id"], payment_intent=payment_intent)
        return None
    return ChargeRefunded(event_id=obj["id"], payment_event_id=payment_intent)


def _dispatch(container: Container, event_type: str, obj: Dict[str, Any]) -> Tuple[str, Optional[int]]:
    """Returns (outcome, settlement_id)."""
    store = container.store

    if event_type == PAYMENT_SUCCEEDED:
        payment = parse_payment(obj, container.settings.DEFAULT_RISK_SCORE)
        if payment is None:
            return "ignored", None
        try:
            record = store.create(payment)
        except ConflictError:
            existing = store.get_by_event_id(payment.event_id)
            logger.info("Settlement already exists for payment", payment_event_id=payment.event_id)
            return "duplicate", existing.id if existing else None
        return "created", record.id

    if event_type in (DISPUTE_CREATED, CHARGE_REFUNDED):
        if event_type == DISPUTE_CREATED:
            dispute = parse_dispute(obj)
            if dispute is None:
                return "ignored", None
            outcome = container.disputes.handle_dispute(dispute)
            payment_event_id = dispute.payment_event_id
        else:
            refund = parse_refund(obj)
            if refund is None:
                return "ignored", None
            outcome = container.disputes.handle_refund(refund)
            payment_event_id = refund.payment_event_id
        record = store.get_by_event_id(payment_event_id)
        return outcome.value, record.id if record else None

    logger.debug("Unhandled webhook event type", event_type=event_type)
    return "ignored", None


def handle_event(container: Container, envelope: Dict[str, Any]) -> Dict[str, Any]:
    event_id = envelope.get("id")
    event_type = envelope.get("type")
    data = envelope.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(event_id, str) or not event_id or not isinstance(event_type, str) or not isinstance(obj, dict):
        raise ValidationError("Webhook payload must carry id, type and data.object")

    set_event_id(event_id)
    logger.info("Processor webhook received", event_type=event_type, event_id=event_id)

    if is_event_processed(event_id, container.engine):
        logger.info("Duplicate webhook event, skipping", event_id=event_id)
        return {"received": True, "outcome": "already_processed", "settlement_id": None}

    try:
        outcome, settlement_id = _dispatch(container, event_type, obj)
    except ValidationError as e:
        record_event(event_id, event_type, container.engine, status="failed", error_message=e.message)
        raise

    record_event(
        event_id,
        event_type,
        container.engine,
        settlement_id=settlement_id,
        status="ignored" if outcome == "ignored" else "processed",
    )
    return {"received": True, "outcome": outcome, "settlement_id": settlement_id}


@router.post("/processor")
async def processor_webhook(request: Request, container: Container = Depends(get_container)):
    # Raw body for signature verification
    body = await request.body()

    settings = container.settings
    if settings.PROCESSOR_WEBHOOK_SECRET:
        header = request.headers.get(SIGNATURE_HEADER, "")
        now = container.clock().timestamp()
        if not verify_signature(body, header, settings.PROCESSOR_WEBHOOK_SECRET, settings.WEBHOOK_TOLERANCE_SECONDS, now):
            logger.warning("Processor webhook signature verification failed")
            raise UnauthorizedError("Invalid webhook signature")

    try:
        envelope = json.loads(body)
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(envelope, dict):
        raise ValidationError("Webhook body must be a JSON object")
    if isinstance(envelope.get("id"), str):
        request.state.event_id = envelope["id"]

    return await run_in_threadpool(handle_event, container, envelope)
