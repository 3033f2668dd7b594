"""Stripe webhook ingestion with an exactly-once processing ledger."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import and_, insert, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import WebhookSignatureError
from app.core.payments import StripeGateway
from app.models.appointments import appointments
from app.models.webhook_events import processed_webhook_events
from app.schemas.appointments import AppointmentStatus, PaymentStatus
from app.services.audit_service import AuditActions, AuditService

logger = structlog.get_logger(__name__)

STRIPE_PROVIDER = "stripe"
TEST_EVENT_PREFIX = "evt_test_"
MAX_ERROR_MESSAGE_LENGTH = 2000


class LedgerStatus:
    """Processing states of a ledger row."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WebhookOutcome:
    """HTTP status and JSON body returned to the provider."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)


def _now() -> datetime:
    return datetime.now(UTC)


class WebhookLedger:
    """
    Idempotency gate keyed on ``(provider, event_id)``.

    ``claim`` decides whether this delivery should run the handler. The
    unique constraint on the ledger table settles concurrent deliveries of
    the same event: only one insert wins, the loser acknowledges a duplicate.
    """

    def __init__(self, db: AsyncSession, provider: str = STRIPE_PROVIDER):
        """Initialize ledger with database session."""
        self.db = db
        self.provider = provider

    async def get_event(self, event_id: str) -> RowMapping | None:
        """Get the ledger row for an event, if any."""
        result = await self.db.execute(
            select(processed_webhook_events).where(
                and_(
                    processed_webhook_events.c.provider == self.provider,
                    processed_webhook_events.c.event_id == event_id,
                )
            )
        )
        return result.mappings().first()

    async def claim(self, event_id: str, event_type: str, payload: dict[str, Any]) -> bool:
        """
        Claim an event for processing and commit the claim.

        Returns:
            True if the caller owns processing, False if the event is a
            duplicate that must be acknowledged without side effects
        """
        existing = await self.get_event(event_id)

        if existing is not None:
            if existing["status"] != LedgerStatus.FAILED:
                await self.db.rollback()
                return False

            # Retry of a failed delivery; only one retry may take it over
            result = await self.db.execute(
                update(processed_webhook_events)
                .where(
                    and_(
                        processed_webhook_events.c.id == existing["id"],
                        processed_webhook_events.c.status == LedgerStatus.FAILED,
                    )
                )
                .values(
                    status=LedgerStatus.PROCESSING,
                    attempts=processed_webhook_events.c.attempts + 1,
                    error_message=None,
                    payload=payload,
                )
            )
            if result.rowcount == 0:
                await self.db.rollback()
                return False
            await self.db.commit()
            logger.info("webhook_retry_claimed", event_id=event_id, event_type=event_type)
            return True

        try:
            await self.db.execute(
                insert(processed_webhook_events).values(
                    provider=self.provider,
                    event_id=event_id,
                    event_type=event_type,
                    status=LedgerStatus.PROCESSING,
                    payload=payload,
                )
            )
            await self.db.commit()
        except IntegrityError:
            # A concurrent delivery inserted the same event first
            await self.db.rollback()
            logger.info("webhook_claim_lost_race", event_id=event_id)
            return False

        return True

    async def mark_completed(self, event_id: str) -> None:
        """Mark the event processed; committed with the handler's changes."""
        await self.db.execute(
            update(processed_webhook_events)
            .where(
                and_(
                    processed_webhook_events.c.provider == self.provider,
                    processed_webhook_events.c.event_id == event_id,
                )
            )
            .values(status=LedgerStatus.COMPLETED, processed_at=_now(), error_message=None)
        )

    async def mark_failed(self, event_id: str, error: str) -> None:
        """Record a handler failure so the next delivery retries it."""
        await self.db.execute(
            update(processed_webhook_events)
            .where(
                and_(
                    processed_webhook_events.c.provider == self.provider,
                    processed_webhook_events.c.event_id == event_id,
                )
            )
            .values(
                status=LedgerStatus.FAILED,
                error_message=error[:MAX_ERROR_MESSAGE_LENGTH],
                processed_at=_now(),
            )
        )
        await self.db.commit()


class PaymentWebhookService:
    """Verify, de-duplicate and apply Stripe payment events."""

    def __init__(self, db: AsyncSession, gateway: StripeGateway):
        """
        Initialize service.

        Args:
            db: Database session
            gateway: Stripe gateway holding the webhook signing secret
        """
        self.db = db
        self.gateway = gateway
        self.ledger = WebhookLedger(db)
        self.audit = AuditService(db)
        self._handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "payment_intent.payment_failed": self._handle_payment_failed,
            "charge.refunded": self._handle_charge_refunded,
        }

    async def process(self, payload: bytes, signature: str | None) -> WebhookOutcome:
        """
        Handle one webhook delivery.

        Args:
            payload: Raw request body
            signature: ``Stripe-Signature`` header

        Returns:
            Outcome to send back; a 500 asks the provider to redeliver
        """
        try:
            event = self.gateway.verify_event(payload, signature)
        except WebhookSignatureError as e:
            logger.warning("stripe_webhook_verification_failed", error=str(e))
            return WebhookOutcome(400, {"error": "Webhook signature verification failed"})

        event_id = event.get("id") or ""
        event_type = event.get("type") or ""
        log = logger.bind(event_id=event_id, event_type=event_type)

        # Dashboard test events are acknowledged without touching the ledger
        if event_id.startswith(TEST_EVENT_PREFIX):
            log.info("stripe_test_event_received")
            return WebhookOutcome(200, {"verified": True})

        if not event_id:
            log.warning("stripe_webhook_missing_event_id")
            return WebhookOutcome(400, {"error": "Event id missing"})

        if not await self.ledger.claim(event_id, event_type, event):
            log.info("stripe_webhook_duplicate")
            return WebhookOutcome(200, {"received": True, "duplicate": True})

        try:
            await self.dispatch(event)
            await self.ledger.mark_completed(event_id)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            log.error("stripe_webhook_processing_failed", error=str(e), exc_info=True)
            await self.ledger.mark_failed(event_id, f"{type(e).__name__}: {e}")
            return WebhookOutcome(500, {"error": "Webhook processing failed"})

        log.info("stripe_webhook_processed")
        return WebhookOutcome(200, {"received": True})

    async def dispatch(self, event: dict[str, Any]) -> None:
        """Route an event to its handler; unknown types are no-ops."""
        handler = self._handlers.get(event.get("type", ""))
        data_object = (event.get("data") or {}).get("object") or {}
        if handler is None:
            logger.info("stripe_webhook_unhandled_type", event_type=event.get("type"))
            return
        await handler(data_object)

    async def _find_appointment(self, **criteria: Any) -> RowMapping | None:
        conditions = [getattr(appointments.c, key) == value for key, value in criteria.items()]
        conditions.append(appointments.c.deleted_at.is_(None))
        result = await self.db.execute(select(appointments).where(and_(*conditions)))
        return result.mappings().first()

    @staticmethod
    def _metadata_appointment_id(obj: dict[str, Any]) -> int | None:
        raw = (obj.get("metadata") or {}).get("appointment_id")
        try:
            return int(raw) if raw is not None else None
        except (TypeError, ValueError):
            return None

    async def _handle_checkout_completed(self, session: dict[str, Any]) -> None:
        appointment_id = self._metadata_appointment_id(session)
        if appointment_id is None:
            logger.warning("checkout_session_without_appointment", session_id=session.get("id"))
            return

        row = await self._find_appointment(id=appointment_id)
        if row is None:
            logger.warning(
                "checkout_session_for_unknown_appointment", appointment_id=appointment_id
            )
            return

        values: dict[str, Any] = {
            "payment_status": PaymentStatus.PAID.value,
            "stripe_payment_intent_id": session.get("payment_intent"),
            "stripe_checkout_session_id": session.get("id"),
            "amount_paid": session.get("amount_total"),
            "updated_at": _now(),
        }
        # Only a booking held for payment is promoted
        if row["status"] == AppointmentStatus.PENDING_PAYMENT.value:
            values["status"] = AppointmentStatus.SCHEDULED.value

        await self.db.execute(
            update(appointments).where(appointments.c.id == appointment_id).values(**values)
        )
        await self.audit.log(
            AuditActions.PAYMENT_SUCCEEDED,
            "appointment",
            appointment_id,
            user_id=row["patient_id"],
            metadata={
                "session_id": session.get("id"),
                "payment_intent": session.get("payment_intent"),
                "amount_total": session.get("amount_total"),
                "currency": session.get("currency"),
            },
        )
        logger.info("appointment_payment_succeeded", appointment_id=appointment_id)

    async def _handle_payment_failed(self, intent: dict[str, Any]) -> None:
        row = None
        if intent.get("id"):
            row = await self._find_appointment(stripe_payment_intent_id=intent["id"])
        if row is None:
            appointment_id = self._metadata_appointment_id(intent)
            if appointment_id is not None:
                row = await self._find_appointment(id=appointment_id)
        if row is None:
            logger.warning(
                "payment_failed_for_unknown_appointment", payment_intent=intent.get("id")
            )
            return

        await self.db.execute(
            update(appointments)
            .where(appointments.c.id == row["id"])
            .values(
                payment_status=PaymentStatus.FAILED.value,
                stripe_payment_intent_id=intent.get("id") or row["stripe_payment_intent_id"],
                updated_at=_now(),
            )
        )
        error = intent.get("last_payment_error") or {}
        await self.audit.log(
            AuditActions.PAYMENT_FAILED,
            "appointment",
            row["id"],
            user_id=row["patient_id"],
            metadata={"payment_intent": intent.get("id"), "reason": error.get("message")},
        )
        logger.info("appointment_payment_failed", appointment_id=row["id"])

    async def _handle_charge_refunded(self, charge: dict[str, Any]) -> None:
        payment_intent = charge.get("payment_intent")
        row = (
            await self._find_appointment(stripe_payment_intent_id=payment_intent)
            if payment_intent
            else None
        )
        if row is None:
            logger.warning("refund_for_unknown_appointment", payment_intent=payment_intent)
            return

        await self.db.execute(
            update(appointments)
            .where(appointments.c.id == row["id"])
            .values(payment_status=PaymentStatus.REFUNDED.value, updated_at=_now())
        )
        await self.audit.log(
            AuditActions.PAYMENT_REFUNDED,
            "appointment",
            row["id"],
            user_id=row["patient_id"],
            metadata={
                "charge_id": charge.get("id"),
                "payment_intent": payment_intent,
                "amount_refunded": charge.get("amount_refunded"),
            },
        )
        logger.info("appointment_payment_refunded", appointment_id=row["id"])
