"""Checkout sessions and payment status for appointments."""

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.engine import RowMapping
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    AppException,
    BadRequestException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    PaymentGatewayError,
)
from app.core.payments import PRODUCTS, StripeGateway
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentStatus, PaymentStatus
from app.schemas.payments import (
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    PaymentStatusResponse,
)
from app.services.audit_service import AuditActions, AuditService, RequestContext

logger = structlog.get_logger(__name__)


class PaymentService:
    """Service for starting checkout and reading payment state."""

    def __init__(self, db: AsyncSession, gateway: StripeGateway):
        """Initialize service with database session and Stripe gateway."""
        self.db = db
        self.gateway = gateway
        self.audit = AuditService(db)

    async def _load(self, appointment_id: int) -> RowMapping:
        result = await self.db.execute(
            select(appointments).where(
                and_(appointments.c.id == appointment_id, appointments.c.deleted_at.is_(None))
            )
        )
        row = result.mappings().first()
        if not row:
            raise NotFoundException("Appointment not found")
        return row

    async def create_checkout_session(
        self,
        user: dict,
        data: CheckoutSessionCreate,
        context: RequestContext,
        origin: str | None = None,
    ) -> CheckoutSessionResponse:
        """
        Start a hosted checkout for the patient's own appointment.

        The appointment id travels in the session and payment intent
        metadata so webhook events can be matched back to it.

        Args:
            user: Authenticated patient
            data: Appointment and product to charge
            context: Request origin for the audit trail
            origin: Browser origin used for the return URLs, if present

        Returns:
            Checkout URL and session id

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If the caller is not the appointment's patient
            ConflictException: If the appointment is cancelled or already paid
            BadRequestException: If the product is free
        """
        row = await self._load(data.appointment_id)
        if user.get("role") != "patient" or row["patient_id"] != user["id"]:
            raise ForbiddenException("You don't have access to this appointment")
        if row["status"] == AppointmentStatus.CANCELLED.value:
            raise ConflictException("Cannot pay for a cancelled appointment")
        if row["payment_status"] == PaymentStatus.PAID.value:
            raise ConflictException("Appointment is already paid")

        product = PRODUCTS[data.product_type.value]
        if product.price_in_cents <= 0:
            raise BadRequestException("Bulk billed consultations do not require payment")

        base_url = (origin or settings.app_base_url).rstrip("/")
        try:
            session = await self.gateway.create_checkout_session(
                product,
                success_url=f"{base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base_url}/payment/cancelled?appointment_id={row['id']}",
                metadata={
                    "appointment_id": str(row["id"]),
                    "user_id": str(user["id"]),
                    "product_type": data.product_type.value,
                },
                customer_email=user.get("email"),
                client_reference_id=str(user["id"]),
            )
        except PaymentGatewayError as e:
            logger.error("checkout_session_failed", appointment_id=row["id"], error=str(e))
            raise AppException("Unable to start checkout", status_code=502) from e

        await self.db.execute(
            update(appointments)
            .where(appointments.c.id == row["id"])
            .values(stripe_checkout_session_id=session.id)
        )
        await self.audit.log(
            AuditActions.PAYMENT_INITIATED,
            "appointment",
            row["id"],
            user_id=user["id"],
            metadata={
                "session_id": session.id,
                "product_type": data.product_type.value,
                "amount": product.price_in_cents,
            },
            context=context,
        )
        await self.db.commit()

        logger.info("checkout_started", appointment_id=row["id"], session_id=session.id)
        return CheckoutSessionResponse(checkout_url=session.url, session_id=session.id)

    async def get_payment_status(self, appointment_id: int, user: dict) -> PaymentStatusResponse:
        """Payment state visible to the appointment's patient, clinician or an admin."""
        row = await self._load(appointment_id)
        role = user.get("role")
        allowed = (
            role == "admin"
            or (role == "patient" and row["patient_id"] == user["id"])
            or (role == "clinician" and row["clinician_id"] == user["id"])
        )
        if not allowed:
            raise ForbiddenException("You don't have access to this appointment")

        return PaymentStatusResponse(
            appointment_id=row["id"],
            payment_status=PaymentStatus(row["payment_status"]),
            amount_paid=row["amount_paid"],
            stripe_payment_intent_id=row["stripe_payment_intent_id"],
        )
