"""Payment schemas."""

from enum import Enum

from pydantic import BaseModel, Field

from app.schemas.appointments import PaymentStatus


class ProductType(str, Enum):
    """Consultation products sold through checkout."""

    INITIAL_CONSULTATION = "INITIAL_CONSULTATION"
    FOLLOW_UP_CONSULTATION = "FOLLOW_UP_CONSULTATION"
    BULK_BILLED_CONSULTATION = "BULK_BILLED_CONSULTATION"


class CheckoutSessionCreate(BaseModel):
    """Request a hosted checkout page for an appointment."""

    appointment_id: int = Field(..., gt=0)
    product_type: ProductType


class CheckoutSessionResponse(BaseModel):
    """Hosted checkout page."""

    checkout_url: str
    session_id: str


class PaymentStatusResponse(BaseModel):
    """Stored payment sub-state of an appointment."""

    appointment_id: int
    payment_status: PaymentStatus
    amount_paid: int | None = None
    stripe_payment_intent_id: str | None = None
