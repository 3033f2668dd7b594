"""Payment endpoints."""

from fastapi import APIRouter, Request, status

from app.dependencies import CurrentUser, DatabaseSession, IntegrationsDep, RequestContextDep
from app.schemas.payments import (
    CheckoutSessionCreate,
    CheckoutSessionResponse,
    PaymentStatusResponse,
)
from app.services.payment_service import PaymentService

router = APIRouter()


@router.post(
    "/checkout",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
    summary="Create checkout session",
)
async def create_checkout_session(
    data: CheckoutSessionCreate,
    request: Request,
    current_user: CurrentUser,
    db: DatabaseSession,
    integrations: IntegrationsDep,
    context: RequestContextDep,
) -> CheckoutSessionResponse:
    """
    Start a hosted Stripe checkout for one of the patient's appointments.

    Args:
        data: Appointment and product
        request: Incoming request, whose origin becomes the return URL base
        current_user: Authenticated patient
        db: Database session
        integrations: Holds the Stripe gateway
        context: Request origin for the audit trail

    Returns:
        Checkout URL and session id
    """
    service = PaymentService(db, integrations.payments)
    return await service.create_checkout_session(
        current_user, data, context, origin=request.headers.get("origin")
    )


@router.get(
    "/appointments/{appointment_id}",
    response_model=PaymentStatusResponse,
    status_code=status.HTTP_200_OK,
    tags=["Payments"],
    summary="Get payment status",
)
async def get_payment_status(
    appointment_id: int,
    current_user: CurrentUser,
    db: DatabaseSession,
    integrations: IntegrationsDep,
) -> PaymentStatusResponse:
    """Payment state of an appointment."""
    service = PaymentService(db, integrations.payments)
    return await service.get_payment_status(appointment_id, current_user)
