"""Inbound webhook endpoints."""

from typing import Annotated

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from app.dependencies import DatabaseSession, IntegrationsDep
from app.services.webhook_service import PaymentWebhookService

router = APIRouter()


@router.post(
    "/stripe",
    tags=["Webhooks"],
    summary="Stripe webhook receiver",
    include_in_schema=False,
)
async def stripe_webhook(
    request: Request,
    db: DatabaseSession,
    integrations: IntegrationsDep,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> JSONResponse:
    """
    Receive a Stripe event.

    The signature is checked against the raw body, so the body is read as
    bytes rather than parsed by FastAPI. Duplicate deliveries are
    acknowledged without reprocessing; a 500 asks Stripe to redeliver.
    """
    payload = await request.body()
    service = PaymentWebhookService(db, integrations.payments)
    outcome = await service.process(payload, stripe_signature)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
