"""Stripe gateway: checkout sessions and webhook signature verification."""

import asyncio
import json
from dataclasses import dataclass
from typing import Any

import stripe
import structlog

from app.core.exceptions import PaymentGatewayError, WebhookSignatureError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Product:
    """A bookable consultation product."""

    name: str
    description: str
    price_in_cents: int


PRODUCTS: dict[str, Product] = {
    "INITIAL_CONSULTATION": Product(
        name="Initial Medicinal Cannabis Consultation",
        description=(
            "Comprehensive 30-45 minute assessment with our Authorised Prescriber. "
            "Includes treatment plan and prescription if eligible."
        ),
        price_in_cents=15000,
    ),
    "FOLLOW_UP_CONSULTATION": Product(
        name="Follow-up Consultation",
        description=(
            "15-20 minute follow-up appointment to review treatment progress "
            "and adjust dosage if needed."
        ),
        price_in_cents=7500,
    ),
    "BULK_BILLED_CONSULTATION": Product(
        name="Bulk Billed Consultation (Eligible Patients)",
        description=(
            "Medicare bulk billed consultation for eligible patients under the "
            "New Bulk Billing Incentives Program."
        ),
        price_in_cents=0,
    ),
}


@dataclass(frozen=True)
class CheckoutSession:
    """Hosted checkout page created for an appointment."""

    id: str
    url: str


class StripeGateway:
    """Thin wrapper over the Stripe library with explicit credentials."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        currency: str = "aud",
        tolerance: int = 300,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.tolerance = tolerance

    def verify_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Verify a webhook against the raw request bytes and decode it.

        Args:
            payload: Raw request body exactly as received
            signature: ``Stripe-Signature`` header value

        Returns:
            The decoded event as plain dicts

        Raises:
            WebhookSignatureError: If the secret is missing or verification fails
        """
        if not self.webhook_secret:
            logger.error("stripe_webhook_secret_missing")
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature:
            raise WebhookSignatureError("Missing signature")

        try:
            stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("Invalid signature") from e
        except ValueError as e:
            raise WebhookSignatureError("Invalid payload") from e

        return json.loads(payload)

    async def create_checkout_session(
        self,
        product: Product,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        customer_email: str | None = None,
        client_reference_id: str | None = None,
    ) -> CheckoutSession:
        """Create a one-off payment session for a single product."""
        if not self.secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY is not configured")

        params: dict[str, Any] = {
            "api_key": self.secret_key,
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": product.name,
                            "description": product.description,
                        },
                        "unit_amount": product.price_in_cents,
                    },
                    "quantity": 1,
                }
            ],
            "mode": "payment",
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            # Copied onto the PaymentIntent so payment_intent.* events can be correlated
            "payment_intent_data": {"metadata": metadata},
            "allow_promotion_codes": True,
        }
        if customer_email:
            params["customer_email"] = customer_email
        if client_reference_id:
            params["client_reference_id"] = client_reference_id

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except stripe.StripeError as e:
            raise PaymentGatewayError(str(e)) from e

        logger.info("checkout_session_created", session_id=session.id)
        return CheckoutSession(id=session.id, url=session.url)
