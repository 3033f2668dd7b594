"""Tests for checkout and payment status endpoints."""

from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PaymentGatewayError
from app.models import appointments, audit_logs


async def create_appointment(
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
    **values,
) -> int:
    start = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)
    result = await db_session.execute(
        insert(appointments)
        .values(
            patient_id=patient["id"],
            clinician_id=clinician["id"],
            scheduled_at=start,
            duration=30,
            ends_at=start + timedelta(minutes=30),
            status=values.pop("status", "pending_payment"),
            **values,
        )
        .returning(appointments.c.id)
    )
    await db_session.commit()
    return result.scalar_one()


@pytest.mark.asyncio
async def test_create_checkout_session(
    client: AsyncClient,
    db_session: AsyncSession,
    integrations,
    patient: dict,
    clinician: dict,
    patient_headers: dict,
) -> None:
    """Test starting a checkout session."""
    appointment_id = await create_appointment(db_session, patient, clinician)

    response = await client.post(
        "/api/v1/payments/checkout",
        json={"appointment_id": appointment_id, "product_type": "INITIAL_CONSULTATION"},
        headers={**patient_headers, "Origin": "https://clinic.example"},
    )

    assert response.status_code == 201
    data = response.json()
    assert data["session_id"] == "cs_test_1"
    assert data["checkout_url"].endswith("cs_test_1")

    [checkout] = integrations.payments.checkouts
    assert checkout["product"].price_in_cents == 15000
    assert checkout["metadata"]["appointment_id"] == str(appointment_id)
    assert checkout["success_url"].startswith("https://clinic.example/payment/success")
    assert checkout["customer_email"] == patient["email"]

    row = (
        await db_session.execute(select(appointments).where(appointments.c.id == appointment_id))
    ).mappings().one()
    assert row["stripe_checkout_session_id"] == "cs_test_1"
    audit = (await db_session.execute(select(audit_logs))).mappings().one()
    assert audit["action"] == "payment.initiated"


@pytest.mark.asyncio
async def test_checkout_rules(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    other_patient: dict,
    clinician: dict,
    patient_headers: dict,
    auth_headers_for,
) -> None:
    """Test which appointments may be paid for."""
    pending = await create_appointment(db_session, patient, clinician)
    paid = await create_appointment(
        db_session, patient, clinician, status="scheduled", payment_status="paid"
    )
    cancelled = await create_appointment(db_session, patient, clinician, status="cancelled")

    async def checkout(appointment_id: int, headers: dict, product: str = "FOLLOW_UP_CONSULTATION"):
        return await client.post(
            "/api/v1/payments/checkout",
            json={"appointment_id": appointment_id, "product_type": product},
            headers=headers,
        )

    assert (await checkout(pending, auth_headers_for(other_patient))).status_code == 403
    assert (await checkout(paid, patient_headers)).status_code == 409
    assert (await checkout(cancelled, patient_headers)).status_code == 409
    assert (await checkout(pending, patient_headers, "BULK_BILLED_CONSULTATION")).status_code == 400
    assert (await checkout(9999, patient_headers)).status_code == 404


@pytest.mark.asyncio
async def test_checkout_gateway_failure(
    client: AsyncClient,
    db_session: AsyncSession,
    integrations,
    patient: dict,
    clinician: dict,
    patient_headers: dict,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test a Stripe failure while starting checkout."""
    appointment_id = await create_appointment(db_session, patient, clinician)

    async def unavailable(*args, **kwargs):
        raise PaymentGatewayError("stripe is down")

    monkeypatch.setattr(integrations.payments, "create_checkout_session", unavailable)
    response = await client.post(
        "/api/v1/payments/checkout",
        json={"appointment_id": appointment_id, "product_type": "INITIAL_CONSULTATION"},
        headers=patient_headers,
    )

    assert response.status_code == 502
    assert response.json()["message"] == "Unable to start checkout"


@pytest.mark.asyncio
async def test_payment_status(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    other_patient: dict,
    clinician: dict,
    patient_headers: dict,
    clinician_headers: dict,
    auth_headers_for,
) -> None:
    """Test reading an appointment's payment status."""
    appointment_id = await create_appointment(
        db_session,
        patient,
        clinician,
        status="scheduled",
        payment_status="paid",
        amount_paid=7500,
        stripe_payment_intent_id="pi_1",
    )
    url = f"/api/v1/payments/appointments/{appointment_id}"

    response = await client.get(url, headers=patient_headers)
    assert response.status_code == 200
    assert response.json() == {
        "appointment_id": appointment_id,
        "payment_status": "paid",
        "amount_paid": 7500,
        "stripe_payment_intent_id": "pi_1",
    }
    assert (await client.get(url, headers=clinician_headers)).status_code == 200
    assert (await client.get(url, headers=auth_headers_for(other_patient))).status_code == 403
