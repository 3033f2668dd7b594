"""Tests for the Stripe webhook endpoint and processing ledger."""

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import appointments, audit_logs, processed_webhook_events
from app.services.webhook_service import PaymentWebhookService, WebhookLedger

WEBHOOK_URL = "/api/v1/webhooks/stripe"
WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_id: str, event_type: str, data_object: dict) -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": data_object},
        }
    ).encode()


async def post_event(client: AsyncClient, payload: bytes, signature: str | None = None):
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else sign(payload)
    return await client.post(WEBHOOK_URL, content=payload, headers=headers)


async def create_appointment(
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
    status: str = "pending_payment",
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
            status=status,
            **values,
        )
        .returning(appointments.c.id)
    )
    await db_session.commit()
    return result.scalar_one()


async def get_appointment(db_session: AsyncSession, appointment_id: int) -> dict:
    result = await db_session.execute(
        select(appointments).where(appointments.c.id == appointment_id)
    )
    return dict(result.mappings().one())


async def ledger_rows(db_session: AsyncSession) -> list[dict]:
    result = await db_session.execute(
        select(processed_webhook_events).order_by(processed_webhook_events.c.id)
    )
    return [dict(row) for row in result.mappings().all()]


def checkout_completed(event_id: str, appointment_id: int | None) -> bytes:
    metadata = {"appointment_id": str(appointment_id)} if appointment_id else {}
    return make_event(
        event_id,
        "checkout.session.completed",
        {
            "id": "cs_test_123",
            "object": "checkout.session",
            "payment_intent": "pi_123",
            "amount_total": 15000,
            "currency": "aud",
            "metadata": metadata,
        },
    )


@pytest.mark.asyncio
async def test_invalid_signature_rejected(client: AsyncClient, db_session: AsyncSession) -> None:
    """Test that a bad or missing signature is rejected without a ledger row."""
    payload = checkout_completed("evt_1", 1)

    response = await post_event(client, payload, sign(payload, secret="whsec_wrong"))
    assert response.status_code == 400

    response = await client.post(WEBHOOK_URL, content=payload)
    assert response.status_code == 400

    assert await ledger_rows(db_session) == []


@pytest.mark.asyncio
async def test_stale_signature_rejected(client: AsyncClient, db_session: AsyncSession) -> None:
    """Test that an old signature timestamp is rejected."""
    payload = checkout_completed("evt_1", 1)
    response = await post_event(client, payload, sign(payload, timestamp=int(time.time()) - 3600))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_test_event_acknowledged(client: AsyncClient, db_session: AsyncSession) -> None:
    """Test that dashboard test events are acknowledged without a ledger row."""
    payload = make_event("evt_test_webhook", "checkout.session.completed", {})

    response = await post_event(client, payload)

    assert response.status_code == 200
    assert response.json() == {"verified": True}
    assert await ledger_rows(db_session) == []


@pytest.mark.asyncio
async def test_checkout_completed_marks_paid(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
) -> None:
    """Test that a completed checkout marks the appointment paid."""
    appointment_id = await create_appointment(db_session, patient, clinician)

    response = await post_event(client, checkout_completed("evt_1", appointment_id))

    assert response.status_code == 200
    assert response.json() == {"received": True}

    row = await get_appointment(db_session, appointment_id)
    assert row["payment_status"] == "paid"
    assert row["status"] == "scheduled"
    assert row["stripe_payment_intent_id"] == "pi_123"
    assert row["stripe_checkout_session_id"] == "cs_test_123"
    assert row["amount_paid"] == 15000

    [ledger] = await ledger_rows(db_session)
    assert ledger["event_id"] == "evt_1"
    assert ledger["event_type"] == "checkout.session.completed"
    assert ledger["status"] == "completed"
    assert ledger["processed_at"] is not None

    audit = (await db_session.execute(select(audit_logs))).mappings().one()
    assert audit["action"] == "payment.succeeded"
    assert audit["ip_address"] == "system"


@pytest.mark.asyncio
async def test_checkout_completed_keeps_non_pending_status(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
) -> None:
    """Test that payment does not revive a cancelled appointment."""
    appointment_id = await create_appointment(db_session, patient, clinician, status="cancelled")

    response = await post_event(client, checkout_completed("evt_1", appointment_id))

    assert response.status_code == 200
    row = await get_appointment(db_session, appointment_id)
    assert row["status"] == "cancelled"
    assert row["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_duplicate_delivery_applied_once(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
) -> None:
    """Test that a redelivered event is applied once."""
    appointment_id = await create_appointment(db_session, patient, clinician)
    payload = checkout_completed("evt_dup", appointment_id)

    first = await post_event(client, payload)
    second = await post_event(client, payload)

    assert first.json() == {"received": True}
    assert second.status_code == 200
    assert second.json() == {"received": True, "duplicate": True}

    rows = await ledger_rows(db_session)
    assert len(rows) == 1
    assert rows[0]["status"] == "completed"
    audit_count = await db_session.scalar(select(func.count()).select_from(audit_logs))
    assert audit_count == 1


@pytest.mark.asyncio
async def test_orphan_checkout_acknowledged(
    client: AsyncClient,
    db_session: AsyncSession,
) -> None:
    """Test checkout events for unknown appointments."""
    response = await post_event(client, checkout_completed("evt_orphan", 424242))
    assert response.status_code == 200

    response = await post_event(client, checkout_completed("evt_no_meta", None))
    assert response.status_code == 200

    assert [r["status"] for r in await ledger_rows(db_session)] == ["completed", "completed"]


@pytest.mark.asyncio
async def test_checkout_for_deleted_appointment_ignored(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
) -> None:
    """Test that a checkout event for a deleted appointment changes nothing."""
    appointment_id = await create_appointment(
        db_session, patient, clinician, deleted_at=datetime.now(UTC)
    )

    response = await post_event(client, checkout_completed("evt_deleted", appointment_id))

    assert response.status_code == 200
    assert response.json() == {"received": True}
    row = await get_appointment(db_session, appointment_id)
    assert row["status"] == "pending_payment"
    assert row["payment_status"] == "unpaid"
    assert await db_session.scalar(select(func.count()).select_from(audit_logs)) == 0
    [ledger] = await ledger_rows(db_session)
    assert ledger["status"] == "completed"


@pytest.mark.asyncio
async def test_failed_processing_is_retried(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that a failed event is retried on redelivery."""
    appointment_id = await create_appointment(db_session, patient, clinician)
    payload = checkout_completed("evt_retry", appointment_id)
    original = PaymentWebhookService._handle_checkout_completed

    async def boom(self, session):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(PaymentWebhookService, "_handle_checkout_completed", boom)
    response = await post_event(client, payload)

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook processing failed"}
    [ledger] = await ledger_rows(db_session)
    assert ledger["status"] == "failed"
    assert "database hiccup" in ledger["error_message"]
    assert (await get_appointment(db_session, appointment_id))["payment_status"] == "unpaid"

    monkeypatch.setattr(PaymentWebhookService, "_handle_checkout_completed", original)
    response = await post_event(client, payload)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    [ledger] = await ledger_rows(db_session)
    assert ledger["status"] == "completed"
    assert ledger["attempts"] == 2
    assert ledger["error_message"] is None
    assert (await get_appointment(db_session, appointment_id))["payment_status"] == "paid"


@pytest.mark.asyncio
async def test_concurrent_insert_loses_gracefully(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A delivery that misses the pre-check still cannot insert a second row."""
    appointment_id = await create_appointment(db_session, patient, clinician)
    payload = checkout_completed("evt_race", appointment_id)
    assert (await post_event(client, payload)).status_code == 200

    async def not_seen(self, event_id):
        return None

    monkeypatch.setattr(WebhookLedger, "get_event", not_seen)
    response = await post_event(client, payload)

    assert response.status_code == 200
    assert response.json() == {"received": True, "duplicate": True}
    assert len(await ledger_rows(db_session)) == 1


@pytest.mark.asyncio
async def test_processing_row_is_treated_as_duplicate(
    client: AsyncClient,
    db_session: AsyncSession,
) -> None:
    """Test that an in-flight event is acknowledged as a duplicate."""
    await db_session.execute(
        insert(processed_webhook_events).values(
            provider="stripe",
            event_id="evt_inflight",
            event_type="checkout.session.completed",
            status="processing",
        )
    )
    await db_session.commit()

    response = await post_event(client, checkout_completed("evt_inflight", 1))

    assert response.json() == {"received": True, "duplicate": True}


@pytest.mark.asyncio
async def test_payment_failed_by_intent(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
) -> None:
    """Test a payment failure matched by payment intent."""
    appointment_id = await create_appointment(
        db_session, patient, clinician, stripe_payment_intent_id="pi_fail"
    )
    payload = make_event(
        "evt_failed",
        "payment_intent.payment_failed",
        {"id": "pi_fail", "last_payment_error": {"message": "Your card was declined."}},
    )

    response = await post_event(client, payload)

    assert response.status_code == 200
    row = await get_appointment(db_session, appointment_id)
    assert row["payment_status"] == "failed"
    assert row["status"] == "pending_payment"
    audit = (await db_session.execute(select(audit_logs))).mappings().one()
    assert audit["action"] == "payment.failed"
    assert audit["metadata"]["reason"] == "Your card was declined."


@pytest.mark.asyncio
async def test_payment_failed_by_metadata(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
) -> None:
    """Test a payment failure matched by appointment metadata."""
    appointment_id = await create_appointment(db_session, patient, clinician)
    payload = make_event(
        "evt_failed_meta",
        "payment_intent.payment_failed",
        {"id": "pi_new", "metadata": {"appointment_id": str(appointment_id)}},
    )

    await post_event(client, payload)

    row = await get_appointment(db_session, appointment_id)
    assert row["payment_status"] == "failed"
    assert row["stripe_payment_intent_id"] == "pi_new"


@pytest.mark.asyncio
async def test_charge_refunded(
    client: AsyncClient,
    db_session: AsyncSession,
    patient: dict,
    clinician: dict,
) -> None:
    """Test a refunded charge."""
    appointment_id = await create_appointment(
        db_session,
        patient,
        clinician,
        status="scheduled",
        payment_status="paid",
        stripe_payment_intent_id="pi_paid",
    )
    payload = make_event(
        "evt_refund",
        "charge.refunded",
        {"id": "ch_1", "payment_intent": "pi_paid", "amount_refunded": 15000},
    )

    response = await post_event(client, payload)

    assert response.status_code == 200
    row = await get_appointment(db_session, appointment_id)
    assert row["payment_status"] == "refunded"
    assert row["status"] == "scheduled"


@pytest.mark.asyncio
async def test_unknown_event_type_recorded(client: AsyncClient, db_session: AsyncSession) -> None:
    """Test that unhandled event types still complete in the ledger."""
    payload = make_event("evt_other", "customer.created", {"id": "cus_1"})

    response = await post_event(client, payload)

    assert response.status_code == 200
    [ledger] = await ledger_rows(db_session)
    assert ledger["status"] == "completed"
    assert ledger["event_type"] == "customer.created"
