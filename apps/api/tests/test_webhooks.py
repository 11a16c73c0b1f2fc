import json

import pytest
from sqlalchemy import select

from conftest import (
    PNG_BYTES,
    auth_headers,
    checkout_completed_event,
    seed_user,
    sign_webhook,
)
from models.project import Project
from services import credits
from services.billing_gateway import (
    CreditPackPurchased,
    IgnoredEvent,
    PaymentFailed,
    ProjectPaymentCompleted,
    SubscriptionCancelled,
    event_from_payload,
)

CUSTOMER_ID = "cus_pack_buyer"
USER_ID = "pack-buyer"


async def _post_event(studio, payload: bytes, signature=None):
    headers = {"content-type": "application/json"}
    if signature is not False:
        headers["stripe-signature"] = signature or sign_webhook(payload)
    return await studio.client.post("/webhooks/stripe", content=payload, headers=headers)


def _event(event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}}).encode("utf-8")


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected_without_side_effects(studio):
    checkout = await studio.client.post(
        "/projects/checkout",
        headers=auth_headers(USER_ID),
        files={"image": ("photo.png", PNG_BYTES, "image/png")},
        data={"prompt": "Make it snow", "model_key": "google/nano-banana"},
    )
    project_id = checkout.json()["project"]["id"]
    payload = checkout_completed_event("cs_test_1", {"project_id": project_id})

    forged = await _post_event(studio, payload, signature=sign_webhook(payload, secret="whsec_wrong"))
    missing = await _post_event(studio, payload, signature=False)

    assert forged.status_code == 400
    assert forged.json()["code"] == "invalid_webhook"
    assert missing.status_code == 400
    async with studio.session_maker() as db:
        project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one()
    assert project.payment_status == "pending"


@pytest.mark.asyncio
async def test_stale_signature_is_rejected(studio):
    payload = checkout_completed_event("cs_old", {"project_id": "whatever"})

    response = await _post_event(studio, payload, signature=sign_webhook(payload, timestamp=1_000_000))

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_credit_pack_purchase_credits_user_once(studio):
    await seed_user(studio.session_maker, USER_ID, customer_id=CUSTOMER_ID)
    payload = checkout_completed_event(
        "cs_pack_1",
        {"credits_pack_size": "10", "pack_id": "pack_10"},
        customer=CUSTOMER_ID,
    )

    first = await _post_event(studio, payload)
    replay = await _post_event(studio, payload)

    assert first.status_code == 200
    assert replay.status_code == 200
    async with studio.session_maker() as db:
        assert await credits.get_balance(USER_ID, db) == 10


@pytest.mark.asyncio
async def test_pack_purchase_for_unknown_customer_is_acknowledged(studio):
    payload = checkout_completed_event("cs_pack_2", {"credits_pack_size": "25"}, customer="cus_ghost")

    response = await _post_event(studio, payload)

    assert response.status_code == 200
    assert response.json() == {"received": True}


@pytest.mark.asyncio
async def test_payment_failure_emails_customer(studio):
    await seed_user(studio.session_maker, USER_ID, customer_id=CUSTOMER_ID)
    payload = _event("payment_intent.payment_failed", {"id": "pi_1", "customer": CUSTOMER_ID})

    response = await _post_event(studio, payload)

    assert response.status_code == 200
    assert len(studio.notifier.sent) == 1
    assert studio.notifier.sent[0]["to"] == f"{USER_ID}@example.com"
    assert "Payment failed" in studio.notifier.sent[0]["subject"]


@pytest.mark.asyncio
async def test_subscription_cancellation_emails_customer(studio):
    await seed_user(studio.session_maker, USER_ID, customer_id=CUSTOMER_ID)
    payload = _event("customer.subscription.deleted", {"id": "sub_1", "customer": CUSTOMER_ID})

    response = await _post_event(studio, payload)

    assert response.status_code == 200
    assert "Subscription cancelled" in studio.notifier.sent[0]["subject"]


@pytest.mark.asyncio
async def test_unhandled_event_types_are_acknowledged(studio):
    payload = _event("invoice.created", {"id": "in_1"})

    response = await _post_event(studio, payload)

    assert response.status_code == 200
    assert studio.notifier.sent == []


def test_event_from_payload_prefers_credit_pack_over_project():
    event = event_from_payload(
        {
            "id": "evt_9",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_9",
                    "customer": {"id": "cus_9"},
                    "metadata": {"credits_pack_size": "25", "pack_id": "pack_25", "project_id": "p"},
                }
            },
        }
    )

    assert event == CreditPackPurchased(
        event_id="evt_9",
        customer_id="cus_9",
        credits=25,
        pack_id="pack_25",
        checkout_session_id="cs_9",
    )


def test_event_from_payload_variants():
    project = event_from_payload(json.loads(checkout_completed_event("cs_1", {"project_id": "p1"})))
    failed = event_from_payload(json.loads(_event("payment_intent.payment_failed", {"id": "pi", "customer": "c"})))
    cancelled = event_from_payload(json.loads(_event("customer.subscription.deleted", {"id": "sub", "customer": "c"})))
    no_metadata = event_from_payload(json.loads(checkout_completed_event("cs_2", {})))

    assert isinstance(project, ProjectPaymentCompleted)
    assert project.project_id == "p1"
    assert isinstance(failed, PaymentFailed)
    assert isinstance(cancelled, SubscriptionCancelled)
    assert isinstance(no_metadata, IgnoredEvent)