from decimal import Decimal

from sqlalchemy import select

from bookrent.models.booking import Booking
from bookrent.models.gateway_event import GatewayEvent

WEBHOOK_HEADERS = {"x-webhook-secret": "test-webhook-secret"}


async def test_login_and_me(client, staff_user):
    resp = await client.post("/api/auth/login", json={"email": staff_user.email, "password": "s3cret-pass"})
    assert resp.status_code == 200
    token = resp.json()["token"]

    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["role"] == "staff"


async def test_login_rejects_bad_password(client, staff_user):
    resp = await client.post("/api/auth/login", json={"email": staff_user.email, "password": "nope"})
    assert resp.status_code == 401


async def test_admin_routes_require_a_token(client, booking):
    resp = await client.get(f"/api/admin/bookings/{booking.id}/payments")
    assert resp.status_code == 401


async def test_public_methods_hide_staff_only(client, auth_headers):
    public = await client.get("/api/payment-methods")
    admin = await client.get("/api/admin/payment-methods", headers=auth_headers)

    assert [m["method_type"] for m in public.json()] == ["visa_mastercard", "amex", "bank_transfer"]
    assert "manual" in [m["method_type"] for m in admin.json()]


async def test_portal_preview_matches_created_link(client, booking, chf_rate, gateway):
    body = {"payment_intent": "client_payment", "method_type": "amex"}

    preview = await client.post(f"/api/portal/{booking.access_token}/calculate", json=body)
    created = await client.post(f"/api/portal/{booking.access_token}/payments", json=body)

    assert preview.status_code == 200
    assert created.status_code == 200
    assert Decimal(preview.json()["converted_amount"]) == Decimal(created.json()["converted_amount"])
    assert gateway.links[0]["amount"] == Decimal(preview.json()["converted_amount"])


async def test_portal_rejects_unknown_token(client):
    resp = await client.post(
        "/api/portal/not-a-token/calculate",
        json={"payment_intent": "client_payment", "method_type": "visa_mastercard"},
    )
    assert resp.status_code == 404


async def test_portal_cannot_use_manual_method(client, booking):
    resp = await client.post(
        f"/api/portal/{booking.access_token}/payments",
        json={"payment_intent": "client_payment", "method_type": "manual"},
    )
    assert resp.status_code == 400


async def test_missing_rate_is_a_client_error(client, booking):
    resp = await client.post(
        f"/api/portal/{booking.access_token}/calculate",
        json={"payment_intent": "client_payment", "method_type": "amex"},
    )
    assert resp.status_code == 400
    assert "conversion rate" in resp.json()["detail"]


async def test_gateway_webhook_settles_once(client, session_factory, booking, auth_headers):
    created = await client.post(
        "/api/admin/payments",
        headers=auth_headers,
        json={"booking_id": booking.id, "payment_intent": "client_payment", "method_type": "visa_mastercard"},
    )
    session_id = created.json()["gateway_session_id"]
    event = {"entityId": session_id, "state": "COMPLETED", "eventTimestamp": 1767225600000, "listenerEntityId": "L-1"}

    first = await client.post("/api/webhooks/gateway", json=event, headers=WEBHOOK_HEADERS)
    second = await client.post("/api/webhooks/gateway", json=event, headers=WEBHOOK_HEADERS)

    assert first.json() == {"received": True, "status": "applied"}
    assert second.json() == {"received": True, "status": "ignored"}
    async with session_factory() as s:
        paid = (await s.execute(select(Booking.amount_paid).where(Booking.id == booking.id))).scalar_one()
        events = (await s.execute(select(GatewayEvent))).scalars().all()
    assert paid == Decimal("1020.00")
    assert len(events) == 2


async def test_gateway_webhook_for_unknown_reference_is_acknowledged(client):
    resp = await client.post(
        "/api/webhooks/gateway",
        json={"entityId": "cs_unknown", "state": "COMPLETED"},
        headers=WEBHOOK_HEADERS,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "unknown_transaction"


async def test_gateway_webhook_checks_secret(client):
    resp = await client.post(
        "/api/webhooks/gateway",
        json={"entityId": "cs_1", "state": "COMPLETED"},
        headers={"x-webhook-secret": "wrong"},
    )
    assert resp.status_code == 401


async def test_gateway_webhook_rejects_bad_state(client):
    resp = await client.post(
        "/api/webhooks/gateway",
        json={"entityId": "cs_1", "state": "MAYBE"},
        headers=WEBHOOK_HEADERS,
    )
    assert resp.status_code == 400


async def test_stripe_webhook_requires_signature(client):
    resp = await client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"})
    assert resp.status_code == 400


async def test_bank_transfer_flow(client, session_factory, booking, auth_headers):
    created = await client.post(
        f"/api/portal/{booking.access_token}/payments",
        json={"payment_intent": "client_payment", "method_type": "bank_transfer"},
    )
    payment = created.json()
    assert payment["payment_link_status"] == "active"
    assert payment["bank_details"]["reference"].startswith(booking.reference_code)

    proof = await client.post(
        f"/api/portal/{booking.access_token}/payments/{payment['id']}/proof",
        json={"proof_url": "https://files.test/transfer.pdf"},
    )
    assert proof.json()["payment_link_status"] == "active"

    confirm = await client.post(f"/api/admin/payments/{payment['id']}/confirm", headers=auth_headers)
    assert confirm.status_code == 200
    assert confirm.json()["status"] == "paid"

    cancel = await client.post(f"/api/admin/payments/{payment['id']}/cancel", headers=auth_headers)
    assert cancel.status_code == 409

    async with session_factory() as s:
        paid = (await s.execute(select(Booking.amount_paid).where(Booking.id == booking.id))).scalar_one()
    assert paid == Decimal("1000.00")


async def test_security_deposit_endpoints(client, booking, auth_headers, gateway):
    created = await client.post(
        "/api/admin/security-deposits",
        headers=auth_headers,
        json={"booking_id": booking.id, "amount": "800", "expires_in_hours": 240},
    )
    assert created.status_code == 200
    deposit = created.json()
    assert deposit["status"] == "pending"
    assert deposit["payment_link_url"].startswith("https://checkout.test/")

    session_id = gateway.links[0]["session_id"]
    await client.post(
        "/api/webhooks/gateway",
        json={"entityId": session_id, "state": "COMPLETED", "transactionId": "pi_dep"},
        headers=WEBHOOK_HEADERS,
    )

    current = await client.get(f"/api/admin/bookings/{booking.id}/security-deposit", headers=auth_headers)
    assert current.json()["status"] == "authorized"

    too_much = await client.post(
        f"/api/admin/security-deposits/{deposit['id']}/capture",
        headers=auth_headers,
        json={"amount": "900", "reason": "Damage"},
    )
    assert too_much.status_code == 400

    captured = await client.post(
        f"/api/admin/security-deposits/{deposit['id']}/capture",
        headers=auth_headers,
        json={"amount": "200", "reason": "Damage"},
    )
    assert captured.json()["status"] == "captured"
    assert Decimal(captured.json()["remaining_amount"]) == Decimal("600")
    assert gateway.captures[0]["transaction_id"] == "pi_dep"


async def test_maintenance_and_event_monitor(client, auth_headers):
    swept = await client.post("/api/admin/maintenance/expire", headers=auth_headers)
    assert swept.json() == {"expired_links": 0, "expired_deposits": 0}

    events = await client.get("/api/admin/gateway-events", headers=auth_headers)
    assert events.status_code == 200
    assert events.json() == []


async def test_payment_routes_refuse_security_deposit_intent(client, booking, auth_headers, gateway):
    body = {"payment_intent": "security_deposit", "method_type": "visa_mastercard", "amount": "1000"}

    portal = await client.post(f"/api/portal/{booking.access_token}/payments", json=body)
    admin = await client.post("/api/admin/payments", headers=auth_headers, json={"booking_id": booking.id, **body})

    assert portal.status_code == 400
    assert admin.status_code == 400
    assert "/api/admin/security-deposits" in admin.json()["detail"]
    assert gateway.links == []

    listed = await client.get(f"/api/admin/bookings/{booking.id}/payments", headers=auth_headers)
    assert listed.json() == []
