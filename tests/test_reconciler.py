from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from bookrent.models.audit_log import AuditLog
from bookrent.models.booking import Booking
from bookrent.models.gateway_event import GatewayEvent
from bookrent.models.payment import Payment
from bookrent.models.security_deposit import SecurityDepositAuthorization
from bookrent.services import payment_links, reconciler, security_deposits
from bookrent.services.errors import (
    PaymentValidationError,
    ReconciliationFault,
    StateConflict,
    UnknownTransaction,
)
from bookrent.services.gateway import GatewayNotification


async def _amount_paid(session_factory, booking_id):
    async with session_factory() as s:
        return (await s.execute(select(Booking.amount_paid).where(Booking.id == booking_id))).scalar_one()


async def test_duplicate_completion_credits_once(db, session_factory, booking, gateway):
    payment = await payment_links.create_payment(
        db, booking.id, "client_payment", "visa_mastercard", amount_override="500", gateway=gateway
    )
    notification = gateway.complete(payment.gateway_session_id, transaction_id="pi_123")

    first = await reconciler.apply(db, notification)
    async with session_factory() as other:
        second = await reconciler.apply(other, notification)

    assert first.applied is True
    assert second.applied is False
    assert await _amount_paid(session_factory, booking.id) == Decimal("510.00")


async def test_concurrent_deliveries_with_stale_reads_credit_once(session_factory, db, booking, gateway):
    payment = await payment_links.create_payment(
        db, booking.id, "client_payment", "visa_mastercard", amount_override="200", gateway=gateway
    )
    notification = gateway.complete(payment.gateway_session_id)

    async with session_factory() as a, session_factory() as b:
        # Both deliveries read the payment while it is still active
        stale_a = (await a.execute(select(Payment).where(Payment.id == payment.id))).scalar_one()
        stale_b = (await b.execute(select(Payment).where(Payment.id == payment.id))).scalar_one()
        assert stale_a.payment_link_status == stale_b.payment_link_status == "active"

        first = await reconciler._settle(a, stale_a, notification.occurred_at, "pi_a")
        second = await reconciler._settle(b, stale_b, notification.occurred_at, "pi_b")

    assert first.applied is True
    assert second.applied is False
    assert await _amount_paid(session_factory, booking.id) == Decimal("204.00")


async def test_failed_and_expired_outcomes_close_without_credit(db, session_factory, booking, gateway):
    failed = await payment_links.create_payment(db, booking.id, "client_payment", "visa_mastercard", gateway=gateway)
    expired = await payment_links.create_payment(db, booking.id, "balance_payment", "visa_mastercard", gateway=gateway)
    now = datetime.utcnow()

    await reconciler.apply(db, GatewayNotification(failed.gateway_session_id, "failed", now))
    await reconciler.apply(db, GatewayNotification(expired.gateway_session_id, "expired", now))

    await db.refresh(failed)
    await db.refresh(expired)
    assert failed.payment_link_status == "failed"
    assert expired.payment_link_status == "expired"
    assert await _amount_paid(session_factory, booking.id) == Decimal("0")


async def test_late_completion_after_failure_is_ignored(db, session_factory, booking, gateway):
    payment = await payment_links.create_payment(db, booking.id, "client_payment", "visa_mastercard", gateway=gateway)
    now = datetime.utcnow()
    await reconciler.apply(db, GatewayNotification(payment.gateway_session_id, "failed", now))

    result = await reconciler.apply(db, gateway.complete(payment.gateway_session_id))

    assert result.applied is False
    assert result.status == "failed"
    assert await _amount_paid(session_factory, booking.id) == Decimal("0")


async def test_unknown_reference(db):
    with pytest.raises(UnknownTransaction):
        await reconciler.apply(db, GatewayNotification("cs_missing", "completed", datetime.utcnow()))


async def test_bank_transfer_only_settles_through_staff(db, session_factory, booking):
    payment = await payment_links.create_bank_transfer_payment(db, booking.id, "400")

    with pytest.raises(UnknownTransaction):
        await reconciler.apply(db, GatewayNotification(payment.id, "completed", datetime.utcnow()))
    await db.refresh(payment)
    assert payment.payment_link_status == "active"

    result = await reconciler.confirm_offline(db, payment.id, user_id="staff-1")

    assert result.applied is True
    await db.refresh(payment)
    assert payment.payment_link_status == "paid"
    assert payment.gateway_transaction_id == f"BANK_TRANSFER_{datetime.utcnow():%Y-%m-%d}"
    assert await _amount_paid(session_factory, booking.id) == Decimal("400.00")


async def test_offline_confirm_twice_is_a_conflict(db, booking, gateway):
    payment = await payment_links.create_payment(
        db, booking.id, "client_payment", "manual", amount_override="50", is_admin=True, gateway=gateway
    )
    await reconciler.confirm_offline(db, payment.id)
    with pytest.raises(StateConflict):
        await reconciler.confirm_offline(db, payment.id)


async def test_card_payments_cannot_be_confirmed_offline(db, booking, gateway):
    payment = await payment_links.create_payment(db, booking.id, "client_payment", "visa_mastercard", gateway=gateway)
    with pytest.raises(PaymentValidationError):
        await reconciler.confirm_offline(db, payment.id)


async def test_process_notification_journals_event(db, booking, gateway):
    payment = await payment_links.create_payment(db, booking.id, "client_payment", "visa_mastercard", gateway=gateway)
    notification = gateway.complete(payment.gateway_session_id, event_id="evt_1")

    await reconciler.process_notification(db, notification, source="stripe", payload={"id": "evt_1"})
    await reconciler.process_notification(db, notification, source="stripe", payload={"id": "evt_1"})

    events = (await db.execute(select(GatewayEvent).order_by(GatewayEvent.id))).scalars().all()
    assert [e.status for e in events] == ["applied", "ignored"]
    assert events[0].external_event_id == "evt_1"
    assert events[0].processed_at is not None


async def test_process_notification_records_unknown_reference(db):
    with pytest.raises(UnknownTransaction):
        await reconciler.process_notification(
            db, GatewayNotification("cs_nope", "completed", datetime.utcnow()), source="listener"
        )
    event = (await db.execute(select(GatewayEvent))).scalar_one()
    assert event.status == "failed"
    assert "cs_nope" in event.error


async def test_sync_applies_gateway_outcome(db, session_factory, booking, gateway):
    payment = await payment_links.create_payment(db, booking.id, "client_payment", "visa_mastercard", gateway=gateway)
    assert (await reconciler.sync_payment(db, payment.id, gateway=gateway)).reason == "still_open"

    gateway.outcomes[payment.gateway_session_id] = gateway.complete(payment.gateway_session_id)
    result = await reconciler.sync_payment(db, payment.id, gateway=gateway)

    assert result.applied is True
    assert await _amount_paid(session_factory, booking.id) == Decimal("1020.00")


async def test_sync_persists_lazy_expiry(db, booking):
    payment = await payment_links.create_bank_transfer_payment(db, booking.id, "100")
    result = await reconciler.sync_payment(db, payment.id, now=payment.payment_link_expires_at + timedelta(minutes=1))
    assert result.status == "expired"
    await db.refresh(payment)
    assert payment.payment_link_status == "expired"


async def test_expire_stale_links(db, booking, gateway):
    stale = await payment_links.create_payment(
        db, booking.id, "client_payment", "visa_mastercard", expires_in_hours=1, gateway=gateway
    )
    fresh = await payment_links.create_bank_transfer_payment(db, booking.id, "100")

    count = await reconciler.expire_stale_links(db, now=datetime.utcnow() + timedelta(hours=2))

    assert count == 1
    await db.refresh(stale)
    await db.refresh(fresh)
    assert stale.payment_link_status == "expired"
    assert fresh.payment_link_status == "active"


async def test_sweep_audits_only_links_it_expired(db, session_factory, booking, gateway):
    kept = await payment_links.create_payment(
        db, booking.id, "client_payment", "visa_mastercard", expires_in_hours=1, gateway=gateway
    )
    raced = await payment_links.create_payment(
        db, booking.id, "balance_payment", "visa_mastercard", amount_override="100", expires_in_hours=1,
        gateway=gateway,
    )
    # Cancelled after the sweep selected it
    await payment_links.cancel(db, raced.id)

    count = await reconciler._expire_links(db, [kept.id, raced.id], datetime.utcnow() + timedelta(hours=2))
    await db.commit()

    assert count == 1
    async with session_factory() as s:
        audited = (
            await s.execute(select(AuditLog.entity_id).where(AuditLog.action == "expired"))
        ).scalars().all()
    assert audited == [kept.id]


async def test_completion_for_expired_hold_leaves_nothing_behind(db, session_factory, booking, gateway):
    booking_id = booking.id
    authorization = await security_deposits.request_authorization(
        db, booking_id, amount="400", expires_in_hours=1, gateway=gateway
    )
    authorization_id, payment_id = authorization.id, authorization.payment_id
    session_id = (await payment_links.get_payment(db, payment_id)).gateway_session_id
    assert await security_deposits.expire_stale_holds(db, now=datetime.utcnow() + timedelta(hours=2)) == 1

    with pytest.raises(ReconciliationFault):
        await reconciler.process_notification(
            db, gateway.complete(session_id, transaction_id="pi_late"), source="listener"
        )

    async with session_factory() as s:
        payment = (await s.execute(select(Payment).where(Payment.id == payment_id))).scalar_one()
        hold = (
            await s.execute(
                select(SecurityDepositAuthorization).where(SecurityDepositAuthorization.id == authorization_id)
            )
        ).scalar_one()
        stored = (await s.execute(select(Booking).where(Booking.id == booking_id))).scalar_one()
        event = (await s.execute(select(GatewayEvent))).scalar_one()

    assert payment.payment_link_status == "active"
    assert payment.paid_at is None
    assert payment.gateway_transaction_id != "pi_late"
    assert hold.status == "expired"
    assert stored.amount_paid == Decimal("0")
    assert stored.security_deposit_authorization_id is None
    assert event.status == "failed"
    assert payment_id in event.error
