from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.domain.billing.invoice_service import InvoiceService, previous_month_period
from app.domain.prepaid.service import PrepaidService
from app.models import AppointmentStatus, BillingFrequency, ClientProfile
from app.models_invoice import Invoice, InvoiceStatus, PrepaidTransaction, PrepaidTransactionType
from app.models_notification import NotificationLog, NotificationStatus
from app.services.notification_service import NotificationService
from app.shared.errors import AuthorizationError, NotFoundError, ValidationError

COMPLETED = AppointmentStatus.COMPLETED
JULY_1 = datetime(2025, 7, 1, 9, 0)


@pytest.fixture
def service(db, fake_email, fake_sender):
    return InvoiceService(db, send_email=fake_email, notifier=NotificationService(db, sender=fake_sender))


@pytest.fixture
def studio(make):
    workspace = make.workspace()
    trainer = make.trainer(workspace, default_invoice_due_days=14)
    return workspace, trainer


def test_previous_month_period():
    start, end = previous_month_period(datetime(2025, 3, 1, 6, 0))

    assert start == datetime(2025, 2, 1)
    assert end == datetime(2025, 2, 28, 23, 59, 59, 999999)


async def test_per_session_invoice_for_completed_appointment(db, make, studio, service, fake_email, june_15):
    workspace, trainer = studio
    client = make.client(workspace, session_rate="75.00")
    appointment = make.appointment(trainer, client, datetime(2025, 6, 14, 9, 0), status=COMPLETED)

    invoice = await service.generate_per_session_invoice(appointment.id, now=june_15)

    assert invoice.amount == Decimal("75.00")
    assert invoice.status == InvoiceStatus.SENT
    assert invoice.due_date == june_15 + timedelta(days=14)
    assert [item.appointment_id for item in invoice.line_items] == [appointment.id]
    assert invoice.line_items[0].description == "Training session on Jun 14, 2025"
    assert fake_email.sent == [invoice.id]


async def test_per_session_invoice_is_generated_once(db, make, studio, service, june_15):
    workspace, trainer = studio
    client = make.client(workspace)
    appointment = make.appointment(trainer, client, datetime(2025, 6, 14, 9, 0), status=COMPLETED)

    assert await service.generate_per_session_invoice(appointment.id, now=june_15) is not None
    assert await service.generate_per_session_invoice(appointment.id, now=june_15) is None
    assert db.query(Invoice).count() == 1


async def test_per_session_invoice_uses_group_rate(db, make, studio, service, june_15):
    workspace, trainer = studio
    alice = make.client(workspace, session_rate="90.00", group_session_rate="55.00")
    bob = make.client(workspace)
    start = datetime(2025, 6, 14, 9, 0)
    appointment = make.appointment(trainer, alice, start, status=COMPLETED)
    make.appointment(trainer, bob, start, status=COMPLETED)

    invoice = await service.generate_per_session_invoice(appointment.id, now=june_15)

    assert invoice.amount == Decimal("55.00")
    assert invoice.line_items[0].description.startswith("Group training session")


@pytest.mark.parametrize(
    "status, client_kwargs",
    [
        (AppointmentStatus.SCHEDULED, {}),
        (COMPLETED, {"auto_invoice_enabled": False}),
        (COMPLETED, {"billing_frequency": BillingFrequency.MONTHLY}),
    ],
)
async def test_per_session_invoice_skips_ineligible(db, make, studio, service, june_15, status, client_kwargs):
    workspace, trainer = studio
    client = make.client(workspace, **client_kwargs)
    appointment = make.appointment(trainer, client, datetime(2025, 6, 14, 9, 0), status=status)

    assert await service.generate_per_session_invoice(appointment.id, now=june_15) is None
    assert db.query(Invoice).count() == 0


async def test_unsent_invoice_email_leaves_draft(db, make, studio, failing_email, fake_sender, june_15):
    workspace, trainer = studio
    client = make.client(workspace)
    appointment = make.appointment(trainer, client, datetime(2025, 6, 14, 9, 0), status=COMPLETED)
    service = InvoiceService(db, send_email=failing_email, notifier=NotificationService(db, sender=fake_sender))

    invoice = await service.generate_per_session_invoice(appointment.id, now=june_15)

    assert invoice.status == InvoiceStatus.DRAFT


async def test_invoice_sms_is_logged(db, make, studio, service, fake_sender, june_15):
    workspace, trainer = studio
    client = make.client(workspace, phone="(415) 555-1234")
    appointment = make.appointment(trainer, client, datetime(2025, 6, 14, 9, 0), status=COMPLETED)

    invoice = await service.generate_per_session_invoice(appointment.id, now=june_15)

    assert fake_sender.sent[0][0] == "+14155551234"
    log = db.query(NotificationLog).one()
    assert log.invoice_id == invoice.id
    assert log.type == "INVOICE_SENT"
    assert log.status == NotificationStatus.SENT


async def test_monthly_invoice_bills_previous_month(db, make, studio, service):
    workspace, trainer = studio
    client = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY, session_rate="100.00")
    make.appointment(trainer, client, datetime(2025, 6, 3, 9, 0), status=COMPLETED)
    make.appointment(trainer, client, datetime(2025, 6, 30, 18, 0), status=COMPLETED)
    make.appointment(trainer, client, datetime(2025, 5, 28, 9, 0), status=COMPLETED)

    invoice = await service.generate_monthly_invoice(client.id, trainer.id, now=JULY_1)

    assert invoice.amount == Decimal("200.00")
    assert len(invoice.line_items) == 2
    assert invoice.notes == "Monthly invoice for June 2025"


async def test_monthly_invoice_runs_once_per_month(db, make, studio, service):
    workspace, trainer = studio
    client = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY)
    make.appointment(trainer, client, datetime(2025, 6, 3, 9, 0), status=COMPLETED)

    assert await service.generate_monthly_invoice(client.id, trainer.id, now=JULY_1) is not None
    assert await service.generate_monthly_invoice(client.id, trainer.id, now=JULY_1 + timedelta(hours=3)) is None
    assert db.query(Invoice).count() == 1


async def test_monthly_invoice_without_sessions(db, make, studio, service):
    workspace, trainer = studio
    client = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY)

    assert await service.generate_monthly_invoice(client.id, trainer.id, now=JULY_1) is None


async def test_process_monthly_invoices(db, make, service):
    workspace = make.workspace()
    trainer = make.trainer(workspace, monthly_invoice_day=1)
    monthly = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY)
    idle = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY)
    make.client(workspace, billing_frequency=BillingFrequency.MONTHLY, auto_invoice_enabled=False)
    make.appointment(trainer, monthly, datetime(2025, 6, 3, 9, 0), status=COMPLETED)

    other_workspace = make.workspace("Other")
    make.trainer(other_workspace, monthly_invoice_day=15)

    results = await service.process_monthly_invoices(now=JULY_1)

    assert results == {"trainers": 1, "created": 1, "skipped": 1, "failed": 0}
    assert db.query(Invoice).filter(Invoice.client_id == monthly.id).count() == 1
    assert db.query(Invoice).filter(Invoice.client_id == idle.id).count() == 0


async def test_late_invoice_day_runs_on_last_day_of_short_month(db, make, service):
    workspace = make.workspace()
    trainer = make.trainer(workspace, monthly_invoice_day=31)
    client = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY)
    make.appointment(trainer, client, datetime(2025, 5, 20, 9, 0), status=COMPLETED)

    results = await service.process_monthly_invoices(now=datetime(2025, 6, 30, 8, 0))

    assert results["trainers"] == 1
    assert results["created"] == 1


async def test_process_monthly_invoices_isolates_failures(db, make, service, monkeypatch):
    workspace = make.workspace()
    make.trainer(workspace, monthly_invoice_day=1)
    broken = make.client(workspace, full_name="A Broken", billing_frequency=BillingFrequency.MONTHLY)
    make.client(workspace, full_name="B Fine", billing_frequency=BillingFrequency.MONTHLY)

    original = service.generate_monthly_invoice

    async def flaky(client_id, trainer_id, now=None):
        if client_id == broken.id:
            raise RuntimeError("database hiccup")
        return await original(client_id, trainer_id, now)

    monkeypatch.setattr(service, "generate_monthly_invoice", flaky)

    results = await service.process_monthly_invoices(now=JULY_1)

    assert results["failed"] == 1
    assert results["skipped"] == 1


async def test_top_up_invoice_lists_consumed_sessions(db, make, studio, service, june_15):
    workspace, trainer = studio
    client = make.client(
        workspace,
        billing_frequency=BillingFrequency.PREPAID,
        session_rate="80.00",
        prepaid_target_balance="400.00",
    )
    prepaid = PrepaidService(db)
    prepaid.add_credit(workspace.id, client.id, "200.00")
    prepaid.consume(workspace.id, client.id, "80.00", notes="Training session on Jun 10, 2025")
    prepaid.consume(workspace.id, client.id, "80.00", notes="Training session on Jun 12, 2025")

    invoice = await service.generate_top_up_invoice(client.id, trainer.id, now=june_15)

    assert invoice.is_prepaid_top_up is True
    assert invoice.amount == Decimal("360.00")
    assert [item.description for item in invoice.line_items] == [
        "Training session on Jun 10, 2025",
        "Training session on Jun 12, 2025",
    ]
    assert all(item.unit_price == Decimal("80.00") for item in invoice.line_items)
    assert all(item.appointment_id is None for item in invoice.line_items)


async def test_top_up_invoice_is_not_duplicated(db, make, studio, service, june_15):
    workspace, trainer = studio
    client = make.client(
        workspace,
        billing_frequency=BillingFrequency.PREPAID,
        prepaid_balance="20.00",
        prepaid_target_balance="300.00",
    )

    first = await service.generate_top_up_invoice(client.id, trainer.id, now=june_15)
    second = await service.generate_top_up_invoice(client.id, trainer.id, now=june_15)

    assert first.id == second.id
    assert first.amount == Decimal("280.00")
    assert [item.description for item in first.line_items] == ["Prepaid balance top-up"]


async def test_top_up_invoice_needs_target_below_balance(db, make, studio, service, june_15):
    workspace, trainer = studio
    no_target = make.client(workspace, billing_frequency=BillingFrequency.PREPAID, prepaid_balance="20.00")
    full = make.client(
        workspace,
        billing_frequency=BillingFrequency.PREPAID,
        prepaid_balance="300.00",
        prepaid_target_balance="300.00",
    )

    assert await service.generate_top_up_invoice(no_target.id, trainer.id, now=june_15) is None
    assert await service.generate_top_up_invoice(full.id, trainer.id, now=june_15) is None


def prepaid_ledger(db, client):
    profile = db.query(ClientProfile).filter(ClientProfile.user_id == client.id).one()
    db.refresh(profile)
    entries = (
        db.query(PrepaidTransaction)
        .filter(PrepaidTransaction.client_profile_id == profile.id)
        .order_by(PrepaidTransaction.id)
        .all()
    )
    return profile, entries


@pytest.fixture
def top_up(db, make, studio, service, june_15):
    """A PREPAID client holding $50 with a pending $250 top-up invoice"""

    async def build():
        workspace, trainer = studio
        client = make.client(
            workspace,
            billing_frequency=BillingFrequency.PREPAID,
            session_rate="80.00",
            prepaid_target_balance="300.00",
        )
        PrepaidService(db).add_credit(workspace.id, client.id, "50.00")
        invoice = await service.generate_top_up_invoice(client.id, trainer.id, now=june_15)
        return client, invoice

    return build


async def test_paying_top_up_invoice_credits_balance(db, studio, service, top_up, june_15):
    workspace, trainer = studio
    client, invoice = await top_up()
    paid_at = june_15 + timedelta(days=2)

    updated = service.update_invoice(workspace.id, trainer.id, invoice.id, status=InvoiceStatus.PAID, now=paid_at)

    assert updated.status == InvoiceStatus.PAID
    assert updated.paid_at == paid_at
    profile, entries = prepaid_ledger(db, client)
    assert profile.prepaid_balance == Decimal("300.00")
    assert entries[-1].type == PrepaidTransactionType.CREDIT
    assert entries[-1].amount == Decimal("250.00")
    assert entries[-1].resulting_balance == Decimal("300.00")
    assert entries[-1].notes == "Prepaid balance replenishment - invoice paid"
    assert PrepaidService(db).reconcile(profile.id)["consistent"] is True


async def test_paid_top_up_invoice_is_credited_once(db, studio, service, top_up, june_15):
    workspace, trainer = studio
    client, invoice = await top_up()

    service.update_invoice(workspace.id, trainer.id, invoice.id, status=InvoiceStatus.PAID, now=june_15)
    service.update_invoice(workspace.id, trainer.id, invoice.id, status=InvoiceStatus.PAID, now=june_15)
    with pytest.raises(ValidationError):
        PrepaidService(db).record_top_up_payment(invoice, june_15)

    profile, entries = prepaid_ledger(db, client)
    assert profile.prepaid_balance == Decimal("300.00")
    assert len(entries) == 2


async def test_paid_and_cancelled_invoices_are_final(db, make, studio, service, june_15):
    workspace, trainer = studio
    client = make.client(workspace)
    appointment = make.appointment(trainer, client, datetime(2025, 6, 14, 9, 0), status=COMPLETED)
    invoice = await service.generate_per_session_invoice(appointment.id, now=june_15)

    paid = service.update_invoice(workspace.id, trainer.id, invoice.id, status=InvoiceStatus.PAID, now=june_15)
    assert paid.paid_at == june_15

    with pytest.raises(ValidationError):
        service.update_invoice(workspace.id, trainer.id, invoice.id, status=InvoiceStatus.SENT)

    noted = service.update_invoice(workspace.id, trainer.id, invoice.id, notes="Paid by bank transfer")
    assert noted.status == InvoiceStatus.PAID
    assert noted.notes == "Paid by bank transfer"


async def test_update_invoice_checks_ownership(db, make, studio, service, june_15):
    workspace, trainer = studio
    client = make.client(workspace)
    appointment = make.appointment(trainer, client, datetime(2025, 6, 14, 9, 0), status=COMPLETED)
    invoice = await service.generate_per_session_invoice(appointment.id, now=june_15)
    colleague = make.trainer(workspace)
    other_workspace = make.workspace()

    with pytest.raises(AuthorizationError):
        service.update_invoice(workspace.id, colleague.id, invoice.id, status=InvoiceStatus.PAID)
    with pytest.raises(NotFoundError):
        service.update_invoice(other_workspace.id, trainer.id, invoice.id, status=InvoiceStatus.PAID)
    with pytest.raises(ValidationError):
        service.update_invoice(workspace.id, trainer.id, invoice.id, status="REFUNDED")


async def test_void_top_up_keeps_balance_as_zero_credit(db, studio, service, top_up):
    workspace, trainer = studio
    client, invoice = await top_up()

    result = service.void_invoice_and_switch_billing(
        workspace.id, trainer.id, invoice.id, BillingFrequency.MONTHLY
    )

    assert result["invoice"].status == InvoiceStatus.CANCELLED
    assert result["retained_balance"] == Decimal("50.00")
    profile, entries = prepaid_ledger(db, client)
    assert profile.billing_frequency == BillingFrequency.MONTHLY
    assert profile.prepaid_balance == Decimal("50.00")
    assert entries[-1].type == PrepaidTransactionType.CREDIT
    assert entries[-1].amount == Decimal("0")
    assert entries[-1].resulting_balance == Decimal("50.00")
    assert "switching to MONTHLY billing" in entries[-1].notes
    assert PrepaidService(db).reconcile(profile.id)["consistent"] is True


async def test_void_top_up_with_empty_balance_writes_no_ledger_row(db, make, studio, service, june_15):
    workspace, trainer = studio
    client = make.client(
        workspace, billing_frequency=BillingFrequency.PREPAID, prepaid_target_balance="200.00"
    )
    invoice = await service.generate_top_up_invoice(client.id, trainer.id, now=june_15)

    result = service.void_invoice_and_switch_billing(
        workspace.id, trainer.id, invoice.id, BillingFrequency.PER_SESSION
    )

    assert result["transaction"] is None
    profile, entries = prepaid_ledger(db, client)
    assert profile.billing_frequency == BillingFrequency.PER_SESSION
    assert entries == []


async def test_void_and_switch_refusals(db, make, studio, service, top_up, june_15):
    workspace, trainer = studio
    client, invoice = await top_up()
    regular = make.client(workspace)
    appointment = make.appointment(trainer, regular, datetime(2025, 6, 14, 9, 0), status=COMPLETED)
    regular_invoice = await service.generate_per_session_invoice(appointment.id, now=june_15)

    with pytest.raises(ValidationError, match="PER_SESSION or MONTHLY"):
        service.void_invoice_and_switch_billing(workspace.id, trainer.id, invoice.id, BillingFrequency.PREPAID)
    with pytest.raises(ValidationError, match="top-up"):
        service.void_invoice_and_switch_billing(
            workspace.id, trainer.id, regular_invoice.id, BillingFrequency.MONTHLY
        )
    with pytest.raises(AuthorizationError):
        service.void_invoice_and_switch_billing(
            workspace.id, make.trainer(workspace).id, invoice.id, BillingFrequency.MONTHLY
        )
    with pytest.raises(NotFoundError):
        service.void_invoice_and_switch_billing(
            make.workspace().id, trainer.id, invoice.id, BillingFrequency.MONTHLY
        )

    service.void_invoice_and_switch_billing(workspace.id, trainer.id, invoice.id, BillingFrequency.MONTHLY)
    with pytest.raises(ValidationError, match="already cancelled"):
        service.void_invoice_and_switch_billing(workspace.id, trainer.id, invoice.id, BillingFrequency.MONTHLY)


async def test_paid_top_up_cannot_be_voided(db, studio, service, top_up, june_15):
    workspace, trainer = studio
    _, invoice = await top_up()
    service.update_invoice(workspace.id, trainer.id, invoice.id, status=InvoiceStatus.PAID, now=june_15)

    with pytest.raises(ValidationError, match="Cannot void a paid invoice"):
        service.void_invoice_and_switch_billing(workspace.id, trainer.id, invoice.id, BillingFrequency.MONTHLY)


async def test_balance_check_generates_top_up_below_session_rate(db, make, studio, service, june_15):
    workspace, trainer = studio
    client = make.client(
        workspace,
        billing_frequency=BillingFrequency.PREPAID,
        session_rate="80.00",
        prepaid_target_balance="400.00",
    )
    PrepaidService(db).add_credit(workspace.id, client.id, "50.00")

    first = await service.check_balance_and_generate_invoice_if_needed(client.id, trainer.id, now=june_15)
    second = await service.check_balance_and_generate_invoice_if_needed(client.id, trainer.id, now=june_15)

    assert first["invoice_generated"] is True
    assert second == first
    invoice = db.query(Invoice).filter(Invoice.id == first["invoice_id"]).one()
    assert invoice.is_prepaid_top_up is True
    assert invoice.amount == Decimal("350.00")


async def test_balance_check_leaves_covered_and_non_prepaid_clients(db, make, studio, service, june_15):
    workspace, trainer = studio
    covered = make.client(
        workspace,
        billing_frequency=BillingFrequency.PREPAID,
        session_rate="80.00",
        prepaid_balance="80.00",
        prepaid_target_balance="400.00",
    )
    monthly = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY)

    for client in (covered, monthly):
        result = await service.check_balance_and_generate_invoice_if_needed(client.id, trainer.id, now=june_15)
        assert result == {"invoice_generated": False, "invoice_id": None}
    assert db.query(Invoice).count() == 0
    with pytest.raises(NotFoundError):
        await service.check_balance_and_generate_invoice_if_needed(
            covered.id, trainer.id, now=june_15, workspace_id=make.workspace().id
        )
