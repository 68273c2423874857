from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app import email_service
from app.domain.appointments import service as appointments_service
from app.models import AppointmentStatus, BillingFrequency, ClientProfile
from app.models_invoice import Invoice, InvoiceStatus, PrepaidTransaction

CRON_HEADERS = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture
def studio(make):
    workspace = make.workspace()
    trainer = make.trainer(workspace)
    client = make.client(
        workspace,
        full_name="Alice",
        billing_frequency=BillingFrequency.PREPAID,
        session_rate="80.00",
        prepaid_target_balance="400.00",
    )
    return workspace, trainer, client


def test_health(api):
    assert api.get("/health").json() == {"status": "healthy"}


def test_missing_token_is_rejected(api):
    assert api.get("/prepaid").status_code == 401
    assert api.get("/invoices/monthly-preview").status_code == 401


def test_invalid_token_is_rejected(api):
    response = api.get("/prepaid", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401


def test_clients_cannot_use_trainer_routes(api, studio, auth):
    _, _, client = studio

    response = api.get("/prepaid", headers=auth(client))

    assert response.status_code == 403


def test_add_credit_and_read_back(api, db, studio, auth):
    _, trainer, client = studio

    response = api.post(f"/prepaid/{client.id}", json={"amount": 250, "notes": "10-pack"}, headers=auth(trainer))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["new_balance"] == 250.0

    details = api.get(f"/prepaid/{client.id}", headers=auth(trainer)).json()
    assert details["prepaid"]["current_balance"] == 250.0
    assert details["prepaid"]["target_balance"] == 400.0
    assert details["recent_transactions"][0]["id"] == body["transaction_id"]
    assert details["recent_transactions"][0]["notes"] == "10-pack"


def test_negative_credit_is_rejected_without_writes(api, db, studio, auth):
    _, trainer, client = studio

    response = api.post(f"/prepaid/{client.id}", json={"amount": -5}, headers=auth(trainer))

    assert response.status_code == 400
    db.expire_all()
    assert db.query(PrepaidTransaction).count() == 0
    assert db.query(ClientProfile).filter_by(user_id=client.id).one().prepaid_balance == Decimal("0")


def test_non_numeric_credit_is_a_validation_error(api, studio, auth):
    _, trainer, client = studio

    response = api.post(f"/prepaid/{client.id}", json={"amount": "lots"}, headers=auth(trainer))

    assert response.status_code == 422


def test_other_workspace_clients_are_not_found(api, make, studio, auth):
    _, _, client = studio
    other_trainer = make.trainer(make.workspace("Other"), full_name="Other Trainer")

    assert api.get(f"/prepaid/{client.id}", headers=auth(other_trainer)).status_code == 404
    assert api.post(f"/prepaid/{client.id}", json={"amount": 10}, headers=auth(other_trainer)).status_code == 404
    assert api.get(f"/prepaid/{client.id}/transactions", headers=auth(other_trainer)).status_code == 404


def test_transactions_pagination(api, studio, auth):
    _, trainer, client = studio
    for amount in (10, 20, 30):
        api.post(f"/prepaid/{client.id}", json={"amount": amount}, headers=auth(trainer))

    first_page = api.get(f"/prepaid/{client.id}/transactions?limit=2", headers=auth(trainer)).json()
    last_page = api.get(f"/prepaid/{client.id}/transactions?limit=2&offset=2", headers=auth(trainer)).json()

    assert [t["amount"] for t in first_page["transactions"]] == [30.0, 20.0]
    assert first_page["pagination"] == {"total": 3, "limit": 2, "offset": 0, "has_more": True}
    assert last_page["pagination"]["has_more"] is False
    assert api.get(f"/prepaid/{client.id}/transactions?limit=0", headers=auth(trainer)).status_code == 422


def test_prepaid_summary(api, studio, auth):
    _, trainer, client = studio
    api.post(f"/prepaid/{client.id}", json={"amount": 50}, headers=auth(trainer))

    body = api.get("/prepaid", headers=auth(trainer)).json()

    assert body["clients"][0]["client"]["full_name"] == "Alice"
    assert body["clients"][0]["balance_status"] == "low"
    assert body["totals"] == {
        "total_balance": 50.0,
        "total_target": 400.0,
        "client_count": 1,
        "clients_needing_attention": 1,
    }


def test_monthly_preview_endpoint(api, make, studio, auth):
    workspace, trainer, _ = studio
    monthly = make.client(workspace, full_name="Mo", billing_frequency=BillingFrequency.MONTHLY)
    make.appointment(trainer, monthly, datetime.now() + timedelta(days=400))

    response = api.get("/invoices/monthly-preview", headers=auth(trainer))

    assert response.status_code == 200
    body = response.json()
    assert [c["client"]["full_name"] for c in body["clients"]] == ["Mo"]
    assert body["monthly_invoice_day"] == 1


def test_cancel_appointment_removes_calendar_event(api, make, studio, auth, monkeypatch):
    _, trainer, client = studio
    appointment = make.appointment(
        trainer, client, datetime.now() + timedelta(days=2), google_event_id="evt_123"
    )
    removed = []

    async def fake_delete(db, trainer_id, google_event_id):
        removed.append((trainer_id, google_event_id))
        return True

    monkeypatch.setattr(appointments_service, "delete_calendar_event", fake_delete)

    response = api.post(
        f"/appointments/{appointment.id}/cancel", json={"reason": "Travelling"}, headers=auth(client)
    )

    assert response.status_code == 200
    assert response.json()["status"] == AppointmentStatus.CANCELLED
    assert response.json()["cancellation_reason"] == "Travelling"
    assert removed == [(trainer.id, "evt_123")]


def test_cancel_appointment_without_body(api, make, studio, auth):
    _, trainer, client = studio
    appointment = make.appointment(trainer, client, datetime.now() + timedelta(days=2))

    response = api.post(f"/appointments/{appointment.id}/cancel", headers=auth(trainer))

    assert response.status_code == 200
    assert response.json()["status"] == AppointmentStatus.CANCELLED


def test_cancel_appointment_errors(api, make, studio, auth):
    workspace, trainer, client = studio
    stranger = make.client(workspace, full_name="Stranger")
    appointment = make.appointment(trainer, client, datetime.now() + timedelta(days=2))

    assert api.post(f"/appointments/{appointment.id}/cancel", headers=auth(stranger)).status_code == 403
    assert api.post("/appointments/999999/cancel", headers=auth(trainer)).status_code == 404


@pytest.mark.parametrize(
    "path",
    [
        "/cron/generate-invoices",
        "/cron/retry-notifications",
        "/cron/complete-appointments",
        "/cron/sync-calendars",
        "/cron/invoice-reminders",
        "/cron/appointment-reminders",
    ],
)
def test_cron_endpoints_require_secret(api, path):
    assert api.get(path).status_code == 401
    assert api.get(path, headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert api.get(path, headers=CRON_HEADERS).status_code == 200


def test_cron_complete_appointments(api, make, studio):
    workspace, trainer, _ = studio
    monthly = make.client(workspace, billing_frequency=BillingFrequency.MONTHLY)
    make.appointment(trainer, monthly, datetime.now() - timedelta(hours=3))

    body = api.get("/cron/complete-appointments", headers=CRON_HEADERS).json()

    assert body["completed"] == 1
    assert body["results"][0]["billing"] == "monthly"


@pytest.fixture
def top_up_invoice(api, studio, auth, monkeypatch):
    """Raise a top-up invoice over the API; email is unconfigured so it stays DRAFT"""
    monkeypatch.setattr(email_service, "RESEND_API_KEY", None)
    _, trainer, client = studio

    def raise_invoice():
        response = api.post(f"/invoices/prepaid-top-up/{client.id}", headers=auth(trainer))
        assert response.status_code == 200
        return response.json()

    return raise_invoice


def test_balance_check_endpoint_raises_top_up(api, db, studio, top_up_invoice):
    body = top_up_invoice()

    assert body["invoice_generated"] is True
    invoice = db.query(Invoice).filter(Invoice.id == body["invoice_id"]).one()
    assert invoice.status == InvoiceStatus.DRAFT
    assert invoice.amount == Decimal("400.00")


def test_marking_top_up_paid_credits_balance(api, studio, auth, top_up_invoice):
    _, trainer, client = studio
    invoice_id = top_up_invoice()["invoice_id"]

    response = api.patch(f"/invoices/{invoice_id}", json={"status": "PAID"}, headers=auth(trainer))

    assert response.status_code == 200
    assert response.json()["status"] == "PAID"
    assert response.json()["paid_at"] is not None
    details = api.get(f"/prepaid/{client.id}", headers=auth(trainer)).json()
    assert details["prepaid"]["current_balance"] == 400.0
    assert details["recent_transactions"][0]["notes"] == "Prepaid balance replenishment - invoice paid"


def test_invoice_update_errors(api, make, studio, auth, top_up_invoice):
    workspace, trainer, client = studio
    invoice_id = top_up_invoice()["invoice_id"]

    colleague = make.trainer(workspace)
    path = f"/invoices/{invoice_id}"

    assert api.patch(path, json={"status": "PAID"}, headers=auth(colleague)).status_code == 403
    assert api.patch(path, json={"status": "PAID"}, headers=auth(client)).status_code == 403
    assert api.patch(path, json={"status": "REFUNDED"}, headers=auth(trainer)).status_code == 422
    assert api.patch("/invoices/999999", json={"status": "PAID"}, headers=auth(trainer)).status_code == 404


def test_void_and_switch_endpoint(api, studio, auth, top_up_invoice):
    _, trainer, client = studio
    api.post(f"/prepaid/{client.id}", json={"amount": 30}, headers=auth(trainer))
    invoice_id = top_up_invoice()["invoice_id"]
    path = f"/invoices/{invoice_id}/void-and-switch"

    assert api.post(path, json={"new_billing_frequency": "PREPAID"}, headers=auth(trainer)).status_code == 422

    response = api.post(path, json={"new_billing_frequency": "PER_SESSION"}, headers=auth(trainer))

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "invoice_id": invoice_id,
        "billing_frequency": "PER_SESSION",
        "retained_balance": 30.0,
    }
    details = api.get(f"/prepaid/{client.id}", headers=auth(trainer)).json()
    assert details["prepaid"]["billing_frequency"] == "PER_SESSION"
    assert details["prepaid"]["current_balance"] == 30.0

    again = api.post(path, json={"new_billing_frequency": "PER_SESSION"}, headers=auth(trainer))
    assert again.status_code == 400
    assert again.json() == {"detail": "Invoice is already cancelled"}
