"""Billing repository - Database operations for billing previews and invoices"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session, joinedload

from ...models import (
    Appointment,
    AppointmentStatus,
    BillingFrequency,
    ClientProfile,
    TrainerSettings,
    User,
    UserRole,
)
from ...models_invoice import Invoice, InvoiceLineItem, InvoiceStatus


class BillingRepository:
    """Repository for billing database operations"""

    @staticmethod
    def get_trainer_settings(db: Session, trainer_id: int) -> Optional[TrainerSettings]:
        """Get a trainer's settings row, if one exists"""
        return db.query(TrainerSettings).filter(TrainerSettings.trainer_id == trainer_id).first()

    @staticmethod
    def get_client(db: Session, client_id: int, workspace_id: Optional[int] = None) -> Optional[User]:
        """Get a client user (with profile), optionally scoped to a workspace"""
        query = (
            db.query(User)
            .options(joinedload(User.client_profile))
            .filter(User.id == client_id, User.role == UserRole.CLIENT)
        )
        if workspace_id is not None:
            query = query.filter(User.workspace_id == workspace_id)
        return query.first()

    @staticmethod
    def get_clients_by_billing_frequency(
        db: Session, workspace_id: int, billing_frequency: str, auto_invoice_only: bool = False
    ) -> list[User]:
        """Get the workspace's clients on a billing frequency, ordered by name"""
        query = (
            db.query(User)
            .join(ClientProfile, ClientProfile.user_id == User.id)
            .options(joinedload(User.client_profile))
            .filter(
                User.workspace_id == workspace_id,
                User.role == UserRole.CLIENT,
                ClientProfile.billing_frequency == billing_frequency,
            )
        )
        if auto_invoice_only:
            query = query.filter(ClientProfile.auto_invoice_enabled.is_(True))
        return query.order_by(User.full_name.asc(), User.id.asc()).all()

    @staticmethod
    def get_monthly_clients(db: Session, workspace_id: int) -> list[User]:
        """Get clients billed monthly"""
        return BillingRepository.get_clients_by_billing_frequency(
            db, workspace_id, BillingFrequency.MONTHLY
        )

    @staticmethod
    def get_completed_unbilled_appointments(
        db: Session, trainer_id: int, client_id: int, start: datetime, end: datetime
    ) -> list[Appointment]:
        """COMPLETED appointments starting in [start, end] not yet linked to a line item"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.trainer_id == trainer_id,
                Appointment.client_id == client_id,
                Appointment.status == AppointmentStatus.COMPLETED,
                Appointment.start_time >= start,
                Appointment.start_time <= end,
                ~Appointment.line_items.any(),
            )
            .order_by(Appointment.start_time.asc(), Appointment.id.asc())
            .all()
        )

    @staticmethod
    def get_scheduled_appointments(
        db: Session, trainer_id: int, client_id: int, start: datetime, end: datetime
    ) -> list[Appointment]:
        """SCHEDULED appointments starting in [start, end]"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.trainer_id == trainer_id,
                Appointment.client_id == client_id,
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.start_time >= start,
                Appointment.start_time <= end,
            )
            .order_by(Appointment.start_time.asc(), Appointment.id.asc())
            .all()
        )

    @staticmethod
    def get_next_scheduled_appointment(
        db: Session, trainer_id: int, client_id: int, after: datetime
    ) -> Optional[Appointment]:
        """Earliest SCHEDULED appointment starting after a moment"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.trainer_id == trainer_id,
                Appointment.client_id == client_id,
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.start_time > after,
            )
            .order_by(Appointment.start_time.asc())
            .first()
        )

    @staticmethod
    def get_appointment(db: Session, appointment_id: int) -> Optional[Appointment]:
        """Get an appointment with its client and profile loaded"""
        return (
            db.query(Appointment)
            .options(joinedload(Appointment.client).joinedload(User.client_profile))
            .filter(Appointment.id == appointment_id)
            .first()
        )

    @staticmethod
    def get_line_item_for_appointment(db: Session, appointment_id: int) -> Optional[InvoiceLineItem]:
        """Line item already billing this appointment, if any"""
        return (
            db.query(InvoiceLineItem).filter(InvoiceLineItem.appointment_id == appointment_id).first()
        )

    @staticmethod
    def get_invoice(db: Session, invoice_id: int, workspace_id: Optional[int] = None) -> Optional[Invoice]:
        """Get an invoice with its client and profile loaded, optionally scoped to a workspace"""
        query = (
            db.query(Invoice)
            .options(joinedload(Invoice.client).joinedload(User.client_profile))
            .filter(Invoice.id == invoice_id)
        )
        if workspace_id is not None:
            query = query.filter(Invoice.workspace_id == workspace_id)
        return query.first()

    @staticmethod
    def get_invoice_created_since(
        db: Session, client_id: int, trainer_id: int, since: datetime
    ) -> Optional[Invoice]:
        """Non-top-up invoice for this client/trainer created on or after a moment"""
        return (
            db.query(Invoice)
            .filter(
                Invoice.client_id == client_id,
                Invoice.trainer_id == trainer_id,
                Invoice.is_prepaid_top_up.is_(False),
                Invoice.created_at >= since,
            )
            .first()
        )

    @staticmethod
    def get_pending_top_up_invoice(db: Session, client_id: int) -> Optional[Invoice]:
        """Open (DRAFT or SENT) prepaid top-up invoice for a client"""
        return (
            db.query(Invoice)
            .filter(
                Invoice.client_id == client_id,
                Invoice.is_prepaid_top_up.is_(True),
                Invoice.status.in_(InvoiceStatus.PENDING),
            )
            .first()
        )

    @staticmethod
    def get_trainers_to_invoice(
        db: Session, invoice_day: int, is_last_day_of_month: bool = False
    ) -> list[TrainerSettings]:
        """Trainer settings with auto-invoicing enabled and this monthly invoice day"""
        query = db.query(TrainerSettings).filter(TrainerSettings.auto_invoicing_enabled.is_(True))
        if is_last_day_of_month:
            # Invoice days past the end of a short month run on its last day
            query = query.filter(TrainerSettings.monthly_invoice_day >= invoice_day)
        else:
            query = query.filter(TrainerSettings.monthly_invoice_day == invoice_day)
        return query.all()

    @staticmethod
    def create_invoice(
        db: Session,
        workspace_id: int,
        trainer_id: int,
        client_id: int,
        amount: Decimal,
        due_date: datetime,
        line_items: list[dict],
        status: str = InvoiceStatus.SENT,
        notes: Optional[str] = None,
        is_prepaid_top_up: bool = False,
        created_at: Optional[datetime] = None,
    ) -> Invoice:
        """Create an invoice and its line items in one commit"""
        invoice = Invoice(
            workspace_id=workspace_id,
            trainer_id=trainer_id,
            client_id=client_id,
            amount=amount,
            due_date=due_date,
            status=status,
            notes=notes,
            is_prepaid_top_up=is_prepaid_top_up,
        )
        if created_at is not None:
            invoice.created_at = created_at
        invoice.line_items = [InvoiceLineItem(**item) for item in line_items]
        db.add(invoice)
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(invoice)
        return invoice

    @staticmethod
    def update_invoice_status(db: Session, invoice: Invoice, status: str, sent_at: Optional[datetime] = None) -> Invoice:
        """Update an invoice's status"""
        invoice.status = status
        if sent_at is not None:
            invoice.sent_at = sent_at
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def mark_invoice_paid(db: Session, invoice_id: int, paid_at: datetime) -> bool:
        """
        Mark an invoice PAID unless it already is; not committed.

        A conditional UPDATE, so of two concurrent payments only one sees True.
        """
        result = db.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status != InvoiceStatus.PAID)
            .values(status=InvoiceStatus.PAID, paid_at=paid_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
