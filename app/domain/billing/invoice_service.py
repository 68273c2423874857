"""Invoice service - Automatic invoice generation and delivery"""

import calendar
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...email_service import send_invoice_email
from ...models import AppointmentStatus, BillingFrequency, TrainerSettings
from ...models_invoice import TOP_UP_NOTES_PREFIX, Invoice, InvoiceStatus
from ...models_notification import NotificationType
from ...services.notification_service import NotificationService
from ...shared.errors import (
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
    TransientProviderError,
    ValidationError,
)
from ..prepaid.repository import PrepaidRepository
from .group_sessions import GroupSessionDetector
from .preview_service import billing_period_for
from .rates import resolve_session_rate, session_description
from .repository import BillingRepository

logger = logging.getLogger(__name__)

DEFAULT_DUE_DAYS = 30


def due_date_for(settings: Optional[TrainerSettings], now: datetime) -> datetime:
    due_days = (settings.default_invoice_due_days if settings else None) or DEFAULT_DUE_DAYS
    return now + timedelta(days=due_days)


def previous_month_period(now: datetime) -> tuple[datetime, datetime]:
    """Calendar month before the one containing `now`"""
    first_of_this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return billing_period_for(first_of_this_month - timedelta(days=1))


class InvoiceService:
    """
    Service layer for invoices.

    Email delivery and SMS notification are injected so jobs and tests can
    swap them: `send_email` is an async callable taking the invoice,
    `notifier` is a NotificationService.
    """

    def __init__(self, db: Session, send_email=None, notifier: Optional[NotificationService] = None):
        self.db = db
        self.repo = BillingRepository()
        self.prepaid_repo = PrepaidRepository()
        self.send_email = send_email or send_invoice_email
        self.notifier = notifier or NotificationService(db)

    async def deliver_invoice(self, invoice: Invoice) -> Invoice:
        """
        Email an invoice and text the client about it.

        An invoice whose email could not be sent is put back to DRAFT. SMS
        failures are left in the notification log for the retry job.
        """
        try:
            await self.send_email(invoice)
            logger.info(f"✅ Invoice {invoice.id} email sent to {invoice.client.email}")
        except (TransientProviderError, ConfigurationError) as e:
            logger.error(f"❌ Failed to send invoice {invoice.id} email: {e.message}")
            self.repo.update_invoice_status(self.db, invoice, InvoiceStatus.DRAFT)

        client = invoice.client
        if client.phone:
            body = (
                f"New invoice from {invoice.trainer.full_name}: ${invoice.amount:,.2f} due "
                f"{invoice.due_date.strftime('%b %d')}. Contact your trainer with questions. "
                f"Reply STOP to unsubscribe."
            )
            result = await self.notifier.send_sms(
                workspace_id=invoice.workspace_id,
                recipient_id=client.id,
                to_phone=client.phone,
                body=body,
                notification_type=NotificationType.INVOICE_SENT,
                invoice_id=invoice.id,
            )
            if not result.success:
                logger.warning(f"⚠️ Invoice {invoice.id} SMS not sent: {result.error}")

        return invoice

    async def generate_per_session_invoice(
        self, appointment_id: int, now: Optional[datetime] = None
    ) -> Optional[Invoice]:
        """
        Invoice a single completed appointment of a PER_SESSION client.

        Returns None when the appointment does not qualify or is already billed.
        """
        now = now or datetime.now()
        logger.info(f"📄 Generating per-session invoice for appointment {appointment_id}")

        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            logger.warning(f"⚠️ Appointment not found: {appointment_id}")
            return None
        if appointment.status != AppointmentStatus.COMPLETED:
            logger.info(f"⏭️ Appointment {appointment_id} not completed, skipping invoice")
            return None

        profile = appointment.client.client_profile
        if not profile:
            logger.warning(f"⚠️ Client profile not found for client {appointment.client_id}")
            return None
        if not profile.auto_invoice_enabled:
            logger.info(f"⏭️ Auto-invoicing disabled for client {appointment.client_id}")
            return None
        if profile.billing_frequency != BillingFrequency.PER_SESSION:
            logger.info(f"⏭️ Client {appointment.client_id} is billed {profile.billing_frequency}, skipping")
            return None
        if self.repo.get_line_item_for_appointment(self.db, appointment_id):
            logger.info(f"⏭️ Invoice already exists for appointment {appointment_id}")
            return None

        settings = self.repo.get_trainer_settings(self.db, appointment.trainer_id)
        detector = GroupSessionDetector(self.db, settings.group_session_matching_logic if settings else None)
        info = detector.classify(appointment)
        rate = resolve_session_rate(profile, settings, info.is_group_session)

        logger.info(f"📊 Session type: {'GROUP' if info.is_group_session else 'INDIVIDUAL'}, rate: ${rate}")

        try:
            invoice = self.repo.create_invoice(
                self.db,
                workspace_id=appointment.workspace_id,
                trainer_id=appointment.trainer_id,
                client_id=appointment.client_id,
                amount=rate,
                due_date=due_date_for(settings, now),
                line_items=[
                    {
                        "appointment_id": appointment.id,
                        "description": session_description(info.is_group_session, appointment.start_time),
                        "quantity": 1,
                        "unit_price": rate,
                        "total": rate,
                    }
                ],
                created_at=now,
            )
        except IntegrityError:
            # Another worker linked this appointment first
            logger.info(f"⏭️ Appointment {appointment_id} was invoiced concurrently")
            return None

        logger.info(f"✅ Created invoice {invoice.id} (${rate})")
        return await self.deliver_invoice(invoice)

    async def generate_monthly_invoice(
        self, client_id: int, trainer_id: int, now: Optional[datetime] = None
    ) -> Optional[Invoice]:
        """
        Invoice a MONTHLY client for last month's completed, unbilled sessions.

        Skipped when there is nothing to bill or an invoice for this client
        was already created this month, so re-running the job is safe.
        """
        now = now or datetime.now()
        logger.info(f"📄 Generating monthly invoice for client {client_id}")

        client = self.repo.get_client(self.db, client_id)
        if not client or not client.client_profile:
            logger.warning(f"⚠️ Client or profile not found: {client_id}")
            return None
        profile = client.client_profile
        if not profile.auto_invoice_enabled:
            logger.info(f"⏭️ Auto-invoicing disabled for client {client_id}")
            return None
        if profile.billing_frequency != BillingFrequency.MONTHLY:
            logger.info(f"⏭️ Client {client_id} is billed {profile.billing_frequency}, skipping monthly invoice")
            return None

        period_start, period_end = previous_month_period(now)
        this_month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        if self.repo.get_invoice_created_since(self.db, client_id, trainer_id, this_month_start):
            logger.info(f"⏭️ Monthly invoice already exists for client {client_id}")
            return None

        appointments = self.repo.get_completed_unbilled_appointments(
            self.db, trainer_id, client_id, period_start, period_end
        )
        if not appointments:
            logger.info(f"⏭️ No completed appointments to bill for client {client_id}")
            return None

        settings = self.repo.get_trainer_settings(self.db, trainer_id)
        detector = GroupSessionDetector(self.db, settings.group_session_matching_logic if settings else None)
        pool = detector.load_pool(trainer_id, client.workspace_id, period_start, period_end)

        line_items = []
        total_amount = Decimal("0")
        group_count = 0
        for appointment in appointments:
            info = detector.classify(appointment, pool)
            rate = resolve_session_rate(profile, settings, info.is_group_session)
            total_amount += rate
            group_count += int(info.is_group_session)
            line_items.append(
                {
                    "appointment_id": appointment.id,
                    "description": session_description(info.is_group_session, appointment.start_time),
                    "quantity": 1,
                    "unit_price": rate,
                    "total": rate,
                }
            )

        logger.info(
            f"📊 Sessions: {group_count} group, {len(line_items) - group_count} individual, "
            f"total: ${total_amount}"
        )

        try:
            invoice = self.repo.create_invoice(
                self.db,
                workspace_id=client.workspace_id,
                trainer_id=trainer_id,
                client_id=client_id,
                amount=total_amount,
                due_date=due_date_for(settings, now),
                line_items=line_items,
                notes=f"Monthly invoice for {period_start.strftime('%B %Y')}",
                created_at=now,
            )
        except IntegrityError:
            logger.info(f"⏭️ Sessions for client {client_id} were invoiced concurrently")
            return None

        logger.info(f"✅ Created monthly invoice {invoice.id} (${total_amount})")
        return await self.deliver_invoice(invoice)

    async def generate_top_up_invoice(
        self, client_id: int, trainer_id: int, now: Optional[datetime] = None
    ) -> Optional[Invoice]:
        """
        Invoice a PREPAID client for the amount needed to reach their target balance.

        A client has at most one pending top-up invoice; an existing one is
        returned instead of creating another.
        """
        now = now or datetime.now()
        logger.info(f"📄 Generating prepaid top-up invoice for client {client_id}")

        client = self.repo.get_client(self.db, client_id)
        if not client or not client.client_profile:
            logger.warning(f"⚠️ Client or profile not found: {client_id}")
            return None
        profile = client.client_profile
        if profile.billing_frequency != BillingFrequency.PREPAID:
            logger.warning(f"⚠️ Client {client_id} is not on PREPAID billing, skipping top-up invoice")
            return None

        existing = self.repo.get_pending_top_up_invoice(self.db, client_id)
        if existing:
            logger.info(f"⏭️ Client {client_id} already has pending top-up invoice {existing.id}")
            return existing

        if not profile.prepaid_target_balance:
            logger.warning(f"⚠️ No target balance set for client {client_id}")
            return None

        current_balance = Decimal(profile.prepaid_balance or 0)
        target_balance = Decimal(profile.prepaid_target_balance)
        amount_needed = target_balance - current_balance
        if amount_needed <= 0:
            logger.info(f"⏭️ Balance is at or above target for client {client_id}")
            return None

        last_credit = self.prepaid_repo.get_last_credit(self.db, profile.id)
        deductions = self.prepaid_repo.get_deductions_since(
            self.db, profile.id, last_credit.id if last_credit else None
        )

        # Deductions describe what was consumed; the appointments are already settled
        line_items = [
            {
                "description": deduction.notes or "Prepaid session",
                "quantity": 1,
                "unit_price": -Decimal(deduction.amount),
                "total": -Decimal(deduction.amount),
            }
            for deduction in deductions
        ]
        if not line_items:
            line_items.append(
                {
                    "description": "Prepaid balance top-up",
                    "quantity": 1,
                    "unit_price": amount_needed,
                    "total": amount_needed,
                }
            )

        settings = self.repo.get_trainer_settings(self.db, trainer_id)
        invoice = self.repo.create_invoice(
            self.db,
            workspace_id=client.workspace_id,
            trainer_id=trainer_id,
            client_id=client_id,
            amount=amount_needed,
            due_date=due_date_for(settings, now),
            line_items=line_items,
            notes=f"{TOP_UP_NOTES_PREFIX} to ${target_balance}. Current balance: ${current_balance}",
            is_prepaid_top_up=True,
            created_at=now,
        )

        logger.info(f"✅ Created prepaid top-up invoice {invoice.id} (${amount_needed})")
        return await self.deliver_invoice(invoice)

    def update_invoice(
        self,
        workspace_id: int,
        trainer_id: int,
        invoice_id: int,
        status: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Change an invoice's status and/or notes.

        PAID and CANCELLED are final. Marking a prepaid top-up invoice PAID
        credits its amount to the client's balance in the same commit.

        Raises:
            NotFoundError: If the invoice is not in the workspace
            AuthorizationError: If the invoice belongs to another trainer
            ValidationError: On an unknown status or a change to a final one
        """
        now = now or datetime.now()
        invoice = self.repo.get_invoice(self.db, invoice_id, workspace_id)
        if not invoice:
            raise NotFoundError("Invoice not found")
        if invoice.trainer_id != trainer_id:
            raise AuthorizationError("Not authorized to update this invoice")
        if status is not None and status not in InvoiceStatus.ALL:
            raise ValidationError(f"Unknown invoice status: {status}")
        if status is not None and status != invoice.status and invoice.status in InvoiceStatus.FINAL:
            raise ValidationError(f"Invoice is already {invoice.status.lower()}")

        if notes is not None:
            invoice.notes = notes

        if status == InvoiceStatus.PAID and invoice.status != InvoiceStatus.PAID and invoice.is_top_up:
            from ..prepaid.service import PrepaidService

            PrepaidService(self.db).record_top_up_payment(invoice, now)
            return invoice

        if status is not None and status != invoice.status:
            logger.info(f"🔄 Invoice {invoice_id}: {invoice.status} -> {status}")
            invoice.status = status
            if status == InvoiceStatus.PAID:
                invoice.paid_at = now
            elif status == InvoiceStatus.SENT and invoice.sent_at is None:
                invoice.sent_at = now

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(invoice)
        return invoice

    def void_invoice_and_switch_billing(
        self, workspace_id: int, trainer_id: int, invoice_id: int, new_billing_frequency: str
    ) -> dict:
        """Cancel a pending top-up invoice and switch the client's billing; see PrepaidService"""
        from ..prepaid.service import PrepaidService

        return PrepaidService(self.db).void_invoice_and_switch_billing(
            workspace_id, trainer_id, invoice_id, new_billing_frequency
        )

    async def check_balance_and_generate_invoice_if_needed(
        self,
        client_id: int,
        trainer_id: int,
        now: Optional[datetime] = None,
        workspace_id: Optional[int] = None,
    ) -> dict:
        """
        Raise a top-up invoice for a PREPAID client who cannot cover a session.

        The trigger is a balance at or below zero, or below the client's
        individual session rate. An already pending top-up invoice counts as
        generated.

        Returns:
            Dict with invoice_generated and invoice_id

        Raises:
            NotFoundError: If the client or profile is missing
        """
        client = self.repo.get_client(self.db, client_id, workspace_id)
        if not client or not client.client_profile:
            raise NotFoundError("Client not found")
        profile = client.client_profile

        if profile.billing_frequency != BillingFrequency.PREPAID:
            logger.info(f"⏭️ Client {client_id} is billed {profile.billing_frequency}, no top-up check")
            return {"invoice_generated": False, "invoice_id": None}

        balance = Decimal(profile.prepaid_balance or 0)
        session_rate = Decimal(profile.session_rate or 0)
        if balance > 0 and balance >= session_rate:
            logger.info(f"✅ Client {client_id} balance ${balance} covers a ${session_rate} session")
            return {"invoice_generated": False, "invoice_id": None}

        logger.info(f"⚠️ Client {client_id} balance ${balance} is below the ${session_rate} session rate")
        invoice = await self.generate_top_up_invoice(client_id, trainer_id, now)
        return {"invoice_generated": invoice is not None, "invoice_id": invoice.id if invoice else None}

    async def process_monthly_invoices(self, now: Optional[datetime] = None) -> dict:
        """
        Batch job: monthly invoices for trainers whose invoice day is today.

        Each client is processed in isolation; a failure is logged and the
        batch moves on.
        """
        now = now or datetime.now()
        results = {"trainers": 0, "created": 0, "skipped": 0, "failed": 0}

        is_last_day = now.day == calendar.monthrange(now.year, now.month)[1]
        trainers = self.repo.get_trainers_to_invoice(self.db, now.day, is_last_day)
        logger.info(f"🗓️ Processing monthly invoices for day {now.day}: {len(trainers)} trainers")

        for settings in trainers:
            results["trainers"] += 1
            trainer_id = settings.trainer_id
            clients = self.repo.get_clients_by_billing_frequency(
                self.db, settings.workspace_id, BillingFrequency.MONTHLY, auto_invoice_only=True
            )
            logger.info(f"📋 Trainer {trainer_id}: {len(clients)} monthly billing clients")

            for client in clients:
                client_id = client.id
                try:
                    invoice = await self.generate_monthly_invoice(client_id, trainer_id, now)
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"❌ Failed to generate monthly invoice for client {client_id}: {e}")
                    results["failed"] += 1
                    continue
                if invoice is None:
                    results["skipped"] += 1
                else:
                    results["created"] += 1

        logger.info(
            f"✅ Monthly invoicing complete: {results['created']} created, "
            f"{results['skipped']} skipped, {results['failed']} failed"
        )
        return results
