"""
Notification Service
Sends SMS and email through injected senders, keeps the delivery log the retry
job works from, and runs the invoice and appointment reminder jobs
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from .. import email_service
from ..config import (
    FRONTEND_URL,
    NOTIFICATION_MAX_ATTEMPTS,
    NOTIFICATION_RETRY_BATCH_SIZE,
    NOTIFICATION_RETRY_DELAY_MINUTES,
)
from ..models import Appointment, AppointmentStatus, TrainerSettings, User
from ..models_invoice import Invoice, InvoiceStatus
from ..models_notification import NotificationChannel, NotificationLog, NotificationStatus, NotificationType
from ..shared.errors import ConfigurationError, TransientProviderError
from ..shared.validators import format_phone_to_e164, is_valid_phone_number, mask_phone_number
from .twilio_service import SendResult, TwilioSMSSender

logger = logging.getLogger(__name__)

# Due dates within this distance of a reminder's target day match it
INVOICE_REMINDER_WINDOW = timedelta(hours=12)
# Appointment starts within this distance of "now + reminder hours" match it
APPOINTMENT_REMINDER_WINDOW = timedelta(minutes=5)

# A reminder of the same type is not repeated within these periods
INVOICE_REMINDER_COOLDOWN = timedelta(hours=24)
APPOINTMENT_REMINDER_COOLDOWN = timedelta(hours=1)

INVOICE_REMINDER_TYPES = {
    "due_soon": NotificationType.INVOICE_DUE_SOON,
    "on_due": NotificationType.INVOICE_DUE_SOON,
    "overdue": NotificationType.INVOICE_OVERDUE,
}


class NotificationService:
    """Service layer for logged notifications: retryable SMS and one-shot email"""

    def __init__(self, db: Session, sender=None, send_email=None):
        self.db = db
        # Anything with `async send(recipient, content) -> SendResult`
        self.sender = sender or TwilioSMSSender()
        # Async callable (to, subject, html_content) -> provider response dict
        self.send_email = send_email or email_service.send_email

    async def _deliver(self, recipient: str, content: str) -> SendResult:
        try:
            return await self.sender.send(recipient, content)
        except TransientProviderError as e:
            return SendResult(success=False, error=e.message)

    def _retry_at(self, now: datetime) -> datetime:
        return now + timedelta(minutes=NOTIFICATION_RETRY_DELAY_MINUTES)

    def _record_failure(self, log: NotificationLog, error: Optional[str], now: datetime) -> None:
        """FAILED with a retry time, or ABANDONED once the attempt cap is reached"""
        log.error_message = error
        if log.attempt_count >= NOTIFICATION_MAX_ATTEMPTS:
            log.status = NotificationStatus.ABANDONED
            log.next_retry_at = None
        else:
            log.status = NotificationStatus.FAILED
            log.next_retry_at = self._retry_at(now)

    async def _attempt(self, log: NotificationLog, recipient: str, content: str, now: datetime) -> SendResult:
        """
        Call the sender for a log row that is already saved.

        An unexpected sender error is recorded on the log before it is
        re-raised, so the row never stays PENDING.
        """
        try:
            return await self._deliver(recipient, content)
        except Exception as e:
            self._record_failure(log, f"Unexpected send error: {e}", now)
            self.db.commit()
            raise

    async def send_sms(
        self,
        workspace_id: int,
        recipient_id: int,
        to_phone: Optional[str],
        body: str,
        notification_type: str,
        appointment_id: Optional[int] = None,
        invoice_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SendResult:
        """
        Send an SMS and record the attempt.

        The log row is written before the provider call so a crash mid-send
        still leaves a trace. A failed send is scheduled for retry.
        """
        if not is_valid_phone_number(to_phone):
            logger.warning(f"⚠️ Invalid phone number for user {recipient_id}, SMS not sent")
            return SendResult(success=False, error="Invalid phone number")

        now = now or datetime.now()
        formatted_phone = format_phone_to_e164(to_phone)

        log = NotificationLog(
            workspace_id=workspace_id,
            recipient_id=recipient_id,
            channel=NotificationChannel.SMS,
            type=notification_type,
            phone_number=formatted_phone,
            message_content=body,
            status=NotificationStatus.PENDING,
            appointment_id=appointment_id,
            invoice_id=invoice_id,
            attempt_count=1,
            last_attempt_at=now,
        )
        self.db.add(log)
        self.db.commit()
        self.db.refresh(log)

        result = await self._attempt(log, formatted_phone, body, now)

        if result.success:
            log.status = NotificationStatus.SENT
            log.external_id = result.external_id
            log.sent_at = now
            log.next_retry_at = None
            logger.info(f"✅ {notification_type} SMS sent to {mask_phone_number(formatted_phone)}")
        else:
            self._record_failure(log, result.error, now)
            logger.error(
                f"❌ Failed to send {notification_type} SMS to {mask_phone_number(formatted_phone)}: {result.error}"
            )
        self.db.commit()

        return result.model_copy(update={"log_id": log.id})

    async def retry_notification(self, log: NotificationLog, now: Optional[datetime] = None) -> SendResult:
        """
        Re-send a FAILED notification.

        Once the attempt cap is reached a failed retry marks the log ABANDONED
        and clears next_retry_at.
        """
        now = now or datetime.now()

        log.attempt_count = (log.attempt_count or 0) + 1
        log.last_attempt_at = now
        log.status = NotificationStatus.PENDING
        self.db.commit()

        result = await self._attempt(log, log.phone_number, log.message_content, now)

        if result.success:
            log.status = NotificationStatus.SENT
            log.external_id = result.external_id
            log.sent_at = now
            log.next_retry_at = None
            log.error_message = None
            logger.info(f"✅ SMS retry successful for notification {log.id} (SID: {result.external_id})")
        else:
            self._record_failure(log, result.error, now)
            if log.status == NotificationStatus.ABANDONED:
                logger.warning(f"⏭️ Max retries reached for notification {log.id}, abandoning")
            else:
                logger.error(f"❌ SMS retry failed for notification {log.id}: {result.error}")
        self.db.commit()

        return result.model_copy(update={"log_id": log.id})

    async def send_email_notification(
        self,
        workspace_id: int,
        recipient_id: int,
        to_email: Optional[str],
        subject: str,
        html_content: str,
        notification_type: str,
        appointment_id: Optional[int] = None,
        invoice_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SendResult:
        """
        Send an email and record the attempt.

        Emails are not retried: a failed send is logged FAILED without a
        retry time.
        """
        if not to_email:
            logger.warning(f"⚠️ No email address for user {recipient_id}, email not sent")
            return SendResult(success=False, error="No email address")

        now = now or datetime.now()
        log = NotificationLog(
            workspace_id=workspace_id,
            recipient_id=recipient_id,
            channel=NotificationChannel.EMAIL,
            type=notification_type,
            email=to_email,
            message_content=subject,
            status=NotificationStatus.PENDING,
            appointment_id=appointment_id,
            invoice_id=invoice_id,
            attempt_count=1,
            last_attempt_at=now,
        )
        self.db.add(log)
        self.db.commit()
        self.db.refresh(log)

        try:
            response = await self.send_email(to=to_email, subject=subject, html_content=html_content)
        except (TransientProviderError, ConfigurationError) as e:
            result = SendResult(success=False, error=e.message)
        except Exception as e:
            log.status = NotificationStatus.FAILED
            log.error_message = f"Unexpected send error: {e}"
            self.db.commit()
            raise
        else:
            result = SendResult(success=True, external_id=(response or {}).get("id"))

        if result.success:
            log.status = NotificationStatus.SENT
            log.external_id = result.external_id
            log.sent_at = now
            logger.info(f"✅ {notification_type} email sent to user {recipient_id}")
        else:
            log.status = NotificationStatus.FAILED
            log.error_message = result.error
            logger.error(f"❌ Failed to send {notification_type} email to user {recipient_id}: {result.error}")
        self.db.commit()

        return result.model_copy(update={"log_id": log.id})

    def was_sent_since(
        self,
        notification_type: str,
        since: datetime,
        invoice_id: Optional[int] = None,
        appointment_id: Optional[int] = None,
    ) -> bool:
        """Whether a notification of this type for the invoice/appointment was SENT at or after `since`"""
        query = self.db.query(NotificationLog.id).filter(
            NotificationLog.type == notification_type,
            NotificationLog.status == NotificationStatus.SENT,
            NotificationLog.sent_at >= since,
        )
        if invoice_id is not None:
            query = query.filter(NotificationLog.invoice_id == invoice_id)
        if appointment_id is not None:
            query = query.filter(NotificationLog.appointment_id == appointment_id)
        return query.first() is not None

    async def _notify_client(
        self,
        client: User,
        notification_type: str,
        sms_body: str,
        subject: str,
        html_content: str,
        now: datetime,
        invoice_id: Optional[int] = None,
        appointment_id: Optional[int] = None,
    ) -> str:
        """
        Text and/or email a client according to their channel preferences.

        Returns "sent" if any channel delivered, "failed" if every attempted
        channel failed, "skipped" if no channel applied.
        """
        profile = client.client_profile
        attempts = []
        if client.phone and (profile is None or profile.sms_notifications_enabled):
            attempts.append(
                await self.send_sms(
                    workspace_id=client.workspace_id,
                    recipient_id=client.id,
                    to_phone=client.phone,
                    body=sms_body,
                    notification_type=notification_type,
                    appointment_id=appointment_id,
                    invoice_id=invoice_id,
                    now=now,
                )
            )
        if client.email and (profile is None or profile.email_notifications_enabled):
            attempts.append(
                await self.send_email_notification(
                    workspace_id=client.workspace_id,
                    recipient_id=client.id,
                    to_email=client.email,
                    subject=subject,
                    html_content=html_content,
                    notification_type=notification_type,
                    appointment_id=appointment_id,
                    invoice_id=invoice_id,
                    now=now,
                )
            )

        if not attempts:
            return "skipped"
        return "sent" if any(result.success for result in attempts) else "failed"

    async def send_invoice_reminder(
        self, invoice: Invoice, reminder_type: str, now: Optional[datetime] = None
    ) -> str:
        """
        Remind a client about an unpaid invoice.

        Args:
            reminder_type: due_soon, on_due or overdue

        Returns:
            "sent", "skipped" (alerts off, no channel, or already reminded in
            the last 24 hours) or "failed"
        """
        now = now or datetime.now()
        notification_type = INVOICE_REMINDER_TYPES[reminder_type]
        client = invoice.client
        profile = client.client_profile

        if profile is not None and not profile.invoice_alerts_enabled:
            logger.info(f"⏭️ Invoice alerts disabled for client {client.id}")
            return "skipped"
        if self.was_sent_since(notification_type, now - INVOICE_REMINDER_COOLDOWN, invoice_id=invoice.id):
            logger.info(f"⏭️ {notification_type} already sent for invoice {invoice.id}")
            return "skipped"

        trainer_name = invoice.trainer.full_name
        amount = f"${invoice.amount:,.2f}"
        due = invoice.due_date.strftime("%b %d")
        if reminder_type == "overdue":
            sms_body = f"Your {amount} invoice from {trainer_name} was due {due} and is now overdue."
            subject = f"Overdue invoice from {trainer_name}"
        elif reminder_type == "on_due":
            sms_body = f"Reminder: your {amount} invoice from {trainer_name} is due today."
            subject = f"Invoice from {trainer_name} due today"
        else:
            sms_body = f"Reminder: your {amount} invoice from {trainer_name} is due {due}."
            subject = f"Invoice from {trainer_name} due {due}"

        html_content = email_service.invoice_reminder_email_template(
            client_name=client.full_name,
            trainer_name=trainer_name,
            amount=invoice.amount,
            due_date=invoice.due_date,
            invoice_url=f"{FRONTEND_URL}/client/invoices/{invoice.id}",
            reminder_type=reminder_type,
        )
        return await self._notify_client(
            client,
            notification_type,
            f"{sms_body} Reply STOP to unsubscribe.",
            subject,
            html_content,
            now,
            invoice_id=invoice.id,
        )

    async def send_appointment_reminder(self, appointment: Appointment, now: Optional[datetime] = None) -> str:
        """
        Remind a client about an upcoming session.

        Returns:
            "sent", "skipped" (reminders off, no channel, or already reminded
            in the last hour) or "failed"
        """
        now = now or datetime.now()
        client = appointment.client
        profile = client.client_profile

        if profile is not None and not profile.appointment_reminders_enabled:
            logger.info(f"⏭️ Appointment reminders disabled for client {client.id}")
            return "skipped"
        if self.was_sent_since(
            NotificationType.APPOINTMENT_REMINDER, now - APPOINTMENT_REMINDER_COOLDOWN, appointment_id=appointment.id
        ):
            logger.info(f"⏭️ Reminder already sent for appointment {appointment.id}")
            return "skipped"

        trainer_name = appointment.trainer.full_name
        when = appointment.start_time.strftime("%a %b %d at %I:%M %p")
        return await self._notify_client(
            client,
            NotificationType.APPOINTMENT_REMINDER,
            f"Reminder: training session with {trainer_name} on {when}. Reply STOP to unsubscribe.",
            f"Reminder: training session with {trainer_name}",
            email_service.appointment_reminder_email_template(
                client.full_name, trainer_name, appointment.start_time
            ),
            now,
            appointment_id=appointment.id,
        )


def get_notifications_due_for_retry(db: Session, now: datetime) -> list[NotificationLog]:
    """FAILED SMS logs under the attempt cap whose retry time has come, oldest first"""
    return (
        db.query(NotificationLog)
        .filter(
            NotificationLog.status == NotificationStatus.FAILED,
            NotificationLog.channel == NotificationChannel.SMS,
            NotificationLog.attempt_count < NOTIFICATION_MAX_ATTEMPTS,
            NotificationLog.next_retry_at.isnot(None),
            NotificationLog.next_retry_at <= now,
        )
        .order_by(NotificationLog.next_retry_at.asc(), NotificationLog.id.asc())
        .limit(NOTIFICATION_RETRY_BATCH_SIZE)
        .all()
    )


async def retry_failed_notifications(db: Session, sender=None, now: Optional[datetime] = None) -> dict:
    """
    Batch job: retry failed SMS notifications.

    Each notification is retried in isolation; an error on one is logged and
    the batch continues.

    Returns:
        Dict with retried, failed, abandoned and skipped counts
    """
    now = now or datetime.now()
    service = NotificationService(db, sender)
    results = {"retried": 0, "failed": 0, "abandoned": 0, "skipped": 0}

    notifications = get_notifications_due_for_retry(db, now)
    logger.info(f"🔄 Found {len(notifications)} failed notifications to retry")

    for log in notifications:
        if not log.phone_number:
            logger.info(f"⏭️ No phone number for notification {log.id}")
            # Nothing to send to; stop rescheduling it
            log.next_retry_at = None
            db.commit()
            results["skipped"] += 1
            continue

        try:
            result = await service.retry_notification(log, now)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Error retrying notification {log.id}: {e}")
            results["abandoned" if log.status == NotificationStatus.ABANDONED else "failed"] += 1
            continue

        if result.success:
            results["retried"] += 1
        elif log.status == NotificationStatus.ABANDONED:
            results["abandoned"] += 1
        else:
            results["failed"] += 1

    logger.info(
        f"✅ Notification retry complete: {results['retried']} retried, {results['failed']} failed, "
        f"{results['abandoned']} abandoned, {results['skipped']} skipped"
    )
    return results


def get_invoices_due_around(
    db: Session, trainer_id: int, target: datetime, statuses: tuple[str, ...]
) -> list[Invoice]:
    """A trainer's invoices in the given statuses due within 12 hours of `target`"""
    return (
        db.query(Invoice)
        .options(joinedload(Invoice.client).joinedload(User.client_profile), joinedload(Invoice.trainer))
        .filter(
            Invoice.trainer_id == trainer_id,
            Invoice.status.in_(statuses),
            Invoice.due_date >= target - INVOICE_REMINDER_WINDOW,
            Invoice.due_date <= target + INVOICE_REMINDER_WINDOW,
        )
        .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        .all()
    )


def invoice_reminder_schedule(settings: TrainerSettings, now: datetime) -> list[tuple[str, datetime, tuple]]:
    """(reminder type, due date to match, invoice statuses) for each reminder the trainer has on"""
    schedule = []
    if settings.invoice_reminder_before_due:
        days = settings.invoice_reminder_before_due_days or 3
        schedule.append(("due_soon", now + timedelta(days=days), (InvoiceStatus.SENT,)))
    if settings.invoice_reminder_on_due:
        schedule.append(("on_due", now, (InvoiceStatus.SENT,)))
    if settings.invoice_reminder_overdue:
        for days in settings.invoice_reminder_overdue_days or []:
            schedule.append(("overdue", now - timedelta(days=days), (InvoiceStatus.SENT, InvoiceStatus.OVERDUE)))
    return schedule


async def send_invoice_reminders(db: Session, sender=None, send_email=None, now: Optional[datetime] = None) -> dict:
    """
    Batch job: due-soon, due-today and overdue reminders for unpaid invoices.

    An overdue SENT invoice is moved to OVERDUE. Each invoice is handled in
    isolation; an error on one is logged and the batch continues.

    Returns:
        Dict with due_soon, on_due, overdue (reminders sent), skipped and
        failed counts
    """
    now = now or datetime.now()
    service = NotificationService(db, sender, send_email)
    results = {"due_soon": 0, "on_due": 0, "overdue": 0, "skipped": 0, "failed": 0}

    trainers = db.query(TrainerSettings).all()
    logger.info(f"📋 Checking invoice reminders for {len(trainers)} trainers")

    for settings in trainers:
        for reminder_type, target, statuses in invoice_reminder_schedule(settings, now):
            for invoice in get_invoices_due_around(db, settings.trainer_id, target, statuses):
                invoice_id = invoice.id
                try:
                    if reminder_type == "overdue" and invoice.status == InvoiceStatus.SENT:
                        logger.info(f"⚠️ Invoice {invoice_id} is past due, marking OVERDUE")
                        invoice.status = InvoiceStatus.OVERDUE
                        db.commit()
                    outcome = await service.send_invoice_reminder(invoice, reminder_type, now)
                except Exception as e:
                    db.rollback()
                    logger.error(f"❌ Failed to send {reminder_type} reminder for invoice {invoice_id}: {e}")
                    results["failed"] += 1
                    continue
                results[reminder_type if outcome == "sent" else outcome] += 1

    logger.info(
        f"✅ Invoice reminders complete: {results['due_soon']} due soon, {results['on_due']} due today, "
        f"{results['overdue']} overdue, {results['skipped']} skipped, {results['failed']} failed"
    )
    return results


async def send_appointment_reminders(
    db: Session, sender=None, send_email=None, now: Optional[datetime] = None
) -> dict:
    """
    Batch job: remind clients of sessions starting in each of the trainer's
    reminder lead times (24 hours by default), give or take 5 minutes.

    Meant to run every 10 minutes. Each appointment is handled in isolation.

    Returns:
        Dict with sent, skipped and failed counts
    """
    now = now or datetime.now()
    service = NotificationService(db, sender, send_email)
    results = {"sent": 0, "skipped": 0, "failed": 0}

    trainers = db.query(TrainerSettings).filter(TrainerSettings.appointment_reminder_enabled.is_(True)).all()

    for settings in trainers:
        for hours in settings.appointment_reminder_hours or [24]:
            target = now + timedelta(hours=hours)
            appointments = (
                db.query(Appointment)
                .options(
                    joinedload(Appointment.client).joinedload(User.client_profile),
                    joinedload(Appointment.trainer),
                )
                .filter(
                    Appointment.trainer_id == settings.trainer_id,
                    Appointment.status.in_((AppointmentStatus.SCHEDULED, AppointmentStatus.RESCHEDULED)),
                    Appointment.start_time >= target - APPOINTMENT_REMINDER_WINDOW,
                    Appointment.start_time <= target + APPOINTMENT_REMINDER_WINDOW,
                )
                .all()
            )
            for appointment in appointments:
                appointment_id = appointment.id
                try:
                    outcome = await service.send_appointment_reminder(appointment, now)
                except Exception as e:
                    db.rollback()
                    logger.error(f"❌ Failed to send reminder for appointment {appointment_id}: {e}")
                    results["failed"] += 1
                    continue
                results[outcome] += 1

    logger.info(
        f"✅ Appointment reminders complete: {results['sent']} sent, "
        f"{results['skipped']} skipped, {results['failed']} failed"
    )
    return results
