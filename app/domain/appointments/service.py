"""Appointment service - Completion job, calendar status updates and cancellation"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...database import SessionLocal
from ...models import Appointment, AppointmentStatus, BillingFrequency, User, UserRole
from ...services.google_calendar_service import delete_calendar_event, update_calendar_event
from ...shared.errors import AuthorizationError, NotFoundError, ValidationError
from ..billing.invoice_service import InvoiceService
from ..prepaid.service import PrepaidService
from .repository import AppointmentRepository

logger = logging.getLogger(__name__)


async def remove_calendar_event(trainer_id: int, google_event_id: str, session_factory=SessionLocal) -> None:
    """
    Background task: delete an appointment's Google Calendar event.

    Runs after the response is sent, so it opens its own session. Failures
    are logged; the event stays in the trainer's calendar.
    """
    db = session_factory()
    try:
        deleted = await delete_calendar_event(db, trainer_id, google_event_id)
        if not deleted:
            logger.warning(f"⚠️ Google Calendar event {google_event_id} was not removed for trainer {trainer_id}")
    except Exception as e:
        logger.error(f"❌ Background calendar removal failed for event {google_event_id}: {e}")
    finally:
        db.close()


class AppointmentService:
    """Service layer for the appointment lifecycle"""

    def __init__(
        self,
        db: Session,
        invoice_service: Optional[InvoiceService] = None,
        prepaid_service: Optional[PrepaidService] = None,
    ):
        self.db = db
        self.repo = AppointmentRepository()
        self.invoice_service = invoice_service or InvoiceService(db)
        self.prepaid_service = prepaid_service or PrepaidService(db)

    async def bill_completed_appointment(self, appointment: Appointment, now: datetime) -> str:
        """Run the billing step for a newly completed appointment; returns what was done"""
        profile = appointment.client.client_profile if appointment.client else None
        if profile is None:
            logger.warning(f"⚠️ No client profile for appointment {appointment.id}, nothing billed")
            return "no_profile"

        if profile.billing_frequency == BillingFrequency.PER_SESSION:
            invoice = await self.invoice_service.generate_per_session_invoice(appointment.id, now)
            return "invoiced" if invoice else "not_invoiced"

        if profile.billing_frequency == BillingFrequency.PREPAID:
            client_id, trainer_id = appointment.client_id, appointment.trainer_id
            result = self.prepaid_service.deduct_session(appointment)
            if result["should_generate_invoice"]:
                await self.invoice_service.generate_top_up_invoice(client_id, trainer_id, now)
                return "prepaid_deducted_top_up_invoiced" if result["success"] else "prepaid_top_up_invoiced"
            return "prepaid_deducted" if result["success"] else "prepaid_not_deducted"

        # MONTHLY clients are billed by the monthly invoice job
        return "monthly"

    async def update_calendar_status(self, appointment: Appointment) -> str:
        """Retitle an appointment's Google event after a status change; returns what was done"""
        appointment_id = appointment.id
        try:
            updated = await update_calendar_event(self.db, appointment)
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Calendar update failed for appointment {appointment_id}: {e}")
            return "error"
        return "updated" if updated else "not_updated"

    async def complete_past_appointments(self, now: Optional[datetime] = None) -> dict:
        """
        Batch job: mark ended appointments COMPLETED and bill them.

        Each appointment is handled in isolation. A billing or calendar
        failure is recorded on the appointment's result entry; the
        appointment stays COMPLETED.
        """
        now = now or datetime.now()
        appointments = self.repo.get_ended_appointments(self.db, now)
        logger.info(f"📋 Found {len(appointments)} past appointments to complete")

        results = []
        for appointment in appointments:
            appointment_id = appointment.id
            client_name = appointment.client.full_name if appointment.client else None
            try:
                self.repo.update_status(self.db, appointment, AppointmentStatus.COMPLETED)
            except Exception as e:
                logger.error(f"❌ Failed to complete appointment {appointment_id}: {e}")
                results.append(
                    {"appointment_id": appointment_id, "client_name": client_name, "status": "error", "error": str(e)}
                )
                continue

            logger.info(f"✅ Completed appointment {appointment_id} ({client_name})")
            entry = {"appointment_id": appointment_id, "client_name": client_name, "status": "success"}
            try:
                entry["billing"] = await self.bill_completed_appointment(appointment, now)
            except Exception as e:
                self.db.rollback()
                logger.error(f"❌ Billing failed for completed appointment {appointment_id}: {e}")
                entry["billing"] = "error"
                entry["error"] = str(e)
            if appointment.google_event_id:
                entry["calendar"] = await self.update_calendar_status(appointment)
            results.append(entry)

        completed = sum(1 for r in results if r["status"] == "success")
        logger.info(f"✅ Auto-completed {completed} appointments")
        return {"completed": completed, "failed": len(results) - completed, "results": results}

    def cancel_appointment(self, user: User, appointment_id: int, reason: Optional[str] = None) -> Appointment:
        """
        Cancel a scheduled appointment as its trainer or its client.

        Raises:
            NotFoundError: If the appointment is missing or in another workspace
            AuthorizationError: If the user is neither the trainer nor the client
            ValidationError: If the appointment is completed or already cancelled
        """
        appointment = self.repo.get_appointment(self.db, appointment_id, user.workspace_id)
        if not appointment:
            raise NotFoundError("Appointment not found")

        is_trainer = user.role == UserRole.TRAINER and appointment.trainer_id == user.id
        is_client = user.role == UserRole.CLIENT and appointment.client_id == user.id
        if not (is_trainer or is_client):
            raise AuthorizationError("Only the appointment's trainer or client can cancel it")

        if appointment.status == AppointmentStatus.COMPLETED:
            raise ValidationError("Completed appointments cannot be cancelled")
        if appointment.status == AppointmentStatus.CANCELLED:
            raise ValidationError("Appointment is already cancelled")

        appointment = self.repo.update_status(
            self.db, appointment, AppointmentStatus.CANCELLED, cancellation_reason=reason
        )
        logger.info(f"✅ Appointment {appointment_id} cancelled by user {user.id}")
        return appointment
