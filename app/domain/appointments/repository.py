"""Appointment repository - Database operations for the appointment lifecycle"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session, joinedload

from ...models import Appointment, AppointmentStatus, User

# Statuses the completion job moves to COMPLETED once the session has ended
COMPLETABLE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.RESCHEDULED)


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_appointment(db: Session, appointment_id: int, workspace_id: Optional[int] = None) -> Optional[Appointment]:
        """Get an appointment (with client profile), optionally scoped to a workspace"""
        query = (
            db.query(Appointment)
            .options(joinedload(Appointment.client).joinedload(User.client_profile))
            .filter(Appointment.id == appointment_id)
        )
        if workspace_id is not None:
            query = query.filter(Appointment.workspace_id == workspace_id)
        return query.first()

    @staticmethod
    def get_ended_appointments(db: Session, now: datetime) -> list[Appointment]:
        """SCHEDULED/RESCHEDULED appointments whose end time has passed"""
        return (
            db.query(Appointment)
            .options(joinedload(Appointment.client).joinedload(User.client_profile))
            .filter(
                Appointment.status.in_(COMPLETABLE_STATUSES),
                Appointment.end_time < now,
            )
            .order_by(Appointment.end_time.asc(), Appointment.id.asc())
            .all()
        )

    @staticmethod
    def update_status(
        db: Session, appointment: Appointment, status: str, cancellation_reason: Optional[str] = None
    ) -> Appointment:
        appointment.status = status
        if cancellation_reason:
            appointment.cancellation_reason = cancellation_reason
        try:
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(appointment)
        return appointment
