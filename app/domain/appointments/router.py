"""Appointment router - FastAPI endpoints for the appointment lifecycle"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db, get_session_factory
from ...models import User
from .schemas import AppointmentResponse, CancelAppointmentRequest
from .service import AppointmentService, remove_calendar_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


def get_appointment_service(db: Session = Depends(get_db)) -> AppointmentService:
    """Dependency injection for AppointmentService"""
    return AppointmentService(db)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_id: int,
    background_tasks: BackgroundTasks,
    body: Optional[CancelAppointmentRequest] = None,
    current_user: User = Depends(get_current_user),
    service: AppointmentService = Depends(get_appointment_service),
    session_factory=Depends(get_session_factory),
):
    """Cancel an appointment; its Google Calendar event is removed after the response"""
    appointment = service.cancel_appointment(current_user, appointment_id, body.reason if body else None)

    if appointment.google_event_id:
        background_tasks.add_task(
            remove_calendar_event, appointment.trainer_id, appointment.google_event_id, session_factory
        )

    return AppointmentResponse.model_validate(appointment)
