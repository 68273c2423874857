"""Appointment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CancelAppointmentRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class AppointmentResponse(BaseModel):
    """Schema for appointment response"""

    model_config = ConfigDict(from_attributes=True)

    id: int
    workspace_id: int
    trainer_id: int
    client_id: int
    start_time: datetime
    end_time: datetime
    status: str
    cancellation_reason: Optional[str] = None
    google_event_id: Optional[str] = None
