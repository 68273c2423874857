"""
Notification Models
Delivery log for SMS and email notifications, used by the retry job
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class NotificationChannel:
    SMS = "SMS"
    EMAIL = "EMAIL"


class NotificationStatus:
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    ABANDONED = "ABANDONED"  # attempt cap reached, no further retries


class NotificationType:
    INVOICE_SENT = "INVOICE_SENT"
    INVOICE_DUE_SOON = "INVOICE_DUE_SOON"
    INVOICE_OVERDUE = "INVOICE_OVERDUE"
    APPOINTMENT_REMINDER = "APPOINTMENT_REMINDER"


class NotificationLog(Base):
    """Track every notification attempt and its retry schedule"""

    __tablename__ = "notification_logs"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Message details
    channel = Column(String(10), nullable=False)  # SMS, EMAIL
    type = Column(String(50), nullable=False)  # INVOICE_SENT, APPOINTMENT_REMINDER, ...
    phone_number = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)
    message_content = Column(Text, nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True)

    # Delivery status
    status = Column(String(20), nullable=False, default=NotificationStatus.PENDING)
    external_id = Column(String(255), nullable=True)  # Provider message ID (Twilio SID)
    error_message = Column(Text, nullable=True)

    # Retry bookkeeping
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    recipient = relationship("User")
