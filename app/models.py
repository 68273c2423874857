from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class UserRole:
    ADMIN = "ADMIN"
    TRAINER = "TRAINER"
    CLIENT = "CLIENT"


class BillingFrequency:
    PER_SESSION = "PER_SESSION"
    MONTHLY = "MONTHLY"
    PREPAID = "PREPAID"

    ALL = (PER_SESSION, MONTHLY, PREPAID)


class AppointmentStatus:
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    RESCHEDULED = "RESCHEDULED"

    # Statuses that occupy a slot for group-session detection
    ACTIVE = (SCHEDULED, COMPLETED)


class GroupSessionMatchingLogic:
    EXACT_MATCH = "EXACT_MATCH"
    START_MATCH = "START_MATCH"
    END_MATCH = "END_MATCH"
    ANY_OVERLAP = "ANY_OVERLAP"

    DEFAULT = EXACT_MATCH
    ALL = (EXACT_MATCH, START_MATCH, END_MATCH, ANY_OVERLAP)


class Workspace(Base):
    """Tenant boundary: one trainer's business with its clients and appointments"""

    __tablename__ = "workspaces"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    users = relationship("User", back_populates="workspace")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=False)
    phone = Column(String(50), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.CLIENT)  # ADMIN, TRAINER, CLIENT
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    workspace = relationship("Workspace", back_populates="users")
    client_profile = relationship(
        "ClientProfile", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )
    trainer_settings = relationship(
        "TrainerSettings", back_populates="trainer", uselist=False, cascade="all, delete-orphan"
    )


class ClientProfile(Base):
    """Billing configuration and prepaid balance for a client"""

    __tablename__ = "client_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)

    # Billing
    billing_frequency = Column(
        String(20), nullable=False, default=BillingFrequency.PER_SESSION
    )  # PER_SESSION, MONTHLY, PREPAID
    session_rate = Column(Numeric(10, 2), nullable=False)
    group_session_rate = Column(Numeric(10, 2), nullable=True)
    auto_invoice_enabled = Column(Boolean, default=True, nullable=False)

    # Prepaid: balance is authoritative, prepaid_transactions is the audit trail
    prepaid_balance = Column(Numeric(10, 2), nullable=False, default=0)
    prepaid_target_balance = Column(Numeric(10, 2), nullable=True)

    # Notification preferences
    invoice_alerts_enabled = Column(Boolean, default=True, nullable=False)
    appointment_reminders_enabled = Column(Boolean, default=True, nullable=False)
    sms_notifications_enabled = Column(Boolean, default=True, nullable=False)
    email_notifications_enabled = Column(Boolean, default=True, nullable=False)

    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="client_profile")
    prepaid_transactions = relationship(
        "PrepaidTransaction", back_populates="client_profile", cascade="all, delete-orphan"
    )


class TrainerSettings(Base):
    """Per-trainer billing and scheduling preferences"""

    __tablename__ = "trainer_settings"

    id = Column(Integer, primary_key=True, index=True)
    trainer_id = Column(Integer, ForeignKey("users.id"), nullable=False, unique=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False, index=True)

    # Group sessions
    default_group_session_rate = Column(Numeric(10, 2), nullable=True)
    group_session_matching_logic = Column(
        String(20), nullable=False, default=GroupSessionMatchingLogic.DEFAULT
    )  # EXACT_MATCH, START_MATCH, END_MATCH, ANY_OVERLAP

    # Invoicing
    auto_invoicing_enabled = Column(Boolean, default=True, nullable=False)
    monthly_invoice_day = Column(Integer, default=1, nullable=False)  # 1-31
    default_invoice_due_days = Column(Integer, default=30, nullable=False)

    # Invoice reminders
    invoice_reminder_before_due = Column(Boolean, default=True, nullable=False)
    invoice_reminder_before_due_days = Column(Integer, default=3, nullable=False)
    invoice_reminder_on_due = Column(Boolean, default=True, nullable=False)
    invoice_reminder_overdue = Column(Boolean, default=True, nullable=False)
    invoice_reminder_overdue_days = Column(JSON, default=lambda: [3, 7], nullable=True)  # days past due

    # Appointment reminders
    appointment_reminder_enabled = Column(Boolean, default=True, nullable=False)
    appointment_reminder_hours = Column(JSON, default=lambda: [24], nullable=True)  # hours before start

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    trainer = relationship("User", back_populates="trainer_settings")


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (Index("ix_appointments_trainer_slot", "trainer_id", "workspace_id", "start_time"),)

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False, index=True)
    trainer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(
        String(20), nullable=False, default=AppointmentStatus.SCHEDULED
    )  # SCHEDULED, COMPLETED, CANCELLED, RESCHEDULED
    notes = Column(Text, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Google Calendar event pushed for this appointment, if any
    google_event_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    trainer = relationship("User", foreign_keys=[trainer_id])
    client = relationship("User", foreign_keys=[client_id])
    line_items = relationship("InvoiceLineItem", back_populates="appointment")
