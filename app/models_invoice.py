"""
Invoice and Prepaid Ledger Models
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Notes prefix of top-up invoices, also recognised on rows that predate the flag
TOP_UP_NOTES_PREFIX = "Prepaid balance replenishment"


class InvoiceStatus:
    DRAFT = "DRAFT"
    SENT = "SENT"
    PAID = "PAID"
    OVERDUE = "OVERDUE"
    CANCELLED = "CANCELLED"

    PENDING = (DRAFT, SENT)
    FINAL = (PAID, CANCELLED)
    ALL = (DRAFT, SENT, PAID, OVERDUE, CANCELLED)


class PrepaidTransactionType:
    CREDIT = "CREDIT"
    DEDUCTION = "DEDUCTION"


class Invoice(Base):
    """Invoice issued by a trainer to a client"""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id"), nullable=False, index=True)
    trainer_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    client_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=InvoiceStatus.DRAFT)  # DRAFT, SENT, PAID, OVERDUE, CANCELLED
    due_date = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)
    is_prepaid_top_up = Column(Boolean, default=False, nullable=False)

    sent_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    # Relationships
    client = relationship("User", foreign_keys=[client_id])
    trainer = relationship("User", foreign_keys=[trainer_id])
    line_items = relationship(
        "InvoiceLineItem", back_populates="invoice", cascade="all, delete-orphan"
    )

    @property
    def is_top_up(self) -> bool:
        return bool(self.is_prepaid_top_up) or TOP_UP_NOTES_PREFIX in (self.notes or "")


class InvoiceLineItem(Base):
    """One billed item; an appointment can be linked to at most one line item"""

    __tablename__ = "invoice_line_items"

    id = Column(Integer, primary_key=True, index=True)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True, unique=True)

    description = Column(String(500), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)

    # Relationships
    invoice = relationship("Invoice", back_populates="line_items")
    appointment = relationship("Appointment", back_populates="line_items")


class PrepaidTransaction(Base):
    """Append-only ledger entry; amount is signed (credits positive, deductions negative)"""

    __tablename__ = "prepaid_transactions"

    id = Column(Integer, primary_key=True, index=True)
    client_profile_id = Column(Integer, ForeignKey("client_profiles.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)  # CREDIT, DEDUCTION
    amount = Column(Numeric(10, 2), nullable=False)
    resulting_balance = Column(Numeric(10, 2), nullable=False)
    notes = Column(String(500), nullable=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())

    # Relationships
    client_profile = relationship("ClientProfile", back_populates="prepaid_transactions")
    appointment = relationship("Appointment")
