"""Billing domain schemas - Pydantic models for invoices and the monthly preview read model"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class ClientSummary(BaseModel):
    id: int
    full_name: str
    email: str


class PreviewSession(BaseModel):
    """One completed, not yet invoiced session"""

    id: int
    date: datetime
    is_group_session: bool
    rate: float


class CompletedSessions(BaseModel):
    sessions: list[PreviewSession]
    group_count: int
    individual_count: int
    total: float


class ScheduledSessions(BaseModel):
    count: int
    group_count: int
    individual_count: int


class ClientPreview(BaseModel):
    """Per-client billing preview for the current month"""

    client: ClientSummary
    individual_rate: float
    group_rate: Optional[float] = None
    auto_invoice_enabled: bool
    completed: CompletedSessions
    scheduled: ScheduledSessions
    projected_total: float


class BillingPeriod(BaseModel):
    start: datetime
    end: datetime
    month: str  # e.g. "June 2025"


class PreviewTotals(BaseModel):
    completed_total: float
    projected_total: float
    client_count: int


class MonthlyPreviewResponse(BaseModel):
    """Schema for the monthly billing preview"""

    billing_period: BillingPeriod
    monthly_invoice_day: int
    clients: list[ClientPreview]
    totals: PreviewTotals



class InvoiceUpdate(BaseModel):
    """Schema for changing an invoice's status or notes"""

    status: Optional[Literal["DRAFT", "SENT", "PAID", "OVERDUE", "CANCELLED"]] = None
    notes: Optional[str] = Field(None, max_length=1000)


class InvoiceResponse(BaseModel):
    id: int
    client_id: int
    amount: float
    status: str
    due_date: datetime
    notes: Optional[str] = None
    is_prepaid_top_up: bool
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class VoidAndSwitchRequest(BaseModel):
    new_billing_frequency: Literal["PER_SESSION", "MONTHLY"]


class VoidAndSwitchResponse(BaseModel):
    success: bool
    invoice_id: int
    billing_frequency: str
    retained_balance: float


class BalanceCheckResponse(BaseModel):
    invoice_generated: bool
    invoice_id: Optional[int] = None
