"""Prepaid domain schemas - Pydantic models for the prepaid ledger endpoints"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from ..billing.schemas import ClientSummary


class AddCreditRequest(BaseModel):
    """Schema for adding prepaid credit; amount is checked (> 0) by the service"""

    amount: Decimal
    notes: Optional[str] = Field(None, max_length=500)


class AddCreditResponse(BaseModel):
    success: bool
    new_balance: float
    transaction_id: int


class TransactionAppointment(BaseModel):
    id: int
    start_time: datetime


class PrepaidTransactionResponse(BaseModel):
    """One ledger entry; amount is signed (deductions are negative)"""

    id: int
    type: str
    amount: float
    resulting_balance: float
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    appointment: Optional[TransactionAppointment] = None


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class TransactionsResponse(BaseModel):
    transactions: list[PrepaidTransactionResponse]
    pagination: Pagination


class PrepaidClientSummary(BaseModel):
    client: ClientSummary
    current_balance: float
    target_balance: float
    sessions_consumed_since_last_credit: int
    last_transaction_date: Optional[datetime] = None
    balance_status: str  # healthy, low, empty


class PrepaidTotals(BaseModel):
    total_balance: float
    total_target: float
    client_count: int
    clients_needing_attention: int


class PrepaidSummaryResponse(BaseModel):
    clients: list[PrepaidClientSummary]
    totals: PrepaidTotals


class PrepaidBalance(BaseModel):
    current_balance: float
    target_balance: float
    billing_frequency: str


class NextSession(BaseModel):
    id: int
    start_time: datetime
    estimated_cost: float


class ClientPrepaidResponse(BaseModel):
    """Schema for one client's prepaid details"""

    client: ClientSummary
    prepaid: PrepaidBalance
    next_session: Optional[NextSession] = None
    recent_transactions: list[PrepaidTransactionResponse]
