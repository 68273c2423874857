"""Prepaid router - FastAPI endpoints for prepaid balances"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import require_trainer
from ...database import get_db
from ...models import User
from ..billing.schemas import ClientSummary
from .schemas import (
    AddCreditRequest,
    AddCreditResponse,
    ClientPrepaidResponse,
    NextSession,
    Pagination,
    PrepaidBalance,
    PrepaidClientSummary,
    PrepaidSummaryResponse,
    PrepaidTotals,
    PrepaidTransactionResponse,
    TransactionAppointment,
    TransactionsResponse,
)
from .service import PrepaidService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prepaid", tags=["Prepaid"])


def get_prepaid_service(db: Session = Depends(get_db)) -> PrepaidService:
    """Dependency injection for PrepaidService"""
    return PrepaidService(db)


def _client_summary(client: User) -> ClientSummary:
    return ClientSummary(id=client.id, full_name=client.full_name, email=client.email)


def _transaction_response(transaction) -> PrepaidTransactionResponse:
    appointment = transaction.appointment
    return PrepaidTransactionResponse(
        id=transaction.id,
        type=transaction.type,
        amount=float(transaction.amount),
        resulting_balance=float(transaction.resulting_balance),
        notes=transaction.notes,
        created_at=transaction.created_at,
        appointment=(
            TransactionAppointment(id=appointment.id, start_time=appointment.start_time)
            if appointment
            else None
        ),
    )


@router.get("", response_model=PrepaidSummaryResponse)
async def get_prepaid_clients(
    current_user: User = Depends(require_trainer),
    service: PrepaidService = Depends(get_prepaid_service),
):
    """Get all prepaid clients with their balances"""
    summaries = service.get_prepaid_clients_summary(current_user.workspace_id)
    clients = [
        PrepaidClientSummary(
            client=_client_summary(s["client"]),
            current_balance=float(s["current_balance"]),
            target_balance=float(s["target_balance"]),
            sessions_consumed_since_last_credit=s["sessions_consumed_since_last_credit"],
            last_transaction_date=s["last_transaction_date"],
            balance_status=s["balance_status"],
        )
        for s in summaries
    ]
    return PrepaidSummaryResponse(
        clients=clients,
        totals=PrepaidTotals(
            total_balance=float(sum(s["current_balance"] for s in summaries)),
            total_target=float(sum(s["target_balance"] for s in summaries)),
            client_count=len(clients),
            clients_needing_attention=sum(1 for c in clients if c.balance_status in ("low", "empty")),
        ),
    )


@router.get("/{client_id}", response_model=ClientPrepaidResponse)
async def get_client_prepaid(
    client_id: int,
    current_user: User = Depends(require_trainer),
    service: PrepaidService = Depends(get_prepaid_service),
):
    """Get prepaid details for a specific client"""
    details = service.get_client_details(current_user.workspace_id, current_user.id, client_id)
    profile = details["profile"]
    next_appointment = details["next_appointment"]

    return ClientPrepaidResponse(
        client=_client_summary(details["client"]),
        prepaid=PrepaidBalance(
            current_balance=float(profile.prepaid_balance or 0),
            target_balance=float(profile.prepaid_target_balance or 0),
            billing_frequency=profile.billing_frequency,
        ),
        next_session=(
            NextSession(
                id=next_appointment.id,
                start_time=next_appointment.start_time,
                estimated_cost=float(profile.session_rate),
            )
            if next_appointment
            else None
        ),
        recent_transactions=[_transaction_response(t) for t in details["recent_transactions"]],
    )


@router.post("/{client_id}", response_model=AddCreditResponse)
async def add_prepaid_credit(
    client_id: int,
    body: AddCreditRequest,
    current_user: User = Depends(require_trainer),
    service: PrepaidService = Depends(get_prepaid_service),
):
    """Add credit to a client's prepaid balance"""
    result = service.add_credit(current_user.workspace_id, client_id, body.amount, body.notes)
    return AddCreditResponse(
        success=True,
        new_balance=float(result["new_balance"]),
        transaction_id=result["transaction"].id,
    )


@router.get("/{client_id}/transactions", response_model=TransactionsResponse)
async def get_prepaid_transactions(
    client_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(require_trainer),
    service: PrepaidService = Depends(get_prepaid_service),
):
    """Get paginated transaction history for a client"""
    _, profile = service.get_client_and_profile(current_user.workspace_id, client_id)
    transactions, total = service.get_transactions(profile.id, limit, offset)
    return TransactionsResponse(
        transactions=[_transaction_response(t) for t in transactions],
        pagination=Pagination(
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + limit < total,
        ),
    )
