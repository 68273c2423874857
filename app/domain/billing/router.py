"""Billing router - FastAPI endpoints for invoices and the monthly preview"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import require_trainer
from ...database import get_db
from ...models import User
from ...models_invoice import Invoice
from .invoice_service import InvoiceService
from .preview_service import BillingPreviewService
from .schemas import (
    BalanceCheckResponse,
    InvoiceResponse,
    InvoiceUpdate,
    MonthlyPreviewResponse,
    VoidAndSwitchRequest,
    VoidAndSwitchResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["Invoices"])


def get_preview_service(db: Session = Depends(get_db)) -> BillingPreviewService:
    """Dependency injection for BillingPreviewService"""
    return BillingPreviewService(db)


def get_invoice_service(db: Session = Depends(get_db)) -> InvoiceService:
    """Dependency injection for InvoiceService"""
    return InvoiceService(db)


def _invoice_response(invoice: Invoice) -> InvoiceResponse:
    return InvoiceResponse(
        id=invoice.id,
        client_id=invoice.client_id,
        amount=float(invoice.amount),
        status=invoice.status,
        due_date=invoice.due_date,
        notes=invoice.notes,
        is_prepaid_top_up=bool(invoice.is_prepaid_top_up),
        sent_at=invoice.sent_at,
        paid_at=invoice.paid_at,
    )


@router.get("/monthly-preview", response_model=MonthlyPreviewResponse)
async def get_monthly_preview(
    current_user: User = Depends(require_trainer),
    service: BillingPreviewService = Depends(get_preview_service),
):
    """Current month's completed and projected billing for MONTHLY clients"""
    return service.get_monthly_preview(current_user.id, current_user.workspace_id)


@router.post("/prepaid-top-up/{client_id}", response_model=BalanceCheckResponse)
async def check_prepaid_balance(
    client_id: int,
    current_user: User = Depends(require_trainer),
    service: InvoiceService = Depends(get_invoice_service),
):
    """Generate a top-up invoice if a prepaid client's balance cannot cover a session"""
    result = await service.check_balance_and_generate_invoice_if_needed(
        client_id, current_user.id, workspace_id=current_user.workspace_id
    )
    return BalanceCheckResponse(**result)


@router.patch("/{invoice_id}", response_model=InvoiceResponse)
async def update_invoice(
    invoice_id: int,
    body: InvoiceUpdate,
    current_user: User = Depends(require_trainer),
    service: InvoiceService = Depends(get_invoice_service),
):
    """Update an invoice's status or notes"""
    invoice = service.update_invoice(
        current_user.workspace_id, current_user.id, invoice_id, status=body.status, notes=body.notes
    )
    return _invoice_response(invoice)


@router.post("/{invoice_id}/void-and-switch", response_model=VoidAndSwitchResponse)
async def void_and_switch_billing(
    invoice_id: int,
    body: VoidAndSwitchRequest,
    current_user: User = Depends(require_trainer),
    service: InvoiceService = Depends(get_invoice_service),
):
    """Void a pending top-up invoice and move the client to per-session or monthly billing"""
    result = service.void_invoice_and_switch_billing(
        current_user.workspace_id, current_user.id, invoice_id, body.new_billing_frequency
    )
    return VoidAndSwitchResponse(
        success=True,
        invoice_id=result["invoice"].id,
        billing_frequency=result["billing_frequency"],
        retained_balance=float(result["retained_balance"]),
    )
