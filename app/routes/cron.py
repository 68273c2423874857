"""
Cron endpoints for the external scheduler

Each endpoint runs one batch job and returns its summary. All of them
require `Authorization: Bearer <CRON_SECRET>`.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..auth import verify_cron_secret
from ..database import get_db
from ..domain.appointments.service import AppointmentService
from ..domain.billing.invoice_service import InvoiceService
from ..services.google_calendar_service import sync_calendars
from ..services.notification_service import (
    retry_failed_notifications,
    send_appointment_reminders,
    send_invoice_reminders,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["Cron"], dependencies=[Depends(verify_cron_secret)])


@router.get("/generate-invoices")
async def generate_invoices(db: Session = Depends(get_db)):
    """Generate monthly invoices for trainers whose invoice day is today"""
    logger.info("🗓️ Cron: monthly invoice generation triggered")
    return await InvoiceService(db).process_monthly_invoices()


@router.get("/retry-notifications")
async def retry_notifications(db: Session = Depends(get_db)):
    logger.info("🔄 Cron: notification retry triggered")
    return await retry_failed_notifications(db)


@router.get("/complete-appointments")
async def complete_appointments(db: Session = Depends(get_db)):
    """Complete ended appointments and bill them"""
    logger.info("📋 Cron: appointment completion triggered")
    return await AppointmentService(db).complete_past_appointments()


@router.get("/sync-calendars")
async def sync_google_calendars(db: Session = Depends(get_db)):
    logger.info("📡 Cron: Google Calendar sync triggered")
    return await sync_calendars(db)


@router.get("/invoice-reminders")
async def invoice_reminders(db: Session = Depends(get_db)):
    """Send due-soon, due-today and overdue invoice reminders"""
    logger.info("📄 Cron: invoice reminders triggered")
    return await send_invoice_reminders(db)


@router.get("/appointment-reminders")
async def appointment_reminders(db: Session = Depends(get_db)):
    logger.info("⏰ Cron: appointment reminders triggered")
    return await send_appointment_reminders(db)
