"""
Email Service using Resend
Invoice, invoice reminder and appointment reminder emails to clients
"""

import logging
from datetime import datetime
from decimal import Decimal
from html import escape
from typing import Optional, Union

import resend
from fastapi.concurrency import run_in_threadpool

from .config import EMAIL_FROM_ADDRESS, FRONTEND_URL, RESEND_API_KEY
from .shared.errors import ConfigurationError, TransientProviderError

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


async def send_email(
    to: Union[str, list[str]],
    subject: str,
    html_content: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Send an email through Resend

    Raises:
        ConfigurationError: If RESEND_API_KEY is not set
        TransientProviderError: If the send fails
    """
    if not RESEND_API_KEY:
        logger.error("❌ No email service configured - RESEND_API_KEY missing")
        raise ConfigurationError("Email service not configured")

    recipients = [to] if isinstance(to, str) else to
    try:
        logger.info(f"📧 Sending email via Resend to: {recipients}")
        # The Resend SDK is synchronous
        response = await run_in_threadpool(
            resend.Emails.send,
            {
                "from": from_address or EMAIL_FROM_ADDRESS,
                "to": recipients,
                "subject": subject,
                "html": html_content,
            },
        )
    except Exception as e:
        logger.error(f"❌ Email send error to {recipients}: {e}")
        raise TransientProviderError(f"Failed to send email: {e}", provider="resend") from e

    logger.info(f"✅ Email sent successfully via Resend: {response}")
    return response


def invoice_email_template(
    client_name: str,
    trainer_name: str,
    amount: Decimal,
    due_date: datetime,
    line_items: list[tuple[str, Decimal]],
    invoice_url: str,
    is_prepaid_top_up: bool = False,
) -> str:
    """Invoice notification body for a client"""
    rows = "".join(
        f"<tr><td>{escape(description)}</td><td align=\"right\">${total:,.2f}</td></tr>"
        for description, total in line_items
    )
    intro = (
        f"It's time to top up your prepaid training balance with <strong>{escape(trainer_name)}</strong>."
        if is_prepaid_top_up
        else f"You have a new invoice from <strong>{escape(trainer_name)}</strong>."
    )
    return f"""
    <p>Hi {escape(client_name)},</p>
    <p>{intro}</p>
    <p style="font-size:28px;font-weight:700">${amount:,.2f}</p>
    <p>Due {due_date.strftime('%b %d, %Y')}</p>
    <table width="100%" cellpadding="4">{rows}</table>
    <p><a href="{invoice_url}">View invoice</a></p>
    """


async def send_invoice_email(invoice) -> dict:
    """Send an invoice (with client, trainer and line items loaded) to its client"""
    line_items = [(item.description, item.total) for item in invoice.line_items]
    html_content = invoice_email_template(
        client_name=invoice.client.full_name,
        trainer_name=invoice.trainer.full_name,
        amount=invoice.amount,
        due_date=invoice.due_date,
        line_items=line_items,
        invoice_url=f"{FRONTEND_URL}/client/invoices/{invoice.id}",
        is_prepaid_top_up=invoice.is_prepaid_top_up,
    )
    subject = (
        f"Prepaid balance top-up from {invoice.trainer.full_name}"
        if invoice.is_prepaid_top_up
        else f"New invoice from {invoice.trainer.full_name}"
    )
    return await send_email(to=invoice.client.email, subject=subject, html_content=html_content)


def invoice_reminder_email_template(
    client_name: str,
    trainer_name: str,
    amount: Decimal,
    due_date: datetime,
    invoice_url: str,
    reminder_type: str,
) -> str:
    """Reminder body for an unpaid invoice; reminder_type is due_soon, on_due or overdue"""
    due = due_date.strftime("%b %d, %Y")
    lines = {
        "due_soon": f"Your invoice from <strong>{escape(trainer_name)}</strong> is due on {due}.",
        "on_due": f"Your invoice from <strong>{escape(trainer_name)}</strong> is due today.",
        "overdue": f"Your invoice from <strong>{escape(trainer_name)}</strong> was due on {due} and is now overdue.",
    }
    return f"""
    <p>Hi {escape(client_name)},</p>
    <p>{lines[reminder_type]}</p>
    <p style="font-size:28px;font-weight:700">${amount:,.2f}</p>
    <p><a href="{invoice_url}">View and pay invoice</a></p>
    """


def appointment_reminder_email_template(client_name: str, trainer_name: str, start_time: datetime) -> str:
    return f"""
    <p>Hi {escape(client_name)},</p>
    <p>This is a reminder of your training session with <strong>{escape(trainer_name)}</strong>
    on {start_time.strftime('%A, %b %d at %I:%M %p')}.</p>
    <p>Need to reschedule? Contact your trainer as soon as possible.</p>
    """
