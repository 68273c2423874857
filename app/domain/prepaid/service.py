"""Prepaid service - Business logic for the prepaid balance ledger"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ...config import PREPAID_INSUFFICIENT_BALANCE_POLICY
from ...models import Appointment, BillingFrequency
from ...models_invoice import (
    TOP_UP_NOTES_PREFIX,
    Invoice,
    InvoiceStatus,
    PrepaidTransaction,
    PrepaidTransactionType,
)
from ...shared.errors import AuthorizationError, NotFoundError, ValidationError
from ...shared.validators import parse_positive_amount
from ..billing.group_sessions import GroupSessionDetector
from ..billing.rates import resolve_session_rate, session_description
from ..billing.repository import BillingRepository
from .repository import PrepaidRepository

logger = logging.getLogger(__name__)

# Balance below this share of the target is reported as "low"
LOW_BALANCE_RATIO = Decimal("0.25")

# Billing a client can be switched to when their top-up invoice is voided
VOID_SWITCH_FREQUENCIES = (BillingFrequency.PER_SESSION, BillingFrequency.MONTHLY)


class InsufficientBalancePolicy:
    """What a debit does when the balance cannot cover it"""

    CAP = "cap"  # debit only what is available
    REJECT = "reject"  # raise ValidationError, write nothing
    ALLOW_NEGATIVE = "allow_negative"  # debit in full, balance goes below zero

    ALL = (CAP, REJECT, ALLOW_NEGATIVE)


def normalize_policy(policy: Optional[str]) -> str:
    policy = (policy or PREPAID_INSUFFICIENT_BALANCE_POLICY or InsufficientBalancePolicy.CAP).lower()
    if policy not in InsufficientBalancePolicy.ALL:
        logger.warning(f"⚠️ Unknown insufficient balance policy '{policy}', using cap")
        return InsufficientBalancePolicy.CAP
    return policy


def balance_status(current_balance: Decimal, target_balance: Decimal) -> str:
    """empty at zero (or below), low under 25% of a positive target, otherwise healthy"""
    if current_balance <= 0:
        return "empty"
    if target_balance > 0 and current_balance < target_balance * LOW_BALANCE_RATIO:
        return "low"
    return "healthy"


class PrepaidService:
    """
    Service layer for prepaid balances.

    ClientProfile.prepaid_balance is the authoritative balance and every
    change to it is written together with a PrepaidTransaction in the same
    database transaction, so the balance always equals the sum of the
    client's signed ledger amounts.
    """

    def __init__(self, db: Session):
        self.db = db
        self.repo = PrepaidRepository()
        self.billing_repo = BillingRepository()

    def get_client_and_profile(self, workspace_id: int, client_id: int):
        client = self.billing_repo.get_client(self.db, client_id, workspace_id)
        if not client:
            raise NotFoundError("Client not found")
        if not client.client_profile:
            raise NotFoundError("Client profile not found")
        return client, client.client_profile

    def add_credit(
        self, workspace_id: int, client_id: int, amount, notes: Optional[str] = None
    ) -> dict:
        """
        Add credit to a client's prepaid balance.

        The balance is incremented in SQL so concurrent credits never lose an
        update. A client not yet on PREPAID billing is switched to it.

        Returns:
            Dict with new_balance and the CREDIT transaction

        Raises:
            ValidationError: If amount is not a positive number
            NotFoundError: If the client or profile is missing
        """
        credit_amount = parse_positive_amount(amount)
        client, profile = self.get_client_and_profile(workspace_id, client_id)

        logger.info(f"💰 Adding ${credit_amount} credit for client {client.id}")

        try:
            new_balance, transaction = self._credit(client.id, profile, credit_amount, notes)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(transaction)
        logger.info(f"✅ Added ${credit_amount} credit, new balance: ${new_balance}")
        return {"new_balance": new_balance, "transaction": transaction}

    def _credit(self, client_id: int, profile, amount: Decimal, notes: Optional[str]):
        """Increment the balance and write the CREDIT row; the caller commits"""
        profile_id = profile.id
        self.repo.increment_balance(self.db, profile_id, amount)
        new_balance = self.repo.get_balance(self.db, profile_id)

        if profile.billing_frequency != BillingFrequency.PREPAID:
            logger.info(f"🔄 Switching client {client_id} to PREPAID billing")
            profile.billing_frequency = BillingFrequency.PREPAID

        transaction = self.repo.add_transaction(
            self.db,
            profile_id,
            PrepaidTransactionType.CREDIT,
            amount,
            new_balance,
            notes=notes or "Prepaid credit added",
        )
        return new_balance, transaction

    def record_top_up_payment(self, invoice: Invoice, paid_at: datetime) -> Decimal:
        """
        Mark a top-up invoice PAID and credit its amount to the client's balance.

        The status change, the balance increment and the CREDIT row are one
        commit. Any other pending change on the invoice (e.g. notes) goes in
        the same commit.

        Returns:
            The new balance

        Raises:
            ValidationError: If the invoice is already PAID
            NotFoundError: If the client has no profile
        """
        profile = invoice.client.client_profile if invoice.client else None
        if profile is None:
            raise NotFoundError("Client profile not found")
        amount = Decimal(invoice.amount)

        logger.info(f"💰 Top-up invoice {invoice.id} paid, crediting ${amount} to client {invoice.client_id}")

        try:
            if not self.billing_repo.mark_invoice_paid(self.db, invoice.id, paid_at):
                raise ValidationError("Invoice is already paid")
            new_balance, _ = self._credit(
                invoice.client_id, profile, amount, f"{TOP_UP_NOTES_PREFIX} - invoice paid"
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(invoice)
        logger.info(f"✅ Top-up invoice {invoice.id} credited, new balance: ${new_balance}")
        return new_balance

    def void_invoice_and_switch_billing(
        self, workspace_id: int, trainer_id: int, invoice_id: int, new_billing_frequency: str
    ) -> dict:
        """
        Cancel a pending top-up invoice and move the client off PREPAID billing.

        The remaining balance stays on the profile. When it is positive a
        zero-amount CREDIT row records it, so the ledger shows why a
        non-prepaid client still holds credit.

        Returns:
            Dict with invoice, billing_frequency, retained_balance and the
            CREDIT transaction (None when there was no balance to retain)

        Raises:
            ValidationError: If the frequency is not PER_SESSION or MONTHLY, or
                the invoice is not a voidable top-up
            NotFoundError: If the invoice or client profile is missing
            AuthorizationError: If the invoice belongs to another trainer
        """
        if new_billing_frequency not in VOID_SWITCH_FREQUENCIES:
            raise ValidationError("New billing frequency must be PER_SESSION or MONTHLY")

        invoice = self.billing_repo.get_invoice(self.db, invoice_id, workspace_id)
        if not invoice:
            raise NotFoundError("Invoice not found")
        if invoice.trainer_id != trainer_id:
            raise AuthorizationError("Not authorized to void this invoice")
        if not invoice.is_top_up:
            raise ValidationError("Only prepaid top-up invoices can be voided")
        if invoice.status == InvoiceStatus.PAID:
            raise ValidationError("Cannot void a paid invoice")
        if invoice.status == InvoiceStatus.CANCELLED:
            raise ValidationError("Invoice is already cancelled")

        profile = invoice.client.client_profile if invoice.client else None
        if profile is None:
            raise NotFoundError("Client profile not found")

        logger.info(
            f"🔄 Voiding top-up invoice {invoice_id}, switching client {invoice.client_id} "
            f"to {new_billing_frequency}"
        )

        try:
            locked = self.repo.get_profile_for_update(self.db, profile.id)
            balance = Decimal(locked.prepaid_balance or 0)
            invoice.status = InvoiceStatus.CANCELLED
            locked.billing_frequency = new_billing_frequency

            transaction = None
            if balance > 0:
                transaction = self.repo.add_transaction(
                    self.db,
                    locked.id,
                    PrepaidTransactionType.CREDIT,
                    Decimal("0"),
                    balance,
                    notes=f"Credit retained (${balance}) - switching to {new_billing_frequency} billing",
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(invoice)
        logger.info(f"✅ Invoice {invoice_id} voided, ${balance} credit retained")
        return {
            "invoice": invoice,
            "billing_frequency": new_billing_frequency,
            "retained_balance": balance,
            "transaction": transaction,
        }

    def consume(
        self,
        workspace_id: int,
        client_id: int,
        amount,
        appointment_id: Optional[int] = None,
        notes: Optional[str] = None,
        policy: Optional[str] = None,
    ) -> dict:
        """
        Debit a client's prepaid balance.

        Returns:
            Dict with new_balance, amount_debited and the DEDUCTION transaction
            (None when nothing could be debited under the cap policy)

        Raises:
            ValidationError: If amount is not positive, or the balance is
                insufficient under the reject policy
            NotFoundError: If the client or profile is missing
        """
        debit_amount = parse_positive_amount(amount)
        _, profile = self.get_client_and_profile(workspace_id, client_id)
        return self._debit(profile.id, debit_amount, appointment_id, notes, normalize_policy(policy))

    def _debit(
        self,
        profile_id: int,
        amount: Decimal,
        appointment_id: Optional[int],
        notes: Optional[str],
        policy: str,
    ) -> dict:
        try:
            locked = self.repo.get_profile_for_update(self.db, profile_id)
            if locked is None:
                raise NotFoundError("Client profile not found")

            if appointment_id is not None:
                existing = self.repo.get_deduction_for_appointment(self.db, appointment_id)
                if existing is not None:
                    self.db.rollback()
                    logger.info(f"⏭️ Deduction already exists for appointment {appointment_id}")
                    return {
                        "new_balance": Decimal(existing.resulting_balance),
                        "amount_debited": -Decimal(existing.amount),
                        "transaction": existing,
                    }

            balance = Decimal(locked.prepaid_balance or 0)
            if balance >= amount or policy == InsufficientBalancePolicy.ALLOW_NEGATIVE:
                debit = amount
            elif policy == InsufficientBalancePolicy.REJECT:
                raise ValidationError(f"Insufficient prepaid balance (${balance} available, ${amount} needed)")
            else:
                debit = max(balance, Decimal("0"))

            if debit <= 0:
                self.db.rollback()
                logger.warning(f"⚠️ Prepaid balance for profile {profile_id} is empty, nothing debited")
                return {"new_balance": balance, "amount_debited": Decimal("0"), "transaction": None}

            self.repo.increment_balance(self.db, profile_id, -debit)
            new_balance = self.repo.get_balance(self.db, profile_id)
            transaction = self.repo.add_transaction(
                self.db,
                profile_id,
                PrepaidTransactionType.DEDUCTION,
                -debit,
                new_balance,
                notes=notes,
                appointment_id=appointment_id,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(transaction)
        logger.info(f"✅ Deducted ${debit} from profile {profile_id}, new balance: ${new_balance}")
        return {"new_balance": new_balance, "amount_debited": debit, "transaction": transaction}

    def deduct_session(self, appointment: Appointment, policy: Optional[str] = None) -> dict:
        """
        Consume a completed session from the client's prepaid balance.

        Returns:
            Dict with success, new_balance, amount_deducted and
            should_generate_invoice (balance empty or below the session rate)
        """
        logger.info(f"💳 Processing prepaid deduction for appointment {appointment.id}")

        existing = self.repo.get_deduction_for_appointment(self.db, appointment.id)
        if existing is not None:
            logger.info(f"⏭️ Deduction already exists for appointment {appointment.id}")
            return {
                "success": True,
                "new_balance": Decimal(existing.resulting_balance),
                "amount_deducted": -Decimal(existing.amount),
                "should_generate_invoice": False,
            }

        profile = appointment.client.client_profile if appointment.client else None
        if profile is None:
            logger.error(f"❌ Client profile not found for appointment {appointment.id}")
            return {
                "success": False,
                "new_balance": Decimal("0"),
                "amount_deducted": Decimal("0"),
                "should_generate_invoice": False,
            }

        settings = self.billing_repo.get_trainer_settings(self.db, appointment.trainer_id)
        detector = GroupSessionDetector(self.db, settings.group_session_matching_logic if settings else None)
        info = detector.classify(appointment)
        session_rate = resolve_session_rate(profile, settings, info.is_group_session)

        logger.info(
            f"📊 Session type: {'GROUP' if info.is_group_session else 'INDIVIDUAL'}, rate: ${session_rate}"
        )

        try:
            result = self._debit(
                profile.id,
                session_rate,
                appointment.id,
                session_description(info.is_group_session, appointment.start_time),
                normalize_policy(policy),
            )
        except ValidationError as e:
            logger.warning(f"⚠️ Prepaid deduction refused for appointment {appointment.id}: {e.message}")
            return {
                "success": False,
                "new_balance": self.repo.get_balance(self.db, profile.id),
                "amount_deducted": Decimal("0"),
                "should_generate_invoice": True,
            }

        if result["transaction"] is None:
            return {
                "success": False,
                "new_balance": result["new_balance"],
                "amount_deducted": Decimal("0"),
                "should_generate_invoice": True,
            }

        new_balance = result["new_balance"]
        should_generate_invoice = new_balance <= 0 or new_balance < session_rate
        if should_generate_invoice:
            logger.info(f"⚠️ Balance (${new_balance}) cannot cover a ${session_rate} session, invoice needed")

        return {
            "success": True,
            "new_balance": new_balance,
            "amount_deducted": result["amount_debited"],
            "should_generate_invoice": should_generate_invoice,
        }

    def get_transactions(
        self, client_profile_id: int, limit: int = 50, offset: int = 0
    ) -> tuple[list[PrepaidTransaction], int]:
        """Newest-first page of ledger entries and the total count"""
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset must not be negative")
        return self.repo.get_transactions(self.db, client_profile_id, limit, offset)

    def get_client_details(self, workspace_id: int, trainer_id: int, client_id: int, now=None) -> dict:
        """Balance, next scheduled session and 10 most recent entries for one client"""
        client, profile = self.get_client_and_profile(workspace_id, client_id)
        transactions, _ = self.repo.get_transactions(self.db, profile.id, limit=10)
        next_appointment = self.billing_repo.get_next_scheduled_appointment(
            self.db, trainer_id, client.id, now or datetime.now()
        )
        return {
            "client": client,
            "profile": profile,
            "next_appointment": next_appointment,
            "recent_transactions": transactions,
        }

    def get_prepaid_clients_summary(self, workspace_id: int) -> list[dict]:
        """Balances of every PREPAID client in a workspace, ordered by name"""
        clients = self.billing_repo.get_clients_by_billing_frequency(
            self.db, workspace_id, BillingFrequency.PREPAID
        )

        summaries = []
        for client in clients:
            profile = client.client_profile
            current_balance = Decimal(profile.prepaid_balance or 0)
            target_balance = Decimal(profile.prepaid_target_balance or 0)

            last_credit = self.repo.get_last_credit(self.db, profile.id)
            consumed = self.repo.get_deductions_since(
                self.db, profile.id, last_credit.id if last_credit else None
            )
            last_transaction = self.repo.get_last_transaction(self.db, profile.id)

            summaries.append(
                {
                    "client": client,
                    "current_balance": current_balance,
                    "target_balance": target_balance,
                    "sessions_consumed_since_last_credit": len(consumed),
                    "last_transaction_date": last_transaction.created_at if last_transaction else None,
                    "balance_status": balance_status(current_balance, target_balance),
                }
            )
        return summaries

    def reconcile(self, client_profile_id: int) -> dict:
        """Compare the stored balance with the sum of the ledger"""
        balance = self.repo.get_balance(self.db, client_profile_id)
        ledger_total = self.repo.sum_transactions(self.db, client_profile_id)
        consistent = balance == ledger_total
        if not consistent:
            logger.error(
                f"❌ Prepaid ledger mismatch for profile {client_profile_id}: "
                f"balance ${balance}, ledger ${ledger_total}"
            )
        return {"balance": balance, "ledger_total": ledger_total, "consistent": consistent}
