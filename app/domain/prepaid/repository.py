"""Prepaid repository - Database operations for the prepaid ledger"""

from decimal import Decimal
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session, joinedload

from ...models import ClientProfile
from ...models_invoice import PrepaidTransaction, PrepaidTransactionType


class PrepaidRepository:
    """Repository for prepaid ledger database operations"""

    @staticmethod
    def get_profile_for_update(db: Session, profile_id: int) -> Optional[ClientProfile]:
        """Load a client profile and lock its row until the transaction ends"""
        return (
            db.query(ClientProfile)
            .filter(ClientProfile.id == profile_id)
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def increment_balance(db: Session, profile_id: int, delta: Decimal) -> None:
        """Add `delta` to the stored balance in SQL; does not commit"""
        db.execute(
            update(ClientProfile)
            .where(ClientProfile.id == profile_id)
            .values(prepaid_balance=ClientProfile.prepaid_balance + delta)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def get_balance(db: Session, profile_id: int) -> Decimal:
        """Current stored balance, read from the database rather than the identity map"""
        balance = db.query(ClientProfile.prepaid_balance).filter(ClientProfile.id == profile_id).scalar()
        return Decimal(balance or 0)

    @staticmethod
    def add_transaction(
        db: Session,
        profile_id: int,
        transaction_type: str,
        amount: Decimal,
        resulting_balance: Decimal,
        notes: Optional[str] = None,
        appointment_id: Optional[int] = None,
    ) -> PrepaidTransaction:
        """Append a ledger entry; flushed but not committed"""
        transaction = PrepaidTransaction(
            client_profile_id=profile_id,
            type=transaction_type,
            amount=amount,
            resulting_balance=resulting_balance,
            notes=notes,
            appointment_id=appointment_id,
        )
        db.add(transaction)
        db.flush()
        return transaction

    @staticmethod
    def get_deduction_for_appointment(db: Session, appointment_id: int) -> Optional[PrepaidTransaction]:
        return (
            db.query(PrepaidTransaction)
            .filter(
                PrepaidTransaction.appointment_id == appointment_id,
                PrepaidTransaction.type == PrepaidTransactionType.DEDUCTION,
            )
            .first()
        )

    @staticmethod
    def get_last_credit(db: Session, profile_id: int) -> Optional[PrepaidTransaction]:
        """Most recent CREDIT entry (ids are monotonic, so id order is ledger order)"""
        return (
            db.query(PrepaidTransaction)
            .filter(
                PrepaidTransaction.client_profile_id == profile_id,
                PrepaidTransaction.type == PrepaidTransactionType.CREDIT,
            )
            .order_by(PrepaidTransaction.id.desc())
            .first()
        )

    @staticmethod
    def get_last_transaction(db: Session, profile_id: int) -> Optional[PrepaidTransaction]:
        return (
            db.query(PrepaidTransaction)
            .filter(PrepaidTransaction.client_profile_id == profile_id)
            .order_by(PrepaidTransaction.id.desc())
            .first()
        )

    @staticmethod
    def get_deductions_since(
        db: Session, profile_id: int, after_transaction_id: Optional[int] = None
    ) -> list[PrepaidTransaction]:
        """DEDUCTION entries after a given entry (all of them when None), oldest first"""
        query = db.query(PrepaidTransaction).filter(
            PrepaidTransaction.client_profile_id == profile_id,
            PrepaidTransaction.type == PrepaidTransactionType.DEDUCTION,
        )
        if after_transaction_id is not None:
            query = query.filter(PrepaidTransaction.id > after_transaction_id)
        return query.order_by(PrepaidTransaction.id.asc()).all()

    @staticmethod
    def get_transactions(
        db: Session, profile_id: int, limit: int = 50, offset: int = 0
    ) -> tuple[list[PrepaidTransaction], int]:
        """Newest-first page of a client's ledger and the total entry count"""
        query = db.query(PrepaidTransaction).filter(PrepaidTransaction.client_profile_id == profile_id)
        total = query.count()
        transactions = (
            query.options(joinedload(PrepaidTransaction.appointment))
            .order_by(PrepaidTransaction.created_at.desc(), PrepaidTransaction.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return transactions, total

    @staticmethod
    def sum_transactions(db: Session, profile_id: int) -> Decimal:
        """Sum of signed ledger amounts for a client"""
        total = (
            db.query(func.coalesce(func.sum(PrepaidTransaction.amount), 0))
            .filter(PrepaidTransaction.client_profile_id == profile_id)
            .scalar()
        )
        return Decimal(str(total)).quantize(Decimal("0.01"))
