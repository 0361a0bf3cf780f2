"""
Transfer Engine Module

Moves money between accounts. An internal transfer is a WITHDRAWAL on the
source and a DEPOSIT on the destination sharing one transfer id, written in a
single atomic block so both legs exist or neither does. System transactions
are single auto-approved entries raised by the bank itself; user
transactions are manual entries awaiting admin approval.
"""

from datetime import date
from typing import Optional
import uuid

from .accounts import AccountRegistry
from .audit import AuditTrail, AuditEventType
from .constants import AccountType, Status, SYSTEM_PREFIX, TRANSACTION_CATEGORIES, TransactionType
from .exceptions import ValidationError
from .ledger import Ledger, LedgerEntry
from .logging_config import get_logger, log_action
from .money import ZERO, round_money


logger = get_logger("tallybank.transfers")


class TransferEngine:
    """Atomic internal transfers and single-entry postings"""

    def __init__(self, storage, ledger: Ledger, accounts: AccountRegistry, audit_trail: AuditTrail):
        self.storage = storage
        self.ledger = ledger
        self.accounts = accounts
        self.audit_trail = audit_trail

    def execute_transfer(
        self,
        source_account_id: str,
        destination_account_id: str,
        amount,
        source_description: str,
        destination_description: str,
        value_date: Optional[date] = None,
        reference: Optional[str] = None
    ) -> str:
        """
        Move money from one account to another

        No funds check is made: forced settlements may overdraw the source.
        Callers that must respect available funds check before calling.

        Args:
            source_account_id: Account debited
            destination_account_id: Account credited
            amount: Positive amount, rounded to cents
            source_description: Description of the withdrawal leg
            destination_description: Description of the deposit leg
            value_date: Business date of both legs, defaults to today
            reference: Tag carried by both legs

        Returns:
            The transfer id shared by both legs

        Raises:
            ValidationError: If the accounts are the same or the amount is not positive
            NotFoundError: If either account does not exist
        """
        if source_account_id == destination_account_id:
            raise ValidationError("Cannot transfer to the same account")
        try:
            amount = round_money(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if amount <= ZERO:
            raise ValidationError(f"Transfer amount must be positive, got {amount}")

        value_date = value_date or date.today()
        transfer_id = uuid.uuid4().hex

        with self.storage.atomic():
            self.accounts.get(source_account_id)
            self.accounts.get(destination_account_id)

            self.ledger.append(
                destination_account_id, TransactionType.DEPOSIT, amount, value_date,
                destination_description, Status.APPROVED,
                transfer_id=transfer_id, reference=reference
            )
            self.ledger.append(
                source_account_id, TransactionType.WITHDRAWAL, amount, value_date,
                source_description, Status.APPROVED,
                transfer_id=transfer_id, reference=reference
            )

            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_EXECUTED,
                entity_type="transfer",
                entity_id=transfer_id,
                metadata={
                    "source_account_id": source_account_id,
                    "destination_account_id": destination_account_id,
                    "amount": amount,
                    "reference": reference
                }
            )

        log_action(
            logger, "info",
            f"Transferred {amount} from {source_account_id} to {destination_account_id}",
            action="TRANSFER_EXECUTED",
            resource=source_account_id,
            correlation_id=transfer_id,
            extra={"amount": str(amount), "destination": destination_account_id, "reference": reference}
        )
        return transfer_id

    def create_system_transaction(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount,
        description: str,
        value_date: Optional[date] = None,
        reference: Optional[str] = None
    ) -> LedgerEntry:
        """Post a single auto-approved entry raised by the bank itself"""
        if transaction_type not in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            raise ValidationError("System transactions must be deposits or withdrawals")

        with self.storage.atomic():
            self.accounts.get(account_id)
            return self.ledger.append(
                account_id, transaction_type, amount, value_date or date.today(),
                f"{SYSTEM_PREFIX}{description}", Status.APPROVED,
                reference=reference
            )

    def create_transaction(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount,
        value_date: date,
        description: str,
        category: Optional[str] = None,
        status: Status = Status.PENDING,
        today: Optional[date] = None
    ) -> LedgerEntry:
        """
        Record a manual deposit or withdrawal on a chequing account

        Manual entries start PENDING and count towards the available balance
        only once an admin approves them.

        Raises:
            ValidationError: On a non-chequing account, a future date, a
                missing description, an unknown category or a bad amount
        """
        today = today or date.today()
        if transaction_type not in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            raise ValidationError("Manual transactions must be deposits or withdrawals")
        if not description or not description.strip():
            raise ValidationError("Description is required")
        if value_date > today:
            raise ValidationError("Transaction date cannot be in the future")
        if category is not None and category not in TRANSACTION_CATEGORIES:
            raise ValidationError(f"Unknown category: {category}")
        if status not in (Status.PENDING, Status.APPROVED):
            raise ValidationError(f"Transactions cannot have status {status.label}")

        with self.storage.atomic():
            account = self.accounts.get(account_id)
            if account.account_type != AccountType.CHEQUING:
                raise ValidationError("Manual transactions are only allowed on chequing accounts")
            if account.status != Status.ACTIVE:
                raise ValidationError(f"Account is {account.status.label}")

            return self.ledger.append(
                account_id, transaction_type, amount, value_date,
                description.strip(), status, category=category
            )

    def approve_transaction(self, entry_id: str) -> LedgerEntry:
        return self.ledger.approve(entry_id)

    def delete_transaction(self, entry_id: str, reason: str = "") -> int:
        """
        Delete a ledger entry; both legs go when the entry belongs to a transfer

        Returns:
            Number of entries removed
        """
        with self.storage.atomic():
            entry = self.ledger.get_entry(entry_id)
            if entry.transfer_id:
                legs = self.ledger.entries_by_transfer(entry.transfer_id)
            else:
                legs = [entry]
            for leg in legs:
                self.ledger.delete(leg.id, reason)

        log_action(
            logger, "warning", f"Deleted {len(legs)} ledger entries",
            action="TRANSACTION_DELETED", resource=entry.account_id,
            correlation_id=entry.transfer_id, extra={"reason": reason}
        )
        return len(legs)

