"""
Transaction Ledger Module

Append-only store of ledger entries. Every entry moves a strictly positive
amount into (DEPOSIT) or out of (WITHDRAWAL) one account; balances are never
stored and are always derived from the entries, so they cannot drift from
the ledger.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .constants import BalanceFilter, Status, TransactionType
from .exceptions import NotFoundError, ValidationError
from .money import ZERO, round_money, to_decimal
from .storage import StorageInterface, StorageRecord


ENTRY_STATUSES = (Status.PENDING, Status.APPROVED)


@dataclass
class LedgerEntry(StorageRecord):
    """
    A single movement of money on one account

    The amount is always positive; its direction comes from the type.
    value_date is the business date of the movement, created_at the moment
    it was recorded.
    """
    account_id: str
    transaction_type: TransactionType
    amount: Decimal
    value_date: date
    description: str
    status: Status
    transfer_id: Optional[str] = None
    reference: Optional[str] = None
    category: Optional[str] = None

    def __post_init__(self):
        if self.amount <= ZERO:
            raise ValidationError(f"Ledger amount must be positive, got {self.amount}")
        if self.status not in ENTRY_STATUSES:
            raise ValidationError(f"Ledger entries cannot have status {self.status.label}")

    @property
    def signed_amount(self) -> Decimal:
        """Effect of this entry on the account balance"""
        if self.transaction_type == TransactionType.DEPOSIT:
            return self.amount
        if self.transaction_type == TransactionType.WITHDRAWAL:
            return -self.amount
        return ZERO

    @property
    def is_approved(self) -> bool:
        return self.status == Status.APPROVED


class Ledger:
    """
    Append-only transaction ledger

    Entries are only ever added, approved (pending to approved) or removed
    by an explicit admin deletion.
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "transactions"

    def append(
        self,
        account_id: str,
        transaction_type: TransactionType,
        amount,
        value_date: date,
        description: str,
        status: Status = Status.APPROVED,
        transfer_id: Optional[str] = None,
        reference: Optional[str] = None,
        category: Optional[str] = None
    ) -> LedgerEntry:
        """
        Append a new entry to the ledger

        Args:
            account_id: Account the money moves in or out of
            transaction_type: DEPOSIT or WITHDRAWAL
            amount: Strictly positive amount, rounded to cents here
            value_date: Business date of the movement
            description: Human-readable description
            status: PENDING or APPROVED
            transfer_id: Shared by both legs of an internal transfer
            reference: Deterministic tag used to detect repeated effects
            category: Spending category for user-entered entries

        Returns:
            The persisted LedgerEntry

        Raises:
            ValidationError: If the amount is not positive or the type/status is invalid
        """
        if not isinstance(transaction_type, TransactionType):
            raise ValidationError(f"Invalid transaction type: {transaction_type!r}")
        try:
            amount = round_money(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if amount <= ZERO:
            raise ValidationError(f"Transaction amount must be positive, got {amount}")

        now = datetime.now(timezone.utc)
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_id=account_id,
            transaction_type=transaction_type,
            amount=amount,
            value_date=value_date,
            description=description,
            status=status,
            transfer_id=transfer_id,
            reference=reference,
            category=category
        )

        with self.storage.atomic():
            self._save_entry(entry)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_CREATED,
                entity_type="transaction",
                entity_id=entry.id,
                metadata={
                    "account_id": account_id,
                    "type": transaction_type.label,
                    "amount": amount,
                    "status": status.label,
                    "transfer_id": transfer_id,
                    "reference": reference
                }
            )

        return entry

    def balance(self, account_id: str,
                balance_filter: BalanceFilter = BalanceFilter.TOTAL) -> Decimal:
        """
        Derive an account balance from its entries

        TOTAL counts every entry, AVAILABLE only approved ones.
        """
        filters = {"account_id": account_id}
        if balance_filter == BalanceFilter.AVAILABLE:
            filters["status"] = Status.APPROVED.code

        total = ZERO
        for data in self.storage.find(self.table_name, filters):
            total += self._entry_from_dict(data).signed_amount
        return total

    def get_entry(self, entry_id: str) -> LedgerEntry:
        data = self.storage.load(self.table_name, entry_id)
        if not data:
            raise NotFoundError(f"Transaction {entry_id} not found")
        return self._entry_from_dict(data)

    def entries_for_account(
        self,
        account_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: Optional[int] = None,
        status: Optional[Status] = None
    ) -> List[LedgerEntry]:
        """
        Get entries of an account, newest first

        Args:
            account_id: Account to read
            start_date: Only entries valued on or after this date
            end_date: Only entries valued on or before this date
            limit: Return at most this many entries
            status: Only entries with this status
        """
        filters = {"account_id": account_id}
        if status is not None:
            filters["status"] = status.code
        entries = [self._entry_from_dict(d) for d in self.storage.find(self.table_name, filters)]

        if start_date:
            entries = [e for e in entries if e.value_date >= start_date]
        if end_date:
            entries = [e for e in entries if e.value_date <= end_date]

        entries.sort(key=lambda e: (e.value_date, e.created_at), reverse=True)
        if limit is not None:
            entries = entries[:limit]
        return entries

    def entries_by_transfer(self, transfer_id: str) -> List[LedgerEntry]:
        """Both legs of an internal transfer"""
        rows = self.storage.find(self.table_name, {"transfer_id": transfer_id})
        return [self._entry_from_dict(d) for d in rows]

    def find_by_reference(self, account_id: str, reference: str) -> List[LedgerEntry]:
        rows = self.storage.find(self.table_name, {"account_id": account_id, "reference": reference})
        return [self._entry_from_dict(d) for d in rows]

    def has_reference(self, account_id: str, reference: str) -> bool:
        return bool(self.storage.find(self.table_name, {"account_id": account_id, "reference": reference}))

    def pending_entries(self, account_ids: Iterable[str]) -> List[LedgerEntry]:
        """Pending entries across the given accounts, oldest first"""
        entries = []
        for account_id in account_ids:
            entries.extend(self.entries_for_account(account_id, status=Status.PENDING))
        entries.sort(key=lambda e: (e.value_date, e.created_at))
        return entries

    def approve(self, entry_id: str) -> LedgerEntry:
        """Move a pending entry to approved; approved entries are returned unchanged"""
        with self.storage.atomic():
            entry = self.get_entry(entry_id)
            if entry.is_approved:
                return entry

            entry.status = Status.APPROVED
            entry.updated_at = datetime.now(timezone.utc)
            self._save_entry(entry)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_APPROVED,
                entity_type="transaction",
                entity_id=entry.id,
                metadata={"account_id": entry.account_id, "amount": entry.amount}
            )
        return entry

    def delete(self, entry_id: str, reason: str = "") -> LedgerEntry:
        """Remove an entry. Admin-only exception to append-only."""
        with self.storage.atomic():
            entry = self.get_entry(entry_id)
            self.storage.delete(self.table_name, entry_id)
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSACTION_DELETED,
                entity_type="transaction",
                entity_id=entry.id,
                metadata={
                    "account_id": entry.account_id,
                    "type": entry.transaction_type.label,
                    "amount": entry.amount,
                    "reason": reason
                }
            )
        return entry

    def _save_entry(self, entry: LedgerEntry) -> None:
        self.storage.save(self.table_name, entry.id, self._entry_to_dict(entry))

    def _entry_to_dict(self, entry: LedgerEntry) -> Dict:
        """Convert LedgerEntry to dictionary for storage"""
        result = entry.to_dict()
        result['transaction_type'] = entry.transaction_type.code
        result['status'] = entry.status.code
        result['amount'] = str(entry.amount)
        result['value_date'] = entry.value_date.isoformat()
        return result

    def _entry_from_dict(self, data: Dict) -> LedgerEntry:
        """Convert dictionary to LedgerEntry"""
        data = dict(data)
        data['transaction_type'] = TransactionType.from_code(data['transaction_type'])
        data['status'] = Status.from_code(data['status'])
        data['amount'] = to_decimal(data['amount'])
        data['value_date'] = date.fromisoformat(data['value_date'])
        return LedgerEntry.from_dict(data)
