"""
Account Registry Module

Accounts of every kind (chequing, loan, saving, investment) and their
lifecycle status. The registry stores and updates accounts; the loan and GIC
managers decide which status transitions are legal.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .constants import AccountType, PaymentFrequency, Status
from .exceptions import InvariantViolation, NotFoundError, ValidationError
from .money import to_decimal
from .storage import StorageInterface, StorageRecord


ACCOUNT_STATUSES = (Status.PENDING, Status.REJECTED, Status.ACTIVE, Status.CLOSED, Status.PAID_OFF)


@dataclass
class Account(StorageRecord):
    """
    A bank account

    Loan and investment accounts carry their terms: principal, annual
    interest rate in percent, term in months and start date. Investment
    accounts also keep a snapshot of the product they were bought from.
    """
    owner_id: str
    account_type: AccountType
    status: Status
    description: str = ""
    principal: Optional[Decimal] = None
    interest_rate: Optional[Decimal] = None
    term_months: Optional[int] = None
    start_date: Optional[date] = None
    payment_frequency: Optional[PaymentFrequency] = None
    product_id: Optional[str] = None
    product_name: Optional[str] = None

    @property
    def is_chequing(self) -> bool:
        return self.account_type == AccountType.CHEQUING

    @property
    def is_loan(self) -> bool:
        return self.account_type == AccountType.LOAN

    @property
    def is_investment(self) -> bool:
        return self.account_type == AccountType.INVESTMENT

    @property
    def display_name(self) -> str:
        return f"{self.account_type.label} #{self.id[:8]}"


TERM_FIELDS = {f.name for f in fields(Account)} - {
    "id", "created_at", "updated_at", "owner_id", "account_type", "status"
}


class AccountRegistry:
    """Creates, reads and updates accounts"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "accounts"

    def create(
        self,
        owner_id: str,
        account_type: AccountType,
        status: Status,
        **attributes: Any
    ) -> Account:
        """
        Create a new account

        Args:
            owner_id: User owning the account
            account_type: Kind of account
            status: Initial status (PENDING for loan requests, ACTIVE otherwise)
            **attributes: Type-specific terms (principal, interest_rate, ...)

        Returns:
            Created Account
        """
        unknown = set(attributes) - TERM_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account attributes: {', '.join(sorted(unknown))}")
        if status not in ACCOUNT_STATUSES:
            raise ValidationError(f"Accounts cannot have status {status.label}")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            account_type=account_type,
            status=status,
            **attributes
        )

        with self.storage.atomic():
            self._save_account(account)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_CREATED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "owner_id": owner_id,
                    "account_type": account_type.label,
                    "status": status.label,
                    "principal": account.principal
                }
            )

        return account

    def get(self, account_id: str) -> Account:
        """Get account by ID, raising NotFoundError when absent"""
        account = self.find(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def find(self, account_id: str) -> Optional[Account]:
        data = self.storage.load(self.table_name, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def list_accounts(
        self,
        owner_id: Optional[str] = None,
        account_type: Optional[AccountType] = None,
        status: Optional[Status] = None
    ) -> List[Account]:
        """List accounts matching every given filter, oldest first"""
        filters: Dict[str, Any] = {}
        if owner_id is not None:
            filters["owner_id"] = owner_id
        if account_type is not None:
            filters["account_type"] = account_type.code
        if status is not None:
            filters["status"] = status.code

        accounts = [self._account_from_dict(d) for d in self.storage.find(self.table_name, filters)]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def set_status(self, account_id: str, new_status: Status, reason: str = "") -> Account:
        """
        Set the status of an account

        No transition rules are enforced here; callers own the state machine.
        """
        if new_status not in ACCOUNT_STATUSES:
            raise ValidationError(f"Accounts cannot have status {new_status.label}")

        with self.storage.atomic():
            account = self.get(account_id)
            old_status = account.status
            account.status = new_status
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_STATUS_CHANGED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "old_status": old_status.label,
                    "new_status": new_status.label,
                    "reason": reason
                }
            )

        return account

    def update_attributes(self, account_id: str, **attributes: Any) -> Account:
        """Update type-specific terms of an account"""
        unknown = set(attributes) - TERM_FIELDS
        if unknown:
            raise ValidationError(f"Unknown account attributes: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            account = self.get(account_id)
            for name, value in attributes.items():
                setattr(account, name, value)
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)

            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_UPDATED,
                entity_type="account",
                entity_id=account.id,
                metadata={"changes": attributes}
            )

        return account

    def delete(self, account_id: str, reason: str = "") -> None:
        with self.storage.atomic():
            account = self.get(account_id)
            self.storage.delete(self.table_name, account_id)
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_DELETED,
                entity_type="account",
                entity_id=account.id,
                metadata={"account_type": account.account_type.label, "reason": reason}
            )

    def get_or_create_chequing(self, owner_id: str) -> Account:
        """
        Return the user's chequing account, creating it on first access

        Idempotent: concurrent callers share the storage lock, so at most one
        chequing account is ever created per user.
        """
        with self.storage.atomic():
            existing = self.list_accounts(owner_id=owner_id, account_type=AccountType.CHEQUING)
            if existing:
                return existing[0]
            return self.create(owner_id, AccountType.CHEQUING, Status.ACTIVE,
                               description="Chequing")

    def get_chequing(self, owner_id: str) -> Account:
        """
        Return the user's chequing account

        Raises:
            InvariantViolation: If the user has none, or more than one
        """
        accounts = self.list_accounts(owner_id=owner_id, account_type=AccountType.CHEQUING)
        if not accounts:
            raise InvariantViolation(f"User {owner_id} has no chequing account")
        if len(accounts) > 1:
            raise InvariantViolation(f"User {owner_id} has {len(accounts)} chequing accounts")
        return accounts[0]

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.table_name, account.id, self._account_to_dict(account))

    def _account_to_dict(self, account: Account) -> Dict:
        """Convert account to dictionary for storage"""
        result = account.to_dict()
        result['account_type'] = account.account_type.code
        result['status'] = account.status.code
        result['payment_frequency'] = (
            account.payment_frequency.code if account.payment_frequency is not None else None
        )
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        """Convert dictionary to account"""
        data = dict(data)
        data['account_type'] = AccountType.from_code(data['account_type'])
        data['status'] = Status.from_code(data['status'])
        if data.get('payment_frequency') is not None:
            data['payment_frequency'] = PaymentFrequency.from_code(data['payment_frequency'])
        for key in ('principal', 'interest_rate'):
            if data.get(key) is not None:
                data[key] = to_decimal(data[key])
        if data.get('start_date'):
            data['start_date'] = date.fromisoformat(data['start_date'])
        return Account.from_dict(data)
