"""
Banking System Module

`BankingSystem` wires storage, ledger, registry, lifecycle managers and the
daily settlement together and exposes the query, mutation and batch surface
used by the outer web layer. Callers pass a user identity and structured
request models; authentication and permission checks happen before these
methods are called.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountRegistry
from .audit import AuditTrail
from .config import TallyConfig, get_config
from .constants import AccountType, BalanceFilter, Role, Status
from .exceptions import InsufficientFundsError, ValidationError
from .gics import GICManager, GICProduct, GICProductCatalog
from .ledger import Ledger, LedgerEntry
from .loans import LoanManager, LoanSummary
from .logging_config import get_logger, log_action, setup_logging
from .money import ZERO, format_money, round_money
from .schema import SchemaManager
from .schemas import (
    GICProductRequest, GICPurchaseRequest, LoanRequest, TransactionRequest,
    TransferRequest, UpdateLoanRequest,
)
from .settlement import DailySettlement, SettlementReport, SettlementScheduler
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine
from .users import User, UserManager


logger = get_logger("tallybank.system")


class BankingSystem:
    """Ledger engine with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[TallyConfig] = None):
        self.config = config or get_config()

        # Initialize storage and the persisted vocabulary
        self.storage = storage or create_storage(self.config.database_url)
        self.schema = SchemaManager(self.storage)
        self.schema.ensure(validate=self.config.validate_schema_on_startup)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.users = UserManager(self.storage, self.audit_trail)
        self.ledger = Ledger(self.storage, self.audit_trail)
        self.accounts = AccountRegistry(self.storage, self.audit_trail)
        self.transfers = TransferEngine(self.storage, self.ledger, self.accounts, self.audit_trail)
        self.loans = LoanManager(
            self.storage, self.accounts, self.ledger, self.transfers, self.audit_trail,
            rounding_tolerance=self.config.rounding_tolerance
        )
        self.gic_products = GICProductCatalog(
            self.storage, self.audit_trail,
            default_minimum_amount=self.config.default_gic_minimum_amount
        )
        self.gics = GICManager(
            self.storage, self.accounts, self.ledger, self.transfers,
            self.gic_products, self.audit_trail
        )
        self.settlement = DailySettlement(self.storage, self.loans, self.gics, self.audit_trail)
        self.scheduler = SettlementScheduler(
            self.settlement,
            hour=self.config.settlement_hour,
            minute=self.config.settlement_minute
        )

    @classmethod
    def from_config(cls, config: Optional[TallyConfig] = None) -> "BankingSystem":
        """Configure logging and build the system from configuration"""
        config = config or get_config()
        setup_logging(config.log_level, "tallybank", config.log_format, config.log_file)
        return cls(config=config)

    def close(self) -> None:
        self.scheduler.stop()
        self.storage.close()

    # Users

    def create_user(self, username: str, name: str, surname: str,
                    role: Role = Role.CLIENT) -> User:
        user = self.users.create_user(username, name, surname, role)
        if role == Role.CLIENT:
            self.accounts.get_or_create_chequing(user.id)
        return user

    def get_user(self, user_id: str) -> User:
        return self.users.get_user(user_id)

    # Queries

    def get_account(self, account_id: str) -> Account:
        return self.accounts.get(account_id)

    def get_user_accounts(self, user_id: str) -> List[Account]:
        """Every account of a user; the chequing account is created on first access"""
        self.accounts.get_or_create_chequing(user_id)
        return self.accounts.list_accounts(owner_id=user_id)

    def get_chequing_account(self, user_id: str) -> Account:
        return self.accounts.get_or_create_chequing(user_id)

    def get_balance(self, account_id: str,
                    balance_filter: BalanceFilter = BalanceFilter.TOTAL) -> Decimal:
        self.accounts.get(account_id)
        return self.ledger.balance(account_id, balance_filter)

    def get_transactions(self, account_id: str, start_date: Optional[date] = None,
                         end_date: Optional[date] = None,
                         limit: Optional[int] = None) -> List[LedgerEntry]:
        self.accounts.get(account_id)
        if start_date and end_date and start_date > end_date:
            raise ValidationError("Start date must not be after end date")
        if limit is not None and limit < 0:
            raise ValidationError("Limit cannot be negative")
        return self.ledger.entries_for_account(account_id, start_date, end_date, limit)

    def get_transactions_by_period(self, account_id: str, days: Optional[int] = None,
                                   today: Optional[date] = None) -> List[LedgerEntry]:
        """Entries valued within the last `days` days, today included"""
        today = today or date.today()
        if days is None:
            days = self.config.default_transaction_period_days
        if days < 0 or days > self.config.max_transaction_period_days:
            raise ValidationError(
                f"Period must be between 0 and {self.config.max_transaction_period_days} days"
            )
        return self.get_transactions(account_id, start_date=today - timedelta(days=days),
                                     end_date=today)

    def get_pending_transactions(self, user_id: str) -> List[LedgerEntry]:
        account_ids = [a.id for a in self.accounts.list_accounts(owner_id=user_id)]
        return self.ledger.pending_entries(account_ids)

    def get_user_loans(self, user_id: str, status_filter: Optional[Status] = None) -> List[Account]:
        return self.loans.get_user_loans(user_id, status_filter)

    def get_pending_loan_requests(self) -> List[Account]:
        return self.loans.get_pending_requests()

    def get_loan_summary(self, loan_id: str, as_of: Optional[date] = None) -> LoanSummary:
        return self.loans.get_loan_summary(loan_id, as_of)

    def get_maturing_loans(self, days: Optional[int] = None,
                           as_of: Optional[date] = None) -> List[Account]:
        return self.loans.get_maturing_loans(
            self.config.maturity_lookahead_days if days is None else days, as_of
        )

    def get_user_gics(self, user_id: str, status_filter: Optional[Status] = None) -> List[Account]:
        return self.gics.get_user_gics(user_id, status_filter)

    def get_maturing_gics(self, days: Optional[int] = None,
                          as_of: Optional[date] = None) -> List[Account]:
        return self.gics.get_maturing_gics(
            self.config.maturity_lookahead_days if days is None else days, as_of
        )

    def list_gic_products(self) -> List[GICProduct]:
        return self.gic_products.list_products()

    # Loans

    def create_loan_request(self, user_id: str, request: LoanRequest,
                            today: Optional[date] = None) -> Account:
        return self.loans.create_request(
            user_id,
            request.amount,
            request.interest_rate,
            request.term_months,
            request.start_date,
            request.payment_frequency,
            description=request.description,
            today=today
        )

    def update_loan_request(self, loan_id: str, request: UpdateLoanRequest,
                            today: Optional[date] = None) -> Account:
        return self.loans.update_request(loan_id, today=today, **request.to_changes())

    def delete_loan_request(self, loan_id: str) -> None:
        self.loans.delete_request(loan_id)

    def approve_loan(self, loan_id: str) -> Account:
        return self.loans.approve(loan_id)

    def deny_loan(self, loan_id: str) -> Account:
        return self.loans.deny(loan_id)

    # GICs

    def create_gic_product(self, request: GICProductRequest) -> GICProduct:
        return self.gic_products.create_product(
            request.name, request.interest_rate, request.term_months,
            minimum_amount=request.minimum_amount, description=request.description
        )

    def update_gic_product(self, product_id: str, **changes: Any) -> GICProduct:
        return self.gic_products.update_product(product_id, **changes)

    def delete_gic_product(self, product_id: str) -> None:
        self.gic_products.delete_product(product_id)

    def purchase_gic(self, user_id: str, request: GICPurchaseRequest,
                     today: Optional[date] = None) -> Account:
        chequing_id = request.chequing_account_id or self.accounts.get_or_create_chequing(user_id).id
        return self.gics.purchase(user_id, chequing_id, request.product_id, request.amount, as_of=today)

    # Money movement

    def transfer(self, user_id: str, request: TransferRequest,
                 today: Optional[date] = None) -> str:
        """
        Client-initiated transfer out of their own chequing account

        Loan repayments are accepted once the principal has been disbursed
        and may not exceed the payoff amount, which includes today's
        interest. Funds are
        checked against the approved balance before the transfer is written;
        a concurrent debit between the check and the write is not prevented.

        Returns:
            The transfer id

        Raises:
            ValidationError: Bad accounts, loan overpayment
            InsufficientFundsError: Amount above the available balance
            NotFoundError: Unknown account
        """
        today = today or date.today()
        source = self.accounts.get(request.source_account_id)
        destination = self.accounts.get(request.destination_account_id)
        amount = round_money(request.amount)

        if source.owner_id != user_id:
            raise ValidationError("You can only transfer from your own accounts")
        if source.account_type != AccountType.CHEQUING or source.status != Status.ACTIVE:
            raise ValidationError("Transfers must come from an active chequing account")
        if source.id == destination.id:
            raise ValidationError("Cannot transfer to the same account")
        if amount <= ZERO:
            raise ValidationError("Transfer amount must be positive")

        available = self.ledger.balance(source.id, BalanceFilter.AVAILABLE)
        if available <= ZERO or amount > available:
            raise InsufficientFundsError("Insufficient funds for transfer")

        if destination.account_type == AccountType.LOAN:
            if destination.status != Status.ACTIVE:
                raise ValidationError(f"Loan is {destination.status.label}")
            if not self.loans.is_disbursed(destination):
                raise ValidationError("Loan has not been disbursed yet")
            if amount > self.loans.payoff_amount(destination, today):
                raise ValidationError("Transfer amount exceeds what is owed on the loan")
        elif destination.account_type == AccountType.CHEQUING:
            if destination.status != Status.ACTIVE:
                raise ValidationError(f"Destination account is {destination.status.label}")
        else:
            raise ValidationError(
                f"Transfers into {destination.account_type.label} accounts are not allowed"
            )

        note = f" - {request.description}" if request.description else ""
        transfer_id = self.transfers.execute_transfer(
            source.id, destination.id, amount,
            f"Internal Transaction to {destination.display_name}{note}",
            f"Internal Transaction from {source.display_name}{note}",
            value_date=today
        )
        log_action(logger, "info", f"Client transfer of {format_money(amount)}", user_id=user_id,
                   action="CLIENT_TRANSFER", resource=source.id, correlation_id=transfer_id)
        return transfer_id

    def execute_transfer(self, source_account_id: str, destination_account_id: str, amount,
                         source_description: str, destination_description: str,
                         value_date: Optional[date] = None) -> str:
        """Raw two-legged transfer without funds or ownership checks"""
        return self.transfers.execute_transfer(
            source_account_id, destination_account_id, amount,
            source_description, destination_description, value_date
        )

    def create_transaction(self, user_id: str, request: TransactionRequest,
                           today: Optional[date] = None) -> LedgerEntry:
        """Manual deposit or withdrawal, PENDING until an admin approves it"""
        account = self.accounts.get(request.account_id)
        if account.owner_id != user_id:
            raise ValidationError("You can only add transactions to your own accounts")
        return self.transfers.create_transaction(
            account.id, request.transaction_type, request.amount, request.value_date,
            request.description, category=request.category, today=today
        )

    def approve_transaction(self, entry_id: str) -> LedgerEntry:
        return self.transfers.approve_transaction(entry_id)

    def delete_transaction(self, entry_id: str, reason: str = "") -> int:
        return self.transfers.delete_transaction(entry_id, reason)

    # Batch

    def run_daily_settlement(self, settlement_date: Optional[date] = None) -> SettlementReport:
        return self.settlement.run(settlement_date)

    def start_scheduler(self) -> None:
        self.scheduler.start()

    def verify_audit_trail(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()
