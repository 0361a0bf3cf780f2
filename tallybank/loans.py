"""
Loan Lifecycle Module

Drives loans through PENDING → ACTIVE → {PAID_OFF, CLOSED} (or PENDING →
REJECTED): approval, one-time disbursement into the borrower's chequing
account, periodic simple-interest charges, payoff detection and the forced
settlement at maturity.

The loan account's ledger only ever receives money: repayments from the
client, interest charges and the maturity settlement are all transfers from
chequing into the loan. What the borrower still owes is therefore

    principal + interest accrued to yesterday − balance of the loan account

Interest accrues from the day the principal reached chequing, not from the
start date, and no repayment is accepted before that day.

Every effect the daily settlement can trigger is tagged with a deterministic
reference, so each step is a no-op when it has already happened.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountRegistry
from .audit import AuditTrail, AuditEventType
from .constants import AccountType, PaymentFrequency, ROUNDING_TOLERANCE, Status, TransactionType
from .exceptions import NotFoundError, ValidationError
from .financial import (
    accrued_interest, days_between, days_until_maturity, has_reached_maturity,
    interest_due_period, maturity_date, payment_by_frequency, simple_interest,
    total_loan_interest,
)
from .ledger import Ledger
from .logging_config import get_logger, log_action
from .money import ZERO, round_money, to_decimal
from .transfers import TransferEngine


logger = get_logger("tallybank.loans")

EDITABLE_TERMS = ("principal", "interest_rate", "term_months", "start_date",
                  "payment_frequency", "description")


def disbursement_reference(loan_id: str) -> str:
    return f"LOAN-DISB-{loan_id}"


def interest_reference(loan_id: str, due_date: date) -> str:
    return f"LOAN-INT-{loan_id}-{due_date.isoformat()}"


def maturity_reference(loan_id: str) -> str:
    return f"LOAN-MAT-{loan_id}"


@dataclass
class LoanSummary:
    """Point-in-time figures for a loan"""
    loan_id: str
    status: Status
    principal: Decimal
    interest_rate: Decimal
    term_months: int
    start_date: date
    maturity_date: date
    payment_frequency: PaymentFrequency
    scheduled_payment: Optional[Decimal]
    total_interest: Decimal
    accrued_interest: Decimal
    amount_paid: Decimal
    amount_owed: Decimal
    payoff_amount: Decimal
    days_until_maturity: int
    disbursed: bool


class LoanManager:
    """
    Loan state machine

    Every mutating method re-reads the loan inside an atomic block before
    acting, so it is safe to call from the daily settlement and from user
    requests at the same time.
    """

    def __init__(
        self,
        storage,
        accounts: AccountRegistry,
        ledger: Ledger,
        transfers: TransferEngine,
        audit_trail: AuditTrail,
        rounding_tolerance: Decimal = ROUNDING_TOLERANCE
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.transfers = transfers
        self.audit_trail = audit_trail
        self.rounding_tolerance = rounding_tolerance

    # Requests and decisions

    def create_request(
        self,
        user_id: str,
        amount,
        interest_rate,
        term_months: int,
        start_date: date,
        payment_frequency: PaymentFrequency,
        description: str = "",
        today: Optional[date] = None
    ) -> Account:
        """
        Create a PENDING loan request for a client

        Args:
            user_id: Borrower
            amount: Principal to borrow
            interest_rate: Annual simple interest rate in percent
            term_months: Length of the loan
            start_date: First day of the loan, today or later
            payment_frequency: How often interest is charged
            description: Purpose of the loan
            today: Date the request is made, defaults to today

        Returns:
            The loan account in PENDING status

        Raises:
            ValidationError: On a start date in the past or invalid terms
        """
        today = today or date.today()
        terms = self._validate_terms(
            principal=amount, interest_rate=interest_rate, term_months=term_months,
            start_date=start_date, payment_frequency=payment_frequency, today=today
        )

        with self.storage.atomic():
            self.accounts.get_or_create_chequing(user_id)
            loan = self.accounts.create(
                user_id, AccountType.LOAN, Status.PENDING,
                description=description or "",
                **terms
            )
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REQUESTED,
                entity_type="account",
                entity_id=loan.id,
                metadata={
                    "owner_id": user_id,
                    "principal": loan.principal,
                    "interest_rate": loan.interest_rate,
                    "term_months": term_months,
                    "start_date": start_date,
                    "payment_frequency": payment_frequency.label
                },
                user_id=user_id
            )

        log_action(logger, "info", f"Loan {loan.id} requested for {loan.principal}",
                   user_id=user_id, action="LOAN_REQUESTED", resource=loan.id)
        return loan

    def approve(self, loan_id: str) -> Account:
        """PENDING → ACTIVE. No money moves until disbursement."""
        with self.storage.atomic():
            loan = self._require_status(loan_id, Status.PENDING)
            loan = self.accounts.set_status(loan.id, Status.ACTIVE, "Loan approved")
            self.audit_trail.log_event(AuditEventType.LOAN_APPROVED, "account", loan.id,
                                       {"principal": loan.principal})

        log_action(logger, "info", f"Loan {loan.id} approved",
                   user_id=loan.owner_id, action="LOAN_APPROVED", resource=loan.id,
                   extra={"principal": str(loan.principal), "start_date": loan.start_date.isoformat()})
        return loan

    def deny(self, loan_id: str) -> Account:
        """PENDING → REJECTED"""
        with self.storage.atomic():
            loan = self._require_status(loan_id, Status.PENDING)
            loan = self.accounts.set_status(loan.id, Status.REJECTED, "Loan denied")
            self.audit_trail.log_event(AuditEventType.LOAN_DENIED, "account", loan.id, {})

        log_action(logger, "info", f"Loan {loan.id} denied",
                   user_id=loan.owner_id, action="LOAN_DENIED", resource=loan.id)
        return loan

    def update_request(self, loan_id: str, today: Optional[date] = None, **changes: Any) -> Account:
        """Edit the terms of a loan that is still PENDING"""
        unknown = set(changes) - set(EDITABLE_TERMS)
        if unknown:
            raise ValidationError(f"Cannot edit loan fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            loan = self._require_status(loan_id, Status.PENDING)
            merged = {
                "principal": loan.principal,
                "interest_rate": loan.interest_rate,
                "term_months": loan.term_months,
                "start_date": loan.start_date,
                "payment_frequency": loan.payment_frequency,
            }
            merged.update({k: v for k, v in changes.items() if k != "description"})
            terms = self._validate_terms(today=today or date.today(), **merged)
            if "description" in changes:
                terms["description"] = changes["description"] or ""

            loan = self.accounts.update_attributes(loan.id, **terms)
            self.audit_trail.log_event(AuditEventType.LOAN_REQUEST_UPDATED, "account", loan.id,
                                       {"changes": changes})
        return loan

    def delete_request(self, loan_id: str) -> None:
        """Remove a PENDING or REJECTED loan request"""
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status not in (Status.PENDING, Status.REJECTED):
                raise ValidationError(f"Cannot delete a loan that is {loan.status.label}")
            self.accounts.delete(loan.id, "Loan request deleted")
            self.audit_trail.log_event(AuditEventType.LOAN_REQUEST_DELETED, "account", loan.id,
                                       {"owner_id": loan.owner_id})

    # Settlement steps

    def is_disbursed(self, loan: Account) -> bool:
        return self.disbursement_date(loan) is not None

    def disbursement_date(self, loan: Account) -> Optional[date]:
        """Value date of the principal deposit, None before disbursement"""
        chequing = self.accounts.get_chequing(loan.owner_id)
        entries = self.ledger.find_by_reference(chequing.id, disbursement_reference(loan.id))
        if not entries:
            return None
        return entries[0].value_date

    def disburse(self, loan_id: str, as_of: Optional[date] = None) -> bool:
        """
        Deposit the principal into the borrower's chequing account

        Fires once, for an ACTIVE loan whose start date has arrived.

        Returns:
            True if the principal was deposited by this call

        Raises:
            InvariantViolation: If the borrower has no chequing account
        """
        as_of = as_of or date.today()
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status != Status.ACTIVE or as_of < loan.start_date:
                return False

            chequing = self.accounts.get_chequing(loan.owner_id)
            reference = disbursement_reference(loan.id)
            if self.ledger.has_reference(chequing.id, reference):
                return False

            self.transfers.create_system_transaction(
                chequing.id, TransactionType.DEPOSIT, loan.principal,
                f"Loan disbursement - {loan.display_name}",
                value_date=as_of, reference=reference
            )
            self.audit_trail.log_event(AuditEventType.LOAN_DISBURSED, "account", loan.id, {
                "amount": loan.principal,
                "chequing_account_id": chequing.id,
                "value_date": as_of
            })

        log_action(logger, "info", f"Loan {loan.id} disbursed {loan.principal} to {chequing.id}",
                   user_id=loan.owner_id, action="LOAN_DISBURSED", resource=loan.id,
                   extra={"amount": str(loan.principal), "chequing_account_id": chequing.id})
        return True

    def process_interest(self, loan_id: str, as_of: Optional[date] = None) -> Optional[Decimal]:
        """
        Charge the interest of the period ending today, if today is a due date

        The charge is a transfer chequing → loan and may overdraw chequing.
        It never exceeds what is still owed.

        Returns:
            The amount charged, or None when nothing was charged
        """
        as_of = as_of or date.today()
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status != Status.ACTIVE:
                return None

            period = interest_due_period(loan.start_date, loan.term_months,
                                         loan.payment_frequency, as_of)
            if period is None:
                return None
            disbursed_on = self.disbursement_date(loan)
            if disbursed_on is None:
                return None

            period_start, due_date = period
            reference = interest_reference(loan.id, due_date)
            if self.ledger.has_reference(loan.id, reference):
                return None

            # A late disbursement shortens the first period
            days = max(0, days_between(max(period_start, disbursed_on), due_date))
            interest = simple_interest(loan.principal, loan.interest_rate, days)
            amount = round_money(min(interest, self.amount_owed(loan, as_of)))
            if amount <= ZERO:
                return None

            chequing = self.accounts.get_chequing(loan.owner_id)
            transfer_id = self.transfers.execute_transfer(
                chequing.id, loan.id, amount,
                f"Interest payment - {loan.display_name}",
                f"Interest received {period_start.isoformat()} to {due_date.isoformat()}",
                value_date=as_of, reference=reference
            )
            self.audit_trail.log_event(AuditEventType.LOAN_INTEREST_CHARGED, "account", loan.id, {
                "amount": amount,
                "period_start": period_start,
                "due_date": due_date,
                "transfer_id": transfer_id
            })

        log_action(logger, "info", f"Charged {amount} interest on loan {loan.id}",
                   user_id=loan.owner_id, action="LOAN_INTEREST_CHARGED", resource=loan.id,
                   correlation_id=transfer_id, extra={"amount": str(amount), "due_date": due_date.isoformat()})
        return amount

    def check_payoff(self, loan_id: str, as_of: Optional[date] = None) -> bool:
        """ACTIVE → PAID_OFF once nothing beyond the rounding tolerance is owed"""
        as_of = as_of or date.today()
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status != Status.ACTIVE or not self.is_disbursed(loan):
                return False

            owed = self.amount_owed(loan, as_of)
            if owed > self.rounding_tolerance:
                return False

            self.accounts.set_status(loan.id, Status.PAID_OFF, "Loan paid off")
            self.audit_trail.log_event(AuditEventType.LOAN_PAID_OFF, "account", loan.id,
                                       {"amount_owed": owed})

        log_action(logger, "info", f"Loan {loan.id} paid off",
                   user_id=loan.owner_id, action="LOAN_PAID_OFF", resource=loan.id,
                   extra={"amount_owed": str(owed)})
        return True

    def check_maturity(self, loan_id: str, as_of: Optional[date] = None) -> bool:
        """
        Settle and close a loan that has reached maturity

        Whatever is still owed, interest accrued to maturity included, is
        taken from chequing in one forced transfer and the loan becomes
        CLOSED, both in one atomic block.

        Returns:
            True if the loan was closed by this call

        Raises:
            InvariantViolation: If the borrower has no chequing account
        """
        as_of = as_of or date.today()
        with self.storage.atomic():
            loan = self.get_loan(loan_id)
            if loan.status != Status.ACTIVE:
                return False
            if not has_reached_maturity(loan.start_date, loan.term_months, as_of):
                return False

            chequing = self.accounts.get_chequing(loan.owner_id)
            owed = round_money(self.amount_owed(loan, as_of))
            transfer_id = None
            if owed > ZERO:
                transfer_id = self.transfers.execute_transfer(
                    chequing.id, loan.id, owed,
                    f"Loan maturity settlement - {loan.display_name}",
                    "Final settlement at maturity",
                    value_date=as_of, reference=maturity_reference(loan.id)
                )

            self.accounts.set_status(loan.id, Status.CLOSED, "Loan matured")
            self.audit_trail.log_event(AuditEventType.LOAN_MATURED, "account", loan.id, {
                "settled_amount": max(owed, ZERO),
                "transfer_id": transfer_id
            })

        log_action(logger, "info", f"Loan {loan.id} reached maturity and was closed",
                   user_id=loan.owner_id, action="LOAN_CLOSED", resource=loan.id,
                   correlation_id=transfer_id, extra={"settled_amount": str(max(owed, ZERO))})
        return True

    # Queries

    def get_loan(self, loan_id: str) -> Account:
        account = self.accounts.find(loan_id)
        if account is None or not account.is_loan:
            raise NotFoundError(f"Loan {loan_id} not found")
        return account

    def accrued_to(self, loan: Account, as_of: Optional[date] = None) -> Decimal:
        """Interest accrued since disbursement up to yesterday, stopping at maturity"""
        disbursed_on = self.disbursement_date(loan)
        if disbursed_on is None:
            return ZERO
        return accrued_interest(loan.principal, loan.interest_rate, disbursed_on, as_of,
                                maturity=maturity_date(loan.start_date, loan.term_months))

    def amount_owed(self, loan: Account, as_of: Optional[date] = None) -> Decimal:
        """principal + interest accrued to yesterday − repayments received"""
        return loan.principal + self.accrued_to(loan, as_of) - self.ledger.balance(loan.id)

    def payoff_amount(self, loan: Account, as_of: Optional[date] = None) -> Decimal:
        """
        What clears the loan when paid today

        Includes today's interest, so the settlement run dated tomorrow
        finds nothing owed.
        """
        as_of = as_of or date.today()
        return max(round_money(self.amount_owed(loan, as_of + timedelta(days=1))), ZERO)

    def get_user_loans(self, user_id: str, status_filter: Optional[Status] = None) -> List[Account]:
        return self.accounts.list_accounts(owner_id=user_id, account_type=AccountType.LOAN,
                                           status=status_filter)

    def get_active_loans(self) -> List[Account]:
        return self.accounts.list_accounts(account_type=AccountType.LOAN, status=Status.ACTIVE)

    def get_pending_requests(self) -> List[Account]:
        return self.accounts.list_accounts(account_type=AccountType.LOAN, status=Status.PENDING)

    def get_maturing_loans(self, days: int = 30, as_of: Optional[date] = None) -> List[Account]:
        """ACTIVE loans maturing within the next `days` days, soonest first"""
        as_of = as_of or date.today()
        maturing = [
            loan for loan in self.get_active_loans()
            if 0 <= days_until_maturity(loan.start_date, loan.term_months, as_of) <= days
        ]
        maturing.sort(key=lambda loan: maturity_date(loan.start_date, loan.term_months))
        return maturing

    def get_loan_summary(self, loan_id: str, as_of: Optional[date] = None) -> LoanSummary:
        as_of = as_of or date.today()
        loan = self.get_loan(loan_id)
        matures_on = maturity_date(loan.start_date, loan.term_months)
        scheduled = payment_by_frequency(loan.principal, loan.interest_rate,
                                         loan.term_months, loan.payment_frequency)
        disbursed = (
            loan.status in (Status.ACTIVE, Status.PAID_OFF, Status.CLOSED)
            and self.is_disbursed(loan)
        )
        return LoanSummary(
            loan_id=loan.id,
            status=loan.status,
            principal=loan.principal,
            interest_rate=loan.interest_rate,
            term_months=loan.term_months,
            start_date=loan.start_date,
            maturity_date=matures_on,
            payment_frequency=loan.payment_frequency,
            scheduled_payment=round_money(scheduled) if scheduled is not None else None,
            total_interest=round_money(total_loan_interest(loan.principal, loan.interest_rate,
                                                           loan.term_months)),
            accrued_interest=round_money(self.accrued_to(loan, as_of)),
            amount_paid=self.ledger.balance(loan.id),
            amount_owed=round_money(self.amount_owed(loan, as_of)),
            payoff_amount=self.payoff_amount(loan, as_of),
            days_until_maturity=days_between(as_of, matures_on),
            disbursed=disbursed
        )

    # Helpers

    def _require_status(self, loan_id: str, status: Status) -> Account:
        loan = self.get_loan(loan_id)
        if loan.status != status:
            raise ValidationError(
                f"Loan {loan_id} is {loan.status.label}, expected {status.label}"
            )
        return loan

    def _validate_terms(self, principal, interest_rate, term_months, start_date,
                        payment_frequency, today: date) -> Dict[str, Any]:
        try:
            principal = round_money(principal)
            interest_rate = to_decimal(interest_rate)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if principal <= ZERO:
            raise ValidationError("Loan amount must be positive")
        if interest_rate < ZERO:
            raise ValidationError("Interest rate cannot be negative")
        if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months < 1:
            raise ValidationError("Term must be a whole number of months, at least 1")
        if not isinstance(start_date, date):
            raise ValidationError("Start date is required")
        if start_date < today:
            raise ValidationError("Start date cannot be in the past")
        if not isinstance(payment_frequency, PaymentFrequency):
            raise ValidationError(f"Invalid payment frequency: {payment_frequency!r}")

        return {
            "principal": principal,
            "interest_rate": interest_rate,
            "term_months": term_months,
            "start_date": start_date,
            "payment_frequency": payment_frequency,
        }
