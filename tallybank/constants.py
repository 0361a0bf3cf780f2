"""
Closed vocabularies shared by the ledger, the lifecycle managers and the
persisted lookup tables.

Each enum member carries the integer code that is stored on records and in the
lookup tables, plus a display name. The codes are part of the persisted data
and must never be renumbered.
"""

from decimal import Decimal
from enum import Enum
from typing import List


class CodedEnum(Enum):
    """Enum whose value is an integer code with a human readable label"""

    def __new__(cls, code: int, label: str):
        obj = object.__new__(cls)
        obj._value_ = code
        obj.label = label
        return obj

    @property
    def code(self) -> int:
        return self.value

    @classmethod
    def from_code(cls, code: int) -> "CodedEnum":
        """Resolve a stored integer code, rejecting codes outside the set"""
        try:
            return cls(int(code))
        except (TypeError, ValueError):
            raise ValueError(f"Unknown {cls.__name__} code: {code!r}")


class AccountType(CodedEnum):
    CHEQUING = (1, "Chequing")
    LOAN = (2, "Loan")
    SAVING = (3, "Saving")
    INVESTMENT = (4, "Investment")


class Status(CodedEnum):
    """Lifecycle status shared by accounts and ledger entries"""
    PENDING = (1, "Pending")
    APPROVED = (2, "Approved")
    REJECTED = (3, "Rejected")
    ACTIVE = (4, "Active")
    CLOSED = (5, "Closed")
    PAID_OFF = (6, "Paid Off")


class TransactionType(CodedEnum):
    DEPOSIT = (1, "Deposit")
    WITHDRAWAL = (2, "Withdrawal")
    TRANSFER = (3, "Transfer")


class PaymentFrequency(CodedEnum):
    BI_WEEKLY = (0, "Bi-Weekly")
    MONTHLY = (1, "Monthly")
    ANNUALLY = (2, "Annually")
    AT_MATURITY = (3, "At Maturity")


class Role(CodedEnum):
    ADMIN = (1, "Admin")
    AUDITOR = (2, "Auditor")  # reserved, no behaviour attached
    CLIENT = (3, "Client")


class BalanceFilter(Enum):
    """Which ledger entries count towards a balance"""
    TOTAL = "total"          # every entry, pending included
    AVAILABLE = "available"  # approved entries only


# Lookup table name -> enum persisted into it
LOOKUP_TABLES = {
    "account_types": AccountType,
    "statuses": Status,
    "transaction_types": TransactionType,
    "payment_frequencies": PaymentFrequency,
    "roles": Role,
}

ROUNDING_TOLERANCE = Decimal("0.01")
DAYS_PER_YEAR = 365
MONTHS_PER_YEAR = 12
BI_WEEKLY_PERIOD_DAYS = 14
GIC_COMPOUNDING_PERIODS = 12

SYSTEM_PREFIX = "[SYSTEM] "

TRANSACTION_CATEGORIES: List[str] = [
    "Food",
    "Beverages",
    "Grocery",
    "Entertainment",
    "Paycheck",
    "Gifts",
    "Clothes",
    "Cosmetics",
    "Books",
    "Education",
    "Medical",
    "Transportation",
    "Utilities",
    "Rent",
    "Insurance",
    "Savings",
    "Investment",
    "Other",
]
