"""
Test suite for the transaction ledger

Tests appending, derived balances, approval, reference lookups and deletion.
"""

import pytest
from decimal import Decimal
from datetime import date

from tallybank.audit import AuditTrail, AuditEventType
from tallybank.constants import BalanceFilter, Status, TransactionType
from tallybank.exceptions import NotFoundError, ValidationError
from tallybank.ledger import Ledger
from tallybank.storage import InMemoryStorage


class TestLedger:
    """Test ledger operations"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = Ledger(self.storage, self.audit_trail)
        self.day = date(2024, 3, 1)

    def test_append_rounds_and_persists(self):
        entry = self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("10.005"),
                                   self.day, "Paycheck")

        assert entry.amount == Decimal("10.01")
        assert entry.status == Status.APPROVED

        loaded = self.ledger.get_entry(entry.id)
        assert loaded.amount == Decimal("10.01")
        assert loaded.value_date == self.day
        assert loaded.transaction_type == TransactionType.DEPOSIT

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("0.004")])
    def test_append_rejects_non_positive_amounts(self, amount):
        with pytest.raises(ValidationError, match="must be positive"):
            self.ledger.append("acc", TransactionType.DEPOSIT, amount, self.day, "Bad")

    def test_append_rejects_float_amount(self):
        with pytest.raises(ValidationError):
            self.ledger.append("acc", TransactionType.DEPOSIT, 10.5, self.day, "Float")

    def test_append_rejects_closed_status(self):
        with pytest.raises(ValidationError):
            self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("1"), self.day,
                               "Closed", status=Status.CLOSED)

    def test_balance_total_and_available(self):
        """Pending entries count in the total but not in the available balance"""
        self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("100"), self.day, "In")
        self.ledger.append("acc", TransactionType.WITHDRAWAL, Decimal("30"), self.day, "Out")
        self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("50"), self.day, "Cheque",
                           status=Status.PENDING)
        self.ledger.append("other", TransactionType.DEPOSIT, Decimal("999"), self.day, "Other")

        assert self.ledger.balance("acc") == Decimal("120.00")
        assert self.ledger.balance("acc", BalanceFilter.AVAILABLE) == Decimal("70.00")
        assert self.ledger.balance("empty") == Decimal("0")

    def test_entries_newest_first_with_date_range(self):
        self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("1"), date(2024, 1, 1), "Jan")
        self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("2"), date(2024, 2, 1), "Feb")
        self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("3"), date(2024, 3, 1), "Mar")

        entries = self.ledger.entries_for_account("acc")
        assert [e.description for e in entries] == ["Mar", "Feb", "Jan"]

        ranged = self.ledger.entries_for_account("acc", start_date=date(2024, 1, 15),
                                                 end_date=date(2024, 2, 15))
        assert [e.description for e in ranged] == ["Feb"]

        assert len(self.ledger.entries_for_account("acc", limit=2)) == 2

    def test_approve_moves_pending_to_approved(self):
        entry = self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("40"), self.day,
                                   "Cheque", status=Status.PENDING)
        assert not entry.is_approved

        approved = self.ledger.approve(entry.id)

        assert approved.status == Status.APPROVED
        assert approved.is_approved
        assert self.ledger.balance("acc", BalanceFilter.AVAILABLE) == Decimal("40.00")
        assert len(self.audit_trail.get_events_by_type(AuditEventType.TRANSACTION_APPROVED)) == 1

        # Approving again changes nothing
        self.ledger.approve(entry.id)
        assert len(self.audit_trail.get_events_by_type(AuditEventType.TRANSACTION_APPROVED)) == 1

    def test_pending_entries_across_accounts(self):
        self.ledger.append("a", TransactionType.DEPOSIT, Decimal("1"), date(2024, 1, 2), "A",
                           status=Status.PENDING)
        self.ledger.append("b", TransactionType.DEPOSIT, Decimal("2"), date(2024, 1, 1), "B",
                           status=Status.PENDING)
        self.ledger.append("a", TransactionType.DEPOSIT, Decimal("3"), date(2024, 1, 1), "Done")

        pending = self.ledger.pending_entries(["a", "b"])
        assert [e.description for e in pending] == ["B", "A"]

    def test_reference_lookup(self):
        self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("5"), self.day, "Tagged",
                           reference="LOAN-DISB-1")

        assert self.ledger.has_reference("acc", "LOAN-DISB-1")
        assert not self.ledger.has_reference("other", "LOAN-DISB-1")
        assert len(self.ledger.find_by_reference("acc", "LOAN-DISB-1")) == 1

    def test_delete_removes_entry_and_audits(self):
        entry = self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("5"), self.day, "Oops")

        self.ledger.delete(entry.id, reason="entered twice")

        with pytest.raises(NotFoundError):
            self.ledger.get_entry(entry.id)
        assert self.ledger.balance("acc") == Decimal("0")
        deleted = self.audit_trail.get_events_by_type(AuditEventType.TRANSACTION_DELETED)
        assert deleted[0].metadata["reason"] == "entered twice"

    def test_every_append_is_audited(self):
        self.ledger.append("acc", TransactionType.DEPOSIT, Decimal("5"), self.day, "One")
        self.ledger.append("acc", TransactionType.WITHDRAWAL, Decimal("2"), self.day, "Two")

        events = self.audit_trail.get_events_by_type(AuditEventType.TRANSACTION_CREATED)
        assert [e.metadata["amount"] for e in events] == ["5.00", "2.00"]
        assert self.audit_trail.verify_integrity()["valid"]
