"""
Test suite for the transfer engine

Internal transfers must write both legs or neither; system transactions are
auto-approved; manual transactions wait for approval.
"""

import pytest
from decimal import Decimal
from datetime import date

from tallybank.accounts import AccountRegistry
from tallybank.audit import AuditTrail, AuditEventType
from tallybank.constants import AccountType, BalanceFilter, Status, TransactionType
from tallybank.exceptions import NotFoundError, ValidationError
from tallybank.ledger import Ledger
from tallybank.storage import InMemoryStorage
from tallybank.transfers import TransferEngine


class TestTransferEngine:
    """Test transfers and single-entry postings"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = Ledger(self.storage, self.audit_trail)
        self.accounts = AccountRegistry(self.storage, self.audit_trail)
        self.transfers = TransferEngine(self.storage, self.ledger, self.accounts, self.audit_trail)

        self.chequing = self.accounts.get_or_create_chequing("alice")
        self.other = self.accounts.get_or_create_chequing("bob")
        self.day = date(2024, 6, 3)

    def test_transfer_writes_both_legs(self):
        transfer_id = self.transfers.execute_transfer(
            self.chequing.id, self.other.id, Decimal("25.50"), "To Bob", "From Alice",
            value_date=self.day
        )

        legs = self.ledger.entries_by_transfer(transfer_id)
        assert len(legs) == 2
        by_account = {leg.account_id: leg for leg in legs}
        assert by_account[self.chequing.id].transaction_type == TransactionType.WITHDRAWAL
        assert by_account[self.other.id].transaction_type == TransactionType.DEPOSIT
        assert all(leg.status == Status.APPROVED for leg in legs)
        assert all(leg.amount == Decimal("25.50") for leg in legs)

        assert self.ledger.balance(self.chequing.id) == Decimal("-25.50")
        assert self.ledger.balance(self.other.id) == Decimal("25.50")
        assert len(self.audit_trail.get_events_by_type(AuditEventType.TRANSFER_EXECUTED)) == 1

    def test_transfer_conserves_money(self):
        self.transfers.execute_transfer(self.chequing.id, self.other.id, Decimal("10"), "a", "b")
        self.transfers.execute_transfer(self.other.id, self.chequing.id, Decimal("3.33"), "c", "d")

        total = self.ledger.balance(self.chequing.id) + self.ledger.balance(self.other.id)
        assert total == Decimal("0")

    def test_transfer_to_same_account(self):
        with pytest.raises(ValidationError, match="same account"):
            self.transfers.execute_transfer(self.chequing.id, self.chequing.id, Decimal("1"), "a", "b")

    def test_transfer_non_positive_amount(self):
        with pytest.raises(ValidationError):
            self.transfers.execute_transfer(self.chequing.id, self.other.id, Decimal("0"), "a", "b")

    def test_transfer_to_missing_account_writes_nothing(self):
        with pytest.raises(NotFoundError):
            self.transfers.execute_transfer(self.chequing.id, "ghost", Decimal("5"), "a", "b")

        assert self.storage.count("transactions") == 0

    def test_failed_second_leg_rolls_back_first(self, monkeypatch):
        """If writing the withdrawal fails, the deposit leg disappears too"""
        original_append = self.ledger.append
        calls = []

        def failing_append(account_id, transaction_type, *args, **kwargs):
            calls.append(transaction_type)
            if transaction_type == TransactionType.WITHDRAWAL:
                raise RuntimeError("disk full")
            return original_append(account_id, transaction_type, *args, **kwargs)

        monkeypatch.setattr(self.ledger, "append", failing_append)

        with pytest.raises(RuntimeError):
            self.transfers.execute_transfer(self.chequing.id, self.other.id, Decimal("5"), "a", "b")

        assert calls == [TransactionType.DEPOSIT, TransactionType.WITHDRAWAL]
        assert self.storage.count("transactions") == 0
        assert self.ledger.balance(self.other.id) == Decimal("0")
        assert self.audit_trail.verify_integrity()["valid"]

    def test_system_transaction_is_prefixed_and_approved(self):
        entry = self.transfers.create_system_transaction(
            self.chequing.id, TransactionType.DEPOSIT, Decimal("100"), "Loan disbursement",
            value_date=self.day, reference="LOAN-DISB-x"
        )

        assert entry.description == "[SYSTEM] Loan disbursement"
        assert entry.status == Status.APPROVED
        assert entry.reference == "LOAN-DISB-x"
        assert self.ledger.balance(self.chequing.id, BalanceFilter.AVAILABLE) == Decimal("100.00")

    def test_manual_transaction_starts_pending(self):
        entry = self.transfers.create_transaction(
            self.chequing.id, TransactionType.DEPOSIT, Decimal("80"), self.day, "Cash",
            category="Paycheck", today=self.day
        )

        assert entry.status == Status.PENDING
        assert entry.category == "Paycheck"
        assert self.ledger.balance(self.chequing.id) == Decimal("80.00")
        assert self.ledger.balance(self.chequing.id, BalanceFilter.AVAILABLE) == Decimal("0")

        self.transfers.approve_transaction(entry.id)
        assert self.ledger.balance(self.chequing.id, BalanceFilter.AVAILABLE) == Decimal("80.00")

    def test_manual_transaction_validation(self):
        with pytest.raises(ValidationError, match="future"):
            self.transfers.create_transaction(self.chequing.id, TransactionType.DEPOSIT, Decimal("1"),
                                              date(2024, 6, 4), "Tomorrow", today=self.day)
        with pytest.raises(ValidationError, match="Description"):
            self.transfers.create_transaction(self.chequing.id, TransactionType.DEPOSIT, Decimal("1"),
                                              self.day, "   ", today=self.day)
        with pytest.raises(ValidationError, match="category"):
            self.transfers.create_transaction(self.chequing.id, TransactionType.DEPOSIT, Decimal("1"),
                                              self.day, "Cash", category="Yachts", today=self.day)
        with pytest.raises(ValidationError):
            self.transfers.create_transaction(self.chequing.id, TransactionType.TRANSFER, Decimal("1"),
                                              self.day, "Cash", today=self.day)

    def test_manual_transaction_only_on_chequing(self):
        loan = self.accounts.create("alice", AccountType.LOAN, Status.ACTIVE)

        with pytest.raises(ValidationError, match="chequing"):
            self.transfers.create_transaction(loan.id, TransactionType.DEPOSIT, Decimal("1"),
                                              self.day, "Cash", today=self.day)

    def test_delete_transfer_leg_removes_both(self):
        transfer_id = self.transfers.execute_transfer(self.chequing.id, self.other.id,
                                                      Decimal("7"), "a", "b")
        leg = self.ledger.entries_by_transfer(transfer_id)[0]

        removed = self.transfers.delete_transaction(leg.id, "mistake")

        assert removed == 2
        assert self.ledger.entries_by_transfer(transfer_id) == []
        assert self.ledger.balance(self.chequing.id) == Decimal("0")

    def test_delete_single_entry(self):
        entry = self.transfers.create_transaction(self.chequing.id, TransactionType.WITHDRAWAL,
                                                  Decimal("3"), self.day, "Coffee", today=self.day)

        assert self.transfers.delete_transaction(entry.id) == 1
        assert self.ledger.balance(self.chequing.id) == Decimal("0")
