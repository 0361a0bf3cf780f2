"""
Test suite for the daily settlement batch and its scheduler
"""

from decimal import Decimal
from datetime import date, datetime

from tallybank.accounts import AccountRegistry
from tallybank.audit import AuditTrail, AuditEventType
from tallybank.constants import PaymentFrequency, Status, TransactionType
from tallybank.gics import GICManager, GICProductCatalog
from tallybank.ledger import Ledger
from tallybank.loans import LoanManager
from tallybank.settlement import (
    DailySettlement, SettlementScheduler, STEP_DISBURSE, STEP_ORDER,
)
from tallybank.storage import InMemoryStorage
from tallybank.transfers import TransferEngine


class TestDailySettlement:
    """Test the end-of-day run"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.ledger = Ledger(self.storage, self.audit_trail)
        self.accounts = AccountRegistry(self.storage, self.audit_trail)
        self.transfers = TransferEngine(self.storage, self.ledger, self.accounts, self.audit_trail)
        self.loans = LoanManager(self.storage, self.accounts, self.ledger, self.transfers,
                                 self.audit_trail)
        self.catalog = GICProductCatalog(self.storage, self.audit_trail)
        self.gics = GICManager(self.storage, self.accounts, self.ledger, self.transfers,
                               self.catalog, self.audit_trail)
        self.settlement = DailySettlement(self.storage, self.loans, self.gics, self.audit_trail)

        self.start = date(2024, 1, 15)

    def active_loan(self, user_id, amount="1000", term=12, frequency=PaymentFrequency.MONTHLY):
        loan = self.loans.create_request(user_id, Decimal(amount), Decimal("12"), term,
                                         self.start, frequency, today=date(2024, 1, 1))
        return self.loans.approve(loan.id)

    def balance(self, user_id):
        return self.ledger.balance(self.accounts.get_chequing(user_id).id)

    def test_step_order(self):
        assert STEP_ORDER == ("loan_disbursement", "loan_interest", "loan_payoff",
                              "loan_maturity", "gic_maturity")

    def test_run_disburses_on_start_date(self):
        loan = self.active_loan("alice")

        before = self.settlement.run(date(2024, 1, 14))
        assert before.disbursed == 0
        assert before.loans_checked == 1

        report = self.settlement.run(self.start)
        assert report.disbursed == 1
        assert report.succeeded
        assert self.balance("alice") == Decimal("1000.00")
        assert self.loans.get_loan(loan.id).status == Status.ACTIVE

    def test_repeated_run_has_no_double_effects(self):
        self.active_loan("alice")

        self.settlement.run(self.start)
        self.settlement.run(date(2024, 2, 15))
        balance_after_first = self.balance("alice")

        again = self.settlement.run(date(2024, 2, 15))

        assert again.disbursed == 0
        assert again.interest_charged == 0
        assert self.balance("alice") == balance_after_first
        # 1000 − 12% × 31 / 365 of 1000
        assert balance_after_first == Decimal("989.81")

    def test_full_loan_lifecycle_to_maturity(self):
        loan = self.active_loan("alice", term=1, frequency=PaymentFrequency.AT_MATURITY)

        self.settlement.run(self.start)
        report = self.settlement.run(date(2024, 2, 15))

        assert report.loans_closed == 1
        assert self.loans.get_loan(loan.id).status == Status.CLOSED
        assert self.balance("alice") == Decimal("-10.19")

        # Closed loans drop out of later runs
        assert self.settlement.run(date(2024, 2, 16)).loans_checked == 0

    def test_gic_matures_in_run(self):
        chequing = self.accounts.get_or_create_chequing("carol")
        self.transfers.create_system_transaction(chequing.id, TransactionType.DEPOSIT,
                                                 Decimal("2000"), "Opening deposit")
        product = self.catalog.create_product("One Year", Decimal("5"), 12)
        gic = self.gics.purchase("carol", chequing.id, product.id, Decimal("1000"),
                                 as_of=date(2024, 1, 10))

        report = self.settlement.run(date(2025, 1, 10))

        assert report.gics_checked == 1
        assert report.gics_matured == 1
        assert self.gics.get_gic(gic.id).status == Status.CLOSED
        assert self.balance("carol") == Decimal("2051.16")

    def test_failure_on_one_loan_does_not_stop_others(self):
        broken = self.active_loan("alice")
        healthy = self.active_loan("bob")
        self.accounts.delete(self.accounts.get_chequing("alice").id)

        report = self.settlement.run(self.start)

        assert report.disbursed == 1
        assert not report.succeeded
        failures = [f for f in report.failures if f.step == STEP_DISBURSE]
        assert len(failures) == 1
        assert failures[0].account_id == broken.id
        assert failures[0].error_type == "InvariantViolation"
        assert self.balance("bob") == Decimal("1000.00")
        assert self.loans.get_loan(healthy.id).status == Status.ACTIVE

    def test_run_is_recorded_and_audited(self):
        self.active_loan("alice")

        report = self.settlement.run(self.start)

        runs = self.settlement.get_runs(self.start)
        assert len(runs) == 1
        assert runs[0]["run_id"] == report.run_id
        assert runs[0]["disbursed"] == 1
        assert self.settlement.get_runs(date(2024, 1, 16)) == []

        events = self.audit_trail.get_events_by_type(AuditEventType.SETTLEMENT_COMPLETED)
        assert events[-1].entity_id == report.run_id
        assert self.audit_trail.verify_integrity()["valid"]


class TestSettlementScheduler:
    """Test scheduling of the daily run"""

    def setup_method(self):
        storage = InMemoryStorage()
        audit_trail = AuditTrail(storage)
        ledger = Ledger(storage, audit_trail)
        accounts = AccountRegistry(storage, audit_trail)
        transfers = TransferEngine(storage, ledger, accounts, audit_trail)
        loans = LoanManager(storage, accounts, ledger, transfers, audit_trail)
        gics = GICManager(storage, accounts, ledger, transfers,
                          GICProductCatalog(storage, audit_trail), audit_trail)
        self.settlement = DailySettlement(storage, loans, gics, audit_trail)
        self.now = datetime(2024, 3, 5, 14, 30)

    def test_next_run_later_today(self):
        scheduler = SettlementScheduler(self.settlement, hour=23, minute=15, clock=lambda: self.now)
        assert scheduler.next_run_at() == datetime(2024, 3, 5, 23, 15)

    def test_next_run_tomorrow_when_time_has_passed(self):
        scheduler = SettlementScheduler(self.settlement, hour=0, minute=0, clock=lambda: self.now)
        assert scheduler.next_run_at() == datetime(2024, 3, 6, 0, 0)

    def test_next_run_is_strictly_after_now(self):
        scheduler = SettlementScheduler(self.settlement, hour=14, minute=30)
        assert scheduler.next_run_at(self.now) == datetime(2024, 3, 6, 14, 30)

    def test_run_now_uses_clock_date(self):
        scheduler = SettlementScheduler(self.settlement, clock=lambda: self.now)

        report = scheduler.run_now()

        assert report.settlement_date == date(2024, 3, 5)
        assert scheduler.last_report is report

    def test_start_and_stop(self):
        scheduler = SettlementScheduler(self.settlement, clock=lambda: self.now)

        scheduler.start()
        assert scheduler.is_running
        scheduler.stop()
        assert not scheduler.is_running
