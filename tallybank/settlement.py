"""
Daily Settlement Module

The end-of-day batch that sequences the loan and GIC lifecycle steps over
every open account, and a background thread that fires it once a day.

Step order within a run is fixed: loan disbursement, loan interest, loan
payoff, loan maturity, GIC maturity. The set of accounts is snapshotted at
the start of the run. A failure on one account is logged and recorded, and
the run carries on with the next account. Every step is idempotent, so a run
can be repeated for the same day without double effects.
"""

from datetime import date, datetime, time, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .exceptions import InvariantViolation
from .gics import GICManager
from .loans import LoanManager
from .logging_config import get_logger, log_action
from .storage import StorageInterface


logger = get_logger("tallybank.settlement")

STEP_DISBURSE = "loan_disbursement"
STEP_INTEREST = "loan_interest"
STEP_PAYOFF = "loan_payoff"
STEP_LOAN_MATURITY = "loan_maturity"
STEP_GIC_MATURITY = "gic_maturity"

STEP_ORDER = (STEP_DISBURSE, STEP_INTEREST, STEP_PAYOFF, STEP_LOAN_MATURITY, STEP_GIC_MATURITY)


@dataclass
class SettlementFailure:
    step: str
    account_id: str
    error_type: str
    message: str


@dataclass
class SettlementReport:
    """Outcome of one settlement run"""
    run_id: str
    settlement_date: date
    started_at: datetime
    finished_at: Optional[datetime] = None
    loans_checked: int = 0
    gics_checked: int = 0
    disbursed: int = 0
    interest_charged: int = 0
    paid_off: int = 0
    loans_closed: int = 0
    gics_matured: int = 0
    failures: List[SettlementFailure] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["settlement_date"] = self.settlement_date.isoformat()
        result["started_at"] = self.started_at.isoformat()
        result["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return result


class DailySettlement:
    """Runs the end-of-day lifecycle steps over every open loan and GIC"""

    def __init__(self, storage: StorageInterface, loans: LoanManager, gics: GICManager,
                 audit_trail: AuditTrail):
        self.storage = storage
        self.loans = loans
        self.gics = gics
        self.audit_trail = audit_trail
        self.table_name = "settlement_runs"

    def run(self, settlement_date: Optional[date] = None) -> SettlementReport:
        """
        Run every settlement step for one business day

        Args:
            settlement_date: Business day being settled, defaults to today

        Returns:
            SettlementReport with per-step counts and any per-account failures
        """
        settlement_date = settlement_date or date.today()
        report = SettlementReport(
            run_id=uuid.uuid4().hex,
            settlement_date=settlement_date,
            started_at=datetime.now(timezone.utc)
        )

        # Snapshot of the accounts this run works on
        loan_ids = [loan.id for loan in self.loans.get_active_loans()]
        gic_ids = [gic.id for gic in self.gics.get_active_gics()]
        report.loans_checked = len(loan_ids)
        report.gics_checked = len(gic_ids)

        log_action(logger, "info", f"Daily settlement started for {settlement_date.isoformat()}",
                   action="SETTLEMENT_STARTED", correlation_id=report.run_id,
                   extra={"loans": len(loan_ids), "gics": len(gic_ids)})

        report.disbursed = self._run_step(report, STEP_DISBURSE, loan_ids,
                                          lambda i: self.loans.disburse(i, settlement_date))
        report.interest_charged = self._run_step(report, STEP_INTEREST, loan_ids,
                                                 lambda i: self.loans.process_interest(i, settlement_date))
        report.paid_off = self._run_step(report, STEP_PAYOFF, loan_ids,
                                         lambda i: self.loans.check_payoff(i, settlement_date))
        report.loans_closed = self._run_step(report, STEP_LOAN_MATURITY, loan_ids,
                                             lambda i: self.loans.check_maturity(i, settlement_date))
        report.gics_matured = self._run_step(report, STEP_GIC_MATURITY, gic_ids,
                                             lambda i: self.gics.check_maturity(i, settlement_date))

        report.finished_at = datetime.now(timezone.utc)
        self._record(report)

        log_action(
            logger, "warning" if report.failures else "info",
            f"Daily settlement finished for {settlement_date.isoformat()}",
            action="SETTLEMENT_COMPLETED", correlation_id=report.run_id,
            extra={
                "disbursed": report.disbursed,
                "interest_charged": report.interest_charged,
                "paid_off": report.paid_off,
                "loans_closed": report.loans_closed,
                "gics_matured": report.gics_matured,
                "failures": len(report.failures)
            }
        )
        return report

    def _run_step(self, report: SettlementReport, step: str, account_ids: List[str],
                  action: Callable[[str], Any]) -> int:
        """Apply one step to each account; returns how many accounts it affected"""
        affected = 0
        for account_id in account_ids:
            try:
                outcome = action(account_id)
            except Exception as e:
                level = "critical" if isinstance(e, InvariantViolation) else "error"
                log_action(logger, level, f"Settlement step {step} failed for {account_id}: {e}",
                           action="SETTLEMENT_STEP_FAILED", resource=account_id,
                           correlation_id=report.run_id,
                           extra={"step": step, "error_type": type(e).__name__},
                           exc_info=(type(e), e, e.__traceback__))
                report.failures.append(SettlementFailure(
                    step=step,
                    account_id=account_id,
                    error_type=type(e).__name__,
                    message=str(e)
                ))
                continue
            if outcome:
                affected += 1
        return affected

    def _record(self, report: SettlementReport) -> None:
        with self.storage.atomic():
            self.storage.save(self.table_name, report.run_id, report.to_dict())
            self.audit_trail.log_event(AuditEventType.SETTLEMENT_COMPLETED, "settlement", report.run_id, {
                "settlement_date": report.settlement_date,
                "disbursed": report.disbursed,
                "interest_charged": report.interest_charged,
                "paid_off": report.paid_off,
                "loans_closed": report.loans_closed,
                "gics_matured": report.gics_matured,
                "failures": len(report.failures)
            })

    def get_runs(self, settlement_date: Optional[date] = None) -> List[Dict[str, Any]]:
        """Recorded runs, optionally for one business day, oldest first"""
        if settlement_date is None:
            runs = self.storage.load_all(self.table_name)
        else:
            runs = self.storage.find(self.table_name, {"settlement_date": settlement_date.isoformat()})
        return sorted(runs, key=lambda r: r["started_at"])


class SettlementScheduler:
    """
    Background thread firing the daily settlement at a fixed local time

    Nothing else in the process is blocked while it runs; user requests and
    the batch share the storage lock only for the span of each atomic block.
    """

    def __init__(self, settlement: DailySettlement, hour: int = 0, minute: int = 0,
                 clock: Callable[[], datetime] = datetime.now):
        self.settlement = settlement
        self.run_at = time(hour=hour, minute=minute)
        self.clock = clock
        self.last_report: Optional[SettlementReport] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def next_run_at(self, now: Optional[datetime] = None) -> datetime:
        """The next moment the settlement should fire, strictly after now"""
        now = now or self.clock()
        candidate = datetime.combine(now.date(), self.run_at, tzinfo=now.tzinfo)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="tallybank-settlement", daemon=True)
        self._thread.start()
        logger.info(f"Settlement scheduler started, next run at {self.next_run_at().isoformat()}")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Settlement scheduler stopped")

    def run_now(self, settlement_date: Optional[date] = None) -> SettlementReport:
        """Fire the settlement immediately, outside the schedule"""
        self.last_report = self.settlement.run(settlement_date or self.clock().date())
        return self.last_report

    def _run_loop(self) -> None:
        next_run = self.next_run_at()
        while not self._stop_event.is_set():
            now = self.clock()
            if now < next_run:
                self._stop_event.wait((next_run - now).total_seconds())
                continue
            try:
                self.run_now(next_run.date())
            except Exception:
                logger.exception("Daily settlement run failed")
            next_run = self.next_run_at(self.clock())
