"""
GIC Module

Guaranteed Investment Certificates: the admin-managed product catalogue and
the lifecycle of purchased investments (ACTIVE → CLOSED).

Buying a GIC snapshots the product's rate, term and name onto a new
INVESTMENT account and moves the principal out of chequing. At maturity the
earned interest is credited to the investment and its full value, principal
plus interest, comes back to chequing in a single transfer.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import uuid

from .accounts import Account, AccountRegistry
from .audit import AuditTrail, AuditEventType
from .constants import AccountType, BalanceFilter, Status, TransactionType
from .exceptions import InsufficientFundsError, NotFoundError, ValidationError
from .financial import days_until_maturity, gic_maturity_value, has_reached_maturity, maturity_date
from .ledger import Ledger
from .logging_config import get_logger, log_action
from .money import ZERO, format_money, round_money, to_decimal
from .storage import StorageInterface, StorageRecord
from .transfers import TransferEngine


logger = get_logger("tallybank.gics")

DEFAULT_MINIMUM_AMOUNT = Decimal("100.00")


def purchase_reference(gic_id: str) -> str:
    return f"GIC-BUY-{gic_id}"


def interest_reference(gic_id: str) -> str:
    return f"GIC-INT-{gic_id}"


def maturity_reference(gic_id: str) -> str:
    return f"GIC-MAT-{gic_id}"


@dataclass
class GICProduct(StorageRecord):
    """A GIC offering. Edits never affect investments already bought."""
    name: str
    interest_rate: Decimal
    term_months: int
    minimum_amount: Decimal = DEFAULT_MINIMUM_AMOUNT
    description: str = ""


class GICProductCatalog:
    """Admin CRUD over GIC products"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 default_minimum_amount: Decimal = DEFAULT_MINIMUM_AMOUNT):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_minimum_amount = default_minimum_amount
        self.table_name = "gic_products"

    def create_product(self, name: str, interest_rate, term_months: int,
                       minimum_amount=None, description: str = "") -> GICProduct:
        values = self._validate(name, interest_rate, term_months,
                                self.default_minimum_amount if minimum_amount is None else minimum_amount)
        now = datetime.now(timezone.utc)
        product = GICProduct(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            description=description or "",
            **values
        )

        with self.storage.atomic():
            self._save_product(product)
            self.audit_trail.log_event(AuditEventType.GIC_PRODUCT_CREATED, "gic_product", product.id, values)

        logger.info(f"Created GIC product {product.name} ({product.id})")
        return product

    def update_product(self, product_id: str, **changes: Any) -> GICProduct:
        allowed = {"name", "interest_rate", "term_months", "minimum_amount", "description"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot edit product fields: {', '.join(sorted(unknown))}")

        with self.storage.atomic():
            product = self.get_product(product_id)
            values = self._validate(
                changes.get("name", product.name),
                changes.get("interest_rate", product.interest_rate),
                changes.get("term_months", product.term_months),
                changes.get("minimum_amount", product.minimum_amount),
            )
            for key, value in values.items():
                setattr(product, key, value)
            if "description" in changes:
                product.description = changes["description"] or ""
            product.updated_at = datetime.now(timezone.utc)

            self._save_product(product)
            self.audit_trail.log_event(AuditEventType.GIC_PRODUCT_UPDATED, "gic_product", product.id,
                                       {"changes": changes})
        return product

    def delete_product(self, product_id: str) -> None:
        with self.storage.atomic():
            product = self.get_product(product_id)
            self.storage.delete(self.table_name, product.id)
            self.audit_trail.log_event(AuditEventType.GIC_PRODUCT_DELETED, "gic_product", product.id,
                                       {"name": product.name})

    def get_product(self, product_id: str) -> GICProduct:
        data = self.storage.load(self.table_name, product_id)
        if not data:
            raise NotFoundError(f"GIC product {product_id} not found")
        return self._product_from_dict(data)

    def list_products(self) -> List[GICProduct]:
        products = [self._product_from_dict(d) for d in self.storage.load_all(self.table_name)]
        return sorted(products, key=lambda p: (p.term_months, p.name))

    def _validate(self, name, interest_rate, term_months, minimum_amount) -> Dict[str, Any]:
        if not name or not str(name).strip():
            raise ValidationError("Product name is required")
        try:
            interest_rate = to_decimal(interest_rate)
            minimum_amount = round_money(minimum_amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if interest_rate < ZERO:
            raise ValidationError("Interest rate cannot be negative")
        if not isinstance(term_months, int) or isinstance(term_months, bool) or term_months < 1:
            raise ValidationError("Term must be a whole number of months, at least 1")
        if minimum_amount <= ZERO:
            raise ValidationError("Minimum amount must be positive")
        return {
            "name": str(name).strip(),
            "interest_rate": interest_rate,
            "term_months": term_months,
            "minimum_amount": minimum_amount,
        }

    def _save_product(self, product: GICProduct) -> None:
        self.storage.save(self.table_name, product.id, product.to_dict())

    def _product_from_dict(self, data: Dict) -> GICProduct:
        data = dict(data)
        data["interest_rate"] = to_decimal(data["interest_rate"])
        data["minimum_amount"] = to_decimal(data["minimum_amount"])
        return GICProduct.from_dict(data)


class GICManager:
    """Purchase and maturity of GIC investments"""

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountRegistry,
        ledger: Ledger,
        transfers: TransferEngine,
        products: GICProductCatalog,
        audit_trail: AuditTrail
    ):
        self.storage = storage
        self.accounts = accounts
        self.ledger = ledger
        self.transfers = transfers
        self.products = products
        self.audit_trail = audit_trail

    def purchase(self, user_id: str, chequing_account_id: str, product_id: str,
                 amount, as_of: Optional[date] = None) -> Account:
        """
        Buy a GIC with money from the user's chequing account

        The investment account and the funding transfer are written in one
        atomic block: either the GIC exists and is funded, or neither happened.

        Raises:
            NotFoundError: If the product does not exist
            ValidationError: Below the product minimum, or not the user's chequing account
            InsufficientFundsError: If the approved chequing balance is too low
        """
        as_of = as_of or date.today()
        try:
            amount = round_money(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        product = self.products.get_product(product_id)
        if amount < product.minimum_amount:
            raise ValidationError(
                f"Minimum investment for {product.name} is {format_money(product.minimum_amount)}"
            )

        chequing = self.accounts.get(chequing_account_id)
        if chequing.owner_id != user_id or chequing.account_type != AccountType.CHEQUING:
            raise ValidationError("GICs must be funded from your own chequing account")

        available = self.ledger.balance(chequing.id, BalanceFilter.AVAILABLE)
        if amount > available:
            raise InsufficientFundsError(
                f"Insufficient funds: available {format_money(available)}, requested {format_money(amount)}"
            )

        with self.storage.atomic():
            gic = self.accounts.create(
                user_id, AccountType.INVESTMENT, Status.ACTIVE,
                description=f"GIC - {product.name}",
                principal=amount,
                interest_rate=product.interest_rate,
                term_months=product.term_months,
                start_date=as_of,
                product_id=product.id,
                product_name=product.name
            )
            transfer_id = self.transfers.execute_transfer(
                chequing.id, gic.id, amount,
                f"GIC Investment - {product.name}",
                f"GIC purchase from {chequing.display_name}",
                value_date=as_of, reference=purchase_reference(gic.id)
            )
            self.audit_trail.log_event(AuditEventType.GIC_PURCHASED, "account", gic.id, {
                "product_id": product.id,
                "amount": amount,
                "interest_rate": product.interest_rate,
                "term_months": product.term_months,
                "transfer_id": transfer_id
            }, user_id=user_id)

        log_action(logger, "info", f"GIC {gic.id} purchased for {amount}",
                   user_id=user_id, action="GIC_PURCHASED", resource=gic.id,
                   correlation_id=transfer_id,
                   extra={"product": product.name, "amount": str(amount),
                          "maturity_date": maturity_date(as_of, product.term_months).isoformat()})
        return gic

    def maturity_value(self, gic: Account) -> Decimal:
        """Principal plus monthly-compounded interest, rounded to cents"""
        return round_money(gic_maturity_value(gic.principal, gic.interest_rate, gic.term_months))

    def check_maturity(self, gic_id: str, as_of: Optional[date] = None) -> bool:
        """
        Pay out and close a GIC that has reached maturity

        Credits the earned interest to the investment, transfers the full
        maturity value to chequing and marks the GIC CLOSED, atomically.

        Returns:
            True if the GIC was closed by this call

        Raises:
            InvariantViolation: If the owner has no chequing account
        """
        as_of = as_of or date.today()
        with self.storage.atomic():
            gic = self.get_gic(gic_id)
            if gic.status != Status.ACTIVE:
                return False
            if not has_reached_maturity(gic.start_date, gic.term_months, as_of):
                return False

            chequing = self.accounts.get_chequing(gic.owner_id)
            value = self.maturity_value(gic)
            interest = value - self.ledger.balance(gic.id)
            if interest > ZERO:
                self.transfers.create_system_transaction(
                    gic.id, TransactionType.DEPOSIT, interest,
                    f"GIC interest - {gic.product_name}",
                    value_date=as_of, reference=interest_reference(gic.id)
                )

            payout = self.ledger.balance(gic.id)
            transfer_id = None
            if payout > ZERO:
                transfer_id = self.transfers.execute_transfer(
                    gic.id, chequing.id, payout,
                    "GIC matured - payout to chequing",
                    f"GIC Maturity - {gic.product_name}",
                    value_date=as_of, reference=maturity_reference(gic.id)
                )

            self.accounts.set_status(gic.id, Status.CLOSED, "GIC matured")
            self.audit_trail.log_event(AuditEventType.GIC_MATURED, "account", gic.id, {
                "maturity_value": value,
                "interest": max(interest, ZERO),
                "payout": payout,
                "transfer_id": transfer_id
            })

        log_action(logger, "info", f"GIC {gic.id} matured, paid {payout} to chequing",
                   user_id=gic.owner_id, action="GIC_PAYOFF", resource=gic.id,
                   correlation_id=transfer_id,
                   extra={"principal": str(gic.principal), "interest": str(max(interest, ZERO)),
                          "payout": str(payout)})
        return True

    def get_gic(self, gic_id: str) -> Account:
        account = self.accounts.find(gic_id)
        if account is None or not account.is_investment:
            raise NotFoundError(f"GIC {gic_id} not found")
        return account

    def get_user_gics(self, user_id: str, status_filter: Optional[Status] = None) -> List[Account]:
        return self.accounts.list_accounts(owner_id=user_id, account_type=AccountType.INVESTMENT,
                                           status=status_filter)

    def get_active_gics(self) -> List[Account]:
        return self.accounts.list_accounts(account_type=AccountType.INVESTMENT, status=Status.ACTIVE)

    def get_maturing_gics(self, days: int = 30, as_of: Optional[date] = None) -> List[Account]:
        """ACTIVE GICs maturing within the next `days` days, soonest first"""
        as_of = as_of or date.today()
        maturing = [
            gic for gic in self.get_active_gics()
            if 0 <= days_until_maturity(gic.start_date, gic.term_months, as_of) <= days
        ]
        maturing.sort(key=lambda gic: maturity_date(gic.start_date, gic.term_months))
        return maturing
