"""
Pydantic schemas for structured requests

The outer web layer builds these from form or JSON input and hands them to
`BankingSystem`. `parse_request` converts pydantic's validation errors into
the engine's own ValidationError.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, Optional, Type, TypeVar

import pydantic
from pydantic import BaseModel, Field, field_validator

from .constants import PaymentFrequency, TRANSACTION_CATEGORIES, TransactionType
from .exceptions import ValidationError


ModelT = TypeVar("ModelT", bound=BaseModel)


class LoanRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, description="Principal to borrow")
    interest_rate: Decimal = Field(..., ge=0, description="Annual simple interest rate in percent")
    term_months: int = Field(..., ge=1, description="Loan length in months")
    start_date: date = Field(..., description="First day of the loan, today or later")
    payment_frequency: PaymentFrequency = Field(
        PaymentFrequency.MONTHLY, description="Interest charge frequency code (0-3)"
    )
    description: str = Field("", max_length=500)


class UpdateLoanRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    interest_rate: Optional[Decimal] = Field(None, ge=0)
    term_months: Optional[int] = Field(None, ge=1)
    start_date: Optional[date] = None
    payment_frequency: Optional[PaymentFrequency] = None
    description: Optional[str] = Field(None, max_length=500)

    def to_changes(self) -> Dict[str, Any]:
        """Only the fields that were set, named as on the loan account"""
        changes = self.model_dump(exclude_none=True)
        if "amount" in changes:
            changes["principal"] = changes.pop("amount")
        return changes


class TransferRequest(BaseModel):
    source_account_id: str = Field(..., min_length=1)
    destination_account_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    description: Optional[str] = Field(None, max_length=200)


class TransactionRequest(BaseModel):
    """A manual deposit or withdrawal entered by a client"""
    account_id: str = Field(..., min_length=1)
    transaction_type: TransactionType = Field(..., description="1 = deposit, 2 = withdrawal")
    amount: Decimal = Field(..., gt=0)
    value_date: date
    description: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = None

    @field_validator("transaction_type")
    @classmethod
    def deposit_or_withdrawal(cls, value: TransactionType) -> TransactionType:
        if value not in (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL):
            raise ValueError("must be a deposit or a withdrawal")
        return value

    @field_validator("category")
    @classmethod
    def known_category(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in TRANSACTION_CATEGORIES:
            raise ValueError(f"unknown category '{value}'")
        return value


class GICPurchaseRequest(BaseModel):
    product_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    chequing_account_id: Optional[str] = Field(
        None, description="Defaults to the buyer's chequing account"
    )


class GICProductRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    interest_rate: Decimal = Field(..., ge=0)
    term_months: int = Field(..., ge=1)
    minimum_amount: Optional[Decimal] = Field(None, gt=0)
    description: str = ""


def parse_request(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """
    Build a request model from raw input

    Raises:
        ValidationError: With every field problem in one message
    """
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from e
