"""
Pydantic schemas for API requests

Amounts and rates travel as decimal strings and dates as ISO strings; the
to_x() converters turn them into domain objects and raise ValidationError on
values the domain rejects.
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..calculations import PricingPatch, FeeChangeset, FeeAmountUpdate
from ..currency import decimal_from_string
from ..exceptions import ValidationError
from ..fees import BasisAmount, FeeCalculationType, FeeTier, FeeType
from ..interest import AccrualMethod, DayCountConvention
from ..loans import InvoiceStatus, LoanPricing, LoanStatus, PricingStatus
from ..service import (
    AddFeeRequest, BatchPreviewItem, BatchUpdateItem, FeeUpdate, InvoiceUpdate, LoanUpdate, NewInvoice
)
from ..splitting import SplitPartition


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return decimal_from_string(value) if value is not None else None


def parse_iso_date(value: Optional[str], name: str) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Invalid {name}: {value!r}")


def _enum(enum_cls, value: Optional[str], name: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {name} {value!r}; expected one of {allowed}")


# Fee schemas
class FeeTierModel(BaseModel):
    min_amount: str = Field(..., description="Decimal amount as string")
    max_amount: Optional[str] = Field(None, description="Decimal amount as string; null for unbounded")
    rate: str = Field(..., description="Decimal rate as string")

    def to_tier(self) -> FeeTier:
        return FeeTier(_decimal(self.min_amount), _decimal(self.max_amount), _decimal(self.rate))


def _tiers(models: Optional[List[FeeTierModel]]) -> Optional[List[FeeTier]]:
    return [m.to_tier() for m in models] if models is not None else None


class CreateFeeConfigRequest(BaseModel):
    code: str
    name: str
    fee_type: str = Field(..., description="arrangement, commitment, facility, late_payment or custom")
    calculation_type: str = Field(..., description="flat, percentage or tiered")
    default_flat_amount: Optional[str] = None
    default_rate: Optional[str] = None
    default_basis_amount: Optional[str] = Field(None, description="principal, outstanding or total_invoices")
    default_tiers: Optional[List[FeeTierModel]] = None
    is_active: bool = True

    def to_kwargs(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "name": self.name,
            "fee_type": _enum(FeeType, self.fee_type, "fee_type"),
            "calculation_type": _enum(FeeCalculationType, self.calculation_type, "calculation_type"),
            "default_flat_amount": _decimal(self.default_flat_amount),
            "default_rate": _decimal(self.default_rate),
            "default_basis_amount": _enum(BasisAmount, self.default_basis_amount, "default_basis_amount"),
            "default_tiers": _tiers(self.default_tiers),
            "is_active": self.is_active,
        }


class UpdateFeeConfigRequest(BaseModel):
    """Partial update; only the fields present in the body are changed"""
    code: Optional[str] = None
    name: Optional[str] = None
    fee_type: Optional[str] = None
    calculation_type: Optional[str] = None
    default_flat_amount: Optional[str] = None
    default_rate: Optional[str] = None
    default_basis_amount: Optional[str] = None
    default_tiers: Optional[List[FeeTierModel]] = None
    is_active: Optional[bool] = None

    def to_changes(self) -> Dict[str, Any]:
        converters = {
            "fee_type": lambda v: _enum(FeeType, v, "fee_type"),
            "calculation_type": lambda v: _enum(FeeCalculationType, v, "calculation_type"),
            "default_flat_amount": _decimal,
            "default_rate": _decimal,
            "default_basis_amount": lambda v: _enum(BasisAmount, v, "default_basis_amount"),
            "default_tiers": _tiers,
        }
        changes = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name in ("code", "name", "fee_type", "calculation_type", "is_active"):
                raise ValidationError(f"{name} cannot be null")
            changes[name] = converters[name](value) if name in converters else value
        return changes


class AddFeeModel(BaseModel):
    fee_config_id: str
    flat_amount: Optional[str] = None
    rate: Optional[str] = None
    basis_amount: Optional[str] = None
    tiers: Optional[List[FeeTierModel]] = None
    currency: Optional[str] = None
    due_date: Optional[str] = None  # ISO date string

    def to_request(self) -> AddFeeRequest:
        return AddFeeRequest(
            fee_config_id=self.fee_config_id,
            flat_amount=_decimal(self.flat_amount),
            rate=_decimal(self.rate),
            basis_amount=_enum(BasisAmount, self.basis_amount, "basis_amount"),
            tiers=_tiers(self.tiers),
            currency=self.currency,
            due_date=parse_iso_date(self.due_date, "due_date"),
        )


class UpdateFeeModel(BaseModel):
    flat_amount: Optional[str] = None
    rate: Optional[str] = None
    basis_amount: Optional[str] = None
    tiers: Optional[List[FeeTierModel]] = None
    currency: Optional[str] = None
    due_date: Optional[str] = None
    is_paid: Optional[bool] = None
    is_waived: Optional[bool] = None
    waived_reason: Optional[str] = None

    def to_update(self) -> FeeUpdate:
        return FeeUpdate(
            flat_amount=_decimal(self.flat_amount),
            rate=_decimal(self.rate),
            basis_amount=_enum(BasisAmount, self.basis_amount, "basis_amount"),
            tiers=_tiers(self.tiers),
            currency=self.currency,
            due_date=parse_iso_date(self.due_date, "due_date"),
            is_paid=self.is_paid,
            is_waived=self.is_waived,
            waived_reason=self.waived_reason,
        )


# Invoice schemas
class AddInvoiceModel(BaseModel):
    invoice_number: str
    debtor_name: str
    amount: str = Field(..., description="Decimal amount as string")
    due_date: str
    issue_date: Optional[str] = None
    currency: Optional[str] = None
    description: Optional[str] = None

    def to_new_invoice(self) -> NewInvoice:
        return NewInvoice(
            invoice_number=self.invoice_number,
            debtor_name=self.debtor_name,
            amount=_decimal(self.amount),
            due_date=parse_iso_date(self.due_date, "due_date"),
            issue_date=parse_iso_date(self.issue_date, "issue_date"),
            currency=self.currency,
            description=self.description,
        )


class UpdateInvoiceModel(BaseModel):
    invoice_number: Optional[str] = None
    debtor_name: Optional[str] = None
    amount: Optional[str] = None
    due_date: Optional[str] = None
    status: Optional[str] = None
    description: Optional[str] = None

    def to_update(self) -> InvoiceUpdate:
        return InvoiceUpdate(
            invoice_number=self.invoice_number,
            debtor_name=self.debtor_name,
            amount=_decimal(self.amount),
            due_date=parse_iso_date(self.due_date, "due_date"),
            status=_enum(InvoiceStatus, self.status, "status"),
            description=self.description,
        )


class MoveInvoiceModel(BaseModel):
    target_loan_id: str


# Loan schemas
class PricingModel(BaseModel):
    base_rate: str = "0.05"
    spread: str = "0.015"
    day_count_convention: str = DayCountConvention.ACTUAL_360.value
    accrual_method: str = AccrualMethod.SIMPLE.value

    def to_pricing(self) -> LoanPricing:
        return LoanPricing(
            base_rate=_decimal(self.base_rate),
            spread=_decimal(self.spread),
            day_count_convention=_enum(DayCountConvention, self.day_count_convention, "day_count_convention"),
            accrual_method=_enum(AccrualMethod, self.accrual_method, "accrual_method"),
        )


class CreateLoanRequest(BaseModel):
    customer_id: str
    loan_number: str
    borrower_name: str
    currency: str
    start_date: str
    maturity_date: str
    invoices: List[AddInvoiceModel]
    pricing: Optional[PricingModel] = None

    def to_kwargs(self) -> Dict[str, Any]:
        return {
            "customer_id": self.customer_id,
            "loan_number": self.loan_number,
            "borrower_name": self.borrower_name,
            "currency": self.currency,
            "start_date": parse_iso_date(self.start_date, "start_date"),
            "maturity_date": parse_iso_date(self.maturity_date, "maturity_date"),
            "invoices": [i.to_new_invoice() for i in self.invoices],
            "pricing": self.pricing.to_pricing() if self.pricing else None,
        }


class UpdateLoanRequest(BaseModel):
    base_rate: Optional[str] = None
    spread: Optional[str] = None
    day_count_convention: Optional[str] = None
    accrual_method: Optional[str] = None
    status: Optional[str] = None
    pricing_status: Optional[str] = None
    start_date: Optional[str] = None
    maturity_date: Optional[str] = None

    def to_update(self) -> LoanUpdate:
        return LoanUpdate(
            base_rate=_decimal(self.base_rate),
            spread=_decimal(self.spread),
            day_count_convention=_enum(DayCountConvention, self.day_count_convention, "day_count_convention"),
            accrual_method=_enum(AccrualMethod, self.accrual_method, "accrual_method"),
            status=_enum(LoanStatus, self.status, "status"),
            pricing_status=_enum(PricingStatus, self.pricing_status, "pricing_status"),
            start_date=parse_iso_date(self.start_date, "start_date"),
            maturity_date=parse_iso_date(self.maturity_date, "maturity_date"),
        )


class PricingPatchModel(BaseModel):
    base_rate: Optional[str] = None
    spread: Optional[str] = None
    day_count_convention: Optional[str] = None
    accrual_method: Optional[str] = None
    start_date: Optional[str] = None     # Unparseable dates fall back to stored interest
    maturity_date: Optional[str] = None

    def to_patch(self) -> PricingPatch:
        return PricingPatch(
            base_rate=_decimal(self.base_rate),
            spread=_decimal(self.spread),
            day_count_convention=_enum(DayCountConvention, self.day_count_convention, "day_count_convention"),
            accrual_method=_enum(AccrualMethod, self.accrual_method, "accrual_method"),
            start_date=self.start_date,
            maturity_date=self.maturity_date,
        )


class FeeAmountModel(BaseModel):
    fee_id: str
    calculated_amount: str = Field(..., description="Decimal amount as string")


class FeeChangesModel(BaseModel):
    adds: List[str] = Field(default_factory=list, description="Fee config ids to add")
    updates: List[FeeAmountModel] = Field(default_factory=list)
    deletes: List[str] = Field(default_factory=list, description="Fee ids to delete")

    def to_changeset(self) -> FeeChangeset:
        return FeeChangeset(
            adds=list(self.adds),
            updates=[FeeAmountUpdate(u.fee_id, _decimal(u.calculated_amount)) for u in self.updates],
            deletes=list(self.deletes),
        )


class PreviewRequest(BaseModel):
    patch: Optional[PricingPatchModel] = None
    fee_changes: Optional[FeeChangesModel] = None


class SplitPartitionModel(BaseModel):
    invoice_ids: List[str]
    percentage: Optional[str] = Field(None, description="Share of fees in [0, 1] as string")

    def to_partition(self) -> SplitPartition:
        return SplitPartition(invoice_ids=list(self.invoice_ids), percentage=_decimal(self.percentage))


class SplitRequest(BaseModel):
    partitions: List[SplitPartitionModel]


# Batch schemas
class BatchUpdateItemModel(BaseModel):
    loan_id: str
    update: UpdateLoanRequest = Field(default_factory=UpdateLoanRequest)

    def to_item(self) -> BatchUpdateItem:
        # Converted when the item runs, so a bad value fails only this item
        return BatchUpdateItem(loan_id=self.loan_id, update=self.update.to_update)


class BatchUpdateRequest(BaseModel):
    items: List[BatchUpdateItemModel]


class BatchPreviewItemModel(BaseModel):
    loan_id: str
    patch: PricingPatchModel = Field(default_factory=PricingPatchModel)

    def to_item(self) -> BatchPreviewItem:
        return BatchPreviewItem(loan_id=self.loan_id, patch=self.patch.to_patch)


class BatchPreviewRequest(BaseModel):
    items: List[BatchPreviewItemModel]


# Snapshot schemas
class CreateSnapshotRequest(BaseModel):
    customer_id: str
    loan_ids: Optional[List[str]] = Field(None, description="Defaults to all of the customer's loans")
    description: Optional[str] = None
    change_count: Optional[int] = None


# FX schemas
class CreateFxRateRequest(BaseModel):
    from_currency: str
    to_currency: str
    rate: str = Field(..., description="Decimal rate as string")
    effective_date: str
    source: str = "manual"

    def to_kwargs(self) -> Dict[str, Any]:
        return {
            "from_currency": self.from_currency,
            "to_currency": self.to_currency,
            "rate": _decimal(self.rate),
            "effective_date": parse_iso_date(self.effective_date, "effective_date"),
            "source": self.source,
        }

