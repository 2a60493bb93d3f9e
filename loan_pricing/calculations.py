"""
Loan Calculation Module

LoanRecalculator is the single place where a loan's derived fields are
written; it runs after every mutation and before the loan is persisted.
PreviewEngine runs the same math on hypothetical pricing and fee changes
without touching the loan.
"""

from decimal import Decimal, InvalidOperation
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union
import asyncio

from .clock import Clock, SystemClock
from .currency import FxResolver, FxQuote, round2
from .exceptions import ValidationError
from .fees import (
    FeeConfigRegistry, calculate_fee_amount, calculate_fee_from_config, resolve_basis
)
from .interest import (
    AccrualMethod, DayCountConvention, calculate_interest, effective_rate
)
from .loans import Loan
from .logging_config import get_logger


logger = get_logger(__name__)


def net_proceeds(total_amount: Decimal, interest_amount: Decimal, total_fees: Decimal) -> Decimal:
    """Principal less interest and fees"""
    return round2(total_amount - interest_amount - total_fees)


class LoanRecalculator:
    """Derives every computed field on a loan"""

    def __init__(self, fx_resolver: FxResolver, clock: Optional[Clock] = None):
        self.fx_resolver = fx_resolver
        self.clock = clock or SystemClock()

    async def recalculate(self, loan: Loan) -> Loan:
        """
        Recompute derived fields in place. Running it twice on an unchanged
        loan leaves every field as it was.
        """
        pricing = loan.pricing
        pricing.effective_rate = effective_rate(pricing.base_rate, pricing.spread)

        loan.total_invoice_amount = await self.total_invoice_amount(loan)

        total_fees = Decimal('0')
        for fee in loan.fees:
            fee.calculated_amount = calculate_fee_amount(fee, resolve_basis(loan, fee.basis_amount))
            total_fees += fee.calculated_amount
        loan.total_fees = round2(total_fees)

        loan.interest_amount = calculate_interest(
            loan.total_amount,
            pricing.effective_rate,
            loan.start_date,
            loan.maturity_date,
            pricing.day_count_convention,
            pricing.accrual_method,
        )

        loan.net_proceeds = net_proceeds(loan.total_amount, loan.interest_amount, loan.total_fees)
        return loan

    async def total_invoice_amount(self, loan: Loan) -> Decimal:
        """Sum of invoice amounts converted into the loan currency as of today"""
        today = self.clock.today()
        currencies = sorted({invoice.currency for invoice in loan.invoices})
        quotes: List[FxQuote] = await asyncio.gather(*[
            self.fx_resolver.resolve(currency, loan.currency, today)
            for currency in currencies
        ])
        rates = {quote.from_currency: quote.rate for quote in quotes}

        total = Decimal('0')
        for invoice in loan.invoices:
            total += invoice.amount * rates[invoice.currency]
        return round2(total)

    async def recalculate_many(self, loans: List[Loan]) -> List[Loan]:
        """Recalculate independent loans concurrently"""
        return list(await asyncio.gather(*[self.recalculate(loan) for loan in loans]))


DateInput = Union[date, datetime, str, None]


@dataclass
class PricingPatch:
    """Hypothetical pricing inputs; None keeps the loan's current value"""
    base_rate: Optional[Decimal] = None
    spread: Optional[Decimal] = None
    day_count_convention: Optional[DayCountConvention] = None
    accrual_method: Optional[AccrualMethod] = None
    start_date: DateInput = None
    maturity_date: DateInput = None

    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in self.__dataclass_fields__)


@dataclass
class FeeAmountUpdate:
    fee_id: str
    calculated_amount: Decimal


@dataclass
class FeeChangeset:
    """Pending fee edits: template ids to add, amount overrides, fee ids to delete"""
    adds: List[str] = field(default_factory=list)
    updates: List[FeeAmountUpdate] = field(default_factory=list)
    deletes: List[str] = field(default_factory=list)


@dataclass
class PricingPreview:
    effective_rate: Decimal
    interest_amount: Decimal
    net_proceeds: Decimal
    total_fees: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {name: str(getattr(self, name)) for name in self.__dataclass_fields__}


@dataclass
class FullPreview:
    effective_rate: Decimal
    interest_amount: Decimal
    total_fees: Decimal
    original_total_fees: Decimal
    net_proceeds: Decimal
    original_net_proceeds: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {name: str(getattr(self, name)) for name in self.__dataclass_fields__}


def _coerce_date(value: DateInput) -> Optional[date]:
    """Parse a preview date; None when missing or unparseable"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError:
            return None
    return None


class PreviewEngine:
    """What-if pricing for a loan; never mutates the loan it is given"""

    def __init__(self, fee_registry: Optional[FeeConfigRegistry] = None):
        self.fee_registry = fee_registry

    def preview_pricing(self, loan: Loan, patch: PricingPatch) -> PricingPreview:
        """
        Effective rate, interest and net proceeds under patched pricing.

        Missing or unparseable dates, and any calculation that does not
        produce a finite number, fall back to the loan's stored interest.
        """
        pricing = loan.pricing
        base_rate = patch.base_rate if patch.base_rate is not None else pricing.base_rate
        spread = patch.spread if patch.spread is not None else pricing.spread
        convention = patch.day_count_convention or pricing.day_count_convention
        accrual = patch.accrual_method or pricing.accrual_method

        rate = effective_rate(base_rate, spread)

        start = _coerce_date(patch.start_date if patch.start_date is not None else loan.start_date)
        maturity = _coerce_date(patch.maturity_date if patch.maturity_date is not None else loan.maturity_date)

        interest = loan.interest_amount
        if start is not None and maturity is not None:
            try:
                candidate = calculate_interest(loan.total_amount, rate, start, maturity, convention, accrual)
            except (ValidationError, InvalidOperation, ValueError) as e:
                logger.warning(f"Preview interest fell back to stored value for loan {loan.id}: {e}")
            else:
                if candidate.is_finite():
                    interest = candidate
        else:
            logger.debug(f"Preview for loan {loan.id} has no usable dates, keeping stored interest")

        return PricingPreview(
            effective_rate=rate,
            interest_amount=interest,
            net_proceeds=net_proceeds(loan.total_amount, interest, loan.total_fees),
            total_fees=loan.total_fees,
        )

    async def preview_full(
        self,
        loan: Loan,
        patch: Optional[PricingPatch] = None,
        fee_changes: Optional[FeeChangeset] = None
    ) -> FullPreview:
        """
        Projected totals after pricing and fee changes, with the originals
        alongside for comparison. Fee ids that are not on the loan and
        template ids that do not exist are ignored.
        """
        total_fees = loan.total_fees
        fee_amounts = {fee.id: fee.calculated_amount for fee in loan.fees}

        if fee_changes:
            for fee_id in fee_changes.deletes:
                if fee_id in fee_amounts:
                    total_fees -= fee_amounts.pop(fee_id)

            for update in fee_changes.updates:
                if update.fee_id in fee_amounts:
                    total_fees = total_fees - fee_amounts[update.fee_id] + update.calculated_amount
                    fee_amounts[update.fee_id] = update.calculated_amount

            if fee_changes.adds:
                if self.fee_registry is None:
                    raise ValidationError("Fee additions cannot be previewed without a fee config registry")
                configs = await self.fee_registry.get_fee_configs(fee_changes.adds)
                for config_id in fee_changes.adds:
                    config = configs.get(config_id)
                    if config is not None:
                        total_fees += calculate_fee_from_config(config, loan)

        total_fees = round2(total_fees)

        rate = loan.pricing.effective_rate
        interest = loan.interest_amount
        if patch is not None and not patch.is_empty():
            pricing_preview = self.preview_pricing(loan, patch)
            rate = pricing_preview.effective_rate
            interest = pricing_preview.interest_amount

        return FullPreview(
            effective_rate=rate,
            interest_amount=interest,
            total_fees=total_fees,
            original_total_fees=loan.total_fees,
            net_proceeds=net_proceeds(loan.total_amount, interest, total_fees),
            original_net_proceeds=loan.net_proceeds,
        )
