"""
Loan Module

The loan aggregate: a trade-finance loan owning its pricing block, its
invoices and its fees. Invoices and fees are addressed by stable string ids
through the aggregate, never by position. Derived fields (effective rate,
totals, interest, net proceeds) are written by the LoanRecalculator.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .currency import to_decimal, validate_currency_code
from .exceptions import NotFoundError, ValidationError
from .fees import FeeType, FeeCalculationType, BasisAmount, FeeTier
from .interest import DayCountConvention, AccrualMethod
from .storage import StorageRecord, to_jsonable, parse_datetime, parse_date, parse_decimal


class LoanStatus(Enum):
    """Loan workflow states"""
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    FUNDED = "funded"


class PricingStatus(Enum):
    """Pricing lifecycle; LOCKED freezes pricing and fee fields"""
    PENDING = "pending"
    PRICED = "priced"
    LOCKED = "locked"


class InvoiceStatus(Enum):
    """Receivable states"""
    PENDING = "pending"
    VERIFIED = "verified"
    FINANCED = "financed"
    COLLECTED = "collected"
    DEFAULTED = "defaulted"
    DISPUTED = "disputed"


def new_id() -> str:
    return str(uuid.uuid4())


def _fields_to_dict(obj: Any) -> Dict[str, Any]:
    return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}


@dataclass
class LoanPricing:
    """Pricing block of a loan"""
    base_rate: Decimal = Decimal('0.05')
    spread: Decimal = Decimal('0.015')
    effective_rate: Decimal = Decimal('0.065')     # Derived: round4(base_rate + spread)
    day_count_convention: DayCountConvention = DayCountConvention.ACTUAL_360
    accrual_method: AccrualMethod = AccrualMethod.SIMPLE

    def __post_init__(self):
        self.base_rate = to_decimal(self.base_rate)
        self.spread = to_decimal(self.spread)
        self.effective_rate = to_decimal(self.effective_rate)
        self.day_count_convention = DayCountConvention(self.day_count_convention)
        self.accrual_method = AccrualMethod(self.accrual_method)

        if self.base_rate < Decimal('0') or self.base_rate > Decimal('1'):
            raise ValidationError("Base rate must be between 0 and 1")
        if self.spread < Decimal('-0.5') or self.spread > Decimal('1'):
            raise ValidationError("Spread must be between -0.5 and 1")

    def to_dict(self) -> Dict[str, Any]:
        return _fields_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPricing':
        return cls(
            base_rate=parse_decimal(data['base_rate']),
            spread=parse_decimal(data['spread']),
            effective_rate=parse_decimal(data.get('effective_rate', '0')),
            day_count_convention=data.get('day_count_convention', DayCountConvention.ACTUAL_360.value),
            accrual_method=data.get('accrual_method', AccrualMethod.SIMPLE.value),
        )


@dataclass
class Invoice:
    """Receivable financed by a loan; may be in another currency than the loan"""
    id: str
    invoice_number: str
    debtor_name: str
    amount: Decimal
    currency: str
    issue_date: date
    due_date: date
    status: InvoiceStatus = InvoiceStatus.PENDING
    description: Optional[str] = None

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.currency = validate_currency_code(self.currency)
        self.status = InvoiceStatus(self.status)
        if self.amount <= Decimal('0'):
            raise ValidationError("Invoice amount must be positive")
        if self.due_date < self.issue_date:
            raise ValidationError("Invoice due date cannot be before issue date")

    def to_dict(self) -> Dict[str, Any]:
        return _fields_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Invoice':
        return cls(
            id=data['id'],
            invoice_number=data['invoice_number'],
            debtor_name=data['debtor_name'],
            amount=parse_decimal(data['amount']),
            currency=data['currency'],
            issue_date=parse_date(data['issue_date']),
            due_date=parse_date(data['due_date']),
            status=data.get('status', InvoiceStatus.PENDING.value),
            description=data.get('description'),
        )


@dataclass
class Fee:
    """Fee charged on a loan, created from a FeeConfig template"""
    id: str
    fee_config_id: str
    code: str
    name: str
    fee_type: FeeType
    calculation_type: FeeCalculationType
    currency: str
    flat_amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    basis_amount: Optional[BasisAmount] = None
    tiers: List[FeeTier] = field(default_factory=list)
    calculated_amount: Decimal = Decimal('0')     # Derived
    due_date: Optional[date] = None
    is_paid: bool = False
    is_waived: bool = False
    waived_reason: Optional[str] = None
    is_overridden: bool = False

    def __post_init__(self):
        self.fee_type = FeeType(self.fee_type)
        self.calculation_type = FeeCalculationType(self.calculation_type)
        self.currency = validate_currency_code(self.currency)
        if self.basis_amount is not None:
            self.basis_amount = BasisAmount(self.basis_amount)
        if self.flat_amount is not None:
            self.flat_amount = to_decimal(self.flat_amount)
            if self.flat_amount < Decimal('0'):
                raise ValidationError("Flat amount cannot be negative")
        if self.rate is not None:
            self.rate = to_decimal(self.rate)
            if self.rate < Decimal('0') or self.rate > Decimal('1'):
                raise ValidationError("Fee rate must be between 0 and 1")
        self.tiers = [t if isinstance(t, FeeTier) else FeeTier.from_dict(t) for t in self.tiers]
        self.calculated_amount = to_decimal(self.calculated_amount)

    def to_dict(self) -> Dict[str, Any]:
        return _fields_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Fee':
        return cls(
            id=data['id'],
            fee_config_id=data['fee_config_id'],
            code=data['code'],
            name=data['name'],
            fee_type=data['fee_type'],
            calculation_type=data['calculation_type'],
            currency=data['currency'],
            flat_amount=parse_decimal(data.get('flat_amount')),
            rate=parse_decimal(data.get('rate')),
            basis_amount=data.get('basis_amount'),
            tiers=[FeeTier.from_dict(t) for t in data.get('tiers') or []],
            calculated_amount=parse_decimal(data.get('calculated_amount', '0')),
            due_date=parse_date(data.get('due_date')),
            is_paid=data.get('is_paid', False),
            is_waived=data.get('is_waived', False),
            waived_reason=data.get('waived_reason'),
            is_overridden=data.get('is_overridden', False),
        )


@dataclass
class Loan(StorageRecord):
    """Invoice-backed loan aggregate"""
    customer_id: str
    loan_number: str
    borrower_name: str
    currency: str
    total_amount: Decimal
    start_date: date
    maturity_date: date
    pricing: LoanPricing = field(default_factory=LoanPricing)
    outstanding_amount: Optional[Decimal] = None   # Defaults to total_amount
    invoices: List[Invoice] = field(default_factory=list)
    fees: List[Fee] = field(default_factory=list)

    # Derived fields, written by LoanRecalculator
    total_fees: Decimal = Decimal('0')
    total_invoice_amount: Decimal = Decimal('0')
    interest_amount: Decimal = Decimal('0')
    net_proceeds: Decimal = Decimal('0')

    status: LoanStatus = LoanStatus.DRAFT
    pricing_status: PricingStatus = PricingStatus.PENDING
    parent_loan_id: Optional[str] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def __post_init__(self):
        self.currency = validate_currency_code(self.currency)
        self.total_amount = to_decimal(self.total_amount)
        if self.outstanding_amount is None:
            self.outstanding_amount = self.total_amount
        self.outstanding_amount = to_decimal(self.outstanding_amount)
        self.status = LoanStatus(self.status)
        self.pricing_status = PricingStatus(self.pricing_status)

        if self.total_amount < Decimal('0'):
            raise ValidationError("Loan total amount cannot be negative")
        if self.outstanding_amount < Decimal('0'):
            raise ValidationError("Outstanding amount cannot be negative")
        if self.maturity_date <= self.start_date:
            raise ValidationError("Maturity date must be after start date")

    @property
    def is_locked(self) -> bool:
        return self.pricing_status == PricingStatus.LOCKED

    # Child lookup

    def get_fee(self, fee_id: str) -> Fee:
        for fee in self.fees:
            if fee.id == fee_id:
                return fee
        raise NotFoundError("fee", fee_id)

    def get_invoice(self, invoice_id: str) -> Invoice:
        for invoice in self.invoices:
            if invoice.id == invoice_id:
                return invoice
        raise NotFoundError("invoice", invoice_id)

    def find_fee_by_config(self, fee_config_id: str) -> Optional[Fee]:
        for fee in self.fees:
            if fee.fee_config_id == fee_config_id:
                return fee
        return None

    # Child mutation

    def add_fee(self, fee: Fee) -> Fee:
        self.fees.append(fee)
        return fee

    def remove_fee(self, fee_id: str) -> Fee:
        fee = self.get_fee(fee_id)
        self.fees.remove(fee)
        return fee

    def add_invoice(self, invoice: Invoice) -> Invoice:
        self.invoices.append(invoice)
        self.sync_total_amount()
        return invoice

    def remove_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.get_invoice(invoice_id)
        self.invoices.remove(invoice)
        self.sync_total_amount()
        return invoice

    def sync_total_amount(self) -> None:
        """
        Principal follows the face value of the financed invoices. The
        outstanding amount moves by the same difference, floored at zero.
        """
        new_total = sum((inv.amount for inv in self.invoices), Decimal('0'))
        difference = new_total - self.total_amount
        self.total_amount = new_total
        self.outstanding_amount = max(Decimal('0'), self.outstanding_amount + difference)

    def copy(self) -> 'Loan':
        """Deep copy through the storage representation"""
        return Loan.from_dict(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_id=data['customer_id'],
            loan_number=data['loan_number'],
            borrower_name=data['borrower_name'],
            currency=data['currency'],
            total_amount=parse_decimal(data['total_amount']),
            start_date=parse_date(data['start_date']),
            maturity_date=parse_date(data['maturity_date']),
            pricing=LoanPricing.from_dict(data['pricing']),
            outstanding_amount=parse_decimal(data.get('outstanding_amount')),
            invoices=[Invoice.from_dict(i) for i in data.get('invoices') or []],
            fees=[Fee.from_dict(f) for f in data.get('fees') or []],
            total_fees=parse_decimal(data.get('total_fees', '0')),
            total_invoice_amount=parse_decimal(data.get('total_invoice_amount', '0')),
            interest_amount=parse_decimal(data.get('interest_amount', '0')),
            net_proceeds=parse_decimal(data.get('net_proceeds', '0')),
            status=data.get('status', LoanStatus.DRAFT.value),
            pricing_status=data.get('pricing_status', PricingStatus.PENDING.value),
            parent_loan_id=data.get('parent_loan_id'),
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by'),
        )
