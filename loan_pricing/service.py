"""
Loan Service Module

LoanManager runs every loan mutation through the same workflow: load, guard
against locked pricing, mutate through the aggregate, recalculate, persist,
and record the field-level differences in the audit trail. It also runs the
batch operations, where each item succeeds or fails on its own.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Union
import asyncio

from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType, UserContext
from .calculations import (
    LoanRecalculator, PreviewEngine, PricingPatch, FeeChangeset, PricingPreview, FullPreview
)
from .changes import diff
from .clock import Clock, SystemClock
from .config import LoanPricingConfig, get_config
from .currency import FxResolver, to_decimal, validate_currency_code
from .exceptions import LoanPricingError, LockedLoanError, NotFoundError, ValidationError
from .fees import BasisAmount, FeeCalculationType, FeeConfigRegistry, FeeTier, validate_tiers
from .interest import AccrualMethod, DayCountConvention
from .loans import (
    Fee, Invoice, InvoiceStatus, Loan, LoanPricing, LoanStatus, PricingStatus, new_id
)
from .logging_config import get_logger, log_action
from .snapshots import CurrencySummary, calculate_summary
from .splitting import LoanSplitter, SplitPartition
from .storage import LOANS_TABLE


logger = get_logger(__name__)


@dataclass
class LoanUpdate:
    """Partial loan update; None leaves a field unchanged"""
    base_rate: Optional[Decimal] = None
    spread: Optional[Decimal] = None
    day_count_convention: Optional[DayCountConvention] = None
    accrual_method: Optional[AccrualMethod] = None
    status: Optional[LoanStatus] = None
    pricing_status: Optional[PricingStatus] = None
    start_date: Optional[date] = None
    maturity_date: Optional[date] = None

    def touches_pricing(self) -> bool:
        return any(v is not None for v in (
            self.base_rate, self.spread, self.day_count_convention, self.accrual_method,
            self.start_date, self.maturity_date,
        ))


@dataclass
class NewInvoice:
    invoice_number: str
    debtor_name: str
    amount: Decimal
    due_date: date
    issue_date: Optional[date] = None      # Defaults to today
    currency: Optional[str] = None         # Defaults to the loan currency
    description: Optional[str] = None


@dataclass
class InvoiceUpdate:
    invoice_number: Optional[str] = None
    debtor_name: Optional[str] = None
    amount: Optional[Decimal] = None
    due_date: Optional[date] = None
    status: Optional[InvoiceStatus] = None
    description: Optional[str] = None


@dataclass
class AddFeeRequest:
    """Fee from a template; any value given here overrides the template default"""
    fee_config_id: str
    flat_amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    basis_amount: Optional[BasisAmount] = None
    tiers: Optional[List[FeeTier]] = None
    currency: Optional[str] = None
    due_date: Optional[date] = None

    def has_overrides(self) -> bool:
        return any(v is not None for v in (self.flat_amount, self.rate, self.basis_amount, self.tiers))


@dataclass
class FeeUpdate:
    flat_amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    basis_amount: Optional[BasisAmount] = None
    tiers: Optional[List[FeeTier]] = None
    currency: Optional[str] = None
    due_date: Optional[date] = None
    is_paid: Optional[bool] = None
    is_waived: Optional[bool] = None
    waived_reason: Optional[str] = None

    def changed_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__
                if getattr(self, name) is not None}


@dataclass
class BatchUpdateItem:
    """One batch entry; `update` may be a zero-argument builder, run when the item runs"""
    loan_id: str
    update: Union[LoanUpdate, Callable[[], LoanUpdate]] = field(default_factory=LoanUpdate)

    def resolve(self) -> LoanUpdate:
        return self.update() if callable(self.update) else self.update


@dataclass
class BatchPreviewItem:
    loan_id: str
    patch: Union[PricingPatch, Callable[[], PricingPatch]] = field(default_factory=PricingPatch)

    def resolve(self) -> PricingPatch:
        return self.patch() if callable(self.patch) else self.patch


@dataclass
class BatchItemResult:
    """Outcome of one batch item"""
    loan_id: str
    success: bool
    loan: Optional[Loan] = None
    preview: Optional[PricingPreview] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'success': self.success,
            'loan': self.loan.to_dict() if self.loan else None,
            'preview': self.preview.to_dict() if self.preview else None,
            'error': self.error,
            'error_type': self.error_type,
        }


class LoanManager:
    """
    Loan mutation workflow and batch operations
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        fx_resolver: FxResolver,
        fee_registry: FeeConfigRegistry,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        config: Optional[LoanPricingConfig] = None
    ):
        self.storage = storage
        self.fee_registry = fee_registry
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.recalculator = LoanRecalculator(fx_resolver, self.clock)
        self.preview_engine = PreviewEngine(fee_registry)
        self.splitter = LoanSplitter(Decimal(self.config.split_percentage_tolerance), self.clock)
        self.table_name = LOANS_TABLE

    # Persistence

    async def get_loan(self, loan_id: str) -> Loan:
        data = await self.storage.load(self.table_name, loan_id)
        if data is None:
            raise NotFoundError("loan", loan_id)
        return Loan.from_dict(data)

    async def list_loans(
        self,
        customer_id: Optional[str] = None,
        status: Optional[LoanStatus] = None,
        pricing_status: Optional[PricingStatus] = None
    ) -> List[Loan]:
        filters = {}
        if customer_id:
            filters['customer_id'] = customer_id
        if status:
            filters['status'] = LoanStatus(status).value
        if pricing_status:
            filters['pricing_status'] = PricingStatus(pricing_status).value
        rows = await self.storage.find(self.table_name, filters)
        return [Loan.from_dict(row) for row in rows]

    async def customer_summary(self, customer_id: str) -> Dict[str, CurrencySummary]:
        """Live per-currency totals over a customer's loans, computed as for a snapshot"""
        if not customer_id:
            raise ValidationError("customer_id is required")
        return calculate_summary(await self.list_loans(customer_id=customer_id))

    async def _save(self, loan: Loan) -> None:
        await self.storage.save(self.table_name, loan.id, loan.to_dict())

    async def _commit(self, loan: Loan, context: UserContext) -> Loan:
        """Recalculate and persist after a mutation"""
        loan.updated_by = context.user_id
        loan.updated_at = self.clock.now()
        await self.recalculator.recalculate(loan)
        await self._save(loan)
        return loan

    async def _audit_changes(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                             loan_id: str, before: Any, after: Any, context: UserContext) -> None:
        if not self.config.enable_audit_logging:
            return
        changes = diff(before, after)
        if changes:
            await self.audit_trail.log_changes(event_type, entity_type, entity_id, loan_id, changes, context)

    async def _audit_event(self, event_type: AuditEventType, entity_type: str, entity_id: str,
                           loan_id: str, context: UserContext, **kwargs) -> None:
        if not self.config.enable_audit_logging:
            return
        await self.audit_trail.log_event(event_type, entity_type, entity_id, context, loan_id=loan_id, **kwargs)

    @staticmethod
    def _ensure_unlocked(loan: Loan, what: str) -> None:
        if loan.is_locked:
            raise LockedLoanError(f"Cannot {what} on locked loan {loan.loan_number}")

    # Loans

    async def create_loan(
        self,
        customer_id: str,
        loan_number: str,
        borrower_name: str,
        currency: str,
        start_date: date,
        maturity_date: date,
        invoices: List[NewInvoice],
        context: UserContext,
        pricing: Optional[LoanPricing] = None
    ) -> Loan:
        """Create a draft loan whose principal is the face value of its invoices"""
        if not invoices:
            raise ValidationError("A loan needs at least one invoice")
        existing = await self.storage.find(self.table_name, {'loan_number': loan_number})
        if existing:
            raise ValidationError(f"Loan number {loan_number} already exists")

        currency = validate_currency_code(currency)
        today = self.clock.today()
        now = self.clock.now()
        built = [self._build_invoice(new_invoice, currency, today) for new_invoice in invoices]

        loan = Loan(
            id=new_id(),
            created_at=now,
            updated_at=now,
            customer_id=customer_id,
            loan_number=loan_number,
            borrower_name=borrower_name,
            currency=currency,
            total_amount=sum((i.amount for i in built), Decimal('0')),
            start_date=start_date,
            maturity_date=maturity_date,
            pricing=pricing or LoanPricing(),
            invoices=built,
            created_by=context.user_id,
        )
        await self._commit(loan, context)

        await self._audit_event(AuditEventType.LOAN_CREATED, "loan", loan.id, loan.id, context,
                                new_value=loan.to_dict())
        log_action(logger, "info", f"Created loan {loan.loan_number}",
                   user_id=context.user_id, action="create_loan", resource=loan.id)
        return loan

    async def update_loan(self, loan_id: str, update: LoanUpdate, context: UserContext) -> Loan:
        """
        Apply pricing, date and status changes.

        Raises:
            LockedLoanError: If pricing or dates change while pricing is locked
            ValidationError: If the maturity date would not follow the start date
        """
        loan = await self.get_loan(loan_id)
        before = loan.to_dict()

        if update.touches_pricing():
            self._ensure_unlocked(loan, "change pricing or dates")

        pricing = loan.pricing
        if update.base_rate is not None or update.spread is not None:
            # Re-validate ranges through the pricing block
            loan.pricing = LoanPricing(
                base_rate=update.base_rate if update.base_rate is not None else pricing.base_rate,
                spread=update.spread if update.spread is not None else pricing.spread,
                effective_rate=pricing.effective_rate,
                day_count_convention=pricing.day_count_convention,
                accrual_method=pricing.accrual_method,
            )
        if update.day_count_convention is not None:
            loan.pricing.day_count_convention = DayCountConvention(update.day_count_convention)
        if update.accrual_method is not None:
            loan.pricing.accrual_method = AccrualMethod(update.accrual_method)

        if update.status is not None:
            loan.status = LoanStatus(update.status)
        if update.pricing_status is not None:
            loan.pricing_status = PricingStatus(update.pricing_status)

        start = update.start_date or loan.start_date
        maturity = update.maturity_date or loan.maturity_date
        if maturity <= start:
            raise ValidationError("Maturity date must be after start date")
        loan.start_date = start
        loan.maturity_date = maturity

        await self._commit(loan, context)
        await self._audit_changes(AuditEventType.LOAN_UPDATED, "loan", loan.id, loan.id,
                                  before, loan.to_dict(), context)
        return loan

    # Previews

    async def preview_pricing(self, loan_id: str, patch: PricingPatch) -> PricingPreview:
        loan = await self.get_loan(loan_id)
        return self.preview_engine.preview_pricing(loan, patch)

    async def preview_full(
        self,
        loan_id: str,
        patch: Optional[PricingPatch] = None,
        fee_changes: Optional[FeeChangeset] = None
    ) -> FullPreview:
        loan = await self.get_loan(loan_id)
        return await self.preview_engine.preview_full(loan, patch, fee_changes)

    # Fees

    async def add_fee(self, loan_id: str, request: AddFeeRequest, context: UserContext) -> Loan:
        """
        Add a fee from a template. A template already on the loan is left
        as it is and the loan is returned unchanged.
        """
        loan = await self.get_loan(loan_id)
        config = await self.fee_registry.get_fee_config(request.fee_config_id)
        self._ensure_unlocked(loan, "add fees")

        if loan.find_fee_by_config(config.id) is not None:
            return loan
        if not config.is_active:
            raise ValidationError(f"Fee config {config.code} is inactive")

        tiers = request.tiers if request.tiers is not None else list(config.default_tiers)
        if request.tiers is not None and config.calculation_type == FeeCalculationType.TIERED:
            validate_tiers(tiers)

        fee = Fee(
            id=new_id(),
            fee_config_id=config.id,
            code=config.code,
            name=config.name,
            fee_type=config.fee_type,
            calculation_type=config.calculation_type,
            currency=request.currency or loan.currency,
            flat_amount=request.flat_amount if request.flat_amount is not None else config.default_flat_amount,
            rate=request.rate if request.rate is not None else config.default_rate,
            basis_amount=request.basis_amount or config.default_basis_amount,
            tiers=tiers,
            due_date=request.due_date,
            is_overridden=request.has_overrides(),
        )
        loan.add_fee(fee)
        await self._commit(loan, context)

        await self._audit_event(AuditEventType.FEE_ADDED, "fee", fee.id, loan.id, context,
                                new_value=fee.to_dict())
        return loan

    async def update_fee(self, loan_id: str, fee_id: str, update: FeeUpdate, context: UserContext) -> Loan:
        """
        Edit a fee; the fee is marked as overridden.

        Raises:
            LockedLoanError: If pricing is locked, or the fee is paid and the
                edit does anything other than clearing is_paid
        """
        loan = await self.get_loan(loan_id)
        fee = loan.get_fee(fee_id)
        self._ensure_unlocked(loan, "edit fees")

        changes = update.changed_fields()
        if fee.is_paid and set(changes) - {'is_paid'}:
            raise LockedLoanError(f"Fee {fee.code} is paid; only is_paid can be cleared")
        if fee.is_paid and changes.get('is_paid') is True:
            return loan

        before = fee.to_dict()
        if update.tiers is not None and fee.calculation_type == FeeCalculationType.TIERED:
            validate_tiers(update.tiers)

        values = self._fields(fee)
        values.update(changes)
        values['is_overridden'] = True
        updated = Fee(**values)
        loan.fees[loan.fees.index(fee)] = updated

        await self._commit(loan, context)
        await self._audit_changes(AuditEventType.FEE_UPDATED, "fee", fee.id, loan.id,
                                  before, updated.to_dict(), context)
        return loan

    @staticmethod
    def _fields(record: Any) -> Dict[str, Any]:
        return {name: getattr(record, name) for name in record.__dataclass_fields__}

    async def remove_fee(self, loan_id: str, fee_id: str, context: UserContext) -> Loan:
        loan = await self.get_loan(loan_id)
        fee = loan.get_fee(fee_id)
        self._ensure_unlocked(loan, "remove fees")
        if fee.is_paid:
            raise LockedLoanError(f"Fee {fee.code} is paid and cannot be removed")

        loan.remove_fee(fee_id)
        await self._commit(loan, context)
        await self._audit_event(AuditEventType.FEE_REMOVED, "fee", fee.id, loan.id, context,
                                old_value=fee.to_dict())
        return loan

    # Invoices

    def _build_invoice(self, new_invoice: NewInvoice, loan_currency: str, today: date) -> Invoice:
        return Invoice(
            id=new_id(),
            invoice_number=new_invoice.invoice_number,
            debtor_name=new_invoice.debtor_name,
            amount=to_decimal(new_invoice.amount),
            currency=new_invoice.currency or loan_currency,
            issue_date=new_invoice.issue_date or today,
            due_date=new_invoice.due_date,
            description=new_invoice.description,
        )

    async def add_invoice(self, loan_id: str, new_invoice: NewInvoice, context: UserContext) -> Loan:
        loan = await self.get_loan(loan_id)
        self._ensure_unlocked(loan, "add invoices")

        invoice = loan.add_invoice(self._build_invoice(new_invoice, loan.currency, self.clock.today()))
        await self._commit(loan, context)
        await self._audit_event(AuditEventType.INVOICE_ADDED, "invoice", invoice.id, loan.id, context,
                                new_value=invoice.to_dict())
        return loan

    async def update_invoice(self, loan_id: str, invoice_id: str, update: InvoiceUpdate,
                             context: UserContext) -> Loan:
        """Invoice status and descriptive fields stay editable on locked loans; amounts do not"""
        loan = await self.get_loan(loan_id)
        invoice = loan.get_invoice(invoice_id)
        if update.amount is not None and to_decimal(update.amount) != invoice.amount:
            self._ensure_unlocked(loan, "change invoice amounts")

        before = invoice.to_dict()
        values = self._fields(invoice)
        values.update({name: value for name, value in self._fields(update).items() if value is not None})
        updated = Invoice(**values)
        loan.invoices[loan.invoices.index(invoice)] = updated
        loan.sync_total_amount()

        await self._commit(loan, context)
        await self._audit_changes(AuditEventType.INVOICE_UPDATED, "invoice", invoice.id, loan.id,
                                  before, updated.to_dict(), context)
        return loan

    async def remove_invoice(self, loan_id: str, invoice_id: str, context: UserContext) -> Loan:
        loan = await self.get_loan(loan_id)
        loan.get_invoice(invoice_id)
        self._ensure_unlocked(loan, "remove invoices")
        if len(loan.invoices) == 1:
            raise ValidationError("Cannot remove the last invoice from a loan")

        invoice = loan.remove_invoice(invoice_id)
        await self._commit(loan, context)
        await self._audit_event(AuditEventType.INVOICE_REMOVED, "invoice", invoice.id, loan.id, context,
                                old_value=invoice.to_dict())
        return loan

    async def move_invoice(self, source_loan_id: str, invoice_id: str, target_loan_id: str,
                           context: UserContext) -> List[Loan]:
        """Move an invoice between loans of the same currency; returns [source, target]"""
        if source_loan_id == target_loan_id:
            raise ValidationError("Source and target loan must differ")
        source, target = await asyncio.gather(self.get_loan(source_loan_id), self.get_loan(target_loan_id))

        self._ensure_unlocked(source, "move invoices")
        self._ensure_unlocked(target, "move invoices")
        if source.currency != target.currency:
            raise ValidationError("Cannot move invoice between loans with different currencies")
        source.get_invoice(invoice_id)
        if len(source.invoices) == 1:
            raise ValidationError("Cannot move the last invoice from a loan")

        invoice = source.remove_invoice(invoice_id)
        target.add_invoice(invoice)

        async with self.storage.atomic():
            await self._commit(source, context)
            await self._commit(target, context)

        metadata = {'source_loan_id': source.id, 'target_loan_id': target.id}
        await self._audit_event(AuditEventType.INVOICE_MOVED, "invoice", invoice.id, source.id, context,
                                field_name="loan_id", old_value=source.id, new_value=target.id,
                                metadata=metadata)
        await self._audit_event(AuditEventType.INVOICE_MOVED, "invoice", invoice.id, target.id, context,
                                field_name="loan_id", old_value=source.id, new_value=target.id,
                                metadata=metadata)
        return [source, target]

    # Splitting

    async def split_loan(self, loan_id: str, partitions: List[SplitPartition],
                         context: UserContext) -> List[Loan]:
        """
        Split a loan into child loans by invoice. Children are recalculated
        and saved; the parent is marked funded.
        """
        parent = await self.get_loan(loan_id)
        self._ensure_unlocked(parent, "split")

        children = self.splitter.split(parent, partitions, user_id=context.user_id)
        await self.recalculator.recalculate_many(children)

        before = parent.to_dict()
        parent.status = LoanStatus.FUNDED
        parent.updated_by = context.user_id
        parent.updated_at = self.clock.now()

        async with self.storage.atomic():
            for child in children:
                await self._save(child)
            await self._save(parent)

        for index, (child, partition) in enumerate(zip(children, partitions), start=1):
            await self._audit_event(
                AuditEventType.LOAN_CREATED, "loan", child.id, child.id, context,
                new_value={'parent_loan_id': parent.id, 'split_index': index,
                           'invoice_ids': partition.invoice_ids},
                metadata={'parent_loan_id': parent.id, 'split_from_parent': True},
            )
        await self._audit_changes(AuditEventType.LOAN_SPLIT, "loan", parent.id, parent.id,
                                  before, parent.to_dict(), context)
        await self._audit_event(AuditEventType.LOAN_SPLIT, "loan", parent.id, parent.id, context,
                                new_value={'child_loan_ids': [c.id for c in children]})

        log_action(logger, "info", f"Split loan {parent.loan_number} into {len(children)} loans",
                   user_id=context.user_id, action="split_loan", resource=parent.id)
        return children

    # Batch operations

    @staticmethod
    def _validate_batch(items: List[Any]) -> None:
        if not isinstance(items, list) or not items:
            raise ValidationError("Batch must be a non-empty list")
        seen = set()
        for index, item in enumerate(items):
            loan_id = getattr(item, 'loan_id', None)
            if not isinstance(loan_id, str) or not loan_id:
                raise ValidationError(f"Batch item {index} has no loan_id")
            if loan_id in seen:
                raise ValidationError(f"Loan {loan_id} appears more than once in the batch")
            seen.add(loan_id)

    async def _run_batch(self, items: List[Any], operation, action: str,
                         context: Optional[UserContext] = None) -> List[BatchItemResult]:
        semaphore = asyncio.Semaphore(self.config.batch_max_concurrency)

        async def run(item) -> BatchItemResult:
            async with semaphore:
                try:
                    return await operation(item)
                except LoanPricingError as e:
                    log_action(logger, "warning", f"Batch item for loan {item.loan_id} failed: {e}",
                               user_id=context.user_id if context else None,
                               action=action, resource=item.loan_id)
                    return BatchItemResult(item.loan_id, False, error=str(e), error_type=type(e).__name__)
                except Exception as e:
                    logger.exception(f"Unexpected error in batch item for loan {item.loan_id}")
                    return BatchItemResult(item.loan_id, False, error=str(e), error_type=type(e).__name__)

        return list(await asyncio.gather(*[run(item) for item in items]))

    async def batch_update(self, items: List[BatchUpdateItem], context: UserContext) -> List[BatchItemResult]:
        """Apply independent updates; a failing item never affects the others"""
        self._validate_batch(items)

        async def operation(item: BatchUpdateItem) -> BatchItemResult:
            loan = await self.update_loan(item.loan_id, item.resolve(), context)
            return BatchItemResult(item.loan_id, True, loan=loan)

        results = await self._run_batch(items, operation, "batch_update", context)
        log_action(logger, "info",
                   f"Batch update: {sum(r.success for r in results)}/{len(results)} succeeded",
                   user_id=context.user_id, action="batch_update")
        return results

    async def batch_preview(self, items: List[BatchPreviewItem]) -> List[BatchItemResult]:
        """Pricing previews for many loans"""
        self._validate_batch(items)

        async def operation(item: BatchPreviewItem) -> BatchItemResult:
            preview = await self.preview_pricing(item.loan_id, item.resolve())
            return BatchItemResult(item.loan_id, True, preview=preview)

        return await self._run_batch(items, operation, "batch_preview")
