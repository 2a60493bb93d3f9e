"""
Loan Splitting Module

Partitions a loan's invoices into child loans. Flat fees are shared out by
allocation ratio; percentage and tiered fees are copied unscaled and
re-derived against each child's own basis on recalculation.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import List, Optional

from .clock import Clock, SystemClock
from .currency import round2, to_decimal
from .exceptions import InvalidPartitionError
from .loans import Loan, Fee, Invoice, LoanPricing, LoanStatus, PricingStatus, new_id


@dataclass
class SplitPartition:
    """Invoice ids for one child loan, with an optional explicit share of the fees"""
    invoice_ids: List[str] = field(default_factory=list)
    percentage: Optional[Decimal] = None

    def __post_init__(self):
        if self.percentage is not None:
            self.percentage = to_decimal(self.percentage)


class LoanSplitter:
    """Splits a parent loan into child loans by invoice"""

    def __init__(self, percentage_tolerance: Decimal = Decimal('0.0001'),
                 clock: Optional[Clock] = None):
        self.percentage_tolerance = to_decimal(percentage_tolerance)
        self.clock = clock or SystemClock()

    def validate(self, parent: Loan, partitions: List[SplitPartition]) -> None:
        """
        Raises:
            InvalidPartitionError: If the partitions do not cover the parent's
                invoices exactly once, or the percentages are inconsistent
        """
        if len(partitions) < 2:
            raise InvalidPartitionError("A split needs at least 2 partitions")

        parent_ids = {invoice.id for invoice in parent.invoices}
        seen = set()

        for index, partition in enumerate(partitions, start=1):
            if not partition.invoice_ids:
                raise InvalidPartitionError(f"Partition {index} has no invoices")
            unknown = [i for i in partition.invoice_ids if i not in parent_ids]
            if unknown:
                raise InvalidPartitionError(
                    f"Partition {index} references invoices not on loan {parent.id}: {', '.join(unknown)}"
                )
            duplicates = seen.intersection(partition.invoice_ids)
            if duplicates or len(set(partition.invoice_ids)) != len(partition.invoice_ids):
                raise InvalidPartitionError(f"Partition {index} repeats invoices already allocated")
            seen.update(partition.invoice_ids)

        missing = parent_ids - seen
        if missing:
            raise InvalidPartitionError(f"Invoices not allocated to any partition: {', '.join(sorted(missing))}")

        percentages = [p.percentage for p in partitions if p.percentage is not None]
        if percentages:
            if len(percentages) != len(partitions):
                raise InvalidPartitionError("Percentages must be given for all partitions or none")
            for percentage in percentages:
                if percentage < Decimal('0') or percentage > Decimal('1'):
                    raise InvalidPartitionError("Partition percentages must be between 0 and 1")
            if abs(sum(percentages, Decimal('0')) - Decimal('1')) > self.percentage_tolerance:
                raise InvalidPartitionError("Partition percentages must sum to 100%")

    def split(self, parent: Loan, partitions: List[SplitPartition],
              user_id: Optional[str] = None) -> List[Loan]:
        """
        Build the child loans. The parent is not modified and the children
        still need recalculating before they are persisted.
        """
        self.validate(parent, partitions)

        invoices_by_id = {invoice.id: invoice for invoice in parent.invoices}
        now = self.clock.now()
        children = []

        for index, partition in enumerate(partitions, start=1):
            invoices = [
                Invoice.from_dict(invoices_by_id[invoice_id].to_dict())
                for invoice_id in partition.invoice_ids
            ]
            child_total = sum((invoice.amount for invoice in invoices), Decimal('0'))

            if partition.percentage is not None:
                ratio = partition.percentage
            elif parent.total_amount > 0:
                ratio = child_total / parent.total_amount
            else:
                ratio = Decimal('1') / Decimal(len(partitions))

            child = Loan(
                id=new_id(),
                created_at=now,
                updated_at=now,
                customer_id=parent.customer_id,
                loan_number=f"{parent.loan_number}-{index}",
                borrower_name=parent.borrower_name,
                currency=parent.currency,
                total_amount=child_total,
                outstanding_amount=child_total,
                start_date=parent.start_date,
                maturity_date=parent.maturity_date,
                pricing=LoanPricing.from_dict(parent.pricing.to_dict()),
                invoices=invoices,
                fees=[self._allocate_fee(fee, ratio) for fee in parent.fees],
                status=LoanStatus.DRAFT,
                pricing_status=PricingStatus.PENDING,
                parent_loan_id=parent.id,
                created_by=user_id,
                updated_by=user_id,
            )
            children.append(child)

        return children

    @staticmethod
    def _allocate_fee(fee: Fee, ratio: Decimal) -> Fee:
        flat_amount = round2(fee.flat_amount * ratio) if fee.flat_amount is not None else None
        return Fee(
            id=new_id(),
            fee_config_id=fee.fee_config_id,
            code=fee.code,
            name=fee.name,
            fee_type=fee.fee_type,
            calculation_type=fee.calculation_type,
            currency=fee.currency,
            flat_amount=flat_amount,
            rate=fee.rate,
            basis_amount=fee.basis_amount,
            tiers=list(fee.tiers),
            due_date=fee.due_date,
            is_waived=fee.is_waived,
            waived_reason=fee.waived_reason,
            is_overridden=fee.is_overridden,
        )
