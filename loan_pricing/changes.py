"""
Change Detection Module

Structural diff over a tagged value tree (Scalar / Array / Map), used for
audit entries after every mutation, and the classification of differences
between two portfolio states into fee, rate, invoice and status changes for
snapshots.
"""

from decimal import Decimal
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from enum import Enum

from .loans import Loan


# Bookkeeping keys that never count as a change
IGNORED_KEYS = frozenset({'updated_at', 'updated_by', 'updatedAt', 'updatedBy'})


@dataclass(eq=False)
class Scalar:
    value: Any

    def __eq__(self, other: Any) -> bool:
        # Equal only with the same type: 1, 1.0 and True are three different values
        if not isinstance(other, Scalar):
            return NotImplemented
        if self.value is other.value:
            return True
        return type(self.value) is type(other.value) and self.value == other.value


@dataclass
class Array:
    items: List['Node']


@dataclass
class Map:
    entries: Dict[str, 'Node']


Node = Union[Scalar, Array, Map]


def to_node(value: Any) -> Node:
    """Build the tagged tree for a value; objects exposing to_dict become maps"""
    if isinstance(value, (Scalar, Array, Map)):
        return value
    if isinstance(value, Mapping):
        return Map({str(k): to_node(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return Array([to_node(v) for v in value])
    if isinstance(value, Enum):
        return Scalar(value.value)
    if isinstance(value, (datetime, date)):
        return Scalar(value.isoformat())
    if hasattr(value, 'to_dict'):
        return to_node(value.to_dict())
    return Scalar(value)


def to_plain(node: Optional[Node]) -> Any:
    """Inverse of to_node for reporting values"""
    if node is None:
        return None
    if isinstance(node, Scalar):
        return node.value
    if isinstance(node, Array):
        return [to_plain(item) for item in node.items]
    return {key: to_plain(child) for key, child in node.entries.items()}


@dataclass
class FieldChange:
    """One differing leaf (or subtree) between two versions"""
    field_path: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            'field_path': self.field_path,
            'old_value': self.old_value,
            'new_value': self.new_value,
        }


def _is_ignored(key: str) -> bool:
    return key.startswith('_') or key in IGNORED_KEYS


def _diff_nodes(old: Optional[Node], new: Optional[Node], path: str, out: List[FieldChange]) -> None:
    if isinstance(old, Map) and isinstance(new, Map):
        keys = list(old.entries)
        keys.extend(k for k in new.entries if k not in old.entries)
        for key in keys:
            if _is_ignored(key):
                continue
            child_path = f"{path}.{key}" if path else key
            _diff_nodes(old.entries.get(key), new.entries.get(key), child_path, out)
        return

    if old != new:
        out.append(FieldChange(path, to_plain(old), to_plain(new)))


def diff(old: Any, new: Any, path_prefix: str = "") -> List[FieldChange]:
    """
    Differences between two value trees.

    Maps are compared key by key with dotted paths; everything else,
    arrays included, is compared by structural equality. diff(x, x) is
    always empty.
    """
    changes: List[FieldChange] = []
    _diff_nodes(to_node(old), to_node(new), path_prefix, changes)
    return changes


class ChangeAction(Enum):
    ADDED = "added"
    DELETED = "deleted"
    MODIFIED = "modified"
    MOVED = "moved"


def _detail_to_dict(detail: Any) -> Dict[str, Any]:
    result = {}
    for f in fields(detail):
        value = getattr(detail, f.name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Decimal):
            value = str(value)
        result[f.name] = value
    return result


def _detail_from_dict(cls, data: Dict[str, Any]):
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        if f.name == 'action':
            value = ChangeAction(value)
        elif f.name in cls.DECIMAL_FIELDS and value is not None:
            value = Decimal(str(value))
        kwargs[f.name] = value
    return cls(**kwargs)


@dataclass
class FeeChangeDetail:
    action: ChangeAction
    loan_id: str
    loan_number: str
    fee_id: str
    fee_name: str
    fee_code: str
    currency: str
    old_amount: Optional[Decimal] = None
    new_amount: Optional[Decimal] = None
    source_loan_id: Optional[str] = None

    DECIMAL_FIELDS = ('old_amount', 'new_amount')

    def to_dict(self) -> Dict[str, Any]:
        return _detail_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FeeChangeDetail':
        return _detail_from_dict(cls, data)


@dataclass
class RateChangeDetail:
    loan_id: str
    loan_number: str
    currency: str
    field: str                      # base_rate or spread
    old_value: Decimal
    new_value: Decimal
    old_effective_rate: Decimal
    new_effective_rate: Decimal
    action: ChangeAction = ChangeAction.MODIFIED

    DECIMAL_FIELDS = ('old_value', 'new_value', 'old_effective_rate', 'new_effective_rate')

    def to_dict(self) -> Dict[str, Any]:
        return _detail_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RateChangeDetail':
        return _detail_from_dict(cls, data)


@dataclass
class InvoiceChangeDetail:
    action: ChangeAction
    invoice_id: str
    invoice_number: str
    amount: Decimal
    currency: str
    loan_id: Optional[str] = None
    loan_number: Optional[str] = None
    source_loan_id: Optional[str] = None
    source_loan_number: Optional[str] = None
    target_loan_id: Optional[str] = None
    target_loan_number: Optional[str] = None

    DECIMAL_FIELDS = ('amount',)

    def to_dict(self) -> Dict[str, Any]:
        return _detail_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InvoiceChangeDetail':
        return _detail_from_dict(cls, data)


@dataclass
class StatusChangeDetail:
    loan_id: str
    loan_number: str
    field: str                      # status or pricing_status
    old_value: str
    new_value: str
    action: ChangeAction = ChangeAction.MODIFIED

    DECIMAL_FIELDS = ()

    def to_dict(self) -> Dict[str, Any]:
        return _detail_to_dict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StatusChangeDetail':
        return _detail_from_dict(cls, data)


@dataclass
class SnapshotChanges:
    """Changes since the previous snapshot, by bucket"""
    fees: List[FeeChangeDetail] = field(default_factory=list)
    rates: List[RateChangeDetail] = field(default_factory=list)
    invoices: List[InvoiceChangeDetail] = field(default_factory=list)
    statuses: List[StatusChangeDetail] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.fees) + len(self.rates) + len(self.invoices) + len(self.statuses)

    def is_empty(self) -> bool:
        return self.count == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fees': [d.to_dict() for d in self.fees],
            'rates': [d.to_dict() for d in self.rates],
            'invoices': [d.to_dict() for d in self.invoices],
            'statuses': [d.to_dict() for d in self.statuses],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SnapshotChanges':
        data = data or {}
        return cls(
            fees=[FeeChangeDetail.from_dict(d) for d in data.get('fees', [])],
            rates=[RateChangeDetail.from_dict(d) for d in data.get('rates', [])],
            invoices=[InvoiceChangeDetail.from_dict(d) for d in data.get('invoices', [])],
            statuses=[StatusChangeDetail.from_dict(d) for d in data.get('statuses', [])],
        )


def _index_children(loans: Iterable[Loan], attr: str) -> Dict[str, Dict[str, Tuple[Loan, Any]]]:
    """child id -> {loan id -> (loan, child)} across every loan"""
    index: Dict[str, Dict[str, Tuple[Loan, Any]]] = {}
    for loan in loans:
        for child in getattr(loan, attr):
            index.setdefault(child.id, {})[loan.id] = (loan, child)
    return index


def _placements(previous: Dict[str, Dict[str, Tuple[Loan, Any]]],
                current: Dict[str, Dict[str, Tuple[Loan, Any]]]):
    """
    Yield (action, old, new) per child id placement, where old and new are
    (loan, child) pairs. A child that left one loan and arrived at another
    in the same interval is a move.
    """
    child_ids = list(previous)
    child_ids.extend(c for c in current if c not in previous)

    for child_id in child_ids:
        before = previous.get(child_id, {})
        after = current.get(child_id, {})
        removed = [before[k] for k in before if k not in after]
        added = [after[k] for k in after if k not in before]

        for old, new in zip(removed, added):
            yield ChangeAction.MOVED, old, new
        for old in removed[len(added):]:
            yield ChangeAction.DELETED, old, None
        for new in added[len(removed):]:
            yield ChangeAction.ADDED, None, new
        for loan_id in before:
            if loan_id in after:
                yield ChangeAction.MODIFIED, before[loan_id], after[loan_id]


def _fee_changes(previous: List[Loan], current: List[Loan]) -> List[FeeChangeDetail]:
    details = []
    placements = _placements(_index_children(previous, 'fees'), _index_children(current, 'fees'))
    for action, old, new in placements:
        if action == ChangeAction.MODIFIED and not diff(old[1], new[1]):
            continue
        loan, fee = new if new is not None else old
        details.append(FeeChangeDetail(
            action=action,
            loan_id=loan.id,
            loan_number=loan.loan_number,
            fee_id=fee.id,
            fee_name=fee.name,
            fee_code=fee.code,
            currency=fee.currency,
            old_amount=old[1].calculated_amount if old is not None else None,
            new_amount=new[1].calculated_amount if new is not None else None,
            source_loan_id=old[0].id if action == ChangeAction.MOVED else None,
        ))
    return details


def _invoice_changes(previous: List[Loan], current: List[Loan]) -> List[InvoiceChangeDetail]:
    details = []
    placements = _placements(_index_children(previous, 'invoices'), _index_children(current, 'invoices'))
    for action, old, new in placements:
        if action == ChangeAction.MODIFIED and not diff(old[1], new[1]):
            continue
        loan, invoice = new if new is not None else old
        detail = InvoiceChangeDetail(
            action=action,
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            amount=invoice.amount,
            currency=invoice.currency,
        )
        if action == ChangeAction.MOVED:
            detail.source_loan_id = old[0].id
            detail.source_loan_number = old[0].loan_number
            detail.target_loan_id = new[0].id
            detail.target_loan_number = new[0].loan_number
        else:
            detail.loan_id = loan.id
            detail.loan_number = loan.loan_number
        details.append(detail)
    return details


def _rate_and_status_changes(previous: List[Loan], current: List[Loan]):
    rates: List[RateChangeDetail] = []
    statuses: List[StatusChangeDetail] = []
    previous_by_id = {loan.id: loan for loan in previous}

    for loan in current:
        old = previous_by_id.get(loan.id)
        if old is None:
            continue

        for name in ('base_rate', 'spread'):
            old_value = getattr(old.pricing, name)
            new_value = getattr(loan.pricing, name)
            if old_value != new_value:
                rates.append(RateChangeDetail(
                    loan_id=loan.id,
                    loan_number=loan.loan_number,
                    currency=loan.currency,
                    field=name,
                    old_value=old_value,
                    new_value=new_value,
                    old_effective_rate=old.pricing.effective_rate,
                    new_effective_rate=loan.pricing.effective_rate,
                ))

        for name in ('status', 'pricing_status'):
            old_value = getattr(old, name).value
            new_value = getattr(loan, name).value
            if old_value != new_value:
                statuses.append(StatusChangeDetail(
                    loan_id=loan.id,
                    loan_number=loan.loan_number,
                    field=name,
                    old_value=old_value,
                    new_value=new_value,
                ))

    return rates, statuses


def classify_changes(previous_loans: List[Loan], current_loans: List[Loan]) -> SnapshotChanges:
    """Bucket the differences between two portfolio states"""
    rates, statuses = _rate_and_status_changes(previous_loans, current_loans)
    return SnapshotChanges(
        fees=_fee_changes(previous_loans, current_loans),
        rates=rates,
        invoices=_invoice_changes(previous_loans, current_loans),
        statuses=statuses,
    )
