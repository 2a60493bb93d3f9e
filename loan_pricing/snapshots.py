"""
Snapshot Module

Point-in-time captures of a customer's loan portfolio. Each snapshot stores
the full loan list as a gzip-compressed JSON blob, kept apart from a small
metadata record (per-currency summary, delta against the previous snapshot,
classified changes) so that timelines render without decompression.
Snapshots are append-only; old ones are pruned oldest first.
"""

from decimal import Decimal, ROUND_HALF_UP
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio
import base64
import gzip
import json
import uuid
import weakref

from .async_storage import AsyncStorageInterface
from .audit import AuditTrail, AuditEventType, UserContext
from .changes import SnapshotChanges, classify_changes
from .clock import Clock, SystemClock
from .config import LoanPricingConfig, get_config
from .exceptions import NotFoundError, ValidationError
from .loans import Loan
from .logging_config import get_logger, log_action
from .storage import SNAPSHOTS_TABLE, SNAPSHOT_BLOBS_TABLE, parse_datetime, parse_decimal


logger = get_logger(__name__)

AVG_RATE_QUANTUM = Decimal('0.00000001')
BASIS_POINTS = Decimal('10000')


def compress_loans(loans: List[Dict[str, Any]]) -> bytes:
    """gzip-compressed UTF-8 JSON array of loan dicts"""
    payload = json.dumps(loans, separators=(',', ':'), ensure_ascii=False)
    return gzip.compress(payload.encode('utf-8'), mtime=0)


def decompress_loans(blob: bytes) -> List[Dict[str, Any]]:
    """Inverse of compress_loans"""
    return json.loads(gzip.decompress(blob).decode('utf-8'))


@dataclass
class CurrencySummary:
    """Portfolio totals for one currency"""
    loan_count: int = 0
    total_amount: Decimal = Decimal('0')
    total_fees: Decimal = Decimal('0')
    total_interest: Decimal = Decimal('0')
    net_proceeds: Decimal = Decimal('0')
    avg_rate: Decimal = Decimal('0')     # Amount-weighted effective rate

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_count': self.loan_count,
            'total_amount': str(self.total_amount),
            'total_fees': str(self.total_fees),
            'total_interest': str(self.total_interest),
            'net_proceeds': str(self.net_proceeds),
            'avg_rate': str(self.avg_rate),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CurrencySummary':
        return cls(
            loan_count=int(data['loan_count']),
            total_amount=parse_decimal(data['total_amount']),
            total_fees=parse_decimal(data['total_fees']),
            total_interest=parse_decimal(data['total_interest']),
            net_proceeds=parse_decimal(data['net_proceeds']),
            avg_rate=parse_decimal(data['avg_rate']),
        )


@dataclass
class CurrencyDelta:
    """Change in one currency's totals since the previous snapshot"""
    fees_change: Decimal
    interest_change: Decimal
    net_proceeds_change: Decimal
    avg_rate_change_bps: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fees_change': str(self.fees_change),
            'interest_change': str(self.interest_change),
            'net_proceeds_change': str(self.net_proceeds_change),
            'avg_rate_change_bps': str(self.avg_rate_change_bps),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CurrencyDelta':
        return cls(
            fees_change=parse_decimal(data['fees_change']),
            interest_change=parse_decimal(data['interest_change']),
            net_proceeds_change=parse_decimal(data['net_proceeds_change']),
            avg_rate_change_bps=parse_decimal(data['avg_rate_change_bps']),
        )


def calculate_summary(loans: List[Loan]) -> Dict[str, CurrencySummary]:
    """Totals per currency with the amount-weighted mean effective rate"""
    summary: Dict[str, CurrencySummary] = {}
    weighted: Dict[str, Decimal] = {}

    for loan in loans:
        entry = summary.setdefault(loan.currency, CurrencySummary())
        entry.loan_count += 1
        entry.total_amount += loan.total_amount
        entry.total_fees += loan.total_fees
        entry.total_interest += loan.interest_amount
        entry.net_proceeds += loan.net_proceeds
        weighted[loan.currency] = (
            weighted.get(loan.currency, Decimal('0'))
            + loan.pricing.effective_rate * loan.total_amount
        )

    for currency, entry in summary.items():
        if entry.total_amount > 0:
            entry.avg_rate = (weighted[currency] / entry.total_amount).quantize(
                AVG_RATE_QUANTUM, rounding=ROUND_HALF_UP
            )

    return summary


def calculate_delta(
    current: Dict[str, CurrencySummary],
    previous: Optional[Dict[str, CurrencySummary]]
) -> Optional[Dict[str, CurrencyDelta]]:
    """
    Per-currency change against the previous summary; None when there is no
    previous snapshot. A currency missing on either side counts as all zero.
    """
    if previous is None:
        return None

    currencies = list(current)
    currencies.extend(c for c in previous if c not in current)

    delta = {}
    for currency in currencies:
        now = current.get(currency) or CurrencySummary()
        before = previous.get(currency) or CurrencySummary()
        delta[currency] = CurrencyDelta(
            fees_change=now.total_fees - before.total_fees,
            interest_change=now.total_interest - before.total_interest,
            net_proceeds_change=now.net_proceeds - before.net_proceeds,
            avg_rate_change_bps=(now.avg_rate - before.avg_rate) * BASIS_POINTS,
        )
    return delta


@dataclass
class SnapshotMetadata:
    """Everything about a snapshot except its loan blob"""
    id: str
    customer_id: str
    timestamp: datetime
    sequence: int
    user_id: str
    user_name: str
    summary: Dict[str, CurrencySummary]
    delta: Optional[Dict[str, CurrencyDelta]]
    changes: SnapshotChanges = field(default_factory=SnapshotChanges)
    change_count: int = 0
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'timestamp': self.timestamp.isoformat(),
            'sequence': self.sequence,
            'user_id': self.user_id,
            'user_name': self.user_name,
            'summary': {c: s.to_dict() for c, s in self.summary.items()},
            'delta': {c: d.to_dict() for c, d in self.delta.items()} if self.delta is not None else None,
            'changes': self.changes.to_dict(),
            'change_count': self.change_count,
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SnapshotMetadata':
        delta = data.get('delta')
        return cls(
            id=data['id'],
            customer_id=data['customer_id'],
            timestamp=parse_datetime(data['timestamp']),
            sequence=data['sequence'],
            user_id=data['user_id'],
            user_name=data['user_name'],
            summary={c: CurrencySummary.from_dict(s) for c, s in data['summary'].items()},
            delta={c: CurrencyDelta.from_dict(d) for c, d in delta.items()} if delta is not None else None,
            changes=SnapshotChanges.from_dict(data.get('changes')),
            change_count=data.get('change_count', 0),
            description=data.get('description'),
        )


@dataclass
class SnapshotDetail:
    """Snapshot metadata with the loans as they were (playback)"""
    metadata: SnapshotMetadata
    loans: List[Loan]

    def to_dict(self) -> Dict[str, Any]:
        result = self.metadata.to_dict()
        result['loans'] = [loan.to_dict() for loan in self.loans]
        return result


class SnapshotManager:
    """
    Creates, lists, rehydrates and prunes snapshots.

    Creation is serialised per customer so that each snapshot's delta is
    computed against the snapshot created just before it.
    """

    def __init__(
        self,
        storage: AsyncStorageInterface,
        clock: Optional[Clock] = None,
        config: Optional[LoanPricingConfig] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.audit_trail = audit_trail
        # Dropped once no task holds or waits on them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _customer_lock(self, customer_id: str) -> asyncio.Lock:
        lock = self._locks.get(customer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[customer_id] = lock
        return lock

    async def _customer_snapshots(self, customer_id: str) -> List[SnapshotMetadata]:
        """All snapshots for a customer, oldest first"""
        rows = await self.storage.find(SNAPSHOTS_TABLE, {'customer_id': customer_id})
        snapshots = [SnapshotMetadata.from_dict(row) for row in rows]
        snapshots.sort(key=lambda s: s.sequence)
        return snapshots

    async def _load_loans(self, snapshot_id: str) -> List[Dict[str, Any]]:
        blob = await self.storage.load(SNAPSHOT_BLOBS_TABLE, snapshot_id)
        if blob is None:
            raise NotFoundError("snapshot", snapshot_id)
        return decompress_loans(base64.b64decode(blob['data']))

    async def create_snapshot(
        self,
        customer_id: str,
        loans: List[Loan],
        context: UserContext,
        changes: Optional[SnapshotChanges] = None,
        change_count: Optional[int] = None,
        description: Optional[str] = None
    ) -> SnapshotMetadata:
        """
        Capture the customer's current loans.

        When changes are not supplied they are classified against the loans
        of the previous snapshot. change_count defaults to the number of
        classified changes.
        """
        if not customer_id:
            raise ValidationError("customer_id is required")
        foreign = [loan.id for loan in loans if loan.customer_id != customer_id]
        if foreign:
            raise ValidationError(f"Loans do not belong to customer {customer_id}: {', '.join(foreign)}")

        async with self._customer_lock(customer_id):
            history = await self._customer_snapshots(customer_id)
            previous = history[-1] if history else None

            summary = calculate_summary(loans)
            delta = calculate_delta(summary, previous.summary if previous else None)

            if changes is None:
                previous_loans = []
                if previous is not None:
                    previous_loans = [Loan.from_dict(d) for d in await self._load_loans(previous.id)]
                changes = classify_changes(previous_loans, loans)
            if change_count is None:
                change_count = changes.count

            snapshot = SnapshotMetadata(
                id=str(uuid.uuid4()),
                customer_id=customer_id,
                timestamp=self.clock.now(),
                sequence=previous.sequence + 1 if previous else 1,
                user_id=context.user_id,
                user_name=context.user_name,
                summary=summary,
                delta=delta,
                changes=changes,
                change_count=change_count,
                description=description,
            )

            blob = compress_loans([loan.to_dict() for loan in loans])
            async with self.storage.atomic():
                await self.storage.save(SNAPSHOT_BLOBS_TABLE, snapshot.id, {
                    'id': snapshot.id,
                    'customer_id': customer_id,
                    'data': base64.b64encode(blob).decode('ascii'),
                })
                await self.storage.save(SNAPSHOTS_TABLE, snapshot.id, snapshot.to_dict())

        log_action(
            logger, "info",
            f"Created snapshot {snapshot.sequence} for customer {customer_id}",
            user_id=context.user_id,
            action="create_snapshot",
            resource=snapshot.id,
            extra={"loan_count": len(loans), "change_count": change_count, "blob_bytes": len(blob)}
        )

        if self.audit_trail is not None and self.config.enable_audit_logging:
            await self.audit_trail.log_event(
                AuditEventType.SNAPSHOT_CREATED, "snapshot", snapshot.id, context,
                metadata={"customer_id": customer_id, "change_count": change_count}
            )

        if self.config.snapshot_auto_prune:
            await self.prune_old_snapshots(customer_id, self.config.snapshot_retention_limit)

        return snapshot

    async def list_timeline(
        self,
        customer_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[SnapshotMetadata]:
        """Snapshots newest first, without loan data"""
        if limit is None:
            limit = self.config.snapshot_timeline_default_limit
        if limit < 0 or offset < 0:
            raise ValidationError("limit and offset must not be negative")
        snapshots = await self._customer_snapshots(customer_id)
        snapshots.reverse()
        return snapshots[offset:offset + limit]

    async def get_latest_snapshot(self, customer_id: str) -> Optional[SnapshotMetadata]:
        snapshots = await self._customer_snapshots(customer_id)
        return snapshots[-1] if snapshots else None

    async def get_snapshot(self, snapshot_id: str) -> SnapshotMetadata:
        data = await self.storage.load(SNAPSHOTS_TABLE, snapshot_id)
        if data is None:
            raise NotFoundError("snapshot", snapshot_id)
        return SnapshotMetadata.from_dict(data)

    async def get_snapshot_detail(self, snapshot_id: str) -> SnapshotDetail:
        """Snapshot with its loans rehydrated for read-only playback"""
        metadata = await self.get_snapshot(snapshot_id)
        loans = [Loan.from_dict(d) for d in await self._load_loans(snapshot_id)]
        return SnapshotDetail(metadata=metadata, loans=loans)

    async def count_snapshots(self, customer_id: str) -> int:
        return len(await self.storage.find(SNAPSHOTS_TABLE, {'customer_id': customer_id}))

    async def prune_old_snapshots(self, customer_id: str, retention_limit: Optional[int] = None) -> int:
        """Delete the oldest snapshots beyond the retention limit; returns how many"""
        if retention_limit is None:
            retention_limit = self.config.snapshot_retention_limit
        if retention_limit < 1:
            raise ValidationError("retention_limit must be at least 1")

        async with self._customer_lock(customer_id):
            snapshots = await self._customer_snapshots(customer_id)
            excess = snapshots[:max(0, len(snapshots) - retention_limit)]
            async with self.storage.atomic():
                for snapshot in excess:
                    await self.storage.delete(SNAPSHOT_BLOBS_TABLE, snapshot.id)
                    await self.storage.delete(SNAPSHOTS_TABLE, snapshot.id)

        if excess:
            log_action(
                logger, "info",
                f"Pruned {len(excess)} snapshots for customer {customer_id}",
                action="prune_snapshots",
                resource=customer_id,
                extra={"retention_limit": retention_limit}
            )
        return len(excess)
