"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every loan, fee and invoice mutation is logged here, one event per changed
field as reported by the change detector.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import asyncio
import uuid

from .async_storage import AsyncStorageInterface
from .changes import FieldChange
from .clock import Clock, SystemClock
from .exceptions import ValidationError
from .storage import StorageRecord, AUDIT_TABLE, to_jsonable, parse_datetime


@dataclass(frozen=True)
class UserContext:
    """Identity of the caller performing a mutation"""
    user_id: str
    user_name: str

    def __post_init__(self):
        if not self.user_id:
            raise ValidationError("user_id is required")
        if not self.user_name:
            raise ValidationError("user_name is required")


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_UPDATED = "loan_updated"
    LOAN_SPLIT = "loan_split"

    # Fee events
    FEE_ADDED = "fee_added"
    FEE_UPDATED = "fee_updated"
    FEE_REMOVED = "fee_removed"

    # Invoice events
    INVOICE_ADDED = "invoice_added"
    INVOICE_UPDATED = "invoice_updated"
    INVOICE_REMOVED = "invoice_removed"
    INVOICE_MOVED = "invoice_moved"

    # Snapshot events
    SNAPSHOT_CREATED = "snapshot_created"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str    # loan, fee, invoice or snapshot
    entity_id: str
    sequence: int       # Position in the chain
    previous_hash: str  # Hash of previous audit event for chaining
    current_hash: str   # SHA-256 hash of this event
    user_id: str
    user_name: str
    loan_id: Optional[str] = None
    field_name: Optional[str] = None
    old_value: Any = None
    new_value: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.event_type = AuditEventType(self.event_type)
        # Values are stored as they will be hashed
        self.old_value = to_jsonable(self.old_value)
        self.new_value = to_jsonable(self.new_value)
        self.metadata = to_jsonable(self.metadata or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'user_name': self.user_name,
            'loan_id': self.loan_id,
            'field_name': self.field_name,
            'old_value': self.old_value,
            'new_value': self.new_value,
            'metadata': self.metadata
        }

        # Create deterministic JSON string
        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data['created_at'] = parse_datetime(data['created_at'])
        data['updated_at'] = parse_datetime(data['updated_at'])
        data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: AsyncStorageInterface, clock: Optional[Clock] = None,
                 table_name: str = AUDIT_TABLE):
        self.storage = storage
        self.clock = clock or SystemClock()
        self.table_name = table_name
        self._last_hash: Optional[str] = None
        self._sequence = 0
        self._loaded = False
        self._lock = asyncio.Lock()  # Serialises chaining across concurrent tasks

    async def _load_chain_head(self) -> None:
        """Load the hash and sequence of the most recent audit event"""
        events = await self.storage.load_all(self.table_name)
        if events:
            latest = max(events, key=lambda e: e.get('sequence', 0))
            self._last_hash = latest.get('current_hash')
            self._sequence = latest.get('sequence', 0)
        self._loaded = True

    async def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        context: UserContext,
        loan_id: Optional[str] = None,
        field_name: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            context: Caller identity
            loan_id: Loan the entity belongs to
            field_name: Dotted path of the changed field, if any
            old_value: Value before the change
            new_value: Value after the change
            metadata: Additional event-specific data

        Returns:
            Created AuditEvent
        """
        async with self._lock:
            if not self._loaded:
                await self._load_chain_head()

            now = self.clock.now()
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=self._sequence + 1,
                previous_hash=self._last_hash or "",
                current_hash="",  # Will be calculated below
                user_id=context.user_id,
                user_name=context.user_name,
                loan_id=loan_id,
                field_name=field_name,
                old_value=old_value,
                new_value=new_value,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            await self.storage.save(self.table_name, event.id, event.to_dict())

            self._last_hash = event.current_hash
            self._sequence = event.sequence
            return event

    async def log_changes(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        loan_id: Optional[str],
        changes: List[FieldChange],
        context: UserContext,
        metadata: Optional[Dict[str, Any]] = None
    ) -> List[AuditEvent]:
        """One event per changed field"""
        events = []
        for change in changes:
            events.append(await self.log_event(
                event_type,
                entity_type,
                entity_id,
                context,
                loan_id=loan_id,
                field_name=change.field_path,
                old_value=change.old_value,
                new_value=change.new_value,
                metadata=metadata,
            ))
        return events

    async def _all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in await self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    async def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """
        Get all audit events for a specific entity, oldest first

        Args:
            entity_type: Type of entity
            entity_id: ID of entity
            limit: Maximum number of (most recent) events to return
        """
        rows = await self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(r) for r in rows), key=lambda e: e.sequence)
        if limit:
            events = events[-limit:]
        return events

    async def get_loan_history(
        self,
        loan_id: str,
        limit: int = 50,
        offset: int = 0,
        field_name: Optional[str] = None
    ) -> List[AuditEvent]:
        """Events for a loan and its fees and invoices, newest first"""
        rows = await self.storage.find(self.table_name, {'loan_id': loan_id})
        events = [AuditEvent.from_dict(r) for r in rows]
        if field_name:
            events = [e for e in events if e.field_name == field_name]
        events.sort(key=lambda e: e.sequence, reverse=True)
        return events[offset:offset + limit]

    async def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': [],
        }

        events = await self._all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for i, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': i,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    async def count_events(self) -> int:
        return await self.storage.count(self.table_name)

    def get_latest_hash(self) -> Optional[str]:
        return self._last_hash
