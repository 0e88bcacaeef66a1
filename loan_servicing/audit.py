"""
Audit Trail Module

Hash-chained audit log with SHA-256 for tamper detection. Each
organization has its own chain; every servicing state change is logged.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import EntityStore, OrgContext


class AuditEventType(Enum):
    """Types of audit events"""
    # Loan events
    LOAN_CREATED = "loan_created"
    LOAN_STATUS_CHANGED = "loan_status_changed"

    # Schedule events
    SCHEDULE_REGENERATED = "schedule_regenerated"

    # Payment events
    PAYMENT_APPLIED = "payment_applied"
    MANUAL_PAYMENT_APPLIED = "manual_payment_applied"
    PRINCIPAL_REDUCED = "principal_reduced"
    CREDIT_HELD = "credit_held"

    # Disbursement events
    FURTHER_ADVANCE = "further_advance"


def _serialize(value: Any) -> Any:
    """Convert metadata values to JSON-serializable format"""
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, (datetime, date)):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditEvent:
    """
    Immutable audit event with hash chaining for tamper detection
    """
    org_id: str
    sequence: int             # Position in the organization's chain, from 1
    event_type: AuditEventType
    entity_type: str          # loan, schedule, payment
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.metadata:
            self.metadata = _serialize(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
        """
        hash_data = {
            'id': self.id,
            'org_id': self.org_id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'user_id': self.user_id,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'org_id': self.org_id,
            'sequence': self.sequence,
            'event_type': self.event_type.value,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'previous_hash': self.previous_hash,
            'current_hash': self.current_hash,
            'metadata': self.metadata,
            'user_id': self.user_id,
            'created_at': self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        data = dict(data)
        data.pop('_org_id', None)
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail, one chain per organization
    """

    def __init__(self, storage: EntityStore, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _events(self, ctx: OrgContext, filters: Optional[Dict[str, Any]] = None) -> List[AuditEvent]:
        records = self.storage.filter(ctx, self.table_name, filters or {}, order_by='sequence')
        return [AuditEvent.from_dict(record) for record in records]

    def _last_event(self, ctx: OrgContext) -> Optional[AuditEvent]:
        events = self._events(ctx)
        return events[-1] if events else None

    def log_event(
        self,
        ctx: OrgContext,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            ctx: Organization the event belongs to; its user is recorded
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data

        Returns:
            Created AuditEvent
        """
        with self._lock:
            last = self._last_event(ctx)
            event = AuditEvent(
                org_id=ctx.org_id,
                sequence=last.sequence + 1 if last else 1,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=last.current_hash if last else "",
                current_hash="",
                metadata=metadata or {},
                user_id=ctx.user_id
            )
            event.current_hash = event.calculate_hash()
            self.storage.create(ctx, self.table_name, event.to_dict())
            return event

    def get_events_for_entity(self, ctx: OrgContext, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        """Events for one entity, oldest first; ``limit`` keeps the most recent N"""
        events = self._events(ctx, {'entity_type': entity_type, 'entity_id': entity_id})
        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, ctx: OrgContext, event_type: AuditEventType) -> List[AuditEvent]:
        return self._events(ctx, {'event_type': event_type.value})

    def get_all_events(self, ctx: OrgContext) -> List[AuditEvent]:
        return self._events(ctx)

    def get_latest_hash(self, ctx: OrgContext) -> Optional[str]:
        last = self._last_event(ctx)
        return last.current_hash if last else None

    def verify_integrity(self, ctx: OrgContext) -> Dict[str, Any]:
        """
        Verify the integrity of an organization's audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self._events(ctx)
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
