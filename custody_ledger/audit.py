"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Every committed ledger mutation and every rejected transfer is logged here.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    INTEREST_PAID = "interest_paid"
    TRANSFER_FAILED = "transfer_failed"
    DEPOSIT_REVERSED = "deposit_reversed"
    INVARIANT_CHECK = "invariant_check"


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str    # "account" or "ledger"
    entity_id: str      # user identity, or "ledger"
    sequence: int       # position in the chain, starting at 1
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]

    def __post_init__(self):
        if self.metadata:
            self.metadata = _serialize(self.metadata)

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
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['event_type'] = self.event_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return super().from_dict(data)


def _serialize(value):
    """Convert metadata values to JSON-serializable form; ints become strings"""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    HEAD_ID = "head"

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self.head_table = f"{table_name}_head"
        self._lock = threading.Lock()

    def _chain_head(self) -> Dict[str, Any]:
        head = self.storage.load(self.head_table, self.HEAD_ID)
        if head is not None:
            return head
        # Trails written without a head record
        events = self.storage.load_all(self.table_name)
        if not events:
            return {'sequence': 0, 'current_hash': ""}
        return max(events, key=lambda e: e['sequence'])

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data

        Returns:
            Created AuditEvent
        """
        with self._lock:
            now = datetime.now(timezone.utc)
            # Read the head from storage so rolled-back events never anchor the chain
            head = self._chain_head()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                sequence=head['sequence'] + 1,
                previous_hash=head['current_hash'],
                current_hash="",
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            with self.storage.atomic():
                self.storage.save(self.table_name, event.id, event.to_dict())
                self.storage.save(self.head_table, self.HEAD_ID, {
                    'id': self.HEAD_ID,
                    'sequence': event.sequence,
                    'current_hash': event.current_hash
                })
            return event

    def get_events_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[AuditEvent]:
        """Get audit events for one entity, oldest first"""
        events_data = self.storage.find(self.table_name, {
            'entity_type': entity_type,
            'entity_id': entity_id
        })
        events = sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)

        if limit:
            events = events[-limit:]
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        """Get audit events of one type, oldest first"""
        events_data = self.storage.find(self.table_name, {'event_type': event_type.value})
        return sorted((AuditEvent.from_dict(d) for d in events_data), key=lambda e: e.sequence)

    def get_all_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(d) for d in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire audit chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_events': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        events = self.get_all_events()
        result['total_events'] = len(events)

        previous_hash = ""
        for position, event in enumerate(events):
            if not event.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': event.calculate_hash(),
                    'actual_hash': event.current_hash
                })
            if event.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': event.previous_hash
                })
            previous_hash = event.current_hash

        return result

    def count_events(self) -> int:
        """Get total number of audit events"""
        return self.storage.count(self.table_name)
