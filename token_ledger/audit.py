"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Payments, accruals, closures, ledger movements and policy changes are logged
here. Events are written inside the caller's atomic unit, so a rolled back
operation leaves no audit event behind.
"""

import hashlib
import json
import uuid
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Tuple
from enum import Enum
from decimal import Decimal

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Issuance events
    TOKEN_ISSUED = "token_issued"
    BATCH_ISSUED = "batch_issued"

    # Repayment events
    PAYMENT_RECORDED = "payment_recorded"
    TARGET_CLOSED = "target_closed"
    TARGET_REACTIVATED = "target_reactivated"

    # Penalty events
    PENALTY_ACCRUED = "penalty_accrued"
    TARGET_FLAGGED_OVERDUE = "target_flagged_overdue"
    POLICY_CREATED = "policy_created"
    POLICY_ACTIVATED = "policy_activated"

    # Ledger events
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_CREDITED = "account_credited"
    ACCOUNT_DEBITED = "account_debited"
    TRANSFER_COMPLETED = "transfer_completed"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _serialize(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    elif isinstance(value, datetime):
        return value.isoformat()
    elif isinstance(value, Enum):
        return value.value
    elif isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # token, batch, installment, ledger_account, penalty_policy
    entity_id: str
    sequence: int     # Position in the chain
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.metadata:
            self.metadata = {k: _serialize(v) for k, v in self.metadata.items()}

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this event
        Hash includes all fields except current_hash
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
        if isinstance(data['created_at'], str):
            data['created_at'] = datetime.fromisoformat(data['created_at'])
        if isinstance(data['updated_at'], str):
            data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        if isinstance(data['event_type'], str):
            data['event_type'] = AuditEventType(data['event_type'])
        return cls(**data)


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._head: Optional[Tuple[int, str, str]] = None  # (sequence, hash, event id)

    def _load_head(self) -> Tuple[int, str, str]:
        """Scan the table for the most recent event"""
        events = self.storage.load_all(self.table_name)
        if not events:
            return 0, "", ""
        last = max(events, key=lambda e: e['sequence'])
        return last['sequence'], last['current_hash'], last['id']

    def _chain_head(self) -> Tuple[int, str]:
        # The cached head is trusted only while it is still the newest stored
        # event; a rolled back unit or another writer forces a rescan
        head = self._head
        if head is None or not self._head_is_current(head):
            head = self._load_head()
            self._head = head
        return head[0], head[1]

    def _head_is_current(self, head: Tuple[int, str, str]) -> bool:
        sequence, _, event_id = head
        if self.storage.count(self.table_name) != sequence:
            return False
        return sequence == 0 or self.storage.exists(self.table_name, event_id)

    def log_event(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None
    ) -> Optional[AuditEvent]:
        """
        Log an audit event with hash chaining

        Args:
            event_type: Type of audit event
            entity_type: Type of entity being audited
            entity_id: ID of the entity
            metadata: Additional event-specific data
            user_id: Actor who initiated the action

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self.storage.atomic():
            sequence, previous_hash = self._chain_head()
            now = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=str(entity_id),
                sequence=sequence + 1,
                previous_hash=previous_hash,
                current_hash="",
                metadata=metadata or {},
                user_id=str(user_id) if user_id is not None else None
            )
            event.current_hash = event.calculate_hash()
            self.storage.insert(self.table_name, event.id, event.to_dict())
            self._head = (event.sequence, event.current_hash, event.id)
            return event

    def get_all_events(self) -> List[AuditEvent]:
        """All events in chain order"""
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_for_entity(self, entity_type: str, entity_id: str) -> List[AuditEvent]:
        """Get all audit events for a specific entity"""
        events_data = self.storage.find(
            self.table_name, {'entity_type': entity_type, 'entity_id': str(entity_id)}
        )
        events = [AuditEvent.from_dict(data) for data in events_data]
        events.sort(key=lambda e: e.sequence)
        return events

    def get_events_by_type(self, event_type: AuditEventType) -> List[AuditEvent]:
        return [e for e in self.get_all_events() if e.event_type == event_type]

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
