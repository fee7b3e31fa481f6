"""
Audit Trail Module

Hash-chained immutable audit log with SHA-256 for tamper detection.
Check and checkbook writes append one line here after their unit of work
commits; an audit failure never undoes the committed change.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum
from decimal import Decimal
import uuid

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Types of audit events"""
    # Check events
    CHECK_CREATED = "check_created"
    CHECK_UPDATED = "check_updated"
    CHECK_DELETED = "check_deleted"
    CHECK_TRANSITIONED = "check_transitioned"

    # Checkbook events
    CHECKBOOK_CREATED = "checkbook_created"
    CHECKBOOK_UPDATED = "checkbook_updated"
    CHECKBOOK_DELETED = "checkbook_deleted"
    CHECKBOOK_VOIDED = "checkbook_voided"

    # System events
    AUDIT_INTEGRITY_CHECK = "audit_integrity_check"


def _json_safe(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


@dataclass
class AuditEvent(StorageRecord):
    """
    Immutable audit event with hash chaining for tamper detection
    """
    event_type: AuditEventType
    entity_type: str  # check, checkbook
    entity_id: str
    previous_hash: str
    current_hash: str
    metadata: Dict[str, Any]
    user_id: Optional[str] = None

    _enum_fields = {"event_type": AuditEventType}

    def __post_init__(self):
        if self.metadata:
            self.metadata = _json_safe(self.metadata)

    def calculate_hash(self) -> str:
        """SHA-256 over every field except current_hash"""
        hash_data = {
            'id': self.id,
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
        return self.current_hash == self.calculate_hash()


class AuditTrail:
    """
    Hash-chained audit trail for tamper detection
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events",
                 enabled: bool = True):
        self.storage = storage
        self.table_name = table_name
        self.enabled = enabled
        self._last_hash: Optional[str] = None
        self._lock = threading.Lock()
        self._load_last_hash()

    def _load_last_hash(self) -> None:
        events = self.storage.load_all(self.table_name)
        if not events:
            return
        # The chain tip is the only hash nothing else points back to
        referenced = {e.get('previous_hash') for e in events}
        tips = [e for e in events if e.get('current_hash') not in referenced]
        candidates = tips or events
        self._last_hash = max(candidates, key=lambda x: x.get('created_at', '')).get('current_hash')

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

        Returns:
            Created AuditEvent, or None when audit logging is disabled
        """
        if not self.enabled:
            return None

        with self._lock:
            now = datetime.now(timezone.utc)
            self._load_last_hash()

            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                previous_hash=self._last_hash or "",
                current_hash="",
                user_id=user_id,
                metadata=metadata or {}
            )
            event.current_hash = event.calculate_hash()

            self.storage.save(self.table_name, event.id, event.to_dict())
            self._last_hash = event.current_hash
            return event

    def record(
        self,
        actor: Optional[str],
        module: str,
        action: str,
        description: str,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[AuditEvent]:
        """Append one audit line given (actor, module, action, description)"""
        payload = {"module": module, "action": action, "description": description}
        payload.update(metadata or {})
        return self.log_event(event_type, entity_type, entity_id, payload, user_id=actor)

    def _ordered_events(self) -> List[AuditEvent]:
        events = [AuditEvent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        # created_at can tie; the chain itself gives the true order
        by_previous = {e.previous_hash: e for e in events}
        ordered = []
        cursor = by_previous.get("")
        while cursor is not None and len(ordered) < len(events):
            ordered.append(cursor)
            cursor = by_previous.get(cursor.current_hash)
        if len(ordered) != len(events):
            return sorted(events, key=lambda x: x.created_at)
        return ordered

    def get_events_for_entity(self, entity_type: str, entity_id: str,
                              limit: Optional[int] = None) -> List[AuditEvent]:
        events = [
            e for e in self._ordered_events()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]
        if limit:
            events = events[-limit:]
        return events

    def get_all_events(self, event_type: Optional[AuditEventType] = None,
                       limit: Optional[int] = None) -> List[AuditEvent]:
        events = self._ordered_events()
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        if limit:
            events = events[-limit:]
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
            'chain_breaks': [],
        }

        events = self._ordered_events()
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

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
