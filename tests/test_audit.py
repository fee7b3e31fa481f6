"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection, integrity verification
and the audit lines written by check and checkbook operations.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from check_treasury.config import TreasuryConfig
from check_treasury.storage import InMemoryStorage
from check_treasury.treasury import TreasurySystem
from check_treasury.state_machine import CheckState
from check_treasury.audit import AuditTrail, AuditEvent, AuditEventType
from check_treasury.errors import InvalidStateTransition


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that metadata is reduced to JSON types"""
        now = datetime.now(timezone.utc)

        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.CHECK_TRANSITIONED,
            entity_type="check",
            entity_id="CHK001",
            previous_hash="",
            current_hash="",
            metadata={
                "amount": Decimal("1234.56"),
                "from": CheckState.IN_PORTFOLIO,
                "when": now,
                "changes": {"amount": {"from": Decimal("1"), "to": Decimal("2")}},
            }
        )

        assert event.metadata["amount"] == "1234.56"
        assert event.metadata["from"] == "in_portfolio"
        assert event.metadata["when"] == now.isoformat()
        assert event.metadata["changes"]["amount"]["to"] == "2"

    def test_hash_verification(self):
        """Test hash verification detects tampering"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT002",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.CHECKBOOK_UPDATED,
            entity_type="checkbook",
            entity_id="CB001",
            previous_hash="prev_hash",
            current_hash="",
            metadata={"field": "range_end"}
        )

        event.current_hash = event.calculate_hash()
        assert len(event.current_hash) == 64
        assert event.verify_hash()

        event.entity_id = "CB002"
        assert not event.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.CHECK_CREATED, "check", "1")
        second = self.audit_trail.log_event(AuditEventType.CHECK_UPDATED, "check", "1")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert self.audit_trail.count_events() == 2

    def test_record_builds_actor_line(self):
        event = self.audit_trail.record(
            "treasurer", "checks", "deposit", "applied \"deposit\" to check #5",
            AuditEventType.CHECK_TRANSITIONED, "check", "5", {"from": CheckState.IN_PORTFOLIO},
        )

        assert event.user_id == "treasurer"
        assert event.metadata == {
            "module": "checks",
            "action": "deposit",
            "description": "applied \"deposit\" to check #5",
            "from": "in_portfolio",
        }

    def test_entity_and_type_queries(self):
        self.audit_trail.log_event(AuditEventType.CHECK_CREATED, "check", "1")
        self.audit_trail.log_event(AuditEventType.CHECK_CREATED, "check", "2")
        self.audit_trail.log_event(AuditEventType.CHECK_TRANSITIONED, "check", "1")

        assert [e.event_type for e in self.audit_trail.get_events_for_entity("check", "1")] == [
            AuditEventType.CHECK_CREATED, AuditEventType.CHECK_TRANSITIONED
        ]
        assert len(self.audit_trail.get_all_events(AuditEventType.CHECK_CREATED)) == 2
        assert len(self.audit_trail.get_all_events(limit=1)) == 1

    def test_integrity_of_untouched_chain(self):
        for i in range(5):
            self.audit_trail.log_event(AuditEventType.CHECK_CREATED, "check", str(i))

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is True
        assert result["total_events"] == 5

    def test_tampered_event_is_detected(self):
        event = self.audit_trail.log_event(AuditEventType.CHECK_CREATED, "check", "1",
                                           {"amount": "100.00"})
        self.audit_trail.log_event(AuditEventType.CHECK_UPDATED, "check", "1")

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "1000000.00"
        self.storage.save("audit_events", event.id, stored)

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is False
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_new_trail_continues_existing_chain(self):
        first = self.audit_trail.log_event(AuditEventType.CHECK_CREATED, "check", "1")

        reopened = AuditTrail(self.storage)
        second = reopened.log_event(AuditEventType.CHECK_UPDATED, "check", "1")

        assert second.previous_hash == first.current_hash
        assert reopened.verify_integrity()["valid"] is True

    def test_disabled_trail_writes_nothing(self):
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.CHECK_CREATED, "check", "1") is None
        assert trail.count_events() == 0


class TestOperationAudit:
    """Audit lines produced by engine operations"""

    def setup_method(self):
        config = TreasuryConfig(database_url="memory://", lock_timeout_seconds=1.0)
        self.system = TreasurySystem(storage=InMemoryStorage(), config=config)
        self.bank = self.system.catalog.register_bank("Banco Nacion")
        self.account = self.system.catalog.register_bank_account(self.bank.id, "Operating")

    def test_transitions_are_audited_in_order(self):
        checks = self.system.checks
        check = checks.create_check(direction="received", amount="100", serial_number=1,
                                    bank_id=self.bank.id, user_id="clerk")
        checks.deposit(check.id, self.account.id, user_id="clerk")
        checks.accredit(check.id, user_id="supervisor")

        events = self.system.audit_trail.get_events_for_entity("check", check.id)
        assert [e.metadata["action"] for e in events] == ["create", "deposit", "accredit"]
        assert [e.user_id for e in events] == ["clerk", "clerk", "supervisor"]
        assert events[2].metadata["from"] == "deposited"
        assert events[2].metadata["to"] == "accredited"
        assert self.system.audit_trail.verify_integrity()["valid"] is True

    def test_failed_operation_leaves_no_audit_line(self):
        check = self.system.checks.create_check(direction="received", amount="100",
                                                serial_number=1, bank_id=self.bank.id)
        with pytest.raises(InvalidStateTransition):
            self.system.checks.accredit(check.id)

        events = self.system.audit_trail.get_events_for_entity("check", check.id)
        assert len(events) == 1

    def test_audit_failure_does_not_undo_the_change(self, monkeypatch):
        def broken(*args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(self.system.audit_trail, "record", broken)
        check = self.system.checks.create_check(direction="received", amount="100",
                                                serial_number=1, bank_id=self.bank.id)

        assert self.system.checks.get_check(check.id) is not None
        assert self.system.audit_trail.count_events() == 0
