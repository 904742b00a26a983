"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and its interaction
with atomic units.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from token_ledger.storage import InMemoryStorage
from token_ledger.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_is_serialized(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.PAYMENT_RECORDED,
            entity_type="token",
            entity_id="T1",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={"amount": Decimal("150.00"), "type": AuditEventType.TARGET_CLOSED}
        )
        assert event.metadata == {"amount": "150.00", "type": "target_closed"}

    def test_hash_changes_with_content(self):
        now = datetime.now(timezone.utc)
        kwargs = dict(
            id="AUDIT001", created_at=now, updated_at=now,
            event_type=AuditEventType.PAYMENT_RECORDED, entity_type="token",
            entity_id="T1", sequence=1, previous_hash="", current_hash=""
        )
        first = AuditEvent(metadata={"amount": "10.00"}, **kwargs)
        second = AuditEvent(metadata={"amount": "10.01"}, **kwargs)
        assert first.calculate_hash() != second.calculate_hash()


class TestAuditTrail:
    """Test hash chaining and integrity verification"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)

    def test_events_are_chained(self):
        first = self.audit.log_event(AuditEventType.TOKEN_ISSUED, "token", "T1")
        second = self.audit.log_event(AuditEventType.PAYMENT_RECORDED, "token", "T1",
                                      metadata={"amount": "50.00"}, user_id="agent:7")

        assert first.previous_hash == ""
        assert second.previous_hash == first.current_hash
        assert second.sequence == first.sequence + 1
        assert second.verify_hash()

    def test_verify_integrity_of_clean_chain(self):
        for i in range(5):
            self.audit.log_event(AuditEventType.PAYMENT_RECORDED, "token", f"T{i}")

        result = self.audit.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5

    def test_tampering_is_detected(self):
        event = self.audit.log_event(AuditEventType.PAYMENT_RECORDED, "token", "T1",
                                     metadata={"amount": "50.00"})
        self.audit.log_event(AuditEventType.TARGET_CLOSED, "token", "T1")

        data = self.storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "5000.00"
        self.storage.save("audit_events", event.id, data)

        result = self.audit.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_rolled_back_unit_leaves_no_event_and_no_gap(self):
        self.audit.log_event(AuditEventType.TOKEN_ISSUED, "token", "T1")

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.audit.log_event(AuditEventType.PAYMENT_RECORDED, "token", "T1")
                raise RuntimeError("allocation failed")

        self.audit.log_event(AuditEventType.PAYMENT_RECORDED, "token", "T1")
        assert self.audit.count_events() == 2
        assert self.audit.verify_integrity()["valid"]

    def test_events_for_entity(self):
        self.audit.log_event(AuditEventType.TOKEN_ISSUED, "token", "T1")
        self.audit.log_event(AuditEventType.TOKEN_ISSUED, "token", "T2")
        self.audit.log_event(AuditEventType.PAYMENT_RECORDED, "token", "T1")

        events = self.audit.get_events_for_entity("token", "T1")
        assert [e.event_type for e in events] == [
            AuditEventType.TOKEN_ISSUED, AuditEventType.PAYMENT_RECORDED
        ]
        assert len(self.audit.get_events_by_type(AuditEventType.TOKEN_ISSUED)) == 2

    def test_disabled_trail_writes_nothing(self):
        audit = AuditTrail(self.storage, enabled=False)
        assert audit.log_event(AuditEventType.TOKEN_ISSUED, "token", "T1") is None
        assert audit.count_events() == 0

    def test_chain_head_is_not_rescanned_per_event(self, monkeypatch):
        scans = []
        load_all = self.storage.load_all

        def counting_load_all(table):
            scans.append(table)
            return load_all(table)

        monkeypatch.setattr(self.storage, "load_all", counting_load_all)
        for number in range(25):
            self.audit.log_event(AuditEventType.PENALTY_ACCRUED, "installment", f"I{number}")

        assert scans.count("audit_events") <= 1
        monkeypatch.undo()
        assert self.audit.verify_integrity()["valid"]

    def test_second_trail_on_same_storage_keeps_one_chain(self):
        other = AuditTrail(self.storage)
        self.audit.log_event(AuditEventType.TOKEN_ISSUED, "token", "T1")
        other.log_event(AuditEventType.PAYMENT_RECORDED, "token", "T1")
        self.audit.log_event(AuditEventType.TARGET_CLOSED, "token", "T1")

        events = self.audit.get_all_events()
        assert [e.sequence for e in events] == [1, 2, 3]
        assert self.audit.verify_integrity()["valid"]
