"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and that rolled-back
ledger operations never leave events behind.
"""

import pytest
from unittest.mock import patch
from datetime import datetime, timezone

from custody_ledger.audit import AuditTrail, AuditEvent, AuditEventType
from custody_ledger.clock import ManualClock
from custody_ledger.custody import InMemoryCustodyService, TransferResult
from custody_ledger.errors import TransferFailed
from custody_ledger.ledger import Ledger
from custody_ledger.storage import InMemoryStorage


E18 = 10**18


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that large ints and datetimes become strings"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.DEPOSIT,
            entity_type="account",
            entity_id="alice",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={
                "amount": 10**24,
                "when": now,
                "valid": True,
                "nested": {"balance": 5},
                "missing": None
            }
        )

        assert event.metadata["amount"] == str(10**24)
        assert event.metadata["when"] == now.isoformat()
        assert event.metadata["valid"] is True
        assert event.metadata["nested"] == {"balance": "5"}
        assert event.metadata["missing"] is None

    def test_hash_round_trip(self):
        """Test that a stored event still verifies after reload"""
        trail = AuditTrail(InMemoryStorage())
        event = trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {"amount": 1})

        reloaded = AuditEvent.from_dict(event.to_dict())

        assert reloaded.event_type == AuditEventType.DEPOSIT
        assert reloaded.current_hash == event.current_hash
        assert reloaded.verify_hash()


class TestAuditTrail:
    """Test chaining and integrity checks"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.trail = AuditTrail(self.storage)

    def test_events_are_chained(self):
        """Test that each event points at its predecessor"""
        first = self.trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {"amount": 1})
        second = self.trail.log_event(AuditEventType.WITHDRAWAL, "account", "alice", {"amount": 1})

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert self.trail.count_events() == 2

        result = self.trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 2

    def test_tampered_metadata_detected(self):
        """Test that editing a stored event breaks its hash"""
        self.trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {"amount": 100})
        event = self.trail.log_event(AuditEventType.DEPOSIT, "account", "bob", {"amount": 100})

        stored = self.storage.load("audit_events", event.id)
        stored["metadata"]["amount"] = "1"
        self.storage.save("audit_events", event.id, stored)

        result = self.trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_broken_chain_detected(self):
        """Test that relinking an event is reported as a chain break"""
        self.trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {})
        event = self.trail.log_event(AuditEventType.DEPOSIT, "account", "bob", {})

        stored = self.storage.load("audit_events", event.id)
        stored["previous_hash"] = "0" * 64
        self.storage.save("audit_events", event.id, stored)

        result = self.trail.verify_integrity()
        assert not result["valid"]
        assert len(result["chain_breaks"]) == 1

    def test_head_is_read_without_scanning(self):
        """Test that appending reads the chain head record, not the whole table"""
        first = self.trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {})

        with patch.object(self.storage, "load_all", side_effect=AssertionError("full scan")):
            second = self.trail.log_event(AuditEventType.WITHDRAWAL, "account", "alice", {})

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        head = self.storage.load("audit_events_head", "head")
        assert head["sequence"] == 2
        assert head["current_hash"] == second.current_hash

    def test_rolled_back_event_does_not_move_head(self):
        """Test that an event logged inside a rolled-back transaction leaves no trace"""
        first = self.trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.trail.log_event(AuditEventType.WITHDRAWAL, "account", "alice", {})
                raise RuntimeError("abort")

        after = self.trail.log_event(AuditEventType.WITHDRAWAL, "account", "alice", {})
        assert after.sequence == 2
        assert after.previous_hash == first.current_hash
        assert self.trail.verify_integrity()["valid"]

    def test_trail_without_head_record(self):
        """Test that an existing trail with no head record continues its chain"""
        first = self.trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {})
        self.storage._data["audit_events_head"].clear()

        second = self.trail.log_event(AuditEventType.DEPOSIT, "account", "bob", {})

        assert second.sequence == 2
        assert second.previous_hash == first.current_hash

    def test_queries(self):
        """Test per-entity and per-type lookups"""
        self.trail.log_event(AuditEventType.DEPOSIT, "account", "alice", {})
        self.trail.log_event(AuditEventType.DEPOSIT, "account", "bob", {})
        self.trail.log_event(AuditEventType.WITHDRAWAL, "account", "alice", {})

        alice = self.trail.get_events_for_entity("account", "alice")
        assert [e.event_type for e in alice] == [AuditEventType.DEPOSIT, AuditEventType.WITHDRAWAL]
        assert len(self.trail.get_events_for_entity("account", "alice", limit=1)) == 1
        assert len(self.trail.get_events_by_type(AuditEventType.DEPOSIT)) == 2


class TestLedgerAuditing:
    """Audit trail driven by ledger operations"""

    def test_rolled_back_operation_keeps_chain_valid(self):
        """Test that a failed withdrawal logs only the failure, chain intact"""

        class FlakyCustody(InMemoryCustodyService):
            refuse = False

            def push(self, destination, amount):
                if self.refuse:
                    return TransferResult.rejected("offline")
                return super().push(destination, amount)

        storage = InMemoryStorage()
        trail = AuditTrail(storage)
        custody = FlakyCustody()
        custody.fund("alice", 10 * E18)
        custody.approve("alice", 10 * E18)
        ledger = Ledger(custody, storage, ManualClock(), trail)

        ledger.deposit("alice", 10 * E18)
        custody.refuse = True
        with pytest.raises(TransferFailed):
            ledger.withdraw("alice", 1 * E18)
        custody.refuse = False
        ledger.withdraw("alice", 1 * E18)

        types = [e.event_type for e in trail.get_all_events()]
        assert types == [
            AuditEventType.DEPOSIT,
            AuditEventType.TRANSFER_FAILED,
            AuditEventType.WITHDRAWAL
        ]
        assert trail.verify_integrity()["valid"]
