"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection, integrity verification,
and audit event logging.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from lending_core.storage import InMemoryStorage
from lending_core.audit import (
    AuditTrail, AuditEvent, AuditEventType
)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that metadata is stored as plain JSON values"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LOAN_ISSUED,
            entity_type="loan",
            entity_id="LOAN001",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={"principal": Decimal("1000.00"), "issued_at": now}
        )

        assert event.metadata["principal"] == "1000.00"
        assert event.metadata["issued_at"] == now.isoformat()

    def test_hash_covers_metadata(self):
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.LEDGER_ENTRY_POSTED,
            entity_type="loan",
            entity_id="LOAN001",
            sequence=1,
            previous_hash="",
            current_hash="",
            metadata={"amount": "100.00"}
        )
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.metadata["amount"] = "1.00"
        assert not event.verify_hash()


class TestAuditTrail:
    """Test the hash-chained trail"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_chain_links_events(self):
        """Test sequence numbers and hash links"""
        first = self.audit_trail.log_event(AuditEventType.SOURCE_CREATED, "capital_source", "SRC1")
        second = self.audit_trail.log_event(
            AuditEventType.LOAN_ISSUED, "loan", "LOAN1", metadata={"principal": "1000.00"}
        )

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert second.verify_hash()

    def test_verify_integrity_on_clean_chain(self):
        for number in range(5):
            self.audit_trail.log_event(AuditEventType.LEDGER_ENTRY_POSTED, "ledger_entry", f"E{number}")

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is True
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampered_metadata_detected(self):
        """Test that editing a stored event breaks its hash"""
        self.audit_trail.log_event(AuditEventType.LOAN_ISSUED, "loan", "LOAN1", metadata={"principal": "1000.00"})
        event = self.audit_trail.log_event(
            AuditEventType.LEDGER_ENTRY_POSTED, "loan", "LOAN1", metadata={"amount": "500.00"}
        )

        stored = self.storage.load(self.audit_trail.table_name, event.id)
        stored["metadata"]["amount"] = "5.00"
        self.storage.save(self.audit_trail.table_name, event.id, stored)

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is False
        assert result["hash_errors"] == [event.id]

    def test_removed_event_breaks_chain(self):
        first = self.audit_trail.log_event(AuditEventType.LOAN_ISSUED, "loan", "LOAN1")
        second = self.audit_trail.log_event(AuditEventType.LOAN_EDITED, "loan", "LOAN1")
        third = self.audit_trail.log_event(AuditEventType.LOAN_ARCHIVED, "loan", "LOAN1")

        self.storage.delete(self.audit_trail.table_name, second.id)

        result = self.audit_trail.verify_integrity()
        assert result["valid"] is False
        assert result["chain_breaks"] == [third.id]
        assert first.id not in result["chain_breaks"]

    def test_disabled_trail(self):
        trail = AuditTrail(self.storage, enabled=False)
        assert trail.log_event(AuditEventType.LOAN_ISSUED, "loan", "LOAN1") is None
        assert self.storage.count(trail.table_name) == 0

    def test_queries(self):
        """Test lookups by entity and by type"""
        self.audit_trail.log_event(AuditEventType.LOAN_ISSUED, "loan", "LOAN1")
        self.audit_trail.log_event(AuditEventType.LOAN_ISSUED, "loan", "LOAN2")
        self.audit_trail.log_event(
            AuditEventType.LOAN_ARCHIVED, "loan", "LOAN1", correlation_id="corr-1"
        )

        events = self.audit_trail.get_events_for_entity("loan", "LOAN1")
        assert [e.event_type for e in events] == [AuditEventType.LOAN_ISSUED, AuditEventType.LOAN_ARCHIVED]
        assert events[1].correlation_id == "corr-1"

        issued = self.audit_trail.get_events_by_type(AuditEventType.LOAN_ISSUED)
        assert [e.entity_id for e in issued] == ["LOAN1", "LOAN2"]

    def test_events_reloaded_intact(self):
        event = self.audit_trail.log_event(
            AuditEventType.AGREEMENT_CREATED, "agreement", "AG1", metadata={"negotiated_total": "1200.00"}
        )
        reloaded = self.audit_trail.get_events_for_entity("agreement", "AG1")[0]

        assert reloaded.current_hash == event.current_hash
        assert reloaded.verify_hash()
        assert reloaded.metadata == {"negotiated_total": "1200.00"}


@pytest.mark.parametrize("event_type", [AuditEventType.LOAN_ISSUED, AuditEventType.AGREEMENT_BROKEN])
def test_event_type_round_trips_through_storage(event_type):
    storage = InMemoryStorage()
    trail = AuditTrail(storage)
    event = trail.log_event(event_type, "loan", "LOAN1")
    assert AuditEvent.from_dict(storage.load(trail.table_name, event.id)).event_type == event_type
