"""
Unit tests for Pydantic data models.

Tests work items, batch records, envelopes and dead-letter records for
validation and the copy-on-transition helpers.
"""

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from fhir_rag_ingestion.core.errors import TransientError
from fhir_rag_ingestion.core.models import (
    BatchRecord,
    BatchStage,
    DeadLetterRecord,
    Envelope,
    ProcessingResult,
    RejectedRecord,
    Stage,
    WorkItem,
    dead_letter_topic,
    make_correlation_id,
    topic_for,
)

ids = st.from_regex(r"^[A-Za-z0-9\-\.]{1,64}$", fullmatch=True)


def make_item(**overrides) -> WorkItem:
    fields = {
        "tenant_id": "org-acme",
        "resource_type": "Observation",
        "resource_id": "obs-0001",
        "batch_id": "batch-1",
        "payload": b'{"resourceType": "Observation", "id": "obs-0001"}',
    }
    fields.update(overrides)
    return WorkItem(**fields)


class TestCorrelationId:
    """Tests for deterministic correlation ids"""

    @given(ids, ids)
    def test_same_inputs_same_id(self, batch_id, resource_id):
        """Test that the id depends only on batch, type and resource id"""
        assert make_correlation_id(batch_id, "Patient", resource_id) == make_correlation_id(
            batch_id, "Patient", resource_id
        )

    @given(ids, ids, ids)
    def test_different_resources_different_ids(self, batch_id, first, second):
        """Test that distinct resources in one batch never share an id"""
        if first == second:
            return
        assert make_correlation_id(batch_id, "Patient", first) != make_correlation_id(batch_id, "Patient", second)

    def test_redispatch_keeps_id(self):
        """Test that copies of an item carry the same correlation id"""
        item = make_item()
        assert item.begin_stage(Stage.ENRICHING).correlation_id == item.correlation_id
        assert item.with_error(Stage.ENRICHING, TransientError("x")).correlation_id == item.correlation_id

    def test_tenant_not_part_of_id(self):
        """Test that the id is derived without the tenant"""
        assert make_item(tenant_id="org-a").correlation_id == make_item(tenant_id="org-b").correlation_id

    def test_mismatched_id_rejected(self):
        """Test that an explicit correlation id must match the item's identity"""
        with pytest.raises(ValidationError) as exc_info:
            make_item(correlation_id="not-the-right-id")
        assert "correlation_id" in str(exc_info.value)


class TestWorkItem:
    """Tests for WorkItem model"""

    def test_defaults(self):
        item = make_item()
        assert item.stage == Stage.RECEIVED
        assert item.attempt == 0
        assert item.stage_attempt == 0
        assert item.error_history == []

    def test_tenant_is_immutable(self):
        """Test that tenant_id cannot be reassigned"""
        item = make_item()
        with pytest.raises(ValidationError):
            item.tenant_id = "org-other"

    def test_empty_tenant_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            make_item(tenant_id="")
        assert "tenant_id" in str(exc_info.value)

    def test_payload_travels_as_base64(self):
        """Test that binary payloads survive JSON serialisation"""
        item = make_item(payload=b"\x00\xff raw bytes")
        restored = WorkItem.model_validate_json(item.model_dump_json())
        assert restored.payload == b"\x00\xff raw bytes"
        assert restored == item

    def test_begin_stage_from_predecessor(self):
        """Test that entering a stage from its predecessor restarts stage_attempt"""
        item = make_item(stage=Stage.CHUNKED, attempt=2, stage_attempt=3)
        claimed = item.begin_stage(Stage.ENRICHING)
        assert claimed.stage == Stage.ENRICHING
        assert claimed.attempt == 3
        assert claimed.stage_attempt == 1

    def test_begin_stage_on_retry_keeps_counting(self):
        """Test that re-entering through Failed increments stage_attempt"""
        item = make_item(stage=Stage.CHUNKED).begin_stage(Stage.ENRICHING)
        failed = item.with_error(Stage.ENRICHING, TransientError("timeout"))
        retried = failed.begin_stage(Stage.ENRICHING)
        assert retried.attempt == 2
        assert retried.stage_attempt == 2

    def test_with_error_records_history(self):
        item = make_item(stage=Stage.ENRICHING, attempt=1)
        failed = item.with_error(Stage.ENRICHING, TransientError("rate limited"))
        assert failed.stage == Stage.FAILED
        assert failed.last_active_stage == Stage.ENRICHING
        assert len(failed.error_history) == 1
        entry = failed.error_history[0]
        assert entry.kind == "transient_error"
        assert entry.message == "rate limited"
        assert entry.attempt == 1
        # Original is untouched
        assert item.error_history == []

    def test_unexpected_error_kind_is_class_name(self):
        failed = make_item(stage=Stage.STORING).with_error(Stage.STORING, KeyError("boom"))
        assert failed.error_history[0].kind == "KeyError"

    def test_copies_do_not_share_metadata(self):
        """Test that stage copies get their own metadata dictionary"""
        item = make_item(metadata={"line_number": 1})
        copy = item.with_stage(Stage.CHUNKED)
        copy.metadata["quality_score"] = 0.5
        assert "quality_score" not in item.metadata


class TestBatchRecord:
    """Tests for BatchRecord model"""

    def test_not_settled_until_total_known(self):
        batch = BatchRecord(batch_id="b1", tenant_id="org-acme", processed_count=5)
        assert batch.is_settled is False

    def test_settled_when_counts_cover_total(self):
        batch = BatchRecord(batch_id="b1", tenant_id="org-acme", total_resources=10, processed_count=9, errored_count=1)
        assert batch.is_settled is True

    def test_progress_view(self):
        batch = BatchRecord(
            batch_id="b1",
            tenant_id="org-acme",
            total_resources=10,
            processed_count=9,
            errored_count=1,
            stage=BatchStage.PARTIALLY_FAILED,
        )
        assert batch.progress() == {
            "stage": "PartiallyFailed",
            "processed_count": 9,
            "total_resources": 10,
            "errored_count": 1,
        }

    def test_negative_counter_rejected(self):
        with pytest.raises(ValidationError):
            BatchRecord(batch_id="b1", tenant_id="org-acme", processed_count=-1)


class TestRejectedRecord:
    """Tests for RejectedRecord markers"""

    def test_marker_uses_resource_identity(self):
        record = RejectedRecord(position=4, resource_type="Patient", resource_id="p1", reason="bad")
        assert record.marker == "Patient/p1"

    def test_marker_falls_back_to_position(self):
        record = RejectedRecord(position=4, reason="Invalid JSON")
        assert record.marker == "line:4"


class TestEnvelope:
    """Tests for Envelope model and topic naming"""

    def test_topics(self):
        assert topic_for(Stage.ENRICHING) == "fhir-ingest.enrichment"
        assert topic_for(Stage.STORING, prefix="test") == "test.persistence"
        assert dead_letter_topic("test.persistence") == "test.persistence.dlq"

    def test_no_topic_for_terminal_stage(self):
        with pytest.raises(ValueError):
            topic_for(Stage.COMPLETED)

    def test_json_round_trip(self):
        envelope = Envelope(topic="fhir-ingest.enrichment", target_stage=Stage.ENRICHING, item=make_item())
        restored = Envelope.from_json(envelope.to_json())
        assert restored.message_id == envelope.message_id
        assert restored.item == envelope.item
        assert restored.tenant_id == "org-acme"

    def test_each_envelope_gets_new_message_id(self):
        item = make_item()
        first = Envelope(topic="t", target_stage=Stage.ENRICHING, item=item)
        second = Envelope(topic="t", target_stage=Stage.ENRICHING, item=item)
        assert first.message_id != second.message_id
        assert first.correlation_id == second.correlation_id


class TestProcessingResult:
    def test_results_are_frozen(self):
        result = ProcessingResult(
            correlation_id="c", tenant_id="org-acme", batch_id="b1", stage=Stage.ENRICHING, success=True
        )
        with pytest.raises(ValidationError):
            result.success = False


class TestDeadLetterRecord:
    """Tests for DeadLetterRecord model"""

    def test_from_item(self):
        item = make_item(stage=Stage.ENRICHING, attempt=5).with_error(Stage.ENRICHING, TransientError("down"))
        record = DeadLetterRecord.from_item(item.with_stage(Stage.DEAD_LETTERED))
        assert record.failed_stage == Stage.ENRICHING
        assert record.attempt == 5
        assert record.last_error.message == "down"
        assert record.item.payload == item.payload
        assert record.replayed_at is None

    def test_requires_error_history(self):
        with pytest.raises(ValidationError):
            DeadLetterRecord.from_item(make_item(stage=Stage.DEAD_LETTERED))
