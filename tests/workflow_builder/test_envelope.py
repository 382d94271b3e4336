"""Tests for the immutable request envelope."""

from __future__ import annotations

import dataclasses
import json
from types import MappingProxyType

import pytest

from src.workflow_builder.envelope import Envelope, assert_extends, save_envelope
from src.workflow_builder.exceptions import EnvelopeInvariantError
from src.workflow_builder.models import ErrorKind, ErrorRecord, Origin, WorkflowDocument
from tests.workflow_builder.conftest import FIXED_NOW, VALID_DOCUMENT, make_envelope


class TestCreate:
    def test_fields_are_set(self) -> None:
        envelope = make_envelope(metadata={"subject": "Sync"})
        assert envelope.request_id == "req-0001"
        assert envelope.received_at == FIXED_NOW
        assert envelope.origin == Origin.FORM
        assert envelope.metadata["subject"] == "Sync"
        assert envelope.errors == ()
        assert envelope.processing_trace == ()

    def test_generated_ids_are_unique(self) -> None:
        first = Envelope.create(Origin.FORM, "brief text here", "a@example.com")
        second = Envelope.create(Origin.FORM, "brief text here", "a@example.com")
        assert first.request_id != second.request_id

    def test_envelope_is_frozen(self) -> None:
        envelope = make_envelope()
        with pytest.raises(dataclasses.FrozenInstanceError):
            envelope.raw_brief = "changed"  # type: ignore[misc]

    def test_mappings_are_read_only(self) -> None:
        envelope = make_envelope(metadata={"k": "v"})
        assert isinstance(envelope.metadata, MappingProxyType)
        with pytest.raises(TypeError):
            envelope.metadata["k"] = "other"  # type: ignore[index]
        with pytest.raises(TypeError):
            envelope.stage_outputs["requirements"] = {}  # type: ignore[index]

    def test_caller_metadata_is_copied(self) -> None:
        metadata = {"k": "v"}
        envelope = make_envelope(metadata=metadata)
        metadata["k"] = "mutated"
        assert envelope.metadata["k"] == "v"


class TestExtension:
    def test_with_output_returns_new_envelope(self) -> None:
        before = make_envelope()
        after = before.with_output("requirements", {"summary": "x"})
        assert not before.has_output("requirements")
        assert after.output("requirements") == {"summary": "x"}
        assert after.request_id == before.request_id
        assert after.received_at == before.received_at

    def test_duplicate_output_key_is_rejected(self) -> None:
        envelope = make_envelope().with_output("requirements", {})
        with pytest.raises(EnvelopeInvariantError, match="requirements"):
            envelope.with_output("requirements", {"other": True})

    def test_with_error_appends(self) -> None:
        first = ErrorRecord(stage="architecture", kind=ErrorKind.PARSE, message="bad")
        second = ErrorRecord(
            stage="synthesis", kind=ErrorKind.TIMEOUT, message="slow", fatal=True
        )
        envelope = make_envelope().with_error(first).with_error(second)
        assert envelope.errors == (first, second)
        assert envelope.fatal is True

    def test_non_fatal_errors_do_not_make_envelope_fatal(self) -> None:
        record = ErrorRecord(stage="architecture", kind=ErrorKind.PARSE, message="bad")
        assert make_envelope().with_error(record).fatal is False

    def test_with_trace_appends_in_order(self) -> None:
        envelope = make_envelope().with_trace("requirements").with_trace("architecture")
        assert envelope.processing_trace == ("requirements", "architecture")

    def test_output_default(self) -> None:
        assert make_envelope().output("missing", "fallback") == "fallback"


class TestAssertExtends:
    def test_accepts_legal_extension(self) -> None:
        before = make_envelope().with_output("requirements", {"a": 1})
        after = (
            before.with_output("architecture", {"b": 2})
            .with_error(ErrorRecord(stage="x", kind=ErrorKind.PARSE, message="m"))
            .with_trace("architecture")
        )
        assert_extends(before, after)

    def test_rejects_changed_request_id(self) -> None:
        before = make_envelope()
        after = dataclasses.replace(before, request_id="other")
        with pytest.raises(EnvelopeInvariantError, match="request_id"):
            assert_extends(before, after)

    def test_rejects_changed_timestamp(self) -> None:
        before = make_envelope()
        after = dataclasses.replace(before, received_at=FIXED_NOW.replace(year=2020))
        with pytest.raises(EnvelopeInvariantError, match="received_at"):
            assert_extends(before, after)

    def test_rejects_removed_output(self) -> None:
        before = make_envelope().with_output("requirements", {"a": 1})
        after = dataclasses.replace(before, stage_outputs={})
        with pytest.raises(EnvelopeInvariantError, match="removed"):
            assert_extends(before, after)

    def test_rejects_overwritten_output(self) -> None:
        before = make_envelope().with_output("requirements", {"a": 1})
        after = dataclasses.replace(before, stage_outputs={"requirements": {"a": 1}})
        with pytest.raises(EnvelopeInvariantError, match="overwritten"):
            assert_extends(before, after)

    def test_rejects_dropped_error(self) -> None:
        record = ErrorRecord(stage="x", kind=ErrorKind.PARSE, message="m")
        before = make_envelope().with_error(record)
        after = dataclasses.replace(before, errors=())
        with pytest.raises(EnvelopeInvariantError, match="errors"):
            assert_extends(before, after)

    def test_rejects_rewritten_trace(self) -> None:
        before = make_envelope().with_trace("requirements")
        after = dataclasses.replace(before, processing_trace=("architecture",))
        with pytest.raises(EnvelopeInvariantError, match="trace"):
            assert_extends(before, after)


class TestSerialisation:
    def test_to_dict_is_json_serialisable(self) -> None:
        document = WorkflowDocument.from_payload(VALID_DOCUMENT)
        envelope = (
            make_envelope()
            .with_output("synthesis", document)
            .with_error(ErrorRecord(stage="x", kind=ErrorKind.PARSE, message="m"))
            .with_trace("synthesis")
        )
        data = envelope.to_dict()
        json.dumps(data)
        assert data["origin"] == "form"
        assert data["received_at"] == FIXED_NOW.isoformat()
        assert data["stage_outputs"]["synthesis"]["steps"][0]["id"] == "trigger"
        assert data["errors"][0]["kind"] == "parse"
        assert data["processing_trace"] == ["synthesis"]

    def test_save_envelope_writes_snapshot(self, tmp_path) -> None:
        envelope = make_envelope().with_output("requirements", {"summary": "s"})
        path = save_envelope(envelope, tmp_path / "audit")
        assert path.name == "req-0001.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["request_id"] == "req-0001"
        assert data["stage_outputs"]["requirements"] == {"summary": "s"}
