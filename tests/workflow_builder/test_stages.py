"""Tests for stage definitions, parsers and prompt builders."""

from __future__ import annotations

from src.shared.constants import (
    ALL_STAGES,
    STAGE_ARCHITECTURE,
    STAGE_REQUIREMENTS,
    STAGE_SYNTHESIS,
)
from src.workflow_builder.models import QualityReview, WorkflowDocument
from src.workflow_builder.payload import ParseFailed, Parsed
from src.workflow_builder.prompts import (
    build_architecture_prompt,
    build_requirements_prompt,
    build_synthesis_prompt,
    build_validation_prompt,
    knowledge_base_text,
)
from src.workflow_builder.stages import (
    default_stages,
    parse_quality_review,
    parse_workflow_document,
)
from tests.workflow_builder.conftest import (
    ARCHITECTURE_PAYLOAD,
    REQUIREMENTS_PAYLOAD,
    VALID_DOCUMENT,
    fenced,
    make_envelope,
    stage_of,
)


class TestDefaultStages:
    def test_order_and_names(self) -> None:
        assert list(default_stages()) == ALL_STAGES

    def test_only_requirements_is_fatal(self) -> None:
        fatal = [name for name, stage in default_stages().items() if stage.fatal_on_failure]
        assert fatal == [STAGE_REQUIREMENTS]

    def test_cache_inputs_exclude_volatile_fields(self) -> None:
        stages = default_stages()
        first = make_envelope(request_id="a").with_output(
            STAGE_REQUIREMENTS, REQUIREMENTS_PAYLOAD
        )
        second = make_envelope(request_id="b", metadata={"subject": "x"}).with_output(
            STAGE_REQUIREMENTS, REQUIREMENTS_PAYLOAD
        )
        for stage in stages.values():
            assert stage.cache_inputs(first) == stage.cache_inputs(second)


class TestParsers:
    def test_workflow_document(self) -> None:
        result = parse_workflow_document(fenced(VALID_DOCUMENT))
        assert isinstance(result, Parsed)
        assert isinstance(result.value, WorkflowDocument)
        assert result.value.step_ids == ["trigger", "fetch", "map", "upsert"]

    def test_workflow_document_wrong_shape(self) -> None:
        result = parse_workflow_document(fenced({"workflow": {}}))
        assert isinstance(result, ParseFailed)
        assert result.reason.startswith("invalid workflow document")

    def test_workflow_document_malformed_connections(self) -> None:
        payload = {
            "nodes": [{"id": "t", "name": "Trigger", "type": "scheduleTrigger"}],
            "connections": {"Trigger": {"main": 5}},
        }
        result = parse_workflow_document(fenced(payload))
        assert isinstance(result, ParseFailed)
        assert result.reason.startswith("invalid workflow document")

    def test_workflow_document_numeric_ids(self) -> None:
        payload = {
            "steps": [
                {"id": 1, "kind": "scheduleTrigger"},
                {"id": 2, "kind": "crmUpsert"},
            ],
            "edges": {"1": [2]},
        }
        result = parse_workflow_document(fenced(payload))
        assert isinstance(result, Parsed)
        assert result.value.edges == {"1": ["2"]}

    def test_workflow_document_reason_is_single_line(self) -> None:
        result = parse_workflow_document(fenced({"steps": [{"id": ["bad"]}]}))
        assert isinstance(result, ParseFailed)
        assert "\n" not in result.reason

    def test_quality_review(self) -> None:
        result = parse_quality_review('{"valid": true, "confidence": 0.8}')
        assert isinstance(result, Parsed)
        assert isinstance(result.value, QualityReview)
        assert result.value.confidence == 0.8


class TestPrompts:
    def test_requirements_prompt_holds_brief(self) -> None:
        envelope = make_envelope()
        prompt = build_requirements_prompt(envelope)
        assert stage_of(prompt) == STAGE_REQUIREMENTS
        assert envelope.raw_brief in prompt

    def test_architecture_prompt_holds_requirements(self) -> None:
        envelope = make_envelope().with_output(STAGE_REQUIREMENTS, REQUIREMENTS_PAYLOAD)
        prompt = build_architecture_prompt(envelope)
        assert REQUIREMENTS_PAYLOAD["summary"] in prompt

    def test_synthesis_prompt_holds_architecture_and_rules(self) -> None:
        envelope = make_envelope().with_output(STAGE_ARCHITECTURE, ARCHITECTURE_PAYLOAD)
        prompt = build_synthesis_prompt(envelope)
        assert stage_of(prompt) == STAGE_SYNTHESIS
        assert ARCHITECTURE_PAYLOAD["name"] in prompt
        assert "All step ids must be unique" in prompt

    def test_validation_prompt_serialises_document(self) -> None:
        envelope = make_envelope().with_output(
            STAGE_SYNTHESIS, WorkflowDocument.from_payload(VALID_DOCUMENT)
        )
        prompt = build_validation_prompt(envelope)
        assert '"upsert"' in prompt
        assert "corrected_document" in prompt

    def test_prompts_tolerate_missing_outputs(self) -> None:
        envelope = make_envelope()
        for builder in (build_architecture_prompt, build_synthesis_prompt, build_validation_prompt):
            assert "{}" in builder(envelope)

    def test_knowledge_base_sections(self) -> None:
        text = knowledge_base_text()
        assert text.startswith("Validation rules:")
        assert "Best practices:" in text
        assert "Schedule Trigger -> Fetch Data" in text
