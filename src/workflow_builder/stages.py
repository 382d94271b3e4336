"""The four generation stages of the workflow builder pipeline."""

from __future__ import annotations

from typing import Any

from src.shared.constants import (
    STAGE_ARCHITECTURE,
    STAGE_REQUIREMENTS,
    STAGE_SYNTHESIS,
    STAGE_VALIDATION,
)
from src.workflow_builder.models import QualityReview, WorkflowDocument
from src.workflow_builder.payload import (
    ParseFailed,
    ParseResult,
    Parsed,
    extract_json_payload,
    parse_model,
)
from src.workflow_builder.prompts import (
    build_architecture_prompt,
    build_requirements_prompt,
    build_synthesis_prompt,
    build_validation_prompt,
)
from src.workflow_builder.stage_executor import StageDefinition


def parse_object(text: str) -> ParseResult[dict[str, Any]]:
    return extract_json_payload(text, expect=dict)


def parse_workflow_document(text: str) -> ParseResult[WorkflowDocument]:
    """Extract a :class:`WorkflowDocument` in native or n8n export shape."""
    result = extract_json_payload(text, expect=dict)
    if isinstance(result, ParseFailed):
        return result
    try:
        return Parsed(WorkflowDocument.from_payload(result.value))
    except (ValueError, TypeError) as exc:
        return ParseFailed(f"invalid workflow document: {exc}".splitlines()[0])


def parse_quality_review(text: str) -> ParseResult[QualityReview]:
    return parse_model(text, QualityReview)


REQUIREMENTS_STAGE = StageDefinition(
    name=STAGE_REQUIREMENTS,
    build_prompt=build_requirements_prompt,
    parse=parse_object,
    # Nothing downstream is meaningful without requirements.
    fatal_on_failure=True,
    cache_inputs=lambda env: (env.raw_brief,),
)

ARCHITECTURE_STAGE = StageDefinition(
    name=STAGE_ARCHITECTURE,
    build_prompt=build_architecture_prompt,
    parse=parse_object,
    cache_inputs=lambda env: (env.raw_brief, env.output(STAGE_REQUIREMENTS)),
)

SYNTHESIS_STAGE = StageDefinition(
    name=STAGE_SYNTHESIS,
    build_prompt=build_synthesis_prompt,
    parse=parse_workflow_document,
    cache_inputs=lambda env: (env.raw_brief, env.output(STAGE_ARCHITECTURE)),
)

VALIDATION_STAGE = StageDefinition(
    name=STAGE_VALIDATION,
    build_prompt=build_validation_prompt,
    parse=parse_quality_review,
    cache_inputs=lambda env: (env.raw_brief, env.output(STAGE_SYNTHESIS)),
)


def default_stages() -> dict[str, StageDefinition]:
    """Stage definitions keyed by name, in pipeline order."""
    return {
        stage.name: stage
        for stage in (
            REQUIREMENTS_STAGE,
            ARCHITECTURE_STAGE,
            SYNTHESIS_STAGE,
            VALIDATION_STAGE,
        )
    }
