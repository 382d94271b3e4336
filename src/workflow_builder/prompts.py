"""Prompt builders for the four generation stages.

Each builder receives the full envelope and reads earlier stage outputs
from it directly.  The knowledge base below is injected into the
synthesis and validation prompts.
"""

from __future__ import annotations

import json
from typing import Any

from src.shared.constants import (
    STAGE_ARCHITECTURE,
    STAGE_REQUIREMENTS,
    STAGE_SYNTHESIS,
)
from src.workflow_builder.envelope import Envelope, to_jsonable

# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------
VALIDATION_RULES: list[dict[str, str]] = [
    {"id": "unique-step-ids", "description": "All step ids must be unique"},
    {
        "id": "valid-connections",
        "description": "All edges must reference existing step ids",
    },
    {
        "id": "reachable-steps",
        "description": "Every step must be reachable from a trigger step",
    },
    {
        "id": "no-hardcoded-credentials",
        "description": "No hardcoded API keys, tokens or passwords in step config",
    },
    {
        "id": "required-step-fields",
        "description": "Every step must have an id, a kind and a name",
    },
]

BEST_PRACTICES: dict[str, list[str]] = {
    "Error Handling": [
        "Continue on failure for HTTP steps and route errors to a handler branch",
        "Add error handler steps for critical paths",
        "Log errors for debugging",
    ],
    "Code Steps": [
        "Validate input data before processing",
        "Wrap logic in error handling",
    ],
    "HTTP Requests": [
        "Include proper headers",
        "Handle rate limiting",
        "Use credential references for authentication",
    ],
    "Security": [
        "Store credentials in the credential manager, never in step config",
        "Sanitize user inputs",
        "Escape HTML output",
    ],
}

STEP_PATTERNS: list[dict[str, Any]] = [
    {
        "name": "Webhook Response",
        "steps": ["Webhook", "Process Data", "Respond to Webhook"],
    },
    {
        "name": "API Integration",
        "steps": ["HTTP Request", "Transform Data", "Error Handler"],
    },
    {
        "name": "Scheduled Task",
        "steps": ["Schedule Trigger", "Fetch Data", "Process", "Store/Send"],
    },
]

_WORKFLOW_SHAPE = (
    '{"name": str, "steps": [{"id": str, "kind": str, "name": str, '
    '"config": object}], "edges": {"<source step id>": ["<destination step id>"]}}'
)


def _dump(value: Any) -> str:
    return json.dumps(to_jsonable(value), indent=2, sort_keys=True, ensure_ascii=False)


def knowledge_base_text() -> str:
    lines = ["Validation rules:"]
    lines += [f"- {rule['description']}" for rule in VALIDATION_RULES]
    lines.append("Best practices:")
    for category, practices in BEST_PRACTICES.items():
        lines.append(f"- {category}: " + "; ".join(practices))
    lines.append("Common patterns:")
    lines += [f"- {p['name']}: " + " -> ".join(p["steps"]) for p in STEP_PATTERNS]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Stage prompts
# ---------------------------------------------------------------------------


def build_requirements_prompt(envelope: Envelope) -> str:
    return "\n".join([
        "You are an automation analyst. Extract the requirements of the",
        "automation described in the client brief below.",
        "Respond with a single JSON object with the keys: summary (str),",
        "trigger (str), inputs (list of str), outputs (list of str),",
        "integrations (list of str), steps (list of str).",
        "",
        "Client brief:",
        envelope.raw_brief,
    ])


def build_architecture_prompt(envelope: Envelope) -> str:
    return "\n".join([
        "You are a workflow architect. Design the workflow that satisfies",
        "the requirements below. Respond with a single JSON object with the",
        "keys: name (str), trigger (str), steps (list of objects with name,",
        "kind and purpose), integrations (list of str), notes (str).",
        "",
        "Client brief:",
        envelope.raw_brief,
        "",
        "Requirements:",
        _dump(envelope.output(STAGE_REQUIREMENTS, {})),
    ])


def build_synthesis_prompt(envelope: Envelope) -> str:
    return "\n".join([
        "You are a workflow engineer. Produce the complete workflow document",
        "for the architecture below. Start with exactly one trigger step and",
        "connect every step. Respond with a single JSON object of the shape:",
        _WORKFLOW_SHAPE,
        "",
        knowledge_base_text(),
        "",
        "Client brief:",
        envelope.raw_brief,
        "",
        "Architecture:",
        _dump(envelope.output(STAGE_ARCHITECTURE, {})),
    ])


def build_validation_prompt(envelope: Envelope) -> str:
    return "\n".join([
        "You are a workflow QA reviewer. Review the workflow document below",
        "against the client brief and the rules. Respond with a single JSON",
        "object with the keys: valid (bool), confidence (number 0-1),",
        "summary (str), issues (list of str) and corrected_document (a full",
        "corrected workflow document of the same shape, or null when no",
        "correction is needed).",
        "",
        knowledge_base_text(),
        "",
        "Client brief:",
        envelope.raw_brief,
        "",
        "Workflow document:",
        _dump(envelope.output(STAGE_SYNTHESIS, {})),
    ])
