"""Data models for the workflow builder.

Plain dataclasses are used for records the pipeline produces itself
(error records, structural issues); Pydantic v2 models are used for
anything parsed from outside the process (inbound requests and
generator payloads), so malformed input surfaces as a validation error
instead of an attribute error deep inside a stage.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator


class Origin(str, Enum):
    """Channel an inbound request arrived on."""
    FORM = "form"
    MESSAGE = "message"
    PROGRAMMATIC = "programmatic"


class Terminal(str, Enum):
    """Terminal classification of a processed request."""
    SUCCESS = "success"
    WARNING = "warning"
    FATAL = "fatal"


class ErrorKind(str, Enum):
    """Classification of an accumulated error record."""
    VALIDATION = "validation"
    GENERATION = "generation"
    TIMEOUT = "timeout"
    GENERATOR_FAILURE = "generator_failure"
    PARSE = "parse"
    STRUCTURAL = "structural"
    INTERNAL = "internal"


class IssueSeverity(str, Enum):
    """Severity of a structural finding."""
    ERROR = "error"
    WARNING = "warning"


# ---------------------------------------------------------------------------
# Pipeline-produced records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorRecord:
    """One accumulated failure.  Records are only ever appended."""
    stage: str
    kind: ErrorKind
    message: str
    fatal: bool = False
    code: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "kind": self.kind.value,
            "message": self.message,
            "fatal": self.fatal,
            "code": self.code,
        }


@dataclass(frozen=True)
class FieldIssue:
    """A single inbound-request validation failure."""
    code: str  # e.g. "INVALID_CONTACT_ADDRESS"
    field: str
    message: str


@dataclass(frozen=True)
class StructuralIssue:
    """A single structural finding in a workflow document."""

    code: str  # e.g. "WF-003"
    message: str
    severity: IssueSeverity
    step_ids: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind.STRUCTURAL

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "step_ids": list(self.step_ids),
            "details": dict(self.details),
        }


@dataclass
class StructuralReport:
    """Result of validating a workflow document.

    The report is additive evidence only; it never carries or modifies
    the document it describes.
    """

    issues: list[StructuralIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        """True only when no issue has error severity."""
        return not self.errors

    @property
    def errors(self) -> list[StructuralIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.ERROR]

    @property
    def warnings(self) -> list[StructuralIssue]:
        return [i for i in self.issues if i.severity == IssueSeverity.WARNING]

    def codes(self) -> list[str]:
        return [i.code for i in self.issues]

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "issues": [i.to_dict() for i in self.issues],
        }


# ---------------------------------------------------------------------------
# Inbound request
# ---------------------------------------------------------------------------


class InboundRequest(BaseModel):
    """Raw request as handed over by a channel collaborator."""
    brief: str = Field(
        default="", validation_alias=AliasChoices("brief", "Client Brief")
    )
    contact: str = Field(
        default="", validation_alias=AliasChoices("contact", "Your Email", "email")
    )
    origin: str = Origin.PROGRAMMATIC.value
    subject: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("brief", "contact", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("origin", mode="before")
    @classmethod
    def _normalise_origin(cls, value: Any) -> Any:
        if isinstance(value, Origin):
            return value.value
        if isinstance(value, str):
            return value.strip().lower()
        return value


# ---------------------------------------------------------------------------
# Workflow document
# ---------------------------------------------------------------------------


class WorkflowStep(BaseModel):
    """One typed step of a generated workflow."""
    id: str = ""
    kind: str = Field(default="", validation_alias=AliasChoices("kind", "type"))
    name: str = ""
    config: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("config", "parameters")
    )

    model_config = {"populate_by_name": True, "extra": "ignore", "frozen": True}

    @field_validator("id", "kind", "name", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("config", mode="before")
    @classmethod
    def _none_to_dict(cls, value: Any) -> Any:
        return {} if value is None else value


class WorkflowDocument(BaseModel):
    """Directed graph of steps produced by the synthesis stage.

    ``steps`` keeps generator order so duplicate ids can be reported by
    index.  ``edges`` maps a source step id to an ordered list of
    destination ids; parallel branches are simply multiple destinations.
    """
    name: str = ""
    steps: list[WorkflowStep] = Field(default_factory=list)
    edges: dict[str, list[str]] = Field(default_factory=dict)

    model_config = {"extra": "ignore", "frozen": True}

    @field_validator("name", mode="before")
    @classmethod
    def _none_name(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("edges", mode="before")
    @classmethod
    def _normalise_edges(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            return value
        normalised: dict[str, Any] = {}
        for source, targets in value.items():
            if targets is None:
                normalised[str(source)] = []
            elif isinstance(targets, (str, int, float)) and not isinstance(targets, bool):
                normalised[str(source)] = [str(targets)]
            elif isinstance(targets, list):
                # Numeric ids are coerced the same way step ids are
                normalised[str(source)] = [
                    str(t) if isinstance(t, (int, float)) and not isinstance(t, bool) else t
                    for t in targets
                ]
            else:
                normalised[str(source)] = targets
        return normalised

    @property
    def step_ids(self) -> list[str]:
        return [s.id for s in self.steps]

    @property
    def edge_count(self) -> int:
        return sum(len(targets) for targets in self.edges.values())

    @classmethod
    def from_payload(cls, data: Any) -> WorkflowDocument:
        """Build a document from a parsed generator payload.

        Accepts the native ``steps``/``edges`` shape and the n8n export
        shape (``nodes``/``connections``).

        Raises:
            ValueError: The payload matches neither shape or fails
                schema validation (``pydantic.ValidationError`` is a
                ``ValueError``).
        """
        if isinstance(data, WorkflowDocument):
            return data
        if not isinstance(data, dict):
            raise ValueError("workflow payload must be a JSON object")
        if "steps" in data:
            return cls.model_validate(data)
        if "nodes" in data:
            return cls.model_validate(_from_n8n_export(data))
        raise ValueError("workflow payload has neither 'steps' nor 'nodes'")


def _from_n8n_export(data: dict[str, Any]) -> dict[str, Any]:
    """Convert an n8n ``nodes``/``connections`` export to the native shape.

    n8n keys connections by node *name*; names are mapped back to node
    ids.  Names that match no node are kept verbatim so the validator
    reports them as dangling references.
    """
    nodes = data.get("nodes")
    if not isinstance(nodes, list):
        raise ValueError("'nodes' must be a list")

    name_to_id: dict[str, str] = {}
    steps: list[dict[str, Any]] = []
    for node in nodes:
        if not isinstance(node, dict):
            raise ValueError("every entry of 'nodes' must be an object")
        name = node.get("name") or ""
        node_id = node.get("id") or name
        if name:
            name_to_id.setdefault(str(name), str(node_id))
        steps.append({
            "id": node_id,
            "kind": node.get("type", ""),
            "name": name,
            "config": node.get("parameters") or {},
        })

    connections = data.get("connections") or {}
    if not isinstance(connections, dict):
        raise ValueError("'connections' must be an object")

    edges: dict[str, list[str]] = {}
    for source_name, outputs in connections.items():
        source_id = name_to_id.get(source_name, source_name)
        targets = edges.setdefault(source_id, [])
        if not isinstance(outputs, dict):
            continue
        # "main", "ai_tool", ... each hold a list of output branches
        for branches in outputs.values():
            if branches is None:
                continue
            if not isinstance(branches, list):
                raise ValueError(f"connections of '{source_name}' must be lists of branches")
            for branch in branches:
                if branch is None:
                    continue
                if not isinstance(branch, list):
                    raise ValueError(f"a branch of '{source_name}' must be a list")
                for conn in branch:
                    if isinstance(conn, dict) and conn.get("node"):
                        target = str(conn["node"])
                        targets.append(name_to_id.get(target, target))

    return {"name": data.get("name") or "", "steps": steps, "edges": edges}


class QualityReview(BaseModel):
    """Review returned by the validation stage generator."""
    valid: bool = False
    confidence: float | None = None
    summary: str = ""
    issues: list[str] = Field(default_factory=list)
    corrected_document: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "corrected_document", "correctedDocument", "correctedWorkflow"
        ),
    )

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("issues", mode="before")
    @classmethod
    def _issues_to_text(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        texts: list[str] = []
        for item in value:
            if isinstance(item, str):
                texts.append(item)
            elif isinstance(item, dict):
                text = item.get("description") or item.get("message")
                texts.append(str(text) if text else json.dumps(item, sort_keys=True))
            else:
                texts.append(str(item))
        return texts

    @property
    def flagged(self) -> bool:
        """True when the reviewer rejected the document or listed issues."""
        return not self.valid or bool(self.issues)
