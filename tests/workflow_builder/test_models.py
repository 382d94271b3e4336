"""Tests for request, document and review models."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from src.workflow_builder.models import (
    ErrorKind,
    InboundRequest,
    IssueSeverity,
    Origin,
    QualityReview,
    StructuralIssue,
    StructuralReport,
    WorkflowDocument,
    WorkflowStep,
)


class TestInboundRequest:
    def test_form_aliases(self) -> None:
        request = InboundRequest.model_validate(
            {"Client Brief": "brief text", "Your Email": "a@example.com"}
        )
        assert request.brief == "brief text"
        assert request.contact == "a@example.com"

    def test_none_fields_become_empty(self) -> None:
        request = InboundRequest.model_validate({"brief": None, "contact": None})
        assert request.brief == ""
        assert request.contact == ""

    def test_origin_is_normalised(self) -> None:
        assert InboundRequest(origin=" FORM ").origin == "form"
        assert InboundRequest(origin=Origin.MESSAGE).origin == "message"


class TestWorkflowStep:
    def test_aliases_and_coercion(self) -> None:
        step = WorkflowStep.model_validate(
            {"id": 7, "type": "httpRequest", "name": None, "parameters": None}
        )
        assert step.id == "7"
        assert step.kind == "httpRequest"
        assert step.name == ""
        assert step.config == {}

    def test_frozen(self) -> None:
        step = WorkflowStep(id="a", kind="set")
        with pytest.raises(ValidationError):
            step.id = "b"  # type: ignore[misc]


class TestWorkflowDocument:
    def test_edge_shapes_are_normalised(self) -> None:
        document = WorkflowDocument.from_payload({
            "steps": [{"id": "a", "kind": "manualTrigger"}],
            "edges": {"a": "b", "c": None},
        })
        assert document.edges == {"a": ["b"], "c": []}
        assert document.edge_count == 1
        assert document.step_ids == ["a"]

    def test_missing_edges(self) -> None:
        document = WorkflowDocument.from_payload({"steps": [], "edges": None})
        assert document.edges == {}

    def test_n8n_names_map_to_ids(self) -> None:
        document = WorkflowDocument.from_payload({
            "name": "Leads",
            "nodes": [
                {"id": "n1", "name": "Webhook", "type": "n8n-nodes-base.webhook"},
                {"id": "n2", "name": "Filter", "type": "n8n-nodes-base.if"},
                {"id": "n3", "name": "Mail", "type": "n8n-nodes-base.emailSend",
                 "parameters": {"toEmail": "x@example.com"}},
            ],
            "connections": {
                "Webhook": {"main": [[{"node": "Filter", "type": "main", "index": 0}]]},
                "Filter": {"main": [[{"node": "Mail"}], [{"node": "Missing"}]]},
            },
        })
        assert document.name == "Leads"
        assert document.step_ids == ["n1", "n2", "n3"]
        assert document.edges == {"n1": ["n2"], "n2": ["n3", "Missing"]}
        assert document.steps[2].config == {"toEmail": "x@example.com"}

    def test_nodes_without_ids_use_names(self) -> None:
        document = WorkflowDocument.from_payload({
            "nodes": [{"name": "Start", "type": "manualTrigger"}],
            "connections": {},
        })
        assert document.step_ids == ["Start"]

    @pytest.mark.parametrize(
        "payload",
        [
            ["not", "an", "object"],
            {"name": "neither shape"},
            {"nodes": "not a list"},
            {"nodes": [1, 2]},
            {"nodes": [], "connections": "not an object"},
            {"steps": "not a list"},
            {"nodes": [], "connections": {"A": {"main": 5}}},
            {"nodes": [], "connections": {"A": {"main": ["not a branch"]}}},
        ],
    )
    def test_invalid_payloads_raise_value_error(self, payload) -> None:
        with pytest.raises(ValueError):
            WorkflowDocument.from_payload(payload)

    def test_null_branches_are_skipped(self) -> None:
        document = WorkflowDocument.from_payload({
            "nodes": [{"id": "a", "name": "A", "type": "manualTrigger"}],
            "connections": {"A": {"main": None, "ai_tool": [None]}},
        })
        assert document.edges == {"a": []}

    def test_numeric_ids_and_targets_are_text(self) -> None:
        document = WorkflowDocument.from_payload({
            "steps": [
                {"id": 1, "kind": "manualTrigger"},
                {"id": 2, "kind": "set"},
                {"id": 3, "kind": "noop"},
            ],
            "edges": {"1": [2], "2": 3},
        })
        assert document.step_ids == ["1", "2", "3"]
        assert document.edges == {"1": ["2"], "2": ["3"]}


class TestQualityReview:
    def test_issue_objects_become_text(self) -> None:
        review = QualityReview.model_validate({
            "valid": True,
            "issues": [
                "plain",
                {"description": "from description"},
                {"message": "from message"},
                {"severity": "low"},
                3,
            ],
        })
        assert review.issues == [
            "plain",
            "from description",
            "from message",
            '{"severity": "low"}',
            "3",
        ]
        assert review.flagged is True

    def test_clean_review_is_not_flagged(self) -> None:
        assert QualityReview(valid=True).flagged is False

    def test_missing_valid_is_flagged(self) -> None:
        assert QualityReview().flagged is True

    @pytest.mark.parametrize(
        "key", ["corrected_document", "correctedDocument", "correctedWorkflow"]
    )
    def test_correction_aliases(self, key: str) -> None:
        review = QualityReview.model_validate({"valid": False, key: {"steps": []}})
        assert review.corrected_document == {"steps": []}


class TestStructuralReport:
    def test_warnings_keep_report_valid(self) -> None:
        warning = StructuralIssue("WF-006", "dead end", IssueSeverity.WARNING)
        error = StructuralIssue("WF-005", "unreachable", IssueSeverity.ERROR, ("c",))
        assert StructuralReport([warning]).valid is True
        report = StructuralReport([warning, error])
        assert report.valid is False
        assert report.errors == [error]
        assert report.warnings == [warning]
        assert report.to_dict()["issues"][1] == {
            "code": "WF-005",
            "kind": ErrorKind.STRUCTURAL.value,
            "message": "unreachable",
            "severity": "error",
            "step_ids": ["c"],
            "details": {},
        }
