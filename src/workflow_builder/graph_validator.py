"""Structural validation of generated workflow documents.

Checks a :class:`WorkflowDocument` for structural problems before it is
trusted.  Uses NetworkX for the reachability traversal.  All checks run
and accumulate issues; none short-circuits the others.

Codes:

* WF-000 empty document (error)
* WF-001 duplicate step id (error)
* WF-002 step without id or kind (error)
* WF-003 edge to an unknown step (error)
* WF-004 edge from an unknown step (error)
* WF-005 step unreachable from every entry step (error)
* WF-006 dead end: no outgoing edges and not a terminal kind (warning)
* WF-007 hardcoded credential in step config (warning)
* WF-008 no entry step (error)
* WF-009 validation could not complete (error)
"""
from __future__ import annotations

import logging
from typing import Any, Iterator

import networkx as nx

from src.workflow_builder.config import ValidatorConfig
from src.workflow_builder.models import (
    IssueSeverity,
    StructuralIssue,
    StructuralReport,
    WorkflowDocument,
)

logger = logging.getLogger(__name__)

# Values that reference a credential or expression instead of embedding one
_PLACEHOLDER_PREFIXES = ("{{", "={{", "${", "$env", "={{$env")

# Step kinds that mention an entry marker but are never entry points
_NON_ENTRY_PREFIXES = ("respond",)


def validate_workflow(
    document: WorkflowDocument, config: ValidatorConfig | None = None
) -> StructuralReport:
    """Validate *document* and return every structural issue found.

    Never raises -- always returns a ``StructuralReport``.  The
    document is not modified.

    Args:
        document: The workflow document produced by the synthesis stage.
        config: Entry/terminal markers and secret-key names.

    Returns:
        Report whose ``valid`` is False when any issue has error severity.
    """
    config = config or ValidatorConfig()
    issues: list[StructuralIssue] = []

    if not document.steps:
        issues.append(StructuralIssue(
            code="WF-000",
            message="Workflow document contains no steps",
            severity=IssueSeverity.ERROR,
        ))
        return StructuralReport(issues=issues)

    try:
        _check_unique_ids(document, issues)
        _check_required_fields(document, issues)
        _check_references(document, issues)
        _check_reachability(document, config, issues)
        _check_dead_ends(document, config, issues)
        if config.check_secrets:
            _check_hardcoded_secrets(document, config, issues)
    except Exception as exc:
        logger.warning("Workflow validation encountered an error: %s", exc)
        issues.append(StructuralIssue(
            code="WF-009",
            message="Workflow validation could not complete",
            severity=IssueSeverity.ERROR,
            details={"error": type(exc).__name__},
        ))

    report = StructuralReport(issues=issues)
    logger.info(
        "Validated workflow '%s': %d step(s), %d error(s), %d warning(s)",
        document.name,
        len(document.steps),
        len(report.errors),
        len(report.warnings),
    )
    return report


# ---------------------------------------------------------------------------
# Step classification
# ---------------------------------------------------------------------------


def _kind_segment(kind: str) -> str:
    """``n8n-nodes-base.scheduleTrigger`` -> ``scheduletrigger``."""
    return kind.rsplit(".", 1)[-1].strip().lower()


def is_entry_kind(kind: str, config: ValidatorConfig) -> bool:
    segment = _kind_segment(kind)
    if not segment or segment.startswith(_NON_ENTRY_PREFIXES):
        return False
    return any(marker.lower() in segment for marker in config.entry_markers)


def is_terminal_kind(kind: str, config: ValidatorConfig) -> bool:
    segment = _kind_segment(kind)
    if not segment:
        return False
    if segment in {k.lower() for k in config.terminal_kinds}:
        return True
    return any(marker.lower() in segment for marker in config.terminal_markers)


def _known_ids(document: WorkflowDocument) -> list[str]:
    """Non-empty step ids in first-seen order, without duplicates."""
    seen: dict[str, None] = {}
    for step in document.steps:
        if step.id:
            seen.setdefault(step.id, None)
    return list(seen)


def _kind_by_id(document: WorkflowDocument) -> dict[str, str]:
    kinds: dict[str, str] = {}
    for step in document.steps:
        if step.id:
            kinds.setdefault(step.id, step.kind)
    return kinds


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _check_unique_ids(document: WorkflowDocument, issues: list[StructuralIssue]) -> None:
    """WF-001: Step id used more than once (error)."""
    first_index: dict[str, int] = {}
    for index, step in enumerate(document.steps):
        if not step.id:
            continue
        if step.id in first_index:
            original = first_index[step.id]
            issues.append(StructuralIssue(
                code="WF-001",
                message=(
                    f"Duplicate step id '{step.id}' at indices {original} and {index}"
                ),
                severity=IssueSeverity.ERROR,
                step_ids=(step.id,),
                details={"id": step.id, "indices": [original, index]},
            ))
        else:
            first_index[step.id] = index


def _check_required_fields(
    document: WorkflowDocument, issues: list[StructuralIssue]
) -> None:
    """WF-002: Step without a non-empty id or kind (error)."""
    for index, step in enumerate(document.steps):
        missing = [name for name in ("id", "kind") if not getattr(step, name).strip()]
        if missing:
            issues.append(StructuralIssue(
                code="WF-002",
                message=f"Step at index {index} is missing {' and '.join(missing)}",
                severity=IssueSeverity.ERROR,
                step_ids=(step.id,) if step.id else (),
                details={"index": index, "missing": missing},
            ))


def _check_references(document: WorkflowDocument, issues: list[StructuralIssue]) -> None:
    """WF-003 / WF-004: Edge endpoints that name no step (error)."""
    known = set(_known_ids(document))
    for source, targets in document.edges.items():
        if source not in known:
            issues.append(StructuralIssue(
                code="WF-004",
                message=f"Edges declared for unknown step '{source}'",
                severity=IssueSeverity.ERROR,
                step_ids=(source,),
                details={"source": source},
            ))
        reported: set[str] = set()
        for target in targets:
            if target in known or target in reported:
                continue
            reported.add(target)
            issues.append(StructuralIssue(
                code="WF-003",
                message=f"Step '{source}' connects to unknown step '{target}'",
                severity=IssueSeverity.ERROR,
                step_ids=(source, target),
                details={"source": source, "destination": target},
            ))


def build_graph(document: WorkflowDocument) -> nx.DiGraph:
    """Directed graph over known step ids; dangling edges are left out."""
    graph = nx.DiGraph()
    known = _known_ids(document)
    graph.add_nodes_from(known)
    known_set = set(known)
    for source, targets in document.edges.items():
        if source not in known_set:
            continue
        for target in targets:
            if target in known_set:
                graph.add_edge(source, target)
    return graph


def _check_reachability(
    document: WorkflowDocument,
    config: ValidatorConfig,
    issues: list[StructuralIssue],
) -> None:
    """WF-005 / WF-008: Steps not reachable from any entry step (error)."""
    kinds = _kind_by_id(document)
    entries = [sid for sid, kind in kinds.items() if is_entry_kind(kind, config)]
    if not entries:
        issues.append(StructuralIssue(
            code="WF-008",
            message="Workflow has no entry step (trigger, webhook, manual or schedule)",
            severity=IssueSeverity.ERROR,
        ))
        return

    graph = build_graph(document)
    reached: set[str] = set(entries)
    for entry in entries:
        reached |= nx.descendants(graph, entry)

    for sid in kinds:
        if sid not in reached:
            issues.append(StructuralIssue(
                code="WF-005",
                message=f"Step '{sid}' is not reachable from any entry step",
                severity=IssueSeverity.ERROR,
                step_ids=(sid,),
                details={"entries": entries},
            ))


def _check_dead_ends(
    document: WorkflowDocument,
    config: ValidatorConfig,
    issues: list[StructuralIssue],
) -> None:
    """WF-006: Step with no outgoing edges that is not terminal (warning)."""
    for sid, kind in _kind_by_id(document).items():
        if document.edges.get(sid):
            continue
        if is_terminal_kind(kind, config):
            continue
        issues.append(StructuralIssue(
            code="WF-006",
            message=f"Step '{sid}' ({kind or 'no kind'}) has no outgoing connections",
            severity=IssueSeverity.WARNING,
            step_ids=(sid,),
            details={"kind": kind},
        ))


def _check_hardcoded_secrets(
    document: WorkflowDocument,
    config: ValidatorConfig,
    issues: list[StructuralIssue],
) -> None:
    """WF-007: Literal credential values in step config (warning)."""
    secret_keys = {k.lower() for k in config.secret_keys}
    for step in document.steps:
        for path, value in _walk(step.config):
            key = path[-1].lower().replace("-", "_")
            if key not in secret_keys and not key.endswith(
                ("_password", "_secret", "_token", "_api_key")
            ):
                continue
            if not isinstance(value, str) or not value.strip():
                continue
            if value.strip().startswith(_PLACEHOLDER_PREFIXES) or "{{" in value:
                continue
            # The value itself is never echoed.
            issues.append(StructuralIssue(
                code="WF-007",
                message=f"Step '{step.id}' has a hardcoded credential at '{'.'.join(path)}'",
                severity=IssueSeverity.WARNING,
                step_ids=(step.id,) if step.id else (),
                details={"path": ".".join(path)},
            ))


def _walk(value: Any, path: tuple[str, ...] = ()) -> Iterator[tuple[tuple[str, ...], Any]]:
    """Yield ``(key_path, leaf)`` for every keyed leaf of nested config."""
    if isinstance(value, dict):
        for key, child in value.items():
            child_path = path + (str(key),)
            if isinstance(child, (dict, list)):
                yield from _walk(child, child_path)
            else:
                yield child_path, child
    elif isinstance(value, list):
        for index, child in enumerate(value):
            if isinstance(child, (dict, list)):
                yield from _walk(child, path + (str(index),))
