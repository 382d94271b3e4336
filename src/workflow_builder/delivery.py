"""Delivery boundary: outcome shape, artifact selection and message rendering.

The transport that actually notifies the requester is an external
collaborator implementing :class:`DeliveryChannel`.  Every generated
string placed in a rendered message is HTML-escaped, and fatal
outcomes never carry internal error text.
"""

from __future__ import annotations

import html
import json
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from src.shared.constants import (
    OUTPUT_CORRECTED_DOCUMENT,
    STAGE_ARCHITECTURE,
    STAGE_SYNTHESIS,
)
from src.workflow_builder.envelope import Envelope, to_jsonable
from src.workflow_builder.metrics import PipelineMetrics
from src.workflow_builder.models import Terminal
from src.workflow_builder.router import collect_caveats


@dataclass(frozen=True)
class DeliveryOutcome:
    """What the pipeline hands to the delivery collaborator."""

    terminal: Terminal
    envelope: Envelope
    metrics: PipelineMetrics | None = None

    @property
    def reference_id(self) -> str:
        return self.envelope.request_id


@runtime_checkable
class DeliveryChannel(Protocol):
    async def deliver(self, outcome: DeliveryOutcome) -> None:
        ...


@dataclass(frozen=True)
class Artifact:
    label: str  # "corrected_document", "workflow_document" or "architecture_outline"
    content: Any


@dataclass(frozen=True)
class DeliveryMessage:
    recipient: str
    subject: str
    html: str
    artifact: Artifact | None = None


def select_artifact(envelope: Envelope) -> Artifact | None:
    """Best available artifact: correction, then original document, then outline."""
    if envelope.has_output(OUTPUT_CORRECTED_DOCUMENT):
        return Artifact("corrected_document", envelope.output(OUTPUT_CORRECTED_DOCUMENT))
    if envelope.has_output(STAGE_SYNTHESIS):
        return Artifact("workflow_document", envelope.output(STAGE_SYNTHESIS))
    if envelope.has_output(STAGE_ARCHITECTURE):
        return Artifact("architecture_outline", envelope.output(STAGE_ARCHITECTURE))
    return None


def _artifact_html(artifact: Artifact | None) -> str:
    if artifact is None:
        return "<p>No workflow could be produced for this request.</p>"
    body = json.dumps(to_jsonable(artifact.content), indent=2, ensure_ascii=False)
    title = artifact.label.replace("_", " ").capitalize()
    return f"<h3>{html.escape(title)}</h3>\n<pre>{html.escape(body)}</pre>"


def render_delivery_message(outcome: DeliveryOutcome) -> DeliveryMessage:
    """Render the requester-facing message for *outcome*."""
    envelope = outcome.envelope
    ref = html.escape(outcome.reference_id)

    if outcome.terminal == Terminal.FATAL:
        return DeliveryMessage(
            recipient=envelope.contact_address,
            subject=f"We could not build your workflow (ref {outcome.reference_id})",
            html=(
                "<p>We were unable to process your workflow request.</p>\n"
                "<p>Please check your request and try again. If the problem "
                "persists, contact support and quote this reference:</p>\n"
                f"<p><code>{ref}</code></p>"
            ),
        )

    artifact = select_artifact(envelope)
    parts = [
        "<p>Your workflow request has been processed.</p>",
        f"<p><strong>Request:</strong> {html.escape(envelope.raw_brief)}</p>",
    ]
    subject = "Your workflow is ready"
    if outcome.terminal == Terminal.WARNING:
        subject = "Your workflow is ready (please review the notes)"
        caveats = collect_caveats(envelope)
        items = "\n".join(f"<li>{html.escape(c)}</li>" for c in caveats)
        parts.append(f"<h3>Notes</h3>\n<ul>\n{items}\n</ul>")
    parts.append(_artifact_html(artifact))
    parts.append(f"<p>Reference: <code>{ref}</code></p>")

    return DeliveryMessage(
        recipient=envelope.contact_address,
        subject=subject,
        html="\n".join(parts),
        artifact=artifact,
    )
