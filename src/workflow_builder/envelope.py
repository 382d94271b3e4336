"""Immutable request envelope threaded through every pipeline stage.

Each stage receives the envelope produced by the previous stage and
returns a *new* envelope that extends it.  Nothing is ever removed or
overwritten: ``request_id`` and ``received_at`` are fixed at creation,
``stage_outputs`` and ``errors`` only grow.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel

from src.shared.utils import atomic_write_json, utc_now
from src.workflow_builder.exceptions import EnvelopeInvariantError
from src.workflow_builder.models import ErrorRecord, Origin

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Envelope:
    """Context-preserving record for one inbound request.

    Stage payloads stored in ``stage_outputs`` are shared between
    envelope versions and must be treated as read-only.
    """

    request_id: str
    received_at: datetime
    origin: Origin
    raw_brief: str
    contact_address: str
    metadata: Mapping[str, Any] = field(default_factory=dict)
    stage_outputs: Mapping[str, Any] = field(default_factory=dict)
    errors: tuple[ErrorRecord, ...] = ()
    processing_trace: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # Freeze the mappings so callers cannot mutate them in place.
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))
        if not isinstance(self.stage_outputs, MappingProxyType):
            object.__setattr__(
                self, "stage_outputs", MappingProxyType(dict(self.stage_outputs))
            )
        object.__setattr__(self, "errors", tuple(self.errors))
        object.__setattr__(self, "processing_trace", tuple(self.processing_trace))

    # ---- Construction ----------------------------------------------------

    @classmethod
    def create(
        cls,
        origin: Origin,
        raw_brief: str,
        contact_address: str,
        metadata: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
        request_id: str | None = None,
    ) -> Envelope:
        """Create a fresh envelope with a new id and receive timestamp."""
        return cls(
            request_id=request_id or str(uuid.uuid4()),
            received_at=now or utc_now(),
            origin=origin,
            raw_brief=raw_brief,
            contact_address=contact_address,
            metadata=dict(metadata or {}),
        )

    # ---- Extension -------------------------------------------------------

    def with_output(self, key: str, value: Any) -> Envelope:
        """Return a copy with one additional stage output.

        Raises:
            EnvelopeInvariantError: *key* is already present.
        """
        if key in self.stage_outputs:
            raise EnvelopeInvariantError(
                f"Stage output '{key}' already recorded for request {self.request_id}"
            )
        outputs = dict(self.stage_outputs)
        outputs[key] = value
        return replace(self, stage_outputs=MappingProxyType(outputs))

    def with_error(self, record: ErrorRecord) -> Envelope:
        """Return a copy with *record* appended to ``errors``."""
        return replace(self, errors=self.errors + (record,))

    def with_trace(self, stage: str) -> Envelope:
        """Return a copy with *stage* appended to ``processing_trace``."""
        return replace(self, processing_trace=self.processing_trace + (stage,))

    # ---- Queries ---------------------------------------------------------

    def output(self, key: str, default: Any = None) -> Any:
        return self.stage_outputs.get(key, default)

    def has_output(self, key: str) -> bool:
        return key in self.stage_outputs

    @property
    def fatal(self) -> bool:
        """True when any accumulated error is fatal."""
        return any(record.fatal for record in self.errors)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable view used for audit snapshots and logging."""
        return {
            "request_id": self.request_id,
            "received_at": self.received_at.isoformat(),
            "origin": self.origin.value,
            "raw_brief": self.raw_brief,
            "contact_address": self.contact_address,
            "metadata": to_jsonable(dict(self.metadata)),
            "stage_outputs": {
                key: to_jsonable(value) for key, value in self.stage_outputs.items()
            },
            "errors": [record.to_dict() for record in self.errors],
            "processing_trace": list(self.processing_trace),
        }


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def assert_extends(before: Envelope, after: Envelope) -> None:
    """Check that *after* is a legal extension of *before*.

    Identity fields must be unchanged; every output, error and trace
    entry of *before* must survive in *after* unchanged and in order.

    Raises:
        EnvelopeInvariantError: Describing the first violation found.
    """
    if after.request_id != before.request_id:
        raise EnvelopeInvariantError(
            f"request_id changed from {before.request_id} to {after.request_id}"
        )
    if after.received_at != before.received_at:
        raise EnvelopeInvariantError(
            f"received_at changed for request {before.request_id}"
        )
    for key, value in before.stage_outputs.items():
        if key not in after.stage_outputs:
            raise EnvelopeInvariantError(f"Stage output '{key}' was removed")
        if after.stage_outputs[key] is not value:
            raise EnvelopeInvariantError(f"Stage output '{key}' was overwritten")
    if after.errors[: len(before.errors)] != before.errors:
        raise EnvelopeInvariantError("Accumulated errors were modified")
    if after.processing_trace[: len(before.processing_trace)] != before.processing_trace:
        raise EnvelopeInvariantError("Processing trace was modified")


def save_envelope(envelope: Envelope, directory: Path | str) -> Path:
    """Write an audit snapshot of *envelope* as ``<request_id>.json``.

    Returns:
        Path of the written file.
    """
    path = Path(directory) / f"{envelope.request_id}.json"
    atomic_write_json(path, envelope.to_dict())
    logger.debug("Saved envelope snapshot to %s", path)
    return path
