"""Inbound request normalisation.

Turns a raw request from any channel into a canonical :class:`Envelope`.
Validation failures are accumulated (every field is checked) and
returned alongside an envelope that carries one fatal ``validation``
record per issue, so a failure notice can still quote a reference id.
The normaliser performs no I/O.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Mapping

from pydantic import ValidationError

from src.shared.constants import MAX_ADDRESS_LENGTH, MAX_LOCAL_PART_LENGTH, STAGE_NORMALIZE
from src.workflow_builder.config import NormalizerConfig
from src.workflow_builder.envelope import Envelope
from src.workflow_builder.exceptions import InputValidationError
from src.workflow_builder.models import (
    ErrorKind,
    ErrorRecord,
    FieldIssue,
    InboundRequest,
    Origin,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Contact address grammar (RFC 5322 dot-atom form, no quoted local parts)
# ---------------------------------------------------------------------------
_ATEXT = r"[A-Za-z0-9!#$%&'*+/=?^_`{|}~-]"
_LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
_ADDRESS_RE = re.compile(
    rf"(?P<local>{_ATEXT}+(?:\.{_ATEXT}+)*)@(?P<domain>(?:{_LABEL}\.)+[A-Za-z]{{2,63}})"
)
_INJECTION_CHARS = ("\r", "\n", "\x00")

# ---------------------------------------------------------------------------
# Brief clean-up
# ---------------------------------------------------------------------------
_BRIEF_BLOCK_RE = re.compile(r"\[BRIEF\](.*?)(?:\[END\]|\Z)", re.IGNORECASE | re.DOTALL)
_BRIEF_LABEL_RE = re.compile(r"\bBrief:(.*?)(?:\n\s*\n|\Z)", re.IGNORECASE | re.DOTALL)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE_RE = re.compile(r"\s+")

# Keys of the original form and mail channel payloads
_FORM_KEYS = ("Client Brief", "Your Email")
_MESSAGE_KEYS = ("threadId", "labelIds")


def normalize(
    raw: InboundRequest | Mapping[str, Any] | Any,
    config: NormalizerConfig | None = None,
    *,
    now: datetime | None = None,
) -> tuple[Envelope, InputValidationError | None]:
    """Validate *raw* and build the request envelope.

    Args:
        raw: An :class:`InboundRequest` or a mapping in one of the
            accepted channel shapes.
        config: Length limits and signature markers.
        now: Receive timestamp override (tests).

    Returns:
        ``(envelope, None)`` on success, ``(envelope, error)`` when any
        field failed validation.  The envelope is always returned.
    """
    config = config or NormalizerConfig()
    issues: list[FieldIssue] = []

    request = _coerce_request(raw, issues)
    metadata: dict[str, Any] = dict(request.metadata) if request else {}

    origin = Origin.PROGRAMMATIC
    if request is not None:
        try:
            origin = Origin(request.origin)
        except ValueError:
            metadata["declared_origin"] = request.origin
            issues.append(
                FieldIssue(
                    code="UNKNOWN_INPUT_SOURCE",
                    field="origin",
                    message="Unrecognised input source; expected form, message or programmatic",
                )
            )

    contact = ""
    brief = ""
    if request is not None:
        contact = _validate_contact(request.contact, issues)
        if request.subject:
            metadata.setdefault("subject", request.subject)
        brief = _clean_brief(request.brief, request.subject, origin, config, metadata)
        _validate_brief(brief, config, issues)
        if len(brief) > config.max_brief_length:
            metadata["brief_truncated"] = True
            metadata["original_brief_length"] = len(brief)
            brief = brief[: config.max_brief_length].rstrip()

    envelope = Envelope.create(
        origin=origin,
        raw_brief=brief,
        contact_address=contact,
        metadata=metadata,
        now=now,
    )

    if not issues:
        logger.info(
            "Accepted request %s (%s origin, %d chars)",
            envelope.request_id,
            origin.value,
            len(brief),
        )
        return envelope, None

    for issue in issues:
        envelope = envelope.with_error(
            ErrorRecord(
                stage=STAGE_NORMALIZE,
                kind=ErrorKind.VALIDATION,
                message=issue.message,
                fatal=True,
                code=issue.code,
            )
        )
    error = InputValidationError(issues)
    logger.warning(
        "Rejected request %s: %s", envelope.request_id, ", ".join(error.codes)
    )
    return envelope, error


# ---------------------------------------------------------------------------
# Input shapes
# ---------------------------------------------------------------------------


def _coerce_request(raw: Any, issues: list[FieldIssue]) -> InboundRequest | None:
    if isinstance(raw, InboundRequest):
        return raw
    if not isinstance(raw, Mapping):
        issues.append(
            FieldIssue(
                code="INVALID_INPUT",
                field="request",
                message="Request must be an object",
            )
        )
        return None

    data = dict(raw)
    if "origin" not in data:
        if any(key in data for key in _MESSAGE_KEYS):
            data = _from_message_payload(data)
        elif any(key in data for key in _FORM_KEYS):
            data["origin"] = Origin.FORM.value

    try:
        return InboundRequest.model_validate(data)
    except ValidationError as exc:
        for err in exc.errors():
            field_name = ".".join(str(part) for part in err.get("loc", ())) or "request"
            issues.append(
                FieldIssue(
                    code="INVALID_INPUT",
                    field=field_name,
                    message=f"Field '{field_name}' is malformed",
                )
            )
        return None


def _from_message_payload(data: dict[str, Any]) -> dict[str, Any]:
    """Map a mail-channel payload onto the inbound request fields."""
    return {
        "origin": Origin.MESSAGE.value,
        "brief": data.get("text") or data.get("snippet") or "",
        "contact": _sender_address(data.get("from")),
        "subject": data.get("subject") or None,
        "metadata": {
            "message_id": data.get("id", ""),
            "thread_id": data.get("threadId", ""),
        },
    }


def _sender_address(sender: Any) -> Any:
    """First sender address of a parsed ``from`` header.

    Accepts a plain string or ``{"value": [...]}`` whose entries are
    ``{"address": ...}`` objects or strings.  Any other shape yields an
    empty address, which then fails contact validation.
    """
    if not sender:
        return ""
    if not isinstance(sender, Mapping):
        return sender
    addresses = sender.get("value")
    if isinstance(addresses, str):
        return addresses
    if not isinstance(addresses, list) or not addresses:
        return ""
    first = addresses[0]
    if isinstance(first, Mapping):
        return first.get("address") or ""
    if isinstance(first, str):
        return first
    return ""


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------


def _validate_contact(value: str, issues: list[FieldIssue]) -> str:
    # Checked before any trimming so "a@b.c\r\nBcc: x" cannot slip through.
    if any(ch in value for ch in _INJECTION_CHARS):
        issues.append(
            FieldIssue(
                code="UNSAFE_CONTACT_ADDRESS",
                field="contact",
                message="Contact address contains control characters",
            )
        )
        return ""

    candidate = value.strip()
    match = _ADDRESS_RE.fullmatch(candidate)
    if (
        match is None
        or len(candidate) > MAX_ADDRESS_LENGTH
        or len(match.group("local")) > MAX_LOCAL_PART_LENGTH
    ):
        issues.append(
            FieldIssue(
                code="INVALID_CONTACT_ADDRESS",
                field="contact",
                message="A valid contact email address is required",
            )
        )
        return ""
    return candidate.lower()


def _validate_brief(brief: str, config: NormalizerConfig, issues: list[FieldIssue]) -> None:
    if not brief:
        issues.append(
            FieldIssue(
                code="MISSING_CLIENT_BRIEF",
                field="brief",
                message="A workflow description is required",
            )
        )
    elif len(brief) < config.min_brief_length:
        issues.append(
            FieldIssue(
                code="INVALID_BRIEF_LENGTH",
                field="brief",
                message=(
                    "The workflow description must be at least "
                    f"{config.min_brief_length} characters"
                ),
            )
        )


# ---------------------------------------------------------------------------
# Brief clean-up
# ---------------------------------------------------------------------------


def _clean_brief(
    text: str,
    subject: str | None,
    origin: Origin,
    config: NormalizerConfig,
    metadata: dict[str, Any],
) -> str:
    if origin == Origin.MESSAGE:
        extracted = _extract_brief_block(text)
        if extracted is not None:
            metadata["brief_extracted"] = True
            text = extracted

    text = _strip_signature(text, config.signature_markers)
    text = _collapse(text)

    if not text and origin == Origin.MESSAGE and subject:
        metadata["brief_from_subject"] = True
        text = _collapse(subject)
    return text


def _extract_brief_block(body: str) -> str | None:
    """Return the ``[BRIEF]...[END]`` block or ``Brief:`` paragraph, if any."""
    match = _BRIEF_BLOCK_RE.search(body)
    if match is None:
        match = _BRIEF_LABEL_RE.search(body)
    if match is None:
        return None
    return match.group(1).strip()


def _strip_signature(text: str, markers: list[str]) -> str:
    """Cut *text* at the first line (after the first) starting a signature."""
    lines = text.splitlines()
    for index, line in enumerate(lines):
        if index == 0:
            continue
        lowered = line.strip().lower()
        if not lowered:
            continue
        for marker in markers:
            marker = marker.strip().lower()
            if not marker:
                continue
            if any(ch.isalpha() for ch in marker):
                hit = lowered.startswith(marker)
            else:
                hit = lowered == marker
            if hit:
                return "\n".join(lines[:index])
    return text


def _collapse(text: str) -> str:
    text = _CONTROL_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()
