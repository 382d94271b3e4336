"""Shared fixtures for workflow builder tests."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any

import pytest

from src.shared.constants import (
    STAGE_ARCHITECTURE,
    STAGE_REQUIREMENTS,
    STAGE_SYNTHESIS,
    STAGE_VALIDATION,
)
from src.workflow_builder.config import CacheConfig, GeneratorConfig, WorkflowBuilderConfig
from src.workflow_builder.delivery import DeliveryOutcome
from src.workflow_builder.envelope import Envelope
from src.workflow_builder.models import Origin

FIXED_NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

# First line of each stage prompt identifies the stage.
_STAGE_MARKERS: dict[str, str] = {
    "automation analyst": STAGE_REQUIREMENTS,
    "workflow architect": STAGE_ARCHITECTURE,
    "workflow engineer": STAGE_SYNTHESIS,
    "QA reviewer": STAGE_VALIDATION,
}


def stage_of(prompt: str) -> str:
    first_line = prompt.splitlines()[0] if prompt else ""
    for marker, stage in _STAGE_MARKERS.items():
        if marker in first_line:
            return stage
    return "unknown"


class ScriptedGenerator:
    """Fake generator answering per stage from a script.

    Each script entry is a string, an exception instance, or a list of
    those consumed one per call (the last entry repeats).
    """

    def __init__(self, script: dict[str, Any], delay: float = 0.0) -> None:
        self.script = dict(script)
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self._cursor: dict[str, int] = {}

    @property
    def stages_called(self) -> list[str]:
        return [stage for stage, _ in self.calls]

    async def generate(self, prompt: str, *, timeout: float) -> str:
        stage = stage_of(prompt)
        self.calls.append((stage, prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        entry = self.script.get(stage)
        if isinstance(entry, list):
            index = self._cursor.get(stage, 0)
            self._cursor[stage] = index + 1
            entry = entry[min(index, len(entry) - 1)]
        if isinstance(entry, BaseException):
            raise entry
        if entry is None:
            raise AssertionError(f"No scripted response for stage '{stage}'")
        return entry


class RecordingDelivery:
    """Delivery channel that keeps every outcome it receives."""

    def __init__(self, fail_with: Exception | None = None) -> None:
        self.outcomes: list[DeliveryOutcome] = []
        self.fail_with = fail_with

    async def deliver(self, outcome: DeliveryOutcome) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.outcomes.append(outcome)


async def no_sleep(delay: float) -> None:
    return None


def fenced(payload: Any) -> str:
    """Wrap a payload the way generators usually return it."""
    return f"Here is the result:\n```json\n{json.dumps(payload)}\n```\n"


def make_envelope(**overrides: Any) -> Envelope:
    values: dict[str, Any] = {
        "origin": Origin.FORM,
        "raw_brief": "Sync contacts from CRM A to CRM B nightly",
        "contact_address": "owner@example.com",
        "now": FIXED_NOW,
        "request_id": "req-0001",
    }
    values.update(overrides)
    return Envelope.create(**values)


# ---------------------------------------------------------------------------
# Payload fixtures
# ---------------------------------------------------------------------------

REQUIREMENTS_PAYLOAD: dict[str, Any] = {
    "summary": "Nightly contact sync between two CRMs",
    "trigger": "schedule",
    "inputs": ["CRM A contacts"],
    "outputs": ["CRM B contacts"],
    "integrations": ["CRM A", "CRM B"],
    "steps": ["fetch", "transform", "upsert"],
}

ARCHITECTURE_PAYLOAD: dict[str, Any] = {
    "name": "CRM contact sync",
    "trigger": "schedule",
    "steps": [
        {"name": "Nightly", "kind": "scheduleTrigger", "purpose": "start"},
        {"name": "Fetch", "kind": "httpRequest", "purpose": "read CRM A"},
        {"name": "Upsert", "kind": "crmUpsert", "purpose": "write CRM B"},
    ],
    "integrations": ["CRM A", "CRM B"],
    "notes": "",
}

VALID_DOCUMENT: dict[str, Any] = {
    "name": "CRM contact sync",
    "steps": [
        {"id": "trigger", "kind": "scheduleTrigger", "name": "Nightly", "config": {"hour": 2}},
        {"id": "fetch", "kind": "httpRequest", "name": "Fetch contacts", "config": {}},
        {"id": "map", "kind": "set", "name": "Map fields", "config": {}},
        {"id": "upsert", "kind": "crmUpsert", "name": "Upsert contacts", "config": {}},
    ],
    "edges": {"trigger": ["fetch"], "fetch": ["map"], "map": ["upsert"]},
}

ORPHAN_DOCUMENT: dict[str, Any] = {
    "name": "CRM contact sync",
    "steps": [
        {"id": "trigger", "kind": "scheduleTrigger", "name": "Nightly"},
        {"id": "upsert", "kind": "crmUpsert", "name": "Upsert contacts"},
        {"id": "audit", "kind": "emailSend", "name": "Audit mail"},
    ],
    "edges": {"trigger": ["upsert"]},
}

REVIEW_OK: dict[str, Any] = {
    "valid": True,
    "confidence": 0.93,
    "summary": "Workflow matches the brief",
    "issues": [],
    "corrected_document": None,
}


def happy_script() -> dict[str, Any]:
    return {
        STAGE_REQUIREMENTS: fenced(REQUIREMENTS_PAYLOAD),
        STAGE_ARCHITECTURE: fenced(ARCHITECTURE_PAYLOAD),
        STAGE_SYNTHESIS: fenced(VALID_DOCUMENT),
        STAGE_VALIDATION: fenced(REVIEW_OK),
    }


@pytest.fixture
def builder_config() -> WorkflowBuilderConfig:
    """Config with fast retries and caching of the first three stages."""
    return WorkflowBuilderConfig(
        generator=GeneratorConfig(timeout=2.0, max_retries=2, backoff_base=0.0),
        cache=CacheConfig(enabled=True, ttl=60.0),
    )


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def valid_request() -> dict[str, Any]:
    return {
        "brief": "Sync contacts from CRM A to CRM B nightly",
        "contact": "Owner@Example.com",
        "origin": "form",
    }
