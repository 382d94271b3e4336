"""Request pipeline state machine using the ``transitions`` library.

Defines 8 states and 10 transitions.  Guards read the current envelope
of the bound model; a fatal error halts the run into ``classifying``
from any running state.
"""

from __future__ import annotations

import logging
from typing import Any

from transitions.extensions.asyncio import AsyncMachine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------
RUNNING_STATES: list[str] = [
    "requirements_running",
    "architecture_running",
    "synthesis_running",
    "validation_running",
]

TERMINAL_STATES: tuple[str, ...] = ("delivered", "aborted")

# Plain names; AsyncMachine builds the AsyncState objects itself.
STATES: list[str] = [
    "init",
    *RUNNING_STATES,
    "classifying",
    "delivered",
    "aborted",
]

# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------
TRANSITIONS: list[dict[str, Any]] = [
    {
        "trigger": "start",
        "source": "init",
        "dest": "requirements_running",
        "conditions": ["is_accepted"],
    },
    {
        "trigger": "reject",
        "source": "init",
        "dest": "classifying",
        "conditions": ["has_fatal_error"],
    },
    {
        "trigger": "requirements_done",
        "source": "requirements_running",
        "dest": "architecture_running",
        "conditions": ["has_requirements"],
    },
    {
        "trigger": "architecture_done",
        "source": "architecture_running",
        "dest": "synthesis_running",
    },
    {
        "trigger": "synthesis_done",
        "source": "synthesis_running",
        "dest": "validation_running",
        "conditions": ["has_workflow_document"],
    },
    {
        "trigger": "synthesis_failed",
        "source": "synthesis_running",
        "dest": "classifying",
        "unless": ["has_workflow_document"],
    },
    {
        "trigger": "validation_done",
        "source": "validation_running",
        "dest": "classifying",
    },
    {
        "trigger": "halt",
        "source": RUNNING_STATES,
        "dest": "classifying",
        "conditions": ["has_fatal_error"],
    },
    {
        "trigger": "deliver",
        "source": "classifying",
        "dest": "delivered",
    },
    {
        "trigger": "abort",
        "source": ["init", *RUNNING_STATES, "classifying"],
        "dest": "aborted",
    },
]


def create_pipeline_machine(
    model: Any, initial_state: str = "init"
) -> AsyncMachine:
    """Create and return an ``AsyncMachine`` bound to *model*.

    The model object must implement the guard methods referenced in
    ``TRANSITIONS`` (``is_accepted``, ``has_fatal_error``,
    ``has_requirements``, ``has_workflow_document``).

    Args:
        model: The object whose state the machine manages.
        initial_state: The initial state for the machine.

    Returns:
        Configured ``AsyncMachine`` instance.
    """
    machine = AsyncMachine(
        model=model,
        states=STATES,
        transitions=TRANSITIONS,
        initial=initial_state,
        auto_transitions=False,
        send_event=True,
        queued=True,
        ignore_invalid_triggers=True,
    )
    return machine
