"""Tests for the request pipeline state machine."""

from __future__ import annotations

import pytest

from src.workflow_builder.state_machine import (
    RUNNING_STATES,
    STATES,
    TERMINAL_STATES,
    TRANSITIONS,
    create_pipeline_machine,
)


class StubRun:
    """Minimal model with switchable guard results."""

    def __init__(
        self,
        *,
        fatal: bool = False,
        requirements: bool = True,
        document: bool = True,
    ) -> None:
        self.fatal = fatal
        self.requirements = requirements
        self.document = document

    def is_accepted(self, *args, **kwargs) -> bool:
        return not self.fatal

    def has_fatal_error(self, *args, **kwargs) -> bool:
        return self.fatal

    def has_requirements(self, *args, **kwargs) -> bool:
        return self.requirements

    def has_workflow_document(self, *args, **kwargs) -> bool:
        return self.document


def _machine(model: StubRun, initial: str = "init") -> StubRun:
    create_pipeline_machine(model, initial_state=initial)
    return model


class TestDefinitions:
    def test_states(self) -> None:
        assert len(STATES) == 8
        assert STATES[0] == "init"
        assert set(RUNNING_STATES) < set(STATES)
        assert set(TERMINAL_STATES) < set(STATES)

    def test_transition_count(self) -> None:
        assert len(TRANSITIONS) == 10

    def test_no_transition_leaves_a_terminal_state(self) -> None:
        for transition in TRANSITIONS:
            sources = transition["source"]
            sources = sources if isinstance(sources, list) else [sources]
            assert not set(sources) & set(TERMINAL_STATES), transition["trigger"]


class TestHappyPath:
    async def test_full_sequence(self) -> None:
        run = _machine(StubRun())
        await run.start()
        assert run.state == "requirements_running"
        await run.requirements_done()
        assert run.state == "architecture_running"
        await run.architecture_done()
        assert run.state == "synthesis_running"
        await run.synthesis_done()
        assert run.state == "validation_running"
        await run.validation_done()
        assert run.state == "classifying"
        await run.deliver()
        assert run.state == "delivered"


class TestGuards:
    async def test_rejected_request_cannot_start(self) -> None:
        run = _machine(StubRun(fatal=True))
        await run.start()
        assert run.state == "init"
        await run.reject()
        assert run.state == "classifying"

    async def test_accepted_request_cannot_be_rejected(self) -> None:
        run = _machine(StubRun())
        await run.reject()
        assert run.state == "init"

    async def test_requirements_needed_to_continue(self) -> None:
        run = _machine(StubRun(requirements=False), "requirements_running")
        await run.requirements_done()
        assert run.state == "requirements_running"

    async def test_synthesis_without_document(self) -> None:
        run = _machine(StubRun(document=False), "synthesis_running")
        await run.synthesis_done()
        assert run.state == "synthesis_running"
        await run.synthesis_failed()
        assert run.state == "classifying"

    async def test_synthesis_failed_blocked_when_document_exists(self) -> None:
        run = _machine(StubRun(), "synthesis_running")
        await run.synthesis_failed()
        assert run.state == "synthesis_running"

    @pytest.mark.parametrize("state", RUNNING_STATES)
    async def test_halt_from_running_state(self, state: str) -> None:
        run = _machine(StubRun(fatal=True), state)
        await run.halt()
        assert run.state == "classifying"

    @pytest.mark.parametrize("state", RUNNING_STATES)
    async def test_halt_requires_fatal_error(self, state: str) -> None:
        run = _machine(StubRun(), state)
        await run.halt()
        assert run.state == state


class TestTerminalStates:
    @pytest.mark.parametrize("state", ["init", "architecture_running", "classifying"])
    async def test_abort(self, state: str) -> None:
        run = _machine(StubRun(), state)
        await run.abort()
        assert run.state == "aborted"

    @pytest.mark.parametrize("state", TERMINAL_STATES)
    async def test_terminal_states_ignore_triggers(self, state: str) -> None:
        run = _machine(StubRun(fatal=True), state)
        for trigger in ("start", "reject", "halt", "deliver", "abort"):
            await getattr(run, trigger)()
        assert run.state == state

    async def test_deliver_only_from_classifying(self) -> None:
        run = _machine(StubRun(), "validation_running")
        await run.deliver()
        assert run.state == "validation_running"
