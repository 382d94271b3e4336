"""Pipeline controller for the workflow builder.

Drives one request through normalisation, the four generation stages
and terminal classification, using the ``transitions`` state machine
from :mod:`src.workflow_builder.state_machine`.  Each phase handler
runs one stage through the :class:`StageExecutor`, replaces the run's
envelope with the extended one and fires the next trigger.

Typical usage::

    controller = create_pipeline_controller(configure_logging=True)
    outcome = await controller.process({"brief": "...", "contact": "..."})
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable

from src.shared.config import GeneratorSettings
from src.shared.constants import (
    OUTPUT_CORRECTED_DOCUMENT,
    OUTPUT_STRUCTURAL_REPORT,
    SERVICE_NAME,
    STAGE_ARCHITECTURE,
    STAGE_PIPELINE,
    STAGE_REQUIREMENTS,
    STAGE_SYNTHESIS,
    STAGE_VALIDATION,
)
from src.shared.logging import request_id_var, setup_logging
from src.workflow_builder.cache import JsonFileCacheStore, MemoryCacheStore, ResultCache
from src.workflow_builder.config import WorkflowBuilderConfig, load_builder_config
from src.workflow_builder.delivery import DeliveryChannel, DeliveryOutcome
from src.workflow_builder.display import ConsoleDelivery
from src.workflow_builder.envelope import Envelope, save_envelope
from src.workflow_builder.exceptions import (
    ConfigurationError,
    DeliveryError,
    PipelineError,
)
from src.workflow_builder.generator import HttpTextGenerator, TextGenerator
from src.workflow_builder.graph_validator import validate_workflow
from src.workflow_builder.metrics import PipelineMetrics
from src.workflow_builder.models import (
    ErrorKind,
    ErrorRecord,
    QualityReview,
    WorkflowDocument,
)
from src.workflow_builder.normalizer import normalize
from src.workflow_builder.router import classify
from src.workflow_builder.stage_executor import StageDefinition, StageExecutor
from src.workflow_builder.stages import default_stages
from src.workflow_builder.state_machine import RUNNING_STATES, create_pipeline_machine

logger = logging.getLogger(__name__)

_MAX_ITERATIONS = 20  # Safety bound; a healthy run needs at most 6


class PipelineRun:
    """Model object for the ``transitions`` async state machine.

    Holds the current envelope of one request and exposes the guard
    methods required by :data:`TRANSITIONS`.  The ``state`` attribute is
    managed by the ``AsyncMachine``.
    """

    def __init__(self, envelope: Envelope, metrics: PipelineMetrics) -> None:
        self.envelope = envelope
        self.metrics = metrics
        self.state: str = "init"

    # ---- Guard methods ---------------------------------------------------

    def is_accepted(self, *args, **kwargs) -> bool:
        """True when normalisation produced no fatal error."""
        return not self.envelope.fatal

    def has_fatal_error(self, *args, **kwargs) -> bool:
        return self.envelope.fatal

    def has_requirements(self, *args, **kwargs) -> bool:
        return self.envelope.has_output(STAGE_REQUIREMENTS)

    def has_workflow_document(self, *args, **kwargs) -> bool:
        """True when the synthesis stage produced a workflow document."""
        return isinstance(self.envelope.output(STAGE_SYNTHESIS), WorkflowDocument)


class PipelineController:
    """Processes inbound requests end to end and hands outcomes to delivery."""

    def __init__(
        self,
        generator: TextGenerator,
        delivery: DeliveryChannel,
        config: WorkflowBuilderConfig | None = None,
        cache: ResultCache | None = None,
        *,
        stages: dict[str, StageDefinition] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or WorkflowBuilderConfig()
        self._generator = generator
        self._delivery = delivery
        self._cache = cache
        self._stages = stages or default_stages()
        self._executor = StageExecutor(
            generator,
            cache=cache,
            config=self._config.generator,
            cache_config=self._config.cache,
            sleep=sleep,
        )

    @property
    def cache(self) -> ResultCache | None:
        return self._cache

    # ---- Entry points ----------------------------------------------------

    async def process(self, raw: Any) -> DeliveryOutcome:
        """Run one request through the pipeline and deliver the outcome.

        Generator, parse and unexpected internal failures are recorded on
        the envelope and end in a delivered outcome.

        Raises:
            DeliveryError: The delivery collaborator failed.
        """
        envelope, _ = normalize(raw, self._config.normalizer)
        token = request_id_var.set(envelope.request_id)
        try:
            run = PipelineRun(envelope, PipelineMetrics(request_id=envelope.request_id))
            create_pipeline_machine(run)

            try:
                await self._run_pipeline_loop(run)
            except Exception as exc:
                logger.exception("Unexpected error while processing request %s", run.envelope.request_id)
                run.envelope = run.envelope.with_error(
                    ErrorRecord(
                        stage=STAGE_PIPELINE,
                        kind=ErrorKind.INTERNAL,
                        message=f"{type(exc).__name__}: {exc}",
                        fatal=True,
                    )
                )
                if run.state in RUNNING_STATES:
                    await run.halt()  # type: ignore[attr-defined]
                elif run.state == "init":
                    await run.reject()  # type: ignore[attr-defined]

            terminal = classify(run.envelope)
            logger.info(
                "Request %s classified as %s after stages %s",
                run.envelope.request_id,
                terminal.value,
                list(run.envelope.processing_trace),
            )
            outcome = DeliveryOutcome(terminal=terminal, envelope=run.envelope, metrics=run.metrics)

            if self._config.audit_dir:
                self._save_audit(run.envelope)

            try:
                await self._delivery.deliver(outcome)
            except Exception as exc:
                logger.error("Delivery failed for request %s: %s", outcome.reference_id, exc)
                await run.abort()  # type: ignore[attr-defined]
                raise DeliveryError(outcome.reference_id) from exc
            await run.deliver()  # type: ignore[attr-defined]
            return outcome
        finally:
            request_id_var.reset(token)

    async def process_many(
        self, requests: Iterable[Any]
    ) -> list[DeliveryOutcome | BaseException]:
        """Process *requests* concurrently, at most ``max_concurrent_requests`` at a time.

        Results keep the input order.  A request whose delivery failed
        yields its :class:`DeliveryError` instead of an outcome.
        """
        semaphore = asyncio.Semaphore(self._config.max_concurrent_requests)

        async def _one(raw: Any) -> DeliveryOutcome:
            async with semaphore:
                return await self.process(raw)

        return await asyncio.gather(*(_one(raw) for raw in requests), return_exceptions=True)

    async def aclose(self) -> None:
        close = getattr(self._generator, "aclose", None)
        if close is not None:
            await close()

    # ---- Pipeline loop ---------------------------------------------------

    async def _run_pipeline_loop(self, run: PipelineRun) -> None:
        """Internal loop that drives phase transitions up to ``classifying``."""
        phase_handlers = {
            "init": self._phase_init,
            "requirements_running": self._phase_requirements,
            "architecture_running": self._phase_architecture,
            "synthesis_running": self._phase_synthesis,
            "validation_running": self._phase_validation,
        }

        for _ in range(_MAX_ITERATIONS):
            current = run.state
            if current == "classifying":
                return

            handler = phase_handlers.get(current)
            if handler is None:
                raise PipelineError(f"No handler for state '{current}'")

            await handler(run)

            if run.state == current:
                raise PipelineError(f"Pipeline made no progress in state '{current}'")

        raise PipelineError("Pipeline exceeded its iteration bound")

    async def _advance(self, run: PipelineRun, trigger: str) -> None:
        """Halt on a fatal error, otherwise fire *trigger*."""
        if run.has_fatal_error():
            logger.warning(
                "Fatal error in state '%s', halting request %s",
                run.state,
                run.envelope.request_id,
            )
            await run.halt()  # type: ignore[attr-defined]
            return
        await getattr(run, trigger)()

    # ---- Phase handlers --------------------------------------------------

    async def _phase_init(self, run: PipelineRun) -> None:
        """Handle init -> requirements_running (or -> classifying on rejection)."""
        if run.has_fatal_error():
            await run.reject()  # type: ignore[attr-defined]
        else:
            await run.start()  # type: ignore[attr-defined]

    async def _phase_requirements(self, run: PipelineRun) -> None:
        run.envelope = await self._executor.execute(
            run.envelope, self._stages[STAGE_REQUIREMENTS], run.metrics
        )
        await self._advance(run, "requirements_done")

    async def _phase_architecture(self, run: PipelineRun) -> None:
        run.envelope = await self._executor.execute(
            run.envelope, self._stages[STAGE_ARCHITECTURE], run.metrics
        )
        await self._advance(run, "architecture_done")

    async def _phase_synthesis(self, run: PipelineRun) -> None:
        run.envelope = await self._executor.execute(
            run.envelope, self._stages[STAGE_SYNTHESIS], run.metrics
        )
        if run.has_workflow_document():
            await self._advance(run, "synthesis_done")
        else:
            # Nothing to validate; classify with what we have.
            await self._advance(run, "synthesis_failed")

    async def _phase_validation(self, run: PipelineRun) -> None:
        """Structural report, then the generator review and its correction."""
        envelope = run.envelope
        document: WorkflowDocument = envelope.output(STAGE_SYNTHESIS)

        if not envelope.has_output(OUTPUT_STRUCTURAL_REPORT):
            report = validate_workflow(document, self._config.validator)
            envelope = envelope.with_output(OUTPUT_STRUCTURAL_REPORT, report)

        envelope = await self._executor.execute(
            envelope, self._stages[STAGE_VALIDATION], run.metrics
        )
        run.envelope = self._attach_correction(envelope)
        await self._advance(run, "validation_done")

    def _attach_correction(self, envelope: Envelope) -> Envelope:
        review = envelope.output(STAGE_VALIDATION)
        if not isinstance(review, QualityReview) or review.corrected_document is None:
            return envelope
        if envelope.has_output(OUTPUT_CORRECTED_DOCUMENT):
            return envelope
        try:
            corrected = WorkflowDocument.from_payload(review.corrected_document)
        except (ValueError, TypeError) as exc:
            logger.warning("Discarding malformed corrected document: %s", exc)
            return envelope.with_error(
                ErrorRecord(
                    stage=STAGE_VALIDATION,
                    kind=ErrorKind.PARSE,
                    message="Corrected workflow document is malformed",
                )
            )
        return envelope.with_output(OUTPUT_CORRECTED_DOCUMENT, corrected)

    def _save_audit(self, envelope: Envelope) -> None:
        try:
            save_envelope(envelope, self._config.audit_dir)
        except OSError as exc:
            logger.warning("Could not write audit snapshot for %s: %s", envelope.request_id, exc)


def create_pipeline_controller(
    settings: GeneratorSettings | None = None,
    config: WorkflowBuilderConfig | None = None,
    delivery: DeliveryChannel | None = None,
    generator: TextGenerator | None = None,
    configure_logging: bool = False,
) -> PipelineController:
    """Build a ready controller from environment settings and YAML config.

    Args:
        settings: Environment settings; read from the environment when omitted.
        config: Pipeline config; loaded from ``settings.config_path`` when omitted.
        delivery: Delivery channel; defaults to :class:`ConsoleDelivery`.
        generator: Generator override; defaults to :class:`HttpTextGenerator`.
        configure_logging: Install the JSON log handler.

    Raises:
        ConfigurationError: No generator was given and ``GENERATOR_API_KEY``
            is not set, or the config file is invalid.
    """
    settings = settings or GeneratorSettings()
    config = config or load_builder_config(settings.config_path)

    if configure_logging:
        setup_logging(SERVICE_NAME, settings.log_level)

    if generator is None:
        if not settings.generator_api_key:
            raise ConfigurationError("GENERATOR_API_KEY is not set")
        generator = HttpTextGenerator(
            settings.generator_api_url,
            settings.generator_model,
            settings.generator_api_key,
        )

    cache: ResultCache | None = None
    if config.cache.enabled:
        if config.cache.backend == "file":
            cache = ResultCache(JsonFileCacheStore(config.cache.directory))
        else:
            cache = ResultCache(MemoryCacheStore())

    return PipelineController(
        generator,
        delivery or ConsoleDelivery(),
        config,
        cache,
    )
