"""Generic executor for one generation stage.

The executor keeps the incoming envelope as the snapshot for the whole
call: the prompt is built from it, and the merge step receives it back
together with the raw response.  Generator and parse failures become
error records on the snapshot; they never propagate.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Sequence

from src.workflow_builder.cache import ResultCache, derive_cache_key
from src.workflow_builder.config import CacheConfig, GeneratorConfig
from src.workflow_builder.envelope import Envelope, assert_extends
from src.workflow_builder.exceptions import (
    EnvelopeInvariantError,
    GenerationError,
    GenerationTimeoutError,
    PayloadParseError,
)
from src.workflow_builder.generator import TextGenerator
from src.workflow_builder.metrics import PipelineMetrics
from src.workflow_builder.models import ErrorRecord
from src.workflow_builder.payload import ParseFailed, ParseResult

logger = logging.getLogger(__name__)

PromptBuilder = Callable[[Envelope], str]
Parser = Callable[[str], ParseResult[Any]]
Merger = Callable[[Envelope, str], Envelope]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class StageDefinition:
    """Everything the executor needs to run one stage.

    Attributes:
        name: Stage name; also the ``stage_outputs`` key of the default merge.
        build_prompt: Builds the prompt from the snapshot envelope.
        parse: Turns the raw response into ``Parsed``/``ParseFailed``.
        merge: Optional custom merger ``(snapshot, raw) -> envelope``.
            It must add exactly one output and may raise
            :class:`PayloadParseError`.
        fatal_on_failure: Whether a failure of this stage is fatal.
        cache_inputs: Returns the normalised inputs that determine the
            output.  ``None`` makes the stage uncacheable.
    """

    name: str
    build_prompt: PromptBuilder
    parse: Parser
    merge: Merger | None = None
    fatal_on_failure: bool = False
    cache_inputs: Callable[[Envelope], Sequence[Any]] | None = None

    def merge_into(self, snapshot: Envelope, raw: str) -> Envelope:
        if self.merge is not None:
            return self.merge(snapshot, raw)
        result = self.parse(raw)
        if isinstance(result, ParseFailed):
            raise PayloadParseError(result.reason, stage=self.name, preview=result.preview)
        return snapshot.with_output(self.name, result.value)


class StageExecutor:
    """Runs stages against a :class:`TextGenerator` with timeouts, retries and caching."""

    def __init__(
        self,
        generator: TextGenerator,
        *,
        cache: ResultCache | None = None,
        config: GeneratorConfig | None = None,
        cache_config: CacheConfig | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._generator = generator
        self._cache = cache
        self._config = config or GeneratorConfig()
        self._cache_config = cache_config or CacheConfig()
        self._sleep = sleep

    async def execute(
        self,
        envelope: Envelope,
        stage: StageDefinition,
        metrics: PipelineMetrics | None = None,
    ) -> Envelope:
        """Run *stage* and return the extended envelope.

        Returns *envelope* unchanged when the stage already completed,
        the merged envelope (plus a trace entry) on success, or
        *envelope* plus one error record on failure.

        Raises:
            EnvelopeInvariantError: The merge step removed, overwrote or
                failed to add exactly one stage output.
        """
        if stage.name in envelope.processing_trace:
            logger.debug("Stage %s already completed, skipping", stage.name)
            if metrics is not None:
                metrics.end_stage(stage.name, "skipped")
            return envelope

        snapshot = envelope
        if metrics is not None:
            metrics.start_stage(stage.name)

        try:
            prompt = stage.build_prompt(snapshot)
            raw, cache_hit = await self._obtain(snapshot, stage, prompt, metrics)
            updated = stage.merge_into(snapshot, raw)
        except (GenerationError, PayloadParseError) as exc:
            record = ErrorRecord(
                stage=stage.name,
                kind=exc.kind,
                message=str(exc),
                fatal=stage.fatal_on_failure,
            )
            logger.warning(
                "Stage %s failed (%s, fatal=%s): %s",
                stage.name,
                exc.kind.value,
                stage.fatal_on_failure,
                exc,
            )
            if metrics is not None:
                metrics.end_stage(stage.name, "failed")
            return snapshot.with_error(record)

        _check_single_addition(snapshot, updated, stage.name)
        if metrics is not None:
            metrics.end_stage(stage.name, "ok", cache_hit=cache_hit)
        logger.info("Stage %s completed%s", stage.name, " (cached)" if cache_hit else "")
        return updated.with_trace(stage.name)

    # ---- Call ------------------------------------------------------------

    async def _obtain(
        self,
        snapshot: Envelope,
        stage: StageDefinition,
        prompt: str,
        metrics: PipelineMetrics | None,
    ) -> tuple[str, bool]:
        """Return ``(raw_response, cache_hit)``."""

        async def compute() -> str:
            raw = await self._call_with_retries(stage.name, prompt, metrics)
            # Only responses that parse are allowed into the cache.
            parsed = stage.parse(raw)
            if isinstance(parsed, ParseFailed):
                raise PayloadParseError(parsed.reason, stage=stage.name, preview=parsed.preview)
            return raw

        if not self._cacheable(stage):
            return await compute(), False

        key = derive_cache_key(stage.name, *stage.cache_inputs(snapshot))
        result = await self._cache.get_or_compute(key, self._cache_config.ttl, compute)
        if result.error is not None:
            raise result.error
        return result.value, result.hit

    def _cacheable(self, stage: StageDefinition) -> bool:
        return (
            self._cache is not None
            and self._cache_config.enabled
            and stage.cache_inputs is not None
            and stage.name in self._cache_config.stages
        )

    async def _call_with_retries(
        self, stage: str, prompt: str, metrics: PipelineMetrics | None
    ) -> str:
        timeout = self._config.timeout_for(stage)
        max_retries = max(0, self._config.max_retries)
        last_err: GenerationError | None = None

        for attempt in range(max_retries + 1):
            if metrics is not None:
                metrics.record_attempt(stage)
            try:
                return await asyncio.wait_for(
                    self._generator.generate(prompt, timeout=timeout), timeout=timeout
                )
            except asyncio.TimeoutError:
                last_err = GenerationTimeoutError(stage, timeout)
            except GenerationError as exc:
                if not exc.retryable:
                    raise
                last_err = exc
            except Exception as exc:
                last_err = GenerationError(
                    f"Generator failed: {type(exc).__name__}: {exc}", stage=stage
                )

            if attempt < max_retries:
                delay = self._config.backoff_base * (2 ** attempt)
                logger.warning(
                    "Stage %s attempt %d failed: %s -- retrying in %.1fs",
                    stage, attempt + 1, last_err, delay,
                )
                await self._sleep(delay)

        logger.error(
            "Stage %s failed after %d attempt(s): %s", stage, max_retries + 1, last_err
        )
        assert last_err is not None
        raise last_err


def _check_single_addition(before: Envelope, after: Envelope, stage: str) -> None:
    assert_extends(before, after)
    added = [key for key in after.stage_outputs if key not in before.stage_outputs]
    if len(added) != 1:
        raise EnvelopeInvariantError(
            f"Stage {stage} must add exactly one output, added {len(added)}"
        )
