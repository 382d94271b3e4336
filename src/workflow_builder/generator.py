"""Generator interface and an HTTP client for the Gemini ``generateContent`` API.

The pipeline only depends on :class:`TextGenerator`; anything with an
``async generate(prompt, *, timeout)`` method that returns text or
raises a :class:`GenerationError` subclass can be plugged in.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from src.workflow_builder.exceptions import (
    GenerationError,
    GenerationTimeoutError,
    GeneratorReportedError,
)

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429}


@runtime_checkable
class TextGenerator(Protocol):
    """Opaque text generator: prompt in, free text out."""

    async def generate(self, prompt: str, *, timeout: float) -> str:
        ...


class HttpTextGenerator:
    """Async client for ``POST {base_url}/models/{model}:generateContent``.

    Error mapping:

    * network failures, HTTP 408/429 and 5xx -> :class:`GenerationError`
      (retryable)
    * client-side timeouts -> :class:`GenerationTimeoutError`
    * other 4xx, error payloads, blocked prompts and empty candidates ->
      :class:`GeneratorReportedError` (not retryable)
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: str,
        client: httpx.AsyncClient | None = None,
        temperature: float | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/models/{model}:generateContent"
        self._api_key = api_key
        self._model = model
        self._temperature = temperature
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    async def generate(self, prompt: str, *, timeout: float) -> str:
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
        }
        if self._temperature is not None:
            body["generationConfig"] = {"temperature": self._temperature}

        try:
            response = await self._client.post(
                self._url,
                json=body,
                headers={"x-goog-api-key": self._api_key},
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            logger.warning("Generator request to %s timed out: %s", self._model, exc)
            raise GenerationTimeoutError("generate", timeout) from exc
        except httpx.HTTPError as exc:
            logger.warning("Generator request to %s failed: %s", self._model, exc)
            raise GenerationError(f"Generator request failed: {type(exc).__name__}") from exc

        status = response.status_code
        if status in _RETRYABLE_STATUS or status >= 500:
            raise GenerationError(f"Generator returned HTTP {status}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise GeneratorReportedError(
                f"Generator returned a non-JSON body (HTTP {status})"
            ) from exc

        if status >= 400:
            raise GeneratorReportedError(
                f"Generator rejected the request (HTTP {status}): {_error_message(payload)}"
            )
        return extract_candidate_text(payload)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_message(payload: Any) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
        return str(payload["error"].get("message") or payload["error"].get("status") or "")
    return ""


def extract_candidate_text(payload: Any) -> str:
    """Join the text parts of the first candidate of a ``generateContent`` reply.

    Raises:
        GeneratorReportedError: The payload carries an error, the prompt
            was blocked, or there is no candidate text.
    """
    if not isinstance(payload, dict):
        raise GeneratorReportedError("Generator reply is not an object")
    if "error" in payload:
        raise GeneratorReportedError(
            f"Generator reported an error: {_error_message(payload) or 'unknown'}"
        )

    feedback = payload.get("promptFeedback") or {}
    candidates = payload.get("candidates") or []
    if not candidates:
        reason = feedback.get("blockReason") if isinstance(feedback, dict) else None
        if reason:
            raise GeneratorReportedError(f"Prompt blocked by generator: {reason}")
        raise GeneratorReportedError("Generator returned no candidates")

    first = candidates[0] if isinstance(candidates[0], dict) else {}
    content = first.get("content")
    parts = (content.get("parts") or []) if isinstance(content, dict) else []
    text = "".join(
        part.get("text", "") for part in parts if isinstance(part, dict)
    )
    if not text.strip():
        finish = first.get("finishReason", "unknown")
        raise GeneratorReportedError(f"Generator returned empty output (finish reason: {finish})")
    return text
