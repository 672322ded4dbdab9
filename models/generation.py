"""
Model Layer: generation service client.

Responsibility:
- Call the OpenAI-compatible chat-completions endpoint (OpenRouter by default)
- Enforce a hard per-call timeout shorter than the caller's own budget
- Classify transport failures (HTTP status, HTML bodies, error payloads)

This is the ONLY place where the generation service is called.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel

from observability.logger import ExecutionTracer
from shared.config import ExecutionSettings
from shared.errors import ConfigurationError, TransportError

logger = logging.getLogger(__name__)

DEFAULT_EXCERPT_CHARS = 500
RETRY_EXCERPT_CHARS = 200

_CONTEXT_LENGTH_MARKERS = ("maximum context length", "context length", "context_length_exceeded")


class GenerationResponse(BaseModel):
    model_config = {"frozen": True}

    text: str
    model: str


def looks_like_html(body: str) -> bool:
    head = body.lstrip()[:20].lower()
    return head.startswith("<!doctype") or head.startswith("<html")


def _error_message_from_json(body: str) -> str | None:
    try:
        data = json.loads(body)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error.strip():
        return error
    if data.get("message"):
        return str(data["message"])
    return None


def classify_transport_failure(
    status_code: int,
    body: str,
    excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
) -> TransportError:
    """Map a failed or non-JSON response to a TransportError with a readable message."""
    text = body or ""
    if looks_like_html(text):
        return TransportError(
            f"Generation API error ({status_code}): the server returned an HTML error page instead of JSON.",
            kind="html_body",
            status_code=status_code,
        )

    message = _error_message_from_json(text)
    if message:
        if any(marker in message.lower() for marker in _CONTEXT_LENGTH_MARKERS):
            return TransportError(
                "The prompt exceeds the model's maximum context length. "
                "Reduce the connected knowledge items or shorten their content, then run the agent again.",
                kind="context_length",
                status_code=status_code,
                details={"providerMessage": message},
            )
        return TransportError(message, kind="http_status", status_code=status_code)

    return TransportError(
        f"Generation API error ({status_code}): {text[:excerpt_chars]}",
        kind="http_status",
        status_code=status_code,
    )


class GenerationClient:
    """Async chat-completions client with a hard timeout."""

    def __init__(self, settings: ExecutionSettings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        # Persistent client with connection pooling
        self._client = client or httpx.AsyncClient(
            base_url=settings.generation_base_url,
            timeout=httpx.Timeout(settings.generation_timeout_seconds),
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
        )
        self.tracer = ExecutionTracer(component="generation")

    def ensure_configured(self) -> None:
        if not self.settings.generation_api_key:
            raise ConfigurationError("GENERATION_API_KEY (or OPENROUTER_API_KEY) is not set.")

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.generation_api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.settings.app_url,
            "X-Title": self.settings.app_title,
        }

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        excerpt_chars: int = DEFAULT_EXCERPT_CHARS,
        timeout: float | None = None,
    ) -> GenerationResponse:
        """Single chat-completion call. Raises TransportError on any transport failure.

        `timeout` narrows the configured generation timeout for this call, e.g. to
        what is left of an execution deadline.
        """
        self.ensure_configured()
        payload: dict[str, Any] = {
            "model": self.settings.generation_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.settings.generation_temperature if temperature is None else temperature,
            "response_format": {"type": "json_object"},
        }
        timeout_seconds = self.settings.generation_timeout_seconds
        if timeout is not None:
            timeout_seconds = min(timeout_seconds, timeout)
        if timeout_seconds <= 0:
            raise TransportError("Execution deadline reached before the generation call was sent.", kind="timeout")

        with self.tracer.stage(
            "generation_call",
            {"model": self.settings.generation_model, "temperature": payload["temperature"]},
        ):
            try:
                response = await asyncio.wait_for(
                    self._client.post("/chat/completions", json=payload, headers=self._headers()),
                    timeout=timeout_seconds,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                raise TransportError(
                    f"Generation request timed out after {timeout_seconds:g}s.",
                    kind="timeout",
                ) from e
            except httpx.HTTPError as e:
                raise TransportError(f"Generation request failed: {e}", kind="network") from e

            body = response.text
            if response.status_code >= 400 or looks_like_html(body):
                error = classify_transport_failure(response.status_code, body, excerpt_chars)
                logger.warning("Generation call failed (%s): %s", error.kind, error.message)
                raise error

            try:
                data = response.json()
            except ValueError as e:
                raise classify_transport_failure(response.status_code, body, excerpt_chars) from e

        content = None
        if isinstance(data, dict):
            choices = data.get("choices") or []
            if choices and isinstance(choices[0], dict):
                content = (choices[0].get("message") or {}).get("content")
        if not isinstance(content, str):
            raise TransportError(
                "Generation response is missing choices[0].message.content.",
                kind="bad_payload",
                status_code=response.status_code,
            )
        model = str(data.get("model") or self.settings.generation_model)
        return GenerationResponse(text=content, model=model)

    async def close(self) -> None:
        await self._client.aclose()
