"""
Bounded generation retry loop.

State machine per execution:
    Sent -> ParsedValid | ParsedInvalid | Unparsable | TransportError

ParsedInvalid and Unparsable trigger one corrective retry with the
concrete errors embedded in the prompt. After that the loop terminates
without raising and keeps the best parseable attempt. TransportError
propagates from the initial call and from the retry call alike.

All attempts share one optional deadline (a `time.monotonic()` value); each
call is limited to what is left of it, so a slow retry fails as a timeout
TransportError instead of outliving the caller.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

from execution.validator import Outcome, ValidatedOutput, validate_output
from models.generation import RETRY_EXCERPT_CHARS, GenerationClient
from prompting.instructions import parse_correction, schema_correction, system_prompt_with_guard
from shared.models import SchemaValidationResult

logger = logging.getLogger(__name__)

MAX_CORRECTIVE_RETRIES = 1

AttemptCallback = Callable[[int, ValidatedOutput], Any]


@dataclass(frozen=True)
class GenerationOutcome:
    raw_text: str
    parsed: Any
    validation: SchemaValidationResult
    outcome: Outcome
    attempts: int
    model: str
    presentation: dict[str, Any] | None = None
    presentation_validation: SchemaValidationResult | None = None


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return deadline - time.monotonic()


async def _notify(callback: AttemptCallback | None, attempt: int, validated: ValidatedOutput) -> None:
    if callback is None:
        return
    maybe_result = callback(attempt, validated)
    if inspect.isawaitable(maybe_result):
        await maybe_result


def _correction_prompt(user_prompt: str, validated: ValidatedOutput) -> str:
    if validated.outcome == "unparsable":
        return parse_correction(user_prompt, validated.parse_error or "unparseable output")
    return schema_correction(user_prompt, validated.result.issues)


async def run_generation(
    client: GenerationClient,
    system_prompt: str,
    user_prompt: str,
    schema: type[BaseModel] | None,
    retry_temperature: float = 0.5,
    on_attempt: AttemptCallback | None = None,
    deadline: float | None = None,
) -> GenerationOutcome:
    """One initial call plus at most one corrective retry."""
    response = await client.generate(system_prompt, user_prompt, timeout=_remaining(deadline))
    attempts = 1
    validated = validate_output(response.text, schema)
    await _notify(on_attempt, attempts, validated)
    best = (response, validated)

    retries = 0
    while validated.outcome != "valid" and retries < MAX_CORRECTIVE_RETRIES:
        retries += 1
        logger.warning(
            "Generated output %s (attempt %d); issuing corrective retry",
            validated.outcome,
            attempts,
        )
        response = await client.generate(
            system_prompt_with_guard(system_prompt),
            _correction_prompt(user_prompt, validated),
            temperature=retry_temperature,
            excerpt_chars=RETRY_EXCERPT_CHARS,
            timeout=_remaining(deadline),
        )
        attempts += 1
        validated = validate_output(response.text, schema)
        await _notify(on_attempt, attempts, validated)
        if validated.outcome != "unparsable" or best[1].outcome == "unparsable":
            best = (response, validated)

    final_response, final = best
    if final.outcome != "valid":
        logger.warning(
            "Retry budget exhausted; keeping %s output (%d issues)",
            final.outcome,
            len(final.result.issues),
        )
    return GenerationOutcome(
        raw_text=final_response.text,
        parsed=final.parsed,
        validation=final.result,
        outcome=final.outcome,
        attempts=attempts,
        model=final_response.model,
        presentation=final.presentation,
        presentation_validation=final.presentation_result,
    )
