"""Helpers for structured LLM calls with validation-aware retries."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence, TypeVar

from mirascope import llm
from pydantic import BaseModel, ValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from .config import Config
from .logging_utils import debug_llm_enabled, log_error


ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(slots=True)
class ValidationFeedback:
    """Correction text for the model plus the individual issues for logging."""

    llm_text: str
    issues: Sequence[str]


def _preview(value: Any, *, limit: int = 80) -> str:
    if value is None:
        return "null"
    text = repr(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def build_validation_feedback(error: ValidationError) -> ValidationFeedback:
    """Turn a pydantic ValidationError into retry guidance for the model.

    Each issue names the field path (dot notation), the message and error
    type, and a short preview of the rejected value, so the model can fix the
    exact field instead of regenerating blindly.
    """

    issues: list[str] = []
    for err in error.errors(include_url=False):
        loc = ".".join(str(part) for part in err.get("loc", [])) or "root"
        details = f"{loc}: {err.get('msg', 'validation error')}"
        if err.get("type"):
            details += f" [type={err['type']}]"
        if "input" in err:
            details += f" | received={_preview(err['input'])}"
        issues.append(details)

    if not issues:
        issues.append("root: response did not match the expected schema")

    lines = [
        "Your previous JSON response failed to validate against the required schema.",
        "Return a corrected response that strictly matches the schema.",
        "Return only JSON, without explanations or code fences.",
        "Issues detected:",
    ]
    lines.extend(f"- {issue}" for issue in issues)
    return ValidationFeedback(llm_text="\n".join(lines), issues=issues)


def _debug_prompt(label: str, system_prompt: str, user_prompt: str) -> None:
    print(f"\n{'=' * 80}")
    print(f"[LLM {label}]")
    print(f"{'=' * 80}")
    print("[SYSTEM PROMPT]")
    print(f"{'-' * 80}")
    print(system_prompt)
    print("\n[USER PROMPT]")
    print(f"{'-' * 80}")
    print(user_prompt)
    print(f"{'=' * 80}\n")


async def call_llm_with_retries(
    *,
    system_prompt: str,
    user_prompt: str,
    llm_provider: str,
    llm_model: str,
    response_model: type[ModelT],
    max_attempts: int = 3,
    timeout: Optional[float] = None,
    feedback_builder: Callable[[ValidationError], ValidationFeedback] = build_validation_feedback,
) -> ModelT:
    """Invoke a structured LLM call, retrying only on schema validation errors.

    Validation feedback from a failed attempt is appended to the original user
    prompt so the model keeps its full context. Timeouts and provider errors
    are not retried: they propagate to the caller (the scheduler records them
    on the failed task).
    """

    system_prompt = system_prompt.strip()
    base_user_prompt = user_prompt.strip()
    deadline = timeout if timeout is not None else Config.LLM_TIMEOUT_SECONDS

    @llm.call(provider=llm_provider, model=llm_model, response_model=response_model)
    async def _invoke(prompt: str) -> str:
        return prompt

    feedback: ValidationFeedback | None = None
    attempt_number = 0

    async for attempt in AsyncRetrying(
        retry=retry_if_exception_type(ValidationError),
        stop=stop_after_attempt(max_attempts),
        reraise=True,
    ):
        with attempt:
            attempt_number += 1
            if attempt_number > 1:
                log_error(
                    f"LLM retry {attempt_number}/{max_attempts} for {response_model.__name__}; "
                    "attempting schema correction."
                )

            user_section = base_user_prompt
            if feedback is not None:
                user_section = f"{base_user_prompt}\n\n{feedback.llm_text}"
            prompt = "\n\n".join(part for part in (system_prompt, user_section) if part)

            if debug_llm_enabled():
                _debug_prompt(response_model.__name__, system_prompt, user_section)

            try:
                return await asyncio.wait_for(_invoke(prompt), timeout=deadline)
            except ValidationError as exc:
                feedback = feedback_builder(exc)
                log_error(
                    f"LLM schema validation failed for {response_model.__name__} "
                    f"(attempt {attempt_number}/{max_attempts})."
                )
                for issue in feedback.issues:
                    log_error(f"    - {issue}")
                raise
            except asyncio.TimeoutError:
                log_error(
                    f"LLM call timed out after {int(deadline)}s for {response_model.__name__}."
                )
                raise

    raise RuntimeError("LLM retry mechanism exited unexpectedly")
