"""Bounded LLM calls for the extraction engines: retry with backoff inside a hard timeout."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass

from app.errors import ExtractionFailure
from app.services.llm_provider import LLMProvider
from app.services.utils import parse_json_response

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    initial_delay_seconds: float
    max_delay_seconds: float
    timeout_seconds: float


async def _attempts(
    provider: LLMProvider,
    prompt: str,
    gen_kwargs: dict,
    policy: RetryPolicy,
    label: str,
    state: dict,
) -> dict:
    delay = policy.initial_delay_seconds
    last_error: Exception | None = None
    for attempt in range(policy.max_retries + 1):
        state["attempts"] = attempt + 1
        try:
            raw = await provider.generate(prompt, **gen_kwargs)
            return parse_json_response(raw)
        except (json.JSONDecodeError, ValueError) as e:
            last_error = e
            state["error_type"] = "json_parse_error"
        except Exception as e:
            last_error = e
            state["error_type"] = "llm_failure"
        logger.warning("%s attempt %d/%d failed: %s", label, attempt + 1, policy.max_retries + 1, last_error)
        if attempt < policy.max_retries:
            await asyncio.sleep(delay)
            delay = min(delay * 2, policy.max_delay_seconds)
    raise last_error if last_error else RuntimeError(f"{label}: no attempts made")


async def generate_json(
    provider: LLMProvider,
    prompt: str,
    gen_kwargs: dict,
    policy: RetryPolicy,
    label: str = "llm",
) -> dict:
    """
    Call the provider until it returns parseable JSON, or fail.

    Raises ExtractionFailure (error_type timeout / llm_failure / json_parse_error)
    with the attempt count in details. Never returns partial state.
    """
    state: dict = {"attempts": 0, "error_type": "llm_failure"}
    try:
        return await asyncio.wait_for(
            _attempts(provider, prompt, gen_kwargs, policy, label, state),
            timeout=policy.timeout_seconds,
        )
    except asyncio.TimeoutError:
        raise ExtractionFailure(
            f"Timed out after {policy.timeout_seconds:g}s",
            error_type="timeout",
            details={"attempts": state["attempts"], "timeout_seconds": policy.timeout_seconds},
        )
    except ExtractionFailure:
        raise
    except Exception as e:
        error_type = state["error_type"]
        prefix = "Could not parse model response" if error_type == "json_parse_error" else "Model call failed"
        raise ExtractionFailure(
            f"{prefix}: {e}",
            error_type=error_type,
            details={"attempts": state["attempts"]},
        ) from e
