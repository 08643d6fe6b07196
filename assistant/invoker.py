"""Timeout-bounded, retrying invocation of external service calls."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from assistant.errors import ConfigurationError
from assistant.llm import ApiError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    API = "api"
    OTHER = "other"


@dataclass
class RetryState:
    attempts_remaining: int
    timeout_seconds: float
    last_failure: FailureKind | None = None


def classify_failure(exc: BaseException) -> FailureKind:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return FailureKind.TIMEOUT
    if isinstance(exc, ApiError):
        return FailureKind.API
    return FailureKind.OTHER


def _describe(exc: BaseException, kind: FailureKind) -> str:
    if kind == FailureKind.TIMEOUT:
        return "timed out"
    if isinstance(exc, ApiError):
        return f"API error status={exc.status} code={exc.code} type={exc.kind}"
    return f"{type(exc).__name__}: {exc}"


async def invoke_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float,
    max_attempts: int,
    label: str,
) -> T:
    """Run ``operation`` up to ``max_attempts`` times, each bounded by ``timeout_seconds``.

    Every failure is retried immediately; the last one is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ConfigurationError(f"{label}: max_attempts must be >= 1, got {max_attempts}")
    state = RetryState(attempts_remaining=max_attempts, timeout_seconds=timeout_seconds)
    while True:
        state.attempts_remaining -= 1
        try:
            return await asyncio.wait_for(operation(), timeout=state.timeout_seconds)
        except Exception as exc:
            state.last_failure = classify_failure(exc)
            logger.warning(
                "%s failed (%s). Retries left: %s",
                label,
                _describe(exc, state.last_failure),
                state.attempts_remaining,
            )
            if state.attempts_remaining <= 0:
                raise
