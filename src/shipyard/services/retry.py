"""Retry/backoff engine for external-command invocations.

Failures are classified by exception type: timeouts, auth failures and
startup-precondition failures propagate on first occurrence, everything else
is retried with exponential backoff. Rate-limited attempts are free up to a
bounded number of waits and honour a server-directed delay when the output
names one.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias

from shipyard.errors import (
    CommandFailedError,
    ProcessExecutionError,
    RateLimitError,
    is_retryable,
)
from shipyard.limits import (
    BACKOFF_FACTOR,
    DEFAULT_BACKOFF_MS,
    DEFAULT_RETRIES,
    MAX_OUTPUT_TAIL_CHARS,
    MAX_RATE_LIMIT_WAITS,
)
from shipyard.utils import truncate_tail

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from shipyard.adapters.sandbox import CommandResult
    from shipyard.config import RetryConfig, StageCommandConfig

log = logging.getLogger(__name__)

RATE_LIMIT_RE = re.compile(r"rate limit|429|resource_exhausted|quota", re.IGNORECASE)
RETRY_AFTER_RE = re.compile(
    r"retry(?:ing)?(?:\s+after|\s+in)?\s+(\d+)\s*(ms|milliseconds|s|sec|seconds|m|min|minutes)?",
    re.IGNORECASE,
)

SleepFn: TypeAlias = "Callable[[float], Awaitable[None]]"


def is_rate_limited(text: str | None) -> bool:
    return bool(text) and RATE_LIMIT_RE.search(text or "") is not None


def parse_retry_after_ms(text: str | None) -> int | None:
    """Server-directed wait encoded in command output, in milliseconds.

    A bare number is read as seconds.
    """
    match = RETRY_AFTER_RE.search(text or "")
    if match is None:
        return None
    amount = int(match.group(1))
    if amount <= 0:
        return None
    unit = (match.group(2) or "s").lower()
    if unit in {"ms", "milliseconds"}:
        return amount
    if unit in {"m", "min", "minutes"}:
        return amount * 60 * 1000
    return amount * 1000


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry behaviour for one external-command invocation.

    ``retries`` counts retries after the first counted attempt, so a policy
    with ``retries=2`` allows three counted attempts in total.
    """

    retries: int = DEFAULT_RETRIES
    backoff_ms: int = DEFAULT_BACKOFF_MS
    factor: int = BACKOFF_FACTOR
    retry_on_rate_limit: bool = True
    retry_on_nonzero: bool = False
    max_rate_limit_waits: int = MAX_RATE_LIMIT_WAITS

    def backoff_for(self, attempt: int) -> int:
        """Delay before the *attempt*-th retry (1-based)."""
        return self.backoff_ms * self.factor ** max(0, attempt - 1)

    @classmethod
    def from_config(
        cls,
        retry: RetryConfig,
        stage: StageCommandConfig | None = None,
    ) -> RetryPolicy:
        retries = retry.retries
        backoff_ms = retry.backoff_ms
        retry_on_rate_limit = True
        if stage is not None:
            if stage.retries is not None:
                retries = stage.retries
            if stage.backoff_ms is not None:
                backoff_ms = stage.backoff_ms
            retry_on_rate_limit = stage.retry_on_rate_limit
        return cls(
            retries=retries,
            backoff_ms=backoff_ms,
            retry_on_rate_limit=retry_on_rate_limit,
            retry_on_nonzero=stage.retry_on_nonzero if stage is not None else False,
            max_rate_limit_waits=retry.max_rate_limit_waits,
        )


@dataclass(frozen=True, slots=True)
class RetryAttempt:
    """Report passed to ``on_retry`` before each retry sleep."""

    label: str
    attempt: int
    error: str
    delay_ms: int
    rate_limited: bool
    retries_consumed: int


def classify_result(result: CommandResult, policy: RetryPolicy) -> ProcessExecutionError | None:
    """Failure to raise for a non-zero result, or None when the result is returned as-is."""
    if result.ok:
        return None
    output = f"{result.stderr}\n{result.stdout}"
    stdout = truncate_tail(result.stdout, MAX_OUTPUT_TAIL_CHARS).strip() or None
    stderr = truncate_tail(result.stderr, MAX_OUTPUT_TAIL_CHARS).strip() or None
    if policy.retry_on_rate_limit and is_rate_limited(output):
        return RateLimitError(
            command=(result.command,),
            returncode=result.exit_code,
            stdout=stdout,
            stderr=stderr,
            detail=f"Rate limited: {output.strip()[:300]}",
            retry_after_ms=parse_retry_after_ms(output),
        )
    if policy.retry_on_nonzero:
        return CommandFailedError(
            command=(result.command,),
            returncode=result.exit_code,
            stdout=stdout,
            stderr=stderr,
        )
    return None


def _summarize(exc: BaseException) -> str:
    return str(exc).replace("\n", " ")[:200] or type(exc).__name__


async def execute_with_retry(
    attempt: Callable[[], Awaitable[CommandResult]],
    *,
    policy: RetryPolicy,
    label: str,
    sleep: SleepFn = asyncio.sleep,
    on_retry: Callable[[RetryAttempt], None] | None = None,
) -> CommandResult:
    """Invoke *attempt* until it succeeds, fails terminally, or exhausts the budget.

    A non-zero result is returned to the caller unless it is rate-limited or
    the policy retries non-zero exits.
    """
    attempt_number = 0
    consumed = 0
    free_waits = 0
    while True:
        attempt_number += 1
        try:
            result = await attempt()
            failure = classify_result(result, policy)
            if failure is None:
                return result
            raise failure
        except Exception as exc:
            if not is_retryable(exc):
                raise

            rate_limited = isinstance(exc, RateLimitError)
            if rate_limited and free_waits < policy.max_rate_limit_waits:
                free_waits += 1
            else:
                consumed += 1
                if consumed > policy.retries:
                    log.warning(
                        "%s failed after %d attempt(s): %s", label, attempt_number, _summarize(exc)
                    )
                    raise

            server_delay = exc.retry_after_ms if isinstance(exc, RateLimitError) else None
            if server_delay is not None:
                delay_ms = server_delay
            elif rate_limited:
                delay_ms = policy.backoff_for(free_waits)
            else:
                delay_ms = policy.backoff_for(consumed)

            log.warning(
                "%s attempt %d failed%s, retrying in %dms: %s",
                label,
                attempt_number,
                " (rate limited)" if rate_limited else "",
                delay_ms,
                _summarize(exc),
            )
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        label=label,
                        attempt=attempt_number,
                        error=_summarize(exc),
                        delay_ms=delay_ms,
                        rate_limited=rate_limited,
                        retries_consumed=consumed,
                    )
                )
            await sleep(delay_ms / 1000)


__all__ = [
    "RetryAttempt",
    "RetryPolicy",
    "classify_result",
    "execute_with_retry",
    "is_rate_limited",
    "parse_retry_after_ms",
]
