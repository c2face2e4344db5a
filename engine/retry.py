"""
Campaign Orchestrator — Retry with Backoff

Store writes can fail transiently (locked SQLite file, dropped Postgres
connection). Engine operations surface those as PersistenceError and
never half-apply them, so the caller can simply try again. This module
is that "try again":

  - Configurable attempt count
  - Exponential backoff with jitter, capped
  - Only listed exception types are retried; everything else propagates
  - Every attempt is logged and recorded on the result

Usage:
    from engine.retry import call_with_retry, get_retry_policy

    policy = get_retry_policy(cfg)
    result = call_with_retry(lambda: engine.cancel(op_id), policy, label="cancel")
    outcome = result.value
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from engine.db import PersistenceError

logger = logging.getLogger("campaign_orchestrator.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for retrying a store-backed call."""
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; delay = base * 2^attempt ± jitter
    backoff_max: float = 10.0       # cap on delay between attempts
    jitter: float = 0.2             # ±20% randomization on backoff


DEFAULT_POLICY = RetryPolicy()


def get_retry_policy(config: dict[str, Any] | None = None) -> RetryPolicy:
    """
    Build a RetryPolicy from the `retry` config section.

    Config format:
        retry:
          max_attempts: 5
          backoff_base: 0.25
          backoff_max: 5.0
          jitter: 0.1
    """
    section = (config or {}).get("retry") or {}
    if not section:
        return DEFAULT_POLICY
    return RetryPolicy(
        max_attempts=int(section.get("max_attempts", DEFAULT_POLICY.max_attempts)),
        backoff_base=float(section.get("backoff_base", DEFAULT_POLICY.backoff_base)),
        backoff_max=float(section.get("backoff_max", DEFAULT_POLICY.backoff_max)),
        jitter=float(section.get("jitter", DEFAULT_POLICY.jitter)),
    )


# ═══════════════════════════════════════════════════════════════════
# Retry Result
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryResult:
    """Outcome of a call made through call_with_retry."""
    value: Any
    attempts: int                     # 1 = first try succeeded
    total_latency: float
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retry number attempt+1 (attempt is 0-indexed)."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


def call_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy | None = None,
    retry_on: tuple[type[BaseException], ...] = (PersistenceError,),
    label: str = "",
    sleep_fn: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Call fn() until it returns, retrying on the given exception types.

    Raises:
        The last retryable exception once attempts are exhausted, or any
        non-retryable exception immediately.
    """
    if policy is None:
        policy = DEFAULT_POLICY

    attempt_log: list[dict[str, Any]] = []
    total_t0 = time.time()
    last_error: BaseException | None = None

    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        entry: dict[str, Any] = {"attempt": attempt + 1, "label": label}
        t0 = time.time()
        try:
            value = fn()
        except retry_on as e:
            last_error = e
            entry["latency_s"] = round(time.time() - t0, 3)
            entry["status"] = "retryable_error"
            entry["error"] = str(e)[:200]
            attempt_log.append(entry)
            logger.warning(
                "Retryable error (attempt %d/%d, call=%s): %s",
                attempt + 1, attempts, label, str(e)[:100],
            )
            if attempt < attempts - 1:
                delay = calculate_backoff(attempt, policy)
                entry["backoff_s"] = round(delay, 3)
                sleep_fn(delay)
            continue

        entry["latency_s"] = round(time.time() - t0, 3)
        entry["status"] = "success"
        attempt_log.append(entry)
        if attempt:
            logger.info("Call %s succeeded after %d attempts", label, attempt + 1)
        return RetryResult(
            value=value,
            attempts=attempt + 1,
            total_latency=time.time() - total_t0,
            attempt_log=attempt_log,
        )

    logger.error(
        "All retry attempts exhausted (call=%s, attempts=%d)",
        label, len(attempt_log),
    )
    raise last_error
