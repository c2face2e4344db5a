"""
Campaign Orchestrator — Sweep Workers

The periodic sweep is the authoritative way due transitions get applied;
in-process timers only make them prompt. Backends:

  - ThreadSweeper: daemon thread calling engine.sweep() every interval
  - NullSweeper:   no sweeping in this process (another worker owns it)
  - WorkerSettings: arq worker with a cron job running the sweep
                    (production, one worker per store)

The in-process backend is selected by CAMPAIGN_WORKER_MODE:
  thread → ThreadSweeper (default)
  none   → NullSweeper
  arq    → NullSweeper here; run `arq api.worker.WorkerSettings` separately

Usage:
    python -m api.worker          # arq worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass
from typing import Any

from arq import cron, run_worker
from arq.connections import RedisSettings

from campaign.runtime import CampaignEngine
from engine.config import get_config_value, load_config
from engine.logging import configure_logging
from engine.retry import call_with_retry

logger = logging.getLogger("campaign_orchestrator.worker")


@dataclass
class SweepStats:
    passes: int = 0
    failures: int = 0
    advanced: int = 0
    readied: int = 0
    last_run_at: float = 0.0
    last_error: str = ""


# ═══════════════════════════════════════════════════════════════════
# Sweep Backend Interface
# ═══════════════════════════════════════════════════════════════════

class SweepBackend:
    """Abstract interface for running the periodic sweep."""

    def start(self):
        pass

    def stop(self):
        pass

    @property
    def stats(self) -> dict[str, Any]:
        return {}


class NullSweeper(SweepBackend):
    """No in-process sweeping."""

    def __init__(self, reason: str = "disabled"):
        self.reason = reason

    @property
    def stats(self) -> dict[str, Any]:
        return {"mode": "none", "reason": self.reason}


# ═══════════════════════════════════════════════════════════════════
# Thread Sweeper
# ═══════════════════════════════════════════════════════════════════

class ThreadSweeper(SweepBackend):
    """
    Runs engine.sweep() on a daemon thread every `interval` seconds.
    Store failures are retried per the engine's retry policy; a pass
    that still fails is logged and the next pass tries again.
    """

    def __init__(self, engine: CampaignEngine, interval: float = 15.0):
        self.engine = engine
        self.interval = interval
        self._stats = SweepStats()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="campaign_sweeper", daemon=True,
        )
        self._thread.start()
        logger.info("ThreadSweeper started: interval=%.1fs", self.interval)

    def _loop(self):
        while not self._stop.wait(self.interval):
            self.run_once()

    def run_once(self) -> bool:
        """One sweep pass. Returns False if it failed."""
        try:
            result = call_with_retry(
                self.engine.sweep, self.engine.retry_policy, label="sweep",
            )
        except Exception as e:
            logger.exception("Sweep pass failed")
            with self._lock:
                self._stats.passes += 1
                self._stats.failures += 1
                self._stats.last_run_at = time.time()
                self._stats.last_error = str(e)[:500]
            return False

        report = result.value
        with self._lock:
            self._stats.passes += 1
            self._stats.advanced += report.advanced
            self._stats.readied += report.readied
            self._stats.last_run_at = time.time()
        return True

    def stop(self):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=self.interval + 1.0)
        logger.info("ThreadSweeper stopped")

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {"mode": "thread", "interval": self.interval, **asdict(self._stats)}


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_sweeper(
    engine: CampaignEngine,
    mode: str | None = None,
    interval: float = 15.0,
) -> SweepBackend:
    """
    Create the in-process sweep backend.

    Mode selection: CAMPAIGN_WORKER_MODE env var or explicit mode.
      - "thread": ThreadSweeper
      - "none":   NullSweeper
      - "arq":    NullSweeper (the arq worker process sweeps)
    """
    mode = mode or os.environ.get("CAMPAIGN_WORKER_MODE", "thread")

    if mode == "thread":
        return ThreadSweeper(engine, interval=interval)
    if mode == "arq":
        logger.info("Sweep delegated to arq worker")
        return NullSweeper(reason="arq")
    if mode == "none":
        return NullSweeper()
    raise ValueError(f"Unknown CAMPAIGN_WORKER_MODE: {mode!r}")


# ═══════════════════════════════════════════════════════════════════
# arq Worker
# ═══════════════════════════════════════════════════════════════════

def cron_seconds(interval: float) -> set[int]:
    """Seconds-of-minute at which the cron sweep fires."""
    step = min(60, max(1, int(interval)))
    return set(range(0, 60, step))


def cron_schedule(interval: float) -> dict[str, Any]:
    """
    arq cron() time fields for a sweep every `interval` seconds.

    Below a minute the sweep steps through the seconds of each minute;
    from a minute up it steps through the minutes of each hour, on second
    0. Intervals are rounded down to whole units and capped at hourly.
    """
    if interval < 60:
        return {"second": cron_seconds(interval)}
    step = min(60, int(interval // 60))
    return {"minute": set(range(0, 60, step)), "second": 0}


async def sweep_job(ctx: dict) -> dict[str, Any]:
    """
    arq cron task. Runs the sweep in the worker's thread pool to avoid
    blocking the event loop.
    """
    loop = asyncio.get_running_loop()
    engine: CampaignEngine = ctx["engine"]

    def _execute():
        return call_with_retry(engine.sweep, engine.retry_policy, label="sweep").value

    report = await loop.run_in_executor(ctx.get("pool"), _execute)
    logger.info("Cron sweep: %s", report.to_dict())
    return report.to_dict()


async def startup(ctx: dict):
    """arq startup hook — build the engine and thread pool."""
    config = load_config()
    configure_logging(str(get_config_value("logging.level", config, "INFO")))
    # Sweep-only process: the cron sweep does the timers' work
    config.setdefault("scheduler", {})["timers"] = "none"
    ctx["engine"] = CampaignEngine.from_config(config)
    ctx["pool"] = ThreadPoolExecutor(max_workers=1, thread_name_prefix="campaign_sweep")
    logger.info("arq worker started")


async def shutdown(ctx: dict):
    """arq shutdown hook — release the pool and the store."""
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    engine = ctx.get("engine")
    if engine:
        engine.shutdown()
    logger.info("arq worker shutdown complete")


_SWEEP_INTERVAL = float(os.environ.get("CAMPAIGN_SCHEDULER__SWEEP_INTERVAL", "15"))


class WorkerSettings:
    """arq worker configuration."""
    functions = [sweep_job]
    cron_jobs = [
        cron(sweep_job, run_at_startup=True, **cron_schedule(_SWEEP_INTERVAL)),
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 1
    job_timeout = int(os.environ.get("CAMPAIGN_JOB_TIMEOUT", "300"))
    redis_settings = RedisSettings.from_dsn(os.environ.get("REDIS_URL", "redis://localhost:6379"))


if __name__ == "__main__":
    run_worker(WorkerSettings)
