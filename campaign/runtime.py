"""
Campaign Orchestrator — Engine

CampaignEngine wires the store, timers, scheduler, state machine and
resumption manager together and is the one object callers hold.

    engine = CampaignEngine.from_config(load_config())
    engine.start()                        # reconcile persisted state

    r = engine.initiate("group-42", "admin-1", ["u1", "u2", "u3"], metrics)
    if r.ok:
        op_id = r.value

    for msg in engine.get_ready_messages():
        sender.deliver(msg)               # external transport
        engine.confirm_delivered(msg["message_id"])

Every operation returns Ok/Err except the read-only list views. Store
failures raise PersistenceError unchanged.
"""

from __future__ import annotations

import time
from typing import Any, Callable

from engine.config import get_config_value
from engine.db import create_backend
from engine.logging import CampaignEventLogger, get_logger
from engine.retry import RetryPolicy, get_retry_policy

from campaign.phases import KeyedLocks, PhaseStateMachine
from campaign.plans import CampaignDefinition, load_definitions
from campaign.result import Ok, Result, not_found
from campaign.resumption import ResumptionManager, ResumptionReport
from campaign.scheduler import MessageScheduler
from campaign.store import CampaignStore
from campaign.timers import (
    ManualTimerService, NullTimerService, ThreadTimerService, TimerService,
)
from campaign.types import Operation, OperationStatusView, summarize

logger = get_logger("runtime")

DEFAULT_CAMPAIGN = "default"


def default_definition() -> CampaignDefinition:
    """Five twelve-hour phases with no scheduled messages."""
    return CampaignDefinition(name=DEFAULT_CAMPAIGN, max_phases=5, phase_duration=12 * 60 * 60)


class CampaignEngine:
    """Façade over one campaign store."""

    def __init__(
        self,
        store: CampaignStore | None = None,
        timers: TimerService | None = None,
        definitions: dict[str, CampaignDefinition] | None = None,
        clock: Callable[[], float] = time.time,
        default_campaign: str = "",
        retry_policy: RetryPolicy | None = None,
        events: CampaignEventLogger | None = None,
    ):
        self.store = store or CampaignStore()
        self.timers = timers or ThreadTimerService(clock)
        self.definitions = definitions or {DEFAULT_CAMPAIGN: default_definition()}
        self.clock = clock
        self.retry_policy = retry_policy or get_retry_policy()
        self.events = events or CampaignEventLogger()
        self.locks = KeyedLocks()

        if default_campaign and default_campaign not in self.definitions:
            raise ValueError(f"default campaign {default_campaign!r} is not defined")

        self.scheduler = MessageScheduler(self.store, self.timers, clock, self.events)
        self.phases = PhaseStateMachine(
            self.store, self.scheduler, self.timers, self.definitions, clock,
            default_campaign=default_campaign,
            events=self.events,
            locks=self.locks,
        )
        self.resumption = ResumptionManager(
            self.store, self.phases, self.scheduler, clock, self.events,
        )

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        clock: Callable[[], float] = time.time,
    ) -> CampaignEngine:
        """Build an engine from a loaded config dict (see engine.config)."""
        backend = create_backend(
            get_config_value("store.backend", config),
            path=str(get_config_value("store.path", config, "campaign.db")),
            dsn=str(get_config_value("store.dsn", config, "") or ""),
        )
        timer_kind = get_config_value("scheduler.timers", config, "thread")
        if timer_kind == "manual":
            timers: TimerService = ManualTimerService()
        elif timer_kind == "thread":
            timers = ThreadTimerService(clock)
        elif timer_kind == "none":
            timers = NullTimerService()
        else:
            raise ValueError(f"Unknown scheduler.timers: {timer_kind!r}")

        engine = cls(
            store=CampaignStore(backend),
            timers=timers,
            definitions=load_definitions(config),
            clock=clock,
            default_campaign=config.get("default_campaign", ""),
            retry_policy=get_retry_policy(config),
        )
        logger.info(
            "Campaign engine configured: backend=%s timers=%s campaigns=%s",
            backend.backend_type, timer_kind, sorted(engine.definitions),
        )
        return engine

    # ─── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> ResumptionReport:
        """Reconcile persisted state once. Call before serving requests."""
        return self.resumption.resume()

    def sweep(self, now: float | None = None) -> ResumptionReport:
        return self.resumption.resume(now)

    def shutdown(self) -> None:
        self.timers.shutdown()
        self.store.close()

    # ─── Transitions ─────────────────────────────────────────────────

    def initiate(
        self,
        target_id: str,
        initiator_id: str,
        participant_ids: list[str],
        initial_metrics: dict[str, dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
        campaign: str | None = None,
    ) -> Result[str]:
        return self.phases.initiate(
            target_id, initiator_id, participant_ids, initial_metrics,
            metadata=metadata, campaign=campaign,
        )

    def advance_phase(self, operation_id: str, expected_phase: int | None = None) -> Result[Operation]:
        return self.phases.advance_phase(operation_id, expected_phase=expected_phase)

    def mark_complete(self, target_id: str) -> Result[bool]:
        return self.phases.mark_complete(target_id)

    def cancel(self, operation_id: str) -> Result[bool]:
        return self.phases.cancel(operation_id)

    # ─── Delivery ────────────────────────────────────────────────────

    def get_ready_messages(self, limit: int | None = None) -> list[dict[str, Any]]:
        return self.scheduler.get_ready_messages(limit)

    def confirm_delivered(self, message_id: str) -> Result[bool]:
        return self.scheduler.confirm_delivered(message_id)

    # ─── Queries ─────────────────────────────────────────────────────

    def get_operation(self, operation_id: str) -> Operation | None:
        """Active operation, else the archived snapshot, else None."""
        return self.store.get_operation(operation_id) or self.store.get_history(operation_id)

    def get_status(self, operation_id: str) -> Result[dict[str, Any]]:
        op = self.get_operation(operation_id)
        if op is None:
            return not_found(f"operation {operation_id} not found")
        return Ok(OperationStatusView.of(op, self.clock()).to_dict())

    def list_for_target(self, target_id: str) -> dict[str, list[dict[str, Any]]]:
        return {
            "active": [summarize(op) for op in self.store.list_active_by_target(target_id)],
            "historical": [summarize(op) for op in self.store.list_history(target_id)],
        }

    def get_ledger(
        self,
        operation_id: str | None = None,
        target_id: str | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        return self.store.get_ledger(operation_id=operation_id, target_id=target_id, limit=limit)

    def stats(self) -> dict[str, Any]:
        stats = self.store.stats()
        stats["timers_pending"] = len(self.timers.pending())
        stats["campaigns"] = sorted(self.definitions)
        stats["backend"] = self.store.db.backend_type
        return stats
