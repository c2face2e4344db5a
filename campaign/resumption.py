"""
Campaign Orchestrator — Resumption Manager

Reconciles persisted state against the clock. Runs once at engine start
and again on every sweep. Absolute timestamps in the store are the truth;
timers are re-armed from them, and anything already overdue is applied
now:

  - an operation past its phase deadline is advanced with the missed
    deadline as the new phase start, repeatedly, so one pass catches up
    through several missed phases
  - a pending message past its due time goes through the scheduler's
    fire path (which re-checks the owning operation)

Each operation and message is handled in isolation. A failure is logged
with its traceback, counted, and left for the next pass.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Callable

from engine.logging import CampaignEventLogger, get_logger

from campaign.phases import PhaseStateMachine
from campaign.scheduler import MessageScheduler
from campaign.store import CampaignStore
from campaign.types import MessageStatus, Operation

logger = get_logger("resumption")


@dataclass
class ResumptionReport:
    advanced: int = 0
    readied: int = 0
    armed: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ResumptionManager:

    def __init__(
        self,
        store: CampaignStore,
        phases: PhaseStateMachine,
        scheduler: MessageScheduler,
        clock: Callable[[], float],
        events: CampaignEventLogger | None = None,
    ):
        self.store = store
        self.phases = phases
        self.scheduler = scheduler
        self.clock = clock
        self.events = events or CampaignEventLogger()

    def resume(self, now: float | None = None) -> ResumptionReport:
        now = self.clock() if now is None else now
        report = ResumptionReport()

        for op in self.store.list_active_operations():
            try:
                self._catch_up(op, now, report)
            except Exception as e:
                report.errors += 1
                logger.exception("Resumption failed for operation %s", op.operation_id)
                self.events.on_callback_failed(f"resume:{op.operation_id}", e)

        for msg in self.store.list_messages(status=MessageStatus.PENDING):
            try:
                if msg.is_due(now):
                    if self.scheduler.fire(msg.message_id):
                        report.readied += 1
                else:
                    self.scheduler.arm(msg)
                    report.armed += 1
            except Exception as e:
                report.errors += 1
                logger.exception("Resumption failed for message %s", msg.message_id)
                self.events.on_callback_failed(f"resume:{msg.message_id}", e)

        self.events.on_resumption_pass(
            report.advanced, report.readied, report.armed, report.errors,
        )
        return report

    def _catch_up(self, op: Operation, now: float, report: ResumptionReport) -> None:
        for _ in range(op.max_phases):
            if not op.is_active or op.phase >= op.final_phase:
                return
            deadline = op.phase_deadline()
            if now < deadline:
                break
            result = self.phases.advance_phase(
                op.operation_id, expected_phase=op.phase, at=deadline,
            )
            if not result.ok:
                logger.info(
                    "Catch-up stopped for %s: %s", op.operation_id, result.detail,
                )
                return
            if result.value.phase == op.phase:
                return
            report.advanced += 1
            op = result.value

        if self.phases.arm_phase_timer(op):
            report.armed += 1
