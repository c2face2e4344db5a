"""
Campaign Orchestrator — Phase State Machine

Operation lifecycle:

    initiate ──► phase 0 ──► phase 1 ──► … ──► phase max_phases-1
                    │           │                     │
                    └───────────┴── mark_complete / cancel ──► history

Each phase entry persists the new phase, plans that phase's messages and
arms a phase timer at the phase deadline. The timer (or the resumption
sweep, when the timer was lost) advances with `expected_phase`, so a
duplicate fire for a phase that was already left is a no-op.

All transitions for one operation id run under that id's lock.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from engine.logging import CampaignEventLogger, get_logger

from campaign import influence
from campaign.plans import CampaignDefinition
from campaign.result import (
    DuplicateActiveOperation,
    Ok,
    Result,
    conflict,
    invalid_state,
    not_found,
)
from campaign.scheduler import MessageScheduler, message_timer_key
from campaign.store import CampaignStore
from campaign.timers import TimerService
from campaign.types import Operation, OperationStatus

logger = get_logger("phases")


def phase_timer_key(operation_id: str) -> str:
    return f"phase:{operation_id}"


class KeyedLocks:
    """Registry of re-entrant locks, one per key."""

    def __init__(self):
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.RLock())
        with lock:
            yield

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class PhaseStateMachine:
    """Creates operations and moves them through their phases."""

    def __init__(
        self,
        store: CampaignStore,
        scheduler: MessageScheduler,
        timers: TimerService,
        definitions: dict[str, CampaignDefinition],
        clock: Callable[[], float],
        default_campaign: str = "",
        events: CampaignEventLogger | None = None,
        locks: KeyedLocks | None = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.timers = timers
        self.definitions = definitions
        self.clock = clock
        self.default_campaign = default_campaign or next(iter(definitions), "")
        self.events = events or CampaignEventLogger()
        self.locks = locks or KeyedLocks()

    # ─── Initiate ────────────────────────────────────────────────────

    def initiate(
        self,
        target_id: str,
        initiator_id: str,
        participant_ids: list[str],
        initial_metrics: dict[str, dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
        campaign: str | None = None,
    ) -> Result[str]:
        """
        Start an operation against target_id at phase 0.

        Returns Ok(operation_id), Err(CONFLICT) when the target already
        has an active operation, or Err(NOT_FOUND) for an unknown
        campaign name.
        """
        name = campaign or self.default_campaign
        definition = self.definitions.get(name)
        if definition is None:
            return not_found(f"unknown campaign {name!r}")

        participants = list(dict.fromkeys(participant_ids or []))

        with self.locks.hold(f"target:{target_id}"):
            if self.store.list_active_by_target(target_id):
                return conflict(f"target {target_id} already has an active operation")

            now = self.clock()
            op = Operation.create(
                target_id=target_id,
                initiator_id=initiator_id,
                campaign=definition.name,
                max_phases=definition.max_phases,
                phase_duration=definition.phase_duration,
                participant_ids=participants,
                priority_list=influence.rank(participants, initial_metrics),
                influence_scores=influence.score_all(participants, initial_metrics),
                metadata=metadata,
                now=now,
            )
            try:
                with self.store.transaction():
                    self.store.create_operation(op)
                    self.store.log_action(
                        op.operation_id, target_id, "initiated",
                        {
                            "initiator_id": initiator_id,
                            "campaign": op.campaign,
                            "participants": len(participants),
                            "priority_list": op.priority_list,
                        },
                        now=now,
                    )
                    self.scheduler.plan_phase(op, 0, definition)
            except DuplicateActiveOperation as e:
                return conflict(str(e))

        self.events.on_initiated(op.operation_id, target_id, initiator_id, len(participants))
        self.arm_phase_timer(op)
        return Ok(op.operation_id)

    # ─── Advance ─────────────────────────────────────────────────────

    def advance_phase(
        self,
        operation_id: str,
        expected_phase: int | None = None,
        at: float | None = None,
    ) -> Result[Operation]:
        """
        Move an active operation to its next phase.

        `expected_phase` makes the call idempotent: if the operation has
        already left that phase, nothing happens and the current
        operation is returned. `at` stamps the new phase's start time
        (defaults to now); catch-up passes the missed deadline.
        """
        with self.locks.hold(operation_id):
            op = self.store.get_operation(operation_id)
            if op is None:
                archived = self.store.get_history(operation_id)
                if archived is not None:
                    return invalid_state(
                        f"operation {operation_id} is {archived.status.value}"
                    )
                return not_found(f"operation {operation_id} not found")

            if expected_phase is not None:
                if op.phase > expected_phase:
                    return Ok(op)
                if op.phase < expected_phase:
                    return invalid_state(
                        f"operation {operation_id} is at phase {op.phase}, "
                        f"not {expected_phase}"
                    )
            if not op.is_active:
                return invalid_state(f"operation {operation_id} is {op.status.value}")
            if op.phase >= op.final_phase:
                return invalid_state(
                    f"operation {operation_id} is already at its final phase {op.phase}"
                )

            from_phase = op.phase
            started = self.clock() if at is None else at

            def _advance(o: Operation) -> Operation | None:
                if not o.is_active or o.phase != from_phase:
                    return None
                o.phase = from_phase + 1
                o.phase_start_times[o.phase] = started
                return o

            with self.store.transaction():
                updated = self.store.update_operation(operation_id, _advance)
                if updated is None:
                    return not_found(f"operation {operation_id} not found")
                if updated.phase != from_phase + 1:
                    # Another process moved it first
                    return Ok(updated)
                self.store.log_action(
                    operation_id, updated.target_id, "phase_advanced",
                    {"from_phase": from_phase, "to_phase": updated.phase,
                     "phase_start": started},
                    idempotency_key=f"{operation_id}:phase:{updated.phase}",
                    now=self.clock(),
                )
                self.scheduler.plan_phase(
                    updated, updated.phase, self.definitions.get(updated.campaign),
                )

        self.events.on_phase_advanced(operation_id, updated.target_id, from_phase, updated.phase)
        self.arm_phase_timer(updated)
        return Ok(updated)

    def arm_phase_timer(self, op: Operation) -> bool:
        """Arm the timer that ends op's current phase. False at the final phase."""
        if not op.is_active or op.phase >= op.final_phase:
            self.timers.cancel(phase_timer_key(op.operation_id))
            return False
        operation_id, phase, deadline = op.operation_id, op.phase, op.phase_deadline()
        self.timers.arm(
            phase_timer_key(operation_id),
            deadline,
            lambda: self._on_phase_timer(operation_id, phase, deadline),
        )
        return True

    def _on_phase_timer(self, operation_id: str, phase: int, deadline: float) -> None:
        result = self.advance_phase(operation_id, expected_phase=phase, at=deadline)
        if not result.ok:
            logger.debug("Phase timer for %s ignored: %s", operation_id, result.detail)

    # ─── Terminate ───────────────────────────────────────────────────

    def mark_complete(self, target_id: str) -> Result[bool]:
        """Complete the target's active operation. Ok(False) if there is none."""
        active = self.store.list_active_by_target(target_id)
        if not active:
            return Ok(False)
        return self._terminate(active[0].operation_id, OperationStatus.COMPLETED)

    def cancel(self, operation_id: str) -> Result[bool]:
        """Cancel an active operation. Ok(False) if the id is not active."""
        return self._terminate(operation_id, OperationStatus.CANCELLED)

    def _terminate(self, operation_id: str, status: OperationStatus) -> Result[bool]:
        with self.locks.hold(operation_id):
            op = self.store.get_operation(operation_id)
            if op is None or not op.is_active:
                return Ok(False)

            now = self.clock()
            message_ids = [m.message_id for m in self.store.list_messages(operation_id=operation_id)]
            op.status = status
            op.end_time = now
            with self.store.transaction():
                purged = self.store.archive_operation(op, archived_at=now)
                self.store.log_action(
                    operation_id, op.target_id, status.value,
                    {"phase": op.phase, "purged_messages": purged},
                    now=now,
                )

        self.timers.cancel(phase_timer_key(operation_id))
        for message_id in message_ids:
            self.timers.cancel(message_timer_key(message_id))
        self.locks.discard(operation_id)
        self.events.on_terminated(operation_id, op.target_id, status.value, purged)
        return Ok(True)
