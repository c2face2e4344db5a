"""
Campaign Orchestrator — Message Scheduler

Expands a phase plan into concrete ScheduledMessages, arms a timer per
message, flips messages pending → ready when they come due, and serves
the polling/confirmation surface used by the external sender.

Due-time rule for the i-th recipient of a plan step:

    scheduled_at = phase_start + step.offset + i * step.stagger

The scheduler never sends anything. A ready message waits in the store
until the sender calls confirm_delivered().
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from engine.logging import CampaignEventLogger

from campaign.plans import CampaignDefinition, PlanStep, RecipientCategory
from campaign.result import Ok, Result, invalid_state
from campaign.store import CampaignStore
from campaign.timers import TimerService
from campaign.types import MessageStatus, Operation, ScheduledMessage

logger = logging.getLogger("campaign_orchestrator.scheduler")


def message_timer_key(message_id: str) -> str:
    return f"msg:{message_id}"


def _recipients(op: Operation, step: PlanStep, default_top_k: int) -> list[str]:
    if step.recipients == RecipientCategory.TARGET:
        return [op.target_id]
    if step.recipients == RecipientCategory.PRIORITY:
        k = step.limit if step.limit is not None else default_top_k
        return op.priority_list[:k]
    recipients = list(op.participant_ids)
    if step.limit is not None:
        recipients = recipients[:step.limit]
    return recipients


def expand_plan(
    op: Operation,
    phase: int,
    steps: list[PlanStep],
    default_top_k: int = 5,
    now: float | None = None,
) -> list[ScheduledMessage]:
    """Turn a phase plan into pending messages. Pure; nothing is stored."""
    phase_start = op.phase_start_times[phase]
    messages = []
    for step in steps:
        channel = step.resolved_channel()
        for index, recipient in enumerate(_recipients(op, step, default_top_k)):
            messages.append(ScheduledMessage.create(
                operation_id=op.operation_id,
                target_id=recipient,
                channel=channel,
                payload=step.payload,
                scheduled_at=phase_start + step.offset + index * step.stagger,
                phase=phase,
                now=now,
            ))
    return messages


class MessageScheduler:
    """Plans, arms and readies scheduled messages for one store."""

    def __init__(
        self,
        store: CampaignStore,
        timers: TimerService,
        clock: Callable[[], float],
        events: CampaignEventLogger | None = None,
    ):
        self.store = store
        self.timers = timers
        self.clock = clock
        self.events = events or CampaignEventLogger()

    # ─── Planning ────────────────────────────────────────────────────

    def plan_phase(
        self,
        op: Operation,
        phase: int,
        definition: CampaignDefinition | None,
    ) -> list[ScheduledMessage]:
        """
        Persist the phase plan as pending messages, then arm their timers.

        Messages are written in one batch before any timer is armed, so a
        failed write leaves neither rows nor timers behind.
        """
        if definition is None:
            logger.warning(
                "No campaign definition %r for operation %s; phase %d has no plan",
                op.campaign, op.operation_id, phase,
            )
            return []

        messages = expand_plan(
            op, phase, definition.plan_for(phase),
            default_top_k=definition.priority_top_k,
            now=self.clock(),
        )
        self.store.create_messages(messages)
        for msg in messages:
            self.arm(msg)
        self.events.on_messages_planned(op.operation_id, phase, len(messages))
        return messages

    def arm(self, msg: ScheduledMessage) -> None:
        message_id = msg.message_id
        self.timers.arm(
            message_timer_key(message_id),
            msg.scheduled_at,
            lambda: self.fire(message_id),
        )

    # ─── Timer Fire ──────────────────────────────────────────────────

    def fire(self, message_id: str) -> bool:
        """
        Flip a due message pending → ready.

        Re-reads the message and its operation from the store rather than
        trusting anything captured when the timer was armed. A message
        whose operation is gone or no longer active is deleted. Either way
        the message's timer key is released.
        Returns True if the message is now ready.
        """
        msg = self.store.get_message(message_id)
        if msg is None or msg.status != MessageStatus.PENDING:
            self.timers.cancel(message_timer_key(message_id))
            return msg is not None and msg.status == MessageStatus.READY

        op = self.store.get_operation(msg.operation_id)
        if op is None or not op.is_active:
            self.timers.cancel(message_timer_key(message_id))
            if self.store.remove_message(message_id):
                self.events.on_message_dropped(
                    message_id, msg.operation_id, "operation not active",
                )
                self.store.log_action(
                    msg.operation_id, op.target_id if op else msg.target_id,
                    "message_dropped", {"message_id": message_id, "phase": msg.phase},
                )
            return False

        now = self.clock()

        def _ready(m: ScheduledMessage) -> ScheduledMessage | None:
            if m.status != MessageStatus.PENDING:
                return None
            m.status = MessageStatus.READY
            m.ready_at = now
            return m

        updated = self.store.update_message(message_id, _ready)
        if updated is None or updated.status != MessageStatus.READY:
            return False
        self.timers.cancel(message_timer_key(message_id))
        if updated.ready_at == now:
            self.events.on_message_ready(message_id, updated.operation_id, updated.phase)
            self.store.log_action(
                updated.operation_id, op.target_id, "message_ready",
                {"message_id": message_id, "phase": updated.phase,
                 "recipient": updated.target_id},
            )
        return True

    # ─── Delivery Surface ────────────────────────────────────────────

    def get_ready_messages(self, limit: int | None = None) -> list[dict[str, Any]]:
        return [m.to_delivery() for m in self.store.list_messages(
            status=MessageStatus.READY, limit=limit,
        )]

    def confirm_delivered(self, message_id: str) -> Result[bool]:
        """
        Remove a ready message after the sender delivered it.

        Ok(True) on success, Ok(False) for an unknown id, and
        Err(INVALID_STATE) when the message is not ready yet.
        """
        msg, removed = self.store.take_message(message_id, MessageStatus.READY)
        if msg is None:
            return Ok(False)
        if not removed:
            return invalid_state(
                f"message {message_id} is {msg.status.value}, not ready"
            )

        self.timers.cancel(message_timer_key(message_id))
        op = self.store.get_operation(msg.operation_id)
        delivered = msg.to_dict()
        delivered["status"] = MessageStatus.DELIVERED.value
        delivered["delivered_at"] = self.clock()
        self.store.log_action(
            msg.operation_id, op.target_id if op else msg.target_id,
            "message_delivered", delivered,
        )
        self.events.on_message_delivered(message_id, msg.operation_id)
        return Ok(True)


__all__ = ["MessageScheduler", "expand_plan", "message_timer_key"]
