"""
Campaign Orchestrator — Type Definitions

Data structures for operations (one campaign run against one target)
and the messages they schedule. Every record round-trips through
to_dict()/from_dict() as plain JSON-compatible data.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any


# ─── Operations ─────────────────────────────────────────────────────

class OperationStatus(str, enum.Enum):
    """Lifecycle states for an operation."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {OperationStatus.COMPLETED, OperationStatus.CANCELLED}


@dataclass
class Operation:
    """
    One phased campaign run against a single target entity.

    phase_start_times is keyed by int phase; JSON turns those keys into
    strings, so from_dict() converts them back.
    """
    operation_id: str
    target_id: str
    initiator_id: str
    campaign: str
    max_phases: int
    phase_duration: float
    start_time: float
    phase: int = 0
    status: OperationStatus = OperationStatus.ACTIVE
    phase_start_times: dict[int, float] = field(default_factory=dict)
    end_time: float | None = None

    # Ranking (computed once at creation, never re-ranked)
    participant_ids: list[str] = field(default_factory=list)
    priority_list: list[str] = field(default_factory=list)
    influence_scores: dict[str, float] = field(default_factory=dict)

    # Opaque caller context
    metadata: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def create(
        target_id: str,
        initiator_id: str,
        campaign: str,
        max_phases: int,
        phase_duration: float,
        participant_ids: list[str] | None = None,
        priority_list: list[str] | None = None,
        influence_scores: dict[str, float] | None = None,
        metadata: dict[str, Any] | None = None,
        now: float | None = None,
    ) -> Operation:
        now = time.time() if now is None else now
        return Operation(
            operation_id=f"op_{uuid.uuid4().hex[:12]}",
            target_id=target_id,
            initiator_id=initiator_id,
            campaign=campaign,
            max_phases=max_phases,
            phase_duration=phase_duration,
            start_time=now,
            phase=0,
            status=OperationStatus.ACTIVE,
            phase_start_times={0: now},
            participant_ids=list(participant_ids or []),
            priority_list=list(priority_list or []),
            influence_scores=dict(influence_scores or {}),
            metadata=dict(metadata or {}),
        )

    @property
    def is_active(self) -> bool:
        return self.status == OperationStatus.ACTIVE

    @property
    def final_phase(self) -> int:
        return self.max_phases - 1

    @property
    def progress(self) -> int:
        """Percent through the phase sequence. Display only."""
        if self.max_phases <= 1:
            return 100
        return round(self.phase / (self.max_phases - 1) * 100)

    def phase_deadline(self, phase: int | None = None) -> float:
        """Absolute time at which `phase` (default: current) is due to end."""
        phase = self.phase if phase is None else phase
        return self.phase_start_times[phase] + self.phase_duration

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        d["phase_start_times"] = {str(k): v for k, v in self.phase_start_times.items()}
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Operation:
        known = {f for f in cls.__dataclass_fields__}
        data = {k: v for k, v in d.items() if k in known}
        data["status"] = OperationStatus(data.get("status", "active"))
        data["phase_start_times"] = {
            int(k): float(v) for k, v in (data.get("phase_start_times") or {}).items()
        }
        return cls(**data)


# ─── Scheduled Messages ─────────────────────────────────────────────

class Channel(str, enum.Enum):
    """How a payload reaches its recipient."""
    BROADCAST = "broadcast"   # posted to the group / target itself
    DIRECT = "direct"         # sent privately to one participant


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    DELIVERED = "delivered"


@dataclass
class ScheduledMessage:
    """
    One planned payload delivery. `phase` records the operation phase the
    message was planned in and is never rewritten.
    """
    message_id: str
    operation_id: str
    target_id: str
    channel: Channel
    payload: str
    scheduled_at: float
    phase: int
    status: MessageStatus = MessageStatus.PENDING
    created_at: float = 0.0
    ready_at: float | None = None

    @staticmethod
    def create(
        operation_id: str,
        target_id: str,
        channel: Channel | str,
        payload: str,
        scheduled_at: float,
        phase: int,
        now: float | None = None,
    ) -> ScheduledMessage:
        return ScheduledMessage(
            message_id=f"msg_{uuid.uuid4().hex[:12]}",
            operation_id=operation_id,
            target_id=target_id,
            channel=Channel(channel),
            payload=payload,
            scheduled_at=scheduled_at,
            phase=phase,
            status=MessageStatus.PENDING,
            created_at=time.time() if now is None else now,
        )

    def is_due(self, now: float) -> bool:
        return now >= self.scheduled_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["channel"] = self.channel.value
        d["status"] = self.status.value
        return d

    def to_delivery(self) -> dict[str, Any]:
        """Shape handed to the external sender by the polling interface."""
        return {
            "message_id": self.message_id,
            "operation_id": self.operation_id,
            "target_id": self.target_id,
            "channel": self.channel.value,
            "payload": self.payload,
            "phase": self.phase,
            "scheduled_at": self.scheduled_at,
            "ready_at": self.ready_at,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ScheduledMessage:
        known = {f for f in cls.__dataclass_fields__}
        data = {k: v for k, v in d.items() if k in known}
        data["channel"] = Channel(data["channel"])
        data["status"] = MessageStatus(data.get("status", "pending"))
        return cls(**data)


# ─── Read Views ─────────────────────────────────────────────────────

@dataclass
class OperationStatusView:
    """get_status() payload."""
    operation_id: str
    target_id: str
    campaign: str
    phase: int
    max_phases: int
    status: str
    progress: int
    start_time: float
    end_time: float | None
    phase_start_times: dict[str, float]
    elapsed_seconds: float

    @staticmethod
    def of(op: Operation, now: float) -> OperationStatusView:
        end = op.end_time if op.end_time is not None else now
        return OperationStatusView(
            operation_id=op.operation_id,
            target_id=op.target_id,
            campaign=op.campaign,
            phase=op.phase,
            max_phases=op.max_phases,
            status=op.status.value,
            progress=op.progress,
            start_time=op.start_time,
            end_time=op.end_time,
            phase_start_times={str(k): v for k, v in op.phase_start_times.items()},
            elapsed_seconds=max(0.0, end - op.start_time),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def summarize(op: Operation) -> dict[str, Any]:
    """Row shape for list_for_target()."""
    return {
        "operation_id": op.operation_id,
        "campaign": op.campaign,
        "status": op.status.value,
        "phase": op.phase,
        "progress": op.progress,
        "start_time": op.start_time,
        "end_time": op.end_time,
    }
