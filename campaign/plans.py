"""
Campaign Orchestrator — Campaign Definitions and Phase Plans

A campaign definition fixes how many phases an operation runs, how long
each phase lasts, and what each phase schedules on entry. Definitions
live in YAML under the `campaigns` config key:

    default_campaign: onboarding
    campaigns:
      onboarding:
        max_phases: 3
        phase_duration: 43200        # seconds
        priority_top_k: 5
        phases:
          0:
            - recipients: target       # the group itself
              offset: 900
              payload: "Welcome!"
          1:
            - recipients: priority     # top-k ranked participants
              offset: 1800
              stagger: 600
              payload: "Thanks for being active"

`recipients` is one of `target`, `priority`, `participants`. `channel`
defaults to `broadcast` for `target` and `direct` otherwise.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from campaign.types import Channel


class RecipientCategory(str, enum.Enum):
    TARGET = "target"
    PRIORITY = "priority"
    PARTICIPANTS = "participants"


class PlanError(ValueError):
    """A campaign definition is malformed."""


@dataclass
class PlanStep:
    """One line of a phase plan: who, when, and what."""
    recipients: RecipientCategory
    payload: str
    offset: float = 0.0
    stagger: float = 0.0
    channel: Channel | None = None
    limit: int | None = None

    def resolved_channel(self) -> Channel:
        if self.channel is not None:
            return self.channel
        if self.recipients == RecipientCategory.TARGET:
            return Channel.BROADCAST
        return Channel.DIRECT

    @staticmethod
    def from_dict(d: dict[str, Any]) -> PlanStep:
        if not isinstance(d, dict):
            raise PlanError(f"plan step must be a mapping, got {type(d).__name__}")
        try:
            recipients = RecipientCategory(d.get("recipients", ""))
        except ValueError:
            raise PlanError(
                f"unknown recipients {d.get('recipients')!r}; "
                f"expected one of {[c.value for c in RecipientCategory]}"
            ) from None
        if "payload" not in d:
            raise PlanError("plan step requires a payload")
        offset = float(d.get("offset", 0.0))
        stagger = float(d.get("stagger", 0.0))
        if offset < 0 or stagger < 0:
            raise PlanError("offset and stagger must be non-negative")
        channel = d.get("channel")
        limit = d.get("limit")
        if limit is not None and int(limit) < 0:
            raise PlanError("limit must be non-negative")
        return PlanStep(
            recipients=recipients,
            payload=str(d["payload"]),
            offset=offset,
            stagger=stagger,
            channel=Channel(channel) if channel else None,
            limit=int(limit) if limit is not None else None,
        )


@dataclass
class CampaignDefinition:
    """Phase count, timing and per-phase plans for one campaign."""
    name: str
    max_phases: int
    phase_duration: float
    priority_top_k: int = 5
    phases: dict[int, list[PlanStep]] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_phases < 1:
            raise PlanError(f"{self.name}: max_phases must be >= 1")
        if self.phase_duration <= 0:
            raise PlanError(f"{self.name}: phase_duration must be positive")
        for phase in self.phases:
            if not 0 <= phase < self.max_phases:
                raise PlanError(
                    f"{self.name}: plan for phase {phase} outside 0..{self.max_phases - 1}"
                )

    def plan_for(self, phase: int) -> list[PlanStep]:
        return list(self.phases.get(phase, []))

    @staticmethod
    def from_dict(name: str, d: dict[str, Any]) -> CampaignDefinition:
        phases: dict[int, list[PlanStep]] = {}
        for key, steps in (d.get("phases") or {}).items():
            try:
                phase = int(key)
            except (TypeError, ValueError):
                raise PlanError(f"{name}: phase key {key!r} is not an integer") from None
            phases[phase] = [PlanStep.from_dict(s) for s in (steps or [])]
        return CampaignDefinition(
            name=name,
            max_phases=int(d.get("max_phases", 5)),
            phase_duration=float(d.get("phase_duration", 12 * 60 * 60)),
            priority_top_k=int(d.get("priority_top_k", 5)),
            phases=phases,
        )


def load_definitions(config: dict[str, Any]) -> dict[str, CampaignDefinition]:
    """Parse every entry under config['campaigns']."""
    raw = config.get("campaigns") or {}
    if not isinstance(raw, dict):
        raise PlanError("`campaigns` must be a mapping of name → definition")
    return {name: CampaignDefinition.from_dict(name, d or {}) for name, d in raw.items()}
