"""
Campaign Orchestrator - Campaign Package

Phased, time-triggered campaigns run against a target entity. Progress
is persisted so a restarted process picks up where it left off, and
scheduled payloads are only ever marked ready; an external sender polls
for them and confirms delivery.

Usage:
    from campaign import CampaignEngine

    engine = CampaignEngine()
    engine.start()
    result = engine.initiate("group-42", "admin-1", ["u1", "u2"], metrics)
"""

from campaign.types import (
    Channel,
    MessageStatus,
    Operation,
    OperationStatus,
    ScheduledMessage,
)
from campaign.result import (
    DuplicateActiveOperation,
    Err,
    ErrorKind,
    Ok,
    PersistenceError,
    Result,
)
from campaign.plans import CampaignDefinition, PlanStep, RecipientCategory
from campaign.store import CampaignStore
from campaign.timers import ManualTimerService, ThreadTimerService, TimerService
from campaign.runtime import CampaignEngine

__all__ = [
    "CampaignEngine",
    "CampaignStore",
    "CampaignDefinition",
    "PlanStep",
    "RecipientCategory",
    "Operation",
    "OperationStatus",
    "ScheduledMessage",
    "MessageStatus",
    "Channel",
    "Ok",
    "Err",
    "ErrorKind",
    "Result",
    "PersistenceError",
    "DuplicateActiveOperation",
    "TimerService",
    "ThreadTimerService",
    "ManualTimerService",
]
