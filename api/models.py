"""
Campaign Orchestrator — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, worker, and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any

from campaign.result import Err, ErrorKind

# HTTP status for each engine error kind
STATUS_FOR_ERROR = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.PERSISTENCE: 503,
}


@dataclass
class InitiateRequest:
    """POST /v1/operations request body."""
    target_id: str
    initiator_id: str
    participant_ids: list[str] = field(default_factory=list)
    initial_metrics: dict[str, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    campaign: str | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> InitiateRequest:
        return cls(
            target_id=body.get("target_id", ""),
            initiator_id=body.get("initiator_id", ""),
            participant_ids=body.get("participant_ids", []),
            initial_metrics=body.get("initial_metrics", {}),
            metadata=body.get("metadata", {}),
            campaign=body.get("campaign"),
        )

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.target_id or not isinstance(self.target_id, str):
            errors.append("target_id is required and must be a string")
        if not self.initiator_id or not isinstance(self.initiator_id, str):
            errors.append("initiator_id is required and must be a string")
        if not isinstance(self.participant_ids, list) or not all(
            isinstance(p, str) for p in self.participant_ids
        ):
            errors.append("participant_ids must be a list of strings")
        if not isinstance(self.initial_metrics, dict) or not all(
            isinstance(m, dict) for m in self.initial_metrics.values()
        ):
            errors.append("initial_metrics must map participant id to a metrics object")
        if not isinstance(self.metadata, dict):
            errors.append("metadata must be an object")
        if self.campaign is not None and not isinstance(self.campaign, str):
            errors.append("campaign must be a string")
        return errors


@dataclass
class InitiateResponse:
    """POST /v1/operations response."""
    operation_id: str
    target_id: str
    status: str = "active"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AdvanceRequest:
    """POST /v1/operations/{id}/advance request body (optional)."""
    expected_phase: int | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> AdvanceRequest:
        return cls(expected_phase=body.get("expected_phase"))

    def validate(self) -> list[str]:
        if self.expected_phase is None:
            return []
        if isinstance(self.expected_phase, bool) or not isinstance(self.expected_phase, int):
            return ["expected_phase must be an integer"]
        if self.expected_phase < 0:
            return ["expected_phase must be non-negative"]
        return []


@dataclass
class ErrorBody:
    """Body returned for every non-2xx engine outcome."""
    error: str
    detail: str

    @classmethod
    def of(cls, err: Err) -> ErrorBody:
        return cls(error=err.kind.value, detail=err.detail)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
