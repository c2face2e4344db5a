"""
Campaign Orchestrator — Influence Scorer

Pure ranking of candidate recipients by a weighted activity score:

    score = 0.3*message_count + 0.3*response_rate + 0.2*mention_count + 0.2*recency

Metrics come from the caller (whatever tracks group activity); missing
or non-numeric values count as zero. Ranking is a total order: score
descending, then participant id ascending so equal scores are stable
across runs.
"""

from __future__ import annotations

import math
from typing import Any, Iterable, Mapping

WEIGHTS: dict[str, float] = {
    "message_count": 0.3,
    "response_rate": 0.3,
    "mention_count": 0.2,
    "recency": 0.2,
}


def check_weights(weights: Mapping[str, float]) -> None:
    if not math.isclose(sum(weights.values()), 1.0):
        raise ValueError(f"influence weights must sum to 1.0, got {sum(weights.values())}")


check_weights(WEIGHTS)

# Alternate spellings accepted from activity feeds
_ALIASES: dict[str, tuple[str, ...]] = {
    "message_count": ("messageCount",),
    "response_rate": ("responseRate",),
    "mention_count": ("mentionCount",),
    "recency": ("recentActivity", "recent_activity"),
}


def _metric(metrics: Mapping[str, Any], name: str) -> float:
    for key in (name, *_ALIASES.get(name, ())):
        if key in metrics:
            value = metrics[key]
            if isinstance(value, bool):
                return float(value)
            if isinstance(value, (int, float)) and math.isfinite(value):
                return float(value)
            return 0.0
    return 0.0


def score(metrics: Mapping[str, Any] | None) -> float:
    """Weighted influence score for one participant's metrics."""
    if not metrics:
        return 0.0
    return sum(weight * _metric(metrics, name) for name, weight in WEIGHTS.items())


def score_all(
    participant_ids: Iterable[str],
    metrics_by_id: Mapping[str, Mapping[str, Any]] | None,
) -> dict[str, float]:
    """Score every participant; participants without metrics score 0."""
    metrics_by_id = metrics_by_id or {}
    return {pid: score(metrics_by_id.get(pid)) for pid in participant_ids}


def rank(
    participant_ids: Iterable[str],
    metrics_by_id: Mapping[str, Mapping[str, Any]] | None,
) -> list[str]:
    """Participants ordered by score descending, ties by id ascending."""
    scores = score_all(participant_ids, metrics_by_id)
    return sorted(scores, key=lambda pid: (-scores[pid], pid))
