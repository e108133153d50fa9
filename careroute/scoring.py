from datetime import UTC, datetime

from pydantic import BaseModel

from careroute.models import Worker

EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class Candidate(BaseModel):
    worker: Worker
    active_count: int
    load_score: float


def calculate_load_score(active_count: int, daily_capacity: int) -> float:
    if daily_capacity <= 0:
        return 1.0  # treat as fully loaded
    return active_count / daily_capacity


def _last_assigned(worker: Worker) -> datetime:
    ts = worker.last_assigned_at
    if ts is None:
        return EPOCH
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def rank_candidates(candidates: list[Candidate]) -> list[Candidate]:
    """
    Lowest load first; ties go to whoever has waited longest since their
    last assignment (never-assigned first), then to the lowest worker id.
    """
    return sorted(
        candidates,
        key=lambda c: (c.load_score, _last_assigned(c.worker), c.worker.id),
    )
