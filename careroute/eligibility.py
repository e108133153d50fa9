from collections.abc import Callable, Iterable
from datetime import date

from loguru import logger
from pydantic import BaseModel, Field

from careroute.models import WorkRequirements, Worker, WorkerRole
from careroute.scoring import Candidate, calculate_load_score, rank_candidates

LoadFn = Callable[[Worker, date], int]


class EligibilityQuery(BaseModel):
    role: WorkerRole
    requirements: WorkRequirements = Field(default_factory=WorkRequirements)
    load_date: date
    senior_only: bool = False
    exclude_worker_ids: set[str] = Field(default_factory=set)


def static_rejection(worker: Worker, query: EligibilityQuery) -> str | None:
    """
    First hard constraint the worker fails, ignoring current load.
    """
    req = query.requirements

    if worker.id in query.exclude_worker_ids:
        return "excluded"
    if worker.role != query.role:
        return "role"
    if query.senior_only and not worker.senior:
        return "not_senior"
    if not worker.active:
        return "inactive"
    if not worker.verified:
        return "unverified"
    if worker.daily_capacity <= 0:
        return "no_capacity"
    if req.skill is not None and req.skill not in worker.skill_tags:
        return "skill"
    if req.area is not None and req.area not in worker.area_tags:
        return "area"
    if req.city is not None and worker.city != req.city:
        return "city"
    return None


def filter_eligible(
    workers: Iterable[Worker], query: EligibilityQuery, load_of: LoadFn
) -> list[Candidate]:
    """Eligible workers for the query, ranked best first."""
    candidates: list[Candidate] = []
    for worker in workers:
        reason = static_rejection(worker, query)
        active = 0
        if reason is None:
            # point-in-time read; it moves with every assignment
            active = load_of(worker, query.load_date)
            if active >= worker.daily_capacity:
                reason = "at_capacity"
        if reason is not None:
            logger.debug(f"Worker {worker.id} not eligible: {reason}")
            continue

        candidates.append(
            Candidate(
                worker=worker,
                active_count=active,
                load_score=calculate_load_score(active, worker.daily_capacity),
            )
        )

    return rank_candidates(candidates)
