"""
Load-balanced assignment of work items to workers.

A work item is placed with the least-loaded eligible worker (see
``eligibility`` and ``scoring``). HIGH risk items go through two passes:
seniors only, then everyone, with operators alerted when the second pass
wins. The same entry point serves first assignment and SLA-breach
reassignment; the latter excludes every worker that already held the item.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Iterable, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from functools import partial
from typing import Literal

from loguru import logger
from pydantic import BaseModel

from careroute.config import Settings
from careroute.database import CareRouteDatabase
from careroute.eligibility import EligibilityQuery, LoadFn, filter_eligible
from careroute.errors import Forbidden, InvalidState, NotFound
from careroute.models import (
    Channel,
    Consultation,
    ConsultationStatus,
    LabOrder,
    LabOrderStatus,
    RecipientRole,
    RiskTier,
    WorkItem,
    WorkItemKind,
    WorkRequirements,
    Worker,
    WorkerRole,
)
from careroute.notifier import Notifier
from careroute.scoring import Candidate
from careroute.transitions import (
    CONSULTATION_TRANSITIONS,
    LAB_ORDER_TRANSITIONS,
    TransitionTable,
)

NowFn = Callable[[], datetime]

NO_ELIGIBLE = "no_eligible"


@dataclass(frozen=True)
class WorkflowProfile:
    kind: WorkItemKind
    table: TransitionTable
    worker_role: WorkerRole
    recipient_role: RecipientRole
    pending_status: str  # only status a first assignment starts from
    awaiting_status: str  # worker holds the item and the SLA clock runs
    cancelled_status: str
    open_statuses: frozenset[str]  # count toward load when no roster exists

    def load_date(self, item: WorkItem, now: datetime) -> date:
        if isinstance(item, LabOrder):
            if item.booked_date is None:
                raise InvalidState(f"Lab order {item.id} has no booked date")
            return item.booked_date
        return now.date()

    def held_roster_date(self, item: WorkItem) -> date | None:
        if isinstance(item, LabOrder):
            return item.booked_date
        if item.assigned_at is not None:
            return item.assigned_at.date()
        return None

    def deadline(self, item: WorkItem, now: datetime, settings: Settings) -> datetime:
        """
        When the assigned worker must have acted. Consultations get the risk
        tier's window from now; blood draws are due a grace period after the
        booked slot starts, or after now when the slot has already begun.
        """
        if isinstance(item, LabOrder):
            slot = item.slot_start(settings.slot_tz)
            if slot is None:
                raise InvalidState(f"Lab order {item.id} has no booked date")
            return max(slot, now) + timedelta(hours=settings.collection_grace_hours)
        return now + settings.sla_window(item.risk_tier)


CONSULTATION_PROFILE = WorkflowProfile(
    kind=WorkItemKind.CONSULTATION,
    table=CONSULTATION_TRANSITIONS,
    worker_role=WorkerRole.DOCTOR,
    recipient_role=RecipientRole.DOCTOR,
    pending_status=ConsultationStatus.AI_REVIEWED,
    awaiting_status=ConsultationStatus.DOCTOR_REVIEWING,
    cancelled_status=ConsultationStatus.CANCELLED,
    open_statuses=frozenset(
        {ConsultationStatus.DOCTOR_REVIEWING, ConsultationStatus.NEEDS_INFO}
    ),
)

LAB_ORDER_PROFILE = WorkflowProfile(
    kind=WorkItemKind.LAB_ORDER,
    table=LAB_ORDER_TRANSITIONS,
    worker_role=WorkerRole.PHLEBOTOMIST,
    recipient_role=RecipientRole.PHLEBOTOMIST,
    pending_status=LabOrderStatus.SLOT_BOOKED,
    awaiting_status=LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
    cancelled_status=LabOrderStatus.CANCELLED,
    open_statuses=frozenset(
        {
            LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
            LabOrderStatus.PHLEBOTOMIST_EN_ROUTE,
        }
    ),
)

PROFILES: dict[WorkItemKind, WorkflowProfile] = {
    WorkItemKind.CONSULTATION: CONSULTATION_PROFILE,
    WorkItemKind.LAB_ORDER: LAB_ORDER_PROFILE,
}


def profile_for(item: WorkItem) -> WorkflowProfile:
    if isinstance(item, Consultation):
        return CONSULTATION_PROFILE
    if isinstance(item, LabOrder):
        return LAB_ORDER_PROFILE
    raise InvalidState(f"Unsupported work item type: {type(item).__name__}")


class Assigned(BaseModel):
    assigned: Literal[True] = True
    item_id: str
    worker_id: str
    worker_name: str
    load_score: float
    deadline: datetime
    reassigned: bool = False
    senior_fallback: bool = False


class NotAssigned(BaseModel):
    assigned: Literal[False] = False
    item_id: str
    reason: str


AssignmentResult = Assigned | NotAssigned


class EligibleWorkers(BaseModel):
    candidates: list[Candidate]
    senior_fallback: bool = False


class AssignmentCommit(BaseModel):
    """Every field an assignment writes to a work item."""

    assigned_worker_id: str
    status: str
    assigned_at: datetime
    deadline: datetime
    previous_worker_ids: list[str]

    def apply(self, item: WorkItem, table: TransitionTable) -> WorkItem:
        update = self.model_dump()
        stamp = table.timestamp_field(self.status)
        if stamp is not None:
            update[stamp] = self.assigned_at
        return item.model_copy(update=update)


class AssignmentScheduler:
    def __init__(
        self,
        db: CareRouteDatabase,
        notifier: Notifier,
        settings: Settings,
        *,
        now_fn: NowFn = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._notifier = notifier
        self._settings = settings
        self._now = now_fn
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def item_lock(self, item_id: str) -> AsyncIterator[None]:
        """Serializes state changes for one work item."""
        lock = self._locks.setdefault(item_id, asyncio.Lock())
        self._lock_users[item_id] = self._lock_users.get(item_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[item_id] -= 1
            if self._lock_users[item_id] == 0:
                del self._lock_users[item_id]
                del self._locks[item_id]

    def _load_of(self, profile: WorkflowProfile) -> LoadFn:
        def load(worker: Worker, day: date) -> int:
            return self._db.worker_load(worker.id, day, profile.open_statuses)

        return load

    def _passes(
        self,
        profile: WorkflowProfile,
        requirements: WorkRequirements,
        risk_tier: RiskTier,
        exclude: set[str],
        load_date: date,
    ) -> Iterator[EligibleWorkers]:
        """
        Ranked candidate lists in the order they should be tried. HIGH risk
        items get seniors first, then everyone; each pass is ranked lazily
        so it sees the loads left by earlier commit attempts.
        """
        query = EligibilityQuery(
            role=profile.worker_role,
            requirements=requirements,
            load_date=load_date,
            exclude_worker_ids=exclude,
        )
        load_of = self._load_of(profile)

        if risk_tier != RiskTier.HIGH:
            yield EligibleWorkers(candidates=filter_eligible(self._db.workers(), query, load_of))
            return

        yield EligibleWorkers(
            candidates=filter_eligible(
                self._db.workers(), query.model_copy(update={"senior_only": True}), load_of
            )
        )
        yield EligibleWorkers(
            candidates=filter_eligible(self._db.workers(), query, load_of),
            senior_fallback=True,
        )

    def get_eligible_workers(
        self,
        kind: WorkItemKind,
        requirements: WorkRequirements,
        risk_tier: RiskTier = RiskTier.LOW,
        exclude_worker_ids: Iterable[str] = (),
        load_date: date | None = None,
    ) -> EligibleWorkers:
        """Ranked candidates for the given requirements. Read-only."""
        for ranked in self._passes(
            PROFILES[kind],
            requirements,
            risk_tier,
            set(exclude_worker_ids),
            load_date or self._now().date(),
        ):
            if ranked.candidates:
                return ranked
        return EligibleWorkers(candidates=[])

    async def assign(
        self, item_id: str, exclude_worker_ids: Iterable[str] = ()
    ) -> AssignmentResult:
        """
        Place a work item with the best eligible worker.

        Items in the pre-assignment status get their first worker. Items
        already awaiting worker action are moved away from the current
        worker, who is excluded and recorded in ``previous_worker_ids``;
        this needs a non-empty exclusion set so that a repeated first
        assignment can't bounce the item.

        Raises NotFound / InvalidState before any write. Returns NotAssigned
        (after alerting operators) when nobody is eligible.
        """
        async with self.item_lock(item_id):
            result, outbox = self._assign_locked(item_id, set(exclude_worker_ids))

        # fire-and-forget, outside the lock
        for send in outbox:
            send()
        return result

    async def reassign(
        self, item_id: str, exclude_worker_ids: Iterable[str]
    ) -> AssignmentResult:
        item = self._require(item_id)
        profile = profile_for(item)
        if item.status != profile.awaiting_status:
            raise InvalidState(
                f"Cannot reassign work item {item_id} in {item.status}. "
                f"Must be {profile.awaiting_status}."
            )
        exclude = set(exclude_worker_ids)
        if item.assigned_worker_id is not None:
            exclude.add(item.assigned_worker_id)
        return await self.assign(item_id, exclude)

    def _require(self, item_id: str) -> WorkItem:
        item = self._db.get_work_item(item_id)
        if item is None:
            raise NotFound(f"Work item {item_id} not found")
        return item

    def _assign_locked(
        self, item_id: str, exclude: set[str]
    ) -> tuple[AssignmentResult, list[Callable[[], None]]]:
        item = self._require(item_id)
        profile = profile_for(item)

        reassigning = item.status == profile.awaiting_status
        if item.status != profile.pending_status and not reassigning:
            raise InvalidState(
                f"Cannot assign work item {item_id} in {item.status}. "
                f"Must be {profile.pending_status}."
            )
        # a repeated first-assignment request must not bounce the item
        if reassigning and not exclude:
            raise InvalidState(
                f"Work item {item_id} is already assigned to {item.assigned_worker_id}"
            )

        now = self._now()
        load_date = profile.load_date(item, now)
        previous = item.assigned_worker_id if reassigning else None

        exclude = exclude | set(item.previous_worker_ids)
        if previous is not None:
            exclude.add(previous)

        tried: set[str] = set()
        for ranked in self._passes(profile, item.requirements, item.risk_tier, exclude, load_date):
            for candidate in ranked.candidates:
                if candidate.worker.id in tried:
                    continue
                tried.add(candidate.worker.id)
                committed = self._commit(item, profile, candidate, load_date, now, previous)
                if committed is not None:
                    committed.senior_fallback = (
                        ranked.senior_fallback and not candidate.worker.senior
                    )
                    return committed, self._assignment_outbox(item, profile, committed, now)
                logger.info(
                    f"Worker {candidate.worker.id} filled up before commit, trying next candidate"
                )

        logger.warning(
            f"No eligible {profile.worker_role} for {profile.kind} {item_id} "
            f"(excluded: {sorted(exclude)})"
        )
        alert = partial(
            self._notifier.notify_operators,
            "NO_ELIGIBLE_WORKER",
            f"No Available {profile.worker_role.title()}",
            f"No eligible {profile.worker_role.lower()} for {profile.kind} {item_id}. "
            "Please onboard or enable a worker.",
            {
                "item_id": item_id,
                "risk_tier": item.risk_tier,
                "reassignment": reassigning,
                "excluded_worker_ids": sorted(exclude),
            },
        )
        return NotAssigned(item_id=item_id, reason=NO_ELIGIBLE), [alert]

    def _commit(
        self,
        item: WorkItem,
        profile: WorkflowProfile,
        candidate: Candidate,
        load_date: date,
        now: datetime,
        previous: str | None,
    ) -> Assigned | None:
        """
        Roster increment and item update as one unit. Returns None, with
        nothing written, when the capacity re-check fails.
        """
        worker = candidate.worker

        with self._db.transaction():
            roster = self._db.increment_roster_if_below(
                worker.id, load_date, worker.daily_capacity, profile.open_statuses
            )
            if roster is None:
                return None

            if previous is None:
                profile.table.guard(item.status, profile.awaiting_status)
                history = list(item.previous_worker_ids)
            else:
                held = profile.held_roster_date(item)
                if held is not None:
                    self._db.decrement_roster(previous, held)
                history = list(item.previous_worker_ids)
                if previous not in history:
                    history.append(previous)

            deadline = profile.deadline(item, now, self._settings)
            commit = AssignmentCommit(
                assigned_worker_id=worker.id,
                status=profile.awaiting_status,
                assigned_at=now,
                deadline=deadline,
                previous_worker_ids=history,
            )
            self._db.put_work_item(commit.apply(item, profile.table))
            self._db.put_worker(worker.model_copy(update={"last_assigned_at": now}))

        logger.info(
            f"{'Reassigned' if previous else 'Assigned'} {profile.kind} {item.id} to "
            f"{worker.name} ({worker.id}) (load: {candidate.load_score:.2f}, "
            f"deadline: {deadline.isoformat()})"
        )
        return Assigned(
            item_id=item.id,
            worker_id=worker.id,
            worker_name=worker.name,
            load_score=candidate.load_score,
            deadline=deadline,
            reassigned=previous is not None,
        )

    def _assignment_outbox(
        self,
        item: WorkItem,
        profile: WorkflowProfile,
        result: Assigned,
        now: datetime,
    ) -> list[Callable[[], None]]:
        hours = round((result.deadline - now).total_seconds() / 3600, 2)
        title = "New Case Assigned (Reassigned)" if result.reassigned else "New Case Assigned"

        outbox: list[Callable[[], None]] = [
            partial(
                self._notifier.notify,
                result.worker_id,
                profile.recipient_role,
                Channel.PUSH,
                "CASE_ASSIGNED",
                title,
                f"New {profile.kind} assigned. Attention: {item.risk_tier}. "
                f"Please act within {hours:g}h.",
                {
                    "item_id": item.id,
                    "risk_tier": item.risk_tier,
                    "sla_hours": hours,
                    "reassignment": result.reassigned,
                },
            )
        ]

        if isinstance(item, LabOrder):
            outbox.append(
                partial(
                    self._notifier.notify,
                    item.requester_id,
                    RecipientRole.PATIENT,
                    Channel.PUSH,
                    "LAB_PHLEBOTOMIST_ASSIGNED",
                    "Phlebotomist Assigned",
                    f"{result.worker_name} has been assigned for your blood draw "
                    f"on {item.booked_date}.",
                )
            )

        if result.senior_fallback:
            outbox.append(
                partial(
                    self._notifier.notify_operators,
                    "HIGH_RISK_NON_SENIOR",
                    "High-Risk Case - Non-Senior Worker",
                    f"High-risk {profile.kind} {item.id} assigned to non-senior "
                    f"{result.worker_name} because no senior was available.",
                    {"item_id": item.id, "worker_id": result.worker_id},
                )
            )

        return outbox

    def release(self, item: WorkItem) -> None:
        """Give back the roster slot an item holds (compensating decrement)."""
        if item.assigned_worker_id is None:
            return
        held = profile_for(item).held_roster_date(item)
        if held is not None:
            self._db.decrement_roster(item.assigned_worker_id, held)

    async def cancel(self, item_id: str, requester_id: str, reason: str) -> WorkItem:
        async with self.item_lock(item_id):
            item = self._require(item_id)
            if item.requester_id != requester_id:
                raise Forbidden("You can only cancel your own work items")

            profile = profile_for(item)
            profile.table.guard(item.status, profile.cancelled_status)

            now = self._now()
            update: dict = {
                "status": profile.cancelled_status,
                "cancellation_reason": reason,
            }
            stamp = profile.table.timestamp_field(profile.cancelled_status)
            if stamp is not None:
                update[stamp] = now

            with self._db.transaction():
                if item.status == profile.awaiting_status:
                    self.release(item)
                updated = item.model_copy(update=update)
                self._db.put_work_item(updated)

        logger.info(f"Cancelled {profile.kind} {item_id}: {reason}")
        return updated
