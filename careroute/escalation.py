"""
SLA breach detection and bounded reassignment.

``run_escalation_scan`` is a plain coroutine: the periodic wiring lives in
``PeriodicTask`` and is started by the app lifespan.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from loguru import logger
from pydantic import BaseModel

from careroute.config import Settings
from careroute.database import CareRouteDatabase
from careroute.models import Channel, WorkItem
from careroute.notifier import Notifier
from careroute.scheduler import AssignmentScheduler, profile_for

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]


class ScanReport(BaseModel):
    processed: int = 0
    reassigned: int = 0
    not_assigned: int = 0
    max_bounces: int = 0
    skipped: int = 0
    failed: int = 0


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


def is_breached(item: WorkItem, now: datetime) -> bool:
    return (
        item.status == profile_for(item).awaiting_status
        and item.deadline is not None
        and _aware(item.deadline) < now
    )


def exclusion_set(item: WorkItem) -> list[str]:
    """Every distinct worker who has held the item, current one last."""
    ids = list(item.previous_worker_ids)
    if item.assigned_worker_id is not None:
        ids.append(item.assigned_worker_id)
    return list(dict.fromkeys(ids))


class EscalationTimer:
    def __init__(
        self,
        db: CareRouteDatabase,
        scheduler: AssignmentScheduler,
        notifier: Notifier,
        settings: Settings,
        *,
        now_fn: NowFn = lambda: datetime.now(UTC),
    ) -> None:
        self._db = db
        self._scheduler = scheduler
        self._notifier = notifier
        self._settings = settings
        self._now = now_fn

    def find_breached(self) -> list[WorkItem]:
        now = self._now()
        breached = self._db.work_items(lambda item: is_breached(item, now))
        return sorted(breached, key=lambda item: (_aware(item.deadline), item.id))

    async def run_escalation_scan(self) -> ScanReport:
        logger.info("Running SLA breach check...")
        report = ScanReport()

        for item in self.find_breached():
            report.processed += 1
            try:
                outcome = await self._escalate(item.id)
            except Exception:
                # one bad item must not stop the scan
                logger.exception(f"Failed to process SLA breach for work item {item.id}")
                report.failed += 1
                continue
            setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info(
            f"SLA breach check complete. Processed {report.processed} items "
            f"(reassigned={report.reassigned}, not_assigned={report.not_assigned}, "
            f"max_bounces={report.max_bounces}, skipped={report.skipped}, failed={report.failed})"
        )
        return report

    async def _escalate(self, item_id: str) -> str:
        item = self._db.get_work_item(item_id)
        # the worker may have acted since the breach query
        if item is None or not is_breached(item, self._now()):
            return "skipped"

        exclude = exclusion_set(item)

        # len > max: with 3 previous holders plus the current one, stop
        if len(exclude) > self._settings.max_bounces:
            logger.warning(
                f"Max bounces ({self._settings.max_bounces}) reached for work item "
                f"{item.id}. Sending urgent alert."
            )
            self._notifier.notify_operators(
                "SLA_MAX_BOUNCES",
                f"URGENT: Case Bounced {self._settings.max_bounces}+ Times",
                f"Case {item.id} has been held by {len(exclude)} workers. "
                "Manual intervention required.",
                {
                    "item_id": item.id,
                    "previous_worker_ids": exclude,
                    "bounce_count": len(exclude),
                },
                channel=Channel.IN_APP,
            )
            return "max_bounces"

        self._notifier.notify_operators(
            "SLA_BREACH",
            "SLA Breach Detected",
            f"Worker {item.assigned_worker_id or 'unknown'} missed SLA for case {item.id}. "
            "Attempting reassignment.",
            {"item_id": item.id, "worker_id": item.assigned_worker_id},
        )

        result = await self._scheduler.assign(item.id, exclude)
        if result.assigned:
            logger.info(f"SLA breach: work item {item.id} reassigned to {result.worker_name}")
            return "reassigned"

        logger.warning(
            f"SLA breach: work item {item.id} could not be reassigned - {result.reason}"
        )
        return "not_assigned"


class PeriodicTask:
    """Runs ``fn`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        interval: float,
        fn: Callable[[], Awaitable[object]],
        *,
        sleep_fn: SleepFn = asyncio.sleep,
    ) -> None:
        self.name = name
        self.interval = interval
        self._fn = fn
        self._sleep = sleep_fn
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=self.name)
        return self._task

    async def _run(self) -> None:
        try:
            while True:
                await self._sleep(self.interval)
                try:
                    await self._fn()
                except Exception:
                    logger.exception(f"Periodic task {self.name} failed")
        except asyncio.CancelledError:
            return

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None


def register_periodic_task(
    name: str,
    interval: float,
    fn: Callable[[], Awaitable[object]],
    *,
    sleep_fn: SleepFn = asyncio.sleep,
) -> PeriodicTask:
    task = PeriodicTask(name, interval, fn, sleep_fn=sleep_fn)
    task.start()
    logger.info(f"Registered periodic task {name} every {interval:g}s")
    return task
