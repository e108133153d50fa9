from collections.abc import Callable, Iterable, Iterator, MutableMapping
from contextlib import contextmanager
from datetime import date
from typing import Generic, TypeVar

from careroute.models import DailyRoster, WorkItem, Worker

K = TypeVar("K")
V = TypeVar("V")

Record = WorkItem | Worker | DailyRoster


def work_item_key(item_id: str) -> str:
    return f"work_item:{item_id}"


def worker_key(worker_id: str) -> str:
    return f"worker:{worker_id}"


def roster_key(worker_id: str, day: date) -> str:
    return f"roster:{worker_id}:{day.isoformat()}"


class InMemoryKeyValueDatabase(Generic[K, V]):
    """
    Simple in-memory key/value database.
    """

    def __init__(self) -> None:
        self._store: MutableMapping[K, V] = {}

    def put(self, key: K, value: V) -> None:
        self._store[key] = value

    def get(self, key: K) -> V | None:
        return self._store.get(key)

    def delete(self, key: K) -> None:
        self._store.pop(key, None)

    def all(self) -> list[V]:
        return list(self._store.values())

    def clear(self) -> None:
        self._store.clear()

    def __iter__(self) -> Iterator[V]:
        return iter(self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        All-or-nothing block: on exception the store is restored to the
        snapshot taken on entry. Records must be replaced via put(), never
        mutated in place, for the snapshot to hold.
        """
        snapshot = dict(self._store)
        try:
            yield
        except BaseException:
            self._store.clear()
            self._store.update(snapshot)
            raise


class CareRouteDatabase(InMemoryKeyValueDatabase[str, Record]):
    """
    Typed access to work items, workers and daily rosters.
    """

    def get_work_item(self, item_id: str) -> WorkItem | None:
        value = self.get(work_item_key(item_id))
        return value if isinstance(value, WorkItem) else None

    def put_work_item(self, item: WorkItem) -> None:
        self.put(work_item_key(item.id), item)

    def get_worker(self, worker_id: str) -> Worker | None:
        value = self.get(worker_key(worker_id))
        return value if isinstance(value, Worker) else None

    def put_worker(self, worker: Worker) -> None:
        self.put(worker_key(worker.id), worker)

    def workers(self) -> list[Worker]:
        return [v for v in self.all() if isinstance(v, Worker)]

    def work_items(
        self, predicate: Callable[[WorkItem], bool] | None = None
    ) -> list[WorkItem]:
        return [
            v
            for v in self.all()
            if isinstance(v, WorkItem) and (predicate is None or predicate(v))
        ]

    def get_roster(self, worker_id: str, day: date) -> DailyRoster | None:
        value = self.get(roster_key(worker_id, day))
        return value if isinstance(value, DailyRoster) else None

    def put_roster(self, roster: DailyRoster) -> None:
        self.put(roster_key(roster.worker_id, roster.day), roster)

    def count_open_assignments(self, worker_id: str, open_statuses: Iterable[str]) -> int:
        open_statuses = set(open_statuses)
        return sum(
            1
            for item in self.work_items()
            if item.assigned_worker_id == worker_id and item.status in open_statuses
        )

    def worker_load(self, worker_id: str, day: date, open_statuses: Iterable[str]) -> int:
        """
        Bookings a worker holds for ``day``: the roster total once a roster
        row exists, otherwise the live count of open assignments. Both the
        eligibility filter and the capacity re-check read this.
        """
        roster = self.get_roster(worker_id, day)
        if roster is not None:
            return roster.total_bookings
        return self.count_open_assignments(worker_id, open_statuses)

    def increment_roster_if_below(
        self, worker_id: str, day: date, capacity: int, open_statuses: Iterable[str] = ()
    ) -> DailyRoster | None:
        """
        Atomically add one booking if the worker is still under capacity.
        Returns the updated roster, or None if the slot is gone.

        A missing roster row is created with the live open-assignment
        count, so the first booking of the day is checked against the same
        load the eligibility filter saw.
        """
        # no awaits between the read and the write
        roster = self.get_roster(worker_id, day) or DailyRoster(
            worker_id=worker_id,
            day=day,
            total_bookings=self.count_open_assignments(worker_id, open_statuses),
        )
        if capacity <= 0 or roster.total_bookings >= capacity:
            return None
        updated = roster.model_copy(
            update={"total_bookings": roster.total_bookings + 1}
        )
        self.put_roster(updated)
        return updated

    def decrement_roster(self, worker_id: str, day: date) -> DailyRoster | None:
        roster = self.get_roster(worker_id, day)
        if roster is None:
            return None
        updated = roster.model_copy(
            update={"total_bookings": max(0, roster.total_bookings - 1)}
        )
        self.put_roster(updated)
        return updated

    def bump_roster_counter(self, worker_id: str, day: date, field: str) -> None:
        roster = self.get_roster(worker_id, day)
        if roster is None:
            return
        self.put_roster(
            roster.model_copy(update={field: getattr(roster, field) + 1})
        )
