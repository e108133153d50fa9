"""
Physical hand-off chain for blood-draw orders.

PHLEBOTOMIST_ASSIGNED -> PHLEBOTOMIST_EN_ROUTE -> SAMPLE_COLLECTED |
COLLECTION_FAILED -> SAMPLE_IN_TRANSIT -> DELIVERED_TO_LAB -> SAMPLE_RECEIVED,
with COLLECTION_FAILED -> SLOT_BOOKED (rebook, then automatic assignment)
closing the loop. A patient may also move a booked draw to another slot up
to a cutoff before it starts; the held phlebotomist booking is released.

Every operation checks, in order and before writing anything: the order
exists, the actor is the assigned phlebotomist, the edge is in
LAB_ORDER_TRANSITIONS. The fasting and tube-count checks raise flags and
alerts but never block the transition.
"""

from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta

from loguru import logger
from pydantic import BaseModel

from careroute.config import Settings
from careroute.database import CareRouteDatabase
from careroute.errors import Forbidden, InvalidState, NotFound, ValidationError
from careroute.models import Channel, LabOrder, LabOrderStatus, RecipientRole
from careroute.notifier import Notifier
from careroute.scheduler import AssignmentResult, AssignmentScheduler
from careroute.transitions import LAB_ORDER_TRANSITIONS

NowFn = Callable[[], datetime]

BOOKABLE_FROM = {
    LabOrderStatus.ORDERED,
    LabOrderStatus.PAYMENT_COMPLETED,
    LabOrderStatus.COLLECTION_FAILED,
}

RESCHEDULABLE_FROM = {
    LabOrderStatus.SLOT_BOOKED,
    LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
}


def _parse_slot(time_slot: str) -> time:
    """Start time of an "HH:MM-HH:MM" slot."""
    try:
        return time.fromisoformat(time_slot.split("-")[0].strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid time slot: {time_slot!r}") from exc


class CollectionUpdate(BaseModel):
    """Fields a collection step may write besides status and its stamp."""

    booked_date: date | None = None
    booked_time_slot: str | None = None
    slot_booked_at: datetime | None = None
    assigned_worker_id: str | None = None
    assigned_at: datetime | None = None
    deadline: datetime | None = None
    phlebotomist_assigned_at: datetime | None = None
    patient_not_fasting: bool | None = None
    tube_count: int | None = None
    received_tube_count: int | None = None
    tube_count_mismatch: bool | None = None
    collection_attempts: int | None = None
    collection_failed_reason: str | None = None


class BookingResult(BaseModel):
    order: LabOrder
    assignment: AssignmentResult | None = None


class CollectionStateMachine:
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

    def _load(self, order_id: str) -> LabOrder:
        order = self._db.get_work_item(order_id)
        if not isinstance(order, LabOrder):
            raise NotFound(f"Lab order {order_id} not found")
        return order

    @staticmethod
    def _check_actor(order: LabOrder, worker_id: str) -> None:
        if order.assigned_worker_id != worker_id:
            raise Forbidden("You are not assigned to this collection")

    def _write(
        self,
        order: LabOrder,
        to_status: LabOrderStatus | None,
        change: CollectionUpdate,
    ) -> LabOrder:
        update = change.model_dump(exclude_unset=True)
        if to_status is not None:
            LAB_ORDER_TRANSITIONS.guard(order.status, to_status)
            update["status"] = to_status
            stamp = LAB_ORDER_TRANSITIONS.timestamp_field(to_status)
            if stamp is not None:
                update[stamp] = self._now()
        updated = order.model_copy(update=update)
        self._db.put_work_item(updated)
        return updated

    async def book_slot(
        self,
        order_id: str,
        requester_id: str,
        booked_date: date,
        time_slot: str,
        *,
        auto_assign: bool = True,
    ) -> BookingResult:
        """Book (or rebook after a failed draw) and hand to the scheduler."""
        _parse_slot(time_slot)
        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            if order.requester_id != requester_id:
                raise Forbidden("You can only book slots for your own lab orders")
            if order.status not in BOOKABLE_FROM:
                raise InvalidState(f"Cannot book slot for lab order in {order.status} status")

            if order.status == LabOrderStatus.COLLECTION_FAILED:
                # rebooking clears the old phlebotomist
                change = CollectionUpdate(
                    booked_date=booked_date,
                    booked_time_slot=time_slot,
                    assigned_worker_id=None,
                    assigned_at=None,
                    deadline=None,
                    phlebotomist_assigned_at=None,
                )
            else:
                change = CollectionUpdate(booked_date=booked_date, booked_time_slot=time_slot)
            order = self._write(order, LabOrderStatus.SLOT_BOOKED, change)

        logger.info(f"Slot booked for lab order {order_id} on {booked_date} {time_slot}")

        assignment = None
        if auto_assign:
            assignment = await self._scheduler.assign(order_id)
            order = self._load(order_id)
        return BookingResult(order=order, assignment=assignment)

    async def reschedule_slot(
        self,
        order_id: str,
        requester_id: str,
        new_date: date,
        time_slot: str,
        *,
        auto_assign: bool = True,
    ) -> BookingResult:
        """
        Move a booked draw to another slot. The old phlebotomist's roster
        booking is released and the order goes back through assignment for
        the new date.
        """
        _parse_slot(time_slot)
        now = self._now()

        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            if order.requester_id != requester_id:
                raise Forbidden("You can only reschedule your own lab orders")
            if order.status not in RESCHEDULABLE_FROM:
                raise InvalidState(f"Cannot reschedule lab order in {order.status} status")

            slot = order.slot_start(self._settings.slot_tz)
            cutoff = timedelta(hours=self._settings.reschedule_cutoff_hours)
            if slot is not None and slot - now < cutoff:
                raise InvalidState(
                    f"Cannot reschedule within {self._settings.reschedule_cutoff_hours:g} "
                    "hours of the booked slot"
                )

            change = CollectionUpdate(
                booked_date=new_date,
                booked_time_slot=time_slot,
                slot_booked_at=now,
                assigned_worker_id=None,
                assigned_at=None,
                deadline=None,
                phlebotomist_assigned_at=None,
            )
            # an unassigned SLOT_BOOKED order keeps its status
            to_status = (
                LabOrderStatus.SLOT_BOOKED
                if order.status != LabOrderStatus.SLOT_BOOKED
                else None
            )
            with self._db.transaction():
                self._scheduler.release(order)
                order = self._write(order, to_status, change)

        logger.info(f"Lab order {order_id} rescheduled to {new_date} {time_slot}")

        assignment = None
        if auto_assign:
            assignment = await self._scheduler.assign(order_id)
            order = self._load(order_id)
        return BookingResult(order=order, assignment=assignment)


    async def mark_en_route(self, order_id: str, worker_id: str) -> LabOrder:
        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            self._check_actor(order, worker_id)
            updated = self._write(order, LabOrderStatus.PHLEBOTOMIST_EN_ROUTE, CollectionUpdate())

        self._notifier.notify(
            order.requester_id,
            RecipientRole.PATIENT,
            Channel.PUSH,
            "PHLEBOTOMIST_EN_ROUTE",
            "Phlebotomist On the Way",
            "Your phlebotomist is on the way for your blood draw.",
        )
        return updated

    async def verify_fasting(
        self, order_id: str, worker_id: str, patient_has_fasted: bool
    ) -> LabOrder:
        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            self._check_actor(order, worker_id)
            if order.status not in {
                LabOrderStatus.PHLEBOTOMIST_ASSIGNED,
                LabOrderStatus.PHLEBOTOMIST_EN_ROUTE,
            }:
                raise InvalidState(f"Cannot verify fasting for lab order in {order.status} status")
            if not order.requires_fasting:
                return order

            updated = self._write(
                order, None, CollectionUpdate(patient_not_fasting=not patient_has_fasted)
            )

        if not patient_has_fasted:
            logger.warning(f"Patient did not fast for lab order {order_id}")
            self._notifier.notify(
                order.ordering_doctor_id,
                RecipientRole.DOCTOR,
                Channel.PUSH,
                "PATIENT_NOT_FASTING",
                "Patient Did Not Fast",
                f"Patient did not fast before fasting-required blood work (Order: {order_id}). "
                "Results may be affected.",
                {"order_id": order_id},
            )
        return updated

    async def mark_collected(self, order_id: str, worker_id: str, tube_count: int) -> LabOrder:
        if tube_count <= 0:
            raise ValidationError("Tube count must be at least 1")

        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            self._check_actor(order, worker_id)
            with self._db.transaction():
                updated = self._write(
                    order,
                    LabOrderStatus.SAMPLE_COLLECTED,
                    CollectionUpdate(tube_count=tube_count),
                )
                if order.booked_date is not None:
                    self._db.bump_roster_counter(
                        worker_id, order.booked_date, "completed_collections"
                    )

        logger.info(f"Sample collected for lab order {order_id}: {tube_count} tubes")
        return updated

    async def mark_failed(self, order_id: str, worker_id: str, reason: str) -> LabOrder:
        if not reason.strip():
            raise ValidationError("A failure reason is required")

        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            self._check_actor(order, worker_id)
            attempts = order.collection_attempts + 1
            with self._db.transaction():
                updated = self._write(
                    order,
                    LabOrderStatus.COLLECTION_FAILED,
                    CollectionUpdate(collection_attempts=attempts, collection_failed_reason=reason),
                )
                if order.booked_date is not None:
                    self._db.bump_roster_counter(
                        worker_id, order.booked_date, "failed_collections"
                    )

        logger.warning(f"Collection failed for lab order {order_id} (attempt {attempts}): {reason}")
        self._notifier.notify(
            order.requester_id,
            RecipientRole.PATIENT,
            Channel.PUSH,
            "LAB_COLLECTION_FAILED",
            "Blood Collection Could Not Be Completed",
            f"Your blood collection could not be completed: {reason}. Please rebook a slot.",
        )

        # independent of the SLA bounce count
        if attempts >= self._settings.collection_failure_alert_threshold:
            self._notifier.notify_operators(
                "COLLECTION_FAILED_MULTIPLE",
                "Multiple Collection Failures",
                f"Lab order {order_id} has {attempts} failed collection attempts. "
                "Manual intervention may be needed.",
                {"order_id": order_id, "attempts": attempts},
                channel=Channel.PUSH,
            )
        return updated

    async def mark_in_transit(self, order_id: str, worker_id: str) -> LabOrder:
        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            self._check_actor(order, worker_id)
            return self._write(order, LabOrderStatus.SAMPLE_IN_TRANSIT, CollectionUpdate())

    async def mark_delivered(
        self, order_id: str, worker_id: str, received_tube_count: int
    ) -> LabOrder:
        if received_tube_count <= 0:
            raise ValidationError("Received tube count must be at least 1")

        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            self._check_actor(order, worker_id)
            mismatch = order.tube_count is not None and received_tube_count != order.tube_count
            updated = self._write(
                order,
                LabOrderStatus.DELIVERED_TO_LAB,
                CollectionUpdate(
                    received_tube_count=received_tube_count,
                    tube_count_mismatch=mismatch,
                ),
            )

        if mismatch:
            logger.warning(
                f"Tube count mismatch on lab order {order_id}: "
                f"collected {order.tube_count}, delivered {received_tube_count}"
            )
            self._notifier.notify_operators(
                "TUBE_COUNT_MISMATCH",
                "Tube Count Mismatch",
                f"Lab order {order_id}: collected {order.tube_count} tubes but received "
                f"{received_tube_count}.",
                {"order_id": order_id},
                channel=Channel.PUSH,
            )
        return updated

    async def mark_received(
        self, order_id: str, lab_tech_id: str, received_tube_count: int
    ) -> LabOrder:
        """Lab-side receipt; the actor is lab staff, not the phlebotomist."""
        if received_tube_count <= 0:
            raise ValidationError("Received tube count must be at least 1")

        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            updated = self._write(
                order,
                LabOrderStatus.SAMPLE_RECEIVED,
                CollectionUpdate(received_tube_count=received_tube_count),
            )

        logger.info(f"Lab order {order_id} received by {lab_tech_id}")
        return updated
