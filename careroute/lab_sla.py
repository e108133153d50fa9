"""
Lab-side SLAs, checked for every lab order on each scan:

- patient booking: reminders while an order sits unbooked, expiry after that
- phlebotomist assignment: a booked slot still has nobody assigned
- lab receipt: delivered samples the lab hasn't logged
- lab results: turnaround from sample receipt
- doctor review: uploaded results the ordering doctor hasn't reviewed
- critical acknowledgment: flagged critical values nobody has acknowledged

Patients get at most one booking reminder per day. Operators are alerted
once per breach type and level, not on every scan.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from functools import partial

from loguru import logger
from pydantic import BaseModel

from careroute.config import Settings
from careroute.database import CareRouteDatabase
from careroute.errors import Forbidden, InvalidState, NotFound
from careroute.models import Channel, LabOrder, LabOrderStatus, RecipientRole
from careroute.notifier import Notifier
from careroute.scheduler import AssignmentScheduler
from careroute.transitions import LAB_ORDER_TRANSITIONS

NowFn = Callable[[], datetime]

AWAITING_RESULTS = {LabOrderStatus.SAMPLE_RECEIVED, LabOrderStatus.PROCESSING}
AWAITING_REVIEW = {LabOrderStatus.RESULTS_READY, LabOrderStatus.RESULTS_UPLOADED}

EXPIRED = "EXPIRED"


class LabBreachType(StrEnum):
    PATIENT_BOOKING = "PATIENT_BOOKING"
    PHLEBOTOMIST_ASSIGNMENT = "PHLEBOTOMIST_ASSIGNMENT"
    LAB_RECEIPT = "LAB_RECEIPT"
    LAB_RESULTS = "LAB_RESULTS"
    DOCTOR_REVIEW = "DOCTOR_REVIEW"
    CRITICAL_ACK = "CRITICAL_ACK"


class LabSlaBreach(BaseModel):
    order_id: str
    breach_type: LabBreachType
    escalation_level: str
    hours_overdue: float  # past the first threshold


@dataclass(frozen=True)
class _Check:
    breach_type: LabBreachType
    applies: Callable[[LabOrder], bool]
    started_at: Callable[[LabOrder], datetime | None]
    # ascending (hours, level) pairs
    tiers: Callable[[Settings], list[tuple[float, str]]]


CHECKS = [
    _Check(
        LabBreachType.PATIENT_BOOKING,
        lambda o: o.status == LabOrderStatus.ORDERED,
        lambda o: o.ordered_at,
        lambda s: [
            (s.booking_first_reminder_hours, "FIRST_REMINDER"),
            (s.booking_second_reminder_hours, "SECOND_REMINDER"),
            (s.booking_expiry_hours, EXPIRED),
        ],
    ),
    _Check(
        LabBreachType.PHLEBOTOMIST_ASSIGNMENT,
        lambda o: o.status == LabOrderStatus.SLOT_BOOKED and o.assigned_worker_id is None,
        lambda o: o.slot_booked_at,
        lambda s: [(s.phlebotomist_assignment_hours, "WARNING")],
    ),
    _Check(
        LabBreachType.LAB_RECEIPT,
        lambda o: o.status == LabOrderStatus.DELIVERED_TO_LAB,
        lambda o: o.delivered_to_lab_at,
        lambda s: [(s.lab_receipt_hours, "WARNING")],
    ),
    _Check(
        LabBreachType.LAB_RESULTS,
        lambda o: o.status in AWAITING_RESULTS,
        lambda o: o.sample_received_at,
        lambda s: [
            (s.lab_results_standard_hours, "WARNING"),
            (s.lab_results_escalation_hours, "CRITICAL"),
        ],
    ),
    _Check(
        LabBreachType.DOCTOR_REVIEW,
        lambda o: o.status in AWAITING_REVIEW,
        lambda o: o.results_uploaded_at,
        lambda s: [
            (s.doctor_review_reminder_hours, "REMINDER"),
            (s.doctor_review_escalation_hours, "ESCALATE"),
        ],
    ),
    _Check(
        LabBreachType.CRITICAL_ACK,
        lambda o: o.critical_values and o.critical_acknowledged_at is None,
        lambda o: o.critical_flagged_at,
        lambda s: [(s.critical_ack_hours, "CRITICAL")],
    ),
]


def _hours_between(start: datetime, end: datetime) -> float:
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    return (end - start) / timedelta(hours=1)


def _evaluate(
    check: _Check, order: LabOrder, settings: Settings, now: datetime
) -> LabSlaBreach | None:
    if not check.applies(order):
        return None
    started = check.started_at(order)
    if started is None:
        return None

    elapsed = _hours_between(started, now)
    tiers = check.tiers(settings)
    reached = [level for threshold, level in tiers if elapsed >= threshold]
    if not reached:
        return None
    return LabSlaBreach(
        order_id=order.id,
        breach_type=check.breach_type,
        escalation_level=reached[-1],
        hours_overdue=elapsed - tiers[0][0],
    )


class LabSlaMonitor:
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

    def _lab_orders(self) -> list[LabOrder]:
        return [o for o in self._db.work_items() if isinstance(o, LabOrder)]

    def _load(self, order_id: str) -> LabOrder:
        order = self._db.get_work_item(order_id)
        if not isinstance(order, LabOrder):
            raise NotFound(f"Lab order {order_id} not found")
        return order

    def find_breaches(self) -> list[LabSlaBreach]:
        now = self._now()
        breaches = [
            breach
            for order in self._lab_orders()
            for check in CHECKS
            if (breach := _evaluate(check, order, self._settings, now)) is not None
        ]
        return sorted(breaches, key=lambda b: (b.order_id, b.breach_type))

    async def run_lab_sla_scan(self) -> list[LabSlaBreach]:
        logger.info("Running lab SLA check...")
        breaches = self.find_breaches()
        for breach in breaches:
            try:
                await self._handle(breach)
            except Exception:
                # one bad order must not stop the scan
                logger.exception(
                    f"Failed to handle {breach.breach_type} breach for lab order {breach.order_id}"
                )

        if breaches:
            logger.warning(f"Lab SLA scan found {len(breaches)} breaches")
        return breaches

    async def expire_stale_orders(self) -> list[str]:
        """Expire orders left unbooked past the booking window."""
        expired = []
        for breach in self.find_breaches():
            if (
                breach.breach_type == LabBreachType.PATIENT_BOOKING
                and breach.escalation_level == EXPIRED
                and await self._handle(breach)
            ):
                expired.append(breach.order_id)
        return expired

    async def _handle(self, breach: LabSlaBreach) -> bool:
        """Acts on one breach. Returns False when it had already been acted on."""
        async with self._scheduler.item_lock(breach.order_id):
            order = self._load(breach.order_id)
            now = self._now()
            if breach.breach_type == LabBreachType.PATIENT_BOOKING:
                if breach.escalation_level == EXPIRED:
                    outbox = self._expire(order, now)
                else:
                    outbox = self._remind_patient(order, breach, now)
            else:
                outbox = self._escalate(order, breach, now)

        for send in outbox:
            send()
        return bool(outbox)

    def _expire(self, order: LabOrder, now: datetime) -> list[Callable[[], None]]:
        if order.status != LabOrderStatus.ORDERED:
            return []
        LAB_ORDER_TRANSITIONS.guard(order.status, LabOrderStatus.EXPIRED)
        self._db.put_work_item(
            order.model_copy(update={"status": LabOrderStatus.EXPIRED, "expired_at": now})
        )
        logger.info(f"Lab order {order.id} expired without a booked slot")
        return [
            partial(
                self._notifier.notify,
                order.requester_id,
                RecipientRole.PATIENT,
                Channel.PUSH,
                "LAB_ORDER_EXPIRED",
                "Lab Order Expired",
                "Your lab order has expired because no collection slot was booked.",
                {"order_id": order.id},
            ),
            partial(
                self._notifier.notify,
                order.ordering_doctor_id,
                RecipientRole.DOCTOR,
                Channel.IN_APP,
                "LAB_ORDER_EXPIRED",
                "Lab Order Expired",
                f"Lab order {order.id} expired before the patient booked a slot.",
                {"order_id": order.id},
            ),
        ]

    def _remind_patient(
        self, order: LabOrder, breach: LabSlaBreach, now: datetime
    ) -> list[Callable[[], None]]:
        last = order.last_reminder_sent_at
        if last is not None and last.date() == now.date():
            return []
        self._db.put_work_item(
            order.model_copy(
                update={
                    "last_reminder_sent_at": now,
                    "last_reminder_type": breach.escalation_level,
                }
            )
        )
        return [
            partial(
                self._notifier.notify,
                order.requester_id,
                RecipientRole.PATIENT,
                Channel.PUSH,
                "LAB_BOOKING_REMINDER",
                "Book Your Blood Test",
                "Your doctor ordered blood work. Please book a collection slot.",
                {"order_id": order.id, "reminder": breach.escalation_level},
            )
        ]

    def _escalate(
        self, order: LabOrder, breach: LabSlaBreach, now: datetime
    ) -> list[Callable[[], None]]:
        reason = f"{breach.breach_type}:{breach.escalation_level}"
        if order.sla_escalation_reason == reason:
            return []
        self._db.put_work_item(
            order.model_copy(update={"sla_escalated_at": now, "sla_escalation_reason": reason})
        )

        outbox: list[Callable[[], None]] = []
        if breach.breach_type == LabBreachType.CRITICAL_ACK:
            outbox.append(
                partial(
                    self._notifier.notify,
                    order.ordering_doctor_id,
                    RecipientRole.DOCTOR,
                    Channel.PUSH,
                    "CRITICAL_VALUE_UNACKNOWLEDGED",
                    "URGENT: Critical Lab Value Awaiting Acknowledgment",
                    f"Critical values on lab order {order.id} are still unacknowledged.",
                    {"order_id": order.id},
                )
            )
        if breach.breach_type == LabBreachType.DOCTOR_REVIEW:
            outbox.append(
                partial(
                    self._notifier.notify,
                    order.ordering_doctor_id,
                    RecipientRole.DOCTOR,
                    Channel.PUSH,
                    "LAB_RESULTS_REVIEW_REMINDER",
                    "Lab Results Awaiting Review",
                    f"Results for lab order {order.id} are waiting for your review.",
                    {"order_id": order.id},
                )
            )
            if breach.escalation_level == "REMINDER":
                return outbox

        outbox.append(
            partial(
                self._notifier.notify_operators,
                f"LAB_SLA_{breach.breach_type}",
                f"Lab SLA Breach ({breach.escalation_level})",
                f"Lab order {order.id} is {breach.hours_overdue:.1f}h past its "
                f"{breach.breach_type.lower().replace('_', ' ')} SLA.",
                breach.model_dump(mode="json"),
            )
        )
        return outbox

    async def flag_critical_values(self, order_id: str) -> LabOrder:
        """Lab reported out-of-range results; the ordering doctor has an hour."""
        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            if order.status not in {
                LabOrderStatus.PROCESSING,
                LabOrderStatus.RESULTS_PARTIAL,
                LabOrderStatus.RESULTS_READY,
            }:
                raise InvalidState(
                    f"Cannot flag critical values on lab order in {order.status} status"
                )

            updated = order.model_copy(
                update={
                    "critical_values": True,
                    "critical_flagged_at": order.critical_flagged_at or self._now(),
                }
            )
            self._db.put_work_item(updated)

        self._notifier.notify(
            order.ordering_doctor_id,
            RecipientRole.DOCTOR,
            Channel.PUSH,
            "CRITICAL_VALUE",
            "URGENT: Critical Lab Value",
            f"Lab order {order_id} has critical values. Please acknowledge within "
            f"{self._settings.critical_ack_hours:g}h.",
            {"order_id": order_id},
        )
        return updated

    async def acknowledge_critical_value(self, order_id: str, doctor_id: str) -> LabOrder:
        async with self._scheduler.item_lock(order_id):
            order = self._load(order_id)
            if order.ordering_doctor_id != doctor_id:
                raise Forbidden("Only the ordering doctor can acknowledge critical values")
            if not order.critical_values:
                raise InvalidState("This order is not flagged as critical")

            updated = order.model_copy(
                update={
                    "critical_acknowledged_at": self._now(),
                    "critical_acknowledged_by": doctor_id,
                }
            )
            self._db.put_work_item(updated)

        logger.info(f"Critical values on lab order {order_id} acknowledged by {doctor_id}")
        return updated
