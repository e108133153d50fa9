import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from careroute.actions import available_actions_for
from careroute.collection import BookingResult, CollectionStateMachine
from careroute.config import Settings, get_settings
from careroute.database import CareRouteDatabase
from careroute.errors import CareRouteError, NotFound
from careroute.escalation import EscalationTimer, register_periodic_task
from careroute.lab_sla import LabSlaMonitor
from careroute.logging_config import setup_logging
from careroute.models import RiskTier, WorkItemKind, WorkRequirements
from careroute.notifier import Notifier
from careroute.scheduler import AssignmentResult, AssignmentScheduler

router = APIRouter()

NowFn = Callable[[], datetime]
SleepFn = Callable[[float], Awaitable[None]]


class ReassignRequest(BaseModel):
    exclude_worker_ids: list[str] = Field(default_factory=list)


class CancelRequest(BaseModel):
    requester_id: str
    reason: str


class EligibleWorkersRequest(BaseModel):
    kind: WorkItemKind
    requirements: WorkRequirements = Field(default_factory=WorkRequirements)
    risk_tier: RiskTier = RiskTier.LOW
    exclude_worker_ids: list[str] = Field(default_factory=list)
    load_date: date | None = None


class BookSlotRequest(BaseModel):
    requester_id: str
    booked_date: date
    time_slot: str


class WorkerActionRequest(BaseModel):
    worker_id: str


class FastingRequest(BaseModel):
    worker_id: str
    patient_has_fasted: bool


class TubeCountRequest(BaseModel):
    worker_id: str
    tube_count: int


class FailedCollectionRequest(BaseModel):
    worker_id: str
    reason: str


class LabReceiptRequest(BaseModel):
    lab_tech_id: str
    received_tube_count: int


class AcknowledgeRequest(BaseModel):
    doctor_id: str


def _assignment_response(result: AssignmentResult) -> dict:
    if result.assigned:
        return {"status": "assigned", **result.model_dump(mode="json")}
    # not an error: operators were alerted and the item stays pending
    return {"status": "pending", "alert_sent": True, **result.model_dump(mode="json")}


def _booking_response(booking: BookingResult) -> dict:
    return {
        "order": booking.order.model_dump(mode="json"),
        "assignment": (
            _assignment_response(booking.assignment) if booking.assignment else None
        ),
    }


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/work-items/{item_id}/assign")
async def assign_work_item(item_id: str, request: Request) -> dict:
    scheduler: AssignmentScheduler = request.app.state.scheduler
    return _assignment_response(await scheduler.assign(item_id))


@router.post("/work-items/{item_id}/reassign")
async def reassign_work_item(item_id: str, body: ReassignRequest, request: Request) -> dict:
    scheduler: AssignmentScheduler = request.app.state.scheduler
    return _assignment_response(await scheduler.reassign(item_id, body.exclude_worker_ids))


@router.post("/work-items/{item_id}/cancel")
async def cancel_work_item(item_id: str, body: CancelRequest, request: Request) -> dict:
    scheduler: AssignmentScheduler = request.app.state.scheduler
    item = await scheduler.cancel(item_id, body.requester_id, body.reason)
    return {"status": item.status, "item_id": item.id}


@router.get("/work-items/{item_id}/actions")
async def work_item_actions(item_id: str, request: Request) -> dict:
    db: CareRouteDatabase = request.app.state.database
    item = db.get_work_item(item_id)
    if item is None:
        raise NotFound(f"Work item {item_id} not found")
    return {"item_id": item_id, "status": item.status, "actions": available_actions_for(item)}


@router.post("/eligible-workers")
async def eligible_workers(body: EligibleWorkersRequest, request: Request) -> dict:
    scheduler: AssignmentScheduler = request.app.state.scheduler
    eligible = scheduler.get_eligible_workers(
        body.kind,
        body.requirements,
        body.risk_tier,
        body.exclude_worker_ids,
        body.load_date,
    )
    return {
        "senior_fallback": eligible.senior_fallback,
        "workers": [
            {
                "worker_id": c.worker.id,
                "name": c.worker.name,
                "active_count": c.active_count,
                "load_score": c.load_score,
            }
            for c in eligible.candidates
        ],
    }


@router.post("/escalations/scan")
async def run_escalation_scan(request: Request) -> dict:
    timer: EscalationTimer = request.app.state.escalation_timer
    report = await timer.run_escalation_scan()
    return report.model_dump()


@router.post("/lab-orders/{order_id}/slot")
async def book_slot(order_id: str, body: BookSlotRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    booking = await collection.book_slot(
        order_id, body.requester_id, body.booked_date, body.time_slot
    )
    return _booking_response(booking)


@router.post("/lab-orders/{order_id}/reschedule")
async def reschedule_slot(order_id: str, body: BookSlotRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    booking = await collection.reschedule_slot(
        order_id, body.requester_id, body.booked_date, body.time_slot
    )
    return _booking_response(booking)


@router.post("/lab-orders/{order_id}/en-route")
async def mark_en_route(order_id: str, body: WorkerActionRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    order = await collection.mark_en_route(order_id, body.worker_id)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/fasting")
async def verify_fasting(order_id: str, body: FastingRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    order = await collection.verify_fasting(order_id, body.worker_id, body.patient_has_fasted)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/collected")
async def mark_collected(order_id: str, body: TubeCountRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    order = await collection.mark_collected(order_id, body.worker_id, body.tube_count)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/failed")
async def mark_failed(order_id: str, body: FailedCollectionRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    order = await collection.mark_failed(order_id, body.worker_id, body.reason)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/in-transit")
async def mark_in_transit(order_id: str, body: WorkerActionRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    order = await collection.mark_in_transit(order_id, body.worker_id)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/delivered")
async def mark_delivered(order_id: str, body: TubeCountRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    order = await collection.mark_delivered(order_id, body.worker_id, body.tube_count)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/received")
async def mark_received(order_id: str, body: LabReceiptRequest, request: Request) -> dict:
    collection: CollectionStateMachine = request.app.state.collection
    order = await collection.mark_received(order_id, body.lab_tech_id, body.received_tube_count)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/critical-values")
async def flag_critical_values(order_id: str, request: Request) -> dict:
    lab_sla: LabSlaMonitor = request.app.state.lab_sla
    order = await lab_sla.flag_critical_values(order_id)
    return order.model_dump(mode="json")


@router.post("/lab-orders/{order_id}/critical-values/ack")
async def acknowledge_critical_value(
    order_id: str, body: AcknowledgeRequest, request: Request
) -> dict:
    lab_sla: LabSlaMonitor = request.app.state.lab_sla
    order = await lab_sla.acknowledge_critical_value(order_id, body.doctor_id)
    return order.model_dump(mode="json")


@router.post("/lab-sla/scan")
async def run_lab_sla_scan(request: Request) -> dict:
    lab_sla: LabSlaMonitor = request.app.state.lab_sla
    breaches = await lab_sla.run_lab_sla_scan()
    return {"breaches": [b.model_dump(mode="json") for b in breaches]}


async def care_route_error_handler(request: Request, exc: CareRouteError) -> JSONResponse:
    logger.info(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    app.state.periodic_tasks = [
        register_periodic_task(
            "sla-escalation",
            settings.escalation_interval_seconds,
            app.state.escalation_timer.run_escalation_scan,
            sleep_fn=app.state.sleep_fn,
        ),
        register_periodic_task(
            "lab-sla",
            settings.escalation_interval_seconds,
            app.state.lab_sla.run_lab_sla_scan,
            sleep_fn=app.state.sleep_fn,
        ),
    ]
    try:
        yield
    finally:
        await asyncio.gather(*(t.stop() for t in app.state.periodic_tasks))
        await app.state.notifier.drain()


def create_app(
    settings: Settings | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_json)

    app = FastAPI(lifespan=lifespan)
    db = CareRouteDatabase()
    app.state.settings = settings
    app.state.database = db

    app.state.now_fn = lambda: datetime.now(UTC)
    app.state.sleep_fn = asyncio.sleep

    # late-bound so tests can swap app.state.now_fn after creation
    def now() -> datetime:
        return app.state.now_fn()

    notifier = notifier or Notifier(operator_ids=settings.operator_ids)
    scheduler = AssignmentScheduler(db, notifier, settings, now_fn=now)
    app.state.notifier = notifier
    app.state.scheduler = scheduler
    app.state.collection = CollectionStateMachine(db, scheduler, notifier, settings, now_fn=now)
    app.state.escalation_timer = EscalationTimer(db, scheduler, notifier, settings, now_fn=now)
    app.state.lab_sla = LabSlaMonitor(db, scheduler, notifier, settings, now_fn=now)

    app.add_exception_handler(CareRouteError, care_route_error_handler)
    app.include_router(router)
    return app
