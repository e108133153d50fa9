from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from freezegun import freeze_time
from httpx import ASGITransport, AsyncClient

from careroute.api import create_app
from careroute.config import Settings
from careroute.database import CareRouteDatabase
from careroute.models import ConsultationStatus, LabOrderStatus, WorkItem
from factories import (
    OPERATOR,
    TODAY,
    RecordingNotifier,
    make_consultation,
    make_doctor,
    make_lab_order,
    make_phlebotomist,
    seed_load,
)


def _p(msg: str) -> None:
    # pytest captures stdout unless you run with -s
    print(msg, flush=True)


def _banner(name: str) -> None:
    _p("\n" + "=" * 88)
    _p(f"test: {name}")
    _p("=" * 88)


def _dump_items(db: CareRouteDatabase) -> None:
    items: list[WorkItem] = db.work_items()
    _p("db work items:")
    for i in sorted(items, key=lambda x: x.id):
        _p(
            f"  - {i.id} | status={i.status} | risk={i.risk_tier} | "
            f"worker={i.assigned_worker_id} previous={i.previous_worker_ids} "
            f"deadline={i.deadline}"
        )


@pytest_asyncio.fixture
async def client():
    app = create_app(
        settings=Settings(operator_ids=[OPERATOR]),
        notifier=RecordingNotifier(operator_ids=[OPERATOR]),
    )
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as async_client:
        yield async_client

    await app.state.notifier.drain()


@pytest.fixture
def app(client: AsyncClient):
    return client._transport.app


@pytest.fixture
def setup_test_data(app) -> None:
    db: CareRouteDatabase = app.state.database

    db.put_worker(make_doctor("D1", name="Dr Meera Rao"))
    db.put_worker(make_doctor("D2", name="Dr Arjun Shah"))
    seed_load(db, "D1", 10)
    seed_load(db, "D2", 3)
    db.put_worker(make_phlebotomist("P1", name="Ravi Kumar"))

    db.put_work_item(make_consultation("C1"))
    db.put_work_item(make_lab_order("L1", status=LabOrderStatus.ORDERED, booked_date=None))


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    _banner("health_check returns ok")
    resp = await client.get("/health")
    _p(f"GET /health -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_assign_not_found(client: AsyncClient) -> None:
    _banner("assign returns 404 for missing work item")
    resp = await client.post("/work-items/nonexistent/assign")
    _p(f"POST /work-items/nonexistent/assign -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 404
    assert "not found" in resp.json()["detail"].lower()


@pytest.mark.asyncio
async def test_assign_picks_least_loaded_doctor(
    client: AsyncClient, app, setup_test_data
) -> None:
    _banner("assign picks the least loaded doctor and sets the SLA deadline")
    db: CareRouteDatabase = app.state.database

    with freeze_time("2025-07-02 09:00:00", real_asyncio=True):
        resp = await client.post("/work-items/C1/assign")
        _p(f"POST /work-items/C1/assign -> status={resp.status_code}, body={resp.json()}")
        _dump_items(db)

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "assigned"
        assert data["worker_id"] == "D2"
        assert data["load_score"] == pytest.approx(0.2)
        assert datetime.fromisoformat(data["deadline"]) == datetime(
            2025, 7, 2, 13, 0, tzinfo=UTC
        )

        item = db.get_work_item("C1")
        assert item.status == ConsultationStatus.DOCTOR_REVIEWING

        # second request must not bounce the case
        again = await client.post("/work-items/C1/assign")
        _p(f"second assign -> status={again.status_code}, body={again.json()}")
        assert again.status_code == 409
        assert db.get_work_item("C1").assigned_worker_id == "D2"


@pytest.mark.asyncio
async def test_assign_without_eligible_worker_stays_pending(
    client: AsyncClient, app, setup_test_data
) -> None:
    _banner("no eligible doctor -> 200 pending with an operator alert")
    db: CareRouteDatabase = app.state.database
    notifier: RecordingNotifier = app.state.notifier
    db.put_work_item(
        make_consultation("C2", requirements={"skill": "dermatology"})
    )

    with freeze_time("2025-07-02 09:00:00", real_asyncio=True):
        resp = await client.post("/work-items/C2/assign")
        _p(f"POST /work-items/C2/assign -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "pending"
    assert data["alert_sent"] is True
    assert data["reason"] == "no_eligible"
    assert len(notifier.events("NO_ELIGIBLE_WORKER")) == 1
    assert db.get_work_item("C2").status == ConsultationStatus.AI_REVIEWED


@pytest.mark.asyncio
async def test_cancel_maps_errors(client: AsyncClient, setup_test_data) -> None:
    _banner("cancel enforces requester ownership")
    resp = await client.post(
        "/work-items/C1/cancel",
        json={"requester_id": "patient-2", "reason": "changed my mind"},
    )
    _p(f"cancel by stranger -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 403

    resp = await client.post(
        "/work-items/C1/cancel",
        json={"requester_id": "patient-1", "reason": "changed my mind"},
    )
    _p(f"cancel by owner -> status={resp.status_code}, body={resp.json()}")
    assert resp.status_code == 200
    assert resp.json() == {"status": "CANCELLED", "item_id": "C1"}

    resp = await client.get("/work-items/C1/actions")
    assert resp.json()["actions"] == ["view_tracking"]


@pytest.mark.asyncio
async def test_lab_order_booking_and_collection(
    client: AsyncClient, app, setup_test_data
) -> None:
    _banner("lab order: book slot -> auto assign -> en route -> collected")
    notifier: RecordingNotifier = app.state.notifier

    with freeze_time("2025-07-02 09:00:00", real_asyncio=True):
        resp = await client.get("/work-items/L1/actions")
        _p(f"actions before booking -> {resp.json()}")
        assert "book_slot" in resp.json()["actions"]

        resp = await client.post(
            "/lab-orders/L1/slot",
            json={
                "requester_id": "patient-1",
                "booked_date": TODAY.isoformat(),
                "time_slot": "07:00-08:00",
            },
        )
        _p(f"POST /lab-orders/L1/slot -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["assignment"]["status"] == "assigned"
        assert body["assignment"]["worker_id"] == "P1"
        assert body["order"]["status"] == LabOrderStatus.PHLEBOTOMIST_ASSIGNED

        resp = await client.post("/lab-orders/L1/en-route", json={"worker_id": "P9"})
        _p(f"en-route by wrong phlebotomist -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 403

        resp = await client.post("/lab-orders/L1/en-route", json={"worker_id": "P1"})
        assert resp.status_code == 200
        assert resp.json()["status"] == LabOrderStatus.PHLEBOTOMIST_EN_ROUTE

        resp = await client.post(
            "/lab-orders/L1/collected", json={"worker_id": "P1", "tube_count": 0}
        )
        _p(f"collected with 0 tubes -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 422

        resp = await client.post(
            "/lab-orders/L1/collected", json={"worker_id": "P1", "tube_count": 2}
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == LabOrderStatus.SAMPLE_COLLECTED

        resp = await client.post("/lab-orders/L1/failed", json={"worker_id": "P1", "reason": "x"})
        _p(f"failed after collection -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 409

    assert len(notifier.events("LAB_PHLEBOTOMIST_ASSIGNED")) == 1
    assert len(notifier.events("PHLEBOTOMIST_EN_ROUTE")) == 1


@pytest.mark.asyncio
async def test_escalation_scan_reassigns_breached_case(
    client: AsyncClient, app, setup_test_data
) -> None:
    _banner("escalation scan moves a breached case to another doctor")
    db: CareRouteDatabase = app.state.database

    with freeze_time("2025-07-02 09:00:00", real_asyncio=True) as frozen:
        await client.post("/work-items/C1/assign")
        _dump_items(db)

        frozen.tick(delta=timedelta(hours=4, minutes=1))
        _p(f"[time] now={datetime.now(UTC).isoformat()}")

        resp = await client.post("/escalations/scan")
        _p(f"POST /escalations/scan -> status={resp.status_code}, body={resp.json()}")
        _dump_items(db)

    assert resp.status_code == 200
    assert resp.json()["reassigned"] == 1
    item = db.get_work_item("C1")
    assert item.assigned_worker_id == "D1"
    assert item.previous_worker_ids == ["D2"]


@pytest.mark.asyncio
async def test_eligible_workers_lists_ranked_candidates(
    client: AsyncClient, setup_test_data
) -> None:
    _banner("eligible-workers is a read-only ranking")
    with freeze_time("2025-07-02 09:00:00", real_asyncio=True):
        resp = await client.post(
            "/eligible-workers",
            json={
                "kind": "consultation",
                "requirements": {"skill": "weight_management"},
                "exclude_worker_ids": [],
            },
        )
    _p(f"POST /eligible-workers -> status={resp.status_code}, body={resp.json()}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["senior_fallback"] is False
    assert [w["worker_id"] for w in data["workers"]] == ["D2", "D1"]


@pytest.mark.asyncio
async def test_critical_values_must_be_acknowledged(
    client: AsyncClient, app, setup_test_data
) -> None:
    _banner("critical lab values escalate until the ordering doctor acknowledges")
    db: CareRouteDatabase = app.state.database
    db.put_work_item(make_lab_order("L2", status=LabOrderStatus.PROCESSING))

    with freeze_time("2025-07-02 09:00:00", real_asyncio=True) as frozen:
        resp = await client.post("/lab-orders/L2/critical-values")
        _p(f"flag -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 200
        assert resp.json()["critical_values"] is True

        frozen.tick(delta=timedelta(minutes=90))
        resp = await client.post("/lab-sla/scan")
        _p(f"POST /lab-sla/scan -> status={resp.status_code}, body={resp.json()}")
        assert [b["breach_type"] for b in resp.json()["breaches"]] == ["CRITICAL_ACK"]

        resp = await client.post(
            "/lab-orders/L2/critical-values/ack", json={"doctor_id": "doc-2"}
        )
        assert resp.status_code == 403

        resp = await client.post(
            "/lab-orders/L2/critical-values/ack", json={"doctor_id": "doc-1"}
        )
        assert resp.status_code == 200
        assert resp.json()["critical_acknowledged_by"] == "doc-1"

        resp = await client.post("/lab-sla/scan")
        assert resp.json()["breaches"] == []


@pytest.mark.asyncio
async def test_reschedule_lab_order(client: AsyncClient, app, setup_test_data) -> None:
    _banner("lab order: book slot -> reschedule to another day")
    db: CareRouteDatabase = app.state.database
    tomorrow = TODAY + timedelta(days=1)
    later = TODAY + timedelta(days=2)

    with freeze_time("2025-07-02 09:00:00", real_asyncio=True):
        await client.post(
            "/lab-orders/L1/slot",
            json={
                "requester_id": "patient-1",
                "booked_date": tomorrow.isoformat(),
                "time_slot": "07:00-08:00",
            },
        )

        resp = await client.post(
            "/lab-orders/L1/reschedule",
            json={"requester_id": "patient-2", "booked_date": later.isoformat(), "time_slot": "10:00-11:00"},
        )
        _p(f"reschedule by stranger -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 403

        resp = await client.post(
            "/lab-orders/L1/reschedule",
            json={"requester_id": "patient-1", "booked_date": later.isoformat(), "time_slot": "late"},
        )
        _p(f"reschedule with bad slot -> status={resp.status_code}, body={resp.json()}")
        assert resp.status_code == 422

        resp = await client.post(
            "/lab-orders/L1/reschedule",
            json={"requester_id": "patient-1", "booked_date": later.isoformat(), "time_slot": "10:00-11:00"},
        )
        _p(f"reschedule -> status={resp.status_code}, body={resp.json()}")
        _dump_items(db)

    assert resp.status_code == 200
    body = resp.json()
    assert body["order"]["booked_date"] == later.isoformat()
    assert body["order"]["status"] == LabOrderStatus.PHLEBOTOMIST_ASSIGNED
    assert body["assignment"]["worker_id"] == "P1"
    assert db.get_roster("P1", tomorrow).total_bookings == 0
    assert db.get_roster("P1", later).total_bookings == 1
