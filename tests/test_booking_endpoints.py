from datetime import date, time

import pytest_asyncio
from fastapi.testclient import TestClient

from gymbooking.modules.booking import models_booking
from gymbooking.modules.booking.types_booking import BookingStatus
from tests.commons import (
    add_booking,
    add_schedule,
    card_columns,
    card_engine,
    count_bookings,
    create_table,
    drop_all_tables,
    employee_core_columns,
    engine,
    init_booking_store,
    master_engine,
    settings,
)

morning: models_booking.GymSchedule


@pytest_asyncio.fixture(scope="module", loop_scope="module", autouse=True)
async def init_objects() -> None:
    for store_engine in (engine, master_engine, card_engine):
        await drop_all_tables(store_engine)

    await init_booking_store(engine)

    global morning
    morning = await add_schedule("Morning", time(6, 0), quota=2)
    await add_booking(morning, "E300", date(2024, 1, 10))
    await add_booking(morning, "E301", date(2024, 1, 10))

    await create_table(
        master_engine,
        "employee_core",
        employee_core_columns(),
        rows=[
            {
                "employee_id": "E100",
                "name": "Siti Rahma",
                "department": "Finance",
                "id_card": "C-MASTER",
                "staff_no": "S100",
                "gender": "F",
            },
            {
                "employee_id": "E200",
                "name": "Budi Santoso",
                "department": "IT",
                "id_card": None,
                "staff_no": None,
                "gender": "M",
            },
        ],
    )
    await create_table(
        card_engine,
        "CardDB",
        card_columns(),
        rows=[
            {"StaffNo": "S100", "CardNo": "C-100", "IsActive": 1, "DelState": 0, "Block": "0"},
        ],
    )


def test_read_information(client: TestClient) -> None:
    response = client.get("/information")

    assert response.status_code == 200
    assert response.json() == {"ready": True, "version": settings.APP_VERSION}


def test_create_booking(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-create",
        json={
            "employee_id": "E100",
            "session_id": "Morning__06:00",
            "booking_date": "2024-01-11",
        },
    )

    assert response.status_code == 200
    json = response.json()
    assert json["ok"] is True
    assert json["schedule_id"] == morning.schedule_id
    assert isinstance(json["booking_id"], int)
    assert json["error"] is None
    assert json["code"] is None


def test_create_booking_with_employee_id_header(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-create",
        json={"session_id": "Morning__06:00", "booking_date": "2024-01-11"},
        headers={"x-employee-id": "E200"},
    )

    assert response.status_code == 200
    assert response.json()["ok"] is True


async def test_created_bookings_are_enriched() -> None:
    assert await count_bookings(employee_id="E100", card_no="C-100", department="Finance") == 1
    assert (
        await count_bookings(
            employee_id="E200",
            employee_name="Budi Santoso",
            status=BookingStatus.BOOKED,
        )
        == 1
    )


def test_create_booking_twice(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-create",
        json={
            "employee_id": "E100",
            "session_id": "Morning__06:00",
            "booking_date": "2024-01-11",
        },
    )

    # Declines are not transport errors
    assert response.status_code == 200
    assert response.json() == {
        "ok": False,
        "booking_id": None,
        "schedule_id": None,
        "error": "You are already registered for this day",
        "code": "DuplicateBookingError",
    }


def test_create_booking_in_a_full_session(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-create",
        json={
            "employee_id": "E100",
            "session_id": "Morning__06:00",
            "booking_date": "2024-01-10",
        },
    )

    assert response.status_code == 200
    assert response.json()["error"] == "This session is full"
    assert response.json()["code"] == "CapacityExceededError"


def test_create_booking_for_an_unknown_employee(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-create",
        json={
            "employee_id": "E404",
            "session_id": "Morning__06:00",
            "booking_date": "2024-01-12",
        },
    )

    assert response.status_code == 200
    assert response.json()["code"] == "EmployeeNotFound"


def test_create_booking_with_invalid_request(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-create",
        json={"employee_id": "E100", "session_id": "Morning", "booking_date": "2024-01-12"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == 'session_id must be "Session__HH:MM"'
    assert response.json()["code"] == "ValidationError"


def test_create_booking_without_employee_id(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-create",
        json={"session_id": "Morning__06:00", "booking_date": "2024-01-12"},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "ValidationError"


def test_init_booking_store_requires_admin_token(client: TestClient) -> None:
    response = client.post("/gym-booking-init")
    assert response.status_code == 403

    response = client.post(
        "/gym-booking-init",
        headers={"x-admin-token": "not-the-token"},
    )
    assert response.status_code == 403


def test_init_booking_store(client: TestClient) -> None:
    response = client.post(
        "/gym-booking-init",
        headers={"x-admin-token": str(settings.GYM_ADMIN_TOKEN)},
    )

    assert response.status_code == 200
    json = response.json()
    assert json["ok"] is True
    assert json["index_ok"] is True
    assert json["today_index_ok"] is True
    assert json["duplicates"] is None
    assert {column["name"] for column in json["columns"]} >= {
        "BookingID",
        "EmployeeID",
        "ScheduleID",
        "BookingDate",
        "Status",
        "ApprovalStatus",
    }
