from datetime import date, datetime
from unittest.mock import MagicMock

import pytest
from bson import ObjectId

import availability
from availability import (
    DEFAULT_SLOTS,
    block_slot,
    build_weekly_schedule,
    generate_slots,
    get_availability_for_date,
    parse_clock,
    parse_date,
)
from database import get_db
from errors import ValidationError
from main import app
from schemas import WeeklyWindow
from therapists import resolve_therapist

TUESDAY = date(2025, 6, 10)


def add_booking(db, therapist_user, time_label, status="pending", day=TUESDAY, **fields):
    doc = {
        "user_id": ObjectId(),
        "therapist_id": therapist_user["_id"],
        "appointment_date": datetime(day.year, day.month, day.day),
        "appointment_time": time_label,
        "session_type": "video",
        "status": status,
    }
    doc.update(fields)
    db["booking"].insert_one(doc)
    return doc


# ----- parsing -----

@pytest.mark.parametrize(
    "value, expected",
    [
        ("2025-06-10", date(2025, 6, 10)),
        ("2025-06-10T18:30:00Z", date(2025, 6, 10)),
        ("2025-06-10T18:30:00.000Z", date(2025, 6, 10)),
        ("2025-06-10T23:30:00-05:00", date(2025, 6, 11)),
        ("2025-06-10T09:00:00", date(2025, 6, 10)),
    ],
)
def test_parse_date_accepts_date_and_iso(value, expected):
    assert parse_date(value) == expected


@pytest.mark.parametrize("value", ["", "tomorrow", "10/06/2025", "2025-13-01", "2025-06-31", None])
def test_parse_date_rejects_garbage(value):
    with pytest.raises(ValidationError):
        parse_date(value)


def test_parse_clock():
    assert parse_clock("09:00") == (9, 0)
    assert parse_clock("9:05") == (9, 5)
    assert parse_clock("5:30 PM") == (17, 30)
    assert parse_clock("12:00 AM") == (0, 0)
    assert parse_clock("12:15 pm") == (12, 15)
    assert parse_clock("25:00") is None
    assert parse_clock("noon") is None


def test_generate_slots_respects_duration_and_gap():
    assert generate_slots("09:00", "12:00", 50, 10) == ["09:00", "10:00", "11:00"]
    assert generate_slots("9:00 AM", "1:00 PM", 30, 0) == [
        "09:00", "09:30", "10:00", "10:30", "11:00", "11:30", "12:00", "12:30",
    ]
    assert generate_slots("17:00", "17:30", 50, 10) == []
    assert generate_slots("bad", "17:00") == []


# ----- calculator -----

def test_default_slots_when_no_schedule(db, make_therapist):
    _, profile = make_therapist()
    therapist = resolve_therapist(db, profile["_id"])

    result = get_availability_for_date(db, therapist, TUESDAY)

    assert [s["time"] for s in result["availability"]] == DEFAULT_SLOTS
    assert len(result["availability"]) == 10
    assert all(s["available"] for s in result["availability"])
    assert result["date"] == "2025-06-10"
    assert result["nextAvailable"] == {"time": "09:00", "available": True}


def test_configured_day_is_filtered_and_sorted(db, make_therapist):
    schedule = [
        {
            "day": "tuesday",
            "slots": [
                {"start_time": "14:00", "is_available": True},
                {"start_time": "10:00", "is_available": True},
                {"start_time": "11:00", "is_available": False},
            ],
        },
        {"day": "monday", "slots": [{"start_time": "08:00"}]},
    ]
    _, profile = make_therapist(availability=schedule)
    therapist = resolve_therapist(db, profile["_id"])

    result = get_availability_for_date(db, therapist, TUESDAY)

    assert result["availability"] == [
        {"time": "10:00", "available": True},
        {"time": "14:00", "available": True},
    ]


def test_empty_day_entry_falls_back_to_defaults(db, make_therapist):
    _, profile = make_therapist(availability=[{"day": "tuesday", "slots": []}])
    therapist = resolve_therapist(db, profile["_id"])

    result = get_availability_for_date(db, therapist, TUESDAY)

    assert [s["time"] for s in result["availability"]] == DEFAULT_SLOTS


def test_legacy_camel_case_schedule(db, make_user):
    user = make_user(
        "therapist",
        therapist_profile={
            "availability": [
                {"day": "Tuesday", "slots": [{"startTime": "16:00", "isAvailable": True}, {"startTime": "17:00", "isAvailable": False}]}
            ]
        },
    )
    therapist = resolve_therapist(db, user["_id"])

    result = get_availability_for_date(db, therapist, TUESDAY)

    assert result["availability"] == [{"time": "16:00", "available": True}]


def test_active_bookings_block_slots(db, make_therapist):
    user, profile = make_therapist()
    add_booking(db, user, "10:00", status="pending")
    add_booking(db, user, "11:00", status="confirmed")
    add_booking(db, user, "12:00", status="cancelled")
    add_booking(db, user, "13:00", status="completed")
    add_booking(db, user, "14:00", status="pending", day=date(2025, 6, 11))
    therapist = resolve_therapist(db, profile["_id"])

    slots = {s["time"]: s["available"] for s in get_availability_for_date(db, therapist, TUESDAY)["availability"]}

    assert slots["10:00"] is False
    assert slots["11:00"] is False
    assert slots["12:00"] is True
    assert slots["13:00"] is True
    assert slots["14:00"] is True


def test_bookings_of_other_therapists_are_ignored(db, make_therapist):
    user, profile = make_therapist()
    other, _ = make_therapist(name="Dr. Someone Else")
    add_booking(db, other, "10:00")
    therapist = resolve_therapist(db, profile["_id"])

    slots = {s["time"]: s["available"] for s in get_availability_for_date(db, therapist, TUESDAY)["availability"]}

    assert slots["10:00"] is True


def test_legacy_booking_shapes_are_matched(db, make_therapist):
    user, profile = make_therapist()
    db["booking"].insert_many([
        {"therapist_id": user["_id"], "date": "2025-06-10", "time_slot": "15:00", "status": "confirmed"},
        {"therapist_id": user["_id"], "appointment_date": "2025-06-10", "appointment_time": "16:00", "status": "pending"},
        {"therapist_profile_id": profile["_id"], "therapist_id": profile["_id"],
         "appointment_date": datetime(2025, 6, 10), "appointment_time": "17:00", "status": "pending"},
        {"therapist_id": user["_id"], "appointment_date": datetime(2025, 6, 10),
         "session_time": {"start_time": "12:00"}, "status": "confirmed"},
    ])
    therapist = resolve_therapist(db, profile["_id"])

    slots = {s["time"]: s["available"] for s in get_availability_for_date(db, therapist, TUESDAY)["availability"]}

    assert slots["15:00"] is False
    assert slots["16:00"] is False
    assert slots["17:00"] is False
    assert slots["12:00"] is False
    assert slots["09:00"] is True


def test_time_labels_match_exactly(db, make_therapist):
    user, profile = make_therapist()
    add_booking(db, user, "10:00 AM")
    therapist = resolve_therapist(db, profile["_id"])

    slots = {s["time"]: s["available"] for s in get_availability_for_date(db, therapist, TUESDAY)["availability"]}

    assert slots["10:00"] is True


def test_busy_blocks(db, make_therapist):
    _, profile = make_therapist()
    therapist = resolve_therapist(db, profile["_id"])
    block_slot(db, therapist, "2025-06-10", "09:00", note="supervision")

    result = get_availability_for_date(db, therapist, TUESDAY)
    assert result["availability"][0] == {"time": "09:00", "available": False}
    assert result["nextAvailable"]["time"] == "10:00"

    block_slot(db, therapist, "2025-06-10", availability.ALL_DAY)
    result = get_availability_for_date(db, therapist, TUESDAY)
    assert not any(s["available"] for s in result["availability"])
    assert result["nextAvailable"] is None


def test_block_slot_is_idempotent(db, make_therapist):
    _, profile = make_therapist()
    therapist = resolve_therapist(db, profile["_id"])

    block_slot(db, therapist, "2025-06-10", "09:00")
    block_slot(db, therapist, "2025-06-10", "09:00", note="moved")

    assert db["busyblock"].count_documents({}) == 1
    assert db["busyblock"].find_one()["note"] == "moved"


# ----- weekly schedules -----

def test_build_weekly_schedule():
    schedule = build_weekly_schedule(
        [
            WeeklyWindow(day="Wednesday", start="14:00", end="17:00"),
            WeeklyWindow(day="monday", start="09:00", end="11:00"),
            WeeklyWindow(day="friday", enabled=False),
        ]
    )

    assert [d["day"] for d in schedule] == ["monday", "wednesday", "friday"]
    assert schedule[0]["slots"] == [
        {"start_time": "09:00", "end_time": "09:50", "is_available": True},
        {"start_time": "10:00", "end_time": "10:50", "is_available": True},
    ]
    assert [s["start_time"] for s in schedule[1]["slots"]] == ["14:00", "15:00", "16:00"]
    assert schedule[2]["slots"] == []


@pytest.mark.parametrize(
    "window",
    [
        WeeklyWindow(day="funday", start="09:00", end="10:00"),
        WeeklyWindow(day="monday", start="nine", end="10:00"),
    ],
)
def test_build_weekly_schedule_rejects_bad_windows(window):
    with pytest.raises(ValidationError):
        build_weekly_schedule([window])


# ----- HTTP -----

@pytest.mark.parametrize("bad_date", ["yesterday", "2025/06/10", "06-10-2025", "2025-02-30"])
def test_invalid_date_is_rejected_before_any_query(client, bad_date):
    fake_db = MagicMock()
    app.dependency_overrides[get_db] = lambda: fake_db

    response = client.get(f"/api/therapists/{ObjectId()}/availability", params={"date": bad_date})

    assert response.status_code == 400
    assert response.json()["success"] is False
    fake_db.__getitem__.assert_not_called()
    assert fake_db.method_calls == []


def test_missing_date_is_rejected(client):
    response = client.get(f"/api/therapists/{ObjectId()}/availability")

    assert response.status_code == 400
    assert response.json()["message"] == "Date parameter is required"


def test_unknown_therapist_is_404(client):
    response = client.get(f"/api/therapists/{ObjectId()}/availability", params={"date": "2025-06-10"})

    assert response.status_code == 404


def test_availability_endpoint(client, db, make_therapist):
    user, profile = make_therapist()
    add_booking(db, user, "10:00", status="confirmed")

    response = client.get(f"/api/therapists/{profile['_id']}/availability", params={"date": "2025-06-10"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["date"] == "2025-06-10"
    assert body["data"]["therapistId"] == str(user["_id"])
    assert len(body["data"]["availability"]) == 10
    assert {"time": "10:00", "available": False} in body["data"]["availability"]


def test_therapist_publishes_weekly_schedule(client, db, make_therapist, auth_headers):
    user, profile = make_therapist()

    response = client.post(
        f"/api/therapists/{profile['_id']}/availability",
        json={
            "weekly": [{"day": "tuesday", "start": "10:00", "end": "13:00", "enabled": True}],
            "blocks": [{"date": "2025-06-10", "time": "11:00", "note": "team meeting"}],
        },
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    stored = db["therapistprofile"].find_one({"_id": profile["_id"]})
    assert [s["start_time"] for s in stored["availability"][0]["slots"]] == ["10:00", "11:00", "12:00"]
    assert stored["timezone"] == "Asia/Kolkata"

    response = client.get(f"/api/therapists/{profile['_id']}/availability", params={"date": "2025-06-10"})
    assert response.json()["data"]["availability"] == [
        {"time": "10:00", "available": True},
        {"time": "11:00", "available": False},
        {"time": "12:00", "available": True},
    ]


def test_legacy_therapist_schedule_is_stored_on_user(client, db, legacy_therapist, auth_headers):
    response = client.post(
        f"/api/therapists/{legacy_therapist['_id']}/availability",
        json={"weekly": [{"day": "monday", "start": "09:00", "end": "10:00"}], "timezone": "Europe/London"},
        headers=auth_headers(legacy_therapist),
    )

    assert response.status_code == 200
    stored = db["user"].find_one({"_id": legacy_therapist["_id"]})["therapist_profile"]
    assert stored["availability"] == [
        {"day": "monday", "slots": [{"start_time": "09:00", "end_time": "09:50", "is_available": True}]}
    ]
    assert stored["timezone"] == "Europe/London"
    assert stored["consultationFee"] == 700


def test_only_owner_can_publish_schedule(client, make_therapist, make_user, auth_headers):
    _, profile = make_therapist()
    other, _ = make_therapist(name="Dr. Other")
    patient = make_user("patient")
    body = {"weekly": [{"day": "monday", "start": "09:00", "end": "10:00"}]}

    assert client.post(f"/api/therapists/{profile['_id']}/availability", json=body, headers=auth_headers(other)).status_code == 403
    assert client.post(f"/api/therapists/{profile['_id']}/availability", json=body, headers=auth_headers(patient)).status_code == 403
    assert client.post(f"/api/therapists/{profile['_id']}/availability", json=body).status_code == 401
