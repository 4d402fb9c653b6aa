"""
Slot availability for a therapist on a given date, plus the helpers that
publish weekly schedules and manual busy blocks.
"""
import logging
import re
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from pymongo.errors import PyMongoError

from config import DEFAULT_TIMEZONE, SLOT_DURATION_MINUTES, SLOT_GAP_MINUTES
from errors import UnhandledError, ValidationError
from schemas import ACTIVE_STATUSES
from therapists import ResolvedTherapist

logger = logging.getLogger(__name__)

DAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
DEFAULT_SLOTS = ["09:00", "10:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00", "17:00", "18:00"]
ALL_DAY = "ALL_DAY"

_DATE_ONLY = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_CLOCK = re.compile(r"^(\d{1,2}):(\d{2})(?:\s*(AM|PM))?$", re.IGNORECASE)


# ----- Dates and clocks -----

def parse_date(value) -> date:
    """Parse ``YYYY-MM-DD`` or an ISO-8601 timestamp into a calendar date (UTC)."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValidationError("Invalid date format")
        try:
            if _DATE_ONLY.match(text):
                return date.fromisoformat(text)
            if text.endswith(("Z", "z")):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValidationError("Invalid date format")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.date()


def day_bounds(day: date) -> Tuple[datetime, datetime]:
    """Naive UTC [start, end) datetimes covering ``day``."""
    start = datetime.combine(day, dtime.min)
    return start, start + timedelta(days=1)


def day_name(day: date) -> str:
    return DAY_NAMES[day.weekday()]


def parse_clock(label) -> Optional[Tuple[int, int]]:
    """Parse "09:00", "9:00" or "5:30 PM" into (hours, minutes)."""
    if not label or not isinstance(label, str):
        return None
    match = _CLOCK.match(label.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    suffix = (match.group(3) or "").upper()
    if suffix == "PM" and hours < 12:
        hours += 12
    if suffix == "AM" and hours == 12:
        hours = 0
    if hours > 23 or minutes > 59:
        return None
    return hours, minutes


def format_clock(hours: int, minutes: int) -> str:
    return f"{hours:02d}:{minutes:02d}"


def generate_slots(
    start: str,
    end: str,
    duration_minutes: int = SLOT_DURATION_MINUTES,
    gap_minutes: int = SLOT_GAP_MINUTES,
) -> List[str]:
    """Zero-padded slot labels that fit entirely inside the start/end window."""
    start_clock, end_clock = parse_clock(start), parse_clock(end)
    if not start_clock or not end_clock:
        return []
    t = start_clock[0] * 60 + start_clock[1]
    end_minutes = end_clock[0] * 60 + end_clock[1]
    step = duration_minutes + gap_minutes
    slots = []
    while t + duration_minutes <= end_minutes:
        slots.append(format_clock(t // 60, t % 60))
        t += step
    return slots


# ----- Availability -----

def _slot_label(slot) -> Optional[str]:
    if isinstance(slot, str):
        return slot
    if isinstance(slot, dict):
        return slot.get("start_time") or slot.get("startTime") or slot.get("time")
    return None


def _slot_enabled(slot) -> bool:
    if isinstance(slot, dict):
        return slot.get("is_available", slot.get("isAvailable", True)) is not False
    return True


def schedule_for_day(therapist: ResolvedTherapist, day: date) -> List[str]:
    """Configured slot labels for the weekday of ``day``, or the default business hours."""
    name = day_name(day)
    entry = next(
        (e for e in therapist.availability if isinstance(e, dict) and str(e.get("day", "")).lower() == name),
        None,
    )
    slots = (entry or {}).get("slots") or []
    if not slots:
        return list(DEFAULT_SLOTS)
    labels = [_slot_label(s) for s in slots if _slot_enabled(s)]
    return [label for label in labels if label]


def _therapist_clause(therapist: ResolvedTherapist) -> dict:
    clauses = [{"therapist_id": therapist.user_id}]
    if therapist.profile_id is not None:
        clauses.append({"therapist_id": therapist.profile_id})
        clauses.append({"therapist_profile_id": therapist.profile_id})
    return {"$or": clauses}


def active_bookings_query(therapist: ResolvedTherapist, day: date, time_label: Optional[str] = None) -> dict:
    """Active bookings of ``therapist`` on ``day``, across the stored id, date and time shapes."""
    start, end = day_bounds(day)
    date_key = day.isoformat()
    clauses = [
        _therapist_clause(therapist),
        {
            "$or": [
                {"appointment_date": {"$gte": start, "$lt": end}},
                {"appointment_date": date_key},
                {"date": date_key},
            ]
        },
        {"status": {"$in": list(ACTIVE_STATUSES)}},
    ]
    if time_label is not None:
        clauses.append({
            "$or": [
                {"appointment_time": time_label},
                {"time_slot": time_label},
                {"session_time.start_time": time_label},
            ]
        })
    return {"$and": clauses}


def booking_label(booking: dict) -> Optional[str]:
    return (
        booking.get("appointment_time")
        or booking.get("time_slot")
        or (booking.get("session_time") or {}).get("start_time")
    )


def booked_times(db, therapist: ResolvedTherapist, day: date) -> set:
    """Time labels held by active bookings on ``day``."""
    projection = {"appointment_time": 1, "time_slot": 1, "session_time": 1}
    times = set()
    for booking in db["booking"].find(active_bookings_query(therapist, day), projection):
        label = booking_label(booking)
        if label:
            times.add(label)
    return times


def blocked_times(db, therapist: ResolvedTherapist, day: date) -> set:
    docs = db["busyblock"].find({"therapist_id": therapist.user_id, "date_key": day.isoformat()}, {"time": 1})
    return {d["time"] for d in docs if d.get("time")}


def get_availability_for_date(db, therapist: ResolvedTherapist, day: date) -> dict:
    candidates = schedule_for_day(therapist, day)
    booked = booked_times(db, therapist, day)
    blocked = blocked_times(db, therapist, day)
    whole_day = ALL_DAY in blocked

    availability = sorted(
        (
            {"time": label, "available": not (whole_day or label in booked or label in blocked)}
            for label in dict.fromkeys(candidates)
        ),
        key=lambda slot: slot["time"],
    )
    next_available = next((slot for slot in availability if slot["available"]), None)
    return {"availability": availability, "date": day.isoformat(), "nextAvailable": next_available}


# ----- Publishing schedules -----

def build_weekly_schedule(
    weekly: Iterable,
    duration_minutes: int = SLOT_DURATION_MINUTES,
    gap_minutes: int = SLOT_GAP_MINUTES,
) -> List[dict]:
    """Turn ``[{day, start, end, enabled}]`` windows into stored day entries."""
    days = {}
    for window in weekly:
        name = str(window.day or "").strip().lower()
        if name not in DAY_NAMES:
            raise ValidationError(f"Invalid day: {window.day}")
        if not window.enabled:
            days.setdefault(name, [])
            continue
        if parse_clock(window.start) is None or parse_clock(window.end) is None:
            raise ValidationError(f"Invalid time window for {name}")
        for label in generate_slots(window.start, window.end, duration_minutes, gap_minutes):
            hours, minutes = parse_clock(label)
            end_minutes = hours * 60 + minutes + duration_minutes
            days.setdefault(name, []).append(
                {
                    "start_time": label,
                    "end_time": format_clock(end_minutes // 60, end_minutes % 60),
                    "is_available": True,
                }
            )
    return [{"day": name, "slots": sorted(days[name], key=lambda s: s["start_time"])} for name in DAY_NAMES if name in days]


def save_weekly_schedule(db, therapist: ResolvedTherapist, weekly: Iterable, tz: Optional[str] = None) -> List[dict]:
    schedule = build_weekly_schedule(weekly)
    now = datetime.now(timezone.utc)
    tz = tz or DEFAULT_TIMEZONE
    try:
        if therapist.is_legacy:
            db["user"].update_one(
                {"_id": therapist.user_id},
                {"$set": {
                    "therapist_profile.availability": schedule,
                    "therapist_profile.timezone": tz,
                    "updated_at": now,
                }},
            )
        else:
            db["therapistprofile"].update_one(
                {"_id": therapist.profile_id},
                {"$set": {"availability": schedule, "timezone": tz, "updated_at": now}},
            )
    except PyMongoError as e:
        logger.error(f"Failed to save schedule for therapist {therapist.user_id}: {e}")
        raise UnhandledError("Failed to update availability", str(e))
    logger.info(f"Saved weekly schedule for therapist {therapist.user_id} ({len(schedule)} days)")
    return schedule


def block_slot(db, therapist: ResolvedTherapist, day, time_label: str, note: str = "", source: str = "manual") -> dict:
    """Upsert a busy block; ``ALL_DAY`` blocks every slot of the date."""
    day = parse_date(day)
    label = (time_label or "").strip()
    if not label:
        raise ValidationError("Block time is required")
    block = {
        "therapist_id": therapist.user_id,
        "date_key": day.isoformat(),
        "time": label,
        "source": source,
        "note": note or "",
        "created_at": datetime.now(timezone.utc),
    }
    db["busyblock"].update_one(
        {"therapist_id": block["therapist_id"], "date_key": block["date_key"], "time": label},
        {"$set": block},
        upsert=True,
    )
    return block
