"""Booking creation and management."""
import logging
import math
from datetime import date, datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from availability import active_bookings_query, day_bounds, parse_date, schedule_for_day
from errors import ConflictError, ForbiddenError, NotFoundError, UnhandledError, ValidationError
from schemas import (
    ACTIVE_STATUSES,
    PATIENT_ROLES,
    SESSION_TYPES,
    Booking as BookingSchema,
    BookingCreate,
    BookingOut,
)
from therapists import ResolvedTherapist, find_profile_for_user, resolve_therapist

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = (
    ("therapist_id", "therapistId"),
    ("appointment_date", "appointmentDate"),
    ("appointment_time", "appointmentTime"),
    ("session_type", "sessionType"),
)

# pending -> confirmed -> completed, cancelled from either active state
TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}

SLOT_TAKEN = "Time slot is already booked"


def make_slot_key(therapist_user_id: ObjectId, appointment_date: datetime, appointment_time: str) -> str:
    return f"{therapist_user_id}|{appointment_date.date().isoformat()}|{appointment_time}"


def serialize_booking(doc: dict) -> dict:
    data = dict(doc)
    data["id"] = data.pop("_id")
    return BookingOut.model_validate(data).model_dump(by_alias=True, mode="json")


def _object_id(value: str, message: str) -> ObjectId:
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise ValidationError(message)
    return ObjectId(value)


# ----- Booking writer -----

def find_active_booking(db, therapist: ResolvedTherapist, day: date, appointment_time: str):
    """Active booking holding the slot, including ones stored under the profile id or a string date."""
    return db["booking"].find_one(active_bookings_query(therapist, day, appointment_time))


def insert_booking(db, booking: BookingSchema) -> dict:
    doc = booking.model_dump()
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    try:
        result = db["booking"].insert_one(doc)
    except DuplicateKeyError:
        # lost the race against a concurrent request for the same slot
        logger.info(f"Slot conflict on insert for {doc.get('slot_key')}")
        raise ConflictError(SLOT_TAKEN)
    except PyMongoError as e:
        logger.error(f"Failed to create booking: {e}")
        raise UnhandledError("Failed to create booking", str(e))
    doc["_id"] = result.inserted_id
    return doc


def create_booking(db, user: dict, payload: BookingCreate) -> dict:
    """
    Create a pending booking for the calling patient.

    The slot check reads before it writes; the unique ``slot_key`` index
    turns a concurrent double booking into the same conflict error.
    """
    if user.get("role") not in PATIENT_ROLES:
        if user.get("role") == "clinic":
            raise ForbiddenError("Clinic accounts cannot book therapy sessions. Please use a patient account.")
        raise ForbiddenError(
            "Only end users (patients) can create bookings. Therapists, admins, and clinic owners cannot book sessions."
        )

    missing = [alias for name, alias in REQUIRED_FIELDS if not str(getattr(payload, name) or "").strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")

    if not ObjectId.is_valid(payload.therapist_id):
        raise ValidationError("Invalid therapist ID")
    if payload.session_type not in SESSION_TYPES:
        raise ValidationError("Invalid session type")

    therapist = resolve_therapist(db, payload.therapist_id)
    if therapist is None:
        raise NotFoundError("Therapist not found or not available")

    try:
        day = parse_date(payload.appointment_date)
    except ValidationError:
        raise ValidationError("Invalid appointment date format")
    appointment_date, _ = day_bounds(day)
    appointment_time = payload.appointment_time.strip()

    existing = find_active_booking(db, therapist, day, appointment_time)
    if existing:
        logger.info(
            f"Time slot conflict: therapist={therapist.user_id} date={day} time={appointment_time} "
            f"existing={existing['_id']}"
        )
        raise ConflictError(SLOT_TAKEN)

    if therapist.availability and appointment_time not in schedule_for_day(therapist, day):
        # therapists may take bookings outside their published hours
        logger.warning(f"Booking outside therapist {therapist.user_id} schedule: {day} {appointment_time}")

    booking = BookingSchema(
        user_id=user["_id"],
        therapist_id=therapist.user_id,
        therapist_profile_id=therapist.profile_id,
        appointment_date=appointment_date,
        appointment_time=appointment_time,
        session_type=payload.session_type,
        notes=(payload.notes or "").strip()[:1000],
        status="pending",
        payment_status="pending",
        total_amount=therapist.consultation_fee,
        slot_key=make_slot_key(therapist.user_id, appointment_date, appointment_time),
    )
    doc = insert_booking(db, booking)
    logger.info(f"Booking {doc['_id']} created for therapist {therapist.user_id} on {day} {appointment_time}")
    return doc


# ----- Reads -----

def _scope_query(db, user: dict) -> dict:
    role = user.get("role")
    if role in PATIENT_ROLES:
        return {"user_id": user["_id"]}
    if role == "therapist":
        profile = find_profile_for_user(db, user["_id"])
        if profile:
            return {"$or": [{"therapist_id": user["_id"]}, {"therapist_profile_id": profile["_id"]}]}
        return {"therapist_id": user["_id"]}
    if role == "admin":
        return {}
    raise ForbiddenError("Not authorized to view bookings")


def list_bookings(db, user: dict, page: int = 1, limit: int = 10, status: Optional[str] = None) -> dict:
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    query = _scope_query(db, user)
    if status:
        query["status"] = status

    total = db["booking"].count_documents(query)
    cursor = db["booking"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    bookings = [serialize_booking(doc) for doc in cursor]
    total_pages = math.ceil(total / limit) if total else 0
    return {
        "bookings": bookings,
        "pagination": {
            "page": page,
            "limit": limit,
            "totalPages": total_pages,
            "totalCount": total,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }


def _load_booking(db, booking_id: str) -> dict:
    booking = db["booking"].find_one({"_id": _object_id(booking_id, "Invalid booking ID")})
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _is_assigned_therapist(db, user: dict, booking: dict) -> bool:
    if user.get("role") != "therapist":
        return False
    if booking.get("therapist_id") == user["_id"]:
        return True
    # older bookings stored the profile id in therapist_id
    profile = find_profile_for_user(db, user["_id"])
    return bool(profile) and profile["_id"] in (booking.get("therapist_id"), booking.get("therapist_profile_id"))


def get_booking(db, user: dict, booking_id: str) -> dict:
    booking = _load_booking(db, booking_id)
    is_client = booking.get("user_id") == user["_id"]
    if not (is_client or user.get("role") == "admin" or _is_assigned_therapist(db, user, booking)):
        raise ForbiddenError("You do not have access to this booking")

    owner = db["user"].find_one({"_id": booking.get("user_id")}, {"name": 1, "email": 1, "phone": 1})
    therapist = resolve_therapist(db, booking.get("therapist_profile_id") or booking.get("therapist_id"))
    therapist_user = db["user"].find_one({"_id": therapist.user_id}, {"email": 1}) if therapist else None
    data = serialize_booking(booking)
    data["user"] = (
        {"id": str(owner["_id"]), "name": owner.get("name"), "email": owner.get("email"), "phone": owner.get("phone")}
        if owner
        else None
    )
    data["therapist"] = (
        {
            "name": therapist.display_name,
            "email": (therapist_user or {}).get("email") or therapist.profile.get("email"),
            "consultationFee": therapist.consultation_fee,
        }
        if therapist
        else None
    )
    return data


# ----- Status changes -----

def _set_status(db, booking: dict, status: str, extra: Optional[dict] = None) -> dict:
    update = {"$set": {"status": status, "updated_at": datetime.now(timezone.utc), **(extra or {})}}
    if status not in ACTIVE_STATUSES:
        # frees the slot for the unique index
        update["$unset"] = {"slot_key": ""}
    try:
        db["booking"].update_one({"_id": booking["_id"]}, update)
    except PyMongoError as e:
        logger.error(f"Failed to update booking {booking['_id']}: {e}")
        raise UnhandledError("Failed to update booking", str(e))
    return db["booking"].find_one({"_id": booking["_id"]})


def cancel_booking(db, user: dict, booking_id: str, reason: Optional[str] = None) -> dict:
    booking = _load_booking(db, booking_id)
    if booking.get("user_id") != user["_id"]:
        raise ForbiddenError("Not authorized to cancel this booking")
    if booking.get("status") in ("completed", "cancelled"):
        raise ConflictError(f"Cannot cancel a {booking['status']} booking")
    reason = reason[:300] if isinstance(reason, str) and reason.strip() else "user_cancelled"
    logger.info(f"Booking {booking['_id']} cancelled by patient {user['_id']}")
    return _set_status(db, booking, "cancelled", {"cancellation_reason": reason})


def update_booking_status(db, user: dict, booking_id: str, status: str) -> dict:
    booking = _load_booking(db, booking_id)
    if not (user.get("role") == "admin" or _is_assigned_therapist(db, user, booking)):
        raise ForbiddenError("Not authorized to update this booking")
    current = booking.get("status", "pending")
    if status not in TRANSITIONS.get(current, set()):
        raise ConflictError(f"Cannot change booking status from {current} to {status}")
    logger.info(f"Booking {booking['_id']} {current} -> {status} by {user.get('role')} {user['_id']}")
    return _set_status(db, booking, status)
