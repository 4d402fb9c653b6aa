"""
Database Schemas for the TheraBook API

Each Pydantic model represents a collection in MongoDB. The collection
name is the lowercase of the class name.

- User -> "user"
- TherapistProfile -> "therapistprofile"
- Booking -> "booking"
- BusyBlock -> "busyblock"

Stored fields are snake_case. Request payloads further down accept the
camelCase names the web client sends.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from pydantic_core import core_schema

Role = Literal["patient", "user", "therapist", "instructor", "student", "clinic", "admin"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
SessionType = Literal["video", "audio", "in-clinic", "home-visit"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]

ACTIVE_STATUSES = ("pending", "confirmed")
PATIENT_ROLES = ("patient", "user")
SESSION_TYPES = ("video", "audio", "in-clinic", "home-visit")


class PyObjectId(ObjectId):
    """ObjectId that validates from strings and serializes to str in JSON mode."""

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls.validate,
            serialization=core_schema.plain_serializer_function_ser_schema(str, when_used="json"),
        )

    @classmethod
    def __get_pydantic_json_schema__(cls, schema: Any, handler: Any) -> dict:
        return {"type": "string", "example": "64b7f0c2e1a4c2a1b2c3d4e5"}

    @classmethod
    def validate(cls, v):
        if isinstance(v, ObjectId):
            return v
        if isinstance(v, str) and ObjectId.is_valid(v):
            return ObjectId(v)
        raise ValueError("Invalid ObjectId")


class AvailabilitySlot(BaseModel):
    start_time: str = Field(..., description="Slot label, normally zero-padded HH:MM")
    end_time: Optional[str] = None
    is_available: bool = True


class DaySchedule(BaseModel):
    day: Weekday
    slots: List[AvailabilitySlot] = Field(default_factory=list)


class User(BaseModel):
    """Users collection schema"""
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: Optional[str] = Field(None, description="BCrypt hash")
    role: Role = Field("patient", description="Role tag")
    phone: Optional[str] = None
    is_active: bool = Field(True, description="Soft-deactivation flag")
    is_verified: bool = False
    profile: Dict[str, Any] = Field(default_factory=dict, description="Free-form profile keyed by role")
    therapist_profile: Optional[Dict[str, Any]] = Field(
        None, description="Legacy embedded therapist data (pre-TherapistProfile accounts)"
    )
    onboarding_completed: bool = False
    last_login_at: Optional[datetime] = None


class TherapistProfile(BaseModel):
    """Therapist profile collection schema, one per therapist user"""
    user_id: PyObjectId
    display_name: str
    title: Optional[str] = None
    bio: Optional[str] = None
    email: Optional[str] = None
    specializations: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    session_types: List[SessionType] = Field(default_factory=list)
    experience: Optional[float] = None
    consultation_fee: Optional[float] = Field(None, ge=0)
    currency: str = "INR"
    availability: List[DaySchedule] = Field(default_factory=list)
    timezone: Optional[str] = None
    is_approved: bool = False
    is_verified: bool = False
    rating: float = Field(0, ge=0, le=5)
    review_count: int = 0


class Booking(BaseModel):
    """Bookings collection schema"""
    user_id: PyObjectId
    therapist_id: PyObjectId = Field(..., description="Owning therapist User id")
    therapist_profile_id: Optional[PyObjectId] = Field(None, description="None for legacy therapists")
    appointment_date: datetime = Field(..., description="UTC midnight of the appointment day")
    appointment_time: str
    session_type: SessionType
    notes: str = ""
    status: BookingStatus = "pending"
    payment_status: PaymentStatus = "pending"
    total_amount: float = 0
    currency: str = "INR"
    slot_key: Optional[str] = Field(None, description="Present only while the booking is active")
    cancellation_reason: Optional[str] = None


class BusyBlock(BaseModel):
    """Manual busy blocks on a therapist's calendar"""
    therapist_id: PyObjectId
    date_key: str = Field(..., description="YYYY-MM-DD")
    time: str = Field(..., description="Slot label or ALL_DAY")
    source: str = "manual"
    note: str = ""


# ----- Request payloads -----

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookingCreate(CamelModel):
    # Presence is checked by the booking writer so it can report every missing field
    therapist_id: Optional[str] = None
    appointment_date: Optional[str] = None
    appointment_time: Optional[str] = None
    session_type: Optional[str] = None
    notes: Optional[str] = None


class BookingCancel(CamelModel):
    reason: Optional[str] = None


class BookingStatusUpdate(CamelModel):
    status: BookingStatus


class WeeklyWindow(CamelModel):
    day: str
    start: Optional[str] = None
    end: Optional[str] = None
    enabled: bool = True


class BusyBlockCreate(CamelModel):
    date: str
    time: str
    note: str = ""


class AvailabilityUpdate(CamelModel):
    weekly: List[WeeklyWindow] = Field(default_factory=list)
    timezone: Optional[str] = None
    blocks: List[BusyBlockCreate] = Field(default_factory=list)


class OnboardingUpdate(CamelModel):
    display_name: Optional[str] = None
    title: Optional[str] = None
    bio: Optional[str] = None
    specializations: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    session_types: List[SessionType] = Field(default_factory=list)
    experience: Optional[float] = Field(None, ge=0)
    consultation_fee: Optional[float] = Field(None, ge=0)
    availability: List[DaySchedule] = Field(default_factory=list)


# ----- Responses -----

class BookingOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: PyObjectId
    user_id: Optional[PyObjectId] = None
    therapist_id: Optional[PyObjectId] = None
    therapist_profile_id: Optional[PyObjectId] = None
    appointment_date: Optional[Union[datetime, str]] = None
    appointment_time: Optional[str] = None
    session_type: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    total_amount: Optional[float] = 0
    currency: Optional[str] = "INR"
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# Expose minimal schema endpoint expectations (used by tooling)
SCHEMAS_INFO = {
    "user": User.model_json_schema(),
    "therapistprofile": TherapistProfile.model_json_schema(),
    "booking": Booking.model_json_schema(),
    "busyblock": BusyBlock.model_json_schema(),
}
