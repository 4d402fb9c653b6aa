import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import availability
import bookings
from auth import authenticate_user, create_access_token, get_current_user, register_user, require_roles
from config import ALLOWED_ORIGINS, LOG_LEVEL
from database import ensure_indexes, get_db
from errors import ApiError, ForbiddenError, ValidationError
from schemas import (
    PATIENT_ROLES,
    SCHEMAS_INFO,
    AvailabilityUpdate,
    BookingCancel,
    BookingCreate,
    BookingStatusUpdate,
    OnboardingUpdate,
)
from therapists import find_profile_for_user, get_therapist_or_404

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        ensure_indexes(get_db())
        logger.info("Database indexes ensured")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {e}")
    yield
    logger.info("Application shutting down...")


# FastAPI app
app = FastAPI(title="TheraBook API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- Error handling -----

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} - {exc.message}: {exc.error}")
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    missing = [str(e["loc"][-1]) for e in errors if e.get("type") == "missing" and e.get("loc")]
    logger.warning(f"Validation error for {request.url.path}: {errors}")
    message = f"Missing required fields: {', '.join(missing)}" if missing else "Invalid request"
    detail = [{"loc": list(e.get("loc", [])), "msg": e.get("msg")} for e in errors]
    return JSONResponse(status_code=400, content={"success": False, "message": message, "error": detail})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} - Unhandled error")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "error": str(exc)},
    )


# ----- Helpers -----

def to_str_id(value):
    """Make Mongo documents JSON friendly: ObjectIds become strings, _id becomes id."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, list):
        return [to_str_id(v) for v in value]
    if isinstance(value, dict):
        d = {k: to_str_id(v) for k, v in value.items() if k != "password_hash"}
        if "_id" in d:
            d["id"] = d.pop("_id")
        return d
    return value


def ok(data=None, message: Optional[str] = None, status_code: int = 200):
    body = {"success": True}
    if message:
        body["message"] = message
    if data is not None:
        body["data"] = data
    if status_code == 200:
        return body
    return JSONResponse(status_code=status_code, content=body)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", "patient"),
        "phone": user.get("phone"),
        "isVerified": user.get("is_verified", False),
        "onboardingCompleted": user.get("onboarding_completed", False),
    }


# ----- Models -----
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: str = "patient"
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ----- Public Endpoints -----
@app.get("/")
def root():
    return {"message": "TheraBook API running"}


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": getattr(db, "name", "Unknown"),
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = db.list_collection_names()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


@app.get("/schema")
def schema_info():
    return {"collections": SCHEMAS_INFO}


# Auth: Email + Password
@app.post("/auth/register", response_model=Token, status_code=status.HTTP_201_CREATED)
def register(data: RegisterRequest, db=Depends(get_db)):
    user = register_user(db, data.name, data.email, data.password, data.role, data.phone)
    return {"access_token": create_access_token(str(user["_id"]), user["role"]), "token_type": "bearer"}


@app.post("/auth/login", response_model=Token)
def login(data: LoginRequest, db=Depends(get_db)):
    user = authenticate_user(db, data.email, data.password)
    return {"access_token": create_access_token(str(user["_id"]), user["role"]), "token_type": "bearer"}


@app.post("/auth/token", response_model=Token)
def login_form(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = authenticate_user(db, form_data.username, form_data.password)
    return {"access_token": create_access_token(str(user["_id"]), user["role"]), "token_type": "bearer"}


@app.get("/me")
def me(user=Depends(get_current_user)):
    return ok(public_user(user))


# ----- Therapists -----
@app.get("/api/therapists/{therapist_id}")
def get_therapist(therapist_id: str, db=Depends(get_db)):
    therapist = get_therapist_or_404(db, therapist_id)
    return ok(to_str_id(therapist.to_public_dict()))


@app.get("/api/therapists/{therapist_id}/availability")
def get_availability(therapist_id: str, date: Optional[str] = None, db=Depends(get_db)):
    if not date:
        raise ValidationError("Date parameter is required")
    # validated before any lookup
    day = availability.parse_date(date)
    therapist = get_therapist_or_404(db, therapist_id)
    result = availability.get_availability_for_date(db, therapist, day)
    return ok({**result, "therapistId": str(therapist.user_id)})


@app.post("/api/therapists/{therapist_id}/availability")
def update_availability(
    therapist_id: str,
    payload: AvailabilityUpdate,
    user=Depends(require_roles("therapist")),
    db=Depends(get_db),
):
    therapist = get_therapist_or_404(db, therapist_id)
    if therapist.user_id != user["_id"]:
        raise ForbiddenError("You can only update your own availability")

    schedule = None
    if payload.weekly:
        schedule = availability.save_weekly_schedule(db, therapist, payload.weekly, payload.timezone)
    blocks = [
        availability.block_slot(db, therapist, block.date, block.time, block.note)
        for block in payload.blocks
    ]
    if schedule is not None:
        therapist = get_therapist_or_404(db, therapist_id)
    return ok(to_str_id({"weekly": schedule or therapist.availability, "blocks": blocks}), "Availability updated")


@app.get("/api/therapist-onboarding")
def get_onboarding(user=Depends(require_roles("therapist", message="Only therapists can access onboarding")), db=Depends(get_db)):
    return ok({"therapist": to_str_id(find_profile_for_user(db, user["_id"]))}, "Therapist onboarding data")


@app.post("/api/therapist-onboarding")
def save_onboarding(
    payload: OnboardingUpdate,
    user=Depends(require_roles("therapist", message="Only therapists can update onboarding")),
    db=Depends(get_db),
):
    now = datetime.now(timezone.utc)
    display_name = (payload.display_name or user.get("name") or "").strip()
    update = {
        "display_name": display_name,
        "title": (payload.title or "").strip(),
        "bio": (payload.bio or "").strip(),
        "specializations": [s.strip() for s in payload.specializations if s and s.strip()],
        "languages": [s.strip() for s in payload.languages if s and s.strip()],
        "session_types": payload.session_types,
        "experience": payload.experience,
        "consultation_fee": payload.consultation_fee,
        "availability": [d.model_dump() for d in payload.availability],
        "updated_at": now,
    }
    db["therapistprofile"].update_one(
        {"user_id": user["_id"]},
        {
            "$set": update,
            "$setOnInsert": {
                "email": user.get("email", ""),
                "currency": "INR",
                "is_approved": False,
                "is_verified": False,
                "rating": 0,
                "review_count": 0,
                "created_at": now,
            },
        },
        upsert=True,
    )
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"onboarding_completed": True, "updated_at": now}})
    logger.info(f"Onboarding saved for therapist {user['_id']}")
    return ok({"therapist": to_str_id(find_profile_for_user(db, user["_id"]))}, "Onboarding saved")


# ----- Bookings -----
@app.get("/api/bookings")
def list_bookings(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    user=Depends(get_current_user),
    db=Depends(get_db),
):
    return ok(bookings.list_bookings(db, user, page, limit, status))


@app.post("/api/bookings", status_code=status.HTTP_201_CREATED)
def create_booking(payload: Optional[BookingCreate] = None, user=Depends(get_current_user), db=Depends(get_db)):
    doc = bookings.create_booking(db, user, payload or BookingCreate())
    return ok(
        {"bookingId": str(doc["_id"]), "booking": bookings.serialize_booking(doc)},
        "Booking created successfully",
        status_code=status.HTTP_201_CREATED,
    )


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return ok({"booking": bookings.get_booking(db, user, booking_id)})


@app.patch("/api/bookings/{booking_id}/cancel")
def cancel_booking(
    booking_id: str,
    payload: Optional[BookingCancel] = None,
    user=Depends(require_roles(*PATIENT_ROLES)),
    db=Depends(get_db),
):
    doc = bookings.cancel_booking(db, user, booking_id, payload.reason if payload else None)
    return ok({"booking": bookings.serialize_booking(doc), "cancelled": True}, "Booking cancelled")


@app.patch("/api/bookings/{booking_id}/status")
def update_booking_status(
    booking_id: str,
    payload: BookingStatusUpdate,
    user=Depends(require_roles("therapist", "admin")),
    db=Depends(get_db),
):
    doc = bookings.update_booking_status(db, user, booking_id, payload.status)
    return ok({"booking": bookings.serialize_booking(doc)})


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
