"""
Therapist identity resolution.

Therapist data lives in one of two shapes: a ``therapistprofile`` document
linked to its user through ``user_id``, or (for accounts created before that
collection existed) a ``therapist_profile`` dict embedded in the ``user``
document. Every read site resolves an identifier once, through
``resolve_therapist``, into a ``ResolvedTherapist``.
"""
import logging
from dataclasses import dataclass, field
from typing import Literal, Optional

from bson import ObjectId

from errors import NotFoundError

logger = logging.getLogger(__name__)

PROFILE = "profile"
LEGACY = "legacy"


@dataclass(frozen=True)
class ResolvedTherapist:
    kind: Literal["profile", "legacy"]
    user_id: ObjectId
    profile_id: Optional[ObjectId] = None
    profile: dict = field(default_factory=dict)
    user: Optional[dict] = None

    @property
    def is_legacy(self) -> bool:
        return self.kind == LEGACY

    @property
    def consultation_fee(self) -> float:
        fee = self.profile.get("consultation_fee")
        if fee is None:
            # embedded profiles written by the old web client
            fee = self.profile.get("consultationFee")
        try:
            return float(fee or 0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def display_name(self) -> str:
        name = self.profile.get("display_name") or self.profile.get("displayName")
        if not name and self.user:
            name = self.user.get("name")
        return name or "Therapist"

    @property
    def availability(self) -> list:
        return self.profile.get("availability") or []

    def to_public_dict(self) -> dict:
        profile = {k: v for k, v in self.profile.items() if k not in ("_id", "user_id")}
        return {
            "therapistId": str(self.user_id),
            "profileId": str(self.profile_id) if self.profile_id else None,
            "legacy": self.is_legacy,
            "displayName": self.display_name,
            "consultationFee": self.consultation_fee,
            "profile": profile,
        }


def _from_profile(profile: dict, user: Optional[dict] = None) -> ResolvedTherapist:
    return ResolvedTherapist(
        kind=PROFILE,
        user_id=profile["user_id"],
        profile_id=profile["_id"],
        profile=profile,
        user=user,
    )


def resolve_therapist(db, identifier) -> Optional[ResolvedTherapist]:
    """
    Resolve a therapist from either a profile id or a therapist user id.

    Malformed identifiers are treated as a miss and return None.
    """
    if isinstance(identifier, ObjectId):
        oid = identifier
    elif isinstance(identifier, str) and ObjectId.is_valid(identifier):
        oid = ObjectId(identifier)
    else:
        return None

    profile = db["therapistprofile"].find_one({"_id": oid})
    if profile:
        return _from_profile(profile)

    user = db["user"].find_one(
        {"_id": oid, "role": "therapist", "is_active": {"$ne": False}},
        {"password_hash": 0},
    )
    if not user:
        return None

    # a user id can still point at a separate profile document
    linked = db["therapistprofile"].find_one({"user_id": user["_id"]})
    if linked:
        return _from_profile(linked, user)

    logger.debug(f"Resolved {oid} to a legacy embedded therapist profile")
    return ResolvedTherapist(
        kind=LEGACY,
        user_id=user["_id"],
        profile=user.get("therapist_profile") or {},
        user=user,
    )


def get_therapist_or_404(db, identifier, message: str = "Therapist not found") -> ResolvedTherapist:
    therapist = resolve_therapist(db, identifier)
    if therapist is None:
        raise NotFoundError(message)
    return therapist


def find_profile_for_user(db, user_id: ObjectId) -> Optional[dict]:
    return db["therapistprofile"].find_one({"user_id": user_id})
