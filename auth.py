import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from bson import ObjectId
from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

from config import ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, SECRET_KEY
from database import create_document, get_db
from errors import AuthError, ForbiddenError, ValidationError
from schemas import User as UserSchema

logger = logging.getLogger(__name__)

# Auth utils
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")

SELF_SERVICE_ROLES = ("patient", "therapist", "instructor", "student", "clinic")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(user_id: str, role: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(user_id), "role": role, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def get_user_by_email(db, email: str) -> Optional[dict]:
    return db["user"].find_one({"email": email.strip().lower()})


def get_current_user(token: str = Depends(oauth2_scheme), db=Depends(get_db)) -> dict:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise AuthError("Authentication failed")
    user_id = payload.get("sub")
    if not user_id or not ObjectId.is_valid(user_id):
        raise AuthError("Authentication failed")
    user = db["user"].find_one({"_id": ObjectId(user_id)}, {"password_hash": 0})
    if not user:
        logger.warning(f"Token for unknown user {user_id}")
        raise AuthError("Authentication failed")
    if user.get("is_active") is False:
        raise AuthError("Account is deactivated")
    return user


def require_roles(*roles: str, message: Optional[str] = None):
    """Dependency factory that only lets the listed roles through."""

    def dependency(user: dict = Depends(get_current_user)) -> dict:
        if user.get("role") not in roles:
            raise ForbiddenError(message or "Insufficient permissions")
        return user

    return dependency


def register_user(db, name: str, email: str, password: str, role: str = "patient", phone: Optional[str] = None) -> dict:
    if role not in SELF_SERVICE_ROLES:
        raise ValidationError("Invalid role")
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters")
    email = email.strip().lower()
    if get_user_by_email(db, email):
        raise ValidationError("Email already registered")

    user = UserSchema(
        name=name.strip(),
        email=email,
        password_hash=hash_password(password),
        role=role,
        phone=phone,
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    logger.info(f"Registered {role} account {user_id}")
    return db["user"].find_one({"_id": ObjectId(user_id)})


def authenticate_user(db, email: str, password: str) -> dict:
    user = get_user_by_email(db, email)
    if not user or not verify_password(password, user.get("password_hash")):
        raise AuthError("Invalid credentials")
    if user.get("is_active") is False:
        raise AuthError("Account is deactivated")
    now = datetime.now(timezone.utc)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login_at": now}})
    user["last_login_at"] = now
    return user
