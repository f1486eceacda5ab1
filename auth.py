"""
Authorization gate: credentials, login flows and role/approval checks.

Two credential classes are issued. Password login hands out a single
long-lived token; OTP login and patient signup hand out a 15 minute access
token plus an opaque refresh token stored server-side. Both are HS256 JWTs
carrying the account id (`sub`) and role.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from bson.objectid import ObjectId
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pymongo.errors import DuplicateKeyError

import settings
from database import (
    create_document,
    get_db,
    to_object_id,
    update_fields,
    utcnow,
)
from delivery import OtpTransport
from errors import (
    Conflict,
    Forbidden,
    InvalidRefreshToken,
    InvalidRequest,
    NotFound,
    PendingApproval,
    Unauthenticated,
)
from schemas import (
    RESTRICTED_ROLES,
    Account,
    AdminProfile,
    DoctorProfile,
    EntityRef,
    FacilityProfile,
    Hospital,
    Lab,
    PatientProfile,
    RefreshToken,
)
from settings import PlatformConfig

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)

SIGNUP_ROLES = ("patient", "doctor", "lab", "hospital")
PRIVATE_FIELDS = ("password_hash", "otp", "otp_expires")


# Helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    return pwd_context.verify(password, password_hash)


def create_token(sub: str, role: str, expires: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "role": role,
        "exp": now + expires,
        "iat": now,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise Unauthenticated("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthenticated("Invalid token")


def create_access_token(account: dict, config: PlatformConfig) -> str:
    return create_token(str(account["_id"]), account["role"], timedelta(minutes=config.access_token_minutes))


def create_legacy_token(account: dict, config: PlatformConfig) -> str:
    days = config.legacy_token_days if account["role"] == "patient" else config.legacy_staff_token_days
    return create_token(str(account["_id"]), account["role"], timedelta(days=days))


def public_account(account: dict) -> dict:
    doc = {k: v for k, v in account.items() if k not in PRIVATE_FIELDS}
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


def default_profile(role: str, entity: Optional[EntityRef] = None):
    if role == "doctor":
        return DoctorProfile()
    if role in ("lab", "hospital"):
        return FacilityProfile(role=role, entity=entity)
    if role == "admin":
        return AdminProfile()
    return PatientProfile()


def require_login_approval(account: dict) -> None:
    if account["role"] in RESTRICTED_ROLES and not account.get("approved"):
        raise PendingApproval("Your account is pending admin approval. You cannot log in yet.")


def insert_account(db, account: Account) -> str:
    doc = account.model_dump()
    if doc.get("email") is None:
        doc.pop("email")
    try:
        return create_document(db, "account", doc)
    except DuplicateKeyError:
        raise Conflict("User already exists")


def ensure_unique_identity(db, phone: str, email: Optional[str], exclude_id=None) -> None:
    clauses = [{"phone": phone}]
    if email:
        clauses.append({"email": email})
    query = {"$or": clauses}
    if exclude_id is not None:
        query["_id"] = {"$ne": to_object_id(exclude_id)}
    if db["account"].find_one(query):
        raise Conflict("User already exists")


def ensure_indexes(db) -> None:
    db["account"].create_index("phone", unique=True)
    db["account"].create_index(
        "email", unique=True, partialFilterExpression={"email": {"$type": "string"}}
    )
    db["refreshtoken"].create_index("token", unique=True)
    db["lab"].create_index("registration_number", unique=True)
    db["hospital"].create_index("registration_number", unique=True)
    db["booking"].create_index([("doctor", 1), ("date", 1)])
    db["consultation"].create_index("appointment", unique=True)


# Refresh tokens

def issue_refresh_token(db, account_id: str, config: PlatformConfig) -> str:
    token = secrets.token_hex(40)
    doc = RefreshToken(
        user=str(account_id),
        token=token,
        expires_at=utcnow() + timedelta(days=config.refresh_token_days),
    )
    create_document(db, "refreshtoken", doc)
    return token


def token_pair_response(db, account: dict, config: PlatformConfig) -> dict:
    return {
        "_id": str(account["_id"]),
        "name": account.get("name"),
        "email": account.get("email"),
        "phone": account.get("phone"),
        "role": account["role"],
        "access_token": create_access_token(account, config),
        "refresh_token": issue_refresh_token(db, account["_id"], config),
        "token_type": "bearer",
    }


def refresh_access_token(db, token: str, config: PlatformConfig, now: Optional[datetime] = None) -> dict:
    if not token:
        raise InvalidRequest("Refresh token required")
    now = now or utcnow()
    doc = db["refreshtoken"].find_one({"token": token})
    if not doc:
        raise InvalidRefreshToken("Invalid refresh token")
    if doc["expires_at"] < now:
        db["refreshtoken"].delete_one({"_id": doc["_id"]})
        raise InvalidRefreshToken("Refresh token expired")

    # Compare-and-swap on version: of two concurrent uses only one can claim it.
    claimed = db["refreshtoken"].find_one_and_update(
        {"_id": doc["_id"], "version": doc.get("version", 0)},
        {"$inc": {"version": 1}, "$set": {"last_used_at": now}},
    )
    if claimed is None:
        raise InvalidRefreshToken("Invalid refresh token")

    account = db["account"].find_one({"_id": to_object_id(doc["user"])})
    if not account or not account.get("is_active", True):
        raise InvalidRefreshToken("Invalid refresh token")
    return {
        "access_token": create_access_token(account, config),
        "token_type": "bearer",
        "user": {"_id": str(account["_id"]), "name": account.get("name"), "role": account["role"]},
    }


def revoke_refresh_token(db, token: Optional[str]) -> None:
    if token:
        db["refreshtoken"].delete_one({"token": token})


# Current user and gates

def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db=Depends(get_db),
) -> dict:
    if creds is None or not creds.credentials:
        raise Unauthenticated("Not authorized, no token")
    payload = decode_token(creds.credentials)
    sub = payload.get("sub")
    if not sub or not ObjectId.is_valid(sub):
        raise Unauthenticated("Invalid token")
    account = db["account"].find_one({"_id": ObjectId(sub)})
    if not account:
        raise Unauthenticated("Invalid token")
    if not account.get("is_active", True):
        raise Forbidden("Account suspended")
    account["_id"] = str(account["_id"])
    return account


def require_roles(*roles: str):
    def checker(current: dict = Depends(get_current_user)) -> dict:
        if current["role"] not in roles:
            raise Forbidden(f"Access denied. Required roles: {', '.join(roles)}")
        return current
    return checker


def require_admin(current: dict = Depends(get_current_user)) -> dict:
    if current["role"] != "admin":
        raise Forbidden("Access denied. Admin only.")
    return current


def check_doctor(account: dict) -> dict:
    if account["role"] != "doctor":
        raise Forbidden("Access denied. Doctor only.")
    profile = account.get("profile") or {}
    if profile.get("verification_status") != "approved":
        raise PendingApproval("Access denied. Doctor account pending approval.")
    return account


def require_doctor(current: dict = Depends(get_current_user)) -> dict:
    return check_doctor(current)


def entity_id(account: dict, kind: str) -> str:
    """Id of the lab/hospital a facility account belongs to."""
    entity = (account.get("profile") or {}).get("entity") or {}
    if entity.get("kind") != kind or not entity.get("id"):
        raise Forbidden(f"User not associated with a {kind}")
    return entity["id"]


# Signup and login flows

def signup(db, config: PlatformConfig, name: str, phone: str, role: Optional[str] = None,
           email: Optional[str] = None, password: Optional[str] = None) -> dict:
    if not name or not phone:
        raise InvalidRequest("Please add name and phone number")
    role = role if role in SIGNUP_ROLES else "patient"
    ensure_unique_identity(db, phone, email)

    entity = None
    if role in ("lab", "hospital"):
        model = Lab if role == "lab" else Hospital
        facility = model(
            name=name,
            registration_number=f"REG_PENDING_{phone}",
            email=email or f"{role}_{phone}@labloom.com",
            phone=phone,
        )
        entity = EntityRef(kind=role, id=create_document(db, role, facility))

    account = Account(
        name=name,
        phone=phone,
        email=email,
        password_hash=hash_password(password) if password else None,
        role=role,
        approved=role == "patient",
        profile=default_profile(role, entity),
    )
    try:
        account_id = insert_account(db, account)
    except Conflict:
        if entity is not None:
            db[entity.kind].delete_one({"_id": ObjectId(entity.id)})
        raise

    if role in RESTRICTED_ROLES:
        return {
            "_id": account_id,
            "name": name,
            "email": email,
            "phone": phone,
            "role": role,
            "message": "Registration successful. Your account is pending admin approval.",
        }
    doc = db["account"].find_one({"_id": ObjectId(account_id)})
    return token_pair_response(db, doc, config)


def password_login(db, config: PlatformConfig, email: str, password: str) -> dict:
    account = db["account"].find_one({"email": email})
    if not account or not verify_password(password, account.get("password_hash")):
        raise Unauthenticated("Invalid credentials")
    if not account.get("is_active", True):
        raise Forbidden("Account suspended")
    require_login_approval(account)
    return {
        "_id": str(account["_id"]),
        "name": account.get("name"),
        "email": account.get("email"),
        "phone": account.get("phone"),
        "role": account["role"],
        "token": create_legacy_token(account, config),
    }


def request_otp(db, config: PlatformConfig, transport: OtpTransport, phone: str,
                now: Optional[datetime] = None) -> Optional[str]:
    """Store a fresh code on the account and deliver it. Returns the code."""
    if not phone:
        raise InvalidRequest("Phone number is required")
    now = now or utcnow()
    account = db["account"].find_one({"phone": phone})
    if not account:
        guest = Account(name="Guest User", phone=phone, role="patient", approved=True,
                        profile=PatientProfile())
        account_id = insert_account(db, guest)
        account = db["account"].find_one({"_id": ObjectId(account_id)})

    require_login_approval(account)
    if not account.get("is_active", True):
        raise Forbidden("Account suspended")

    if account["role"] == "admin":
        code = config.admin_otp
    else:
        code = f"{secrets.randbelow(9000) + 1000}"
    update_fields(db, "account", account["_id"], {
        "otp": code,
        "otp_expires": now + timedelta(minutes=config.otp_ttl_minutes),
    })
    transport.send(phone, code, account.get("email"))
    return code


def verify_otp(db, config: PlatformConfig, phone: str, otp: str, now: Optional[datetime] = None) -> dict:
    if not phone or not otp:
        raise InvalidRequest("Phone and OTP are required")
    now = now or utcnow()
    account = db["account"].find_one({"phone": phone})
    expires = account.get("otp_expires") if account else None
    if not account or not account.get("otp") or account.get("otp") != otp or not expires or expires <= now:
        raise InvalidRequest("Invalid or expired OTP")
    require_login_approval(account)

    update_fields(db, "account", account["_id"], {"otp": None, "otp_expires": None})
    return token_pair_response(db, account, config)


def admin_request_otp(db, config: PlatformConfig, transport: OtpTransport, phone: str) -> None:
    if phone != config.admin_phone:
        raise Forbidden("Access denied. Admin only.")
    if not db["account"].find_one({"phone": phone, "role": "admin"}):
        seed_admin(db, config)
    request_otp(db, config, transport, phone)


def admin_verify_otp(db, config: PlatformConfig, phone: str, otp: str) -> dict:
    if phone != config.admin_phone:
        raise Forbidden("Access denied. Admin only.")
    return verify_otp(db, config, phone, otp)


def seed_admin(db, config: PlatformConfig) -> str:
    """Make sure exactly one admin account holds the admin phone."""
    rows = list(db["account"].find({"phone": config.admin_phone}))
    admins = [r for r in rows if r.get("role") == "admin"]
    keep = admins[0] if admins else None
    stale = [r["_id"] for r in rows if keep is None or r["_id"] != keep["_id"]]
    if stale:
        db["account"].delete_many({"_id": {"$in": stale}})
    if keep:
        return str(keep["_id"])
    admin = Account(name=settings.ADMIN_NAME, phone=config.admin_phone, role="admin",
                    approved=True, profile=AdminProfile())
    return insert_account(db, admin)


def update_profile(db, account: dict, updates: dict) -> dict:
    allowed = {"name", "email", "phone", "image"}
    profile_fields = {"address", "city", "dob", "gender"}
    changes = {k: v for k, v in updates.items() if k in allowed and v is not None}
    if "phone" in changes or "email" in changes:
        ensure_unique_identity(
            db,
            changes.get("phone", account["phone"]),
            changes.get("email"),
            exclude_id=account["_id"],
        )
    if account["role"] == "patient":
        for key in profile_fields:
            if updates.get(key) is not None:
                changes[f"profile.{key}"] = updates[key]
    if updates.get("password"):
        changes["password_hash"] = hash_password(updates["password"])
    if changes:
        update_fields(db, "account", account["_id"], changes)
    fresh = db["account"].find_one({"_id": to_object_id(account["_id"])})
    if not fresh:
        raise NotFound("User not found")
    return public_account(fresh)
