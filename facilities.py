"""
Facility management: admin approvals and the lab, hospital and patient portals.

Labs and hospitals are approved as entities; the accounts linked to them through
`profile.entity` follow the entity's approval.
"""

import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from auth import PRIVATE_FIELDS, ensure_unique_identity, entity_id, hash_password, insert_account
from booking import WEEKDAYS, day_bounds, parse_datetime
from database import find_by_id, regex_filter, serialize, serialize_many, to_object_id, update_fields, utcnow
from errors import Conflict, Forbidden, InvalidRequest, NotFound, PendingApproval
from schemas import (
    STAFF_ROLES,
    Account,
    CatalogEntry,
    EntityRef,
    FacilityProfile,
    HospitalAffiliation,
    LabStaff,
    RosterEntry,
)

FACILITY_LABELS = {"lab": "Lab", "hospital": "Hospital"}
ACCOUNT_PROJECTION = {field: 0 for field in PRIVATE_FIELDS}


def _label(kind: str) -> str:
    return FACILITY_LABELS[kind]


def _pages(total: int, limit: int) -> int:
    return (total + limit - 1) // limit


# Admin

def pending_facilities(db, kind: str) -> List[dict]:
    return serialize_many(db[kind].find({"verification_status": "pending"}))


def pending_doctors(db) -> List[dict]:
    return serialize_many(db["account"].find(
        {"role": "doctor", "profile.verification_status": "pending"}, ACCOUNT_PROJECTION
    ))


def set_linked_accounts_approved(db, kind: str, facility_id: str, approved: bool) -> int:
    result = db["account"].update_many(
        {"role": kind, "profile.entity.kind": kind, "profile.entity.id": facility_id},
        {"$set": {"approved": approved, "updated_at": utcnow()}},
    )
    return result.modified_count


def approve_facility(db, kind: str, facility_id: str, admin_id: str) -> dict:
    facility = find_by_id(db, kind, facility_id, _label(kind))
    update_fields(db, kind, facility["_id"], {
        "verification_status": "approved",
        "verified_by": admin_id,
        "verified_at": utcnow(),
    })
    set_linked_accounts_approved(db, kind, str(facility["_id"]), True)
    return serialize(find_by_id(db, kind, facility_id, _label(kind)))


def withdraw_facility(db, kind: str, facility_id: str, admin_id: str, status: str) -> dict:
    """Reject or suspend a facility; its accounts lose login access."""
    if status not in ("rejected", "suspended"):
        raise InvalidRequest("Status must be rejected or suspended")
    facility = find_by_id(db, kind, facility_id, _label(kind))
    update_fields(db, kind, facility["_id"], {
        "verification_status": status,
        "verified_by": admin_id,
        "verified_at": utcnow(),
    })
    set_linked_accounts_approved(db, kind, str(facility["_id"]), False)
    return serialize(find_by_id(db, kind, facility_id, _label(kind)))


def approve_doctor(db, doctor_id: str) -> dict:
    doctor = db["account"].find_one({"_id": to_object_id(doctor_id, "Doctor"), "role": "doctor"})
    if not doctor:
        raise NotFound("Doctor not found")
    update_fields(db, "account", doctor["_id"], {
        "approved": True,
        "profile.verification_status": "approved",
    })
    return serialize(db["account"].find_one({"_id": doctor["_id"]}, ACCOUNT_PROJECTION))


def list_users(db, role: Optional[str] = None, search: Optional[str] = None,
               page: int = 1, limit: int = 20) -> dict:
    query: Dict[str, object] = {"role": {"$ne": "admin"}}
    if role and role != "admin":
        query["role"] = role
    if search:
        query["$or"] = [
            {"name": regex_filter(search)},
            {"email": regex_filter(search)},
            {"phone": regex_filter(search)},
        ]
    page = max(page, 1)
    limit = max(limit, 1)
    users = db["account"].find(query, ACCOUNT_PROJECTION).skip((page - 1) * limit).limit(limit)
    total = db["account"].count_documents(query)
    return {
        "users": serialize_many(users),
        "total_pages": _pages(total, limit),
        "current_page": page,
        "total": total,
    }


def set_user_active(db, user_id: str, is_active: bool) -> str:
    user = find_by_id(db, "account", user_id, "User")
    if user.get("role") == "admin":
        raise Forbidden("Admin accounts cannot be suspended")
    update_fields(db, "account", user["_id"], {"is_active": is_active})
    return f"User status updated to {'Active' if is_active else 'Suspended'}"


def system_analytics(db) -> dict:
    bookings = db["booking"]
    platform_revenue = sum(
        (b.get("revenue") or {}).get("admin_amount") or 0
        for b in bookings.find({"booking_type": "test", "status": {"$ne": "cancelled"}}, {"revenue": 1})
    )
    return {
        "users": {
            "patients": db["account"].count_documents({"role": "patient"}),
            "doctors": db["account"].count_documents({"role": "doctor"}),
            "hospitals": db["hospital"].count_documents({}),
            "labs": db["lab"].count_documents({}),
        },
        "activity": {
            "appointments": bookings.count_documents({"booking_type": "doctor"}),
            "lab_tests": bookings.count_documents({"booking_type": "test"}),
        },
        "platform_revenue": platform_revenue,
    }


# Facility lookup for portal accounts

def facility_of(db, account: dict, kind: str, require_approved: bool = True) -> dict:
    facility = find_by_id(db, kind, entity_id(account, kind), _label(kind))
    if require_approved and facility.get("verification_status") != "approved":
        raise PendingApproval(f"{_label(kind)} pending approval")
    return facility


def lab_scope(db, account: dict) -> Optional[str]:
    """Lab id to filter bookings by; admins see every lab."""
    if account["role"] == "admin":
        return None
    return str(facility_of(db, account, "lab")["_id"])


def ensure_lab_booking(db, account: dict, booking: dict) -> None:
    if booking.get("booking_type") != "test":
        raise InvalidRequest("Not a lab booking")
    lab_id = lab_scope(db, account)
    if lab_id is not None and booking.get("lab") != lab_id:
        raise Forbidden("Booking belongs to another lab")


# Lab catalog

def catalog(db, lab: dict) -> List[dict]:
    entries = lab.get("available_tests") or []
    ids = [to_object_id(e["test_id"]) for e in entries]
    tests = {str(t["_id"]): t for t in db["test"].find({"_id": {"$in": ids}})}
    items = []
    for e in entries:
        test = tests.get(e["test_id"]) or {}
        items.append({
            "_id": e["id"],
            "test_id": e["test_id"],
            "name": test.get("name"),
            "description": test.get("description"),
            "category": test.get("category"),
            "price": e.get("price"),
            "turnaround_time": e.get("turnaround_time"),
        })
    return items


def add_to_catalog(db, lab: dict, test_id: str, price: Optional[float] = None,
                   turnaround_time: Optional[str] = None) -> List[dict]:
    if not test_id:
        raise InvalidRequest("Test ID is required")
    find_by_id(db, "test", test_id, "Test")
    if any(e["test_id"] == test_id for e in lab.get("available_tests") or []):
        raise Conflict("Test already in catalog")
    entry = CatalogEntry(id=secrets.token_hex(12), test_id=test_id, price=price, turnaround_time=turnaround_time)
    db["lab"].update_one(
        {"_id": lab["_id"]},
        {"$push": {"available_tests": entry.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    return find_by_id(db, "lab", lab["_id"], "Lab")["available_tests"]


def update_catalog_entry(db, lab: dict, entry_id: str, price: Optional[float] = None,
                         turnaround_time: Optional[str] = None) -> dict:
    changes = {}
    if price is not None:
        changes["available_tests.$.price"] = price
    if turnaround_time is not None:
        changes["available_tests.$.turnaround_time"] = turnaround_time
    if not any(e["id"] == entry_id for e in lab.get("available_tests") or []):
        raise NotFound("Test entry not found in catalog")
    if changes:
        changes["updated_at"] = utcnow()
        db["lab"].update_one({"_id": lab["_id"], "available_tests.id": entry_id}, {"$set": changes})
    fresh = find_by_id(db, "lab", lab["_id"], "Lab")
    return next(e for e in fresh["available_tests"] if e["id"] == entry_id)


def remove_from_catalog(db, lab: dict, entry_id: str) -> None:
    if not any(e["id"] == entry_id for e in lab.get("available_tests") or []):
        raise NotFound("Test entry not found")
    db["lab"].update_one(
        {"_id": lab["_id"]},
        {"$pull": {"available_tests": {"id": entry_id}}, "$set": {"updated_at": utcnow()}},
    )


# Lab staff and settings

def lab_staff(db, lab: dict) -> List[dict]:
    staff = lab.get("staff") or []
    ids = [to_object_id(s["user_id"]) for s in staff]
    users = {
        str(u["_id"]): serialize(u)
        for u in db["account"].find({"_id": {"$in": ids}}, {"name": 1, "email": 1, "phone": 1})
    }
    return [{**s, "user": users.get(s["user_id"])} for s in staff]


def add_lab_staff(db, lab: dict, name: str, phone: str, email: Optional[str] = None,
                  password: Optional[str] = None, role: str = "technician") -> dict:
    if not name or not phone:
        raise InvalidRequest("Please add name and phone number")
    if role not in STAFF_ROLES:
        raise InvalidRequest(f"Invalid staff role. Allowed: {', '.join(STAFF_ROLES)}")
    ensure_unique_identity(db, phone, email)
    profile = FacilityProfile(role="lab", entity=EntityRef(kind="lab", id=str(lab["_id"])), position=role)
    account = Account(
        name=name,
        phone=phone,
        email=email,
        password_hash=hash_password(password) if password else None,
        role="lab",
        approved=lab.get("verification_status") == "approved",
        profile=profile,
    )
    user_id = insert_account(db, account)
    member = LabStaff(user_id=user_id, role=role, joined_at=utcnow())
    db["lab"].update_one(
        {"_id": lab["_id"]},
        {"$push": {"staff": member.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    user = db["account"].find_one({"_id": to_object_id(user_id)}, ACCOUNT_PROJECTION)
    return serialize(user)


LAB_SETTINGS_FIELDS = ("name", "email", "phone", "address", "location", "operating_hours")


def update_lab_settings(db, lab: dict, updates: dict) -> dict:
    changes = {k: v for k, v in updates.items() if k in LAB_SETTINGS_FIELDS and v is not None}
    if changes:
        update_fields(db, "lab", lab["_id"], changes)
    return serialize(find_by_id(db, "lab", lab["_id"], "Lab"))


# Hospital roster

def _roster_ids(hospital: dict, active_only: bool = False) -> List[str]:
    return [
        d["doctor_id"] for d in hospital.get("associated_doctors") or []
        if not active_only or d.get("is_active", True)
    ]


def add_doctor(db, hospital: dict, doctor_id: str, department: Optional[str] = None) -> None:
    doctor = db["account"].find_one({"_id": to_object_id(doctor_id, "Doctor")})
    if not doctor or doctor.get("role") != "doctor":
        raise InvalidRequest("Valid doctor ID required")
    if doctor_id in _roster_ids(hospital):
        raise Conflict("Doctor already associated with this hospital")
    hospital_id = str(hospital["_id"])
    entry = RosterEntry(doctor_id=doctor_id, department=department, joined_at=utcnow())
    db["hospital"].update_one(
        {"_id": hospital["_id"]},
        {"$push": {"associated_doctors": entry.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    affiliation = HospitalAffiliation(hospital_id=hospital_id, department=department)
    db["account"].update_one(
        {"_id": doctor["_id"]},
        {"$push": {"profile.hospital_affiliations": affiliation.model_dump()}, "$set": {"updated_at": utcnow()}},
    )


def roster(db, hospital: dict) -> List[dict]:
    entries = hospital.get("associated_doctors") or []
    ids = [to_object_id(e["doctor_id"]) for e in entries]
    projection = {"name": 1, "email": 1, "phone": 1, "profile.specialization": 1}
    doctors = {str(d["_id"]): serialize(d) for d in db["account"].find({"_id": {"$in": ids}}, projection)}
    return [{**e, "doctor": doctors.get(e["doctor_id"])} for e in entries]


def remove_doctor(db, hospital: dict, doctor_id: str) -> None:
    if doctor_id not in _roster_ids(hospital):
        raise NotFound("Doctor not associated with this hospital")
    hospital_id = str(hospital["_id"])
    db["hospital"].update_one(
        {"_id": hospital["_id"]},
        {"$pull": {"associated_doctors": {"doctor_id": doctor_id}}, "$set": {"updated_at": utcnow()}},
    )
    db["account"].update_one(
        {"_id": to_object_id(doctor_id)},
        {"$pull": {"profile.hospital_affiliations": {"hospital_id": hospital_id}}},
    )


def assign_slots(db, hospital: dict, doctor_id: str, slots: Dict[str, List[str]]) -> dict:
    if doctor_id not in _roster_ids(hospital):
        raise NotFound("Doctor not associated with this hospital")
    cleaned = {}
    for day, times in (slots or {}).items():
        key = day.lower()
        if key not in WEEKDAYS:
            raise InvalidRequest(f"Invalid weekday: {day}")
        for t in times:
            try:
                datetime.strptime(t, "%H:%M")
            except ValueError:
                raise InvalidRequest(f"Invalid slot time: {t}")
        cleaned[key] = sorted(set(times))
    db["hospital"].update_one(
        {"_id": hospital["_id"], "associated_doctors.doctor_id": doctor_id},
        {"$set": {"associated_doctors.$.slots": cleaned, "updated_at": utcnow()}},
    )
    return cleaned


# Hospital reporting

def finance_report(db, hospital: dict, start=None, end=None) -> dict:
    doctor_ids = _roster_ids(hospital)
    query = {"doctor": {"$in": doctor_ids}, "booking_type": "doctor", "status": "completed"}
    if start or end:
        window = {}
        if start:
            window["$gte"] = parse_datetime(start)
        if end:
            window["$lt"] = day_bounds(parse_datetime(end))[1]
        query["date"] = window

    names = {
        str(d["_id"]): d.get("name")
        for d in db["account"].find({"_id": {"$in": [to_object_id(i) for i in doctor_ids]}}, {"name": 1})
    }
    by_doctor: Dict[str, float] = {}
    total = 0
    for b in db["booking"].find(query):
        hospital_amount = (b.get("revenue") or {}).get("hospital_amount")
        amount = hospital_amount if hospital_amount is not None else b.get("amount") or 0
        name = names.get(b["doctor"], "Unknown")
        by_doctor[name] = by_doctor.get(name, 0) + amount
        total += amount
    return {
        "total_revenue": total,
        "by_doctor": [{"doctor": name, "revenue": value} for name, value in sorted(by_doctor.items())],
    }


def hospital_dashboard(db, hospital: dict) -> dict:
    doctor_ids = _roster_ids(hospital)
    query = {"doctor": {"$in": doctor_ids}, "booking_type": "doctor"}
    return {
        "active_doctors": len(_roster_ids(hospital, active_only=True)),
        "total_appointments": db["booking"].count_documents(query),
        "completed_visits": db["booking"].count_documents({**query, "status": "completed"}),
        "revenue": finance_report(db, hospital)["total_revenue"],
    }


def hospital_appointments(db, hospital: dict) -> List[dict]:
    query = {"doctor": {"$in": _roster_ids(hospital)}, "booking_type": "doctor"}
    return serialize_many(db["booking"].find(query).sort("date", -1))


# Patient portal

def patient_dashboard(db, patient_id: str, now: Optional[datetime] = None) -> dict:
    now = now or utcnow()
    upcoming = db["booking"].find(
        {"user": patient_id, "date": {"$gte": now}, "status": "pending"}
    ).sort("date", 1).limit(2)
    recent_reports = db["booking"].count_documents({
        "user": patient_id,
        "booking_type": "test",
        "status": "completed",
        "updated_at": {"$gte": now - timedelta(days=30)},
    })
    return {"upcoming_appointments": serialize_many(upcoming), "recent_reports_count": recent_reports}


def search_labs(db, city: Optional[str] = None, search: Optional[str] = None) -> List[dict]:
    query = {"verification_status": "approved", "is_active": True}
    if city:
        query["address.city"] = regex_filter(city)
    if search:
        query["name"] = regex_filter(search)
    projection = {"name": 1, "address": 1, "phone": 1, "available_tests": 1, "rating": 1, "reviews_count": 1}
    return serialize_many(db["lab"].find(query, projection).limit(20))


def lab_tests(db, lab_id: str) -> List[dict]:
    lab = find_by_id(db, "lab", lab_id, "Lab")
    if lab.get("verification_status") != "approved":
        raise NotFound("Lab not found")
    return catalog(db, lab)


def approved_doctors(db, specialization: Optional[str] = None, search: Optional[str] = None) -> List[dict]:
    query = {"role": "doctor", "approved": True, "is_active": True,
             "profile.verification_status": "approved"}
    if specialization:
        query["profile.specialization"] = regex_filter(specialization)
    if search:
        query["name"] = regex_filter(search)
    projection = {"name": 1, "image": 1, "profile": 1}
    return serialize_many(db["account"].find(query, projection))
