"""
Booking engine: creation with type-dependent validation, the revenue split,
status changes and doctor slot availability.

Revenue is computed once, when the booking is created, from `amount`. Status
changes and visit completion never touch it again.
"""

from datetime import date as date_type
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from pymongo import ReturnDocument

from auth import insert_account
from database import (
    create_document,
    find_by_id,
    regex_filter,
    serialize,
    to_object_id,
    utcnow,
    as_naive_utc,
)
from errors import Conflict, Forbidden, InvalidRequest, NotFound
from schemas import (
    APPOINTMENT_MODES,
    BOOKING_STATUSES,
    Account,
    Booking,
    PatientProfile,
    Prescription,
    Revenue,
    VisitSummary,
)
from settings import CONFIG, PlatformConfig

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
INACTIVE_STATUSES = ("cancelled", "test_not_done")


def parse_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return as_naive_utc(value)
    if isinstance(value, date_type):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_naive_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
    raise InvalidRequest(f"Invalid date: {value!r}")


def split_revenue(booking_type: str, amount: float, config: PlatformConfig = CONFIG) -> Tuple[float, Revenue]:
    """Return (platform_fee, revenue) for a new booking."""
    if booking_type == "doctor":
        return 0, Revenue(hospital_amount=amount)
    fee = config.platform_fee
    return fee, Revenue(lab_amount=max(amount - fee, 0), admin_amount=fee)


def slot_grid(config: PlatformConfig = CONFIG) -> List[str]:
    start = datetime.strptime(config.slot_start, "%H:%M")
    end = datetime.strptime(config.slot_end, "%H:%M")
    step = timedelta(minutes=config.slot_step_minutes)
    slots = []
    current = start
    while current <= end:
        slots.append(current.strftime("%H:%M"))
        current += step
    return slots


def day_bounds(day: datetime) -> Tuple[datetime, datetime]:
    start = day.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def booked_times(bookings: Iterable[dict]) -> set:
    """Times taken by the given bookings; falls back to the HH:MM of `date`."""
    taken = set()
    for b in bookings:
        if b.get("status") in INACTIVE_STATUSES:
            continue
        if b.get("time"):
            taken.add(b["time"])
        elif isinstance(b.get("date"), datetime):
            taken.add(b["date"].strftime("%H:%M"))
    return taken


def mark_slots(candidates: Iterable[str], taken: set) -> List[Dict[str, object]]:
    # Exact string match only: "9:00" and "09:00" do not collide.
    return [{"time": t, "is_available": t not in taken} for t in candidates]


def keep_prescription_ids(previous: List[dict], incoming) -> List[dict]:
    """Dump prescriptions; one sent without an id keeps the id of the same medication at the same position."""
    out = []
    for index, rx in enumerate(incoming):
        if not isinstance(rx, Prescription):
            rx = Prescription.model_validate(rx)
        if "id" not in rx.model_fields_set and index < len(previous):
            before = previous[index]
            if before.get("id") and before.get("medication") == rx.medication:
                rx = rx.model_copy(update={"id": before["id"]})
        out.append(rx.model_dump())
    return out


def complete_visit(booking: dict, summary) -> dict:
    """Transition a doctor booking to completed with a full visit summary.

    The summary replaces whatever was stored before; no field-level merge.
    Returns the fields to write.
    """
    if booking.get("booking_type") != "doctor":
        raise InvalidRequest("Visit summaries apply to doctor bookings only")
    if not isinstance(summary, VisitSummary):
        summary = VisitSummary.model_validate(summary or {})
    data = summary.model_dump()
    previous = (booking.get("visit_summary") or {}).get("prescriptions") or []
    data["prescriptions"] = keep_prescription_ids(previous, summary.prescriptions)
    return {"visit_summary": data, "status": "completed"}


def validate_status(booking: dict, status: str) -> None:
    if status not in BOOKING_STATUSES:
        raise InvalidRequest(f"Invalid status. Allowed: {', '.join(BOOKING_STATUSES)}")
    if status == "test_not_done" and booking.get("booking_type") != "test":
        raise InvalidRequest("test_not_done applies to test bookings only")


def is_participant(booking: dict, account: dict) -> bool:
    return account["_id"] in (booking.get("user"), booking.get("doctor"))


def ensure_doctor_owns(booking: dict, account: dict) -> None:
    if account["role"] == "admin":
        return
    if booking.get("doctor") != account["_id"]:
        raise Forbidden("Not authorized to update this appointment")


class BookingEngine:
    def __init__(self, db, config: Optional[PlatformConfig] = None):
        self.db = db
        self.config = config or CONFIG

    @property
    def collection(self):
        return self.db["booking"]

    def get(self, booking_id: str) -> dict:
        return find_by_id(self.db, "booking", booking_id, "Booking")

    def create(self, patient_id: str, *, date=None, booking_type: Optional[str] = None,
               time: Optional[str] = None, test_id: Optional[str] = None, lab_id: Optional[str] = None,
               doctor_id: Optional[str] = None, appointment_mode: Optional[str] = None,
               notes: Optional[str] = None, amount: Optional[float] = None) -> dict:
        if not date:
            raise InvalidRequest("Date is required")
        booking_type = booking_type or "test"
        if booking_type == "doctor":
            if not doctor_id or not time or not appointment_mode:
                raise InvalidRequest("Doctor, Time, and Mode are required for doctor bookings")
            if appointment_mode not in APPOINTMENT_MODES:
                raise InvalidRequest(f"Invalid appointment mode. Allowed: {', '.join(APPOINTMENT_MODES)}")
        elif booking_type == "test":
            if not test_id:
                raise InvalidRequest("Test ID is required for lab bookings")
        else:
            raise InvalidRequest("bookingType must be test or doctor")

        when = parse_datetime(date)
        amount = amount or 0
        if amount < 0:
            raise InvalidRequest("Amount cannot be negative")

        if booking_type == "doctor":
            doctor = self.db["account"].find_one({"_id": to_object_id(doctor_id, "Doctor"), "role": "doctor"})
            if not doctor:
                raise NotFound("Doctor not found")
            if (doctor.get("profile") or {}).get("verification_status") != "approved":
                raise InvalidRequest("Doctor is not available for booking")
        else:
            find_by_id(self.db, "test", test_id, "Test")
            if lab_id:
                find_by_id(self.db, "lab", lab_id, "Lab")

        platform_fee, revenue = split_revenue(booking_type, amount, self.config)
        booking = Booking(
            user=str(patient_id),
            test=test_id if booking_type == "test" else None,
            lab=lab_id if booking_type == "test" else None,
            doctor=doctor_id if booking_type == "doctor" else None,
            booking_type=booking_type,
            date=when,
            time=time,
            appointment_mode=appointment_mode if booking_type == "doctor" else None,
            notes=notes,
            amount=amount,
            platform_fee=platform_fee,
            revenue=revenue,
        )
        booking_id = create_document(self.db, "booking", booking)
        return self.get(booking_id)

    def create_offline(self, lab_id: str, patient_name: str, patient_phone: str, test_id: str,
                       date, time: Optional[str] = None, notes: Optional[str] = None,
                       amount: Optional[float] = None) -> dict:
        """Walk-in booking entered by lab staff on behalf of a patient."""
        if not patient_phone:
            raise InvalidRequest("Patient phone is required")
        if not date or not test_id:
            raise InvalidRequest("Date and Test ID are required")
        patient = self.db["account"].find_one({"phone": patient_phone})
        if not patient:
            account = Account(name=patient_name or "Walk-in Patient", phone=patient_phone,
                              role="patient", approved=True, profile=PatientProfile())
            patient_id = insert_account(self.db, account)
        else:
            patient_id = str(patient["_id"])
        return self.create(patient_id, date=date, booking_type="test", time=time, test_id=test_id,
                           lab_id=lab_id, notes=notes, amount=amount)

    def set_status(self, booking: dict, status: str, reason: Optional[str] = None,
                   expected_version: Optional[int] = None) -> dict:
        validate_status(booking, status)
        updates = {"status": status, "updated_at": utcnow()}
        if reason:
            updates["notes"] = reason
        return self.apply(booking, updates, expected_version)

    def complete_visit(self, booking: dict, summary) -> dict:
        return self.apply(booking, complete_visit(booking, summary))

    def attach_lab_report(self, booking: dict, report: dict, status: Optional[str] = None) -> dict:
        if booking.get("booking_type") != "test":
            raise InvalidRequest("Lab reports apply to test bookings only")
        updates = {"lab_report": report}
        if status:
            updates["status"] = status
        return self.apply(booking, updates)

    def apply(self, booking: dict, updates: dict, expected_version: Optional[int] = None) -> dict:
        query = {"_id": to_object_id(booking["_id"], "Booking")}
        if expected_version is not None:
            query["version"] = expected_version
        updates = dict(updates)
        updates["updated_at"] = utcnow()
        result = self.collection.find_one_and_update(
            query,
            {"$set": updates, "$inc": {"version": 1}},
            return_document=ReturnDocument.AFTER,
        )
        if result is None:
            if expected_version is not None:
                raise Conflict("Booking was modified by another request")
            raise NotFound("Booking not found")
        return result

    def hospital_slots(self, doctor_id: str, weekday: str) -> List[str]:
        slots = []
        for hospital in self.db["hospital"].find({"associated_doctors.doctor_id": doctor_id}):
            for entry in hospital.get("associated_doctors", []):
                if entry.get("doctor_id") == doctor_id and entry.get("is_active", True):
                    slots.extend((entry.get("slots") or {}).get(weekday, []))
        return slots

    def available_slots(self, doctor_id: str, day) -> List[Dict[str, object]]:
        when = parse_datetime(day)
        start, end = day_bounds(when)
        bookings = self.collection.find({
            "doctor": doctor_id,
            "date": {"$gte": start, "$lt": end},
            "status": {"$nin": list(INACTIVE_STATUSES)},
        })
        candidates = slot_grid(self.config)
        for extra in self.hospital_slots(doctor_id, WEEKDAYS[start.weekday()]):
            if extra not in candidates:
                candidates.append(extra)
        candidates.sort()
        return mark_slots(candidates, booked_times(bookings))

    def for_patient(self, patient_id: str) -> List[dict]:
        items = list(self.collection.find({"user": patient_id}).sort("date", -1))
        return [serialize(b) for b in items]

    def for_doctor(self, doctor_id: str, status: Optional[str] = None, day=None,
                   page: int = 1, limit: int = 20) -> dict:
        query = {"doctor": doctor_id, "booking_type": "doctor"}
        if status:
            query["status"] = status
        if day:
            start, end = day_bounds(parse_datetime(day))
            query["date"] = {"$gte": start, "$lt": end}
        return self.paginate(query, page, limit)

    def for_lab(self, lab_id: Optional[str], status: Optional[str] = None, day=None,
                page: int = 1, limit: int = 20) -> dict:
        query = {"booking_type": "test"}
        if lab_id:
            query["lab"] = lab_id
        if status:
            query["status"] = status
        if day:
            start, end = day_bounds(parse_datetime(day))
            query["date"] = {"$gte": start, "$lt": end}
        return self.paginate(query, page, limit)

    def paginate(self, query: dict, page: int, limit: int) -> dict:
        page = max(page, 1)
        limit = max(limit, 1)
        cursor = self.collection.find(query).sort([("date", 1), ("time", 1)])
        items = list(cursor.skip((page - 1) * limit).limit(limit))
        total = self.collection.count_documents(query)
        return {
            "items": [serialize(b) for b in items],
            "total_pages": (total + limit - 1) // limit,
            "current_page": page,
            "total": total,
        }

    def patients_of(self, doctor_id: str, search: Optional[str] = None,
                    page: int = 1, limit: int = 20) -> dict:
        ids = self.collection.distinct("user", {"doctor": doctor_id, "booking_type": "doctor"})
        query = {"_id": {"$in": [to_object_id(i) for i in ids]}}
        if search:
            query["$or"] = [
                {"name": regex_filter(search)},
                {"phone": regex_filter(search)},
                {"email": regex_filter(search)},
            ]
        page = max(page, 1)
        limit = max(limit, 1)
        projection = {"name": 1, "phone": 1, "email": 1, "image": 1, "profile.dob": 1}
        patients = list(self.db["account"].find(query, projection).skip((page - 1) * limit).limit(limit))
        total = self.db["account"].count_documents(query)
        return {
            "patients": [serialize(p) for p in patients],
            "total_pages": (total + limit - 1) // limit,
            "current_page": page,
            "total": total,
        }
