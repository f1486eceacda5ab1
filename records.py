"""
Consultation records and the patient-facing medical-records views.

The views (lab reports, prescriptions, visit summaries) are projections over
the patient's bookings and own no data. Prescriptions are addressed by their
own `id`; older rows without one fall back to `<booking_id>_<index>`.
"""

from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from booking import BookingEngine, keep_prescription_ids
from database import create_document, find_by_id, serialize, to_object_id, update_fields, utcnow
from errors import Forbidden, InvalidRequest, NotFound
from schemas import (
    CONSULTATION_STATUSES,
    Consultation,
    LabReport,
    Notification,
    Prescription,
    ReminderSettings,
    VisitSummary,
)

DOCTOR_FIELDS = {"name": 1, "image": 1, "profile.specialization": 1}


def result_type(status: Optional[str]) -> str:
    if not status:
        return "Unknown"
    s = status.lower()
    if "critical" in s or "abnormal" in s:
        return "Bad"
    if "attention" in s or "follow-up" in s:
        return "Borderline"
    if "normal" in s:
        return "Good"
    return "Unknown"


def _csv(value: Optional[str]) -> List[str]:
    return [v.strip().lower() for v in value.split(",") if v.strip()] if value else []


def _doctor_name(doctor: Optional[dict]) -> Optional[str]:
    return doctor.get("name") if doctor else None


def _specialization(doctor: Optional[dict]) -> Optional[str]:
    return ((doctor or {}).get("profile") or {}).get("specialization")


# Lab reports

def lab_report_items(test_bookings: Iterable[dict], doctor_bookings: Iterable[dict],
                     tests: Dict[str, dict], doctors: Dict[str, dict]) -> List[dict]:
    reports = []
    for b in test_bookings:
        if b.get("status") != "completed":
            continue
        test = tests.get(b.get("test"))
        if not test:
            continue
        report = b.get("lab_report") or {}
        reports.append({
            "id": str(b["_id"]),
            "title": test.get("name"),
            "category": test.get("category"),
            "date": b["date"],
            "status": report.get("status") or "Normal Results",
            "report_url": report.get("report_url"),
            "result_date": report.get("result_date") or b["date"] + timedelta(days=1),
            "type": "lab_test",
            "image": test.get("image"),
        })
    for b in doctor_bookings:
        summary = b.get("visit_summary") or {}
        for index, exam in enumerate(summary.get("examinations") or []):
            reports.append({
                "id": f"{b['_id']}_{index}",
                "title": exam.get("test_name"),
                "category": "Doctor Prescribed",
                "date": exam.get("date") or b["date"],
                "status": exam.get("status") or "Normal Results",
                "report_url": exam.get("result_url"),
                "type": "doctor_exam",
                "doctor_name": _doctor_name(doctors.get(b.get("doctor"))),
            })
    return reports


def filter_lab_reports(reports: List[dict], category: Optional[str] = None,
                       result_types: Optional[str] = None, sort: Optional[str] = None) -> List[dict]:
    categories = _csv(category)
    if categories:
        reports = [r for r in reports if r.get("category") and r["category"].lower() in categories]
    wanted = _csv(result_types)
    if wanted:
        reports = [r for r in reports if result_type(r.get("status")).lower() in wanted]
    if sort == "a-z":
        return sorted(reports, key=lambda r: (r.get("title") or "").lower())
    return sorted(reports, key=lambda r: r["date"], reverse=True)


# Prescriptions

def prescription_items(doctor_bookings: Iterable[dict], doctors: Dict[str, dict]) -> List[dict]:
    items = []
    for b in doctor_bookings:
        summary = b.get("visit_summary") or {}
        doctor = doctors.get(b.get("doctor"))
        for index, rx in enumerate(summary.get("prescriptions") or []):
            item = dict(rx)
            item.update({
                "id": rx.get("id") or f"{b['_id']}_{index}",
                "booking_id": str(b["_id"]),
                "end_date": rx.get("end_date") or b["date"],
                "doctor_name": _doctor_name(doctor),
                "specialization": _specialization(doctor),
                "date": b["date"],
            })
            items.append(item)
    return items


def filter_prescriptions(items: List[dict], now: datetime, query: Optional[str] = None,
                         tab: Optional[str] = None, types: Optional[str] = None,
                         specialization: Optional[str] = None, sort: Optional[str] = None) -> List[dict]:
    if tab == "history":
        items = [p for p in items if p["end_date"] < now]
    elif tab == "actual":
        items = [p for p in items if p["end_date"] >= now]
    if query:
        needle = query.lower()
        items = [p for p in items if needle in (p.get("medication") or "").lower()]
    wanted_types = _csv(types)
    if wanted_types:
        items = [p for p in items if p.get("type") and p["type"].lower() in wanted_types]
    specs = _csv(specialization)
    if specs:
        items = [p for p in items if p.get("specialization") and p["specialization"].lower() in specs]

    if sort == "oldest":
        return sorted(items, key=lambda p: p["end_date"])
    if sort == "a-z":
        return sorted(items, key=lambda p: (p.get("medication") or "").lower())
    return sorted(items, key=lambda p: p["date"], reverse=True)


# Visit summaries

def filter_visit_summaries(bookings: List[dict], doctors: Dict[str, dict], mode: Optional[str] = None,
                           specialization: Optional[str] = None, query: Optional[str] = None,
                           sort: Optional[str] = None) -> List[dict]:
    items = [b for b in bookings if b.get("status") == "completed" and b.get("visit_summary")]
    if mode and mode != "All":
        wanted = "Video call" if mode == "Virtual" else "In-person"
        items = [b for b in items if b.get("appointment_mode") == wanted]
    if specialization:
        items = [b for b in items if _specialization(doctors.get(b.get("doctor"))) == specialization]
    if query:
        needle = query.lower()
        items = [
            b for b in items
            if needle in (_doctor_name(doctors.get(b.get("doctor"))) or "").lower()
            or needle in (_specialization(doctors.get(b.get("doctor"))) or "").lower()
        ]
    if sort == "Alphabet: from A>Z":
        items = sorted(items, key=lambda b: (_doctor_name(doctors.get(b.get("doctor"))) or "").lower())
    else:
        items = sorted(items, key=lambda b: b["date"], reverse=True)

    out = []
    for b in items:
        doc = serialize(b)
        doc["doctor_details"] = serialize(doctors.get(b.get("doctor")))
        out.append(doc)
    return out


# Lookups

def _doctors_for(db, bookings: Iterable[dict]) -> Dict[str, dict]:
    ids = {b["doctor"] for b in bookings if b.get("doctor")}
    if not ids:
        return {}
    found = db["account"].find({"_id": {"$in": [to_object_id(i) for i in ids]}}, DOCTOR_FIELDS)
    return {str(d["_id"]): d for d in found}


def _tests_for(db, bookings: Iterable[dict]) -> Dict[str, dict]:
    ids = {b["test"] for b in bookings if b.get("test")}
    if not ids:
        return {}
    found = db["test"].find({"_id": {"$in": [to_object_id(i) for i in ids]}})
    return {str(t["_id"]): t for t in found}


def lab_reports(db, patient_id: str, category: Optional[str] = None,
                result_types: Optional[str] = None, sort: Optional[str] = None) -> List[dict]:
    test_bookings = list(db["booking"].find({"user": patient_id, "booking_type": "test"}))
    doctor_bookings = list(db["booking"].find({"user": patient_id, "booking_type": "doctor"}))
    reports = lab_report_items(test_bookings, doctor_bookings, _tests_for(db, test_bookings),
                               _doctors_for(db, doctor_bookings))
    return filter_lab_reports(reports, category, result_types, sort)


def prescriptions(db, patient_id: str, now: Optional[datetime] = None, **filters) -> List[dict]:
    bookings = list(db["booking"].find({"user": patient_id, "booking_type": "doctor"}))
    items = prescription_items(bookings, _doctors_for(db, bookings))
    return filter_prescriptions(items, now or utcnow(), **filters)


def visit_summaries(db, patient_id: str, **filters) -> List[dict]:
    bookings = list(db["booking"].find({"user": patient_id, "status": "completed"}))
    return filter_visit_summaries(bookings, _doctors_for(db, bookings), **filters)


# Prescription refills and reminders

def find_prescription(db, prescription_id: str, patient_id: str) -> Tuple[dict, int]:
    booking = db["booking"].find_one({"visit_summary.prescriptions.id": prescription_id})
    if booking:
        items = booking["visit_summary"]["prescriptions"]
        index = next(i for i, rx in enumerate(items) if rx.get("id") == prescription_id)
    else:
        booking, index = _find_by_position(db, prescription_id)
    if booking.get("user") != patient_id:
        raise Forbidden("Not authorized to manage this prescription")
    return booking, index


def _find_by_position(db, prescription_id: str) -> Tuple[dict, int]:
    # Rows stored before prescriptions carried an id are addressed as <booking_id>_<index>.
    booking_id, _, index = prescription_id.rpartition("_")
    if not booking_id or not index.isdigit():
        raise NotFound("Prescription not found")
    booking = db["booking"].find_one({"_id": to_object_id(booking_id, "Prescription")})
    if not booking:
        raise NotFound("Prescription not found")
    items = (booking.get("visit_summary") or {}).get("prescriptions") or []
    if int(index) >= len(items) or items[int(index)].get("id"):
        raise NotFound("Prescription not found")
    return booking, int(index)


def _update_prescription(engine: BookingEngine, booking: dict, index: int, changes: dict) -> dict:
    summary = dict(booking["visit_summary"])
    items = list(summary["prescriptions"])
    items[index] = {**items[index], **changes}
    summary["prescriptions"] = items
    engine.apply(booking, {"visit_summary": summary})
    return items[index]


def request_refill(engine: BookingEngine, patient_id: str, prescription_id: str) -> dict:
    booking, index = find_prescription(engine.db, prescription_id, patient_id)
    rx = _update_prescription(engine, booking, index, {"refill_status": "requested"})
    notice = Notification(
        user=patient_id,
        title="Refill Request Sent",
        message=f"Your request for {rx.get('medication')} has been submitted to your doctor.",
        type="refill",
        ref_id=str(booking["_id"]),
    )
    create_document(engine.db, "notification", notice)
    return {"message": "Refill Request Sent", "refill_status": "requested"}


def set_reminder(engine: BookingEngine, patient_id: str, prescription_id: str,
                 frequency: Optional[str], times: List[str]) -> dict:
    booking, index = find_prescription(engine.db, prescription_id, patient_id)
    settings = ReminderSettings(active=True, frequency=frequency, times=times or []).model_dump()
    _update_prescription(engine, booking, index, {"reminder_settings": settings})
    return {"message": "Reminder Activated", "reminder_settings": settings}


def cancel_reminder(engine: BookingEngine, patient_id: str, prescription_id: str) -> dict:
    booking, index = find_prescription(engine.db, prescription_id, patient_id)
    current = (booking["visit_summary"]["prescriptions"][index].get("reminder_settings") or {})
    _update_prescription(engine, booking, index, {"reminder_settings": {**current, "active": False}})
    return {"message": "Reminder Canceled"}


# Consultations

def _sync_visit_summary(engine: BookingEngine, booking: dict, **fields) -> None:
    """Mirror consultation fields into the booking's visit summary."""
    data = VisitSummary.model_validate(booking.get("visit_summary") or {}).model_dump()
    data.update(fields)
    engine.apply(booking, {"visit_summary": VisitSummary.model_validate(data).model_dump()})


def save_consultation(engine: BookingEngine, booking: dict, doctor_id: str, data: dict) -> dict:
    if booking.get("booking_type") != "doctor":
        raise InvalidRequest("Consultations apply to doctor bookings only")
    db = engine.db
    data = {k: v for k, v in data.items() if v is not None}
    if "status" in data and data["status"] not in CONSULTATION_STATUSES:
        raise InvalidRequest(f"Invalid consultation status. Allowed: {', '.join(CONSULTATION_STATUSES)}")
    existing = db["consultation"].find_one({"appointment": str(booking["_id"])})
    if existing:
        update_fields(db, "consultation", existing["_id"], data)
        consultation_id = existing["_id"]
    else:
        consultation = Consultation(
            appointment=str(booking["_id"]),
            doctor=doctor_id,
            patient=booking["user"],
            **data,
        )
        consultation_id = create_document(db, "consultation", consultation)
    if data.get("diagnosis"):
        _sync_visit_summary(engine, booking, diagnosis=data["diagnosis"])
    return serialize(find_by_id(db, "consultation", consultation_id, "Consultation"))


def issue_prescription(engine: BookingEngine, booking: dict, doctor_id: str,
                       items: List[Prescription]) -> dict:
    if not items:
        raise InvalidRequest("At least one prescription is required")
    previous = (booking.get("visit_summary") or {}).get("prescriptions") or []
    dumped = keep_prescription_ids(previous, items)
    consultation = save_consultation(engine, booking, doctor_id, {"prescriptions": dumped})
    fresh = engine.get(str(booking["_id"]))
    _sync_visit_summary(engine, fresh, prescriptions=dumped)
    return {"message": "Prescription issued successfully", "consultation": consultation}


def patient_history(db, doctor_id: str, patient_id: str) -> dict:
    if not db["booking"].find_one({"doctor": doctor_id, "user": patient_id}):
        raise Forbidden("Not authorized to view this patient's history")
    patient = db["account"].find_one(
        {"_id": to_object_id(patient_id, "Patient")},
        {"name": 1, "phone": 1, "email": 1, "profile": 1, "image": 1},
    )
    if not patient:
        raise NotFound("Patient not found")
    consultations = list(
        db["consultation"].find({"patient": patient_id, "status": "completed"}).sort("created_at", -1).limit(10)
    )
    appointments = list(
        db["booking"].find({"user": patient_id, "booking_type": "doctor", "status": "completed"})
        .sort("date", -1).limit(10)
    )
    return {
        "patient": serialize(patient),
        "consultations": [serialize(c) for c in consultations],
        "appointments": [serialize(a) for a in appointments],
    }


# Lab reports on test bookings

def upload_report(engine: BookingEngine, booking: dict, report_url: str, now: Optional[datetime] = None) -> dict:
    if booking.get("status") != "completed":
        raise InvalidRequest("Booking must be completed before uploading a report")
    report = LabReport(report_url=report_url, status="Normal Results", result_date=now or utcnow())
    return engine.attach_lab_report(booking, report.model_dump())


def submit_report(engine: BookingEngine, booking: dict, report_url: str, results=None,
                  now: Optional[datetime] = None) -> dict:
    report = LabReport(report_url=report_url, status="Pending Validation",
                       result_date=now or utcnow(), results=results)
    return engine.attach_lab_report(booking, report.model_dump())


def validate_report(engine: BookingEngine, booking: dict) -> dict:
    if not booking.get("lab_report"):
        raise NotFound("Report not found")
    report = dict(booking["lab_report"])
    report["status"] = "Validated"
    return engine.attach_lab_report(booking, report, status="completed")


def report_info(booking: dict) -> dict:
    report = booking.get("lab_report") or {}
    if not report.get("report_url"):
        raise NotFound("Report not available yet")
    return {
        "report_url": report["report_url"],
        "status": report.get("status"),
        "result_date": report.get("result_date"),
    }
