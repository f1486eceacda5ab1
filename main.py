import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field
from pymongo.errors import PyMongoError

import auth
import chat
import database
import facilities
import metrics
import records
import reviews
import settings
import storage
from auth import check_doctor, get_current_user, public_account, require_admin, require_doctor, require_roles
from booking import BookingEngine, ensure_doctor_owns, is_participant
from database import create_document, find_by_id, get_db, regex_filter, serialize, serialize_many, to_object_id, update_fields
from delivery import OtpTransport, get_otp_transport
from errors import ApiError, Forbidden, InvalidRequest, NotFound
from schemas import (
    Address,
    ConsultationStatus,
    FollowUp,
    GeoPoint,
    MessageType,
    OrderedTest,
    Prescription,
    StaffRole,
    Test as TestSchema,
    VisitSummary,
    VitalSigns,
)
from settings import PlatformConfig, get_config


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage.ensure_upload_dirs()
    if database.db is not None:
        auth.ensure_indexes(database.db)
        admin_id = auth.seed_admin(database.db, get_config())
        print(f"Admin account ready: {admin_id}")
    else:
        print("DATABASE_URL / DATABASE_NAME not set; running without a database")
    yield


# App setup
app = FastAPI(title="LabLoom API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(
    settings.UPLOAD_URL_PREFIX,
    StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False),
    name="uploads",
)


# Error rendering
@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ())[1:])
        message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    else:
        message = "Invalid request"
    return JSONResponse(status_code=400, content={"detail": message, "code": "invalid_request"})


@app.exception_handler(PyMongoError)
async def storage_error_handler(request: Request, exc: PyMongoError):
    print(f"Storage error on {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": "Storage failure", "code": "storage_failure"})


def get_engine(db=Depends(get_db), config: PlatformConfig = Depends(get_config)) -> BookingEngine:
    return BookingEngine(db, config)


# Models for requests
class SignupRequest(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class OtpRequest(BaseModel):
    phone: Optional[str] = None


class OtpVerifyRequest(BaseModel):
    phone: Optional[str] = None
    otp: Optional[str] = None


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    image: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    dob: Optional[datetime] = None
    gender: Optional[str] = None
    password: Optional[str] = None


class BookingCreate(BaseModel):
    date: Optional[str] = None
    booking_type: Optional[str] = None
    time: Optional[str] = None
    test_id: Optional[str] = None
    lab_id: Optional[str] = None
    doctor_id: Optional[str] = None
    appointment_mode: Optional[str] = None
    notes: Optional[str] = None
    amount: Optional[float] = None


class OfflineBookingCreate(BaseModel):
    patient_name: Optional[str] = None
    patient_phone: Optional[str] = None
    test_id: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    notes: Optional[str] = None
    amount: Optional[float] = None


class StatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = None
    version: Optional[int] = Field(None, description="Expected booking version; mismatch is rejected")


class MessageCreate(BaseModel):
    booking_id: Optional[str] = None
    content: Optional[str] = None
    type: MessageType = "text"


class ConsultationRecords(BaseModel):
    chief_complaint: Optional[str] = None
    diagnosis: Optional[str] = None
    clinical_notes: Optional[str] = None
    vital_signs: Optional[VitalSigns] = None
    lab_tests_ordered: Optional[List[OrderedTest]] = None
    follow_up: Optional[FollowUp] = None
    status: Optional[ConsultationStatus] = None


class PrescribeRequest(BaseModel):
    prescriptions: List[Prescription] = Field(default_factory=list)


class ReminderRequest(BaseModel):
    frequency: Optional[str] = None
    times: List[str] = Field(default_factory=list)


class LegacyReportUpload(BaseModel):
    booking_id: str
    report_url: str
    results: Optional[Any] = None


class CatalogAdd(BaseModel):
    test_id: Optional[str] = None
    price: Optional[float] = None
    turnaround_time: Optional[str] = None


class CatalogUpdate(BaseModel):
    price: Optional[float] = None
    turnaround_time: Optional[str] = None


class StaffCreate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    role: StaffRole = "technician"


class LabSettingsUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    location: Optional[GeoPoint] = None
    operating_hours: Optional[Dict[str, Dict[str, str]]] = None


class RosterAdd(BaseModel):
    doctor_id: str
    department: Optional[str] = None


class SlotAssignment(BaseModel):
    slots: Dict[str, List[str]] = Field(default_factory=dict)


class VerificationUpdate(BaseModel):
    status: str


class UserStatusUpdate(BaseModel):
    is_active: bool


class ReviewCreate(BaseModel):
    doctor_id: Optional[str] = None
    lab_id: Optional[str] = None
    hospital_id: Optional[str] = None
    rating: Optional[int] = None
    comment: Optional[str] = None


class MetricCreate(BaseModel):
    type: Optional[str] = None
    value: Optional[float] = None
    value2: Optional[float] = None
    unit: Optional[str] = None
    date: Optional[str] = None
    notes: Optional[str] = None


class TestUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[float] = None
    duration: Optional[str] = None
    image: Optional[str] = None


# Routes
@app.get("/")
def root():
    return {"name": "LabLoom API", "status": "ok"}


@app.get("/api/health")
def health(db=Depends(get_db)):
    return {
        "status": "ok",
        "database": db.name,
        "accounts": db["account"].count_documents({}),
        "bookings": db["booking"].count_documents({}),
        "pending_approvals": {
            "doctors": db["account"].count_documents({"role": "doctor", "approved": False}),
            "labs": db["lab"].count_documents({"verification_status": "pending"}),
            "hospitals": db["hospital"].count_documents({"verification_status": "pending"}),
        },
    }


# Auth
@app.post("/api/auth/signup", status_code=201)
@app.post("/api/auth/register", status_code=201)
def signup(payload: SignupRequest, db=Depends(get_db), config: PlatformConfig = Depends(get_config)):
    return auth.signup(db, config, payload.name, payload.phone, payload.role, payload.email, payload.password)


@app.post("/api/auth/login")
def login(payload: LoginRequest, db=Depends(get_db), config: PlatformConfig = Depends(get_config)):
    return auth.password_login(db, config, payload.email, payload.password)


@app.post("/api/auth/request-otp")
@app.post("/api/auth/send-otp")
def request_otp(payload: OtpRequest, db=Depends(get_db), config: PlatformConfig = Depends(get_config),
                transport: OtpTransport = Depends(get_otp_transport)):
    code = auth.request_otp(db, config, transport, payload.phone)
    response = {"message": "OTP sent successfully"}
    # Dev only: echo the code so flows are testable without a delivery channel
    if settings.is_dev():
        response["otp"] = code
    return response


@app.post("/api/auth/verify-otp")
@app.post("/api/auth/login-otp")
def verify_otp(payload: OtpVerifyRequest, db=Depends(get_db), config: PlatformConfig = Depends(get_config)):
    return auth.verify_otp(db, config, payload.phone, payload.otp)


@app.post("/api/auth/refresh-token")
def refresh_token(payload: RefreshRequest, db=Depends(get_db), config: PlatformConfig = Depends(get_config)):
    return auth.refresh_access_token(db, payload.refresh_token, config)


@app.post("/api/auth/logout")
def logout(payload: Optional[RefreshRequest] = None, current=Depends(get_current_user), db=Depends(get_db)):
    auth.revoke_refresh_token(db, payload.refresh_token if payload else None)
    return {"message": "Logged out successfully"}


@app.get("/api/auth/me")
@app.get("/api/auth/profile")
@app.get("/api/patients/me")
def me(current=Depends(get_current_user)):
    return public_account(current)


@app.patch("/api/auth/me")
@app.put("/api/auth/profile")
@app.patch("/api/patients/me")
def update_me(payload: ProfileUpdate, current=Depends(get_current_user), db=Depends(get_db)):
    return auth.update_profile(db, current, payload.model_dump(exclude_none=True))


# Admin
@app.post("/api/admin/request-otp")
def admin_request_otp(payload: OtpRequest, db=Depends(get_db), config: PlatformConfig = Depends(get_config),
                      transport: OtpTransport = Depends(get_otp_transport)):
    auth.admin_request_otp(db, config, transport, payload.phone)
    return {"message": "OTP sent successfully"}


@app.post("/api/admin/verify-otp")
def admin_verify_otp(payload: OtpVerifyRequest, db=Depends(get_db), config: PlatformConfig = Depends(get_config)):
    return auth.admin_verify_otp(db, config, payload.phone, payload.otp)


@app.get("/api/admin/pending-hospitals")
def pending_hospitals(current=Depends(require_admin), db=Depends(get_db)):
    return facilities.pending_facilities(db, "hospital")


@app.get("/api/admin/pending-labs")
def pending_labs(current=Depends(require_admin), db=Depends(get_db)):
    return facilities.pending_facilities(db, "lab")


@app.get("/api/admin/pending-doctors")
def pending_doctors(current=Depends(require_admin), db=Depends(get_db)):
    return facilities.pending_doctors(db)


@app.post("/api/admin/approve-hospital/{hospital_id}")
def approve_hospital(hospital_id: str, current=Depends(require_admin), db=Depends(get_db)):
    hospital = facilities.approve_facility(db, "hospital", hospital_id, current["_id"])
    return {"message": "Hospital approved successfully", "hospital": hospital}


@app.post("/api/admin/approve-lab/{lab_id}")
def approve_lab(lab_id: str, current=Depends(require_admin), db=Depends(get_db)):
    lab = facilities.approve_facility(db, "lab", lab_id, current["_id"])
    return {"message": "Lab approved successfully", "lab": lab}


@app.patch("/api/admin/hospitals/{hospital_id}/verification")
def withdraw_hospital(hospital_id: str, payload: VerificationUpdate, current=Depends(require_admin), db=Depends(get_db)):
    hospital = facilities.withdraw_facility(db, "hospital", hospital_id, current["_id"], payload.status)
    return {"message": f"Hospital {payload.status}", "hospital": hospital}


@app.patch("/api/admin/labs/{lab_id}/verification")
def withdraw_lab(lab_id: str, payload: VerificationUpdate, current=Depends(require_admin), db=Depends(get_db)):
    lab = facilities.withdraw_facility(db, "lab", lab_id, current["_id"], payload.status)
    return {"message": f"Lab {payload.status}", "lab": lab}


@app.post("/api/admin/approve-doctor/{doctor_id}")
def approve_doctor(doctor_id: str, current=Depends(require_admin), db=Depends(get_db)):
    doctor = facilities.approve_doctor(db, doctor_id)
    return {"message": "Doctor approved successfully", "doctor": doctor}


@app.get("/api/admin/users")
def list_users(role: Optional[str] = None, search: Optional[str] = None, page: int = 1, limit: int = 20,
               current=Depends(require_admin), db=Depends(get_db)):
    return facilities.list_users(db, role, search, page, limit)


@app.patch("/api/admin/users/{user_id}/status")
def update_user_status(user_id: str, payload: UserStatusUpdate, current=Depends(require_admin), db=Depends(get_db)):
    return {"message": facilities.set_user_active(db, user_id, payload.is_active)}


@app.get("/api/admin/reports/system")
def system_analytics(current=Depends(require_admin), db=Depends(get_db)):
    return facilities.system_analytics(db)


# Bookings
@app.post("/api/bookings", status_code=201)
@app.post("/api/patients/bookings", status_code=201)
@app.post("/api/patients/appointments", status_code=201)
def create_booking(payload: BookingCreate, current=Depends(require_roles("patient")),
                   engine: BookingEngine = Depends(get_engine)):
    booking = engine.create(current["_id"], **payload.model_dump())
    return serialize(booking)


@app.get("/api/bookings/my")
@app.get("/api/patients/bookings/me")
@app.get("/api/patients/appointments/me")
def my_bookings(current=Depends(get_current_user), engine: BookingEngine = Depends(get_engine)):
    return engine.for_patient(current["_id"])


@app.get("/api/bookings/summaries")
def visit_summaries(type: Optional[str] = None, specialization: Optional[str] = None, query: Optional[str] = None,
                    sort: Optional[str] = None, current=Depends(get_current_user), db=Depends(get_db)):
    return records.visit_summaries(db, current["_id"], mode=type, specialization=specialization,
                                   query=query, sort=sort)


@app.put("/api/bookings/{booking_id}/summary")
def update_visit_summary(booking_id: str, payload: VisitSummary, current=Depends(get_current_user),
                         engine: BookingEngine = Depends(get_engine)):
    if current["role"] != "admin":
        check_doctor(current)
    booking = engine.get(booking_id)
    ensure_doctor_owns(booking, current)
    return serialize(engine.complete_visit(booking, payload))


def _can_view_booking(db, booking: dict, account: dict) -> bool:
    if account["role"] == "admin" or is_participant(booking, account):
        return True
    if account["role"] == "lab" and booking.get("booking_type") == "test":
        return booking.get("lab") == facilities.lab_scope(db, account)
    return False


@app.get("/api/bookings/{booking_id}")
def get_booking(booking_id: str, current=Depends(get_current_user), engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    if not _can_view_booking(engine.db, booking, current):
        raise Forbidden("Not authorized to view this booking")
    return serialize(booking)


@app.patch("/api/bookings/{booking_id}/status")
def update_booking_status(booking_id: str, payload: StatusUpdate, current=Depends(get_current_user),
                          engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    role = current["role"]
    if role == "patient":
        if booking.get("user") != current["_id"]:
            raise Forbidden("Not authorized to update this booking")
        if payload.status != "cancelled":
            raise Forbidden("Patients can only cancel their bookings")
    elif role == "doctor":
        check_doctor(current)
        ensure_doctor_owns(booking, current)
    elif role == "lab":
        facilities.ensure_lab_booking(engine.db, current, booking)
    elif role != "admin":
        raise Forbidden("Not authorized to update this booking")
    return serialize(engine.set_status(booking, payload.status, payload.reason, payload.version))


# Chat
@app.post("/api/chat/send", status_code=201)
def send_message(payload: MessageCreate, current=Depends(get_current_user), db=Depends(get_db),
                 config: PlatformConfig = Depends(get_config)):
    return chat.send_message(db, current["_id"], payload.booking_id, payload.content, payload.type, config=config)


@app.get("/api/chat/{booking_id}")
def chat_history(booking_id: str, current=Depends(get_current_user), db=Depends(get_db)):
    return chat.history(db, current["_id"], booking_id)


@app.patch("/api/chat/{booking_id}/read")
def mark_chat_read(booking_id: str, current=Depends(get_current_user), db=Depends(get_db)):
    return {"updated": chat.mark_read(db, current["_id"], booking_id)}


# Doctor portal
@app.get("/api/doctor/appointments")
def doctor_appointments(status: Optional[str] = None, date: Optional[str] = None, page: int = 1, limit: int = 20,
                        current=Depends(require_doctor), engine: BookingEngine = Depends(get_engine)):
    result = engine.for_doctor(current["_id"], status, date, page, limit)
    return {
        "appointments": result["items"],
        "total_pages": result["total_pages"],
        "current_page": result["current_page"],
        "total": result["total"],
    }


@app.get("/api/doctor/patients")
def doctor_patients(search: Optional[str] = None, page: int = 1, limit: int = 20,
                    current=Depends(require_doctor), engine: BookingEngine = Depends(get_engine)):
    return engine.patients_of(current["_id"], search, page, limit)


@app.patch("/api/doctor/appointments/{booking_id}/status")
def doctor_update_status(booking_id: str, payload: StatusUpdate, current=Depends(require_doctor),
                         engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    ensure_doctor_owns(booking, current)
    updated = engine.set_status(booking, payload.status, payload.reason, payload.version)
    return {"message": "Appointment status updated", "appointment": serialize(updated)}


@app.get("/api/doctor/appointments/{booking_id}")
def appointment_details(booking_id: str, current=Depends(get_current_user), engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    if booking.get("booking_type") != "doctor":
        raise NotFound("Appointment not found")
    if not is_participant(booking, current) and current["role"] != "admin":
        raise Forbidden("Not authorized to view this appointment")
    db = engine.db
    patient = db["account"].find_one({"_id": to_object_id(booking["user"])}, {"name": 1, "phone": 1, "email": 1, "image": 1})
    consultation = db["consultation"].find_one({"appointment": str(booking["_id"])})
    doc = serialize(booking)
    doc["patient_details"] = serialize(patient)
    doc["consultation"] = serialize(consultation)
    return doc


@app.get("/api/doctor/patients/{patient_id}/history")
def patient_history(patient_id: str, current=Depends(require_doctor), db=Depends(get_db)):
    return records.patient_history(db, current["_id"], patient_id)


def _owned_appointment(engine: BookingEngine, booking_id: str, doctor: dict) -> dict:
    booking = engine.get(booking_id)
    if booking.get("doctor") != doctor["_id"]:
        raise Forbidden("Not authorized")
    return booking


@app.post("/api/doctor/consultations/{booking_id}/records")
def save_consultation(booking_id: str, payload: ConsultationRecords, current=Depends(require_doctor),
                      engine: BookingEngine = Depends(get_engine)):
    booking = _owned_appointment(engine, booking_id, current)
    return records.save_consultation(engine, booking, current["_id"], payload.model_dump(exclude_none=True))


@app.post("/api/doctor/consultations/{booking_id}/prescribe")
def issue_prescription(booking_id: str, payload: PrescribeRequest, current=Depends(require_doctor),
                       engine: BookingEngine = Depends(get_engine)):
    booking = _owned_appointment(engine, booking_id, current)
    return records.issue_prescription(engine, booking, current["_id"], payload.prescriptions)


# Lab portal
def _lab(current=Depends(require_roles("lab")), db=Depends(get_db)) -> dict:
    return facilities.facility_of(db, current, "lab")


@app.get("/api/lab/bookings")
def lab_bookings(status: Optional[str] = None, date: Optional[str] = None, page: int = 1, limit: int = 20,
                 current=Depends(require_roles("lab", "admin")), engine: BookingEngine = Depends(get_engine)):
    result = engine.for_lab(facilities.lab_scope(engine.db, current), status, date, page, limit)
    return {
        "bookings": result["items"],
        "total_pages": result["total_pages"],
        "current_page": result["current_page"],
        "total": result["total"],
    }


@app.get("/api/lab/bookings/pending")
def lab_pending_bookings(current=Depends(require_roles("lab", "admin")), engine: BookingEngine = Depends(get_engine)):
    query = {"booking_type": "test", "status": {"$in": ["pending", "confirmed"]}}
    lab_id = facilities.lab_scope(engine.db, current)
    if lab_id:
        query["lab"] = lab_id
    return serialize_many(engine.collection.find(query).sort([("date", 1), ("time", 1)]))


@app.post("/api/lab/bookings", status_code=201)
def lab_offline_booking(payload: OfflineBookingCreate, lab=Depends(_lab), engine: BookingEngine = Depends(get_engine)):
    booking = engine.create_offline(str(lab["_id"]), **payload.model_dump())
    return serialize(booking)


@app.patch("/api/lab/bookings/{booking_id}/status")
def lab_update_status(booking_id: str, payload: StatusUpdate, current=Depends(require_roles("lab", "admin")),
                      engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    facilities.ensure_lab_booking(engine.db, current, booking)
    return serialize(engine.set_status(booking, payload.status, payload.reason, payload.version))


@app.post("/api/lab/bookings/{booking_id}/upload-report")
def lab_upload_report(booking_id: str, report: UploadFile = File(None), current=Depends(require_roles("lab", "admin")),
                      engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    facilities.ensure_lab_booking(engine.db, current, booking)
    if booking.get("status") != "completed":
        raise InvalidRequest("Booking must be completed before uploading a report")
    report_url = storage.save_upload(report, "reports")
    updated = records.upload_report(engine, booking, report_url)
    return {"message": "Report uploaded successfully", "report_url": report_url, "booking": serialize(updated)}


@app.post("/api/lab/reports/upload")
def lab_legacy_report(payload: LegacyReportUpload, current=Depends(require_roles("lab", "admin")),
                      engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(payload.booking_id)
    facilities.ensure_lab_booking(engine.db, current, booking)
    updated = records.submit_report(engine, booking, payload.report_url, payload.results)
    return {"message": "Report uploaded, awaiting validation", "booking": serialize(updated)}


@app.get("/api/lab/reports/{booking_id}/download")
def lab_download_report(booking_id: str, current=Depends(get_current_user), engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    if not _can_view_booking(engine.db, booking, current):
        raise Forbidden("Not authorized to view this report")
    return records.report_info(booking)


@app.post("/api/lab/reports/{booking_id}/validate")
def lab_validate_report(booking_id: str, current=Depends(require_roles("lab", "admin")),
                        engine: BookingEngine = Depends(get_engine)):
    booking = engine.get(booking_id)
    facilities.ensure_lab_booking(engine.db, current, booking)
    updated = records.validate_report(engine, booking)
    return {"message": "Report validated and released", "booking": serialize(updated)}


@app.get("/api/lab/catalog")
def lab_catalog(lab=Depends(_lab), db=Depends(get_db)):
    return facilities.catalog(db, lab)


@app.post("/api/lab/catalog", status_code=201)
def lab_add_to_catalog(payload: CatalogAdd, lab=Depends(_lab), db=Depends(get_db)):
    entries = facilities.add_to_catalog(db, lab, payload.test_id, payload.price, payload.turnaround_time)
    return {"message": "Test added to catalog", "catalog": entries}


@app.patch("/api/lab/catalog/{entry_id}")
def lab_update_catalog(entry_id: str, payload: CatalogUpdate, lab=Depends(_lab), db=Depends(get_db)):
    entry = facilities.update_catalog_entry(db, lab, entry_id, payload.price, payload.turnaround_time)
    return {"message": "Catalog entry updated", "entry": entry}


@app.delete("/api/lab/catalog/{entry_id}")
def lab_remove_from_catalog(entry_id: str, lab=Depends(_lab), db=Depends(get_db)):
    facilities.remove_from_catalog(db, lab, entry_id)
    return {"message": "Test removed from catalog"}


@app.get("/api/lab/staff")
def lab_staff(lab=Depends(_lab), db=Depends(get_db)):
    return facilities.lab_staff(db, lab)


@app.post("/api/lab/staff", status_code=201)
def lab_add_staff(payload: StaffCreate, lab=Depends(_lab), db=Depends(get_db)):
    user = facilities.add_lab_staff(db, lab, payload.name, payload.phone, payload.email, payload.password, payload.role)
    return {"message": "Staff added successfully", "user": user}


@app.patch("/api/lab/settings")
def lab_settings(payload: LabSettingsUpdate, lab=Depends(_lab), db=Depends(get_db)):
    return facilities.update_lab_settings(db, lab, payload.model_dump(exclude_none=True))


# Hospital portal
def _hospital(current=Depends(require_roles("hospital")), db=Depends(get_db)) -> dict:
    return facilities.facility_of(db, current, "hospital")


@app.post("/api/hospital/add-doctor", status_code=201)
@app.post("/api/hospital/doctors", status_code=201)
def hospital_add_doctor(payload: RosterAdd, hospital=Depends(_hospital), db=Depends(get_db)):
    facilities.add_doctor(db, hospital, payload.doctor_id, payload.department)
    return {"message": "Doctor associated successfully"}


@app.get("/api/hospital/doctors")
def hospital_doctors(hospital=Depends(_hospital), db=Depends(get_db)):
    return facilities.roster(db, hospital)


@app.delete("/api/hospital/doctors/{doctor_id}")
def hospital_remove_doctor(doctor_id: str, hospital=Depends(_hospital), db=Depends(get_db)):
    facilities.remove_doctor(db, hospital, doctor_id)
    return {"message": "Doctor removed from hospital staff"}


@app.put("/api/hospital/doctors/{doctor_id}/slots")
def hospital_assign_slots(doctor_id: str, payload: SlotAssignment, hospital=Depends(_hospital), db=Depends(get_db)):
    slots = facilities.assign_slots(db, hospital, doctor_id, payload.slots)
    return {"message": "Slots updated", "slots": slots}


@app.get("/api/hospital/dashboard")
def hospital_dashboard(hospital=Depends(_hospital), db=Depends(get_db)):
    return facilities.hospital_dashboard(db, hospital)


@app.get("/api/hospital/appointments")
def hospital_appointments(hospital=Depends(_hospital), db=Depends(get_db)):
    return facilities.hospital_appointments(db, hospital)


@app.get("/api/hospital/finance")
def hospital_finance(start: Optional[str] = None, end: Optional[str] = None, hospital=Depends(_hospital),
                     db=Depends(get_db)):
    return facilities.finance_report(db, hospital, start, end)


# Patient portal
@app.get("/api/patients/dashboard")
def patient_dashboard(current=Depends(get_current_user), db=Depends(get_db)):
    return facilities.patient_dashboard(db, current["_id"])


@app.get("/api/patients/labs")
def find_labs(city: Optional[str] = None, search: Optional[str] = None, db=Depends(get_db)):
    return facilities.search_labs(db, city, search)


@app.get("/api/patients/labs/{lab_id}/tests")
def lab_tests(lab_id: str, db=Depends(get_db)):
    return facilities.lab_tests(db, lab_id)


@app.get("/api/doctors")
@app.get("/api/patients/doctors")
def list_doctors(specialization: Optional[str] = None, search: Optional[str] = None, db=Depends(get_db)):
    return facilities.approved_doctors(db, specialization, search)


@app.get("/api/doctors/{doctor_id}")
def get_doctor(doctor_id: str, db=Depends(get_db)):
    doctor = db["account"].find_one(
        {"_id": to_object_id(doctor_id, "Doctor"), "role": "doctor", "profile.verification_status": "approved"},
        {"name": 1, "image": 1, "profile": 1},
    )
    if not doctor:
        raise NotFound("Doctor not found")
    return serialize(doctor)


@app.get("/api/doctors/{doctor_id}/slots")
@app.get("/api/patients/doctors/{doctor_id}/slots")
def doctor_slots(doctor_id: str, date: str, engine: BookingEngine = Depends(get_engine)):
    return {"date": date, "slots": engine.available_slots(doctor_id, date)}


@app.get("/api/patients/reports")
@app.get("/api/medical-records/lab-reports")
def lab_reports(category: Optional[str] = None, result_type: Optional[str] = None, sort: Optional[str] = None,
                current=Depends(get_current_user), db=Depends(get_db)):
    return records.lab_reports(db, current["_id"], category, result_type, sort)


@app.get("/api/patients/prescriptions")
@app.get("/api/medical-records/prescriptions")
def prescriptions(query: Optional[str] = None, tab: Optional[str] = None, type: Optional[str] = None,
                  specialization: Optional[str] = None, sort: Optional[str] = None,
                  current=Depends(get_current_user), db=Depends(get_db)):
    return records.prescriptions(db, current["_id"], query=query, tab=tab, types=type,
                                 specialization=specialization, sort=sort)


@app.post("/api/medical-records/prescriptions/{prescription_id}/refill")
def request_refill(prescription_id: str, current=Depends(get_current_user), engine: BookingEngine = Depends(get_engine)):
    return records.request_refill(engine, current["_id"], prescription_id)


@app.put("/api/medical-records/prescriptions/{prescription_id}/reminder")
def set_reminder(prescription_id: str, payload: ReminderRequest, current=Depends(get_current_user),
                 engine: BookingEngine = Depends(get_engine)):
    return records.set_reminder(engine, current["_id"], prescription_id, payload.frequency, payload.times)


@app.delete("/api/medical-records/prescriptions/{prescription_id}/reminder")
def cancel_reminder(prescription_id: str, current=Depends(get_current_user), engine: BookingEngine = Depends(get_engine)):
    return records.cancel_reminder(engine, current["_id"], prescription_id)


@app.post("/api/patients/upload-profile-image")
def upload_profile_image(image: UploadFile = File(None), current=Depends(get_current_user), db=Depends(get_db)):
    url = storage.save_upload(image, "images")
    update_fields(db, "account", current["_id"], {"image": url})
    return {"message": "Profile image uploaded", "image": url}


# Notifications
@app.get("/api/notifications")
def list_notifications(current=Depends(get_current_user), db=Depends(get_db)):
    items = db["notification"].find({"user": current["_id"]}).sort("created_at", -1)
    return serialize_many(items)


@app.patch("/api/notifications/{notification_id}/read")
def read_notification(notification_id: str, current=Depends(get_current_user), db=Depends(get_db)):
    notice = find_by_id(db, "notification", notification_id, "Notification")
    if notice["user"] != current["_id"]:
        raise NotFound("Notification not found")
    update_fields(db, "notification", notice["_id"], {"is_read": True})
    return {"message": "Notification marked as read"}


# Reviews
@app.post("/api/reviews", status_code=201)
@app.post("/api/patients/feedback", status_code=201)
def create_review(payload: ReviewCreate, current=Depends(get_current_user), db=Depends(get_db)):
    return reviews.create_review(db, current["_id"], payload.rating, payload.comment,
                                 payload.doctor_id, payload.lab_id, payload.hospital_id)


@app.get("/api/reviews/{kind}/{target_id}")
def target_reviews(kind: str, target_id: str, db=Depends(get_db)):
    return reviews.reviews_for(db, kind, target_id)


@app.get("/api/reviews/{doctor_id}")
def doctor_reviews(doctor_id: str, db=Depends(get_db)):
    return reviews.reviews_for(db, "doctor", doctor_id)


# Health metrics
@app.post("/api/metrics", status_code=201)
def add_metric(payload: MetricCreate, current=Depends(get_current_user), db=Depends(get_db)):
    return metrics.add_metric(db, current["_id"], payload.type, payload.value, payload.unit,
                              payload.value2, payload.date, payload.notes)


@app.get("/api/metrics/summary/latest")
def latest_metrics(current=Depends(get_current_user), db=Depends(get_db)):
    return metrics.latest_metrics(db, current["_id"])


@app.get("/api/metrics/{metric_type}")
def metric_history(metric_type: str, current=Depends(get_current_user), db=Depends(get_db)):
    return metrics.metric_history(db, current["_id"], metric_type)


# Tests catalog
@app.get("/api/tests")
def list_tests(category: Optional[str] = None, search: Optional[str] = None, db=Depends(get_db)):
    query = {}
    if category:
        query["category"] = category
    if search:
        query["name"] = regex_filter(search)
    return serialize_many(db["test"].find(query))


@app.get("/api/tests/{test_id}")
def get_test(test_id: str, db=Depends(get_db)):
    return serialize(find_by_id(db, "test", test_id, "Test"))


@app.post("/api/tests", status_code=201)
def create_test(payload: TestSchema, current=Depends(require_admin), db=Depends(get_db)):
    test_id = create_document(db, "test", payload)
    return serialize(find_by_id(db, "test", test_id, "Test"))


@app.put("/api/tests/{test_id}")
def update_test(test_id: str, payload: TestUpdate, current=Depends(require_admin), db=Depends(get_db)):
    test = find_by_id(db, "test", test_id, "Test")
    updates = payload.model_dump(exclude_none=True)
    if updates:
        update_fields(db, "test", test["_id"], updates)
    return serialize(find_by_id(db, "test", test_id, "Test"))


@app.delete("/api/tests/{test_id}")
def delete_test(test_id: str, current=Depends(require_admin), db=Depends(get_db)):
    test = find_by_id(db, "test", test_id, "Test")
    db["test"].delete_one({"_id": test["_id"]})
    return {"message": "Test removed"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
