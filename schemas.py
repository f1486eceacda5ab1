"""
Database Schemas for the LabLoom marketplace

Each Pydantic model corresponds to a MongoDB collection.
Collection name = lowercase of the class name (handled by caller).

Embedded models (profiles, revenue, visit summary, catalog entries) live
inside their owning document and have no collection of their own.
References between documents are stored as stringified ObjectIds.
"""

import secrets
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field, model_validator

Role = Literal["patient", "doctor", "lab", "hospital", "admin"]
RESTRICTED_ROLES = ("doctor", "lab", "hospital")
VerificationStatus = Literal["pending", "approved", "rejected", "suspended"]
BookingType = Literal["test", "doctor"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled", "test_not_done"]
BOOKING_STATUSES = ("pending", "confirmed", "completed", "cancelled", "test_not_done")
AppointmentMode = Literal["In-person", "Video call"]
APPOINTMENT_MODES = ("In-person", "Video call")
StaffRole = Literal["technician", "pathologist", "admin", "receptionist"]
STAFF_ROLES = ("technician", "pathologist", "admin", "receptionist")
ConsultationStatus = Literal["draft", "completed", "reviewed"]
CONSULTATION_STATUSES = ("draft", "completed", "reviewed")
MessageType = Literal["text", "image", "file"]
MESSAGE_TYPES = ("text", "image", "file")
MetricType = Literal["Blood Pressure", "Weight", "Heart Rate", "Blood Sugar", "Temperature"]
METRIC_TYPES = ("Blood Pressure", "Weight", "Heart Rate", "Blood Sugar", "Temperature")


# References

class EntityRef(BaseModel):
    """Ownership link from a lab/hospital account to its facility record."""
    kind: Literal["lab", "hospital"]
    id: str


class Participant(BaseModel):
    """One side of a booking conversation."""
    kind: Literal["patient", "doctor"]
    id: str


class ReviewTarget(BaseModel):
    kind: Literal["doctor", "lab", "hospital"]
    id: str


# Account profiles, tagged by role

class PatientProfile(BaseModel):
    role: Literal["patient"] = "patient"
    address: Optional[str] = None
    city: Optional[str] = None
    dob: Optional[datetime] = None
    gender: Optional[str] = Field(None, description="male | female | other")


class HospitalAffiliation(BaseModel):
    hospital_id: str
    department: Optional[str] = None


class DoctorProfile(BaseModel):
    role: Literal["doctor"] = "doctor"
    specialization: Optional[str] = None
    fee: float = 0
    hospital_affiliations: List[HospitalAffiliation] = Field(default_factory=list)
    availability: Dict[str, List[str]] = Field(default_factory=dict, description="weekday -> HH:MM times")
    verification_status: VerificationStatus = "pending"
    rating: float = 0
    reviews_count: int = 0


class FacilityProfile(BaseModel):
    role: Literal["lab", "hospital"]
    entity: EntityRef
    position: Optional[str] = Field(None, description="technician | pathologist | admin | receptionist")


class AdminProfile(BaseModel):
    role: Literal["admin"] = "admin"


Profile = Annotated[
    Union[PatientProfile, DoctorProfile, FacilityProfile, AdminProfile],
    Field(discriminator="role"),
]


class Account(BaseModel):
    name: str
    phone: str = Field(..., description="Natural key, unique")
    email: Optional[EmailStr] = None
    password_hash: Optional[str] = Field(None, description="Hashed password")
    role: Role = "patient"
    approved: bool = Field(False, description="Usable for login; set by admin for restricted roles")
    is_active: bool = True
    image: Optional[str] = None
    otp: Optional[str] = None
    otp_expires: Optional[datetime] = None
    profile: Profile

    @model_validator(mode="after")
    def _profile_matches_role(self):
        if self.profile.role != self.role:
            raise ValueError("profile does not match role")
        return self


# Facilities

class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = "India"


class GeoPoint(BaseModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(default_factory=list, description="[longitude, latitude]")


class CatalogEntry(BaseModel):
    id: str
    test_id: str
    price: Optional[float] = None
    turnaround_time: Optional[str] = Field(None, description="e.g. 24 hours")


class LabStaff(BaseModel):
    user_id: str
    role: StaffRole = "technician"
    joined_at: Optional[datetime] = None


class Lab(BaseModel):
    name: str
    registration_number: str
    email: Optional[str] = None
    phone: str
    address: Address = Field(default_factory=Address)
    location: Optional[GeoPoint] = None
    available_tests: List[CatalogEntry] = Field(default_factory=list)
    staff: List[LabStaff] = Field(default_factory=list)
    operating_hours: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    verification_status: VerificationStatus = "pending"
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    rating: float = 0
    reviews_count: int = 0
    is_active: bool = True


class RosterEntry(BaseModel):
    doctor_id: str
    department: Optional[str] = None
    joined_at: Optional[datetime] = None
    is_active: bool = True
    slots: Dict[str, List[str]] = Field(default_factory=dict, description="weekday -> HH:MM slots assigned by the hospital")


class Hospital(BaseModel):
    name: str
    registration_number: str
    email: Optional[str] = None
    phone: str
    address: Address = Field(default_factory=Address)
    location: Optional[GeoPoint] = None
    type: Literal["general", "specialty", "multi-specialty", "clinic"] = "general"
    departments: List[str] = Field(default_factory=list)
    associated_doctors: List[RosterEntry] = Field(default_factory=list)
    emergency_services: bool = False
    ambulance_service: bool = False
    verification_status: VerificationStatus = "pending"
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    rating: float = 0
    reviews_count: int = 0
    is_active: bool = True


class Test(BaseModel):
    name: str
    description: str = ""
    category: str = "General"
    price: float
    duration: str = Field(..., description="e.g. 15 mins")
    image: Optional[str] = None


# Bookings

class Revenue(BaseModel):
    lab_amount: Optional[float] = None
    hospital_amount: Optional[float] = None
    admin_amount: Optional[float] = None


class Examination(BaseModel):
    test_name: str
    date: Optional[datetime] = None
    status: Optional[str] = Field(None, description="e.g. Normal Results, Follow-Up Needed")
    result_url: Optional[str] = None


class ReminderSettings(BaseModel):
    active: bool = False
    frequency: Optional[str] = None
    times: List[str] = Field(default_factory=list)


class Prescription(BaseModel):
    id: str = Field(default_factory=lambda: secrets.token_hex(12))
    medication: str
    type: Optional[str] = Field(None, description="Capsules | Tablets | Syrups ...")
    description: Optional[str] = None
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    end_date: Optional[datetime] = None
    special_instructions: Optional[str] = None
    storage: Optional[str] = None
    side_effects: Optional[str] = None
    allergy_warning: Optional[str] = None
    refill_status: Literal["none", "requested", "approved", "denied"] = "none"
    reminder_settings: ReminderSettings = Field(default_factory=ReminderSettings)


class VisitSummary(BaseModel):
    anamnesis: Optional[str] = None
    symptoms: List[str] = Field(default_factory=list)
    diagnosis: Optional[str] = None
    examinations: List[Examination] = Field(default_factory=list)
    prescriptions: List[Prescription] = Field(default_factory=list)


class LabReport(BaseModel):
    report_url: Optional[str] = None
    status: str = "Pending"
    result_date: Optional[datetime] = None
    results: Optional[Any] = None


class Booking(BaseModel):
    user: str
    test: Optional[str] = None
    lab: Optional[str] = None
    doctor: Optional[str] = None
    booking_type: BookingType = "test"
    date: datetime
    time: Optional[str] = Field(None, description="HH:MM")
    appointment_mode: Optional[AppointmentMode] = None
    status: BookingStatus = "pending"
    amount: float = 0
    platform_fee: float = 0
    revenue: Revenue = Field(default_factory=Revenue)
    notes: Optional[str] = None
    visit_summary: Optional[VisitSummary] = None
    lab_report: Optional[LabReport] = None
    version: int = 0


# Consultation records

class BloodPressure(BaseModel):
    systolic: Optional[float] = None
    diastolic: Optional[float] = None


class VitalSigns(BaseModel):
    temperature: Optional[float] = None
    blood_pressure: Optional[BloodPressure] = None
    heart_rate: Optional[float] = None
    respiratory_rate: Optional[float] = None
    oxygen_saturation: Optional[float] = None


class OrderedTest(BaseModel):
    test_name: str
    urgency: Literal["Routine", "Urgent", "STAT"] = "Routine"


class FollowUp(BaseModel):
    required: bool = False
    date: Optional[datetime] = None
    notes: Optional[str] = None


class Consultation(BaseModel):
    appointment: str
    doctor: str
    patient: str
    chief_complaint: Optional[str] = None
    diagnosis: Optional[str] = None
    clinical_notes: Optional[str] = None
    vital_signs: Optional[VitalSigns] = None
    prescriptions: List[Prescription] = Field(default_factory=list)
    lab_tests_ordered: List[OrderedTest] = Field(default_factory=list)
    follow_up: Optional[FollowUp] = None
    status: ConsultationStatus = "draft"


# Chat, reviews, tokens, notifications

class Message(BaseModel):
    booking: str
    sender: Participant
    receiver: Participant
    content: str
    type: MessageType = "text"
    read: bool = False


class Review(BaseModel):
    user: str
    target: ReviewTarget
    rating: int = Field(..., ge=1, le=5)
    comment: str


class RefreshToken(BaseModel):
    user: str
    token: str
    expires_at: datetime
    version: int = 0


class Notification(BaseModel):
    user: str
    title: str
    message: str
    type: Literal["refill", "appointment", "report", "general"] = "general"
    is_read: bool = False
    ref_id: Optional[str] = None


class Metric(BaseModel):
    """Patient-recorded health reading."""
    user: str
    type: MetricType
    value: float = Field(..., description="Primary reading, e.g. systolic, kg, bpm")
    value2: Optional[float] = Field(None, description="Secondary reading, e.g. diastolic for blood pressure")
    unit: str = Field(..., description="mmHg, kg, bpm, mg/dL, °C")
    date: datetime
    notes: Optional[str] = None
