from datetime import datetime

import pytest

from booking import complete_visit, mark_slots, parse_datetime, slot_grid, split_revenue
from errors import Conflict, InvalidRequest, NotFound
from facilities import add_doctor, assign_slots
from settings import PlatformConfig


@pytest.mark.parametrize("amount", [50, 120, 300, 1000])
def test_test_booking_split_covers_amount(amount):
    fee, revenue = split_revenue("test", amount)
    assert fee == 50
    assert revenue.lab_amount + revenue.admin_amount == amount


@pytest.mark.parametrize("amount", [0, 20, 49])
def test_test_booking_below_fee_keeps_lab_at_zero(amount):
    fee, revenue = split_revenue("test", amount)
    assert revenue.lab_amount == 0
    assert revenue.admin_amount == 50


def test_doctor_booking_goes_to_hospital():
    fee, revenue = split_revenue("doctor", 800)
    assert fee == 0
    assert revenue.hospital_amount == 800
    assert revenue.lab_amount is None and revenue.admin_amount is None


def test_platform_fee_comes_from_config():
    fee, revenue = split_revenue("test", 100, PlatformConfig(platform_fee=30))
    assert fee == 30
    assert revenue.lab_amount == 70


def test_slot_grid_has_sixteen_half_hour_slots():
    grid = slot_grid()
    assert len(grid) == 16
    assert grid[0] == "09:00"
    assert grid[-1] == "16:30"


def test_slot_matching_is_exact_string():
    marked = mark_slots(["09:00", "10:00"], {"9:00"})
    assert all(s["is_available"] for s in marked)


def test_parse_datetime_accepts_zulu_and_rejects_garbage():
    assert parse_datetime("2024-06-10T10:00:00Z") == datetime(2024, 6, 10, 10, 0)
    with pytest.raises(InvalidRequest):
        parse_datetime("not a date")


def test_doctor_booking_without_time_persists_nothing(engine, db, patient, doctor):
    with pytest.raises(InvalidRequest):
        engine.create(str(patient["_id"]), date="2024-06-10", booking_type="doctor",
                      doctor_id=str(doctor["_id"]), appointment_mode="In-person")
    assert db["booking"].count_documents({}) == 0


def test_test_booking_requires_test_id(engine, db, patient):
    with pytest.raises(InvalidRequest) as exc:
        engine.create(str(patient["_id"]), date="2024-06-10")
    assert exc.value.detail == "Test ID is required for lab bookings"
    assert db["booking"].count_documents({}) == 0


def test_booking_requires_date(engine, patient, lab_test):
    with pytest.raises(InvalidRequest):
        engine.create(str(patient["_id"]), test_id=lab_test)


def test_unknown_test_is_not_found(engine, patient):
    with pytest.raises(NotFound):
        engine.create(str(patient["_id"]), date="2024-06-10", test_id="64b7f0c2e1a2b3c4d5e6f789")


def test_unapproved_doctor_cannot_be_booked(engine, make_account, patient):
    pending = make_account("doctor", approved=False)
    with pytest.raises(InvalidRequest):
        engine.create(str(patient["_id"]), date="2024-06-10", booking_type="doctor", time="10:00",
                      doctor_id=str(pending["_id"]), appointment_mode="In-person")


def test_created_booking_round_trips(engine, patient, lab_test):
    created = engine.create(str(patient["_id"]), date="2024-06-10T08:00:00", test_id=lab_test, amount=300)
    fetched = engine.get(str(created["_id"]))
    assert fetched["booking_type"] == "test"
    assert fetched["status"] == "pending"
    assert fetched["platform_fee"] == 50
    assert fetched["revenue"] == {"lab_amount": 250, "hospital_amount": None, "admin_amount": 50}
    assert fetched["version"] == 0


def test_confirmed_booking_blocks_only_its_slot(engine, patient, doctor):
    booking = engine.create(str(patient["_id"]), date="2024-06-10T10:00:00", booking_type="doctor",
                            time="10:00", doctor_id=str(doctor["_id"]), appointment_mode="In-person",
                            amount=500)
    engine.set_status(booking, "confirmed")

    slots = engine.available_slots(str(doctor["_id"]), "2024-06-10")
    assert len(slots) == 16
    assert [s["time"] for s in slots if not s["is_available"]] == ["10:00"]


def test_cancelled_booking_frees_its_slot(engine, patient, doctor):
    booking = engine.create(str(patient["_id"]), date="2024-06-10T10:00:00", booking_type="doctor",
                            time="10:00", doctor_id=str(doctor["_id"]), appointment_mode="Video call")
    engine.set_status(booking, "cancelled")
    slots = engine.available_slots(str(doctor["_id"]), "2024-06-10")
    assert all(s["is_available"] for s in slots)


def test_hospital_slots_extend_the_grid(engine, db, doctor, make_facility):
    hospital, _ = make_facility("hospital")
    add_doctor(db, hospital, str(doctor["_id"]), "Cardiology")
    hospital = db["hospital"].find_one({"_id": hospital["_id"]})
    assign_slots(db, hospital, str(doctor["_id"]), {"Monday": ["18:00", "09:00"]})

    # 2024-06-10 is a Monday
    times = [s["time"] for s in engine.available_slots(str(doctor["_id"]), "2024-06-10")]
    assert len(times) == 17
    assert times[-1] == "18:00"


def test_unknown_status_is_rejected(engine, patient, lab_test):
    booking = engine.create(str(patient["_id"]), date="2024-06-10", test_id=lab_test)
    with pytest.raises(InvalidRequest):
        engine.set_status(booking, "archived")


def test_test_not_done_is_for_test_bookings_only(engine, patient, doctor):
    booking = engine.create(str(patient["_id"]), date="2024-06-10", booking_type="doctor", time="11:00",
                            doctor_id=str(doctor["_id"]), appointment_mode="In-person")
    with pytest.raises(InvalidRequest):
        engine.set_status(booking, "test_not_done")


def test_stale_version_is_a_conflict(engine, patient, lab_test):
    booking = engine.create(str(patient["_id"]), date="2024-06-10", test_id=lab_test)
    engine.set_status(booking, "confirmed", expected_version=0)
    with pytest.raises(Conflict):
        engine.set_status(booking, "cancelled", expected_version=0)
    assert engine.get(str(booking["_id"]))["status"] == "confirmed"


def test_status_change_keeps_revenue(engine, patient, lab_test):
    booking = engine.create(str(patient["_id"]), date="2024-06-10", test_id=lab_test, amount=400)
    updated = engine.set_status(booking, "completed")
    assert updated["revenue"] == booking["revenue"]
    assert updated["version"] == 1


def test_complete_visit_is_idempotent(engine, patient, doctor):
    booking = engine.create(str(patient["_id"]), date="2024-06-10", booking_type="doctor", time="12:00",
                            doctor_id=str(doctor["_id"]), appointment_mode="In-person", amount=500)
    summary = {
        "diagnosis": "Seasonal flu",
        "symptoms": ["fever", "cough"],
        "prescriptions": [{"medication": "Paracetamol", "dosage": "500mg"}],
    }
    first = engine.complete_visit(booking, summary)
    second = engine.complete_visit(first, summary)
    assert first["visit_summary"] == second["visit_summary"]
    assert second["status"] == "completed"
    assert second["revenue"]["hospital_amount"] == 500


def test_complete_visit_rejects_test_bookings():
    with pytest.raises(InvalidRequest):
        complete_visit({"booking_type": "test"}, {})


def test_offline_booking_creates_walk_in_patient(engine, db, lab_test, make_facility):
    lab, _ = make_facility("lab")
    booking = engine.create_offline(str(lab["_id"]), "Walk In", "5550001111", lab_test, "2024-06-10",
                                    amount=200)
    patient = db["account"].find_one({"phone": "5550001111"})
    assert patient["role"] == "patient"
    assert booking["user"] == str(patient["_id"])
    assert booking["lab"] == str(lab["_id"])
    assert booking["revenue"]["lab_amount"] == 150
