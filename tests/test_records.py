from datetime import datetime

import pytest

import records
from errors import Forbidden, InvalidRequest, NotFound


@pytest.mark.parametrize("status, expected", [
    ("Normal Results", "Good"),
    ("Needs Attention", "Borderline"),
    ("Follow-Up Needed", "Borderline"),
    ("Critical", "Bad"),
    ("Abnormal values", "Bad"),
    ("Pending Validation", "Unknown"),
    (None, "Unknown"),
])
def test_result_type(status, expected):
    assert records.result_type(status) == expected


def _test_booking(booking_id, status="completed", report=None, test="t1", date=datetime(2024, 3, 1)):
    return {"_id": booking_id, "test": test, "status": status, "date": date, "lab_report": report}


TESTS = {
    "t1": {"name": "Lipid Panel", "category": "Blood"},
    "t2": {"name": "Chest X-Ray", "category": "Imaging"},
}


def test_lab_report_items_apply_fallbacks():
    items = records.lab_report_items([_test_booking("b1"), _test_booking("b2", status="pending")], [], TESTS, {})
    assert len(items) == 1
    assert items[0]["status"] == "Normal Results"
    assert items[0]["result_date"] == datetime(2024, 3, 2)
    assert items[0]["title"] == "Lipid Panel"


def test_lab_report_items_include_doctor_examinations():
    doctor_booking = {
        "_id": "d1", "doctor": "doc", "date": datetime(2024, 2, 1),
        "visit_summary": {"examinations": [{"test_name": "ECG", "status": "Follow-Up Needed"}]},
    }
    items = records.lab_report_items([], [doctor_booking], TESTS, {"doc": {"name": "Dr Rao"}})
    assert items == [{
        "id": "d1_0", "title": "ECG", "category": "Doctor Prescribed", "date": datetime(2024, 2, 1),
        "status": "Follow-Up Needed", "report_url": None, "type": "doctor_exam", "doctor_name": "Dr Rao",
    }]


def test_lab_report_filters_and_sort():
    bookings = [
        _test_booking("b1", report={"status": "Critical"}, date=datetime(2024, 1, 1)),
        _test_booking("b2", test="t2", date=datetime(2024, 5, 1)),
        _test_booking("b3", report={"status": "Needs attention"}, date=datetime(2024, 3, 1)),
    ]
    items = records.lab_report_items(bookings, [], TESTS, {})

    assert [r["id"] for r in records.filter_lab_reports(items)] == ["b2", "b3", "b1"]
    assert [r["id"] for r in records.filter_lab_reports(items, category="blood")] == ["b3", "b1"]
    picked = records.filter_lab_reports(items, result_types="good, bad")
    assert sorted(r["id"] for r in picked) == ["b1", "b2"]
    assert [r["title"] for r in records.filter_lab_reports(items, sort="a-z")] == \
        ["Chest X-Ray", "Lipid Panel", "Lipid Panel"]


def _doctor_booking(booking_id, prescriptions, date, doctor="doc"):
    return {"_id": booking_id, "doctor": doctor, "date": date, "visit_summary": {"prescriptions": prescriptions}}


DOCTORS = {
    "doc": {"name": "Dr Rao", "profile": {"specialization": "Cardiology"}},
    "derm": {"name": "Dr Sen", "profile": {"specialization": "Dermatology"}},
}


def test_prescription_items_are_addressed_by_booking_and_index():
    bookings = [_doctor_booking("b1", [{"medication": "A"}, {"medication": "B", "end_date": datetime(2025, 1, 1)}],
                                datetime(2024, 1, 1))]
    items = records.prescription_items(bookings, DOCTORS)
    assert [p["id"] for p in items] == ["b1_0", "b1_1"]
    assert items[0]["end_date"] == datetime(2024, 1, 1)
    assert items[1]["specialization"] == "Cardiology"


def test_prescription_tabs_query_and_sort():
    now = datetime(2024, 6, 1)
    bookings = [
        _doctor_booking("b1", [{"medication": "Zinc", "type": "Tablets", "end_date": datetime(2024, 7, 1)}],
                        datetime(2024, 5, 1)),
        _doctor_booking("b2", [{"medication": "Amoxicillin", "type": "Capsules", "end_date": datetime(2024, 2, 1)}],
                        datetime(2024, 1, 15), doctor="derm"),
    ]
    items = records.prescription_items(bookings, DOCTORS)

    assert [p["medication"] for p in records.filter_prescriptions(items, now, tab="actual")] == ["Zinc"]
    assert [p["medication"] for p in records.filter_prescriptions(items, now, tab="history")] == ["Amoxicillin"]
    assert [p["medication"] for p in records.filter_prescriptions(items, now, query="amox")] == ["Amoxicillin"]
    assert [p["medication"] for p in records.filter_prescriptions(items, now, types="tablets")] == ["Zinc"]
    assert [p["medication"] for p in records.filter_prescriptions(items, now, specialization="dermatology")] == \
        ["Amoxicillin"]
    assert [p["medication"] for p in records.filter_prescriptions(items, now, sort="a-z")] == ["Amoxicillin", "Zinc"]
    assert [p["medication"] for p in records.filter_prescriptions(items, now, sort="oldest")] == ["Amoxicillin", "Zinc"]
    assert [p["medication"] for p in records.filter_prescriptions(items, now)] == ["Zinc", "Amoxicillin"]


def test_visit_summary_filters():
    bookings = [
        {"_id": "v1", "doctor": "doc", "status": "completed", "appointment_mode": "Video call",
         "date": datetime(2024, 1, 1), "visit_summary": {"diagnosis": "x"}},
        {"_id": "v2", "doctor": "derm", "status": "completed", "appointment_mode": "In-person",
         "date": datetime(2024, 2, 1), "visit_summary": {"diagnosis": "y"}},
        {"_id": "v3", "doctor": "derm", "status": "pending", "appointment_mode": "In-person",
         "date": datetime(2024, 3, 1), "visit_summary": None},
    ]
    assert [b["_id"] for b in records.filter_visit_summaries(bookings, DOCTORS)] == ["v2", "v1"]
    assert [b["_id"] for b in records.filter_visit_summaries(bookings, DOCTORS, mode="Virtual")] == ["v1"]
    assert [b["_id"] for b in records.filter_visit_summaries(bookings, DOCTORS, query="sen")] == ["v2"]
    assert [b["_id"] for b in records.filter_visit_summaries(bookings, DOCTORS, sort="Alphabet: from A>Z")] == \
        ["v1", "v2"]


@pytest.fixture
def visit(engine, patient, doctor):
    booking = engine.create(str(patient["_id"]), date="2024-01-01", booking_type="doctor", time="09:30",
                            doctor_id=str(doctor["_id"]), appointment_mode="In-person", amount=500)
    return engine.complete_visit(booking, {
        "diagnosis": "Hypertension",
        "prescriptions": [{"medication": "Amlodipine", "dosage": "5mg", "end_date": datetime(2030, 1, 1)}],
    })


def _rx_id(visit, index=0):
    return visit["visit_summary"]["prescriptions"][index]["id"]


def test_refill_request_marks_prescription_and_notifies(engine, db, visit, patient):
    prescription_id = _rx_id(visit)
    result = records.request_refill(engine, str(patient["_id"]), prescription_id)
    assert result["refill_status"] == "requested"

    stored = engine.get(str(visit["_id"]))
    assert stored["visit_summary"]["prescriptions"][0]["refill_status"] == "requested"
    notice = db["notification"].find_one({"user": str(patient["_id"])})
    assert notice["type"] == "refill"
    assert "Amlodipine" in notice["message"]


def test_refill_by_someone_else_is_forbidden(engine, visit, make_account):
    other = make_account("patient")
    with pytest.raises(Forbidden):
        records.request_refill(engine, str(other["_id"]), _rx_id(visit))


@pytest.mark.parametrize("bad_id", ["nonsense", "64b7f0c2e1a2b3c4d5e6f789_0"])
def test_unknown_prescription_is_not_found(engine, patient, bad_id):
    with pytest.raises(NotFound):
        records.request_refill(engine, str(patient["_id"]), bad_id)


def test_positional_ids_only_address_rows_without_their_own_id(engine, db, visit, patient):
    with pytest.raises(NotFound):
        records.set_reminder(engine, str(patient["_id"]), f"{visit['_id']}_5", "daily", ["08:00"])
    with pytest.raises(NotFound):
        records.set_reminder(engine, str(patient["_id"]), f"{visit['_id']}_0", "daily", ["08:00"])

    # Rows written before prescriptions carried ids.
    db["booking"].update_one({"_id": visit["_id"]},
                             {"$set": {"visit_summary.prescriptions": [{"medication": "Amlodipine"}]}})
    records.request_refill(engine, str(patient["_id"]), f"{visit['_id']}_0")
    stored = engine.get(str(visit["_id"]))["visit_summary"]["prescriptions"][0]
    assert stored["refill_status"] == "requested"


def test_prescription_items_prefer_stored_id():
    bookings = [_doctor_booking("b1", [{"id": "rx-a", "medication": "A"}, {"medication": "B"}], datetime(2024, 1, 1))]
    assert [p["id"] for p in records.prescription_items(bookings, DOCTORS)] == ["rx-a", "b1_1"]


def test_reissued_prescriptions_never_inherit_a_stale_id(engine, db, visit, patient, doctor):
    doctor_id = str(doctor["_id"])
    records.issue_prescription(engine, visit, doctor_id, [{"medication": "Atenolol"}, {"medication": "Bisoprolol"}])
    before = engine.get(str(visit["_id"]))["visit_summary"]["prescriptions"]
    bisoprolol_id = before[1]["id"]

    records.issue_prescription(engine, engine.get(str(visit["_id"])), doctor_id,
                               [{"medication": "Bisoprolol"}, {"medication": "Candesartan"}])
    with pytest.raises(NotFound):
        records.request_refill(engine, str(patient["_id"]), bisoprolol_id)
    after = engine.get(str(visit["_id"]))["visit_summary"]["prescriptions"]
    assert [rx["refill_status"] for rx in after] == ["none", "none"]


def test_reissuing_the_same_list_keeps_ids(engine, visit, doctor):
    items = [{"medication": "Atenolol"}, {"medication": "Bisoprolol"}]
    records.issue_prescription(engine, visit, str(doctor["_id"]), items)
    first = [rx["id"] for rx in engine.get(str(visit["_id"]))["visit_summary"]["prescriptions"]]
    records.issue_prescription(engine, engine.get(str(visit["_id"])), str(doctor["_id"]), items)
    second = [rx["id"] for rx in engine.get(str(visit["_id"]))["visit_summary"]["prescriptions"]]
    assert first == second


def test_reminder_set_and_cancel(engine, visit, patient):
    prescription_id = _rx_id(visit)
    records.set_reminder(engine, str(patient["_id"]), prescription_id, "daily", ["08:00", "20:00"])
    settings = engine.get(str(visit["_id"]))["visit_summary"]["prescriptions"][0]["reminder_settings"]
    assert settings == {"active": True, "frequency": "daily", "times": ["08:00", "20:00"]}

    records.cancel_reminder(engine, str(patient["_id"]), prescription_id)
    settings = engine.get(str(visit["_id"]))["visit_summary"]["prescriptions"][0]["reminder_settings"]
    assert settings["active"] is False
    assert settings["times"] == ["08:00", "20:00"]


def test_prescriptions_view_reads_stored_visits(db, visit, patient):
    items = records.prescriptions(db, str(patient["_id"]), now=datetime(2024, 6, 1), tab="actual")
    assert [p["id"] for p in items] == [_rx_id(visit)]
    assert items[0]["doctor_name"]


def test_consultation_upsert_merges_and_syncs_diagnosis(engine, db, visit, doctor):
    doctor_id = str(doctor["_id"])
    first = records.save_consultation(engine, visit, doctor_id, {"chief_complaint": "Headache"})
    second = records.save_consultation(engine, engine.get(str(visit["_id"])), doctor_id,
                                       {"diagnosis": "Migraine", "status": "completed"})
    assert first["_id"] == second["_id"]
    assert second["chief_complaint"] == "Headache"
    assert second["diagnosis"] == "Migraine"
    assert db["consultation"].count_documents({}) == 1

    summary = engine.get(str(visit["_id"]))["visit_summary"]
    assert summary["diagnosis"] == "Migraine"
    assert summary["prescriptions"][0]["medication"] == "Amlodipine"


def test_issue_prescription_replaces_on_both_records(engine, db, visit, doctor):
    result = records.issue_prescription(engine, visit, str(doctor["_id"]),
                                        [{"medication": "Losartan", "dosage": "50mg"}])
    assert [p["medication"] for p in result["consultation"]["prescriptions"]] == ["Losartan"]
    summary = engine.get(str(visit["_id"]))["visit_summary"]
    assert [p["medication"] for p in summary["prescriptions"]] == ["Losartan"]
    assert summary["diagnosis"] == "Hypertension"


def test_issue_prescription_needs_items(engine, visit, doctor):
    with pytest.raises(InvalidRequest):
        records.issue_prescription(engine, visit, str(doctor["_id"]), [])


def test_patient_history_requires_a_shared_booking(db, visit, doctor, patient, make_account):
    history = records.patient_history(db, str(doctor["_id"]), str(patient["_id"]))
    assert history["patient"]["name"] == patient["name"]
    assert len(history["appointments"]) == 1

    stranger = make_account("doctor", verification_status="approved")
    with pytest.raises(Forbidden):
        records.patient_history(db, str(stranger["_id"]), str(patient["_id"]))


@pytest.fixture
def lab_visit(engine, patient, lab_test, make_facility):
    lab, _ = make_facility("lab")
    return engine.create(str(patient["_id"]), date="2024-01-01", test_id=lab_test, lab_id=str(lab["_id"]))


def test_report_upload_needs_completed_booking(engine, lab_visit):
    with pytest.raises(InvalidRequest):
        records.upload_report(engine, lab_visit, "/uploads/reports/x.pdf")


def test_legacy_report_then_validate(engine, lab_visit):
    submitted = records.submit_report(engine, lab_visit, "/uploads/reports/r.pdf", results={"hb": 13.5})
    assert submitted["lab_report"]["status"] == "Pending Validation"
    validated = records.validate_report(engine, submitted)
    assert validated["lab_report"]["status"] == "Validated"
    assert validated["status"] == "completed"
    assert records.report_info(validated)["report_url"] == "/uploads/reports/r.pdf"


def test_report_info_without_report(lab_visit):
    with pytest.raises(NotFound):
        records.report_info(lab_visit)


def test_lab_reports_view_reads_completed_tests(engine, db, lab_visit, patient):
    done = engine.set_status(lab_visit, "completed")
    records.upload_report(engine, done, "/uploads/reports/final.pdf", now=datetime(2024, 1, 3))
    reports = records.lab_reports(db, str(patient["_id"]))
    assert len(reports) == 1
    assert reports[0]["title"] == "Complete Blood Count"
    assert reports[0]["result_date"] == datetime(2024, 1, 3)
    assert records.result_type(reports[0]["status"]) == "Good"


def test_consultation_rejects_unknown_status(engine, db, visit, doctor):
    with pytest.raises(InvalidRequest):
        records.save_consultation(engine, visit, str(doctor["_id"]), {"status": "bogus"})
    assert db["consultation"].count_documents({}) == 0
