from datetime import datetime

import pytest

import chat
from errors import ChatWindowExpired, Forbidden, InvalidRequest


@pytest.fixture
def appointment(engine, patient, doctor):
    return engine.create(str(patient["_id"]), date="2024-01-01T10:00:00", booking_type="doctor", time="10:00",
                         doctor_id=str(doctor["_id"]), appointment_mode="Video call")


def test_send_inside_window(db, appointment, patient):
    message = chat.send_message(db, str(patient["_id"]), str(appointment["_id"]), "Hello doctor",
                                now=datetime(2024, 1, 7))
    assert message["sender"] == {"kind": "patient", "id": str(patient["_id"])}
    assert message["receiver"]["kind"] == "doctor"
    assert message["read"] is False


def test_send_after_window_is_rejected(db, appointment, doctor):
    with pytest.raises(ChatWindowExpired) as exc:
        chat.send_message(db, str(doctor["_id"]), str(appointment["_id"]), "Follow-up?",
                          now=datetime(2024, 1, 9))
    assert exc.value.status_code == 403
    assert exc.value.code == "chat_window_expired"
    assert db["message"].count_documents({}) == 0


def test_outsider_cannot_send_or_read(db, appointment, make_account):
    stranger = make_account("patient")
    with pytest.raises(Forbidden):
        chat.send_message(db, str(stranger["_id"]), str(appointment["_id"]), "hi", now=datetime(2024, 1, 2))
    with pytest.raises(Forbidden):
        chat.history(db, str(stranger["_id"]), str(appointment["_id"]))


def test_content_is_required(db, appointment, patient):
    with pytest.raises(InvalidRequest):
        chat.send_message(db, str(patient["_id"]), str(appointment["_id"]), "", now=datetime(2024, 1, 2))


def test_unknown_message_type_is_rejected(db, appointment, patient):
    with pytest.raises(InvalidRequest):
        chat.send_message(db, str(patient["_id"]), str(appointment["_id"]), "clip", type="video",
                          now=datetime(2024, 1, 2))
    assert db["message"].count_documents({}) == 0


def test_history_is_oldest_first_and_readable_after_window(db, appointment, patient, doctor):
    booking_id = str(appointment["_id"])
    chat.send_message(db, str(patient["_id"]), booking_id, "first", now=datetime(2024, 1, 2))
    chat.send_message(db, str(doctor["_id"]), booking_id, "second", now=datetime(2024, 1, 3))

    items = chat.history(db, str(patient["_id"]), booking_id)
    assert [m["content"] for m in items] == ["first", "second"]
    assert items[1]["sender_details"]["name"] == doctor["name"]


def test_mark_read_only_touches_received_messages(db, appointment, patient, doctor):
    booking_id = str(appointment["_id"])
    chat.send_message(db, str(patient["_id"]), booking_id, "ping", now=datetime(2024, 1, 2))
    chat.send_message(db, str(doctor["_id"]), booking_id, "pong", now=datetime(2024, 1, 2))

    assert chat.mark_read(db, str(doctor["_id"]), booking_id) == 1
    unread = list(db["message"].find({"read": False}))
    assert [m["content"] for m in unread] == ["pong"]
