"""
Booking-scoped chat between a patient and the booked doctor.

Sending is allowed until seven days after the appointment date; history stays
readable by both participants afterwards.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from database import create_document, find_by_id, serialize, to_object_id, utcnow
from errors import ChatWindowExpired, Forbidden, InvalidRequest
from schemas import MESSAGE_TYPES, Message, Participant
from settings import CONFIG, PlatformConfig

PARTICIPANT_LOOKUP = {
    "patient": {"role": "patient"},
    "doctor": {"role": "doctor"},
}


def participants(booking: dict, sender_id: str):
    """Return (sender, receiver) for a message sent by `sender_id` on this booking."""
    patient = Participant(kind="patient", id=booking["user"])
    doctor = Participant(kind="doctor", id=booking["doctor"]) if booking.get("doctor") else None
    if sender_id == patient.id:
        if doctor is None:
            raise Forbidden("You are not authorized to chat in this booking")
        return patient, doctor
    if doctor is not None and sender_id == doctor.id:
        return doctor, patient
    raise Forbidden("You are not authorized to chat in this booking")


def window_end(booking: dict, config: PlatformConfig = CONFIG) -> datetime:
    return booking["date"] + timedelta(days=config.chat_window_days)


def ensure_window_open(booking: dict, now: datetime, config: PlatformConfig = CONFIG) -> None:
    if now > window_end(booking, config):
        raise ChatWindowExpired(
            f"Chat window has expired ({config.chat_window_days} days after appointment)"
        )


def send_message(db, sender_id: str, booking_id: str, content: str, type: str = "text",
                 now: Optional[datetime] = None, config: PlatformConfig = CONFIG) -> dict:
    if not booking_id or not content:
        raise InvalidRequest("Booking ID and content are required")
    type = type or "text"
    if type not in MESSAGE_TYPES:
        raise InvalidRequest(f"Invalid message type. Allowed: {', '.join(MESSAGE_TYPES)}")
    booking = find_by_id(db, "booking", booking_id, "Booking")
    sender, receiver = participants(booking, sender_id)
    ensure_window_open(booking, now or utcnow(), config)

    message = Message(
        booking=str(booking["_id"]),
        sender=sender,
        receiver=receiver,
        content=content,
        type=type,
    )
    message_id = create_document(db, "message", message)
    return serialize(find_by_id(db, "message", message_id, "Message"))


def resolve_participant(db, ref: dict) -> Optional[dict]:
    account = db["account"].find_one(
        {"_id": to_object_id(ref["id"], "Participant"), **PARTICIPANT_LOOKUP[ref["kind"]]},
        {"name": 1, "image": 1},
    )
    return serialize(account)


def history(db, requester_id: str, booking_id: str) -> List[dict]:
    booking = find_by_id(db, "booking", booking_id, "Booking")
    if requester_id not in (booking.get("user"), booking.get("doctor")):
        raise Forbidden("Not authorized to view this chat")
    messages = list(db["message"].find({"booking": str(booking["_id"])}).sort("created_at", 1))
    senders = {}
    items = []
    for m in messages:
        key = (m["sender"]["kind"], m["sender"]["id"])
        if key not in senders:
            senders[key] = resolve_participant(db, m["sender"])
        item = serialize(m)
        item["sender_details"] = senders[key]
        items.append(item)
    return items


def mark_read(db, reader_id: str, booking_id: str) -> int:
    booking = find_by_id(db, "booking", booking_id, "Booking")
    if reader_id not in (booking.get("user"), booking.get("doctor")):
        raise Forbidden("Not authorized to view this chat")
    result = db["message"].update_many(
        {"booking": str(booking["_id"]), "receiver.id": reader_id, "read": False},
        {"$set": {"read": True, "updated_at": utcnow()}},
    )
    return result.modified_count
