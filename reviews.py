"""Reviews against a doctor, lab or hospital, with the target's rating kept current."""

from typing import List, Optional

from database import create_document, find_by_id, serialize, serialize_many, to_object_id, update_fields
from errors import InvalidRequest, NotFound
from schemas import Review, ReviewTarget

# Where each target kind keeps its rating and review count.
RATING_FIELDS = {
    "doctor": ("account", "profile.rating", "profile.reviews_count"),
    "lab": ("lab", "rating", "reviews_count"),
    "hospital": ("hospital", "rating", "reviews_count"),
}


def pick_target(doctor_id: Optional[str] = None, lab_id: Optional[str] = None,
                hospital_id: Optional[str] = None) -> ReviewTarget:
    given = [(kind, value) for kind, value in
             (("doctor", doctor_id), ("lab", lab_id), ("hospital", hospital_id)) if value]
    if len(given) != 1:
        raise InvalidRequest("Review exactly one of doctor, lab or hospital")
    kind, value = given[0]
    return ReviewTarget(kind=kind, id=value)


def _load_target(db, target: ReviewTarget) -> dict:
    collection = RATING_FIELDS[target.kind][0]
    query = {"_id": to_object_id(target.id, target.kind.capitalize())}
    if target.kind == "doctor":
        query["role"] = "doctor"
    doc = db[collection].find_one(query)
    if not doc:
        raise NotFound(f"{target.kind.capitalize()} not found")
    return doc


def refresh_rating(db, target: ReviewTarget) -> dict:
    ratings = [r["rating"] for r in db["review"].find({"target.kind": target.kind, "target.id": target.id})]
    average = round(sum(ratings) / len(ratings), 2) if ratings else 0
    collection, rating_field, count_field = RATING_FIELDS[target.kind]
    update_fields(db, collection, target.id, {rating_field: average, count_field: len(ratings)})
    return {"rating": average, "reviews_count": len(ratings)}


def create_review(db, user_id: str, rating, comment: str, doctor_id: Optional[str] = None,
                  lab_id: Optional[str] = None, hospital_id: Optional[str] = None) -> dict:
    if not rating or not comment:
        raise InvalidRequest("Please add all fields")
    target = pick_target(doctor_id, lab_id, hospital_id)
    _load_target(db, target)
    try:
        review = Review(user=user_id, target=target, rating=int(rating), comment=comment)
    except ValueError:
        raise InvalidRequest("Rating must be between 1 and 5")
    review_id = create_document(db, "review", review)
    summary = refresh_rating(db, target)
    doc = serialize(find_by_id(db, "review", review_id, "Review"))
    doc["target_rating"] = summary
    return doc


def reviews_for(db, kind: str, target_id: str) -> List[dict]:
    if kind not in RATING_FIELDS:
        raise InvalidRequest("Unknown review target")
    reviews = list(db["review"].find({"target.kind": kind, "target.id": target_id}).sort("created_at", -1))
    user_ids = {r["user"] for r in reviews}
    users = {
        str(u["_id"]): serialize(u)
        for u in db["account"].find({"_id": {"$in": [to_object_id(i) for i in user_ids]}}, {"name": 1, "image": 1})
    }
    items = serialize_many(reviews)
    for item in items:
        item["user_details"] = users.get(item["user"])
    return items
