"""Self-recorded health metrics: readings per type for charts, and the latest of each."""

from typing import Dict, List, Optional

from booking import parse_datetime
from database import create_document, find_by_id, serialize, serialize_many, utcnow
from errors import InvalidRequest
from schemas import METRIC_TYPES, Metric


def add_metric(db, user_id: str, type: Optional[str], value: Optional[float], unit: Optional[str],
               value2: Optional[float] = None, date=None, notes: Optional[str] = None) -> dict:
    if not type or value is None or not unit:
        raise InvalidRequest("Type, value, and unit are required")
    if type not in METRIC_TYPES:
        raise InvalidRequest(f"Invalid metric type. Allowed: {', '.join(METRIC_TYPES)}")
    metric = Metric(
        user=user_id,
        type=type,
        value=value,
        value2=value2,
        unit=unit,
        date=parse_datetime(date) if date else utcnow(),
        notes=notes,
    )
    metric_id = create_document(db, "metric", metric)
    return serialize(find_by_id(db, "metric", metric_id, "Metric"))


def metric_history(db, user_id: str, type: str) -> List[dict]:
    if type not in METRIC_TYPES:
        raise InvalidRequest(f"Invalid metric type. Allowed: {', '.join(METRIC_TYPES)}")
    return serialize_many(db["metric"].find({"user": user_id, "type": type}).sort("date", -1))


def latest_metrics(db, user_id: str) -> Dict[str, dict]:
    latest = {}
    for type in METRIC_TYPES:
        doc = db["metric"].find_one({"user": user_id, "type": type}, sort=[("date", -1)])
        if doc:
            latest[type] = serialize(doc)
    return latest
