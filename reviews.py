"""
Review aggregation for products and stores.

Both host kinds embed a `reviews` array and cache `rating` (mean of all
review ratings, 0 when empty) and `numReviews`. The cache is recomputed from
the full array on every mutation and written in the same update as the array.
"""
from datetime import datetime
from typing import Any, Dict, List

import structlog
from bson import ObjectId
from pydantic import ValidationError
from pymongo.database import Database

from database import as_utc, find_by_id, now_utc, read_modify_write
from errors import Conflict, NotFound, ValidationFailure, validation_failure
from schemas import Review

HOST_KINDS = {"product": "Product", "store": "Store"}

logger = structlog.get_logger(__name__)


def _label(kind: str) -> str:
    if kind not in HOST_KINDS:
        raise ValidationFailure(f"Unknown review host: {kind}")
    return HOST_KINDS[kind]


def aggregate(reviews: List[Dict[str, Any]]) -> Dict[str, Any]:
    count = len(reviews)
    rating = sum(r["rating"] for r in reviews) / count if count else 0
    return {"rating": rating, "numReviews": count}


def serialize_review(review: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": str(review["_id"]),
        "user": review.get("user"),
        "rating": review.get("rating"),
        "comment": review.get("comment"),
        "date": as_utc(review["date"]) if review.get("date") else None,
    }


def serialize_host(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in doc.items():
        if k in ("_id", "reviews", "version"):
            continue
        if isinstance(v, ObjectId):
            v = str(v)
        elif isinstance(v, datetime):
            v = as_utc(v)
        out[k] = v
    out["id"] = str(doc["_id"])
    out["reviews"] = [serialize_review(r) for r in doc.get("reviews", [])]
    out["rating"] = doc.get("rating", 0)
    out["numReviews"] = doc.get("numReviews", 0)
    return out


def _validated(user_id: str, rating: Any, comment: Any) -> Review:
    if isinstance(comment, str):
        comment = comment.strip()
    try:
        return Review(user=user_id, rating=rating, comment=comment)
    except ValidationError as e:
        raise validation_failure(e)


def _find_user_review(reviews: List[Dict[str, Any]], user_id: str) -> int:
    for i, r in enumerate(reviews):
        if r.get("user") == user_id:
            return i
    return -1


def get_host(db: Database, kind: str, host_id: str) -> Dict[str, Any]:
    label = _label(kind)
    return serialize_host(find_by_id(db[kind], host_id, label))


def add_review(db: Database, kind: str, host_id: str, user: Dict[str, Any], rating: Any, comment: Any) -> Dict[str, Any]:
    label = _label(kind)
    review = _validated(user["id"], rating, comment)

    def mutate(host):
        reviews = host.get("reviews", [])
        if _find_user_review(reviews, user["id"]) != -1:
            raise Conflict(f"{label} already reviewed")
        doc = review.model_dump()
        doc["_id"] = ObjectId()
        doc["date"] = now_utc()
        reviews.append(doc)
        return {"reviews": reviews, **aggregate(reviews)}

    host = read_modify_write(db[kind], host_id, label, mutate)
    logger.info("review_added", host=kind, host_id=host_id, user=user["id"], rating=review.rating)
    return serialize_host(host)


def update_review(db: Database, kind: str, host_id: str, user: Dict[str, Any], rating: Any, comment: Any) -> Dict[str, Any]:
    label = _label(kind)
    review = _validated(user["id"], rating, comment)

    def mutate(host):
        reviews = host.get("reviews", [])
        idx = _find_user_review(reviews, user["id"])
        if idx == -1:
            raise NotFound("Review not found")
        # date keeps its creation value
        reviews[idx]["rating"] = review.rating
        reviews[idx]["comment"] = review.comment
        return {"reviews": reviews, **aggregate(reviews)}

    host = read_modify_write(db[kind], host_id, label, mutate)
    logger.info("review_updated", host=kind, host_id=host_id, user=user["id"], rating=review.rating)
    return serialize_host(host)


def delete_own_review(db: Database, kind: str, host_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    label = _label(kind)

    def mutate(host):
        reviews = host.get("reviews", [])
        idx = _find_user_review(reviews, user["id"])
        if idx == -1:
            raise NotFound("Review not found")
        reviews.pop(idx)
        return {"reviews": reviews, **aggregate(reviews)}

    host = read_modify_write(db[kind], host_id, label, mutate)
    logger.info("review_deleted", host=kind, host_id=host_id, user=user["id"])
    return serialize_host(host)


def delete_review_by_id(db: Database, kind: str, host_id: str, review_id: str) -> Dict[str, Any]:
    """Moderation path: remove any user's review by its id."""
    label = _label(kind)

    def mutate(host):
        reviews = host.get("reviews", [])
        remaining = [r for r in reviews if str(r.get("_id")) != str(review_id)]
        if len(remaining) == len(reviews):
            raise NotFound("Review not found")
        return {"reviews": remaining, **aggregate(remaining)}

    host = read_modify_write(db[kind], host_id, label, mutate)
    logger.info("review_moderated", host=kind, host_id=host_id, review_id=review_id)
    return serialize_host(host)


def list_all_reviews(db: Database, kind: str) -> List[Dict[str, Any]]:
    _label(kind)
    hosts = list(db[kind].find({}, {"name": 1, "reviews": 1}))

    user_ids = set()
    for h in hosts:
        for r in h.get("reviews", []):
            if ObjectId.is_valid(r.get("user")):
                user_ids.add(ObjectId(r["user"]))
    users = {}
    if user_ids:
        for u in db["user"].find({"_id": {"$in": list(user_ids)}}, {"name": 1, "email": 1}):
            users[str(u["_id"])] = {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}

    out = []
    for h in hosts:
        for r in h.get("reviews", []):
            item = serialize_review(r)
            item["reviewer"] = users.get(r.get("user"))
            item["hostName"] = h.get("name")
            item["hostId"] = str(h["_id"])
            out.append(item)
    return out
