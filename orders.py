"""
Order lifecycle: checkout, status transitions and tracking updates.

Totals are computed from the prices the client submits at checkout and are
never recomputed afterwards. Status changes are unrestricted unless strict
mode is enabled (ORDER_STATUS_STRICT), in which case only forward moves in
TRANSITIONS are accepted.
"""
import os
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from pydantic import ValidationError
from pymongo import DESCENDING
from pymongo.database import Database

from database import as_utc, create_document, find_by_id, now_utc, read_modify_write
from errors import Conflict, ValidationFailure, validation_failure
from permissions import ADMIN, check_order_owner, check_store_vendor
from schemas import ORDER_STATUSES, Order, OrderItem, Tracking, TrackingUpdate

STRICT_STATUS_TRANSITIONS = os.getenv("ORDER_STATUS_STRICT", "false").lower() in ("1", "true", "yes")

TRANSITIONS = {
    "pending": {"processing", "shipped", "delivered"},
    "processing": {"shipped", "delivered"},
    "shipped": {"delivered"},
    "delivered": set(),
}

logger = structlog.get_logger(__name__)


def can_transition(current: str, new: str) -> bool:
    return current == new or new in TRANSITIONS.get(current, set())


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


def serialize_tracking(tracking: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not tracking:
        return tracking
    out = dict(tracking)
    out["estimatedDelivery"] = _aware(tracking.get("estimatedDelivery"))
    out["updates"] = [{**u, "timestamp": _aware(u.get("timestamp"))} for u in tracking.get("updates", [])]
    return out


def serialize_order(doc: Dict[str, Any]) -> Dict[str, Any]:
    tracking = serialize_tracking(doc.get("tracking"))
    return {
        "id": str(doc["_id"]),
        "user": doc.get("user"),
        "store": doc.get("store"),
        "items": doc.get("items", []),
        "total": doc.get("total"),
        "status": doc.get("status"),
        "shippingInfo": doc.get("shippingInfo", {}),
        "tracking": tracking,
        "created_at": _aware(doc.get("created_at")),
        "updated_at": _aware(doc.get("updated_at")),
    }


def _next_timestamp(updates: List[Dict[str, Any]]) -> datetime:
    # keep update timestamps strictly increasing in insertion order
    ts = now_utc()
    if updates and updates[-1].get("timestamp"):
        last = as_utc(updates[-1]["timestamp"])
        if ts <= last:
            ts = last + timedelta(milliseconds=1)
    return ts


def _tracking_block(order: Dict[str, Any]) -> Dict[str, Any]:
    tracking = order.get("tracking")
    if not tracking:
        tracking = Tracking().model_dump()
    tracking.setdefault("updates", [])
    return tracking


def _append_update(tracking: Dict[str, Any], update: Dict[str, Any]) -> None:
    try:
        event = TrackingUpdate(**update).model_dump()
    except ValidationError as e:
        raise validation_failure(e)
    event["timestamp"] = _next_timestamp(tracking["updates"])
    tracking["updates"].append(event)


def _authorize_store(db: Database, user: Dict[str, Any], store_id: str) -> None:
    # admins act on any order, even when its store is gone
    if user.get("role") == ADMIN:
        return
    store = find_by_id(db["store"], store_id, "Store")
    check_store_vendor(user, store)


def create_order(
    db: Database,
    user: Dict[str, Any],
    store_id: str,
    items: List[Dict[str, Any]],
    shipping_info: Optional[dict] = None,
) -> Dict[str, Any]:
    if not items:
        raise ValidationFailure("Order must contain at least one item")
    try:
        lines = [OrderItem(**item) for item in items]
    except ValidationError as e:
        raise validation_failure(e)

    find_by_id(db["store"], store_id, "Store")
    for line in lines:
        find_by_id(db["product"], line.product, "Product")

    # prices come from the client; no re-pricing against the catalog
    total = sum(line.price * line.quantity for line in lines)
    try:
        order = Order(
            user=user["id"],
            store=str(store_id),
            items=lines,
            total=total,
            shippingInfo=shipping_info or {},
        )
    except ValidationError as e:
        raise validation_failure(e)

    doc = create_document(db["order"], order)
    logger.info("order_created", order_id=str(doc["_id"]), user=user["id"], store=str(store_id), total=total)
    return serialize_order(doc)


def get_order(db: Database, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    doc = find_by_id(db["order"], order_id, "Order")
    check_order_owner(user, doc)
    return serialize_order(doc)


def list_orders_by_user(db: Database, user_id: str) -> List[Dict[str, Any]]:
    cursor = db["order"].find({"user": user_id}).sort("created_at", DESCENDING)
    return [serialize_order(o) for o in cursor]


def list_orders_by_store(db: Database, store_id: str, user: Dict[str, Any]) -> List[Dict[str, Any]]:
    _authorize_store(db, user, store_id)
    cursor = db["order"].find({"store": str(store_id)}).sort("created_at", DESCENDING)
    return [serialize_order(o) for o in cursor]


def list_all_orders(db: Database) -> List[Dict[str, Any]]:
    return [serialize_order(o) for o in db["order"].find({}).sort("created_at", DESCENDING)]


def update_order_status(
    db: Database,
    order_id: str,
    status: str,
    user: Dict[str, Any],
    tracking_update: Optional[Dict[str, Any]] = None,
    strict: Optional[bool] = None,
) -> Dict[str, Any]:
    if status not in ORDER_STATUSES:
        raise ValidationFailure(f"status must be one of: {', '.join(ORDER_STATUSES)}")
    if strict is None:
        strict = STRICT_STATUS_TRANSITIONS

    existing = find_by_id(db["order"], order_id, "Order")
    _authorize_store(db, user, existing.get("store"))

    def mutate(order):
        current = order.get("status", "pending")
        if strict and not can_transition(current, status):
            raise Conflict(f"Cannot move order from {current} to {status}")
        fields = {"status": status}
        if tracking_update:
            tracking = _tracking_block(order)
            _append_update(tracking, tracking_update)
            fields["tracking"] = tracking
        return fields

    doc = read_modify_write(db["order"], order_id, "Order", mutate)
    logger.info("order_status_updated", order_id=order_id, status=status, by=user["id"])
    return serialize_order(doc)


def add_tracking_info(
    db: Database,
    order_id: str,
    user: Dict[str, Any],
    tracking_number: str,
    carrier: str,
    estimated_delivery: Optional[datetime] = None,
) -> Dict[str, Any]:
    if not tracking_number or not carrier:
        raise ValidationFailure("trackingNumber and carrier are required")

    existing = find_by_id(db["order"], order_id, "Order")
    _authorize_store(db, user, existing.get("store"))

    def mutate(order):
        tracking = _tracking_block(order)
        tracking["number"] = tracking_number
        tracking["carrier"] = carrier
        tracking["estimatedDelivery"] = estimated_delivery
        # status itself is left alone
        _append_update(tracking, {
            "status": "shipped",
            "description": f"Order shipped via {carrier}",
            "location": "Warehouse",
        })
        return {"tracking": tracking}

    doc = read_modify_write(db["order"], order_id, "Order", mutate)
    logger.info("tracking_added", order_id=order_id, carrier=carrier, number=tracking_number)
    return serialize_order(doc)
