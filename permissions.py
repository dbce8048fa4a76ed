"""
Role capabilities for order and review operations.

Routes ask `require_permission(operation)` (main.py) which consults this table;
the ownership checks below need the document and are called by the handlers.
"""
from typing import Any, Dict, FrozenSet

from errors import Forbidden

SHOPPER = "shopper"
VENDOR = "vendor"
ADMIN = "admin"

ROLES = (SHOPPER, VENDOR, ADMIN)

CAPABILITIES: Dict[str, FrozenSet[str]] = {
    "order:create": frozenset(ROLES),
    "order:read": frozenset(ROLES),
    "order:list_own": frozenset(ROLES),
    "order:list_store": frozenset({VENDOR, ADMIN}),
    "order:update_status": frozenset({VENDOR, ADMIN}),
    "order:add_tracking": frozenset({VENDOR, ADMIN}),
    "order:list_all": frozenset({ADMIN}),
    "review:write": frozenset(ROLES),
    "review:moderate": frozenset({ADMIN}),
}


def is_allowed(role: str, operation: str) -> bool:
    # unknown operations are denied
    return role in CAPABILITIES.get(operation, frozenset())


def check_permission(user: Dict[str, Any], operation: str) -> None:
    role = user.get("role")
    if not is_allowed(role, operation):
        allowed = ", ".join(sorted(CAPABILITIES.get(operation, ())))
        raise Forbidden(f"Not authorized, requires one of roles: {allowed}")


def check_order_owner(user: Dict[str, Any], order: Dict[str, Any]) -> None:
    if user.get("role") == ADMIN:
        return
    if order.get("user") != user.get("id"):
        raise Forbidden("Not authorized to view this order")


def check_store_vendor(user: Dict[str, Any], store: Dict[str, Any]) -> None:
    if user.get("role") == ADMIN:
        return
    if user.get("role") != VENDOR or store.get("owner") != user.get("id"):
        raise Forbidden("Not authorized to manage orders of this store")
