import pytest

from errors import Forbidden
from permissions import check_order_owner, check_permission, check_store_vendor, is_allowed


@pytest.mark.parametrize("role,operation,allowed", [
    ("shopper", "order:create", True),
    ("shopper", "order:update_status", False),
    ("shopper", "order:add_tracking", False),
    ("vendor", "order:update_status", True),
    ("vendor", "order:list_all", False),
    ("admin", "order:list_all", True),
    ("vendor", "review:moderate", False),
    ("admin", "review:moderate", True),
    ("shopper", "review:write", True),
    ("admin", "store:delete", False),
    (None, "order:read", False),
])
def test_capability_table(role, operation, allowed):
    assert is_allowed(role, operation) is allowed


def test_check_permission_raises_forbidden():
    with pytest.raises(Forbidden) as exc:
        check_permission({"id": "u1", "role": "shopper"}, "order:update_status")
    assert "admin, vendor" in exc.value.detail


def test_order_owner_check():
    order = {"user": "u1"}
    check_order_owner({"id": "u1", "role": "shopper"}, order)
    check_order_owner({"id": "a1", "role": "admin"}, order)
    with pytest.raises(Forbidden):
        check_order_owner({"id": "u2", "role": "shopper"}, order)
    with pytest.raises(Forbidden):
        check_order_owner({"id": "v1", "role": "vendor"}, order)


def test_store_vendor_check():
    store = {"owner": "v1"}
    check_store_vendor({"id": "v1", "role": "vendor"}, store)
    check_store_vendor({"id": "a1", "role": "admin"}, store)
    with pytest.raises(Forbidden):
        check_store_vendor({"id": "v2", "role": "vendor"}, store)
    with pytest.raises(Forbidden):
        check_store_vendor({"id": "v1", "role": "shopper"}, store)
