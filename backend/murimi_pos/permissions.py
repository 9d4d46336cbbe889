# Overview: Role-to-permission map used by the permission decorators.

"""
Permissions

WHY: Route handlers ask for a capability ("REFUND_SALE"), never for a role.
The mapping from roles to capabilities lives here in one place.

Cashiers ring up sales and replay their device's offline queue. Managers
additionally handle money going back out (refunds, voids), stock and the
catalog. Admins can do everything.
"""

from murimi_pos.models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER

VIEW_PRODUCTS = "VIEW_PRODUCTS"
MANAGE_PRODUCTS = "MANAGE_PRODUCTS"
ADJUST_STOCK = "ADJUST_STOCK"
CREATE_SALE = "CREATE_SALE"
VIEW_SALES = "VIEW_SALES"
VIEW_ALL_SALES = "VIEW_ALL_SALES"
REFUND_SALE = "REFUND_SALE"
VOID_SALE = "VOID_SALE"
SYNC_OFFLINE = "SYNC_OFFLINE"
VIEW_SYNC_STATUS = "VIEW_SYNC_STATUS"
INITIATE_MPESA = "INITIATE_MPESA"
VIEW_AUDIT_LOG = "VIEW_AUDIT_LOG"

_CASHIER_PERMISSIONS = frozenset({
    VIEW_PRODUCTS,
    CREATE_SALE,
    VIEW_SALES,
    SYNC_OFFLINE,
    INITIATE_MPESA,
})

_MANAGER_PERMISSIONS = _CASHIER_PERMISSIONS | frozenset({
    MANAGE_PRODUCTS,
    ADJUST_STOCK,
    VIEW_ALL_SALES,
    REFUND_SALE,
    VOID_SALE,
    VIEW_SYNC_STATUS,
    VIEW_AUDIT_LOG,
})

ROLE_PERMISSIONS = {
    ROLE_CASHIER: _CASHIER_PERMISSIONS,
    ROLE_MANAGER: _MANAGER_PERMISSIONS,
    ROLE_ADMIN: _MANAGER_PERMISSIONS,
}


def get_role_permissions(role: str) -> frozenset:
    return ROLE_PERMISSIONS.get(role, frozenset())


def has_permission(user, permission_code: str) -> bool:
    if user is None or not user.is_active:
        return False
    return permission_code in get_role_permissions(user.role)
