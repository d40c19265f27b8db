"""
RBAC dependencies for FastAPI routes
Role-based access control implemented as dependencies that run after authentication
"""
from fastapi import Depends, HTTPException, status
from routers.auth.auth import get_current_user
import logging

logger = logging.getLogger(__name__)

SELLER_RESOURCES = {
    'products': ['read', 'write', 'delete'],
    'orders/seller': ['read', 'write'],
}

RESOURCES_FOR_ROLES = {
    'ADMIN': {
        'admin': ['read', 'write', 'delete'],
        'products': ['read'],
    },
    'FARMER': dict(SELLER_RESOURCES),
    'SUPPLIER': dict(SELLER_RESOURCES),
    'BUYER': {
        'products': ['read'],
        'orders/buyer': ['read', 'write'],
        'payments': ['read', 'write'],
    },
    'TRANSPORTER': {
        'products': ['read'],
        'transporters': ['read', 'write', 'delete'],
        'deliveries': ['read', 'write'],
    },
}


def has_permission(user_role: str, resource_name: str, required_permission: str) -> bool:
    """Check if user role has permission for the resource and action"""
    if user_role not in RESOURCES_FOR_ROLES:
        return False

    user_permissions = RESOURCES_FOR_ROLES[user_role]

    if resource_name in user_permissions:
        return required_permission in user_permissions[resource_name]

    parent_resource = resource_name.split('/')[0] if '/' in resource_name else resource_name
    if parent_resource in user_permissions:
        return required_permission in user_permissions[parent_resource]

    return False


def require_permission(resource: str, permission: str):
    """
    Create an RBAC dependency that checks the authenticated user's role

    Args:
        resource: Resource name as listed in RESOURCES_FOR_ROLES
        permission: 'read', 'write' or 'delete'
    """
    def check_rbac(current_user=Depends(get_current_user)):
        user_role = current_user.get('role')

        if not has_permission(user_role, resource, permission):
            logger.warning(f"Access denied - User: {user_role}, Resource: {resource}, Permission: {permission}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. {str(user_role).title()} role does not have {permission} permission for {resource}"
            )

        logger.debug(f"Access granted - User: {user_role}, Resource: {resource}, Permission: {permission}")
        return current_user

    return check_rbac

# Admin permissions
require_admin = require_permission("admin", "read")
require_admin_write = require_permission("admin", "write")

# Seller-side product management (farmers and suppliers)
require_product_write = require_permission("products", "write")
require_product_delete = require_permission("products", "delete")

# Orders
require_buyer_orders = require_permission("orders/buyer", "write")
require_seller_orders = require_permission("orders/seller", "read")
require_seller_orders_write = require_permission("orders/seller", "write")

# Payments
require_payment_write = require_permission("payments", "write")

# Transporters
require_transporter = require_permission("transporters", "write")
require_delivery_write = require_permission("deliveries", "write")
