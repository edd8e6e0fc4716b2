"""
DRF permission classes for operator endpoints
"""
from rest_framework.permissions import BasePermission


class IsTenantOperator(BasePermission):
    """Tenant resolved from X-API-Key, or a logged-in staff user"""

    message = "A valid X-API-Key header is required"

    def has_permission(self, request, view):
        if getattr(request, "tenant", None) is not None:
            return True
        user = request.user
        return bool(user and user.is_authenticated and user.is_staff)
