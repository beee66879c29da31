# trips/permissions.py
from rest_framework.permissions import BasePermission


class _RolePermission(BasePermission):
    """
    Allows access only to tokens whose `role` claim is in `roles`.
    Keeps role check logic centralized.
    """
    roles = ()

    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return False
        return getattr(user, "role", None) in self.roles


class IsCustomer(_RolePermission):
    roles = ("customer",)


class IsDriver(_RolePermission):
    roles = ("driver",)


class IsAdminRole(_RolePermission):
    roles = ("admin",)


class IsCustomerOrAdmin(_RolePermission):
    roles = ("customer", "admin")
