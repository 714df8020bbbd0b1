from __future__ import annotations

from typing import Iterable, List

from tenantauth.logging import get_logger
from tenantauth.service.errors import (
    NotFoundError,
    PermissionRequiredError,
    RoleRequiredError,
)
from tenantauth.service.schemas import RolesAndPermissions
from tenantauth.storage.interfaces import CredentialStore, RoleStore

logger = get_logger(__name__)


class RbacService:
    """Aggregates a user's domain roles into an effective permission set."""

    def __init__(self, roles: RoleStore, credentials: CredentialStore) -> None:
        self.roles = roles
        self.credentials = credentials

    async def get_roles_and_permissions(self, domain_id: str, user_id: str) -> RolesAndPermissions:
        if not self.credentials.find_by_id(domain_id, user_id):
            raise NotFoundError("User not found", detail={"entity": "user"})
        role_names: List[str] = []
        permissions: set[str] = set()
        for role in self.roles.list_user_roles(domain_id, user_id):
            role_names.append(role.name)
            permissions.update(role.permissions)
        return RolesAndPermissions(roles=role_names, permissions=sorted(permissions))

    async def has_role(self, domain_id: str, user_id: str, role_name: str) -> bool:
        resolved = await self.get_roles_and_permissions(domain_id, user_id)
        return role_name in resolved.roles

    async def has_permission(self, domain_id: str, user_id: str, permission: str) -> bool:
        resolved = await self.get_roles_and_permissions(domain_id, user_id)
        return permission in resolved.permissions

    async def require_role(self, domain_id: str, user_id: str, role_name: str) -> None:
        if not await self.has_role(domain_id, user_id, role_name):
            logger.info("rbac_role_denied", user_id=user_id, role=role_name)
            raise RoleRequiredError(role_name)

    async def require_permission(self, domain_id: str, user_id: str, permission: str) -> None:
        if not await self.has_permission(domain_id, user_id, permission):
            logger.info("rbac_permission_denied", user_id=user_id, permission=permission)
            raise PermissionRequiredError(permission)

    async def require_any_role(
        self, domain_id: str, user_id: str, role_names: Iterable[str]
    ) -> None:
        """Pass when the user holds at least one of the listed roles."""
        wanted = list(role_names)
        if not wanted:
            return
        resolved = await self.get_roles_and_permissions(domain_id, user_id)
        if not any(name in resolved.roles for name in wanted):
            raise RoleRequiredError(", ".join(wanted))

    async def require_any_permission(
        self, domain_id: str, user_id: str, permissions: Iterable[str]
    ) -> None:
        wanted = list(permissions)
        if not wanted:
            return
        resolved = await self.get_roles_and_permissions(domain_id, user_id)
        if not any(name in resolved.permissions for name in wanted):
            raise PermissionRequiredError(", ".join(wanted))

    async def assign_role(self, domain_id: str, user_id: str, role_name: str) -> None:
        if not self.credentials.find_by_id(domain_id, user_id):
            raise NotFoundError("User not found", detail={"entity": "user"})
        role = self.roles.get_role_by_name(domain_id, role_name)
        if not role:
            raise NotFoundError("Role not found", detail={"entity": "role"})
        self.roles.assign_role(user_id, role.id)
        logger.info("rbac_role_assigned", user_id=user_id, role=role_name)

    async def remove_role(self, domain_id: str, user_id: str, role_name: str) -> bool:
        role = self.roles.get_role_by_name(domain_id, role_name)
        if not role:
            raise NotFoundError("Role not found", detail={"entity": "role"})
        removed = self.roles.remove_role(user_id, role.id)
        if removed:
            logger.info("rbac_role_removed", user_id=user_id, role=role_name)
        return removed
