from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol

from tessera.logging import get_logger
from tessera.service.errors import ConflictError, ForbiddenError, NotFoundError
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import DomainRole, User

logger = get_logger(__name__)


class RoleStore(Protocol):
    def find_user_by_id(self, domain_id: str, user_id: str) -> Optional[User]: ...

    def create_role(
        self,
        domain_id: str,
        name: str,
        permissions: List[str],
        *,
        description: Optional[str] = None,
    ) -> DomainRole: ...

    def get_role(self, domain_id: str, role_id: str) -> Optional[DomainRole]: ...

    def assign_role(self, domain_id: str, user_id: str, role_id: str) -> None: ...

    def remove_role(self, domain_id: str, user_id: str, role_id: str) -> bool: ...

    def list_user_roles(self, domain_id: str, user_id: str) -> List[DomainRole]: ...


@dataclass
class RolesAndPermissions:
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)


class RbacService:
    """Domain-scoped roles; a user holds the union of their roles' permissions."""

    def __init__(self, store: RoleStore) -> None:
        self.store = store

    def get_user_roles_and_permissions(self, domain_id: str, user_id: str) -> RolesAndPermissions:
        if not self.store.find_user_by_id(domain_id, user_id):
            raise NotFoundError("User not found")
        result = RolesAndPermissions()
        for role in self.store.list_user_roles(domain_id, user_id):
            result.roles.append(role.name)
            for permission in role.permissions:
                if permission not in result.permissions:
                    result.permissions.append(permission)
        return result

    def has_permission(self, domain_id: str, user_id: str, permission: str) -> bool:
        return permission in self.get_user_roles_and_permissions(domain_id, user_id).permissions

    def has_role(self, domain_id: str, user_id: str, role: str) -> bool:
        return role in self.get_user_roles_and_permissions(domain_id, user_id).roles

    def require_permission(self, domain_id: str, user_id: str, permission: str) -> None:
        if not self.has_permission(domain_id, user_id, permission):
            logger.warning("permission_denied", domain_id=domain_id, user_id=user_id, permission=permission)
            raise ForbiddenError(f"Permission required: {permission}")

    def require_role(self, domain_id: str, user_id: str, role: str) -> None:
        if not self.has_role(domain_id, user_id, role):
            logger.warning("role_denied", domain_id=domain_id, user_id=user_id, role=role)
            raise ForbiddenError(f"Role required: {role}")

    def require_any(
        self,
        domain_id: str,
        user_id: str,
        *,
        roles: Iterable[str] = (),
        permissions: Iterable[str] = (),
    ) -> None:
        """Pass when the user holds any listed role and any listed permission."""
        roles = list(roles)
        permissions = list(permissions)
        if not roles and not permissions:
            return
        granted = self.get_user_roles_and_permissions(domain_id, user_id)
        if roles and not any(r in granted.roles for r in roles):
            logger.warning("role_denied", domain_id=domain_id, user_id=user_id, roles=roles)
            raise ForbiddenError(f"Roles required: {', '.join(roles)}")
        if permissions and not any(p in granted.permissions for p in permissions):
            logger.warning(
                "permission_denied", domain_id=domain_id, user_id=user_id, permissions=permissions
            )
            raise ForbiddenError(f"Permissions required: {', '.join(permissions)}")

    def create_role(
        self,
        domain_id: str,
        name: str,
        permissions: Iterable[str],
        *,
        description: Optional[str] = None,
    ) -> DomainRole:
        try:
            role = self.store.create_role(domain_id, name, list(permissions), description=description)
        except ConstraintViolation as exc:
            raise ConflictError("Role already exists in this domain") from exc
        logger.info("role_created", domain_id=domain_id, role=name)
        return role

    def assign_role(self, domain_id: str, user_id: str, role_id: str) -> None:
        if not self.store.find_user_by_id(domain_id, user_id):
            raise NotFoundError("User not found")
        if not self.store.get_role(domain_id, role_id):
            raise NotFoundError("Role not found")
        try:
            self.store.assign_role(domain_id, user_id, role_id)
        except ConstraintViolation as exc:
            raise ConflictError("Role already assigned") from exc
        logger.info("role_assigned", domain_id=domain_id, user_id=user_id, role_id=role_id)

    def remove_role(self, domain_id: str, user_id: str, role_id: str) -> None:
        if not self.store.remove_role(domain_id, user_id, role_id):
            raise NotFoundError("Role assignment not found")
        logger.info("role_removed", domain_id=domain_id, user_id=user_id, role_id=role_id)
