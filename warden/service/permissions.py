from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from warden.config import Settings
from warden.logging import get_logger
from warden.service.errors import ConflictError, ForbiddenError, NotFoundError
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Identity, Permission, Role

logger = get_logger(__name__)


@dataclass
class EffectivePermissions:
    roles: List[str] = field(default_factory=list)
    permissions: List[str] = field(default_factory=list)

    @classmethod
    def from_identity(cls, identity: Identity) -> "EffectivePermissions":
        """Direct permissions plus the permissions of every held role."""
        names = {perm.name for perm in identity.permissions}
        for role in identity.roles:
            names.update(perm.name for perm in role.permissions)
        return cls(
            roles=sorted({role.name for role in identity.roles}),
            permissions=sorted(names),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, List[str]]) -> "EffectivePermissions":
        return cls(roles=list(data.get("roles", [])), permissions=list(data.get("permissions", [])))

    def to_dict(self) -> Dict[str, List[str]]:
        return {"roles": list(self.roles), "permissions": list(self.permissions)}


def parse_names(required: str) -> List[str]:
    """Split a comma-delimited requirement into trimmed, non-empty names."""
    return [name.strip() for name in required.split(",") if name.strip()]


class PermissionResolver:
    """Resolves and caches effective grants, and owns every grant mutation.

    Mutations delete the cached entry of each affected identity before they
    return, so ``authorize`` never sees grants older than the last change.
    """

    def __init__(self, store, cache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = settings.permission_cache_ttl_seconds

    async def resolve(self, identity_id: int) -> EffectivePermissions:
        try:
            cached = await self.cache.get_permissions(identity_id)
        except Exception as exc:
            # Reads fall through to the store when the cache is unreachable
            logger.warning("permission_cache_read_failed", identity_id=identity_id, error=str(exc))
            cached = None
        if cached is not None:
            return EffectivePermissions.from_dict(cached)

        identity = self.store.get_identity(identity_id, with_grants=True)
        if identity is None:
            raise NotFoundError("identity not found")
        resolved = EffectivePermissions.from_identity(identity)
        await self.cache.set_permissions(identity_id, resolved.to_dict(), self.ttl_seconds)
        return resolved

    async def authorize(self, identity_id: int, required: str) -> EffectivePermissions:
        """Pass when the identity holds any of the comma-delimited permissions."""
        resolved = await self.resolve(identity_id)
        names = parse_names(required)
        if names and not set(names) & set(resolved.permissions):
            logger.info("permission_denied", identity_id=identity_id, required=names)
            raise ForbiddenError("Forbidden")
        return resolved

    async def authorize_role(self, identity_id: int, required: str) -> EffectivePermissions:
        """Pass when the identity holds any of the comma-delimited roles."""
        resolved = await self.resolve(identity_id)
        names = parse_names(required)
        if names and not set(names) & set(resolved.roles):
            logger.info("role_denied", identity_id=identity_id, required=names)
            raise ForbiddenError("Forbidden")
        return resolved

    async def _invalidate(self, identity_ids: Iterable[int]) -> None:
        ids = sorted(set(identity_ids))
        if ids:
            await self.cache.invalidate_permissions(*ids)
            logger.info("permission_cache_invalidated", identity_ids=ids)

    # ------------------------------------------------------------------
    # Identity grants
    # ------------------------------------------------------------------

    async def add_role_to_identity(self, identity_id: int, role_id: int) -> None:
        if not self.store.add_role_to_identity(identity_id, role_id):
            raise NotFoundError("user or role not found")
        await self._invalidate([identity_id])

    async def remove_role_from_identity(self, identity_id: int, role_id: int) -> None:
        if not self.store.remove_role_from_identity(identity_id, role_id):
            raise NotFoundError("user or role not found")
        await self._invalidate([identity_id])

    async def add_permission_to_identity(self, identity_id: int, permission_id: int) -> None:
        if not self.store.add_permission_to_identity(identity_id, permission_id):
            raise NotFoundError("user or permission not found")
        await self._invalidate([identity_id])

    async def remove_permission_from_identity(self, identity_id: int, permission_id: int) -> None:
        if not self.store.remove_permission_from_identity(identity_id, permission_id):
            raise NotFoundError("user or permission not found")
        await self._invalidate([identity_id])

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if role is None:
            raise NotFoundError("role not found")
        return role

    async def create_role(self, name: str, permission_names: Iterable[str] = ()) -> Role:
        try:
            role = self.store.create_role(name, list(permission_names))
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail=exc.detail) from exc
        logger.info("role_created", role_id=role.id)
        return role

    async def update_role(
        self,
        role_id: int,
        *,
        name: Optional[str] = None,
        permission_names: Optional[Iterable[str]] = None,
    ) -> Role:
        try:
            role = self.store.update_role(
                role_id,
                name=name,
                permission_names=list(permission_names) if permission_names is not None else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail=exc.detail) from exc
        if role is None:
            raise NotFoundError("role not found")
        await self._invalidate(self.store.identities_with_role(role_id))
        logger.info("role_updated", role_id=role_id)
        return role

    async def delete_role(self, role_id: int) -> None:
        holders = self.store.delete_role(role_id)
        if holders is None:
            raise NotFoundError("role not found")
        await self._invalidate(holders)
        logger.info("role_deleted", role_id=role_id)

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    async def create_permission(self, name: str) -> Permission:
        try:
            permission = self.store.create_permission(name)
        except ConstraintViolation as exc:
            raise ConflictError("permission already exists", detail=exc.detail) from exc
        logger.info("permission_created", permission_id=permission.id)
        return permission
