from __future__ import annotations

import base64
import contextlib
import copy
import hashlib
import itertools
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Set

from cryptography.fernet import Fernet, InvalidToken

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Identity, Permission, Role


class MemoryStore:
    """In-process credential store used by tests and local development.

    Mirrors the relational layout: identities, roles and permissions plus the
    three join tables. Multi-row role mutations run inside ``transaction()``,
    which restores a snapshot when the block raises.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[int, Identity] = {}
        self.roles: Dict[int, Role] = {}
        self.permissions: Dict[int, Permission] = {}
        self.identity_roles: Dict[int, Set[int]] = {}
        self.identity_permissions: Dict[int, Set[int]] = {}
        self.role_permissions: Dict[int, Set[int]] = {}
        self._identity_seq = itertools.count(1)
        self._role_seq = itertools.count(1)
        self._permission_seq = itertools.count(1)
        # RLock so transaction() can wrap calls that take the lock again
        self._data_lock = threading.RLock()
        self._mfa_cipher = Fernet(self._derive_cipher_key(mfa_encryption_key))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _encrypt_secret(self, secret: str) -> str:
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self._mfa_cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            return None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run a block atomically; state is rolled back if it raises."""
        with self._data_lock:
            snapshot = copy.deepcopy(
                (
                    self.identities,
                    self.roles,
                    self.permissions,
                    self.identity_roles,
                    self.identity_permissions,
                    self.role_permissions,
                )
            )
            try:
                yield
            except Exception:
                (
                    self.identities,
                    self.roles,
                    self.permissions,
                    self.identity_roles,
                    self.identity_permissions,
                    self.role_permissions,
                ) = snapshot
                self.logger.warning("memory_store_transaction_rolled_back")
                raise

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def _export_identity(self, record: Identity, with_grants: bool) -> Identity:
        identity = replace(
            record,
            mfa_secret=self._decrypt_secret(record.mfa_secret),
            roles=[],
            permissions=[],
        )
        if with_grants:
            identity.roles = [
                self._export_role(self.roles[role_id])
                for role_id in sorted(self.identity_roles.get(record.id, ()))
                if role_id in self.roles
            ]
            identity.permissions = [
                replace(self.permissions[perm_id])
                for perm_id in sorted(self.identity_permissions.get(record.id, ()))
                if perm_id in self.permissions
            ]
        return identity

    def create_identity(
        self,
        name: str,
        email: str,
        password_hash: str,
        salt: str,
        password_expires_at: datetime,
    ) -> Identity:
        with self._data_lock:
            for existing in self.identities.values():
                if existing.name == name:
                    raise ConstraintViolation("name already exists", {"field": "name"})
                if existing.email.lower() == email.lower():
                    raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=next(self._identity_seq),
                name=name,
                email=email,
                password_hash=password_hash,
                salt=salt,
                password_expires_at=password_expires_at,
            )
            self.identities[identity.id] = identity
            self.identity_roles[identity.id] = set()
            self.identity_permissions[identity.id] = set()
            return self._export_identity(identity, with_grants=False)

    def get_identity(self, identity_id: int, *, with_grants: bool = False) -> Optional[Identity]:
        with self._data_lock:
            record = self.identities.get(identity_id)
            return self._export_identity(record, with_grants) if record else None

    def get_identity_by_email(
        self, email: str, *, with_grants: bool = False
    ) -> Optional[Identity]:
        with self._data_lock:
            wanted = email.lower()
            record = next(
                (i for i in self.identities.values() if i.email.lower() == wanted), None
            )
            return self._export_identity(record, with_grants) if record else None

    def find_identity(self, identifier: str) -> Optional[Identity]:
        """Look an identity up by name or email."""
        with self._data_lock:
            record = next(
                (
                    i
                    for i in self.identities.values()
                    if i.name == identifier or i.email.lower() == identifier.lower()
                ),
                None,
            )
            return self._export_identity(record, False) if record else None

    def mark_email_verified(
        self, identity_id: int, at: Optional[datetime] = None
    ) -> Optional[Identity]:
        with self._data_lock:
            record = self.identities.get(identity_id)
            if not record:
                return None
            record.email_verified_at = at or datetime.now(timezone.utc)
            record.updated_at = datetime.now(timezone.utc)
            return self._export_identity(record, False)

    def set_mfa_secret(self, identity_id: int, secret: Optional[str]) -> Optional[Identity]:
        with self._data_lock:
            record = self.identities.get(identity_id)
            if not record:
                return None
            record.mfa_secret = self._encrypt_secret(secret) if secret else None
            record.updated_at = datetime.now(timezone.utc)
            return self._export_identity(record, False)

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def _export_role(self, record: Role) -> Role:
        return replace(
            record,
            permissions=[
                replace(self.permissions[perm_id])
                for perm_id in sorted(self.role_permissions.get(record.id, ()))
                if perm_id in self.permissions
            ],
        )

    def _sync_role_permissions(self, role_id: int, permission_names: Iterable[str]) -> None:
        # Unknown names are ignored
        wanted = set(permission_names)
        self.role_permissions[role_id] = {
            perm.id for perm in self.permissions.values() if perm.name in wanted
        }

    def _ensure_role_name_free(self, name: str, *, exclude: Optional[int] = None) -> None:
        for role in self.roles.values():
            if role.name == name and role.id != exclude:
                raise ConstraintViolation("role already exists", {"field": "name"})

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [self._export_role(role) for _, role in sorted(self.roles.items())]

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            record = self.roles.get(role_id)
            return self._export_role(record) if record else None

    def create_role(self, name: str, permission_names: Iterable[str] = ()) -> Role:
        with self.transaction():
            self._ensure_role_name_free(name)
            role = Role(id=next(self._role_seq), name=name)
            self.roles[role.id] = role
            self.role_permissions[role.id] = set()
            self._sync_role_permissions(role.id, permission_names)
            return self._export_role(role)

    def update_role(
        self,
        role_id: int,
        *,
        name: Optional[str] = None,
        permission_names: Optional[Iterable[str]] = None,
    ) -> Optional[Role]:
        with self.transaction():
            role = self.roles.get(role_id)
            if not role:
                return None
            if name:
                self._ensure_role_name_free(name, exclude=role_id)
                role.name = name
            if permission_names is not None:
                self._sync_role_permissions(role_id, permission_names)
            return self._export_role(role)

    def delete_role(self, role_id: int) -> Optional[List[int]]:
        """Delete a role; returns the ids of identities that held it."""
        with self.transaction():
            if role_id not in self.roles:
                return None
            holders = self.identities_with_role(role_id)
            self.roles.pop(role_id)
            self.role_permissions.pop(role_id, None)
            for role_ids in self.identity_roles.values():
                role_ids.discard(role_id)
            return holders

    def identities_with_role(self, role_id: int) -> List[int]:
        with self._data_lock:
            return sorted(
                identity_id
                for identity_id, role_ids in self.identity_roles.items()
                if role_id in role_ids
            )

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            results = []
            for perm_id, perm in sorted(self.permissions.items()):
                holders = sorted(
                    self.roles[role_id].name
                    for role_id, perm_ids in self.role_permissions.items()
                    if perm_id in perm_ids and role_id in self.roles
                )
                results.append(replace(perm, roles=holders))
            return results

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def create_permission(self, name: str) -> Permission:
        with self._data_lock:
            if any(perm.name == name for perm in self.permissions.values()):
                raise ConstraintViolation("permission already exists", {"field": "name"})
            perm = Permission(id=next(self._permission_seq), name=name)
            self.permissions[perm.id] = perm
            return replace(perm)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def add_role_to_identity(self, identity_id: int, role_id: int) -> bool:
        with self._data_lock:
            if identity_id not in self.identities or role_id not in self.roles:
                return False
            self.identity_roles.setdefault(identity_id, set()).add(role_id)
            return True

    def remove_role_from_identity(self, identity_id: int, role_id: int) -> bool:
        with self._data_lock:
            if identity_id not in self.identities or role_id not in self.roles:
                return False
            self.identity_roles.setdefault(identity_id, set()).discard(role_id)
            return True

    def add_permission_to_identity(self, identity_id: int, permission_id: int) -> bool:
        with self._data_lock:
            if identity_id not in self.identities or permission_id not in self.permissions:
                return False
            self.identity_permissions.setdefault(identity_id, set()).add(permission_id)
            return True

    def remove_permission_from_identity(self, identity_id: int, permission_id: int) -> bool:
        with self._data_lock:
            if identity_id not in self.identities or permission_id not in self.permissions:
                return False
            self.identity_permissions.setdefault(identity_id, set()).discard(permission_id)
            return True

    def close(self) -> None:
        return None
