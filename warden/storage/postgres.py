from __future__ import annotations

import base64
import hashlib
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import Identity, Permission, Role

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS identities (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        salt TEXT NOT NULL,
        mfa_secret TEXT,
        email_verified_at TIMESTAMPTZ,
        password_expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS identities_email_lower_key ON identities (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS roles (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS permissions (
        id BIGSERIAL PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_role (
        identity_id BIGINT NOT NULL REFERENCES identities(id) ON DELETE CASCADE ON UPDATE CASCADE,
        role_id BIGINT NOT NULL REFERENCES roles(id) ON DELETE CASCADE ON UPDATE CASCADE,
        PRIMARY KEY (identity_id, role_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS identity_permission (
        identity_id BIGINT NOT NULL REFERENCES identities(id) ON DELETE CASCADE ON UPDATE CASCADE,
        permission_id BIGINT NOT NULL REFERENCES permissions(id) ON DELETE CASCADE ON UPDATE CASCADE,
        PRIMARY KEY (identity_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role_id BIGINT NOT NULL REFERENCES roles(id) ON DELETE CASCADE ON UPDATE CASCADE,
        permission_id BIGINT NOT NULL REFERENCES permissions(id) ON DELETE CASCADE ON UPDATE CASCADE,
        PRIMARY KEY (role_id, permission_id)
    )
    """,
)

_IDENTITY_COLUMNS = (
    "id, name, email, password_hash, salt, mfa_secret, email_verified_at, "
    "password_expires_at, created_at, updated_at"
)


class PostgresStore:
    """Postgres-backed credential store.

    Every method borrows a pooled connection; leaving the ``with`` block
    commits, and an exception inside it rolls the whole block back.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = Fernet(
            base64.urlsafe_b64encode(hashlib.sha256(mfa_encryption_key.encode()).digest())
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the identity, role and permission tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def _decrypt_secret(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        try:
            return self._mfa_cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            return None

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _identity_from_row(self, row: dict[str, Any]) -> Identity:
        return Identity(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            salt=row["salt"],
            mfa_secret=self._decrypt_secret(row.get("mfa_secret")),
            email_verified_at=row.get("email_verified_at"),
            password_expires_at=row["password_expires_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _permission_from_row(row: dict[str, Any]) -> Permission:
        return Permission(id=row["id"], name=row["name"], created_at=row["created_at"])

    def _role_permissions(self, conn, role_ids: List[int]) -> dict[int, List[Permission]]:
        grouped: dict[int, List[Permission]] = {role_id: [] for role_id in role_ids}
        if not role_ids:
            return grouped
        rows = conn.execute(
            """
            SELECT rp.role_id, p.id, p.name, p.created_at
            FROM role_permission rp JOIN permissions p ON p.id = rp.permission_id
            WHERE rp.role_id = ANY(%s)
            ORDER BY p.id
            """,
            (role_ids,),
        ).fetchall()
        for row in rows:
            grouped[row["role_id"]].append(self._permission_from_row(row))
        return grouped

    def _load_grants(self, conn, identity: Identity) -> Identity:
        role_rows = conn.execute(
            """
            SELECT r.id, r.name, r.created_at
            FROM identity_role ir JOIN roles r ON r.id = ir.role_id
            WHERE ir.identity_id = %s ORDER BY r.id
            """,
            (identity.id,),
        ).fetchall()
        role_perms = self._role_permissions(conn, [row["id"] for row in role_rows])
        identity.roles = [
            Role(
                id=row["id"],
                name=row["name"],
                created_at=row["created_at"],
                permissions=role_perms.get(row["id"], []),
            )
            for row in role_rows
        ]
        perm_rows = conn.execute(
            """
            SELECT p.id, p.name, p.created_at
            FROM identity_permission ip JOIN permissions p ON p.id = ip.permission_id
            WHERE ip.identity_id = %s ORDER BY p.id
            """,
            (identity.id,),
        ).fetchall()
        identity.permissions = [self._permission_from_row(row) for row in perm_rows]
        return identity

    def _fetch_identity(
        self, where: str, params: tuple, *, with_grants: bool
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE {where} LIMIT 1",
                params,
            ).fetchone()
            if not row:
                return None
            identity = self._identity_from_row(row)
            if with_grants:
                self._load_grants(conn, identity)
            return identity

    # ------------------------------------------------------------------
    # Identities
    # ------------------------------------------------------------------

    def create_identity(
        self,
        name: str,
        email: str,
        password_hash: str,
        salt: str,
        password_expires_at: datetime,
    ) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO identities (name, email, password_hash, salt, password_expires_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_IDENTITY_COLUMNS}
                    """,
                    (name, email, password_hash, salt, password_expires_at),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "email" if "email" in str(exc) else "name"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._identity_from_row(row)

    def get_identity(self, identity_id: int, *, with_grants: bool = False) -> Optional[Identity]:
        return self._fetch_identity("id = %s", (identity_id,), with_grants=with_grants)

    def get_identity_by_email(
        self, email: str, *, with_grants: bool = False
    ) -> Optional[Identity]:
        return self._fetch_identity("lower(email) = lower(%s)", (email,), with_grants=with_grants)

    def find_identity(self, identifier: str) -> Optional[Identity]:
        return self._fetch_identity(
            "name = %s OR lower(email) = lower(%s)", (identifier, identifier), with_grants=False
        )

    def mark_email_verified(
        self, identity_id: int, at: Optional[datetime] = None
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE identities SET email_verified_at = %s, updated_at = now()
                WHERE id = %s RETURNING {_IDENTITY_COLUMNS}
                """,
                (at or datetime.now(timezone.utc), identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    def set_mfa_secret(self, identity_id: int, secret: Optional[str]) -> Optional[Identity]:
        encrypted = self._mfa_cipher.encrypt(secret.encode()).decode() if secret else None
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE identities SET mfa_secret = %s, updated_at = now()
                WHERE id = %s RETURNING {_IDENTITY_COLUMNS}
                """,
                (encrypted, identity_id),
            ).fetchone()
        return self._identity_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def _sync_role_permissions(self, conn, role_id: int, permission_names: Iterable[str]) -> None:
        # Unknown names are ignored
        conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
        conn.execute(
            """
            INSERT INTO role_permission (role_id, permission_id)
            SELECT %s, id FROM permissions WHERE name = ANY(%s)
            """,
            (role_id, list(permission_names)),
        )

    def _role_by_id(self, conn, role_id: int) -> Optional[Role]:
        row = conn.execute(
            "SELECT id, name, created_at FROM roles WHERE id = %s", (role_id,)
        ).fetchone()
        if not row:
            return None
        perms = self._role_permissions(conn, [row["id"]])
        return Role(
            id=row["id"], name=row["name"], created_at=row["created_at"], permissions=perms[row["id"]]
        )

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT id, name, created_at FROM roles ORDER BY id").fetchall()
            perms = self._role_permissions(conn, [row["id"] for row in rows])
        return [
            Role(id=row["id"], name=row["name"], created_at=row["created_at"], permissions=perms[row["id"]])
            for row in rows
        ]

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            return self._role_by_id(conn, role_id)

    def create_role(self, name: str, permission_names: Iterable[str] = ()) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO roles (name) VALUES (%s) RETURNING id", (name,)
                ).fetchone()
                self._sync_role_permissions(conn, row["id"], permission_names)
                return self._role_by_id(conn, row["id"])
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})

    def update_role(
        self,
        role_id: int,
        *,
        name: Optional[str] = None,
        permission_names: Optional[Iterable[str]] = None,
    ) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id FROM roles WHERE id = %s FOR UPDATE", (role_id,)
                ).fetchone()
                if not row:
                    return None
                if name:
                    conn.execute(
                        "UPDATE roles SET name = %s, updated_at = now() WHERE id = %s",
                        (name, role_id),
                    )
                if permission_names is not None:
                    self._sync_role_permissions(conn, role_id, permission_names)
                return self._role_by_id(conn, role_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})

    def delete_role(self, role_id: int) -> Optional[List[int]]:
        """Delete a role; returns the ids of identities that held it."""
        with self._connect() as conn:
            holders = conn.execute(
                "SELECT identity_id FROM identity_role WHERE role_id = %s ORDER BY identity_id",
                (role_id,),
            ).fetchall()
            deleted = conn.execute(
                "DELETE FROM roles WHERE id = %s RETURNING id", (role_id,)
            ).fetchone()
        if not deleted:
            return None
        return [row["identity_id"] for row in holders]

    def identities_with_role(self, role_id: int) -> List[int]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT identity_id FROM identity_role WHERE role_id = %s ORDER BY identity_id",
                (role_id,),
            ).fetchall()
        return [row["identity_id"] for row in rows]

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.id, p.name, p.created_at,
                       COALESCE(array_agg(r.name ORDER BY r.name)
                                FILTER (WHERE r.name IS NOT NULL), '{}') AS role_names
                FROM permissions p
                LEFT JOIN role_permission rp ON rp.permission_id = p.id
                LEFT JOIN roles r ON r.id = rp.role_id
                GROUP BY p.id ORDER BY p.id
                """
            ).fetchall()
        return [
            Permission(
                id=row["id"],
                name=row["name"],
                created_at=row["created_at"],
                roles=list(row["role_names"]),
            )
            for row in rows
        ]

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, name, created_at FROM permissions WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def create_permission(self, name: str) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO permissions (name) VALUES (%s) RETURNING id, name, created_at",
                    (name,),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("permission already exists", {"field": "name"})
        return self._permission_from_row(row)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def _grant(self, sql: str, identity_id: int, target_id: int) -> bool:
        try:
            with self._connect() as conn:
                conn.execute(sql, (identity_id, target_id))
        except errors.ForeignKeyViolation:
            return False
        return True

    def _revoke(self, table: str, column: str, identity_id: int, target_id: int) -> bool:
        target_table = "roles" if column == "role_id" else "permissions"
        with self._connect() as conn:
            exists = conn.execute(
                f"""
                SELECT (SELECT 1 FROM identities WHERE id = %s) AS identity_found,
                       (SELECT 1 FROM {target_table} WHERE id = %s) AS target_found
                """,
                (identity_id, target_id),
            ).fetchone()
            if not exists["identity_found"] or not exists["target_found"]:
                return False
            conn.execute(
                f"DELETE FROM {table} WHERE identity_id = %s AND {column} = %s",
                (identity_id, target_id),
            )
        return True

    def add_role_to_identity(self, identity_id: int, role_id: int) -> bool:
        return self._grant(
            "INSERT INTO identity_role (identity_id, role_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            identity_id,
            role_id,
        )

    def remove_role_from_identity(self, identity_id: int, role_id: int) -> bool:
        return self._revoke("identity_role", "role_id", identity_id, role_id)

    def add_permission_to_identity(self, identity_id: int, permission_id: int) -> bool:
        return self._grant(
            """
            INSERT INTO identity_permission (identity_id, permission_id)
            VALUES (%s, %s) ON CONFLICT DO NOTHING
            """,
            identity_id,
            permission_id,
        )

    def remove_permission_from_identity(self, identity_id: int, permission_id: int) -> bool:
        return self._revoke("identity_permission", "permission_id", identity_id, permission_id)
