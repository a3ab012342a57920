from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tessera.logging import get_logger
from tessera.storage.common import SecretCipher, as_utc, normalize_email
from tessera.storage.errors import ConstraintViolation, StoreUnavailable
from tessera.storage.models import (
    Domain,
    DomainRole,
    MfaFactor,
    MfaType,
    PasswordResetToken,
    Session,
    User,
    UserPatch,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS tenant_domain (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        description TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domain_user (
        id TEXT PRIMARY KEY,
        domain_id TEXT NOT NULL REFERENCES tenant_domain(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        password_hash TEXT,
        full_name TEXT,
        phone TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ,
        UNIQUE (domain_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_mfa_factor (
        id TEXT PRIMARY KEY,
        domain_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES domain_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        secret TEXT,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        is_primary BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS user_mfa_factor_one_primary
        ON user_mfa_factor (user_id, type) WHERE is_primary
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        domain_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES domain_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        family_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_family ON auth_session (domain_id, family_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id TEXT PRIMARY KEY,
        domain_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES domain_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domain_role (
        id TEXT PRIMARY KEY,
        domain_id TEXT NOT NULL REFERENCES tenant_domain(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        permissions TEXT[] NOT NULL DEFAULT '{}',
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (domain_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_domain_role (
        domain_id TEXT NOT NULL,
        user_id TEXT NOT NULL REFERENCES domain_user(id) ON DELETE CASCADE,
        role_id TEXT NOT NULL REFERENCES domain_role(id) ON DELETE CASCADE,
        PRIMARY KEY (domain_id, user_id, role_id)
    )
    """,
)


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str, cipher: SecretCipher) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = cipher
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", str(exc)) from exc

    def ensure_schema(self) -> None:
        """Create identity tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _domain_from_row(row: dict) -> Domain:
        return Domain(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            description=row.get("description"),
            is_active=bool(row.get("is_active", True)),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            domain_id=str(row["domain_id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            full_name=row.get("full_name"),
            phone=row.get("phone"),
            is_active=bool(row.get("is_active", True)),
            is_verified=bool(row.get("is_verified", False)),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            last_login_at=as_utc(row.get("last_login_at")),
            created_at=as_utc(row.get("created_at")) or utcnow(),
            updated_at=as_utc(row.get("updated_at")),
        )

    def _factor_from_row(self, row: dict) -> MfaFactor:
        return MfaFactor(
            id=str(row["id"]),
            domain_id=str(row["domain_id"]),
            user_id=str(row["user_id"]),
            type=MfaType(row["type"]),
            secret=self._cipher.decrypt(row.get("secret")),
            backup_codes=list(row.get("backup_codes") or []),
            is_primary=bool(row.get("is_primary", False)),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            domain_id=str(row["domain_id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            family_id=str(row["family_id"]),
            created_at=as_utc(row["created_at"]),
            expires_at=as_utc(row["expires_at"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            revoked_at=as_utc(row.get("revoked_at")),
            replaced_by=row.get("replaced_by"),
        )

    @staticmethod
    def _role_from_row(row: dict) -> DomainRole:
        return DomainRole(
            id=str(row["id"]),
            domain_id=str(row["domain_id"]),
            name=row["name"],
            permissions=list(row.get("permissions") or []),
            description=row.get("description"),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    # domains
    def create_domain(
        self,
        name: str,
        slug: str,
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Domain:
        domain = Domain(
            id=str(uuid.uuid4()),
            name=name,
            slug=slug,
            description=description,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO tenant_domain (id, name, slug, description, is_active, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (domain.id, name, slug, description, is_active, domain.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("domain slug already exists", {"field": "slug"})
        return domain

    def get_domain(self, domain_id: str) -> Optional[Domain]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_domain WHERE id = %s", (domain_id,)
            ).fetchone()
        return self._domain_from_row(row) if row else None

    def get_domain_by_slug(self, slug: str) -> Optional[Domain]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant_domain WHERE slug = %s", (slug,)
            ).fetchone()
        return self._domain_from_row(row) if row else None

    # users
    def create_user(
        self,
        domain_id: str,
        email: str,
        password_hash: str,
        *,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            domain_id=domain_id,
            email=normalize_email(email),
            password_hash=password_hash,
            full_name=full_name,
            phone=phone,
            is_active=is_active,
            is_verified=is_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO domain_user (id, domain_id, email, password_hash, full_name, phone,
                                             is_active, is_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        domain_id,
                        user.email,
                        password_hash,
                        full_name,
                        phone,
                        is_active,
                        is_verified,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("domain missing", {"domain_id": domain_id})
        return user

    def find_user_by_email(self, domain_id: str, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM domain_user WHERE domain_id = %s AND email = %s",
                (domain_id, normalize_email(email)),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_id(self, domain_id: str, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM domain_user WHERE domain_id = %s AND id = %s",
                (domain_id, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def exists_by_email(self, domain_id: str, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM domain_user WHERE domain_id = %s AND email = %s",
                (domain_id, normalize_email(email)),
            ).fetchone()
        return row is not None

    def update_user(self, domain_id: str, user_id: str, patch: UserPatch) -> Optional[User]:
        changes = patch.changes()
        changes["updated_at"] = utcnow()
        assignments = ", ".join(f"{column} = %s" for column in changes)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE domain_user SET {assignments} WHERE domain_id = %s AND id = %s RETURNING *",
                (*changes.values(), domain_id, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, domain_id: str, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE domain_user SET last_login_at = %s WHERE domain_id = %s AND id = %s",
                (at, domain_id, user_id),
            )

    # mfa factors
    def create_factor(self, factor: MfaFactor) -> MfaFactor:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_mfa_factor (id, domain_id, user_id, type, secret, backup_codes,
                                                 is_primary, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        factor.id,
                        factor.domain_id,
                        factor.user_id,
                        factor.type.value,
                        self._cipher.encrypt(factor.secret),
                        list(factor.backup_codes),
                        factor.is_primary,
                        factor.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for mfa", {"user_id": factor.user_id})
        return factor

    def list_factors(
        self,
        domain_id: str,
        user_id: str,
        *,
        mfa_type: Optional[MfaType] = None,
        primary: Optional[bool] = None,
    ) -> List[MfaFactor]:
        clauses = ["domain_id = %s", "user_id = %s"]
        params: List[Any] = [domain_id, user_id]
        if mfa_type is not None:
            clauses.append("type = %s")
            params.append(MfaType(mfa_type).value)
        if primary is not None:
            clauses.append("is_primary = %s")
            params.append(primary)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_mfa_factor WHERE {' AND '.join(clauses)} ORDER BY created_at",
                params,
            ).fetchall()
        return [self._factor_from_row(row) for row in rows]

    def get_pending_factor(
        self, domain_id: str, user_id: str, mfa_type: MfaType
    ) -> Optional[MfaFactor]:
        pending = self.list_factors(domain_id, user_id, mfa_type=mfa_type, primary=False)
        return pending[-1] if pending else None

    def promote_factor(self, domain_id: str, user_id: str, factor_id: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT type FROM user_mfa_factor WHERE id = %s AND domain_id = %s AND user_id = %s FOR UPDATE",
                (factor_id, domain_id, user_id),
            ).fetchone()
            if not row:
                raise ConstraintViolation("mfa factor not found", {"factor_id": factor_id})
            conn.execute(
                """
                UPDATE user_mfa_factor SET is_primary = FALSE
                WHERE user_id = %s AND type = %s AND id <> %s AND is_primary
                """,
                (user_id, row["type"], factor_id),
            )
            conn.execute(
                "UPDATE user_mfa_factor SET is_primary = TRUE WHERE id = %s",
                (factor_id,),
            )

    def replace_backup_codes(
        self, domain_id: str, user_id: str, factor_id: str, code_hashes: List[str]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE user_mfa_factor SET backup_codes = '{}' WHERE domain_id = %s AND user_id = %s",
                (domain_id, user_id),
            )
            updated = conn.execute(
                "UPDATE user_mfa_factor SET backup_codes = %s WHERE id = %s AND user_id = %s RETURNING id",
                (list(code_hashes), factor_id, user_id),
            ).fetchone()
            if not updated:
                raise ConstraintViolation("mfa factor not found", {"factor_id": factor_id})

    def consume_backup_code(self, domain_id: str, user_id: str, code_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_mfa_factor
                SET backup_codes = array_remove(backup_codes, %s)
                WHERE domain_id = %s AND user_id = %s AND is_primary AND %s = ANY(backup_codes)
                RETURNING id
                """,
                (code_hash, domain_id, user_id, code_hash),
            ).fetchone()
        return row is not None

    def delete_factors(self, domain_id: str, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_mfa_factor WHERE domain_id = %s AND user_id = %s",
                (domain_id, user_id),
            )
            return result.rowcount

    # sessions
    def _insert_session(self, conn: psycopg.Connection, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO auth_session (id, domain_id, user_id, token_hash, family_id, created_at,
                                      expires_at, ip_address, user_agent)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.domain_id,
                session.user_id,
                session.token_hash,
                session.family_id,
                session.created_at,
                session.expires_at,
                session.ip_address,
                session.user_agent,
            ),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def find_session_by_token(self, token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(self, old_session_id: str, new_session: Session, *, now: datetime) -> bool:
        """Revoke ``old_session_id`` and insert ``new_session`` in one transaction.

        Returns False (and inserts nothing) when the old session was already revoked.
        """
        with self._connect() as conn:
            claimed = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s, replaced_by = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, new_session.id, old_session_id),
            ).fetchone()
            if not claimed:
                return False
            self._insert_session(conn, new_session)
        return True

    def revoke_session(self, session_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_session SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (now, session_id),
            )
            return result.rowcount > 0

    def revoke_session_family(self, domain_id: str, family_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE domain_id = %s AND family_id = %s AND revoked_at IS NULL
                """,
                (now, domain_id, family_id),
            )
            return result.rowcount

    def revoke_user_sessions(self, domain_id: str, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE domain_id = %s AND user_id = %s AND revoked_at IS NULL
                """,
                (now, domain_id, user_id),
            )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return result.rowcount

    # password reset tokens
    def create_reset_token(self, record: PasswordResetToken) -> PasswordResetToken:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO password_reset_token (id, domain_id, user_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.domain_id,
                    record.user_id,
                    record.token_hash,
                    record.expires_at,
                    record.created_at,
                ),
            )
        return record

    def find_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            id=str(row["id"]),
            domain_id=str(row["domain_id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=as_utc(row["expires_at"]),
            used_at=as_utc(row.get("used_at")),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    def mark_reset_token_used(self, token_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE password_reset_token SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (used_at, token_id),
            )
            return result.rowcount > 0

    # roles
    def create_role(
        self,
        domain_id: str,
        name: str,
        permissions: List[str],
        *,
        description: Optional[str] = None,
    ) -> DomainRole:
        role = DomainRole(
            id=str(uuid.uuid4()),
            domain_id=domain_id,
            name=name,
            permissions=list(permissions),
            description=description,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO domain_role (id, domain_id, name, permissions, description, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (role.id, domain_id, name, role.permissions, description, role.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return role

    def get_role(self, domain_id: str, role_id: str) -> Optional[DomainRole]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM domain_role WHERE domain_id = %s AND id = %s",
                (domain_id, role_id),
            ).fetchone()
        return self._role_from_row(row) if row else None

    def assign_role(self, domain_id: str, user_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO user_domain_role (domain_id, user_id, role_id) VALUES (%s, %s, %s)",
                    (domain_id, user_id, role_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already assigned", {"role_id": role_id})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role or user missing", {"role_id": role_id})

    def remove_role(self, domain_id: str, user_id: str, role_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_domain_role WHERE domain_id = %s AND user_id = %s AND role_id = %s",
                (domain_id, user_id, role_id),
            )
            return result.rowcount > 0

    def list_user_roles(self, domain_id: str, user_id: str) -> List[DomainRole]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM user_domain_role ur
                JOIN domain_role r ON r.id = ur.role_id
                WHERE ur.domain_id = %s AND ur.user_id = %s
                ORDER BY r.name
                """,
                (domain_id, user_id),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]
