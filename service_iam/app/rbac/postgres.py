"""
PostgreSQL adapter for the directory repository.
"""

from contextlib import asynccontextmanager
from typing import Iterable, List, Optional, Set, Tuple

import asyncpg

from shared.errors import Conflict, IdentityServiceException, ValidationError
from shared.logging import get_logger

from .models import (
    Application,
    Assignment,
    Group,
    OidcApplication,
    PasswordCredential,
    Permission,
    Realm,
    Role,
    SubjectType,
    User,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id VARCHAR(64) PRIMARY KEY,
    account VARCHAR(100) NOT NULL UNIQUE,
    name VARCHAR(255),
    email VARCHAR(255),
    profile_verified BOOLEAN NOT NULL DEFAULT FALSE,
    locked BOOLEAN NOT NULL DEFAULT FALSE,
    failed_sign_ins INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS groups (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    description TEXT
);
CREATE TABLE IF NOT EXISTS group_members (
    group_id VARCHAR(64) NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    PRIMARY KEY (group_id, user_id)
);
CREATE TABLE IF NOT EXISTS applications (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    description TEXT
);
CREATE TABLE IF NOT EXISTS realms (
    id VARCHAR(64) PRIMARY KEY,
    application_id VARCHAR(64) NOT NULL REFERENCES applications(id) ON DELETE CASCADE,
    name VARCHAR(100) NOT NULL,
    description TEXT,
    UNIQUE (application_id, name)
);
CREATE TABLE IF NOT EXISTS roles (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    description TEXT
);
CREATE TABLE IF NOT EXISTS permissions (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    description TEXT
);
CREATE TABLE IF NOT EXISTS role_permissions (
    role_id VARCHAR(64) NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
    permission_id VARCHAR(64) NOT NULL REFERENCES permissions(id) ON DELETE CASCADE,
    PRIMARY KEY (role_id, permission_id)
);
CREATE TABLE IF NOT EXISTS realm_allowed_roles (
    realm_id VARCHAR(64) NOT NULL REFERENCES realms(id) ON DELETE CASCADE,
    role_id VARCHAR(64) NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
    PRIMARY KEY (realm_id, role_id)
);
CREATE TABLE IF NOT EXISTS user_assignments (
    user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role_id VARCHAR(64) NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
    realm_id VARCHAR(64) NOT NULL REFERENCES realms(id) ON DELETE CASCADE,
    PRIMARY KEY (user_id, role_id, realm_id)
);
CREATE TABLE IF NOT EXISTS group_assignments (
    group_id VARCHAR(64) NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
    role_id VARCHAR(64) NOT NULL REFERENCES roles(id) ON DELETE CASCADE,
    realm_id VARCHAR(64) NOT NULL REFERENCES realms(id) ON DELETE CASCADE,
    PRIMARY KEY (group_id, role_id, realm_id)
);
CREATE TABLE IF NOT EXISTS password_credentials (
    user_id VARCHAR(64) PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    password_hash VARCHAR(255) NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS otp_keys (
    user_id VARCHAR(64) PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
    secret VARCHAR(128) NOT NULL
);
CREATE TABLE IF NOT EXISTS oidc_identities (
    provider VARCHAR(100) NOT NULL,
    subject VARCHAR(255) NOT NULL,
    user_id VARCHAR(64) NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    PRIMARY KEY (provider, subject)
);
CREATE TABLE IF NOT EXISTS oidc_applications (
    id VARCHAR(64) PRIMARY KEY,
    name VARCHAR(100) NOT NULL UNIQUE,
    client_id VARCHAR(128) NOT NULL UNIQUE,
    client_secret_hash VARCHAR(255) NOT NULL,
    description TEXT,
    redirect_uris TEXT[] NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_group_members_user ON group_members(user_id);
CREATE INDEX IF NOT EXISTS idx_group_assignments_realm ON group_assignments(realm_id);
CREATE INDEX IF NOT EXISTS idx_user_assignments_realm ON user_assignments(realm_id);
"""

_ASSIGNMENT_TABLES = {
    SubjectType.USER: ("user_assignments", "user_id"),
    SubjectType.GROUP: ("group_assignments", "group_id"),
}


def _affected(status: str) -> int:
    # asyncpg returns command tags such as "DELETE 1" or "UPDATE 0"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


class PostgresDirectoryRepository:
    """Directory repository on PostgreSQL via an asyncpg pool."""

    def __init__(self, dsn: str, pool: Optional[asyncpg.Pool] = None):
        self.dsn = dsn
        self.logger = get_logger("iam.rbac.postgres")
        self.pool: Optional[asyncpg.Pool] = pool

    async def start(self):
        """Open the pool and create the schema."""
        try:
            if self.pool is None:
                self.pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=2,
                    max_size=10,
                    command_timeout=30
                )
            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
            self.logger.info("PostgreSQL directory repository started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL directory repository", error=str(e))
            raise IdentityServiceException("POSTGRES_START_FAILED", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL directory repository stopped")

    @asynccontextmanager
    async def _transaction(self):
        async with self.pool.acquire() as conn:
            try:
                async with conn.transaction():
                    yield conn
            except asyncpg.UniqueViolationError as e:
                raise Conflict("Entity already exists", details={"constraint": e.constraint_name}) from e
            except asyncpg.ForeignKeyViolationError as e:
                raise ValidationError("Referenced entity does not exist",
                                      details={"constraint": e.constraint_name}) from e

    @staticmethod
    def _require_updated(status: str, label: str, entity_id: str) -> None:
        if _affected(status) == 0:
            raise ValidationError(f"Unknown {label}", details={f"{label}_id": entity_id})

    # Users

    @staticmethod
    def _user(row) -> User:
        return User(
            id=row["id"], account=row["account"], name=row["name"], email=row["email"],
            profile_verified=row["profile_verified"], locked=row["locked"], created_at=row["created_at"],
        )

    async def add_user(self, user: User) -> None:
        async with self._transaction() as conn:
            await conn.execute("""
                INSERT INTO users (id, account, name, email, profile_verified, locked, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
            """, user.id, user.account, user.name, user.email, user.profile_verified,
                user.locked, user.created_at)

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE id = $1", user_id)
        return self._user(row) if row else None

    async def find_user_by_account(self, account: str) -> Optional[User]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM users WHERE account = $1", account)
        return self._user(row) if row else None

    async def list_users(self, offset: int = 0, limit: int = 100) -> List[User]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM users ORDER BY account OFFSET $1 LIMIT $2", offset, limit)
        return [self._user(r) for r in rows]

    async def update_user(self, user: User) -> None:
        async with self._transaction() as conn:
            status = await conn.execute("""
                UPDATE users SET account = $2, name = $3, email = $4,
                    profile_verified = $5, locked = $6
                WHERE id = $1
            """, user.id, user.account, user.name, user.email, user.profile_verified, user.locked)
            self._require_updated(status, "user", user.id)

    async def delete_user(self, user_id: str) -> bool:
        async with self._transaction() as conn:
            return _affected(await conn.execute("DELETE FROM users WHERE id = $1", user_id)) > 0

    # Groups

    async def _group(self, conn, row) -> Group:
        members = await conn.fetch("SELECT user_id FROM group_members WHERE group_id = $1", row["id"])
        return Group(id=row["id"], name=row["name"], description=row["description"],
                     members={m["user_id"] for m in members})

    async def add_group(self, group: Group) -> None:
        async with self._transaction() as conn:
            await conn.execute("INSERT INTO groups (id, name, description) VALUES ($1, $2, $3)",
                               group.id, group.name, group.description)
            await self._insert_members(conn, group.id, group.members)

    async def _insert_members(self, conn, group_id: str, user_ids: Iterable[str]) -> None:
        await conn.executemany("""
            INSERT INTO group_members (group_id, user_id) VALUES ($1, $2)
            ON CONFLICT DO NOTHING
        """, [(group_id, u) for u in user_ids])

    async def get_group(self, group_id: str) -> Optional[Group]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM groups WHERE id = $1", group_id)
            return await self._group(conn, row) if row else None

    async def find_group_by_name(self, name: str) -> Optional[Group]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM groups WHERE name = $1", name)
            return await self._group(conn, row) if row else None

    async def list_groups(self, offset: int = 0, limit: int = 100) -> List[Group]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM groups ORDER BY name OFFSET $1 LIMIT $2", offset, limit)
            return [await self._group(conn, r) for r in rows]

    async def update_group(self, group: Group) -> None:
        async with self._transaction() as conn:
            status = await conn.execute("UPDATE groups SET name = $2, description = $3 WHERE id = $1",
                                        group.id, group.name, group.description)
            self._require_updated(status, "group", group.id)
            await conn.execute("DELETE FROM group_members WHERE group_id = $1", group.id)
            await self._insert_members(conn, group.id, group.members)

    async def delete_group(self, group_id: str) -> bool:
        async with self._transaction() as conn:
            return _affected(await conn.execute("DELETE FROM groups WHERE id = $1", group_id)) > 0

    async def add_group_members(self, group_id: str, user_ids: Iterable[str]) -> None:
        async with self._transaction() as conn:
            await self._insert_members(conn, group_id, user_ids)

    async def remove_group_members(self, group_id: str, user_ids: Iterable[str]) -> None:
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM group_members WHERE group_id = $1 AND user_id = ANY($2::varchar[])",
                               group_id, list(user_ids))

    async def groups_of_user(self, user_id: str) -> List[Group]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT g.* FROM groups g JOIN group_members m ON m.group_id = g.id
                WHERE m.user_id = $1 ORDER BY g.name
            """, user_id)
            return [await self._group(conn, r) for r in rows]

    # Applications and realms

    @staticmethod
    def _application(row) -> Application:
        return Application(id=row["id"], name=row["name"], description=row["description"])

    async def add_application(self, application: Application) -> None:
        async with self._transaction() as conn:
            await conn.execute("INSERT INTO applications (id, name, description) VALUES ($1, $2, $3)",
                               application.id, application.name, application.description)

    async def get_application(self, application_id: str) -> Optional[Application]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM applications WHERE id = $1", application_id)
        return self._application(row) if row else None

    async def find_application_by_name(self, name: str) -> Optional[Application]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM applications WHERE name = $1", name)
        return self._application(row) if row else None

    async def list_applications(self, offset: int = 0, limit: int = 100) -> List[Application]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM applications ORDER BY name OFFSET $1 LIMIT $2",
                                    offset, limit)
        return [self._application(r) for r in rows]

    async def update_application(self, application: Application) -> None:
        async with self._transaction() as conn:
            status = await conn.execute("UPDATE applications SET name = $2, description = $3 WHERE id = $1",
                                        application.id, application.name, application.description)
            self._require_updated(status, "application", application.id)

    async def delete_application(self, application_id: str) -> bool:
        async with self._transaction() as conn:
            status = await conn.execute("DELETE FROM applications WHERE id = $1", application_id)
            return _affected(status) > 0

    async def _realm(self, conn, row) -> Realm:
        roles = await conn.fetch("SELECT role_id FROM realm_allowed_roles WHERE realm_id = $1", row["id"])
        return Realm(id=row["id"], application_id=row["application_id"], name=row["name"],
                     description=row["description"], allowed_roles={r["role_id"] for r in roles})

    async def _insert_allowed_roles(self, conn, realm: Realm) -> None:
        await conn.executemany("INSERT INTO realm_allowed_roles (realm_id, role_id) VALUES ($1, $2)",
                               [(realm.id, r) for r in realm.allowed_roles])

    async def add_realm(self, realm: Realm) -> None:
        async with self._transaction() as conn:
            await conn.execute("""
                INSERT INTO realms (id, application_id, name, description) VALUES ($1, $2, $3, $4)
            """, realm.id, realm.application_id, realm.name, realm.description)
            await self._insert_allowed_roles(conn, realm)

    async def get_realm(self, realm_id: str) -> Optional[Realm]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM realms WHERE id = $1", realm_id)
            return await self._realm(conn, row) if row else None

    async def find_realm(self, application_id: str, name: str) -> Optional[Realm]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM realms WHERE application_id = $1 AND name = $2",
                                      application_id, name)
            return await self._realm(conn, row) if row else None

    async def list_realms(self, application_id: str) -> List[Realm]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM realms WHERE application_id = $1 ORDER BY name",
                                    application_id)
            return [await self._realm(conn, r) for r in rows]

    async def update_realm(self, realm: Realm) -> None:
        async with self._transaction() as conn:
            status = await conn.execute("""
                UPDATE realms SET application_id = $2, name = $3, description = $4 WHERE id = $1
            """, realm.id, realm.application_id, realm.name, realm.description)
            self._require_updated(status, "realm", realm.id)
            await conn.execute("DELETE FROM realm_allowed_roles WHERE realm_id = $1", realm.id)
            await self._insert_allowed_roles(conn, realm)

    async def delete_realm(self, realm_id: str) -> bool:
        async with self._transaction() as conn:
            return _affected(await conn.execute("DELETE FROM realms WHERE id = $1", realm_id)) > 0

    # Roles and permissions

    async def _role(self, conn, row) -> Role:
        perms = await conn.fetch("SELECT permission_id FROM role_permissions WHERE role_id = $1", row["id"])
        return Role(id=row["id"], name=row["name"], description=row["description"],
                    permissions={p["permission_id"] for p in perms})

    async def _insert_role_permissions(self, conn, role: Role) -> None:
        await conn.executemany("INSERT INTO role_permissions (role_id, permission_id) VALUES ($1, $2)",
                               [(role.id, p) for p in role.permissions])

    async def add_role(self, role: Role) -> None:
        async with self._transaction() as conn:
            await conn.execute("INSERT INTO roles (id, name, description) VALUES ($1, $2, $3)",
                               role.id, role.name, role.description)
            await self._insert_role_permissions(conn, role)

    async def get_role(self, role_id: str) -> Optional[Role]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM roles WHERE id = $1", role_id)
            return await self._role(conn, row) if row else None

    async def find_role_by_name(self, name: str) -> Optional[Role]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM roles WHERE name = $1", name)
            return await self._role(conn, row) if row else None

    async def list_roles(self, offset: int = 0, limit: int = 100) -> List[Role]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM roles ORDER BY name OFFSET $1 LIMIT $2", offset, limit)
            return [await self._role(conn, r) for r in rows]

    async def update_role(self, role: Role) -> None:
        async with self._transaction() as conn:
            status = await conn.execute("UPDATE roles SET name = $2, description = $3 WHERE id = $1",
                                        role.id, role.name, role.description)
            self._require_updated(status, "role", role.id)
            await conn.execute("DELETE FROM role_permissions WHERE role_id = $1", role.id)
            await self._insert_role_permissions(conn, role)

    async def delete_role(self, role_id: str) -> bool:
        async with self._transaction() as conn:
            return _affected(await conn.execute("DELETE FROM roles WHERE id = $1", role_id)) > 0

    @staticmethod
    def _permission(row) -> Permission:
        return Permission(id=row["id"], name=row["name"], description=row["description"])

    async def add_permission(self, permission: Permission) -> None:
        async with self._transaction() as conn:
            await conn.execute("INSERT INTO permissions (id, name, description) VALUES ($1, $2, $3)",
                               permission.id, permission.name, permission.description)

    async def get_permission(self, permission_id: str) -> Optional[Permission]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM permissions WHERE id = $1", permission_id)
        return self._permission(row) if row else None

    async def find_permission_by_name(self, name: str) -> Optional[Permission]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM permissions WHERE name = $1", name)
        return self._permission(row) if row else None

    async def list_permissions(self, offset: int = 0, limit: int = 100) -> List[Permission]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM permissions ORDER BY name OFFSET $1 LIMIT $2",
                                    offset, limit)
        return [self._permission(r) for r in rows]

    async def update_permission(self, permission: Permission) -> None:
        async with self._transaction() as conn:
            status = await conn.execute("UPDATE permissions SET name = $2, description = $3 WHERE id = $1",
                                        permission.id, permission.name, permission.description)
            self._require_updated(status, "permission", permission.id)

    async def delete_permission(self, permission_id: str) -> bool:
        async with self._transaction() as conn:
            status = await conn.execute("DELETE FROM permissions WHERE id = $1", permission_id)
            return _affected(status) > 0

    # Assignments

    async def add_assignments(self, assignments: List[Assignment]) -> None:
        async with self._transaction() as conn:
            for a in assignments:
                table, column = _ASSIGNMENT_TABLES[a.subject_type]
                await conn.execute(
                    f"INSERT INTO {table} ({column}, role_id, realm_id) VALUES ($1, $2, $3)",
                    a.subject_id, a.role_id, a.realm_id)

    async def remove_assignments(self, assignments: List[Assignment]) -> int:
        removed = 0
        async with self._transaction() as conn:
            for a in assignments:
                table, column = _ASSIGNMENT_TABLES[a.subject_type]
                status = await conn.execute(
                    f"DELETE FROM {table} WHERE {column} = $1 AND role_id = $2 AND realm_id = $3",
                    a.subject_id, a.role_id, a.realm_id)
                removed += _affected(status)
        return removed

    async def list_assignments(self, realm_id: Optional[str] = None,
                               subject: Optional[Tuple[SubjectType, str]] = None) -> List[Assignment]:
        result: List[Assignment] = []
        async with self.pool.acquire() as conn:
            for subject_type, (table, column) in _ASSIGNMENT_TABLES.items():
                if subject is not None and subject[0] != subject_type:
                    continue
                rows = await conn.fetch(f"""
                    SELECT {column} AS subject_id, role_id, realm_id FROM {table}
                    WHERE ($1::varchar IS NULL OR realm_id = $1)
                      AND ($2::varchar IS NULL OR {column} = $2)
                """, realm_id, subject[1] if subject else None)
                result.extend(Assignment(subject_type, r["subject_id"], r["role_id"], r["realm_id"])
                              for r in rows)
        return result

    async def effective_permission_names(self, user_id: str, realm_id: str) -> Set[str]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("""
                SELECT DISTINCT p.name
                FROM permissions p
                JOIN role_permissions rp ON rp.permission_id = p.id
                WHERE rp.role_id IN (
                    SELECT role_id FROM user_assignments WHERE user_id = $1 AND realm_id = $2
                    UNION
                    SELECT ga.role_id FROM group_assignments ga
                    JOIN group_members gm ON gm.group_id = ga.group_id
                    WHERE gm.user_id = $1 AND ga.realm_id = $2
                )
            """, user_id, realm_id)
        return {r["name"] for r in rows}

    # Credentials

    async def get_password_credential(self, user_id: str) -> Optional[PasswordCredential]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM password_credentials WHERE user_id = $1", user_id)
        if row is None:
            return None
        return PasswordCredential(user_id=row["user_id"], password_hash=row["password_hash"],
                                  created_at=row["created_at"])

    async def set_password_credential(self, credential: PasswordCredential) -> None:
        async with self._transaction() as conn:
            await conn.execute("""
                INSERT INTO password_credentials (user_id, password_hash, created_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (user_id) DO UPDATE SET
                    password_hash = EXCLUDED.password_hash,
                    created_at = EXCLUDED.created_at
            """, credential.user_id, credential.password_hash, credential.created_at)

    async def delete_password_credential(self, user_id: str) -> bool:
        async with self._transaction() as conn:
            status = await conn.execute("DELETE FROM password_credentials WHERE user_id = $1", user_id)
            return _affected(status) > 0

    async def increment_failed_sign_ins(self, user_id: str) -> int:
        async with self.pool.acquire() as conn:
            count = await conn.fetchval("""
                UPDATE users SET failed_sign_ins = failed_sign_ins + 1 WHERE id = $1
                RETURNING failed_sign_ins
            """, user_id)
        return count or 0

    async def reset_failed_sign_ins(self, user_id: str) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute("UPDATE users SET failed_sign_ins = 0 WHERE id = $1", user_id)

    async def get_otp_secret(self, user_id: str) -> Optional[str]:
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT secret FROM otp_keys WHERE user_id = $1", user_id)

    async def set_otp_secret(self, user_id: str, secret: str) -> None:
        async with self._transaction() as conn:
            await conn.execute("""
                INSERT INTO otp_keys (user_id, secret) VALUES ($1, $2)
                ON CONFLICT (user_id) DO UPDATE SET secret = EXCLUDED.secret
            """, user_id, secret)

    async def delete_otp_secret(self, user_id: str) -> bool:
        async with self._transaction() as conn:
            return _affected(await conn.execute("DELETE FROM otp_keys WHERE user_id = $1", user_id)) > 0

    # Federated identities

    async def link_identity(self, provider: str, subject: str, user_id: str) -> None:
        async with self._transaction() as conn:
            await conn.execute("""
                INSERT INTO oidc_identities (provider, subject, user_id) VALUES ($1, $2, $3)
                ON CONFLICT (provider, subject) DO NOTHING
            """, provider, subject, user_id)
            linked = await conn.fetchval(
                "SELECT user_id FROM oidc_identities WHERE provider = $1 AND subject = $2", provider, subject)
            if linked != user_id:
                raise Conflict("Identity already linked", details={"provider": provider})

    async def find_user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("""
                SELECT u.* FROM users u JOIN oidc_identities i ON i.user_id = u.id
                WHERE i.provider = $1 AND i.subject = $2
            """, provider, subject)
        return self._user(row) if row else None

    # OIDC client applications

    @staticmethod
    def _oidc_application(row) -> OidcApplication:
        return OidcApplication(
            id=row["id"], name=row["name"], client_id=row["client_id"],
            client_secret_hash=row["client_secret_hash"], description=row["description"],
            redirect_uris=list(row["redirect_uris"] or []),
        )

    async def add_oidc_application(self, application: OidcApplication) -> None:
        async with self._transaction() as conn:
            await conn.execute("""
                INSERT INTO oidc_applications (id, name, client_id, client_secret_hash, description, redirect_uris)
                VALUES ($1, $2, $3, $4, $5, $6)
            """, application.id, application.name, application.client_id, application.client_secret_hash,
                application.description, list(application.redirect_uris))

    async def find_oidc_application_by_name(self, name: str) -> Optional[OidcApplication]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM oidc_applications WHERE name = $1", name)
        return self._oidc_application(row) if row else None

    async def find_oidc_application_by_client_id(self, client_id: str) -> Optional[OidcApplication]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM oidc_applications WHERE client_id = $1", client_id)
        return self._oidc_application(row) if row else None

    async def list_oidc_applications(self, offset: int = 0, limit: int = 100) -> List[OidcApplication]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM oidc_applications ORDER BY name OFFSET $1 LIMIT $2",
                                    offset, limit)
        return [self._oidc_application(r) for r in rows]

    async def update_oidc_application(self, application: OidcApplication) -> None:
        async with self._transaction() as conn:
            status = await conn.execute("""
                UPDATE oidc_applications SET name = $2, client_secret_hash = $3, description = $4,
                    redirect_uris = $5
                WHERE id = $1
            """, application.id, application.name, application.client_secret_hash, application.description,
                list(application.redirect_uris))
            self._require_updated(status, "oidc_application", application.id)

    async def delete_oidc_application(self, application_id: str) -> bool:
        async with self._transaction() as conn:
            status = await conn.execute("DELETE FROM oidc_applications WHERE id = $1", application_id)
            return _affected(status) > 0
