"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. The issuer, coordinator and resolvers never touch
SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Refresh tokens are stored as HMAC hashes only (see auth/tokens.py). A DB
  dump does not yield redeemable tokens.

Concurrency [R1]:
  rotate_refresh_token() is the only place where two requests can race for
  the same row. It performs a conditional UPDATE guarded by id, state and
  version, and inserts the successor inside the same transaction. A rowcount
  of 0 means another redemption won; the caller treats that as "already
  consumed". SQLite serializes writers, PostgreSQL row locks do the same, so
  exactly one concurrent redemption can flip the row.

Timestamps are stored as fixed-width UTC ISO 8601 strings so that string
comparison in SQL matches chronological order.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import PermissionGrant, Principal, RefreshTokenRecord, RefreshTokenState, TenantMembership
from core.clock import Clock, utc_now

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_principals = Table(
    "principals",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lowercase
    Column("username", String(150), nullable=False),  # stored as given, unique case-insensitively
    Column("hashed_password", Text),
    Column("display_name", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

Index("uq_principals_username_lower", func.lower(_principals.c.username), unique=True)

_memberships = Table(
    "tenant_memberships",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("principal_id", String(36), nullable=False, index=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("role", String(50), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_default", Integer, nullable=False, server_default="0"),
    Column("joined_at", String(32), nullable=False),
    Column("left_at", String(32)),
    UniqueConstraint("principal_id", "tenant_id", name="uq_principal_tenant"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("principal_id", String(36), nullable=False, index=True),
    Column("session_id", String(36), nullable=False, index=True),
    Column("device", String(100)),
    Column("issued_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("state", String(16), nullable=False, server_default="active"),
    Column("replaced_by", String(36)),
    Column("closed_at", String(32)),
    Column("version", Integer, nullable=False, server_default="0"),
)

_role_permissions = Table(
    "role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(64)),  # NULL = global default
    Column("role", String(50), nullable=False),  # stored lowercase
    Column("permission", String(100), nullable=False),
    # Note: SQLite treats NULL tenant_id values as distinct in UNIQUE
    # constraints, so global rows are de-duplicated by set_role_permissions()
    # replacing the whole set inside one transaction.
    UniqueConstraint("tenant_id", "role", "permission", name="uq_tenant_role_permission"),
)

# Append-only change log for role_permissions. Every grant write adds a row in
# the same transaction; MAX(id) is the revision other processes compare
# against to notice that their in-memory permission table is stale.
_grant_revisions = Table(
    "permission_grant_revisions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("changed_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on the rotation writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_db(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _from_db(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _tenant_clause(tenant_id: str | None):
    if tenant_id is None:
        return _role_permissions.c.tenant_id.is_(None)
    return _role_permissions.c.tenant_id == tenant_id


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for principals, memberships, refresh tokens and permission grants.

    Usage:
        store = AuthStore()
        pid = store.create_principal(Principal(email="a@example.com", username="alice",
                                               hashed_password=hash_secret("secret")))
        store.add_membership(TenantMembership(principal_id=pid, tenant_id=company_id, role="Manager"))
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///:memory:", clock: Clock = utc_now) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        self._clock = clock
        metadata.create_all(self.engine)

    def _now_iso(self) -> str:
        return _to_db(self._clock())

    # ------------------------------------------------------------------
    # Principals
    # ------------------------------------------------------------------

    def create_principal(self, principal: Principal) -> str:
        """Insert a principal and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email or username is taken.
        Both are compared case-insensitively: "Alice" and "alice" collide.
        """
        principal_id = principal.id or str(uuid.uuid4())
        with self.engine.begin() as conn:
            conn.execute(
                _principals.insert().values(
                    id=principal_id,
                    email=principal.email.strip().lower(),
                    username=principal.username.strip(),
                    hashed_password=principal.hashed_password,
                    display_name=principal.display_name,
                    is_active=1 if principal.is_active else 0,
                    created_at=self._now_iso(),
                )
            )
        return principal_id

    def get_principal(self, principal_id: str) -> Principal | None:
        with self.engine.connect() as conn:
            row = conn.execute(_principals.select().where(_principals.c.id == principal_id)).fetchone()
        return _row_to_principal(row) if row is not None else None

    def get_principal_by_identifier(self, identifier: str) -> Principal | None:
        """Look up a principal by email or username, case-insensitively.

        Usernames are unique case-insensitively, so at most one row matches
        by username and at most one by email. An email match wins so one
        principal's username can never shadow another principal's email.
        """
        normalized = identifier.strip().lower()
        if not normalized:
            return None
        with self.engine.connect() as conn:
            rows = conn.execute(
                _principals.select().where(
                    or_(_principals.c.email == normalized, func.lower(_principals.c.username) == normalized)
                )
            ).fetchall()
        if not rows:
            return None
        rows.sort(key=lambda r: r.email != normalized)
        return _row_to_principal(rows[0])

    def update_principal(self, principal_id: str, **fields) -> bool:
        """Update mutable fields: display_name, hashed_password, is_active.

        Returns True if a row was updated, False if principal_id was not found.
        """
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        with self.engine.begin() as conn:
            result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(**fields))
        return result.rowcount > 0

    def deactivate_principal(self, principal_id: str) -> bool:
        """Soft-disable a principal and revoke its refresh tokens in one transaction.

        Principals are never hard-deleted. Live access tokens stay valid until
        their expiry; every later refresh attempt fails.
        """
        now = self._now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_principals.update().where(_principals.c.id == principal_id).values(is_active=0))
            if result.rowcount == 0:
                return False
            conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.principal_id == principal_id)
                    & (_refresh_tokens.c.state == RefreshTokenState.ACTIVE.value)
                )
                .values(
                    state=RefreshTokenState.REVOKED.value,
                    closed_at=now,
                    version=_refresh_tokens.c.version + 1,
                )
            )
        return True

    def touch_last_login(self, principal_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _principals.update().where(_principals.c.id == principal_id).values(last_login_at=self._now_iso())
            )

    # ------------------------------------------------------------------
    # Tenant memberships
    # ------------------------------------------------------------------

    def add_membership(self, membership: TenantMembership) -> int:
        """Insert a membership and return its id.

        Keeps the one-default-per-principal invariant: the membership becomes
        the default when asked to, or when the principal has no active default
        yet. Any previous default is cleared in the same transaction.

        Raises sqlalchemy.exc.IntegrityError if (principal, tenant) already exists.
        """
        with self.engine.begin() as conn:
            has_default = (
                conn.execute(
                    select(func.count())
                    .select_from(_memberships)
                    .where(
                        (_memberships.c.principal_id == membership.principal_id)
                        & (_memberships.c.is_default == 1)
                        & (_memberships.c.is_active == 1)
                    )
                ).scalar()
                or 0
            ) > 0
            make_default = membership.is_active and (membership.is_default or not has_default)
            if make_default:
                conn.execute(
                    _memberships.update()
                    .where(_memberships.c.principal_id == membership.principal_id)
                    .values(is_default=0)
                )
            result = conn.execute(
                _memberships.insert().values(
                    principal_id=membership.principal_id,
                    tenant_id=membership.tenant_id,
                    role=membership.role,
                    is_active=1 if membership.is_active else 0,
                    is_default=1 if make_default else 0,
                    joined_at=self._now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_membership(self, principal_id: str, tenant_id: str) -> TenantMembership | None:
        """Return the (principal, tenant) membership, active or not."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _memberships.select().where(
                    (_memberships.c.principal_id == principal_id) & (_memberships.c.tenant_id == tenant_id)
                )
            ).fetchone()
        return _row_to_membership(row) if row is not None else None

    def list_memberships(self, principal_id: str, active_only: bool = True) -> list[TenantMembership]:
        """Return a principal's memberships, default first."""
        query = _memberships.select().where(_memberships.c.principal_id == principal_id)
        if active_only:
            query = query.where(_memberships.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_memberships.c.is_default.desc(), _memberships.c.id)).fetchall()
        return [_row_to_membership(r) for r in rows]

    def list_tenant_members(self, tenant_id: str, active_only: bool = False) -> list[TenantMembership]:
        query = _memberships.select().where(_memberships.c.tenant_id == tenant_id)
        if active_only:
            query = query.where(_memberships.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(query.order_by(_memberships.c.id)).fetchall()
        return [_row_to_membership(r) for r in rows]

    def update_membership(
        self,
        principal_id: str,
        tenant_id: str,
        role: str | None = None,
        is_active: bool | None = None,
    ) -> bool:
        """Change a membership's role and/or active flag.

        Deactivating the default membership hands the default flag to the
        principal's oldest remaining active membership. Reactivating a
        membership for a principal with no default makes it the default.

        Returns False if the membership does not exist.
        """
        where = (_memberships.c.principal_id == principal_id) & (_memberships.c.tenant_id == tenant_id)
        with self.engine.begin() as conn:
            row = conn.execute(_memberships.select().where(where)).fetchone()
            if row is None:
                return False
            values: dict = {}
            if role is not None:
                values["role"] = role
            if is_active is not None and bool(row.is_active) != is_active:
                values["is_active"] = 1 if is_active else 0
                values["left_at"] = None if is_active else self._now_iso()
                if not is_active:
                    values["is_default"] = 0
            if values:
                conn.execute(_memberships.update().where(where).values(**values))
            if is_active is False and row.is_default:
                successor = conn.execute(
                    _memberships.select()
                    .where((_memberships.c.principal_id == principal_id) & (_memberships.c.is_active == 1))
                    .order_by(_memberships.c.id)
                    .limit(1)
                ).fetchone()
                if successor is not None:
                    conn.execute(_memberships.update().where(_memberships.c.id == successor.id).values(is_default=1))
            elif is_active is True:
                has_default = conn.execute(
                    select(func.count())
                    .select_from(_memberships)
                    .where(
                        (_memberships.c.principal_id == principal_id)
                        & (_memberships.c.is_default == 1)
                        & (_memberships.c.is_active == 1)
                    )
                ).scalar()
                if not has_default:
                    conn.execute(_memberships.update().where(where).values(is_default=1))
        return True

    def set_default_membership(self, principal_id: str, tenant_id: str) -> bool:
        """Make (principal, tenant) the default. Returns False unless it exists and is active."""
        with self.engine.begin() as conn:
            row = conn.execute(
                _memberships.select().where(
                    (_memberships.c.principal_id == principal_id)
                    & (_memberships.c.tenant_id == tenant_id)
                    & (_memberships.c.is_active == 1)
                )
            ).fetchone()
            if row is None:
                return False
            conn.execute(_memberships.update().where(_memberships.c.principal_id == principal_id).values(is_default=0))
            conn.execute(_memberships.update().where(_memberships.c.id == row.id).values(is_default=1))
        return True

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> None:
        """Persist a freshly issued refresh token.

        When the record carries a device label, any other active token of the
        same principal on that device is revoked in the same transaction, so a
        re-login from a device replaces its previous session.
        """
        now = self._now_iso()
        with self.engine.begin() as conn:
            if record.device:
                conn.execute(
                    _refresh_tokens.update()
                    .where(
                        (_refresh_tokens.c.principal_id == record.principal_id)
                        & (_refresh_tokens.c.device == record.device)
                        & (_refresh_tokens.c.state == RefreshTokenState.ACTIVE.value)
                    )
                    .values(
                        state=RefreshTokenState.REVOKED.value,
                        closed_at=now,
                        version=_refresh_tokens.c.version + 1,
                    )
                )
            conn.execute(_refresh_tokens.insert().values(**_record_to_row(record)))

    def get_refresh_token_by_hash(self, token_hash: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def get_refresh_token(self, token_id: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == token_id)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def rotate_refresh_token(self, current: RefreshTokenRecord, successor: RefreshTokenRecord) -> bool:
        """Atomically consume `current` and persist `successor` [R1].

        The UPDATE only matches while the row is still ACTIVE at the version
        the caller read. Returns False when the conditional write matched
        nothing -- the token was consumed or revoked in the meantime -- and in
        that case nothing is written.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == current.id)
                    & (_refresh_tokens.c.state == RefreshTokenState.ACTIVE.value)
                    & (_refresh_tokens.c.version == current.version)
                )
                .values(
                    state=RefreshTokenState.CONSUMED.value,
                    replaced_by=successor.id,
                    closed_at=self._now_iso(),
                    version=current.version + 1,
                )
            )
            if result.rowcount != 1:
                return False
            conn.execute(_refresh_tokens.insert().values(**_record_to_row(successor)))
        return True

    def revoke_refresh_tokens(self, principal_id: str, session_id: str | None = None) -> int:
        """Revoke the principal's active refresh tokens (one session, or all).

        Returns the number of tokens revoked.
        """
        where = (_refresh_tokens.c.principal_id == principal_id) & (
            _refresh_tokens.c.state == RefreshTokenState.ACTIVE.value
        )
        if session_id is not None:
            where = where & (_refresh_tokens.c.session_id == session_id)
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(where)
                .values(
                    state=RefreshTokenState.REVOKED.value,
                    closed_at=self._now_iso(),
                    version=_refresh_tokens.c.version + 1,
                )
            )
        return result.rowcount

    def count_active_refresh_tokens(self, principal_id: str, session_id: str | None = None) -> int:
        where = (_refresh_tokens.c.principal_id == principal_id) & (
            _refresh_tokens.c.state == RefreshTokenState.ACTIVE.value
        )
        if session_id is not None:
            where = where & (_refresh_tokens.c.session_id == session_id)
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_refresh_tokens).where(where)).scalar() or 0

    def purge_refresh_tokens(self, retention: timedelta) -> int:
        """Delete expired rows, and closed rows older than the retention window.

        Housekeeping only: expired and closed tokens are already rejected on
        use. Returns the number of rows removed.
        """
        now = self._clock()
        cutoff = _to_db(now - retention)
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.expires_at <= _to_db(now))
                    | (
                        (_refresh_tokens.c.state != RefreshTokenState.ACTIVE.value)
                        & (_refresh_tokens.c.closed_at < cutoff)
                    )
                )
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Permission grants
    # ------------------------------------------------------------------

    def list_permission_grants(self) -> list[PermissionGrant]:
        """Return every (tenant, role) grant with its permission set."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _role_permissions.select().order_by(
                    _role_permissions.c.tenant_id, _role_permissions.c.role, _role_permissions.c.permission
                )
            ).fetchall()
        grouped: dict[tuple[str | None, str], set[str]] = {}
        for row in rows:
            grouped.setdefault((row.tenant_id, row.role), set()).add(row.permission)
        return [
            PermissionGrant(role=role, tenant_id=tenant_id, permissions=frozenset(perms))
            for (tenant_id, role), perms in grouped.items()
        ]

    def set_role_permissions(self, role: str, permissions: Iterable[str], tenant_id: str | None = None) -> None:
        """Replace the permission set of a role, globally or for one tenant.

        An empty set deletes the rows for that key. For a tenant that removes
        the override and the global default applies again.
        """
        role_key = role.strip().lower()
        perms = sorted({p.strip() for p in permissions if p.strip()})
        with self.engine.begin() as conn:
            conn.execute(
                _role_permissions.delete().where((_role_permissions.c.role == role_key) & _tenant_clause(tenant_id))
            )
            if perms:
                conn.execute(
                    _role_permissions.insert(),
                    [{"tenant_id": tenant_id, "role": role_key, "permission": p} for p in perms],
                )
            conn.execute(_grant_revisions.insert().values(changed_at=self._now_iso()))

    def delete_role_permissions(self, role: str, tenant_id: str | None = None) -> bool:
        """Remove a role's grant rows. For a tenant this drops the override."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _role_permissions.delete().where(
                    (_role_permissions.c.role == role.strip().lower()) & _tenant_clause(tenant_id)
                )
            )
            if result.rowcount:
                conn.execute(_grant_revisions.insert().values(changed_at=self._now_iso()))
        return result.rowcount > 0

    def permission_grants_revision(self) -> int:
        """Return the current grants revision; it increases on every grant write.

        A single indexed MAX(id), cheap enough to call before every lookup.
        """
        with self.engine.connect() as conn:
            return conn.execute(select(func.max(_grant_revisions.c.id))).scalar() or 0

    def seed_role_permissions(self, defaults: dict[str, Iterable[str]]) -> bool:
        """Insert the global defaults when no global grant exists yet.

        Idempotent -- safe to call on every startup. Returns True if it seeded.
        """
        with self.engine.connect() as conn:
            existing = (
                conn.execute(
                    select(func.count()).select_from(_role_permissions).where(_role_permissions.c.tenant_id.is_(None))
                ).scalar()
                or 0
            )
        if existing:
            return False
        for role, perms in defaults.items():
            self.set_role_permissions(role, perms)
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_principal(row) -> Principal:
    return Principal(
        id=row.id,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        display_name=row.display_name,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login_at=row.last_login_at,
    )


def _row_to_membership(row) -> TenantMembership:
    return TenantMembership(
        id=row.id,
        principal_id=row.principal_id,
        tenant_id=row.tenant_id,
        role=row.role,
        is_active=bool(row.is_active),
        is_default=bool(row.is_default),
        joined_at=row.joined_at,
        left_at=row.left_at,
    )


def _row_to_refresh(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        token_hash=row.token_hash,
        principal_id=row.principal_id,
        session_id=row.session_id,
        device=row.device,
        issued_at=_from_db(row.issued_at),
        expires_at=_from_db(row.expires_at),
        state=RefreshTokenState(row.state),
        replaced_by=row.replaced_by,
        closed_at=_from_db(row.closed_at),
        version=row.version,
    )


def _record_to_row(record: RefreshTokenRecord) -> dict:
    return {
        "id": record.id,
        "token_hash": record.token_hash,
        "principal_id": record.principal_id,
        "session_id": record.session_id,
        "device": record.device,
        "issued_at": _to_db(record.issued_at),
        "expires_at": _to_db(record.expires_at),
        "state": record.state.value,
        "replaced_by": record.replaced_by,
        "closed_at": _to_db(record.closed_at) if record.closed_at else None,
        "version": record.version,
    }
