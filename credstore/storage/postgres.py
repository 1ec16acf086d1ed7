from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Type

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool
from pydantic import SecretStr

from credstore.logging import get_logger
from credstore.service.errors import (
    AppAuthNotFound,
    PasswordResetNotFound,
    SessionNotFound,
    UserNotFound,
)
from credstore.storage.errors import ConstraintViolation, SchemaMissing
from credstore.storage.models import (
    AppAuth,
    AppAuthId,
    NewAppAuth,
    OpaqueId,
    PasswordReset,
    PasswordResetId,
    Session,
    SessionId,
    User,
    UserId,
    ensure_utc,
    utcnow,
)
from credstore.usernames import AsciiUsername, Username

logger = get_logger(__name__)


def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> AsyncConnectionPool:
    """Build an unopened async pool; call ``await pool.open()`` before use."""
    return AsyncConnectionPool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        kwargs={"row_factory": dict_row, "autocommit": False},
        open=False,
    )


async def verify_schema(pool: AsyncConnectionPool, tables: Iterable[str]) -> None:
    """Ensure the tables the stores rely on exist before serving requests."""
    missing = []
    async with pool.connection() as conn:
        for table in tables:
            cur = await conn.execute("SELECT to_regclass(%s) AS oid", (table,))
            row = await cur.fetchone()
            if not row or not row.get("oid"):
                missing.append(table)
    if missing:
        raise SchemaMissing(missing)


def _db_id(value: Any) -> Any:
    return value.value if isinstance(value, OpaqueId) else value


def _identifier(table: str) -> sql.Identifier:
    return sql.Identifier(*table.split("."))


def _violated_field(exc: errors.UniqueViolation, columns: Iterable[str], default: str) -> str:
    """Name the column behind a unique violation from Postgres' default constraint names.

    Defaults are ``<table>_pkey`` and ``<table>_<column>_key``; anything else
    falls back to ``default``.
    """
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    if constraint.endswith("_pkey"):
        return "id"
    for column in columns:
        if constraint.endswith(f"_{column}_key"):
            return column
    return default


class _PostgresTable:
    """Pool plumbing shared by the Postgres stores."""

    def __init__(self, pool: AsyncConnectionPool) -> None:
        self.pool = pool

    def _connect(self):
        return self.pool.connection()

    async def _fetchone(self, query: sql.Composable, params: tuple) -> Optional[Dict[str, Any]]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return await cur.fetchone()


class PostgresSessionBackend(_PostgresTable):
    """Sessions and reset ids as rows; every operation is one transaction."""

    _SESSION_COLUMNS = sql.SQL("id, user_id, data, expires_at")

    def __init__(
        self,
        pool: AsyncConnectionPool,
        *,
        sessions_table: str = "sessions",
        password_resets_table: str = "password_resets",
        owner_type: Any = UserId,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(pool)
        self.sessions_table = _identifier(sessions_table)
        self.password_resets_table = _identifier(password_resets_table)
        self.owner_type = owner_type
        self._clock = clock

    def _row_to_session(self, row: Dict[str, Any]) -> Session:
        return Session(
            id=SessionId.parse(row["id"]),
            user_id=self.owner_type.parse(row["user_id"]),
            expires_at=ensure_utc(row["expires_at"]),
            data=row.get("data") or {},
        )

    async def new_session(
        self, user_id: Any, expires_at: datetime, data: Optional[Dict[str, Any]] = None
    ) -> Session:
        sess = Session(
            id=SessionId.new(),
            user_id=user_id,
            expires_at=ensure_utc(expires_at),
            data=dict(data or {}),
        )
        query = sql.SQL(
            "INSERT INTO {} (id, user_id, data, expires_at) VALUES (%s, %s, %s, %s)"
        ).format(self.sessions_table)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    query,
                    (sess.id.value, _db_id(user_id), Jsonb(sess.data), sess.expires_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": str(user_id)}) from exc
        return sess

    async def session(
        self, session_id: SessionId, extend_expiry: Optional[datetime] = None
    ) -> Session:
        now = self._clock()
        if extend_expiry is not None:
            # Single UPDATE ... RETURNING: the read and the refresh cannot interleave
            query = sql.SQL(
                "UPDATE {} SET expires_at = %s WHERE id = %s AND expires_at > %s RETURNING {}"
            ).format(self.sessions_table, self._SESSION_COLUMNS)
            params: tuple = (ensure_utc(extend_expiry), session_id.value, now)
        else:
            query = sql.SQL("SELECT {} FROM {} WHERE id = %s AND expires_at > %s").format(
                self._SESSION_COLUMNS, self.sessions_table
            )
            params = (session_id.value, now)
        row = await self._fetchone(query, params)
        if not row:
            raise SessionNotFound(session_id)
        return self._row_to_session(row)

    async def clear_stale_sessions(self) -> int:
        now = self._clock()
        async with self._connect() as conn:
            async with conn.transaction():
                sessions = await conn.execute(
                    sql.SQL("DELETE FROM {} WHERE expires_at <= %s").format(self.sessions_table),
                    (now,),
                )
                resets = await conn.execute(
                    sql.SQL("DELETE FROM {} WHERE expires_at <= %s").format(
                        self.password_resets_table
                    ),
                    (now,),
                )
        removed = max(sessions.rowcount, 0) + max(resets.rowcount, 0)
        logger.debug("postgres_stale_sessions_cleared", removed=removed)
        return removed

    async def expire(self, session: Session) -> None:
        async with self._connect() as conn:
            await conn.execute(
                sql.SQL("DELETE FROM {} WHERE id = %s").format(self.sessions_table),
                (session.id.value,),
            )

    async def extend_expiry_date(self, session: Session, expires_at: datetime) -> Session:
        return await self.session(session.id, extend_expiry=expires_at)

    async def new_password_reset(self, user_id: Any, expires_at: datetime) -> PasswordReset:
        reset = PasswordReset(
            id=PasswordResetId.new(), user_id=user_id, expires_at=ensure_utc(expires_at)
        )
        query = sql.SQL(
            "INSERT INTO {} (id, user_id, expires_at) VALUES (%s, %s, %s)"
        ).format(self.password_resets_table)
        try:
            async with self._connect() as conn:
                await conn.execute(query, (reset.id.value, _db_id(user_id), reset.expires_at))
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("password reset user missing", {"user_id": str(user_id)}) from exc
        return reset

    async def consume_password_reset(self, reset_id: PasswordResetId) -> Any:
        # DELETE ... RETURNING is the atomic check-and-invalidate; expired rows go too
        query = sql.SQL(
            "DELETE FROM {} WHERE id = %s RETURNING user_id, expires_at"
        ).format(self.password_resets_table)
        row = await self._fetchone(query, (reset_id.value,))
        if not row or ensure_utc(row["expires_at"]) <= self._clock():
            raise PasswordResetNotFound(reset_id)
        return self.owner_type.parse(row["user_id"])


class PostgresUserStore(_PostgresTable):
    _COLUMNS = sql.SQL("id, username::TEXT AS username, password_hash, meta")

    def __init__(
        self,
        pool: AsyncConnectionPool,
        *,
        table: str = "users",
        username_type: Type[Username] = AsciiUsername,
    ) -> None:
        super().__init__(pool)
        self.table = _identifier(table)
        self.username_type = username_type

    def _row_to_user(self, row: Dict[str, Any]) -> User:
        return User(
            id=UserId.parse(row["id"]),
            username=self.username_type.parse(row["username"]),
            password_hash=SecretStr(row["password_hash"]),
            meta=row.get("meta") or {},
        )

    async def insert_user(
        self,
        username: Username,
        password_hash: SecretStr,
        meta: Dict[str, Any],
        *,
        user_id: Optional[UserId] = None,
    ) -> User:
        if user_id is not None:
            insert = sql.SQL(
                "INSERT INTO {} (id, username, password_hash, meta) VALUES (%s, %s, %s, %s) RETURNING id"
            ).format(self.table)
            params: tuple = (user_id.value, str(username), password_hash.get_secret_value(), Jsonb(meta))
        else:
            insert = sql.SQL(
                "INSERT INTO {} (username, password_hash, meta) VALUES (%s, %s, %s) RETURNING id"
            ).format(self.table)
            params = (str(username), password_hash.get_secret_value(), Jsonb(meta))
        select = sql.SQL("SELECT {} FROM {} WHERE id = %s LIMIT 1").format(self._COLUMNS, self.table)
        try:
            async with self._connect() as conn:
                # insert + read-back commit together or not at all
                async with conn.transaction():
                    cur = await conn.execute(insert, params)
                    inserted = await cur.fetchone()
                    cur = await conn.execute(select, (inserted["id"],))
                    row = await cur.fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc, ("username",), "username")
            message = "user id already exists" if field == "id" else "username already exists"
            raise ConstraintViolation(message, {"field": field}) from exc
        return self._row_to_user(row)

    async def find_user_by_id(self, user_id: UserId) -> User:
        row = await self._fetchone(
            sql.SQL("SELECT {} FROM {} WHERE id = %s LIMIT 1").format(self._COLUMNS, self.table),
            (user_id.value,),
        )
        if not row:
            raise UserNotFound(user_id)
        return self._row_to_user(row)

    async def find_user_by_username(self, username: Username) -> User:
        # citext column: equality is case-insensitive in the database too
        row = await self._fetchone(
            sql.SQL("SELECT {} FROM {} WHERE username = %s::citext LIMIT 1").format(
                self._COLUMNS, self.table
            ),
            (str(username),),
        )
        if not row:
            raise UserNotFound(username)
        return self._row_to_user(row)

    async def update_password_hash(self, user_id: UserId, password_hash: SecretStr) -> User:
        row = await self._fetchone(
            sql.SQL("UPDATE {} SET password_hash = %s WHERE id = %s RETURNING {}").format(
                self.table, self._COLUMNS
            ),
            (password_hash.get_secret_value(), user_id.value),
        )
        if not row:
            raise UserNotFound(user_id)
        return self._row_to_user(row)


class PostgresAppAuthStore(_PostgresTable):
    """System of record for AppAuth credentials."""

    _COLUMNS = sql.SQL("id, name, description, token, meta, expires_at")

    def __init__(self, pool: AsyncConnectionPool, *, table: str = "appauth") -> None:
        super().__init__(pool)
        self.table = _identifier(table)

    @staticmethod
    def _row_to_appauth(row: Dict[str, Any]) -> AppAuth:
        expires_at = row.get("expires_at")
        return AppAuth(
            id=AppAuthId.parse(row["id"]),
            name=row["name"],
            description=row.get("description"),
            token=SecretStr(row["token"]),
            meta=row.get("meta") or {},
            expires_at=ensure_utc(expires_at) if expires_at else None,
        )

    async def insert_appauth(
        self, appauth: NewAppAuth, *, appauth_id: Optional[AppAuthId] = None
    ) -> AppAuthId:
        params: tuple = (
            appauth.name,
            appauth.description,
            appauth.token.get_secret_value(),
            Jsonb(appauth.meta),
            ensure_utc(appauth.expires_at) if appauth.expires_at else None,
        )
        if appauth_id is not None:
            query = sql.SQL(
                "INSERT INTO {} (id, name, description, token, meta, expires_at)"
                " VALUES (%s, %s, %s, %s, %s, %s) RETURNING id"
            ).format(self.table)
            params = (appauth_id.value,) + params
        else:
            query = sql.SQL(
                "INSERT INTO {} (name, description, token, meta, expires_at) VALUES (%s, %s, %s, %s, %s) RETURNING id"
            ).format(self.table)
        try:
            row = await self._fetchone(query, params)
        except errors.UniqueViolation as exc:
            field = _violated_field(exc, ("name", "token"), "name")
            raise ConstraintViolation(f"appauth {field} already exists", {"field": field}) from exc
        return AppAuthId.parse(row["id"])

    async def find_appauth_by_id(self, appauth_id: AppAuthId) -> AppAuth:
        row = await self._fetchone(
            sql.SQL("SELECT {} FROM {} WHERE id = %s").format(self._COLUMNS, self.table),
            (appauth_id.value,),
        )
        if not row:
            raise AppAuthNotFound(appauth_id)
        return self._row_to_appauth(row)

    async def update_token(self, appauth_id: AppAuthId, token: SecretStr) -> AppAuth:
        try:
            row = await self._fetchone(
                sql.SQL("UPDATE {} SET token = %s WHERE id = %s RETURNING {}").format(
                    self.table, self._COLUMNS
                ),
                (token.get_secret_value(), appauth_id.value),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("appauth token already exists", {"field": "token"}) from exc
        if not row:
            raise AppAuthNotFound(appauth_id)
        return self._row_to_appauth(row)


__all__ = [
    "PostgresSessionBackend",
    "PostgresUserStore",
    "PostgresAppAuthStore",
    "create_pool",
    "verify_schema",
]
