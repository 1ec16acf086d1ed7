"""Postgres stores against a scripted pool: statements, parameters and error mapping."""

import uuid
from datetime import timedelta

import pytest
from psycopg import errors
from pydantic import SecretStr

from credstore.service.errors import (
    AppAuthNotFound,
    PasswordResetNotFound,
    SessionNotFound,
    UserNotFound,
)
from credstore.storage.errors import ConstraintViolation, SchemaMissing
from credstore.storage.models import AppAuthId, NewAppAuth, PasswordResetId, SessionId, UserId
from credstore.storage.postgres import (
    PostgresAppAuthStore,
    PostgresSessionBackend,
    PostgresUserStore,
    verify_schema,
)
from credstore.usernames import AsciiUsername
from fakes import FakeCursor, FakePool, NamedUniqueViolation


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def backend(pool, clock):
    return PostgresSessionBackend(
        pool, sessions_table="auth_sessions", password_resets_table="auth_resets", clock=clock
    )


class TestPostgresSessions:
    async def test_new_session_inserts_row(self, backend, pool, clock):
        user_id = UserId.new()
        expires_at = clock() + timedelta(hours=1)
        created = await backend.new_session(user_id, expires_at, {"ip": "10.0.0.1"})

        query, params = pool.executed[-1]
        assert "Identifier('auth_sessions')" in repr(query)
        assert params[0] == created.id.value
        assert params[1] == user_id.value
        assert params[2].obj == {"ip": "10.0.0.1"}
        assert params[3] == expires_at

    async def test_missing_user_maps_to_constraint_violation(self, backend, pool, clock):
        pool.respond(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            await backend.new_session(UserId.new(), clock() + timedelta(hours=1))

    async def test_lookup_filters_on_expiry(self, backend, pool, clock):
        session_id, user_id = uuid.uuid4(), uuid.uuid4()
        expires_at = clock() + timedelta(minutes=5)
        pool.respond(FakeCursor([{"id": session_id, "user_id": user_id, "data": {"k": "v"}, "expires_at": expires_at}]))

        found = await backend.session(SessionId(session_id))

        query, params = pool.executed[-1]
        assert "SELECT" in repr(query)
        assert params == (session_id, clock())
        assert found.user_id == UserId(user_id)
        assert found.data == {"k": "v"}

    async def test_extend_is_single_update_returning(self, backend, pool, clock):
        session_id = uuid.uuid4()
        later = clock() + timedelta(hours=1)
        pool.respond(FakeCursor([{"id": session_id, "user_id": uuid.uuid4(), "data": {}, "expires_at": later}]))

        found = await backend.session(SessionId(session_id), extend_expiry=later)

        assert len(pool.executed) == 1
        query, params = pool.executed[0]
        assert "UPDATE" in repr(query) and "RETURNING" in repr(query)
        assert params == (later, session_id, clock())
        assert found.expires_at == later

    async def test_absent_or_expired_row(self, backend, pool):
        pool.respond(FakeCursor([]))
        with pytest.raises(SessionNotFound):
            await backend.session(SessionId.new())

    async def test_clear_stale_counts_both_tables(self, backend, pool):
        pool.respond(FakeCursor(rowcount=3), FakeCursor(rowcount=1))
        assert await backend.clear_stale_sessions() == 4
        assert pool.conn.transactions == 1
        assert "Identifier('auth_resets')" in repr(pool.executed[1][0])

    async def test_consume_deletes_returning(self, backend, pool, clock):
        user_id = uuid.uuid4()
        pool.respond(FakeCursor([{"user_id": user_id, "expires_at": clock() + timedelta(minutes=5)}]))
        reset_id = PasswordResetId.new()
        assert await backend.consume_password_reset(reset_id) == UserId(user_id)
        query, params = pool.executed[-1]
        assert "DELETE" in repr(query)
        assert params == (reset_id.value,)

    async def test_consume_expired_reset(self, backend, pool, clock):
        pool.respond(FakeCursor([{"user_id": uuid.uuid4(), "expires_at": clock() - timedelta(seconds=1)}]))
        with pytest.raises(PasswordResetNotFound):
            await backend.consume_password_reset(PasswordResetId.new())

    async def test_consume_unknown_reset(self, backend, pool):
        with pytest.raises(PasswordResetNotFound):
            await backend.consume_password_reset(PasswordResetId.new())


class TestPostgresUsers:
    async def test_insert_and_read_back_in_one_transaction(self, pool):
        store = PostgresUserStore(pool, username_type=AsciiUsername)
        user_id = uuid.uuid4()
        pool.respond(
            FakeCursor([{"id": user_id}]),
            FakeCursor([{"id": user_id, "username": "Alice", "password_hash": "$argon2id$x", "meta": {}}]),
        )
        user = await store.insert_user(AsciiUsername("Alice"), SecretStr("$argon2id$x"), {})
        assert pool.conn.transactions == 1
        assert user.id == UserId(user_id)
        assert user.username == AsciiUsername("alice")
        assert pool.executed[0][1][:2] == ("Alice", "$argon2id$x")

    async def test_duplicate_username(self, pool):
        store = PostgresUserStore(pool)
        pool.respond(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as excinfo:
            await store.insert_user(AsciiUsername("alice"), SecretStr("h"), {})
        assert excinfo.value.field == "username"

    async def test_duplicate_id_reported_as_id(self, pool):
        store = PostgresUserStore(pool)
        pool.respond(NamedUniqueViolation("users_pkey"))
        with pytest.raises(ConstraintViolation) as excinfo:
            await store.insert_user(AsciiUsername("alice"), SecretStr("h"), {}, user_id=UserId.new())
        assert excinfo.value.field == "id"
        assert excinfo.value.message == "user id already exists"
        assert isinstance(excinfo.value.__cause__, errors.UniqueViolation)

    async def test_named_username_constraint(self, pool):
        pool.respond(NamedUniqueViolation("users_username_key"))
        with pytest.raises(ConstraintViolation) as excinfo:
            await PostgresUserStore(pool).insert_user(AsciiUsername("alice"), SecretStr("h"), {})
        assert excinfo.value.field == "username"

    async def test_lookup_by_username_casts_to_citext(self, pool):
        store = PostgresUserStore(pool)
        with pytest.raises(UserNotFound):
            await store.find_user_by_username(AsciiUsername("Alice"))
        query, params = pool.executed[-1]
        assert "citext" in repr(query)
        assert params == ("Alice",)

    async def test_update_unknown_user(self, pool):
        with pytest.raises(UserNotFound):
            await PostgresUserStore(pool).update_password_hash(UserId.new(), SecretStr("h"))


class TestPostgresAppAuth:
    async def test_insert_returns_id(self, pool):
        appauth_id = uuid.uuid4()
        pool.respond(FakeCursor([{"id": appauth_id}]))
        store = PostgresAppAuthStore(pool)
        assert await store.insert_appauth(NewAppAuth(name="ci", token="T1")) == AppAuthId(appauth_id)
        assert pool.executed[-1][1][2] == "T1"

    async def test_insert_with_chosen_id(self, pool):
        appauth_id = AppAuthId.new()
        pool.respond(FakeCursor([{"id": appauth_id.value}]))
        store = PostgresAppAuthStore(pool)
        assert await store.insert_appauth(NewAppAuth(name="ci", token="T1"), appauth_id=appauth_id) == appauth_id
        query, params = pool.executed[-1]
        assert "(id, name" in repr(query)
        assert params[0] == appauth_id.value
        assert params[3] == "T1"

    @pytest.mark.parametrize(
        "constraint, field",
        [("appauth_pkey", "id"), ("appauth_name_key", "name"), ("appauth_token_key", "token")],
    )
    async def test_duplicate_maps_to_column(self, pool, constraint, field):
        pool.respond(NamedUniqueViolation(constraint))
        with pytest.raises(ConstraintViolation) as excinfo:
            await PostgresAppAuthStore(pool).insert_appauth(NewAppAuth(name="ci", token="T1"))
        assert excinfo.value.field == field
        assert excinfo.value.__cause__ is not None

    async def test_find_maps_row(self, pool, clock):
        appauth_id = uuid.uuid4()
        pool.respond(
            FakeCursor(
                [
                    {
                        "id": appauth_id,
                        "name": "ci",
                        "description": None,
                        "token": "T1",
                        "meta": {"scope": "read"},
                        "expires_at": None,
                    }
                ]
            )
        )
        record = await PostgresAppAuthStore(pool).find_appauth_by_id(AppAuthId(appauth_id))
        assert record.token.get_secret_value() == "T1"
        assert record.expires_at is None
        assert record.meta == {"scope": "read"}

    async def test_find_unknown(self, pool):
        with pytest.raises(AppAuthNotFound):
            await PostgresAppAuthStore(pool).find_appauth_by_id(AppAuthId.new())


async def test_verify_schema_reports_missing_tables(pool):
    pool.respond(FakeCursor([{"oid": "users"}]), FakeCursor([{"oid": None}]))
    with pytest.raises(SchemaMissing) as excinfo:
        await verify_schema(pool, ["users", "sessions"])
    assert excinfo.value.tables == ["sessions"]
