"""SessionManager lifetime policy, exercised over the memory and Redis backends."""

from datetime import timedelta

import pytest

from credstore.config import Settings
from credstore.service.errors import PasswordResetNotFound, SessionNotFound
from credstore.service.sessions import SessionManager
from credstore.storage.memory import MemorySessionBackend
from credstore.storage.models import UserId
from credstore.storage.redis_cache import RedisSessionBackend
from fakes import FakeRedis


@pytest.fixture(params=["memory", "redis"])
def backend(request, clock):
    if request.param == "memory":
        return MemorySessionBackend(clock=clock)
    return RedisSessionBackend(FakeRedis(clock), clock=clock)


def make_manager(backend, clock, *, seconds=3600, auto_refresh=True):
    return SessionManager(
        backend, alive_duration=timedelta(seconds=seconds), auto_refresh=auto_refresh, clock=clock
    )


class TestSessionLifetime:
    async def test_new_session_then_lookup(self, backend, clock):
        manager = make_manager(backend, clock)
        user_id = UserId.new()
        created = await manager.new_session(user_id, {"agent": "cli"})
        found = await manager.session(created.id)
        assert found.id == created.id
        assert found.user_id == user_id
        assert found.data == {"agent": "cli"}

    async def test_new_session_expiry_is_now_plus_alive_duration(self, backend, clock):
        manager = make_manager(backend, clock, seconds=120)
        created = await manager.new_session(UserId.new())
        assert created.expires_at == clock() + timedelta(seconds=120)

    async def test_negative_alive_duration_is_immediately_absent(self, backend, clock):
        manager = make_manager(backend, clock, seconds=-1)
        created = await manager.new_session(UserId.new())
        with pytest.raises(SessionNotFound):
            await manager.session(created.id)

    async def test_session_absent_after_alive_duration(self, backend, clock):
        manager = make_manager(backend, clock, seconds=60, auto_refresh=False)
        created = await manager.new_session(UserId.new())
        clock.advance(seconds=61)
        with pytest.raises(SessionNotFound):
            await manager.session(created.id)

    async def test_auto_refresh_expiry_never_decreases(self, backend, clock):
        manager = make_manager(backend, clock, seconds=60)
        created = await manager.new_session(UserId.new())
        previous = created.expires_at
        for _ in range(5):
            clock.advance(seconds=30)
            found = await manager.session(created.id)
            assert found.expires_at >= previous
            previous = found.expires_at
        # kept alive well past the initial 60 seconds
        assert clock() - created.expires_at > timedelta(seconds=60)

    async def test_without_auto_refresh_reads_do_not_extend(self, backend, clock):
        manager = make_manager(backend, clock, seconds=60, auto_refresh=False)
        created = await manager.new_session(UserId.new())
        clock.advance(seconds=30)
        await manager.session(created.id)
        clock.advance(seconds=31)
        with pytest.raises(SessionNotFound):
            await manager.session(created.id)

    async def test_extend_expiry_date(self, backend, clock):
        manager = make_manager(backend, clock, seconds=60, auto_refresh=False)
        created = await manager.new_session(UserId.new())
        clock.advance(seconds=45)
        extended = await manager.extend_expiry_date(created)
        assert extended.expires_at == clock() + timedelta(seconds=60)
        clock.advance(seconds=45)
        assert (await manager.session(created.id)).id == created.id

    async def test_expire_then_lookup_fails(self, backend, clock):
        manager = make_manager(backend, clock)
        created = await manager.new_session(UserId.new())
        await manager.expire(created)
        with pytest.raises(SessionNotFound):
            await manager.session(created.id)


class TestPasswordResetIds:
    async def test_reset_id_single_use(self, backend, clock):
        manager = make_manager(backend, clock)
        user_id = UserId.new()
        reset_id = await manager.generate_password_reset_id(user_id, clock() + timedelta(minutes=15))
        assert await manager.consume_password_reset_id(reset_id) == user_id
        with pytest.raises(PasswordResetNotFound):
            await manager.consume_password_reset_id(reset_id)

    async def test_expired_reset_id_rejected(self, backend, clock):
        manager = make_manager(backend, clock)
        reset_id = await manager.generate_password_reset_id(UserId.new(), clock() + timedelta(minutes=15))
        clock.advance(minutes=16)
        with pytest.raises(PasswordResetNotFound):
            await manager.consume_password_reset_id(reset_id)


async def test_clear_stale_sessions_passes_through(clock):
    manager = make_manager(MemorySessionBackend(clock=clock), clock, seconds=10)
    await manager.new_session(UserId.new())
    clock.advance(seconds=11)
    assert await manager.clear_stale_sessions() == 1


def test_from_settings():
    settings = Settings(password_pepper="pepper-for-tests", session_alive_seconds=300, session_auto_refresh=False)
    manager = SessionManager.from_settings(MemorySessionBackend(), settings)
    assert manager.alive_duration == timedelta(seconds=300)
    assert manager.auto_refresh is False
