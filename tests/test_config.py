import pytest
from pydantic import ValidationError

from credstore.config import SessionBackendKind, Settings, get_settings


def test_defaults():
    settings = Settings(password_pepper="pepper-for-tests")
    assert settings.session_alive_seconds == 86400
    assert settings.session_auto_refresh is True
    assert settings.password_reset_ttl_minutes == 15
    assert settings.argon2_memory_mib == 19
    assert settings.argon2_iterations == 2
    assert settings.argon2_parallelism == 1
    assert settings.users_table == "users"
    assert settings.session_backend is SessionBackendKind.REDIS


def test_pepper_required():
    with pytest.raises(ValidationError):
        Settings()


def test_pepper_hidden_from_repr():
    settings = Settings(password_pepper="pepper-for-tests")
    assert "pepper-for-tests" not in repr(settings)


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("PASSWORD_PEPPER", "env-pepper-value")
    monkeypatch.setenv("SESSION_BACKEND", "Postgres")
    monkeypatch.setenv("SESSION_ALIVE_SECONDS", "600")
    monkeypatch.setenv("SESSION_AUTO_REFRESH", "false")
    monkeypatch.setenv("DB_POOL_MAX_SIZE", "4")
    monkeypatch.setenv("SESSIONS_TABLE", "auth.sessions")

    settings = Settings.from_env()

    assert settings.password_pepper.get_secret_value() == "env-pepper-value"
    assert settings.session_backend is SessionBackendKind.POSTGRES
    assert settings.session_alive_seconds == 600
    assert settings.session_auto_refresh is False
    assert settings.pool_max_size == 4
    assert settings.sessions_table == "auth.sessions"


@pytest.mark.parametrize("table", ["users; DROP TABLE users", "1users", "a.b.c", ""])
def test_table_names_must_be_identifiers(table):
    with pytest.raises(ValidationError):
        Settings(password_pepper="pepper-for-tests", users_table=table)


def test_unknown_username_policy():
    with pytest.raises(ValidationError):
        Settings(password_pepper="pepper-for-tests", username_policy="unicode")


def test_unknown_session_backend():
    with pytest.raises(ValidationError):
        Settings(password_pepper="pepper-for-tests", session_backend="memcached")


def test_pool_bounds():
    with pytest.raises(ValidationError):
        Settings(password_pepper="pepper-for-tests", pool_min_size=5, pool_max_size=2)


def test_get_settings_is_cached(monkeypatch):
    first = get_settings()
    monkeypatch.setenv("SESSION_ALIVE_SECONDS", "5")
    assert get_settings() is first
