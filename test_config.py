import pytest

from config import DEFAULT_DATABASE_URL, Settings, normalize_database_url

ENV_VARS = (
    "DATABASE_URL", "PORT", "INTERNAL_API_KEY", "IDENTITY_URL", "IDENTITY_TIMEOUT_SECONDS",
    "RIDE_LOCK_STRATEGY", "CORS_ORIGINS", "FLEET_METRICS_REFRESH_SECONDS", "LOG_LEVEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.mark.parametrize("url, expected", [
    ("postgres://u:p@db:5432/rides", "postgresql://u:p@db:5432/rides"),
    ("postgresql://u:p@db:5432/rides", "postgresql://u:p@db:5432/rides"),
    ("sqlite:///rides.db", "sqlite:///rides.db"),
])
def test_normalize_database_url(url, expected):
    assert normalize_database_url(url) == expected


def test_unknown_lock_strategy_is_rejected():
    with pytest.raises(ValueError, match="RIDE_LOCK_STRATEGY"):
        Settings(lock_strategy="optimistic")


def test_defaults(clean_env):
    settings = Settings.from_env()

    assert settings.database_url == DEFAULT_DATABASE_URL
    assert settings.port == 3000
    assert settings.internal_api_key == ""
    assert settings.lock_strategy == "conditional_update"
    assert settings.cors_origins == ["http://localhost:3006", "http://localhost:5173"]
    assert settings.log_level == "INFO"


def test_from_env(clean_env):
    clean_env.setenv("DATABASE_URL", "postgres://app:app@db/rides")
    clean_env.setenv("PORT", "8080")
    clean_env.setenv("INTERNAL_API_KEY", "  secret ")
    clean_env.setenv("RIDE_LOCK_STRATEGY", " ROW_LOCK ")
    clean_env.setenv("CORS_ORIGINS", "https://a.example, ,https://b.example")
    clean_env.setenv("IDENTITY_TIMEOUT_SECONDS", "0.5")
    clean_env.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.database_url == "postgresql://app:app@db/rides"
    assert settings.port == 8080
    assert settings.internal_api_key == "secret"
    assert settings.lock_strategy == "row_lock"
    assert settings.cors_origins == ["https://a.example", "https://b.example"]
    assert settings.identity_timeout_seconds == 0.5
    assert settings.log_level == "DEBUG"
