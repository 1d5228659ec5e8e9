import pytest
from pydantic import ValidationError

from gamcauth.config import Settings, get_settings, reset_settings_cache

LONG_A = "a" * 40
LONG_B = "b" * 40


def make(**overrides):
    values = {"jwt_secret": LONG_A, "jwt_refresh_secret": LONG_B}
    values.update(overrides)
    return Settings(**values)


def test_defaults():
    settings = make()
    assert settings.access_token_ttl_minutes == 15
    assert settings.reset_token_ttl_minutes == 30
    assert settings.reset_cooldown_seconds == 300
    assert settings.max_security_question_attempts == 3
    assert settings.reset_allowed_domain == "gamc.gov.bo"
    assert settings.is_production is False


@pytest.mark.parametrize("minutes", [4, 121])
def test_reset_ttl_bounds(minutes):
    with pytest.raises(ValidationError):
        make(reset_token_ttl_minutes=minutes)


@pytest.mark.parametrize("minutes", [5, 120])
def test_reset_ttl_bounds_inclusive(minutes):
    assert make(reset_token_ttl_minutes=minutes).reset_token_ttl_minutes == minutes


def test_identical_secrets_rejected():
    with pytest.raises(ValidationError):
        make(jwt_refresh_secret=LONG_A)


def test_short_secret_rejected_outside_test_mode():
    with pytest.raises(ValidationError):
        make(jwt_secret="short")
    assert make(jwt_secret="short", test_mode=True).jwt_secret == "short"


@pytest.mark.parametrize(
    "field", ["access_token_ttl_minutes", "reset_cooldown_seconds", "login_rate_limit_per_window"]
)
def test_positive_integers_required(field):
    with pytest.raises(ValidationError):
        make(**{field: 0})


def test_leeway_is_capped():
    with pytest.raises(ValidationError):
        make(jwt_leeway_seconds=600)


def test_domain_is_normalized():
    assert make(reset_allowed_domain=" @GAMC.gov.bo ").reset_allowed_domain == "gamc.gov.bo"


def test_cors_origins_are_split():
    settings = make(cors_allow_origins="https://a.bo, ,https://b.bo")
    assert settings.cors_origins == ["https://a.bo", "https://b.bo"]


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(test_mode=True)
    second = Settings(test_mode=True)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret != first.jwt_refresh_secret
    assert second.jwt_secret == first.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("RESET_TOKEN_TTL_MINUTES", "45")
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("JWT_SECRET", LONG_A)
    monkeypatch.setenv("JWT_REFRESH_SECRET", LONG_B)
    reset_settings_cache()
    try:
        settings = get_settings()
        assert settings.reset_token_ttl_minutes == 45
        assert settings.is_production is True
        assert get_settings() is settings
    finally:
        reset_settings_cache()


def test_from_env_rejects_out_of_range_ttl(monkeypatch):
    monkeypatch.setenv("RESET_TOKEN_TTL_MINUTES", "500")
    with pytest.raises(ValidationError):
        Settings.from_env()
