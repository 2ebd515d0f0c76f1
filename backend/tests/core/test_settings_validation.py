import pytest

from clinic_booking.core.settings import Settings, validate_settings

STRONG_SECRET = "x" * 48


def test_development_defaults_only_warn(caplog):
    config = Settings(app_env="development", secret_key=None, ledger_base_url="")
    validate_settings(config)
    assert config.secret_key == "change-me"
    assert "LEDGER_BASE_URL is not set" in caplog.text


def test_production_rejects_weak_configuration():
    config = Settings(app_env="production", secret_key="change-me", ledger_base_url="")
    with pytest.raises(RuntimeError) as excinfo:
        validate_settings(config)
    message = str(excinfo.value)
    assert "SECRET_KEY" in message
    assert "LEDGER_BASE_URL" in message


def test_lease_must_outlive_ledger_retries():
    config = Settings(
        secret_key=STRONG_SECRET,
        ledger_base_url="https://ledger.example",
        ledger_timeout_seconds=30,
        ledger_max_attempts=5,
        reconcile_lease_seconds=120,
    )
    with pytest.raises(RuntimeError, match="RECONCILE_LEASE_SECONDS"):
        validate_settings(config)


def test_placeholder_rules_parse_from_csv():
    config = Settings(placeholder_patient_prefixes="LINE_, TEST_ ,", placeholder_patient_ids="10001, 99999")
    assert config.placeholder_prefixes == ("LINE_", "TEST_")
    assert config.placeholder_ids == frozenset({"10001", "99999"})


def test_blank_integers_fall_back_to_defaults():
    config = Settings(booking_max_attempts="", reconcile_lease_seconds="")
    assert config.booking_max_attempts == 3
    assert config.reconcile_lease_seconds == 600
