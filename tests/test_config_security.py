import pytest

from study_planner.config import PAYPAL_API_BASES, load_config, safe_int_env


def test_load_config_requires_secret_key_in_non_dev(monkeypatch):
    monkeypatch.setenv("RENDER", "true")
    monkeypatch.delenv("FLASK_ENV", raising=False)
    monkeypatch.delenv("SENTRY_ENVIRONMENT", raising=False)
    monkeypatch.delenv("ENV", raising=False)
    monkeypatch.delenv("FLASK_SECRET_KEY", raising=False)

    with pytest.raises(RuntimeError):
        load_config()


def test_load_config_allows_missing_secret_in_dev(monkeypatch):
    monkeypatch.delenv("RENDER", raising=False)
    monkeypatch.delenv("SENTRY_ENVIRONMENT", raising=False)
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.delenv("FLASK_SECRET_KEY", raising=False)

    cfg = load_config()
    assert cfg.flask_secret_key == ""
    assert cfg.plan_credits == {"free": 3, "pro": 40}


def test_paypal_sandbox_is_default_and_live_is_opt_in(monkeypatch):
    monkeypatch.delenv("SENTRY_ENVIRONMENT", raising=False)
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.delenv("PAYPAL_API_BASE", raising=False)
    monkeypatch.delenv("PAYPAL_ENV", raising=False)
    assert load_config().paypal_api_base == PAYPAL_API_BASES["sandbox"]

    monkeypatch.setenv("PAYPAL_ENV", "live")
    assert load_config().paypal_api_base == PAYPAL_API_BASES["live"]


def test_paypal_configured_needs_all_three_values(monkeypatch):
    monkeypatch.delenv("SENTRY_ENVIRONMENT", raising=False)
    monkeypatch.setenv("FLASK_ENV", "development")
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "cid")
    monkeypatch.setenv("PAYPAL_CLIENT_SECRET", "secret")
    monkeypatch.delenv("PAYPAL_WEBHOOK_ID", raising=False)
    assert load_config().paypal_configured is False

    monkeypatch.setenv("PAYPAL_WEBHOOK_ID", "WH-ID")
    assert load_config().paypal_configured is True


def test_safe_int_env_clamps_and_falls_back(monkeypatch):
    monkeypatch.setenv("CHAT_RATE_LIMIT_MAX_REQUESTS", "abc")
    assert safe_int_env("CHAT_RATE_LIMIT_MAX_REQUESTS", 20) == 20

    monkeypatch.setenv("CHAT_RATE_LIMIT_MAX_REQUESTS", "999999")
    assert safe_int_env("CHAT_RATE_LIMIT_MAX_REQUESTS", 20, maximum=1000) == 1000
