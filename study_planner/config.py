import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet

DEV_ENV_NAMES = {'development', 'dev', 'local', 'test'}

# Fixed plan allotments: free credits are granted once per lifetime, pro
# credits on every successful subscription activation or renewal.
PLAN_CREDITS = {
    'free': 3,
    'pro': 40,
}

PAYPAL_API_BASES = {
    'live': 'https://api-m.paypal.com',
    'sandbox': 'https://api-m.sandbox.paypal.com',
}

DEFAULT_CORS_ALLOWED_ORIGINS = frozenset({
    'http://localhost:3000',
    'http://localhost:5000',
    'http://localhost:5500',
    'http://127.0.0.1:3000',
})


def _env(name, default=''):
    return (os.getenv(name, default) or default).strip()


def _env_flag(name, default='0'):
    return _env(name, default).lower() in {'1', 'true', 'yes', 'on'}


def safe_int_env(name, default=0, minimum=1, maximum=100000):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except Exception:
        value = int(default)
    return min(max(value, minimum), maximum)


def safe_float_env(name, default=0.0, minimum=0.0, maximum=1.0):
    raw = os.getenv(name, str(default)).strip()
    try:
        value = float(raw)
    except Exception:
        return default
    return min(max(value, minimum), maximum)


def resolve_runtime_env():
    return (
        os.getenv('SENTRY_ENVIRONMENT')
        or os.getenv('FLASK_ENV')
        or os.getenv('ENV')
        or ('production' if os.getenv('RENDER') else 'development')
    ).strip().lower()


def parse_cors_allowed_origins():
    raw = _env('CORS_ALLOWED_ORIGINS')
    if raw:
        return frozenset(part.strip().lower() for part in raw.split(',') if part.strip())
    return DEFAULT_CORS_ALLOWED_ORIGINS


def resolve_paypal_api_base():
    explicit = _env('PAYPAL_API_BASE')
    if explicit:
        return explicit.rstrip('/')
    mode = _env('PAYPAL_ENV', 'sandbox').lower()
    return PAYPAL_API_BASES.get(mode, PAYPAL_API_BASES['sandbox'])


@dataclass(frozen=True)
class AppConfig:
    """Central config object, read from the environment by ``load_config``."""

    flask_secret_key: str = field(default_factory=lambda: _env('FLASK_SECRET_KEY'))
    log_level: str = field(default_factory=lambda: _env('LOG_LEVEL', 'INFO').upper())
    runtime_env: str = field(default_factory=resolve_runtime_env)
    sentry_dsn: str = field(default_factory=lambda: _env('SENTRY_DSN_BACKEND'))
    sentry_environment: str = field(default_factory=lambda: _env('SENTRY_ENVIRONMENT', _env('FLASK_ENV', 'production')))
    sentry_release: str = field(default_factory=lambda: _env('SENTRY_RELEASE', 'study-planner'))
    sentry_traces_sample_rate: float = field(default_factory=lambda: safe_float_env('SENTRY_TRACES_SAMPLE_RATE', 0.0))
    firebase_credentials: str = field(default_factory=lambda: _env('FIREBASE_CREDENTIALS'))
    plan_credits: Dict[str, int] = field(default_factory=lambda: dict(PLAN_CREDITS))
    store_timeout_seconds: int = field(default_factory=lambda: safe_int_env('STORE_TIMEOUT_SECONDS', 10, minimum=1, maximum=120))
    store_max_attempts: int = field(default_factory=lambda: safe_int_env('STORE_TRANSACTION_MAX_ATTEMPTS', 5, minimum=1, maximum=20))
    paypal_client_id: str = field(default_factory=lambda: _env('PAYPAL_CLIENT_ID'))
    paypal_client_secret: str = field(default_factory=lambda: _env('PAYPAL_CLIENT_SECRET'))
    paypal_webhook_id: str = field(default_factory=lambda: _env('PAYPAL_WEBHOOK_ID'))
    paypal_api_base: str = field(default_factory=resolve_paypal_api_base)
    paypal_timeout_seconds: int = field(default_factory=lambda: safe_int_env('PAYPAL_TIMEOUT_SECONDS', 15, minimum=1, maximum=120))
    gemini_api_key: str = field(default_factory=lambda: _env('GEMINI_API_KEY'))
    gemini_model: str = field(default_factory=lambda: _env('GEMINI_MODEL', 'gemini-2.5-flash'))
    chat_rate_limit_max_requests: int = field(default_factory=lambda: safe_int_env('CHAT_RATE_LIMIT_MAX_REQUESTS', 20, minimum=1, maximum=1000))
    chat_rate_limit_window_seconds: int = field(default_factory=lambda: safe_int_env('CHAT_RATE_LIMIT_WINDOW_SECONDS', 3600, minimum=10, maximum=86400))
    rate_limit_firestore_enabled: bool = field(default_factory=lambda: _env_flag('RATE_LIMIT_FIRESTORE_ENABLED', '1'))
    max_upload_bytes: int = 5 * 1024 * 1024
    plan_backup_dir: str = field(default_factory=lambda: _env('PLAN_BACKUP_DIR', 'saved_plans'))
    cors_allowed_origins: FrozenSet[str] = field(default_factory=parse_cors_allowed_origins)

    @property
    def is_dev_like(self):
        return self.runtime_env in DEV_ENV_NAMES

    @property
    def paypal_configured(self):
        return bool(self.paypal_client_id and self.paypal_client_secret and self.paypal_webhook_id)


def load_config() -> AppConfig:
    config = AppConfig()
    if not config.is_dev_like and not config.flask_secret_key:
        raise RuntimeError('FLASK_SECRET_KEY must be set in non-development environments.')
    return config
