import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

import firebase_admin
import sentry_sdk
from firebase_admin import auth, credentials, firestore
from flask import current_app
from google import genai
from sentry_sdk.integrations.flask import FlaskIntegration

from .config import AppConfig
from .services.credits_service import PLAN_FREE, PLAN_PRO, BalanceManager
from .services.paypal_service import PayPalWebhookVerifier
from .services.rate_limit_service import RateLimiter
from .services.usage_gate import UsageGate
from .services.webhook_service import WebhookProcessor

EXTENSION_KEY = 'study_planner'
FIREBASE_CREDENTIALS_FILE = 'firebase-credentials.json'


@dataclass
class Runtime:
    """Everything a request handler needs, built once per app."""

    config: AppConfig
    db: Any
    firestore_module: Any
    auth_module: Any
    verifier: Any
    genai_client: Any
    balance_manager: BalanceManager
    webhook_processor: WebhookProcessor
    usage_gate: UsageGate
    rate_limiter: RateLimiter
    logger: logging.Logger


def init_firestore(config, logger):
    try:
        if os.path.exists(FIREBASE_CREDENTIALS_FILE):
            cred = credentials.Certificate(FIREBASE_CREDENTIALS_FILE)
        else:
            if not config.firebase_credentials:
                raise ValueError('FIREBASE_CREDENTIALS is not set and firebase-credentials.json was not found.')
            cred = credentials.Certificate(json.loads(config.firebase_credentials))
        if not firebase_admin._apps:
            firebase_admin.initialize_app(cred)
        return firestore.client()
    except Exception as e:
        logger.info(f"Firebase initialization skipped: {e}")
        return None


def init_sentry(config):
    if not config.sentry_dsn:
        return False
    sentry_sdk.init(
        dsn=config.sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=config.sentry_traces_sample_rate,
        send_default_pii=False,
        environment=config.sentry_environment,
        release=config.sentry_release,
    )
    return True


def init_gemini(config, logger):
    if not config.gemini_api_key:
        logger.info('GEMINI_API_KEY not set; study plan generation and chat are disabled.')
        return None
    try:
        return genai.Client(api_key=config.gemini_api_key)
    except Exception as e:
        logger.info(f"Gemini client disabled: {e}")
        return None


def build_runtime(config, *, db=None, firestore_module=None, auth_module=None, verifier=None,
                  genai_client=None, logger: Optional[logging.Logger] = None) -> Runtime:
    """Wire services together. Collaborators passed in are used as-is (tests)."""
    logger = logger or logging.getLogger('study_planner')
    if firestore_module is None:
        firestore_module = firestore
        if db is None:
            db = init_firestore(config, logger)
    if auth_module is None:
        auth_module = auth
    if verifier is None:
        verifier = PayPalWebhookVerifier(
            config.paypal_client_id,
            config.paypal_client_secret,
            config.paypal_webhook_id,
            config.paypal_api_base,
            timeout=config.paypal_timeout_seconds,
            logger=logger.getChild('paypal'),
        )
        if not verifier.is_configured:
            logger.warning('PayPal webhook verification is not configured; all webhooks will be rejected.')
    if genai_client is None:
        genai_client = init_gemini(config, logger)

    balance_manager = BalanceManager(
        db,
        firestore_module,
        plan_credits=config.plan_credits,
        timeout=config.store_timeout_seconds,
        max_attempts=config.store_max_attempts,
        logger=logger.getChild('credits'),
    )
    return Runtime(
        config=config,
        db=db,
        firestore_module=firestore_module,
        auth_module=auth_module,
        verifier=verifier,
        genai_client=genai_client,
        balance_manager=balance_manager,
        webhook_processor=WebhookProcessor(
            balance_manager,
            verifier,
            db,
            pro_allotment=config.plan_credits[PLAN_PRO],
            timeout=config.store_timeout_seconds,
            logger=logger.getChild('webhooks'),
        ),
        usage_gate=UsageGate(
            balance_manager,
            free_allotment=config.plan_credits[PLAN_FREE],
            pro_allotment=config.plan_credits[PLAN_PRO],
        ),
        rate_limiter=RateLimiter(
            db,
            firestore_module,
            firestore_enabled=config.rate_limit_firestore_enabled,
            logger=logger,
        ),
        logger=logger,
    )


def init_extensions(app, runtime) -> None:
    app.extensions[EXTENSION_KEY] = runtime


def get_runtime() -> Runtime:
    return current_app.extensions[EXTENSION_KEY]
