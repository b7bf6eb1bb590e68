"""PayPal webhook signature verification."""

import logging
import threading
import time

import requests

PAYPAL_HEADER_FIELDS = {
    'auth_algo': 'paypal-auth-algo',
    'cert_url': 'paypal-cert-url',
    'transmission_id': 'paypal-transmission-id',
    'transmission_sig': 'paypal-transmission-sig',
    'transmission_time': 'paypal-transmission-time',
}
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def extract_signature_headers(headers):
    normalized = {str(key).lower(): value for key, value in (headers or {}).items()}
    return {field: str(normalized.get(header, '') or '').strip() for field, header in PAYPAL_HEADER_FIELDS.items()}


class PayPalWebhookVerifier:
    """Asks PayPal's verify-webhook-signature API whether an event is authentic.

    Any failure (missing credentials, missing headers, network errors, a
    non-SUCCESS verdict) counts as "not verified".
    """

    def __init__(self, client_id, client_secret, webhook_id, api_base, *, timeout=15, session=None, logger=None):
        self.client_id = client_id or ''
        self.client_secret = client_secret or ''
        self.webhook_id = webhook_id or ''
        self.api_base = str(api_base or '').rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger('study_planner.paypal')
        self._token = ''
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    @property
    def is_configured(self):
        return bool(self.client_id and self.client_secret and self.webhook_id)

    def _access_token(self):
        with self._token_lock:
            if self._token and time.time() < self._token_expires_at:
                return self._token
            response = self.session.post(
                f"{self.api_base}/v1/oauth2/token",
                data={'grant_type': 'client_credentials'},
                auth=(self.client_id, self.client_secret),
                headers={'Accept': 'application/json'},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
            self._token = payload['access_token']
            expires_in = int(payload.get('expires_in', 0) or 0)
            self._token_expires_at = time.time() + max(0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            return self._token

    def verify(self, headers, event):
        if not self.is_configured:
            self.logger.error("PayPal credentials not configured; webhook verification failed.")
            return False
        signature = extract_signature_headers(headers)
        missing = [field for field, value in signature.items() if not value]
        if missing:
            self.logger.warning(f"PayPal webhook missing signature headers: {', '.join(sorted(missing))}")
            return False
        try:
            token = self._access_token()
            response = self.session.post(
                f"{self.api_base}/v1/notifications/verify-webhook-signature",
                json={**signature, 'webhook_id': self.webhook_id, 'webhook_event': event},
                headers={'Authorization': f"Bearer {token}", 'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
            response.raise_for_status()
            status = str((response.json() or {}).get('verification_status', '')).upper()
        except (requests.RequestException, ValueError, KeyError) as exc:
            self.logger.warning(f"PayPal webhook verification request failed: {exc}")
            return False
        if status != 'SUCCESS':
            self.logger.warning(f"PayPal webhook verification status: {status or 'missing'}")
            return False
        return True
