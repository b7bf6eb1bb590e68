"""PayPal webhook ingestion.

Events move through parse -> verify -> deduplicate -> apply -> record. The
``processed_webhooks`` marker is written only after the apply step returned,
so an exception anywhere before it leaves the event unmarked and PayPal's
redelivery applies it again. Re-application is safe because every ledger
write below carries an idempotency key derived from the event id.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from study_planner.errors import StoreUnavailableError, VerificationFailedError, WebhookPayloadError, store_errors
from study_planner.logging_config import log_event
from study_planner.repositories import webhooks_repo
from study_planner.services.credits_service import ENTRY_PURCHASE, ENTRY_REFUND

SUBSCRIPTION_PAYMENT_EVENTS = frozenset({'BILLING.SUBSCRIPTION.ACTIVATED', 'PAYMENT.SALE.COMPLETED'})
REFUND_EVENTS = frozenset({'PAYMENT.SALE.REFUNDED', 'PAYMENT.SALE.REVERSED'})
DOWNGRADE_EVENTS = frozenset({
    'BILLING.SUBSCRIPTION.CANCELLED',
    'BILLING.SUBSCRIPTION.SUSPENDED',
    'BILLING.SUBSCRIPTION.EXPIRED',
})

OUTCOME_ALREADY_HANDLED = 'already_handled'
OUTCOME_GRANTED = 'granted'
OUTCOME_REFUNDED = 'refunded'
OUTCOME_DOWNGRADED = 'downgraded'
OUTCOME_DUPLICATE = 'duplicate'
OUTCOME_USER_NOT_FOUND = 'user_not_found'
OUTCOME_IGNORED = 'ignored'


def purchase_key(event_id):
    return f"paypal_{event_id}"


def refund_key(event_id):
    return f"paypal_refund_{event_id}"


@dataclass(frozen=True)
class WebhookEvent:
    event_id: str
    event_type: str
    subscription_id: Optional[str] = None
    custom_id: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def parse(cls, raw_body):
        try:
            payload = json.loads(raw_body or b'')
        except (TypeError, ValueError) as exc:
            raise WebhookPayloadError('Webhook body is not valid JSON') from exc
        if not isinstance(payload, dict):
            raise WebhookPayloadError('Webhook body must be a JSON object')
        event_id = str(payload.get('id') or '').strip()
        if not event_id:
            raise WebhookPayloadError('Webhook event id is missing')
        resource = payload.get('resource') if isinstance(payload.get('resource'), dict) else {}
        # Sale events reference the subscription through billing_agreement_id;
        # subscription events carry it as the resource id.
        subscription_id = resource.get('billing_agreement_id') or resource.get('id')
        return cls(
            event_id=event_id,
            event_type=str(payload.get('event_type') or '').strip().upper(),
            subscription_id=str(subscription_id).strip() if subscription_id else None,
            custom_id=str(resource.get('custom_id')).strip() if resource.get('custom_id') else None,
            raw=payload,
        )


@dataclass(frozen=True)
class WebhookOutcome:
    status: str
    event_id: str
    event_type: str
    uid: Optional[str] = None
    new_balance: Optional[int] = None

    def as_payload(self):
        return {'ok': True, 'status': self.status, 'event_id': self.event_id}


class WebhookProcessor:
    def __init__(self, balance_manager, verifier, db, *, pro_allotment, timeout=None, logger=None):
        self.balance_manager = balance_manager
        self.verifier = verifier
        self.db = db
        self.pro_allotment = int(pro_allotment)
        self.timeout = timeout
        self.logger = logger or logging.getLogger('study_planner.webhooks')

    def process(self, raw_body, headers) -> WebhookOutcome:
        event = WebhookEvent.parse(raw_body)
        log_event(logging.INFO, 'paypal_webhook_received', log=self.logger, event_id=event.event_id, event_type=event.event_type)

        if not self.verifier.verify(headers, event.raw):
            log_event(logging.WARNING, 'paypal_webhook_rejected', log=self.logger, event_id=event.event_id)
            raise VerificationFailedError(event.event_id)
        if self.db is None:
            raise StoreUnavailableError('Firestore is not initialized')

        with store_errors('webhook dedup lookup'):
            already_processed = webhooks_repo.exists(self.db, event.event_id, timeout=self.timeout)
        if already_processed:
            log_event(logging.INFO, 'paypal_webhook_already_handled', log=self.logger, event_id=event.event_id)
            return WebhookOutcome(OUTCOME_ALREADY_HANDLED, event.event_id, event.event_type)

        outcome = self._apply(event)

        with store_errors('webhook record'):
            webhooks_repo.mark_processed(self.db, event.event_id, {
                'event_id': event.event_id,
                'event_type': event.event_type,
                'outcome': outcome.status,
                'processed_at': time.time(),
            }, timeout=self.timeout)
        log_event(
            logging.INFO, 'paypal_webhook_processed', log=self.logger,
            event_id=event.event_id, event_type=event.event_type, outcome=outcome.status, uid=outcome.uid,
        )
        return outcome

    def _apply(self, event):
        if event.event_type in SUBSCRIPTION_PAYMENT_EVENTS:
            return self._apply_payment(event)
        if event.event_type in REFUND_EVENTS:
            return self._apply_refund(event)
        if event.event_type in DOWNGRADE_EVENTS:
            return self._apply_downgrade(event)
        self.logger.info(f"Unhandled PayPal event type: {event.event_type or '<missing>'}")
        return WebhookOutcome(OUTCOME_IGNORED, event.event_id, event.event_type)

    def _user_not_found(self, event):
        self.logger.warning(f"No user found for PayPal event {event.event_id} (subscription {event.subscription_id})")
        return WebhookOutcome(OUTCOME_USER_NOT_FOUND, event.event_id, event.event_type)

    def _apply_payment(self, event):
        uid = event.custom_id or self.balance_manager.find_user_by_subscription(event.subscription_id)
        if not uid:
            return self._user_not_found(event)
        result = self.balance_manager.grant(
            uid,
            self.pro_allotment,
            ENTRY_PURCHASE,
            f"Pro subscription payment ({event.event_type})",
            purchase_key(event.event_id),
            event.event_id,
        )
        if event.subscription_id:
            self.balance_manager.attach_subscription(uid, event.subscription_id)
        status = OUTCOME_DUPLICATE if result.duplicate else OUTCOME_GRANTED
        return WebhookOutcome(status, event.event_id, event.event_type, uid=uid, new_balance=result.new_balance)

    def _apply_refund(self, event):
        uid = self.balance_manager.find_user_by_subscription(event.subscription_id)
        if not uid:
            return self._user_not_found(event)
        result = self.balance_manager.grant(
            uid,
            -self.pro_allotment,
            ENTRY_REFUND,
            f"Payment refunded/reversed ({event.event_type})",
            refund_key(event.event_id),
            event.event_id,
        )
        status = OUTCOME_DUPLICATE if result.duplicate else OUTCOME_REFUNDED
        return WebhookOutcome(status, event.event_id, event.event_type, uid=uid, new_balance=result.new_balance)

    def _apply_downgrade(self, event):
        uid = self.balance_manager.find_user_by_subscription(event.subscription_id)
        if not uid:
            return self._user_not_found(event)
        self.balance_manager.downgrade_to_free(uid)
        return WebhookOutcome(OUTCOME_DOWNGRADED, event.event_id, event.event_type, uid=uid)
