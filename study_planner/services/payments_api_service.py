"""Business logic handler for the PayPal webhook API."""

import sentry_sdk
from flask import jsonify

from study_planner.errors import StoreUnavailableError, VerificationFailedError, WebhookPayloadError


def paypal_webhook(runtime, request):
    """Map processor results to HTTP statuses PayPal acts on.

    Deliberate outcomes (granted, duplicate, ignored, user not found) are 200
    so PayPal stops redelivering. Store failures are 503 so it retries.
    """
    try:
        outcome = runtime.webhook_processor.process(request.get_data(), request.headers)
    except WebhookPayloadError as e:
        runtime.logger.warning(f"Rejected malformed PayPal webhook: {e}")
        return jsonify({'error': 'Invalid webhook payload'}), 400
    except VerificationFailedError:
        return jsonify({'error': 'Webhook signature verification failed'}), 401
    except StoreUnavailableError as e:
        runtime.logger.error(f"PayPal webhook deferred, store unavailable: {e}")
        return jsonify({'error': 'Temporarily unavailable'}), 503
    except Exception as e:
        runtime.logger.exception(f"Unexpected error processing PayPal webhook: {e}")
        sentry_sdk.capture_exception(e)
        return jsonify({'error': 'Webhook processing failed'}), 500
    return jsonify(outcome.as_payload())
