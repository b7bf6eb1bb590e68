import uuid

import sentry_sdk
from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from werkzeug.exceptions import RequestEntityTooLarge

from .config import load_config
from .errors import InsufficientBalanceError, StoreUnavailableError, UserNotFoundError
from .extensions import build_runtime, init_extensions, init_sentry
from .logging_config import configure_logging, logger


def _apply_cors_headers(response, allowed_origins):
    origin = str(request.headers.get('Origin', '') or '').strip()
    if not origin or not request.path.startswith('/api/'):
        return response
    if origin.lower() not in allowed_origins:
        return response
    response.headers['Access-Control-Allow-Origin'] = origin
    response.headers['Vary'] = 'Origin'
    response.headers['Access-Control-Allow-Headers'] = 'Authorization, Content-Type'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PUT, DELETE, OPTIONS'
    return response


def register_request_hooks(app, config):
    @app.before_request
    def handle_api_options_preflight():
        if request.method == 'OPTIONS' and request.path.startswith('/api/'):
            return _apply_cors_headers(app.make_default_options_response(), config.cors_allowed_origins)

    @app.before_request
    def attach_sentry_route_context():
        request_id = str(request.headers.get('X-Request-ID', '') or '').strip()[:120] or uuid.uuid4().hex
        g.request_id = request_id
        sentry_sdk.set_tag('request.id', request_id)
        sentry_sdk.set_tag('route.path', request.path)
        sentry_sdk.set_tag('route.method', request.method)
        sentry_sdk.set_tag('route.auth_header_present', 'true' if request.headers.get('Authorization') else 'false')

    @app.after_request
    def attach_sentry_response_context(response):
        request_id = str(getattr(g, 'request_id', '') or '').strip()
        if request_id:
            response.headers['X-Request-ID'] = request_id
        sentry_sdk.set_tag('route.status_code', str(response.status_code))
        return _apply_cors_headers(response, config.cors_allowed_origins)


def register_error_handlers(app):
    @app.errorhandler(InsufficientBalanceError)
    def handle_insufficient_balance(error):
        runtime = app.extensions['study_planner']
        return jsonify(runtime.usage_gate.rejection_payload(error.plan, error.balance)), 403

    @app.errorhandler(UserNotFoundError)
    def handle_user_not_found(_error):
        return jsonify({'error': 'Account not found'}), 404

    @app.errorhandler(StoreUnavailableError)
    def handle_store_unavailable(error):
        logger.error(f"Store unavailable: {error}")
        return jsonify({'error': 'Service temporarily unavailable. Please try again.'}), 503

    @app.errorhandler(RequestEntityTooLarge)
    def handle_request_entity_too_large(_error):
        return jsonify({'error': 'Upload too large. Maximum size is 5MB.'}), 413


def create_app(config=None, runtime=None):
    """App factory. Tests pass a prebuilt ``runtime`` with in-memory collaborators."""
    load_dotenv()
    config = config or load_config()
    configure_logging(config.log_level)
    if runtime is None:
        init_sentry(config)
        runtime = build_runtime(config, logger=logger)

    app = Flask(__name__)
    app.secret_key = config.flask_secret_key or uuid.uuid4().hex
    app.config['MAX_CONTENT_LENGTH'] = config.max_upload_bytes + (64 * 1024)
    init_extensions(app, runtime)
    register_request_hooks(app, config)
    register_error_handlers(app)

    from .blueprints import credits_bp, health_bp, payments_bp, study_bp

    app.register_blueprint(credits_bp)
    app.register_blueprint(payments_bp)
    app.register_blueprint(study_bp)
    app.register_blueprint(health_bp)
    return app
