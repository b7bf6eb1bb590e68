"""Business logic handlers for balance and usage APIs."""

from flask import jsonify

from study_planner.services.auth_service import verify_firebase_token

HISTORY_LIMIT = 50


def _plan_limit(runtime, plan):
    return runtime.config.plan_credits.get(plan, runtime.config.plan_credits['free'])


def get_balance(runtime, request):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    account = runtime.balance_manager.get_balance(decoded_token['uid'])
    return jsonify({
        **account.to_dict(),
        'plan_credits': _plan_limit(runtime, account.plan),
    })


def get_usage(runtime, request):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    account = runtime.balance_manager.get_balance(decoded_token['uid'])
    limit = _plan_limit(runtime, account.plan)
    return jsonify({
        'plan': account.plan,
        'uploads_used': max(0, limit - account.credits_balance),
        'limit': limit,
        'remaining': account.credits_balance,
        'credits_balance': account.credits_balance,
    })


def get_history(runtime, request):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    entries = runtime.balance_manager.list_entries(decoded_token['uid'], limit=HISTORY_LIMIT)
    return jsonify({'entries': entries})
