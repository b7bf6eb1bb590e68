from flask import Blueprint, jsonify

from study_planner.extensions import get_runtime

health_bp = Blueprint('health_api', __name__)


@health_bp.route('/healthz', methods=['GET'])
def healthz():
    runtime = get_runtime()
    return jsonify({
        'status': 'ok',
        'firebase_ready': runtime.db is not None,
        'gemini_ready': runtime.genai_client is not None,
        'paypal_ready': bool(runtime.verifier.is_configured),
    })
