from flask import Blueprint, request

from study_planner.extensions import get_runtime
from study_planner.services import credits_api_service

credits_bp = Blueprint('credits_api', __name__)


@credits_bp.route('/api/credits/balance', methods=['GET'])
def get_balance():
    return credits_api_service.get_balance(get_runtime(), request)


@credits_bp.route('/api/usage', methods=['GET'])
def get_usage():
    return credits_api_service.get_usage(get_runtime(), request)


@credits_bp.route('/api/credits/history', methods=['GET'])
def get_history():
    return credits_api_service.get_history(get_runtime(), request)
