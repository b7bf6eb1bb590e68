from flask import Blueprint, request

from study_planner.extensions import get_runtime
from study_planner.services import payments_api_service

payments_bp = Blueprint('payments_api', __name__)


@payments_bp.route('/api/paypal/webhook', methods=['POST'])
def paypal_webhook():
    return payments_api_service.paypal_webhook(get_runtime(), request)
