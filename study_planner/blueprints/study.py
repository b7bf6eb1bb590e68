from flask import Blueprint, request

from study_planner.extensions import get_runtime
from study_planner.services import study_api_service

study_bp = Blueprint('study_api', __name__)


@study_bp.route('/api/generate-plan', methods=['POST'])
def generate_plan():
    return study_api_service.generate_plan(get_runtime(), request)


@study_bp.route('/api/chat', methods=['POST'])
def chat():
    return study_api_service.chat(get_runtime(), request)


@study_bp.route('/api/generations', methods=['GET'])
def list_generations():
    return study_api_service.list_generations(get_runtime(), request)


@study_bp.route('/api/generations/<generation_id>', methods=['GET'])
def get_generation(generation_id):
    return study_api_service.get_generation(get_runtime(), request, generation_id)


@study_bp.route('/api/generations/<generation_id>', methods=['DELETE'])
def delete_generation(generation_id):
    return study_api_service.delete_generation(get_runtime(), request, generation_id)


@study_bp.route('/api/generations/<generation_id>', methods=['PUT'])
def update_generation(generation_id):
    return study_api_service.update_generation(get_runtime(), request, generation_id)


@study_bp.route('/api/history', methods=['GET'])
def get_history():
    return study_api_service.get_history(get_runtime(), request)


@study_bp.route('/api/chat/<generation_id>', methods=['GET'])
def get_chat_history(generation_id):
    return study_api_service.get_chat_history(get_runtime(), request, generation_id)


@study_bp.route('/api/chat/<generation_id>', methods=['POST'])
def save_chat_history(generation_id):
    return study_api_service.save_chat_history(get_runtime(), request, generation_id)
