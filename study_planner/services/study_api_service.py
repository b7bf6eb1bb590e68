"""Business logic handlers for study plan generation, tutor chat and saved generations."""

import os
import tempfile
import time
import uuid

from flask import jsonify
from google.genai import errors as genai_errors
from werkzeug.utils import secure_filename

from study_planner.errors import (
    STORE_EXCEPTIONS,
    InsufficientBalanceError,
    StoreUnavailableError,
    UserNotFoundError,
    store_errors,
)
from study_planner.repositories import conversations_repo, generations_repo
from study_planner.services import backup_service, file_service, study_service
from study_planner.services.auth_service import verify_firebase_token
from study_planner.services.credits_service import ENTRY_REFUND
from study_planner.services.rate_limit_service import build_rate_limited_response, normalize_key_part

MAX_GENERATIONS_LISTED = 100
HISTORY_SCAN_LIMIT = 40
HISTORY_LIMIT = 20
AI_ERRORS = (study_service.StudyGenerationError, genai_errors.APIError)


def _require_db(runtime):
    if runtime.db is None:
        raise StoreUnavailableError('Firestore is not initialized')
    return runtime.db


def _discard_generation(runtime, uid, generation_id):
    backup_service.remove_plan_backup(runtime.config.plan_backup_dir, uid, generation_id)
    try:
        generations_repo.delete_doc(runtime.db, generation_id, timeout=runtime.config.store_timeout_seconds)
    except STORE_EXCEPTIONS as e:
        runtime.logger.error(f"Could not remove unbilled generation {generation_id} for user {uid}: {e}")


def _extract_upload_text(runtime, uploaded_file):
    filename = secure_filename(uploaded_file.filename or '')
    save_path = os.path.join(tempfile.gettempdir(), f"plan_{uuid.uuid4().hex}_{filename}")
    uploaded_file.save(save_path)
    try:
        if file_service.get_saved_file_size(save_path) > runtime.config.max_upload_bytes:
            raise file_service.DocumentError('File too large. Maximum size is 5MB.')
        return file_service.extract_document_text(save_path, filename)
    finally:
        try:
            os.remove(save_path)
        except OSError:
            runtime.logger.warning(f"Could not remove temporary upload {save_path}")


def generate_plan(runtime, request):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Please sign in to continue'}), 401
    uid = decoded_token['uid']
    db = _require_db(runtime)

    decision = runtime.usage_gate.check(uid)
    if not decision.allowed:
        return jsonify(runtime.usage_gate.rejection_payload(decision.plan, decision.credits_balance)), 403

    uploaded_file = request.files.get('document')
    if uploaded_file is None or not uploaded_file.filename:
        return jsonify({'error': 'No document uploaded'}), 400
    if not file_service.allowed_file(uploaded_file.filename):
        return jsonify({'error': 'Unsupported file type. Must be PDF, DOCX or TXT.'}), 400
    try:
        document_text = _extract_upload_text(runtime, uploaded_file)
    except file_service.DocumentError as e:
        return jsonify({'error': str(e)}), 400

    try:
        study_plan = study_service.generate_study_plan(runtime.genai_client, runtime.config.gemini_model, document_text)
    except AI_ERRORS as e:
        runtime.logger.error(f"Study plan generation failed for user {uid}: {e}")
        return jsonify({'error': 'Could not generate a study plan. Please try again.'}), 502

    file_name = secure_filename(uploaded_file.filename)
    generation_ref = generations_repo.create_doc_ref(db)
    generation_id = generation_ref.id
    with store_errors('save generation'):
        generation_ref.set({
            'uid': uid,
            'file_name': file_name,
            'study_plan': study_plan,
            'created_at': time.time(),
        }, timeout=runtime.config.store_timeout_seconds)
    backup_service.save_plan_backup_async(runtime.config.plan_backup_dir, uid, generation_id, study_plan, runtime.logger)

    try:
        result = runtime.balance_manager.deduct(uid, 1, f"Study plan: {file_name}", f"gen_{generation_id}")
    except (InsufficientBalanceError, UserNotFoundError) as e:
        runtime.logger.warning(f"Billing failed after generation {generation_id} for user {uid}: {e}")
        _discard_generation(runtime, uid, generation_id)
        return jsonify({'error': 'Payment required', 'message': 'No credits were available to pay for this study plan.'}), 402
    except StoreUnavailableError:
        _discard_generation(runtime, uid, generation_id)
        raise

    return jsonify({
        'id': generation_id,
        'file_name': file_name,
        'study_plan': study_plan,
        'credits_balance': result.new_balance,
    })


def chat(runtime, request):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    uid = decoded_token['uid']

    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('messages'), list):
        return jsonify({'error': 'Messages array is required.'}), 400
    messages = study_service.sanitize_chat_messages(data['messages'])
    if not messages or messages[-1]['role'] != 'user':
        return jsonify({'error': 'The last message must be a non-empty user message.'}), 400

    allowed, retry_after = runtime.rate_limiter.check(
        key=f"chat:{normalize_key_part(uid, fallback='anon_uid')}",
        limit=runtime.config.chat_rate_limit_max_requests,
        window_seconds=runtime.config.chat_rate_limit_window_seconds,
    )
    if not allowed:
        return build_rate_limited_response(
            f"You can only send {runtime.config.chat_rate_limit_max_requests} messages per hour. Please wait a while.",
            retry_after,
        )

    runtime.usage_gate.require(uid)
    chat_id = normalize_key_part(data.get('request_id'), fallback='', max_len=64) or uuid.uuid4().hex
    reservation_key = f"chat_{uid}_{chat_id}"
    reserved = runtime.balance_manager.deduct(uid, 1, 'AI Chat Interaction', reservation_key)
    if reserved.duplicate:
        runtime.logger.info(f"Replayed chat request {chat_id} for user {uid}")
        return jsonify({
            'error': 'This chat request was already processed.',
            'credits_balance': reserved.new_balance,
        }), 409

    try:
        reply = study_service.generate_chat_reply(runtime.genai_client, runtime.config.gemini_model, messages)
    except AI_ERRORS as e:
        runtime.logger.error(f"Chat reply failed for user {uid}, releasing reserved credit: {e}")
        released = runtime.balance_manager.grant(
            uid, 1, ENTRY_REFUND, 'AI Chat refund (no reply)', f"chat_refund_{uid}_{chat_id}",
        )
        return jsonify({
            'error': 'The tutor could not answer right now. Your credit was refunded.',
            'credits_balance': released.new_balance,
        }), 502

    return jsonify({'reply': reply, 'credits_balance': reserved.new_balance})


def list_generations(runtime, request):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    db = _require_db(runtime)
    with store_errors('list generations'):
        docs = generations_repo.list_by_uid(db, decoded_token['uid'], timeout=runtime.config.store_timeout_seconds)
    generations = []
    for doc in docs:
        data = doc.to_dict() or {}
        generations.append({
            'id': doc.id,
            'file_name': data.get('file_name', ''),
            'created_at': data.get('created_at', 0),
        })
    generations.sort(key=lambda item: item['created_at'] or 0, reverse=True)
    return jsonify(generations[:MAX_GENERATIONS_LISTED])


def _owned_generation(runtime, uid, generation_id):
    with store_errors('get generation'):
        doc = generations_repo.get_doc(runtime.db, generation_id, timeout=runtime.config.store_timeout_seconds)
    if not doc.exists:
        return None
    data = doc.to_dict() or {}
    if data.get('uid') != uid:
        return None
    return data


def get_generation(runtime, request, generation_id):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    uid = decoded_token['uid']
    _require_db(runtime)
    data = _owned_generation(runtime, uid, generation_id)
    if data is None:
        return jsonify({'error': 'Generation not found'}), 404

    if not data.get('study_plan'):
        study_plan = backup_service.read_plan_backup(runtime.config.plan_backup_dir, uid, generation_id)
        if study_plan is None:
            return jsonify({'error': 'Plan content missing. It may have been lost due to server restart.'}), 404
        data['study_plan'] = study_plan
        try:
            generations_repo.update_doc(runtime.db, generation_id, {'study_plan': study_plan}, timeout=runtime.config.store_timeout_seconds)
        except STORE_EXCEPTIONS as e:
            runtime.logger.warning(f"Failed to restore study plan {generation_id} from backup: {e}")

    return jsonify({'id': generation_id, **data})


def delete_generation(runtime, request, generation_id):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    uid = decoded_token['uid']
    _require_db(runtime)
    if _owned_generation(runtime, uid, generation_id) is None:
        return jsonify({'error': 'Generation not found'}), 404
    with store_errors('delete generation'):
        generations_repo.delete_doc(runtime.db, generation_id, timeout=runtime.config.store_timeout_seconds)
    backup_service.remove_plan_backup(runtime.config.plan_backup_dir, uid, generation_id)
    try:
        conversations_repo.delete_doc(runtime.db, uid, generation_id, timeout=runtime.config.store_timeout_seconds)
    except STORE_EXCEPTIONS as e:
        runtime.logger.warning(f"Could not remove conversation for deleted generation {generation_id}: {e}")
    return jsonify({'success': True})


def update_generation(runtime, request, generation_id):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    uid = decoded_token['uid']
    _require_db(runtime)
    if _owned_generation(runtime, uid, generation_id) is None:
        return jsonify({'error': 'Generation not found'}), 404

    data = request.get_json(silent=True) or {}
    if not data.get('study_plan'):
        return jsonify({'error': 'Study plan data required'}), 400
    study_plan = study_service.sanitize_study_plan(data['study_plan'])
    if study_plan is None:
        return jsonify({'error': 'Invalid study plan structure'}), 400

    with store_errors('update generation'):
        generations_repo.update_doc(runtime.db, generation_id, {
            'study_plan': study_plan,
            'updated_at': time.time(),
        }, timeout=runtime.config.store_timeout_seconds)
    backup_service.save_plan_backup_async(runtime.config.plan_backup_dir, uid, generation_id, study_plan, runtime.logger)
    runtime.logger.info(f"Plan {generation_id} updated by user {uid}")
    return jsonify({'message': 'Plan updated successfully', 'study_plan': study_plan})


def get_history(runtime, request):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    db = _require_db(runtime)
    with store_errors('list history'):
        docs = generations_repo.list_by_uid(
            db, decoded_token['uid'], max_docs=HISTORY_SCAN_LIMIT, timeout=runtime.config.store_timeout_seconds,
        )
    history = []
    for doc in docs:
        data = doc.to_dict() or {}
        concept_map = (data.get('study_plan') or {}).get('concept_map') or {}
        history.append({
            'id': doc.id,
            'title': data.get('file_name') or 'Untitled Study Session',
            'created_at': data.get('created_at', 0),
            'topic': concept_map.get('main_topic') or 'General Study',
        })
    history.sort(key=lambda item: item['created_at'] or 0, reverse=True)
    return jsonify(history[:HISTORY_LIMIT])


def get_chat_history(runtime, request, generation_id):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    uid = decoded_token['uid']
    _require_db(runtime)
    if _owned_generation(runtime, uid, generation_id) is None:
        return jsonify({'error': 'Generation not found'}), 404
    with store_errors('get conversation'):
        doc = conversations_repo.get_doc(runtime.db, uid, generation_id, timeout=runtime.config.store_timeout_seconds)
    if not doc.exists:
        return jsonify({'generation_id': generation_id, 'messages': []})
    data = doc.to_dict() or {}
    return jsonify({
        'generation_id': generation_id,
        'messages': data.get('messages', []),
        'updated_at': data.get('updated_at', 0),
    })


def save_chat_history(runtime, request, generation_id):
    decoded_token = verify_firebase_token(request, runtime.auth_module, runtime.logger)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    uid = decoded_token['uid']
    _require_db(runtime)
    data = request.get_json(silent=True) or {}
    if not isinstance(data.get('messages'), list):
        return jsonify({'error': 'Messages array required'}), 400
    if _owned_generation(runtime, uid, generation_id) is None:
        return jsonify({'error': 'Generation not found'}), 404

    messages = study_service.sanitize_chat_history(data['messages'])
    with store_errors('save conversation'):
        conversations_repo.set_doc(runtime.db, uid, generation_id, {
            'uid': uid,
            'generation_id': generation_id,
            'messages': messages,
            'updated_at': time.time(),
        }, merge=True, timeout=runtime.config.store_timeout_seconds)
    return jsonify({'success': True, 'saved_messages': len(messages)})
