import io
import json
import os

import pytest

from study_planner import create_app
from study_planner.services.study_service import StudyGenerationError
from tests.fakes import FakeFirestore, FakeGenaiClient, FakeVerifier, auth_headers, make_config, make_runtime

VALID_PLAN = json.dumps({
    'summary': 'Cells are the basic unit of life.',
    'learning_objectives': ['Describe cells', 'Name organelles', 'Explain mitosis'],
    'memory_palace': 'Walk through the house of the cell.',
    'active_recall': [{'question': 'What is a cell?', 'answer': 'The unit of life.', 'difficulty_rating': 2}],
    'spaced_repetition': [{'day': 'Day 1', 'topic': 'Organelles', 'hint': 'Mitochondria'}],
    'concept_map': {'main_topic': 'Cells', 'subtopics': ['Organelles', 'Mitosis']},
})
DOCUMENT_TEXT = b'Cells are the smallest units of life. ' * 5


@pytest.fixture()
def db():
    return FakeFirestore()


@pytest.fixture()
def genai_client():
    return FakeGenaiClient()


@pytest.fixture()
def verifier():
    return FakeVerifier()


@pytest.fixture()
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture()
def runtime(config, db, verifier, genai_client):
    return make_runtime(config, db=db, verifier=verifier, genai_client=genai_client)


@pytest.fixture()
def client(config, runtime):
    app = create_app(config=config, runtime=runtime)
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client


def _upload(client, uid, content=DOCUMENT_TEXT, filename='notes.txt'):
    return client.post(
        '/api/generate-plan',
        data={'document': (io.BytesIO(content), filename)},
        headers=auth_headers(uid),
        content_type='multipart/form-data',
    )


def test_healthz(client):
    response = client.get('/healthz')

    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'
    assert response.headers.get('X-Request-ID')


def test_request_id_is_echoed(client):
    response = client.get('/healthz', headers={'X-Request-ID': 'req-123'})

    assert response.headers['X-Request-ID'] == 'req-123'


@pytest.mark.parametrize('path', ['/api/credits/balance', '/api/usage', '/api/credits/history', '/api/generations'])
def test_authenticated_routes_require_token(client, path):
    response = client.get(path)

    assert response.status_code == 401


def test_balance_shape_for_new_user(client):
    response = client.get('/api/credits/balance', headers=auth_headers('u1'))

    assert response.status_code == 200
    assert response.get_json() == {'plan': 'free', 'credits_balance': 3, 'plan_credits': 3}


def test_usage_legacy_shape(client, runtime):
    runtime.balance_manager.get_balance('u1')
    runtime.balance_manager.deduct('u1', 1, 'Study plan', 'gen_x')

    response = client.get('/api/usage', headers=auth_headers('u1'))

    assert response.get_json() == {
        'plan': 'free',
        'uploads_used': 1,
        'limit': 3,
        'remaining': 2,
        'credits_balance': 2,
    }


def test_history_lists_entries(client):
    client.get('/api/credits/balance', headers=auth_headers('u1'))

    response = client.get('/api/credits/history', headers=auth_headers('u1'))

    entries = response.get_json()['entries']
    assert len(entries) == 1
    assert entries[0]['type'] == 'grant'
    assert entries[0]['amount'] == 3


def test_store_unavailable_returns_503(config, verifier):
    app = create_app(config=config, runtime=make_runtime(config, verifier=verifier, with_store=False))

    response = app.test_client().get('/api/credits/balance', headers=auth_headers('u1'))

    assert response.status_code == 503
    assert 'unavailable' in response.get_json()['error'].lower()


def test_webhook_grants_and_acknowledges(client, db):
    body = {'id': 'WH-API-1', 'event_type': 'BILLING.SUBSCRIPTION.ACTIVATED', 'resource': {'id': 'I-1', 'custom_id': 'buyer'}}

    response = client.post('/api/paypal/webhook', data=json.dumps(body), content_type='application/json')

    assert response.status_code == 200
    assert response.get_json() == {'ok': True, 'status': 'granted', 'event_id': 'WH-API-1'}
    assert db.docs('users')['buyer']['credits_balance'] == 40


def test_webhook_rejects_bad_signature(client, verifier, db):
    verifier.valid = False
    body = {'id': 'WH-API-2', 'event_type': 'BILLING.SUBSCRIPTION.ACTIVATED', 'resource': {'custom_id': 'buyer'}}

    response = client.post('/api/paypal/webhook', data=json.dumps(body), content_type='application/json')

    assert response.status_code == 401
    assert db.data == {}


def test_webhook_rejects_malformed_body(client):
    response = client.post('/api/paypal/webhook', data=b'{not json', content_type='application/json')

    assert response.status_code == 400


def test_webhook_store_outage_returns_503(client, db):
    db.failures.add(('get', 'processed_webhooks'))
    body = {'id': 'WH-API-3', 'event_type': 'PAYMENT.SALE.COMPLETED', 'resource': {'billing_agreement_id': 'I-1'}}

    response = client.post('/api/paypal/webhook', data=json.dumps(body), content_type='application/json')

    assert response.status_code == 503


def test_generate_plan_saves_and_bills_once(client, db, genai_client):
    genai_client.models.responses.append(VALID_PLAN)

    response = _upload(client, 'u1')

    assert response.status_code == 200
    payload = response.get_json()
    assert payload['credits_balance'] == 2
    assert payload['study_plan']['concept_map']['main_topic'] == 'Cells'
    generation = db.docs('generations')[payload['id']]
    assert generation['uid'] == 'u1'


def test_generate_plan_rejected_when_out_of_credits(client, db, genai_client):
    client.get('/api/credits/balance', headers=auth_headers('u1'))
    db.docs('users')['u1']['credits_balance'] = 0

    response = _upload(client, 'u1')

    assert response.status_code == 403
    body = response.get_json()
    assert body['plan'] == 'free'
    assert body['credits_balance'] == 0
    assert genai_client.models.calls == []


def test_generate_plan_rejects_short_document(client):
    response = _upload(client, 'u1', content=b'too short')

    assert response.status_code == 400


def test_generate_plan_rejects_unsupported_extension(client):
    response = _upload(client, 'u1', filename='notes.exe')

    assert response.status_code == 400


def test_generate_plan_ai_failure_does_not_bill(client, db, genai_client):
    genai_client.models.responses.append('not json at all')

    response = _upload(client, 'u1')

    assert response.status_code == 502
    assert db.docs('users')['u1']['credits_balance'] == 3
    assert db.docs('generations') == {}


def test_generate_plan_billing_failure_discards_generation(client, runtime, db, genai_client, monkeypatch):
    genai_client.models.responses.append(VALID_PLAN)

    def _drain_then_deduct(uid, amount, description, idempotency_key=None):
        db.docs('users')[uid]['credits_balance'] = 0
        return original_deduct(uid, amount, description, idempotency_key)

    original_deduct = runtime.balance_manager.deduct
    monkeypatch.setattr(runtime.balance_manager, 'deduct', _drain_then_deduct)

    response = _upload(client, 'u1')

    assert response.status_code == 402
    assert db.docs('generations') == {}


def test_chat_reply_costs_one_credit(client, db, genai_client):
    genai_client.models.responses.append('Mitochondria make ATP.')

    response = client.post('/api/chat', json={'messages': [{'role': 'user', 'content': 'What do mitochondria do?'}]},
                           headers=auth_headers('u1'))

    assert response.status_code == 200
    assert response.get_json() == {'reply': 'Mitochondria make ATP.', 'credits_balance': 2}


def test_chat_ai_failure_releases_reserved_credit(client, db, genai_client):
    genai_client.models.responses.append(StudyGenerationError('provider down'))

    response = client.post('/api/chat', json={'messages': [{'role': 'user', 'content': 'Hi'}], 'request_id': 'abc'},
                           headers=auth_headers('u1'))

    assert response.status_code == 502
    assert response.get_json()['credits_balance'] == 3
    refunds = [entry for entry in db.docs('credits_ledger').values() if entry['type'] == 'refund']
    assert len(refunds) == 1
    assert db.docs('users')['u1']['credits_balance'] == 3


def test_chat_requires_messages_array(client):
    response = client.post('/api/chat', json={'messages': 'hello'}, headers=auth_headers('u1'))

    assert response.status_code == 400


def test_chat_rate_limited_after_window_limit(tmp_path, db, verifier):
    config = make_config(tmp_path, chat_rate_limit_max_requests=1)
    runtime = make_runtime(config, db=db, verifier=verifier, genai_client=FakeGenaiClient(['one', 'two']))
    client = create_app(config=config, runtime=runtime).test_client()
    payload = {'messages': [{'role': 'user', 'content': 'Question'}]}

    first = client.post('/api/chat', json=payload, headers=auth_headers('u1'))
    second = client.post('/api/chat', json=payload, headers=auth_headers('u1'))

    assert first.status_code == 200
    assert second.status_code == 429
    assert int(second.headers['Retry-After']) >= 1
    assert db.docs('users')['u1']['credits_balance'] == 2


def test_chat_without_credits_returns_403(client, db):
    client.get('/api/credits/balance', headers=auth_headers('u1'))
    db.docs('users')['u1']['credits_balance'] = 0

    response = client.post('/api/chat', json={'messages': [{'role': 'user', 'content': 'Hi'}]}, headers=auth_headers('u1'))

    assert response.status_code == 403
    assert response.get_json()['error'] == 'Insufficient credits'


def test_generation_get_list_delete_flow(client, db, genai_client):
    genai_client.models.responses.append(VALID_PLAN)
    generation_id = _upload(client, 'u1').get_json()['id']

    listed = client.get('/api/generations', headers=auth_headers('u1')).get_json()
    fetched = client.get(f'/api/generations/{generation_id}', headers=auth_headers('u1'))
    foreign = client.get(f'/api/generations/{generation_id}', headers=auth_headers('someone-else'))
    deleted = client.delete(f'/api/generations/{generation_id}', headers=auth_headers('u1'))

    assert [item['id'] for item in listed] == [generation_id]
    assert fetched.status_code == 200
    assert fetched.get_json()['study_plan']['summary'].startswith('Cells')
    assert foreign.status_code == 404
    assert deleted.status_code == 200
    assert generation_id not in db.docs('generations')


def test_generation_without_stored_plan_falls_back_to_backup(client, config, db):
    db.data.setdefault('generations', {})['legacy-1'] = {'uid': 'u1', 'file_name': 'old.txt', 'created_at': 1.0}
    backup_dir = os.path.join(config.plan_backup_dir, 'u1')
    os.makedirs(backup_dir, exist_ok=True)
    with open(os.path.join(backup_dir, 'legacy-1.json'), 'w', encoding='utf-8') as handle:
        json.dump({'summary': 'Recovered'}, handle)

    response = client.get('/api/generations/legacy-1', headers=auth_headers('u1'))

    assert response.status_code == 200
    assert response.get_json()['study_plan'] == {'summary': 'Recovered'}
    assert db.docs('generations')['legacy-1']['study_plan'] == {'summary': 'Recovered'}


def test_cors_headers_for_allowed_origin(client):
    response = client.get('/api/credits/balance', headers={'Origin': 'http://localhost:3000'})

    assert response.headers.get('Access-Control-Allow-Origin') == 'http://localhost:3000'


def test_cors_headers_omitted_for_unknown_origin(client):
    response = client.get('/api/credits/balance', headers={'Origin': 'https://evil.example'})

    assert 'Access-Control-Allow-Origin' not in response.headers


def test_chat_request_ids_are_scoped_per_user(client, db, genai_client):
    genai_client.models.responses.extend(['reply one', 'reply two'])
    payload = {'messages': [{'role': 'user', 'content': 'Explain osmosis'}], 'request_id': 'abc'}

    alice = client.post('/api/chat', json=payload, headers=auth_headers('alice'))
    bob = client.post('/api/chat', json=payload, headers=auth_headers('bob'))

    assert alice.get_json() == {'reply': 'reply one', 'credits_balance': 2}
    assert bob.get_json() == {'reply': 'reply two', 'credits_balance': 2}
    assert db.docs('users')['bob']['credits_balance'] == 2


def test_replayed_chat_request_is_rejected_without_reply_or_refund(client, db, genai_client):
    genai_client.models.responses.extend(['first reply', StudyGenerationError('provider down')])
    payload = {'messages': [{'role': 'user', 'content': 'Explain osmosis'}], 'request_id': 'xyz'}

    first = client.post('/api/chat', json=payload, headers=auth_headers('carol'))
    replay = client.post('/api/chat', json=payload, headers=auth_headers('carol'))

    assert first.status_code == 200
    assert replay.status_code == 409
    assert replay.get_json()['credits_balance'] == 2
    assert len(genai_client.models.calls) == 1
    assert db.docs('users')['carol']['credits_balance'] == 2
    refunds = [entry for entry in db.docs('credits_ledger').values() if entry['type'] == 'refund']
    assert refunds == []


def test_update_generation_replaces_plan(client, db, genai_client):
    genai_client.models.responses.append(VALID_PLAN)
    generation_id = _upload(client, 'u1').get_json()['id']
    edited = json.loads(VALID_PLAN)
    edited['summary'] = 'Edited summary'

    response = client.put(f'/api/generations/{generation_id}', json={'study_plan': edited}, headers=auth_headers('u1'))

    assert response.status_code == 200
    stored = db.docs('generations')[generation_id]
    assert stored['study_plan']['summary'] == 'Edited summary'
    assert stored['updated_at'] > 0


def test_update_generation_validates_body_and_owner(client, db, genai_client):
    genai_client.models.responses.append(VALID_PLAN)
    generation_id = _upload(client, 'u1').get_json()['id']

    missing = client.put(f'/api/generations/{generation_id}', json={}, headers=auth_headers('u1'))
    invalid = client.put(f'/api/generations/{generation_id}', json={'study_plan': {'summary': ''}},
                         headers=auth_headers('u1'))
    foreign = client.put(f'/api/generations/{generation_id}', json={'study_plan': json.loads(VALID_PLAN)},
                         headers=auth_headers('someone-else'))

    assert missing.status_code == 400
    assert invalid.status_code == 400
    assert foreign.status_code == 404
    assert db.docs('generations')[generation_id]['study_plan']['summary'].startswith('Cells')


def test_history_lists_newest_generations_with_topic(client, db):
    db.data.setdefault('generations', {}).update({
        'old': {'uid': 'u1', 'file_name': 'old.txt', 'created_at': 1.0},
        'new': {'uid': 'u1', 'file_name': 'new.txt', 'created_at': 2.0,
                'study_plan': {'concept_map': {'main_topic': 'Cells'}}},
        'other': {'uid': 'u2', 'file_name': 'theirs.txt', 'created_at': 3.0},
    })

    response = client.get('/api/history', headers=auth_headers('u1'))

    assert response.get_json() == [
        {'id': 'new', 'title': 'new.txt', 'created_at': 2.0, 'topic': 'Cells'},
        {'id': 'old', 'title': 'old.txt', 'created_at': 1.0, 'topic': 'General Study'},
    ]


def test_chat_history_is_saved_per_generation(client, db):
    db.data.setdefault('generations', {})['g1'] = {'uid': 'u1', 'file_name': 'notes.txt', 'created_at': 1.0}
    messages = [
        {'role': 'user', 'content': 'What is a cell?'},
        {'role': 'assistant', 'content': 'The unit of life.'},
        {'role': 'system', 'content': 'dropped'},
    ]

    empty = client.get('/api/chat/g1', headers=auth_headers('u1'))
    saved = client.post('/api/chat/g1', json={'messages': messages}, headers=auth_headers('u1'))
    loaded = client.get('/api/chat/g1', headers=auth_headers('u1'))

    assert empty.get_json()['messages'] == []
    assert saved.get_json() == {'success': True, 'saved_messages': 2}
    assert loaded.get_json()['messages'] == messages[:2]
    assert db.docs('conversations')['u1_g1']['generation_id'] == 'g1'


def test_chat_history_requires_array_and_own_generation(client, db):
    db.data.setdefault('generations', {})['g1'] = {'uid': 'u1', 'file_name': 'notes.txt', 'created_at': 1.0}

    not_array = client.post('/api/chat/g1', json={'messages': 'hi'}, headers=auth_headers('u1'))
    foreign = client.get('/api/chat/g1', headers=auth_headers('u2'))

    assert not_array.status_code == 400
    assert foreign.status_code == 404
    assert 'conversations' not in db.data
