"""Gemini calls and response sanitizing for study plans and tutor chat."""

import json

from google.genai import types

from study_planner.services.prompt_registry import get_prompt_template

MAX_TEXT_LEN = 2000
MAX_ACTIVE_RECALL = 50
MAX_REVIEW_DAYS = 20
MAX_SUBTOPICS = 20
MAX_CHAT_MESSAGES = 40
MAX_CHAT_MESSAGE_LEN = 4000
MAX_SAVED_CHAT_MESSAGES = 200
CHAT_ROLES = {'user': 'user', 'assistant': 'model', 'model': 'model'}


class StudyGenerationError(RuntimeError):
    pass


def extract_json_payload(raw_text):
    if not raw_text:
        return None
    text = raw_text.strip()
    if text.startswith('```'):
        lines = text.splitlines()
        if len(lines) >= 3 and lines[0].startswith('```') and lines[-1].strip() == '```':
            text = '\n'.join(lines[1:-1]).strip()
    start = text.find('{')
    if start == -1:
        return None
    decoder = json.JSONDecoder()
    try:
        parsed, _ = decoder.raw_decode(text[start:])
        return parsed
    except json.JSONDecodeError:
        end = text.rfind('}')
        if end == -1 or end <= start:
            return None
        try:
            return json.loads(text[start:end + 1])
        except json.JSONDecodeError:
            return None


def _clean_str(value, max_len=MAX_TEXT_LEN):
    return str(value or '').strip()[:max_len]


def sanitize_active_recall(items):
    if not isinstance(items, list):
        return []
    cleaned = []
    seen = set()
    for item in items:
        if not isinstance(item, dict):
            continue
        question = _clean_str(item.get('question'), 500)
        answer = _clean_str(item.get('answer'))
        if not question or not answer or question.lower() in seen:
            continue
        seen.add(question.lower())
        try:
            difficulty = min(max(int(item.get('difficulty_rating', 3)), 1), 5)
        except (TypeError, ValueError):
            difficulty = 3
        cleaned.append({'question': question, 'answer': answer, 'difficulty_rating': difficulty})
        if len(cleaned) >= MAX_ACTIVE_RECALL:
            break
    return cleaned


def sanitize_spaced_repetition(items):
    if not isinstance(items, list):
        return []
    cleaned = []
    for item in items:
        if not isinstance(item, dict):
            continue
        day = _clean_str(item.get('day'), 60)
        topic = _clean_str(item.get('topic'), 200)
        if not day or not topic:
            continue
        cleaned.append({'day': day, 'topic': topic, 'hint': _clean_str(item.get('hint'), 500) or None})
        if len(cleaned) >= MAX_REVIEW_DAYS:
            break
    return cleaned


def sanitize_study_plan(payload):
    """Return a validated study plan dict, or None when required parts are missing."""
    if not isinstance(payload, dict):
        return None
    summary = _clean_str(payload.get('summary'), 10000)
    if not summary:
        return None
    objectives = payload.get('learning_objectives', [])
    concept_map = payload.get('concept_map') if isinstance(payload.get('concept_map'), dict) else {}
    subtopics = concept_map.get('subtopics', [])
    return {
        'summary': summary,
        'learning_objectives': [_clean_str(item, 300) for item in objectives if _clean_str(item, 300)][:5] if isinstance(objectives, list) else [],
        'memory_palace': _clean_str(payload.get('memory_palace'), 5000),
        'active_recall': sanitize_active_recall(payload.get('active_recall', [])),
        'spaced_repetition': sanitize_spaced_repetition(payload.get('spaced_repetition', [])),
        'concept_map': {
            'main_topic': _clean_str(concept_map.get('main_topic'), 200) or 'Main Topic',
            'subtopics': [_clean_str(item, 200) for item in subtopics if _clean_str(item, 200)][:MAX_SUBTOPICS] if isinstance(subtopics, list) else [],
        },
    }


def generate_study_plan(client, model, document_text, max_output_tokens=32768):
    if client is None:
        raise StudyGenerationError('AI provider is not configured.')
    prompt = get_prompt_template('study_plan').format(
        max_questions=MAX_ACTIVE_RECALL,
        max_review_days=MAX_REVIEW_DAYS,
        document_text=document_text,
    )
    response = client.models.generate_content(
        model=model,
        contents=[types.Content(role='user', parts=[types.Part.from_text(text=prompt)])],
        config=types.GenerateContentConfig(max_output_tokens=max_output_tokens),
    )
    plan = sanitize_study_plan(extract_json_payload(getattr(response, 'text', '')))
    if plan is None:
        raise StudyGenerationError('Failed to parse AI response.')
    return plan


def sanitize_chat_messages(raw_messages):
    if not isinstance(raw_messages, list):
        return []
    cleaned = []
    for message in raw_messages[-MAX_CHAT_MESSAGES:]:
        if not isinstance(message, dict):
            continue
        role = CHAT_ROLES.get(str(message.get('role', '')).strip().lower())
        content = _clean_str(message.get('content'), MAX_CHAT_MESSAGE_LEN)
        if role and content:
            cleaned.append({'role': role, 'content': content})
    return cleaned


def sanitize_chat_history(raw_messages):
    """Stored conversations keep the client's ``user``/``assistant`` roles."""
    if not isinstance(raw_messages, list):
        return []
    cleaned = []
    for message in raw_messages[-MAX_SAVED_CHAT_MESSAGES:]:
        if not isinstance(message, dict):
            continue
        role = str(message.get('role', '')).strip().lower()
        if role == 'model':
            role = 'assistant'
        content = _clean_str(message.get('content'), MAX_CHAT_MESSAGE_LEN)
        if role in ('user', 'assistant') and content:
            cleaned.append({'role': role, 'content': content})
    return cleaned


def generate_chat_reply(client, model, messages, max_output_tokens=2048):
    if client is None:
        raise StudyGenerationError('AI provider is not configured.')
    response = client.models.generate_content(
        model=model,
        contents=[
            types.Content(role=message['role'], parts=[types.Part.from_text(text=message['content'])])
            for message in messages
        ],
        config=types.GenerateContentConfig(
            system_instruction=get_prompt_template('chat_system'),
            max_output_tokens=max_output_tokens,
        ),
    )
    reply = str(getattr(response, 'text', '') or '').strip()
    if not reply:
        raise StudyGenerationError('No response from AI provider.')
    return reply
