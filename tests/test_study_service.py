import json

import pytest

from study_planner.services import study_service
from study_planner.services.prompt_registry import get_prompt_metadata, get_prompt_template
from tests.fakes import FakeGenaiClient


def test_extract_json_payload_handles_code_fences():
    raw = "```json\n{\"summary\": \"ok\"}\n```"

    assert study_service.extract_json_payload(raw) == {"summary": "ok"}


def test_extract_json_payload_ignores_leading_prose():
    assert study_service.extract_json_payload('Here you go: {"a": 1} trailing') == {"a": 1}
    assert study_service.extract_json_payload("no json here") is None


def test_sanitize_study_plan_requires_summary():
    assert study_service.sanitize_study_plan({"learning_objectives": ["x"]}) is None


def test_sanitize_study_plan_bounds_and_dedupes():
    plan = study_service.sanitize_study_plan({
        "summary": "Topic",
        "learning_objectives": [f"Objective {i}" for i in range(8)],
        "active_recall": [
            {"question": "Q1?", "answer": "A1", "difficulty_rating": 9},
            {"question": "q1?", "answer": "dup", "difficulty_rating": 1},
            {"question": "", "answer": "missing question"},
        ],
        "spaced_repetition": [{"day": "Day 1", "topic": "Review"}] * 30,
        "concept_map": "not a dict",
    })

    assert len(plan["learning_objectives"]) == 5
    assert plan["active_recall"] == [{"question": "Q1?", "answer": "A1", "difficulty_rating": 5}]
    assert len(plan["spaced_repetition"]) == study_service.MAX_REVIEW_DAYS
    assert plan["concept_map"] == {"main_topic": "Main Topic", "subtopics": []}


def test_generate_study_plan_sends_document_in_prompt():
    client = FakeGenaiClient([json.dumps({"summary": "Cells"})])

    plan = study_service.generate_study_plan(client, "gemini-test", "Mitochondria text")

    assert plan["summary"] == "Cells"
    call = client.models.calls[0]
    assert call["model"] == "gemini-test"
    assert "Mitochondria text" in call["contents"][0].parts[0].text


def test_generate_study_plan_without_client_raises():
    with pytest.raises(study_service.StudyGenerationError):
        study_service.generate_study_plan(None, "gemini-test", "text")


def test_sanitize_chat_messages_maps_roles_and_drops_junk():
    messages = study_service.sanitize_chat_messages([
        {"role": "user", "content": " Hello "},
        {"role": "assistant", "content": "Hi"},
        {"role": "system", "content": "ignored"},
        "junk",
        {"role": "user", "content": ""},
    ])

    assert messages == [{"role": "user", "content": "Hello"}, {"role": "model", "content": "Hi"}]


def test_generate_chat_reply_rejects_empty_answer():
    with pytest.raises(study_service.StudyGenerationError):
        study_service.generate_chat_reply(FakeGenaiClient(["   "]), "gemini-test", [{"role": "user", "content": "Hi"}])


def test_prompt_registry_lookup():
    assert "{document_text}" in get_prompt_template("study_plan")
    assert get_prompt_metadata()["ids"] == ["study_plan", "chat_system"]
    with pytest.raises(KeyError):
        get_prompt_template("missing")
