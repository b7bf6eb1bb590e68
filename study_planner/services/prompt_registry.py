"""Prompt templates for study plan generation and tutoring chat."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List


PROMPT_REGISTRY_VERSION = "2026-10-01"


PROMPT_STUDY_PLAN = """You are an expert study coach. Build a study plan from the document below.

Return ONLY valid JSON, without markdown or extra text, in exactly this format:
{{
  "summary": "...",
  "learning_objectives": ["...", "...", "..."],
  "memory_palace": "...",
  "active_recall": [
    {{"question": "...", "answer": "...", "difficulty_rating": 1}}
  ],
  "spaced_repetition": [
    {{"day": "Day 1", "topic": "...", "hint": "..."}}
  ],
  "concept_map": {{
    "main_topic": "...",
    "subtopics": ["..."]
  }}
}}

Rules:
- 3 to 5 learning objectives.
- At most {max_questions} active recall questions, difficulty_rating from 1 to 5.
- At most {max_review_days} spaced repetition entries.
- Use only information from the document.
Document:
{document_text}
"""

PROMPT_CHAT_SYSTEM = """You are a patient study tutor. Answer the student's questions clearly and briefly.
Rules:
- Explain step by step when the question asks for reasoning.
- Say so when you are unsure instead of guessing.
- Keep answers under 300 words unless the student asks for more detail."""


@dataclass(frozen=True)
class PromptRecord:
    prompt_id: str
    name: str
    template: str


PROMPT_RECORDS: List[PromptRecord] = [
    PromptRecord("study_plan", "Study plan generation", PROMPT_STUDY_PLAN),
    PromptRecord("chat_system", "Tutor chat system instruction", PROMPT_CHAT_SYSTEM),
]


def get_prompt_template(prompt_id: str) -> str:
    safe_id = str(prompt_id or "").strip()
    for record in PROMPT_RECORDS:
        if record.prompt_id == safe_id:
            return record.template
    raise KeyError(f"Unknown prompt id: {safe_id}")


def get_prompt_metadata() -> Dict[str, object]:
    return {
        "version": PROMPT_REGISTRY_VERSION,
        "count": len(PROMPT_RECORDS),
        "ids": [record.prompt_id for record in PROMPT_RECORDS],
    }
