import json
from datetime import date
from types import SimpleNamespace

import httpx
import pytest
from openai import APITimeoutError

from levelquiz.errors import GenerationTimeoutError, QuestionGenerationError
from levelquiz.services import LLMQuizService, update_streak


def fake_client(output_text=None, exc=None):
    captured = {}

    def create(*, model, input):
        captured["model"] = model
        captured["prompt"] = input
        if exc is not None:
            raise exc
        return SimpleNamespace(output_text=output_text)

    return SimpleNamespace(responses=SimpleNamespace(create=create)), captured


def service_with(output_text=None, exc=None):
    service = LLMQuizService(api_key="test-key", model="test-model", timeout=5)
    service.client, captured = fake_client(output_text, exc)
    return service, captured


def question_payload(count, correct="B"):
    return {
        "questions": [
            {
                "id": f"q{i}",
                "question": f"Question {i}?",
                "options": ["A", "B", "C", "D"],
                "correct_answer": correct,
                "explanation": "B is right.",
            }
            for i in range(1, count + 1)
        ]
    }


def test_generate_structured_requires_api_key():
    service = LLMQuizService(api_key=None)
    service.client = None
    with pytest.raises(QuestionGenerationError):
        service.generate_structured("anything")


def test_generate_structured_strips_markdown_fences():
    service, captured = service_with('```json\n{"questions": []}\n```')
    assert service.generate_structured("prompt") == {"questions": []}
    assert captured["model"] == "test-model"


def test_generate_structured_rejects_prose():
    service, _ = service_with("I cannot help with that.")
    with pytest.raises(QuestionGenerationError, match="did not return a JSON object"):
        service.generate_structured("prompt")


def test_generate_structured_rejects_invalid_json_without_retrying():
    calls = []
    service = LLMQuizService(api_key="test-key")

    def create(*, model, input):
        calls.append(input)
        return SimpleNamespace(output_text='{"questions": [}')

    service.client = SimpleNamespace(responses=SimpleNamespace(create=create))

    with pytest.raises(QuestionGenerationError, match="invalid JSON"):
        service.generate_structured("prompt")
    assert len(calls) == 1


def test_timeout_is_reported_as_its_own_error_kind():
    request = httpx.Request("POST", "https://api.openai.com/v1/responses")
    service, _ = service_with(exc=APITimeoutError(request=request))

    with pytest.raises(GenerationTimeoutError):
        service.generate_structured("prompt")


def test_generate_level_questions_truncates_extra_questions():
    service, captured = service_with(json.dumps(question_payload(5)))

    questions = service.generate_level_questions("Math", "Algebra 1", 3)

    assert len(questions) == 3
    assert "Generate 3 multiple choice questions for Math at the Algebra 1 level" in captured["prompt"]


def test_generate_level_questions_fails_when_model_returns_too_few():
    service, _ = service_with(json.dumps(question_payload(2)))
    with pytest.raises(QuestionGenerationError, match="Expected 3 questions"):
        service.generate_level_questions("Math", "Algebra 1", 3)


def test_correct_answer_outside_options_is_malformed():
    service, _ = service_with(json.dumps(question_payload(3, correct="E")))
    with pytest.raises(QuestionGenerationError, match="malformed questions"):
        service.generate_level_questions("Math", "Algebra 1", 3)


def test_missing_questions_key_is_malformed():
    service, _ = service_with(json.dumps({"items": []}))
    with pytest.raises(QuestionGenerationError, match="missing the 'questions' list"):
        service.generate_quiz(subject="Math", level="3rd Grade", topic="fractions", question_count=10)


def test_generate_assessment_lists_levels_and_parses_level_tags():
    payload = question_payload(2)
    for q in payload["questions"]:
        q.update({"level": "3rd Grade", "level_id": "7"})
    service, captured = service_with(json.dumps(payload))
    levels = [SimpleNamespace(id=7, name="3rd Grade"), SimpleNamespace(id=8, name="4th Grade")]

    questions = service.generate_assessment("Math", levels, 1)

    assert [q.level_id for q in questions] == [7, 7]
    assert "- 3rd Grade (ID: 7)" in captured["prompt"]
    assert "Include 1 questions from each level" in captured["prompt"]
    assert "Generate exactly 2 questions" in captured["prompt"]


def test_check_topic_prompt_ignores_embedded_grade_and_judges_prerequisites():
    service, captured = service_with(
        json.dumps({"is_appropriate": False, "reason": "Needs algebra.", "suggested_topic": "Number patterns"})
    )

    judgment = service.check_topic(subject="Math", level="3rd Grade", topic="8th grade algebra")

    assert judgment.is_appropriate is False
    assert judgment.suggested_topic == "Number patterns"
    assert "Target level: 3rd Grade" in captured["prompt"]
    assert "Ignore any grade or level the learner wrote inside the topic" in captured["prompt"]
    assert "prerequisite knowledge" in captured["prompt"]


def test_check_topic_rejects_malformed_judgment():
    service, _ = service_with(json.dumps({"reason": "no verdict"}))
    with pytest.raises(QuestionGenerationError, match="invalid topic judgment"):
        service.check_topic(subject="Math", level="3rd Grade", topic="fractions")


def test_generate_lessons_skips_the_model_when_nothing_was_missed():
    service = LLMQuizService(api_key="test-key")
    service.client = None
    assert service.generate_lessons(subject="Math", level="3rd Grade", topic="fractions", wrong_answers=[]) == []


def test_generate_lessons_includes_each_missed_question():
    service, captured = service_with(json.dumps({"lessons": [{"question_id": "q2", "lesson": "Halves are equal."}]}))

    lessons = service.generate_lessons(
        subject="Math",
        level="3rd Grade",
        topic="fractions",
        wrong_answers=[
            {"question_id": "q2", "question": "What is 1/2 of 4?", "selected_answer": "", "correct_answer": "2"}
        ],
    )

    assert lessons[0].lesson == "Halves are equal."
    assert "Question q2: What is 1/2 of 4?" in captured["prompt"]
    assert "Their answer: (no answer)" in captured["prompt"]


def test_generate_suggestions_parses_topics():
    service, captured = service_with(
        json.dumps({"suggestions": [{"topic": "Equivalent fractions", "reason": "Builds on halves."}]})
    )

    suggestions = service.generate_suggestions(
        subject="Math", level="3rd Grade", topic="fractions", score=6, total=10, missed_concepts="halves"
    )

    assert suggestions[0].topic == "Equivalent fractions"
    assert "Score: 6/10" in captured["prompt"]


def test_streak_starts_extends_and_resets():
    user = SimpleNamespace(current_streak=0, longest_streak=0, last_quiz_date=None)

    update_streak(user, date(2026, 3, 1))
    assert (user.current_streak, user.longest_streak) == (1, 1)

    update_streak(user, date(2026, 3, 1))
    assert (user.current_streak, user.longest_streak) == (1, 1)

    update_streak(user, date(2026, 3, 2))
    update_streak(user, date(2026, 3, 3))
    assert (user.current_streak, user.longest_streak) == (3, 3)

    update_streak(user, date(2026, 3, 6))
    assert (user.current_streak, user.longest_streak) == (1, 3)
    assert user.last_quiz_date == date(2026, 3, 6)
