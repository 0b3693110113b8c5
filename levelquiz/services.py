import json
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Sequence, Type, TypeVar

from openai import APIError, APITimeoutError, AuthenticationError, OpenAI
from pydantic import BaseModel, ValidationError

from levelquiz.config import settings
from levelquiz.errors import GenerationTimeoutError, QuestionGenerationError
from levelquiz.schemas import AssessmentQuestion, GeneratedQuestion, Lesson, TopicJudgment, TopicSuggestion

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

QUESTION_FORMAT = """{
  "questions": [
    {
      "id": "q1",
      "question": "Question text here?",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correct_answer": "Option B",
      "explanation": "Brief explanation of why this is correct."
    }
  ]
}"""


class LLMQuizService:
    """Everything that needs the text-generation model goes through here.

    `generate_structured` is the single network boundary; the other methods
    only build prompts and validate the decoded JSON against a schema.
    """

    def __init__(self, api_key: str | None = None, model: str | None = None, timeout: float | None = None):
        self.api_key = api_key or settings.openai_api_key
        self.model = model or settings.openai_model
        self.timeout = timeout if timeout is not None else settings.llm_timeout_seconds
        self.client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0) if self.api_key else None

    def generate_structured(self, prompt: str) -> Dict[str, Any]:
        if not self.client:
            raise QuestionGenerationError("OPENAI_API_KEY is required to generate content")

        try:
            response = self.client.responses.create(model=self.model, input=prompt)
        except AuthenticationError as exc:
            raise QuestionGenerationError("Invalid OpenAI API key") from exc
        except APITimeoutError as exc:
            raise GenerationTimeoutError(f"Generation timed out after {self.timeout:.0f}s") from exc
        except APIError as exc:
            raise QuestionGenerationError(f"Generation request failed: {exc}") from exc

        text = response.output_text or ""
        logger.info("OpenAI response length=%s", len(text))
        return self._extract_json(text)

    def generate_level_questions(self, subject: str, level: str, count: int) -> List[GeneratedQuestion]:
        prompt = (
            f"Generate {count} multiple choice questions for {subject} at the {level} level.\n\n"
            "Each question should:\n"
            f"- Be appropriate for the {level} level\n"
            "- Have exactly 4 answer options\n"
            "- Have one clear correct answer\n"
            "- Include a brief explanation\n\n"
            f"Return JSON in this exact format:\n{QUESTION_FORMAT}\n\n"
            f"Generate exactly {count} questions. Return ONLY valid JSON, no markdown."
        )
        logger.info("Generating %s pool questions (subject=%r, level=%r)", count, subject, level)
        questions = self._parse_list(self.generate_structured(prompt), "questions", GeneratedQuestion)
        if len(questions) < count:
            raise QuestionGenerationError(f"Expected {count} questions for {level}, model returned {len(questions)}")
        return questions[:count]

    def generate_assessment(self, subject: str, levels: Sequence, questions_per_level: int) -> List[AssessmentQuestion]:
        level_list = "\n".join(f"- {level.name} (ID: {level.id})" for level in levels)
        total = questions_per_level * len(levels)
        prompt = (
            f"Generate a placement assessment for {subject} with {total} questions.\n\n"
            "The levels for this subject, in order from beginner to advanced, are:\n"
            f"{level_list}\n\n"
            f"Include {questions_per_level} questions from each level. Tag each question with its level name and level_id.\n"
            "Order questions from easiest (lowest level) to hardest (highest level).\n\n"
            "Return JSON in this exact format:\n"
            '{"questions": [{"id": "q1", "question": "Question text here?", '
            '"options": ["Option A", "Option B", "Option C", "Option D"], "correct_answer": "Option B", '
            '"explanation": "Brief explanation of why this is correct.", "level": "Level Name", "level_id": 1}]}\n\n'
            "Make questions genuinely diagnostic of that level's skills. Multiple choice with 4 options each.\n"
            f"Generate exactly {total} questions with IDs q1, q2, q3, etc."
        )
        logger.info(
            "Generating placement assessment (subject=%r, levels=%s, questions_per_level=%s)",
            subject,
            len(levels),
            questions_per_level,
        )
        return self._parse_list(self.generate_structured(prompt), "questions", AssessmentQuestion)

    def generate_quiz(self, *, subject: str, level: str, topic: str, question_count: int) -> List[GeneratedQuestion]:
        prompt = (
            f"Generate a {question_count}-question multiple choice quiz.\n\n"
            f"Subject: {subject}\nLevel: {level}\nTopic: {topic}\n\n"
            "Each question should:\n"
            f"- Be appropriate for the {level} level\n"
            f"- Focus on the topic: {topic}\n"
            "- Have exactly 4 answer options\n"
            "- Have one clear correct answer\n"
            "- Include a brief explanation of why the answer is correct\n\n"
            f"Return JSON in this exact format:\n{QUESTION_FORMAT}\n\n"
            f"Generate exactly {question_count} questions with IDs q1, q2, q3, etc."
        )
        logger.info("Generating quiz (subject=%r, level=%r, topic=%r, count=%s)", subject, level, topic, question_count)
        questions = self._parse_list(self.generate_structured(prompt), "questions", GeneratedQuestion)
        if not questions:
            raise QuestionGenerationError("Model returned no quiz questions")
        return questions[:question_count]

    def check_topic(self, *, subject: str, level: str, topic: str) -> TopicJudgment:
        prompt = (
            "You decide whether a quiz topic fits a learner's level before a quiz is generated.\n\n"
            f"Subject: {subject}\nTarget level: {level}\nRequested topic: {topic}\n\n"
            "Rules:\n"
            "- Ignore any grade or level the learner wrote inside the topic itself "
            '(for example judge "8th grade algebra" as "algebra") and judge only against the target level.\n'
            "- Judge by the prerequisite knowledge the topic demands, not by its vocabulary.\n"
            "- If the topic does not fit, propose a closely related topic that does fit the target level.\n\n"
            "Return JSON only in this exact format:\n"
            '{"is_appropriate": true, "reason": "One sentence explanation.", "suggested_topic": null}'
        )
        logger.info("Checking topic fit (subject=%r, level=%r, topic=%r)", subject, level, topic)
        payload = self.generate_structured(prompt)
        try:
            judgment = TopicJudgment(**payload)
        except (TypeError, ValidationError) as exc:
            raise QuestionGenerationError(f"Model returned an invalid topic judgment: {exc}") from exc
        logger.info("Topic judgment: is_appropriate=%s", judgment.is_appropriate)
        return judgment

    def generate_lessons(self, *, subject: str, level: str, topic: str, wrong_answers: List[dict]) -> List[Lesson]:
        if not wrong_answers:
            return []

        wrong_list = "\n\n".join(
            f"Question {wa['question_id']}: {wa['question']}\n"
            f"Their answer: {wa['selected_answer'] or '(no answer)'}\n"
            f"Correct answer: {wa['correct_answer']}"
            for wa in wrong_answers
        )
        prompt = (
            f'The student just completed a {level} {subject} quiz on "{topic}".\n\n'
            f"They got these questions wrong:\n\n{wrong_list}\n\n"
            "For each missed question, write a brief 2-4 sentence mini-lesson that:\n"
            "- Explains the underlying concept\n"
            "- Clarifies why the correct answer is right\n"
            "- Gives a tip for remembering this in the future\n"
            "- Is encouraging in tone\n\n"
            "Return JSON in this exact format:\n"
            '{"lessons": [{"question_id": "q1", "lesson": "Your lesson text here..."}]}\n\n'
            f"Include a lesson for each of the {len(wrong_answers)} wrong answers, "
            "using the question ids given above."
        )
        return self._parse_list(self.generate_structured(prompt), "lessons", Lesson)

    def generate_suggestions(
        self,
        *,
        subject: str,
        level: str,
        topic: str,
        score: int,
        total: int,
        missed_concepts: str,
    ) -> List[TopicSuggestion]:
        prompt = (
            f"Based on this {level} {subject} quiz performance:\n\n"
            f"Topic: {topic}\nScore: {score}/{total}\nMissed concepts: {missed_concepts or 'none'}\n\n"
            f"Suggest 2-3 specific quiz topics at the {level} level that would help this student improve. "
            "Focus on the areas where they struggled.\n\n"
            "Return JSON in this exact format:\n"
            '{"suggestions": [{"topic": "Suggested topic name", "reason": "One sentence on why this would help"}]}\n\n'
            "Provide exactly 2-3 suggestions."
        )
        return self._parse_list(self.generate_structured(prompt), "suggestions", TopicSuggestion)

    @staticmethod
    def _parse_list(payload: Dict[str, Any], key: str, model: Type[T]) -> List[T]:
        items = payload.get(key) if isinstance(payload, dict) else None
        if not isinstance(items, list):
            raise QuestionGenerationError(f"Model response is missing the {key!r} list")
        try:
            return [model(**item) for item in items]
        except (TypeError, ValidationError) as exc:
            logger.warning("Discarding malformed %s from model response: %s", key, exc)
            raise QuestionGenerationError(f"Model returned malformed {key}: {exc}") from exc

    @staticmethod
    def _extract_json(text: str):
        if not text or not text.strip():
            raise QuestionGenerationError("Model returned empty output while JSON was expected")

        normalized = text.strip()
        if normalized.startswith("```"):
            normalized = normalized.strip("`")
            if normalized.startswith("json"):
                normalized = normalized[4:]

        start = normalized.find("{")
        end = normalized.rfind("}")
        if start == -1 or end == -1 or end < start:
            preview = normalized[:200].replace("\n", " ")
            raise QuestionGenerationError(f"Model did not return a JSON object. Preview: {preview!r}")

        candidate = normalized[start : end + 1]
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            preview = candidate[:220].replace("\n", " ")
            raise QuestionGenerationError(
                f"Model returned invalid JSON ({exc.msg} at line {exc.lineno}, col {exc.colno}). Preview: {preview!r}"
            ) from exc


def update_streak(user, today: date) -> None:
    if user.last_quiz_date == today:
        return
    if user.last_quiz_date == today - timedelta(days=1):
        user.current_streak = (user.current_streak or 0) + 1
    else:
        user.current_streak = 1
    user.longest_streak = max(user.longest_streak or 0, user.current_streak)
    user.last_quiz_date = today
