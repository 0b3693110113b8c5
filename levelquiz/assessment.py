"""Placement assessment core: composing a test, scoring it, suggesting a level.

Levels are anything with ``id``, ``name`` and ``sort_order`` attributes, so
the functions here work on ORM rows and plain stand-ins alike. Nothing in
this module touches the database or the network directly; question pools and
the text generator are passed in.
"""

import json
import logging
import math
import random
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence

from levelquiz.errors import NotFoundError, QuestionGenerationError
from levelquiz.schemas import AnswerIn, AssessmentQuestion, GeneratedQuestion

logger = logging.getLogger(__name__)

PASSING_PERCENTAGE = 70.0


def ordered_levels(levels: Iterable) -> list:
    return sorted(levels, key=lambda level: level.sort_order)


def questions_per_level(total: int, level_count: int) -> int:
    # Rounds up, so the assessment can hold more than `total` questions.
    return math.ceil(total / level_count)


def sample_without_replacement(items: Sequence, k: int, rng: random.Random) -> list:
    """Return `k` distinct items, every subset and order equally likely.

    `Random.shuffle` is an in-place Fisher-Yates shuffle, so taking the head
    of the shuffled copy is an unbiased draw.
    """
    if k > len(items):
        raise ValueError(f"Cannot sample {k} items from a pool of {len(items)}")
    shuffled = list(items)
    rng.shuffle(shuffled)
    return shuffled[:k]


def renumber(questions: List[GeneratedQuestion]) -> List[GeneratedQuestion]:
    return [q.model_copy(update={"id": f"q{idx}"}) for idx, q in enumerate(questions, start=1)]


def compose_fixed_total(generator, subject_name: str, levels: Sequence, total: int = 18) -> List[AssessmentQuestion]:
    levels = ordered_levels(levels)
    if not levels:
        raise NotFoundError("Subject has no levels to assess")

    per_level = questions_per_level(total, len(levels))
    generated = generator.generate_assessment(subject_name, levels, per_level)

    rank = {level.id: idx for idx, level in enumerate(levels)}
    unknown = sorted({q.level_id for q in generated if q.level_id not in rank})
    if unknown:
        raise QuestionGenerationError(f"Generated questions reference unknown level ids: {unknown}")
    if not generated:
        raise QuestionGenerationError("Model returned no assessment questions")
    counts = Counter(q.level_id for q in generated)
    short = [level.name for level in levels if counts[level.id] < per_level]
    if short:
        raise QuestionGenerationError(f"Expected {per_level} questions per level, model returned fewer for: {short}")

    # sorted() is stable, so the model's order is kept within each level
    ordered = sorted(generated, key=lambda q: rank[q.level_id])
    tagged = [q.model_copy(update={"level": levels[rank[q.level_id]].name}) for q in ordered]
    return renumber(tagged)


def pool_question(row, level) -> AssessmentQuestion:
    return AssessmentQuestion(
        question=row.prompt,
        options=json.loads(row.options_json),
        correct_answer=row.correct_answer,
        explanation=row.explanation or "",
        level=level.name,
        level_id=level.id,
        source_question_id=row.id,
    )


def compose_pooled(
    pool,
    generator,
    subject,
    levels: Sequence,
    per_level: int = 3,
    rng: Optional[random.Random] = None,
) -> Dict[int, List[AssessmentQuestion]]:
    """Pick `per_level` questions for every level, lowest level first.

    Levels whose stored pool is smaller than the quota get freshly generated
    questions instead. A generation error for any level aborts the whole
    composition.
    """
    rng = rng or random.Random()
    levels = ordered_levels(levels)
    if not levels:
        raise NotFoundError("Subject has no levels to assess")

    selection: Dict[int, List[AssessmentQuestion]] = {}
    for level in levels:
        candidates = pool.find_questions(subject.id, level.id)
        if len(candidates) >= per_level:
            picked = sample_without_replacement(candidates, per_level, rng)
            selection[level.id] = [pool_question(row, level) for row in picked]
            continue

        logger.info(
            "Pool for level %r holds %s questions (need %s); generating instead",
            level.name,
            len(candidates),
            per_level,
        )
        generated = generator.generate_level_questions(subject.name, level.name, per_level)
        selection[level.id] = [
            AssessmentQuestion(**q.model_dump(exclude={"id"}), level=level.name, level_id=level.id) for q in generated
        ]
    return selection


def flatten_composition(selection: Dict[int, List[AssessmentQuestion]], levels: Sequence) -> List[AssessmentQuestion]:
    flat: List[AssessmentQuestion] = []
    for level in ordered_levels(levels):
        flat.extend(selection.get(level.id, []))
    return renumber(flat)


def _selected_by_question(answers: Iterable[AnswerIn]) -> Dict[str, str]:
    selected: Dict[str, str] = {}
    for answer in answers:
        selected.setdefault(answer.question_id, answer.selected_answer)
    return selected


def grade_answers(questions: Sequence[GeneratedQuestion], answers: Iterable[AnswerIn]) -> List[dict]:
    """One graded record per question; unanswered questions are incorrect.

    Correctness is an exact string comparison with no trimming or case folding.
    """
    selected = _selected_by_question(answers)
    graded = []
    for q in questions:
        given = selected.get(q.id)
        graded.append(
            {
                "question_id": q.id,
                "selected_answer": given or "",
                "is_correct": given is not None and given == q.correct_answer,
            }
        )
    return graded


def score_by_level(
    questions: Sequence[AssessmentQuestion],
    answers: Iterable[AnswerIn],
    levels: Sequence,
) -> List[dict]:
    levels = ordered_levels(levels)
    selected = _selected_by_question(answers)
    scores = {
        level.id: {"level_id": level.id, "level_name": level.name, "correct": 0, "total": 0} for level in levels
    }

    for q in questions:
        score = scores.get(q.level_id)
        if score is None:
            continue
        score["total"] += 1
        if selected.get(q.id) == q.correct_answer:
            score["correct"] += 1

    return [score for score in scores.values() if score["total"] > 0]


def percentage(correct: int, total: int) -> float:
    return correct / total * 100


def suggest_level(levels: Sequence, scores: Iterable[dict], threshold: float = PASSING_PERCENTAGE):
    """Suggest the level above the highest level passed, else the lowest level.

    The scan runs from the top level down and stops at the first pass, so
    failures above a passed level do not hold the learner back. Returns
    None when the subject has no levels.
    """
    levels = ordered_levels(levels)
    if not levels:
        return None

    by_level = {score["level_id"]: score for score in scores}
    for idx in range(len(levels) - 1, -1, -1):
        score = by_level.get(levels[idx].id)
        if not score or not score["total"]:
            continue
        if percentage(score["correct"], score["total"]) >= threshold:
            return levels[idx + 1] if idx + 1 < len(levels) else levels[idx]

    return levels[0]
