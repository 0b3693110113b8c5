import json
import logging
import math
from datetime import date, datetime, timedelta
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from levelquiz.assessment import (
    compose_fixed_total,
    compose_pooled,
    flatten_composition,
    grade_answers,
    percentage,
    renumber,
    score_by_level,
    suggest_level,
)
from levelquiz.auth import get_current_user
from levelquiz.config import settings
from levelquiz.database import Base, engine, get_db
from levelquiz.errors import (
    AlreadyCompletedError,
    InvalidRequestError,
    LevelQuizError,
    NotFoundError,
    TopicRejectedError,
    UnauthorizedError,
)
from levelquiz.models import Assessment, Attempt, Level, Quiz, Subject, User
from levelquiz.repositories import (
    AssessmentRepository,
    AttemptRepository,
    QuestionRepository,
    QuizRepository,
    SubjectRepository,
    UserSubjectLevelRepository,
)
from levelquiz.schemas import (
    AssessmentListOut,
    AssessmentOut,
    AssessmentQuestion,
    AssessmentResultOut,
    AttemptOut,
    CreateQuizRequest,
    FeedbackOut,
    GeneratedQuestion,
    QuizListOut,
    QuizOut,
    StatsOut,
    SubjectDetailOut,
    SubjectOut,
    SubmitAnswersRequest,
    UpdateCurrentLevelRequest,
    UserSubjectLevelOut,
)
from levelquiz.services import LLMQuizService, update_streak


app = FastAPI(title="LevelQuiz")
logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)
service = LLMQuizService()

Base.metadata.create_all(bind=engine)


@app.exception_handler(LevelQuizError)
async def levelquiz_error_handler(request: Request, exc: LevelQuizError):
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


def _level_out(level: Level | None):
    if level is None:
        return None
    return {"id": level.id, "name": level.name, "sort_order": level.sort_order}


def _subject_out(subject: Subject, levels: List[Level]):
    return {
        "id": subject.id,
        "name": subject.name,
        "icon": subject.icon,
        "levels": [_level_out(level) for level in levels],
    }


def _question_out(question: GeneratedQuestion):
    # Correct answers and explanations stay server-side until grading.
    return {
        "id": question.id,
        "question": question.question,
        "options": question.options,
        "level": getattr(question, "level", None),
        "level_id": getattr(question, "level_id", None),
    }


def _stored_assessment_questions(assessment: Assessment) -> List[AssessmentQuestion]:
    return [AssessmentQuestion(**q) for q in json.loads(assessment.questions_json)["questions"]]


def _stored_quiz_questions(quiz: Quiz) -> List[GeneratedQuestion]:
    return [GeneratedQuestion(**q) for q in json.loads(quiz.questions_json)["questions"]]


def _get_subject(db: Session, subject_id: int) -> Subject:
    subject = SubjectRepository(db).get(subject_id)
    if not subject:
        raise NotFoundError("Subject not found")
    return subject


def _owned_assessment(db: Session, assessment_id: int, user: User) -> Assessment:
    assessment = AssessmentRepository(db).get(assessment_id)
    if not assessment:
        raise NotFoundError("Assessment not found")
    if assessment.user_id != user.id:
        raise UnauthorizedError("Assessment belongs to another user")
    return assessment


def _assessment_out(assessment: Assessment):
    answers = json.loads(assessment.answers_json)["answers"] if assessment.answers_json else []
    scores = json.loads(assessment.score_by_level_json)["scores"] if assessment.score_by_level_json else []
    return {
        "id": assessment.id,
        "subject_id": assessment.subject_id,
        "created_at": assessment.created_at,
        "completed_at": assessment.completed_at,
        "questions": [_question_out(q) for q in _stored_assessment_questions(assessment)],
        "suggested_level": _level_out(assessment.suggested_level),
        "scores": scores,
        "answers": answers,
    }


def _compose_assessment(db: Session, subject: Subject, levels: List[Level]) -> List[AssessmentQuestion]:
    if settings.assessment_policy == "fixed_total":
        return compose_fixed_total(service, subject.name, levels, settings.assessment_total_questions)
    selection = compose_pooled(
        QuestionRepository(db),
        service,
        subject,
        levels,
        per_level=settings.assessment_questions_per_level,
    )
    return flatten_composition(selection, levels)


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


@app.get("/api/subjects", response_model=List[SubjectOut])
def list_subjects(db: Session = Depends(get_db)):
    repo = SubjectRepository(db)
    return [_subject_out(subject, repo.levels(subject.id)) for subject in repo.list()]


@app.get("/api/subjects/{subject_id}", response_model=SubjectDetailOut)
def get_subject(subject_id: int, db: Session = Depends(get_db)):
    subject = _get_subject(db, subject_id)
    levels = SubjectRepository(db).levels(subject_id)
    return {
        **_subject_out(subject, levels),
        "question_pool_size": QuestionRepository(db).count_questions(subject_id),
    }


@app.post("/api/subjects/{subject_id}/assessments", response_model=AssessmentOut)
def create_assessment(subject_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    subject = _get_subject(db, subject_id)
    levels = SubjectRepository(db).levels(subject_id)
    logger.info(
        "Composing assessment (subject=%r, levels=%s, policy=%s)",
        subject.name,
        len(levels),
        settings.assessment_policy,
    )

    questions = _compose_assessment(db, subject, levels)

    assessment = AssessmentRepository(db).create(user.id, subject_id, [q.model_dump() for q in questions])
    db.commit()
    db.refresh(assessment)
    logger.info("Assessment %s created with %s questions", assessment.id, len(questions))
    return _assessment_out(assessment)


@app.get("/api/subjects/{subject_id}/assessments", response_model=AssessmentListOut)
def list_assessments(subject_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    _get_subject(db, subject_id)
    assessments = AssessmentRepository(db).list_for_user(user.id, subject_id)
    return {
        "assessments": [
            {
                "id": a.id,
                "created_at": a.created_at,
                "completed_at": a.completed_at,
                "suggested_level": _level_out(a.suggested_level),
            }
            for a in assessments
        ]
    }


@app.get("/api/assessments/{assessment_id}", response_model=AssessmentOut)
def get_assessment(assessment_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _assessment_out(_owned_assessment(db, assessment_id, user))


@app.post("/api/assessments/{assessment_id}", response_model=AssessmentResultOut)
def submit_assessment(
    assessment_id: int,
    payload: SubmitAnswersRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    assessment = _owned_assessment(db, assessment_id, user)
    if assessment.completed_at:
        raise AlreadyCompletedError("Assessment already completed")

    levels = SubjectRepository(db).levels(assessment.subject_id)
    questions = _stored_assessment_questions(assessment)
    scores = score_by_level(questions, payload.answers, levels)
    suggested = suggest_level(levels, scores, settings.passing_percentage)
    graded = grade_answers(questions, payload.answers)

    completed_at = datetime.utcnow()
    written = AssessmentRepository(db).complete(
        assessment.id,
        answers=graded,
        scores=scores,
        suggested_level_id=suggested.id if suggested else None,
        completed_at=completed_at,
    )
    if not written:
        db.rollback()
        raise AlreadyCompletedError("Assessment already completed")

    if suggested:
        UserSubjectLevelRepository(db).record_assessment(user.id, assessment.subject_id, suggested.id, completed_at)
    db.commit()

    logger.info(
        "Assessment %s scored (levels=%s, suggested_level=%r)",
        assessment.id,
        len(scores),
        suggested.name if suggested else None,
    )
    return {
        "assessment_id": assessment.id,
        "scores": scores,
        "suggested_level": _level_out(suggested),
        "answers": graded,
    }


@app.get("/api/users/me/subjects/{subject_id}", response_model=UserSubjectLevelOut)
def get_subject_level(subject_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    _get_subject(db, subject_id)
    row = UserSubjectLevelRepository(db).get(user.id, subject_id)
    if not row:
        raise NotFoundError("No level recorded for this subject")
    return {
        "subject_id": subject_id,
        "current_level": _level_out(row.current_level),
        "suggested_level": _level_out(row.suggested_level),
        "last_assessed_at": row.last_assessed_at,
    }


@app.patch("/api/users/me/subjects/{subject_id}", response_model=UserSubjectLevelOut)
def set_subject_level(
    subject_id: int,
    payload: UpdateCurrentLevelRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _get_subject(db, subject_id)
    if not SubjectRepository(db).get_level(subject_id, payload.level_id):
        raise InvalidRequestError("Invalid level for this subject")

    row = UserSubjectLevelRepository(db).set_current_level(user.id, subject_id, payload.level_id)
    db.commit()
    db.refresh(row)
    return {
        "subject_id": subject_id,
        "current_level": _level_out(row.current_level),
        "suggested_level": _level_out(row.suggested_level),
        "last_assessed_at": row.last_assessed_at,
    }


def _quiz_out(quiz: Quiz):
    return {
        "id": quiz.id,
        "subject_id": quiz.subject_id,
        "level_id": quiz.level_id,
        "topic": quiz.topic,
        "question_count": quiz.question_count,
        "time_limit_minutes": quiz.time_limit_minutes,
        "questions": [_question_out(q) for q in _stored_quiz_questions(quiz)],
    }


@app.post("/api/quizzes", response_model=QuizOut)
def create_quiz(payload: CreateQuizRequest, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    if not settings.quiz_min_questions <= payload.question_count <= settings.quiz_max_questions:
        raise InvalidRequestError(
            f"Question count must be {settings.quiz_min_questions}-{settings.quiz_max_questions}"
        )
    subject = _get_subject(db, payload.subject_id)
    level = SubjectRepository(db).get_level(payload.subject_id, payload.level_id)
    if not level:
        raise NotFoundError("Level not found for this subject")

    topic = payload.topic.strip()
    judgment = service.check_topic(subject=subject.name, level=level.name, topic=topic)
    if not judgment.is_appropriate:
        logger.info("Topic %r rejected for %s %s", topic, subject.name, level.name)
        raise TopicRejectedError(judgment.reason, judgment.suggested_topic)

    questions = renumber(
        service.generate_quiz(
            subject=subject.name,
            level=level.name,
            topic=topic,
            question_count=payload.question_count,
        )
    )

    quiz = Quiz(
        subject_id=subject.id,
        level_id=level.id,
        topic=topic,
        questions_json=json.dumps({"questions": [q.model_dump() for q in questions]}),
        question_count=len(questions),
        time_limit_minutes=payload.time_limit_minutes,
        created_by=user.id,
    )
    db.add(quiz)
    db.commit()
    db.refresh(quiz)
    logger.info("Quiz %s created with %s questions", quiz.id, len(questions))
    return _quiz_out(quiz)


@app.get("/api/quizzes", response_model=QuizListOut)
def list_quizzes(
    subject_id: Optional[int] = None,
    level_id: Optional[int] = None,
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
    db: Session = Depends(get_db),
):
    quizzes, total = QuizRepository(db).search(
        subject_id=subject_id,
        level_id=level_id,
        topic=search.strip() if search else None,
        page=page,
        limit=limit,
    )
    return {
        "quizzes": [
            {
                "id": quiz.id,
                "topic": quiz.topic,
                "subject": {"id": quiz.subject.id, "name": quiz.subject.name, "icon": quiz.subject.icon},
                "level": _level_out(quiz.level),
                "question_count": quiz.question_count,
                "time_limit_minutes": quiz.time_limit_minutes,
                "created_by": {"id": quiz.creator.id, "display_name": quiz.creator.display_name},
                "created_at": quiz.created_at,
                "attempt_count": len(quiz.attempts),
            }
            for quiz in quizzes
        ],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }


@app.get("/api/quizzes/{quiz_id}", response_model=QuizOut)
def get_quiz(quiz_id: int, db: Session = Depends(get_db)):
    quiz = QuizRepository(db).get(quiz_id)
    if not quiz:
        raise NotFoundError("Quiz not found")
    return _quiz_out(quiz)


def _attempt_out(attempt: Attempt, user: User):
    questions = {q.id: q for q in _stored_quiz_questions(attempt.quiz)}
    answers = json.loads(attempt.answers_json)["answers"]
    results = []
    for answer in answers:
        question = questions.get(answer["question_id"])
        if not question:
            continue
        results.append(
            {
                "question_id": question.id,
                "question": question.question,
                "options": question.options,
                "selected_answer": answer["selected_answer"],
                "correct_answer": question.correct_answer,
                "is_correct": answer["is_correct"],
                "explanation": question.explanation,
            }
        )
    return {
        "attempt_id": attempt.id,
        "quiz_id": attempt.quiz_id,
        "score": attempt.score,
        "total_questions": attempt.total_questions,
        "percentage": round(percentage(attempt.score, attempt.total_questions), 2) if attempt.total_questions else 0.0,
        "is_first_attempt": attempt.is_first_attempt,
        "question_results": results,
        "streak": {
            "current": user.current_streak,
            "longest": user.longest_streak,
            "last_quiz_date": user.last_quiz_date,
        },
    }


@app.post("/api/quizzes/{quiz_id}/attempts", response_model=AttemptOut)
def submit_attempt(
    quiz_id: int,
    payload: SubmitAnswersRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    quiz = QuizRepository(db).get(quiz_id)
    if not quiz:
        raise NotFoundError("Quiz not found")

    graded = grade_answers(_stored_quiz_questions(quiz), payload.answers)
    score = sum(1 for row in graded if row["is_correct"])
    prior_attempts = AttemptRepository(db).count_for_quiz(quiz.id, user.id)

    attempt = Attempt(
        quiz_id=quiz.id,
        user_id=user.id,
        answers_json=json.dumps({"answers": graded}),
        score=score,
        total_questions=len(graded),
        is_first_attempt=prior_attempts == 0,
    )
    db.add(attempt)
    update_streak(user, date.today())
    db.commit()
    db.refresh(attempt)
    db.refresh(user)
    logger.info("Attempt %s on quiz %s scored %s/%s", attempt.id, quiz.id, score, len(graded))
    return _attempt_out(attempt, user)


def _owned_attempt(db: Session, attempt_id: int, user: User) -> Attempt:
    attempt = db.get(Attempt, attempt_id)
    if not attempt:
        raise NotFoundError("Attempt not found")
    if attempt.user_id != user.id:
        raise UnauthorizedError("Attempt belongs to another user")
    return attempt


@app.get("/api/attempts/{attempt_id}", response_model=AttemptOut)
def get_attempt(attempt_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    return _attempt_out(_owned_attempt(db, attempt_id, user), user)


@app.post("/api/attempts/{attempt_id}/feedback", response_model=FeedbackOut)
def generate_feedback(attempt_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    attempt = _owned_attempt(db, attempt_id, user)
    quiz = attempt.quiz
    questions = {q.id: q for q in _stored_quiz_questions(quiz)}

    wrong_answers = []
    for answer in json.loads(attempt.answers_json)["answers"]:
        question = questions.get(answer["question_id"])
        if answer["is_correct"] or not question:
            continue
        wrong_answers.append(
            {
                "question_id": question.id,
                "question": question.question,
                "selected_answer": answer["selected_answer"],
                "correct_answer": question.correct_answer,
            }
        )

    subject_name = quiz.subject.name
    level_name = quiz.level.name
    lessons = service.generate_lessons(
        subject=subject_name,
        level=level_name,
        topic=quiz.topic,
        wrong_answers=wrong_answers,
    )
    suggestions = service.generate_suggestions(
        subject=subject_name,
        level=level_name,
        topic=quiz.topic,
        score=attempt.score,
        total=attempt.total_questions,
        missed_concepts="; ".join(wa["question"] for wa in wrong_answers),
    )
    return {"lessons": lessons, "suggestions": suggestions}


def _accuracy(attempts: List[Attempt]) -> int:
    correct = sum(a.score for a in attempts)
    total = sum(a.total_questions for a in attempts)
    # Half-up rounding to a whole percent
    return math.floor(percentage(correct, total) + 0.5) if total else 0


@app.get("/api/stats", response_model=StatsOut)
def get_stats(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    """Progress summary; only first attempts count toward accuracy and totals."""
    attempts = AttemptRepository(db)
    first_attempts = attempts.first_attempts(user.id)
    week_ago = datetime.utcnow() - timedelta(days=7)

    subject_stats = []
    subjects = SubjectRepository(db)
    levels = UserSubjectLevelRepository(db)
    for subject in subjects.list():
        subject_attempts = attempts.first_attempts(user.id, subject.id)
        row = levels.get(user.id, subject.id)
        subject_stats.append(
            {
                "subject": {"id": subject.id, "name": subject.name, "icon": subject.icon},
                "current_level": _level_out(row.current_level) if row else None,
                "suggested_level": _level_out(row.suggested_level) if row else None,
                "quizzes_completed": len(subject_attempts),
                "accuracy": _accuracy(subject_attempts),
            }
        )

    return {
        "streak": {
            "current": user.current_streak,
            "longest": user.longest_streak,
            "last_quiz_date": user.last_quiz_date,
        },
        "overall": {
            "total_quizzes": len(first_attempts),
            "total_questions": sum(a.total_questions for a in first_attempts),
            "overall_accuracy": _accuracy(first_attempts),
            "quizzes_this_week": attempts.count_first_attempts_since(user.id, week_ago),
        },
        "recent_activity": [
            {
                "attempt_id": a.id,
                "quiz_id": a.quiz_id,
                "topic": a.quiz.topic,
                "subject": a.quiz.subject.name,
                "level": a.quiz.level.name,
                "score": a.score,
                "total_questions": a.total_questions,
                "completed_at": a.completed_at,
                "is_first_attempt": a.is_first_attempt,
            }
            for a in attempts.recent(user.id)
        ],
        "subject_stats": subject_stats,
    }
