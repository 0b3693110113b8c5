"""Database access for the placement flow.

Repositories do not commit; the request handler commits once the whole
operation has succeeded so nothing is persisted half-way.
"""

import json
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from levelquiz import models


class SubjectRepository:
    def __init__(self, session: Session):
        self.session = session

    def list(self) -> List[models.Subject]:
        return self.session.query(models.Subject).order_by(models.Subject.sort_order.asc()).all()

    def get(self, subject_id: int) -> Optional[models.Subject]:
        return self.session.get(models.Subject, subject_id)

    def levels(self, subject_id: int) -> List[models.Level]:
        return (
            self.session.query(models.Level)
            .filter(models.Level.subject_id == subject_id)
            .order_by(models.Level.sort_order.asc())
            .all()
        )

    def get_level(self, subject_id: int, level_id: int) -> Optional[models.Level]:
        return (
            self.session.query(models.Level)
            .filter(models.Level.id == level_id, models.Level.subject_id == subject_id)
            .first()
        )


class QuestionRepository:
    """The per-level question pool."""

    def __init__(self, session: Session):
        self.session = session

    def find_questions(self, subject_id: int, level_id: int) -> List[models.Question]:
        return (
            self.session.query(models.Question)
            .filter(models.Question.subject_id == subject_id, models.Question.level_id == level_id)
            .order_by(models.Question.id.asc())
            .all()
        )

    def count_questions(self, subject_id: int) -> int:
        return self.session.query(models.Question).filter(models.Question.subject_id == subject_id).count()


class AssessmentRepository:
    def __init__(self, session: Session):
        self.session = session

    def create(self, user_id: int, subject_id: int, questions: List[dict]) -> models.Assessment:
        assessment = models.Assessment(
            user_id=user_id,
            subject_id=subject_id,
            questions_json=json.dumps({"questions": questions}),
        )
        self.session.add(assessment)
        self.session.flush()
        return assessment

    def get(self, assessment_id: int) -> Optional[models.Assessment]:
        return self.session.get(models.Assessment, assessment_id)

    def list_for_user(self, user_id: int, subject_id: int) -> List[models.Assessment]:
        return (
            self.session.query(models.Assessment)
            .filter(models.Assessment.user_id == user_id, models.Assessment.subject_id == subject_id)
            .order_by(models.Assessment.created_at.desc(), models.Assessment.id.desc())
            .all()
        )

    def complete(
        self,
        assessment_id: int,
        *,
        answers: List[dict],
        scores: List[dict],
        suggested_level_id: Optional[int],
        completed_at: datetime,
    ) -> bool:
        """Write the result once; returns False if the assessment was already completed."""
        updated = (
            self.session.query(models.Assessment)
            .filter(models.Assessment.id == assessment_id, models.Assessment.completed_at.is_(None))
            .update(
                {
                    models.Assessment.answers_json: json.dumps({"answers": answers}),
                    models.Assessment.score_by_level_json: json.dumps({"scores": scores}),
                    models.Assessment.suggested_level_id: suggested_level_id,
                    models.Assessment.completed_at: completed_at,
                },
                synchronize_session=False,
            )
        )
        return updated == 1


class UserSubjectLevelRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: int, subject_id: int) -> Optional[models.UserSubjectLevel]:
        return (
            self.session.query(models.UserSubjectLevel)
            .filter(
                models.UserSubjectLevel.user_id == user_id,
                models.UserSubjectLevel.subject_id == subject_id,
            )
            .first()
        )

    def record_assessment(
        self,
        user_id: int,
        subject_id: int,
        suggested_level_id: int,
        assessed_at: datetime,
    ) -> models.UserSubjectLevel:
        # A first assessment also seeds the current level
        row = self.get(user_id, subject_id)
        if row:
            row.suggested_level_id = suggested_level_id
            row.last_assessed_at = assessed_at
        else:
            row = models.UserSubjectLevel(
                user_id=user_id,
                subject_id=subject_id,
                current_level_id=suggested_level_id,
                suggested_level_id=suggested_level_id,
                last_assessed_at=assessed_at,
            )
            self.session.add(row)
        self.session.flush()
        return row

    def set_current_level(self, user_id: int, subject_id: int, level_id: int) -> models.UserSubjectLevel:
        row = self.get(user_id, subject_id)
        if row:
            row.current_level_id = level_id
        else:
            row = models.UserSubjectLevel(user_id=user_id, subject_id=subject_id, current_level_id=level_id)
            self.session.add(row)
        self.session.flush()
        return row


class QuizRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, quiz_id: int) -> Optional[models.Quiz]:
        return self.session.get(models.Quiz, quiz_id)

    def search(
        self,
        *,
        subject_id: Optional[int] = None,
        level_id: Optional[int] = None,
        topic: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[List[models.Quiz], int]:
        """Newest quizzes first, filtered and paged; also returns the unpaged total."""
        query = self.session.query(models.Quiz)
        if subject_id is not None:
            query = query.filter(models.Quiz.subject_id == subject_id)
        if level_id is not None:
            query = query.filter(models.Quiz.level_id == level_id)
        if topic:
            query = query.filter(models.Quiz.topic.contains(topic, autoescape=True))

        total = query.count()
        rows = (
            query.order_by(models.Quiz.created_at.desc(), models.Quiz.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total


class AttemptRepository:
    def __init__(self, session: Session):
        self.session = session

    def count_for_quiz(self, quiz_id: int, user_id: int) -> int:
        return (
            self.session.query(models.Attempt)
            .filter(models.Attempt.quiz_id == quiz_id, models.Attempt.user_id == user_id)
            .count()
        )

    def first_attempts(self, user_id: int, subject_id: Optional[int] = None) -> List[models.Attempt]:
        query = self.session.query(models.Attempt).filter(
            models.Attempt.user_id == user_id,
            models.Attempt.is_first_attempt.is_(True),
        )
        if subject_id is not None:
            query = query.join(models.Quiz).filter(models.Quiz.subject_id == subject_id)
        return query.all()

    def count_first_attempts_since(self, user_id: int, since: datetime) -> int:
        return (
            self.session.query(models.Attempt)
            .filter(
                models.Attempt.user_id == user_id,
                models.Attempt.is_first_attempt.is_(True),
                models.Attempt.completed_at >= since,
            )
            .count()
        )

    def recent(self, user_id: int, limit: int = 5) -> List[models.Attempt]:
        return (
            self.session.query(models.Attempt)
            .filter(models.Attempt.user_id == user_id)
            .order_by(models.Attempt.completed_at.desc(), models.Attempt.id.desc())
            .limit(limit)
            .all()
        )
