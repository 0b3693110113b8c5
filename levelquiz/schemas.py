from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class GeneratedQuestion(BaseModel):
    id: str = ""
    question: str
    options: List[str] = Field(min_length=4, max_length=4)
    correct_answer: str
    explanation: str = ""

    @model_validator(mode="after")
    def correct_answer_is_an_option(self):
        if len(set(self.options)) != len(self.options):
            raise ValueError("Question options must be unique")
        if self.correct_answer not in self.options:
            raise ValueError("correct_answer must be one of the options")
        return self


class AssessmentQuestion(GeneratedQuestion):
    level: str
    level_id: int
    source_question_id: Optional[int] = None


class TopicJudgment(BaseModel):
    is_appropriate: bool
    reason: str = ""
    suggested_topic: Optional[str] = None


class Lesson(BaseModel):
    question_id: str
    lesson: str


class TopicSuggestion(BaseModel):
    topic: str
    reason: str


# API payloads


class AnswerIn(BaseModel):
    question_id: str
    selected_answer: str = ""


class SubmitAnswersRequest(BaseModel):
    answers: List[AnswerIn] = Field(default_factory=list)


class CreateQuizRequest(BaseModel):
    subject_id: int
    level_id: int
    topic: str = Field(min_length=1, max_length=255)
    question_count: int = 10
    time_limit_minutes: Optional[int] = Field(default=None, ge=1)

    @model_validator(mode="after")
    def topic_not_blank(self):
        if not self.topic.strip():
            raise ValueError("topic must not be blank")
        return self


class UpdateCurrentLevelRequest(BaseModel):
    level_id: int


class LevelOut(BaseModel):
    id: int
    name: str
    sort_order: int


class SubjectOut(BaseModel):
    id: int
    name: str
    icon: str
    levels: List[LevelOut]


class SubjectDetailOut(SubjectOut):
    question_pool_size: int


class QuestionOut(BaseModel):
    """A question as shown to a learner before grading."""

    id: str
    question: str
    options: List[str]
    level: Optional[str] = None
    level_id: Optional[int] = None


class LevelScoreOut(BaseModel):
    level_id: int
    level_name: str
    correct: int
    total: int


class GradedAnswerOut(BaseModel):
    question_id: str
    selected_answer: str
    is_correct: bool


class AssessmentOut(BaseModel):
    id: int
    subject_id: int
    created_at: datetime
    completed_at: Optional[datetime]
    questions: List[QuestionOut]
    suggested_level: Optional[LevelOut] = None
    scores: List[LevelScoreOut] = Field(default_factory=list)
    answers: List[GradedAnswerOut] = Field(default_factory=list)


class AssessmentSummaryOut(BaseModel):
    id: int
    created_at: datetime
    completed_at: Optional[datetime]
    suggested_level: Optional[LevelOut] = None


class AssessmentListOut(BaseModel):
    assessments: List[AssessmentSummaryOut]


class AssessmentResultOut(BaseModel):
    assessment_id: int
    scores: List[LevelScoreOut]
    suggested_level: Optional[LevelOut]
    answers: List[GradedAnswerOut]


class UserSubjectLevelOut(BaseModel):
    subject_id: int
    current_level: Optional[LevelOut]
    suggested_level: Optional[LevelOut]
    last_assessed_at: Optional[datetime]


class SubjectRefOut(BaseModel):
    id: int
    name: str
    icon: str


class CreatorOut(BaseModel):
    id: int
    display_name: str


class QuizOut(BaseModel):
    id: int
    subject_id: int
    level_id: int
    topic: str
    question_count: int
    time_limit_minutes: Optional[int]
    questions: List[QuestionOut]


class QuestionResultOut(BaseModel):
    question_id: str
    question: str
    options: List[str]
    selected_answer: str
    correct_answer: str
    is_correct: bool
    explanation: str


class StreakOut(BaseModel):
    current: int
    longest: int
    last_quiz_date: Optional[date]


class AttemptOut(BaseModel):
    attempt_id: int
    quiz_id: int
    score: int
    total_questions: int
    percentage: float
    is_first_attempt: bool
    question_results: List[QuestionResultOut]
    streak: StreakOut


class FeedbackOut(BaseModel):
    lessons: List[Lesson]
    suggestions: List[TopicSuggestion]


class QuizSummaryOut(BaseModel):
    id: int
    topic: str
    subject: SubjectRefOut
    level: LevelOut
    question_count: int
    time_limit_minutes: Optional[int]
    created_by: CreatorOut
    created_at: datetime
    attempt_count: int


class PaginationOut(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class QuizListOut(BaseModel):
    quizzes: List[QuizSummaryOut]
    pagination: PaginationOut


class OverallStatsOut(BaseModel):
    total_quizzes: int
    total_questions: int
    overall_accuracy: int
    quizzes_this_week: int


class RecentActivityOut(BaseModel):
    attempt_id: int
    quiz_id: int
    topic: str
    subject: str
    level: str
    score: int
    total_questions: int
    completed_at: datetime
    is_first_attempt: bool


class SubjectStatsOut(BaseModel):
    subject: SubjectRefOut
    current_level: Optional[LevelOut]
    suggested_level: Optional[LevelOut]
    quizzes_completed: int
    accuracy: int


class StatsOut(BaseModel):
    streak: StreakOut
    overall: OverallStatsOut
    recent_activity: List[RecentActivityOut]
    subject_stats: List[SubjectStatsOut]
