"""Error kinds surfaced to API callers.

Each error carries an HTTP status and a stable ``code`` so clients can tell
the kinds apart without parsing messages. ``TopicRejectedError`` is the only
one a client is expected to recover from, by retrying with the suggested
topic.
"""

from typing import Any, Dict, Optional


class LevelQuizError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def extra(self) -> Dict[str, Any]:
        return {}

    def to_payload(self) -> Dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, **self.extra()}}


class NotFoundError(LevelQuizError):
    status_code = 404
    code = "not_found"


class UnauthenticatedError(LevelQuizError):
    status_code = 401
    code = "unauthenticated"


class UnauthorizedError(LevelQuizError):
    status_code = 403
    code = "unauthorized"


class AlreadyCompletedError(LevelQuizError):
    status_code = 409
    code = "already_completed"


class InvalidRequestError(LevelQuizError):
    status_code = 400
    code = "invalid_request"


class QuestionGenerationError(LevelQuizError):
    status_code = 502
    code = "generation_failed"


class GenerationTimeoutError(QuestionGenerationError):
    status_code = 504
    code = "generation_timeout"


class TopicRejectedError(LevelQuizError):
    status_code = 422
    code = "topic_rejected"

    def __init__(self, reason: str, suggested_topic: Optional[str] = None):
        super().__init__(f"Topic is not appropriate for this level: {reason}")
        self.reason = reason
        self.suggested_topic = suggested_topic

    def extra(self) -> Dict[str, Any]:
        return {"reason": self.reason, "suggested_topic": self.suggested_topic}
