from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite:///./levelquiz.db", validation_alias="DATABASE_URL")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-5", validation_alias="OPENAI_MODEL")
    # Seconds before an in-flight generation request is abandoned
    llm_timeout_seconds: float = Field(default=60.0, validation_alias="LLM_TIMEOUT_SECONDS")

    jwt_secret: str = Field(default="change-me", validation_alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")

    # "pooled" draws from stored questions per level, "fixed_total" generates everything
    assessment_policy: Literal["pooled", "fixed_total"] = Field(default="pooled", validation_alias="ASSESSMENT_POLICY")
    assessment_total_questions: int = Field(default=18, validation_alias="ASSESSMENT_TOTAL_QUESTIONS")
    assessment_questions_per_level: int = Field(default=3, validation_alias="ASSESSMENT_QUESTIONS_PER_LEVEL")
    passing_percentage: float = Field(default=70.0, validation_alias="PASSING_PERCENTAGE")

    quiz_min_questions: int = Field(default=10, validation_alias="QUIZ_MIN_QUESTIONS")
    quiz_max_questions: int = Field(default=20, validation_alias="QUIZ_MAX_QUESTIONS")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
