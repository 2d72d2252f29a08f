from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..config import StudyMode


class SubmitRequest(BaseModel):
    """Request body of the submission endpoint.

    `idempotency_token` はクライアント側で生成する不透明ID。同じトークンでの
    再送は常に最初の結果を返す。
    """

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "item_id": "schimmelreiter-012",
                    "candidate_text": "Es war ein Abend im Oktober, als der Wind vom Meer her kam.",
                    "idempotency_token": "2f0c8e4e-9d57-4c0e-9a8e-1d2b0f3f5a61",
                }
            ]
        }
    )

    item_id: str = Field(min_length=1, max_length=128)
    candidate_text: str = Field(min_length=1, description="The learner's imitation")
    idempotency_token: str = Field(min_length=1, max_length=128)

    @field_validator("item_id", "idempotency_token")
    @classmethod
    def _strip(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("must not be blank")
        return cleaned

    @field_validator("candidate_text")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("candidate_text must not be blank")
        return value


class SubScores(BaseModel):
    model_config = ConfigDict(extra="ignore")

    structure: float = Field(ge=0, le=100)
    vocabulary: float = Field(ge=0, le=100)
    rhythm: float = Field(ge=0, le=100)
    tone: float = Field(ge=0, le=100)


class GraderOutput(BaseModel):
    """Validated grader payload.

    The literary-critic prompt answers with `overall_accuracy` / `scores`;
    both spellings are accepted.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    accuracy: float = Field(
        ge=0,
        le=100,
        validation_alias=AliasChoices("accuracy", "overall_accuracy"),
    )
    sub_scores: SubScores = Field(validation_alias=AliasChoices("sub_scores", "scores"))
    feedback: str

    @field_validator("feedback")
    @classmethod
    def _require_feedback(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("feedback must not be empty")
        return cleaned


class ScheduleInfo(BaseModel):
    grade: int = Field(ge=1, le=4, description="1=Again, 2=Hard, 3=Good, 4=Easy")
    next_review_date: datetime
    interval_days: int = Field(ge=0)
    message: str


class SubmissionResult(BaseModel):
    accuracy: float
    sub_scores: SubScores
    feedback: str
    schedule: ScheduleInfo


class StudySettings(BaseModel):
    study_mode: StudyMode


class NextItemResponse(BaseModel):
    status: Literal["item", "caught_up", "exhausted", "all_attempted"]
    is_new: bool | None = None
    item: dict[str, object] | None = None
    card: dict[str, object] | None = None
    message: str | None = None


class StatsResponse(BaseModel):
    total_studied: int
    due_now: int
    average_reps: int
    by_state: dict[str, int]


class HistoryEntry(BaseModel):
    submission_id: str
    item_id: str
    created_at: datetime
    result: SubmissionResult


class HistoryResponse(BaseModel):
    items: list[HistoryEntry]
