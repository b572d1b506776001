from datetime import datetime, timezone
from typing import Any, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    conlist,
    constr,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )


class ResultMeta(_CamelModel):
    source: Optional[str] = None
    analysis_id: Optional[str] = None
    submitted_at: Optional[str] = None


class AnalysisResult(_CamelModel):
    """Canonical analysis result as stored, pushed and polled."""

    id: str
    company_name: str
    vacancy_title: str
    ideal_candidate_image_url: str = Field(min_length=1)
    # html content format
    analysis_paragraph: Optional[str] = None
    analysis_tips: Optional[str] = None
    # list content format
    tips: Optional[List[str]] = None
    score: Optional[int] = Field(default=None, ge=0, le=100)
    timestamp: datetime
    meta: Optional[ResultMeta] = None

    @field_validator("timestamp")
    @classmethod
    def as_utc(cls, v: datetime) -> datetime:
        # Naive timestamps are server-clock UTC.
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Inbound webhook payload (strict schema)
# ---------------------------------------------------------------------------

NonEmptyStr = constr(min_length=1)


def has_text(value: Any) -> bool:
    if isinstance(value, list):
        return any(isinstance(item, str) and item.strip() for item in value)
    return isinstance(value, str) and bool(value.strip())


class WebhookMeta(BaseModel):
    source: Optional[str] = None
    analysis_id: Optional[str] = None
    submitted_at: Optional[str] = None


class WebhookPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    company_name: NonEmptyStr
    vacancy_title: NonEmptyStr
    ideal_candidate_image_url: NonEmptyStr
    # HTML content arrives in either field depending on the producer revision;
    # older producers send ``tips`` as a plain list of strings.
    analysis_content: Optional[NonEmptyStr] = None
    tips: Optional[Union[NonEmptyStr, conlist(str, min_length=1)]] = None
    # Left untyped so booleans and junk reach score coercion unconverted.
    score: Any = None
    score_alt: Any = Field(default=None, alias="Score")
    meta: Optional[WebhookMeta] = None

    @model_validator(mode="after")
    def require_content(self) -> "WebhookPayload":
        if not (has_text(self.analysis_content) or has_text(self.tips)):
            raise ValueError("Either analysis_content or tips must be provided")
        return self


class WebhookResponse(BaseModel):
    success: bool
    analysisId: str
    message: str
    fallback: bool
