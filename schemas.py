"""
Request and response models. JSON on the wire is camelCase.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, HttpUrl, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from models import SummaryStatus, UserPlan


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


_url_adapter = TypeAdapter(HttpUrl)


def _validate_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        _url_adapter.validate_python(value)
    except ValidationError:
        raise ValueError("Invalid URL")
    return value


# --- Transcript / video -----------------------------------------------------


class TranscriptSegment(CamelModel):
    timestamp: str = Field(min_length=1)
    text: str = Field(min_length=1)
    start_seconds: Optional[float] = None
    end_seconds: Optional[float] = None


class VideoMetadata(CamelModel):
    video_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    channel_name: str = Field(min_length=1)
    duration: Optional[str] = None
    url: str
    thumbnail_url: Optional[str] = None
    description: Optional[str] = None
    published_at: Optional[str] = None
    view_count: Optional[int] = None
    like_count: Optional[int] = None

    @field_validator("url", "thumbnail_url")
    @classmethod
    def _check_urls(cls, value: Optional[str]) -> Optional[str]:
        return _validate_url(value)


# --- Summaries ----------------------------------------------------------------


class GenerateSummaryRequest(CamelModel):
    transcript: List[TranscriptSegment] = Field(min_length=1)
    video_metadata: VideoMetadata


class SaveSummaryRequest(CamelModel):
    id: Optional[str] = None
    title: str = Field(min_length=1, max_length=200)
    key_points: List[str] = Field(min_length=1)
    full_summary: str = Field(min_length=1, max_length=5000)
    tags: List[str] = Field(default_factory=list, max_length=10)
    video_metadata: VideoMetadata
    transcript: Optional[List[TranscriptSegment]] = None
    transcript_text: Optional[str] = None


class UpdateSummaryRequest(CamelModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    key_points: Optional[List[str]] = None
    full_summary: Optional[str] = Field(default=None, min_length=1, max_length=5000)
    tags: Optional[List[str]] = Field(default=None, max_length=10)


class SummaryQuery(CamelModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)
    search: Optional[str] = Field(default=None, max_length=100)
    status: Optional[SummaryStatus] = None
    video_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort_by: Literal["createdAt", "title", "videoTitle"] = "createdAt"
    sort_order: Literal["asc", "desc"] = "desc"


class SummaryVideoMetadata(CamelModel):
    video_id: str
    title: str
    channel_name: str
    duration: Optional[str] = None
    url: str
    thumbnail_url: Optional[str] = None


class SummaryOut(CamelModel):
    id: str
    title: str
    key_points: List[str]
    full_summary: str
    tags: List[str]
    status: SummaryStatus
    video_metadata: SummaryVideoMetadata
    transcript: Optional[List[Dict[str, Any]]] = None
    transcript_text: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    saved: bool = True


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class PaginatedSummaries(CamelModel):
    data: List[SummaryOut]
    pagination: Pagination


class SummaryStats(CamelModel):
    total_summaries: int
    summaries_this_month: int
    completed_summaries: int
    failed_summaries: int
    average_summary_length: int


class AISummaryPayload(CamelModel):
    """Structured result the LLM must return. Strict: no coercion of wrong types."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, strict=True)

    key_points: List[str] = Field(min_length=1)
    full_summary: str = Field(min_length=1)
    tags: List[str]


# --- Auth / users -------------------------------------------------------------


class RegisterRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(min_length=1)


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class UserOut(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    avatar: Optional[str] = None
    plan: UserPlan
    credits: int
    email_verified: bool
    supabase_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class LoginResponse(CamelModel):
    user: UserOut
    access_token: str
    refresh_token: str
    expires_at: int  # epoch milliseconds of the access token expiry


class UpdateProfileRequest(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    avatar: Optional[str] = None

    @field_validator("avatar")
    @classmethod
    def _check_avatar(cls, value: Optional[str]) -> Optional[str]:
        return _validate_url(value)


class AddCreditsRequest(CamelModel):
    credits: int


class UpgradePlanRequest(CamelModel):
    plan: UserPlan


class CreditBalance(CamelModel):
    new_balance: int


class UserStats(CamelModel):
    total_summaries: int
    summaries_this_month: int
    credits_used: int
    credits_remaining: int
    plan_status: UserPlan
    joined_date: datetime
