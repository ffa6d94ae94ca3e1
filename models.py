import datetime
import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class UserPlan(str, enum.Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"


class SummaryStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)  # stored lowercased
    hashed_password = Column(String, nullable=True)  # None for federated-only accounts
    name = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    plan = Column(Enum(UserPlan, name="user_plan"), nullable=False, default=UserPlan.FREE)
    # Never negative; only changed through CreditLedger's conditional updates
    credits = Column(Integer, nullable=False, default=0)
    supabase_id = Column(String, unique=True, nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.datetime.utcnow)
    updated_at = Column(
        DateTime, nullable=False, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow
    )
    last_login_at = Column(DateTime, nullable=True)

    summaries = relationship(
        "Summary", back_populates="owner", cascade="all, delete-orphan", passive_deletes=True
    )
    refresh_tokens = relationship(
        "RefreshToken", back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=_uuid)
    token = Column(String, unique=True, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.datetime.utcnow)
    revoked = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="refresh_tokens")


class Summary(Base):
    __tablename__ = "summaries"

    id = Column(String(36), primary_key=True, default=_uuid)
    title = Column(String, nullable=False)
    key_points = Column(JSON, nullable=False, default=list)
    full_summary = Column(Text, nullable=False, default="")
    tags = Column(JSON, nullable=False, default=list)
    status = Column(
        Enum(SummaryStatus, name="summary_status"), nullable=False, default=SummaryStatus.PENDING
    )

    # Denormalized video metadata
    video_id = Column(String, nullable=False, index=True)
    video_title = Column(String, nullable=False)
    channel_name = Column(String, nullable=False)
    video_duration = Column(String, nullable=True)
    video_url = Column(String, nullable=False)
    thumbnail_url = Column(String, nullable=True)

    transcript = Column(JSON, nullable=True)  # list of segments as sent by the client
    transcript_text = Column(Text, nullable=True)  # segment texts joined by single spaces

    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.datetime.utcnow, index=True)
    updated_at = Column(
        DateTime, nullable=False, default=datetime.datetime.utcnow, onupdate=datetime.datetime.utcnow
    )

    owner = relationship("User", back_populates="summaries")

    __table_args__ = (
        # At most one canonical COMPLETED summary per (user, video)
        Index(
            "uq_summaries_user_video_completed",
            "user_id",
            "video_id",
            unique=True,
            postgresql_where=text("status = 'COMPLETED'"),
            sqlite_where=text("status = 'COMPLETED'"),
        ),
    )
