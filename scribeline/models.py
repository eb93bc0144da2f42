import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text, func

from scribeline.database import Base

PROVIDERS = ("gemini", "groq", "openai", "xai")

MEETING_PROCESSING = "processing"
MEETING_COMPLETED = "completed"
MEETING_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class UsageRecord(Base):
    """One row per attempted provider call. Never updated or deleted."""

    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    endpoint = Column(String(100), nullable=True)
    tokens_used = Column(Integer, nullable=False, default=0)
    request_count = Column(Integer, nullable=False, default=1)
    success = Column(Boolean, nullable=False)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class RateLimitRecord(Base):
    __tablename__ = "user_rate_limits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), unique=True, nullable=False)
    tier = Column(String(20), nullable=False, default="free")

    gemini_rpm = Column(Integer, nullable=True)
    gemini_rpd = Column(Integer, nullable=True)
    groq_rpm = Column(Integer, nullable=True)
    groq_rpd = Column(Integer, nullable=True)
    openai_rpm = Column(Integer, nullable=True)
    openai_rpd = Column(Integer, nullable=True)
    xai_rpm = Column(Integer, nullable=True)
    xai_rpd = Column(Integer, nullable=True)

    credits_used = Column(Integer, nullable=False, default=0)
    monthly_credits = Column(Integer, nullable=False, default=0)
    credits_period = Column(String(7), nullable=True)  # YYYY-MM
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def rpm_for(self, provider: str) -> int | None:
        return getattr(self, f"{provider}_rpm", None)

    def rpd_for(self, provider: str) -> int | None:
        return getattr(self, f"{provider}_rpd", None)


class UserSettings(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), unique=True, nullable=False)
    tier = Column(String(20), nullable=False, default="free")
    selected_provider = Column(String(20), nullable=True)
    prefer_own_key = Column(Boolean, default=False)

    # Fernet ciphertext, never plaintext
    gemini_api_key = Column(Text, nullable=True)
    groq_api_key = Column(Text, nullable=True)
    openai_api_key = Column(Text, nullable=True)
    xai_api_key = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def encrypted_key_for(self, provider: str) -> str | None:
        return getattr(self, f"{provider}_api_key", None)


class Meeting(Base):
    __tablename__ = "meetings"

    id = Column(String(32), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="Processing...")
    audio_url = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=MEETING_PROCESSING)
    attempt = Column(Integer, nullable=False, default=1)

    transcript = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)
    action_items = Column(JSON, default=list)
    key_topics = Column(JSON, default=list)
    sentiment = Column(String(20), nullable=True)

    input_tokens = Column(Integer, default=0)
    output_tokens = Column(Integer, default=0)
    total_tokens = Column(Integer, default=0)
    duration = Column(Float, nullable=True)
    duration_estimated = Column(Boolean, nullable=False, default=False)  # Derived from word count, not supplied

    provider = Column(String(20), nullable=True)
    model_used = Column(String(100), nullable=True)
    transcription_method = Column(String(20), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CreditTransaction(Base):
    """Credit movements: negative for usage, positive for plan grants."""

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String(20), nullable=False)  # usage, subscription
    description = Column(String(255), nullable=True)
    meeting_id = Column(String(32), nullable=True)
    model = Column(String(100), nullable=True)
    period = Column(String(7), nullable=True)  # YYYY-MM
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)


class ProcessingJob(Base):
    """Outbox row for one dispatched processing attempt."""

    __tablename__ = "processing_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    meeting_id = Column(String(32), nullable=False, index=True)
    attempt = Column(Integer, nullable=False)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(20), nullable=False)
    model = Column(String(100), nullable=True)
    method = Column(String(20), nullable=False)
    transcript = Column(Text, nullable=True)  # Browser transcript, when one was produced
    status = Column(String(20), nullable=False, default="queued")
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
