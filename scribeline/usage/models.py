from datetime import datetime

from pydantic import BaseModel


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: datetime
    error_message: str | None = None
    upgrade_prompt: bool = False


class ProviderUsage(BaseModel):
    today: int
    daily_limit: int
    remaining: int


class UsageStats(BaseModel):
    tier: str
    per_provider_usage: dict[str, ProviderUsage]
    credits_used: int
    monthly_credits: int
    tokens_this_month: int = 0
