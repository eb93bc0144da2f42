from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from scribeline.config import Settings, settings
from scribeline.errors import ValidationFailure
from scribeline.models import PROVIDERS, CreditTransaction, Meeting, RateLimitRecord, UserSettings
from scribeline.observability.logger import get_logger
from scribeline.usage.ledger import UsageLedger, to_utc
from scribeline.usage.models import ProviderUsage, RateLimitResult, UsageStats

log = get_logger("rate_limit")

# Caps per tier, applied to every provider. Plan changes rewrite the record.
TIER_LIMITS = {
    "free": {"rpm": 10, "rpd": 100, "monthly_credits": 60},
    "pro": {"rpm": 60, "rpd": 1000, "monthly_credits": 1200},
    "unlimited": {"rpm": 600, "rpd": 100_000, "monthly_credits": 0},  # 0 = no credit cap
}

MINUTE_WINDOW = timedelta(seconds=60)
FIRST_USE_RESET = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitPolicy:
    """Per-user, per-provider request caps over a minute and a day window.

    Counts come from the usage ledger and are re-read on every check; nothing
    is cached between requests. Check-then-insert is not atomic, so two
    concurrent requests can both pass right at the cap.
    """

    def __init__(self, session_factory, ledger: UsageLedger, config: Settings = settings, clock=None):
        self.session_factory = session_factory
        self.ledger = ledger
        self.config = config
        self.clock = clock or _utcnow
        self.tz = ZoneInfo(config.rate_limit_timezone)

    async def check(self, user_id: str, provider: str) -> RateLimitResult:
        if provider not in PROVIDERS:
            raise ValidationFailure(f"Unknown provider: {provider}")

        now = to_utc(self.clock())
        record = await self._load(user_id)
        if record is None:
            record = await self._create_default(user_id)
            return RateLimitResult(
                allowed=True,
                remaining=record.rpd_for(provider) or self.config.default_rpd,
                reset_at=now + FIRST_USE_RESET,
            )

        upgrade_prompt = record.tier == "free"

        rpm_limit = record.rpm_for(provider) or self.config.default_rpm
        minute_count = await self.ledger.count_since(user_id, provider, now - MINUTE_WINDOW)
        if minute_count >= rpm_limit:
            log.warning("rate_limit_exceeded", user_id=user_id, provider=provider,
                        window="minute", count=minute_count, limit=rpm_limit)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=now + MINUTE_WINDOW,
                error_message=f"Rate limit exceeded: {rpm_limit} requests per minute. Please wait.",
                upgrade_prompt=upgrade_prompt,
            )

        start_of_day, next_midnight = self.day_bounds(now)
        rpd_limit = record.rpd_for(provider) or self.config.default_rpd
        daily_count = await self.ledger.count_since(user_id, provider, start_of_day)
        if daily_count >= rpd_limit:
            log.warning("rate_limit_exceeded", user_id=user_id, provider=provider,
                        window="day", count=daily_count, limit=rpd_limit)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_at=next_midnight,
                error_message=f"Daily limit exceeded: {rpd_limit} requests per day. Resets at midnight.",
                upgrade_prompt=upgrade_prompt,
            )

        return RateLimitResult(
            allowed=True,
            remaining=rpd_limit - daily_count,
            reset_at=next_midnight,
        )

    def day_bounds(self, now: datetime) -> tuple[datetime, datetime]:
        """Start of the current local day and the next local midnight, in UTC."""
        local_date = to_utc(now).astimezone(self.tz).date()
        start = datetime.combine(local_date, time.min, tzinfo=self.tz)
        end = datetime.combine(local_date + timedelta(days=1), time.min, tzinfo=self.tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    async def apply_tier(self, user_id: str, tier: str) -> dict:
        """Rewrite a user's caps for a plan change, creating the record if needed."""
        if tier not in TIER_LIMITS:
            raise ValidationFailure(f"Unknown tier: {tier}")
        limits = TIER_LIMITS[tier]
        async with self.session_factory() as session:
            result = await session.execute(
                select(RateLimitRecord).where(RateLimitRecord.user_id == user_id)
            )
            record = result.scalar_one_or_none()
            if record is None:
                record = RateLimitRecord(user_id=user_id, credits_used=0)
                session.add(record)
            record.tier = tier
            record.monthly_credits = limits["monthly_credits"]
            for provider in PROVIDERS:
                setattr(record, f"{provider}_rpm", limits["rpm"])
                setattr(record, f"{provider}_rpd", limits["rpd"])

            # Plan gating reads the tier from user settings
            result = await session.execute(select(UserSettings).where(UserSettings.user_id == user_id))
            user_settings = result.scalar_one_or_none()
            if user_settings is None:
                user_settings = UserSettings(user_id=user_id)
                session.add(user_settings)
            user_settings.tier = tier

            if limits["monthly_credits"]:
                session.add(CreditTransaction(
                    user_id=user_id,
                    amount=limits["monthly_credits"],
                    type="subscription",
                    description=f"{tier.capitalize()} plan monthly credits",
                    period=to_utc(self.clock()).strftime("%Y-%m"),
                    created_at=to_utc(self.clock()),
                ))
            await session.commit()
        log.info("tier_applied", user_id=user_id, tier=tier)
        return {"user_id": user_id, "tier": tier, **limits}

    async def get_usage_stats(self, user_id: str) -> UsageStats:
        now = to_utc(self.clock())
        start_of_day, _ = self.day_bounds(now)
        record = await self._load(user_id)

        tier = record.tier if record else "free"
        per_provider = {}
        for provider in PROVIDERS:
            if record is not None:
                daily_limit = record.rpd_for(provider) or self.config.default_rpd
            else:
                daily_limit = TIER_LIMITS["free"]["rpd"]
            today = await self.ledger.count_since(user_id, provider, start_of_day)
            per_provider[provider] = ProviderUsage(
                today=today,
                daily_limit=daily_limit,
                remaining=max(0, daily_limit - today),
            )

        credits_used = 0
        if record is not None and record.credits_period in (None, now.strftime("%Y-%m")):
            credits_used = record.credits_used or 0

        return UsageStats(
            tier=tier,
            per_provider_usage=per_provider,
            credits_used=credits_used,
            monthly_credits=record.monthly_credits if record else TIER_LIMITS["free"]["monthly_credits"],
            tokens_this_month=await self._tokens_this_month(user_id, now),
        )

    async def credits_remaining(self, user_id: str) -> int | None:
        """Credits left this month, or None when the plan has no credit cap."""
        now = to_utc(self.clock())
        record = await self._load(user_id)
        if record is None:
            return TIER_LIMITS["free"]["monthly_credits"]
        if not record.monthly_credits:
            return None
        used = 0
        if record.credits_period in (None, now.strftime("%Y-%m")):
            used = record.credits_used or 0
        return max(0, record.monthly_credits - used)

    async def _tokens_this_month(self, user_id: str, now: datetime) -> int:
        start_of_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.coalesce(func.sum(Meeting.total_tokens), 0)).where(
                    Meeting.user_id == user_id,
                    Meeting.created_at >= start_of_month,
                )
            )
            return int(result.scalar() or 0)

    async def _load(self, user_id: str) -> RateLimitRecord | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(RateLimitRecord).where(RateLimitRecord.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def _create_default(self, user_id: str) -> RateLimitRecord:
        limits = TIER_LIMITS["free"]
        record = RateLimitRecord(
            user_id=user_id,
            tier="free",
            credits_used=0,
            monthly_credits=limits["monthly_credits"],
        )
        for provider in PROVIDERS:
            setattr(record, f"{provider}_rpm", limits["rpm"])
            setattr(record, f"{provider}_rpd", limits["rpd"])

        async with self.session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # A concurrent first request created it; keep theirs
                await session.rollback()
                existing = await self._load(user_id)
                if existing is not None:
                    return existing
                raise
        log.info("rate_limit_record_created", user_id=user_id, tier="free")
        return record
