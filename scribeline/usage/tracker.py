from datetime import datetime, timezone

from sqlalchemy import select

from scribeline.models import CreditTransaction, RateLimitRecord
from scribeline.observability.logger import get_logger
from scribeline.usage.ledger import UsageLedger

log = get_logger("usage")

RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageTracker:
    """Records the outcome of every provider attempt.

    Accounting is a side channel: a failed write is logged and swallowed so
    the caller's flow never depends on it.
    """

    def __init__(self, ledger: UsageLedger, session_factory=None, clock=None):
        self.ledger = ledger
        self.session_factory = session_factory or ledger.session_factory
        self.clock = clock or _utcnow

    async def record(
        self,
        user_id: str,
        provider: str,
        success: bool,
        endpoint: str = None,
        tokens_used: int = 0,
        error_code: str = None,
        error_message: str = None,
    ):
        try:
            await self.ledger.append(
                user_id=user_id,
                provider=provider,
                success=success,
                endpoint=endpoint,
                tokens_used=tokens_used,
                error_code=error_code,
                error_message=error_message[:1000] if error_message else None,
                created_at=self.clock(),
            )
        except Exception as e:
            log.error("usage_track_failed", user_id=user_id, provider=provider,
                      endpoint=endpoint, error=str(e))
            return
        log.info("usage_tracked", user_id=user_id, provider=provider, endpoint=endpoint,
                 success=success, tokens=tokens_used, error_code=error_code)

    async def record_rejection(self, user_id: str, provider: str, endpoint: str, message: str):
        await self.record(
            user_id=user_id,
            provider=provider,
            success=False,
            endpoint=endpoint,
            error_code=RATE_LIMIT_EXCEEDED,
            error_message=message,
        )

    async def charge_credits(self, user_id: str, amount: int, meeting_id: str = None, model: str = None):
        """Add to the monthly credit counter, rolling it over on a new month.

        Each charge also lands in `credit_transactions` as a negative usage row.
        """
        if amount <= 0:
            return
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(RateLimitRecord).where(RateLimitRecord.user_id == user_id)
                )
                record = result.scalar_one_or_none()
                if record is None:
                    log.warning("credit_charge_no_record", user_id=user_id, amount=amount)
                    return
                current_period = self.clock().strftime("%Y-%m")
                if record.credits_period and record.credits_period != current_period:
                    record.credits_used = 0
                    log.info("credits_month_reset", user_id=user_id, period=current_period)
                record.credits_period = current_period
                record.credits_used = (record.credits_used or 0) + amount
                session.add(CreditTransaction(
                    user_id=user_id,
                    amount=-amount,
                    type="usage",
                    description=f"Transcription with {model or 'default model'}",
                    meeting_id=meeting_id,
                    model=model,
                    period=current_period,
                    created_at=self.clock(),
                ))
                await session.commit()
                log.info("credits_charged", user_id=user_id, amount=amount, meeting_id=meeting_id,
                         credits_used=record.credits_used)
        except Exception as e:
            log.error("credit_charge_failed", user_id=user_id, amount=amount, error=str(e))

    async def credit_history(self, user_id: str, limit: int = 50) -> list[dict]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                .limit(limit)
            )
            return [
                {
                    "amount": t.amount,
                    "type": t.type,
                    "description": t.description,
                    "meeting_id": t.meeting_id,
                    "model": t.model,
                    "created_at": t.created_at.isoformat() if t.created_at else None,
                }
                for t in result.scalars().all()
            ]
