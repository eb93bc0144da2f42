from datetime import datetime, timezone

from sqlalchemy import func, select

from scribeline.models import UsageRecord


def to_utc(value: datetime) -> datetime:
    """Normalise a timestamp to aware UTC; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UsageLedger:
    """Append-only store of provider call attempts."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def append(
        self,
        user_id: str,
        provider: str,
        success: bool,
        endpoint: str = None,
        tokens_used: int = 0,
        error_code: str = None,
        error_message: str = None,
        created_at: datetime = None,
    ) -> UsageRecord:
        record = UsageRecord(
            user_id=user_id,
            provider=provider,
            endpoint=endpoint,
            tokens_used=max(0, int(tokens_used or 0)),
            request_count=1,
            success=success,
            error_code=error_code,
            error_message=error_message,
            created_at=to_utc(created_at or datetime.now(timezone.utc)),
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
        return record

    async def count_since(self, user_id: str, provider: str, since: datetime) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count())
                .select_from(UsageRecord)
                .where(
                    UsageRecord.user_id == user_id,
                    UsageRecord.provider == provider,
                    UsageRecord.created_at >= to_utc(since),
                )
            )
            return result.scalar() or 0

    async def list_recent(self, user_id: str, limit: int = 50) -> list[dict]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(UsageRecord)
                .where(UsageRecord.user_id == user_id)
                .order_by(UsageRecord.created_at.desc(), UsageRecord.id.desc())
                .limit(limit)
            )
            return [
                {
                    "provider": r.provider,
                    "endpoint": r.endpoint,
                    "tokens_used": r.tokens_used,
                    "success": r.success,
                    "error_code": r.error_code,
                    "error_message": r.error_message,
                    "created_at": r.created_at.isoformat() if r.created_at else None,
                }
                for r in result.scalars().all()
            ]
