from datetime import datetime

from pydantic import BaseModel

from scribeline.errors import PolicyRejection


class JobResult(BaseModel):
    success: bool
    meeting_id: str | None = None
    error: str | None = None
    upgrade_prompt: bool = False
    reset_at: datetime | None = None
    warning: str | None = None

    @classmethod
    def failure(cls, error: str, **kwargs) -> "JobResult":
        return cls(success=False, error=error, **kwargs)

    @classmethod
    def rejected(cls, rejection: PolicyRejection, **kwargs) -> "JobResult":
        return cls(
            success=False,
            error=str(rejection),
            upgrade_prompt=rejection.upgrade_prompt,
            reset_at=rejection.reset_at,
            **kwargs,
        )


class MeetingStatus(BaseModel):
    meeting_id: str
    status: str
    attempt: int
    has_transcript: bool
    summary: str | None = None


class AskResult(BaseModel):
    success: bool
    answer: str | None = None
    error: str | None = None
    upgrade_prompt: bool = False
    reset_at: datetime | None = None
