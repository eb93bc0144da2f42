from pydantic import BaseModel


class CreateMeetingRequest(BaseModel):
    audio_ref: str
    title: str | None = None
    duration: float | None = None
    provider: str | None = None
    model: str | None = None
    method: str = "server"  # server, browser
    browser_transcript: str | None = None  # Text produced on-device for the browser method


class ReprocessRequest(BaseModel):
    provider: str | None = None
    model: str | None = None


class AskRequest(BaseModel):
    question: str
    provider: str | None = None
    model: str | None = None


class ApiKeyUpdate(BaseModel):
    api_key: str | None = None  # Empty or null clears the stored key


class TierUpdate(BaseModel):
    tier: str  # free, pro, unlimited


class PreferencesUpdate(BaseModel):
    prefer_own_key: bool | None = None  # Paid plans: use the stored key instead of credits
    selected_provider: str | None = None
