import json
from abc import ABC
from dataclasses import dataclass

from pydantic import BaseModel, Field

from scribeline.errors import ProviderError, UnsupportedOperationError
from scribeline.storage.audio import AudioFile

ANALYSIS_PROMPT = """You are an expert meeting assistant. Analyze the transcript and provide a summary.
Return ONLY valid JSON with this structure:
{
    "title": "Concise Meeting Title",
    "summary": "3-5 sentence summary",
    "action_items": ["Action item 1", "Action item 2"],
    "key_topics": ["Topic 1", "Topic 2"],
    "sentiment": "positive/neutral/negative"
}"""

TRANSCRIBE_PROMPT = (
    "Provide a verbatim transcript of this audio, properly formatted with 'Speaker X:' labels. "
    "If there is silence or no speech, return an empty string."
)

ASK_SYSTEM_PROMPT = "You are a helpful AI assistant. Answer the question based on the provided context.\nContext: {context}"


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class Transcript(BaseModel):
    text: str
    model: str
    provider: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class Analysis(BaseModel):
    summary: str
    action_items: list[str] = Field(default_factory=list)
    title: str | None = None
    key_topics: list[str] = Field(default_factory=list)
    sentiment: str = "neutral"
    model: str
    provider: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


class Answer(BaseModel):
    content: str
    model: str
    provider: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


@dataclass(frozen=True)
class Capabilities:
    transcribe: bool
    analyze: bool
    ask: bool

    def supports(self, operation: str) -> bool:
        return bool(getattr(self, operation, False))


class TranscriptionProvider(ABC):
    """Uniform capability surface over a transcription/LLM vendor.

    Adapters override only the operations their capability table enables;
    the rest fail fast with UnsupportedOperationError.
    """

    name: str = "base"
    capabilities = Capabilities(transcribe=False, analyze=False, ask=False)
    default_model: str | None = None
    models: list[str] = []

    def __init__(self, api_key: str):
        self.api_key = api_key

    def supports(self, operation: str) -> bool:
        return self.capabilities.supports(operation)

    def _unsupported(self, operation: str) -> UnsupportedOperationError:
        return UnsupportedOperationError(
            f"{operation.capitalize()} is not supported on {self.name}.", provider=self.name
        )

    async def transcribe(self, audio: AudioFile, model: str = None) -> Transcript:
        raise self._unsupported("transcribe")

    async def analyze(self, transcript: str, model: str = None) -> Analysis:
        raise self._unsupported("analyze")

    async def ask(self, context: str, question: str, model: str = None) -> Answer:
        raise self._unsupported("ask")

    @classmethod
    def get_models(cls) -> list[str]:
        if cls.models:
            return list(cls.models)
        return [cls.default_model] if cls.default_model else []


def parse_analysis(content: str | None, model: str, provider: str, usage: TokenUsage) -> Analysis:
    """Parse the JSON body every provider is asked to return for analysis."""
    if not content:
        raise ProviderError("No summary generated", code="INVALID_RESPONSE", provider=provider)
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ProviderError(f"Provider returned invalid JSON: {e}", code="INVALID_RESPONSE",
                            provider=provider) from e
    if not isinstance(data, dict):
        raise ProviderError("Provider returned a non-object analysis", code="INVALID_RESPONSE",
                            provider=provider)

    action_items = data.get("action_items") or []
    if isinstance(action_items, str):
        action_items = [action_items]
    return Analysis(
        summary=str(data.get("summary") or ""),
        action_items=[str(item) for item in action_items],
        title=data.get("title") or None,
        key_topics=[str(t) for t in (data.get("key_topics") or [])],
        sentiment=str(data.get("sentiment") or "neutral"),
        model=model,
        provider=provider,
        usage=usage,
    )


def classify_error(error: Exception) -> str:
    """Map an SDK exception onto a ledger error code."""
    if isinstance(error, ProviderError):
        return error.code
    status = getattr(error, "status_code", None) or getattr(error, "code", None)
    message = str(error).lower()
    if status == 429 or "429" in message or "quota" in message or "rate limit" in message:
        return "QUOTA_EXCEEDED"
    if status in (401, 403) or "api key" in message or "unauthorized" in message:
        return "AUTH_ERROR"
    if "timeout" in message or "timed out" in message:
        return "TIMEOUT"
    return "PROVIDER_ERROR"
