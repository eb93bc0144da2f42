"""
Groq provider: Whisper transcription plus Llama-family chat models for
summaries and Q&A.
"""
from groq import AsyncGroq

from scribeline.errors import ProviderError
from scribeline.llm.base import (
    ANALYSIS_PROMPT,
    ASK_SYSTEM_PROMPT,
    Analysis,
    Answer,
    Capabilities,
    TokenUsage,
    Transcript,
    TranscriptionProvider,
    classify_error,
    parse_analysis,
)
from scribeline.observability.logger import get_logger
from scribeline.storage.audio import AudioFile

log = get_logger("llm.groq")

GROQ_CHAT_MODELS = [
    "llama-3.3-70b-versatile",
    "llama-4-maverick-17b-128e-instruct",
    "deepseek-r1-distill-llama-70b",
    "qwen-qwq-32b",
]
GROQ_WHISPER_MODELS = ["whisper-large-v3", "whisper-large-v3-turbo"]

DEFAULT_CHAT_MODEL = "llama-3.3-70b-versatile"
DEFAULT_WHISPER_MODEL = "whisper-large-v3-turbo"


def _is_whisper(model: str | None) -> bool:
    return bool(model) and model.startswith("whisper")


def _usage(response) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if not usage:
        return TokenUsage()
    return TokenUsage(
        input_tokens=usage.prompt_tokens or 0,
        output_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


class GroqProvider(TranscriptionProvider):
    name = "groq"
    capabilities = Capabilities(transcribe=True, analyze=True, ask=True)
    default_model = DEFAULT_CHAT_MODEL
    models = GROQ_CHAT_MODELS + GROQ_WHISPER_MODELS

    def __init__(self, api_key: str, max_chars: int = 50_000):
        super().__init__(api_key)
        self.max_chars = max_chars
        self._client = None

    def _get_client(self) -> AsyncGroq:
        if self._client is None:
            if not self.api_key:
                raise ProviderError("Groq API key not configured", code="AUTH_ERROR", provider=self.name)
            self._client = AsyncGroq(api_key=self.api_key)
        return self._client

    async def transcribe(self, audio: AudioFile, model: str = None) -> Transcript:
        client = self._get_client()
        whisper_model = model if _is_whisper(model) else DEFAULT_WHISPER_MODEL
        try:
            result = await client.audio.transcriptions.create(
                file=(audio.name, audio.data),
                model=whisper_model,
                response_format="json",
                temperature=0.0,
            )
        except Exception as e:
            log.error("groq_transcribe_error", error=str(e), model=whisper_model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e

        text = getattr(result, "text", result)
        # Whisper bills by audio seconds, not tokens
        return Transcript(text=(text or "").strip(), model=whisper_model, provider=self.name)

    async def analyze(self, transcript: str, model: str = None) -> Analysis:
        client = self._get_client()
        chat_model = model if model and not _is_whisper(model) else DEFAULT_CHAT_MODEL
        try:
            response = await client.chat.completions.create(
                model=chat_model,
                messages=[
                    {"role": "system", "content": ANALYSIS_PROMPT},
                    {"role": "user", "content": transcript[: self.max_chars]},
                ],
                response_format={"type": "json_object"},
            )
        except Exception as e:
            log.error("groq_analyze_error", error=str(e), model=chat_model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e

        content = response.choices[0].message.content if response.choices else None
        return parse_analysis(content, chat_model, self.name, _usage(response))

    async def ask(self, context: str, question: str, model: str = None) -> Answer:
        client = self._get_client()
        chat_model = model if model and not _is_whisper(model) else DEFAULT_CHAT_MODEL
        try:
            response = await client.chat.completions.create(
                model=chat_model,
                messages=[
                    {"role": "system", "content": ASK_SYSTEM_PROMPT.format(context=context)},
                    {"role": "user", "content": question},
                ],
            )
        except Exception as e:
            log.error("groq_ask_error", error=str(e), model=chat_model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e

        content = response.choices[0].message.content if response.choices else None
        return Answer(
            content=content or "No answer generated.",
            model=chat_model,
            provider=self.name,
            usage=_usage(response),
        )
