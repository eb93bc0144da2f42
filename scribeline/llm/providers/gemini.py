"""
Gemini provider on the google-genai SDK.

Audio goes through the Files API: upload, wait for the file to leave the
PROCESSING state, then reference it from a generate_content call.
"""
import asyncio
import io

from google import genai
from google.genai import types

from scribeline.errors import ProviderError, ProviderTimeoutError
from scribeline.llm.base import (
    ANALYSIS_PROMPT,
    ASK_SYSTEM_PROMPT,
    TRANSCRIBE_PROMPT,
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

log = get_logger("llm.gemini")

GEMINI_MODELS = ["gemini-2.0-flash", "gemini-2.5-flash", "gemini-2.5-pro"]


def _state_name(file) -> str:
    state = getattr(file, "state", None)
    return getattr(state, "name", state) or ""


def _usage(response) -> TokenUsage:
    meta = getattr(response, "usage_metadata", None)
    if not meta:
        return TokenUsage()
    return TokenUsage(
        input_tokens=meta.prompt_token_count or 0,
        output_tokens=meta.candidates_token_count or 0,
        total_tokens=meta.total_token_count or 0,
    )


class GeminiProvider(TranscriptionProvider):
    name = "gemini"
    capabilities = Capabilities(transcribe=True, analyze=True, ask=True)
    default_model = "gemini-2.0-flash"
    models = GEMINI_MODELS

    def __init__(
        self,
        api_key: str,
        poll_interval: float = 2.0,
        max_poll_attempts: int = 150,
        max_chars: int = 50_000,
    ):
        super().__init__(api_key)
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.max_chars = max_chars
        self._client = None

    def _get_client(self) -> genai.Client:
        if self._client is None:
            if not self.api_key:
                raise ProviderError("Gemini API key not configured", code="AUTH_ERROR", provider=self.name)
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def wait_until_active(self, file):
        """Poll an uploaded file until it is ACTIVE, at most max_poll_attempts times."""
        client = self._get_client()
        attempts = 0
        while _state_name(file) == "PROCESSING":
            if attempts >= self.max_poll_attempts:
                raise ProviderTimeoutError(
                    f"Uploaded audio still processing after {attempts} checks", provider=self.name
                )
            attempts += 1
            await asyncio.sleep(self.poll_interval)
            file = await client.aio.files.get(name=file.name)

        if _state_name(file) == "FAILED":
            raise ProviderError("Gemini could not process the uploaded audio", provider=self.name)
        log.info("gemini_file_ready", file=file.name, polls=attempts)
        return file

    async def transcribe(self, audio: AudioFile, model: str = None) -> Transcript:
        client = self._get_client()
        model = model or self.default_model
        uploaded = None
        try:
            uploaded = await client.aio.files.upload(
                file=io.BytesIO(audio.data),
                config=types.UploadFileConfig(mime_type=audio.mime_type, display_name="Meeting Audio"),
            )
            uploaded = await self.wait_until_active(uploaded)
            response = await client.aio.models.generate_content(
                model=model,
                contents=[
                    types.Part.from_uri(file_uri=uploaded.uri, mime_type=uploaded.mime_type or audio.mime_type),
                    TRANSCRIBE_PROMPT,
                ],
            )
        except ProviderError:
            raise
        except Exception as e:
            log.error("gemini_transcribe_error", error=str(e), model=model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e
        finally:
            if uploaded is not None:
                await self._delete_quietly(uploaded.name)

        return Transcript(text=(response.text or "").strip(), model=model, provider=self.name,
                          usage=_usage(response))

    async def analyze(self, transcript: str, model: str = None) -> Analysis:
        client = self._get_client()
        model = model or self.default_model
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=f"{ANALYSIS_PROMPT}\n\nTranscript:\n{transcript[: self.max_chars]}",
                config=types.GenerateContentConfig(response_mime_type="application/json"),
            )
        except Exception as e:
            log.error("gemini_analyze_error", error=str(e), model=model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e

        return parse_analysis(response.text, model, self.name, _usage(response))

    async def ask(self, context: str, question: str, model: str = None) -> Answer:
        client = self._get_client()
        model = model or self.default_model
        try:
            response = await client.aio.models.generate_content(
                model=model,
                contents=question,
                config=types.GenerateContentConfig(
                    system_instruction=ASK_SYSTEM_PROMPT.format(context=context),
                ),
            )
        except Exception as e:
            log.error("gemini_ask_error", error=str(e), model=model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e

        return Answer(content=response.text or "No answer generated.", model=model,
                      provider=self.name, usage=_usage(response))

    async def _delete_quietly(self, name: str):
        try:
            await self._get_client().aio.files.delete(name=name)
        except Exception as e:
            log.warning("gemini_file_cleanup_failed", file=name, error=str(e))
