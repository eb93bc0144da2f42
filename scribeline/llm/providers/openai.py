from openai import AsyncOpenAI

from scribeline.errors import ProviderError
from scribeline.llm.base import (
    ANALYSIS_PROMPT,
    ASK_SYSTEM_PROMPT,
    Analysis,
    Answer,
    Capabilities,
    TokenUsage,
    TranscriptionProvider,
    classify_error,
    parse_analysis,
)
from scribeline.observability.logger import get_logger

log = get_logger("llm.openai")

OPENAI_MODELS = ["gpt-4o", "gpt-4o-mini", "gpt-5.2"]


def _usage(response) -> TokenUsage:
    usage = getattr(response, "usage", None)
    if not usage:
        return TokenUsage()
    return TokenUsage(
        input_tokens=usage.prompt_tokens or 0,
        output_tokens=usage.completion_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


class OpenAIProvider(TranscriptionProvider):
    """Summarization and Q&A over the Chat Completions API. No transcription."""

    name = "openai"
    capabilities = Capabilities(transcribe=False, analyze=True, ask=True)
    default_model = "gpt-4o"
    models = OPENAI_MODELS
    base_url: str | None = None

    def __init__(self, api_key: str, base_url: str = None, max_chars: int = 50_000):
        super().__init__(api_key)
        if base_url:
            self.base_url = base_url
        self.max_chars = max_chars
        self._client = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise ProviderError(f"{self.name} API key not configured", code="AUTH_ERROR",
                                    provider=self.name)
            kwargs = {"api_key": self.api_key}
            if self.base_url:
                kwargs["base_url"] = self.base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client

    def _token_kwargs(self, model: str, max_tokens: int) -> dict:
        # GPT-5.x models use max_completion_tokens instead of max_tokens
        if model.startswith("gpt-5"):
            return {"max_completion_tokens": max_tokens}
        return {"max_tokens": max_tokens}

    async def analyze(self, transcript: str, model: str = None) -> Analysis:
        client = self._get_client()
        model = model or self.default_model
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": ANALYSIS_PROMPT},
                    {"role": "user", "content": transcript[: self.max_chars]},
                ],
                response_format={"type": "json_object"},
                **self._token_kwargs(model, 4096),
            )
        except Exception as e:
            log.error(f"{self.name}_analyze_error", error=str(e), model=model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e

        content = response.choices[0].message.content if response.choices else None
        return parse_analysis(content, model, self.name, _usage(response))

    async def ask(self, context: str, question: str, model: str = None) -> Answer:
        client = self._get_client()
        model = model or self.default_model
        try:
            response = await client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": ASK_SYSTEM_PROMPT.format(context=context)},
                    {"role": "user", "content": question},
                ],
                **self._token_kwargs(model, 2048),
            )
        except Exception as e:
            log.error(f"{self.name}_ask_error", error=str(e), model=model)
            raise ProviderError(str(e), code=classify_error(e), provider=self.name) from e

        content = response.choices[0].message.content if response.choices else None
        return Answer(
            content=content or "No answer generated.",
            model=model,
            provider=self.name,
            usage=_usage(response),
        )
