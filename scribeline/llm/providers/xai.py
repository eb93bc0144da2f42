"""
xAI provider over the OpenAI-compatible API at api.x.ai.
Summarization and Q&A only; audio must be transcribed elsewhere.
"""
from scribeline.llm.base import Capabilities
from scribeline.llm.providers.openai import OpenAIProvider

XAI_BASE_URL = "https://api.x.ai/v1"

XAI_MODELS = [
    "grok-3-mini",
    "grok-4-1-fast-non-reasoning",
    "grok-4-1-fast-reasoning",
]


class XAIProvider(OpenAIProvider):
    name = "xai"
    capabilities = Capabilities(transcribe=False, analyze=True, ask=True)
    default_model = "grok-3-mini"
    models = XAI_MODELS
    base_url = XAI_BASE_URL

    def _token_kwargs(self, model: str, max_tokens: int) -> dict:
        return {"max_tokens": max_tokens}
