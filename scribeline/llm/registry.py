from scribeline.config import Settings, settings
from scribeline.errors import ValidationFailure
from scribeline.llm.base import Capabilities, TranscriptionProvider
from scribeline.llm.providers.gemini import GeminiProvider
from scribeline.llm.providers.groq import GroqProvider
from scribeline.llm.providers.openai import OpenAIProvider
from scribeline.llm.providers.xai import XAIProvider
from scribeline.observability.logger import get_logger

log = get_logger("llm_registry")

PROVIDER_CLASSES: dict[str, type[TranscriptionProvider]] = {
    "gemini": GeminiProvider,
    "groq": GroqProvider,
    "openai": OpenAIProvider,
    "xai": XAIProvider,
}

# Model-name prefixes that pin a provider when no provider was chosen explicitly
MODEL_PREFIXES = [
    ("gemini", "gemini"),
    ("gpt", "openai"),
    ("o1", "openai"),
    ("o3", "openai"),
    ("o4", "openai"),
    ("grok", "xai"),
    ("llama", "groq"),
    ("whisper", "groq"),
    ("deepseek", "groq"),
    ("qwen", "groq"),
]


class ProviderRegistry:
    """Builds provider adapters by id and answers capability questions."""

    def __init__(self, config: Settings = settings, classes: dict = None):
        self.config = config
        self.classes = dict(classes or PROVIDER_CLASSES)

    def names(self) -> list[str]:
        return list(self.classes.keys())

    def capabilities(self, provider: str) -> Capabilities:
        return self._class_for(provider).capabilities

    def supports(self, provider: str, operation: str) -> bool:
        return self.capabilities(provider).supports(operation)

    def infer_provider(self, model: str | None) -> str | None:
        if not model:
            return None
        lowered = model.lower()
        for prefix, provider in MODEL_PREFIXES:
            if lowered.startswith(prefix) and provider in self.classes:
                return provider
        return None

    def create(self, provider: str, api_key: str) -> TranscriptionProvider:
        cls = self._class_for(provider)
        if cls is GeminiProvider:
            return cls(
                api_key,
                poll_interval=self.config.gemini_poll_interval_seconds,
                max_poll_attempts=self.config.gemini_poll_max_attempts,
                max_chars=self.config.max_analysis_chars,
            )
        if cls is XAIProvider:
            return cls(api_key, base_url=self.config.xai_base_url, max_chars=self.config.max_analysis_chars)
        if issubclass(cls, (GroqProvider, OpenAIProvider)):
            return cls(api_key, max_chars=self.config.max_analysis_chars)
        return cls(api_key)

    def get_info(self) -> list[dict]:
        info = []
        for name, cls in self.classes.items():
            caps = cls.capabilities
            info.append({
                "provider": name,
                "default_model": cls.default_model,
                "models": cls.get_models(),
                "transcribe": caps.transcribe,
                "analyze": caps.analyze,
                "ask": caps.ask,
            })
        return info

    def _class_for(self, provider: str) -> type[TranscriptionProvider]:
        cls = self.classes.get(provider)
        if cls is None:
            raise ValidationFailure(f"Unknown provider: {provider}")
        return cls
