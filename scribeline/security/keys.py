"""Per-user provider keys, encrypted at rest with Fernet."""

from dataclasses import dataclass

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select

from scribeline.config import Settings, settings
from scribeline.errors import KeyVaultError, ValidationFailure
from scribeline.models import PROVIDERS, UserSettings
from scribeline.observability.logger import get_logger

log = get_logger("keys")


@dataclass
class ResolvedKey:
    provider: str
    api_key: str
    is_personal: bool


class KeyVault:
    def __init__(self, session_factory, config: Settings = settings):
        self.session_factory = session_factory
        self.config = config
        self._fernet = Fernet(config.encryption_key.encode()) if config.encryption_key else None

    def encrypt(self, plain_text: str) -> str:
        if not self._fernet:
            raise KeyVaultError("ENCRYPTION_KEY is not configured")
        return self._fernet.encrypt(plain_text.encode()).decode()

    def decrypt(self, encrypted_text: str) -> str:
        if not self._fernet:
            raise KeyVaultError("ENCRYPTION_KEY is not configured")
        try:
            return self._fernet.decrypt(encrypted_text.encode()).decode()
        except InvalidToken as e:
            raise KeyVaultError("Stored API key could not be decrypted") from e

    async def get_settings(self, user_id: str) -> UserSettings | None:
        async with self.session_factory() as session:
            result = await session.execute(select(UserSettings).where(UserSettings.user_id == user_id))
            return result.scalar_one_or_none()

    async def store_key(self, user_id: str, provider: str, api_key: str | None):
        """Save (or clear, with an empty key) a user's personal key for a provider."""
        if provider not in PROVIDERS:
            raise ValidationFailure(f"Unknown provider: {provider}")
        ciphertext = self.encrypt(api_key.strip()) if api_key and api_key.strip() else None
        async with self.session_factory() as session:
            result = await session.execute(select(UserSettings).where(UserSettings.user_id == user_id))
            user_settings = result.scalar_one_or_none()
            if user_settings is None:
                user_settings = UserSettings(user_id=user_id, tier="free")
                session.add(user_settings)
            setattr(user_settings, f"{provider}_api_key", ciphertext)
            await session.commit()
        log.info("api_key_stored", user_id=user_id, provider=provider, cleared=ciphertext is None)

    async def has_personal_key(self, user_id: str, provider: str) -> bool:
        user_settings = await self.get_settings(user_id)
        return bool(user_settings and user_settings.encrypted_key_for(provider))

    async def set_preferences(self, user_id: str, prefer_own_key: bool = None, selected_provider: str = None):
        if selected_provider is not None and selected_provider not in PROVIDERS:
            raise ValidationFailure(f"Unknown provider: {selected_provider}")
        async with self.session_factory() as session:
            result = await session.execute(select(UserSettings).where(UserSettings.user_id == user_id))
            user_settings = result.scalar_one_or_none()
            if user_settings is None:
                user_settings = UserSettings(user_id=user_id, tier="free")
                session.add(user_settings)
            if prefer_own_key is not None:
                user_settings.prefer_own_key = prefer_own_key
            if selected_provider is not None:
                user_settings.selected_provider = selected_provider
            await session.commit()
        log.info("preferences_updated", user_id=user_id, prefer_own_key=prefer_own_key,
                 selected_provider=selected_provider)

    async def resolve(self, user_id: str, provider: str) -> ResolvedKey:
        """Decrypt the user's key just before a call.

        Free users always use their own key when they have one. Paid users run
        on the system key (and its credits) unless they set `prefer_own_key`.
        Only the default provider has a system key to fall back to.
        """
        user_settings = await self.get_settings(user_id)
        encrypted = user_settings.encrypted_key_for(provider) if user_settings else None
        system_key = self.config.system_key_for(provider) if provider == self.config.default_provider else None

        if encrypted and (not system_key or user_settings.prefer_own_key or user_settings.tier == "free"):
            return ResolvedKey(provider=provider, api_key=self.decrypt(encrypted), is_personal=True)
        if system_key:
            return ResolvedKey(provider=provider, api_key=system_key, is_personal=False)

        raise ValidationFailure(
            f"No API key found for {provider}. Add your own key in Settings or upgrade your plan."
        )
