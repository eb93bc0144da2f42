from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

from scribeline.config import settings
from scribeline.llm.registry import ProviderRegistry
from scribeline.main import app, app_state
from scribeline.pipeline.models import AskResult, JobResult, MeetingStatus
from scribeline.security.keys import KeyVault
from scribeline.usage.ledger import UsageLedger
from scribeline.usage.policy import RateLimitPolicy
from scribeline.usage.tracker import UsageTracker


@pytest.mark.asyncio
class TestRoutes:
    @pytest_asyncio.fixture
    async def orchestrator(self):
        return MagicMock()

    @pytest_asyncio.fixture
    async def client(self, session_factory, config, orchestrator):
        ledger = UsageLedger(session_factory)
        app_state.clear()
        app_state.update({
            "ledger": ledger,
            "tracker": UsageTracker(ledger),
            "policy": RateLimitPolicy(session_factory, ledger, config=config),
            "vault": KeyVault(session_factory, config=config),
            "registry": ProviderRegistry(config),
            "orchestrator": orchestrator,
        })
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
        app_state.clear()

    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_create_meeting_accepted(self, client, orchestrator):
        orchestrator.create_transcription_job = AsyncMock(
            return_value=JobResult(success=True, meeting_id="m1")
        )

        response = await client.post(
            "/api/meetings",
            json={"audio_ref": "u1/a.webm", "method": "browser", "browser_transcript": "hi"},
            headers={"X-User-Id": "u1"},
        )

        assert response.status_code == 202
        assert response.json()["meeting_id"] == "m1"
        kwargs = orchestrator.create_transcription_job.call_args.kwargs
        assert kwargs["user_id"] == "u1"
        assert kwargs["browser_transcriber"] == "hi"

    async def test_rate_limited_meeting(self, client, orchestrator):
        orchestrator.create_transcription_job = AsyncMock(return_value=JobResult(
            success=False,
            meeting_id="m1",
            error="Rate limit exceeded: 10 requests per minute. Please wait.",
            upgrade_prompt=True,
            reset_at=datetime(2026, 3, 10, 12, 1, tzinfo=timezone.utc),
        ))

        response = await client.post("/api/meetings", json={"audio_ref": "u1/a.webm"})

        assert response.status_code == 429
        assert response.json()["upgrade_prompt"] is True

    async def test_upgrade_required(self, client, orchestrator):
        orchestrator.create_transcription_job = AsyncMock(
            return_value=JobResult(success=False, error="Upgrade required", upgrade_prompt=True)
        )

        response = await client.post("/api/meetings", json={"audio_ref": "u1/a.webm", "duration": 1300})
        assert response.status_code == 402

    async def test_local_user_when_auth_disabled(self, client, orchestrator, monkeypatch):
        monkeypatch.setattr(settings, "auth_enabled", False)
        orchestrator.cancel = AsyncMock(return_value=JobResult(success=True, meeting_id="m1"))

        response = await client.post("/api/meetings/m1/cancel")

        assert response.status_code == 200
        orchestrator.cancel.assert_awaited_once_with(settings.local_user_id, "m1")

    async def test_missing_identity_when_auth_enabled(self, client, monkeypatch):
        monkeypatch.setattr(settings, "auth_enabled", True)

        response = await client.get("/api/usage")
        assert response.status_code == 401

    async def test_status_not_found(self, client, orchestrator):
        orchestrator.get_status = AsyncMock(return_value=None)

        response = await client.get("/api/meetings/m404/status", headers={"X-User-Id": "u1"})
        assert response.status_code == 404

    async def test_status(self, client, orchestrator):
        orchestrator.get_status = AsyncMock(return_value=MeetingStatus(
            meeting_id="m1", status="processing", attempt=2, has_transcript=False
        ))

        response = await client.get("/api/meetings/m1/status", headers={"X-User-Id": "u1"})
        assert response.json()["attempt"] == 2

    async def test_reprocess_without_body(self, client, orchestrator):
        orchestrator.reprocess = AsyncMock(return_value=JobResult(success=True, meeting_id="m1"))

        response = await client.post("/api/meetings/m1/reprocess", headers={"X-User-Id": "u1"})

        assert response.status_code == 202
        orchestrator.reprocess.assert_awaited_once_with("u1", "m1", model=None, provider=None)

    async def test_ask(self, client, orchestrator):
        orchestrator.ask = AsyncMock(return_value=AskResult(success=True, answer="Friday"))

        response = await client.post("/api/meetings/m1/ask", json={"question": "When?"},
                                     headers={"X-User-Id": "u1"})

        assert response.json()["answer"] == "Friday"

    async def test_usage_for_new_user(self, client):
        response = await client.get("/api/usage", headers={"X-User-Id": "u1"})

        body = response.json()
        assert body["tier"] == "free"
        assert body["per_provider_usage"]["gemini"]["remaining"] == 100

    async def test_store_key_and_tier(self, client):
        response = await client.put("/api/settings/keys/groq", json={"api_key": "gsk-mine"},
                                    headers={"X-User-Id": "u1"})
        assert response.json() == {"ok": True, "provider": "groq", "stored": True}
        assert await app_state["vault"].has_personal_key("u1", "groq") is True

        response = await client.put("/api/settings/tier", json={"tier": "pro"}, headers={"X-User-Id": "u1"})
        assert response.json()["rpd"] == 1000

    async def test_store_key_unknown_provider(self, client):
        response = await client.put("/api/settings/keys/mistral", json={"api_key": "x"})
        assert response.status_code == 400

    async def test_providers(self, client):
        response = await client.get("/api/providers")
        providers = {p["provider"] for p in response.json()["providers"]}
        assert providers == {"gemini", "groq", "openai", "xai"}

    async def test_insufficient_credits_is_payment_required(self, client, orchestrator):
        orchestrator.create_transcription_job = AsyncMock(return_value=JobResult(
            success=False, error="Insufficient credits. Need 10 credits, but you have 0.", upgrade_prompt=True,
        ))

        response = await client.post("/api/meetings", json={"audio_ref": "u1/a.webm", "duration": 600},
                                     headers={"X-User-Id": "u1"})
        assert response.status_code == 402

    async def test_credit_history_after_plan_change(self, client):
        await client.put("/api/settings/tier", json={"tier": "pro"}, headers={"X-User-Id": "u1"})

        response = await client.get("/api/credits/history", headers={"X-User-Id": "u1"})

        transactions = response.json()["transactions"]
        assert len(transactions) == 1
        assert transactions[0]["amount"] == 1200
        assert transactions[0]["type"] == "subscription"

    async def test_update_preferences(self, client):
        response = await client.put("/api/settings/preferences", json={"prefer_own_key": True},
                                    headers={"X-User-Id": "u1"})
        assert response.json() == {"ok": True, "prefer_own_key": True}
        assert (await app_state["vault"].get_settings("u1")).prefer_own_key is True

        response = await client.put("/api/settings/preferences", json={"selected_provider": "mistral"},
                                    headers={"X-User-Id": "u1"})
        assert response.status_code == 400

    async def test_providers_list_models(self, client):
        response = await client.get("/api/providers")
        gemini = next(p for p in response.json()["providers"] if p["provider"] == "gemini")
        assert "gemini-2.5-flash" in gemini["models"]
