"""
Meeting-creation pipeline: plan gate, provider selection, rate limiting,
background dispatch and failure capture.

A meeting's status only moves processing -> completed | failed. Terminal
writes are conditional on the meeting still being in processing on the same
attempt, so a late result from a cancelled or superseded attempt is dropped.
"""
import inspect
import math

from sqlalchemy import select, update

from scribeline.config import Settings, settings
from scribeline.errors import KeyVaultError, PolicyRejection, ValidationFailure
from scribeline.llm.base import Analysis, TokenUsage, classify_error
from scribeline.llm.registry import ProviderRegistry
from scribeline.models import MEETING_COMPLETED, MEETING_FAILED, MEETING_PROCESSING, Meeting
from scribeline.observability.logger import get_logger
from scribeline.pipeline.dispatcher import JobDispatcher, JobSpec
from scribeline.pipeline.models import AskResult, JobResult, MeetingStatus
from scribeline.security.keys import KeyVault, ResolvedKey
from scribeline.storage.audio import AudioStore
from scribeline.usage.policy import RateLimitPolicy
from scribeline.usage.tracker import UsageTracker

log = get_logger("orchestrator")

METHOD_BROWSER = "browser"
METHOD_SERVER = "server"
METHODS = (METHOD_BROWSER, METHOD_SERVER)

PROCESS_ENDPOINT = "processMeeting"
ASK_ENDPOINT = "ask"

DEFAULT_TITLE = "Processing..."
UPGRADE_REQUIRED = (
    "Upgrade required: recordings longer than 20 minutes need your own API key or a paid plan."
)
FALLBACK_WARNING = "Browser transcription failed, so the recording was transcribed on the server instead."
INSUFFICIENT_CREDITS = "Insufficient credits. Need {needed} credits, but you have {remaining}."
SETTINGS_UNAVAILABLE = "Could not load your account settings. Please try again."
NO_SPEECH_SUMMARY = "No speech was detected in this recording."
CANCELLED_SUMMARY = "Processing cancelled by user"

# Credits charged per started minute when the system key pays for the call
MODEL_CREDIT_COSTS = {
    "gemini-2.0-flash": 1,
    "gemini-2.5-flash": 1,
    "gemini-2.5-pro": 2,
    "grok-3-mini": 2,
    "gpt-4o": 3,
}

WORDS_PER_SECOND = 2.5


def friendly_error(error: Exception) -> str:
    if classify_error(error) == "QUOTA_EXCEEDED":
        return "Limit Exceeded. Check your API Key settings."
    return str(error) or error.__class__.__name__


def estimate_duration(transcript: str) -> float:
    words = len(transcript.split())
    return float(math.ceil(words / WORDS_PER_SECOND))


def credits_for(model: str | None, duration_seconds: float | None) -> int:
    minutes = math.ceil((duration_seconds or 0) / 60)
    return minutes * MODEL_CREDIT_COSTS.get(model or "", 1)


class ProviderOrchestrator:
    def __init__(
        self,
        session_factory,
        policy: RateLimitPolicy,
        tracker: UsageTracker,
        vault: KeyVault,
        registry: ProviderRegistry,
        audio_store: AudioStore,
        dispatcher: JobDispatcher,
        config: Settings = settings,
    ):
        self.session_factory = session_factory
        self.policy = policy
        self.tracker = tracker
        self.vault = vault
        self.registry = registry
        self.audio_store = audio_store
        self.dispatcher = dispatcher
        self.config = config
        dispatcher.set_handler(self.process_job)

    # ── Job creation ────────────────────────────────────────────

    async def create_transcription_job(
        self,
        user_id: str,
        audio_ref: str,
        title: str = None,
        duration: float = None,
        provider: str = None,
        model: str = None,
        method: str = METHOD_SERVER,
        browser_transcriber=None,
    ) -> JobResult:
        """Create a processing meeting and dispatch its work in the background.

        `browser_transcriber` carries the on-device result for the browser
        method: either the transcript text or a (possibly async) callable
        producing it. A failure or blank result falls back to the server path
        once, with a warning on the returned result.
        """
        if not user_id:
            return JobResult.failure("Not authenticated")
        if not audio_ref:
            return JobResult.failure("No audio file provided")
        if method not in METHODS:
            return JobResult.failure(f"Unknown transcription method: {method}")
        if duration is not None and duration < 0:
            return JobResult.failure("Duration cannot be negative")

        try:
            await self._check_plan_gate(user_id, duration)
            provider = await self._select_provider(user_id, provider, model)
        except PolicyRejection as e:
            log.info("plan_gate_rejected", user_id=user_id, duration=duration)
            return JobResult.rejected(e)
        except ValidationFailure as e:
            return JobResult.failure(str(e))
        except Exception as e:
            log.error("account_settings_failed", user_id=user_id, error=str(e))
            return JobResult.failure(SETTINGS_UNAVAILABLE)

        transcript = None
        warning = None
        if method == METHOD_BROWSER:
            transcript = await self._run_browser_transcriber(user_id, browser_transcriber)
            if transcript is None:
                method = METHOD_SERVER
                warning = FALLBACK_WARNING

        try:
            self._check_capabilities(provider, method)
            key = await self.vault.resolve(user_id, provider)
            await self._check_credits(user_id, key, model, duration)
        except PolicyRejection as e:
            log.info("credits_rejected", user_id=user_id, provider=provider, duration=duration)
            return JobResult.rejected(e, warning=warning)
        except (ValidationFailure, KeyVaultError) as e:
            return JobResult.failure(str(e), warning=warning)
        except Exception as e:
            log.error("account_settings_failed", user_id=user_id, error=str(e))
            return JobResult.failure(SETTINGS_UNAVAILABLE, warning=warning)

        try:
            meeting = await self._insert_meeting(
                user_id=user_id,
                audio_ref=audio_ref,
                title=title,
                duration=duration,
                provider=provider,
                model=model,
                method=method,
            )
        except Exception as e:
            log.error("meeting_create_failed", user_id=user_id, error=str(e))
            return JobResult.failure("Failed to create meeting record", warning=warning)

        spec = JobSpec(
            meeting_id=meeting.id,
            attempt=meeting.attempt,
            user_id=user_id,
            provider=provider,
            method=method,
            model=model,
            transcript=transcript,
        )
        return await self._admit_and_dispatch(spec, warning=warning)

    async def reprocess(self, user_id: str, meeting_id: str, model: str = None, provider: str = None) -> JobResult:
        """Start a fresh server-side attempt for an existing meeting."""
        if not user_id:
            return JobResult.failure("Not authenticated")

        meeting = await self._get_owned_meeting(user_id, meeting_id)
        if meeting is None:
            return JobResult.failure("Meeting not found")
        if not meeting.audio_url:
            return JobResult.failure("No audio file to reprocess", meeting_id=meeting_id)

        # Only a caller-supplied duration gates; a word-count estimate does not
        duration = None if meeting.duration_estimated else meeting.duration
        try:
            await self._check_plan_gate(user_id, duration)
            if not provider and not model and meeting.provider:
                provider = meeting.provider
            provider = await self._select_provider(user_id, provider, model)
            self._check_capabilities(provider, METHOD_SERVER)
            key = await self.vault.resolve(user_id, provider)
            await self._check_credits(user_id, key, model, duration)
        except PolicyRejection as e:
            return JobResult.rejected(e, meeting_id=meeting_id)
        except (ValidationFailure, KeyVaultError) as e:
            return JobResult.failure(str(e), meeting_id=meeting_id)
        except Exception as e:
            log.error("account_settings_failed", user_id=user_id, error=str(e))
            return JobResult.failure(SETTINGS_UNAVAILABLE, meeting_id=meeting_id)

        async with self.session_factory() as session:
            result = await session.execute(
                update(Meeting)
                .where(Meeting.id == meeting_id, Meeting.attempt == meeting.attempt)
                .values(
                    attempt=meeting.attempt + 1,
                    status=MEETING_PROCESSING,
                    transcript="",
                    summary="",
                    action_items=[],
                    key_topics=[],
                    sentiment=None,
                    input_tokens=0,
                    output_tokens=0,
                    total_tokens=0,
                    provider=provider,
                    model_used=model,
                    transcription_method=METHOD_SERVER,
                )
            )
            await session.commit()
        if result.rowcount != 1:
            return JobResult.failure("Meeting was modified concurrently, please retry", meeting_id=meeting_id)

        log.info("meeting_reprocess", meeting_id=meeting_id, attempt=meeting.attempt + 1,
                 provider=provider, model=model)
        spec = JobSpec(
            meeting_id=meeting_id,
            attempt=meeting.attempt + 1,
            user_id=user_id,
            provider=provider,
            method=METHOD_SERVER,
            model=model,
        )
        return await self._admit_and_dispatch(spec)

    async def cancel(self, user_id: str, meeting_id: str) -> JobResult:
        if not user_id:
            return JobResult.failure("Not authenticated")
        async with self.session_factory() as session:
            result = await session.execute(
                update(Meeting)
                .where(
                    Meeting.id == meeting_id,
                    Meeting.user_id == user_id,
                    Meeting.status == MEETING_PROCESSING,
                )
                .values(status=MEETING_FAILED, summary=CANCELLED_SUMMARY)
            )
            await session.commit()
        if result.rowcount != 1:
            return JobResult.failure("Meeting is not processing", meeting_id=meeting_id)
        log.info("meeting_cancelled", meeting_id=meeting_id, user_id=user_id)
        return JobResult(success=True, meeting_id=meeting_id)

    async def get_status(self, user_id: str, meeting_id: str) -> MeetingStatus | None:
        meeting = await self._get_owned_meeting(user_id, meeting_id)
        if meeting is None:
            return None
        return MeetingStatus(
            meeting_id=meeting.id,
            status=meeting.status,
            attempt=meeting.attempt,
            has_transcript=bool(meeting.transcript),
            summary=meeting.summary,
        )

    # ── Ask ─────────────────────────────────────────────────────

    async def ask(self, user_id: str, meeting_id: str, question: str, provider: str = None,
                  model: str = None) -> AskResult:
        """Answer a question using the meeting's summary and transcript as context."""
        if not user_id:
            return AskResult(success=False, error="Not authenticated")
        if not question or not question.strip():
            return AskResult(success=False, error="Question cannot be empty")

        meeting = await self._get_owned_meeting(user_id, meeting_id)
        if meeting is None:
            return AskResult(success=False, error="Meeting not found")

        try:
            provider = await self._select_provider(user_id, provider, model)
            if not self.registry.supports(provider, "ask"):
                raise ValidationFailure(f"Ask is not supported on {provider}.")
            key = await self.vault.resolve(user_id, provider)
        except (ValidationFailure, KeyVaultError) as e:
            return AskResult(success=False, error=str(e))

        try:
            decision = await self.policy.check(user_id, provider)
        except Exception as e:
            log.error("rate_limit_check_failed", user_id=user_id, provider=provider, error=str(e))
            return AskResult(success=False, error="Could not verify rate limits. Please try again.")
        if not decision.allowed:
            await self.tracker.record_rejection(user_id, provider, ASK_ENDPOINT, decision.error_message)
            return AskResult(success=False, error=decision.error_message,
                             upgrade_prompt=decision.upgrade_prompt, reset_at=decision.reset_at)

        context = (
            f"Title: {meeting.title}\n"
            f"Summary: {meeting.summary or ''}\n"
            f"Action Items: {', '.join(meeting.action_items or [])}\n"
            f"Transcript:\n{(meeting.transcript or '')[: self.config.max_analysis_chars]}"
        )
        service = self.registry.create(provider, key.api_key)
        try:
            answer = await service.ask(context, question, model=model)
        except Exception as e:
            await self.tracker.record(user_id, provider, success=False, endpoint=ASK_ENDPOINT,
                                      error_code=classify_error(e), error_message=str(e))
            log.error("ask_failed", meeting_id=meeting_id, provider=provider, error=str(e))
            return AskResult(success=False, error=friendly_error(e))

        await self.tracker.record(user_id, provider, success=True, endpoint=ASK_ENDPOINT,
                                  tokens_used=answer.usage.total_tokens)
        return AskResult(success=True, answer=answer.content)

    # ── Background continuation ─────────────────────────────────

    async def process_job(self, spec: JobSpec):
        """Run one attempt to completion. Never raises: every failure lands on the meeting."""
        log.info("job_started", meeting_id=spec.meeting_id, attempt=spec.attempt,
                 provider=spec.provider, method=spec.method)
        usage = TokenUsage()
        try:
            meeting = await self._get_meeting(spec.meeting_id)
            if meeting is None or meeting.attempt != spec.attempt or meeting.status != MEETING_PROCESSING:
                log.warning("job_skipped_stale", meeting_id=spec.meeting_id, attempt=spec.attempt)
                return

            key = await self.vault.resolve(spec.user_id, spec.provider)
            service = self.registry.create(spec.provider, key.api_key)

            transcript_text = spec.transcript
            if spec.method == METHOD_SERVER:
                audio = await self.audio_store.load(meeting.audio_url)
                transcript = await service.transcribe(audio, model=spec.model)
                usage = usage + transcript.usage
                transcript_text = transcript.text

            analysis = None
            if transcript_text and transcript_text.strip():
                analysis = await service.analyze(transcript_text, model=spec.model)
                usage = usage + analysis.usage
        except Exception as e:
            await self.tracker.record(
                spec.user_id,
                spec.provider,
                success=False,
                endpoint=PROCESS_ENDPOINT,
                tokens_used=usage.total_tokens,
                error_code=classify_error(e),
                error_message=str(e),
            )
            log.error("job_failed", meeting_id=spec.meeting_id, attempt=spec.attempt,
                      provider=spec.provider, error=str(e), error_type=type(e).__name__)
            await self._fail_meeting(spec, f"Processing Error: {friendly_error(e)}")
            return

        await self.tracker.record(
            spec.user_id,
            spec.provider,
            success=True,
            endpoint=PROCESS_ENDPOINT,
            tokens_used=usage.total_tokens,
        )

        try:
            completed = await self._complete_meeting(spec, meeting, transcript_text or "", analysis, usage)
        except Exception as e:
            log.error("job_persist_failed", meeting_id=spec.meeting_id, error=str(e))
            await self._fail_meeting(spec, f"Processing Error: could not save results ({e})")
            return

        if completed and not key.is_personal:
            duration = meeting.duration
            if not duration or meeting.duration_estimated:
                duration = estimate_duration(transcript_text or "")
            await self.tracker.charge_credits(spec.user_id, credits_for(spec.model, duration),
                                              meeting_id=spec.meeting_id, model=spec.model)

    # ── Helpers ─────────────────────────────────────────────────

    async def _admit_and_dispatch(self, spec: JobSpec, warning: str = None) -> JobResult:
        try:
            decision = await self.policy.check(spec.user_id, spec.provider)
        except Exception as e:
            # Fail closed: an unverifiable limit never lets the call through
            log.error("rate_limit_check_failed", user_id=spec.user_id, provider=spec.provider, error=str(e))
            await self._fail_meeting(spec, "Processing Error: could not verify rate limits")
            return JobResult.failure("Could not verify rate limits. Please try again.",
                                     meeting_id=spec.meeting_id, warning=warning)

        if not decision.allowed:
            await self.tracker.record_rejection(spec.user_id, spec.provider, PROCESS_ENDPOINT,
                                                decision.error_message)
            await self._fail_meeting(spec, decision.error_message)
            return JobResult(
                success=False,
                meeting_id=spec.meeting_id,
                error=decision.error_message,
                upgrade_prompt=decision.upgrade_prompt,
                reset_at=decision.reset_at,
                warning=warning,
            )

        try:
            await self.dispatcher.enqueue(spec)
        except Exception as e:
            log.error("job_dispatch_failed", meeting_id=spec.meeting_id, error=str(e))
            await self._fail_meeting(spec, "Processing Error: could not start processing")
            return JobResult.failure("Failed to start processing", meeting_id=spec.meeting_id, warning=warning)

        log.info("job_dispatched", meeting_id=spec.meeting_id, attempt=spec.attempt,
                 remaining=decision.remaining)
        return JobResult(success=True, meeting_id=spec.meeting_id, warning=warning)

    async def _run_browser_transcriber(self, user_id: str, browser_transcriber) -> str | None:
        """Return the browser transcript, or None when the server path must take over."""
        try:
            result = browser_transcriber() if callable(browser_transcriber) else browser_transcriber
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            log.warning("browser_transcription_failed", user_id=user_id, error=str(e))
            return None
        if not isinstance(result, str) or not result.strip():
            log.warning("browser_transcription_empty", user_id=user_id)
            return None
        return result

    async def _check_plan_gate(self, user_id: str, duration: float | None):
        if not duration or duration <= self.config.plan_gate_seconds:
            return
        user_settings = await self.vault.get_settings(user_id)
        tier = user_settings.tier if user_settings else "free"
        if tier != "free":
            return
        if user_settings and user_settings.encrypted_key_for(self.config.default_provider):
            return
        raise PolicyRejection(UPGRADE_REQUIRED, upgrade_prompt=True)

    async def _check_credits(self, user_id: str, key: ResolvedKey, model: str | None, duration: float | None):
        """Block a system-key job whose cost exceeds the credits left this month."""
        if key.is_personal:
            return
        needed = credits_for(model, duration)
        if needed <= 0:
            return
        remaining = await self.policy.credits_remaining(user_id)
        if remaining is not None and needed > remaining:
            raise PolicyRejection(
                INSUFFICIENT_CREDITS.format(needed=needed, remaining=remaining), upgrade_prompt=True
            )

    async def _select_provider(self, user_id: str, provider: str | None, model: str | None) -> str:
        inferred = self.registry.infer_provider(model)
        if provider:
            self.registry.capabilities(provider)  # raises for unknown ids
            if inferred and inferred != provider:
                raise ValidationFailure(f"Model {model} is not available on {provider}")
            return provider
        if inferred:
            return inferred
        user_settings = await self.vault.get_settings(user_id)
        if user_settings and user_settings.selected_provider in self.registry.names():
            return user_settings.selected_provider
        return self.config.default_provider

    def _check_capabilities(self, provider: str, method: str):
        if method == METHOD_SERVER and not self.registry.supports(provider, "transcribe"):
            raise ValidationFailure(
                f"Transcription is not supported on {provider}. Use browser transcription or another provider."
            )
        if not self.registry.supports(provider, "analyze"):
            raise ValidationFailure(f"Summarization is not supported on {provider}.")

    async def _insert_meeting(self, user_id, audio_ref, title, duration, provider, model, method) -> Meeting:
        async with self.session_factory() as session:
            meeting = Meeting(
                user_id=user_id,
                audio_url=audio_ref,
                title=title or DEFAULT_TITLE,
                status=MEETING_PROCESSING,
                attempt=1,
                duration=duration or None,
                provider=provider,
                model_used=model,
                transcription_method=method,
                action_items=[],
                key_topics=[],
            )
            session.add(meeting)
            await session.commit()
        log.info("meeting_created", meeting_id=meeting.id, user_id=user_id, provider=provider, method=method)
        return meeting

    async def _get_meeting(self, meeting_id: str) -> Meeting | None:
        async with self.session_factory() as session:
            return await session.get(Meeting, meeting_id)

    async def _get_owned_meeting(self, user_id: str, meeting_id: str) -> Meeting | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Meeting).where(Meeting.id == meeting_id, Meeting.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def _transition(self, spec: JobSpec, values: dict) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Meeting)
                .where(
                    Meeting.id == spec.meeting_id,
                    Meeting.attempt == spec.attempt,
                    Meeting.status == MEETING_PROCESSING,
                )
                .values(**values)
            )
            await session.commit()
        if result.rowcount != 1:
            log.warning("stale_transition_dropped", meeting_id=spec.meeting_id, attempt=spec.attempt,
                        status=values.get("status"))
            return False
        return True

    async def _fail_meeting(self, spec: JobSpec, summary: str) -> bool:
        try:
            return await self._transition(spec, {"status": MEETING_FAILED, "summary": summary})
        except Exception as e:
            log.error("meeting_fail_write_failed", meeting_id=spec.meeting_id, error=str(e))
            return False

    async def _complete_meeting(self, spec: JobSpec, meeting: Meeting, transcript: str,
                                analysis: Analysis | None, usage: TokenUsage) -> bool:
        values = {
            "status": MEETING_COMPLETED,
            "transcript": transcript[: self.config.max_transcript_chars],
            "input_tokens": usage.input_tokens,
            "output_tokens": usage.output_tokens,
            "total_tokens": usage.total_tokens,
        }
        if analysis is None:
            values.update(summary=NO_SPEECH_SUMMARY, action_items=[], key_topics=[])
        else:
            values.update(
                summary=analysis.summary,
                action_items=analysis.action_items,
                key_topics=analysis.key_topics,
                sentiment=analysis.sentiment,
                model_used=analysis.model,
            )
            if analysis.title and meeting.title == DEFAULT_TITLE:
                values["title"] = analysis.title[:255]
        if not meeting.duration or meeting.duration_estimated:
            values.update(duration=estimate_duration(transcript), duration_estimated=True)

        completed = await self._transition(spec, values)
        if completed:
            log.info("job_completed", meeting_id=spec.meeting_id, attempt=spec.attempt,
                     provider=spec.provider, tokens=usage.total_tokens)
        return completed
