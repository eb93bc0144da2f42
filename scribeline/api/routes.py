from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from scribeline.api.auth import get_current_user_id
from scribeline.api.schemas import (
    ApiKeyUpdate, AskRequest, CreateMeetingRequest, PreferencesUpdate, ReprocessRequest, TierUpdate,
)
from scribeline.errors import KeyVaultError, ValidationFailure
from scribeline.observability.logger import get_logger
from scribeline.pipeline.models import AskResult, JobResult

log = get_logger("api")

router = APIRouter(prefix="/api")


def get_app_state():
    """Get shared app state, set during startup."""
    from scribeline.main import app_state
    return app_state


def _status_for(result: JobResult | AskResult, ok_status: int = 200) -> int:
    if result.success:
        return ok_status
    if result.reset_at is not None:
        return 429
    if result.upgrade_prompt:
        return 402
    if result.error == "Meeting not found":
        return 404
    if result.error == "Not authenticated":
        return 401
    return 400


def _respond(result: JobResult | AskResult, ok_status: int = 200) -> JSONResponse:
    return JSONResponse(status_code=_status_for(result, ok_status), content=result.model_dump(mode="json"))


@router.post("/meetings")
async def create_meeting(body: CreateMeetingRequest, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    result = await state["orchestrator"].create_transcription_job(
        user_id=user_id,
        audio_ref=body.audio_ref,
        title=body.title,
        duration=body.duration,
        provider=body.provider,
        model=body.model,
        method=body.method,
        browser_transcriber=body.browser_transcript,
    )
    return _respond(result, ok_status=202)


@router.post("/meetings/{meeting_id}/reprocess")
async def reprocess_meeting(meeting_id: str, body: ReprocessRequest | None = None,
                            user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    body = body or ReprocessRequest()
    result = await state["orchestrator"].reprocess(user_id, meeting_id, model=body.model, provider=body.provider)
    return _respond(result, ok_status=202)


@router.post("/meetings/{meeting_id}/cancel")
async def cancel_meeting(meeting_id: str, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    result = await state["orchestrator"].cancel(user_id, meeting_id)
    return _respond(result)


@router.get("/meetings/{meeting_id}/status")
async def get_meeting_status(meeting_id: str, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    status = await state["orchestrator"].get_status(user_id, meeting_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Meeting not found")
    return status


@router.post("/meetings/{meeting_id}/ask")
async def ask_meeting(meeting_id: str, body: AskRequest, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    result = await state["orchestrator"].ask(
        user_id, meeting_id, body.question, provider=body.provider, model=body.model
    )
    return _respond(result)


@router.get("/usage")
async def get_usage(user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    return await state["policy"].get_usage_stats(user_id)


@router.get("/usage/history")
async def get_usage_history(limit: int = 50, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    limit = max(1, min(limit, 500))
    return {"records": await state["ledger"].list_recent(user_id, limit=limit)}


@router.get("/credits/history")
async def get_credit_history(limit: int = 50, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    limit = max(1, min(limit, 500))
    return {"transactions": await state["tracker"].credit_history(user_id, limit=limit)}


@router.put("/settings/tier")
async def update_tier(body: TierUpdate, user_id: str = Depends(get_current_user_id)):
    """Apply a plan change. Billing is handled upstream; this only rewrites the caps."""
    state = get_app_state()
    try:
        limits = await state["policy"].apply_tier(user_id, body.tier)
    except ValidationFailure as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, **limits}


@router.put("/settings/keys/{provider}")
async def update_api_key(provider: str, body: ApiKeyUpdate, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    try:
        await state["vault"].store_key(user_id, provider, body.api_key)
    except ValidationFailure as e:
        raise HTTPException(status_code=400, detail=str(e))
    except KeyVaultError as e:
        log.error("api_key_store_failed", user_id=user_id, provider=provider, error=str(e))
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": True, "provider": provider, "stored": bool(body.api_key and body.api_key.strip())}


@router.put("/settings/preferences")
async def update_preferences(body: PreferencesUpdate, user_id: str = Depends(get_current_user_id)):
    state = get_app_state()
    try:
        await state["vault"].set_preferences(
            user_id, prefer_own_key=body.prefer_own_key, selected_provider=body.selected_provider
        )
    except ValidationFailure as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, **body.model_dump(exclude_none=True)}


@router.get("/providers")
async def get_providers():
    state = get_app_state()
    return {"providers": state["registry"].get_info()}


@router.get("/health")
async def health():
    state = get_app_state()
    dispatcher = state.get("dispatcher")
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "jobs_in_flight": dispatcher.in_flight if dispatcher else 0,
    }
