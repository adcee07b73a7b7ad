from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from maak.api.schemas import (
    AnalyticsEventRequest,
    ChatSendRequest,
    ConsentRequest,
    DailyAnswerRequest,
    LoginRequest,
    PersonalityRequest,
    PrivacyRequest,
    ProfileRequest,
    RefreshRequest,
    SignupRequest,
)
from maak.logging import get_logger
from maak.service.errors import AuthenticationError, CredentialFailure
from maak.service.runtime import get_runtime
from maak.service.verification import AuthHeaders
from maak.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_STARTED_AT = time.monotonic()


def _payload(model) -> Dict[str, Any]:
    return model.model_dump(exclude_none=True)


async def get_user(request: Request) -> User:
    """Resolve the caller through the verification cascade or fail with 401."""
    runtime = get_runtime()
    result = await runtime.auth.verify(AuthHeaders.from_mapping(request.headers))
    if result.user is None:
        raise AuthenticationError(
            result.error or "Unauthorized",
            failure=result.kind or CredentialFailure.METHODS_EXHAUSTED,
        )
    return result.user


@router.get("/health", tags=["system"])
async def health():
    """Probe the key-value store with a write, read and delete round trip."""
    runtime = get_runtime()
    check_key = f"health-check-{time.time_ns()}"
    timestamp = datetime.now(timezone.utc).isoformat()
    body: Dict[str, Any] = {
        "timestamp": timestamp,
        "version": runtime.settings.app_version,
        "uptime": int(time.monotonic() - _STARTED_AT),
    }
    try:
        await runtime.store.set(check_key, {"test": True, "timestamp": timestamp})
        retrieved = await runtime.store.get(check_key)
        try:
            await runtime.store.delete(check_key)
        except Exception as exc:
            logger.warning("health_check_cleanup_failed", error=str(exc))
    except Exception as exc:
        logger.error("health_check_failed", error_type=type(exc).__name__, error=str(exc))
        body.update(
            status="unhealthy",
            error="key-value store unreachable",
            services={"kvStore": "error", "identity": "unknown", "authentication": "unknown"},
        )
        return JSONResponse(status_code=500, content=body)

    kv_ok = isinstance(retrieved, dict) and retrieved.get("test") is True
    body.update(
        status="healthy" if kv_ok else "degraded",
        services={
            "kvStore": "ok" if kv_ok else "error",
            "identity": "ok",
            "authentication": "ok",
        },
    )
    if not kv_ok:
        logger.warning("health_check_degraded")
    return JSONResponse(status_code=200 if kv_ok else 503, content=body)


@router.post("/auth/signup", tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    user = await runtime.identity.create_user(
        body.email,
        body.password,
        {
            "firstName": body.firstName,
            "lastName": body.lastName or "",
            "createdAt": datetime.now(timezone.utc).isoformat(),
        },
    )
    logger.info("signup_complete", user_id=user.id)
    return {
        "success": True,
        "user": {
            "id": user.id,
            "email": user.email,
            "firstName": body.firstName,
            "lastName": body.lastName or "",
        },
    }


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    session = await runtime.identity.sign_in(body.email, body.password)
    if session is None:
        raise AuthenticationError(
            "Invalid email or password", failure=CredentialFailure.UNKNOWN_USER
        )
    logger.info("login_complete", user_id=session.user.id)
    return {"session": session.to_dict()}


@router.post("/auth/refresh", tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    session = await runtime.identity.refresh(body.refresh_token)
    if session is None:
        raise AuthenticationError(
            "Refresh token invalid or expired", failure=CredentialFailure.EXPIRED_CREDENTIAL
        )
    return {"session": session.to_dict()}


@router.post("/profile", tags=["profile"])
async def create_profile(body: ProfileRequest, user: User = Depends(get_user)):
    profile = _payload(body)
    await get_runtime().profiles.save_profile(user.id, profile)
    return {"success": True, "profile": profile}


@router.get("/profile", tags=["profile"])
async def get_profile(user: User = Depends(get_user)):
    return {"profile": await get_runtime().profiles.get_profile(user.id)}


@router.post("/personality", tags=["profile"])
async def save_personality(body: PersonalityRequest, user: User = Depends(get_user)):
    personality = _payload(body)
    await get_runtime().profiles.save_personality(user.id, personality)
    return {"success": True, "personality": personality}


@router.get("/personality", tags=["profile"])
async def get_personality(user: User = Depends(get_user)):
    return {"personality": await get_runtime().profiles.get_personality(user.id)}


@router.get("/matches", tags=["matching"])
async def get_matches(user: User = Depends(get_user)):
    return {"matches": await get_runtime().profiles.find_matches(user.id)}


@router.post("/chat/send", tags=["chat"])
async def send_message(body: ChatSendRequest, user: User = Depends(get_user)):
    message = await get_runtime().chat.send_message(
        user.id, body.recipientId or "", body.message or "", body.type
    )
    return {"success": True, "message": message}


@router.get("/chat/{recipient_id}", tags=["chat"])
async def get_chat_history(recipient_id: str, user: User = Depends(get_user)):
    return {"messages": await get_runtime().chat.history(user.id, recipient_id)}


@router.get("/community/daily-question", tags=["community"])
async def get_daily_question(user: User = Depends(get_user)):
    return await get_runtime().community.get_daily_question(user.id)


@router.post("/community/daily-question/answer", tags=["community"])
async def answer_daily_question(body: DailyAnswerRequest, user: User = Depends(get_user)):
    return await get_runtime().community.answer_daily_question(user.id, body.answerIndex)


@router.post("/privacy/consent", tags=["privacy"])
async def update_consent(body: ConsentRequest, user: User = Depends(get_user)):
    await get_runtime().privacy.update_consent(user.id, _payload(body))
    return {"success": True}


@router.get("/privacy/consent", tags=["privacy"])
async def get_consent(user: User = Depends(get_user)):
    return {"consent": await get_runtime().privacy.get_consent(user.id)}


@router.post("/privacy/export", tags=["privacy"])
async def request_data_export(body: PrivacyRequest, user: User = Depends(get_user)):
    request_id = await get_runtime().privacy.request_export(user.id, _payload(body))
    return {"success": True, "requestId": request_id}


@router.post("/privacy/delete", tags=["privacy"])
async def request_data_deletion(body: PrivacyRequest, user: User = Depends(get_user)):
    request_id = await get_runtime().privacy.request_deletion(user.id, _payload(body))
    return {"success": True, "requestId": request_id}


@router.post("/analytics/track", tags=["analytics"])
async def track_event(body: AnalyticsEventRequest, user: User = Depends(get_user)):
    await get_runtime().privacy.track_event(user.id, _payload(body))
    return {"success": True}
