"""
Session API Routes.

Cookie login, logout, foreground notification, lockdown status and
unlock / emergency reset.
"""

from fastapi import APIRouter, status

from gramvault.api.deps import Services, ServicesDep
from gramvault.core.client.errors import SessionExpired
from gramvault.core.schemas import (
    GuardStatusResponse,
    MessageResponse,
    SessionCookiesRequest,
    SessionResponse,
)

router = APIRouter(tags=["session"])


def _session_response(services: Services) -> SessionResponse:
    session = services.client.session
    if session is None:
        return SessionResponse(logged_in=False)
    return SessionResponse(
        logged_in=session.logged_in,
        user_id=session.user_id,
        username=session.username,
    )


# ==========================================================================
# Session
# ==========================================================================

@router.post("/session/cookies", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def login_with_cookies(request: SessionCookiesRequest, services: ServicesDep):
    """
    Adopt a session captured from the app's cookies.

    Resolves the username right away; a rejected session is discarded.
    """
    await services.client.login_from_cookies(request.model_dump())
    try:
        await services.media.fetch_username()
    except SessionExpired:
        await services.client.logout()
        raise
    return _session_response(services)


@router.get("/session", response_model=SessionResponse)
async def get_session(services: ServicesDep):
    """Current session."""
    return _session_response(services)


@router.post("/session/logout", response_model=MessageResponse)
async def logout(services: ServicesDep):
    await services.client.logout()
    return MessageResponse(message="Logged out")


@router.post("/session/foreground", response_model=MessageResponse)
async def foreground(services: ServicesDep):
    """Client app returned to the foreground."""
    services.client.on_foreground()
    return MessageResponse(message="Pigeon session rotated")


# ==========================================================================
# Guard
# ==========================================================================

@router.get("/guard", response_model=GuardStatusResponse)
async def guard_status(services: ServicesDep):
    """Lockdown, rate window and backoff snapshot."""
    guard = services.guard
    state = guard.state()
    return GuardStatusResponse(
        locked=state.locked,
        reason=state.reason,
        remaining_seconds=round(guard.lock_remaining(), 1),
        actions_last_hour=guard.actions_used(),
        max_actions_per_hour=guard.max_actions,
        consecutive_failures=guard.consecutive_failures,
        backoff_seconds=guard.base_backoff(),
        cooldown_remaining_seconds=round(services.orchestrator.cooldown_remaining(), 1),
    )


@router.post("/guard/unlock", response_model=GuardStatusResponse)
async def unlock(services: ServicesDep):
    """Explicit unlock after the user resolved the platform's complaint."""
    await services.orchestrator.unlock()
    return await guard_status(services)


@router.post("/guard/emergency-reset", response_model=MessageResponse)
async def emergency_reset(services: ServicesDep):
    """Unlock and purge the session, machine id and cookies."""
    await services.orchestrator.unlock(emergency=True)
    await services.client.emergency_reset()
    return MessageResponse(message="Emergency reset complete - log in again")
