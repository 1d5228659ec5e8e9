from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from gamcauth.api.schemas import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    ResetPasswordRequest,
    SecurityAnswerUpdateRequest,
    SecurityQuestionsSetupRequest,
    VerifySecurityQuestionRequest,
    ok,
)
from gamcauth.logging import get_logger
from gamcauth.service.errors import MissingTokenError
from gamcauth.service.guards import ADMIN_ONLY, require_role
from gamcauth.service.password_reset import RESET_COMPLETED_MESSAGE
from gamcauth.service.pipeline import AuthContext, FailureStrategy
from gamcauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

LOGIN_RATE_SCOPE = "login"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_identity(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.pipeline.authenticate(authorization)


async def get_optional_identity(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    runtime = get_runtime()
    return await runtime.pipeline.authenticate(authorization, strategy=FailureStrategy.IGNORE)


async def get_admin_identity(identity: AuthContext = Depends(get_identity)) -> AuthContext:
    return require_role(identity, ADMIN_ONLY)


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_refresh_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.refresh_cookie_name,
        path="/",
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
    )


# -- sessions ----------------------------------------------------------------


@router.post("/login")
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access token and a refresh token.

    Throttled per client IP. Every failure answers ``invalid_credentials`` so
    the caller cannot tell an unknown account from a wrong password.
    """
    runtime = get_runtime()
    client_ip = _client_ip(request) or "unknown"
    await runtime.rate_limiter.check(
        LOGIN_RATE_SCOPE,
        client_ip,
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.login_rate_limit_window_seconds,
        message="too many login attempts; try again later",
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _set_refresh_cookie(response, result.tokens.refresh_token)
    return ok(
        "Login successful",
        {"user": result.user.to_public(), **result.tokens.to_public()},
    )


@router.post("/refresh")
async def refresh(request: Request, response: Response, body: Optional[RefreshRequest] = None):
    runtime = get_runtime()
    token = request.cookies.get(runtime.settings.refresh_cookie_name)
    if not token and body is not None:
        token = body.refresh_token
    if not token:
        raise MissingTokenError("refresh token required")
    result = await runtime.auth.refresh(token)
    _set_refresh_cookie(response, result.tokens.refresh_token)
    return ok("Token refreshed", result.tokens.to_public())


@router.post("/logout")
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    logout_all = body.logout_all if body is not None else False
    removed = await runtime.auth.logout(identity, logout_all=logout_all)
    _clear_refresh_cookie(response)
    message = "All sessions closed" if logout_all else "Logout successful"
    return ok(message, {"sessionsClosed": removed})


@router.get("/profile")
async def profile(identity: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    return ok("Profile retrieved", runtime.auth.profile(identity))


@router.put("/change-password")
async def change_password(
    body: ChangePasswordRequest, identity: AuthContext = Depends(get_identity)
):
    runtime = get_runtime()
    removed = await runtime.auth.change_password(
        identity, body.current_password, body.new_password
    )
    return ok("Password changed", {"otherSessionsClosed": removed})


@router.get("/verify")
async def verify(identity: Optional[AuthContext] = Depends(get_optional_identity)):
    if identity is None:
        return ok("Token is not valid", {"valid": False})
    return ok("Token is valid", {"valid": True, "user": identity.user.to_public()})


# -- password reset ----------------------------------------------------------


@router.post("/forgot-password")
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.password_reset.request_reset(
        body.email,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return ok(result.message)


@router.post("/verify-security-question")
async def verify_security_question(body: VerifySecurityQuestionRequest):
    runtime = get_runtime()
    result = await runtime.password_reset.verify_security_answer(
        body.email, body.question_id, body.answer
    )
    return ok(
        "Security question verified",
        {
            "verified": True,
            "resetToken": result.reset_token,
            "attemptsRemaining": result.attempts_remaining,
        },
    )


@router.post("/reset-password")
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await runtime.password_reset.confirm_reset(body.token, body.new_password)
    return ok(RESET_COMPLETED_MESSAGE)


@router.get("/reset-status")
async def reset_status(
    token: str = Query(..., min_length=1, max_length=256),
    identity: AuthContext = Depends(get_admin_identity),
):
    runtime = get_runtime()
    return ok("Reset token status", runtime.password_reset.reset_status(token))


@router.post("/cleanup-tokens")
async def cleanup_tokens(identity: AuthContext = Depends(get_admin_identity)):
    runtime = get_runtime()
    deleted = runtime.password_reset.cleanup_expired()
    logger.info("reset_tokens_cleanup_requested", user_id=identity.user_id, deleted=deleted)
    return ok("Expired reset tokens removed", {"deleted": deleted})


@router.get("/reset-history")
async def reset_history(identity: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    return ok("Reset history", runtime.password_reset.reset_history(identity.user_id))


# -- security questions ------------------------------------------------------


@router.get("/security-questions")
async def list_security_questions():
    runtime = get_runtime()
    return ok(
        "Security questions",
        [question.to_public() for question in runtime.questions.catalog()],
    )


@router.get("/security-status")
async def security_status(identity: AuthContext = Depends(get_identity)):
    runtime = get_runtime()
    return ok("Security question status", runtime.questions.status(identity.user_id))


@router.post("/security-questions", status_code=201)
async def setup_security_questions(
    body: SecurityQuestionsSetupRequest, identity: AuthContext = Depends(get_identity)
):
    runtime = get_runtime()
    runtime.questions.setup(
        identity.user_id, [(item.question_id, item.answer) for item in body.questions]
    )
    return ok("Security questions configured", runtime.questions.status(identity.user_id))


@router.put("/security-questions/{question_id}")
async def update_security_question(
    question_id: int,
    body: SecurityAnswerUpdateRequest,
    identity: AuthContext = Depends(get_identity),
):
    runtime = get_runtime()
    runtime.questions.update(identity.user_id, question_id, body.answer)
    return ok("Security question updated", {"questionId": question_id})


@router.delete("/security-questions/{question_id}")
async def remove_security_question(
    question_id: int, identity: AuthContext = Depends(get_identity)
):
    runtime = get_runtime()
    runtime.questions.remove(identity.user_id, question_id)
    return ok("Security question removed", {"questionId": question_id})


__all__ = ["router", "get_identity", "get_optional_identity", "get_admin_identity"]
