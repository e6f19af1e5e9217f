from __future__ import annotations

import asyncio
import hmac
from typing import Any, Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query

from accountcore.api.error_handling import outcome_response
from accountcore.api.schemas import (
    AdminSetPasswordRequest,
    EmailVerificationRequest,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
)
from accountcore.logging import get_logger
from accountcore.service.lifecycle import ADMIN_LIST_MAX
from accountcore.service.outcomes import HTTP_STATUS, Outcome
from accountcore.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _call(operation: Callable[..., Outcome], *args: Any, **kwargs: Any) -> Outcome:
    # Engine calls block on hashing and storage; keep them off the event loop
    return await asyncio.to_thread(operation, *args, **kwargs)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return token.strip()


async def get_account(authorization: Optional[str] = Header(None)) -> dict:
    """Public view of the account the bearer access token was issued for."""
    runtime = get_runtime()
    outcome = await _call(runtime.engine.authenticate, _bearer_token(authorization))
    if not outcome.ok:
        status_code, code = HTTP_STATUS[outcome.kind]
        if status_code == 404:
            # A token for a deleted account is no longer a usable credential
            status_code, code = 401, "unauthorized"
        raise _http_error(code, outcome.reason or "invalid access token", status_code=status_code)
    return outcome.payload["account"]


async def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> None:
    expected = get_runtime().settings.admin_api_key
    if not expected:
        raise _http_error("forbidden", "admin access disabled", status_code=403)
    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), expected.encode()):
        logger.warning("admin_key_rejected", key_present=bool(x_admin_key))
        raise _http_error("forbidden", "admin access required", status_code=403)


@router.post("/auth/register", tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and return its first session.

    When an email is supplied a verification link is sent and
    ``email_delivered`` reports whether the dispatcher accepted it.
    """
    runtime = get_runtime()
    outcome = await _call(
        runtime.engine.register, body.username, body.password, body.email
    )
    return outcome_response(outcome, success_status=201)


@router.post("/auth/login", tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    outcome = await _call(runtime.engine.login, body.username_or_email, body.password)
    return outcome_response(outcome)


@router.post("/auth/verify_email", tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.verify_email, body.token))


@router.post("/auth/resend_verification", tags=["auth"])
async def resend_verification(account: dict = Depends(get_account)):
    runtime = get_runtime()
    return outcome_response(
        await _call(runtime.engine.resend_verification, account["id"])
    )


@router.post("/auth/forgot_password", tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    """Always answers the same way for known and unknown addresses."""
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.forgot_password, body.email))


@router.post("/auth/reset_password", tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    outcome = await _call(runtime.engine.reset_password, body.token, body.new_password)
    return outcome_response(outcome)


@router.post("/auth/refresh", tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.refresh, body.refresh_token))


@router.post("/auth/logout", tags=["auth"])
async def logout(account: dict = Depends(get_account)):
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.logout, account["id"]))


@router.post("/auth/password/change", tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, account: dict = Depends(get_account)
):
    runtime = get_runtime()
    outcome = await _call(
        runtime.engine.change_password,
        account["id"],
        body.current_password,
        body.new_password,
    )
    return outcome_response(outcome)


@router.get("/me", tags=["account"])
async def get_me(account: dict = Depends(get_account)):
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.get_profile, account["id"]))


@router.patch("/me", tags=["account"])
async def update_me(body: ProfileUpdateRequest, account: dict = Depends(get_account)):
    runtime = get_runtime()
    outcome = await _call(
        runtime.engine.update_profile,
        account["id"],
        username=body.username,
        email=body.email,
    )
    return outcome_response(outcome)


@router.get("/admin/accounts", tags=["admin"], dependencies=[Depends(require_admin)])
async def admin_list_accounts(limit: int = Query(100, ge=1, le=ADMIN_LIST_MAX)):
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.admin_list_accounts, limit))


@router.get(
    "/admin/accounts/by-email/{email}",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def admin_find_by_email(email: str = Path(..., max_length=320)):
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.admin_find_by_email, email))


@router.post("/admin/reset_password", tags=["admin"], dependencies=[Depends(require_admin)])
async def admin_reset_password(body: AdminSetPasswordRequest):
    runtime = get_runtime()
    outcome = await _call(runtime.engine.admin_set_password, body.email, body.new_password)
    return outcome_response(outcome)


@router.delete(
    "/admin/accounts/{account_id}",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)
async def admin_delete_account(account_id: str = Path(..., max_length=64)):
    runtime = get_runtime()
    return outcome_response(await _call(runtime.engine.admin_delete_account, account_id))
