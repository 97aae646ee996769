from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request, Response

from hrsecurity.api.schemas import (
    AccountResponse,
    AuditEventResponse,
    AuditListResponse,
    AuthResponse,
    BackupCodesResponse,
    BulkDisableRequest,
    Envelope,
    InactiveAccountResponse,
    LoginRequest,
    MfaChallengeResponse,
    MfaCodeRequest,
    MfaEnrollResponse,
    MfaLoginRequest,
    MfaStatusResponse,
    PasswordChangeRequest,
    SecurityPolicyResponse,
    SessionDeviceResponse,
)
from hrsecurity.logging import bind_principal
from hrsecurity.service.auth import AuthResult, MfaRequired
from hrsecurity.service.context import AuthContext, ClientContext
from hrsecurity.service.runtime import get_runtime

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"
CSRF_COOKIE = "csrf_token"


def _client_context(request: Request, tenant_hint: Optional[str] = None) -> ClientContext:
    return ClientContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        tenant_hint=tenant_hint,
    )


async def get_principal(
    request: Request,
    session_id: Optional[str] = Header(None, convert_underscores=False),
    x_tenant_id: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Tenant-ID"
    ),
) -> AuthContext:
    """Resolve the caller from the session_id header, falling back to the cookie."""
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(
        session_id or request.cookies.get(SESSION_COOKIE),
        x_tenant_id,
        context=_client_context(request, x_tenant_id),
    )
    bind_principal(principal.tenant_id, principal.account_id)
    return principal


def _apply_session_cookies(response: Response, result: AuthResult) -> None:
    expires_at = result.session.expires_at
    response.set_cookie(
        SESSION_COOKIE,
        result.session.id,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=expires_at,
        path="/",
    )
    # Readable by the frontend so it can echo the token in X-CSRF-Token
    response.set_cookie(
        CSRF_COOKIE,
        result.session.csrf_token,
        httponly=False,
        secure=True,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")
    response.delete_cookie(CSRF_COOKIE, path="/")


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        account=AccountResponse.from_account(result.account),
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        csrf_token=result.session.csrf_token,
        mfa_enrollment_required=result.mfa_enrollment_required,
        security_policy=SecurityPolicyResponse.from_policy(result.policy),
    )


# -- authentication ----------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    x_tenant_id: Optional[str] = Header(
        None, convert_underscores=False, alias="X-Tenant-ID"
    ),
):
    """Verify email and password.

    Returns either a new session or, for MFA-enrolled accounts, a pending
    challenge to be completed through /auth/mfa/verify.

    Raises:
        401: invalid credentials
        423: account temporarily locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, _client_context(request, x_tenant_id)
    )
    if isinstance(result, MfaRequired):
        return Envelope(
            status="ok",
            data=MfaChallengeResponse(
                account_id=result.account_id,
                challenge_expires_at=result.challenge_expires_at,
            ),
        )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_login_mfa(body: MfaLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.verify_login_mfa(
        body.account_id, body.code, _client_context(request)
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        session_id or request.cookies.get(SESSION_COOKIE), _client_context(request)
    )
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.auth.current_account(principal)
    return Envelope(
        status="ok",
        data={
            "account": AccountResponse.from_account(account),
            "session_expires_at": principal.session_expires_at,
        },
    )


# -- self-service security ---------------------------------------------------


@router.get("/security/password-policy", response_model=Envelope, tags=["security"])
async def password_policy(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.password_requirements(principal))


@router.post("/security/change-password", response_model=Envelope, tags=["security"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.change_password(principal, body.current_password, body.new_password)
    return Envelope(status="ok", data={"message": "password changed"})


@router.get("/security/mfa/status", response_model=Envelope, tags=["security"])
async def mfa_status(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=MfaStatusResponse(**runtime.auth.mfa_status(principal)))


@router.post("/security/mfa/enroll", response_model=Envelope, tags=["security"])
async def enroll_mfa(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    enrollment = await runtime.auth.enroll_mfa(principal)
    return Envelope(status="ok", data=MfaEnrollResponse(**enrollment))


@router.post("/security/mfa/verify-setup", response_model=Envelope, tags=["security"])
async def confirm_mfa_enrollment(
    body: MfaCodeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    codes = await runtime.auth.confirm_mfa_enrollment(principal, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.post("/security/mfa/disable", response_model=Envelope, tags=["security"])
async def disable_mfa(body: MfaCodeRequest, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.disable_mfa(principal, body.code)
    return Envelope(status="ok", data={"message": "MFA disabled"})


@router.get("/security/mfa/backup-codes", response_model=Envelope, tags=["security"])
async def backup_codes_remaining(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data={"remaining": runtime.auth.backup_codes_remaining(principal)}
    )


@router.post(
    "/security/mfa/backup-codes/regenerate", response_model=Envelope, tags=["security"]
)
async def regenerate_backup_codes(
    body: MfaCodeRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    codes = await runtime.auth.regenerate_backup_codes(principal, body.code)
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


@router.get("/security/sessions", response_model=Envelope, tags=["security"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    sessions = [SessionDeviceResponse(**s) for s in runtime.auth.list_sessions(principal)]
    return Envelope(status="ok", data={"sessions": sessions})


# Registered before the {device_id} route so "other" is not captured as an id
@router.delete("/security/sessions/other", response_model=Envelope, tags=["security"])
async def terminate_other_sessions(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.auth.terminate_other_sessions(principal)
    return Envelope(
        status="ok",
        data={"terminated_count": count, "message": f"{count} other session(s) terminated"},
    )


@router.delete("/security/sessions/{device_id}", response_model=Envelope, tags=["security"])
async def terminate_session(device_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    device = await runtime.auth.terminate_session(principal, device_id)
    return Envelope(status="ok", data={"message": "session terminated", "device_id": device.id})


# -- administration ----------------------------------------------------------


@router.get("/admin/security-policy", response_model=Envelope, tags=["admin"])
async def get_security_policy(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    policy = runtime.auth.get_security_policy(principal)
    return Envelope(status="ok", data=SecurityPolicyResponse.from_policy(policy))


@router.put("/admin/security-policy", response_model=Envelope, tags=["admin"])
async def update_security_policy(
    body: Dict[str, Any] = Body(...),
    principal: AuthContext = Depends(get_principal),
):
    # Raw mapping so range and unknown-field failures surface as policy_violation
    runtime = get_runtime()
    policy = await runtime.auth.update_security_policy(principal, body)
    return Envelope(status="ok", data=SecurityPolicyResponse.from_policy(policy))


@router.get("/admin/security-audit", response_model=Envelope, tags=["admin"])
async def list_audit_events(
    event_type: Optional[str] = Query(None, max_length=64),
    account_id: Optional[str] = Query(None, max_length=64),
    since: Optional[datetime] = Query(None),
    until: Optional[datetime] = Query(None),
    limit: Optional[int] = Query(None, ge=1),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    events, total = runtime.auth.list_audit_events(
        principal,
        event_type=event_type,
        account_id=account_id,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    effective_limit = min(limit or runtime.audit.default_limit, runtime.audit.max_limit)
    return Envelope(
        status="ok",
        data=AuditListResponse(
            events=[AuditEventResponse.from_event(e) for e in events],
            total=total,
            limit=effective_limit,
            offset=offset,
        ),
    )


@router.get("/admin/security-audit/verify", response_model=Envelope, tags=["admin"])
async def verify_audit_chain(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.verify_audit_chain(principal))


@router.get("/admin/mfa-stats", response_model=Envelope, tags=["admin"])
async def mfa_stats(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.auth.mfa_stats(principal))


@router.get("/admin/inactive-accounts", response_model=Envelope, tags=["admin"])
async def inactive_accounts(
    days: Optional[int] = Query(None, ge=1, le=3650),
    principal: AuthContext = Depends(get_principal),
):
    runtime = get_runtime()
    accounts = runtime.auth.inactive_accounts(principal, days)
    return Envelope(
        status="ok",
        data={
            "accounts": [
                InactiveAccountResponse(
                    id=a.id,
                    email=a.email,
                    full_name=a.full_name,
                    role=a.role,
                    last_login_at=a.last_login_at,
                    employment_status=a.employment_status,
                )
                for a in accounts
            ]
        },
    )


@router.post("/admin/bulk-disable", response_model=Envelope, tags=["admin"])
async def bulk_disable(
    body: BulkDisableRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    disabled = await runtime.auth.bulk_disable(principal, body.account_ids)
    return Envelope(
        status="ok",
        data={"disabled": disabled, "message": f"{len(disabled)} account(s) disabled"},
    )


@router.post("/admin/accounts/{account_id}/unlock", response_model=Envelope, tags=["admin"])
async def unlock_account(account_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    unlocked = await runtime.auth.unlock_account(principal, account_id)
    return Envelope(status="ok", data={"account_id": account_id, "unlocked": unlocked})
