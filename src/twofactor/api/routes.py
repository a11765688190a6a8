"""2FA endpoints: login pre-check, setup, verify-setup, login verify, disable, backup codes, status."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status

from twofactor.api.schemas import (
    BackupCodesResponse,
    CheckLoginRequest,
    CheckLoginResponse,
    MessageResponse,
    PasswordRequest,
    SetupResponse,
    StatusResponse,
    VerifyRequest,
    VerifySetupRequest,
)
from twofactor.models import TwoFactorError, TwoFactorResult
from twofactor.service import TwoFactorService
from twofactor.store import PgCredentialStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth/2fa", tags=["2fa"])
login_router = APIRouter(prefix="/api/auth", tags=["auth"])

_ERROR_STATUS = {
    TwoFactorError.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    TwoFactorError.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    TwoFactorError.DECRYPTION_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
    TwoFactorError.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    TwoFactorError.EMAIL_NOT_VERIFIED: status.HTTP_401_UNAUTHORIZED,
}


def get_service() -> TwoFactorService:
    return TwoFactorService(PgCredentialStore())


def get_current_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """The upstream session layer authenticates the user and sets X-User-Id."""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return x_user_id


ServiceDep = Annotated[TwoFactorService, Depends(get_service)]
UserIdDep = Annotated[str, Depends(get_current_user_id)]


def _raise_for(result: TwoFactorResult) -> None:
    if result.ok:
        return
    code = _ERROR_STATUS.get(result.error, status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail={"error": result.error.value, "message": result.message})


@router.get("/setup", response_model=SetupResponse)
async def setup(service: ServiceDep, user_id: UserIdDep):
    cred = await service.store.get(user_id)
    if cred is None:
        _raise_for(TwoFactorResult.failure(TwoFactorError.USER_NOT_FOUND))
    result = await service.begin_setup(cred.email or user_id, user_id=user_id)
    _raise_for(result)
    return SetupResponse(**result.setup.model_dump())


@router.post("/verify-setup", response_model=BackupCodesResponse)
async def verify_setup(body: VerifySetupRequest, service: ServiceDep, user_id: UserIdDep):
    result = await service.complete_setup(user_id, body.secret, body.token)
    _raise_for(result)
    # Plaintext codes are returned once for the user to save.
    return BackupCodesResponse(message=result.message, backup_codes=result.backup_codes)


@router.post("/verify", response_model=MessageResponse)
async def verify(body: VerifyRequest, service: ServiceDep):
    result = await service.verify_login(body.user_id, body.token, body.is_backup_code)
    _raise_for(result)
    return MessageResponse(message=result.message)


@router.post("/disable", response_model=MessageResponse)
async def disable(body: PasswordRequest, service: ServiceDep, user_id: UserIdDep):
    result = await service.disable(user_id, body.password)
    _raise_for(result)
    return MessageResponse(message=result.message)


@router.post("/backup-codes", response_model=BackupCodesResponse)
async def regenerate_backup_codes(body: PasswordRequest, service: ServiceDep, user_id: UserIdDep):
    result = await service.regenerate_backup_codes(user_id, body.password)
    _raise_for(result)
    return BackupCodesResponse(message=result.message, backup_codes=result.backup_codes)


@router.get("/status", response_model=StatusResponse)
async def get_status(service: ServiceDep, user_id: UserIdDep):
    result = await service.status(user_id)
    _raise_for(result)
    return StatusResponse(
        two_factor_enabled=result.status.enabled,
        backup_codes_remaining=result.status.backup_codes_remaining,
    )


@login_router.post("/check-2fa", response_model=CheckLoginResponse)
async def check_2fa(body: CheckLoginRequest, service: ServiceDep):
    """Password step of login; the client prompts for a code when requires_2fa is set."""
    result = await service.check_login(body.email, body.password)
    _raise_for(result)
    return CheckLoginResponse(**result.login.model_dump())
