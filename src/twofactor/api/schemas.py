from pydantic import BaseModel, Field


class VerifySetupRequest(BaseModel):
    """Body for finishing enrollment. The client resubmits the secret from /setup."""
    token: str = Field(..., min_length=6, max_length=6, description="6-digit verification code")
    secret: str = Field(..., min_length=1)


class VerifyRequest(BaseModel):
    """Body for 2FA during login"""
    user_id: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    is_backup_code: bool = False


class PasswordRequest(BaseModel):
    """Body for disabling 2FA or regenerating backup codes"""
    password: str = Field(..., min_length=1)


class SetupResponse(BaseModel):
    secret: str
    provisioning_uri: str
    qr_code_data_url: str
    manual_entry_key: str


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class BackupCodesResponse(MessageResponse):
    backup_codes: list[str]


class StatusResponse(BaseModel):
    two_factor_enabled: bool
    backup_codes_remaining: int


class CheckLoginRequest(BaseModel):
    """Body for the password step of login"""
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)


class CheckLoginResponse(BaseModel):
    user_id: str
    email: str
    requires_2fa: bool
