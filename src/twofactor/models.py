"""Pydantic models for data flowing through the 2FA flows."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field


class TwoFactorError(StrEnum):
    INVALID_TOKEN = "invalid_token"
    INVALID_BACKUP_CODE = "invalid_backup_code"
    ALREADY_ENABLED = "already_enabled"
    NOT_ENABLED = "not_enabled"
    DECRYPTION_ERROR = "decryption_error"
    WRONG_PASSWORD = "wrong_password"
    USER_NOT_FOUND = "user_not_found"
    RATE_LIMITED = "rate_limited"
    INVALID_SECRET = "invalid_secret"
    INVALID_CREDENTIALS = "invalid_credentials"
    EMAIL_NOT_VERIFIED = "email_not_verified"


ERROR_MESSAGES: dict[TwoFactorError, str] = {
    TwoFactorError.INVALID_TOKEN: "Invalid verification code",
    TwoFactorError.INVALID_BACKUP_CODE: "Invalid backup code",
    TwoFactorError.ALREADY_ENABLED: "2FA is already enabled",
    TwoFactorError.NOT_ENABLED: "2FA is not enabled for this user",
    TwoFactorError.DECRYPTION_ERROR: "Stored 2FA credentials could not be read",
    TwoFactorError.WRONG_PASSWORD: "Incorrect password",
    TwoFactorError.USER_NOT_FOUND: "User not found",
    TwoFactorError.RATE_LIMITED: "Too many verification attempts",
    TwoFactorError.INVALID_SECRET: "Secret was not issued by setup",
    TwoFactorError.INVALID_CREDENTIALS: "Invalid credentials",
    TwoFactorError.EMAIL_NOT_VERIFIED: "Email address is not verified",
}


class StoredCredential(BaseModel):
    """A user's 2FA state as persisted. Secrets are ciphertext only."""

    user_id: str
    email: str = ""
    email_verified: bool = True
    enabled: bool = False
    encrypted_secret: str | None = None
    encrypted_backup_codes: list[str] = Field(default_factory=list)


class SetupData(BaseModel):
    """Shown to the user once, at setup. Never persisted in this form."""

    secret: str
    provisioning_uri: str
    qr_code_data_url: str
    manual_entry_key: str


class TwoFactorStatus(BaseModel):
    enabled: bool
    backup_codes_remaining: int = 0


class LoginCheck(BaseModel):
    """Outcome of the password step, before any 2FA prompt."""

    user_id: str
    email: str
    requires_2fa: bool


class TwoFactorResult(BaseModel):
    ok: bool
    error: TwoFactorError | None = None
    message: str = ""
    setup: SetupData | None = None
    backup_codes: list[str] = Field(default_factory=list)
    status: TwoFactorStatus | None = None
    login: LoginCheck | None = None

    @classmethod
    def success(cls, message: str = "", **kwargs) -> TwoFactorResult:
        return cls(ok=True, message=message, **kwargs)

    @classmethod
    def failure(cls, error: TwoFactorError) -> TwoFactorResult:
        return cls(ok=False, error=error, message=ERROR_MESSAGES[error])
