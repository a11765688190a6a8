"""Enrollment and verification flows for TOTP two-factor authentication.

State per user: not enrolled -> pending verification -> enabled, and back
to not enrolled on disable. The pending state lives only on the client:
the secret is returned by begin_setup() and resubmitted to
complete_setup(), and nothing is persisted until a token derived from it
has been verified.

Every business failure comes back as a TwoFactorResult; nothing is raised
past this module except programming and infrastructure errors.
"""

from __future__ import annotations

import logging

from twofactor import crypto
from twofactor.auth import backup_codes, totp
from twofactor.config import settings
from twofactor.models import LoginCheck, TwoFactorError, TwoFactorResult, TwoFactorStatus
from twofactor.store import CredentialStore, RateLimiter

logger = logging.getLogger(__name__)


class TwoFactorService:
    def __init__(
        self,
        store: CredentialStore,
        *,
        issuer: str | None = None,
        backup_code_count: int | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.store = store
        self.issuer = issuer or settings.twofactor_issuer
        self.backup_code_count = backup_code_count or settings.backup_code_count
        self.rate_limiter = rate_limiter

    # ===================== setup =====================

    async def begin_setup(self, user_label: str, user_id: str | None = None) -> TwoFactorResult:
        """Generate a secret, provisioning URI and QR code. Nothing is stored."""
        if user_id is not None:
            cred = await self.store.get(user_id)
            if cred is None:
                return TwoFactorResult.failure(TwoFactorError.USER_NOT_FOUND)
            if cred.enabled:
                return TwoFactorResult.failure(TwoFactorError.ALREADY_ENABLED)

        setup = totp.generate_setup(user_label, self.issuer)
        return TwoFactorResult.success("Scan the QR code with your authenticator app", setup=setup)

    async def complete_setup(self, user_id: str, secret: str, token: str) -> TwoFactorResult:
        """Verify possession of ``secret`` and persist the enrollment.

        Returns the plaintext backup codes; this is the only time they
        are available.
        """
        if not totp.is_valid_secret(secret):
            logger.warning("2FA setup for user %s submitted a secret below 160 bits", user_id)
            return TwoFactorResult.failure(TwoFactorError.INVALID_SECRET)
        if not totp.verify_code(secret, token):
            logger.info("2FA setup verification failed for user %s", user_id)
            return TwoFactorResult.failure(TwoFactorError.INVALID_TOKEN)

        cred = await self.store.get(user_id)
        if cred is None:
            return TwoFactorResult.failure(TwoFactorError.USER_NOT_FOUND)
        if cred.enabled:
            return TwoFactorResult.failure(TwoFactorError.ALREADY_ENABLED)

        codes = backup_codes.generate(self.backup_code_count)
        stored = await self.store.enable(
            user_id,
            crypto.encrypt(secret),
            backup_codes.encrypt_all(codes),
        )
        if not stored:
            return TwoFactorResult.failure(TwoFactorError.ALREADY_ENABLED)

        logger.info("2FA enabled for user %s", user_id)
        return TwoFactorResult.success("2FA has been successfully enabled", backup_codes=codes)

    # ===================== login =====================

    async def check_login(self, email: str, password: str) -> TwoFactorResult:
        """Password step of login: tells the caller whether a 2FA prompt follows.

        Unknown email and wrong password both report INVALID_CREDENTIALS.
        """
        cred = await self.store.get_by_email(email)
        if cred is None or not await self.store.verify_password(cred.user_id, password):
            return TwoFactorResult.failure(TwoFactorError.INVALID_CREDENTIALS)
        if not cred.email_verified:
            return TwoFactorResult.failure(TwoFactorError.EMAIL_NOT_VERIFIED)

        return TwoFactorResult.success(
            login=LoginCheck(user_id=cred.user_id, email=cred.email, requires_2fa=cred.enabled),
        )

    async def verify_login(
        self,
        user_id: str,
        token_or_code: str,
        is_backup_code: bool = False,
    ) -> TwoFactorResult:
        """Check a TOTP token or consume a backup code during login."""
        if self.rate_limiter is not None and not await self.rate_limiter.allow(user_id):
            logger.warning("2FA verification rate-limited for user %s", user_id)
            return TwoFactorResult.failure(TwoFactorError.RATE_LIMITED)

        cred = await self.store.get(user_id)
        if cred is None:
            return TwoFactorResult.failure(TwoFactorError.USER_NOT_FOUND)
        if not cred.enabled or not cred.encrypted_secret:
            return TwoFactorResult.failure(TwoFactorError.NOT_ENABLED)

        try:
            if is_backup_code:
                return await self._use_backup_code(user_id, token_or_code, cred.encrypted_backup_codes)

            secret = crypto.decrypt(cred.encrypted_secret)
        except crypto.DecryptionError:
            logger.error(
                "Stored 2FA credentials for user %s failed to decrypt (corrupt data or key mismatch)",
                user_id,
                exc_info=True,
            )
            return TwoFactorResult.failure(TwoFactorError.DECRYPTION_ERROR)

        if not totp.verify_code(secret, token_or_code):
            logger.info("Invalid 2FA token for user %s", user_id)
            return TwoFactorResult.failure(TwoFactorError.INVALID_TOKEN)
        return TwoFactorResult.success("2FA verification successful")

    async def _use_backup_code(self, user_id: str, code: str, stored: list[str]) -> TwoFactorResult:
        try:
            remaining = backup_codes.consume(code, stored)
        except ValueError:
            logger.info("Invalid backup code for user %s", user_id)
            return TwoFactorResult.failure(TwoFactorError.INVALID_BACKUP_CODE)

        # Only one of several concurrent requests for the same code wins the swap.
        if not await self.store.replace_backup_codes(user_id, remaining, expected=stored):
            logger.warning("Backup code for user %s was consumed concurrently", user_id)
            return TwoFactorResult.failure(TwoFactorError.INVALID_BACKUP_CODE)

        logger.info("Backup code used for user %s (%d remaining)", user_id, len(remaining))
        return TwoFactorResult.success(
            "2FA verification successful",
            status=TwoFactorStatus(enabled=True, backup_codes_remaining=len(remaining)),
        )

    # ===================== disable / regenerate =====================

    async def disable(self, user_id: str, password: str) -> TwoFactorResult:
        """Turn 2FA off after re-verifying the account password."""
        cred = await self.store.get(user_id)
        if cred is None:
            return TwoFactorResult.failure(TwoFactorError.USER_NOT_FOUND)
        if not await self.store.verify_password(user_id, password):
            return TwoFactorResult.failure(TwoFactorError.WRONG_PASSWORD)
        if not cred.enabled:
            return TwoFactorResult.failure(TwoFactorError.NOT_ENABLED)

        await self.store.clear(user_id)
        logger.info("2FA disabled for user %s", user_id)
        return TwoFactorResult.success("2FA has been successfully disabled")

    async def regenerate_backup_codes(self, user_id: str, password: str) -> TwoFactorResult:
        """Replace every backup code with a fresh set."""
        cred = await self.store.get(user_id)
        if cred is None:
            return TwoFactorResult.failure(TwoFactorError.USER_NOT_FOUND)
        if not await self.store.verify_password(user_id, password):
            return TwoFactorResult.failure(TwoFactorError.WRONG_PASSWORD)
        if not cred.enabled:
            return TwoFactorResult.failure(TwoFactorError.NOT_ENABLED)

        codes = backup_codes.generate(self.backup_code_count)
        if not await self.store.replace_backup_codes(user_id, backup_codes.encrypt_all(codes)):
            return TwoFactorResult.failure(TwoFactorError.NOT_ENABLED)

        logger.info("Backup codes regenerated for user %s", user_id)
        return TwoFactorResult.success("New backup codes have been generated", backup_codes=codes)

    # ===================== misc =====================

    async def status(self, user_id: str) -> TwoFactorResult:
        cred = await self.store.get(user_id)
        if cred is None:
            return TwoFactorResult.failure(TwoFactorError.USER_NOT_FOUND)
        return TwoFactorResult.success(
            status=TwoFactorStatus(
                enabled=cred.enabled,
                backup_codes_remaining=len(cred.encrypted_backup_codes) if cred.enabled else 0,
            ),
        )
