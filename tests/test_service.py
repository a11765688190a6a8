"""End-to-end tests for the enrollment and verification flows."""

from __future__ import annotations

import asyncio
import logging

import pyotp
import pytest

from twofactor.auth import backup_codes
from twofactor.crypto import decrypt
from twofactor.models import TwoFactorError
from twofactor.service import TwoFactorService
from twofactor.store import MemoryCredentialStore

PASSWORD = "correct-horse-battery"


class SlowReadStore(MemoryCredentialStore):
    """Yields to the event loop on every read so concurrent requests interleave."""

    def __init__(self) -> None:
        super().__init__()
        self.swaps = 0

    async def get(self, user_id: str):
        cred = await super().get(user_id)
        await asyncio.sleep(0)
        return cred

    async def replace_backup_codes(self, user_id, new, expected=None):
        if expected is not None:
            self.swaps += 1
        return await super().replace_backup_codes(user_id, new, expected)


class DenyAfter:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.calls: list[str] = []

    async def allow(self, key: str) -> bool:
        self.calls.append(key)
        return len(self.calls) <= self.limit


@pytest.fixture
def service(store) -> TwoFactorService:
    return TwoFactorService(store, issuer="Journly", backup_code_count=8)


async def _enroll(service: TwoFactorService, user_id: str = "u1") -> tuple[str, list[str]]:
    begun = await service.begin_setup("a@b.com", user_id=user_id)
    secret = begun.setup.secret
    done = await service.complete_setup(user_id, secret, pyotp.TOTP(secret).now())
    assert done.ok, done.message
    return secret, done.backup_codes


@pytest.mark.asyncio
async def test_begin_setup_persists_nothing(service, store):
    result = await service.begin_setup("a@b.com", user_id="u1")
    assert result.ok
    assert result.setup.secret in result.setup.provisioning_uri
    assert "Journly" in result.setup.provisioning_uri

    cred = await store.get("u1")
    assert cred.enabled is False
    assert cred.encrypted_secret is None


@pytest.mark.asyncio
async def test_begin_setup_without_user(service):
    result = await service.begin_setup("a@b.com")
    assert result.ok
    assert len(result.setup.secret) == 32


@pytest.mark.asyncio
async def test_complete_setup_enables(service, store):
    secret, codes = await _enroll(service)
    assert len(codes) == 8

    cred = await store.get("u1")
    assert cred.enabled is True
    assert cred.encrypted_secret != secret
    assert decrypt(cred.encrypted_secret) == secret
    assert len(cred.encrypted_backup_codes) == 8
    assert sorted(decrypt(c) for c in cred.encrypted_backup_codes) == sorted(
        backup_codes.normalize(c) for c in codes
    )


@pytest.mark.asyncio
async def test_complete_setup_wrong_token(service, store):
    secret = (await service.begin_setup("a@b.com")).setup.secret
    result = await service.complete_setup("u1", secret, "000000")
    if result.ok:
        pytest.skip("000000 happened to be the current code")
    assert result.error == TwoFactorError.INVALID_TOKEN

    cred = await store.get("u1")
    assert cred.enabled is False
    assert cred.encrypted_secret is None
    assert cred.encrypted_backup_codes == []


@pytest.mark.asyncio
async def test_complete_setup_retry_with_same_secret(service):
    secret = (await service.begin_setup("a@b.com")).setup.secret
    await service.complete_setup("u1", secret, "abc")
    result = await service.complete_setup("u1", secret, pyotp.TOTP(secret).now())
    assert result.ok


@pytest.mark.asyncio
async def test_already_enabled(service):
    await _enroll(service)
    assert (await service.begin_setup("a@b.com", user_id="u1")).error == TwoFactorError.ALREADY_ENABLED

    secret = pyotp.random_base32()
    result = await service.complete_setup("u1", secret, pyotp.TOTP(secret).now())
    assert result.error == TwoFactorError.ALREADY_ENABLED


@pytest.mark.asyncio
async def test_unknown_user(service):
    secret = pyotp.random_base32()
    result = await service.complete_setup("nobody", secret, pyotp.TOTP(secret).now())
    assert result.error == TwoFactorError.USER_NOT_FOUND
    assert (await service.verify_login("nobody", "123456")).error == TwoFactorError.USER_NOT_FOUND
    assert (await service.disable("nobody", PASSWORD)).error == TwoFactorError.USER_NOT_FOUND
    assert (await service.status("nobody")).error == TwoFactorError.USER_NOT_FOUND


@pytest.mark.asyncio
async def test_verify_login_totp(service):
    secret, _ = await _enroll(service)
    assert (await service.verify_login("u1", pyotp.TOTP(secret).now())).ok

    result = await service.verify_login("u1", "12345")
    assert result.error == TwoFactorError.INVALID_TOKEN


@pytest.mark.asyncio
async def test_verify_login_not_enabled(service):
    result = await service.verify_login("u1", "123456")
    assert result.error == TwoFactorError.NOT_ENABLED


@pytest.mark.asyncio
async def test_backup_code_single_use(service, store):
    _, codes = await _enroll(service)
    before = len((await store.get("u1")).encrypted_backup_codes)

    result = await service.verify_login("u1", codes[1], is_backup_code=True)
    assert result.ok
    assert result.status.backup_codes_remaining == before - 1
    assert len((await store.get("u1")).encrypted_backup_codes) == before - 1

    again = await service.verify_login("u1", codes[1], is_backup_code=True)
    assert again.error == TwoFactorError.INVALID_BACKUP_CODE
    assert len((await store.get("u1")).encrypted_backup_codes) == before - 1


@pytest.mark.asyncio
async def test_backup_code_leaves_others(service, store):
    await _enroll(service)
    # Replace with a known set of three codes.
    known = ["AAAA-AAAA", "BBBB-BBBB", "CCCC-CCCC"]
    await store.replace_backup_codes("u1", backup_codes.encrypt_all(known))

    assert (await service.verify_login("u1", "bbbb-bbbb", is_backup_code=True)).ok
    remaining = sorted(decrypt(c) for c in (await store.get("u1")).encrypted_backup_codes)
    assert remaining == ["AAAAAAAA", "CCCCCCCC"]

    second = await service.verify_login("u1", "BBBB-BBBB", is_backup_code=True)
    assert second.error == TwoFactorError.INVALID_BACKUP_CODE


@pytest.mark.asyncio
async def test_backup_code_concurrent_double_spend():
    store = SlowReadStore()
    store.add_user("u1", "a@b.com", PASSWORD)
    service = TwoFactorService(store, backup_code_count=8)
    _, codes = await _enroll(service)
    results = await asyncio.gather(
        service.verify_login("u1", codes[0], is_backup_code=True),
        service.verify_login("u1", codes[0], is_backup_code=True),
    )
    assert sorted(r.ok for r in results) == [False, True]
    loser = next(r for r in results if not r.ok)
    assert loser.error == TwoFactorError.INVALID_BACKUP_CODE
    assert len((await store.get("u1")).encrypted_backup_codes) == 7
    # Both requests read the same set and reached the conditional write.
    assert store.swaps == 2


@pytest.mark.asyncio
async def test_stale_expected_set_loses(service, store):
    await _enroll(service)
    stored = (await store.get("u1")).encrypted_backup_codes
    remaining = stored[1:]
    assert await store.replace_backup_codes("u1", remaining, expected=stored)
    assert not await store.replace_backup_codes("u1", remaining, expected=stored)


@pytest.mark.asyncio
async def test_corrupt_secret_reports_decryption_error(service, store, caplog):
    await _enroll(service)
    store._records["u1"].encrypted_secret = "corrupt"

    with caplog.at_level(logging.ERROR, logger="twofactor.service"):
        result = await service.verify_login("u1", "123456")
    assert result.error == TwoFactorError.DECRYPTION_ERROR
    assert any("failed to decrypt" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_corrupt_backup_codes_report_decryption_error(service, store):
    await _enroll(service)
    store._records["u1"].encrypted_backup_codes = ["corrupt"]
    result = await service.verify_login("u1", "ABCD-EFGH", is_backup_code=True)
    assert result.error == TwoFactorError.DECRYPTION_ERROR


@pytest.mark.asyncio
async def test_rate_limiter_consulted(store):
    limiter = DenyAfter(1)
    service = TwoFactorService(store, rate_limiter=limiter)
    await service.verify_login("u1", "123456")
    result = await service.verify_login("u1", "123456")
    assert result.error == TwoFactorError.RATE_LIMITED
    assert limiter.calls == ["u1", "u1"]


@pytest.mark.asyncio
async def test_disable_wrong_password_keeps_credential(service, store):
    secret, _ = await _enroll(service)
    result = await service.disable("u1", "wrong-password")
    assert result.error == TwoFactorError.WRONG_PASSWORD

    cred = await store.get("u1")
    assert cred.enabled is True
    assert decrypt(cred.encrypted_secret) == secret
    assert len(cred.encrypted_backup_codes) == 8


@pytest.mark.asyncio
async def test_disable_clears_everything(service, store):
    await _enroll(service)
    assert (await service.disable("u1", PASSWORD)).ok

    cred = await store.get("u1")
    assert cred.enabled is False
    assert cred.encrypted_secret is None
    assert cred.encrypted_backup_codes == []

    assert (await service.disable("u1", PASSWORD)).error == TwoFactorError.NOT_ENABLED
    # Re-enrollment is possible after disabling.
    await _enroll(service)


@pytest.mark.asyncio
async def test_regenerate_backup_codes(service, store):
    _, old = await _enroll(service)
    await service.verify_login("u1", old[0], is_backup_code=True)
    assert len((await store.get("u1")).encrypted_backup_codes) == 7

    result = await service.regenerate_backup_codes("u1", PASSWORD)
    assert result.ok
    assert len(result.backup_codes) == 8
    assert len((await store.get("u1")).encrypted_backup_codes) == 8

    for code in old[1:]:
        assert (await service.verify_login("u1", code, is_backup_code=True)).error == (
            TwoFactorError.INVALID_BACKUP_CODE
        )
    assert (await service.verify_login("u1", result.backup_codes[0], is_backup_code=True)).ok


@pytest.mark.asyncio
async def test_regenerate_requires_password_and_enrollment(service):
    assert (await service.regenerate_backup_codes("u1", PASSWORD)).error == TwoFactorError.NOT_ENABLED
    await _enroll(service)
    assert (await service.regenerate_backup_codes("u1", "nope")).error == TwoFactorError.WRONG_PASSWORD


@pytest.mark.asyncio
async def test_status(service):
    status = (await service.status("u1")).status
    assert status.enabled is False
    assert status.backup_codes_remaining == 0

    await _enroll(service)
    status = (await service.status("u1")).status
    assert status.enabled is True
    assert status.backup_codes_remaining == 8


@pytest.mark.asyncio
@pytest.mark.parametrize("secret", ["AAAAAAAA", "JBSWY3DPEHPK3PXP", "not base32!"])
async def test_complete_setup_rejects_weak_secret(service, store, secret):
    token = pyotp.TOTP("AAAAAAAA").now() if secret == "AAAAAAAA" else "123456"
    result = await service.complete_setup("u1", secret, token)
    assert result.error == TwoFactorError.INVALID_SECRET

    cred = await store.get("u1")
    assert cred.enabled is False
    assert cred.encrypted_secret is None


@pytest.mark.asyncio
async def test_check_login(service):
    result = await service.check_login("A@B.com", PASSWORD)
    assert result.ok
    assert result.login.user_id == "u1"
    assert result.login.requires_2fa is False

    await _enroll(service)
    assert (await service.check_login("a@b.com", PASSWORD)).login.requires_2fa is True


@pytest.mark.asyncio
async def test_check_login_bad_credentials(service):
    assert (await service.check_login("a@b.com", "wrong")).error == TwoFactorError.INVALID_CREDENTIALS
    assert (await service.check_login("x@y.com", PASSWORD)).error == TwoFactorError.INVALID_CREDENTIALS


@pytest.mark.asyncio
async def test_check_login_unverified_email(store):
    store.add_user("u2", "new@b.com", PASSWORD, email_verified=False)
    result = await TwoFactorService(store).check_login("new@b.com", PASSWORD)
    assert result.error == TwoFactorError.EMAIL_NOT_VERIFIED
