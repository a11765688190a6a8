"""Credential persistence behind the 2FA service.

Every mutating call is a single conditional update so concurrent requests
cannot both succeed against the same pre-image.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from twofactor import db
from twofactor.auth.passwords import hash_password, verify_password
from twofactor.models import StoredCredential

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    async def get(self, user_id: str) -> StoredCredential | None: ...

    async def get_by_email(self, email: str) -> StoredCredential | None: ...

    async def enable(self, user_id: str, encrypted_secret: str, encrypted_codes: list[str]) -> bool:
        """Persist a verified enrollment. False if the user is already enabled or missing."""
        ...

    async def replace_backup_codes(
        self,
        user_id: str,
        new: list[str],
        expected: list[str] | None = None,
    ) -> bool:
        """Swap in ``new`` codes for an enabled user.

        When ``expected`` is given the swap only happens if the stored set
        still equals it.
        """
        ...

    async def clear(self, user_id: str) -> None: ...

    async def verify_password(self, user_id: str, password: str) -> bool: ...


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...


_COLUMNS = "id, email, email_verified, two_factor_enabled, two_factor_secret, backup_codes"


class PgCredentialStore:
    """PostgreSQL-backed store using the shared psycopg pool."""

    async def get(self, user_id: str) -> StoredCredential | None:
        row = await db.execute_one(f"SELECT {_COLUMNS} FROM users WHERE id = %s", (user_id,))
        return _row_to_credential(row) if row else None

    async def get_by_email(self, email: str) -> StoredCredential | None:
        row = await db.execute_one(f"SELECT {_COLUMNS} FROM users WHERE lower(email) = lower(%s)", (email,))
        return _row_to_credential(row) if row else None

    async def enable(self, user_id: str, encrypted_secret: str, encrypted_codes: list[str]) -> bool:
        rows = await db.execute(
            """UPDATE users
               SET two_factor_enabled = true,
                   two_factor_secret = %s,
                   backup_codes = %s
               WHERE id = %s AND two_factor_enabled = false
               RETURNING id""",
            (encrypted_secret, encrypted_codes, user_id),
        )
        return bool(rows)

    async def replace_backup_codes(
        self,
        user_id: str,
        new: list[str],
        expected: list[str] | None = None,
    ) -> bool:
        if expected is None:
            rows = await db.execute(
                """UPDATE users SET backup_codes = %s
                   WHERE id = %s AND two_factor_enabled = true
                   RETURNING id""",
                (new, user_id),
            )
        else:
            rows = await db.execute(
                """UPDATE users SET backup_codes = %s
                   WHERE id = %s AND two_factor_enabled = true
                     AND backup_codes = %s::text[]
                   RETURNING id""",
                (new, user_id, expected),
            )
        return bool(rows)

    async def clear(self, user_id: str) -> None:
        await db.execute(
            """UPDATE users
               SET two_factor_enabled = false,
                   two_factor_secret = NULL,
                   backup_codes = '{}'
               WHERE id = %s""",
            (user_id,),
        )

    async def verify_password(self, user_id: str, password: str) -> bool:
        row = await db.execute_one("SELECT password_hash FROM users WHERE id = %s", (user_id,))
        if row is None:
            return False
        return verify_password(password, row["password_hash"])

    async def create_user(self, user_id: str, email: str, password: str, email_verified: bool = True) -> None:
        await db.execute(
            """INSERT INTO users (id, email, password_hash, email_verified)
               VALUES (%s, %s, %s, %s)""",
            (user_id, email, hash_password(password), email_verified),
        )


def _row_to_credential(row: dict[str, Any]) -> StoredCredential:
    return StoredCredential(
        user_id=row["id"],
        email=row["email"],
        email_verified=row["email_verified"],
        enabled=row["two_factor_enabled"],
        encrypted_secret=row["two_factor_secret"],
        encrypted_backup_codes=list(row["backup_codes"] or []),
    )


class MemoryCredentialStore:
    """In-process store for development and tests.

    Mutations hold a lock so the compare-and-swap semantics match the
    PostgreSQL store.
    """

    def __init__(self) -> None:
        self._records: dict[str, StoredCredential] = {}
        self._passwords: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def add_user(self, user_id: str, email: str, password: str, email_verified: bool = True) -> None:
        self._records[user_id] = StoredCredential(user_id=user_id, email=email, email_verified=email_verified)
        self._passwords[user_id] = hash_password(password)

    async def get(self, user_id: str) -> StoredCredential | None:
        rec = self._records.get(user_id)
        return rec.model_copy(deep=True) if rec else None

    async def get_by_email(self, email: str) -> StoredCredential | None:
        for rec in self._records.values():
            if rec.email.lower() == email.lower():
                return rec.model_copy(deep=True)
        return None

    async def enable(self, user_id: str, encrypted_secret: str, encrypted_codes: list[str]) -> bool:
        async with self._lock:
            rec = self._records.get(user_id)
            if rec is None or rec.enabled:
                return False
            rec.enabled = True
            rec.encrypted_secret = encrypted_secret
            rec.encrypted_backup_codes = list(encrypted_codes)
            return True

    async def replace_backup_codes(
        self,
        user_id: str,
        new: list[str],
        expected: list[str] | None = None,
    ) -> bool:
        async with self._lock:
            rec = self._records.get(user_id)
            if rec is None or not rec.enabled:
                return False
            if expected is not None and rec.encrypted_backup_codes != expected:
                logger.info("Backup code set for user %s changed concurrently", user_id)
                return False
            rec.encrypted_backup_codes = list(new)
            return True

    async def clear(self, user_id: str) -> None:
        async with self._lock:
            rec = self._records.get(user_id)
            if rec is None:
                return
            rec.enabled = False
            rec.encrypted_secret = None
            rec.encrypted_backup_codes = []

    async def verify_password(self, user_id: str, password: str) -> bool:
        return verify_password(password, self._passwords.get(user_id))
