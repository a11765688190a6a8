from __future__ import annotations

import base64
import os

import pytest

from twofactor.config import Settings
from twofactor.store import MemoryCredentialStore

PASSWORD = "correct-horse-battery"


@pytest.fixture(autouse=True)
def master_key(monkeypatch):
    key = base64.b64encode(os.urandom(32)).decode()
    monkeypatch.setattr(
        "twofactor.crypto.settings",
        Settings(_env_file=None, twofactor_master_key=key),
    )
    return key


@pytest.fixture
def store() -> MemoryCredentialStore:
    s = MemoryCredentialStore()
    s.add_user("u1", "a@b.com", PASSWORD)
    return s
