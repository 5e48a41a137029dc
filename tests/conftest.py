"""Shared fixtures for tenantauth tests."""

import tempfile
from pathlib import Path
from typing import Optional

import pytest

from tenantauth.security.sessions import SessionAuthenticator
from tenantauth.storage.database import CredentialStore
from tenantauth.storage.models import Role, User, utc_now

TEST_PASSWORD = "correct horse battery"


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    """Credential store on a fresh database."""
    return CredentialStore(temp_dir / "test_tenantauth.db")


@pytest.fixture
def authenticator(store):
    return SessionAuthenticator(store, secret_key="test-secret-key")


@pytest.fixture
def make_user(store, authenticator):
    """Factory inserting users straight into the store."""
    counter = {"n": 0}

    def _make(
        role: Role = Role.USER, email: Optional[str] = None, password: str = TEST_PASSWORD
    ) -> User:
        counter["n"] += 1
        password_hash, salt = authenticator.hash_password(password)
        user = User(
            user_id=f"user_test_{counter['n']}",
            email=email or f"user{counter['n']}@example.com",
            name=f"Test User {counter['n']}",
            password_hash=password_hash,
            role=role,
            created_at=utc_now(),
            updated_at=utc_now(),
        )
        store.insert_user(user, salt)
        return user

    return _make
