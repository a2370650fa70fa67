"""Unit tests for the auth service: password hashing, tokens and sessions."""

import pytest

from kanari.config import Settings
from kanari.service.auth import AuthService
from kanari.service.errors import AuthenticationError, BadRequestError, ConflictError
from kanari.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    return AuthService(store=memory_store, settings=settings)


async def test_signup_then_authenticate(auth_service):
    issued = await auth_service.signup("Person@Example.com", "correct horse")

    assert issued.user.email == "person@example.com"
    assert issued.token_type == "bearer"
    ctx = await auth_service.authenticate(f"Bearer {issued.access_token}")
    assert ctx is not None
    assert ctx.user_id == issued.user.id
    assert ctx.session_id == issued.session.id


async def test_signup_validation(auth_service):
    with pytest.raises(BadRequestError):
        await auth_service.signup("not-an-email", "long enough")
    with pytest.raises(BadRequestError):
        await auth_service.signup("short@example.com", "short")


async def test_duplicate_signup_conflicts(auth_service):
    await auth_service.signup("dup@example.com", "password-1")
    with pytest.raises(ConflictError):
        await auth_service.signup("DUP@example.com", "password-2")


async def test_login_checks_password(auth_service):
    await auth_service.signup("login@example.com", "right-password")

    issued = await auth_service.login("login@example.com", "right-password")
    assert issued.access_token

    with pytest.raises(AuthenticationError) as excinfo:
        await auth_service.login("login@example.com", "wrong-password")
    assert excinfo.value.error_code == "invalid_credentials"
    with pytest.raises(AuthenticationError):
        await auth_service.login("nobody@example.com", "right-password")


async def test_logout_revokes_session(auth_service):
    issued = await auth_service.signup("logout@example.com", "password-123")
    header = f"Bearer {issued.access_token}"
    assert await auth_service.authenticate(header) is not None

    await auth_service.logout(issued.session.id)

    assert await auth_service.authenticate(header) is None


async def test_rejects_malformed_and_tampered_tokens(auth_service, memory_store, settings):
    issued = await auth_service.signup("tamper@example.com", "password-123")

    assert await auth_service.authenticate(None) is None
    assert await auth_service.authenticate("Basic abc") is None
    assert await auth_service.authenticate("Bearer not.a.jwt") is None
    assert await auth_service.authenticate("Bearer only-one-part") is None

    header, payload, signature = issued.access_token.split(".")
    forged = f"{header}.{payload}.{signature[::-1]}"
    assert await auth_service.authenticate(f"Bearer {forged}") is None

    other_secret = Settings(jwt_secret="a-completely-different-secret-value-0123456789")
    other = AuthService(store=memory_store, settings=other_secret)
    assert await other.authenticate(f"Bearer {issued.access_token}") is None


async def test_expired_token_is_rejected(auth_service):
    issued = await auth_service.signup("expired@example.com", "password-123")
    token = auth_service._encode_jwt(
        {
            "iss": auth_service.settings.jwt_issuer,
            "aud": auth_service.settings.jwt_audience,
            "sub": issued.user.id,
            "sid": issued.session.id,
            "token_type": "access",
            "exp": 1000,
        }
    )
    assert await auth_service.authenticate(f"Bearer {token}") is None


async def test_token_for_foreign_session_is_rejected(auth_service):
    first = await auth_service.signup("first@example.com", "password-123")
    second = await auth_service.signup("second@example.com", "password-123")
    token = auth_service._encode_jwt(
        {
            "iss": auth_service.settings.jwt_issuer,
            "aud": auth_service.settings.jwt_audience,
            "sub": first.user.id,
            "sid": second.session.id,
            "token_type": "access",
            "exp": 4102444800,
        }
    )
    assert await auth_service.authenticate(f"Bearer {token}") is None


def test_password_hash_round_trip(auth_service, memory_store):
    user = memory_store.create_user("hash@example.com")
    pwd_hash, algo = auth_service._hash_password("TestPassword123!")
    memory_store.save_password(user.id, pwd_hash, algo)

    assert algo == "argon2id"
    assert pwd_hash != "TestPassword123!"
    assert auth_service.verify_password(user.id, "TestPassword123!")
    assert not auth_service.verify_password(user.id, "WrongPassword")
    assert not auth_service.verify_password("missing-user", "TestPassword123!")
