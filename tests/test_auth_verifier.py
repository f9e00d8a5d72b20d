"""Unit tests for token verification.

Tests for:
- Token format checks before any provider call
- Signed (HS256) token issue and verification
- Remote identity provider responses, retries and outages
- Store lookup of the subject and the admin flag
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from adminguard.service.auth import (
    AuthVerifier,
    RemoteIdentityProvider,
    SignedTokenProvider,
    TokenClaims,
    extract_bearer,
)
from adminguard.service.errors import (
    AuthError,
    AuthFailure,
    ServiceUnavailableError,
    StoreUnavailableError,
)
from adminguard.storage.errors import StoreUnavailable
from adminguard.storage.memory import MemoryStore

SECRET = "unit-test-secret-key-with-enough-length-0123456789"


@pytest.fixture
def store():
    store = MemoryStore()
    store.create_user("admin-0000001", is_admin=True)
    store.create_user("user-0000001")
    return store


@pytest.fixture
def provider():
    return SignedTokenProvider(SECRET, issuer="adminguard", audience="adminguard-clients")


@pytest.fixture
def verifier(provider, store):
    return AuthVerifier(provider, store, token_max_length=4096, store_read_retries=2)


def _future(minutes: int = 30) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


class TestBearerExtraction:
    def test_extracts_token(self):
        assert extract_bearer("Bearer abc.def") == "abc.def"
        assert extract_bearer("bearer abc") == "abc"

    def test_rejects_other_schemes(self):
        assert extract_bearer("Basic dXNlcjpwYXNz") is None
        assert extract_bearer(None) is None
        assert extract_bearer("") is None


class TestSignedTokens:
    async def test_round_trip(self, provider):
        token = provider.issue_token("admin-0000001")
        claims = await provider.verify_token(token)
        assert claims.subject_id == "admin-0000001"
        assert claims.expires_at > datetime.now(timezone.utc)

    async def test_wrong_secret_rejected(self, provider):
        other = SignedTokenProvider("x" * 40, issuer="adminguard", audience="adminguard-clients")
        with pytest.raises(AuthError) as exc_info:
            await provider.verify_token(other.issue_token("admin-0000001"))
        assert exc_info.value.kind == AuthFailure.INVALID_TOKEN

    async def test_wrong_audience_rejected(self, provider):
        other = SignedTokenProvider(SECRET, issuer="adminguard", audience="someone-else")
        with pytest.raises(AuthError) as exc_info:
            await provider.verify_token(other.issue_token("admin-0000001"))
        assert exc_info.value.kind == AuthFailure.INVALID_TOKEN

    async def test_wrong_issuer_rejected(self, provider):
        other = SignedTokenProvider(SECRET, issuer="evil", audience="adminguard-clients")
        with pytest.raises(AuthError):
            await provider.verify_token(other.issue_token("admin-0000001"))

    async def test_expired_token(self):
        clock = MagicMock(return_value=1_700_000_000.0)
        provider = SignedTokenProvider(
            SECRET, issuer="adminguard", audience="adminguard-clients", clock=clock
        )
        token = provider.issue_token("admin-0000001", ttl_minutes=1)
        clock.return_value = 1_700_000_000.0 + 60 + 121
        with pytest.raises(AuthError) as exc_info:
            await provider.verify_token(token)
        assert exc_info.value.kind == AuthFailure.EXPIRED

    async def test_algorithm_none_rejected(self, provider):
        token = provider.issue_token("admin-0000001")
        _, payload, signature = token.split(".")
        header = base64.urlsafe_b64encode(
            json.dumps({"alg": "none", "typ": "JWT"}).encode()
        ).decode().rstrip("=")
        with pytest.raises(AuthError):
            await provider.verify_token(f"{header}.{payload}.{signature}")

    async def test_tampered_payload_rejected(self, provider):
        token = provider.issue_token("user-0000001")
        header, _, signature = token.split(".")
        forged = base64.urlsafe_b64encode(
            json.dumps({"sub": "admin-0000001", "iss": "adminguard", "aud": "adminguard-clients",
                        "exp": 9_999_999_999}).encode()
        ).decode().rstrip("=")
        with pytest.raises(AuthError):
            await provider.verify_token(f"{header}.{forged}.{signature}")

    @pytest.mark.parametrize("token", ["abc", "a.b", "a.b.c.d"])
    async def test_malformed_structure(self, provider, token):
        with pytest.raises(AuthError):
            await provider.verify_token(token)


class TestVerifier:
    async def test_admin_identity(self, verifier, provider):
        identity = await verifier.verify(provider.issue_token("admin-0000001"))
        assert identity.subject_id == "admin-0000001"
        assert identity.is_admin is True

    async def test_non_admin_identity(self, verifier, provider):
        identity = await verifier.verify(provider.issue_token("user-0000001"))
        assert identity.is_admin is False

    async def test_admin_flag_read_from_store(self, verifier, provider, store):
        token = provider.issue_token("user-0000001")
        store.set_admin("user-0000001", True)
        identity = await verifier.verify(token)
        assert identity.is_admin is True

    async def test_unknown_subject(self, verifier, provider):
        with pytest.raises(AuthError) as exc_info:
            await verifier.verify(provider.issue_token("ghost-0000001"))
        assert exc_info.value.kind == AuthFailure.UNKNOWN_SUBJECT
        assert exc_info.value.status_code == 401

    @pytest.mark.parametrize(
        "token",
        [None, "", "has space", "semi;colon", "quote'd", "x" * 4097, "ünicode", "abc.def.ghi\n"],
    )
    async def test_malformed_tokens_never_reach_provider(self, store, token):
        provider = AsyncMock()
        verifier = AuthVerifier(provider, store)
        with pytest.raises(AuthError) as exc_info:
            await verifier.verify(token)
        assert exc_info.value.kind == AuthFailure.INVALID_TOKEN
        provider.verify_token.assert_not_awaited()

    async def test_expired_claims_enforced_locally(self, store):
        provider = AsyncMock()
        provider.verify_token.return_value = TokenClaims(
            subject_id="admin-0000001",
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=10),
        )
        verifier = AuthVerifier(provider, store)
        with pytest.raises(AuthError) as exc_info:
            await verifier.verify("opaque-token")
        assert exc_info.value.kind == AuthFailure.EXPIRED

    async def test_store_lookup_retried(self, provider):
        store = MagicMock()
        user = MemoryStore().create_user("admin-0000001", is_admin=True)
        store.get_user.side_effect = [StoreUnavailable("timeout"), user]
        verifier = AuthVerifier(provider, store, store_read_retries=2)
        identity = await verifier.verify(provider.issue_token("admin-0000001"))
        assert identity.is_admin is True
        assert store.get_user.call_count == 2

    async def test_store_outage_surfaces_as_unavailable(self, provider):
        store = MagicMock()
        store.get_user.side_effect = StoreUnavailable("timeout")
        verifier = AuthVerifier(provider, store, store_read_retries=1)
        with pytest.raises(StoreUnavailableError):
            await verifier.verify(provider.issue_token("admin-0000001"))
        assert store.get_user.call_count == 2


def _remote(handler, retries: int = 2) -> RemoteIdentityProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteIdentityProvider(
        "https://identity.test/verify", retries=retries, backoff_seconds=0, client=client
    )


class TestRemoteProvider:
    async def test_valid_token(self):
        expires = _future()
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"subjectId": "admin-0000001", "expiresAt": expires.isoformat()}
            )

        provider = _remote(handler)
        claims = await provider.verify_token("opaque-token")
        assert claims.subject_id == "admin-0000001"
        assert claims.expires_at == expires
        assert seen["body"] == {"idToken": "opaque-token"}
        await provider.close()

    async def test_epoch_expiry_accepted(self):
        def handler(request):
            return httpx.Response(200, json={"subjectId": "u-1", "expiresAt": 4_102_444_800})

        claims = await _remote(handler).verify_token("t")
        assert claims.expires_at.year == 2100

    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected_token(self, status):
        def handler(request):
            return httpx.Response(status, json={"error": "invalid_token"})

        with pytest.raises(AuthError) as exc_info:
            await _remote(handler).verify_token("t")
        assert exc_info.value.kind == AuthFailure.INVALID_TOKEN

    async def test_expired_token_code(self):
        def handler(request):
            return httpx.Response(401, json={"error": "token_expired"})

        with pytest.raises(AuthError) as exc_info:
            await _remote(handler).verify_token("t")
        assert exc_info.value.kind == AuthFailure.EXPIRED

    async def test_retries_server_errors_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(502)
            return httpx.Response(200, json={"subjectId": "u-1", "expiresAt": _future().isoformat()})

        claims = await _remote(handler, retries=2).verify_token("t")
        assert claims.subject_id == "u-1"
        assert len(calls) == 3

    async def test_outage_after_retries(self):
        calls = []

        def handler(request):
            calls.append(1)
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await _remote(handler, retries=1).verify_token("t")
        assert exc_info.value.status_code == 503
        assert len(calls) == 2

    async def test_rejections_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(401, json={})

        with pytest.raises(AuthError):
            await _remote(handler, retries=2).verify_token("t")
        assert len(calls) == 1

    async def test_malformed_success_body(self):
        def handler(request):
            return httpx.Response(200, json={"subject": "u-1"})

        with pytest.raises(ServiceUnavailableError):
            await _remote(handler).verify_token("t")
