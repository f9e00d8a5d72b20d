from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

import httpx

from adminguard.logging import get_logger
from adminguard.service.errors import (
    AuthError,
    AuthFailure,
    ServiceUnavailableError,
    StoreUnavailableError,
)
from adminguard.storage.errors import StoreUnavailable
from adminguard.storage.memory import DocumentStore

logger = get_logger(__name__)

_TOKEN_CHARSET = re.compile(r"[A-Za-z0-9._~+/=-]+")
_CLOCK_SKEW_LEEWAY = timedelta(seconds=120)


@dataclass(frozen=True)
class Identity:
    """Verified caller, rebuilt from the token on every request."""

    subject_id: str
    is_admin: bool
    token_expiry: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    expires_at: datetime


class IdentityProvider(Protocol):
    async def verify_token(self, token: str) -> TokenClaims: ...

    async def close(self) -> None: ...


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip()


def _parse_expiry(raw: Any) -> Optional[datetime]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return datetime.fromtimestamp(float(raw), tz=timezone.utc)
    if isinstance(raw, str) and raw:
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


class SignedTokenProvider:
    """HS256 JWT issuer and verifier sharing one secret.

    The header algorithm is pinned to HS256, issuer and audience must match,
    and expiry is checked with a small clock-skew allowance.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway: timedelta = _CLOCK_SKEW_LEEWAY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._leeway = leeway
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_token(self, subject_id: str, *, ttl_minutes: int = 60) -> str:
        now = int(self._clock())
        payload = {
            "sub": subject_id,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl_minutes) * 60,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> dict[str, Any]:
        invalid = AuthError(AuthFailure.INVALID_TOKEN)
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise invalid from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise invalid

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise invalid from None
        if not isinstance(payload, dict):
            raise invalid
        return payload

    async def verify_token(self, token: str) -> TokenClaims:
        payload = self._decode(token)
        if payload.get("iss") != self.issuer:
            raise AuthError(AuthFailure.INVALID_TOKEN)
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise AuthError(AuthFailure.INVALID_TOKEN)
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthError(AuthFailure.INVALID_TOKEN)
        expires_at = _parse_expiry(payload.get("exp"))
        if expires_at is None:
            raise AuthError(AuthFailure.INVALID_TOKEN)
        if expires_at.timestamp() <= self._clock() - self._leeway.total_seconds():
            raise AuthError(AuthFailure.EXPIRED, "token expired")
        return TokenClaims(subject_id=subject, expires_at=expires_at)

    async def close(self) -> None:
        return None


class RemoteIdentityProvider:
    """Verify tokens by calling an external identity service.

    ``POST <verify_url>`` with ``{"idToken": ...}``; a 200 response carries
    ``{"subjectId", "expiresAt"}``. 401/403 reject the token, with error
    code ``token_expired`` distinguishing expiry. Transport errors and 5xx
    responses are retried a bounded number of times and then reported as
    the provider being unavailable.
    """

    def __init__(
        self,
        verify_url: str,
        *,
        timeout: float = 5.0,
        retries: int = 2,
        backoff_seconds: float = 0.1,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.verify_url = verify_url
        self.retries = max(0, int(retries))
        self.backoff_seconds = backoff_seconds
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def verify_token(self, token: str) -> TokenClaims:
        last_error: Optional[str] = None
        for attempt in range(self.retries + 1):
            if attempt and self.backoff_seconds > 0:
                await asyncio.sleep(min(self.backoff_seconds * (2 ** (attempt - 1)), 2.0))
            try:
                response = await self._client.post(self.verify_url, json={"idToken": token})
            except httpx.TransportError as exc:
                last_error = type(exc).__name__
                logger.warning("identity_provider_transport_error", attempt=attempt + 1, error=last_error)
                continue
            if response.status_code >= 500:
                last_error = f"status {response.status_code}"
                logger.warning(
                    "identity_provider_server_error", attempt=attempt + 1, status_code=response.status_code
                )
                continue
            return self._claims_from_response(response)
        raise ServiceUnavailableError(
            "identity provider unavailable", detail={"error": last_error or "unknown"}
        )

    def _claims_from_response(self, response: httpx.Response) -> TokenClaims:
        try:
            body = response.json()
        except ValueError:
            body = None
        if response.status_code in (401, 403):
            code = body.get("error") if isinstance(body, dict) else None
            if isinstance(code, dict):
                code = code.get("code")
            if code == "token_expired":
                raise AuthError(AuthFailure.EXPIRED, "token expired")
            raise AuthError(AuthFailure.INVALID_TOKEN)
        if response.status_code != 200:
            raise AuthError(AuthFailure.INVALID_TOKEN)
        if not isinstance(body, dict):
            raise ServiceUnavailableError("identity provider returned a malformed response")
        subject = body.get("subjectId")
        expires_at = _parse_expiry(body.get("expiresAt"))
        if not isinstance(subject, str) or not subject or expires_at is None:
            raise ServiceUnavailableError("identity provider returned a malformed response")
        return TokenClaims(subject_id=subject, expires_at=expires_at)

    async def close(self) -> None:
        await self._client.aclose()


class AuthVerifier:
    """Resolve a bearer token to an ``Identity``.

    The admin flag always comes from the store record of the subject the
    provider vouched for, never from the request.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        store: DocumentStore,
        *,
        token_max_length: int = 4096,
        store_read_retries: int = 2,
        leeway: timedelta = _CLOCK_SKEW_LEEWAY,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.provider = provider
        self.store = store
        self.token_max_length = token_max_length
        self.store_read_retries = max(0, int(store_read_retries))
        self._leeway = leeway
        self._clock = clock

    def _check_format(self, token: Optional[str]) -> str:
        if not token or not isinstance(token, str):
            raise AuthError(AuthFailure.INVALID_TOKEN, "missing bearer token")
        if len(token) > self.token_max_length or not _TOKEN_CHARSET.fullmatch(token):
            raise AuthError(AuthFailure.INVALID_TOKEN)
        return token

    async def _load_user(self, subject_id: str):
        attempts = self.store_read_retries + 1
        for attempt in range(attempts):
            try:
                return await asyncio.to_thread(self.store.get_user, subject_id)
            except StoreUnavailable as exc:
                logger.warning(
                    "auth_store_lookup_failed", attempt=attempt + 1, attempts=attempts, error=exc.message
                )
        raise StoreUnavailableError("document store unavailable")

    async def verify(self, token: Optional[str]) -> Identity:
        token = self._check_format(token)
        claims = await self.provider.verify_token(token)
        if claims.expires_at + self._leeway <= self._clock():
            raise AuthError(AuthFailure.EXPIRED, "token expired")
        user = await self._load_user(claims.subject_id)
        if user is None:
            raise AuthError(AuthFailure.UNKNOWN_SUBJECT)
        return Identity(
            subject_id=user.id,
            is_admin=bool(user.is_admin),
            token_expiry=claims.expires_at,
        )


__all__ = [
    "Identity",
    "TokenClaims",
    "IdentityProvider",
    "SignedTokenProvider",
    "RemoteIdentityProvider",
    "AuthVerifier",
    "extract_bearer",
]
