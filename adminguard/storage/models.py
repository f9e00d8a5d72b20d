from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    is_admin: bool = False
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    meta: Dict | None = None

    def to_public_dict(self) -> dict:
        return {
            "uid": self.id,
            "displayName": self.display_name,
            "isAdmin": self.is_admin,
            "createdAt": self.created_at.isoformat(),
            "meta": self.meta or {},
        }


@dataclass
class UserBan:
    id: str
    user_id: str
    reason: str
    banned_by: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, user_id: str, reason: str, duration_days: int, banned_by: str) -> "UserBan":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            reason=reason,
            banned_by=banned_by,
            created_at=now,
            expires_at=now + timedelta(days=duration_days),
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or _utcnow())


@dataclass
class IpBan:
    id: str
    ip_address: str
    reason: str
    banned_by: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, ip_address: str, reason: str, duration_days: int, banned_by: str) -> "IpBan":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            ip_address=ip_address,
            reason=reason,
            banned_by=banned_by,
            created_at=now,
            expires_at=now + timedelta(days=duration_days),
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at > (now or _utcnow())


def generate_license_key() -> str:
    """Return a key of the form XXXX-XXXX-XXXX-XXXX (uppercase hex)."""
    raw = secrets.token_hex(8).upper()
    return "-".join(raw[i : i + 4] for i in range(0, len(raw), 4))


@dataclass
class License:
    id: str
    key: str
    plan: str
    issued_by: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(cls, plan: str, validity_days: int, issued_by: str) -> "License":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            key=generate_license_key(),
            plan=plan,
            issued_by=issued_by,
            created_at=now,
            expires_at=now + timedelta(days=validity_days),
        )
