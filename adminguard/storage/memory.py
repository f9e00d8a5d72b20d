from __future__ import annotations

import threading
from ipaddress import ip_address
from typing import Dict, List, Optional, Protocol

from adminguard.logging import get_logger
from adminguard.storage.errors import ConstraintViolation
from adminguard.storage.models import IpBan, License, User, UserBan


class DocumentStore(Protocol):
    """Keyed-record store consumed by the gateway.

    Writes only ever receive schema-validated fields plus the server-derived
    actor id. Implementations raise ``StoreUnavailable`` on I/O failure and
    ``ConstraintViolation`` on conflicting writes.
    """

    def get_user(self, user_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def create_user_ban(
        self, user_id: str, reason: str, duration_days: int, *, banned_by: str
    ) -> UserBan: ...

    def create_license(
        self, plan: str, validity_days: int, *, issued_by: str
    ) -> License: ...

    def create_ip_ban(
        self, ip_addr: str, reason: str, duration_days: int, *, banned_by: str
    ) -> IpBan: ...


class MemoryStore:
    """In-memory document store used for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.user_bans: Dict[str, UserBan] = {}
        self.ip_bans: Dict[str, IpBan] = {}
        self.licenses: Dict[str, License] = {}
        # RLock so seeding helpers can call public methods while holding it
        self._data_lock = threading.RLock()

    def create_user(
        self,
        user_id: str,
        *,
        is_admin: bool = False,
        display_name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> User:
        with self._data_lock:
            if user_id in self.users:
                raise ConstraintViolation("user exists", {"user_id": user_id})
            user = User(id=user_id, is_admin=is_admin, display_name=display_name, meta=meta)
            self.users[user_id] = user
            return user

    def set_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_admin = is_admin
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at)
            return users[: max(0, limit)]

    def create_user_ban(
        self, user_id: str, reason: str, duration_days: int, *, banned_by: str
    ) -> UserBan:
        with self._data_lock:
            existing = self.user_bans.get(user_id)
            if existing and existing.is_active():
                raise ConstraintViolation(
                    "user already banned", {"user_id": user_id, "ban_id": existing.id}
                )
            ban = UserBan.new(user_id, reason, duration_days, banned_by)
            self.user_bans[user_id] = ban
        self.logger.info("user_ban_created", ban_id=ban.id, banned_by=banned_by)
        return ban

    def create_license(
        self, plan: str, validity_days: int, *, issued_by: str
    ) -> License:
        with self._data_lock:
            record = License.new(plan, validity_days, issued_by)
            while record.key in self.licenses:
                record = License.new(plan, validity_days, issued_by)
            self.licenses[record.key] = record
        self.logger.info("license_created", license_id=record.id, issued_by=issued_by)
        return record

    def create_ip_ban(
        self, ip_addr: str, reason: str, duration_days: int, *, banned_by: str
    ) -> IpBan:
        # Normalize so 2001:DB8::1 and 2001:db8::1 share one record
        normalized = str(ip_address(ip_addr))
        with self._data_lock:
            existing = self.ip_bans.get(normalized)
            if existing and existing.is_active():
                raise ConstraintViolation(
                    "ip already banned", {"ban_id": existing.id}
                )
            ban = IpBan.new(normalized, reason, duration_days, banned_by)
            self.ip_bans[normalized] = ban
        self.logger.info("ip_ban_created", ban_id=ban.id, banned_by=banned_by)
        return ban

    def verify_connection(self) -> None:
        return None
