"""Named operations the gateway can dispatch.

Each operation pairs a payload model with its admission policy and a
handler. Handlers are synchronous and run off the event loop; they only
ever see the validated payload and the verified identity.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Type

from adminguard.api.schemas import (
    BanIpPayload,
    BanUserPayload,
    CreateLicensePayload,
    ListUsersPayload,
    OperationPayload,
    VerifyAdminPayload,
)
from adminguard.logging import sanitize_response_data
from adminguard.service.auth import Identity
from adminguard.service.rate_limit import LimitClass
from adminguard.storage.memory import DocumentStore

DEFAULT_LIST_LIMIT = 100

Handler = Callable[[DocumentStore, Any, Identity], Dict[str, Any]]


@dataclass(frozen=True)
class OperationSpec:
    name: str
    schema: Type[OperationPayload]
    handler: Handler
    admin_only: bool = True
    limit_class: LimitClass = LimitClass.ADMIN
    mutating: bool = False


def _verify_admin(store: DocumentStore, payload: VerifyAdminPayload, identity: Identity) -> Dict[str, Any]:
    return {"adminUid": identity.subject_id}


def _list_users(store: DocumentStore, payload: ListUsersPayload, identity: Identity) -> Dict[str, Any]:
    users = store.list_users(payload.limit or DEFAULT_LIST_LIMIT)
    return {"users": sanitize_response_data([user.to_public_dict() for user in users])}


def _ban_user(store: DocumentStore, payload: BanUserPayload, identity: Identity) -> Dict[str, Any]:
    ban = store.create_user_ban(
        payload.user_id, payload.reason, payload.duration, banned_by=identity.subject_id
    )
    return {"banId": ban.id, "expiresAt": ban.expires_at.isoformat()}


def _create_license(
    store: DocumentStore, payload: CreateLicensePayload, identity: Identity
) -> Dict[str, Any]:
    record = store.create_license(
        payload.plan, payload.validity_days, issued_by=identity.subject_id
    )
    return {"licenseKey": record.key, "expiresAt": record.expires_at.isoformat()}


def _ban_ip(store: DocumentStore, payload: BanIpPayload, identity: Identity) -> Dict[str, Any]:
    ban = store.create_ip_ban(
        payload.ip_address, payload.reason, payload.duration, banned_by=identity.subject_id
    )
    return {"banId": ban.id, "expiresAt": ban.expires_at.isoformat()}


OPERATIONS: Dict[str, OperationSpec] = {
    spec.name: spec
    for spec in (
        OperationSpec("verify-admin", VerifyAdminPayload, _verify_admin),
        OperationSpec(
            "list-users",
            ListUsersPayload,
            _list_users,
            limit_class=LimitClass.GENERAL,
        ),
        OperationSpec("ban-user", BanUserPayload, _ban_user, mutating=True),
        OperationSpec("create-license", CreateLicensePayload, _create_license, mutating=True),
        OperationSpec("ban-ip", BanIpPayload, _ban_ip, mutating=True),
    )
}


__all__ = ["OperationSpec", "OPERATIONS", "DEFAULT_LIST_LIMIT"]
