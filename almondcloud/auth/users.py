"""API users, OAuth scopes and request authentication."""

from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from typing import Any

from almondcloud.auth.capabilities import Capability, effective_caps, get_role, has_capability
from almondcloud.config.schema import AlmondConfig, ApiUserEntry
from almondcloud.utils.exceptions import AuthenticationError, PermissionDeniedError

OAUTH_SCOPES: dict[str, str] = {
    "profile": "Read your user profile",
    "user-read": "Read your devices and apps",
    "user-read-results": "Read results of your commands",
    "user-exec-command": "Execute commands on your behalf",
}


@dataclass(slots=True)
class AlmondUser:
    """An authenticated account, as seen by the front end."""

    cloud_id: str
    username: str
    human_name: str | None = None
    caps: Capability = Capability.NONE
    role_name: str = "User"
    scopes: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_entry(cls, entry: ApiUserEntry) -> "AlmondUser":
        role = get_role(entry.role)
        return cls(
            cloud_id=entry.cloud_id,
            username=entry.username,
            human_name=entry.human_name,
            caps=effective_caps(role, entry.approved),
            role_name=role.name,
            scopes=frozenset(entry.scopes),
        )

    @property
    def display_name(self) -> str:
        return self.human_name or self.username

    @property
    def is_owner(self) -> bool:
        return has_capability(self.caps, Capability.ADMIN)

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    def to_wire(self) -> dict[str, Any]:
        """User description handed to the engine when opening a conversation."""
        return {
            "id": self.cloud_id,
            "name": self.display_name,
            "principal": f"user:{self.cloud_id}",
            "isOwner": self.is_owner,
            "caps": int(self.caps),
        }


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def authenticate_token(config: AlmondConfig, token: str | None) -> AlmondUser:
    """Resolve an API token to its user.

    :raises AuthenticationError: when the token is missing or unknown.
    """
    if not token:
        raise AuthenticationError()
    for known, entry in config.api.tokens.items():
        if hmac.compare_digest(known.encode("utf-8"), token.encode("utf-8")):
            return AlmondUser.from_entry(entry)
    raise AuthenticationError()


def require_scope(user: AlmondUser, scope: str) -> None:
    if scope not in OAUTH_SCOPES:
        raise ValueError(f"unknown scope: {scope}")
    if not user.has_scope(scope):
        raise PermissionDeniedError("invalid scope", resource=scope)


def require_capability(user: AlmondUser, required: Capability) -> None:
    if not has_capability(user.caps, required):
        raise PermissionDeniedError("missing capability", resource=required.name or str(int(required)))


def check_origin(config: AlmondConfig, origin: str | None, *, has_bearer: bool = False) -> bool:
    """Header-authenticated requests pass; otherwise the Origin must be one we serve."""
    if has_bearer:
        return True
    if not isinstance(origin, str):
        return False
    return origin.lower() in config.allowed_origins
