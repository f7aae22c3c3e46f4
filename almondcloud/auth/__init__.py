"""Users, scopes and capabilities."""

from almondcloud.auth.capabilities import (
    DEFAULT_ROLES,
    Capability,
    Role,
    RoleFlags,
    has_any_capability,
    has_capability,
)
from almondcloud.auth.users import OAUTH_SCOPES, AlmondUser, authenticate_token, require_scope

__all__ = [
    "DEFAULT_ROLES",
    "OAUTH_SCOPES",
    "AlmondUser",
    "Capability",
    "Role",
    "RoleFlags",
    "authenticate_token",
    "has_any_capability",
    "has_capability",
    "require_scope",
]
