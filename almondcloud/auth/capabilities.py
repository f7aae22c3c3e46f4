"""Capability bitmask and the named roles built from it.

Bit values are stored in user records and sent to the engine; never renumber.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntFlag


class Capability(IntFlag):
    NONE = 0
    ADMIN = 1
    MANAGE_USERS = 2
    MANAGE_DEVICES = 4
    MANAGE_ALL_PERMISSIONS = 8
    MANAGE_OWN_PERMISSIONS = 16
    MANAGE_ALL_COMMANDS = 32
    MANAGE_OWN_COMMANDS = 64

    ALL_ADMIN = ADMIN | MANAGE_USERS | MANAGE_DEVICES | MANAGE_ALL_PERMISSIONS | MANAGE_ALL_COMMANDS
    ROOT = ALL_ADMIN | MANAGE_OWN_PERMISSIONS | MANAGE_OWN_COMMANDS


class RoleFlags(IntFlag):
    NONE = 0
    CAN_REGISTER = 1


@dataclass(frozen=True, slots=True)
class Role:
    """A named set of capability bits."""

    name: str
    caps: Capability
    flags: RoleFlags = RoleFlags.NONE


DEFAULT_ROLES: dict[str, Role] = {
    "User": Role("User", Capability.NONE, RoleFlags.CAN_REGISTER),
    "Device Manager": Role("Device Manager", Capability.MANAGE_DEVICES | Capability.MANAGE_OWN_PERMISSIONS),
    "System Administrator": Role("System Administrator", Capability.ROOT),
}


def get_role(name: str) -> Role:
    try:
        return DEFAULT_ROLES[name]
    except KeyError:
        raise KeyError(f"unknown role: {name}") from None


def effective_caps(role: Role, approved: bool) -> Capability:
    """Unapproved accounts hold no capabilities regardless of role."""
    return role.caps if approved else Capability.NONE


def has_capability(caps: int, required: Capability) -> bool:
    """True when every bit of ``required`` is set in ``caps``."""
    return (int(caps) & int(required)) == int(required)


def has_any_capability(caps: int, wanted: Capability) -> bool:
    return (int(caps) & int(wanted)) != 0


def registration_roles() -> list[Role]:
    """Roles a new user may pick at sign-up."""
    return [r for r in DEFAULT_ROLES.values() if r.flags & RoleFlags.CAN_REGISTER]
