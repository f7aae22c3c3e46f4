import pytest

from almondcloud.auth.capabilities import (
    DEFAULT_ROLES,
    Capability,
    effective_caps,
    get_role,
    has_any_capability,
    has_capability,
    registration_roles,
)


def test_capability_bits_are_stable():
    assert [int(c) for c in (
        Capability.ADMIN,
        Capability.MANAGE_USERS,
        Capability.MANAGE_DEVICES,
        Capability.MANAGE_ALL_PERMISSIONS,
        Capability.MANAGE_OWN_PERMISSIONS,
        Capability.MANAGE_ALL_COMMANDS,
        Capability.MANAGE_OWN_COMMANDS,
    )] == [1, 2, 4, 8, 16, 32, 64]
    assert int(Capability.ALL_ADMIN) == 1 | 2 | 4 | 8 | 32
    assert int(Capability.ROOT) == 127


def test_root_holds_every_capability():
    for cap in Capability:
        assert has_capability(Capability.ROOT, cap)


def test_has_capability_requires_all_bits():
    caps = Capability.MANAGE_DEVICES | Capability.MANAGE_OWN_PERMISSIONS
    assert has_capability(caps, Capability.MANAGE_DEVICES)
    assert not has_capability(caps, Capability.MANAGE_DEVICES | Capability.ADMIN)
    assert has_any_capability(caps, Capability.MANAGE_DEVICES | Capability.ADMIN)
    assert not has_any_capability(caps, Capability.ADMIN)
    assert has_capability(0, Capability.NONE)


def test_unapproved_user_has_no_capabilities():
    admin = get_role("System Administrator")
    assert effective_caps(admin, approved=True) == Capability.ROOT
    assert effective_caps(admin, approved=False) == Capability.NONE


def test_roles_and_registration():
    assert set(DEFAULT_ROLES) == {"User", "Device Manager", "System Administrator"}
    assert [r.name for r in registration_roles()] == ["User"]
    with pytest.raises(KeyError):
        get_role("Overlord")
