import pytest

from almondcloud.auth.capabilities import Capability
from almondcloud.auth.users import (
    AlmondUser,
    authenticate_token,
    check_origin,
    extract_bearer_token,
    require_capability,
    require_scope,
)
from almondcloud.config.schema import AlmondConfig, ApiUserEntry
from almondcloud.utils.exceptions import AuthenticationError, PermissionDeniedError


@pytest.fixture
def config():
    cfg = AlmondConfig(server_origin="https://Almond.Example.com", extra_origins=["http://localhost:3000"])
    cfg.api.tokens = {
        "tok-admin": ApiUserEntry(cloud_id="a1", username="root", role="System Administrator"),
        "tok-pending": ApiUserEntry(cloud_id="p1", username="newbie", role="Device Manager", approved=False),
        "tok-narrow": ApiUserEntry(cloud_id="n1", username="reader", scopes=["profile"]),
    }
    return cfg


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("Bearer abc", "abc"),
        ("bearer  abc ", "abc"),
        ("Basic abc", None),
        ("Bearer ", None),
        (None, None),
    ],
)
def test_extract_bearer_token(header, expected):
    assert extract_bearer_token(header) == expected


def test_authenticate_token_resolves_user(config):
    user = authenticate_token(config, "tok-admin")
    assert user.cloud_id == "a1"
    assert user.caps == Capability.ROOT
    assert user.is_owner
    assert user.role_name == "System Administrator"


def test_unapproved_account_gets_no_caps(config):
    user = authenticate_token(config, "tok-pending")
    assert user.caps == Capability.NONE
    assert not user.is_owner


@pytest.mark.parametrize("token", [None, "", "tok-unknown"])
def test_authenticate_token_rejects(config, token):
    with pytest.raises(AuthenticationError):
        authenticate_token(config, token)


def test_to_wire_shape():
    user = AlmondUser(cloud_id="c1", username="bob", caps=Capability.MANAGE_DEVICES)
    assert user.to_wire() == {
        "id": "c1",
        "name": "bob",
        "principal": "user:c1",
        "isOwner": False,
        "caps": 4,
    }


def test_require_scope(config):
    user = authenticate_token(config, "tok-narrow")
    require_scope(user, "profile")
    with pytest.raises(PermissionDeniedError) as excinfo:
        require_scope(user, "user-read")
    assert excinfo.value.message == "invalid scope"
    with pytest.raises(ValueError):
        require_scope(user, "not-a-scope")


def test_require_capability():
    user = AlmondUser(cloud_id="c1", username="bob", caps=Capability.MANAGE_DEVICES)
    require_capability(user, Capability.MANAGE_DEVICES)
    with pytest.raises(PermissionDeniedError):
        require_capability(user, Capability.ADMIN)


def test_check_origin(config):
    assert check_origin(config, "https://almond.example.com")
    assert check_origin(config, "HTTP://LOCALHOST:3000")
    assert check_origin(config, "null")
    assert not check_origin(config, "https://evil.example.com")
    assert not check_origin(config, None)
    assert check_origin(config, "https://evil.example.com", has_bearer=True)
    assert check_origin(config, None, has_bearer=True)
