import pytest

from rgcd.constants import (
    B_RESP_OK,
    B_RESP_REASON,
    B_STATUS_USER,
    B_STATUS_VALUE,
    K_BODY,
    R_FORBIDDEN,
    R_NOT_AUTHORIZED,
    R_NOT_FOUND,
    T_ADMIN_STATUS,
    T_MUTED_STATUS,
)
from rgcd.errors import ForbiddenError, NotFoundError


@pytest.fixture
def bob(connect, make_user):
    make_user("bob")
    c = connect()
    assert c.login("bob", "secret")[B_RESP_OK]
    c.clear()
    return c


def test_admin_can_mute_and_everyone_is_told(hub, admin, bob) -> None:
    resp = admin.command("set_mute", {"username": "bob", "muted": True})
    assert resp[B_RESP_OK]
    assert hub.store.is_muted("bob")

    for client in (admin, bob):
        (status,) = client.frames(T_MUTED_STATUS)
        assert status[K_BODY] == {B_STATUS_USER: "bob", B_STATUS_VALUE: True}


def test_non_admin_cannot_moderate(hub, bob) -> None:
    resp = bob.command("set_mute", {"username": "admin", "muted": True})
    assert resp[B_RESP_REASON] == R_NOT_AUTHORIZED
    assert not hub.store.is_muted("admin")

    resp = bob.command("set_admin", {"username": "bob", "is_admin": True})
    assert resp[B_RESP_REASON] == R_NOT_AUTHORIZED
    assert hub.store.find_user("bob").is_admin is False


def test_initial_admin_cannot_be_demoted(hub, admin) -> None:
    resp = admin.command("set_admin", {"username": "admin", "is_admin": False})
    assert resp[B_RESP_REASON] == R_FORBIDDEN
    assert hub.store.find_user("admin").is_admin is True

    with pytest.raises(ForbiddenError):
        hub.moderation.set_admin("admin", False)

    assert admin.command("set_admin", {"username": "admin", "is_admin": True})[B_RESP_OK]
    assert admin.frames(T_ADMIN_STATUS) == []


def test_promotion_updates_store_session_and_listeners(hub, admin, bob) -> None:
    assert admin.command("set_admin", {"username": "bob", "is_admin": True})[B_RESP_OK]

    assert hub.store.find_user("bob").is_admin is True
    assert hub.presence.get(bob.link)["is_admin"] is True
    (status,) = bob.frames(T_ADMIN_STATUS)
    assert status[K_BODY] == {B_STATUS_USER: "bob", B_STATUS_VALUE: True}

    # Bob's token still says non-admin, but the stored flag is what counts.
    assert bob.command("list_users")[B_RESP_OK]


def test_demoted_admin_token_loses_admin_rights(hub, connect, make_user) -> None:
    make_user("carol", is_admin=True)
    carol = connect()
    assert carol.login("carol", "secret")[B_RESP_OK]

    hub.moderation.set_admin("carol", False)

    resp = carol.command("list_users")
    assert resp[B_RESP_REASON] == R_NOT_AUTHORIZED


def test_unknown_targets_are_reported(hub, admin) -> None:
    assert admin.command("set_mute", {"username": "ghost", "muted": True})[B_RESP_REASON] == R_NOT_FOUND
    assert admin.command("set_admin", {"username": "ghost", "is_admin": True})[B_RESP_REASON] == R_NOT_FOUND

    with pytest.raises(NotFoundError):
        hub.moderation.set_muted("ghost", True)
