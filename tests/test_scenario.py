"""End-to-end flows driven through the router."""
from rgcd.codec import encode
from rgcd.constants import (
    B_MSG_TEXT,
    B_RESP_DATA,
    B_RESP_OK,
    B_RESP_REASON,
    K_BODY,
    R_ALREADY_AUTHENTICATED,
    R_ALREADY_ONLINE,
    R_BAD_CREDENTIALS,
    R_CODE_EXISTS,
    R_INVALID_CODE,
    R_INVALID_CREDENTIAL,
    R_NOT_FOUND,
    R_USERNAME_TAKEN,
    R_VALIDATION,
    T_HISTORY,
    T_ONLINE,
    T_USER_JOINED,
    T_USER_LEFT,
)


def test_invitation_registration_flow(hub, admin, connect) -> None:
    resp = admin.command("add_invitation_code", {"code": "INVITE1", "max_uses": 1})
    assert resp[B_RESP_OK]
    assert resp[B_RESP_DATA] == {"code": "INVITE1", "max_uses": 1, "current_uses": 0}

    newcomer = connect()
    resp = newcomer.command(
        "register", {"username": "bob", "password": "hunter2", "code": "INVITE1"}
    )
    assert resp[B_RESP_OK]
    assert resp[B_RESP_DATA] == {"username": "bob"}

    late = connect()
    resp = late.command(
        "register", {"username": "carol", "password": "pw", "code": "INVITE1"}
    )
    assert resp[B_RESP_REASON] == R_INVALID_CODE
    assert hub.store.find_user("carol") is None

    codes = admin.command("list_invitation_codes")[B_RESP_DATA]
    assert codes == [{"code": "INVITE1", "max_uses": 1, "current_uses": 1}]

    admin.clear()
    resp = newcomer.login("bob", "hunter2")
    assert resp[B_RESP_OK]
    assert resp[B_RESP_DATA]["username"] == "bob"
    assert resp[B_RESP_DATA]["is_admin"] is False

    (joined,) = admin.frames(T_USER_JOINED)
    assert joined[K_BODY] == "bob"
    assert admin.frames(T_ONLINE)[-1][K_BODY] == ["admin", "bob"]


def test_register_rejects_taken_names_and_duplicate_codes(hub, admin, connect) -> None:
    admin.command("add_invitation_code", {"code": "MULTI", "max_uses": 5})
    assert admin.command("add_invitation_code", {"code": "MULTI"})[B_RESP_REASON] == R_CODE_EXISTS

    anon = connect()
    resp = anon.command("register", {"username": "admin", "password": "x", "code": "MULTI"})
    assert resp[B_RESP_REASON] == R_USERNAME_TAKEN
    assert hub.store.find_invitation_code("MULTI").current_uses == 0

    resp = anon.command("register", {"username": "", "password": "x", "code": "MULTI"})
    assert resp[B_RESP_REASON] == R_VALIDATION


def test_login_pushes_history_oldest_first(hub, admin, connect, make_user) -> None:
    for i in range(3):
        assert admin.chat(f"m{i}")[B_RESP_OK]

    make_user("bob")
    bob = connect()
    assert bob.login("bob", "secret")[B_RESP_OK]

    (history,) = bob.frames(T_HISTORY)
    assert [m[B_MSG_TEXT] for m in history[K_BODY]] == ["m0", "m1", "m2"]


def test_history_is_capped(hub, admin, connect, make_user) -> None:
    for i in range(hub.config.history_limit + 5):
        hub.store.insert_message("admin", text=f"m{i}")

    make_user("bob")
    bob = connect()
    bob.login("bob", "secret")

    (history,) = bob.frames(T_HISTORY)
    assert len(history[K_BODY]) == hub.config.history_limit
    assert history[K_BODY][-1][B_MSG_TEXT] == f"m{hub.config.history_limit + 4}"


def test_history_frame_is_trimmed_to_the_transfer_limit(hub, connect, make_user) -> None:
    chars = hub.config.max_message_chars
    for i in range(hub.config.history_limit):
        hub.store.insert_message("admin", text=f"{i:02d}" + "\u804a" * (chars - 2))

    make_user("bob")
    bob = connect()
    assert bob.login("bob", "secret")[B_RESP_OK]

    (history,) = bob.frames(T_HISTORY)
    assert len(encode(history)) <= hub.config.max_resource_bytes
    kept = [m[B_MSG_TEXT][:2] for m in history[K_BODY]]
    assert 0 < len(kept) < hub.config.history_limit
    # The newest messages survive, still oldest first.
    first = hub.config.history_limit - len(kept)
    assert kept == [f"{i:02d}" for i in range(first, hub.config.history_limit)]


def test_bad_logins_look_identical(hub, connect, make_user) -> None:
    make_user("bob")
    c = connect()

    wrong_pw = c.login("bob", "nope")
    no_user = c.login("nobody", "nope")

    assert wrong_pw[B_RESP_REASON] == no_user[B_RESP_REASON] == R_BAD_CREDENTIALS
    assert wrong_pw == no_user
    assert not hub.presence.is_online("bob")


def test_second_session_for_same_user_is_refused(hub, admin, connect) -> None:
    other = connect()
    resp = other.login("admin", "adminpass")
    assert resp[B_RESP_REASON] == R_ALREADY_ONLINE
    assert hub.presence.link_for("admin") is admin.link

    resp = admin.login("admin", "adminpass")
    assert resp[B_RESP_REASON] == R_ALREADY_AUTHENTICATED


def test_reconnect_with_token_after_disconnect(hub, connect, make_user) -> None:
    make_user("bob")
    watcher = connect()
    watcher.login("admin", "adminpass")

    first = connect()
    first.login("bob", "secret")
    token = first.token
    watcher.clear()

    first.close()
    (left,) = watcher.frames(T_USER_LEFT)
    assert left[K_BODY] == "bob"
    assert watcher.frames(T_ONLINE)[-1][K_BODY] == ["admin"]
    watcher.clear()

    second = connect()
    resp = second.reconnect(token)
    assert resp[B_RESP_OK]
    assert resp[B_RESP_DATA] == {"username": "bob", "is_admin": False}
    assert second.frames(T_HISTORY)

    assert watcher.frames(T_USER_JOINED) == []
    assert watcher.frames(T_ONLINE)[-1][K_BODY] == ["admin", "bob"]


def test_reconnect_with_bad_token_fails(hub, connect) -> None:
    c = connect()
    assert c.reconnect("bogus")[B_RESP_REASON] == R_INVALID_CREDENTIAL
    assert hub.presence.list_online() == []


def test_change_password(hub, connect, make_user) -> None:
    make_user("bob", "old")
    c = connect()
    c.login("bob", "old")

    resp = c.command("change_password", {"old_password": "wrong", "new_password": "new"})
    assert resp[B_RESP_REASON] == R_BAD_CREDENTIALS

    resp = c.command("change_password", {"old_password": "old", "new_password": "new"})
    assert resp[B_RESP_OK]

    user = hub.store.find_user("bob")
    assert hub.store.verify_password("new", user.password_hash)


def test_leaderboard_and_admin_listings(hub, admin, connect, make_user) -> None:
    make_user("bob")
    bob = connect()
    bob.login("bob", "secret")

    bob.chat("one")
    bob.chat("two")
    admin.chat("three")
    hub.moderation.set_muted("bob", True)

    board = bob.command("leaderboard", {"window": "daily"})[B_RESP_DATA]
    assert board == [{"username": "bob", "count": 2}, {"username": "admin", "count": 1}]

    assert bob.command("leaderboard", {"window": "year"})[B_RESP_REASON] == R_VALIDATION

    users = admin.command("list_users")[B_RESP_DATA]
    assert users == [
        {"username": "admin", "is_admin": True, "is_muted": False, "is_online": True},
        {"username": "bob", "is_admin": False, "is_muted": True, "is_online": True},
    ]

    stats = admin.command("stats")[B_RESP_DATA]
    assert "online_users=2" in stats


def test_unknown_command_and_missing_token(hub, admin, connect) -> None:
    assert admin.command("frobnicate")[B_RESP_REASON] == R_NOT_FOUND

    anon = connect()
    assert anon.command("list_users")[B_RESP_REASON] == R_INVALID_CREDENTIAL
