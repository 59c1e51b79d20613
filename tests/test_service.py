import time
from dataclasses import replace

from rgcd.constants import K_T, T_PING

from rgcd.service import HubService


def test_bootstrap_creates_initial_admin_once(config) -> None:
    hub = HubService(config)
    try:
        hub.bootstrap_admin()
        hub.bootstrap_admin()

        admin = hub.store.find_user("admin")
        assert admin.is_admin is True
        assert hub.store.verify_password("adminpass", admin.password_hash)
        assert [u.username for u in hub.store.list_users()] == ["admin"]
    finally:
        hub.store.close()


def test_bootstrap_restores_admin_flag(config) -> None:
    hub = HubService(config)
    try:
        hub.store.create_user("admin", hub.store.hash_password("pw"), False)
        hub.bootstrap_admin()

        admin = hub.store.find_user("admin")
        assert admin.is_admin is True
        # Existing password is left alone.
        assert hub.store.verify_password("pw", admin.password_hash)
    finally:
        hub.store.close()


def test_bootstrap_generates_password_when_none_configured(config, caplog) -> None:
    hub = HubService(replace(config, initial_admin_password=None, initial_admin_username="root"))
    try:
        with caplog.at_level("WARNING", logger="rgcd.hub"):
            hub.bootstrap_admin()

        assert hub.store.find_user("root").is_admin is True
        assert any("generated password" in r.getMessage() for r in caplog.records)
    finally:
        hub.store.close()


def test_missing_secret_falls_back_to_random(config, caplog) -> None:
    with caplog.at_level("WARNING", logger="rgcd.hub"):
        a = HubService(replace(config, jwt_secret=None))
    try:
        token = a.credentials.issue("alice", False)
        assert a.credentials.verify(token).username == "alice"
        assert any("jwt_secret" in r.getMessage() for r in caplog.records)
    finally:
        a.store.close()


def test_stop_tears_down_links_and_unloads(hub, connect) -> None:
    c = connect()
    c.login("admin", "adminpass")

    hub.stop()

    assert c.link.torn_down
    assert hub.presence.list_online() == []
    assert hub.message_helper.pending(c.link) == []


def test_ping_round_pings_logged_in_links_and_drops_silent_ones(hub, connect, monkeypatch) -> None:
    monkeypatch.setattr(hub.message_helper, "flush", lambda: None)
    hub.config = replace(hub.config, ping_timeout_s=5.0)
    idle = connect()
    c = connect()
    c.login("admin", "adminpass")
    c.clear()
    idle.clear()

    hub._ping_round()

    assert [f[K_T] for f in c.frames()] == [T_PING]
    assert idle.frames() == []
    assert hub.stats_manager.get("pings_out") == 1

    hub.presence.connections[c.link]["awaiting_pong"] = time.monotonic() - 60
    hub._ping_round()

    assert c.link.torn_down
    assert not idle.link.torn_down
