import threading
from dataclasses import replace

import pytest

from rgcd.errors import AlreadyOnlineError, StateError
from rgcd.service import HubService


class Link:
    def __init__(self, n: int) -> None:
        self.link_id = bytes([n]) * 16


def _open(hub, n: int) -> Link:
    link = Link(n)
    hub.presence.open(link)
    return link


def test_admit_binds_username_once(hub) -> None:
    a = _open(hub, 1)
    b = _open(hub, 2)

    hub.presence.admit(a, "alice", False)
    assert hub.presence.is_online("alice")
    assert hub.presence.link_for("alice") is a
    assert hub.presence.username_for(a) == "alice"

    with pytest.raises(AlreadyOnlineError):
        hub.presence.admit(b, "alice", False)
    assert hub.presence.username_for(b) is None


def test_admit_on_closed_link_fails(hub) -> None:
    with pytest.raises(StateError):
        hub.presence.admit(Link(9), "alice", False)
    assert not hub.presence.is_online("alice")


def test_concurrent_admits_allow_exactly_one(hub) -> None:
    links = [_open(hub, i) for i in range(16)]
    winners: list[Link] = []
    losers: list[Link] = []
    start = threading.Barrier(len(links))
    lock = threading.Lock()

    def worker(link: Link) -> None:
        start.wait()
        try:
            hub.presence.admit(link, "alice", False)
        except AlreadyOnlineError:
            with lock:
                losers.append(link)
        else:
            with lock:
                winners.append(link)

    threads = [threading.Thread(target=worker, args=(link,)) for link in links]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == 15
    assert hub.presence.link_for("alice") is winners[0]


def test_close_frees_the_username(hub) -> None:
    a = _open(hub, 1)
    hub.presence.admit(a, "alice", False)

    assert hub.presence.close(a) == "alice"
    assert not hub.presence.is_online("alice")
    assert hub.presence.get(a) is None
    assert hub.presence.close(a) is None

    b = _open(hub, 2)
    hub.presence.admit(b, "alice", False)
    assert hub.presence.link_for("alice") is b


def test_list_online_is_sorted_and_stats_count_links(hub) -> None:
    for n, name in ((1, "carol"), (2, "alice"), (3, "bob")):
        hub.presence.admit(_open(hub, n), name, False)
    _open(hub, 4)

    assert hub.presence.list_online() == ["alice", "bob", "carol"]
    assert hub.presence.get_stats() == {"total": 4, "authenticated": 3}


def test_update_admin_changes_live_session(hub) -> None:
    a = _open(hub, 1)
    hub.presence.admit(a, "alice", False)

    hub.presence.update_admin("alice", True)
    assert hub.presence.get(a)["is_admin"] is True

    hub.presence.update_admin("nobody", True)


def test_rate_limit_refuses_when_bucket_is_empty(config) -> None:
    hub = HubService(replace(config, rate_limit_msgs_per_minute=2))
    try:
        a = _open(hub, 1)
        assert hub.presence.refill_and_take(a)
        assert hub.presence.refill_and_take(a)
        assert not hub.presence.refill_and_take(a)
    finally:
        hub.store.close()
