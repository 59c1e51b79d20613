from rgcd.constants import K_BODY, K_T, T_CHAT, T_ERROR, T_ONLINE
from rgcd.envelope import make_envelope


def test_outbox_keeps_broadcast_and_direct_frames_in_order(hub, connect) -> None:
    a = connect()
    b = connect()

    hub.message_helper.broadcast(make_envelope(T_CHAT, body="first"))
    hub.message_helper.emit_error(a.link, "only a")
    hub.message_helper.broadcast(make_envelope(T_CHAT, body="second"))

    assert [(f[K_T], f[K_BODY]) for f in a.frames()] == [
        (T_CHAT, "first"),
        (T_ERROR, "only a"),
        (T_CHAT, "second"),
    ]
    assert [f[K_BODY] for f in b.frames()] == ["first", "second"]


def test_closed_link_drops_its_outbox(hub, connect) -> None:
    a = connect()
    b = connect()
    hub.message_helper.broadcast(make_envelope(T_CHAT, body="queued"))

    a.close()
    assert hub.message_helper.broadcast(make_envelope(T_ONLINE, body=[])) == 1
    hub.message_helper.queue_env(a.link, make_envelope(T_CHAT, body="late"))

    assert a.frames() == []
    assert [f[K_BODY] for f in b.frames()] == ["queued", []]


def test_take_pending_empties_the_outbox(hub, connect) -> None:
    a = connect()
    hub.message_helper.emit_error(a.link, "x")

    assert len(hub.message_helper.take_pending(a.link)) == 1
    assert hub.message_helper.take_pending(a.link) == []
