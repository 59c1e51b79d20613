import pytest

from rgcd.codec import decode, encode
from rgcd.constants import B_MSG_MENTIONS, B_MSG_TEXT, T_CHAT
from rgcd.envelope import make_envelope, validate_envelope


def test_codec_round_trip() -> None:
    env = make_envelope(T_CHAT, body={B_MSG_TEXT: "hello", B_MSG_MENTIONS: ["bob"]})
    data = encode(env)
    decoded = decode(data)
    assert decoded == env
    validate_envelope(decoded)


def test_encoding_is_independent_of_key_order() -> None:
    assert encode({2: "b", 1: "a"}) == encode({1: "a", 2: "b"})


def test_decode_rejects_text() -> None:
    with pytest.raises(TypeError):
        decode("not bytes")
