from corujao.codec import decode, decode_text, encode, encode_text
from corujao.events import ChatMessage, SystemMessage
from corujao.envelope import validate_envelope
from corujao.models import Message


def test_binary_frame_carries_chat_message() -> None:
    msg = Message(id="m1", author="alice", text="olá", room="geral", created_at=1700000000.5)
    env = ChatMessage(msg).to_envelope()
    decoded = decode(encode(env))
    assert decoded == env
    validate_envelope(decoded)
    assert decoded["body"] == {
        "id": "m1",
        "from": "alice",
        "text": "olá",
        "room": "geral",
        "ts": 1700000000500,
    }


def test_text_frame_is_compact_utf8_json() -> None:
    env = SystemMessage("bem-vindo", "geral").to_envelope()
    text = encode_text(env)
    assert "bem-vindo" in text
    assert ", " not in text
    assert decode_text(text) == env
