import pytest

from corujao.constants import (
    K_BODY,
    K_ID,
    K_ROOM,
    K_T,
    K_TS,
    K_V,
    PROTOCOL_VERSION,
    T_CHAT_MESSAGE,
    T_SEND_MESSAGE,
)
from corujao.envelope import make_envelope, validate_envelope


def test_validate_accepts_make_envelope() -> None:
    env = make_envelope(T_CHAT_MESSAGE, room="geral", body={"text": "oi"})
    validate_envelope(env)


def test_validate_accepts_minimal_browser_frame() -> None:
    validate_envelope({K_T: T_SEND_MESSAGE, K_BODY: "hello"})


def test_validate_rejects_missing_type() -> None:
    env = make_envelope(T_SEND_MESSAGE, body="hello")
    env.pop(K_T)
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_wrong_version() -> None:
    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[K_V] = PROTOCOL_VERSION + 1
    with pytest.raises(ValueError):
        validate_envelope(env)


def test_validate_rejects_non_string_keys() -> None:
    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[1] = "x"
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_rejects_non_map() -> None:
    with pytest.raises(TypeError):
        validate_envelope(["send_message", "hello"])  # type: ignore[arg-type]


def test_validate_allows_unknown_extension_keys() -> None:
    env = make_envelope(T_SEND_MESSAGE, body=None)
    env["future"] = {"x": True}
    validate_envelope(env)


def test_validate_allows_omitted_body_and_room() -> None:
    env = make_envelope(T_SEND_MESSAGE, body=None)
    assert K_BODY not in env
    assert K_ROOM not in env
    validate_envelope(env)


def test_validate_rejects_wrong_field_types() -> None:
    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[K_ID] = 1.5
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[K_TS] = "not-int"
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[K_ROOM] = 123
    with pytest.raises(TypeError):
        validate_envelope(env)

    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[K_BODY] = [1, 2, 3]
    with pytest.raises(TypeError):
        validate_envelope(env)


def test_validate_rejects_empty_room_and_negative_ts() -> None:
    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[K_ROOM] = ""
    with pytest.raises(ValueError):
        validate_envelope(env)

    env = make_envelope(T_SEND_MESSAGE, body=None)
    env[K_TS] = -1
    with pytest.raises(ValueError):
        validate_envelope(env)
