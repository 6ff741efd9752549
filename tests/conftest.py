import pytest
from fastapi.testclient import TestClient

from corujao.api import create_app
from corujao.config import ChatRuntimeConfig
from corujao.service import ChatService
from corujao.store import MemoryStore

PASSWORD = "secret123"


def make_config(**overrides) -> ChatRuntimeConfig:
    values = dict(
        bcrypt_rounds=4,
        ping_interval_s=0,
        maintenance_interval_s=0,
        connect_rate_limit=1000,
        message_rate_limit=1000,
        auth_rate_limit=1000,
    )
    values.update(overrides)
    return ChatRuntimeConfig(**values)


@pytest.fixture
def config_overrides() -> dict:
    return {}


@pytest.fixture
def config(config_overrides: dict) -> ChatRuntimeConfig:
    return make_config(**config_overrides)


@pytest.fixture
def service(config: ChatRuntimeConfig) -> ChatService:
    return ChatService(config, store=MemoryStore())


@pytest.fixture
def client(service: ChatService):
    with TestClient(create_app(service)) as c:
        yield c


@pytest.fixture
def make_user(client: TestClient, service: ChatService):
    """Register and log in a user; returns the session token."""

    def _make_user(username: str, *, role: str | None = None) -> str:
        res = client.post("/register", json={"username": username, "password": PASSWORD})
        assert res.status_code == 201, res.text
        if role is not None:
            assert service.store.set_user_role(username, role)
        res = client.post("/login", json={"username": username, "password": PASSWORD})
        assert res.status_code == 200, res.text
        return res.json()["token"]

    return _make_user


@pytest.fixture
def recv_until():
    """Read envelopes from a test WebSocket until one of type ``t`` arrives."""

    def _recv_until(ws, t: str, *, limit: int = 50) -> dict:
        seen = []
        for _ in range(limit):
            env = ws.receive_json()
            if env["t"] == t:
                return env
            seen.append(env["t"])
        raise AssertionError(f"no {t!r} envelope; got {seen}")

    return _recv_until
