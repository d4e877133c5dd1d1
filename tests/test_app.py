import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from fakes import FakeTransport, host_candidate
from peer.__main__ import build_parser, config_from_args
from peer.app import PeerApp
from shared import token_codec
from shared.protocol import DEFAULT_STUN_SERVERS, DescriptorKind, PeerConfig


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.mark.anyio
async def test_create_then_reject_bad_answer() -> None:
    peer = PeerApp(transport=FakeTransport([host_candidate(5000)]))
    transport = ASGITransport(app=peer.app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        created = await client.post("/api/session/create")
        bad = await client.post("/api/session/remote-token", json={"token": "nope"})
        snapshot = await client.get("/api/session")

    assert created.status_code == 200
    token = created.json()["token"]
    assert token_codec.decode(token).kind is DescriptorKind.OFFER

    assert bad.status_code == 400
    assert bad.json()["detail"]["error"]["code"] == "invalid_token"

    assert snapshot.json()["state"] == "awaiting_answer_token"
    assert snapshot.json()["local_token"] == token


@pytest.mark.anyio
async def test_out_of_order_request_is_conflict() -> None:
    peer = PeerApp(transport=FakeTransport())
    transport = ASGITransport(app=peer.app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        await client.post("/api/session/create")
        again = await client.post("/api/session/create")
        teardown = await client.post("/api/session/teardown")

    assert again.status_code == 409
    assert again.json()["detail"]["error"]["code"] == "protocol_violation"
    assert teardown.status_code == 200
    assert teardown.json()["state"] == "idle"


@pytest.mark.anyio
async def test_message_rejected_while_idle_returns_text() -> None:
    peer = PeerApp(transport=FakeTransport())
    transport = ASGITransport(app=peer.app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.post("/api/messages", json={"text": "hi"})
        config = await client.get("/api/config")

    assert response.status_code == 200
    assert response.json() == {"remaining": "hi"}
    assert config.json()["channel_label"] == "chat"


def test_websocket_pushes_status_and_results() -> None:
    peer = PeerApp(PeerConfig(stun_servers=()), transport=FakeTransport())
    client = TestClient(peer.app)

    with client.websocket_connect("/ws/session") as ws:
        snapshot = ws.receive_json()
        assert snapshot["type"] == "state_snapshot"
        assert snapshot["payload"]["state"] == "idle"

        ws.send_json({"type": "create_session"})
        statuses = []
        while True:
            message = ws.receive_json()
            if message["type"] == "result":
                break
            statuses.append(message["payload"]["state"])

        assert statuses == ["creating_offer", "awaiting_answer_token"]
        assert message["payload"]["token"]

        ws.send_json({"type": "chat_send", "payload": {"text": "early"}})
        assert ws.receive_json() == {"type": "chat_send_result", "payload": {"remaining": "early"}}


def test_cli_builds_config_from_flags() -> None:
    parser = build_parser()

    default = config_from_args(parser.parse_args([]))
    assert default.stun_servers == DEFAULT_STUN_SERVERS

    custom = config_from_args(
        parser.parse_args(["--stun-server", "stun:a:3478", "--stun-server", "stun:b:3478", "--gather-timeout", "3"])
    )
    assert custom.stun_servers == ("stun:a:3478", "stun:b:3478")
    assert custom.gather_timeout == 3.0

    assert config_from_args(parser.parse_args(["--no-stun"])).stun_servers == ()
