import json
from datetime import datetime

import pytest

from fakes import FakeTransport, emit
from peer.negotiation import NegotiationSession, SessionState
from shared import token_codec
from shared.protocol import (
    ChatMessage,
    DescriptorKind,
    SenderRole,
    SessionDescriptor,
    decode_chat_frame,
    encode_chat_frame,
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def clock() -> datetime:
    return datetime(2024, 5, 1, 18, 45)


async def connected(transport: FakeTransport) -> NegotiationSession:
    session = NegotiationSession(transport, clock=clock)
    await session.create_session()
    answer = token_codec.encode(
        SessionDescriptor(DescriptorKind.ANSWER, {"type": "answer", "sdp": "v=0\r\n"})
    )
    await session.apply_answer_token(answer)
    transport.last.channel.readyState = "open"
    await emit(transport.last, "on_connection_state_change", "connected")
    assert session.state is SessionState.CONNECTED
    return session


def test_chat_frame_uses_neutral_sender_tag() -> None:
    frame = json.loads(encode_chat_frame("hello", "12:00"))
    assert frame == {"text": "hello", "sender": "remote", "timestamp": "12:00"}


def test_received_frame_is_always_remote() -> None:
    message = decode_chat_frame(b'{"text":"hi","sender":"local","timestamp":"08:15"}')
    assert message == ChatMessage(text="hi", sender=SenderRole.REMOTE, timestamp="08:15")
    assert message.to_dict()["sender"] == "remote"


@pytest.mark.parametrize(
    "raw",
    ['"just a string"', '{"sender":"remote"}', '{"text":"   "}', "not json"],
)
def test_malformed_frames_raise_value_error(raw: str) -> None:
    with pytest.raises(ValueError):
        decode_chat_frame(raw)


@pytest.mark.anyio
@pytest.mark.parametrize("text", ["", "   "])
async def test_blank_messages_are_noops(text: str) -> None:
    transport = FakeTransport()
    session = await connected(transport)

    assert await session.send_message(text) == text
    assert transport.last.channel.sent == []
    assert session.messages == ()


@pytest.mark.anyio
async def test_send_while_not_connected_returns_text() -> None:
    transport = FakeTransport()
    session = NegotiationSession(transport)
    assert await session.send_message("hi") == "hi"

    await session.create_session()
    assert await session.send_message("hi") == "hi"
    assert transport.last.channel.sent == []


@pytest.mark.anyio
async def test_send_echoes_local_message_into_log() -> None:
    transport = FakeTransport()
    session = await connected(transport)
    received: list[ChatMessage] = []
    session.add_message_listener(received.append)

    remaining = await session.send_message("hi there")

    assert remaining == ""
    assert json.loads(transport.last.channel.sent[0])["sender"] == "remote"
    assert session.messages == (ChatMessage("hi there", SenderRole.LOCAL, "18:45"),)
    assert received == list(session.messages)


@pytest.mark.anyio
async def test_send_on_closed_channel_keeps_text() -> None:
    transport = FakeTransport()
    session = await connected(transport)
    transport.last.channel.readyState = "closing"

    assert await session.send_message("hi") == "hi"
    assert session.messages == ()


@pytest.mark.anyio
async def test_log_keeps_insertion_order_and_drops_bad_frames() -> None:
    transport = FakeTransport()
    session = await connected(transport)
    connection = transport.last

    await emit(connection, "on_channel_message", '{"text":"first","sender":"remote","timestamp":"18:40"}')
    await session.send_message("second")
    await emit(connection, "on_channel_message", "{broken")
    await emit(connection, "on_channel_message", '{"text":"third","sender":"remote","timestamp":"18:46"}')

    assert [(m.text, m.sender) for m in session.messages] == [
        ("first", SenderRole.REMOTE),
        ("second", SenderRole.LOCAL),
        ("third", SenderRole.REMOTE),
    ]
