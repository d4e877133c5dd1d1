import pytest

from fakes import FakeChannel, FakeConnection, FakeTransport
from peer.lifecycle import SessionOutcome, SessionResources, classify_connection_state
from peer.transport import extract_candidates, strip_candidates
from shared.protocol import ChatMessage, PeerConfig, SenderRole

AIORTC_STYLE_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 3921497218 3921497218 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "a=group:BUNDLE 0",
        "m=application 49152 DTLS/SCTP 5000",
        "c=IN IP4 192.168.1.20",
        "a=mid:0",
        "a=sctpmap:5000 webrtc-datachannel 65535",
        "a=candidate:0b1c 1 udp 2130706431 192.168.1.20 49152 typ host",
        "a=candidate:7f3e 1 udp 1694498815 203.0.113.7 49152 typ srflx raddr 192.168.1.20 rport 49152",
        "a=end-of-candidates",
        "a=ice-ufrag:abcd",
        "a=ice-pwd:secretsecretsecret",
        "a=fingerprint:sha-256 AA:BB",
        "a=setup:actpass",
        "",
    ]
)

BROWSER_STYLE_SDP = "\r\n".join(
    [
        "v=0",
        "o=- 1 2 IN IP4 127.0.0.1",
        "s=-",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "a=candidate:1 1 udp 1 10.0.0.1 4000 typ host",
        "a=mid:audio",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "a=candidate:2 1 udp 1 10.0.0.1 4001 typ host",
        "a=mid:data",
        "",
    ]
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


def test_extract_candidates_tags_media_section() -> None:
    candidates = extract_candidates(AIORTC_STYLE_SDP)

    assert [c.candidate_line for c in candidates] == [
        "candidate:0b1c 1 udp 2130706431 192.168.1.20 49152 typ host",
        "candidate:7f3e 1 udp 1694498815 203.0.113.7 49152 typ srflx raddr 192.168.1.20 rport 49152",
    ]
    assert {(c.media_id, c.media_line_index) for c in candidates} == {("0", 0)}


def test_extract_candidates_reads_mid_declared_after_candidates() -> None:
    candidates = extract_candidates(BROWSER_STYLE_SDP)

    assert [(c.media_id, c.media_line_index) for c in candidates] == [("audio", 0), ("data", 1)]


def test_strip_candidates_keeps_everything_else() -> None:
    stripped = strip_candidates(AIORTC_STYLE_SDP)

    assert "a=candidate" not in stripped
    assert "a=end-of-candidates" not in stripped
    assert "a=ice-ufrag:abcd\r\n" in stripped
    assert stripped.startswith("v=0\r\n")
    assert stripped.endswith("a=setup:actpass\r\n")
    assert extract_candidates(stripped) == []


@pytest.mark.parametrize(
    "state, outcome",
    [
        ("connected", SessionOutcome.CONNECTED),
        ("disconnected", SessionOutcome.DISCONNECTED),
        ("closed", SessionOutcome.DISCONNECTED),
        ("failed", SessionOutcome.FAILED),
        ("FAILED", SessionOutcome.FAILED),
        ("connecting", None),
        ("new", None),
    ],
)
def test_classify_connection_state(state: str, outcome: object) -> None:
    assert classify_connection_state(state) is outcome


@pytest.mark.anyio
async def test_release_is_idempotent() -> None:
    transport = FakeTransport()
    connection = FakeConnection(PeerConfig(), listener=object())
    channel = FakeChannel("chat")
    resources = SessionResources(handle=connection, channel=channel, local_token="abc")
    resources.messages.append(ChatMessage("hi", SenderRole.LOCAL, "10:00"))

    await resources.release(transport)
    await resources.release(transport)

    assert resources.is_empty
    assert resources.local_token is None
    assert resources.messages == []
    assert connection.detached is True
    assert connection.close_count == 1
    assert channel.closed is True
