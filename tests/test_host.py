"""
Tests for Host and Roster.

Tests cover:
- Directed and broadcast routing
- Unknown recipients and ignored (header-only, non-String) packets
- Best-effort broadcast with partial failure
- Join handshake (username, fallback, duplicates, timeout)
- Disconnect cleanup and departure announcements
- Host lifecycle (listen, update, close)
"""
import select
import socket
import time

import pytest

from common.config import settings
from common.errors import DecodeError, HostStateError, RoutingError, RoutingErrorKind, SendErrorKind
from common.messages import UNKNOWN_USER
from common.protocol import (
    FrameBuffer,
    decode_string,
    encode_integer,
    encode_string,
    encode_string_with_metadata,
    frame,
    recv_frame,
)
from common.result import OK
from common.session import Session
from server.host import Host, HostState
from server.state import Roster

from helpers import send_frame


class RecordingSession(Session):
    """Session stand-in that records deliveries into a shared list."""

    def __init__(self, username, log):
        super().__init__(None, username)
        self.log = log

    def send(self, data):
        self.log.append((self.username, decode_string(data)))
        return OK


def session_pair(username):
    left, right = socket.socketpair()
    return Session(left, username), right


def read_texts(sock, timeout=0.2):
    """Every String frame the peer socket receives before going quiet."""
    sock.settimeout(timeout)
    buffer = FrameBuffer()
    texts = []
    try:
        while True:
            texts.append(decode_string(recv_frame(sock, buffer)))
    except (socket.timeout, ConnectionError):
        return texts


def pump(host, condition, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        host.update()
        if condition():
            return True
        time.sleep(0.01)
    return False


def readable(sock):
    return bool(select.select([sock], [], [], 0)[0])


@pytest.fixture
def host():
    host = Host.initialize("127.0.0.1", 0)
    yield host
    host.close()


@pytest.fixture
def peers():
    """Open sockets created by a test, closed afterwards."""
    socks = []
    yield socks
    for sock in socks:
        sock.close()


class TestRoster:
    """Tests for Roster."""

    def test_insertion_order(self):
        roster = Roster()
        for name in ("carol", "alice", "bob"):
            assert roster.add(Session(None, name))
        assert roster.users() == ["carol", "alice", "bob"]

    def test_duplicate_username_rejected(self):
        roster = Roster()
        assert roster.add(Session(None, "alice"))
        assert not roster.add(Session(None, "alice"))
        assert len(roster) == 1

    def test_remove_only_the_registered_session(self):
        roster = Roster()
        first = Session(None, "alice")
        roster.add(first)
        assert not roster.remove(Session(None, "alice"))
        assert roster.remove(first)
        assert not roster.remove(first)
        assert "alice" not in roster


class TestRouting:
    """Tests for Host.route."""

    @pytest.fixture
    def routed(self):
        log = []
        host = Host("127.0.0.1", 0)
        for name in ("alice", "bob", "carol"):
            host.roster.add(RecordingSession(name, log))
        return host, log

    def test_directed_delivery(self, routed):
        host, log = routed
        result = host.route(encode_string_with_metadata("hi", ["alice", "bob"]))
        assert result.ok
        assert log == [("bob", "[From alice, To bob] hi")]

    def test_broadcast_delivery_in_roster_order(self, routed):
        host, log = routed
        result = host.route(encode_string("hi all"))
        assert result.ok
        assert log == [("alice", "hi all"), ("bob", "hi all"), ("carol", "hi all")]

    def test_broadcast_header_is_case_insensitive(self, routed):
        host, log = routed
        host.route(b"sTrInG|shout")
        assert [text for _, text in log] == ["shout"] * 3

    def test_unknown_recipient(self, routed):
        host, log = routed
        result = host.route(encode_string_with_metadata("hi", ["alice", "zed"]))
        assert isinstance(result.error, RoutingError)
        assert result.error.kind is RoutingErrorKind.RECIPIENT_NOT_FOUND
        assert log == []

    def test_missing_recipient_metadata(self, routed):
        host, log = routed
        result = host.route(b"String|hi&alice")
        assert result.error.kind is RoutingErrorKind.RECIPIENT_NOT_FOUND
        assert log == []

    def test_non_string_packets_are_ignored(self, routed):
        host, log = routed
        assert host.route(encode_integer(5)).ok
        assert host.route(b"Update").ok
        assert log == []

    @pytest.mark.parametrize("data", [b"String", b"string", b"Integer"])
    def test_header_only_packets_are_ignored(self, routed, data):
        host, log = routed
        assert host.route(data).ok
        assert log == []

    def test_broadcast_reports_failed_recipient(self, routed):
        host, log = routed
        host.roster.add(Session(None, "ghost"))
        result = host.broadcast("hello")
        assert not result.ok
        assert result.error.kind is SendErrorKind.NOT_CONNECTED
        assert [name for name, _ in log] == ["alice", "bob", "carol"]

    def test_undecodable_frame_is_dropped(self, routed):
        host, log = routed
        result = host.route(b"Bogus|x")
        assert isinstance(result.error, DecodeError)
        assert log == []

    def test_send_to(self, routed):
        host, log = routed
        assert host.send_to("welcome", "carol").ok
        assert log == [("carol", "[SERVER] welcome")]

    def test_send_to_unknown_user(self, routed):
        host, log = routed
        result = host.send_to("welcome", "zed")
        assert result.error.kind is RoutingErrorKind.RECIPIENT_NOT_FOUND

    def test_public_broadcast_is_server_message(self, routed):
        host, log = routed
        assert host.broadcast("restarting soon").ok
        assert {text for _, text in log} == {"[SERVER] restarting soon"}

    def test_partial_broadcast_failure(self):
        host = Host("127.0.0.1", 0)
        alice, alice_peer = session_pair("alice")
        bob, bob_peer = session_pair("bob")
        carol, carol_peer = session_pair("carol")
        for session in (alice, bob, carol):
            host.roster.add(session)
        bob.close()
        try:
            result = host.route(encode_string("hi all"))
            assert result.error.kind is SendErrorKind.NOT_CONNECTED
            assert read_texts(alice_peer) == ["hi all"]
            assert read_texts(carol_peer) == ["hi all"]
        finally:
            for session in (alice, carol):
                session.close()
            for sock in (alice_peer, bob_peer, carol_peer):
                sock.close()


class TestJoin:
    """Tests for accepting peers in Host.update."""

    def test_join_handshake(self, host, peers):
        sock = socket.create_connection(host.endpoint)
        peers.append(sock)
        send_frame(sock, encode_string("carol"))

        assert pump(host, lambda: "carol" in host.users())
        assert read_texts(sock) == ['[SERVER] User "carol" has joined the server!']

    def test_join_announced_to_everyone(self, host, peers):
        alice, alice_peer = session_pair("alice")
        peers.append(alice_peer)
        host.roster.add(alice)

        sock = socket.create_connection(host.endpoint)
        peers.append(sock)
        send_frame(sock, encode_string("bob"))

        assert pump(host, lambda: "bob" in host.users())
        assert read_texts(alice_peer) == ['[SERVER] User "bob" has joined the server!']
        assert host.users() == ["alice", "bob"]

    def test_frames_after_handshake_are_routed(self, host, peers):
        sock = socket.create_connection(host.endpoint)
        peers.append(sock)
        sock.sendall(frame(encode_string("dave")) + frame(encode_string("dave: first!")))

        assert pump(host, lambda: "dave" in host.users())
        host.update()
        assert read_texts(sock) == ['[SERVER] User "dave" has joined the server!', "dave: first!"]

    def test_undecodable_username_falls_back(self, host, peers):
        sock = socket.create_connection(host.endpoint)
        peers.append(sock)
        send_frame(sock, b"Bogus|x")

        assert pump(host, lambda: UNKNOWN_USER in host.users())

    def test_silent_peer_times_out(self, host, peers, monkeypatch):
        monkeypatch.setattr(settings, "handshake_timeout_sec", 0.1)
        sock = socket.create_connection(host.endpoint)
        peers.append(sock)

        assert pump(host, lambda: UNKNOWN_USER in host.users())

    def test_duplicate_username_rejected(self, host, peers):
        carol, carol_peer = session_pair("carol")
        peers.append(carol_peer)
        host.roster.add(carol)

        sock = socket.create_connection(host.endpoint)
        peers.append(sock)
        send_frame(sock, encode_string("carol"))

        assert pump(host, lambda: readable(sock))
        assert read_texts(sock, timeout=1.0) == ['[SERVER] Username "carol" is already taken!']
        assert host.users() == ["carol"]
        assert host.roster.get("carol") is carol
        assert read_texts(carol_peer) == []


class TestDisconnect:
    """Tests for departure handling in Host.update."""

    def test_departure_announced_once(self, host, peers):
        alice, alice_peer = session_pair("alice")
        bob, bob_peer = session_pair("bob")
        peers.extend([alice_peer, bob_peer])
        host.roster.add(alice)
        host.roster.add(bob)

        alice_peer.close()
        assert pump(host, lambda: "alice" not in host.users())
        host.update()
        host.update()

        assert read_texts(bob_peer) == ['[SERVER] User "alice" has left the server!']
        assert host.users() == ["bob"]
        assert not alice.is_open

    def test_closed_session_removed(self, host, peers):
        alice, alice_peer = session_pair("alice")
        bob, bob_peer = session_pair("bob")
        peers.extend([alice_peer, bob_peer])
        host.roster.add(alice)
        host.roster.add(bob)

        alice.close()
        host.update()
        assert host.users() == ["bob"]
        assert read_texts(bob_peer) == ['[SERVER] User "alice" has left the server!']

    def test_removal_does_not_skip_others(self, host, peers):
        sessions = []
        for name in ("a", "b", "c", "d"):
            session, peer = session_pair(name)
            peers.append(peer)
            host.roster.add(session)
            sessions.append((session, peer))

        sessions[0][1].close()
        sessions[1][1].close()
        sessions[3][1].sendall(frame(encode_string("d: still here")))

        assert pump(host, lambda: host.users() == ["c", "d"])
        texts = read_texts(sessions[2][1])
        assert texts.count('[SERVER] User "a" has left the server!') == 1
        assert texts.count('[SERVER] User "b" has left the server!') == 1
        assert "d: still here" in texts


class TestHostLifecycle:
    """Tests for Host state transitions."""

    def test_initialize_listens(self, host):
        assert host.state is HostState.LISTENING
        assert host.port != 0

    def test_update_before_listen(self):
        with pytest.raises(HostStateError):
            Host("127.0.0.1", 0).update()

    def test_close_disconnects_everyone(self, peers):
        host = Host.initialize("127.0.0.1", 0)
        alice, alice_peer = session_pair("alice")
        peers.append(alice_peer)
        host.roster.add(alice)

        host.close()
        host.close()

        assert host.state is HostState.CLOSED
        assert not alice.is_open
        assert len(host.roster) == 0
        alice_peer.settimeout(1.0)
        assert alice_peer.recv(16) == b""
        with pytest.raises(HostStateError):
            host.update()

    def test_context_manager_closes(self):
        with Host.initialize("127.0.0.1", 0) as host:
            endpoint = host.endpoint
        assert host.state is HostState.CLOSED
        with pytest.raises(OSError):
            socket.create_connection(endpoint, timeout=1.0)
