"""
Chat host: accepts peers, keeps the roster and routes their messages.

The host is single-threaded and cooperative. It does nothing on its own;
the surrounding program calls update() in a loop and every call accepts at
most one new peer, then services each session on the roster once.
"""
import select
import socket
from enum import Enum
from typing import Optional, Tuple

import structlog

from common.config import settings
from common.errors import DecodeError, HostStateError, RoutingError, SendErrorKind
from common.messages import (
    UNKNOWN_USER,
    directed_message,
    duplicate_username_notice,
    join_announcement,
    leave_announcement,
    server_message,
)
from common.protocol import FrameBuffer, Packet, PacketHeader, decode_string, encode_string, recv_frame
from common.result import OK, NetworkResult
from common.session import Session
from server.state import Roster

logger = structlog.get_logger()


class HostState(Enum):
    CREATED = "created"
    LISTENING = "listening"
    CLOSED = "closed"


class Host:
    def __init__(self, address: str, port: int):
        self.address = address
        self.port = port
        self.roster = Roster()
        self.state = HostState.CREATED
        self._sock: Optional[socket.socket] = None

    @classmethod
    def initialize(cls, address: Optional[str] = None, port: Optional[int] = None) -> "Host":
        '''
        Create a host and start listening.
        Input:
            - address: bind address, settings.server_host if omitted
            - port: bind port, settings.server_port if omitted (0 picks a free port)
        Output: a Host in the LISTENING state
        '''
        host = cls(address or settings.server_host, settings.server_port if port is None else port)
        host.listen()
        return host

    def __enter__(self) -> "Host":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @property
    def endpoint(self) -> Tuple[str, int]:
        return self.address, self.port

    def users(self):
        return self.roster.users()

    def listen(self) -> None:
        if self.state is not HostState.CREATED:
            raise HostStateError("Host can only start listening once", details={"state": self.state.value})

        logger.info("host_initializing", address=self.address, port=self.port)
        sock = socket.create_server((self.address, self.port))
        sock.setblocking(False)
        self._sock = sock
        self.port = sock.getsockname()[1]
        self.state = HostState.LISTENING
        logger.info("host_listening", address=self.address, port=self.port)

    def update(self) -> None:
        ''' One tick: accept a pending peer, then service every roster entry in order '''
        if self.state is not HostState.LISTENING or self._sock is None:
            raise HostStateError("Host is not listening", details={"state": self.state.value})

        self._accept_pending()

        # iterate a snapshot so removals never skip or repeat an entry
        for session in self.roster.sessions():
            self._service(session)

    def broadcast(self, text: str) -> NetworkResult:
        ''' Send a server message to everyone on the roster '''
        return self._broadcast_body(encode_string(server_message(text)))

    def send_to(self, text: str, username: str) -> NetworkResult:
        ''' Send a server message to a single user '''
        session = self.roster.get(username)
        if session is None:
            return NetworkResult.failure(RoutingError(
                f"No user \"{username}\" on this server",
                details={"recipient": username},
            ))
        return self._deliver(session, encode_string(server_message(text)))

    def route(self, body: bytes, sender: Optional[Session] = None) -> NetworkResult:
        '''
        Decide where an inbound frame goes and deliver it.
        String packets with metadata go to the user named in metadata[1]
        only; String packets without metadata go to everyone. Anything else
        is logged and ignored.
        Input:
            - body: frame body read from ``sender``
            - sender: the session it came from (for logging)
        Output: NetworkResult, first failure for a broadcast
        '''
        sender_name = sender.username if sender is not None else None
        try:
            packet = Packet.decode(body)
        except DecodeError as e:
            logger.warning("host_packet_dropped", sender=sender_name, reason=e.kind.value, error=e.message)
            return NetworkResult.failure(e)

        # header-only control packets decode but carry nothing to relay
        if packet.header is not PacketHeader.STRING or packet.payload is None:
            logger.info("host_packet_ignored", sender=sender_name, header=packet.header.value)
            return OK

        if packet.is_directed:
            return self._route_directed(packet)

        logger.debug("host_broadcast", sender=sender_name, recipients=len(self.roster))
        return self._broadcast_body(encode_string(packet.payload))

    def close(self) -> None:
        ''' Disconnect every peer and release the listening socket. Idempotent. '''
        if self.state is HostState.CLOSED:
            return

        for session in self.roster.clear():
            session.close()
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self.state = HostState.CLOSED
        logger.info("host_closed", address=self.address, port=self.port)

    def _route_directed(self, packet: Packet) -> NetworkResult:
        sender_name = packet.metadata[0]
        recipient_name = packet.metadata[1] if len(packet.metadata) > 1 else None
        recipient = self.roster.get(recipient_name) if recipient_name is not None else None

        if recipient is None:
            logger.warning("host_recipient_not_found", sender=sender_name, recipient=recipient_name)
            return NetworkResult.failure(RoutingError(
                f"No user \"{recipient_name}\" on this server",
                details={"sender": sender_name, "recipient": recipient_name},
            ))

        text = directed_message(sender_name, recipient_name, packet.payload)
        return self._deliver(recipient, encode_string(text))

    def _broadcast_body(self, body: bytes) -> NetworkResult:
        # best-effort: a failing recipient never blocks the others
        first_failure: Optional[NetworkResult] = None
        for session in self.roster.sessions():
            result = self._deliver(session, body)
            if not result.ok and first_failure is None:
                first_failure = result
        return first_failure if first_failure is not None else OK

    def _deliver(self, session: Session, body: bytes) -> NetworkResult:
        result = session.send(body)
        if not result.ok and result.error.kind is SendErrorKind.TRANSPORT:
            # the transport is gone; the next service pass drops the session
            session.close()
        return result

    def _accept_pending(self) -> None:
        readable, _, _ = select.select([self._sock], [], [], 0)
        if not readable:
            return

        try:
            conn, addr = self._sock.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            logger.warning("host_accept_failed", error=str(e), error_type=type(e).__name__)
            return

        conn.setblocking(True)
        conn.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._on_accept(conn, addr)

    def _on_accept(self, conn: socket.socket, addr) -> None:
        username, buffer = self._handshake(conn, addr)
        session = Session(conn, username, addr, buffer)

        if not self.roster.add(session):
            logger.warning("host_join_rejected", username=username, address=addr, reason="duplicate_username")
            session.send(encode_string(duplicate_username_notice(username)))
            session.close()
            return

        logger.info("host_accepted_connection", username=username, address=addr)
        self._broadcast_body(encode_string(join_announcement(username)))

    def _handshake(self, conn: socket.socket, addr) -> Tuple[str, FrameBuffer]:
        '''
        Read the joining peer's username frame.
        Reads at most settings.handshake_read_bytes at a time, each read
        bounded by settings.handshake_timeout_sec, so a silent peer stalls the
        tick for a bounded time only. Bytes past the username frame stay in
        the returned buffer and are routed on the session's first service pass.
        Output: (username or UNKNOWN_USER, buffer)
        '''
        buffer = FrameBuffer()
        username: Optional[str] = None

        try:
            conn.settimeout(settings.handshake_timeout_sec)
            body = recv_frame(conn, buffer, settings.handshake_read_bytes)
            username = decode_string(body) or None
        except socket.timeout:
            logger.warning("host_handshake_timeout", address=addr)
        except DecodeError as e:
            logger.warning("host_handshake_decode_failed", address=addr, reason=e.kind.value, error=e.message)
        except OSError as e:
            logger.warning("host_handshake_failed", address=addr, error=str(e), error_type=type(e).__name__)
        finally:
            conn.settimeout(None)

        return username or UNKNOWN_USER, buffer

    def _service(self, session: Session) -> None:
        if not session.connected:
            self._drop(session)
            return

        result = session.poll_frames(settings.receive_read_bytes)
        if not result.ok:
            self._drop(session)
            return

        for body in result.value:
            self.route(body, session)

        if not session.connected:
            self._drop(session)

    def _drop(self, session: Session) -> None:
        if not self.roster.remove(session):
            return
        session.close()
        logger.info("host_user_left", username=session.username, address=session.address)
        self._broadcast_body(encode_string(leave_announcement(session.username)))
