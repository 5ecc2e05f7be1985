import socket
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

import structlog

from common.config import settings
from common.errors import ConnectError, DecodeError, SendError, SendErrorKind
from common.messages import Message, user_message
from common.protocol import PacketHeader, decode_header, decode_string, encode_string, encode_string_with_metadata
from common.result import OK, NetworkResult
from common.session import Session

logger = structlog.get_logger()


class AgentState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    LISTENING = "listening"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class Endpoint:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class ClientAgent:
    ''' Network client for chat application '''
    def __init__(self, username: str,
                 on_message: Optional[Callable[[Message], None]] = None,
                 max_messages: Optional[int] = None):
        self.username = username
        self.state = AgentState.IDLE
        self.remote: Optional[Endpoint] = None
        self.session: Optional[Session] = None
        self.recv_thread: Optional[threading.Thread] = None   # thread for receiving messages
        self._stop = threading.Event()

        limit = max_messages or settings.max_received_messages
        self._lock = threading.Lock()   # guards the receive log and state
        self._received: Deque[Message] = deque(maxlen=limit)   # bounded history
        self._pending: Deque[Message] = deque(maxlen=limit)    # not drained yet
        # Backlog messages until a handler attaches; then flush
        self._on_message: Optional[Callable[[Message], None]] = None
        self._backlog: Deque[Message] = deque(maxlen=limit)
        if on_message:
            self.on_message = on_message

    @classmethod
    def initialize(cls, username: Optional[str] = None) -> "ClientAgent":
        ''' Bind a local identity. Does not touch the network. '''
        username = username or settings.default_username
        logger.info("client_initializing", username=username)
        return cls(username)

    def __enter__(self) -> "ClientAgent":
        return self

    def __exit__(self, *exc) -> None:
        self.disconnect()

    @property
    def on_message(self) -> Optional[Callable[[Message], None]]:
        ''' The callback invoked, on the receive thread, for each received message '''
        return self._on_message

    @on_message.setter
    def on_message(self, cb: Optional[Callable[[Message], None]]):
        '''
        Set the callback for incoming messages. Messages received before a
        callback was attached are replayed to it now, in order.
        '''
        with self._lock:
            self._on_message = cb
            pending = list(self._backlog) if cb else []
            if cb:
                self._backlog.clear()
        for message in pending:
            self._notify(cb, message)

    @property
    def connected(self) -> bool:
        session = self.session
        return session is not None and session.connected

    def connect(self, host: Optional[str] = None, port: Optional[int] = None) -> NetworkResult:
        '''
        Connect to a host and announce our username.
        Input:
            - host, port: the remote endpoint, settings.client_host / settings.server_port if omitted
        Output: NetworkResult, ConnectError(TRANSPORT) on any failure
        '''
        if self.session is not None:
            self.disconnect()

        endpoint = Endpoint(host or settings.client_host, settings.server_port if port is None else port)
        self._set_state(AgentState.CONNECTING)

        # Establish a TCP connection to the chat server.
        try:
            sock = socket.create_connection((endpoint.host, endpoint.port), timeout=settings.connect_timeout_sec)
            sock.settimeout(None)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)  # send any data immediately
        except OSError as e:
            self._set_state(AgentState.DISCONNECTED)
            logger.error("client_connect_failed", remote=str(endpoint), error=str(e), error_type=type(e).__name__)
            return NetworkResult.failure(ConnectError(
                f"Could not connect to {endpoint}",
                details={"host": endpoint.host, "port": endpoint.port, "error": str(e)},
            ))

        self.session = Session(sock, self.username, (endpoint.host, endpoint.port))
        # Start listening BEFORE the handshake so the join announcement is caught
        self._start_listening(self.session)

        result = self.session.send(encode_string(self.username))
        if not result.ok:
            self.disconnect()
            logger.error("client_handshake_failed", remote=str(endpoint), error=result.error.message)
            return NetworkResult.failure(ConnectError(
                f"Handshake with {endpoint} failed",
                details={"host": endpoint.host, "port": endpoint.port, "error": result.error.message},
            ))

        with self._lock:
            lost = self.state is AgentState.DISCONNECTED
        if lost:
            # the receive worker saw the peer close before the handshake finished
            self.disconnect()
            logger.error("client_connection_lost", remote=str(endpoint))
            return NetworkResult.failure(ConnectError(
                f"Connection to {endpoint} closed during handshake",
                details={"host": endpoint.host, "port": endpoint.port},
            ))

        self.remote = endpoint
        with self._lock:
            if self.state is AgentState.CONNECTING:
                self.state = AgentState.CONNECTED
            if self.state is AgentState.CONNECTED and self.recv_thread is not None and self.recv_thread.is_alive():
                self.state = AgentState.LISTENING
        logger.info("client_connected", username=self.username, remote=str(endpoint))
        return OK

    def disconnect(self) -> None:
        ''' Stop the receive thread, then close the transport. Idempotent. '''
        if self.session is None and self.recv_thread is None:
            return

        self._stop.set()
        thread = self.recv_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self.recv_thread = None

        session, self.session = self.session, None
        if session is not None:
            session.close()

        logger.info("client_disconnected", username=self.username, remote=str(self.remote) if self.remote else None)
        self.remote = None
        self._set_state(AgentState.DISCONNECTED)

    def send_broadcast(self, text: str) -> NetworkResult:
        ''' Send a message to every user on the server '''
        return self._send(encode_string(text))

    def send_directed(self, text: str, from_user: str, to_user: str) -> NetworkResult:
        ''' Send a message to one user, routed by the [from, to] metadata '''
        return self._send(encode_string_with_metadata(text, [from_user, to_user]))

    def receive_packet(self, body: bytes) -> NetworkResult:
        '''
        Handle one frame from the server: String packets join the receive
        log, anything else is logged and dropped.
        '''
        try:
            header = decode_header(body)
            if header is not PacketHeader.STRING:
                logger.info("client_packet_ignored", header=header.value)
                return OK
            text = decode_string(body)
        except DecodeError as e:
            logger.warning("client_packet_dropped", reason=e.kind.value, error=e.message)
            return NetworkResult.failure(e)

        message = Message(text)
        with self._lock:
            self._received.append(message)
            self._pending.append(message)
            callback = self._on_message
            if callback is None:
                self._backlog.append(message)
        if callback is not None:
            self._notify(callback, message)
        return OK

    # Interface used by the console front end

    def submit_outbound_text(self, text: str) -> NetworkResult:
        return self.send_broadcast(user_message(self.username, text))

    def submit_directed_text(self, text: str, to_username: str) -> NetworkResult:
        return self.send_directed(text, self.username, to_username)

    def drain_received_text(self) -> List[str]:
        ''' Every message received since the last drain, oldest first '''
        with self._lock:
            texts = [m.content for m in self._pending]
            self._pending.clear()
        return texts

    def received_messages(self) -> List[Message]:
        ''' Snapshot of the most recent received messages, oldest first '''
        with self._lock:
            return list(self._received)

    def current_endpoint_info(self) -> Optional[Endpoint]:
        return self.remote

    def _send(self, body: bytes) -> NetworkResult:
        session = self.session
        if session is None:
            return NetworkResult.failure(SendError(
                "Not connected to a server",
                SendErrorKind.NOT_CONNECTED,
                details={"username": self.username},
            ))
        return session.send(body)

    def _set_state(self, state: AgentState) -> None:
        with self._lock:
            self.state = state

    def _notify(self, cb: Callable[[Message], None], message: Message) -> None:
        try:
            cb(message)
        except Exception:
            # a broken handler must not kill the receive thread
            logger.exception("client_message_handler_failed")

    def _start_listening(self, session: Session) -> None:
        self._stop = threading.Event()
        self.recv_thread = threading.Thread(
            target=self._recv_loop, args=(session, self._stop), daemon=True,
        )
        self.recv_thread.start()

    def _recv_loop(self, session: Session, stop: threading.Event):
        ''' Thread function to receive messages from server '''
        interval = settings.poll_interval_ms / 1000.0
        while not stop.is_set():
            result = session.poll_frames(settings.receive_read_bytes, timeout=interval)
            if not result.ok:
                logger.warning("client_receive_failed", username=self.username, error=result.error.message)
                break
            for body in result.value:
                self.receive_packet(body)
            if not session.connected:
                logger.info("client_server_closed_connection", username=self.username)
                break

        if not stop.is_set():
            # ended on its own: the server went away
            session.close()
            self._set_state(AgentState.DISCONNECTED)
