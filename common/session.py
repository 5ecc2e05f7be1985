import select
import socket
import threading
from typing import Optional, Tuple

import structlog

from common.errors import DecodeError, ReceiveError, SendError, SendErrorKind
from common.protocol import FrameBuffer, frame
from common.result import OK, NetworkResult

logger = structlog.get_logger()


class Session:
    '''
    One peer's live connection: identity, transport and liveness.
    The session owns its socket exclusively. It never decides on its own that
    the peer is dead; it only reports what the operation it was asked to do
    observed, and the owner (host or client agent) reacts.

    Writes are serialised by a send lock and reads by a receive lock, so one
    thread may send while another receives. close() takes both.
    '''

    def __init__(self, sock: Optional[socket.socket], username: str,
                 address: Optional[Tuple[str, int]] = None,
                 buffer: Optional[FrameBuffer] = None):
        self._sock = sock
        self._username = username
        self.address = address
        self.buffer = buffer if buffer is not None else FrameBuffer()
        self.is_open = sock is not None
        self._peer_closed = False   # set once a read returned EOF
        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()
        self._state_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Session(username={self._username!r}, address={self.address!r}, open={self.is_open})"

    @property
    def username(self) -> str:
        return self._username

    @property
    def connected(self) -> bool:
        ''' False once closed, once the peer hung up, or once the socket lost its descriptor '''
        sock = self._sock
        return self.is_open and not self._peer_closed and sock is not None and sock.fileno() != -1

    def send(self, data: bytes) -> NetworkResult:
        '''
        Write one frame body to the peer. Not retried on failure.
        Input:
            - data: encoded packet
        Output: NetworkResult with SendError(NOT_CONNECTED | TRANSPORT) on failure
        '''
        with self._send_lock:
            sock = self._sock
            if sock is None or not self.connected:
                return NetworkResult.failure(SendError(
                    f"Session of \"{self._username}\" is not connected",
                    SendErrorKind.NOT_CONNECTED,
                    details={"username": self._username},
                ))
            try:
                sock.sendall(frame(data))
            except OSError as e:
                logger.warning(
                    "session_send_failed",
                    username=self._username,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return NetworkResult.failure(SendError(
                    f"Failed to send data to \"{self._username}\"",
                    SendErrorKind.TRANSPORT,
                    details={"error": str(e), "data_size": len(data)},
                ))
        return OK

    def receive_available(self, max_bytes: int, timeout: float = 0.0) -> NetworkResult:
        '''
        Read whatever is pending, waiting at most ``timeout`` seconds.
        Returns empty bytes when nothing arrived. An EOF also returns empty
        bytes and flips ``connected`` to False.
        '''
        with self._recv_lock:
            sock = self._sock
            if sock is None or not self.is_open:
                return NetworkResult.failure(ReceiveError(
                    f"Session of \"{self._username}\" is closed",
                    details={"username": self._username},
                ))
            if self._peer_closed:
                return NetworkResult.success(b"")

            try:
                readable, _, _ = select.select([sock], [], [], timeout)
                if not readable:
                    return NetworkResult.success(b"")
                data = sock.recv(max_bytes)
            except (OSError, ValueError) as e:
                logger.warning(
                    "session_receive_failed",
                    username=self._username,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return NetworkResult.failure(ReceiveError(
                    f"Failed to receive data from \"{self._username}\"",
                    details={"error": str(e)},
                ))

            if not data:
                self._peer_closed = True
                logger.debug("session_peer_closed", username=self._username)
            return NetworkResult.success(data)

    def poll_frames(self, max_bytes: int, timeout: float = 0.0) -> NetworkResult:
        '''
        receive_available() followed by deframing.
        Output: NetworkResult whose value is the list of complete frame bodies.
        A framing error cannot be recovered from and comes back as the error.
        '''
        result = self.receive_available(max_bytes, timeout)
        if not result.ok:
            return result
        if result.value:
            self.buffer.feed(result.value)

        try:
            frames = self.buffer.drain()
        except DecodeError as e:
            logger.warning("session_framing_error", username=self._username, error=e.message, **e.details)
            return NetworkResult.failure(e)
        return NetworkResult.success(frames)

    def close(self) -> None:
        ''' Release the transport. Safe to call more than once. '''
        with self._state_lock:
            if not self.is_open:
                return
            self.is_open = False

        with self._send_lock, self._recv_lock:
            sock, self._sock = self._sock, None

        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            # already disconnected by the peer
            logger.debug("session_shutdown_skipped", username=self._username, error=str(e))
        sock.close()
        logger.debug("session_closed", username=self._username)
