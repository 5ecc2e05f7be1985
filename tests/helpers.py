"""Socket helpers shared by the test suites."""
import socket

from common.protocol import frame


def send_frame(sock: socket.socket, body: bytes) -> None:
    ''' Send one length-prefixed frame body from a raw peer socket '''
    sock.sendall(frame(body))
