"""
Packet codec and stream framing for the chat protocol.

A frame body is UTF-8 text of the form ``<Header>|<payload>[&<meta>...]`` or
a bare ``<Header>`` for header-only control packets. On the wire every body
is preceded by a 4-byte big-endian length so that message boundaries survive
TCP segmentation and coalescing.
"""
import re
import socket
import struct
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

from common.config import settings
from common.errors import DecodeError, DecodeErrorKind

ENC = "utf-8"              # encoding for frame text
SEPARATOR = b"|"           # header / payload separator
META_DELIM = "&"           # payload / metadata delimiter
LENGTH_PREFIX = struct.Struct(">I")

_INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class PacketHeader(Enum):
    UNKNOWN = "Unknown"
    UPDATE = "Update"      # header-only control packet, tells peers to update
    STRING = "String"
    INTEGER = "Integer"

    @classmethod
    def from_name(cls, name: str) -> Optional["PacketHeader"]:
        ''' Case-insensitive lookup of a header by its wire name, None if unknown '''
        lowered = name.lower()
        for header in cls:
            if header.value.lower() == lowered:
                return header
        return None


def _preview(data: bytes) -> str:
    return repr(bytes(data[:64]))


def _split(data: bytes) -> Tuple[PacketHeader, Optional[bytes]]:
    '''
    Split a frame body into its header and the raw bytes after the separator.
    Input:
        - data: frame body
    Output:
        - (header, rest) where rest is None for a header-only packet
    '''
    idx = data.find(SEPARATOR)
    if idx != -1:
        name, rest = data[:idx], data[idx + 1:]
    else:
        # no separator: the whole body must be a header name
        name, rest = data, None

    header = PacketHeader.from_name(bytes(name).decode(ENC, errors="replace"))
    if header is None:
        raise DecodeError(
            "Couldn't get header information for packet",
            DecodeErrorKind.INVALID_HEADER,
            details={"frame": _preview(data)},
        )
    return header, (bytes(rest) if rest is not None else None)


def _text(rest: bytes, data: bytes) -> str:
    try:
        return rest.decode(ENC)
    except UnicodeDecodeError as e:
        raise DecodeError(
            "Packet payload is not valid UTF-8",
            DecodeErrorKind.MALFORMED_PAYLOAD,
            details={"frame": _preview(data), "error": str(e)},
        )


def _require(header: PacketHeader, expected: PacketHeader, data: bytes) -> None:
    if header is not expected:
        raise DecodeError(
            f"This packet is not {expected.value}, as per its header",
            DecodeErrorKind.HEADER_MISMATCH,
            details={"expected": expected.value, "actual": header.value, "frame": _preview(data)},
        )


def encode_string(text: str) -> bytes:
    return f"{PacketHeader.STRING.value}|{text}".encode(ENC)


def encode_string_with_metadata(text: str, metadata: Sequence[str]) -> bytes:
    '''
    Encode a String packet followed by "&"-delimited metadata.
    For chat messages metadata is [sender, recipient].
    '''
    suffix = "".join(f"{META_DELIM}{meta}" for meta in metadata)
    return f"{PacketHeader.STRING.value}|{text}{suffix}".encode(ENC)


def encode_integer(n: int) -> bytes:
    return f"{PacketHeader.INTEGER.value}|{int(n)}".encode(ENC)


def encode_header_only(header: PacketHeader) -> bytes:
    return header.value.encode(ENC)


def decode_header(data: bytes) -> PacketHeader:
    ''' Return the header of a frame body; raises DecodeError(INVALID_HEADER) '''
    header, _ = _split(data)
    return header


def decode_string(data: bytes, include_metadata: bool = False) -> str:
    '''
    Decode the text of a String packet.
    Input:
        - data: frame body
        - include_metadata: keep the "&"-delimited suffix in the returned text
    Output: the packet text ("" for a bare "String" control packet)
    '''
    header, rest = _split(data)
    _require(header, PacketHeader.STRING, data)
    if rest is None:
        return ""

    text = _text(rest, data)
    if not include_metadata:
        text = text.split(META_DELIM, 1)[0]
    return text


def decode_integer(data: bytes) -> int:
    header, rest = _split(data)
    _require(header, PacketHeader.INTEGER, data)

    content = _text(rest, data) if rest is not None else ""
    if not _INTEGER_RE.fullmatch(content):
        raise DecodeError(
            "Integer packet payload is not a base-10 integer",
            DecodeErrorKind.MALFORMED_PAYLOAD,
            details={"frame": _preview(data)},
        )
    return int(content)


def extract_metadata(data: bytes) -> List[str]:
    ''' Metadata entries after the payload, in order; empty list if none '''
    _, rest = _split(data)
    if rest is None:
        return []
    return _text(rest, data).split(META_DELIM)[1:]


@dataclass
class Packet:
    '''
    Decoded view of one frame body.
        - header: the packet kind
        - payload: raw bytes for Unknown, text for String/Integer/Update,
          None for a header-only control packet
        - metadata: for String packets, [sender, recipient] when directed
    '''
    header: PacketHeader
    payload: Union[str, bytes, None] = None
    metadata: List[str] = field(default_factory=list)

    @property
    def is_directed(self) -> bool:
        return self.header is PacketHeader.STRING and bool(self.metadata)

    @classmethod
    def decode(cls, data: bytes) -> "Packet":
        header, rest = _split(data)
        if rest is None:
            return cls(header)
        if header is PacketHeader.UNKNOWN:
            return cls(header, rest)

        text = _text(rest, data)
        if header is PacketHeader.STRING:
            content, *metadata = text.split(META_DELIM)
            return cls(header, content, metadata)
        if header is PacketHeader.INTEGER and not _INTEGER_RE.fullmatch(text):
            raise DecodeError(
                "Integer packet payload is not a base-10 integer",
                DecodeErrorKind.MALFORMED_PAYLOAD,
                details={"frame": _preview(data)},
            )
        return cls(header, text)

    def encode(self) -> bytes:
        if self.payload is None and not self.metadata:
            return encode_header_only(self.header)
        if isinstance(self.payload, bytes):
            body = self.payload
        else:
            body = (self.payload or "").encode(ENC)
        suffix = "".join(f"{META_DELIM}{meta}" for meta in self.metadata).encode(ENC)
        return self.header.value.encode(ENC) + SEPARATOR + body + suffix


def frame(body: bytes) -> bytes:
    ''' Prefix a frame body with its length for the wire '''
    return LENGTH_PREFIX.pack(len(body)) + body


class FrameBuffer:
    '''
    Accumulates bytes read from one stream and hands out complete frame bodies.
    One buffer per connection; partial frames stay buffered until the rest
    arrives.
    '''

    def __init__(self, max_frame_bytes: Optional[int] = None):
        self.max_frame_bytes = max_frame_bytes or settings.max_frame_bytes
        self._buf = bytearray()

    def __len__(self) -> int:
        return len(self._buf)

    def feed(self, data: bytes) -> None:
        self._buf.extend(data)

    def pop(self) -> Optional[bytes]:
        ''' Next complete frame body, or None if one has not fully arrived '''
        if len(self._buf) < LENGTH_PREFIX.size:
            return None

        (length,) = LENGTH_PREFIX.unpack_from(self._buf)
        if length > self.max_frame_bytes:
            # the stream cannot be resynchronised past a bogus length
            raise DecodeError(
                "Declared frame length exceeds the maximum frame size",
                DecodeErrorKind.MALFORMED_PAYLOAD,
                details={"length": length, "max_frame_bytes": self.max_frame_bytes},
            )

        end = LENGTH_PREFIX.size + length
        if len(self._buf) < end:
            return None
        body = bytes(self._buf[LENGTH_PREFIX.size:end])
        del self._buf[:end]
        return body

    def drain(self) -> List[bytes]:
        '''
        Every complete frame body currently buffered, in arrival order.
        An oversized frame raises only once the frames before it were returned.
        '''
        frames: List[bytes] = []
        while True:
            try:
                body = self.pop()
            except DecodeError:
                if frames:
                    return frames
                raise
            if body is None:
                return frames
            frames.append(body)


def recv_frame(sock: socket.socket, buffer: FrameBuffer, chunk_size: int = 4096) -> bytes:
    '''
    The function blocks until one full frame body is available on the socket.
    Bytes read past that frame stay in ``buffer`` for the next call.
    Input:
        - sock: socket.socket - the socket to receive data from
        - buffer: FrameBuffer - the residual data of this socket
        - chunk_size: int - maximum bytes per recv()
    Output:
        - bytes - the frame body (without the length prefix)
    '''
    while True:
        body = buffer.pop()
        if body is not None:
            return body

        chunk = sock.recv(chunk_size)
        if not chunk:
            # Socket closed
            raise ConnectionError("socket closed")
        buffer.feed(chunk)
