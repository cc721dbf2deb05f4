"""Protocol data types: states, start modes, addresses, headers and PDUs."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import Enum, auto

HEADER_SIZE = 16
"""Size in bytes of a MIC-TCP header on the wire."""

_HEADER_FORMAT = "<HHIIBBBx"


class ProtocolState(Enum):
    """Connection states of a MIC-TCP socket."""

    IDLE = auto()
    CLOSED = auto()
    SYN_SENT = auto()
    SYN_RECEIVED = auto()
    CONNECTED = auto()
    CLOSING = auto()


class StartMode(Enum):
    """Role in which the protocol stack is started."""

    CLIENT = auto()
    SERVER = auto()


@dataclass(frozen=True)
class SockAddr:
    """A socket address: host name or IP string, and a MIC-TCP port."""

    host: str | None = None
    port: int = 0


@dataclass
class Header:
    """MIC-TCP header: ports, sequence and acknowledgement numbers, flags."""

    source_port: int = 0
    dest_port: int = 0
    seq_num: int = 0
    ack_num: int = 0
    syn: bool = False
    ack: bool = False
    fin: bool = False

    def pack(self) -> bytes:
        """Encode the header as its 16-byte wire form."""
        try:
            return struct.pack(
                _HEADER_FORMAT,
                self.source_port,
                self.dest_port,
                self.seq_num,
                self.ack_num,
                int(self.syn),
                int(self.ack),
                int(self.fin),
            )
        except struct.error as exc:
            raise ValueError(f"header field out of range: {exc}") from exc

    @classmethod
    def unpack(cls, data: bytes) -> Header:
        """Decode a header from the first 16 bytes of ``data``."""
        if len(data) < HEADER_SIZE:
            raise ValueError(
                f"need {HEADER_SIZE} bytes for a header, got {len(data)}"
            )
        source_port, dest_port, seq_num, ack_num, syn, ack, fin = struct.unpack(
            _HEADER_FORMAT, bytes(data[:HEADER_SIZE])
        )
        return cls(
            source_port=source_port,
            dest_port=dest_port,
            seq_num=seq_num,
            ack_num=ack_num,
            syn=bool(syn),
            ack=bool(ack),
            fin=bool(fin),
        )


@dataclass
class Pdu:
    """A MIC-TCP protocol data unit: a header followed by its payload."""

    header: Header = field(default_factory=Header)
    payload: bytes = b""

    def to_bytes(self) -> bytes:
        """Encode the PDU as a datagram: header then payload."""
        return self.header.pack() + bytes(self.payload)

    @classmethod
    def from_bytes(cls, data: bytes) -> Pdu:
        """Decode a PDU from a datagram."""
        header = Header.unpack(data)
        return cls(header=header, payload=bytes(data[HEADER_SIZE:]))