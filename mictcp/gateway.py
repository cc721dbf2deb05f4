"""Gateway relaying a recorded RTP video stream over fake TCP, MIC-TCP or UDP."""

from __future__ import annotations

import getopt
import socket
import struct
import sys
import time
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum, auto
from typing import BinaryIO, Optional, Sequence

from .pdu import SockAddr, StartMode
from .protocol import MicTcp, MicTcpError

ENABLE_TCP_LOSS = True
MAX_UDP_SEGMENT_SIZE = 1480
MICTCP_PORT = 1337
VIDEO_FILE = "../video/video.bin"
TCP_LOSS_PERIOD = 600
TCP_LOSS_DELAY = 2.0
NSEC_PER_SEC = 1_000_000_000
USAGE = "usage: gateway [-p|-s][-t tcp|mictcp] (<server>) <port>"

# Seconds and nanoseconds on 4 bytes each, then the packet size.
_RTP_RECORD = struct.Struct("<IIi")

Timestamp = tuple[int, int]


class GatewayFunction(Enum):
    """What the gateway does: nothing chosen yet, feed a stream, or sink one."""

    UNDEFINED = auto()
    SOURCE = auto()
    SINK = auto()


class GatewayProtocol(Enum):
    """Transport used by the gateway."""

    TCP = auto()
    MICTCP = auto()


_PROTOCOLS = {"tcp": GatewayProtocol.TCP, "mictcp": GatewayProtocol.MICTCP}


class UsageError(Exception):
    """Raised when the command line is not valid."""


@dataclass(frozen=True)
class GatewayOptions:
    """Parsed command line of the gateway."""

    function: GatewayFunction
    protocol: GatewayProtocol = GatewayProtocol.TCP
    host: Optional[str] = None
    port: int = 0


def _port(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise UsageError(f"Invalid port : {text}") from None


def parse_args(argv: Sequence[str]) -> GatewayOptions:
    """Parse ``[-p|-s] [-t tcp|mictcp] (<server>) <port>``, program name excluded."""
    try:
        opts, args = getopt.gnu_getopt(list(argv), "t:sp")
    except getopt.GetoptError as exc:
        raise UsageError(str(exc)) from exc

    protocol = GatewayProtocol.TCP
    function = GatewayFunction.UNDEFINED
    for opt, value in opts:
        if opt == "-t":
            try:
                protocol = _PROTOCOLS[value]
            except KeyError:
                raise UsageError(f"Unrecognized transport : {value}") from None
        else:
            if function is not GatewayFunction.UNDEFINED:
                raise UsageError()
            function = GatewayFunction.SOURCE if opt == "-s" else GatewayFunction.SINK

    if function is GatewayFunction.SINK and len(args) == 1:
        return GatewayOptions(function, protocol, port=_port(args[0]))
    if function is GatewayFunction.SOURCE and len(args) == 2:
        return GatewayOptions(function, protocol, host=args[0], port=_port(args[1]))
    raise UsageError()


def read_rtp_packet(
    stream: BinaryIO, buffer_size: int
) -> Optional[tuple[Timestamp, bytes]]:
    """Read one recorded RTP packet and its timestamp.

    Returns ``None`` at the end of the stream. A truncated record header is
    zero-filled. Raises ValueError if the packet does not fit ``buffer_size``.
    """
    raw = stream.read(_RTP_RECORD.size)
    if not raw:
        return None
    seconds, nanoseconds, packet_size = _RTP_RECORD.unpack(
        raw.ljust(_RTP_RECORD.size, b"\0")
    )
    if packet_size > buffer_size:
        raise ValueError("Buffer is too small to store the packet")
    if packet_size < 0:
        raise ValueError(f"invalid packet size {packet_size}")
    return (seconds, nanoseconds), stream.read(packet_size)


def ts_subtract(time1: Timestamp, time2: Timestamp) -> Timestamp:
    """Return ``time1 - time2`` as (seconds, nanoseconds), or (0, 0) if not positive."""
    sec1, nsec1 = time1
    sec2, nsec2 = time2
    if (sec1, nsec1) <= (sec2, nsec2):
        return (0, 0)
    if nsec1 < nsec2:
        return (sec1 - sec2 - 1, nsec1 + NSEC_PER_SEC - nsec2)
    return (sec1 - sec2, nsec1 - nsec2)


def _paced_packets(stream: BinaryIO) -> Iterator[bytes]:
    """Yield packets at the pace of their timestamps, then an empty end marker."""
    last: Optional[Timestamp] = None
    while True:
        packet = read_rtp_packet(stream, MAX_UDP_SEGMENT_SIZE)
        if packet is None:
            yield b""
            return
        timestamp, data = packet
        if last is not None:
            seconds, nanoseconds = ts_subtract(timestamp, last)
            delay = seconds + nanoseconds / NSEC_PER_SEC
            if delay > 0:
                time.sleep(delay)
        last = timestamp
        yield data


def _resolve(host: str) -> str:
    return socket.gethostbyname(host)


def file_to_faketcp(filename: str, host: str, port: int) -> int:
    """Replay the video file over UDP, stalling now and then as lossy TCP would.

    Returns the number of datagrams sent, the empty end-of-stream one included.
    """
    address = (_resolve(host), port)
    sent = 0
    count = 0
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock, open(
        filename, "rb"
    ) as stream:
        for data in _paced_packets(stream):
            if ENABLE_TCP_LOSS:
                if count == TCP_LOSS_PERIOD:
                    print("Simulating TCP loss")
                    time.sleep(TCP_LOSS_DELAY)
                    count = 0
                else:
                    count += 1
            sock.sendto(data, address)
            sent += 1
    return sent


def file_to_mictcp(stack: MicTcp, filename: str) -> int:
    """Replay the video file over a MIC-TCP connection to the local gateway.

    Returns the number of payloads sent, the empty end-of-stream one included.
    """
    fd = stack.socket(StartMode.CLIENT)
    sent = 0
    try:
        stack.connect(fd, SockAddr("localhost", MICTCP_PORT))
        with open(filename, "rb") as stream:
            for data in _paced_packets(stream):
                stack.send(fd, data)
                sent += 1
    finally:
        stack.close(fd)
    return sent


def mictcp_to_udp(stack: MicTcp, host: str, port: int) -> int:
    """Forward MIC-TCP payloads to ``host``:``port`` over UDP until an empty one.

    Returns the number of datagrams forwarded.
    """
    address = (_resolve(host), port)
    forwarded = 0
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as udp:
        fd = stack.socket(StartMode.SERVER)
        try:
            stack.bind(fd, SockAddr(None, MICTCP_PORT))
            stack.accept(fd)
            while True:
                data = stack.recv(fd, MAX_UDP_SEGMENT_SIZE)
                if not data:
                    break
                udp.sendto(data, address)
                forwarded += 1
        finally:
            stack.close(fd)
    return forwarded


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the gateway from the command line."""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        options = parse_args(args)
    except UsageError as exc:
        if str(exc):
            print(exc)
        print(USAGE)
        return 1

    try:
        if options.protocol is GatewayProtocol.TCP:
            if options.function is GatewayFunction.SOURCE:
                file_to_faketcp(VIDEO_FILE, options.host or "", options.port)
            else:
                print("No gateway needed for puits using UDP")
        else:
            stack = MicTcp()
            try:
                if options.function is GatewayFunction.SOURCE:
                    file_to_mictcp(stack, VIDEO_FILE)
                else:
                    mictcp_to_udp(stack, "127.0.0.1", options.port)
            finally:
                stack.core.close()
    except MicTcpError as exc:
        print(f"ERROR on MICTCP: {exc}")
        return 1
    except (OSError, ValueError) as exc:
        print(f"gateway: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())