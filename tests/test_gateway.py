import io
import socket
import struct
from collections import deque

import pytest

from mictcp.gateway import (
    MAX_UDP_SEGMENT_SIZE,
    MICTCP_PORT,
    NSEC_PER_SEC,
    GatewayFunction,
    GatewayOptions,
    GatewayProtocol,
    UsageError,
    file_to_faketcp,
    file_to_mictcp,
    main,
    mictcp_to_udp,
    parse_args,
    read_rtp_packet,
    ts_subtract,
)
from mictcp.pdu import SockAddr, StartMode


def record(seconds, nanoseconds, payload):
    return struct.pack("<IIi", seconds, nanoseconds, len(payload)) + payload


class FakeStack:
    def __init__(self, incoming=()):
        self.calls = []
        self.sent = []
        self.incoming = deque(incoming)

    def socket(self, mode):
        self.calls.append(("socket", mode))
        return 7

    def bind(self, fd, addr):
        self.calls.append(("bind", fd, addr))

    def accept(self, fd):
        self.calls.append(("accept", fd))

    def connect(self, fd, addr):
        self.calls.append(("connect", fd, addr))

    def send(self, fd, data):
        self.sent.append(data)
        return len(data)

    def recv(self, fd, max_size):
        self.calls.append(("recv", fd, max_size))
        return self.incoming.popleft()[:max_size]

    def close(self, fd):
        self.calls.append(("close", fd))


@pytest.fixture
def receiver():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5)
    yield sock
    sock.close()


def test_parse_source_mictcp():
    options = parse_args(["-s", "-t", "mictcp", "example.com", "9000"])
    assert options == GatewayOptions(
        GatewayFunction.SOURCE, GatewayProtocol.MICTCP, "example.com", 9000
    )


def test_parse_sink_defaults_to_tcp():
    options = parse_args(["-p", "5000"])
    assert options == GatewayOptions(GatewayFunction.SINK, GatewayProtocol.TCP, None, 5000)


def test_parse_options_after_operands():
    options = parse_args(["5000", "-p", "-t", "mictcp"])
    assert options.function is GatewayFunction.SINK
    assert options.protocol is GatewayProtocol.MICTCP


@pytest.mark.parametrize(
    "argv",
    [
        [],
        ["-s", "-p", "5000"],
        ["-p"],
        ["-p", "1", "2"],
        ["-s", "host"],
        ["-x", "-p", "1"],
        ["-p", "-t"],
        ["-p", "port"],
    ],
)
def test_parse_rejects_bad_command_lines(argv):
    with pytest.raises(UsageError):
        parse_args(argv)


def test_parse_unrecognized_transport_message():
    with pytest.raises(UsageError, match="Unrecognized transport : udp"):
        parse_args(["-p", "-t", "udp", "1"])


def test_read_rtp_packet_reads_timestamp_and_payload():
    stream = io.BytesIO(record(1, 500, b"abc") + record(2, 0, b"de"))
    assert read_rtp_packet(stream, MAX_UDP_SEGMENT_SIZE) == ((1, 500), b"abc")
    assert read_rtp_packet(stream, MAX_UDP_SEGMENT_SIZE) == ((2, 0), b"de")
    assert read_rtp_packet(stream, MAX_UDP_SEGMENT_SIZE) is None


def test_read_rtp_packet_truncated_payload():
    stream = io.BytesIO(struct.pack("<IIi", 0, 0, 10) + b"xyz")
    assert read_rtp_packet(stream, MAX_UDP_SEGMENT_SIZE) == ((0, 0), b"xyz")


def test_read_rtp_packet_too_large():
    stream = io.BytesIO(record(0, 0, b"q" * 20))
    with pytest.raises(ValueError, match="too small"):
        read_rtp_packet(stream, 10)


def test_read_rtp_packet_negative_size():
    stream = io.BytesIO(struct.pack("<IIi", 0, 0, -4))
    with pytest.raises(ValueError):
        read_rtp_packet(stream, MAX_UDP_SEGMENT_SIZE)


@pytest.mark.parametrize("time1,time2", [((1, 5), (1, 5)), ((1, 5), (2, 0)), ((3, 1), (3, 9))])
def test_ts_subtract_not_positive_is_zero(time1, time2):
    assert ts_subtract(time1, time2) == (0, 0)


def test_ts_subtract_whole_seconds():
    assert ts_subtract((5, 0), (3, 0)) == (2, 0)


@pytest.mark.parametrize(
    "time1,time2",
    [((2, 100), (1, 200)), ((10, 999_999_999), (4, 1)), ((7, 3), (0, 999_999_999))],
)
def test_ts_subtract_adds_back_to_first_time(time1, time2):
    seconds, nanoseconds = ts_subtract(time1, time2)
    assert 0 <= nanoseconds < NSEC_PER_SEC
    total = (time2[0] + seconds) * NSEC_PER_SEC + time2[1] + nanoseconds
    assert total == time1[0] * NSEC_PER_SEC + time1[1]


def test_file_to_faketcp_sends_packets_then_end_marker(tmp_path, receiver):
    video = tmp_path / "video.bin"
    video.write_bytes(record(0, 0, b"first") + record(0, 0, b"second"))
    port = receiver.getsockname()[1]
    assert file_to_faketcp(str(video), "127.0.0.1", port) == 3
    received = [receiver.recvfrom(MAX_UDP_SEGMENT_SIZE)[0] for _ in range(3)]
    assert received == [b"first", b"second", b""]


def test_file_to_mictcp_sends_through_stack(tmp_path):
    video = tmp_path / "video.bin"
    video.write_bytes(record(0, 0, b"one") + record(0, 0, b"two"))
    stack = FakeStack()
    assert file_to_mictcp(stack, str(video)) == 3
    assert stack.sent == [b"one", b"two", b""]
    assert stack.calls[0] == ("socket", StartMode.CLIENT)
    assert stack.calls[1] == ("connect", 7, SockAddr("localhost", MICTCP_PORT))
    assert stack.calls[-1] == ("close", 7)


def test_file_to_mictcp_missing_file_closes_socket(tmp_path):
    stack = FakeStack()
    with pytest.raises(FileNotFoundError):
        file_to_mictcp(stack, str(tmp_path / "absent.bin"))
    assert stack.calls[-1] == ("close", 7)


def test_mictcp_to_udp_forwards_until_empty(receiver):
    stack = FakeStack([b"one", b"two", b"", b"never"])
    port = receiver.getsockname()[1]
    assert mictcp_to_udp(stack, "127.0.0.1", port) == 2
    received = [receiver.recvfrom(MAX_UDP_SEGMENT_SIZE)[0] for _ in range(2)]
    assert received == [b"one", b"two"]
    assert ("bind", 7, SockAddr(None, MICTCP_PORT)) in stack.calls
    assert ("recv", 7, MAX_UDP_SEGMENT_SIZE) in stack.calls
    assert list(stack.incoming) == [b"never"]


def test_main_tcp_sink_needs_no_gateway(capsys):
    assert main(["-p", "-t", "tcp", "5000"]) == 0
    assert "No gateway needed" in capsys.readouterr().out


def test_main_bad_option_prints_usage(capsys):
    assert main(["-q"]) == 1
    assert "usage: gateway" in capsys.readouterr().out


def test_main_unknown_transport_prints_message_and_usage(capsys):
    assert main(["-s", "-t", "sctp", "h", "1"]) == 1
    out = capsys.readouterr().out
    assert "Unrecognized transport : sctp" in out
    assert "usage: gateway" in out