"""MIC-TCP transport: socket table, connection set-up and partial reliability."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from .core import Core
from .pdu import Header, Pdu, ProtocolState, SockAddr, StartMode

log = logging.getLogger(__name__)

MAX_SOCKETS = 100
WINDOW_SIZE = 10
CHANNEL_LOSS = 20
NEGOTIATION_TESTS = 100
TIMEOUT_MS = 1000
_SEQ_MASK = 0xFFFFFFFF


class MicTcpError(Exception):
    """Raised when a MIC-TCP operation cannot be carried out."""


class LossWindow:
    """Sliding record of which recent PDUs were acknowledged."""

    def __init__(self, size: int = WINDOW_SIZE, acceptable_loss: Optional[int] = None) -> None:
        if size <= 0:
            raise ValueError("window size must be positive")
        if acceptable_loss is not None and acceptable_loss < 0:
            raise ValueError("acceptable loss must not be negative")
        self.size = size
        self.acceptable_loss = size if acceptable_loss is None else acceptable_loss
        self._slots = [False] * size

    def update(self, ack_num: int, received: bool) -> None:
        """Record whether the PDU numbered ``ack_num`` was acknowledged."""
        self._slots[ack_num % self.size] = bool(received)

    @property
    def losses(self) -> int:
        """Number of slots in the window recorded as lost."""
        return self.size - sum(self._slots)

    def loss_acceptable(self) -> bool:
        """True while the losses in the window stay within the tolerance."""
        acceptable = self.losses <= self.acceptable_loss
        log.debug(
            "loss %s: %d/%d, tolerated %d/%d",
            "acceptable" if acceptable else "not acceptable",
            self.losses, self.size, self.acceptable_loss, self.size,
        )
        return acceptable


@dataclass
class _SocketEntry:
    state: ProtocolState = ProtocolState.CLOSED
    local_addr: SockAddr = field(default_factory=SockAddr)
    remote_addr: SockAddr = field(default_factory=SockAddr)


def _prompt_loss() -> int:
    while True:
        answer = input("Enter the tolerated loss percentage (integer between 0 and 100): ")
        try:
            return int(answer.strip())
        except ValueError:
            continue


class MicTcp:
    """A MIC-TCP protocol stack over a simulated IP layer."""

    timeout_ms: int = TIMEOUT_MS
    recv_timeout: Optional[float] = None

    def __init__(
        self,
        core: Optional[Core] = None,
        ask_loss: Optional[Callable[[], int]] = None,
        channel_loss: int = CHANNEL_LOSS,
    ) -> None:
        self.core = core if core is not None else Core()
        self.ask_loss = ask_loss if ask_loss is not None else _prompt_loss
        self.channel_loss = channel_loss
        self.sockets = [_SocketEntry() for _ in range(MAX_SOCKETS)]
        self.window = LossWindow(WINDOW_SIZE)
        self.negotiating = True
        self.current_seq_num = 0
        self.expected_seq_num = 0
        self.expected_ack_num = 0
        self._lock = threading.RLock()

    def _entry(self, fd: int) -> _SocketEntry:
        if not 0 <= fd < len(self.sockets):
            raise MicTcpError(f"invalid socket descriptor {fd}")
        return self.sockets[fd]

    def socket(self, mode: StartMode) -> int:
        """Start the transport in ``mode`` and allocate a socket descriptor."""
        log.debug("socket(%s)", mode.name)
        try:
            self.core.initialize(mode, self.process_received_pdu)
        except OSError as exc:
            raise MicTcpError(f"cannot initialize the transport: {exc}") from exc
        self.core.set_loss_rate(self.channel_loss)
        with self._lock:
            for fd, entry in enumerate(self.sockets):
                if entry.state is ProtocolState.CLOSED:
                    self.sockets[fd] = _SocketEntry(state=ProtocolState.IDLE)
                    return fd
        raise MicTcpError("no free socket")

    def bind(self, fd: int, addr: SockAddr) -> None:
        """Give the socket ``fd`` the local address ``addr``."""
        log.debug("bind(%d, %s)", fd, addr)
        with self._lock:
            self._entry(fd).local_addr = addr

    def accept(self, fd: int) -> None:
        """Put the socket ``fd`` in the state of accepting connections."""
        log.debug("accept(%d)", fd)
        with self._lock:
            self._entry(fd).state = ProtocolState.IDLE

    def connect(self, fd: int, addr: SockAddr) -> None:
        """Open a connection to ``addr`` and negotiate the tolerated loss rate."""
        log.debug("connect(%d, %s)", fd, addr)
        entry = self._entry(fd)
        if addr.host is None:
            raise MicTcpError("remote address has no host")
        entry.remote_addr = addr

        syn = Pdu(Header(source_port=entry.local_addr.port, dest_port=addr.port, syn=True))
        entry.state = ProtocolState.SYN_SENT
        self.core.ip_send(syn, addr.host)
        try:
            self.core.ip_recv(self.timeout_ms, 0)
        except TimeoutError:
            log.debug("no SYN-ACK before timeout")

        ack = Pdu(Header(source_port=entry.local_addr.port, dest_port=addr.port, ack=True))
        self.core.ip_send(ack, addr.host)
        entry.state = ProtocolState.CONNECTED

        while self.negotiating:
            self._negotiate(fd)

    def _negotiate(self, fd: int) -> None:
        suggestion = -1
        while suggestion < 0:
            suggestion = self.ask_loss()

        losses = sum(not self._transmit(fd, b"a") for _ in range(NEGOTIATION_TESTS))
        print(f"Channel test result: {losses} losses out of {NEGOTIATION_TESTS}")

        if suggestion >= 0.95 * losses:
            self.window.acceptable_loss = suggestion * self.window.size // 100
            print(f"Loss rate of {suggestion}/100 accepted.")
            while not self._transmit(fd, b"b"):
                pass
            self.negotiating = False
            self.current_seq_num = 0
            self.expected_ack_num = 0
        else:
            print(
                "Chosen loss rate too low.\n"
                f"Please propose a new one greater than {suggestion}/100"
            )

    def _transmit(self, fd: int, data: bytes) -> bool:
        entry = self._entry(fd)
        host = entry.remote_addr.host
        if host is None:
            raise MicTcpError(f"socket {fd} has no remote address")
        seq = self.current_seq_num & _SEQ_MASK
        pdu = Pdu(
            Header(
                source_port=entry.local_addr.port,
                dest_port=entry.remote_addr.port,
                seq_num=seq,
                ack=self.negotiating,
            ),
            bytes(data),
        )
        while True:
            self.core.ip_send(pdu, host)
            log.debug("sent PDU with seq_num %d", seq)
            try:
                reply, _ = self.core.ip_recv(self.timeout_ms, 0)
            except TimeoutError:
                reply = None
            if reply is not None and reply.header.ack:
                if reply.header.ack_num == seq:
                    self.window.update(seq, True)
                    delivered = True
                    break
                self.window.update(reply.header.ack_num, True)
            else:
                log.debug("timeout waiting for ack %d", seq)
                self.window.update(seq, False)
                if self.window.loss_acceptable():
                    delivered = False
                    break
        self.current_seq_num += 1
        self.expected_ack_num += 1
        return delivered

    def send(self, fd: int, data: bytes) -> int:
        """Send ``data``; return its size if acknowledged, 0 if its loss was tolerated."""
        log.debug("send(%d, %d bytes)", fd, len(data))
        return len(data) if self._transmit(fd, data) else 0

    def recv(self, fd: int, max_size: int) -> bytes:
        """Take the next received payload, truncated to ``max_size`` bytes."""
        log.debug("recv(%d, %d)", fd, max_size)
        self._entry(fd)
        return self.core.buffer.get(max_size, self.recv_timeout)

    def close(self, fd: int) -> None:
        """Close the socket ``fd``."""
        log.debug("close(%d)", fd)
        with self._lock:
            self._entry(fd).state = ProtocolState.CLOSED

    def _reply(self, header: Header, remote_host: str, **flags: object) -> None:
        pdu = Pdu(Header(source_port=header.dest_port, dest_port=header.source_port, **flags))
        self.core.ip_send(pdu, remote_host)

    def process_received_pdu(self, pdu: Pdu, local_host: str, remote_host: str) -> None:
        """Handle a PDU arriving for a local socket and answer it."""
        header = pdu.header
        with self._lock:
            entry = next(
                (
                    e
                    for e in self.sockets
                    if e.state is not ProtocolState.CLOSED
                    and e.local_addr.port == header.dest_port
                ),
                None,
            )
            if entry is None:
                log.warning("no socket found for port %d", header.dest_port)
                return

            if entry.state is ProtocolState.IDLE and header.syn:
                entry.remote_addr = SockAddr(remote_host, header.source_port)
                entry.state = ProtocolState.SYN_RECEIVED
                self._reply(header, remote_host, syn=True, ack=True)

            elif entry.state is ProtocolState.SYN_RECEIVED and header.ack:
                if self.negotiating:
                    self._reply(header, remote_host, ack=True, ack_num=header.seq_num)
                    if pdu.payload[:1] == b"b":
                        log.debug("end of negotiation")
                        self.negotiating = False
                        entry.state = ProtocolState.CONNECTED
                        self.expected_seq_num = 0

            elif entry.state is ProtocolState.CONNECTED and header.ack:
                if not self.negotiating:
                    self._reply(header, remote_host, ack=True)

            elif entry.state is ProtocolState.CONNECTED and not header.ack:
                if header.seq_num < self.expected_seq_num:
                    log.debug(
                        "duplicate PDU %d, expecting %d",
                        header.seq_num, self.expected_seq_num,
                    )
                else:
                    self.core.buffer.put(pdu.payload)
                    self.expected_seq_num = header.seq_num + 1
                self._reply(header, remote_host, ack=True, ack_num=header.seq_num)