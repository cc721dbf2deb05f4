"""Simulated IP layer: lossy UDP transport, reception thread, application buffer."""

from __future__ import annotations

import logging
import random
import select
import socket
import threading
import time
from collections import deque
from typing import Callable, Optional

from .pdu import HEADER_SIZE, Pdu, StartMode

log = logging.getLogger(__name__)

DEFAULT_CS_PORT = 8524
DEFAULT_SC_PORT = 8525
MAX_DATAGRAM = 1500
LOCAL_HOST = "localhost"
_POLL_INTERVAL = 0.2

Handler = Callable[[Pdu, str, str], None]


class AppBuffer:
    """Thread-safe FIFO of payloads waiting to be read by the application."""

    def __init__(self) -> None:
        self._items: deque[bytes] = deque()
        self._cond = threading.Condition()

    def put(self, data: bytes) -> None:
        """Append a copy of ``data`` and wake any waiting reader."""
        with self._cond:
            self._items.append(bytes(data))
            self._cond.notify_all()

    def get(self, max_size: int, timeout: Optional[float] = None) -> bytes:
        """Remove the oldest payload and return at most ``max_size`` bytes of it.

        Blocks while the buffer is empty; ``timeout`` is in seconds, ``None``
        waits forever. Raises TimeoutError when the wait runs out.
        """
        if max_size < 0:
            raise ValueError("max_size must not be negative")
        with self._cond:
            if not self._cond.wait_for(lambda: bool(self._items), timeout):
                raise TimeoutError("application buffer is empty")
            data = self._items.popleft()
        return data[:max_size]

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)


class Core:
    """UDP-backed carrier for MIC-TCP PDUs with simulated packet loss."""

    def __init__(
        self,
        cs_port: int = DEFAULT_CS_PORT,
        sc_port: int = DEFAULT_SC_PORT,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.cs_port = cs_port
        self.sc_port = sc_port
        self.rng = rng if rng is not None else random.Random()
        self.loss_rate = 0
        self.buffer = AppBuffer()
        self.mode: Optional[StartMode] = None
        self._sock: Optional[socket.socket] = None
        self._remote_port: Optional[int] = None
        self._listener: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def initialized(self) -> bool:
        return self._sock is not None

    def __enter__(self) -> Core:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def initialize(self, mode: StartMode, handler: Optional[Handler] = None) -> None:
        """Open the UDP socket for ``mode``; a server also starts its listener.

        Calling it again once initialized does nothing. A server that cannot
        bind its port raises OSError.
        """
        if self._sock is not None:
            return
        if mode is StartMode.SERVER and handler is None:
            raise ValueError("a server needs a handler for received PDUs")
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        if mode is StartMode.SERVER:
            try:
                sock.bind(("", self.cs_port))
            except OSError:
                sock.close()
                raise
            self._remote_port = self.sc_port
        else:
            self._remote_port = self.cs_port
            try:
                sock.bind(("", self.sc_port))
            except OSError as exc:
                log.warning("could not bind client port %d: %s", self.sc_port, exc)
        self._sock = sock
        self.mode = mode
        if mode is StartMode.SERVER:
            self._stop.clear()
            self._listener = threading.Thread(
                target=self._listen, args=(sock, handler), daemon=True
            )
            self._listener.start()

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise RuntimeError("core is not initialized")
        return self._sock

    def ip_send(self, pdu: Pdu, host: str) -> int:
        """Send ``pdu`` to ``host``, possibly dropping it; return the payload size."""
        sock = self._require_socket()
        datagram = pdu.to_bytes()
        sent = len(datagram)
        if self.rng.random() * 100 < self.loss_rate:
            log.info("packet lost")
        else:
            address = socket.gethostbyname(host)
            sent = sock.sendto(datagram, (address, self._remote_port))
            log.info("sent IP packet of size %d to %s", sent, host)
        return sent - HEADER_SIZE

    def ip_recv(
        self,
        timeout: Optional[int] = None,
        max_payload: int = MAX_DATAGRAM - HEADER_SIZE,
    ) -> tuple[Pdu, str]:
        """Wait for one PDU and return it with the sender's IP address.

        ``timeout`` is in milliseconds; ``None`` or 0 waits forever. Payloads
        longer than ``max_payload`` are truncated. Raises TimeoutError.
        """
        sock = self._require_socket()
        sock.settimeout(timeout / 1000 if timeout else None)
        data, (address, _port) = sock.recvfrom(HEADER_SIZE + max_payload)
        log.info("received IP packet of size %d from %s", len(data), address)
        return Pdu.from_bytes(data), address

    def _listen(self, sock: socket.socket, handler: Handler) -> None:
        log.info("starting network reception thread")
        while not self._stop.is_set():
            try:
                ready, _, _ = select.select([sock], [], [], _POLL_INTERVAL)
                if not ready:
                    continue
                data, (address, _port) = sock.recvfrom(MAX_DATAGRAM)
            except (OSError, ValueError):
                if self._stop.is_set() or sock.fileno() == -1:
                    break
                log.exception("error in reception")
                continue
            try:
                pdu = Pdu.from_bytes(data)
            except ValueError:
                log.warning("discarding malformed datagram from %s", address)
                continue
            try:
                handler(pdu, LOCAL_HOST, address)
            except Exception:
                log.exception("handler failed on received PDU")

    def set_loss_rate(self, rate: int) -> None:
        """Set the percentage of outgoing packets to drop."""
        if rate < 0:
            raise ValueError("loss rate must not be negative")
        self.loss_rate = rate

    def close(self) -> None:
        """Stop the listener and close the socket."""
        self._stop.set()
        listener = self._listener
        if listener is not None and listener is not threading.current_thread():
            listener.join()
        self._listener = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        self.mode = None


def now_usec() -> int:
    """Current wall-clock time in microseconds."""
    return time.time_ns() // 1000


def now_msec() -> int:
    """Current wall-clock time in milliseconds."""
    return now_usec() // 1000