"""MIC-TCP server that prints every message it receives."""

from __future__ import annotations

import itertools
import sys
from typing import Optional, Sequence

from .pdu import SockAddr, StartMode
from .protocol import MicTcp, MicTcpError

MAX_SIZE = 1000
LISTEN_HOST = "127.0.0.1"
USAGE = "usage: server <port>"


def serve(stack: MicTcp, port: int, max_messages: Optional[int] = None) -> list[bytes]:
    """Accept a connection on ``port`` and print incoming messages.

    Stops after ``max_messages`` messages, or never when it is ``None``.
    Returns the payloads received.
    """
    fd = stack.socket(StartMode.SERVER)
    print("[TSOCK] MICTCP socket created: OK")
    stack.bind(fd, SockAddr(LISTEN_HOST, port))
    print("[TSOCK] MICTCP socket bound: OK")
    stack.accept(fd)
    print("[TSOCK] Accept on MICTCP socket: OK")

    print("[TSOCK] Press CTRL+C to quit ...")
    rounds = itertools.count() if max_messages is None else range(max_messages)
    received = []
    for _ in rounds:
        print("[TSOCK] Waiting for data, calling mic_recv ...")
        data = stack.recv(fd, MAX_SIZE)
        print(f"[TSOCK] Received a message of size: {len(data)}")
        text = data.split(b"\0", 1)[0].decode(errors="replace")
        print(f"[TSOCK] Message received: {text}")
        received.append(data)
    return received


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the server; the single argument is the MIC-TCP port."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 1:
        print(USAGE)
        return 1
    try:
        port = int(args[0])
    except ValueError:
        print(f"[TSOCK] Invalid port: {args[0]}")
        print(USAGE)
        return 1

    stack = MicTcp()
    try:
        serve(stack, port)
    except KeyboardInterrupt:
        return 0
    except (MicTcpError, OSError) as exc:
        print(f"[TSOCK] MICTCP error: {exc}")
        return 1
    finally:
        stack.core.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())