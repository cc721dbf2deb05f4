"""Interactive MIC-TCP client: sends each line read from its input."""

from __future__ import annotations

import re
import sys
from collections.abc import Iterable, Iterator
from typing import Optional, Sequence, Union

from .pdu import SockAddr, StartMode
from .protocol import MicTcp, MicTcpError

MAX_SIZE = 1000
USAGE = "usage: client <host> <port>"

_LINE_END = re.compile(rb"[\r\n\0]")


def _messages(lines: Iterable[Union[str, bytes]]) -> Iterator[bytes]:
    """Cut input lines into messages the way a fixed-size line reader would."""
    for line in lines:
        raw = line.encode() if isinstance(line, str) else bytes(line)
        while raw:
            piece, raw = raw[: MAX_SIZE - 1], raw[MAX_SIZE - 1 :]
            yield _LINE_END.split(piece, maxsplit=1)[0]


def run_client(
    stack: MicTcp, host: str, port: int, lines: Iterable[Union[str, bytes]]
) -> list[int]:
    """Connect to ``host``:``port`` and send every line as a NUL-terminated message.

    Returns the value ``send`` gave back for each message.
    """
    fd = stack.socket(StartMode.CLIENT)
    print("[TSOCK] MICTCP socket created: OK")
    stack.connect(fd, SockAddr(host, port))
    print("[TSOCK] MICTCP socket connected: OK")

    print("[TSOCK] Enter messages to send, CTRL+D to quit")
    results = []
    try:
        for message in _messages(lines):
            data = message + b"\0"
            sent = stack.send(fd, data)
            print(f"[TSOCK] mic_send called with a message of size: {len(data)}")
            print(f"[TSOCK] mic_send return value: {sent}")
            results.append(sent)
    finally:
        stack.close(fd)
    return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the client on standard input; arguments are host and port."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) != 2:
        print(USAGE)
        return 1
    host, port_text = args
    try:
        port = int(port_text)
    except ValueError:
        print(f"[TSOCK] Invalid port: {port_text}")
        print(USAGE)
        return 1

    stack = MicTcp()
    try:
        run_client(stack, host, port, sys.stdin)
    except (MicTcpError, OSError) as exc:
        print(f"[TSOCK] MICTCP error: {exc}")
        return 1
    finally:
        stack.core.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())