# mictcp

`mictcp` is a small connection-oriented transport that runs over UDP on the
local machine. It offers a socket-like interface with a connection handshake
(SYN, SYN-ACK, ACK), sequence numbers and acknowledgements.

Its reliability is partial. When a connection opens, the client agrees on a
loss percentage the application can tolerate. A sliding window of the last ten
sends then decides what happens when an acknowledgement does not arrive within
one second. While the losses recorded in the window stay within the tolerance,
the segment is given up on. Otherwise it is sent again.

The simulated channel drops outgoing datagrams at random. A `MicTcp` stack
sets the drop rate to 20 % by default, so the protocol is always exercised
under loss.

## Install

```
pip install .
```

The package has no runtime dependencies. To run the tests:

```
pip install ".[test]"
pytest
```

## Command-line tools

### Server

Start a server on a MIC-TCP port. It prints each message it receives, up to
the first NUL byte, until you press Ctrl+C:

```
mictcp-server 1234
```

### Client

Connect a client and type lines to send. Press Ctrl+D to stop:

```
mictcp-client localhost 1234
```

When the client connects, it first asks for the loss percentage you accept.
If you give a negative number, it asks again.

It then sends 100 test segments and reports how many were lost. It accepts
your figure if that figure is at least 95 % of the measured losses. If not,
it asks again.

After that, each input line is sent as one message, followed by a NUL byte.
A line is cut at the first carriage return, newline or NUL. A line longer than
999 bytes is sent as several messages. For each message the client prints the
value `send` returned: the size sent if it was acknowledged, or 0 if its loss
was tolerated.

### Gateway

The gateway replays a recorded RTP video file. Each record in the file is made
of a 4-byte seconds field, a 4-byte nanoseconds field and a 4-byte packet size,
all little-endian, followed by the packet itself. The packets are sent at the
pace of their timestamps. An empty datagram marks the end of the stream.

Use `-s` on the source side and `-p` on the sink side. Choose the transport
with `-t tcp` (the default) or `-t mictcp`:

```
mictcp-gateway -p -t mictcp 5000
mictcp-gateway -s -t mictcp localhost 5000
mictcp-gateway -s -t tcp localhost 5000
```

- `-s -t tcp <server> <port>` sends the packets over plain UDP to the given
  server and port. Every 600 packets it pauses for two seconds to mimic a TCP
  retransmission stall.
- `-s -t mictcp <server> <port>` sends the packets over MIC-TCP to port 1337
  on localhost. The server and port arguments are required but not used.
- `-p -t mictcp <port>` accepts a MIC-TCP connection on port 1337. It forwards
  each payload over UDP to `127.0.0.1:<port>` and stops at the first empty
  payload.
- `-p -t tcp <port>` only prints that no gateway is needed.

The source side reads the file `../video/video.bin`, relative to the current
directory.

Each tool can also be run as a module, for example `python -m mictcp.server 1234`.

## Library use

- `mictcp.pdu` contains the following:
  - `Header` and `Pdu`, encoded in a fixed 16-byte little-endian header layout
    by `Header.pack`, `Header.unpack`, `Pdu.to_bytes` and `Pdu.from_bytes`.
  - `SockAddr`.
  - The `ProtocolState` and `StartMode` enums.
- `mictcp.core` contains the following:
  - `Core`, the simulated IP layer. It provides `initialize`, `ip_send`,
    `ip_recv`, `set_loss_rate` and `close`, and can be used as a context
    manager. In server mode it runs a reception thread that passes each
    incoming PDU to a handler.
  - `AppBuffer`, the thread-safe receive queue.
  - `now_msec` and `now_usec`.
- `mictcp.protocol` contains the following:
  - `MicTcp`, the socket API: `socket`, `bind`, `accept`, `connect`, `send`,
    `recv`, `close` and `process_received_pdu`. Sockets are integer
    descriptors from a table of 100.
  - `LossWindow`, the loss-tolerance window.
  - `MicTcpError`, which is raised when an operation fails.

  `MicTcp` takes an `ask_loss` callable for the negotiation prompt, so it can
  be driven without a terminal.
- `mictcp.client.run_client`, `mictcp.server.serve` and the `mictcp.gateway`
  functions drive a `MicTcp` stack the same way the command-line tools do.
  The gateway functions are `parse_args`, `read_rtp_packet`, `ts_subtract`,
  `file_to_faketcp`, `file_to_mictcp` and `mictcp_to_udp`.

```python
from mictcp.pdu import Header, Pdu

pdu = Pdu(Header(source_port=1, dest_port=2, seq_num=5, ack=True), b"hi")
data = pdu.to_bytes()
assert len(data) == 18
assert Pdu.from_bytes(data) == pdu
```

Progress messages from the transport go through the `logging` module, under
the `mictcp.core` and `mictcp.protocol` loggers.

## What it does not do

- The transport only runs between two processes on the same machine. The
  client and server always talk over UDP ports 8524 (server) and 8525
  (client). Only one client and one server can run at a time. The MIC-TCP
  port numbers only select a socket inside the server.
- There is no closing handshake. `close` only marks the socket as closed
  locally. The FIN flag is carried in the header but never used.
- The negotiation happens once per `MicTcp` stack. Sequence numbers are kept
  per stack, not per socket.
- No video file is included. The gateway source side needs a recording at
  `../video/video.bin`.