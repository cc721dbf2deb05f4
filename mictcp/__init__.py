"""A TCP-like transport with negotiated partial reliability over UDP, with client, server and gateway tools."""

__version__ = "0.1.0"