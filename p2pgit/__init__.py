"""Peer-to-peer sharing of Git repositories on a local network, with a pure-Python git backend."""

__version__ = "0.1.0"