"""Livecall core package.

This package hosts the runtime helpers shared by the signaling server,
the call client and the command line tools in ``src``: environment
settings, logging setup, small utilities and peer-connection
configuration.
"""

__all__ = [
    "config",
    "logging",
    "webrtc",
    "utils",
]
