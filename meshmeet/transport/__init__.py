"""Peer transports.

``rtc`` talks to the rendezvous websocket and opens aiortc peer connections;
``memory`` connects transports living in the same process.
"""

__all__ = [
    "base",
    "rtc",
    "memory",
]
