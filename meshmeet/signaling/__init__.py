"""Rendezvous service handing out peer ids and relaying connection setup."""

__all__ = [
    "server",
]
