"""Local media: device capture, gated tracks and the background-blur frame pump."""

__all__ = [
    "devices",
    "tracks",
    "pump",
    "blur",
    "provider",
]
