"""Entry point for the meshmeet rendezvous service."""

from __future__ import annotations

import uvicorn

from meshmeet.config import Config

if __name__ == "__main__":
    uvicorn.run("meshmeet.signaling.server:app", host=Config.SIGNALING_HOST, port=Config.SIGNALING_PORT, reload=False)
