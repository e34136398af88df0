"""Shared test fixtures and fakes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from types import SimpleNamespace
from typing import Any

import pytest
from aiortc import AudioStreamTrack, VideoStreamTrack

from meshmeet.assistant import MeetingAssistant
from meshmeet.errors import MediaUnavailable
from meshmeet.media.devices import LocalDevices
from meshmeet.media.provider import CapabilityProvider
from meshmeet.models import Identity
from meshmeet.notices import NoticeBoard
from meshmeet.registry import ConnectionPair, RegistryListener
from meshmeet.session import SessionCoordinator
from meshmeet.transport.memory import MemoryRendezvous


@pytest.fixture
def advance() -> Callable[[int], Coroutine[Any, Any, None]]:
    """Yield control to let pending callbacks run without real delay.

    ::

        await advance()       # 20 yields (default)
        await advance(50)     # for multi-hop exchanges
    """

    async def _advance(n: int = 20) -> None:
        for _ in range(n):
            await asyncio.sleep(0)

    return _advance


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` in real time; for work that runs in threads or paced tracks."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


class FakeOpener:
    """Device opener handing out generated aiortc tracks."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[bool, bool]] = []
        self.opened: list[LocalDevices] = []

    async def __call__(self, *, audio: bool = True, video: bool = True) -> LocalDevices:
        self.calls.append((audio, video))
        if self.fail:
            raise MediaUnavailable("Permission denied")
        devices = LocalDevices(
            audio=AudioStreamTrack() if audio else None,
            video=VideoStreamTrack() if video else None,
        )
        self.opened.append(devices)
        return devices


class FakeLLM:
    """Stands in for the browser-use chat model."""

    def __init__(self, reply: str = "", error: BaseException | None = None, delay: float = 0.0) -> None:
        self.reply = reply
        self.error = error
        self.delay = delay
        self.prompts: list[str] = []

    async def ainvoke(self, messages):
        self.prompts.append(messages[-1].content)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(completion=self.reply)


class Recorder(RegistryListener):
    """Registry listener that records every callback."""

    def __init__(self) -> None:
        self.opened: list[str] = []
        self.messages: list[tuple[str, Any]] = []
        self.streams: list[tuple[str, Any]] = []
        self.closed: list[tuple[str, BaseException | None]] = []

    def on_pair_open(self, pair: ConnectionPair) -> None:
        self.opened.append(pair.remote_peer_id)

    def on_message(self, peer_id: str, message: Any) -> None:
        self.messages.append((peer_id, message))

    def on_stream(self, peer_id: str, stream: Any) -> None:
        self.streams.append((peer_id, stream))

    def on_pair_closed(self, peer_id: str, error: BaseException | None) -> None:
        self.closed.append((peer_id, error))

    def kinds(self, peer_id: str) -> list[str]:
        return [message.get("type") for sender, message in self.messages if sender == peer_id]


def passthrough(frame):
    return frame


def make_rendezvous(*ids: str) -> MemoryRendezvous:
    remaining = iter(ids)
    return MemoryRendezvous(id_factory=lambda: next(remaining))


async def open_transport(rendezvous: MemoryRendezvous, name: str = "peer"):
    transport = rendezvous.transport(reconnect_initial_delay=0.01, reconnect_max_delay=0.05)
    await transport.open(Identity(display_name=name))
    return transport


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()


@pytest.fixture
def rendezvous() -> MemoryRendezvous:
    return make_rendezvous("X1Y2", "B0B0", "C0C0", "D0D0")


@pytest.fixture
async def sessions(rendezvous):
    """Factory for coordinators on the shared rendezvous; all are shut down afterwards."""
    created: list[SessionCoordinator] = []

    def _make(opener: FakeOpener | None = None, llm: FakeLLM | None = None, **kwargs: Any) -> SessionCoordinator:
        device_opener = opener or FakeOpener()
        session = SessionCoordinator(
            lambda: rendezvous.transport(reconnect_initial_delay=0.01, reconnect_max_delay=0.05),
            provider_factory=lambda: CapabilityProvider(opener=device_opener, transform=passthrough),
            assistant=MeetingAssistant(llm or FakeLLM("Sure."), api_key="test-key"),
            notices=NoticeBoard(ttl=60),
            **kwargs,
        )
        created.append(session)
        return session

    yield _make

    for session in created:
        await session.shutdown()
