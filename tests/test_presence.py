"""Tests for local state publication, reactions and chat fan-out."""

from __future__ import annotations

import asyncio

import pytest

from meshmeet.chat import ChatLog
from meshmeet.membership import MeshMembership
from meshmeet.models import OriginKind
from meshmeet.presence import PresenceSync
from meshmeet.roster import Roster
from tests.conftest import make_rendezvous, open_transport


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _peer(rendezvous, name, clock=None):
    transport = await open_transport(rendezvous, name)
    roster = Roster()
    roster.add_local(display_name=name, avatar_ref="", is_originator=False)
    roster.rekey_local(transport.peer_id)
    chat = ChatLog()
    membership = MeshMembership(transport.peer_id, transport, roster, chat, clock=clock)
    transport.on_incoming = membership.accept
    presence = PresenceSync(roster, chat, clock=clock)
    presence.attach(membership.registry)
    return membership, presence


class TestStateUpdates:
    async def test_toggle_broadcast_to_every_open_pair(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc")
        a, presence_a = await _peer(rendezvous, "Ada")
        b, _ = await _peer(rendezvous, "Bob")
        c, _ = await _peer(rendezvous, "Cy")
        b.connect("aaaa")
        await advance()
        c.connect("aaaa")
        await advance(50)

        presence_a.update_local(muted=True)
        await advance()

        assert b.roster.get("aaaa").muted
        assert c.roster.get("aaaa").muted
        assert not c.roster.get("bbbb").muted

    async def test_screen_share_is_not_broadcast(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, presence_a = await _peer(rendezvous, "Ada")
        b, _ = await _peer(rendezvous, "Bob")
        b.connect("aaaa")
        await advance()
        before = len(a.registry.get("bbbb").data_channel.sent)

        presence_a.update_local(screen_sharing=True)
        await advance()

        assert a.roster.local.screen_sharing
        assert len(a.registry.get("bbbb").data_channel.sent) == before

    async def test_update_without_registry_stays_local(self) -> None:
        roster = Roster()
        roster.add_local(display_name="Ada", avatar_ref="", is_originator=True)
        presence = PresenceSync(roster, ChatLog())

        presence.update_local(camera_off=True)

        assert roster.local.camera_off
        assert presence.publish_state() == 0

    async def test_missed_update_is_not_replayed(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, presence_a = await _peer(rendezvous, "Ada")
        b, _ = await _peer(rendezvous, "Bob")

        a.connect("bbbb")
        presence_a.update_local(blurred=True)
        await advance()

        assert "aaaa" in b.roster
        assert not b.roster.get("aaaa").blurred


class TestReactions:
    async def test_reaction_shown_locally_and_remotely(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        clock = FakeClock(10_000)
        a, presence_a = await _peer(rendezvous, "Ada", clock)
        b, _ = await _peer(rendezvous, "Bob", clock)
        b.connect("aaaa")
        await advance()

        presence_a.react("👍")
        await advance()

        assert [r.emoji for r in a.roster.local.reactions] == ["👍"]
        assert [r.emoji for r in b.roster.get("aaaa").reactions] == ["👍"]

    async def test_reaction_expires_after_ttl(self) -> None:
        clock = FakeClock(5_000)
        roster = Roster()
        roster.add_local(display_name="Ada", avatar_ref="", is_originator=True)
        presence = PresenceSync(roster, ChatLog(), reaction_ttl_ms=2000, clock=clock)

        presence.react("🎉")
        clock.now = 6_999
        assert presence.sweep() == 0
        assert len(roster.local.reactions) == 1
        clock.now = 7_000
        assert presence.sweep() == 1
        assert roster.local.reactions == []

    async def test_unknown_emoji_rejected(self) -> None:
        roster = Roster()
        roster.add_local(display_name="Ada", avatar_ref="", is_originator=True)
        presence = PresenceSync(roster, ChatLog())

        with pytest.raises(ValueError):
            presence.react("🦄")
        assert roster.local.reactions == []

    async def test_sweep_task_runs_and_stops(self) -> None:
        clock = FakeClock(0)
        roster = Roster()
        roster.add_local(display_name="Ada", avatar_ref="", is_originator=True)
        presence = PresenceSync(roster, ChatLog(), reaction_ttl_ms=100, sweep_interval_ms=5, clock=clock)

        presence.react("❤️")
        presence.start()
        assert presence.sweeping
        clock.now = 100
        await asyncio.sleep(0.05)

        assert roster.local.reactions == []
        await presence.stop()
        assert not presence.sweeping
        await presence.stop()


class TestChat:
    async def test_chat_reaches_every_peer_once(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc")
        a, presence_a = await _peer(rendezvous, "Ada")
        b, _ = await _peer(rendezvous, "Bob")
        c, _ = await _peer(rendezvous, "Cy")
        b.connect("aaaa")
        await advance()
        c.connect("aaaa")
        await advance(50)

        sent = presence_a.send_chat("  hello all  ")
        await advance()

        assert sent.text == "hello all"
        assert [m.text for m in a.chat] == ["hello all"]
        assert [m.id for m in b.chat] == [sent.id]
        assert [m.sender_name for m in c.chat] == ["Ada"]

    async def test_blank_chat_ignored(self) -> None:
        roster = Roster()
        roster.add_local(display_name="Ada", avatar_ref="", is_originator=True)
        chat = ChatLog()
        presence = PresenceSync(roster, chat)

        assert presence.send_chat("   ") is None
        assert len(chat) == 0

    async def test_local_post_not_broadcast(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, presence_a = await _peer(rendezvous, "Ada")
        b, _ = await _peer(rendezvous, "Bob")
        b.connect("aaaa")
        await advance()

        presence_a.post_local("Summary", OriginKind.SYSTEM, "system", "System")
        await advance()

        assert [m.text for m in a.chat] == ["Summary"]
        assert len(b.chat) == 0
