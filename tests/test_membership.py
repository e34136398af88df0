"""Tests for mesh formation through USER_INFO / PEER_LIST introductions."""

from __future__ import annotations

import asyncio
import itertools

from meshmeet import protocol
from meshmeet.chat import ChatLog
from meshmeet.membership import MeshMembership
from meshmeet.registry import PairState
from meshmeet.roster import Roster
from tests.conftest import make_rendezvous, open_transport


async def _member(rendezvous, name, **kwargs) -> MeshMembership:
    transport = await open_transport(rendezvous, name)
    roster = Roster()
    roster.add_local(display_name=name, avatar_ref=f"{name}.png", is_originator=False)
    roster.rekey_local(transport.peer_id)
    membership = MeshMembership(transport.peer_id, transport, roster, ChatLog(), **kwargs)
    transport.on_incoming = membership.accept
    return membership


def _sent(membership: MeshMembership, peer_id: str) -> list[dict]:
    return membership.registry.get(peer_id).data_channel.sent


def _assert_full_mesh(members: list[MeshMembership]) -> None:
    ids = {member.local_peer_id for member in members}
    for member in members:
        assert set(member.registry.open_peers()) == ids - {member.local_peer_id}
        assert set(member.roster.remote_ids()) == ids - {member.local_peer_id}


class TestIntroductions:
    async def test_user_info_exchanged_on_open(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")

        b.connect("aaaa")
        await advance()

        assert a.roster.get("bbbb").display_name == "Bob"
        assert a.roster.get("bbbb").avatar_ref == "Bob.png"
        assert b.roster.get("aaaa").display_name == "Ada"
        assert a.roster.get("bbbb").media_stream is not None

    async def test_no_peer_list_when_nothing_to_introduce(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")

        b.connect("aaaa")
        await advance()

        assert [m["type"] for m in _sent(a, "bbbb")] == [protocol.USER_INFO]
        assert [m["type"] for m in _sent(b, "aaaa")] == [protocol.USER_INFO]

    async def test_peer_list_excludes_recipient_and_sender(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        c = await _member(rendezvous, "Cy")

        b.connect("aaaa")
        await advance()
        c.connect("aaaa")
        await advance(50)

        lists = [m["payload"] for m in _sent(a, "cccc") if m["type"] == protocol.PEER_LIST]
        assert lists == [[{"id": "bbbb"}]]

    async def test_three_peers_form_full_mesh(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        c = await _member(rendezvous, "Cy")

        b.connect("aaaa")
        await advance()
        c.connect("aaaa")
        await advance(50)

        _assert_full_mesh([a, b, c])
        assert len(rendezvous.open_links()) == 3

    async def test_late_joiner_through_any_member(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc", "dddd")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        c = await _member(rendezvous, "Cy")
        d = await _member(rendezvous, "Dee")

        b.connect("aaaa")
        await advance()
        c.connect("aaaa")
        await advance(50)
        d.connect("bbbb")
        await advance(80)

        _assert_full_mesh([a, b, c, d])
        assert len(rendezvous.open_links()) == 6

    async def test_concurrent_joiners_converge(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc", "dddd")
        members = [await _member(rendezvous, name) for name in ("Ada", "Bob", "Cy", "Dee")]
        a, b, c, d = members

        b.connect("aaaa")
        c.connect("aaaa")
        d.connect("aaaa")
        await advance(120)

        _assert_full_mesh(members)
        for first, second in itertools.combinations(members, 2):
            assert (
                first.registry.get(second.local_peer_id).connection_id
                == second.registry.get(first.local_peer_id).connection_id
            )
        assert len(rendezvous.open_links()) == 6

    async def test_connect_to_self_or_known_peer_is_noop(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        await _member(rendezvous, "Bob")

        assert a.connect("aaaa") is None
        first = a.connect("bbbb")
        assert a.connect("bbbb") is first
        assert len(rendezvous.links) == 1


class TestMessages:
    async def test_update_state_patches_sender(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        b.connect("aaaa")
        await advance()

        b.registry.broadcast(protocol.update_state("bbbb", muted=True, camera_off=False, blurred=True))
        await advance()

        bob = a.roster.get("bbbb")
        assert (bob.muted, bob.camera_off, bob.blurred) == (True, False, True)

    async def test_update_state_before_user_info_kept(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa")
        a = await _member(rendezvous, "Ada")

        a.on_message("bbbb", protocol.update_state("bbbb", muted=False, camera_off=True, blurred=True))
        a.on_message("bbbb", protocol.user_info("bbbb", "Bob", "Bob.png", False, True))

        bob = a.roster.get("bbbb")
        assert bob.display_name == "Bob"
        assert (bob.muted, bob.camera_off, bob.blurred) == (False, True, True)

    async def test_update_state_for_another_peer_ignored(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        b.connect("aaaa")
        await advance()

        b.registry.broadcast(protocol.update_state("aaaa", muted=True, camera_off=True, blurred=True))
        await advance()

        assert not a.roster.local.muted

    async def test_malformed_message_dropped(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        b.connect("aaaa")
        await advance()

        b.registry.broadcast({"type": "SHOUT", "payload": {}})
        b.registry.broadcast({"type": "REACTION", "payload": {"peerId": "bbbb", "emoji": "🎉"}})
        await advance()

        assert [r.emoji for r in a.roster.get("bbbb").reactions] == ["🎉"]
        assert "bbbb" in a.registry

    async def test_chat_appended(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        b.connect("aaaa")
        await advance()

        b.registry.broadcast({
            "type": "CHAT_MESSAGE",
            "payload": {"id": "m1", "senderId": "bbbb", "senderName": "Bob", "text": "hi", "timestamp": 1},
        })
        await advance()

        assert [m.text for m in a.chat] == ["hi"]


class TestDeparture:
    async def test_closed_pair_removes_participant(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada")
        b = await _member(rendezvous, "Bob")
        b.connect("aaaa")
        await advance()

        b.close()
        await advance()

        assert "bbbb" not in a.roster
        assert a.roster.local is not None

    async def test_unreachable_peer_reported(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa")
        unreachable = []
        a = await _member(rendezvous, "Ada", on_unreachable=unreachable.append)

        a.connect("nope")
        await advance()

        assert unreachable == ["nope"]
        assert "nope" not in a.roster


class TestConnectTimeout:
    async def test_unanswered_connect_torn_down_then_retried(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        unreachable = []
        a = await _member(rendezvous, "Ada", connect_timeout=0.05, on_unreachable=unreachable.append)
        b = await _member(rendezvous, "Bob")
        rendezvous.unresponsive.add("bbbb")

        pair = a.connect("bbbb")
        await advance()
        assert pair.state is PairState.CONNECTING
        assert a.connect("bbbb") is pair

        await asyncio.sleep(0.1)

        assert "bbbb" not in a.registry
        assert pair.state is PairState.CLOSED
        assert unreachable == ["bbbb"]
        assert rendezvous.open_links() == []

        rendezvous.unresponsive.clear()
        a.connect("bbbb")
        await advance()

        assert a.registry.open_peers() == ["bbbb"]
        assert b.registry.open_peers() == ["aaaa"]

    async def test_open_pair_outlives_timeout(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a = await _member(rendezvous, "Ada", connect_timeout=0.05)
        b = await _member(rendezvous, "Bob", connect_timeout=0.05)

        b.connect("aaaa")
        await advance()
        await asyncio.sleep(0.1)

        assert a.registry.open_peers() == ["bbbb"]
        assert b.registry.open_peers() == ["aaaa"]
