"""Tests for the connection registry over the in-process transport."""

from __future__ import annotations

from meshmeet.errors import PeerUnreachable
from meshmeet.registry import ConnectionRegistry, PairState
from tests.conftest import Recorder, make_rendezvous, open_transport


async def _peer(rendezvous, name):
    transport = await open_transport(rendezvous, name)
    recorder = Recorder()
    registry = ConnectionRegistry(transport.peer_id, recorder)
    transport.on_incoming = lambda data, media, metadata: registry.upsert(data, media)
    return transport, registry, recorder


class TestUpsert:
    async def test_outbound_and_inbound_pair_open(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, reg_a, rec_a = await _peer(rendezvous, "A")
        b, reg_b, rec_b = await _peer(rendezvous, "B")

        pair = reg_a.upsert(*a.connect("bbbb"))
        assert pair.state is PairState.CONNECTING
        await advance()

        assert reg_a.get("bbbb").state is PairState.OPEN
        assert reg_b.get("aaaa").state is PairState.OPEN
        assert rec_a.opened == ["bbbb"]
        assert rec_b.opened == ["aaaa"]
        assert [peer for peer, _ in rec_a.streams] == ["bbbb"]

    async def test_same_connection_twice_is_idempotent(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, reg_a, _ = await _peer(rendezvous, "A")
        await _peer(rendezvous, "B")

        data, media = a.connect("bbbb")
        first = reg_a.upsert(data, media)
        second = reg_a.upsert(data, media)
        assert first is second
        assert len(reg_a) == 1

    async def test_simultaneous_connects_converge_to_one_pair(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, reg_a, rec_a = await _peer(rendezvous, "A")
        b, reg_b, rec_b = await _peer(rendezvous, "B")

        reg_a.upsert(*a.connect("bbbb"))
        reg_b.upsert(*b.connect("aaaa"))
        await advance()

        assert len(rendezvous.open_links()) == 1
        assert reg_a.get("bbbb").connection_id == reg_b.get("aaaa").connection_id
        assert reg_a.get("bbbb").initiator == "aaaa"
        assert reg_a.get("bbbb").state is PairState.OPEN
        assert reg_b.get("aaaa").state is PairState.OPEN
        assert rec_a.closed == []
        assert rec_b.closed == []

    async def test_simultaneous_connects_converge_in_either_order(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, reg_a, rec_a = await _peer(rendezvous, "A")
        b, reg_b, rec_b = await _peer(rendezvous, "B")

        reg_b.upsert(*b.connect("aaaa"))
        reg_a.upsert(*a.connect("bbbb"))
        await advance()

        assert len(rendezvous.open_links()) == 1
        assert reg_a.get("bbbb").connection_id == reg_b.get("aaaa").connection_id
        assert rec_a.closed == []
        assert rec_b.closed == []


class TestBroadcast:
    async def test_skips_pending_pairs_without_queueing(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc")
        a, reg_a, _ = await _peer(rendezvous, "A")
        _, _, rec_b = await _peer(rendezvous, "B")
        _, _, rec_c = await _peer(rendezvous, "C")

        reg_a.upsert(*a.connect("bbbb"))
        await advance()
        reg_a.upsert(*a.connect("cccc"))

        delivered = reg_a.broadcast({"type": "UPDATE_STATE", "payload": {"peerId": "aaaa", "isMuted": True}})
        await advance()

        assert delivered == 1
        assert "UPDATE_STATE" in rec_b.kinds("aaaa")
        assert reg_a.get("cccc").state is PairState.OPEN
        assert "UPDATE_STATE" not in rec_c.kinds("aaaa")

    async def test_messages_arrive_in_send_order(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, reg_a, _ = await _peer(rendezvous, "A")
        _, _, rec_b = await _peer(rendezvous, "B")
        reg_a.upsert(*a.connect("bbbb"))
        await advance()

        for index in range(5):
            reg_a.send("bbbb", {"type": "CHAT_MESSAGE", "payload": {"n": index}})
        await advance()

        assert [message["payload"]["n"] for _, message in rec_b.messages] == [0, 1, 2, 3, 4]

    async def test_send_to_unknown_peer(self) -> None:
        registry = ConnectionRegistry("aaaa", Recorder())
        assert registry.send("nobody", {"type": "X"}) is False
        assert registry.broadcast({"type": "X"}) == 0


class TestTeardown:
    async def test_remote_close_reports_once(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb")
        a, reg_a, rec_a = await _peer(rendezvous, "A")
        _, reg_b, rec_b = await _peer(rendezvous, "B")
        reg_a.upsert(*a.connect("bbbb"))
        await advance()

        reg_b.close("aaaa")
        reg_b.close("aaaa")
        await advance()

        assert rec_b.closed == [("aaaa", None)]
        assert rec_a.closed == [("bbbb", None)]
        assert "bbbb" not in reg_a
        assert rendezvous.open_links() == []

    async def test_unreachable_peer_tears_pair_down(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa")
        a, reg_a, rec_a = await _peer(rendezvous, "A")

        reg_a.upsert(*a.connect("gone"))
        await advance()

        assert "gone" not in reg_a
        [(peer_id, error)] = rec_a.closed
        assert peer_id == "gone"
        assert isinstance(error, PeerUnreachable)

    async def test_replace_track_reaches_live_pairs_and_drops_failures(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc")
        a, reg_a, _ = await _peer(rendezvous, "A")
        await _peer(rendezvous, "B")
        await _peer(rendezvous, "C")
        reg_a.upsert(*a.connect("bbbb"))
        reg_a.upsert(*a.connect("cccc"))
        await advance()

        dead = reg_a.get("cccc").media_channel
        dead._closed = True
        track = object()
        await reg_a.replace_outbound_track("video", track)

        assert reg_a.get("bbbb").media_channel.replace_calls == [("video", track)]
        assert dead.replace_calls == []

    async def test_close_all(self, advance) -> None:
        rendezvous = make_rendezvous("aaaa", "bbbb", "cccc")
        a, reg_a, rec_a = await _peer(rendezvous, "A")
        _, reg_b, _ = await _peer(rendezvous, "B")
        _, reg_c, _ = await _peer(rendezvous, "C")
        reg_a.upsert(*a.connect("bbbb"))
        reg_a.upsert(*a.connect("cccc"))
        await advance()

        reg_a.close_all()
        await advance()

        assert len(reg_a) == 0
        assert sorted(peer for peer, _ in rec_a.closed) == ["bbbb", "cccc"]
        assert len(reg_b) == 0
        assert len(reg_c) == 0
