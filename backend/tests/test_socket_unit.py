"""
Async unit tests for room dispatch and socket_manager.py.
Uses mock WebSockets to test serialized transitions, the settle continuation,
room retirement, rejection routing and the connection loop.
"""
import sys
import os
import asyncio
import json
from typing import get_args

import pytest
from fastapi import WebSocketDisconnect

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from errors import RoomNotFound, StaleRoundReference, UnknownPlayer
from messages import (
    CastVoteIntent, ConfirmVoteIntent, JoinIntent, ReadyIntent, RoomEvent,
    SubmitItemIntent,
)
from models import Choice, Phase, RoundResult
from room import Room
from room_directory import RoomDirectory
from socket_manager import SocketManager
import config


# ---------------------------------------------------------------------------
# Mock WebSocket
# ---------------------------------------------------------------------------

class MockWebSocket:
    """Lightweight mock for fastapi.WebSocket."""
    def __init__(self, incoming=None):
        self.sent_messages: list[dict] = []
        self.incoming: list[str] = list(incoming or [])
        self.accepted = False
        self.closed = False

    async def accept(self):
        self.accepted = True

    async def send_json(self, data: dict):
        self.sent_messages.append(data)

    async def receive_text(self) -> str:
        await asyncio.sleep(0)
        if not self.incoming:
            raise WebSocketDisconnect(code=1000)
        return self.incoming.pop(0)

    async def close(self, code: int = 1000):
        self.closed = True

    def last(self, msg_type: str) -> dict | None:
        for msg in reversed(self.sent_messages):
            if msg.get("type") == msg_type:
                return msg
        return None

    def all(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent_messages if m.get("type") == msg_type]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, room_id, event):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]


def join(name):
    return JoinIntent(type="JOIN", name=name)


def submit(label):
    return SubmitItemIntent(type="SUBMIT_ITEM", media_ref=f"/uploads/{label}.png", label=label)


def ready():
    return ReadyIntent(type="READY")


def smash(round_index=0, confirm=True):
    return CastVoteIntent(type="VOTE", round_index=round_index, choice=Choice.SMASH, confirm=confirm)


async def started_room(settle_delay=0.0, num_items=2, players=("p1", "p2")):
    room = Room("UNIT01", settle_delay=settle_delay, manual_advance=False)
    recorder = Recorder()
    room.subscribe(recorder)
    for i, pid in enumerate(players):
        await room.dispatch(pid, join(f"Player{i + 1}"))
    for i in range(num_items):
        await room.dispatch(players[i % len(players)], submit(f"Item{i}"))
    for pid in players:
        await room.dispatch(pid, ready())
    assert room.phase == Phase.VOTING
    return room, recorder


# ---------------------------------------------------------------------------
# Room dispatch
# ---------------------------------------------------------------------------

class TestRoomDispatch:
    @pytest.mark.asyncio
    async def test_events_published_in_order(self):
        room = Room("UNIT01", settle_delay=0)
        recorder = Recorder()
        room.subscribe(recorder)
        await room.dispatch("p1", join("Alice"))
        await room.dispatch("p1", submit("Cat"))
        assert recorder.types() == ["PLAYER_JOINED", "ROOM_SNAPSHOT", "ITEM_SUBMITTED"]

    @pytest.mark.asyncio
    async def test_rejection_publishes_nothing(self):
        room = Room("UNIT01", settle_delay=0)
        recorder = Recorder()
        room.subscribe(recorder)
        with pytest.raises(UnknownPlayer):
            await room.dispatch("ghost", ready())
        assert recorder.events == []
        assert room.phase == Phase.WAITING

    @pytest.mark.asyncio
    async def test_concurrent_votes_score_round_once(self):
        room, recorder = await started_room(settle_delay=10, players=("p1", "p2", "p3"))
        await asyncio.gather(*(room.dispatch(pid, smash()) for pid in ("p1", "p2", "p3")))
        assert recorder.types().count("ROUND_RESULT") == 1
        assert room.results[0].smash_count == 3
        room.retire()

    @pytest.mark.asyncio
    async def test_settle_delay_advances_to_next_round(self):
        room, recorder = await started_room(settle_delay=0.01)
        await room.dispatch("p1", smash())
        await room.dispatch("p2", smash())
        assert room.phase == Phase.RESULTS
        await asyncio.sleep(0.05)
        assert room.phase == Phase.VOTING
        assert room.current_round_index == 1
        assert recorder.types()[-1] == "ROUND_STARTED"
        assert room.advance_task is None

    @pytest.mark.asyncio
    async def test_full_game_finishes(self):
        room, recorder = await started_room(settle_delay=0)
        for round_index in range(2):
            await room.dispatch("p1", smash(round_index))
            await room.dispatch("p2", smash(round_index))
            await asyncio.sleep(0.01)
        assert room.phase == Phase.FINISHED
        assert recorder.types()[-1] == "GAME_FINISHED"
        assert room.leaderboard is not None
        assert all(isinstance(e, get_args(RoomEvent)) for e in recorder.events)

    @pytest.mark.asyncio
    async def test_vote_rejected_while_settling(self):
        room, _ = await started_room(settle_delay=10)
        await room.dispatch("p1", smash())
        await room.dispatch("p2", smash())
        with pytest.raises(StaleRoundReference):
            await room.dispatch("p1", smash())
        room.retire()

    @pytest.mark.asyncio
    async def test_leave_while_settling_keeps_result(self):
        room, recorder = await started_room(settle_delay=0.01, players=("p1", "p2", "p3"))
        for pid in ("p1", "p2", "p3"):
            await room.dispatch(pid, smash())
        await room.disconnect("p3")
        assert room.phase == Phase.RESULTS
        await asyncio.sleep(0.05)
        assert room.current_round_index == 1
        assert room.round_voters == {"p1", "p2"}

    @pytest.mark.asyncio
    async def test_empty_room_cancels_pending_advance(self):
        room, _ = await started_room(settle_delay=10)
        await room.dispatch("p1", smash())
        await room.dispatch("p2", smash())
        task = room.advance_task
        assert task is not None
        await room.disconnect("p1")
        await room.disconnect("p2")
        await asyncio.sleep(0.01)
        assert room.retired
        assert task.done()
        assert room.current_round_index == 0

    @pytest.mark.asyncio
    async def test_retired_room_rejects_intents(self):
        room, _ = await started_room()
        room.retire()
        with pytest.raises(RoomNotFound):
            await room.dispatch("p1", smash())

    @pytest.mark.asyncio
    async def test_disconnect_unknown_player_is_noop(self):
        room = Room("UNIT01", settle_delay=0)
        assert await room.disconnect("ghost") == []

    @pytest.mark.asyncio
    async def test_invariant_violation_retires_room(self):
        directory = RoomDirectory(room_factory=lambda rid, **kw: Room(rid, settle_delay=10))
        room = directory.get_or_create("UNIT01")
        recorder = Recorder()
        room.subscribe(recorder)
        for pid, name in (("p1", "Alice"), ("p2", "Bob")):
            await room.dispatch(pid, join(name))
        await room.dispatch("p1", submit("Cat"))
        await room.dispatch("p1", ready())
        await room.dispatch("p2", ready())
        room.results.append(RoundResult.from_tally(0, 0, 0))  # corrupt state

        events = await room.dispatch("p1", smash(confirm=False))
        assert events == []
        assert room.retired
        assert "UNIT01" not in directory
        assert recorder.types()[-1] == "ROOM_CLOSED"

    @pytest.mark.asyncio
    async def test_unexpected_error_retires_room(self):
        directory = RoomDirectory(room_factory=lambda rid, **kw: Room(rid, settle_delay=10))
        room = directory.get_or_create("UNIT01")
        recorder = Recorder()
        room.subscribe(recorder)
        for pid, name in (("p1", "Alice"), ("p2", "Bob")):
            await room.dispatch(pid, join(name))
        await room.dispatch("p1", submit("Cat"))
        await room.dispatch("p1", ready())
        await room.dispatch("p2", ready())

        def broken_commit(*args, **kwargs):
            raise KeyError("p1")

        room.ledger.commit = broken_commit
        events = await room.dispatch("p1", smash())
        assert events == []
        assert room.retired
        assert "UNIT01" not in directory
        closed = recorder.events[-1]
        assert closed.type == "ROOM_CLOSED"
        assert "KeyError" in closed.reason

    @pytest.mark.asyncio
    async def test_error_during_settle_retires_room(self):
        room, recorder = await started_room(settle_delay=0.01)

        def broken_advance():
            raise IndexError("round index out of range")

        room.advance = broken_advance
        await room.dispatch("p1", smash())
        await room.dispatch("p2", smash())
        await asyncio.sleep(0.05)
        assert room.retired
        assert room.advance_task is None
        assert recorder.types()[-1] == "ROOM_CLOSED"

    @pytest.mark.asyncio
    async def test_close_publishes_reason_once(self):
        room, recorder = await started_room(settle_delay=10)
        await room.close("expired")
        await room.close("expired")
        closed = [e for e in recorder.events if e.type == "ROOM_CLOSED"]
        assert [e.reason for e in closed] == ["expired"]
        assert room.retired
        with pytest.raises(RoomNotFound):
            await room.dispatch("p1", smash())

    @pytest.mark.asyncio
    async def test_confirm_vote_intent(self):
        room, recorder = await started_room(settle_delay=10)
        await room.dispatch("p1", smash(confirm=False))
        await room.dispatch("p1", ConfirmVoteIntent(type="CONFIRM_VOTE"))
        ack = [e for e in recorder.events if e.type == "VOTE_ACKNOWLEDGED"][0]
        assert ack.remaining_voter_count == 1
        room.retire()


# ---------------------------------------------------------------------------
# SocketManager
# ---------------------------------------------------------------------------

@pytest.fixture
def no_settle(monkeypatch):
    monkeypatch.setattr(config, "SETTLE_DELAY_SECONDS", 0.0)
    monkeypatch.setattr(config, "MANUAL_ADVANCE", False)


def attach(sm, room_code, client_id):
    ws = MockWebSocket()
    sm.connections.setdefault(room_code, {})[client_id] = ws
    return ws


class TestSocketManager:
    @pytest.mark.asyncio
    async def test_join_creates_room_and_broadcasts(self, no_settle):
        sm = SocketManager()
        ws1 = attach(sm, "ROOM1", "p1")
        ws2 = attach(sm, "ROOM1", "p2")
        await sm.handle_intent("ROOM1", "p1", join("Alice"))
        assert "ROOM1" in sm.directory
        assert ws1.last("PLAYER_JOINED")["player"]["name"] == "Alice"
        assert ws2.last("PLAYER_JOINED")["player"]["is_creator"] is True
        assert ws2.last("ROOM_SNAPSHOT")["phase"] == "waiting"

    @pytest.mark.asyncio
    async def test_rejection_goes_to_caller_only(self, no_settle):
        sm = SocketManager()
        ws1 = attach(sm, "ROOM1", "p1")
        ws2 = attach(sm, "ROOM1", "p2")
        await sm.handle_intent("ROOM1", "p1", join("Alice"))
        await sm.handle_intent("ROOM1", "p2", ready())
        assert ws2.last("ERROR")["code"] == "unknown_player"
        assert ws1.all("ERROR") == []

    @pytest.mark.asyncio
    async def test_intent_for_missing_room(self, no_settle):
        sm = SocketManager()
        ws = attach(sm, "NOPE", "p1")
        await sm.handle_intent("NOPE", "p1", ready())
        assert ws.last("ERROR")["code"] == "room_not_found"
        assert "NOPE" not in sm.directory

    @pytest.mark.asyncio
    async def test_broadcast_drops_dead_sockets(self, no_settle):
        sm = SocketManager()
        attach(sm, "ROOM1", "p1")

        class DeadSocket(MockWebSocket):
            async def send_json(self, data):
                raise RuntimeError("closed")

        sm.connections["ROOM1"]["p2"] = DeadSocket()
        await sm.broadcast("ROOM1", {"type": "PING"})
        assert "p2" not in sm.connections["ROOM1"]

    @pytest.mark.asyncio
    async def test_connection_loop(self, no_settle):
        sm = SocketManager()
        ws = MockWebSocket([
            json.dumps({"type": "JOIN", "name": "Alice"}),
            "not json",
            json.dumps({"type": "VOTE", "round_index": 0, "choice": "maybe"}),
            "x" * (config.MAX_WS_MESSAGE_SIZE + 1),
        ])
        await sm.connect(ws, "ROOM1", "p1")
        assert ws.accepted
        types = [m["type"] for m in ws.sent_messages]
        assert types[0] == "CONNECTED"
        assert "PLAYER_JOINED" in types
        errors = ws.all("ERROR")
        assert len(errors) == 3
        assert all(e["code"] == "invalid_message" for e in errors)
        # The only player disconnected, so the room is gone.
        assert "ROOM1" not in sm.directory
        assert "ROOM1" not in sm.connections

    @pytest.mark.asyncio
    async def test_duplicate_connection_refused(self, no_settle):
        sm = SocketManager()
        attach(sm, "ROOM1", "p1")
        ws = MockWebSocket()
        await sm.connect(ws, "ROOM1", "p1")
        assert ws.last("ERROR")["code"] == "duplicate_player"
        assert ws.closed

    @pytest.mark.asyncio
    async def test_disconnect_broadcasts_player_left(self, no_settle):
        sm = SocketManager()
        ws1 = attach(sm, "ROOM1", "p1")
        await sm.handle_intent("ROOM1", "p1", join("Alice"))
        ws2 = MockWebSocket([json.dumps({"type": "JOIN", "name": "Bob"})])
        await sm.connect(ws2, "ROOM1", "p2")
        left = ws1.last("PLAYER_LEFT")
        assert left["player_id"] == "p2"
        assert left["player_count"] == 1
        assert "ROOM1" in sm.directory

    @pytest.mark.asyncio
    async def test_reap_expired_rooms(self, no_settle):
        sm = SocketManager()
        ws = attach(sm, "ROOM1", "p1")
        room = sm.directory.get_or_create("ROOM1")
        room.last_activity -= config.ROOM_TTL_SECONDS + 10
        assert await sm.reap_expired_rooms() == 1
        assert room.retired
        assert "ROOM1" not in sm.directory
        assert ws.last("ROOM_CLOSED") == {"type": "ROOM_CLOSED", "room_id": "ROOM1", "reason": "expired"}

    @pytest.mark.asyncio
    async def test_game_round_trip(self, no_settle):
        sm = SocketManager()
        ws1 = attach(sm, "ROOM1", "p1")
        ws2 = attach(sm, "ROOM1", "p2")
        await sm.handle_intent("ROOM1", "p1", join("Alice"))
        await sm.handle_intent("ROOM1", "p2", join("Bob"))
        await sm.handle_intent("ROOM1", "p1", submit("Cat"))
        await sm.handle_intent("ROOM1", "p1", ready())
        await sm.handle_intent("ROOM1", "p2", ready())
        started = ws2.last("ROUND_STARTED")
        assert started["item"]["label"] == "Cat"
        assert started["total_rounds"] == 1

        await sm.handle_intent("ROOM1", "p1", smash())
        await sm.handle_intent("ROOM1", "p2", smash())
        assert ws1.last("ROUND_RESULT")["outcome"] == "smashed"
        await asyncio.sleep(0.01)
        finished = ws1.last("GAME_FINISHED")
        assert finished is not None
        assert finished["results"][0]["smash_count"] == 2
        assert finished["leaderboard"]["fastest_player"] is not None
