"""Room state machine for one Smash or Pass session.

The synchronous methods (``join``, ``leave``, ``submit_item``, ``set_ready``,
``cast_vote``, ``confirm_vote``, ``advance_round``, ``reset``) validate an
intent, mutate the room and return the events it produced, raising a
``RoomError`` before touching anything when the intent is refused.

``dispatch`` and ``disconnect`` wrap them for the transport: they serialize
transitions on the room's ``asyncio.Lock``, publish the events to subscribers
and arm the settle continuation that moves a scored round on to the next one.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Set

import config
from errors import (
    EmptySubmissionSet, InvalidPhaseTransition, InvariantViolation,
    NotRoomCreator, RoomError, RoomNotFound, StaleRoundReference, UnknownPlayer,
)
from leaderboard import Leaderboard, compute_leaderboard
from ledger import VoteLedger
from messages import (
    AdvanceRoundIntent, CastVoteIntent, ConfirmVoteIntent, GameFinished,
    ItemSubmitted, JoinIntent, PlayerJoined, PlayerLeft, ReadyIntent,
    ReadyStatusChanged, ResetRoomIntent, RoomClosed, RoomEvent, RoomReset,
    RoomSnapshot, RoundResultAnnounced, RoundStarted, SubmitItemIntent, VoteAcknowledged,
)
from models import Choice, Phase, Player, RoundResult
from roster import PlayerRegistry, SubmissionSet

logger = logging.getLogger(__name__)

Listener = Callable[[str, RoomEvent], Awaitable[None]]

LOBBY_PHASES = (Phase.WAITING, Phase.SUBMISSION)


class Room:
    def __init__(self, room_id: str, settle_delay: Optional[float] = None,
                 manual_advance: Optional[bool] = None,
                 min_ready_players: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.room_id = room_id
        self.settle_delay = config.SETTLE_DELAY_SECONDS if settle_delay is None else settle_delay
        self.manual_advance = config.MANUAL_ADVANCE if manual_advance is None else manual_advance
        self.min_ready_players = config.MIN_READY_PLAYERS if min_ready_players is None else min_ready_players
        self.clock = clock

        self.phase = Phase.WAITING
        self.players = PlayerRegistry()
        self.items = SubmissionSet()
        self.ledger = VoteLedger()
        self.current_round_index = 0
        self.round_started_at: Optional[float] = None
        self.participants: Set[str] = set()  # players in the game since it started
        self.round_voters: Set[str] = set()
        self.results: List[RoundResult] = []
        self.leaderboard: Optional[Leaderboard] = None

        self.lock = asyncio.Lock()
        self.advance_task: Optional[asyncio.Task] = None
        self.advance_pending = False
        self.retired = False
        self.last_activity = time.time()
        self._listeners: List[Listener] = []
        self._retire_callbacks: List[Callable[["Room"], None]] = []

    # --- Housekeeping ---

    def touch(self):
        self.last_activity = time.time()

    def is_expired(self, ttl_seconds: float) -> bool:
        return time.time() - self.last_activity > ttl_seconds

    def subscribe(self, listener: Listener):
        self._listeners.append(listener)

    def on_retire(self, callback: Callable[["Room"], None]):
        self._retire_callbacks.append(callback)

    def retire(self):
        if self.retired:
            return
        self.retired = True
        self.advance_pending = False
        self._cancel_advance()
        logger.info("Room %s retired", self.room_id)
        for callback in self._retire_callbacks:
            callback(self)

    @property
    def current_item(self):
        if self.phase in (Phase.VOTING, Phase.RESULTS):
            return self.items.get(self.current_round_index)
        return None

    def snapshot(self) -> RoomSnapshot:
        creator = self.players.creator
        return RoomSnapshot(
            room_id=self.room_id,
            phase=self.phase,
            players=list(self.players),
            creator_id=creator.id if creator else None,
            round_index=self.current_round_index,
            total_rounds=len(self.items),
            current_item=self.current_item,
            results=list(self.results),
            manual_advance=self.manual_advance,
        )

    # --- Lobby ---

    def join(self, player_id: str, name: str) -> list:
        if self.phase == Phase.FINISHED:
            raise InvalidPhaseTransition("Game already finished; wait for the room to be reset")
        player = self.players.add(player_id, name)
        logger.info("Player '%s' joined room %s", name, self.room_id)
        return [
            PlayerJoined(player=player, player_count=len(self.players)),
            self.snapshot(),
        ]

    def leave(self, player_id: str) -> list:
        player = self.players.remove(player_id)
        logger.info("Player '%s' left room %s", player.name, self.room_id)
        creator = self.players.creator
        events: list = [PlayerLeft(
            player_id=player.id,
            name=player.name,
            player_count=len(self.players),
            creator_id=creator.id if creator else None,
        )]

        if not self.players:
            self.retire()
            return events

        self.participants.discard(player_id)
        if self.phase == Phase.VOTING:
            self.round_voters.discard(player_id)
            self.ledger.withdraw(self.current_round_index, player_id)
            if not self.round_voters:
                # Only spectators are left; they take over the game.
                self.participants = self.players.ids()
                self.round_voters = self.players.ids()
            events.extend(self._maybe_complete_round())
        elif self.phase == Phase.RESULTS and not self.participants:
            self.participants = self.players.ids()
        elif self.phase in LOBBY_PHASES:
            events.extend(self._maybe_start())
        return events

    def submit_item(self, player_id: str, media_ref: str, label: str) -> list:
        self._require_phase(LOBBY_PHASES, "Submissions are closed")
        player = self.players.get(player_id)
        item = self.items.append(media_ref, label, player_id)
        player.has_submitted = True
        self.phase = Phase.SUBMISSION
        logger.info("Player '%s' submitted '%s' in room %s", player.name, label, self.room_id)
        return [ItemSubmitted(item=item, submitter_name=player.name, total_items=len(self.items))]

    def set_ready(self, player_id: str, ready: bool = True) -> list:
        self._require_phase(LOBBY_PHASES, "Game already started")
        player = self.players.get(player_id)
        if ready and not self.items and self._all_ready_with(player_id):
            raise EmptySubmissionSet()

        player.ready = ready
        events: list = [ReadyStatusChanged(
            player_id=player_id,
            ready=ready,
            ready_count=self.players.ready_count(),
            player_count=len(self.players),
        )]
        events.extend(self._maybe_start())
        return events

    def _all_ready_with(self, player_id: str) -> bool:
        if len(self.players) < self.min_ready_players:
            return False
        return all(p.ready or p.id == player_id for p in self.players)

    def _maybe_start(self) -> list:
        if not self.items or not self.players.all_ready(self.min_ready_players):
            return []
        self.participants = self.players.ids()
        self.current_round_index = 0
        logger.info("Room %s starting with %d players and %d items",
                    self.room_id, len(self.participants), len(self.items))
        return self._start_round()

    # --- Rounds ---

    def _start_round(self) -> list:
        self.phase = Phase.VOTING
        self.round_started_at = self.clock()
        self.round_voters = self.participants & self.players.ids()
        return [RoundStarted(
            item=self.items[self.current_round_index],
            round_index=self.current_round_index,
            total_rounds=len(self.items),
        )]

    def _require_voter(self, player_id: str) -> Player:
        if self.phase == Phase.RESULTS:
            raise StaleRoundReference(f"Round {self.current_round_index} is already closed")
        self._require_phase((Phase.VOTING,), "No round is open")
        player = self.players.get(player_id)
        if player_id not in self.round_voters:
            raise InvalidPhaseTransition("You joined mid-game; you can vote after the room is reset")
        return player

    def cast_vote(self, player_id: str, round_index: int, choice: Choice,
                  confirm: bool = False) -> list:
        self._require_voter(player_id)
        if round_index != self.current_round_index:
            raise StaleRoundReference(
                f"Round {round_index} is not open (current round is {self.current_round_index})")
        self.ledger.select(round_index, player_id, choice)
        if confirm:
            return self.confirm_vote(player_id)
        return []

    def confirm_vote(self, player_id: str) -> list:
        player = self._require_voter(player_id)
        index = self.current_round_index
        self.ledger.commit(index, player, self.items[index],
                           cast_at=self.clock(), round_started_at=self.round_started_at)
        remaining = self.round_voters - self.ledger.committed_voters(index)
        events: list = [VoteAcknowledged(
            player_id=player_id,
            round_index=index,
            remaining_voter_count=len(remaining),
        )]
        events.extend(self._maybe_complete_round())
        return events

    def _maybe_complete_round(self) -> list:
        if self.phase != Phase.VOTING:
            return []
        if self.ledger.committed_voters(self.current_round_index) != self.round_voters:
            return []
        return self.complete_round()

    def complete_round(self) -> list:
        self._require_phase((Phase.VOTING,), "No round is open")
        index = self.current_round_index
        item = self.items[index]
        smash, pass_ = self.ledger.tally(index)
        result = RoundResult.from_tally(index, smash, pass_)
        self.results.append(result)
        self.phase = Phase.RESULTS
        self.advance_pending = not self.manual_advance
        logger.info("Room %s round %d: '%s' %s (%d smash / %d pass)",
                    self.room_id, index, item.label, result.outcome.value, smash, pass_)
        return [RoundResultAnnounced(
            item=item,
            round_index=index,
            outcome=result.outcome,
            smash_count=smash,
            pass_count=pass_,
            is_final=index >= len(self.items) - 1,
        )]

    def advance(self) -> list:
        self._require_phase((Phase.RESULTS,), "Round has not been scored")
        self.advance_pending = False
        self.current_round_index += 1
        if self.current_round_index < len(self.items):
            return self._start_round()

        self.phase = Phase.FINISHED
        self.round_voters = set()
        self.leaderboard = compute_leaderboard(self.ledger, list(self.items), self.results)
        logger.info("Room %s finished after %d rounds", self.room_id, len(self.results))
        return [GameFinished(results=list(self.results), leaderboard=self.leaderboard)]

    def advance_round(self, player_id: str) -> list:
        if not self.manual_advance:
            raise InvalidPhaseTransition("Rounds advance automatically in this room")
        self._require_creator(player_id)
        if self.phase == Phase.VOTING:
            return self.complete_round()
        if self.phase == Phase.RESULTS:
            return self.advance()
        raise InvalidPhaseTransition("No round to advance")

    def reset(self, player_id: str) -> list:
        self._require_creator(player_id)
        self._require_phase((Phase.FINISHED,), "Only a finished game can be reset")
        self.phase = Phase.SUBMISSION if self.items else Phase.WAITING
        self.current_round_index = 0
        self.round_started_at = None
        self.participants = set()
        self.round_voters = set()
        self.results = []
        self.leaderboard = None
        self.ledger.clear()
        self.players.reset_ready()
        logger.info("Room %s reset for a new game", self.room_id)
        return [
            RoomReset(room_id=self.room_id, player_count=len(self.players),
                      total_items=len(self.items)),
            self.snapshot(),
        ]

    # --- Guards ---

    def _require_phase(self, phases, message: str):
        if self.phase not in phases:
            raise InvalidPhaseTransition(message)

    def _require_creator(self, player_id: str):
        if not self.players.get(player_id).is_creator:
            raise NotRoomCreator()

    def check_invariants(self):
        index, total, scored = self.current_round_index, len(self.items), len(self.results)
        if self.phase == Phase.VOTING:
            ok = 0 <= index < total and scored == index
        elif self.phase == Phase.RESULTS:
            ok = 0 <= index < total and scored == index + 1
        elif self.phase == Phase.FINISHED:
            ok = index == total == scored
        else:
            ok = scored == 0
        if not ok:
            raise InvariantViolation(
                f"room {self.room_id}: phase={self.phase.value} round={index} "
                f"items={total} results={scored}")

    # --- Async surface ---

    def _apply(self, player_id: str, intent) -> list:
        if isinstance(intent, JoinIntent):
            return self.join(player_id, intent.name)
        if isinstance(intent, SubmitItemIntent):
            return self.submit_item(player_id, intent.media_ref, intent.label)
        if isinstance(intent, ReadyIntent):
            return self.set_ready(player_id, intent.ready)
        if isinstance(intent, CastVoteIntent):
            return self.cast_vote(player_id, intent.round_index, intent.choice, intent.confirm)
        if isinstance(intent, ConfirmVoteIntent):
            return self.confirm_vote(player_id)
        if isinstance(intent, AdvanceRoundIntent):
            return self.advance_round(player_id)
        if isinstance(intent, ResetRoomIntent):
            return self.reset(player_id)
        raise InvalidPhaseTransition(f"Unsupported intent {type(intent).__name__}")

    async def dispatch(self, player_id: str, intent) -> list:
        """Apply one client intent under the room lock and publish its events."""
        async with self.lock:
            if self.retired:
                raise RoomNotFound(f"Room {self.room_id} is closed")
            return await self._transition(lambda: self._apply(player_id, intent))

    async def disconnect(self, player_id: str) -> list:
        async with self.lock:
            if self.retired or player_id not in self.players:
                return []
            return await self._transition(lambda: self.leave(player_id))

    async def close(self, reason: str):
        """Retire the room and tell its subscribers why."""
        async with self.lock:
            if self.retired:
                return
            await self._shut_down(reason)

    async def _shut_down(self, reason: str):
        # Caller holds self.lock.
        self.retire()
        await self._publish([RoomClosed(room_id=self.room_id, reason=reason)])

    async def _transition(self, step: Callable[[], list]) -> list:
        # Caller holds self.lock.
        try:
            events = step()
            self.check_invariants()
        except RoomError:
            raise
        except InvariantViolation as exc:
            logger.exception("Invariant violated; retiring room %s", self.room_id)
            await self._shut_down(str(exc))
            return []
        except Exception as exc:
            logger.exception("Unexpected error in room %s; retiring it", self.room_id)
            await self._shut_down(f"internal error: {type(exc).__name__}")
            return []
        self.touch()
        self._arm_advance()
        await self._publish(events)
        return events

    async def _publish(self, events: List[RoomEvent]):
        for event in events:
            for listener in self._listeners:
                await listener(self.room_id, event)

    def _arm_advance(self):
        if not self.advance_pending or self.retired or self.advance_task is not None:
            return
        self.advance_task = asyncio.create_task(
            self._advance_after_settle(self.current_round_index))

    def _cancel_advance(self):
        if self.advance_task is not None:
            self.advance_task.cancel()
            self.advance_task = None

    async def _advance_after_settle(self, round_index: int):
        try:
            await asyncio.sleep(self.settle_delay)
            async with self.lock:
                if self.advance_task is asyncio.current_task():
                    self.advance_task = None
                if self.retired or self.phase != Phase.RESULTS or self.current_round_index != round_index:
                    return
                await self._transition(self.advance)
        except asyncio.CancelledError:
            pass
