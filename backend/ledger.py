"""Per-round vote ledger with running reaction-time aggregates."""

from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

from errors import NoVoteSelected, VoteAlreadyCommitted
from models import Choice, Item, Player, Vote, reaction_time_ms


@dataclass
class PlayerTiming:
    player_id: str
    name: str
    join_order: int
    total_reaction_ms: int = 0
    vote_count: int = 0
    fastest_ms: Optional[int] = None
    slowest_ms: Optional[int] = None

    @property
    def average_ms(self) -> float:
        return self.total_reaction_ms / self.vote_count if self.vote_count else 0.0

    def record(self, rt: int):
        self.total_reaction_ms += rt
        self.vote_count += 1
        self.fastest_ms = rt if self.fastest_ms is None else min(self.fastest_ms, rt)
        self.slowest_ms = rt if self.slowest_ms is None else max(self.slowest_ms, rt)


@dataclass
class ItemTiming:
    item_index: int
    label: str
    submitter_id: str
    total_reaction_ms: int = 0
    vote_count: int = 0

    @property
    def average_ms(self) -> float:
        return self.total_reaction_ms / self.vote_count if self.vote_count else 0.0

    def record(self, rt: int):
        self.total_reaction_ms += rt
        self.vote_count += 1


@dataclass
class RoundBallot:
    # Tentative picks can be overwritten until committed.
    selections: Dict[str, Choice] = field(default_factory=dict)
    committed: Dict[str, Vote] = field(default_factory=dict)


class VoteLedger:
    def __init__(self):
        self._rounds: Dict[int, RoundBallot] = {}
        self.player_timings: Dict[str, PlayerTiming] = {}
        self.item_timings: Dict[int, ItemTiming] = {}

    def _ballot(self, round_index: int) -> RoundBallot:
        return self._rounds.setdefault(round_index, RoundBallot())

    def select(self, round_index: int, player_id: str, choice: Choice):
        ballot = self._ballot(round_index)
        if player_id in ballot.committed:
            raise VoteAlreadyCommitted()
        ballot.selections[player_id] = choice

    def selection(self, round_index: int, player_id: str) -> Optional[Choice]:
        ballot = self._rounds.get(round_index)
        return ballot.selections.get(player_id) if ballot else None

    def commit(self, round_index: int, player: Player, item: Item,
               cast_at: float, round_started_at: Optional[float]) -> Vote:
        """Turn the player's tentative selection into their vote for the round."""
        ballot = self._ballot(round_index)
        if player.id in ballot.committed:
            raise VoteAlreadyCommitted()
        choice = ballot.selections.pop(player.id, None)
        if choice is None:
            raise NoVoteSelected()

        vote = Vote(
            player_id=player.id,
            round_index=round_index,
            choice=choice,
            cast_at=cast_at,
            reaction_time_ms=reaction_time_ms(cast_at, round_started_at),
        )
        ballot.committed[player.id] = vote

        player_timing = self.player_timings.get(player.id)
        if player_timing is None:
            player_timing = PlayerTiming(player.id, player.name, player.join_order)
            self.player_timings[player.id] = player_timing
        player_timing.record(vote.reaction_time_ms)

        item_timing = self.item_timings.get(item.index)
        if item_timing is None:
            item_timing = ItemTiming(item.index, item.label, item.submitter_id)
            self.item_timings[item.index] = item_timing
        item_timing.record(vote.reaction_time_ms)
        return vote

    def withdraw(self, round_index: int, player_id: str) -> Optional[Vote]:
        """Drop a departed player's pick and vote from the round tally.

        Timing already recorded for a committed vote is kept.
        """
        ballot = self._rounds.get(round_index)
        if ballot is None:
            return None
        ballot.selections.pop(player_id, None)
        return ballot.committed.pop(player_id, None)

    def committed_voters(self, round_index: int) -> Set[str]:
        ballot = self._rounds.get(round_index)
        return set(ballot.committed) if ballot else set()

    def votes(self, round_index: int) -> Dict[str, Vote]:
        ballot = self._rounds.get(round_index)
        return dict(ballot.committed) if ballot else {}

    def tally(self, round_index: int) -> Tuple[int, int]:
        smash = pass_ = 0
        for vote in self.votes(round_index).values():
            if vote.choice == Choice.SMASH:
                smash += 1
            else:
                pass_ += 1
        return smash, pass_

    def clear(self):
        self._rounds.clear()
        self.player_timings.clear()
        self.item_timings.clear()
