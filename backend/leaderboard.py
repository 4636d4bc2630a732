"""End-of-game reaction-time leaderboard."""

from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel

from ledger import VoteLedger
from models import Item, Outcome, RoundResult


class PlayerStanding(BaseModel):
    player_id: str
    name: str
    average_ms: float
    fastest_ms: int
    slowest_ms: int
    vote_count: int


class ItemStanding(BaseModel):
    item_index: int
    label: str
    submitter_id: str
    average_ms: float
    vote_count: int
    outcome: Optional[Outcome] = None


class Leaderboard(BaseModel):
    fastest_player: Optional[PlayerStanding] = None
    slowest_player: Optional[PlayerStanding] = None
    players_fastest_first: List[PlayerStanding] = []
    players_slowest_first: List[PlayerStanding] = []
    fastest_item: Optional[ItemStanding] = None
    slowest_item: Optional[ItemStanding] = None
    items_fastest_first: List[ItemStanding] = []
    items_slowest_first: List[ItemStanding] = []


def compute_leaderboard(ledger: VoteLedger, items: Sequence[Item],
                        results: Sequence[RoundResult]) -> Leaderboard:
    """Rank players and items by average reaction time.

    Anything without a recorded vote is left out. Both orderings are stable
    sorts over join / submission order, so ties keep that order.
    """
    timings = sorted(
        (t for t in ledger.player_timings.values() if t.vote_count),
        key=lambda t: t.join_order,
    )
    players = [
        PlayerStanding(
            player_id=t.player_id,
            name=t.name,
            average_ms=t.average_ms,
            fastest_ms=t.fastest_ms,
            slowest_ms=t.slowest_ms,
            vote_count=t.vote_count,
        )
        for t in timings
    ]

    outcomes: Dict[int, Outcome] = {r.item_index: r.outcome for r in results}
    item_entries = []
    for item in items:
        timing = ledger.item_timings.get(item.index)
        if timing is None or not timing.vote_count:
            continue
        item_entries.append(ItemStanding(
            item_index=item.index,
            label=item.label,
            submitter_id=item.submitter_id,
            average_ms=timing.average_ms,
            vote_count=timing.vote_count,
            outcome=outcomes.get(item.index),
        ))

    players_fastest = sorted(players, key=lambda s: s.average_ms)
    players_slowest = sorted(players, key=lambda s: s.average_ms, reverse=True)
    items_fastest = sorted(item_entries, key=lambda s: s.average_ms)
    items_slowest = sorted(item_entries, key=lambda s: s.average_ms, reverse=True)

    return Leaderboard(
        fastest_player=players_fastest[0] if players_fastest else None,
        slowest_player=players_slowest[0] if players_slowest else None,
        players_fastest_first=players_fastest,
        players_slowest_first=players_slowest,
        fastest_item=items_fastest[0] if items_fastest else None,
        slowest_item=items_slowest[0] if items_slowest else None,
        items_fastest_first=items_fastest,
        items_slowest_first=items_slowest,
    )
