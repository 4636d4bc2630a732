"""Room data model: players, submitted items, votes and round results."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Phase(str, Enum):
    WAITING = "waiting"
    SUBMISSION = "submission"
    VOTING = "voting"
    RESULTS = "results"
    FINISHED = "finished"


class Choice(str, Enum):
    SMASH = "smash"
    PASS = "pass"


class Outcome(str, Enum):
    SMASHED = "smashed"
    PASSED = "passed"


class Player(BaseModel):
    id: str
    name: str
    ready: bool = False
    has_submitted: bool = False
    is_creator: bool = False
    join_order: int = 0


class Item(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    media_ref: str
    label: str
    submitter_id: str


class Vote(BaseModel):
    model_config = ConfigDict(frozen=True)

    player_id: str
    round_index: int
    choice: Choice
    cast_at: float
    reaction_time_ms: int


class RoundResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_index: int
    outcome: Outcome
    smash_count: int
    pass_count: int

    @classmethod
    def from_tally(cls, item_index: int, smash_count: int, pass_count: int) -> "RoundResult":
        # Ties pass.
        outcome = Outcome.SMASHED if smash_count > pass_count else Outcome.PASSED
        return cls(item_index=item_index, outcome=outcome,
                   smash_count=smash_count, pass_count=pass_count)


def reaction_time_ms(cast_at: float, round_started_at: Optional[float]) -> int:
    """Milliseconds from round start to ``cast_at``, clamped at zero."""
    if round_started_at is None:
        return 0
    return max(0, int(round((cast_at - round_started_at) * 1000)))
