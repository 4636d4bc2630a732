"""WebSocket message schemas.

Inbound intents and outbound room events are closed sets of pydantic models
tagged by their ``type`` field.
"""

import re
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

import config
from leaderboard import Leaderboard
from models import Choice, Item, Outcome, Phase, Player, RoundResult


def _clean_text(value: str) -> str:
    value = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]', '', value)
    value = re.sub(r'<[^>]+>', '', value)
    return value.strip()


# --- Inbound intents ---

class JoinIntent(BaseModel):
    type: Literal["JOIN"]
    name: str

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = _clean_text(v)
        if not v or len(v) > config.MAX_NAME_LENGTH:
            raise ValueError(f'Name must be 1-{config.MAX_NAME_LENGTH} characters')
        return v


class SubmitItemIntent(BaseModel):
    type: Literal["SUBMIT_ITEM"]
    media_ref: str
    label: str

    @field_validator('media_ref')
    @classmethod
    def validate_media_ref(cls, v: str) -> str:
        v = v.strip()
        if not v or len(v) > config.MAX_MEDIA_REF_LENGTH:
            raise ValueError('Image reference missing or too long')
        return v

    @field_validator('label')
    @classmethod
    def validate_label(cls, v: str) -> str:
        v = _clean_text(v)
        if not v or len(v) > config.MAX_LABEL_LENGTH:
            raise ValueError(f'Label must be 1-{config.MAX_LABEL_LENGTH} characters')
        return v


class ReadyIntent(BaseModel):
    type: Literal["READY"]
    ready: bool = True


class CastVoteIntent(BaseModel):
    type: Literal["VOTE"]
    round_index: int
    choice: Choice
    confirm: bool = False


class ConfirmVoteIntent(BaseModel):
    type: Literal["CONFIRM_VOTE"]


class AdvanceRoundIntent(BaseModel):
    type: Literal["ADVANCE_ROUND"]


class ResetRoomIntent(BaseModel):
    type: Literal["RESET_ROOM"]


Intent = Annotated[
    Union[JoinIntent, SubmitItemIntent, ReadyIntent, CastVoteIntent,
          ConfirmVoteIntent, AdvanceRoundIntent, ResetRoomIntent],
    Field(discriminator="type"),
]

intent_adapter = TypeAdapter(Intent)


def parse_intent(data: dict):
    """Validate a decoded client frame; raises pydantic.ValidationError."""
    return intent_adapter.validate_python(data)


# --- Outbound events ---

class RoomSnapshot(BaseModel):
    type: Literal["ROOM_SNAPSHOT"] = "ROOM_SNAPSHOT"
    room_id: str
    phase: Phase
    players: List[Player]
    creator_id: Optional[str] = None
    round_index: int
    total_rounds: int
    current_item: Optional[Item] = None
    results: List[RoundResult] = []
    manual_advance: bool = False


class PlayerJoined(BaseModel):
    type: Literal["PLAYER_JOINED"] = "PLAYER_JOINED"
    player: Player
    player_count: int


class PlayerLeft(BaseModel):
    type: Literal["PLAYER_LEFT"] = "PLAYER_LEFT"
    player_id: str
    name: str
    player_count: int
    creator_id: Optional[str] = None


class ItemSubmitted(BaseModel):
    type: Literal["ITEM_SUBMITTED"] = "ITEM_SUBMITTED"
    item: Item
    submitter_name: str
    total_items: int


class ReadyStatusChanged(BaseModel):
    type: Literal["READY_STATUS_CHANGED"] = "READY_STATUS_CHANGED"
    player_id: str
    ready: bool
    ready_count: int
    player_count: int


class RoundStarted(BaseModel):
    type: Literal["ROUND_STARTED"] = "ROUND_STARTED"
    item: Item
    round_index: int
    total_rounds: int


class VoteAcknowledged(BaseModel):
    type: Literal["VOTE_ACKNOWLEDGED"] = "VOTE_ACKNOWLEDGED"
    player_id: str
    round_index: int
    remaining_voter_count: int


class RoundResultAnnounced(BaseModel):
    type: Literal["ROUND_RESULT"] = "ROUND_RESULT"
    item: Item
    round_index: int
    outcome: Outcome
    smash_count: int
    pass_count: int
    is_final: bool


class GameFinished(BaseModel):
    type: Literal["GAME_FINISHED"] = "GAME_FINISHED"
    results: List[RoundResult]
    leaderboard: Leaderboard


class RoomReset(BaseModel):
    type: Literal["ROOM_RESET"] = "ROOM_RESET"
    room_id: str
    player_count: int
    total_items: int


class RoomClosed(BaseModel):
    type: Literal["ROOM_CLOSED"] = "ROOM_CLOSED"
    room_id: str
    reason: str


RoomEvent = Union[
    RoomSnapshot, PlayerJoined, PlayerLeft, ItemSubmitted, ReadyStatusChanged,
    RoundStarted, VoteAcknowledged, RoundResultAnnounced, GameFinished,
    RoomReset, RoomClosed,
]
