"""Rejection kinds raised by rooms and the room directory.

Every ``RoomError`` is a recoverable refusal of one intent: the room state is
left untouched and only the caller is told, using ``code`` as the stable
machine-readable key.
"""


class RoomError(Exception):
    code = "room_error"
    default_message = "Request rejected"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class RoomNotFound(RoomError):
    code = "room_not_found"
    default_message = "Room not found"


class InvalidPhaseTransition(RoomError):
    code = "invalid_phase"
    default_message = "Not allowed in the current phase"


class DuplicatePlayerIdentity(RoomError):
    code = "duplicate_player"
    default_message = "Player already in room"


class UnknownPlayer(RoomError):
    code = "unknown_player"
    default_message = "Player is not in this room"


class StaleRoundReference(RoomError):
    code = "stale_round"
    default_message = "Vote targets a round that is not open"


class EmptySubmissionSet(RoomError):
    code = "no_submissions"
    default_message = "Submit at least one image before everyone is ready"


class VoteAlreadyCommitted(RoomError):
    code = "vote_committed"
    default_message = "Vote already confirmed for this round"


class NoVoteSelected(RoomError):
    code = "no_vote_selected"
    default_message = "Pick smash or pass before confirming"


class NotRoomCreator(RoomError):
    code = "not_creator"
    default_message = "Only the room creator can do that"


class RoomLimitReached(RoomError):
    code = "room_limit"
    default_message = "Too many active rooms. Try again later."


class InvariantViolation(Exception):
    """Internal inconsistency in a room; never sent to clients as data."""
