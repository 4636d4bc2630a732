"""Players and submissions owned by a single room."""

from typing import Dict, Iterator, List, Optional

from errors import DuplicatePlayerIdentity, UnknownPlayer
from models import Item, Player


class PlayerRegistry:
    """Connected players of one room, in join order."""

    def __init__(self):
        self._players: Dict[str, Player] = {}
        self._next_join_order = 0

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, player_id: str) -> bool:
        return player_id in self._players

    def __iter__(self) -> Iterator[Player]:
        return iter(list(self._players.values()))

    def ids(self) -> set:
        return set(self._players)

    def get(self, player_id: str) -> Player:
        player = self._players.get(player_id)
        if player is None:
            raise UnknownPlayer(f"Player {player_id} is not in this room")
        return player

    @property
    def creator(self) -> Optional[Player]:
        for player in self._players.values():
            if player.is_creator:
                return player
        return None

    def add(self, player_id: str, name: str) -> Player:
        if player_id in self._players:
            raise DuplicatePlayerIdentity(f"Player {player_id} already joined")
        player = Player(
            id=player_id,
            name=name,
            is_creator=not self._players,
            join_order=self._next_join_order,
        )
        self._next_join_order += 1
        self._players[player_id] = player
        return player

    def remove(self, player_id: str) -> Player:
        player = self.get(player_id)
        del self._players[player_id]
        # dicts keep insertion order, so the first remaining player joined earliest
        if player.is_creator and self._players:
            next(iter(self._players.values())).is_creator = True
        return player

    def all_ready(self, minimum: int) -> bool:
        return len(self._players) >= minimum and all(p.ready for p in self._players.values())

    def ready_count(self) -> int:
        return sum(1 for p in self._players.values() if p.ready)

    def reset_ready(self):
        for player in self._players.values():
            player.ready = False


class SubmissionSet:
    """Append-only, index-ordered list of submitted items."""

    def __init__(self):
        self._items: List[Item] = []

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Item]:
        return iter(self._items)

    def __getitem__(self, index: int) -> Item:
        return self._items[index]

    def append(self, media_ref: str, label: str, submitter_id: str) -> Item:
        item = Item(index=len(self._items), media_ref=media_ref,
                    label=label, submitter_id=submitter_id)
        self._items.append(item)
        return item

    def get(self, index: int) -> Optional[Item]:
        if 0 <= index < len(self._items):
            return self._items[index]
        return None
