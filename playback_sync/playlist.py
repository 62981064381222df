from typing import Iterable, List, Optional
from .models import PlaybackUnit

def _order_key(unit: PlaybackUnit):
    season = unit.season_number if unit.season_number is not None else 1
    episode = unit.episode_number if unit.episode_number is not None else 0
    return (season, episode, str(unit.id))


class PlaylistNavigator:
    """Series order for a content's units: season, then episode, then id."""

    def __init__(self, units: Iterable[PlaybackUnit] = ()):
        self.ordered: List[PlaybackUnit] = sorted(units, key=_order_key)

    def __len__(self):
        return len(self.ordered)

    def index_of(self, unit_id: Optional[str]) -> int:
        if not unit_id:
            return -1
        for i, unit in enumerate(self.ordered):
            if unit.id == unit_id:
                return i
        return -1

    def find(self, unit_id: Optional[str]) -> Optional[PlaybackUnit]:
        i = self.index_of(unit_id)
        return self.ordered[i] if i >= 0 else None

    def next_after(self, unit_id: Optional[str]) -> Optional[PlaybackUnit]:
        i = self.index_of(unit_id)
        if i < 0 or i + 1 >= len(self.ordered):
            return None
        return self.ordered[i + 1]

    def seasons(self) -> List[int]:
        return sorted({_order_key(u)[0] for u in self.ordered})

    def in_season(self, season_number: int) -> List[PlaybackUnit]:
        return [u for u in self.ordered if _order_key(u)[0] == season_number]
