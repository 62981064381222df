from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, field_validator

class ContentIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    content_id: str
    unit_id: Optional[str] = None
    season_id: Optional[str] = None  # Display only, never part of the key

    @field_validator("content_id", mode="before")
    @classmethod
    def _strip_content_id(cls, v):
        return str(v).strip() if v is not None else ""

    @field_validator("unit_id", "season_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @property
    def is_movie(self) -> bool:
        return self.unit_id is None

    def key(self):
        return (self.content_id, self.unit_id)


def _first(row: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if row.get(name) is not None:
            return row[name]
    return None


def _to_int(value: Any, fallback: int = 0) -> int:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    if n != n or n in (float("inf"), float("-inf")):
        return fallback
    return max(0, int(n))


class WatchProgressRecord(BaseModel):
    content_id: str
    unit_id: Optional[str] = None
    position_seconds: int = 0
    duration_seconds: Optional[int] = None  # None when the column is absent
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WatchProgressRecord":
        """
        Normalizes a raw store row. Older rows and other clients use several
        spellings for the same fields; only the canonical shape leaves here.
        """
        duration = _first(row, "duration_seconds", "durationSeconds")
        unit_id = _first(row, "episode_id", "unit_id", "episodeId", "unitId")
        return cls(
            content_id=str(_first(row, "movie_id", "content_id", "contentId") or ""),
            unit_id=str(unit_id) if unit_id is not None else None,
            position_seconds=_to_int(_first(row, "progress_seconds", "position_seconds", "positionSeconds")),
            duration_seconds=_to_int(duration) if duration is not None else None,
            updated_at=_first(row, "updated_at", "updatedAt"),
        )

    def is_near_end(self, threshold: int) -> bool:
        duration = self.duration_seconds or 0
        return duration > 0 and (duration - self.position_seconds) <= threshold


class PlaybackUnit(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    duration_seconds: Optional[float] = None
    season_id: Optional[str] = None
    title: Optional[str] = None


class UnitProgress(BaseModel):
    position_seconds: int = 0
    duration_seconds: int = 0
    percent: float = 0.0
    has_progress: bool = False
    completed: bool = False


class CueRegion(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    w: int
    h: int


class ThumbnailCue(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_seconds: float
    end_seconds: float
    image_url: str
    region: Optional[CueRegion] = None


class NotificationKind(str, Enum):
    RESTORE = "restore"
    PLAY = "play"
    PAUSE = "pause"
    SEEK = "seek"
    MUTE = "mute"
    VOLUME = "volume"
    COMPLETED = "completed"
    ADVANCING = "advancing"
    ERROR = "error"


class Notification(BaseModel):
    kind: NotificationKind
    text: str
    visible: bool = True
