import asyncio
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple
from .config import settings
from .models import ContentIdentity, PlaybackUnit, UnitProgress, WatchProgressRecord
from .state import SchemaCapabilities, schema_capabilities
from .clients.store_client import StoreError, is_missing_column_error, is_unique_violation

logger = logging.getLogger(__name__)

DURATION_COLUMN = "duration_seconds"
BASE_COLUMNS = ("id", "user_id", "movie_id", "episode_id", "progress_seconds", "updated_at")
EPISODE_CONFLICT_KEY = ("user_id", "movie_id", "episode_id")


def is_valid_key(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _is_finite(value: Any) -> bool:
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


class ProgressSyncEngine:
    """
    Owns every read/write/delete against the remote watch-progress table.

    Movies live in the single row with episode_id IS NULL; episodes get one row
    per (user_id, movie_id, episode_id). Callers never touch the store directly.
    """

    def __init__(self, store, capabilities: Optional[SchemaCapabilities] = None):
        self.store = store
        self.capabilities = capabilities if capabilities is not None else schema_capabilities
        self._last_stamp: Optional[datetime] = None
        self._locks: Dict[Tuple[str, str, Optional[str]], asyncio.Lock] = {}

    def _lock_for(self, user_id: str, identity: ContentIdentity) -> asyncio.Lock:
        # Writes for one record run one at a time, in call order
        key = (user_id, identity.content_id, identity.unit_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @property
    def table(self) -> str:
        return settings.PROGRESS_TABLE

    def _duration_enabled(self) -> bool:
        return settings.TRY_DURATION_COLUMN and self.capabilities.should_send(DURATION_COLUMN)

    def _next_timestamp(self) -> str:
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat()

    @staticmethod
    def _exact_filters(user_id: str, identity: ContentIdentity) -> Dict[str, Any]:
        # season_id is display metadata and never narrows the match
        return {
            "user_id": user_id,
            "movie_id": identity.content_id,
            "episode_id": identity.unit_id,
        }

    async def _select_latest(self, filters: Dict[str, Any]) -> Optional[WatchProgressRecord]:
        with_duration = self._duration_enabled()
        columns = BASE_COLUMNS + (DURATION_COLUMN,) if with_duration else BASE_COLUMNS
        try:
            rows = await self.store.query(self.table, filters, columns=columns, order="updated_at.desc", limit=1)
        except StoreError as e:
            if not (with_duration and is_missing_column_error(e, DURATION_COLUMN)):
                raise
            self.capabilities.mark_absent(DURATION_COLUMN)
            rows = await self.store.query(self.table, filters, columns=BASE_COLUMNS, order="updated_at.desc", limit=1)
        return WatchProgressRecord.from_row(rows[0]) if rows else None

    async def _write_with_fallback(self, write: Callable[[bool], Awaitable[None]]):
        with_duration = self._duration_enabled()
        try:
            await write(with_duration)
        except StoreError as e:
            if not (with_duration and is_missing_column_error(e, DURATION_COLUMN)):
                raise
            self.capabilities.mark_absent(DURATION_COLUMN)
            await write(False)
            return
        if with_duration:
            self.capabilities.mark_present(DURATION_COLUMN)

    def _payload(self, position_s: int, duration_s: int, with_duration: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "progress_seconds": position_s,
            "updated_at": self._next_timestamp(),
        }
        if with_duration:
            payload[DURATION_COLUMN] = duration_s
        return payload

    async def load(self, identity: ContentIdentity) -> Optional[WatchProgressRecord]:
        """
        Most recent record for exactly (content_id, unit_id). A movie only
        matches its unit-less row; there is no fallback to another episode.
        """
        if not is_valid_key(identity.content_id):
            return None

        user_id = await self.store.current_principal()
        if not user_id:
            return None

        try:
            record = await self._select_latest(self._exact_filters(user_id, identity))
        except Exception as e:
            logger.warning(f"Failed to load progress for {identity.content_id}/{identity.unit_id}: {e}")
            return None

        if record is None:
            return None
        if record.unit_id != identity.unit_id or (record.content_id and record.content_id != identity.content_id):
            logger.warning(f"Discarding progress row for {record.content_id}/{record.unit_id}, expected {identity.content_id}/{identity.unit_id}")
            return None
        return record

    async def load_latest_for_content(self, content_id: str) -> Optional[WatchProgressRecord]:
        """Latest record of any unit. For a content-level "continue watching" card only."""
        if not is_valid_key(content_id):
            return None

        user_id = await self.store.current_principal()
        if not user_id:
            return None

        try:
            return await self._select_latest({"user_id": user_id, "movie_id": content_id})
        except Exception as e:
            logger.warning(f"Failed to load latest progress for {content_id}: {e}")
            return None

    async def save(self, identity: ContentIdentity, position_seconds: float, duration_seconds: float):
        if not _is_finite(duration_seconds) or float(duration_seconds) <= 0:
            return
        if not _is_finite(position_seconds):
            return
        if not is_valid_key(identity.content_id):
            return

        # A sub-second clip truncates to 0 and is always near its end
        pos = max(0, int(position_seconds))
        dur = int(duration_seconds)

        user_id = await self.store.current_principal()
        if not user_id:
            return

        async with self._lock_for(user_id, identity):
            # Finished playback clears continue-watching for this unit only
            if dur - pos <= settings.NEAR_END_SECONDS:
                logger.debug(f"{identity.content_id}/{identity.unit_id} near end ({pos}/{dur}s), clearing progress")
                await self._delete_exact(user_id, identity)
                return

            if pos < settings.MIN_PROGRESS_SECONDS:
                return

            if settings.DRY_RUN:
                logger.info(f"[DRY RUN] Would save {identity.content_id}/{identity.unit_id} at {pos}/{dur}s")
                return

            try:
                if identity.is_movie:
                    await self._write_with_fallback(
                        lambda with_duration: self._write_movie(user_id, identity.content_id, pos, dur, with_duration)
                    )
                else:
                    await self._write_with_fallback(
                        lambda with_duration: self._write_episode(user_id, identity, pos, dur, with_duration)
                    )
                logger.debug(f"Saved {identity.content_id}/{identity.unit_id} at {pos}/{dur}s")
            except Exception as e:
                logger.error(f"Failed to save progress for {identity.content_id}/{identity.unit_id}: {e}")

    async def _write_episode(self, user_id: str, identity: ContentIdentity, pos: int, dur: int, with_duration: bool):
        row = self._exact_filters(user_id, identity)
        row.update(self._payload(pos, dur, with_duration))
        await self.store.upsert(self.table, row, on_conflict=EPISODE_CONFLICT_KEY)

    async def _write_movie(self, user_id: str, content_id: str, pos: int, dur: int, with_duration: bool):
        # A NULL episode_id never collides in a unique index, so a native
        # upsert would keep inserting. Update first, insert only when missing.
        filters = {"user_id": user_id, "movie_id": content_id, "episode_id": None}
        payload = self._payload(pos, dur, with_duration)

        if await self.store.update(self.table, payload, filters) > 0:
            return

        try:
            await self.store.insert(self.table, {**filters, **payload})
        except StoreError as e:
            if not is_unique_violation(e):
                raise
            logger.info(f"Concurrent insert for {content_id}, retrying as update")
            if await self.store.update(self.table, payload, filters) == 0:
                raise

    async def delete(self, identity: ContentIdentity):
        if not is_valid_key(identity.content_id):
            return

        user_id = await self.store.current_principal()
        if not user_id:
            return

        async with self._lock_for(user_id, identity):
            await self._delete_exact(user_id, identity)

    async def _delete_exact(self, user_id: str, identity: ContentIdentity):
        if settings.DRY_RUN:
            logger.info(f"[DRY RUN] Would delete progress for {identity.content_id}/{identity.unit_id}")
            return

        try:
            await self.store.delete(self.table, self._exact_filters(user_id, identity))
        except Exception as e:
            logger.warning(f"Failed to delete progress for {identity.content_id}/{identity.unit_id}: {e}")

    async def load_unit_progress(self, content_id: str, units: Iterable[PlaybackUnit]) -> Dict[str, UnitProgress]:
        """
        Progress summary per unit for decorating an episode list. Each unit is
        looked up by its exact key; units without a row report zero progress.
        """
        units = list(units)
        if not units or not is_valid_key(content_id):
            return {}

        user_id = await self.store.current_principal()

        async def one(unit: PlaybackUnit):
            record = None
            if user_id:
                identity = ContentIdentity(content_id=content_id, unit_id=unit.id, season_id=unit.season_id)
                try:
                    record = await self._select_latest(self._exact_filters(user_id, identity))
                except Exception as e:
                    logger.debug(f"Failed to load progress for unit {unit.id}: {e}")
                if record is not None and record.unit_id != unit.id:
                    record = None
            return unit.id, self._summarize(record, unit)

        pairs = await asyncio.gather(*(one(u) for u in units))
        return dict(pairs)

    @staticmethod
    def _summarize(record: Optional[WatchProgressRecord], unit: PlaybackUnit) -> UnitProgress:
        position = record.position_seconds if record else 0
        stored_duration = (record.duration_seconds or 0) if record else 0
        duration = stored_duration if stored_duration > 0 else int(unit.duration_seconds or 0)

        percent = 0.0
        if duration > 0:
            percent = max(0.0, min(100.0, position / duration * 100))

        return UnitProgress(
            position_seconds=position,
            duration_seconds=duration,
            percent=percent,
            has_progress=position > 0,
            completed=duration > 0 and (duration - position) <= settings.NEAR_END_SECONDS,
        )
