import asyncio
import logging
import math
import time
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Set
from pydantic import BaseModel, ConfigDict, Field
from .config import settings
from .engine import ProgressSyncEngine
from .models import ContentIdentity, Notification, NotificationKind, PlaybackUnit, ThumbnailCue, UnitProgress, WatchProgressRecord
from .playlist import PlaylistNavigator
from .thumbnails import ThumbnailIndex, load_thumbnail_index
from .clients.media import MediaSink, PlaybackEngine

logger = logging.getLogger(__name__)


def format_time(seconds: float) -> str:
    if not math.isfinite(seconds):
        return "00:00"
    s = max(0, int(seconds))
    h, m, sec = s // 3600, (s % 3600) // 60, s % 60
    if h > 0:
        return f"{h:02d}:{m:02d}:{sec:02d}"
    return f"{m:02d}:{sec:02d}"


def _finite_positive(value: Any) -> bool:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return False
    return math.isfinite(v) and v > 0


class SessionState(str, Enum):
    IDLE = "idle"
    ATTACHING = "attaching"
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"
    ADVANCING = "advancing"


class CancellationToken:
    """Marks the results of in-flight work for one input as stale."""

    def __init__(self):
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self):
        self._cancelled = True


class PlaybackSession(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    source: str
    identity: ContentIdentity
    state: SessionState = SessionState.ATTACHING
    restored: bool = False
    restoring: bool = False
    last_persist_at: Optional[float] = None
    playing: bool = False
    duration: float = 0.0
    position: float = 0.0
    force_autoplay: bool = False
    handle: Any = None
    token: CancellationToken = Field(default_factory=CancellationToken)


class PlaybackSessionController:
    """
    Binds a source to the playback engine, restores the stored position,
    persists progress through the ProgressSyncEngine and advances through the
    playlist on natural end.

    Engine and sink events arrive through the handle_* methods. They never
    block: remote work runs in tasks tracked by the controller.
    """

    def __init__(
        self,
        engine: PlaybackEngine,
        sink: MediaSink,
        progress: ProgressSyncEngine,
        autoplay: bool = False,
        playlist_mode: bool = True,
        series: bool = False,
        units: Iterable[PlaybackUnit] = (),
        on_select_unit: Optional[Callable[[PlaybackUnit], None]] = None,
        on_notify: Optional[Callable[[Notification], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        http_client=None,
    ):
        self.engine = engine
        self.sink = sink
        self.progress = progress
        self.autoplay = autoplay
        self.playlist_mode = playlist_mode
        self.series = series
        self.navigator = PlaylistNavigator(units)
        self.on_select_unit = on_select_unit
        self.on_notify = on_notify
        self._clock = clock
        self._http_client = http_client

        self.session: Optional[PlaybackSession] = None
        self.feedback: Optional[Notification] = None
        self._feedback_timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

        self._thumbnails = ThumbnailIndex()
        self._thumbnail_url: Optional[str] = None
        self._thumbnail_token: Optional[CancellationToken] = None

    @property
    def state(self) -> SessionState:
        return self.session.state if self.session else SessionState.IDLE

    # Tasks

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed: {task.exception()}", exc_info=task.exception())

    async def drain(self):
        """Wait for every scheduled load/save to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Notifications

    def _notify(self, kind: NotificationKind, text: str):
        note = Notification(kind=kind, text=text)
        self.feedback = note

        self._cancel_feedback_timer()
        self._feedback_timer = asyncio.get_running_loop().call_later(settings.FEEDBACK_SECONDS, self._hide_feedback)

        if self.on_notify:
            self.on_notify(note)

    def _hide_feedback(self):
        self._feedback_timer = None
        if self.feedback is not None:
            self.feedback = self.feedback.model_copy(update={"visible": False})

    def _cancel_feedback_timer(self):
        if self._feedback_timer is not None:
            self._feedback_timer.cancel()
            self._feedback_timer = None

    # Source binding

    def _release(self, session: PlaybackSession):
        session.token.cancel()
        if session.handle is not None:
            try:
                self.engine.detach(session.handle)
            except Exception as e:
                logger.warning(f"Failed to detach playback engine: {e}")
            session.handle = None
        self._clear_sink()

    def _clear_sink(self):
        try:
            self.sink.pause()
            self.sink.clear_source()
        except Exception as e:
            logger.warning(f"Failed to clear media sink: {e}")

    def load_source(self, source: str, identity: ContentIdentity):
        if not source:
            logger.debug("Ignoring empty media source")
            return

        current = self.session
        if current is not None and current.source == source:
            if current.identity != identity:
                logger.info(f"Identity changed to {identity.content_id}/{identity.unit_id} on the same source")
                # Same binding, fresh progress state: nothing of the old unit carries over
                current.token.cancel()
                session = PlaybackSession(
                    source=source,
                    identity=identity,
                    state=current.state,
                    playing=current.playing,
                    duration=current.duration,
                    force_autoplay=current.force_autoplay,
                    handle=current.handle,
                )
                self.session = session
                if _finite_positive(session.duration):
                    self._start_restore(session)
            return

        force_autoplay = False
        if current is not None:
            force_autoplay = current.force_autoplay
            self._release(current)
        else:
            self._clear_sink()

        session = PlaybackSession(source=source, identity=identity, force_autoplay=force_autoplay)
        self.session = session
        logger.info(f"Attaching {source} for {identity.content_id}/{identity.unit_id}")

        try:
            session.handle = self.engine.attach(source, self.sink)
        except Exception as e:
            logger.error(f"Failed to attach playback engine to {source}: {e}", exc_info=True)
            self._notify(NotificationKind.ERROR, "Playback error")

    def set_units(self, units: Iterable[PlaybackUnit]):
        self.navigator = PlaylistNavigator(units)

    # Engine / sink events

    def handle_media_attached(self):
        if self.session:
            logger.debug(f"Media attached for {self.session.source}")

    def handle_metadata_ready(self, duration: float):
        s = self.session
        if s is None:
            return

        s.duration = float(duration) if _finite_positive(duration) else 0.0
        if s.state == SessionState.ATTACHING:
            s.state = SessionState.READY

        if self.autoplay or s.force_autoplay:
            s.force_autoplay = False
            try:
                self.sink.play()
            except Exception as e:
                logger.warning(f"Autoplay rejected: {e}")

        if s.duration > 0:
            self._start_restore(s)

    def _start_restore(self, s: PlaybackSession):
        if s.restored or s.restoring:
            return
        if self.series and s.identity.unit_id is None:
            # series without an episode: nothing per-unit to restore
            s.restored = True
            return
        s.restoring = True
        self._spawn(self._restore(s, s.token))

    async def _restore(self, s: PlaybackSession, token: CancellationToken):
        try:
            record = await self.progress.load(s.identity)
            if token.cancelled or self.session is not s:
                logger.debug(f"Discarding stale restore for {s.identity.content_id}/{s.identity.unit_id}")
                return
            self._apply_restore(s, record)
        finally:
            if not token.cancelled:
                s.restoring = False
                s.restored = True

    def _apply_restore(self, s: PlaybackSession, record: Optional[WatchProgressRecord]):
        if record is None:
            return
        if record.is_near_end(settings.NEAR_END_SECONDS):
            return

        pos = record.position_seconds
        if pos < settings.MIN_PROGRESS_SECONDS:
            return
        if pos >= max(0.0, s.duration - settings.RESTORE_END_GUARD_SECONDS):
            return

        self.sink.seek(pos)
        s.position = float(pos)
        logger.info(f"Restored {s.identity.content_id}/{s.identity.unit_id} at {pos}s")
        self._notify(NotificationKind.RESTORE, f"Resume at {format_time(pos)}")

    def handle_time_advanced(self, position: float):
        s = self.session
        if s is None:
            return
        try:
            position = float(position)
        except (TypeError, ValueError):
            return
        if math.isfinite(position):
            s.position = max(0.0, position)

        # Writing before the restore lands would overwrite the stored position
        if not s.restored:
            return

        now = self._clock()
        if s.last_persist_at is not None and now - s.last_persist_at < settings.PROGRESS_THROTTLE_SECONDS:
            return
        s.last_persist_at = now
        self._persist(s)

    def handle_play(self):
        s = self.session
        if s is None:
            return
        s.playing = True
        s.state = SessionState.PLAYING

    def handle_pause(self):
        s = self.session
        if s is None:
            return
        s.playing = False
        if s.state == SessionState.PLAYING:
            s.state = SessionState.PAUSED
        self._persist(s)

    def handle_visibility_change(self, hidden: bool):
        if hidden and self.session is not None:
            self._persist(self.session)

    def handle_page_hide(self):
        if self.session is not None:
            self._persist(self.session)

    def handle_unload(self):
        if self.session is not None:
            self._persist(self.session)

    def handle_ended(self):
        s = self.session
        if s is None:
            return
        s.playing = False
        s.state = SessionState.ENDED
        if s.duration > 0:
            s.position = max(s.position, s.duration)
        # near-end position: the engine clears this unit's record
        self._persist(s)

        next_unit = self.navigator.next_after(s.identity.unit_id) if self.playlist_mode else None
        if next_unit is not None and self.on_select_unit is not None:
            s.force_autoplay = True
            s.state = SessionState.ADVANCING
            logger.info(f"Advancing from {s.identity.unit_id} to {next_unit.id}")
            self._notify(NotificationKind.ADVANCING, "Next episode")
            self.on_select_unit(next_unit)
            return

        self._notify(NotificationKind.COMPLETED, "Finished")

    def handle_fatal_error(self, details: Any = None):
        s = self.session
        source = s.source if s else None
        logger.error(f"Playback error for {source}: {details}")
        if s is not None:
            s.playing = False
            try:
                self.sink.pause()
            except Exception as e:
                logger.warning(f"Failed to pause media sink: {e}")
        self._notify(NotificationKind.ERROR, "Playback error")

    def _persist(self, s: PlaybackSession):
        """Unthrottled save of the current position, if there is a usable duration."""
        if not _finite_positive(s.duration):
            return
        if self.series and s.identity.unit_id is None:
            return
        if s.restoring:
            logger.debug(f"Restore pending for {s.identity.content_id}/{s.identity.unit_id}, skipping save")
            return
        self._spawn(self.progress.save(s.identity, s.position, s.duration))

    # User controls

    def toggle_play(self):
        s = self.session
        if s is None:
            return
        if s.playing:
            self.sink.pause()
            self._notify(NotificationKind.PAUSE, "Pause")
        else:
            self.sink.play()
            self._notify(NotificationKind.PLAY, "Play")

    def seek_to(self, seconds: float):
        s = self.session
        if s is None:
            return
        upper = s.duration if s.duration > 0 else math.inf
        target = max(0.0, min(upper, float(seconds)))
        self.sink.seek(target)
        s.position = target

    def seek_by(self, delta: float):
        if self.session is None:
            return
        self.seek_to(self.session.position + delta)
        self._notify(NotificationKind.SEEK, f"+{delta:g}s" if delta > 0 else f"{delta:g}s")

    def toggle_mute(self):
        self.sink.muted = not self.sink.muted
        self._notify(NotificationKind.MUTE, "Mute" if self.sink.muted else "Unmute")

    def set_volume(self, value: float):
        value = max(0.0, min(1.0, float(value)))
        self.sink.volume = value
        self.sink.muted = value <= 0
        self._notify(NotificationKind.VOLUME, f"Vol {round(value * 100)}%")

    # Thumbnails

    def set_thumbnail_sheet(self, url: Optional[str]):
        if url == self._thumbnail_url:
            return
        self._thumbnail_url = url
        if self._thumbnail_token is not None:
            self._thumbnail_token.cancel()
        self._thumbnail_token = None
        self._thumbnails = ThumbnailIndex()
        if not url:
            return

        token = CancellationToken()
        self._thumbnail_token = token
        self._spawn(self._load_thumbnails(url, token))

    async def _load_thumbnails(self, url: str, token: CancellationToken):
        index = await load_thumbnail_index(url, client=self._http_client)
        if token.cancelled:
            return
        self._thumbnails = index

    def thumbnail_at(self, seconds: float) -> Optional[ThumbnailCue]:
        return self._thumbnails.lookup(seconds)

    # Episode list

    async def load_unit_progress(self) -> Dict[str, UnitProgress]:
        if self.session is None:
            return {}
        return await self.progress.load_unit_progress(self.session.identity.content_id, self.navigator.ordered)

    async def unmount(self):
        self._cancel_feedback_timer()
        if self._thumbnail_token is not None:
            self._thumbnail_token.cancel()
            self._thumbnail_token = None

        s = self.session
        if s is not None:
            self._persist(s)
            self._release(s)
            s.state = SessionState.IDLE
            self.session = None

        await self.drain()
        logger.debug("Player unmounted")
