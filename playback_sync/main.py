import logging
from typing import Callable, Iterable, Optional

from .config import settings
from .engine import ProgressSyncEngine
from .models import ContentIdentity, Notification, PlaybackUnit
from .session import PlaybackSessionController
from .clients.media import MediaSink, PlaybackEngine
from .clients.store_client import SupabaseStore


def configure_logging():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Silence noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


logger = logging.getLogger("main")


def mount(
    engine: PlaybackEngine,
    sink: MediaSink,
    source: str,
    content_id: str,
    unit_id: Optional[str] = None,
    season_id: Optional[str] = None,
    autoplay: bool = False,
    playlist_mode: bool = True,
    series: Optional[bool] = None,
    units: Iterable[PlaybackUnit] = (),
    thumbnails_url: Optional[str] = None,
    on_select_unit: Optional[Callable[[PlaybackUnit], None]] = None,
    on_notify: Optional[Callable[[Notification], None]] = None,
    store: Optional[SupabaseStore] = None,
) -> PlaybackSessionController:
    """
    Wire a player for one widget instance and start attaching `source`.
    Must be called from the running event loop; call `unmount()` on the
    returned controller to release it.
    """
    configure_logging()
    store = store or SupabaseStore()
    progress = ProgressSyncEngine(store)

    controller = PlaybackSessionController(
        engine,
        sink,
        progress,
        autoplay=autoplay,
        playlist_mode=playlist_mode,
        series=bool(unit_id) if series is None else series,
        units=units,
        on_select_unit=on_select_unit,
        on_notify=on_notify,
    )

    identity = ContentIdentity(content_id=content_id, unit_id=unit_id, season_id=season_id)
    logger.info(f"Mounting player for {identity.content_id}/{identity.unit_id}")
    controller.load_source(source, identity)
    controller.set_thumbnail_sheet(thumbnails_url)
    return controller
