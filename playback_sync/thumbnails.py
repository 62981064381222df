import bisect
import logging
import re
import httpx
from typing import List, Optional, Sequence
from urllib.parse import urljoin
from .config import settings
from .models import CueRegion, ThumbnailCue

logger = logging.getLogger(__name__)

HEADER = "WEBVTT"
_XYWH_RE = re.compile(r"xywh=(\d+),(\d+),(\d+),(\d+)", re.IGNORECASE)


def parse_timestamp(value: str) -> float:
    """HH:MM:SS.mmm or MM:SS.mmm to seconds."""
    parts = value.strip().split(":")
    try:
        numbers = [float(p) for p in parts]
    except ValueError:
        raise ValueError(f"Invalid cue timestamp: {value!r}")
    if len(numbers) == 3:
        return numbers[0] * 3600 + numbers[1] * 60 + numbers[2]
    if len(numbers) == 2:
        return numbers[0] * 60 + numbers[1]
    if len(numbers) == 1:
        return numbers[0]
    raise ValueError(f"Invalid cue timestamp: {value!r}")


def _parse_region(fragment: str) -> Optional[CueRegion]:
    m = _XYWH_RE.search(fragment)
    if not m:
        return None
    x, y, w, h = (int(g) for g in m.groups())
    return CueRegion(x=x, y=y, w=w, h=h)


class ThumbnailIndex:
    """Immutable, start-ordered thumbnail cues with interval lookup."""

    def __init__(self, cues: Sequence[ThumbnailCue] = ()):
        self._cues = tuple(sorted(cues, key=lambda c: c.start_seconds))
        self._starts = [c.start_seconds for c in self._cues]

    @property
    def cues(self):
        return self._cues

    def __len__(self):
        return len(self._cues)

    def __bool__(self):
        return bool(self._cues)

    def lookup(self, t: float) -> Optional[ThumbnailCue]:
        if not self._cues:
            return None
        i = bisect.bisect_right(self._starts, t) - 1
        if i >= 0 and t < self._cues[i].end_seconds:
            return self._cues[i]
        return self._cues[-1]


def parse_cue_sheet(text: str, base_url: Optional[str] = None) -> ThumbnailIndex:
    lines = text.replace("\r", "").split("\n")

    first = next((l.strip() for l in lines if l.strip()), "")
    if not first.lstrip("\ufeff").startswith(HEADER):
        logger.warning("Thumbnail cue sheet has no WEBVTT header, ignoring it")
        return ThumbnailIndex()

    cues: List[ThumbnailCue] = []
    i = 0
    n = len(lines)
    while i < n:
        line = lines[i].strip()

        if not line or line.lstrip("\ufeff").startswith(HEADER):
            i += 1
            continue

        # NOTE / STYLE / REGION blocks run until the next blank line
        if line.split(" ")[0] in ("NOTE", "STYLE", "REGION"):
            while i < n and lines[i].strip():
                i += 1
            continue

        timing = line
        if "-->" not in line:
            # cue identifier, timing on the next line
            i += 1
            if i >= n:
                break
            timing = lines[i].strip()
            if "-->" not in timing:
                continue

        start_raw, end_raw = timing.split("-->", 1)
        try:
            start = parse_timestamp(start_raw.strip().split(" ")[0])
            end = parse_timestamp(end_raw.strip().split(" ")[0])
        except ValueError as e:
            logger.debug(f"Skipping cue: {e}")
            i += 1
            continue

        i += 1
        while i < n and not lines[i].strip():
            i += 1
        if i >= n:
            break

        payload = lines[i].strip()
        i += 1
        if "-->" in payload:
            # cue without payload; reprocess this line as the next timing
            i -= 1
            continue

        url, _, fragment = payload.partition("#")
        if base_url:
            url = urljoin(base_url, url)

        cues.append(ThumbnailCue(
            start_seconds=start,
            end_seconds=end,
            image_url=url,
            region=_parse_region(fragment) if fragment else None
        ))

    return ThumbnailIndex(cues)


async def load_thumbnail_index(url: str, client: Optional[httpx.AsyncClient] = None) -> ThumbnailIndex:
    """Fetch and parse a thumbnail cue sheet. Failures give an empty index."""
    if not url:
        return ThumbnailIndex()

    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT_SECONDS, follow_redirects=True)
    try:
        resp = await client.get(url)
        resp.raise_for_status()
        index = parse_cue_sheet(resp.text, base_url=str(resp.url))
        logger.debug(f"Loaded {len(index)} thumbnail cues from {url}")
        return index
    except Exception as e:
        logger.warning(f"Failed to load thumbnail cues from {url}: {e}")
        return ThumbnailIndex()
    finally:
        if owns_client:
            await client.aclose()
