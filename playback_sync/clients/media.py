from typing import Any, Protocol

class MediaSink(Protocol):
    """The element that renders decoded media (a <video> in the browser)."""

    muted: bool
    volume: float

    def play(self) -> None: ...

    def pause(self) -> None: ...

    def seek(self, seconds: float) -> None: ...

    def clear_source(self) -> None: ...


class PlaybackEngine(Protocol):
    """
    Adaptive streaming engine. Turns a manifest URL into media on a sink and
    reports mediaAttached / metadataReady / timeAdvanced / ended / fatalError
    back to the controller's handle_* methods.
    """

    def attach(self, source: str, sink: MediaSink) -> Any: ...

    def detach(self, handle: Any) -> None: ...
