"""Frame source registry for GymSight.

Lets the websocket server drive either the browser's camera or a camera
attached to the server host without touching the session logic.
"""

from typing import Any, Callable, Dict, Optional, Type

from .base import (
    CaptureError,
    DeviceUnavailable,
    FrameSource,
    FrameSourceReport,
    PermissionDenied,
    PermissionMonitor,
    PermissionState,
    PlaybackFailure,
    decode_frame,
    encode_frame,
)
from .stream import StreamFrameSource
from .webcam import WebcamFrameSource


SOURCE_REGISTRY: Dict[str, Type[FrameSource]] = {
    StreamFrameSource.name: StreamFrameSource,
    WebcamFrameSource.name: WebcamFrameSource,
}


def get_available_sources():
    """Return the list of registered frame source names."""
    return list(SOURCE_REGISTRY.keys())


def build_frame_source(
    name: str,
    send: Optional[Callable[[Dict[str, Any]], None]] = None,
    monitor: Optional[PermissionMonitor] = None,
) -> FrameSource:
    """Instantiate a frame source by registry name.

    ``send`` is the outgoing-message callback of the client connection; only
    the browser source uses it.
    """
    source_cls = SOURCE_REGISTRY.get(name)
    if not source_cls:
        raise ValueError(
            f"Unknown frame source '{name}'. "
            f"Available options: {', '.join(get_available_sources())}"
        )
    if source_cls is StreamFrameSource:
        if send is None:
            raise ValueError("The browser frame source needs a client connection to send to.")
        return StreamFrameSource(send=send, monitor=monitor)
    return source_cls(monitor=monitor)


__all__ = [
    "CaptureError",
    "DeviceUnavailable",
    "FrameSource",
    "FrameSourceReport",
    "PermissionDenied",
    "PermissionMonitor",
    "PermissionState",
    "PlaybackFailure",
    "StreamFrameSource",
    "WebcamFrameSource",
    "build_frame_source",
    "decode_frame",
    "encode_frame",
    "get_available_sources",
]
