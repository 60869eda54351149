"""Frame source fed by a browser over the coaching websocket.

The browser owns getUserMedia(). This source asks it to start or stop the
camera, waits for the matching ``camera`` event, and keeps the most recent
frame the browser pushed.

Protocol (server -> client):
    {"type": "camera", "active": true, "request_id": 3}
    {"type": "camera", "active": false, "request_id": 3}

Protocol (client -> server):
    {"event": "camera", "request_id": 3, "ready": true, "permission": "granted"}
    {"event": "camera", "request_id": 3, "ready": false,
     "error_name": "NotAllowedError", "error": "Permission denied"}
    "data:image/jpeg;base64,..."            (frames, raw or as {"frame": ...})

A client that receives an ``active: false`` for an older request_id than the
one it is serving should ignore it.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

import numpy as np

import config
from .base import (
    CaptureError,
    DeviceUnavailable,
    FrameSource,
    PermissionDenied,
    PermissionState,
    PlaybackFailure,
    decode_frame,
)

# DOMException names reported by getUserMedia() / HTMLMediaElement.play()
CLIENT_ERRORS = {
    "NotAllowedError": (
        PermissionDenied,
        "Camera permission denied. Please allow camera access in your browser settings.",
    ),
    "SecurityError": (
        PermissionDenied,
        "Camera access is blocked for this page.",
    ),
    "NotFoundError": (
        DeviceUnavailable,
        "No camera found. Please ensure a camera is connected and enabled.",
    ),
    "NotReadableError": (
        DeviceUnavailable,
        "The camera is already in use by another application.",
    ),
    "OverconstrainedError": (
        DeviceUnavailable,
        "No camera satisfies the requested video constraints.",
    ),
}


def client_error(event: Dict[str, Any]) -> CaptureError:
    """Map a failed browser camera event to a CaptureError."""
    error_name = event.get("error_name") or ""
    if error_name in CLIENT_ERRORS:
        error_cls, message = CLIENT_ERRORS[error_name]
        return error_cls(message)
    detail = event.get("error") or "Could not access camera."
    return PlaybackFailure(f"Error accessing camera: {detail}")


def parse_permission(value: Any) -> Optional[PermissionState]:
    try:
        return PermissionState(value)
    except ValueError:
        return None


def parse_request_id(value: Any) -> Optional[int]:
    """Request ids arrive as JSON numbers, but some clients echo them as strings."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class StreamFrameSource(FrameSource):
    """Frame source whose device lives in the connected browser."""

    name = "browser"

    def __init__(
        self,
        send: Callable[[Dict[str, Any]], None],
        acquire_timeout: float = config.CAMERA_ACQUIRE_TIMEOUT_S,
        **kwargs,
    ):
        kwargs.setdefault("jpeg_quality", config.JPEG_QUALITY)
        super().__init__(**kwargs)
        self._send = send
        self.acquire_timeout = acquire_timeout
        self._request_id = 0
        self._pending: Dict[int, asyncio.Future] = {}
        self._latest_frame: Optional[np.ndarray] = None

    async def _open(self) -> int:
        self._request_id += 1
        request_id = self._request_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self._send({"type": "camera", "active": True, "request_id": request_id})
        try:
            event = await asyncio.wait_for(future, self.acquire_timeout)
        except asyncio.TimeoutError:
            # the browser may still grant later; it must not keep the camera
            self._send_stop(request_id)
            raise DeviceUnavailable("Timed out waiting for the browser to start the camera.")
        finally:
            self._pending.pop(request_id, None)
        permission = parse_permission(event.get("permission"))
        if permission is not None:
            self.permission = permission
        if not event.get("ready"):
            raise client_error(event)
        return request_id

    def release(self) -> None:
        # Requests still waiting on the browser are superseded: tell it to stop
        # and let the pending acquisition finish (it stays silent).
        for request_id, future in list(self._pending.items()):
            if not future.done():
                future.set_result({"ready": False, "superseded": True})
                self._send_stop(request_id)
        super().release()

    def _close_handle(self, request_id: int) -> None:
        self._latest_frame = None
        self._send_stop(request_id)

    def _send_stop(self, request_id: int) -> None:
        self._send({"type": "camera", "active": False, "request_id": request_id})

    def _read_frame(self, request_id: int) -> Optional[np.ndarray]:
        return self._latest_frame

    def handle_camera_event(self, event: Dict[str, Any]) -> None:
        """Route a client ``camera`` event to its pending acquisition.

        An event with no pending request is a report about the active stream;
        ``ready: false`` there means the browser lost the camera, and
        ``ready: true`` for any other request is a late grant to be stopped.
        """
        request_id = parse_request_id(event.get("request_id"))
        if request_id is None and self._pending:
            request_id = max(self._pending)
        future = self._pending.get(request_id)
        if future is not None:
            if not future.done():
                future.set_result(event)
            return

        if event.get("ready"):
            if request_id is not None and request_id != self._handle:
                self.logger.info("Stopping camera started for stale request %s", request_id)
                self._send_stop(request_id)
            return

        if self.is_active and request_id in (None, self._handle):
            permission = parse_permission(event.get("permission"))
            if permission is not None:
                self.permission = permission
            self.fail(str(client_error(event)))

    def push_frame(self, data: str) -> bool:
        """Store a frame pushed by the client. Returns False if it was dropped."""
        if not self.is_active:
            return False
        frame = decode_frame(data)
        if frame is None:
            self.logger.warning("Received malformed data packet")
            return False
        self._latest_frame = frame
        return True
