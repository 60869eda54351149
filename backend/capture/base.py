"""Common interfaces for GymSight frame sources."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional

import cv2
import numpy as np


JPEG_DATA_URI_PREFIX = "data:image/jpeg;base64,"


class PermissionState(str, Enum):
    UNKNOWN = "unknown"
    PROMPT = "prompt"
    GRANTED = "granted"
    DENIED = "denied"


class CaptureError(Exception):
    """Camera could not be acquired or stopped delivering frames."""


class PermissionDenied(CaptureError):
    pass


class DeviceUnavailable(CaptureError):
    """No camera, camera busy, or requested constraints cannot be met."""


class PlaybackFailure(CaptureError):
    """The stream opened but frames could not be read from it."""


@dataclass(frozen=True)
class FrameSourceReport:
    """Outcome of an acquisition, or a terminal failure of an active capture."""

    ready: bool
    permission: PermissionState
    error: Optional[str] = None


ReportCallback = Callable[[FrameSourceReport], None]
PermissionListener = Callable[[PermissionState], None]


class PermissionSubscription:
    """Handle returned by PermissionMonitor.subscribe(); close() is idempotent."""

    def __init__(self, monitor: "PermissionMonitor", listener: PermissionListener):
        self._monitor = monitor
        self._listener = listener

    @property
    def active(self) -> bool:
        return self._listener in self._monitor._listeners

    def close(self) -> None:
        if self.active:
            self._monitor._listeners.remove(self._listener)


class PermissionMonitor:
    """Fans out platform permission-change notifications to subscribers."""

    def __init__(self, state: PermissionState = PermissionState.UNKNOWN):
        self.state = state
        self._listeners: List[PermissionListener] = []

    def subscribe(self, listener: PermissionListener) -> PermissionSubscription:
        self._listeners.append(listener)
        return PermissionSubscription(self, listener)

    def publish(self, state: PermissionState) -> None:
        self.state = state
        for listener in list(self._listeners):
            listener(state)

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)


def encode_frame(frame_bgr: np.ndarray, quality: int = 80) -> Optional[str]:
    """Encode a BGR frame as a JPEG data URI."""
    ok, buffer = cv2.imencode(".jpg", frame_bgr, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        return None
    return JPEG_DATA_URI_PREFIX + base64.b64encode(buffer.tobytes()).decode("ascii")


def decode_frame(data_uri: str) -> Optional[np.ndarray]:
    """Decode a base64 image data URI into a BGR frame, or None if malformed."""
    header, sep, encoded = data_uri.partition(",")
    if not sep or not header.startswith("data:image/") or not header.endswith(";base64"):
        return None
    try:
        img_data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    nparr = np.frombuffer(img_data, np.uint8)
    if nparr.size == 0:
        return None
    return cv2.imdecode(nparr, cv2.IMREAD_COLOR)


class FrameSource(ABC):
    """
    Owns at most one camera handle and turns it into JPEG snapshots.

    Acquisition is asynchronous and ends in exactly one FrameSourceReport sent
    to the bound callback. Release is synchronous and idempotent. A generation
    counter, bumped on every acquire and release, marks in-flight acquisitions
    as superseded; a superseded acquisition closes whatever it opened and stays
    silent. The source never retries acquisition on its own.

    Subclasses implement _open(), _close_handle() and _read_frame().
    """

    name: str = "base"

    def __init__(self, monitor: Optional[PermissionMonitor] = None, jpeg_quality: int = 80):
        self.logger = logging.getLogger(__name__)
        self.permission_monitor = monitor or PermissionMonitor()
        self.permission = self.permission_monitor.state
        self.jpeg_quality = jpeg_quality
        self._on_report: Optional[ReportCallback] = None
        self._handle: Any = None
        self._generation = 0
        self._subscription: Optional[PermissionSubscription] = None

    def bind(self, on_report: ReportCallback) -> None:
        self._on_report = on_report

    @property
    def is_active(self) -> bool:
        return self._handle is not None

    def set_active(self, active: bool) -> Optional[asyncio.Task]:
        """Acquire (returns the acquisition task) or release (returns None)."""
        self.release()
        if not active:
            return None
        return asyncio.get_running_loop().create_task(self._acquire(self._generation))

    def release(self) -> None:
        self._generation += 1
        handle, self._handle = self._handle, None
        try:
            if handle is not None:
                self._close_handle(handle)
                self.logger.info("Camera stream stopped (%s).", self.name)
        finally:
            if self._subscription is not None:
                self._subscription.close()
                self._subscription = None

    def close(self) -> None:
        self.release()

    def capture_frame(self) -> Optional[str]:
        """Snapshot the current frame as a JPEG data URI, or None if not capturing."""
        if self._handle is None or self.permission != PermissionState.GRANTED:
            return None
        try:
            frame = self._read_frame(self._handle)
        except CaptureError as exc:
            self.fail(str(exc))
            return None
        if frame is None:
            return None
        return encode_frame(frame, self.jpeg_quality)

    def permission_changed(self, state: PermissionState) -> None:
        """Listener for the permission subscription held while capturing."""
        self.permission = state
        if state == PermissionState.GRANTED or self._handle is None:
            return
        if state == PermissionState.DENIED:
            self.fail("Camera permission was revoked. Please allow camera access and turn the camera on again.")
        else:
            self.fail(f"Camera permission changed to '{state.value}'. Turn the camera on again to continue.")

    def fail(self, message: str) -> None:
        """Terminal failure of the active capture: release, then report."""
        self.logger.warning("Camera failure (%s): %s", self.name, message)
        self.release()
        self._report(False, message)

    async def _acquire(self, generation: int) -> None:
        try:
            handle = await self._open()
        except Exception as exc:
            if generation != self._generation:
                return
            if isinstance(exc, PermissionDenied):
                self.permission = PermissionState.DENIED
            if isinstance(exc, CaptureError):
                message = str(exc)
            else:
                self.logger.exception("Unexpected error accessing camera")
                message = f"Error accessing camera: {exc}"
            self.logger.warning("Error accessing camera (%s): %s", self.name, message)
            self._report(False, message)
            return

        if generation != self._generation:
            self.logger.info("Discarding superseded camera acquisition (%s).", self.name)
            self._close_handle(handle)
            return

        self._handle = handle
        self.permission = PermissionState.GRANTED
        self._subscription = self.permission_monitor.subscribe(self.permission_changed)
        self.logger.info("Camera stream started successfully (%s).", self.name)
        self._report(True, None)

    def _report(self, ready: bool, error: Optional[str]) -> None:
        if self._on_report is not None:
            self._on_report(FrameSourceReport(ready=ready, permission=self.permission, error=error))

    @abstractmethod
    async def _open(self) -> Any:
        """Acquire the device and return an opaque handle, or raise CaptureError."""

    @abstractmethod
    def _close_handle(self, handle: Any) -> None:
        """Release a handle returned by _open()."""

    @abstractmethod
    def _read_frame(self, handle: Any) -> Optional[np.ndarray]:
        """Return the latest BGR frame, None if none yet, or raise PlaybackFailure."""
