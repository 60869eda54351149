"""Local camera frame source backed by OpenCV."""

from __future__ import annotations

import asyncio
from typing import Optional

import cv2
import numpy as np

import config
from .base import DeviceUnavailable, FrameSource, PlaybackFailure


class WebcamFrameSource(FrameSource):
    """Captures frames from a camera attached to the server host."""

    name = "webcam"

    def __init__(
        self,
        camera_id: int = config.CAMERA_ID,
        width: int = config.CAMERA_WIDTH,
        height: int = config.CAMERA_HEIGHT,
        **kwargs,
    ):
        """
        Args:
            camera_id: OpenCV device index (0 = default camera)
            width: Requested frame width
            height: Requested frame height
        """
        kwargs.setdefault("jpeg_quality", config.JPEG_QUALITY)
        super().__init__(**kwargs)
        self.camera_id = camera_id
        self.width = width
        self.height = height

    async def _open(self) -> cv2.VideoCapture:
        # VideoCapture() and the first read() block for the device
        return await asyncio.to_thread(self._open_device)

    def _open_device(self) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(self.camera_id)
        if not cap.isOpened():
            cap.release()
            raise DeviceUnavailable(
                f"No camera found at index {self.camera_id}. "
                "Please ensure a camera is connected, enabled and not in use."
            )

        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        ret, _ = cap.read()
        if not ret:
            cap.release()
            raise PlaybackFailure(f"Camera {self.camera_id} opened but produced no frames.")

        self.logger.info(
            "Opened camera %s at %sx%s (%.1f fps)",
            self.camera_id,
            cap.get(cv2.CAP_PROP_FRAME_WIDTH),
            cap.get(cv2.CAP_PROP_FRAME_HEIGHT),
            cap.get(cv2.CAP_PROP_FPS),
        )
        return cap

    def _close_handle(self, cap: cv2.VideoCapture) -> None:
        if cap.isOpened():
            cap.release()

    def _read_frame(self, cap: cv2.VideoCapture) -> Optional[np.ndarray]:
        # drop whatever the driver buffered since the last poll
        cap.grab()
        ret, frame = cap.read()
        if not ret:
            raise PlaybackFailure("Camera stream ended unexpectedly.")
        return frame
