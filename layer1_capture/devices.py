"""
Layer 1 — Capture backends
Capability interface over the platform camera stack: enumerate, open,
capture, release. One V4L2/OpenCV implementation and one manual-upload
implementation for hosts without a usable camera.
"""
import abc
import glob
import logging
import os
import re
from dataclasses import dataclass
from typing import Iterator, Optional

import cv2
import numpy as np

from error_handlers import DeviceUnavailableError, NotReadyError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CaptureDevice:
    """Enumerated camera; device_id is stable for the physical device"""
    device_id: str
    label: str

    def to_dict(self):
        return {"deviceId": self.device_id, "label": self.label}


class CaptureBackend(abc.ABC):
    """Platform capture capability"""

    name = "abstract"

    @abc.abstractmethod
    def enumerate(self) -> Iterator[CaptureDevice]:
        """Yield the currently available devices"""

    @abc.abstractmethod
    def open(self, device_id: str):
        """
        Open a live stream

        Raises:
            DeviceUnavailableError: Permission denied, device gone or no camera stack
        """

    @abc.abstractmethod
    def capture(self, stream) -> Optional[np.ndarray]:
        """Read one frame; None when the stream has no frame yet"""

    @abc.abstractmethod
    def release(self, stream):
        """Release a stream handle"""


class OpenCVCaptureBackend(CaptureBackend):
    """
    USB camera backend on V4L2 through OpenCV.

    Device ids are /dev/v4l/by-id links when udev provides them (stable across
    re-plugging), otherwise the /dev/videoN node.
    """

    name = "opencv"

    # Default camera configuration
    DEFAULT_CONFIG = {
        'width': 1920,
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,
    }

    BY_ID_DIR = "/dev/v4l/by-id"
    SYSFS_DIR = "/sys/class/video4linux"

    def __init__(self, max_index: int = 9, config: Optional[dict] = None):
        """
        Args:
            max_index: Highest /dev/videoN index probed when by-id links are absent
            config: Optional camera configuration override
        """
        self.max_index = max_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        logger.info(f"OpenCV capture backend created (probing /dev/video0..{max_index})")

    def enumerate(self) -> Iterator[CaptureDevice]:
        seen = set()
        position = 0
        for device_id in self._candidate_paths():
            index = self._device_index(device_id)
            if index is None or index in seen or not self._is_capture_node(index):
                continue
            seen.add(index)
            position += 1
            yield CaptureDevice(device_id=device_id, label=self._device_label(index, position))

    def _candidate_paths(self):
        by_id = sorted(glob.glob(os.path.join(self.BY_ID_DIR, "*-video-index0")))
        if by_id:
            return by_id
        return [f"/dev/video{i}" for i in range(self.max_index + 1)
                if os.path.exists(f"/dev/video{i}")]

    @staticmethod
    def _device_index(device_id: str) -> Optional[int]:
        match = re.search(r"video(\d+)$", os.path.realpath(device_id))
        return int(match.group(1)) if match else None

    def _is_capture_node(self, index: int) -> bool:
        # UVC cameras expose a second metadata node with index 1
        index_file = os.path.join(self.SYSFS_DIR, f"video{index}", "index")
        try:
            with open(index_file) as f:
                return f.read().strip() == "0"
        except OSError:
            return True

    def _device_label(self, index: int, position: int) -> str:
        name_file = os.path.join(self.SYSFS_DIR, f"video{index}", "name")
        try:
            with open(name_file) as f:
                name = f.read().strip()
        except OSError:
            name = ""
        return name or f"Camara {position}"

    def open(self, device_id: str):
        index = self._device_index(device_id)
        if index is None or not os.path.exists(f"/dev/video{index}"):
            logger.error(f"Camera device not found: {device_id}")
            raise DeviceUnavailableError(device_id, reason="device not found")

        logger.info(f"Opening camera {device_id} (/dev/video{index})")
        camera = cv2.VideoCapture(index, cv2.CAP_V4L2)
        if not camera.isOpened():
            camera.release()
            raise DeviceUnavailableError(device_id, reason="failed to open camera device")

        self._configure_camera(camera)
        width = int(camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(camera.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(f"Camera opened: {width}x{height} @ {camera.get(cv2.CAP_PROP_FPS)}fps")
        return camera

    def _configure_camera(self, camera):
        """Apply camera configuration settings."""
        cfg = self.config
        camera.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*cfg['codec']))
        camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
        camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
        camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

    def capture(self, stream) -> Optional[np.ndarray]:
        if not stream.isOpened():
            raise DeviceUnavailableError(reason="camera stream closed")
        ret, frame = stream.read()
        if not ret or frame is None:
            return None
        return frame

    def release(self, stream):
        stream.release()


class ManualFileBackend(CaptureBackend):
    """No camera: every capture goes through manual file upload"""

    name = "manual"

    def enumerate(self) -> Iterator[CaptureDevice]:
        return iter(())

    def open(self, device_id: str):
        raise DeviceUnavailableError(device_id, reason="camera capture disabled")

    def capture(self, stream) -> Optional[np.ndarray]:
        raise NotReadyError("camera capture disabled")

    def release(self, stream):
        pass


def create_backend(settings) -> CaptureBackend:
    """Select the capture backend named in settings"""
    if settings.capture_backend == ManualFileBackend.name:
        logger.info("Capture backend: manual upload only")
        return ManualFileBackend()
    if settings.capture_backend != OpenCVCaptureBackend.name:
        logger.warning(f"Unknown CAPTURE_BACKEND {settings.capture_backend!r}, using opencv")
    return OpenCVCaptureBackend(max_index=settings.camera_max_index)
