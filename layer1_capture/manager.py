"""
Layer 1 — Acquisition Manager
Responsibility: device enumeration, the single live stream, still capture,
manual-upload fallback
Output: CapturedImage (JPEG/PNG bytes + dimensions)
"""
import logging
import threading
from dataclasses import dataclass
from typing import Iterator, Optional, Tuple

import cv2

from error_handlers import DeviceUnavailableError, NotReadyError
from .devices import CaptureBackend, CaptureDevice
from .image import MAX_CAPTURE_WIDTH, CapturedImage, downscale_frame, encode_jpeg
from .state import CaptureEvent, CaptureState, Effect, transition

logger = logging.getLogger(__name__)


@dataclass
class CaptureSession:
    """The one live stream owned by the manager"""
    active_device_id: str
    stream: object
    is_active: bool = True


class AcquisitionManager:
    """
    Owns the capture session and drives it through the lifecycle state machine.

    Operations on the session are serialized: a new stream is never opened
    before the previous one has been released.
    """

    def __init__(self, backend: CaptureBackend, max_width: int = MAX_CAPTURE_WIDTH):
        """
        Args:
            backend: Capture capability (OpenCV devices or manual upload)
            max_width: Captured frames wider than this are downscaled
        """
        self.backend = backend
        self.max_width = max_width
        self.state = CaptureState.IDLE
        self.session: Optional[CaptureSession] = None
        self.devices: Tuple[CaptureDevice, ...] = ()
        self.selected_device_id: Optional[str] = None
        self._requested_device_id: Optional[str] = None
        self.refresh_thread: Optional[threading.Thread] = None
        self.watch_thread: Optional[threading.Thread] = None
        self._watch_stop = threading.Event()
        self._lock = threading.RLock()
        self._effects = {
            Effect.RELEASE_STREAM: self._release_stream,
            Effect.OPEN_STREAM: self._open_stream,
            Effect.ENUMERATE_DEVICES: self._enumerate_in_background,
            Effect.OFFER_MANUAL_UPLOAD: self._offer_manual_upload,
        }
        logger.info(f"AcquisitionManager created (backend: {backend.name}, max width: {max_width})")

    @property
    def is_active(self) -> bool:
        return self.state is CaptureState.ACTIVE and self.session is not None

    @property
    def fallback(self) -> bool:
        return self.state is CaptureState.FALLBACK

    def _fire(self, event: CaptureEvent):
        step = transition(self.state, event)
        if step.state is not self.state:
            logger.debug(f"Capture state {self.state.value} -> {step.state.value} ({event.value})")
        self.state = step.state
        for effect in step.effects:
            self._effects[effect]()

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def list_devices(self) -> Iterator[CaptureDevice]:
        """Enumerate capture devices; each call probes again"""
        for device in self.backend.enumerate():
            yield device

    def refresh_devices(self) -> Tuple[CaptureDevice, ...]:
        """
        Re-enumerate devices and update fallback mode

        An empty list puts an idle manager into fallback; devices appearing
        bring it back to idle. An active stream is never stopped here.
        """
        try:
            devices = tuple(self.list_devices())
        except (OSError, DeviceUnavailableError) as e:
            logger.warning(f"Could not list capture devices: {e}")
            devices = ()

        with self._lock:
            self.devices = devices
            ids = [device.device_id for device in devices]
            if not self.is_active and self.selected_device_id not in ids:
                self.selected_device_id = ids[0] if ids else None
            self._fire(CaptureEvent.DEVICES_FOUND if devices else CaptureEvent.NO_DEVICES)

        logger.info(f"[Layer 1] {len(devices)} capture device(s) available")
        return devices

    def devices_changed(self) -> threading.Thread:
        """Hot-plug notification; re-enumerates without blocking the caller"""
        with self._lock:
            self._fire(CaptureEvent.DEVICES_CHANGED)
            return self.refresh_thread

    def _enumerate_in_background(self):
        thread = threading.Thread(target=self.refresh_devices, name="capture-device-refresh", daemon=True)
        self.refresh_thread = thread
        thread.start()

    def watch_devices(self, interval: float = 2.0) -> threading.Thread:
        """
        Poll the device list and raise a hot-plug notification on every change

        Args:
            interval: Seconds between polls

        Returns:
            threading.Thread: The watcher thread (stopped by close())
        """
        if self.watch_thread is not None and self.watch_thread.is_alive():
            return self.watch_thread

        def poll():
            known = None
            while True:
                try:
                    current = tuple(self.list_devices())
                except (OSError, DeviceUnavailableError) as e:
                    logger.debug(f"Device poll failed: {e}")
                else:
                    if known is not None and current != known:
                        logger.info(f"[Layer 1] Capture devices changed ({len(current)} present)")
                        self.devices_changed()
                    known = current
                if self._watch_stop.wait(interval):
                    return

        self._watch_stop.clear()
        self.watch_thread = threading.Thread(target=poll, name="capture-device-watch", daemon=True)
        self.watch_thread.start()
        logger.info(f"Watching capture devices every {interval}s")
        return self.watch_thread

    # ------------------------------------------------------------------
    # Stream lifecycle
    # ------------------------------------------------------------------

    def start(self, device_id: Optional[str] = None) -> CaptureSession:
        """
        Open a live stream, replacing any existing one

        Args:
            device_id: Device to open (default: selected or first available)

        Returns:
            CaptureSession: The new session

        Raises:
            DeviceUnavailableError: No usable device; the manager is in fallback mode
        """
        with self._lock:
            self._requested_device_id = device_id or self.selected_device_id
            switching = (self.is_active and device_id is not None
                         and device_id != self.session.active_device_id)
            event = CaptureEvent.SWITCH_DEVICE if switching else CaptureEvent.START

            logger.info(f"[Layer 1] Starting capture on {self._requested_device_id or 'first available device'}")
            try:
                self._fire(event)
            except DeviceUnavailableError as e:
                logger.warning(f"[Layer 1] Camera unavailable: {e.details.get('reason')}")
                self._fire(CaptureEvent.ERROR)
                raise
            except Exception as e:
                logger.error(f"[Layer 1] Camera start failed: {type(e).__name__}: {e}")
                self._fire(CaptureEvent.ERROR)
                raise

            self._fire(CaptureEvent.STARTED)
            logger.info(f"[Layer 1] Capture active on {self.session.active_device_id}")
            return self.session

    def stop(self):
        """Release the live stream; safe to call when already stopped"""
        with self._lock:
            self._fire(CaptureEvent.STOP)

    def _open_stream(self):
        device_id = self._requested_device_id
        if device_id is None:
            first = next(iter(self.list_devices()), None)
            if first is None:
                raise DeviceUnavailableError(reason="no capture devices found")
            device_id = first.device_id

        try:
            stream = self.backend.open(device_id)
        except DeviceUnavailableError:
            raise
        except (cv2.error, OSError) as e:
            raise DeviceUnavailableError(device_id, reason=str(e)) from e

        self.session = CaptureSession(active_device_id=device_id, stream=stream)
        self.selected_device_id = device_id

    def _release_stream(self):
        session, self.session = self.session, None
        if session is None:
            return
        session.is_active = False
        logger.info(f"Releasing capture stream on {session.active_device_id}")
        self.backend.release(session.stream)

    def _offer_manual_upload(self):
        logger.info("[Layer 1] Fallback mode: manual image upload available")

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture(self) -> CapturedImage:
        """
        Take a still frame from the active stream

        Raises:
            NotReadyError: No active stream or no valid frame yet
            DeviceUnavailableError: The device went away; the manager is idle again
        """
        with self._lock:
            if not self.is_active:
                raise NotReadyError("no active stream")

            try:
                frame = self.backend.capture(self.session.stream)
            except DeviceUnavailableError:
                logger.warning("[Layer 1] Capture device lost")
                self._fire(CaptureEvent.DEVICE_LOST)
                raise

            if frame is None or frame.size == 0 or min(frame.shape[:2]) == 0:
                raise NotReadyError("stream has not produced a frame yet")

            image = CapturedImage.from_frame(frame, self.max_width)
            logger.info(f"[Layer 1] Frame captured - {frame.shape[1]}x{frame.shape[0]} -> "
                        f"{image.width}x{image.height}")
            return image

    def capture_from_file(self, data: bytes, mime_type: Optional[str] = None) -> CapturedImage:
        """Fallback path: use a user-chosen JPEG/PNG file as the capture"""
        image = CapturedImage.from_bytes(data, declared_mime=mime_type)
        logger.info(f"[Layer 1] Image uploaded - {image.width}x{image.height} ({image.mime_type})")
        return image

    def preview_jpeg(self, width: int = 960) -> Optional[bytes]:
        """
        Get a JPEG preview frame for streaming

        Returns:
            bytes or None: Encoded frame, None when no frame is available
        """
        with self._lock:
            if not self.is_active:
                return None
            try:
                frame = self.backend.capture(self.session.stream)
            except (NotReadyError, DeviceUnavailableError) as e:
                logger.debug(f"Failed to get preview frame: {e}")
                return None
        if frame is None or frame.size == 0:
            return None
        return encode_jpeg(downscale_frame(frame, width), quality=70)

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "fallback": self.fallback,
            "backend": self.backend.name,
            "activeDeviceId": self.session.active_device_id if self.session else None,
            "selectedDeviceId": self.selected_device_id,
            "devices": [device.to_dict() for device in self.devices],
        }

    def close(self):
        """Stop the device watcher and release the stream"""
        self._watch_stop.set()
        if self.watch_thread is not None:
            self.watch_thread.join(timeout=5)
        self.stop()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
