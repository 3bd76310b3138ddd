"""
Tests for Layer 1 — capture lifecycle, still capture and manual upload.
"""
import base64
import time

import pytest

from conftest import FakeCaptureBackend, make_image_bytes
from error_handlers import (
    DeviceUnavailableError,
    ImageDecodeError,
    NotReadyError,
    UnsupportedImageFormatError
)
from layer1_capture import (
    AcquisitionManager,
    CapturedImage,
    CaptureEvent,
    CaptureState,
    Effect,
    ManualFileBackend,
    decode_data_url,
    transition
)
from layer1_capture.state import InvalidTransitionError


@pytest.fixture
def backend():
    return FakeCaptureBackend(devices=(("cam-0", "Camara 1"), ("cam-1", "Camara 2")))


@pytest.fixture
def manager(backend):
    with AcquisitionManager(backend) as acquisition:
        yield acquisition


class TestStateMachine:
    """Pure lifecycle transitions."""

    def test_start_from_idle_opens_stream(self):
        step = transition(CaptureState.IDLE, CaptureEvent.START)
        assert step.state is CaptureState.STARTING
        assert step.effects == (Effect.OPEN_STREAM,)

    def test_switch_releases_before_opening(self):
        step = transition(CaptureState.ACTIVE, CaptureEvent.SWITCH_DEVICE)
        assert step.state is CaptureState.STARTING
        assert step.effects == (Effect.RELEASE_STREAM, Effect.OPEN_STREAM)

    def test_stop_when_idle_is_noop(self):
        step = transition(CaptureState.IDLE, CaptureEvent.STOP)
        assert step.state is CaptureState.IDLE
        assert step.effects == ()

    @pytest.mark.parametrize("state", list(CaptureState))
    def test_error_always_falls_back(self, state):
        step = transition(state, CaptureEvent.ERROR)
        assert step.state is CaptureState.FALLBACK
        assert Effect.OFFER_MANUAL_UPLOAD in step.effects

    def test_fallback_can_retry_start(self):
        assert transition(CaptureState.FALLBACK, CaptureEvent.START).state is CaptureState.STARTING

    def test_device_lost_returns_to_idle(self):
        step = transition(CaptureState.ACTIVE, CaptureEvent.DEVICE_LOST)
        assert step.state is CaptureState.IDLE
        assert step.effects == (Effect.RELEASE_STREAM,)

    def test_hot_plug_never_stops_active_stream(self):
        assert transition(CaptureState.ACTIVE, CaptureEvent.NO_DEVICES).effects == ()
        step = transition(CaptureState.ACTIVE, CaptureEvent.DEVICES_CHANGED)
        assert step.state is CaptureState.ACTIVE
        assert step.effects == (Effect.ENUMERATE_DEVICES,)

    def test_unknown_transition_raises(self):
        with pytest.raises(InvalidTransitionError):
            transition(CaptureState.IDLE, CaptureEvent.STARTED)


class TestDevices:
    """Device enumeration and fallback mode."""

    def test_list_devices_is_restartable(self, manager):
        first = list(manager.list_devices())
        second = list(manager.list_devices())
        assert [d.device_id for d in first] == ["cam-0", "cam-1"]
        assert first == second

    def test_refresh_selects_first_device(self, manager):
        manager.refresh_devices()
        assert manager.selected_device_id == "cam-0"
        assert manager.state is CaptureState.IDLE

    def test_no_devices_enters_fallback(self):
        manager = AcquisitionManager(FakeCaptureBackend(devices=()))
        assert manager.refresh_devices() == ()
        assert manager.fallback

    def test_devices_appearing_leave_fallback(self):
        backend = FakeCaptureBackend(devices=())
        manager = AcquisitionManager(backend)
        manager.refresh_devices()
        backend.devices = FakeCaptureBackend().devices
        manager.refresh_devices()
        assert manager.state is CaptureState.IDLE

    def test_hot_plug_does_not_stop_stream(self, manager, backend):
        manager.start("cam-0")
        manager.refresh_thread.join(timeout=5)
        backend.devices = []
        thread = manager.devices_changed()
        thread.join(timeout=5)
        assert manager.is_active
        assert manager.devices == ()
        assert ("release", "cam-0") not in backend.events

    def test_watcher_notices_new_device(self, backend):
        with AcquisitionManager(FakeCaptureBackend(devices=())) as manager:
            manager.refresh_devices()
            assert manager.fallback
            manager.watch_devices(interval=0.01)
            time.sleep(0.2)
            manager.backend.devices = backend.devices

            deadline = time.monotonic() + 5
            while manager.fallback and time.monotonic() < deadline:
                time.sleep(0.01)
            assert manager.state is CaptureState.IDLE
            assert [d.device_id for d in manager.devices] == ["cam-0", "cam-1"]
        assert not manager.watch_thread.is_alive()

    def test_watcher_keeps_active_stream(self, manager, backend):
        manager.start("cam-0")
        manager.refresh_thread.join(timeout=5)
        manager.watch_devices(interval=0.01)
        time.sleep(0.2)
        backend.devices = backend.devices[:1]

        deadline = time.monotonic() + 5
        while len(manager.devices) != 1 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert [d.device_id for d in manager.devices] == ["cam-0"]
        assert manager.is_active


class TestStreamLifecycle:
    """Start, switch and stop."""

    def test_start_default_device(self, manager, backend):
        session = manager.start()
        assert session.active_device_id == "cam-0"
        assert manager.state is CaptureState.ACTIVE
        assert backend.events == [("open", "cam-0")]

    def test_switch_releases_previous_stream_first(self, manager, backend):
        manager.start("cam-0")
        manager.start("cam-1")
        assert backend.events == [("open", "cam-0"), ("release", "cam-0"), ("open", "cam-1")]
        assert manager.session.active_device_id == "cam-1"

    def test_stop_is_idempotent(self, manager, backend):
        manager.start()
        manager.stop()
        manager.stop()
        assert manager.state is CaptureState.IDLE
        assert backend.events.count(("release", "cam-0")) == 1

    def test_permission_denied_falls_back(self, backend):
        backend.denied.add("cam-0")
        manager = AcquisitionManager(backend)
        with pytest.raises(DeviceUnavailableError):
            manager.start("cam-0")
        assert manager.fallback
        assert manager.session is None

    def test_failed_switch_leaves_no_stream(self, manager, backend):
        manager.start("cam-0")
        backend.denied.add("cam-1")
        with pytest.raises(DeviceUnavailableError):
            manager.start("cam-1")
        assert manager.fallback
        assert backend.events[-1] == ("release", "cam-0")

    def test_start_without_devices_falls_back(self):
        manager = AcquisitionManager(FakeCaptureBackend(devices=()))
        with pytest.raises(DeviceUnavailableError):
            manager.start()
        assert manager.fallback

    def test_retry_from_fallback(self, backend):
        backend.denied.add("cam-0")
        manager = AcquisitionManager(backend)
        with pytest.raises(DeviceUnavailableError):
            manager.start("cam-0")
        manager.start("cam-1")
        assert manager.is_active

    def test_unexpected_backend_failure_falls_back(self, backend, monkeypatch):
        def broken_open(device_id):
            raise RuntimeError("driver crashed")

        manager = AcquisitionManager(backend)
        monkeypatch.setattr(backend, "open", broken_open)
        with pytest.raises(RuntimeError):
            manager.start("cam-0")
        assert manager.fallback
        assert manager.session is None

        monkeypatch.undo()
        manager.start("cam-0")
        assert manager.is_active

    def test_manual_backend_always_falls_back(self):
        manager = AcquisitionManager(ManualFileBackend())
        with pytest.raises(DeviceUnavailableError):
            manager.start("anything")
        assert manager.fallback


class TestCapture:
    """Still frame capture."""

    def test_capture_requires_active_stream(self, manager):
        with pytest.raises(NotReadyError):
            manager.capture()

    def test_capture_without_frame_is_not_ready(self, manager, backend):
        backend.frame_size = None
        manager.start()
        with pytest.raises(NotReadyError):
            manager.capture()

    def test_zero_size_frame_is_not_ready(self, manager, backend):
        backend.frame_size = (0, 0)
        manager.start()
        with pytest.raises(NotReadyError):
            manager.capture()

    def test_wide_frame_is_downscaled(self, manager, backend):
        backend.frame_size = (3200, 1000)
        manager.start()
        image = manager.capture()
        assert (image.width, image.height) == (1600, 500)
        assert image.mime_type == "image/jpeg"

    def test_aspect_ratio_preserved_within_rounding(self, manager, backend):
        backend.frame_size = (1920, 1081)
        manager.start()
        image = manager.capture()
        assert image.width == 1600
        assert abs(image.height - 1081 * 1600 / 1920) <= 0.5

    def test_narrow_frame_kept(self, manager, backend):
        backend.frame_size = (640, 480)
        manager.start()
        image = manager.capture()
        assert (image.width, image.height) == (640, 480)

    def test_device_loss_returns_to_idle(self, manager, backend):
        manager.start()
        backend.streams[-1].lost = True
        with pytest.raises(DeviceUnavailableError):
            manager.capture()
        assert manager.state is CaptureState.IDLE
        assert manager.session is None

    def test_preview_jpeg_inactive_returns_none(self, manager):
        assert manager.preview_jpeg() is None


class TestManualUpload:
    """Fallback file path and image decoding."""

    def test_capture_from_jpeg(self, manager, front_jpeg):
        image = manager.capture_from_file(front_jpeg)
        assert (image.width, image.height, image.mime_type) == (200, 100, "image/jpeg")
        assert image.data == front_jpeg

    def test_capture_from_png(self, manager, sample_png):
        image = manager.capture_from_file(sample_png, mime_type="image/png")
        assert (image.width, image.height, image.mime_type) == (120, 300, "image/png")

    def test_unsupported_format(self, manager):
        with pytest.raises(UnsupportedImageFormatError):
            manager.capture_from_file(b"GIF89a\x01\x00\x01\x00", mime_type="image/gif")

    def test_malformed_jpeg(self, manager):
        with pytest.raises(ImageDecodeError):
            manager.capture_from_file(b"\xff\xd8\xff\xe0" + b"\x00" * 32)

    def test_garbage_declared_as_png_is_decode_error(self, manager):
        with pytest.raises(ImageDecodeError):
            manager.capture_from_file(b"not really a png", mime_type="image/png")

    def test_data_url_round_trip(self):
        data = make_image_bytes(30, 20)
        image = CapturedImage.from_data_url(
            "data:image/jpeg;base64," + base64.b64encode(data).decode()
        )
        assert CapturedImage.from_data_url(image.to_data_url()) == image

    def test_data_url_without_mime_defaults_to_jpeg(self):
        data, mime = decode_data_url("data:;base64," + base64.b64encode(b"abc").decode())
        assert (data, mime) == (b"abc", "image/jpeg")

    def test_invalid_data_url(self):
        with pytest.raises(ImageDecodeError):
            decode_data_url("not a data url")
