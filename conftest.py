"""
Pytest configuration and fixtures for the Cedula Scanner tests.
"""
import os
import smtplib
import sys
import threading

import cv2
import numpy as np
import pytest

# Add the app directory to the path
sys.path.insert(0, os.path.dirname(__file__))

from config import Settings  # noqa: E402
from error_handlers import DeviceUnavailableError  # noqa: E402
from layer1_capture.devices import CaptureBackend, CaptureDevice  # noqa: E402
from layer3_delivery.transport import MailTransport  # noqa: E402

TEST_ENV = {
    'SMTP_HOST': 'smtp.example.com',
    'SMTP_PORT': '587',
    'SMTP_USER': 'ops@example.com',
    'SMTP_PASS': 'abcd efgh ijkl mnop',
    'EMAIL_FROM': 'ops@example.com',
    'EMAIL_FROM_NAME': 'Lector Cedulas',
    'EMAIL_TO': 'inbox@example.com',
    'SENDER_PROFILES': 'hostessvip, ',
    'SMTP_USER_HOSTESSVIP': 'hostess@example.com',
    'SMTP_PASS_HOSTESSVIP': 'host ess\tpass',
    'EMAIL_FROM_HOSTESSVIP': 'hostess@example.com',
    'CAPTURE_BACKEND': 'manual',
    'CAMERA_POLL_INTERVAL': '0',
    'CAMERA_POLL_INTERVAL': '0',
    'LOG_LEVEL': 'DEBUG',
}


def make_image_bytes(width, height, ext='.jpg', color=(40, 120, 200)):
    """Encode a solid-color image of the given size"""
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:] = color
    ok, buffer = cv2.imencode(ext, frame)
    assert ok
    return buffer.tobytes()


class FakeStream:
    def __init__(self, device_id):
        self.device_id = device_id
        self.lost = False


class FakeCaptureBackend(CaptureBackend):
    """In-memory camera stack recording every open/release"""

    name = "fake"

    def __init__(self, devices=(("cam-0", "Camara 1"),), frame_size=(1920, 1080), denied=()):
        self.devices = [CaptureDevice(device_id, label) for device_id, label in devices]
        self.frame_size = frame_size
        self.denied = set(denied)
        self.events = []
        self.streams = []

    def enumerate(self):
        for device in list(self.devices):
            yield device

    def open(self, device_id):
        if device_id in self.denied:
            raise DeviceUnavailableError(device_id, reason="permission denied")
        if device_id not in [device.device_id for device in self.devices]:
            raise DeviceUnavailableError(device_id, reason="device not found")
        stream = FakeStream(device_id)
        self.streams.append(stream)
        self.events.append(("open", device_id))
        return stream

    def capture(self, stream):
        if stream.lost:
            raise DeviceUnavailableError(stream.device_id, reason="device unplugged")
        if self.frame_size is None:
            return None
        width, height = self.frame_size
        return np.full((height, width, 3), 128, dtype=np.uint8)

    def release(self, stream):
        self.events.append(("release", stream.device_id))


class RecordingTransport(MailTransport):
    """Mail transport double; fail_on names the step that raises"""

    FAILURES = {
        'open': lambda: smtplib.SMTPConnectError(421, b"service not available"),
        'verify': lambda: smtplib.SMTPAuthenticationError(535, b"authentication failed"),
        'send': lambda: smtplib.SMTPDataError(554, b"message rejected"),
    }

    def __init__(self, config, log=None, fail_on=None):
        super().__init__(config, log)
        self.fail_on = fail_on
        self.calls = []
        self.sent = []

    def _step(self, name):
        self.calls.append(name)
        if self.fail_on == name:
            raise self.FAILURES[name]()

    def open(self):
        self.log.debug(f"Recording transport for {self.config.host}:{self.config.port}")
        self._step('open')

    def verify(self):
        self._step('verify')

    def send(self, message):
        self._step('send')
        self.sent.append(message)
        return {}

    def close(self):
        self.calls.append('close')


class TransportRecorder:
    """Transport factory keeping every transport it built"""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.transports = []
        self._lock = threading.Lock()

    def __call__(self, config, log=None):
        transport = RecordingTransport(config, log, fail_on=self.fail_on)
        with self._lock:
            self.transports.append(transport)
        return transport


@pytest.fixture
def env():
    return dict(TEST_ENV)


@pytest.fixture
def settings(env):
    return Settings.from_env(env)


@pytest.fixture
def capture_backend():
    return FakeCaptureBackend()


@pytest.fixture
def transport_recorder():
    return TransportRecorder()


@pytest.fixture
def app(settings, capture_backend, transport_recorder):
    """Create Flask test application."""
    from app import create_app
    flask_app = create_app(
        settings=settings,
        capture_backend=capture_backend,
        transport_factory=transport_recorder
    )
    flask_app.config['TESTING'] = True
    yield flask_app
    flask_app.extensions['cedula'].acquisition.close()


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def front_jpeg():
    """200x100 JPEG front side."""
    return make_image_bytes(200, 100)


@pytest.fixture
def back_jpeg():
    """200x100 JPEG back side."""
    return make_image_bytes(200, 100, color=(200, 60, 30))


@pytest.fixture
def sample_png():
    """120x300 PNG."""
    return make_image_bytes(120, 300, ext='.png')
