"""
Layer 1 — Capture
Camera enumeration, live stream lifecycle and still capture, with manual
file upload when no camera is usable.
"""
from .devices import (
    CaptureBackend,
    CaptureDevice,
    ManualFileBackend,
    OpenCVCaptureBackend,
    create_backend
)
from .image import CapturedImage, MAX_CAPTURE_WIDTH, decode_data_url
from .manager import AcquisitionManager, CaptureSession
from .state import CaptureEvent, CaptureState, Effect, transition

__all__ = [
    'AcquisitionManager',
    'CaptureBackend',
    'CaptureDevice',
    'CaptureEvent',
    'CaptureSession',
    'CaptureState',
    'CapturedImage',
    'Effect',
    'MAX_CAPTURE_WIDTH',
    'ManualFileBackend',
    'OpenCVCaptureBackend',
    'create_backend',
    'decode_data_url',
    'transition'
]
