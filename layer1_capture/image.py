"""
Layer 1 — Captured images
Still frames and uploaded files normalized to encoded bytes plus dimensions.
"""
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from error_handlers import ImageDecodeError, UnsupportedImageFormatError

logger = logging.getLogger(__name__)

MAX_CAPTURE_WIDTH = 1600
JPEG_QUALITY = 85

JPEG_MIME = "image/jpeg"
PNG_MIME = "image/png"
SUPPORTED_MIME_TYPES = (JPEG_MIME, PNG_MIME)

_MAGIC = (
    (b"\xff\xd8\xff", JPEG_MIME),
    (b"\x89PNG\r\n\x1a\n", PNG_MIME),
)
_DATA_URL_HEADER = re.compile(r"^data:(?P<mime>[^;,]*)(?:;[^,]*)?;base64$", re.IGNORECASE)


def sniff_mime_type(data: bytes) -> Optional[str]:
    """Identify JPEG/PNG payloads by their magic bytes"""
    for magic, mime in _MAGIC:
        if data.startswith(magic):
            return mime
    return None


def decode_data_url(data_url: str) -> Tuple[bytes, str]:
    """
    Split a base64 data URL into raw bytes and its MIME type

    A header without a MIME type is treated as JPEG.

    Raises:
        ImageDecodeError: If the URL is not a base64 data URL
    """
    header, sep, payload = (data_url or "").partition(",")
    match = _DATA_URL_HEADER.match(header.strip())
    if not sep or not match or not payload:
        raise ImageDecodeError("invalid data URL")

    try:
        data = base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(e)

    mime = match.group("mime").strip().lower() or JPEG_MIME
    return data, mime


def downscale_frame(frame: np.ndarray, max_width: int = MAX_CAPTURE_WIDTH) -> np.ndarray:
    """Shrink frames wider than max_width, keeping the aspect ratio"""
    height, width = frame.shape[:2]
    if width <= max_width:
        return frame

    scale = max_width / width
    target = (max_width, max(1, round(height * scale)))
    logger.debug(f"Downscaling frame {width}x{height} -> {target[0]}x{target[1]}")
    return cv2.resize(frame, target, interpolation=cv2.INTER_AREA)


def encode_jpeg(frame: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    ok, buffer = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ImageDecodeError("JPEG encoding failed")
    return buffer.tobytes()


@dataclass(frozen=True)
class CapturedImage:
    """One side of the document: encoded bytes plus pixel dimensions"""
    data: bytes
    mime_type: str
    width: int
    height: int

    @classmethod
    def from_frame(cls, frame: np.ndarray, max_width: int = MAX_CAPTURE_WIDTH) -> "CapturedImage":
        """Build a JPEG capture from a raw BGR frame"""
        frame = downscale_frame(frame, max_width)
        height, width = frame.shape[:2]
        return cls(data=encode_jpeg(frame), mime_type=JPEG_MIME, width=width, height=height)

    @classmethod
    def from_bytes(cls, data: bytes, declared_mime: Optional[str] = None) -> "CapturedImage":
        """
        Build a capture from an encoded JPEG/PNG payload, bytes kept as-is

        Args:
            data: Encoded image bytes
            declared_mime: MIME type claimed by the sender (data URL header,
                upload content type), only used to classify failures

        Raises:
            UnsupportedImageFormatError: Payload is not JPEG or PNG
            ImageDecodeError: Payload claims a supported format but is malformed
        """
        if not data:
            raise ImageDecodeError("empty image payload")

        mime = sniff_mime_type(data)
        if mime is None:
            declared = (declared_mime or "").lower()
            if declared in SUPPORTED_MIME_TYPES:
                raise ImageDecodeError(f"payload is not a valid {declared}")
            raise UnsupportedImageFormatError(declared_mime)

        frame = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
        if frame is None or frame.size == 0:
            raise ImageDecodeError(f"could not decode {mime} payload")

        height, width = frame.shape[:2]
        return cls(data=bytes(data), mime_type=mime, width=width, height=height)

    @classmethod
    def from_data_url(cls, data_url: str) -> "CapturedImage":
        data, mime = decode_data_url(data_url)
        return cls.from_bytes(data, declared_mime=mime)

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    def __repr__(self):
        return (f"CapturedImage(mime_type={self.mime_type!r}, width={self.width}, "
                f"height={self.height}, size={len(self.data)})")
