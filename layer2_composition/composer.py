"""
Layer 2 — Document Composition (PDF)
Responsibility: Place the front and back captures on their own A4 pages,
scaled to fit inside the margins and centered
Output: Two-page PDF document (.pdf)
"""
import io
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from error_handlers import ImageDecodeError
from layer1_capture.image import CapturedImage

logger = logging.getLogger(__name__)

# A4 in points
PAGE_WIDTH = 595.28
PAGE_HEIGHT = 841.89
PAGE_MARGIN = 36

PDF_MIME_TYPE = "application/pdf"
DEFAULT_CLIENT_SLUG = "cliente"

_WHITESPACE = re.compile(r"\s+")
_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")
_SAFE = re.compile(r"[a-zA-Z0-9_-]")

ImageInput = Union[CapturedImage, bytes]


@dataclass(frozen=True)
class ComposedDocument:
    """Final PDF bytes and the filename to deliver them under"""
    data: bytes
    filename: str
    page_count: int

    @property
    def size(self) -> int:
        return len(self.data)

    def __repr__(self):
        return f"ComposedDocument(filename={self.filename!r}, pages={self.page_count}, size={self.size})"


def sanitize_client_name(value: Optional[str]) -> str:
    """
    Make a client name safe for a filename

    Whitespace runs become underscores, anything outside [a-zA-Z0-9_-] is
    dropped. A name without a single safe character becomes 'cliente'.
    """
    value = (value or "").strip()
    if not _SAFE.search(value):
        return DEFAULT_CLIENT_SLUG
    return _UNSAFE.sub("", _WHITESPACE.sub("_", value))


def build_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y-%m-%d_%H-%M")


def build_filename(client_name: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """cedula_<sanitized-name>_<YYYY-MM-DD>_<HH-MM>.pdf"""
    return f"cedula_{sanitize_client_name(client_name)}_{build_timestamp(now)}.pdf"


def fit_to_page(image_width, image_height, page_width=PAGE_WIDTH,
                page_height=PAGE_HEIGHT, margin=PAGE_MARGIN) -> Tuple[float, float, float, float]:
    """
    Largest uniform scale that fits the printable area, centered

    Returns:
        tuple: (x, y, width, height) in points
    """
    max_width = page_width - margin * 2
    max_height = page_height - margin * 2
    scale = min(max_width / image_width, max_height / image_height)
    width = image_width * scale
    height = image_height * scale
    return (page_width - width) / 2, (page_height - height) / 2, width, height


def page_count(pdf_bytes: bytes) -> int:
    """
    Count the pages of a PDF

    Raises:
        ImageDecodeError: If the bytes are not a readable PDF
    """
    try:
        return len(PdfReader(io.BytesIO(pdf_bytes)).pages)
    except (PdfReadError, ValueError) as e:
        raise ImageDecodeError(f"unreadable PDF: {e}")


class DocumentComposer:
    """Builds the two-page cedula PDF from a front/back capture pair"""

    def __init__(self, page_size=(PAGE_WIDTH, PAGE_HEIGHT), margin=PAGE_MARGIN):
        """
        Initialize composer

        Args:
            page_size: (width, height) in points (default: A4)
            margin: Blank border kept around each image, in points
        """
        self.page_width, self.page_height = page_size
        self.margin = margin
        logger.debug(f"DocumentComposer initialized ({self.page_width}x{self.page_height}pt, "
                     f"margin {margin}pt)")

    def compose(self, front: ImageInput, back: ImageInput,
                client_name: Optional[str] = None,
                now: Optional[datetime] = None) -> ComposedDocument:
        """
        Compose the cedula PDF; front is always page 1, back is always page 2

        Args:
            front: Front capture (CapturedImage or encoded JPEG/PNG bytes)
            back: Back capture (CapturedImage or encoded JPEG/PNG bytes)
            client_name: Client name used in the filename
            now: Timestamp for the filename (default: current local time)

        Returns:
            ComposedDocument: PDF bytes and filename

        Raises:
            UnsupportedImageFormatError: An image is neither JPEG nor PNG
            ImageDecodeError: An image payload is malformed
        """
        logger.info("[Layer 2] Composing cedula PDF...")
        front = self._as_captured(front)
        back = self._as_captured(back)

        buffer = io.BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=(self.page_width, self.page_height), invariant=1)
        pdf.setTitle("Cedula")
        pdf.setCreator("cedula-scanner")

        for side, image in (("front", front), ("back", back)):
            self._draw_page(pdf, image, side)

        pdf.save()
        data = buffer.getvalue()
        filename = build_filename(client_name, now)
        document = ComposedDocument(data=data, filename=filename, page_count=page_count(data))

        logger.info(f"[Layer 2] ✓ {document.filename} ({document.page_count} pages, {document.size} bytes)")
        return document

    @staticmethod
    def _as_captured(image: ImageInput) -> CapturedImage:
        if isinstance(image, CapturedImage):
            return image
        return CapturedImage.from_bytes(image)

    def _draw_page(self, pdf, image: CapturedImage, side: str):
        x, y, width, height = fit_to_page(
            image.width, image.height, self.page_width, self.page_height, self.margin
        )
        logger.debug(f"  {side}: {image.width}x{image.height}px -> "
                     f"{width:.1f}x{height:.1f}pt at ({x:.1f}, {y:.1f})")
        try:
            reader = ImageReader(io.BytesIO(image.data))
            pdf.drawImage(reader, x, y, width=width, height=height, mask="auto")
        except (OSError, ValueError, SyntaxError) as e:
            # Pillow reports truncated or corrupt data as OSError/SyntaxError
            raise ImageDecodeError(f"{side} image: {e}")
        pdf.showPage()
