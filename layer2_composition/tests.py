"""
Tests for Layer 2 — PDF composition and filename rules.
"""
import io
import re
from datetime import datetime

import cv2
import numpy as np
import pytest
from PyPDF2 import PdfReader

from conftest import make_image_bytes
from error_handlers import ImageDecodeError, UnsupportedImageFormatError
from layer1_capture import CapturedImage
from layer2_composition import DocumentComposer, build_filename, fit_to_page, sanitize_client_name
from layer2_composition.composer import PAGE_HEIGHT, PAGE_MARGIN, PAGE_WIDTH

FILENAME_PATTERN = re.compile(r"^cedula_[a-zA-Z0-9_-]+_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}\.pdf$")


def image_widths(pdf_bytes):
    """Pixel width of the image drawn on each page, in page order"""
    widths = []
    for page in PdfReader(io.BytesIO(pdf_bytes)).pages:
        xobjects = page["/Resources"]["/XObject"]
        widths.append([xobjects[name]["/Width"] for name in xobjects])
    return widths


@pytest.fixture
def composer():
    return DocumentComposer()


class TestFilename:
    """Filename sanitizing."""

    def test_scenario_name(self):
        now = datetime(2024, 3, 5, 9, 7)
        assert build_filename("Ana Ruiz", now) == "cedula_Ana_Ruiz_2024-03-05_09-07.pdf"

    def test_surrounding_whitespace_ignored(self):
        now = datetime(2024, 3, 5, 9, 7)
        assert build_filename("  Ana Ruiz \t", now) == build_filename("Ana Ruiz", now)

    @pytest.mark.parametrize("name", ["", "   ", None, "@@@", "ñáé", "!!! ???"])
    def test_defaults_to_cliente(self, name):
        assert sanitize_client_name(name) == "cliente"

    def test_unsafe_characters_dropped(self):
        assert sanitize_client_name("José  Pérez/../x") == "Jos_Prezx"

    def test_pattern(self):
        assert FILENAME_PATTERN.match(build_filename("Ana-Maria_2"))


class TestFitToPage:
    """Scale-and-center geometry."""

    def test_wide_image_limited_by_width(self):
        x, y, width, height = fit_to_page(2000, 1000)
        assert width == pytest.approx(PAGE_WIDTH - 2 * PAGE_MARGIN)
        assert height == pytest.approx(width / 2)
        assert x == pytest.approx(PAGE_MARGIN)
        assert y == pytest.approx((PAGE_HEIGHT - height) / 2)

    def test_tall_image_limited_by_height(self):
        x, y, width, height = fit_to_page(100, 1000)
        assert height == pytest.approx(PAGE_HEIGHT - 2 * PAGE_MARGIN)
        assert y == pytest.approx(PAGE_MARGIN)
        assert x == pytest.approx((PAGE_WIDTH - width) / 2)

    def test_small_image_scaled_up(self):
        _, _, width, _ = fit_to_page(200, 100)
        assert width == pytest.approx(PAGE_WIDTH - 2 * PAGE_MARGIN)


class TestCompose:
    """Two-page document."""

    def test_scenario_two_pages(self, composer, front_jpeg, back_jpeg):
        document = composer.compose(front_jpeg, back_jpeg, client_name="Ana Ruiz")
        assert document.page_count == 2
        assert len(PdfReader(io.BytesIO(document.data)).pages) == 2
        assert re.match(r"^cedula_Ana_Ruiz_\d{4}-\d{2}-\d{2}_\d{2}-\d{2}\.pdf$", document.filename)

    def test_front_is_first_page(self, composer):
        front = CapturedImage.from_bytes(make_image_bytes(300, 100))
        back = CapturedImage.from_bytes(make_image_bytes(100, 300, color=(0, 0, 0)))
        document = composer.compose(front, back)
        assert image_widths(document.data) == [[300], [100]]

    def test_png_and_jpeg_mixed(self, composer, front_jpeg, sample_png):
        document = composer.compose(front_jpeg, sample_png)
        assert image_widths(document.data) == [[200], [120]]

    def test_pages_are_a4(self, composer, front_jpeg, back_jpeg):
        document = composer.compose(front_jpeg, back_jpeg)
        for page in PdfReader(io.BytesIO(document.data)).pages:
            assert float(page.mediabox.width) == pytest.approx(PAGE_WIDTH)
            assert float(page.mediabox.height) == pytest.approx(PAGE_HEIGHT)

    def test_deterministic(self, composer, front_jpeg, back_jpeg):
        now = datetime(2024, 1, 1, 12, 0)
        first = composer.compose(front_jpeg, back_jpeg, "Ana", now=now)
        second = composer.compose(front_jpeg, back_jpeg, "Ana", now=now)
        assert first == second

    def test_unsupported_format(self, composer, front_jpeg):
        with pytest.raises(UnsupportedImageFormatError):
            composer.compose(front_jpeg, b"BM\x00\x00 bitmap")

    def test_malformed_payload(self, composer, front_jpeg):
        with pytest.raises(ImageDecodeError):
            composer.compose(b"\x89PNG\r\n\x1a\n" + b"\x00" * 20, front_jpeg)

    def test_png_transparency_kept(self, composer, back_jpeg):
        transparent = np.zeros((50, 80, 4), dtype=np.uint8)
        ok, encoded = cv2.imencode(".png", transparent)
        assert ok
        document = composer.compose(encoded.tobytes(), back_jpeg)

        front_page, back_page = PdfReader(io.BytesIO(document.data)).pages
        front_images = front_page["/Resources"]["/XObject"]
        assert all("/SMask" in front_images[name].get_object() for name in front_images)
        back_images = back_page["/Resources"]["/XObject"]
        assert not any("/SMask" in back_images[name].get_object() for name in back_images)
