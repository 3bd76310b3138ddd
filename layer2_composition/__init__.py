"""
Layer 2 — Document Composition
Builds the two-page cedula PDF from the front and back captures
"""
from .composer import (
    ComposedDocument,
    DocumentComposer,
    PDF_MIME_TYPE,
    build_filename,
    fit_to_page,
    page_count,
    sanitize_client_name
)

__all__ = [
    'ComposedDocument',
    'DocumentComposer',
    'PDF_MIME_TYPE',
    'build_filename',
    'fit_to_page',
    'page_count',
    'sanitize_client_name'
]
