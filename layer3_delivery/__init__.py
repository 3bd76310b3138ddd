"""
Layer 3 — Delivery
Validates delivery requests and e-mails the composed PDF through the
selected sender profile
"""
from .diagnostics import DeliveryLog, new_error_id, redact_fields
from .dispatcher import (
    DeliveryDispatcher,
    DeliveryOutcome,
    DeliveryRequest,
    MAX_DOCUMENT_BYTES
)
from .transport import MailTransport, SMTPTransport, TransportConfig

__all__ = [
    'DeliveryDispatcher',
    'DeliveryLog',
    'DeliveryOutcome',
    'DeliveryRequest',
    'MAX_DOCUMENT_BYTES',
    'MailTransport',
    'SMTPTransport',
    'TransportConfig',
    'new_error_id',
    'redact_fields'
]
