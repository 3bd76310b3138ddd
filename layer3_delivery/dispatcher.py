"""
Layer 3 — Delivery Dispatcher
Responsibility: Validate a delivery request, resolve the sender profile,
open and verify a mail transport, send the PDF, classify failures
Output: DeliveryOutcome (one per request, success or failure)
"""
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from config import Settings, SenderProfile, normalize_sender_key
from error_handlers import (
    CedulaError,
    IncompleteServerConfigError,
    InvalidRecipientError,
    MalformedRequestError,
    MissingFieldsError,
    MissingFromAddressError,
    MissingRecipientError,
    PayloadTooLargeError,
    SendFailedError,
    TransportVerifyError,
    handle_error
)
from .diagnostics import DeliveryLog, new_error_id
from .message import build_from_header, build_message, build_subject, build_text_body
from .transport import TRANSPORT_ERRORS, MailTransport, SMTPTransport, TransportConfig

logger = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 8 * 1024 * 1024
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_HEADER_BREAK = re.compile(r"[\r\n]")
UNEXPECTED_MESSAGE = "No fue posible enviar el correo."

TransportFactory = Callable[[TransportConfig, DeliveryLog], MailTransport]


def _text(payload, key) -> str:
    value = payload.get(key)
    return value if isinstance(value, str) else ""


def _decode_document(encoded: str) -> bytes:
    """Decode base64 PDF payload; a data URL prefix is tolerated"""
    if encoded.startswith("data:") and "," in encoded:
        encoded = encoded.split(",", 1)[1]
    encoded = "".join(encoded.split())
    encoded += "=" * (-len(encoded) % 4)
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedRequestError("pdfBase64 is not valid base64")


@dataclass(frozen=True)
class DeliveryRequest:
    """One delivery attempt; exists for the duration of a dispatch call"""
    document: bytes
    filename: str
    client_name: str = ""
    sender_key: str = ""
    to: str = ""
    subject: str = ""
    text: str = ""
    html: str = ""

    @classmethod
    def from_payload(cls, payload) -> "DeliveryRequest":
        """
        Build a request from the JSON body of the delivery endpoint

        Non-string fields are treated as absent.

        Raises:
            MalformedRequestError: Body is not an object or pdfBase64 is not base64
            MissingFieldsError: pdfBase64 or filename absent
        """
        if not isinstance(payload, dict):
            raise MalformedRequestError("body must be a JSON object")

        encoded = _text(payload, "pdfBase64").strip()
        filename = _text(payload, "filename").strip()
        missing = [name for name, value in (("pdfBase64", encoded), ("filename", filename)) if not value]
        if missing:
            raise MissingFieldsError(missing)

        return cls(
            document=_decode_document(encoded),
            filename=filename,
            client_name=_text(payload, "clientName").strip(),
            sender_key=_text(payload, "senderKey"),
            to=_text(payload, "to").strip(),
            subject=_text(payload, "subject").strip(),
            text=_text(payload, "text"),
            html=_text(payload, "html"),
        )

    def __repr__(self):
        return (f"DeliveryRequest(filename={self.filename!r}, size={len(self.document or b'')}, "
                f"sender_key={self.sender_key!r}, to={self.to!r})")


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one dispatch, success or failure"""
    ok: bool
    message: str
    error_id: str
    status_code: int = 200
    error_code: Optional[str] = None

    def to_response(self) -> dict:
        return {"ok": self.ok, "message": self.message, "errorId": self.error_id}


@dataclass(frozen=True)
class ValidatedDelivery:
    transport: TransportConfig
    profile: SenderProfile
    recipient: str
    from_header: str


class DeliveryDispatcher:
    """
    Sends composed documents through the sender profile named in each request.

    Holds only the read-only settings; concurrent dispatches share nothing else.
    """

    def __init__(self, settings: Settings, transport_factory: Optional[TransportFactory] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Args:
            settings: Process configuration, built once at startup
            transport_factory: Builds a transport per request (default: SMTPTransport)
            clock: Local time source for default subject and body
        """
        self.settings = settings
        self.transport_factory = transport_factory or SMTPTransport
        self.clock = clock
        logger.info("DeliveryDispatcher initialized")

    def handle_payload(self, payload) -> DeliveryOutcome:
        """Parse a JSON body and dispatch it under one correlation id"""
        error_id = new_error_id()
        log = DeliveryLog(logger, error_id)
        try:
            request = DeliveryRequest.from_payload(payload)
        except CedulaError as e:
            return self._failure(e, log)
        return self.send(request, error_id=error_id)

    def send(self, request: DeliveryRequest, error_id: Optional[str] = None) -> DeliveryOutcome:
        """
        Validate and deliver one request

        Args:
            request: Delivery request
            error_id: Correlation id (generated when not supplied)

        Returns:
            DeliveryOutcome: Always exactly one, success or failure
        """
        log = DeliveryLog(logger, error_id or new_error_id())
        log.info("[Layer 3] Delivery requested", fields={
            "filename": request.filename,
            "size": len(request.document or b""),
            "sender_key": normalize_sender_key(request.sender_key) or "default",
        })

        try:
            validated = self.validate(request, log)
            self._deliver(request, validated, log)
        except CedulaError as e:
            return self._failure(e, log)
        except Exception as e:
            handle_error(e, log)
            return DeliveryOutcome(ok=False, message=UNEXPECTED_MESSAGE, error_id=log.error_id,
                                   status_code=500, error_code="UNEXPECTED_ERROR")

        log.info("[Layer 3] ✓ Delivery complete", fields={"to": validated.recipient})
        return DeliveryOutcome(ok=True, message=f"Correo enviado a {validated.recipient}.",
                               error_id=log.error_id)

    def validate(self, request: DeliveryRequest, log: DeliveryLog) -> ValidatedDelivery:
        """
        Ordered fail-fast validation; the first failing check wins

        Raises:
            MissingFieldsError, MalformedRequestError, PayloadTooLargeError,
            IncompleteServerConfigError, MissingRecipientError, InvalidRecipientError,
            MissingFromAddressError
        """
        missing = [name for name, value in (("pdfBase64", request.document),
                                            ("filename", (request.filename or "").strip()))
                   if not value]
        if missing:
            raise MissingFieldsError(missing)

        for name, value in (("filename", request.filename), ("subject", request.subject)):
            if _HEADER_BREAK.search(value or ""):
                raise MalformedRequestError(f"{name} contains a line break")

        size = len(request.document)
        if size > MAX_DOCUMENT_BYTES:
            raise PayloadTooLargeError(size, MAX_DOCUMENT_BYTES)

        transport, profile = self.resolve_transport(request.sender_key, log)

        recipient = (request.to or "").strip() or self.settings.default_recipient
        if not recipient:
            raise MissingRecipientError()
        if not EMAIL_PATTERN.match(recipient):
            raise InvalidRecipientError(recipient)

        from_header = build_from_header(profile.from_address, profile.from_name)
        if not from_header:
            raise MissingFromAddressError(normalize_sender_key(request.sender_key) or None)

        return ValidatedDelivery(transport=transport, profile=profile,
                                 recipient=recipient, from_header=from_header)

    def resolve_transport(self, sender_key, log: DeliveryLog):
        """
        Resolve the sender profile and its transport settings

        Raises:
            IncompleteServerConfigError: Host, port, user, secret or from-address missing
        """
        key = normalize_sender_key(sender_key)
        profile = self.settings.resolve_sender(key)
        known = key in self.settings.sender_profiles
        log.info("Sender profile resolved", fields={
            "sender_key": key or "default",
            "profile": key if known else "default",
            "user": profile.user,
            "secret": profile.secret,
            "from": profile.from_address,
        })

        settings = self.settings
        required = (
            ("host", settings.smtp_host),
            ("port", settings.smtp_port),
            ("user", profile.user),
            ("secret", profile.secret),
            ("from_address", profile.from_address),
        )
        missing = [name for name, value in required if not value]
        if missing:
            raise IncompleteServerConfigError(missing, sender_key=key or None)

        transport = TransportConfig(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=profile.user,
            secret=profile.secret,
            verify_tls=settings.smtp_tls_verify,
            timeout=settings.smtp_timeout,
        )
        return transport, profile

    def _deliver(self, request: DeliveryRequest, validated: ValidatedDelivery, log: DeliveryLog):
        now = self.clock()
        message = build_message(
            from_header=validated.from_header,
            to=validated.recipient,
            subject=request.subject or build_subject(request.client_name, now),
            text=request.text or build_text_body(request.client_name, now),
            html=request.html or None,
            document=request.document,
            filename=request.filename,
        )

        config = validated.transport
        transport = self.transport_factory(config, log)
        log.info("Opening mail transport", fields={
            "host": config.host,
            "port": config.port,
            "tls": "implicit" if config.implicit_tls else "starttls",
            "verify_tls": config.verify_tls,
        })
        try:
            try:
                transport.open()
                transport.verify()
            except TRANSPORT_ERRORS as e:
                log.warning(f"Transport verification failed: {type(e).__name__}: {e}")
                raise TransportVerifyError(type(e).__name__) from e
            log.info("Transport verified")

            try:
                refused = transport.send(message)
            except TRANSPORT_ERRORS as e:
                log.warning(f"Send failed after verified connection: {type(e).__name__}: {e}")
                raise SendFailedError(type(e).__name__) from e
            if refused:
                log.warning("Recipients refused", fields={"refused": sorted(refused)})
                raise SendFailedError("recipient refused")
        finally:
            transport.close()
            log.debug("Transport closed")

    @staticmethod
    def _failure(error: CedulaError, log: DeliveryLog) -> DeliveryOutcome:
        handle_error(error, log)
        return DeliveryOutcome(ok=False, message=error.message, error_id=log.error_id,
                               status_code=error.status_code, error_code=error.error_code)
