"""
Error Handling System
Provides consistent error responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class CedulaError(Exception):
    """Base exception for capture, composition and delivery errors"""
    status_code = 500

    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Capture
class CaptureError(CedulaError):
    """Capture device errors"""
    status_code = 409


class DeviceUnavailableError(CaptureError):
    """No usable capture device (denied, vanished or no capture stack)"""
    def __init__(self, device_id=None, reason=None):
        super().__init__(
            message="No se pudo iniciar la camara. Sube una imagen manualmente.",
            error_code="DEVICE_UNAVAILABLE",
            details={
                "device_id": device_id,
                "reason": reason,
                "suggestion": "Check camera connection and permissions, or use manual upload"
            }
        )


class NotReadyError(CaptureError):
    """Capture requested with no active stream or no valid frame yet"""
    def __init__(self, reason=None):
        super().__init__(
            message="La camara aun no esta lista para capturar.",
            error_code="NOT_READY",
            details={
                "reason": reason,
                "suggestion": "Start the camera and wait for the preview before capturing"
            }
        )


# Layer 2 Errors - Composition
class CompositionError(CedulaError):
    """Document composition errors"""
    status_code = 400


class UnsupportedImageFormatError(CompositionError):
    """Image payload is neither JPEG nor PNG"""
    def __init__(self, mime_type=None):
        super().__init__(
            message="Formato de imagen no soportado.",
            error_code="UNSUPPORTED_IMAGE_FORMAT",
            details={
                "mime_type": mime_type,
                "suggestion": "Use a JPEG or PNG image"
            }
        )


class ImageDecodeError(CompositionError):
    """Image payload could not be decoded"""
    def __init__(self, reason=None):
        super().__init__(
            message="No se pudo leer la imagen.",
            error_code="DECODE_ERROR",
            details={
                "reason": str(reason) if reason else None,
                "suggestion": "Capture or upload the image again"
            }
        )


# Layer 3 Errors - Delivery
class DeliveryError(CedulaError):
    """Delivery errors; status_code is the HTTP status reported to the caller"""
    pass


class MalformedRequestError(DeliveryError):
    """Request body could not be parsed"""
    status_code = 400

    def __init__(self, reason=None):
        super().__init__(
            message="La solicitud no tiene un formato valido.",
            error_code="MALFORMED_REQUEST",
            details={"reason": reason}
        )


class MissingFieldsError(DeliveryError):
    """Document bytes or filename missing"""
    status_code = 400

    def __init__(self, fields=None):
        super().__init__(
            message="Faltan datos para enviar el PDF.",
            error_code="MISSING_FIELDS",
            details={"fields": fields or []}
        )


class PayloadTooLargeError(DeliveryError):
    """Document exceeds the size limit"""
    status_code = 413

    def __init__(self, size, limit):
        super().__init__(
            message=f"El PDF supera el limite de {limit // (1024 * 1024)}MB.",
            error_code="PAYLOAD_TOO_LARGE",
            details={"size": size, "limit": limit}
        )


class IncompleteServerConfigError(DeliveryError):
    """Resolved sender profile lacks transport settings"""
    status_code = 400

    def __init__(self, missing, sender_key=None):
        super().__init__(
            message="Faltan variables SMTP en el servidor.",
            error_code="INCOMPLETE_SERVER_CONFIG",
            details={
                "missing": missing,
                "sender_key": sender_key,
                "suggestion": "Set the SMTP_* and EMAIL_FROM variables for this sender"
            }
        )


class MissingRecipientError(DeliveryError):
    """No destination address in request or configuration"""
    status_code = 400

    def __init__(self):
        super().__init__(
            message="Falta el correo de destino.",
            error_code="MISSING_RECIPIENT",
            details={"suggestion": "Send 'to' or configure EMAIL_TO"}
        )


class InvalidRecipientError(DeliveryError):
    """Destination address does not look like local@domain.tld"""
    status_code = 400

    def __init__(self, address):
        super().__init__(
            message="El correo de destino no es valido.",
            error_code="INVALID_RECIPIENT",
            details={"to": address}
        )


class MissingFromAddressError(DeliveryError):
    """From header could not be composed"""
    status_code = 400

    def __init__(self, sender_key=None):
        super().__init__(
            message="Falta el remitente del correo.",
            error_code="MISSING_FROM_ADDRESS",
            details={"sender_key": sender_key}
        )


class TransportVerifyError(DeliveryError):
    """Mail server refused the connection or the credentials"""
    status_code = 502

    def __init__(self, reason=None):
        super().__init__(
            message="El servidor de correo rechazo la conexion o las credenciales.",
            error_code="TRANSPORT_VERIFY_FAILED",
            details={"reason": reason}
        )


class SendFailedError(DeliveryError):
    """Delivery failed after a verified connection"""
    status_code = 500

    def __init__(self, reason=None):
        super().__init__(
            message="No fue posible enviar el correo.",
            error_code="SEND_FAILED",
            details={"reason": reason}
        )


# Error response helpers
def handle_error(error, log=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log: Optional logger (or adapter) to report through

    Returns:
        dict: Error response for JSON serialization
    """
    log = log or logger
    if isinstance(error, CedulaError):
        log.error(f"{error.error_code}: {error.message}")
        if error.details:
            log.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        log.error(f"Unexpected error: {error}")
        log.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__
            }
        }
