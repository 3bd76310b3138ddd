"""
Layer 3 — Delivery diagnostics
Every log line of a dispatch goes through DeliveryLog: it carries the
request's correlation id and never renders a secret value.
"""
import logging
import uuid
from typing import Mapping, Optional

SECRET_FIELD_MARKERS = ("secret", "pass", "token", "credential")


def new_error_id() -> str:
    """Correlation id shared by the client-visible outcome and the server logs"""
    return uuid.uuid4().hex[:12]


def is_secret_field(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SECRET_FIELD_MARKERS)


def redact_fields(fields: Optional[Mapping[str, object]]) -> dict:
    """Replace secret-like values by 'present'/'missing'"""
    redacted = {}
    for name, value in (fields or {}).items():
        if is_secret_field(name):
            redacted[name] = "present" if value else "missing"
        else:
            redacted[name] = value
    return redacted


def format_fields(fields: Mapping[str, object]) -> str:
    return " ".join(f"{name}={value!r}" for name, value in fields.items())


class DeliveryLog(logging.LoggerAdapter):
    """
    Logger adapter bound to one dispatch.

    Usage:
        log = DeliveryLog(logger, error_id)
        log.info("Profile resolved", fields={"user": user, "secret": secret})
        # [3f2a9c1b0d4e] Profile resolved user='ops@example.com' secret='present'
    """

    def __init__(self, logger: logging.Logger, error_id: str):
        super().__init__(logger, {"error_id": error_id})
        self.error_id = error_id

    def process(self, msg, kwargs):
        fields = redact_fields(kwargs.pop("fields", None))
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("error_id", self.error_id)
        kwargs["extra"] = extra

        text = f"[{self.error_id}] {msg}"
        if fields:
            text = f"{text} {format_fields(fields)}"
        return text, kwargs
