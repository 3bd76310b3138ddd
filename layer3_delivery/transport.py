"""
Layer 3 — Mail transport
Thin SMTP connection wrapper: open (implicit TLS or STARTTLS), verify
(EHLO + login), send, close.
"""
import abc
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Optional

from config import IMPLICIT_TLS_PORT
from .diagnostics import DeliveryLog

logger = logging.getLogger(__name__)

# Errors a transport may raise while connecting, authenticating or sending
TRANSPORT_ERRORS = (smtplib.SMTPException, ssl.SSLError, OSError)


@dataclass(frozen=True)
class TransportConfig:
    """Connection settings resolved for one sender profile"""
    host: str
    port: int
    user: str
    secret: str
    verify_tls: bool = True
    timeout: float = 30.0

    @property
    def implicit_tls(self) -> bool:
        return self.port == IMPLICIT_TLS_PORT

    def __repr__(self):
        secret = "present" if self.secret else "missing"
        return (f"TransportConfig(host={self.host!r}, port={self.port}, user={self.user!r}, "
                f"secret={secret}, verify_tls={self.verify_tls})")


class MailTransport(abc.ABC):
    """Connection to a mail server scoped to one sender profile"""

    def __init__(self, config: TransportConfig, log: Optional[DeliveryLog] = None):
        """
        Args:
            config: Connection settings for one sender profile
            log: Dispatch log; transport lines then carry its correlation id
        """
        self.config = config
        self.log = DeliveryLog(logger, log.error_id) if log is not None else logger

    @abc.abstractmethod
    def open(self):
        """Connect and secure the channel"""

    @abc.abstractmethod
    def verify(self):
        """Authenticate and confirm the server accepts the session"""

    @abc.abstractmethod
    def send(self, message: EmailMessage) -> dict:
        """Send a message; returns the refused recipients"""

    @abc.abstractmethod
    def close(self):
        """Release the connection; must not raise"""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class SMTPTransport(MailTransport):
    """smtplib transport: SMTP_SSL on port 465, SMTP + STARTTLS otherwise"""

    def __init__(self, config: TransportConfig, log: Optional[DeliveryLog] = None):
        super().__init__(config, log)
        self._smtp = None

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if not self.config.verify_tls:
            self.log.warning(f"TLS certificate verification disabled for {self.config.host}")
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def open(self):
        cfg = self.config
        context = self._ssl_context()
        if cfg.implicit_tls:
            self.log.debug(f"Connecting to {cfg.host}:{cfg.port} (implicit TLS)")
            self._smtp = smtplib.SMTP_SSL(cfg.host, cfg.port, timeout=cfg.timeout, context=context)
        else:
            self.log.debug(f"Connecting to {cfg.host}:{cfg.port} (STARTTLS)")
            self._smtp = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout)
            self._smtp.ehlo()
            self._smtp.starttls(context=context)
        self._smtp.ehlo()

    def verify(self):
        if self._smtp is None:
            raise smtplib.SMTPServerDisconnected("transport not open")
        self._smtp.login(self.config.user, self.config.secret)
        code, _ = self._smtp.noop()
        if code != 250:
            raise smtplib.SMTPResponseException(code, b"NOOP rejected after login")

    def send(self, message: EmailMessage) -> dict:
        if self._smtp is None:
            raise smtplib.SMTPServerDisconnected("transport not open")
        return self._smtp.send_message(message)

    def close(self):
        smtp, self._smtp = self._smtp, None
        if smtp is None:
            return
        try:
            smtp.quit()
        except TRANSPORT_ERRORS as e:
            self.log.debug(f"SMTP QUIT failed ({type(e).__name__}), closing socket")
            smtp.close()
