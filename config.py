"""
Process configuration
Built once at startup from the environment and passed by reference to the
capture and delivery layers. Never mutated afterwards.
"""
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

logger = logging.getLogger(__name__)

IMPLICIT_TLS_PORT = 465
DEFAULT_SENDER_KEY = "default"

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_WHITESPACE = re.compile(r"\s+")


def normalize_secret(value: Optional[str]) -> str:
    """Strip every whitespace character; operators paste app passwords with separators."""
    return _WHITESPACE.sub("", value or "")


def normalize_sender_key(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


@dataclass(frozen=True)
class SenderProfile:
    """Outbound mail identity; secret is already whitespace-normalized"""
    user: str = ""
    secret: str = ""
    from_address: str = ""
    from_name: str = ""

    def merged_over(self, default: "SenderProfile") -> "SenderProfile":
        """Fill every unset field from the default profile"""
        return SenderProfile(
            user=self.user or default.user,
            secret=self.secret or default.secret,
            from_address=self.from_address or default.from_address,
            from_name=self.from_name or default.from_name,
        )

    def __repr__(self):
        secret = "present" if self.secret else "missing"
        return (f"SenderProfile(user={self.user!r}, secret={secret}, "
                f"from_address={self.from_address!r}, from_name={self.from_name!r})")


@dataclass(frozen=True)
class Settings:
    """Read-only, process-wide configuration"""
    smtp_host: str = ""
    smtp_port: Optional[int] = None
    smtp_timeout: float = 30.0
    smtp_tls_verify: bool = True
    default_profile: SenderProfile = field(default_factory=SenderProfile)
    sender_profiles: Dict[str, SenderProfile] = field(default_factory=dict)
    default_recipient: str = ""
    capture_backend: str = "opencv"
    camera_max_index: int = 9
    camera_poll_interval: float = 2.0
    capture_max_width: int = 1600
    log_level: str = "INFO"
    cors_origins: str = "*"

    @property
    def implicit_tls(self) -> bool:
        return self.smtp_port == IMPLICIT_TLS_PORT

    def resolve_sender(self, sender_key: Optional[str]) -> SenderProfile:
        """
        Resolve a sender profile by key (trimmed, case-insensitive)

        Unknown or empty keys resolve to the default profile; a known profile
        falls back to the default one field by field.
        """
        key = normalize_sender_key(sender_key)
        override = self.sender_profiles.get(key)
        if override is None:
            return self.default_profile
        return override.merged_over(self.default_profile)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Settings: Frozen configuration object
        """
        env = os.environ if environ is None else environ

        port_raw = _clean(env.get('SMTP_PORT'))
        try:
            smtp_port = int(port_raw) if port_raw else None
        except ValueError:
            logger.warning(f"Ignoring non-numeric SMTP_PORT: {port_raw!r}")
            smtp_port = None

        default_profile = cls._profile_from_env(env, suffix="")

        profiles = {}
        for name in _clean(env.get('SENDER_PROFILES')).split(','):
            key = normalize_sender_key(name)
            if not key or key == DEFAULT_SENDER_KEY:
                continue
            profiles[key] = cls._profile_from_env(env, suffix=f"_{key.upper()}")

        settings = cls(
            smtp_host=_clean(env.get('SMTP_HOST')),
            smtp_port=smtp_port,
            smtp_timeout=float(env.get('SMTP_TIMEOUT', 30)),
            smtp_tls_verify=env.get('SMTP_TLS_VERIFY', 'true').strip().lower() in _TRUE_VALUES,
            default_profile=default_profile,
            sender_profiles=profiles,
            default_recipient=_clean(env.get('EMAIL_TO')),
            capture_backend=_clean(env.get('CAPTURE_BACKEND', 'opencv')).lower() or 'opencv',
            camera_max_index=int(env.get('CAMERA_MAX_INDEX', 9)),
            camera_poll_interval=float(env.get('CAMERA_POLL_INTERVAL', 2.0)),
            capture_max_width=int(env.get('CAPTURE_MAX_WIDTH', 1600)),
            log_level=_clean(env.get('LOG_LEVEL', 'INFO')).upper() or 'INFO',
            cors_origins=_clean(env.get('CORS_ORIGINS', '*')) or '*',
        )

        logger.info("Settings loaded")
        logger.debug(f"  SMTP: {settings.smtp_host or '<unset>'}:{settings.smtp_port or '<unset>'}")
        logger.debug(f"  Sender profiles: {sorted(profiles) or 'none'}")
        if not settings.smtp_tls_verify:
            logger.warning("SMTP_TLS_VERIFY is off: mail server certificates are NOT validated")
        return settings

    @staticmethod
    def _profile_from_env(env, suffix):
        return SenderProfile(
            user=_clean(env.get(f'SMTP_USER{suffix}')),
            secret=normalize_secret(env.get(f'SMTP_PASS{suffix}')),
            from_address=_clean(env.get(f'EMAIL_FROM{suffix}')),
            from_name=_clean(env.get(f'EMAIL_FROM_NAME{suffix}')),
        )
