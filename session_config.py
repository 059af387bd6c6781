import os
import logging
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32

# Defaults
MAX_AGE = 24 * 60 * 60        # 24 hour cookie lifetime
IDLE_TIMEOUT = 30 * 60        # 30 minutes between requests
ABSOLUTE_TIMEOUT = 8 * 60 * 60  # 8 hours from login
COOKIE_NAME = "study-session"
COOKIE_HTTPONLY = True
COOKIE_SAMESITE = "strict"


class ConfigurationError(Exception):
    """Raised at startup when the session layer cannot be configured safely."""


class SessionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    max_age: int = Field(default=MAX_AGE, gt=0)
    idle_timeout: int = Field(default=IDLE_TIMEOUT, gt=0)
    absolute_timeout: int = Field(default=ABSOLUTE_TIMEOUT, gt=0)
    renew_on_activity: bool = True
    check_client_address: bool = True
    check_client_agent: bool = True
    production: bool = False
    cookie_name: str = COOKIE_NAME
    trust_proxy: bool = False

    @field_validator("secret")
    @classmethod
    def _secret_strength(cls, value: str) -> str:
        check_secret(value)
        return value

    @property
    def max_age_ms(self) -> int:
        return self.max_age * 1000

    @property
    def idle_timeout_ms(self) -> int:
        return self.idle_timeout * 1000

    @property
    def absolute_timeout_ms(self) -> int:
        return self.absolute_timeout * 1000

    @property
    def checks_fingerprint(self) -> bool:
        return self.check_client_address or self.check_client_agent


def check_secret(secret: Optional[str]) -> None:
    if not secret:
        raise ConfigurationError(
            "SESSION_SECRET is required for secure session management. "
            "Generate with: openssl rand -base64 32"
        )
    if len(secret) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            f"SESSION_SECRET must be at least {MIN_SECRET_LENGTH} characters long. "
            "Generate with: openssl rand -base64 32"
        )


def build_session_config(**values) -> SessionConfig:
    """Build a SessionConfig, turning validation failures into ConfigurationError."""
    try:
        return SessionConfig(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid session configuration: {e}") from e


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value!r}")


def _parse_seconds(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer number of seconds") from e


def load_session_config() -> SessionConfig:
    """Load the session configuration from the environment (and a .env file)."""
    load_dotenv()

    config = build_session_config(
        secret=os.getenv("SESSION_SECRET"),
        max_age=_parse_seconds("SESSION_MAX_AGE_SECONDS", MAX_AGE),
        idle_timeout=_parse_seconds("SESSION_IDLE_TIMEOUT_SECONDS", IDLE_TIMEOUT),
        absolute_timeout=_parse_seconds("SESSION_ABSOLUTE_TIMEOUT_SECONDS", ABSOLUTE_TIMEOUT),
        renew_on_activity=_parse_bool(os.getenv("SESSION_RENEW_ON_ACTIVITY"), True),
        check_client_address=_parse_bool(os.getenv("SESSION_CHECK_CLIENT_ADDRESS"), True),
        check_client_agent=_parse_bool(os.getenv("SESSION_CHECK_CLIENT_AGENT"), True),
        production=os.getenv("APP_ENV", "development").lower() == "production",
        cookie_name=os.getenv("SESSION_COOKIE_NAME", COOKIE_NAME),
        trust_proxy=_parse_bool(os.getenv("TRUST_PROXY"), False),
    )
    logger.info(
        f"Session config loaded: idle={config.idle_timeout}s absolute={config.absolute_timeout}s "
        f"max_age={config.max_age}s production={config.production}"
    )
    return config
