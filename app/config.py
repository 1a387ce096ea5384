"""
Settings for the Email Auto-Responder, read once from the environment / .env
"""
import logging
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Mailbox (IMAP)
    email_user: str = ""
    email_pass: str = ""
    imap_host: str = "imap.gmail.com"
    imap_port: int = 993
    imap_mailbox: str = "INBOX"
    imap_skip_cert_verify: bool = False  # Opt-out only; certificates are verified by default

    # Outbound mail (SMTP); falls back to the mailbox credentials
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 465
    smtp_user: Optional[str] = None
    smtp_pass: Optional[str] = None
    reply_from_name: str = "AI Email Assistant"

    # Completion service
    anthropic_api_key: Optional[str] = None
    completion_model: str = "claude-3-5-haiku-latest"

    # Reply policy
    allowed_sender: str = ""
    allowed_sender_case_sensitive: bool = True

    # Watcher timing
    check_interval: float = 300.0  # seconds
    max_retries: int = 5
    retry_delay: float = 10.0  # seconds
    dedupe_window: float = 300.0  # seconds

    # HTTP surface
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def outbound_user(self) -> str:
        return self.smtp_user or self.email_user

    @property
    def outbound_password(self) -> str:
        return self.smtp_pass or self.email_pass

    def validate_required(self) -> None:
        """
        Check the settings the service cannot start without.

        Raises:
            ConfigurationError: If mailbox credentials or the allowed sender are missing
        """
        missing = []
        if not self.email_user:
            missing.append("EMAIL_USER")
        if not self.email_pass:
            missing.append("EMAIL_PASS")
        if not self.allowed_sender:
            missing.append("ALLOWED_SENDER")

        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        if not self.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY not set - every reply will use the fallback text")

        if self.imap_skip_cert_verify:
            logger.warning("IMAP certificate verification is disabled (IMAP_SKIP_CERT_VERIFY)")


def get_settings() -> Settings:
    """
    Get settings instance from environment variables.

    Returns:
        Settings instance
    """
    return Settings()
