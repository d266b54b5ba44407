"""Shared configuration."""
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for the storefront order service."""

    # Service info
    service_name: str = "order-service"
    service_port: int = 8001

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "storefront"
    database_dsn: Optional[str] = None

    # Logging
    log_level: str = "INFO"

    # Storefront links and branding used in messages
    client_url: str = "http://localhost:5174"
    brand_name: str = "CalistaLife"
    brand_logo_url: Optional[str] = None
    support_email: str = "support@calistalife.com"
    order_number_prefix: str = "CL"

    # Email
    email_from: Optional[str] = None
    email_from_name: str = "CalistaLife"
    email_provider_priority: str = "brevo,mailgun"
    brevo_api_key: Optional[str] = None
    brevo_api_base_url: str = "https://api.brevo.com/v3"
    mailgun_api_key: Optional[str] = None
    mailgun_domain: Optional[str] = None
    mailgun_api_base_url: str = "https://api.mailgun.net"
    provider_timeout_seconds: float = 10.0
    order_email_bcc: str = ""

    # SMS
    brevo_sms_sender: Optional[str] = None

    # Notification queue
    notification_retry_ceiling: int = 3
    notification_sweep_interval_seconds: float = 30.0
    notification_sweep_batch_size: int = 10
    notification_claim_lease_seconds: float = 300.0
    follow_up_delay_days: int = 3
    processing_email_delay_minutes: int = 90
    idempotent_scheduling: bool = False

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_dsn:
            return self.database_dsn
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def storefront_url(self) -> str:
        """Client URL without a trailing slash."""
        return self.client_url.rstrip("/")

    @property
    def logo_url(self) -> str:
        """Brand logo shown in email headers."""
        return self.brand_logo_url or f"{self.storefront_url}/logo.svg"

    @property
    def bcc_list(self) -> List[str]:
        """Parse the comma-separated BCC setting."""
        return [item.strip() for item in self.order_email_bcc.split(",") if item.strip()]

    @property
    def email_providers(self) -> List[str]:
        """Email providers in priority order, lower-cased."""
        return [
            item.strip().lower()
            for item in self.email_provider_priority.split(",")
            if item.strip()
        ]

    class Config:
        env_file = ".env"
        case_sensitive = False
