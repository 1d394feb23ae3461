"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "fulfillment-service"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "fulfillment"
    database_url_override: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Redis (token cache and rate limiting)
    redis_host: str = "localhost"
    redis_port: int = 6379

    # Logging
    log_level: str = "INFO"

    # Payments
    stripe_webhook_secret: str = ""
    stripe_api_key: str = ""

    # Secrets
    credentials_encryption_key: str = ""
    merchant_api_key: str = ""

    # Shipment retry policy (background path, e.g. webhook-triggered)
    shipment_max_attempts: int = 3
    shipment_base_delay: float = 1.0
    shipment_backoff_factor: float = 2.0
    shipment_max_delay: float = 30.0
    shipment_deadline: float = 60.0

    # Shipment retry policy (interactive dashboard requests)
    interactive_max_attempts: int = 2
    interactive_base_delay: float = 0.5
    interactive_deadline: float = 8.0

    # Carriers
    carrier_timeout: float = 15.0
    token_cache_backend: str = "memory"  # memory | redis

    # Inventory
    reservation_minutes: int = 15

    # Public tracking
    tracking_rate_limit: int = 30
    tracking_rate_window: int = 60

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        return f"redis://{self.redis_host}:{self.redis_port}"

    class Config:
        env_file = ".env"
        case_sensitive = False
