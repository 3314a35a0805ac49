"""Centralized configuration management for the arcade reward engine.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()

PLACEHOLDER_SECRET = "change_me_in_production"


class Config(BaseSettings):
    """Main configuration class for the reward engine service."""

    # Service
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=4030)

    # Database
    database_path: str = Field(default="./arcade_rewards.db")

    # Webhook Security
    webhook_secret: str = Field(
        default=PLACEHOLDER_SECRET,
        description="Shared secret the commerce platform signs order webhooks with",
    )
    webhook_processing_timeout_seconds: float = Field(
        default=300.0, description="After this long a delivery stuck in processing may be taken over"
    )

    # Commerce platform (discount code creation)
    commerce_api_version: str = Field(default="2024-01")
    commerce_timeout_seconds: float = Field(default=10.0)

    # Reward issuance
    discount_code_prefix: str = Field(default="BARGAIN", description="Prefix of every issued code")
    discount_type: Literal["percentage", "fixed_amount"] = Field(default="percentage")
    issuance_max_attempts: int = Field(
        default=5, description="External creation attempts before a pending code is given up"
    )

    # Play sessions
    max_score: int = Field(default=10_000, description="Highest score accepted from a game")
    eligibility_window: int = Field(
        default=100, description="Recent sessions inspected by the eligibility gate"
    )
    ephemeral_session_prefix: str = Field(default="temp-")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["api", "worker"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service == "api":
        if not config.webhook_secret or config.webhook_secret == PLACEHOLDER_SECRET:
            errors.append("WEBHOOK_SECRET must be set to the commerce platform's signing secret")

    if not config.database_path:
        errors.append("DATABASE_PATH must not be empty")

    if config.max_score <= 0:
        errors.append("MAX_SCORE must be positive")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
