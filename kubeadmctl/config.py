"""Process-level settings for the kubeadmctl application."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file if it exists
load_dotenv()


class Config:
    """Application configuration with sensible defaults."""

    # Inventory
    DEFAULT_INVENTORY: str = os.getenv("KUBEADMCTL_INVENTORY", "cluster_config.yaml")

    # Timeouts (in seconds)
    VERSION_LOOKUP_TIMEOUT: int = int(os.getenv("VERSION_LOOKUP_TIMEOUT", "10"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT: str = os.getenv(
        "LOG_FORMAT",
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Security
    REDACT_KEYS: tuple = ("password", "secret", "token", "certificate_key", "discovery")
