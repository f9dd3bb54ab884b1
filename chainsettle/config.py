"""Centralized configuration management for the ChainSettle orchestrator.

Loads all configuration from environment variables with sensible defaults.
"""

from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Config(BaseSettings):
    """Main configuration class for the orchestrator and its chain sources."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Chain RPC endpoints
    bsc_rpc_url: str = Field(default="https://bsc-dataseed.binance.org", description="BSC JSON-RPC endpoint")
    solana_rpc_url: str = Field(default="https://api.devnet.solana.com", description="Solana RPC endpoint")
    rpc_timeout_seconds: float = Field(default=15.0)

    # Merchant receiving wallets
    bsc_merchant_address: str = Field(default="", description="Merchant EVM address on BSC")
    solana_merchant_address: str = Field(default="", description="Merchant Solana address")

    # Service
    orchestrator_host: str = Field(default="0.0.0.0")
    orchestrator_port: int = Field(default=4030)

    # Terminal (TPE) gateway notifications
    tpe_notify_url: str = Field(default="", description="Terminal gateway webhook URL; empty logs only")
    webhook_secret: str = Field(
        default="change_me_in_production",
        description="Shared secret for HMAC notification signatures",
    )

    # Database
    database_path: str = Field(default="./chainsettle.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # Quotes
    quote_timeout_seconds: float = Field(default=2.0, description="Per-provider quote deadline")
    simulate_quote_latency: bool = Field(default=True, description="Sleep inside stub providers")

    # Chain watcher
    watcher_poll_interval: float = Field(default=3.0, description="Seconds between balance polls")
    watcher_history_limit: int = Field(default=10, description="References fetched per change event")
    watcher_resubscribe_delay: float = Field(default=5.0)


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["orchestrator", "watcher"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    errors = []

    if service in ["orchestrator", "watcher"]:
        if not config.bsc_merchant_address and not config.solana_merchant_address:
            errors.append("Either BSC_MERCHANT_ADDRESS or SOLANA_MERCHANT_ADDRESS must be set")

    if service == "watcher" and config.watcher_poll_interval <= 0:
        errors.append("WATCHER_POLL_INTERVAL must be positive")

    if config.tpe_notify_url and config.webhook_secret == "change_me_in_production":
        errors.append("WEBHOOK_SECRET must be changed when TPE_NOTIFY_URL is set")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
