"""Configuration management for the Promptly Printed backend.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the PROMPTLY_ prefix,
allowing deployments to be customised without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (PROMPTLY_* prefix)
2. .env file in the project root
3. Default values defined in PromptlyConfig

Example .env file:
    PROMPTLY_DATABASE_PATH=data/promptly.db
    PROMPTLY_PRODIGI_API_KEY=sandbox-key
    PROMPTLY_PRODIGI_API_URL=https://api.sandbox.prodigi.com/v4.0
    PROMPTLY_SQUARE_ACCESS_TOKEN=EAAA...

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
Route handlers and the ``main()`` entry point read from it; tests build their
own instances pointing at temporary directories.

Usage Example
-------------
    from promptly.core.config import config

    print(config.database_path)
    print(config.points_per_level)

Ledger Constants
----------------
The point and credit ledgers take their tunables from here rather than from
module constants so that seasonal campaigns can change them per deployment:

- points_per_level: points required per level step (level = points // step + 1)
- monthly_credits: allowance restored at the start of each calendar month
- tshirt_purchase_bonus: credits granted per T-shirt bought
- guest_daily_limit: anonymous generations allowed per rolling 24 hours
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PromptlyConfig(BaseSettings):
    """Main configuration for the Promptly Printed backend.

    Attributes
    ----------
    Paths:
        data_dir : Path
            Directory holding the SQLite database and generated assets
        database_path : Path
            SQLite database file (relative paths resolve under the cwd)

    Server:
        server_host : str
            uvicorn bind address
        server_port : int
            uvicorn port (1024-65535)

    Prodigi:
        prodigi_api_key : str
            API key sent as ``X-API-Key``
        prodigi_api_url : str
            Base URL including the API version (sandbox by default)
        prodigi_timeout : float
            Request timeout in seconds
        prodigi_callback_url : str | None
            Default webhook URL attached to new orders
        action_cache_ttl_seconds : int
            How long a cached ``availableActions`` map is served before
            Prodigi is asked again

    Square:
        square_access_token : str
            Bearer token for the payments API
        square_api_url : str
            Base URL (sandbox by default)
        square_version : str
            Value of the ``Square-Version`` header
        square_timeout : float
            Request timeout in seconds
        square_location_id : str
            Location the credit-pack payment links are created for
        square_webhook_signature_key : str
            Key for ``x-square-hmacsha256-signature``; the credits webhook
            answers 500 while it is empty
        square_webhook_url : str
            Notification URL registered with Square (part of the signed
            payload)
        currency : str
            ISO currency for refunds
        public_base_url : str
            Storefront root used for checkout redirect URLs

    Ledgers:
        points_per_level, monthly_credits, welcome_credits,
        tshirt_purchase_bonus, guest_daily_limit

    Leaderboard:
        leaderboard_default_limit, leaderboard_max_limit

    Notes
    -----
    - The data directory is created automatically if it doesn't exist
    - Configuration is immutable after initialization
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PROMPTLY_",
        case_sensitive=False,
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for the database and generated assets",
    )
    database_path: Path = Field(
        default=Path("data/promptly.db"),
        description="SQLite database file",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address",
    )
    server_port: int = Field(
        default=8000,
        description="Server port",
        ge=1024,
        le=65535,
    )

    # Prodigi fulfilment
    prodigi_api_key: str = Field(
        default="",
        description="Prodigi API key (X-API-Key header)",
    )
    prodigi_api_url: str = Field(
        default="https://api.sandbox.prodigi.com/v4.0",
        description="Prodigi API base URL",
    )
    prodigi_timeout: float = Field(default=30.0, gt=0)
    prodigi_callback_url: str | None = Field(
        default=None,
        description="Webhook URL attached to new Prodigi orders",
    )
    action_cache_ttl_seconds: int = Field(
        default=300,
        description="Freshness window for cached order actions",
        ge=0,
    )

    # Square payments
    square_access_token: str = Field(default="")
    square_api_url: str = Field(default="https://connect.squareupsandbox.com")
    square_version: str = Field(default="2024-01-18")
    square_timeout: float = Field(default=30.0, gt=0)
    square_location_id: str = Field(default="")
    square_webhook_signature_key: str = Field(default="")
    square_webhook_url: str = Field(default="")
    currency: str = Field(default="USD", min_length=3, max_length=3)
    public_base_url: str = Field(default="http://localhost:3000")

    # Points and credits
    points_per_level: int = Field(default=500, gt=0)
    monthly_credits: float = Field(default=50, ge=0)
    welcome_credits: float = Field(default=50, ge=0)
    tshirt_purchase_bonus: float = Field(default=10, ge=0)
    guest_daily_limit: int = Field(default=3, ge=0)

    # Leaderboard
    leaderboard_default_limit: int = Field(default=10, gt=0)
    leaderboard_max_limit: int = Field(default=100, gt=0)

    def __init__(self, **kwargs):
        """Initialize configuration and create the data directory.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


# Global configuration instance
# Loads values from environment variables (PROMPTLY_* prefix) and .env file.
config = PromptlyConfig()
