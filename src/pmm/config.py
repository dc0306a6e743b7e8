"""Configuration management for pmm."""

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Wallet Configuration
    private_key: Optional[SecretStr] = Field(
        default=None,
        description="Private key of the signing EOA (hex string with 0x prefix)",
    )
    wallet_address: Optional[str] = Field(
        default=None,
        description="Signer (EOA) address",
    )
    proxy_address: Optional[str] = Field(
        default=None,
        description="Funding proxy wallet address; orders settle against it (defaults to signer)",
    )
    signature_type: int = Field(
        default=0,
        description="Order signature type (0=EOA, 1=POLY_PROXY, 2=POLY_GNOSIS_SAFE)",
        ge=0,
        le=2,
    )

    # Network Configuration
    polygon_rpc_url: str = Field(
        default="https://polygon-rpc.com",
        description="Polygon RPC endpoint URL",
    )
    chain_id: int = Field(
        default=137,
        description="Chain ID (137 for Polygon mainnet)",
    )

    # API Endpoints
    clob_base_url: str = Field(
        default="https://clob.polymarket.com",
        description="Polymarket CLOB API base URL",
    )
    gamma_base_url: str = Field(
        default="https://gamma-api.polymarket.com",
        description="Polymarket Gamma API base URL",
    )
    ws_market_url: str = Field(
        default="wss://ws-subscriptions-clob.polymarket.com/ws/market",
        description="Market data WebSocket URL",
    )
    ws_user_url: str = Field(
        default="wss://ws-subscriptions-clob.polymarket.com/ws/user",
        description="User (fills / order status) WebSocket URL",
    )

    # Polymarket API Credentials (L2 Auth)
    poly_api_key: Optional[str] = Field(
        default=None,
        description="Polymarket API key for L2 authentication",
    )
    poly_api_secret: Optional[SecretStr] = Field(
        default=None,
        description="Polymarket API secret for L2 authentication",
    )
    poly_api_passphrase: Optional[SecretStr] = Field(
        default=None,
        description="Polymarket API passphrase for L2 authentication",
    )

    # Mode
    dry_run: bool = Field(
        default=True,
        description="If true, log intended orders without sending them",
    )

    # Market selection
    market_slugs: list[str] = Field(
        default_factory=list,
        description="Explicit market slugs to quote (empty = discover)",
    )
    max_active_markets: int = Field(
        default=2,
        description="Maximum markets to quote when discovering",
        ge=1,
        le=20,
    )
    min_volume_usdc: float = Field(
        default=5000.0,
        description="Minimum 24h CLOB volume for discovered markets",
        ge=0.0,
    )

    # Quoting
    target_spread_cents: float = Field(
        default=3.0,
        description="Base target spread in cents",
        ge=0.1,
        le=100.0,
    )
    tick_improvement: int = Field(
        default=1,
        description="Ticks to improve on the best opposite-side price for queue priority",
        ge=0,
        le=10,
    )
    default_tick_size: float = Field(
        default=0.001,
        description="Tick size used when the book does not report one",
        ge=0.0001,
        le=0.1,
    )
    min_spread_multiplier: float = Field(
        default=0.5,
        description="Lower bound on target spread as a multiple of the base spread",
        ge=0.1,
        le=10.0,
    )
    max_spread_multiplier: float = Field(
        default=2.0,
        description="Upper bound on target spread as a multiple of the base spread",
        ge=0.1,
        le=10.0,
    )
    max_distance_from_mid: float = Field(
        default=0.05,
        description="Maximum quote distance from the mid price",
        ge=0.001,
        le=0.5,
    )
    parity_threshold: float = Field(
        default=0.06,
        description="Allowed |mid(YES) + mid(NO) - 1| before biasing quotes",
        ge=0.001,
        le=0.5,
    )
    inventory_skew_lambda: float = Field(
        default=0.002,
        description="Price skew per 100 shares of inventory",
        ge=0.0,
        le=1.0,
    )

    # Sizing
    notional_per_order_usdc: float = Field(
        default=1.5,
        description="Target notional per order in USDC",
        ge=0.1,
        le=1000.0,
    )
    min_size_shares: float = Field(
        default=5.0,
        description="Exchange minimum order size in shares",
        ge=0.1,
        le=1000.0,
    )
    min_notional_usdc: float = Field(
        default=1.0,
        description="Minimum order notional in USDC",
        ge=0.1,
        le=1000.0,
    )
    max_sell_per_order_shares: float = Field(
        default=50.0,
        description="Maximum shares per SELL order",
        ge=1.0,
        le=10000.0,
    )

    # Order lifecycle
    replace_cooldown_ms: int = Field(
        default=500,
        description="Per-side cooldown between replacements",
        ge=100,
        le=30000,
    )
    placement_cooldown_ms: int = Field(
        default=500,
        description="Per-side cooldown between placements",
        ge=0,
        le=30000,
    )
    order_ttl_ms: int = Field(
        default=45000,
        description="Maximum age of a resting order before it is cancelled",
        ge=1000,
        le=300000,
    )
    price_change_threshold: float = Field(
        default=0.001,
        description="Mid move since placement that triggers a replace",
        ge=0.0001,
        le=1.0,
    )
    max_notional_at_risk_usdc: float = Field(
        default=15.0,
        description="Ceiling on the sum of price*size over all open orders",
        ge=1.0,
        le=100000.0,
    )
    max_active_orders: int = Field(
        default=100,
        description="Maximum open orders per market",
        ge=1,
        le=1000,
    )

    # Inventory and solvency
    max_inventory: float = Field(
        default=100.0,
        description="Maximum shares held per token",
        ge=1.0,
        le=10000.0,
    )
    allow_short: bool = Field(
        default=False,
        description="Permit SELL orders beyond held inventory (implicit short)",
    )
    min_inventory_cleanup: float = Field(
        default=0.01,
        description="Positions smaller than this are dropped by cleanup",
        ge=0.0,
        le=100.0,
    )
    allowance_threshold_usdc: float = Field(
        default=100.0,
        description="Request an allowance top-up when the USDC allowance drops below this",
        ge=1.0,
        le=100000.0,
    )
    allowance_check_cooldown_ms: int = Field(
        default=30000,
        description="Minimum interval between background allowance checks",
        ge=1000,
        le=300000,
    )
    inventory_resync_interval_ms: int = Field(
        default=60000,
        description="Interval between on-chain inventory resyncs",
        ge=5000,
        le=3600000,
    )
    onchain_cache_ttl_ms: int = Field(
        default=10000,
        description="How long an on-chain read is served from cache",
        ge=0,
        le=600000,
    )
    onchain_stale_ceiling_ms: int = Field(
        default=300000,
        description="Cached on-chain values older than this are refused",
        ge=1000,
        le=3600000,
    )
    onchain_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single on-chain read",
        ge=0.5,
        le=60.0,
    )

    # Reconciliation
    reconcile_interval_ms: int = Field(
        default=60000,
        description="Interval between order reconciliation passes",
        ge=1000,
        le=600000,
    )
    doubt_requery_delay_ms: int = Field(
        default=3000,
        description="Delay before re-querying the exchange for orders in doubt",
        ge=100,
        le=60000,
    )
    doubt_max_duration_ms: int = Field(
        default=15000,
        description="Hard ceiling on time a token may spend with orders in doubt",
        ge=1000,
        le=600000,
    )

    # Feeds
    ws_ping_interval_seconds: float = Field(
        default=10.0,
        description="Keepalive ping interval for both feeds",
        ge=1.0,
        le=120.0,
    )
    ws_max_reconnect_attempts: int = Field(
        default=10,
        description="Reconnect attempts before a feed is declared unrecoverable",
        ge=1,
        le=100,
    )
    ws_backoff_base_seconds: float = Field(
        default=1.0,
        description="Initial reconnect backoff",
        ge=0.0,
        le=60.0,
    )
    ws_backoff_max_seconds: float = Field(
        default=30.0,
        description="Reconnect backoff cap",
        ge=0.0,
        le=600.0,
    )
    feed_stale_after_seconds: float = Field(
        default=120.0,
        description="A feed with no message for this long is stale",
        ge=1.0,
        le=3600.0,
    )
    first_price_timeout_seconds: float = Field(
        default=10.0,
        description="Wait for first valid feed prices before falling back to REST",
        ge=0.5,
        le=120.0,
    )

    # Timers
    metrics_log_interval_ms: int = Field(
        default=60000,
        description="Interval between PnL/inventory metric logs",
        ge=5000,
        le=600000,
    )
    health_check_interval_ms: int = Field(
        default=5000,
        description="Interval between market health checks",
        ge=500,
        le=600000,
    )
    id_cleanup_interval_ms: int = Field(
        default=300000,
        description="Interval between client-order-id set cleanups",
        ge=1000,
        le=3600000,
    )

    # Storage
    db_path: Path = Field(
        default=Path.home() / ".pmm" / "pmm.db",
        description="SQLite database for inventory and fills",
    )

    # Shutdown
    cancel_on_stop: bool = Field(
        default=True,
        description="If true, cancel outstanding orders on shutdown",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    log_json: bool = Field(
        default=False,
        description="Emit JSON log lines",
    )

    @field_validator("wallet_address", "proxy_address", mode="before")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not v.startswith("0x") or len(v) != 42:
            raise ValueError("Address must be a valid Ethereum address (0x + 40 hex chars)")
        return v

    @field_validator("private_key", mode="before")
    @classmethod
    def validate_private_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not v.startswith("0x"):
            v = "0x" + v
        if len(v) != 66:  # 0x + 64 hex chars
            raise ValueError("Private key must be 32 bytes (64 hex chars + 0x prefix)")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError("log_level must be one of DEBUG, INFO, WARNING, ERROR")
        return level

    def is_trading_enabled(self) -> bool:
        """Check if signing key and L2 credentials are configured."""
        return (
            self.private_key is not None
            and self.poly_api_key is not None
            and self.poly_api_secret is not None
            and self.poly_api_passphrase is not None
        )

    @property
    def target_spread(self) -> float:
        """Base target spread in price units."""
        return self.target_spread_cents / 100


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global _settings
    _settings = Settings()
    return _settings
