"""Configuration loader for the dashboard backend.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml


@dataclass
class ExchangeConfig:
    """Coinbase API endpoints and request settings."""
    advanced_url: str = "https://api.coinbase.com/api/v3/brokerage"
    exchange_url: str = "https://api.exchange.coinbase.com"
    core_url: str = "https://api.coinbase.com/v2"
    ws_url: str = "wss://advanced-trade-ws.coinbase.com"
    timeout: int = 10
    max_backoff_seconds: float = 60.0
    default_products: List[str] = field(default_factory=lambda: ["BTC-USD", "ETH-USD", "SOL-USD"])


@dataclass
class OAuthConfig:
    """Coinbase OAuth2 client settings."""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_url: str = "http://localhost:5000/auth/redirect"
    auth_url: str = "https://login.coinbase.com/oauth2/auth"
    token_url: str = "https://login.coinbase.com/oauth2/token"
    revoke_url: str = "https://api.coinbase.com/oauth/revoke"
    scopes: List[str] = field(default_factory=lambda: ["wallet:accounts:read", "wallet:user:read"])
    timeout: int = 30


@dataclass
class MarketDataConfig:
    """Order book reducer and feed settings."""
    book_depth: int = 20
    trade_tape_size: int = 50
    reconnect_delay_seconds: float = 5.0
    subscription_interval_seconds: float = 1.0


@dataclass
class ServerConfig:
    """HTTP server and session settings."""
    host: str = "0.0.0.0"
    port: int = 5000
    jwt_secret: Optional[str] = None
    jwt_expiration_hours: int = 24
    session_key: Optional[str] = None


@dataclass
class PersistenceConfig:
    """Database and persistence settings."""
    db_path: str = "state/dashboard.db"
    encryption_password: Optional[str] = None
    vault_key: Optional[str] = None
    log_file: str = "dashboard.log"
    log_level: str = "INFO"


@dataclass
class DashboardConfig:
    """Complete dashboard configuration."""
    exchange: ExchangeConfig
    oauth: OAuthConfig
    market_data: MarketDataConfig
    server: ServerConfig
    persistence: PersistenceConfig

    @classmethod
    def default(cls) -> "DashboardConfig":
        """Build a configuration with every section at its defaults."""
        return cls(
            exchange=ExchangeConfig(),
            oauth=OAuthConfig(
                client_id=os.getenv("COINBASE_OAUTH_CLIENT_ID"),
                client_secret=os.getenv("COINBASE_OAUTH_CLIENT_SECRET"),
            ),
            market_data=MarketDataConfig(),
            server=ServerConfig(jwt_secret=os.getenv("JWT_SECRET")),
            persistence=PersistenceConfig(),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "DashboardConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            DashboardConfig instance

        Example YAML:
            exchange:
              default_products: [BTC-USD, ETH-USD]
            oauth:
              client_id: "${COINBASE_OAUTH_CLIENT_ID}"
              client_secret: "${COINBASE_OAUTH_CLIENT_SECRET}"
            persistence:
              db_path: "${STATE_DIR}/dashboard.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        return cls(
            exchange=ExchangeConfig(**data.get("exchange", {})),
            oauth=OAuthConfig(**data.get("oauth", {})),
            market_data=MarketDataConfig(**data.get("market_data", {})),
            server=ServerConfig(**data.get("server", {})),
            persistence=PersistenceConfig(**data.get("persistence", {})),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            "exchange": asdict(self.exchange),
            "oauth": asdict(self.oauth),
            "market_data": asdict(self.market_data),
            "server": asdict(self.server),
            "persistence": asdict(self.persistence),
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def load_config(config_path: Optional[str] = None) -> DashboardConfig:
    """Load from `config_path` (or CONFIG_PATH), falling back to defaults when no file exists."""
    path = config_path or os.getenv("CONFIG_PATH", "config.yaml")
    if Path(path).exists():
        return DashboardConfig.from_yaml(path)
    return DashboardConfig.default()
