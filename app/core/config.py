from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "トークンポジション監視システム"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./data/trading.db"

    # Solana / Wallet Settings
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    solana_private_key: Optional[str] = None
    wallet_file: str = "./test-wallet.json"

    # Jupiter Settings
    jupiter_swap_api: str = "https://lite-api.jup.ag/swap/v1"
    jupiter_price_api: str = "https://api.jup.ag/price/v2"
    jupiter_token_api: str = "https://lite-api.jup.ag/tokens/v1"
    http_timeout_seconds: float = 30.0
    slippage_bps: int = 500  # 5%
    price_cache_ttl_seconds: float = 30.0
    token_info_cache_ttl_seconds: float = 300.0  # 5分

    # Monitor Settings
    monitor_enabled: bool = False
    price_check_interval_seconds: float = 300.0  # 5分
    balance_history_interval_seconds: float = 3600.0  # 1時間

    # Trading Settings
    default_trailing_stop_percentage: float = 20.0
    swap_max_retries: int = 3
    swap_retry_delay_seconds: float = 2.0
    stale_swap_retry_delay_seconds: float = 5.0
    min_signal_confidence: float = 65.0
    max_position_size_percent: float = 0.02  # 2%
    default_token_decimals: int = 9

    # API Settings
    api_v1_str: str = "/api/v1"


settings = Settings()
