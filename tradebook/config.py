from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # HTTP
    http_timeout_seconds: float = Field(10.0, gt=0)

    # Signed REST (Binance, Bybit)
    recv_window_ms: int = Field(5000, gt=0, le=60000)
    binance_max_trade_symbols: int = Field(10, ge=1)
    binance_quote_asset: str = "USDT"
    bybit_page_limit: int = Field(50, ge=1, le=100)
    bybit_max_pages: int = Field(5, ge=1)

    # Trade history
    default_trade_limit: int = Field(100, ge=1)

    # Interactive Brokers
    ibkr_gateway_url: str = "https://localhost:5000/v1/api"
    ibkr_oauth_url: str = "https://api.ibkr.com/v1/api"
    ibkr_verify_tls: bool = False
    ibkr_client_id: str = ""
    ibkr_token_url: str = "https://api.ibkr.com/oauth2/api/v1/token"
    ibkr_max_position_pages: int = Field(10, ge=1)

    # TD Ameritrade
    tda_client_id: str = ""

    # Health
    health_check_timeout_seconds: float = Field(5.0, gt=0)

    # App
    log_level: str = "INFO"

    class Config:
        env_prefix = "TRADEBOOK_"
        env_file = ".env"


settings = Settings()
