from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    api_base_url: str = "https://z519wdyajg.execute-api.us-east-1.amazonaws.com/prod"
    database_url: str = "sqlite:///./marketsync.db"
    http_timeout: float = 30.0

    # Page sizes are the provider maximums for each endpoint
    players_page_size: int = 1500
    listings_page_size: int = 50
    db_batch_size: int = 100
    valuation_batch_size: int = 5000

    # /players has a more generous quota than /listings
    players_page_delay: float = 1.0
    listings_page_delay: float = 3.5

    retry_attempts: int = 5
    retry_base_delay: float = 2.0
    repair_retry_attempts: int = 3
    max_page_errors: int = 5

    progress_cleanup_delay: float = 300.0
    burn_wallet_address: str = "0x6fec8986261ecf49"
    valuation_procedure: str = "update_players_market_values_batch"

    full_sync_hour: int = 3
    live_sync_minutes: int = 30
    triggered_by: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "MARKETSYNC_"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
