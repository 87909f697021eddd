from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    app_name: str = "トレードジャーナル"
    debug: bool = True
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./data/trade_journal.db"

    # P&L Settings
    display_decimals: int = 2
    closure_max_retries: int = 3
    use_futures_fallback: bool = True  # 先物の既知限月スペック表を使用

    # Risk Settings
    account_balance: float = 10000.0
    risk_profile: str = "conservative"  # conservative / aggressive

    # API Settings
    api_v1_str: str = "/api/v1"


settings = Settings()
