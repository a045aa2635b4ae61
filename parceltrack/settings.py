from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # reconciliation
    email_confidence_threshold: float = 0.2
    event_dedup_window_s: float = 2.0

    # polling adapter (public, keyless endpoint)
    polling_url: str = "https://global.cainiao.com/global/detail.json"
    polling_timeout_s: float = 15.0
    rate_limit_window_s: int = 300

    # aggregator adapter (headless browser)
    aggregator_enable: bool = False
    aggregator_url: str = "https://t.17track.net/en"
    aggregator_api_fragment: str = "track/restapi"
    aggregator_timeout_s: float = 20.0
    aggregator_partial_after_s: float = 12.0
    aggregator_batch_size: int = 10

    # bulk resync backpressure
    resync_delay_s: float = 2.0

    log_level: str = "INFO"

    # NOTE: extra="ignore" avoids validation errors if stray keys appear in .env
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

settings = Settings()
