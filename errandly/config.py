from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "data/errandly.db"
    host: str = "0.0.0.0"
    port: int = 8000
    admin_key: str | None = None
    default_platform_fee_pct: float = 10.0
    default_radius_km: float = 3.0
    nearby_page_size: int = 50
    heatmap_radius_km: float = 10.0
    heatmap_cell_deg: float = 0.01
    bid_window_hours: float = 2.0
    stale_accept_timeout_minutes: int = 60
    scheduler_interval_seconds: int = 60
    scheduler_batch_size: int = 50
    escrow_registry_ttl_hours: int = 168
    loyalty_percent: float = 10.0
    perk_duration_days: int = 90
    redeem_block_points: int = 100
    review_page_size: int = 20
    event_queue_size: int = 100
    ledger_page_size: int = 50
    rate_limit_register: str = "5/hour"
    rate_limit_create: str = "30/minute"
    rate_limit_accept: str = "60/minute"
    rate_limit_action: str = "60/minute"
    rate_limit_review: str = "30/minute"
    rate_limit_redeem: str = "10/minute"
    rate_limit_read: str = "120/minute"
    rate_limit_admin: str = "30/minute"

    model_config = {"env_prefix": "ERRANDLY_"}


settings = Settings()
