from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    automation_hook_url: str | None = None
    automation_timeout_seconds: float = 10.0
    phone_lookup_api_key: str | None = None
    phone_lookup_base_url: str = "https://apilayer.net/api/validate"
    phone_lookup_timeout_seconds: float = 4.0
    phone_lookup_country_code: str | None = None
    fallback_window_seconds: float = 20.0
    ended_grace_seconds: float | None = 5.0  # None keeps the full window after status=ended
    tombstone_seconds: float = 600.0  # 0 disables post-flush suppression
    flush_pending_on_shutdown: bool = True
    internal_ops_secret: str | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
