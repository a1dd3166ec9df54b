from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GENRELAY_",
        extra="ignore",
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Metrics
    metrics_enabled: bool = True

    # Cache
    cache_enabled: bool = True
    cache_ttl_seconds: float = 600.0  # 10 minutes
    cache_max_items: int = 1000
    cache_max_size_mb: int = 100

    # Retry
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_backoff: str = "exponential"  # fixed | linear | exponential

    # Rate limiting
    rate_limit_rpm: int = 60
    rate_limit_concurrent: int = 5
    rate_limit_strategy: str = "sliding_window"  # sliding_window | fixed_window | token_bucket

    # Backend calls
    backend_timeout_seconds: float = 60.0

    # Error classifier
    error_history_size: int = 1000

    def dispatcher_defaults(self) -> dict:
        """Default sub-configs for a DispatcherConfig built from the environment."""
        from genrelay.gateway.types import CacheConfig, RateLimitConfig, RetryPolicy

        return {
            "cache": CacheConfig(
                enabled=self.cache_enabled,
                ttl_seconds=self.cache_ttl_seconds,
                max_items=self.cache_max_items,
                max_size_mb=self.cache_max_size_mb,
            ),
            "retry": RetryPolicy(
                max_attempts=self.retry_max_attempts,
                base_delay=self.retry_base_delay,
                max_delay=self.retry_max_delay,
                backoff=self.retry_backoff,
            ),
            "rate_limit": RateLimitConfig(
                requests_per_minute=self.rate_limit_rpm,
                concurrent=self.rate_limit_concurrent,
                strategy=self.rate_limit_strategy,
            ),
            "timeout_seconds": self.backend_timeout_seconds,
        }


settings = Settings()
