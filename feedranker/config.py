"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── Relational store (MySQL-protocol compatible) ───────────────────────
    db_host: str = "tidb"
    db_port: int = 4000
    db_user: str = "root"
    db_password: str = ""
    db_database: str = "social_feed"
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_echo: bool = False

    @property
    def db_url(self) -> str:
        return (
            f"mysql+aiomysql://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_database}"
        )

    # ── Redis (ranking model cache) ────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379

    # ── Ranking model cache ────────────────────────────────────────────────
    model_version: str = "1.0"             # bump to invalidate every cached model
    model_cache_ttl: int = 86400           # 24h
    model_min_training_examples: int = 100
    model_max_size_bytes: int = 1024 * 1024

    # ── Model training ─────────────────────────────────────────────────────
    model_hidden_layers: list[int] = [18, 10, 6]
    model_learning_rate: float = 0.1
    model_momentum: float = 0.1
    model_iterations: int = 2000
    model_error_threshold: float = 0.005
    training_max_workers: int = 2
    training_timeout_seconds: float = 2.0

    # ── Candidate pools ────────────────────────────────────────────────────
    window_days: int = 7
    timeline_overfetch: int = 2            # pool 1 fetches limit * N
    recommendation_ratio: float = 0.4
    recommendation_candidate_limit: int = 2000
    negative_sample_limit: int = 1000
    positive_source_limit: int = 1000
    second_degree_ratio: float = 0.15
    second_degree_probability: float = 0.15
    author_cap_ratio: float = 0.2

    # ── Proximity ──────────────────────────────────────────────────────────
    proximity_radius_miles: float = 50.0
    nearby_schools_cache_ttl: int = 3600   # 1h

    # ── Feature flags (defaults when no meta row exists) ───────────────────
    enable_school_proximity_boost: bool = True
    disable_local_timeline: bool = False
    meta_cache_ttl: int = 10

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "feed-ranker"
    environment: str = "development"
    metrics_log_interval_seconds: int = 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        # model_* settings are ours, not pydantic's
        protected_namespaces = ()


settings = Settings()
