from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the ingestion core; durations are in seconds."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    log_level: str = "INFO"
    log_format: str = "text"  # options: text, json
    warehouse_backend: str = "memory"  # options: memory, sqlite
    warehouse_path: str = "data/warehouse.db"
    default_batch_size: int = 1000
    job_history_limit: int = 100
    topic_partitions: int = 3
    topic_replication_factor: int = 1
    monitor_buffer_size: int = 1000
    monitor_interval: float = 30.0
    monitor_max_alerts: int = 1000
    timeliness_threshold: float = 300.0
    circuit_failure_threshold: int = 5
    circuit_reset_timeout: float = 60.0
    event_history_size: int = 500


settings = Settings()
