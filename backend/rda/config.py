from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "RDA Report Engine"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"

    aws_region: str = "us-east-1"
    # Foundation model IDs; some regions require an inference profile ID instead (e.g. `eu.amazon.nova-pro-v1:0`).
    bedrock_model_id: str = "amazon.nova-pro-v1:0"
    bedrock_embedding_model_id: str = "amazon.titan-embed-text-v2:0"
    llm_enrichment_enabled: bool = False
    llm_temperature: float = 0.1
    llm_max_tokens: int = 2048
    llm_retry_attempts: int = 3
    llm_retry_base_delay_seconds: float = 2.0
    llm_retry_max_jitter_seconds: float = 0.6

    chunk_target_tokens: int = 1000
    chunk_max_tokens: int = 1500
    chunk_overlap_words: int = 120
    embedding_mode: str = "hash"
    embedding_dim: int = 128
    ingestion_concurrency: int = 4

    extraction_work_item_window: int = 30
    extraction_sprint_window: int = 12
    extraction_max_activities: int = 8
    validation_approval_threshold: float = 0.6
    review_quality_alert_ratio: float = 0.2
    model_version: str = "rda-pipeline-v3"
    schema_version: str = "3.0.0"

    storage_backend: str = "local"  # local|s3
    s3_bucket: str = "rda-dev"
    s3_prefix: str = "rda"
    storage_root: str = "data/output"
    # sqlite only; the generation record is stored as JSON columns.
    database_url: str = "sqlite:///./rda.db"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
