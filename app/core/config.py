import os
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    """
    Application configuration settings.
    """
    model_config = SettingsConfigDict(env_prefix="TALETRAIL_", env_file=".env", extra="ignore")

    # Service Info
    service_name: str = "taletrail-coordinator"
    environment: str = "local"
    log_level: str = "INFO"

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Transport ("nats" or "memory")
    transport: str = "nats"
    nats_url: str = "nats://localhost:4222"
    client_name: str = "taletrail-coordinator"
    connect_timeout_seconds: float = 5.0
    request_timeout_seconds: float = 180.0
    tls_ca_file: Optional[str] = None
    nkey_file: Optional[str] = None

    # Subjects
    submit_subject: str = "mcp.orchestrator.request"
    event_subject_prefix: str = "taletrail.generation.events"
    wait_for_ack: bool = False

    # Tracking
    tracker_retention_seconds: float = 300.0
    tracker_stale_timeout_seconds: float = 3600.0
    reconcile_by_timestamp: bool = False
    event_buffer_size: int = 1000

    # Trails
    base_dir: str = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    trails_dir: str = os.path.join(base_dir, "trails")
    trail_cache_size: int = 128

settings = Settings()
