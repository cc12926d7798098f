"""Environment-based configuration for the help desk sync engine."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Help desk sync configuration.

    All settings can be overridden via environment variables with
    HELPDESK_ prefix. For example:
        HELPDESK_REMOTE_URL=https://helpdesk.example.com/api
        HELPDESK_DB_PATH=/var/lib/helpdesk/sync.db
    """

    # Local store
    db_path: Path = Path("helpdesk.db")

    # Remote store
    remote_url: str = "http://localhost:8080"
    push_poll_seconds: float = 5.0
    apply_timeout_seconds: float = 15.0

    # Connectivity
    probe_interval_seconds: float = 10.0

    # Retry policy
    retry_base_seconds: float = 2.0
    retry_multiplier: float = 2.0
    retry_cap_seconds: float = 30.0
    retry_jitter_fraction: float = 0.25
    max_unknown_attempts: int = 5

    # Flush workers
    flush_partitions: int = 4

    # EmailJS delivery
    emailjs_url: str = "https://api.emailjs.com/api/v1.0/email/send"
    emailjs_service_id: str = ""
    emailjs_public_key: str = ""
    emailjs_template_id: str = ""

    # Notification toggles
    notify_tech_on_assignment: bool = True
    notify_user_on_resolution: bool = True
    notify_admin_on_resolution: bool = True
    notify_user_on_status_change: bool = True
    notify_user_on_create: bool = True
    notify_admin_on_create: bool = True
    notification_attempts: int = 3
    bulk_notifications: bool = False

    model_config = {"env_prefix": "HELPDESK_"}


settings = Settings()
