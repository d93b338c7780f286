"""Environment-driven configuration for releaseguard."""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """All tunables, read from ``RELEASEGUARD_*`` env vars or ``.env``."""

    # Surface metadata
    environment: str = "production"
    version: str = "unknown"

    # Process manager (dokku over ssh)
    dokku_host: str = "localhost"
    dokku_user: str = "dokku"
    ssh_key_path: str = "~/.ssh/dokku_deploy"
    ssh_connect_timeout: int = 10
    command_timeout: float = 600.0
    list_timeout: float = 30.0
    list_releases_command: str = "ps:report {app} --deployed"
    stop_command: str = "ps:stop {app}"
    rebuild_command: str = "ps:rebuild {app}"

    # Rollback
    settle_delay: float = 10.0
    auto_rollback: bool = True
    app_name_pattern: str = r"^[a-zA-Z0-9][a-zA-Z0-9\-]*$"
    app_url_template: str = "https://{app}.example.com/health"
    release_pattern: str = r"^[A-Za-z0-9][A-Za-z0-9._:/@+\-]*$"

    # Probe targets
    database_url: str = ""
    redis_url: str = ""
    sentry_dsn: str = ""
    flagsmith_enabled: bool = True
    flagsmith_api_url: str = "https://edge.api.flagsmith.com/api/v1/"
    flagsmith_environment_key: str = ""
    grafana_enabled: bool = False
    grafana_health_url: str = ""
    tls_host: str = "localhost"
    tls_port: int = 443
    tls_warning_days: int = 30

    # Probe timeouts (seconds)
    database_timeout: float = 5.0
    cache_timeout: float = 3.0
    error_tracking_timeout: float = 10.0
    feature_flags_timeout: float = 10.0
    metrics_timeout: float = 10.0
    tls_timeout: float = 10.0
    reachability_timeout: float = 30.0

    # Circuit breaker
    breaker_failure_threshold: int = 5
    breaker_open_duration: float = 300.0
    breaker_state_ttl: int = 3_600

    # Feature flags
    flag_cache_ttl: int = 300
    default_flags: dict[str, Any] = {}

    # Deployment guard
    health_retries: int = 3
    health_retry_interval: float = 10.0

    # Notifications
    notify_webhook_url: str = ""

    model_config = {"env_prefix": "RELEASEGUARD_", "env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide settings (read once)."""
    settings = Settings()
    logger.info(
        "releaseguard config: env=%s dokku_host=%s redis=%s",
        settings.environment,
        settings.dokku_host,
        bool(settings.redis_url),
    )
    return settings
