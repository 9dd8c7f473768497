"""Service configuration loaded from an INI file with ``PF_*`` environment fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path


def load_settings(config_path: str | os.PathLike | None = None) -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with PF_):
      PF_CONFIG - Path to config.ini file (default: config.ini)
      PF_LOG_LEVEL - Logging level (default: INFO)
      PF_DB_PATH - Database path (default: /data/fulfillment.db)
      PF_HOST - Server host (default: 0.0.0.0)
      PF_PORT - Server port (default: 8000)
      PF_API_TOKEN - API authentication token
      PF_CRON_SECRET - Bearer secret for the scheduled processing trigger
      PF_WEBHOOK_TOKEN - Token expected on provider webhook calls
      PF_STANNP_API_KEY - Stannp API key
      PF_STANNP_REGION - Stannp region, US or EU (default: US)
      PF_STANNP_BASE_URL - Override of the Stannp API base URL
      PF_STANNP_TIMEOUT - Stannp request timeout in seconds (default: 30)
      PF_DEFAULT_COUNTRY - Recipient country when a lead has none (default: CA)
      PF_POSTCARD_SIZE - Stannp postcard size (default: A6)
      PF_BATCH_SIZE - Postcards per dispatch batch (default: 50)
      PF_MAX_ATTEMPTS - Attempts per postcard and per design (default: 3)
      PF_RETRY_BASE_DELAY - Backoff base delay in seconds (default: 1.0)
      PF_INTER_BATCH_DELAY - Pause between batches in seconds (default: 2.0)
      PF_STORAGE_BACKEND - local or s3 (default: local)
      PF_ASSETS_ROOT - Local asset directory (default: /data/assets)
      PF_PUBLIC_BASE_URL - Public URL prefix of stored assets
      PF_S3_BUCKET, PF_S3_REGION, PF_S3_PREFIX - S3 storage location
      PF_DESIGN_CONCURRENCY - Designs processed in parallel (default: 4)
      PF_DOWNLOAD_TIMEOUT - Image download timeout in seconds (default: 30)
      PF_LOGO_MAX_WIDTH, PF_LOGO_MAX_HEIGHT - Logo box in inches (default: 1.5 x 1.0)
      PF_SCHEDULER_ACTIVE - Enable the periodic ready-campaign loop (default: False)
      PF_SCHEDULER_INTERVAL - Loop interval in seconds (default: 300)
      PF_LOG_DISPATCH_ACTIVITY - Log every dispatched postcard at INFO (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token, cron_secret, webhook_token
      [stannp] api_key, region, base_url, timeout_seconds, default_country, postcard_size
      [dispatch] batch_size, max_attempts, retry_base_delay, inter_batch_delay
      [assets] backend, local_root, public_base_url, s3_bucket, s3_region, s3_prefix,
               design_concurrency, download_timeout_seconds, logo_max_width_in, logo_max_height_in
      [scheduler] active, interval_seconds
      [logging] dispatch_activity
    """
    path = Path(config_path or os.getenv("PF_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    settings = {
        "db_path": get("storage", "db_path", os.getenv("PF_DB_PATH", "/data/fulfillment.db")),
        "http_host": get("server", "host", os.getenv("PF_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("PF_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("PF_API_TOKEN")),
        "cron_secret": get("server", "cron_secret", os.getenv("PF_CRON_SECRET")),
        "webhook_token": get("server", "webhook_token", os.getenv("PF_WEBHOOK_TOKEN")),
        "stannp_api_key": get("stannp", "api_key", os.getenv("PF_STANNP_API_KEY")),
        "stannp_region": get("stannp", "region", os.getenv("PF_STANNP_REGION", "US")),
        "stannp_base_url": get("stannp", "base_url", os.getenv("PF_STANNP_BASE_URL")),
        "stannp_timeout": get_float("stannp", "timeout_seconds", os.getenv("PF_STANNP_TIMEOUT"), default=30.0),
        "default_country": get("stannp", "default_country", os.getenv("PF_DEFAULT_COUNTRY", "CA")),
        "postcard_size": get("stannp", "postcard_size", os.getenv("PF_POSTCARD_SIZE", "A6")),
        "batch_size": get_int("dispatch", "batch_size", os.getenv("PF_BATCH_SIZE"), default=50),
        "max_attempts": get_int("dispatch", "max_attempts", os.getenv("PF_MAX_ATTEMPTS"), default=3),
        "retry_base_delay": get_float("dispatch", "retry_base_delay", os.getenv("PF_RETRY_BASE_DELAY"), default=1.0),
        "inter_batch_delay": get_float("dispatch", "inter_batch_delay", os.getenv("PF_INTER_BATCH_DELAY"), default=2.0),
        "storage_backend": get("assets", "backend", os.getenv("PF_STORAGE_BACKEND", "local")),
        "local_root": get("assets", "local_root", os.getenv("PF_ASSETS_ROOT", "/data/assets")),
        "public_base_url": get("assets", "public_base_url", os.getenv("PF_PUBLIC_BASE_URL")),
        "s3_bucket": get("assets", "s3_bucket", os.getenv("PF_S3_BUCKET")),
        "s3_region": get("assets", "s3_region", os.getenv("PF_S3_REGION")),
        "s3_prefix": get("assets", "s3_prefix", os.getenv("PF_S3_PREFIX", "")),
        "design_concurrency": get_int("assets", "design_concurrency", os.getenv("PF_DESIGN_CONCURRENCY"), default=4),
        "download_timeout": get_float(
            "assets", "download_timeout_seconds", os.getenv("PF_DOWNLOAD_TIMEOUT"), default=30.0
        ),
        "logo_max_width": get_float("assets", "logo_max_width_in", os.getenv("PF_LOGO_MAX_WIDTH"), default=1.5),
        "logo_max_height": get_float("assets", "logo_max_height_in", os.getenv("PF_LOGO_MAX_HEIGHT"), default=1.0),
        "scheduler_active": get_bool("scheduler", "active", os.getenv("PF_SCHEDULER_ACTIVE"), False),
        "scheduler_interval": get_float("scheduler", "interval_seconds", os.getenv("PF_SCHEDULER_INTERVAL"), default=300.0),
        "log_dispatch_activity": get_bool(
            "logging",
            "dispatch_activity",
            os.getenv("PF_LOG_DISPATCH_ACTIVITY"),
            default=False,
        ),
    }

    for key in ("db_path", "local_root"):
        value = settings[key]
        if isinstance(value, str):
            settings[key] = os.path.expanduser(value)
    for key in ("api_token", "cron_secret", "webhook_token", "stannp_api_key"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings
