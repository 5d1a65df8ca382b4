import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigError


def _flag(value: str) -> bool:
    return value.lower() in {"1", "true", "yes"}


@dataclass(frozen=True)
class Settings:
    store_dir: Path = Path("/tmp/colorbook-images")
    store_backend: str = "local"
    token_backend: str = "memory"

    public_base_url: str = "http://localhost:5000"
    frontend_url: str = "http://localhost:5173"

    artifact_retention_sec: float = 3600.0
    reaper_interval_sec: float = 1800.0
    download_token_ttl_sec: float = 600.0

    poll_interval_sec: float = 2.0
    max_poll_attempts: int = 15
    http_timeout_sec: float = 30.0

    unit_price: float = 1.99
    currency: str = "usd"

    replicate_api_token: str = ""
    replicate_api_url: str = "https://api.replicate.com/v1"
    replicate_model: str = "adams38/red_page_ai"
    replicate_model_version: str = "01bc6fbe2bc89772101c97c7363a59329b75ed9354aa6ed3024f05f08a692d43"

    stripe_secret_key: str = ""

    airtable_api_key: str = ""
    airtable_base_id: str = ""
    airtable_table: str = "Coloring Book Pages"
    airtable_api_url: str = "https://api.airtable.com/v0"

    redis_url: str = ""
    s3_bucket: str = ""
    s3_endpoint_url: Optional[str] = None
    s3_region: Optional[str] = None
    s3_access_key_id: Optional[str] = None
    s3_secret_access_key: Optional[str] = None
    s3_force_path_style: bool = False

    log_level: str = "INFO"
    port: int = 5000

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        # Tokens must die before the artifacts they point at can be reaped.
        if self.download_token_ttl_sec > self.artifact_retention_sec:
            raise ConfigError(
                f"DOWNLOAD_TOKEN_TTL_SEC ({self.download_token_ttl_sec:g}) must not exceed "
                f"ARTIFACT_RETENTION_SEC ({self.artifact_retention_sec:g})"
            )
        if self.max_poll_attempts < 1:
            raise ConfigError("MAX_POLL_ATTEMPTS must be at least 1")
        if self.reaper_interval_sec <= 0:
            raise ConfigError("REAPER_INTERVAL_SEC must be positive")
        if self.unit_price <= 0:
            raise ConfigError("UNIT_PRICE must be positive")
        if self.store_backend not in {"local", "s3"}:
            raise ConfigError(f"unknown COLORBOOK_STORE_BACKEND: {self.store_backend}")
        if self.token_backend not in {"memory", "redis"}:
            raise ConfigError(f"unknown COLORBOOK_TOKEN_BACKEND: {self.token_backend}")
        if self.store_backend == "s3" and not self.s3_bucket:
            raise ConfigError("S3_BUCKET_NAME is required for the s3 store backend")
        if self.token_backend == "redis" and not self.redis_url:
            raise ConfigError("REDIS_URL is required for the redis token backend")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        try:
            return cls(
                store_dir=Path(env.get("COLORBOOK_STORE_DIR", "/tmp/colorbook-images")).resolve(),
                store_backend=env.get("COLORBOOK_STORE_BACKEND", "local").lower(),
                token_backend=env.get("COLORBOOK_TOKEN_BACKEND", "memory").lower(),
                public_base_url=env.get("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/"),
                frontend_url=env.get("FRONTEND_URL", "http://localhost:5173").rstrip("/"),
                artifact_retention_sec=float(env.get("ARTIFACT_RETENTION_SEC", "3600")),
                reaper_interval_sec=float(env.get("REAPER_INTERVAL_SEC", "1800")),
                download_token_ttl_sec=float(env.get("DOWNLOAD_TOKEN_TTL_SEC", "600")),
                poll_interval_sec=float(env.get("POLL_INTERVAL_SEC", "2")),
                max_poll_attempts=int(env.get("MAX_POLL_ATTEMPTS", "15")),
                http_timeout_sec=float(env.get("HTTP_TIMEOUT_SEC", "30")),
                unit_price=float(env.get("UNIT_PRICE", "1.99")),
                replicate_api_token=env.get("REPLICATE_API_TOKEN", ""),
                replicate_api_url=env.get("REPLICATE_API_URL", cls.replicate_api_url).rstrip("/"),
                replicate_model=env.get("REPLICATE_MODEL", cls.replicate_model),
                replicate_model_version=env.get("REPLICATE_MODEL_VERSION", cls.replicate_model_version),
                stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
                airtable_api_key=env.get("AIRTABLE_API_KEY", ""),
                airtable_base_id=env.get("AIRTABLE_BASE_ID", ""),
                airtable_table=env.get("AIRTABLE_TABLE", cls.airtable_table),
                redis_url=env.get("REDIS_URL", ""),
                s3_bucket=env.get("S3_BUCKET_NAME", ""),
                s3_endpoint_url=env.get("S3_ENDPOINT"),
                s3_region=env.get("S3_REGION"),
                s3_access_key_id=env.get("S3_ACCESS_KEY_ID"),
                s3_secret_access_key=env.get("S3_SECRET_ACCESS_KEY"),
                s3_force_path_style=_flag(env.get("S3_FORCE_PATH_STYLE", "false")),
                log_level=env.get("LOG_LEVEL", "INFO").upper(),
                port=int(env.get("PORT", "5000")),
            )
        except ValueError as exc:
            raise ConfigError(f"invalid configuration value: {exc}") from exc
