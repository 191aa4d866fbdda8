import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel

from .errors import ConfigurationError


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ServiceAccount:
    """Storage service-account identity: issuer e-mail plus a PKCS8 PEM key."""

    client_email: str
    private_key: str
    project_id: Optional[str] = None


class Settings(BaseModel):
    database_url: str = "sqlite:///./fotofacil.db"
    redis_url: str = "redis://localhost:6379/0"

    gcs_project_id: Optional[str] = None
    gcs_client_email: Optional[str] = None
    gcs_private_key: Optional[str] = None
    gcs_bucket_name: str = "rubensphotofilm"

    mp_access_token: Optional[str] = None
    mp_api_base: str = "https://api.mercadopago.com"

    public_site_url: str = "http://localhost:8080"
    webhook_url: Optional[str] = None

    cpf_hash_salt: str = "fotofacil_salt_2024"

    watermark_required: bool = True
    allow_unsigned_fallback: bool = False

    delivery_ttl_hours: int = 24
    download_url_minutes: int = 60
    upload_batch_delay_seconds: float = 0.1
    reconcile_interval_seconds: float = 60.0

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        private_key = env.get("GCS_PRIVATE_KEY")
        if private_key:
            private_key = private_key.replace("\\n", "\n")
        return cls(
            database_url=env.get("DATABASE_URL", "sqlite:///./fotofacil.db"),
            redis_url=env.get("REDIS_URL", "redis://localhost:6379/0"),
            gcs_project_id=env.get("GCS_PROJECT_ID") or None,
            gcs_client_email=env.get("GCS_CLIENT_EMAIL") or None,
            gcs_private_key=private_key or None,
            gcs_bucket_name=env.get("GCS_BUCKET_NAME") or "rubensphotofilm",
            mp_access_token=env.get("MP_ACCESS_TOKEN") or None,
            mp_api_base=env.get("MP_API_BASE", "https://api.mercadopago.com"),
            public_site_url=env.get("PUBLIC_SITE_URL", "http://localhost:8080"),
            webhook_url=env.get("WEBHOOK_URL") or None,
            cpf_hash_salt=env.get("CPF_HASH_SALT", "fotofacil_salt_2024"),
            watermark_required=_flag("WATERMARK_REQUIRED", True),
            allow_unsigned_fallback=_flag("ALLOW_UNSIGNED_FALLBACK", False),
            delivery_ttl_hours=int(env.get("DELIVERY_TTL_HOURS", "24")),
            download_url_minutes=int(env.get("DOWNLOAD_URL_MINUTES", "60")),
            upload_batch_delay_seconds=float(env.get("UPLOAD_BATCH_DELAY_SECONDS", "0.1")),
            reconcile_interval_seconds=float(env.get("RECONCILE_INTERVAL_SECONDS", "60")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )

    def service_account(self) -> ServiceAccount:
        if not self.gcs_client_email or not self.gcs_private_key:
            raise ConfigurationError("GCS credentials not configured")
        return ServiceAccount(
            client_email=self.gcs_client_email,
            private_key=self.gcs_private_key,
            project_id=self.gcs_project_id,
        )

    def require_gateway_token(self) -> str:
        if not self.mp_access_token:
            raise ConfigurationError("Payment configuration error")
        return self.mp_access_token


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
