import os
import re
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    jwt_access_secret: str
    jwt_refresh_secret: str
    jwt_access_expires_in: str
    jwt_refresh_expires_in: str
    cookie_domain: str
    frontend_url: str

    mailgun_api_key: str
    mailgun_domain: str

    paymongo_secret_key: str
    paymongo_webhook_secret: str

    admin_email: str
    admin_password: str

    storage_backend: str
    local_storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


_DURATION_RE = re.compile(r"^(\d+)\s*([smhd]?)$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str | int | None, default_seconds: int) -> int:
    """Parse "15m" / "7d" / "3600" into seconds."""
    if value is None:
        return default_seconds
    if isinstance(value, int):
        return value
    m = _DURATION_RE.match(value.strip())
    if not m:
        return default_seconds
    return int(m.group(1)) * _DURATION_UNITS[m.group(2).lower()]


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///lgu.db"),
        jwt_access_secret=_getenv("JWT_ACCESS_SECRET", ""),
        jwt_refresh_secret=_getenv("JWT_REFRESH_SECRET", ""),
        jwt_access_expires_in=_getenv("JWT_ACCESS_EXPIRES_IN", "15m"),
        jwt_refresh_expires_in=_getenv("JWT_REFRESH_EXPIRES_IN", "7d"),
        cookie_domain=_getenv("COOKIE_DOMAIN", ""),
        frontend_url=_getenv("FRONTEND_URL", "http://localhost:3000"),
        mailgun_api_key=_getenv("MAILGUN_API_KEY", ""),
        mailgun_domain=_getenv("MAILGUN_DOMAIN", ""),
        paymongo_secret_key=_getenv("PAYMONGO_SECRET_KEY", ""),
        paymongo_webhook_secret=_getenv("PAYMONGO_WEBHOOK_SECRET", ""),
        admin_email=_getenv("ADMIN_EMAIL", ""),
        admin_password=_getenv("ADMIN_PASSWORD", ""),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        local_storage_root=_getenv("LOCAL_STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "ap-southeast-1"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "JWT_ACCESS_SECRET": s.jwt_access_secret,
        "JWT_REFRESH_SECRET": s.jwt_refresh_secret,
        "JWT_ACCESS_EXPIRES_SECONDS": parse_duration(s.jwt_access_expires_in, 15 * 60),
        "JWT_REFRESH_EXPIRES_SECONDS": parse_duration(s.jwt_refresh_expires_in, 7 * 86400),
        "COOKIE_DOMAIN": s.cookie_domain,
        "FRONTEND_URL": s.frontend_url,
        "MAILGUN_API_KEY": s.mailgun_api_key,
        "MAILGUN_DOMAIN": s.mailgun_domain,
        "PAYMONGO_SECRET_KEY": s.paymongo_secret_key,
        "PAYMONGO_WEBHOOK_SECRET": s.paymongo_webhook_secret,
        "ADMIN_EMAIL": s.admin_email,
        "ADMIN_PASSWORD": s.admin_password,
        "STORAGE_BACKEND": s.storage_backend,
        "LOCAL_STORAGE_ROOT": s.local_storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        # auth cookies
        "COOKIE_SECURE": is_production,
        "COOKIE_SAMESITE": "None" if is_production else "Strict",
        # request body limit (asset uploads are checked separately at 2MB)
        "MAX_CONTENT_LENGTH": 10 * 1024 * 1024,
    }
