import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    site_url: str

    root_domain: str
    main_domains: tuple[str, ...]
    cname_target: str
    cron_secret: str
    listing_ttl_days: int

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str
    media_url: str

    smtp_host: str
    smtp_port: int
    smtp_username: str
    smtp_password: str
    smtp_use_tls: bool
    email_from: str

    google_client_id: str
    google_client_secret: str


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int) -> int:
    raw = _getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    root_domain = _getenv("ROOT_DOMAIN", "autoexplora.cl").lower()
    default_main = f"{root_domain},www.{root_domain},localhost,127.0.0.1"
    main_domains = tuple(d.strip().lower() for d in _getenv("MAIN_DOMAINS", default_main).split(",") if d.strip())
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///autoexplora.db"),
        site_url=_getenv("SITE_URL", f"https://{root_domain}").rstrip("/"),
        root_domain=root_domain,
        main_domains=main_domains,
        cname_target=_getenv("CNAME_TARGET", root_domain).lower().rstrip("."),
        cron_secret=_getenv("CRON_SECRET", ""),
        listing_ttl_days=_getint("LISTING_TTL_DAYS", 30),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        media_url=_getenv("MEDIA_URL", "/media").rstrip("/"),
        smtp_host=_getenv("SMTP_HOST", ""),
        smtp_port=_getint("SMTP_PORT", 587),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        smtp_use_tls=_getenv("SMTP_USE_TLS", "1") not in ("0", "false", "no"),
        email_from=_getenv("EMAIL_FROM", f"AutoExplora <no-reply@{root_domain}>"),
        google_client_id=_getenv("GOOGLE_CLIENT_ID", ""),
        google_client_secret=_getenv("GOOGLE_CLIENT_SECRET", ""),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "SITE_URL": s.site_url,
        "ROOT_DOMAIN": s.root_domain,
        "MAIN_DOMAINS": s.main_domains,
        "CNAME_TARGET": s.cname_target,
        "CRON_SECRET": s.cron_secret,
        "LISTING_TTL_DAYS": s.listing_ttl_days,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "MEDIA_URL": s.media_url,
        "SMTP_HOST": s.smtp_host,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "EMAIL_FROM": s.email_from,
        "GOOGLE_CLIENT_ID": s.google_client_id,
        "GOOGLE_CLIENT_SECRET": s.google_client_secret,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # 15 images x 10MB plus form fields
        "MAX_CONTENT_LENGTH": 160 * 1024 * 1024,
    }
