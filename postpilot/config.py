import os
from dotenv import load_dotenv

load_dotenv()


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./postpilot.db")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    http_timeout_seconds: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))

    linkedin_client_id: str = os.getenv("LINKEDIN_CLIENT_ID", "")
    linkedin_client_secret: str = os.getenv("LINKEDIN_CLIENT_SECRET", "")
    # Empty means "derive from the request origin" (<origin>/linkedin/callback)
    linkedin_redirect_uri: str = os.getenv("LINKEDIN_REDIRECT_URI", "")
    linkedin_scopes: str = os.getenv("LINKEDIN_SCOPES", "openid profile email w_member_social")
    linkedin_state_secret: str = os.getenv("LINKEDIN_STATE_SECRET", "")
    linkedin_state_ttl_seconds: int = int(os.getenv("LINKEDIN_STATE_TTL_SECONDS", "600"))

    fernet_key: str = os.getenv("FERNET_KEY", "")

    # Session tokens are Supabase-issued JWTs
    supabase_jwt_secret: str = os.getenv("SUPABASE_JWT_SECRET", "")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_audience: str = os.getenv("JWT_AUDIENCE", "authenticated")

    cron_secret: str = os.getenv("CRON_SECRET", "")

    scheduler_enabled: bool = _bool("SCHEDULER_ENABLED")
    publish_sweep_cron: str = os.getenv("PUBLISH_SWEEP_CRON", "*/5 * * * *")
    analytics_sweep_cron: str = os.getenv("ANALYTICS_SWEEP_CRON", "0 * * * *")

settings = Settings()
