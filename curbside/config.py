import os

from pydantic import BaseModel


def _env_list(name: str, default: str) -> list[str]:
    return [v.strip() for v in os.getenv(name, default).split(",") if v.strip()]


class Settings(BaseModel):
    # "memory" keeps everything in-process (single instance / local dev),
    # "redis" shares reports, sessions and subscriptions across instances.
    store_backend: str = os.getenv("CURBSIDE_STORE", "memory").strip().lower() or "memory"
    redis_url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    redis_socket_timeout_s: float = float(os.getenv("REDIS_SOCKET_TIMEOUT_S", "5"))

    reports_table: str = os.getenv("REPORTS_TABLE", "curbside_reports")
    confirmations_table: str = os.getenv("CONFIRMATIONS_TABLE", "curbside_confirmations")
    sessions_table: str = os.getenv("PARKING_SESSIONS_TABLE", "curbside_parking_sessions")
    user_reports_table: str = os.getenv("USER_REPORTS_TABLE", "curbside_user_reports")
    subscriptions_prefix: str = os.getenv("SUBSCRIPTIONS_PREFIX", "curbside_subscriptions")
    # Subscriptions of an instance that stops refreshing them (crash, kill)
    # disappear after this long.
    subscription_ttl_s: int = int(os.getenv("SUBSCRIPTION_TTL_S", "90"))

    # Connection callback gateway. When unset, updates are pushed to the
    # WebSocket connections held by this process.
    ws_callback_url: str | None = os.getenv("WS_CALLBACK_URL", "").strip().rstrip("/") or None
    ws_callback_timeout_s: float = float(os.getenv("WS_CALLBACK_TIMEOUT_S", "5"))

    # Set by the upstream authorizer once the bearer token has been validated.
    user_header: str = os.getenv("CURBSIDE_USER_HEADER", "X-User-Id")

    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    cors_origins: list[str] = _env_list("CORS_ORIGINS", "*")

    report_ttl_s: int = int(os.getenv("REPORT_TTL_S", str(15 * 60)))
    rate_limit_window_s: int = int(os.getenv("RATE_LIMIT_WINDOW_S", "15"))
    default_radius_m: float = float(os.getenv("DEFAULT_RADIUS_M", "1000"))


settings = Settings()
