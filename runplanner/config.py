from dataclasses import dataclass
import os


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value is not None else default


@dataclass(frozen=True)
class Settings:
    service_name: str = "runplanner"
    service_version: str = "0.1.0"
    port: int = _get_int("PORT", 8080)
    log_level: str = _get_str("LOG_LEVEL", "info")
    max_body_bytes: int = _get_int("MAX_BODY_BYTES", 5 * 1024 * 1024)
    max_concurrent_jobs: int = _get_int("MAX_CONCURRENT_JOBS", 1)

    # planning
    default_max_overrun: float = _get_float("DEFAULT_MAX_OVERRUN", 0.05)
    weight_material: float = _get_float("WEIGHT_MATERIAL", 0.4)
    weight_print: float = _get_float("WEIGHT_PRINT", 0.35)
    weight_labor: float = _get_float("WEIGHT_LABOR", 0.25)
    max_items: int = _get_int("MAX_ITEMS", 500)
    plan_time_limit_ms: int = _get_int("PLAN_TIME_LIMIT_MS", 10000)

    # scoring policy
    print_run_decay: float = _get_float("PRINT_RUN_DECAY", 0.1)
    labor_run_decay: float = _get_float("LABOR_RUN_DECAY", 0.15)
    rewind_penalty: float = _get_float("REWIND_PENALTY", 0.4)
    roll_tolerance: int = _get_int("ROLL_TOLERANCE", 50)

    # production time
    setup_time_minutes: float = _get_float("SETUP_TIME_MINUTES", 15.0)
    changeover_minutes: float = _get_float("CHANGEOVER_MINUTES", 2.0)
    seconds_per_frame: float = _get_float("SECONDS_PER_FRAME", 10.0)

    # imposition
    submit_timeout_s: float = _get_float("SUBMIT_TIMEOUT_S", 60.0)
    poll_interval_s: float = _get_float("POLL_INTERVAL_S", 2.0)
    max_poll_duration_s: float = _get_float("MAX_POLL_DURATION_S", 300.0)
    busy_max_retries: int = _get_int("BUSY_MAX_RETRIES", 3)
    busy_retry_delay_s: float = _get_float("BUSY_RETRY_DELAY_S", 5.0)
    inter_run_delay_s: float = _get_float("INTER_RUN_DELAY_S", 5.0)
    max_consecutive_failures: int = _get_int("MAX_CONSECUTIVE_FAILURES", 3)

    # remote collaborators
    imposition_url: str = _get_str("IMPOSITION_URL", "http://localhost:8090")
    backend_url: str = _get_str("BACKEND_URL", "http://localhost:8070")
    suggestion_url: str = _get_str("SUGGESTION_URL", "http://localhost:8091")
    api_key: str = _get_str("API_KEY", "")
    suggestion_timeout_s: float = _get_float("SUGGESTION_TIMEOUT_S", 90.0)
    asset_url_ttl_s: float = _get_float("ASSET_URL_TTL_S", 3000.0)
    asset_cache_size: int = _get_int("ASSET_CACHE_SIZE", 1024)


settings = Settings()
