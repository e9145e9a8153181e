import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        base_currency: str,
        fx_provider: str,
        fx_api_url: str,
        fx_timeout_secs: float,
        fx_cache_ttl_secs: int,
        fx_static_rates: dict[str, str],
        auth_secret: str,
        auth_token_max_age_secs: int,
        webhook_key: str,
        signup_secret: str,
        rekickstart_policy: str,
        stale_line_item_policy: str,
        sync_on_write: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.base_currency = base_currency
        self.fx_provider = fx_provider
        self.fx_api_url = fx_api_url
        self.fx_timeout_secs = fx_timeout_secs
        self.fx_cache_ttl_secs = fx_cache_ttl_secs
        self.fx_static_rates = fx_static_rates
        self.auth_secret = auth_secret
        self.auth_token_max_age_secs = auth_token_max_age_secs
        self.webhook_key = webhook_key
        self.signup_secret = signup_secret
        self.rekickstart_policy = rekickstart_policy
        self.stale_line_item_policy = stale_line_item_policy
        self.sync_on_write = sync_on_write
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("CYCLES_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_rates(raw: str) -> dict[str, str]:
    # "USD=5.1,EUR=6.02"
    rates: dict[str, str] = {}
    for chunk in raw.split(","):
        if not chunk.strip():
            continue
        code, _, value = chunk.partition("=")
        rates[code.strip().upper()] = value.strip()
    return rates


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_choice(name: str, default: str, allowed: tuple[str, ...]) -> str:
    value = os.getenv(name, default).strip().lower()
    if value not in allowed:
        raise ValueError(f"{name} must be one of {', '.join(allowed)}; got {value!r}")
    return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "cycles.db"
    database_url = os.getenv("CYCLES_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("CYCLES_TIMEZONE", "America/Sao_Paulo")
    base_currency = os.getenv("CYCLES_BASE_CURRENCY", "BRL").upper()
    fx_provider = os.getenv("CYCLES_FX_PROVIDER", "exchangerate-api")
    fx_api_url = os.getenv(
        "CYCLES_FX_API_URL", "https://v6.exchangerate-api.com/v6/demo/latest"
    )
    fx_timeout_secs = float(os.getenv("CYCLES_FX_TIMEOUT_SECS", "5"))
    fx_cache_ttl_secs = int(os.getenv("CYCLES_FX_CACHE_TTL_SECS", "0"))
    fx_static_rates = _parse_rates(os.getenv("CYCLES_FX_STATIC_RATES", ""))
    auth_secret = os.getenv(
        "CYCLES_AUTH_SECRET",
        "5f0c3a9e8b1d4c2a7e6f9b0d3c8a1e4f7b2d5c9a0e3f6b8d1c4a7e0f3b6d9c2a",
    )
    auth_token_max_age_secs = int(
        os.getenv("CYCLES_AUTH_TOKEN_MAX_AGE_SECS", str(12 * 3600))
    )
    webhook_key = os.getenv("CYCLES_WEBHOOK_KEY", "dev-webhook-key")
    signup_secret = os.getenv("CYCLES_SIGNUP_SECRET", "dev-signup-secret")
    rekickstart_policy = _env_choice(
        "CYCLES_REKICKSTART_POLICY", "reject", ("reject", "noop")
    )
    stale_line_item_policy = _env_choice(
        "CYCLES_STALE_LINE_ITEM_POLICY", "keep", ("keep", "prune_pending", "prune_all")
    )
    sync_on_write = _env_flag("CYCLES_SYNC_ON_WRITE", "1")
    log_level = os.getenv("CYCLES_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        base_currency=base_currency,
        fx_provider=fx_provider,
        fx_api_url=fx_api_url,
        fx_timeout_secs=fx_timeout_secs,
        fx_cache_ttl_secs=fx_cache_ttl_secs,
        fx_static_rates=fx_static_rates,
        auth_secret=auth_secret,
        auth_token_max_age_secs=auth_token_max_age_secs,
        webhook_key=webhook_key,
        signup_secret=signup_secret,
        rekickstart_policy=rekickstart_policy,
        stale_line_item_policy=stale_line_item_policy,
        sync_on_write=sync_on_write,
        log_level=log_level,
    )
