"""ForexDesk — application configuration.

Loads .env variables into a typed config object.
Broker credentials are per-user and live in the user store, not here.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


PRACTICE_BASE_URL = "https://api-fxpractice.oanda.com"
LIVE_BASE_URL = "https://api-fxtrade.oanda.com"


@dataclass(frozen=True)
class Config:
    """Typed configuration loaded from environment variables."""

    db_path: str = "data/forexdesk.db"
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8080
    trust_user_header: bool = False
    request_timeout_seconds: float = 15.0
    default_instrument: str = "EUR_USD"
    default_granularity: str = "M15"
    default_candle_count: int = 200


def _env_number(name: str, default: str, cast):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid value for environment variable {name}: {raw!r}"
        ) from None


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def load_config(env_path: str | None = None) -> Config:
    """Load configuration from environment variables.

    Raises ``ValueError`` naming the offending variable when a numeric
    variable cannot be parsed or the request timeout is not positive.
    """
    load_dotenv(dotenv_path=env_path)

    timeout = _env_number("OANDA_TIMEOUT_SECONDS", "15", float)
    if timeout <= 0:
        raise ValueError("OANDA_TIMEOUT_SECONDS must be positive")

    return Config(
        db_path=os.environ.get("DB_PATH", "data/forexdesk.db"),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
        api_host=os.environ.get("API_HOST", "127.0.0.1"),
        api_port=_env_number("API_PORT", "8080", int),
        trust_user_header=_env_flag("TRUST_PROXY_USER_HEADER"),
        request_timeout_seconds=timeout,
        default_instrument=os.environ.get("DEFAULT_INSTRUMENT", "EUR_USD"),
        default_granularity=os.environ.get("DEFAULT_GRANULARITY", "M15"),
        default_candle_count=_env_number("DEFAULT_CANDLE_COUNT", "200", int),
    )
