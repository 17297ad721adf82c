"""
Service configuration.

Defaults live as module constants; every one of them can be overridden
through the environment.
"""

import os
from dataclasses import dataclass


# Grid
GRID_WIDTH = 1000
GRID_HEIGHT = 1000

# Pricing
BASE_PRICE_CENTS = 1  # first purchase of a virgin cell
MAX_PRICE_EXPONENT = 30  # 2^30 cents is the most a single purchase can cost

# Read path
MAX_WINDOW = 20000
MAX_INTENSITY = 30

# Purchase coordinator
MAX_RETRIES = 5
RETRY_BACKOFF_SECONDS = 0.02
BUSY_TIMEOUT_SECONDS = 5.0

DB_PATH = "pixelledger.db"
AUTH_HEADER = "X-Account-Id"
INTERNAL_TOKEN_HEADER = "X-Internal-Token"


@dataclass(frozen=True)
class Settings:
    db_path: str = DB_PATH
    grid_width: int = GRID_WIDTH
    grid_height: int = GRID_HEIGHT
    base_price_cents: int = BASE_PRICE_CENTS
    max_price_exponent: int = MAX_PRICE_EXPONENT
    max_window: int = MAX_WINDOW
    max_intensity: int = MAX_INTENSITY
    max_retries: int = MAX_RETRIES
    retry_backoff_seconds: float = RETRY_BACKOFF_SECONDS
    busy_timeout_seconds: float = BUSY_TIMEOUT_SECONDS
    auth_header: str = AUTH_HEADER
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    # Shared secret for /wallet/credit; empty disables the route
    internal_token: str = ""
    log_level: str = "INFO"

    def __post_init__(self):
        if self.grid_width <= 0 or self.grid_height <= 0:
            raise ValueError("grid dimensions must be > 0")
        if self.base_price_cents <= 0:
            raise ValueError("base_price_cents must be > 0")
        # base * 2^62 still fits a signed 64-bit SQLite integer for base 1
        if not 0 <= self.max_price_exponent <= 62:
            raise ValueError("max_price_exponent must be between 0 and 62")
        if self.base_price_cents * 2 ** self.max_price_exponent >= 2 ** 63:
            raise ValueError("base_price_cents too large for max_price_exponent")
        if self.max_window <= 0:
            raise ValueError("max_window must be > 0")
        if self.max_intensity < 0:
            raise ValueError("max_intensity must be >= 0")
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if not self.auth_header:
            raise ValueError("auth_header cannot be empty")

    @property
    def grid_size(self) -> int:
        return self.grid_width * self.grid_height

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from PIXEL_* / STRIPE_* environment variables."""
        env = os.environ
        return cls(
            db_path=env.get("PIXEL_DB_PATH", DB_PATH),
            grid_width=_int_env("PIXEL_GRID_WIDTH", GRID_WIDTH),
            grid_height=_int_env("PIXEL_GRID_HEIGHT", GRID_HEIGHT),
            base_price_cents=_int_env("PIXEL_BASE_PRICE_CENTS", BASE_PRICE_CENTS),
            max_price_exponent=_int_env("PIXEL_MAX_PRICE_EXPONENT", MAX_PRICE_EXPONENT),
            max_window=_int_env("PIXEL_MAX_WINDOW", MAX_WINDOW),
            max_intensity=_int_env("PIXEL_MAX_INTENSITY", MAX_INTENSITY),
            max_retries=_int_env("PIXEL_MAX_RETRIES", MAX_RETRIES),
            retry_backoff_seconds=_float_env("PIXEL_RETRY_BACKOFF_SECONDS", RETRY_BACKOFF_SECONDS),
            busy_timeout_seconds=_float_env("PIXEL_BUSY_TIMEOUT_SECONDS", BUSY_TIMEOUT_SECONDS),
            auth_header=env.get("PIXEL_AUTH_HEADER", AUTH_HEADER),
            stripe_secret_key=env.get("STRIPE_SECRET_KEY", ""),
            stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET", ""),
            internal_token=env.get("PIXEL_INTERNAL_TOKEN", ""),
            log_level=env.get("PIXEL_LOG_LEVEL", "INFO").upper(),
        )


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")
