import os
from dataclasses import dataclass, field, fields
from dotenv import load_dotenv

load_dotenv()

DEFAULT_SECRET = "dev-secret"


def _env(name: str, default: str = "") -> str:
    value = os.getenv(name)
    if value is None:
        return default
    # .env values sometimes arrive quoted or with trailing whitespace
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return value


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, str(default)))
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, str(default)))
    except ValueError:
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = _env(name, "1" if default else "0").lower()
    return raw in ("1", "true", "yes", "on")


@dataclass
class Config:
    DATABASE_URL: str = field(default_factory=lambda: _env("DATABASE_URL"))
    STORE_BACKEND: str = field(default_factory=lambda: _env("STORE_BACKEND"))
    SECRET_KEY: str = field(default_factory=lambda: _env("SECRET_KEY", DEFAULT_SECRET))
    APPROVAL_TOKEN_SECRET: str = field(default_factory=lambda: _env("APPROVAL_TOKEN_SECRET"))
    JWT_EXPIRES_HOURS: int = field(default_factory=lambda: _env_int("JWT_EXPIRES_HOURS", 168))
    APPROVAL_TOKEN_HOURS: int = field(default_factory=lambda: _env_int("APPROVAL_TOKEN_HOURS", 24))
    ENV: str = field(default_factory=lambda: _env("FLASK_ENV", "development"))
    ADMIN_EMAIL: str = field(default_factory=lambda: _env("ADMIN_EMAIL", "admin@omnora.com"))
    BACKEND_URL: str = field(default_factory=lambda: _env("BACKEND_URL", "http://localhost:5000"))
    ALLOWED_ORIGINS: str = field(default_factory=lambda: _env("ALLOWED_ORIGINS"))
    LOG_LEVEL: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))
    LOG_TIMING: bool = field(default_factory=lambda: _env_flag("LOG_TIMING", False))
    SLOW_REQUEST_MS: int = field(default_factory=lambda: _env_int("SLOW_REQUEST_MS", 500))
    SLOW_DB_MS: int = field(default_factory=lambda: _env_int("SLOW_DB_MS", 400))
    ENABLE_COMPRESSION: bool = field(default_factory=lambda: _env_flag("ENABLE_COMPRESSION", False))
    METRICS_PROMETHEUS: bool = field(default_factory=lambda: _env_flag("METRICS_PROMETHEUS", False))

    CACHE_ENABLED: bool = field(default_factory=lambda: _env_flag("CACHE_ENABLED", True))
    USE_REDIS_CACHE: bool = field(default_factory=lambda: _env_flag("USE_REDIS_CACHE", False))
    REDIS_URL: str = field(default_factory=lambda: _env("REDIS_URL", "redis://localhost:6379/0"))
    CACHE_TTL_PRODUCTS: int = field(default_factory=lambda: _env_int("CACHE_TTL_PRODUCTS", 30))

    TAX_RATE: float = field(default_factory=lambda: _env_float("TAX_RATE", 0.17))
    MAX_QTY_PER_LINE: int = field(default_factory=lambda: _env_int("MAX_QTY_PER_LINE", 10))
    CART_RESERVATION_MINUTES: int = field(default_factory=lambda: _env_int("CART_RESERVATION_MINUTES", 30))
    ORDER_RESERVATION_MINUTES: int = field(default_factory=lambda: _env_int("ORDER_RESERVATION_MINUTES", 1440))
    RESERVATION_SWEEP: bool = field(default_factory=lambda: _env_flag("RESERVATION_SWEEP", True))
    RESERVATION_SWEEP_INTERVAL: int = field(default_factory=lambda: _env_int("RESERVATION_SWEEP_INTERVAL", 60))
    LOW_STOCK_ALERT_WINDOW_MINUTES: int = field(default_factory=lambda: _env_int("LOW_STOCK_ALERT_WINDOW_MINUTES", 60))

    @property
    def is_production(self) -> bool:
        return self.ENV == "production"

    @property
    def backend(self) -> str:
        if self.STORE_BACKEND:
            return self.STORE_BACKEND.lower()
        return "postgres" if self.DATABASE_URL else "memory"

    @property
    def approval_secret(self) -> str:
        return self.APPROVAL_TOKEN_SECRET or self.SECRET_KEY

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()] or ["*"]

    def validate(self) -> "Config":
        if self.is_production and self.SECRET_KEY == DEFAULT_SECRET:
            raise RuntimeError("Critical configuration failure: SECRET_KEY is missing.")
        if self.backend not in ("memory", "postgres"):
            raise RuntimeError(f"Unknown STORE_BACKEND {self.STORE_BACKEND!r}; use 'memory' or 'postgres'.")
        if self.backend == "postgres" and not self.DATABASE_URL:
            raise RuntimeError("STORE_BACKEND=postgres requires DATABASE_URL.")
        return self


def get_config(overrides: dict | None = None) -> "Config":
    cfg = Config()
    known = {f.name for f in fields(Config)}
    for key, value in (overrides or {}).items():
        if key in known:
            setattr(cfg, key, value)
    return cfg.validate()


def current_config() -> "Config":
    from flask import current_app

    return current_app.extensions["storefront.config"]
