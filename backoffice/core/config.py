from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ================================
# ВСПОМОГАТЕЛЬНЫЕ ХЕЛПЕРЫ
# ================================
def _under_pytest() -> bool:
    return "PYTEST_CURRENT_TEST" in os.environ


def _mask_secret(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    s = str(val)
    if not s:
        return s
    if len(s) <= 6:
        return "***"
    return s[:3] + "***" + s[-3:]


def _project_root() -> Path:
    return Path(__file__).resolve().parent.parent.parent


def _parse_list_like(v):
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("[") and v.endswith("]"):
            v = v[1:-1]
        return [i.strip().strip('"').strip("'") for i in v.split(",") if i.strip()]
    return v


def _is_secret_key_name(key: str) -> bool:
    lk = key.lower()
    if any(s in lk for s in ("secret", "password", "token", "dsn")):
        return True
    if "key" in lk and "public" not in lk:
        return True
    return False


def _mask_nested(obj: Any) -> Any:
    """Рекурсивная маскировка секретов в dict/list."""
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if isinstance(k, str) and _is_secret_key_name(k) and not isinstance(v, (dict, list)):
                out[k] = _mask_secret(v)
            else:
                out[k] = _mask_nested(v)
        return out
    if isinstance(obj, list):
        return [_mask_nested(v) for v in obj]
    return obj


# ================================
# НАСТРОЙКИ ПРИЛОЖЕНИЯ (Pydantic v2)
# ================================
class Settings(BaseSettings):
    """
    Settings for the logistics back-office.

    - PostgreSQL in production, SQLite fallback for development and tests.
    - Stock effect / notification outbox tuning (eager apply, retries, scheduler intervals).
    - Secrets are masked in dumps.
    """

    model_config = SettingsConfigDict(
        env_file=(".env.test", ".env"),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    # ---- базовые
    APP_NAME: str = Field(default="Logistics Back-Office", description="Application name")
    PROJECT_NAME: str = Field(default="backoffice", description="Project name")
    VERSION: str = Field(default="0.1.0", description="Application version")
    DEBUG: bool = Field(default=False, description="Debug mode")
    ENVIRONMENT: str = Field(default="development", description="Environment")
    TESTING: bool = Field(default=False, description="Testing mode")

    # ---- сервер
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=8000, description="Bind port")
    UVICORN_WORKERS: int = Field(default=1, description="Uvicorn workers")

    # ---- БД
    DATABASE_URL: Optional[str] = Field(default=None, description="Database URL")
    SQLALCHEMY_POOL_SIZE: int = Field(default=10, description="Pool size")
    SQLALCHEMY_MAX_OVERFLOW: int = Field(default=20, description="Max overflow")
    SQLALCHEMY_POOL_TIMEOUT: int = Field(default=30, description="Pool timeout (s)")
    SQLALCHEMY_POOL_RECYCLE: int = Field(default=1800, description="Pool recycle (s)")
    POSTGRES_STATEMENT_TIMEOUT_MS: Optional[int] = Field(default=None, description="statement_timeout")
    POSTGRES_SSLMODE: Optional[str] = Field(default=None, description="sslmode for PostgreSQL")

    # ---- логи
    LOG_PATH: str = Field(default="logs/app.log", description="Log file path")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="json", description="Logging format (json|text)")

    # ---- CORS
    CORS_ORIGINS: List[str] = Field(default=["*"], description="CORS origins")

    # ---- планировщик / outbox
    SCHEDULER_TIMEZONE: str = Field(default="UTC", description="Scheduler timezone")
    ENABLE_SCHEDULER: bool = Field(default=False, description="Start APScheduler jobs on startup")
    RECONCILE_INTERVAL_SECONDS: int = Field(default=60, description="Stock effect reconciler interval")
    NOTIFY_INTERVAL_SECONDS: int = Field(default=30, description="Notification relay interval")
    EAGER_STOCK_EFFECTS: bool = Field(default=True, description="Apply stock effects right after commit")
    EAGER_NOTIFICATIONS: bool = Field(
        default=False, description="Relay the operation's own notifications right after commit"
    )
    STOCK_EFFECT_MAX_ATTEMPTS: int = Field(default=10, description="Attempts before an effect is parked")
    STOCK_EFFECT_RETRY_SECONDS: int = Field(default=60, description="Base retry delay for stock effects")
    OUTBOX_BATCH_SIZE: int = Field(default=100, description="Outbox rows per relay pass")

    # ---- домен
    LOW_STOCK_THRESHOLD: int = Field(default=10, description="Low stock warning threshold")
    DEFAULT_CURRENCY: str = Field(default="USD", description="Fallback currency code")
    INVOICE_DUE_DAYS: int = Field(default=30, description="Invoice due date offset (days)")

    # ---- уведомления
    NOTIFICATION_WEBHOOK_URL: Optional[str] = Field(default=None, description="Notification webhook URL")
    NOTIFICATION_WEBHOOK_TOKEN: Optional[str] = Field(default=None, description="Bearer token for webhook")
    NOTIFICATION_TIMEOUT_SECONDS: float = Field(default=5.0, description="Webhook timeout")

    # ---- Release metadata
    GIT_COMMIT_SHA: Optional[str] = Field(default=None, description="Git commit SHA")
    BUILD_TIMESTAMP: Optional[str] = Field(default=None, description="Build timestamp")

    # --------- валидаторы ---------
    @field_validator("CORS_ORIGINS", mode="before")
    def _cors(cls, v):
        return _parse_list_like(v)

    @field_validator("DEFAULT_CURRENCY")
    def _currency(cls, v):
        v = (v or "").strip().upper()
        if len(v) != 3:
            raise ValueError("DEFAULT_CURRENCY must be a 3-letter code")
        return v

    @field_validator("STOCK_EFFECT_MAX_ATTEMPTS", "LOW_STOCK_THRESHOLD")
    def _non_negative(cls, v):
        if int(v) < 0:
            raise ValueError("must be >= 0")
        return v

    # --------- удобные свойства ---------
    @property
    def base_dir(self) -> Path:
        return _project_root()

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() in ("development", "dev", "local")

    @property
    def is_testing(self) -> bool:
        return bool(self.TESTING or _under_pytest())

    @property
    def build_info(self) -> dict:
        return {
            "project": self.PROJECT_NAME,
            "version": self.VERSION,
            "environment": self.ENVIRONMENT,
            "commit": self.GIT_COMMIT_SHA or "",
            "build_time": self.BUILD_TIMESTAMP or "",
        }

    # --------- DSN/engine helpers ---------
    def pg_extra_query_params(self) -> Dict[str, str]:
        q: Dict[str, str] = {}
        if self.POSTGRES_STATEMENT_TIMEOUT_MS:
            q["options"] = f"-c statement_timeout={int(self.POSTGRES_STATEMENT_TIMEOUT_MS)}"
        if self.POSTGRES_SSLMODE:
            q["sslmode"] = self.POSTGRES_SSLMODE
        elif self.is_production:
            q["sslmode"] = "require"
        return q

    def _coerce_sqlalchemy_url(self, url: Optional[str]) -> Tuple[str, str]:
        if not url:
            if self.is_production:
                raise ValueError("DATABASE_URL is required in production")
            path = "/" + PurePosixPath(self.base_dir / "backoffice.db").as_posix()
            return f"sqlite://{path}", "sqlite"

        parsed = urlparse(url)
        scheme = (parsed.scheme or "").lower()

        if scheme.startswith("sqlite"):
            if self.is_production:
                raise ValueError("SQLite is not allowed in production. Use a PostgreSQL DSN.")
            return url, "sqlite"

        if scheme in {"postgres", "postgresql"} or scheme.startswith("postgresql+"):
            _, netloc, path, params, query, frag = parsed
            qs = parse_qs(query)
            for k, v in self.pg_extra_query_params().items():
                qs.setdefault(k, [v])
            base = urlunparse(("postgresql+psycopg2", netloc, path, params, urlencode(qs, doseq=True), frag))
            return base, "postgresql"

        return url, scheme or "unknown"

    @property
    def sqlalchemy_url(self) -> str:
        return self._coerce_sqlalchemy_url(self.DATABASE_URL)[0]

    @property
    def sqlalchemy_driver(self) -> str:
        return self._coerce_sqlalchemy_url(self.DATABASE_URL)[1]

    @property
    def sqlalchemy_engine_options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"echo": bool(self.DEBUG), "pool_pre_ping": True}
        if self.sqlalchemy_driver == "sqlite":
            opts["connect_args"] = {"check_same_thread": False}
            return opts
        opts.update(
            pool_size=self.SQLALCHEMY_POOL_SIZE,
            max_overflow=self.SQLALCHEMY_MAX_OVERFLOW,
            pool_timeout=self.SQLALCHEMY_POOL_TIMEOUT,
            pool_recycle=self.SQLALCHEMY_POOL_RECYCLE,
        )
        return opts

    @property
    def uvicorn_kwargs(self) -> dict:
        reload_ = self.is_development
        return {
            "host": self.HOST,
            "port": int(self.PORT),
            "reload": reload_,
            "log_level": (self.LOG_LEVEL or "info").lower(),
            "proxy_headers": True,
            "workers": 1 if reload_ else self.UVICORN_WORKERS,
        }

    # --------- диагностика/дампы ---------
    def dump_settings_safe(self) -> dict:
        return _mask_nested(self.model_dump())


@lru_cache
def get_settings() -> Settings:
    s = Settings()
    # В тестах приложение логирует в консоль, без тяжёлого JSON
    if s.is_testing and not os.getenv("LOG_FORMAT"):
        object.__setattr__(s, "LOG_FORMAT", "text")
    return s


settings = get_settings()


__all__ = ["Settings", "get_settings", "settings"]
