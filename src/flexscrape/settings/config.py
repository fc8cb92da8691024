"""Configuration loader for flexscrape using Pydantic settings.

Config precedence (highest wins):
  1. CLI flags (where applicable)
  2. Environment variables (FLEXSCRAPE_* with __ for nesting)
  3. settings.local.toml
  4. settings.<env>.toml
  5. settings.default.toml
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = Path(os.getenv("FLEXSCRAPE_PROJECT_ROOT", _THIS_DIR.parents[2]))
CONFIG_DIR = PROJECT_ROOT / "config"

ENV_VAR_NAME = "FLEXSCRAPE_ENV"
DEFAULT_ENV = "local"


def _resolve_env() -> str:
    return (os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()


def _load_toml(path: Path) -> dict[str, Any]:
    if path.is_file():
        with open(path, "rb") as f:
            return tomllib.load(f)
    return {}


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class BrowserSettings(BaseSettings):
    """Browser connection settings.

    When ``cdp_url`` is set the session attaches to an already running
    Chrome (started with ``--remote-debugging-port``) and leaves it running
    on close. Otherwise a Chromium instance is launched and owned.
    """

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_BROWSER__")

    cdp_url: str = "http://localhost:9222"
    attach: bool = True
    headless: bool = True
    executable_path: str = ""
    connect_timeout_ms: int = 10_000
    apply_stealth_scripts: bool = True
    randomize_fingerprint: bool = True
    debug_mouse: bool = False


class ScrapeSettings(BaseSettings):
    """Defaults for the per-run scrape configuration (overridable by a CONFIGURE step)."""

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_SCRAPE__")

    concurrency: int = Field(default=5, ge=1, le=64)
    blocked_resources: list[str] = Field(default_factory=list)
    output_dir: str = "data/output"
    output_file_name: str = "output.jsonl"
    page_timeout_ms: int = 30_000
    task_dir: str = "config/tasks"


class ProxySettings(BaseSettings):
    """Egress proxy pool configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_PROXY__")

    proxy_urls: list[str] = Field(default_factory=list)
    revalidate_interval_sec: float = 60.0
    health_check_url: str = "https://ipinfo.io/json"
    probe_timeout_sec: float = 5.0


class CookieSettings(BaseSettings):
    """Cookie persistence configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_COOKIES__")

    cookies_file: str = ""


class CaptchaSettings(BaseSettings):
    """CAPTCHA solver configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_CAPTCHA__")

    solver_api_key: str = ""
    solver_base_url: str = "http://2captcha.com"
    poll_attempts: int = 20
    poll_interval_sec: float = 5.0
    request_timeout_sec: float = 30.0


class LimiterSettings(BaseSettings):
    """Outer task limiter for callers dispatching several task lists."""

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_LIMITER__")

    max_concurrent: int = Field(default=2, ge=1)
    min_time_ms: int = Field(default=0, ge=0)


class RetrySettings(BaseSettings):
    """Default retry policy for FETCH_AND_MERGE steps that do not declare one."""

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_RETRY__")

    max_retries: int = 3
    initial_delay_ms: int = 1_000
    max_delay_ms: int = 10_000
    backoff_multiplier: float = 2.0
    jitter: float = 0.1


class LoggingSettings(BaseSettings):
    """Logging output configuration."""

    model_config = SettingsConfigDict(env_prefix="FLEXSCRAPE_LOGGING__")

    level: str = "INFO"
    json_format: bool = False


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Root flexscrape settings with nested sections."""

    model_config = SettingsConfigDict(
        env_prefix="FLEXSCRAPE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    env: str = Field(default_factory=_resolve_env)
    project_root: Path = Field(default=PROJECT_ROOT)
    debug: bool = False

    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    scrape: ScrapeSettings = Field(default_factory=ScrapeSettings)
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    cookies: CookieSettings = Field(default_factory=CookieSettings)
    captcha: CaptchaSettings = Field(default_factory=CaptchaSettings)
    limiter: LimiterSettings = Field(default_factory=LimiterSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="before")
    @classmethod
    def _merge_toml_files(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Layer TOML config files before env var overrides."""
        defaults = _load_toml(CONFIG_DIR / "settings.default.toml")
        env_name = (values.get("env") or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()
        env_overrides = _load_toml(CONFIG_DIR / f"settings.{env_name}.toml")
        local_overrides = _load_toml(CONFIG_DIR / "settings.local.toml")

        # Merge: defaults < env-specific < local < explicit values
        merged: dict[str, Any] = {}
        for layer in (defaults, env_overrides, local_overrides, values):
            for key, val in layer.items():
                if isinstance(val, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **val}
                else:
                    merged[key] = val
        return merged

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize relative paths against project_root."""
        root = self.project_root
        if not Path(self.scrape.output_dir).is_absolute():
            self.scrape.output_dir = str(root / self.scrape.output_dir)
        if not Path(self.scrape.task_dir).is_absolute():
            self.scrape.task_dir = str(root / self.scrape.task_dir)
        if self.cookies.cookies_file and not Path(self.cookies.cookies_file).is_absolute():
            self.cookies.cookies_file = str(root / self.cookies.cookies_file)
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton settings instance (cached)."""
    return Settings()
