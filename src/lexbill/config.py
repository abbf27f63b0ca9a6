"""Configuration loading for lexbill."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import tomli

logger = logging.getLogger("lexbill.config")


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"           # INFO or DEBUG
    output: str = "console"       # console, file, or both
    file: str = ""                # log file path
    rotate: bool = True           # enable rotation
    max_size_mb: int = 10         # max file size before rotation
    backup_count: int = 5         # rotated files to keep


@dataclass
class ApiConfig:
    """Billing REST API used for timesheets, expenses and invoices."""
    base_url: str = ""
    token: str = ""               # bearer token; LEXBILL_API_TOKEN overrides
    timeout: float = 15.0


@dataclass
class BillingConfig:
    default_currency: str = "INR"
    default_location: str = "mumbai"
    due_days: int = 60            # default due date = latest timesheet + N days
    billing_file: str = ""        # local BILLING.md for offline drafting


@dataclass
class Config:
    api: ApiConfig = field(default_factory=ApiConfig)
    billing: BillingConfig = field(default_factory=BillingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    config_path: Path | None = None

    @property
    def use_api(self) -> bool:
        return bool(self.api.base_url)

    @property
    def billing_file_path(self) -> Path | None:
        if not self.billing.billing_file:
            return None
        path = Path(self.billing.billing_file).expanduser()
        if not path.is_absolute() and self.config_path is not None:
            path = self.config_path.parent / path
        return path


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file."""
    if config_path is None:
        # Look for config in standard locations
        candidates = [
            Path("config/config.toml"),
            Path.home() / ".config/lexbill/config.toml",
            Path("/etc/lexbill/config.toml"),
        ]
        for candidate in candidates:
            if candidate.exists():
                config_path = candidate
                break

    config = Config()

    if config_path is not None and config_path.exists():
        with open(config_path, "rb") as f:
            data = tomli.load(f)
        config.config_path = config_path
        logger.debug("Loaded config from %s", config_path)
    else:
        data = {}

    if "api" in data:
        api = data["api"]
        config.api = ApiConfig(
            base_url=api.get("base_url", ""),
            token=api.get("token", ""),
            timeout=float(api.get("timeout", 15.0)),
        )

    if "billing" in data:
        b = data["billing"]
        config.billing = BillingConfig(
            default_currency=b.get("default_currency", "INR"),
            default_location=b.get("default_location", "mumbai"),
            due_days=int(b.get("due_days", 60)),
            billing_file=b.get("billing_file", ""),
        )

    if "logging" in data:
        log = data["logging"]
        config.logging = LoggingConfig(
            level=log.get("level", "INFO"),
            output=log.get("output", "console"),
            file=log.get("file", ""),
            rotate=log.get("rotate", True),
            max_size_mb=log.get("max_size_mb", 10),
            backup_count=log.get("backup_count", 5),
        )

    # Environment overrides
    env_token = os.environ.get("LEXBILL_API_TOKEN", "")
    if env_token:
        config.api.token = env_token
    env_url = os.environ.get("LEXBILL_API_URL", "")
    if env_url:
        config.api.base_url = env_url

    return config
