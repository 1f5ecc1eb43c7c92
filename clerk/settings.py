import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv


class ConfigError(Exception):
    """Raised when an environment value cannot be used."""
    pass


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///clerk.db"

    # Plaid
    plaid_client_id: Optional[str] = None
    plaid_secret: Optional[str] = None
    plaid_env: str = "sandbox"
    country_codes: Tuple[str, ...] = ("US",)

    # Rules
    rules_file: Optional[str] = None
    rule_step_limit: int = 10_000
    rule_time_limit: float = 0.25

    # Sync
    page_size: int = 500
    max_retries: int = 5
    backoff: float = 1.0
    backoff_max: float = 60.0

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "Settings":
        """
        Build settings from the process environment.

        A ``.env`` file is loaded first (existing variables win), then every
        value is read exactly once.  Nothing else in the package touches the
        environment.
        """
        load_dotenv(dotenv_path)

        codes = os.getenv("PLAID_COUNTRY_CODES", "US")
        settings = cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///clerk.db"),
            plaid_client_id=os.getenv("PLAID_CLIENT_ID"),
            plaid_secret=os.getenv("PLAID_SECRET"),
            plaid_env=os.getenv("PLAID_ENV", "sandbox").lower(),
            country_codes=tuple(c.strip().upper() for c in codes.split(",") if c.strip()),
            rules_file=os.getenv("CLERK_RULES_FILE") or None,
            rule_step_limit=_get_int("CLERK_RULE_STEP_LIMIT", 10_000),
            rule_time_limit=_get_float("CLERK_RULE_TIME_LIMIT", 0.25),
            page_size=_get_int("CLERK_SYNC_PAGE_SIZE", 500),
            max_retries=_get_int("CLERK_SYNC_MAX_RETRIES", 5),
            backoff=_get_float("CLERK_SYNC_BACKOFF", 1.0),
            backoff_max=_get_float("CLERK_SYNC_BACKOFF_MAX", 60.0),
        )
        settings.validate()
        return settings

    def validate(self):
        if self.plaid_env not in ("sandbox", "production"):
            raise ConfigError(f"PLAID_ENV must be 'sandbox' or 'production', got {self.plaid_env!r}")
        if not 1 <= self.page_size <= 500:
            raise ConfigError("CLERK_SYNC_PAGE_SIZE must be between 1 and 500")
        if self.max_retries < 0:
            raise ConfigError("CLERK_SYNC_MAX_RETRIES must not be negative")
        if self.rule_step_limit <= 0 or self.rule_time_limit <= 0:
            raise ConfigError("rule evaluation limits must be positive")
