"""Environment-driven configuration."""
import os

import pytest

from clerk.settings import ConfigError, Settings

ENV_VARS = [
    "DATABASE_URL", "PLAID_CLIENT_ID", "PLAID_SECRET", "PLAID_ENV", "PLAID_COUNTRY_CODES",
    "CLERK_RULES_FILE", "CLERK_RULE_STEP_LIMIT", "CLERK_RULE_TIME_LIMIT", "CLERK_SYNC_PAGE_SIZE",
    "CLERK_SYNC_MAX_RETRIES", "CLERK_SYNC_BACKOFF", "CLERK_SYNC_BACKOFF_MAX",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests.
    monkeypatch.chdir(tmp_path)
    yield
    # load_dotenv writes to os.environ directly.
    for name in ENV_VARS:
        os.environ.pop(name, None)


def test_defaults(tmp_path):
    settings = Settings.from_env(str(tmp_path / "none.env"))
    assert settings.database_url == "sqlite:///clerk.db"
    assert settings.plaid_env == "sandbox"
    assert settings.country_codes == ("US",)
    assert settings.page_size == 500
    assert settings.rules_file is None


def test_values_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("PLAID_ENV", "Production")
    monkeypatch.setenv("PLAID_COUNTRY_CODES", "us, ca")
    monkeypatch.setenv("CLERK_SYNC_PAGE_SIZE", "100")
    monkeypatch.setenv("CLERK_SYNC_BACKOFF", "0.5")
    settings = Settings.from_env(str(tmp_path / "none.env"))

    assert settings.plaid_env == "production"
    assert settings.country_codes == ("US", "CA")
    assert settings.page_size == 100
    assert settings.backoff == 0.5


def test_dotenv_file_is_loaded(tmp_path):
    env_file = tmp_path / "clerk.env"
    env_file.write_text("PLAID_CLIENT_ID=abc\nCLERK_RULES_FILE=rules.yaml\n")
    settings = Settings.from_env(str(env_file))
    assert settings.plaid_client_id == "abc"
    assert settings.rules_file == "rules.yaml"


@pytest.mark.parametrize("name,value", [
    ("PLAID_ENV", "development"),
    ("CLERK_SYNC_PAGE_SIZE", "0"),
    ("CLERK_SYNC_PAGE_SIZE", "501"),
    ("CLERK_SYNC_PAGE_SIZE", "lots"),
    ("CLERK_SYNC_MAX_RETRIES", "-1"),
    ("CLERK_RULE_TIME_LIMIT", "0"),
])
def test_invalid_values(monkeypatch, tmp_path, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        Settings.from_env(str(tmp_path / "none.env"))
