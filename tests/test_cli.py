"""Command-line entry point against a file-backed store."""
import pytest

from clerk import cli, database
from clerk.plaid_integration import DeltaPage

from conftest import ACCOUNT_ID, ITEM_ID, FakeUpstreamClient, plaid_txn


@pytest.fixture
def db_url(monkeypatch, tmp_path):
    url = f"sqlite:///{tmp_path / 'clerk.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.delenv("CLERK_RULES_FILE", raising=False)
    monkeypatch.delenv("PLAID_ENV", raising=False)
    store = database.Store(url)
    store.init_db()
    with store.transaction() as db:
        database.upsert_link(db, ITEM_ID, "access-1", alias="Chase")
        database.upsert_account(db, ITEM_ID, ACCOUNT_ID, "Checking", "depository")
    return url


@pytest.fixture
def run(tmp_path):
    env_file = str(tmp_path / "missing.env")

    def _run(*args):
        return cli.main(["--env-file", env_file, *args])
    return _run


def test_sync_then_print(db_url, run, monkeypatch, capsys):
    page = DeltaPage(added=[plaid_txn("t1", -50, name="Deposit")], next_cursor="c1")
    monkeypatch.setattr(cli, "PlaidClient", lambda settings: FakeUpstreamClient([page]))

    assert run("sync") == 0
    assert "added=1" in capsys.readouterr().out

    assert run("print") == 0
    out = capsys.readouterr().out
    assert out.startswith("2021-09-01 * Deposit\n")
    assert "Assets:Checking" in out


def test_accounts_and_link_status(db_url, run, capsys):
    assert run("accounts") == 0
    assert f"Chase\tChecking\t{ACCOUNT_ID}\tdepository" in capsys.readouterr().out

    assert run("link", "status") == 0
    assert f"Chase\t{ITEM_ID}\tACTIVE" in capsys.readouterr().out


def test_link_delete(db_url, run, capsys):
    assert run("link", "delete", ITEM_ID) == 0
    assert run("link", "delete", ITEM_ID) == 1
    assert "No link" in capsys.readouterr().err


def test_bad_configuration_exits_nonzero(db_url, run, monkeypatch, capsys):
    monkeypatch.setenv("PLAID_ENV", "development")
    assert run("print") == 1
    assert "PLAID_ENV" in capsys.readouterr().err


def test_missing_rules_file_exits_nonzero(db_url, run, monkeypatch, tmp_path, capsys):
    monkeypatch.setenv("CLERK_RULES_FILE", str(tmp_path / "nope.yaml"))
    assert run("recategorize") == 1
    assert "nope.yaml" in capsys.readouterr().err
