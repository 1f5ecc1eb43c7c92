"""Shared fixtures: an in-memory store and a scripted Plaid stand-in."""

import pytest

from clerk import database
from clerk.plaid_integration import DeltaPage
from clerk.settings import Settings

ITEM_ID = "item-1"
ACCOUNT_ID = "acc-checking"


def plaid_txn(transaction_id, amount, name="Store", date="2021-09-01", pending=False,
              account_id=ACCOUNT_ID, **extra):
    """Raw /transactions/sync record, shaped like the API's dict output."""
    record = {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "date": date,
        "name": name,
        "merchant_name": None,
        "pending": pending,
        "iso_currency_code": "USD",
        "unofficial_currency_code": None,
    }
    record.update(extra)
    return record


def checking_account():
    return {"account_id": ACCOUNT_ID, "name": "Checking", "type": "depository", "mask": "0000"}


class FakeUpstreamClient:
    """
    Replays scripted pages.  An item in ``script`` is either a DeltaPage to
    return or an exception instance to raise.
    """

    def __init__(self, script):
        self.script = list(script)
        self.calls = []

    def fetch_delta(self, access_token, cursor=None):
        self.calls.append(cursor)
        if not self.script:
            return DeltaPage(next_cursor=cursor, has_more=False)
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def store():
    store = database.Store("sqlite://")
    store.init_db()
    return store


@pytest.fixture
def link(store):
    with store.transaction() as db:
        database.upsert_link(db, ITEM_ID, "access-sandbox-1", alias="Chase")
        database.upsert_account(db, ITEM_ID, ACCOUNT_ID, "Checking", "depository", "0000")
    with store.session() as db:
        link = database.get_link(db, ITEM_ID)
        db.expunge(link)
    return link


@pytest.fixture
def settings():
    return Settings(max_retries=3, backoff=1.0, backoff_max=4.0)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    return sleeps.append
