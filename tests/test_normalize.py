"""Raw Plaid record -> canonical transaction."""
from datetime import date
from decimal import Decimal

import pytest

from clerk.normalize import PENDING, POSTED, NormalizationError, from_source, to_canonical

from conftest import plaid_txn


def test_amount_sign_is_flipped():
    assert to_canonical(plaid_txn("t1", -50)).amount == Decimal("50")
    assert to_canonical(plaid_txn("t1", 12.34)).amount == Decimal("-12.34")


def test_fields_are_mapped():
    txn = to_canonical(plaid_txn("t1", 5, name="KFC #1", date="2021-09-03", pending=True,
                                 merchant_name="KFC", personal_finance_category={"primary": "FOOD_AND_DRINK"}))
    assert txn.upstream_id == "t1"
    assert txn.date == date(2021, 9, 3)
    assert txn.narration == "KFC #1"
    assert txn.payee == "KFC"
    assert txn.status == PENDING
    assert txn.pending
    assert txn.category == "FOOD_AND_DRINK"
    assert txn.currency == "USD"


def test_narration_falls_back():
    raw = plaid_txn("t1", 5, name=None, merchant_name="Uber")
    assert to_canonical(raw).narration == "Uber"
    raw = plaid_txn("t1", 5, name=None)
    assert to_canonical(raw).narration == "Plaid Transaction"


def test_unofficial_currency_is_used():
    raw = plaid_txn("t1", 5, iso_currency_code=None, unofficial_currency_code="BTC")
    assert to_canonical(raw).currency == "BTC"


def test_legacy_category_list():
    raw = plaid_txn("t1", 5, category=["Travel", "Taxi"])
    assert to_canonical(raw).category == "Travel"


@pytest.mark.parametrize("missing", ["transaction_id", "account_id", "date", "amount"])
def test_missing_required_field(missing):
    raw = plaid_txn("t1", 5)
    raw[missing] = None
    with pytest.raises(NormalizationError):
        to_canonical(raw)


def test_invalid_amount_carries_upstream_id():
    with pytest.raises(NormalizationError) as excinfo:
        to_canonical(plaid_txn("t1", "lots"))
    assert excinfo.value.upstream_id == "t1"


def test_source_replays_to_same_transaction():
    txn = to_canonical(plaid_txn("t1", 7.5, name="Coffee"))
    replayed = from_source(txn.source_json())
    assert replayed.amount == txn.amount
    assert replayed.narration == "Coffee"
    assert replayed.status == POSTED
