"""Posting generation and account paths."""
from decimal import Decimal

from clerk.normalize import to_canonical
from clerk.postings import (
    UNKNOWN_ACCOUNT,
    collect_tags,
    default_account_path,
    generate,
    is_balanced,
    narration_for,
    totals_by_currency,
)
from clerk.rules import Directive

from conftest import plaid_txn


def test_generate_without_directives_uses_unknown():
    txn = to_canonical(plaid_txn("t1", -50))
    postings = generate(txn, [], "Assets:Checking")

    assert [(p.account, p.amount) for p in postings] == [
        (UNKNOWN_ACCOUNT, Decimal("50")),
        ("Assets:Checking", Decimal("-50")),
    ]
    assert all(p.currency == "USD" and p.status == "POSTED" for p in postings)
    assert is_balanced(postings)


def test_generate_with_directive():
    txn = to_canonical(plaid_txn("t1", 12.5, pending=True))
    directive = Directive(account="Expenses:Food", alias="Lunch", tags=["food", "food"])
    postings = generate(txn, [directive], "Liabilities:Visa")

    assert postings[0].account == "Expenses:Food"
    assert postings[0].amount == Decimal("-12.5")
    assert postings[0].status == "PENDING"
    assert collect_tags([directive]) == ["food"]
    assert narration_for(txn, [directive]) == "Lunch"
    assert narration_for(txn, []) == "Store"


def test_default_account_paths():
    assert default_account_path("acc-1") == "Assets:acc-1"
    assert default_account_path("acc-1", "Checking", "depository") == "Assets:Checking"
    assert default_account_path("acc-2", "Visa", "credit") == "Liabilities:Visa"
    assert default_account_path("acc-3", "Mortgage", "loan") == "Liabilities:Mortgage"


def test_totals_are_kept_per_currency():
    usd = generate(to_canonical(plaid_txn("t1", 10)), [], "Assets:A")
    eur = generate(to_canonical(plaid_txn("t2", 7, iso_currency_code="EUR")), [], "Assets:B")
    unbalanced = usd[:1] + eur

    assert totals_by_currency(unbalanced) == {"USD": Decimal("-10"), "EUR": Decimal("0")}
    assert not is_balanced(unbalanced)
