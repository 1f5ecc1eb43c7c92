"""
normalize.py
------------

Map raw Plaid transaction records onto the canonical transaction used by the
rules, the posting generator and the store.  The raw record is carried along
untouched so categorization can be replayed later without another fetch.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

import pandas as pd

PENDING = "PENDING"
POSTED = "POSTED"

REQUIRED_FIELDS = ["transaction_id", "account_id", "date", "amount"]


class NormalizationError(Exception):
    """Raised when a raw record lacks the fields a transaction needs."""

    def __init__(self, message: str, upstream_id: Optional[str] = None):
        self.upstream_id = upstream_id
        super().__init__(message)


@dataclass
class CanonicalTransaction:
    upstream_id: str
    account_id: str
    date: date
    narration: str
    amount: Decimal
    currency: str
    status: str
    payee: Optional[str] = None
    category: Optional[str] = None
    source: dict = field(default_factory=dict, repr=False)

    @property
    def pending(self) -> bool:
        return self.status == PENDING

    def source_json(self) -> str:
        return source_json(self.source)


def _json_default(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if hasattr(value, "value"):
        return value.value
    return str(value)


def source_json(raw: dict) -> str:
    return json.dumps(raw, default=_json_default, sort_keys=True)


def _parse_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return pd.to_datetime(value).date()


def _parse_amount(value) -> Decimal:
    # Plaid hands out floats; go through str so 45.1 stays 45.1.
    return Decimal(str(value))


def _category(raw: dict) -> Optional[str]:
    pf_category = raw.get("personal_finance_category")
    if isinstance(pf_category, dict) and pf_category.get("primary"):
        return pf_category["primary"]
    category_list = raw.get("category") or []
    return category_list[0] if category_list else None


def to_canonical(raw: dict) -> CanonicalTransaction:
    """
    Build a canonical transaction from a raw Plaid record.

    Plaid reports money leaving the account as a positive amount; the
    canonical amount is negated so it reads from the categorized side
    (a -50.00 Plaid amount becomes +50.00).

    Raises:
        NormalizationError: If a required field is missing or unparseable.
    """
    upstream_id = raw.get("transaction_id")
    for name in REQUIRED_FIELDS:
        if raw.get(name) in (None, ""):
            raise NormalizationError(f"Missing required field: {name}", upstream_id)

    try:
        txn_date = _parse_date(raw["date"])
    except (ValueError, TypeError) as e:
        raise NormalizationError(f"Invalid date {raw['date']!r}: {e}", upstream_id)
    try:
        amount = -_parse_amount(raw["amount"])
    except (InvalidOperation, ValueError) as e:
        raise NormalizationError(f"Invalid amount {raw['amount']!r}: {e}", upstream_id)

    narration = (raw.get("name") or raw.get("original_description")
                 or raw.get("merchant_name") or "Plaid Transaction")
    currency = raw.get("iso_currency_code") or raw.get("unofficial_currency_code") or "USD"

    return CanonicalTransaction(
        upstream_id=upstream_id,
        account_id=raw["account_id"],
        date=txn_date,
        narration=narration,
        amount=amount,
        currency=currency,
        status=PENDING if raw.get("pending") else POSTED,
        payee=raw.get("merchant_name") or None,
        category=_category(raw),
        source=raw,
    )


def from_source(source: str) -> CanonicalTransaction:
    """Rebuild a canonical transaction from a stored ``source`` payload."""
    return to_canonical(json.loads(source))
