from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

from clerk.normalize import CanonicalTransaction

UNKNOWN_ACCOUNT = "Unknown"

CREDIT_NORMAL_TYPES = {"credit", "loan"}


@dataclass(frozen=True)
class Posting:
    """One leg of a double-entry record; ids are assigned by the store."""
    account: str
    amount: Decimal
    currency: str
    status: str


def default_account_path(account_id: str, name: Optional[str] = None, account_type: Optional[str] = None) -> str:
    """
    Ledger path for an upstream account that has no alias in the rules.

    Credit cards and loans are liabilities, everything else is an asset.
    """
    if not name:
        return f"Assets:{account_id}"
    root = "Liabilities" if (account_type or "").lower() in CREDIT_NORMAL_TYPES else "Assets"
    return f"{root}:{name}"


def resolve_target(directives: Sequence) -> Optional[str]:
    # First match wins; a single category per transaction.
    for directive in directives:
        if directive.account:
            return directive.account
    return None


def generate(txn: CanonicalTransaction, directives: Sequence, origin_account: str) -> List[Posting]:
    """
    Expand a transaction into two balanced legs.

    The target leg carries the transaction amount at the resolved account, or
    at ``UNKNOWN_ACCOUNT`` when no directive resolved; the origin leg carries
    the negated amount, so every transaction balances.
    """
    target = resolve_target(directives) or UNKNOWN_ACCOUNT
    return [
        Posting(account=target, amount=txn.amount, currency=txn.currency, status=txn.status),
        Posting(account=origin_account, amount=-txn.amount, currency=txn.currency, status=txn.status),
    ]


def collect_tags(directives: Sequence) -> List[str]:
    tags = []
    for directive in directives[:1]:
        tags.extend(directive.tags)
    return list(dict.fromkeys(tags))


def narration_for(txn: CanonicalTransaction, directives: Sequence) -> str:
    for directive in directives[:1]:
        if directive.alias:
            return directive.alias
    return txn.narration


def totals_by_currency(postings: Iterable) -> Dict[str, Decimal]:
    totals: Dict[str, Decimal] = defaultdict(Decimal)
    for posting in postings:
        totals[posting.currency] += Decimal(posting.amount)
    return dict(totals)


def is_balanced(postings: Iterable) -> bool:
    return all(total == 0 for total in totals_by_currency(postings).values())
