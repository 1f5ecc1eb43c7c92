"""Render stored transactions as Ledger records."""

from datetime import date
from decimal import Decimal
from typing import List, Optional

import pandas as pd
from sqlalchemy.orm import Session

from clerk import database
from clerk.normalize import PENDING

INDENT = "    "


def _format_amount(amount: Decimal, currency: str) -> str:
    return f"{Decimal(amount):,.2f} {currency}"


def render_transaction(row: database.Transaction, postings: List[database.Posting], tags: List[str]) -> str:
    flag = "!" if row.status == PENDING else "*"
    lines = [f"{row.date.isoformat()} {flag} {row.narration}"]
    if row.payee:
        lines.append(f"{INDENT}; payee: {row.payee}")
    if tags:
        lines.append(f"{INDENT}; :{':'.join(tags)}:")

    width = max((len(p.account) for p in postings), default=0) + 4
    for posting in postings:
        amount = _format_amount(Decimal(posting.amount), posting.currency)
        lines.append(f"{INDENT}{posting.account.ljust(width)}{amount.rjust(16)}")
    return "\n".join(lines)


def render_ledger(db: Session, begin: Optional[date] = None, until: Optional[date] = None) -> str:
    entries = []
    for row in database.iter_transactions(db, begin, until):
        postings = database.postings_for(db, row.id)
        entries.append(render_transaction(row, postings, database.tags_for(db, row.id)))
    return "\n\n".join(entries) + ("\n" if entries else "")


def postings_to_df(db: Session) -> pd.DataFrame:
    rows = (
        db.query(database.Posting, database.Transaction)
        .join(database.Transaction, database.Posting.txn_id == database.Transaction.id)
        .all()
    )
    if not rows:
        return pd.DataFrame(columns=["Date", "Account", "Amount", "Currency", "Status"])

    df = pd.DataFrame(
        [
            {
                "Date": t.date,
                "Account": p.account,
                "Amount": Decimal(p.amount),
                "Currency": p.currency,
                "Status": p.status,
            }
            for p, t in rows
        ]
    )
    df["Date"] = pd.to_datetime(df["Date"])
    return df


def balances(db: Session) -> pd.DataFrame:
    """Sum of postings per ledger account and currency."""
    df = postings_to_df(db)
    if df.empty:
        return pd.DataFrame(columns=["Account", "Currency", "Amount"])
    summary = (
        df.groupby(["Account", "Currency"])["Amount"]
        .apply(lambda amounts: sum(amounts, Decimal(0)))
        .reset_index()
        .sort_values(["Account", "Currency"])
        .reset_index(drop=True)
    )
    return summary
