import logging
import threading
import uuid
from contextlib import contextmanager, nullcontext
from datetime import date, datetime, timezone
from typing import Iterator, List, Optional

from sqlalchemy import Column, Date, DateTime, ForeignKey, String, Text, create_engine, event
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()

LINK_ACTIVE = "ACTIVE"
LINK_REQUIRES_VERIFICATION = "REQUIRES_VERIFICATION"

# Namespace for ids derived from upstream ids, so re-applying a page writes
# identical rows.
CLERK_NAMESPACE = uuid.UUID("6f1c0d3e-8a57-4d2b-9a0e-2c3f5b7d9e11")


def derive_id(*parts: str) -> str:
    return str(uuid.uuid5(CLERK_NAMESPACE, "/".join(parts)))


# --- Models ---

class PlaidLink(Base):
    __tablename__ = "plaid_links"

    id = Column(String, primary_key=True)          # Plaid item_id
    alias = Column(String)
    access_token = Column(String)
    link_state = Column(String, nullable=False, default=LINK_ACTIVE)
    sync_cursor = Column(String, nullable=True)
    institution_id = Column(String, nullable=True)
    last_synced_at = Column(DateTime, nullable=True)

    accounts = relationship("Account", cascade="all, delete-orphan")


class Account(Base):
    __tablename__ = "accounts"

    id = Column(String, primary_key=True)          # Plaid account_id
    item_id = Column(String, ForeignKey("plaid_links.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String)
    type = Column(String)                          # depository, credit, loan, investment, other
    mask = Column(String, nullable=True)


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    date = Column(Date, nullable=False, index=True)
    narration = Column(String, nullable=False)
    payee = Column(String, nullable=True)
    source = Column(Text)                          # raw upstream payload, JSON
    status = Column(String)                        # PENDING or POSTED


class TransactionLink(Base):
    __tablename__ = "int_transactions_links"

    # item_id has no foreign key: deleting a link keeps its history.
    plaid_txn_id = Column(String, primary_key=True)
    item_id = Column(String, nullable=False, index=True)
    account_id = Column(String, nullable=True)
    txn_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)


class Posting(Base):
    __tablename__ = "postings"

    id = Column(String, primary_key=True)
    txn_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    account = Column(String, nullable=False)
    amount = Column(String, nullable=False)        # decimal text, exact
    currency = Column(String, nullable=False)
    status = Column(String, nullable=False)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(String, primary_key=True)
    txn_id = Column(String, ForeignKey("transactions.id"), nullable=False, index=True)
    value = Column(String, nullable=False)


# --- Store ---

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Store:
    """
    Owns the engine and hands out write transactions.

    SQLite allows a single writer, so write transactions from parallel link
    syncs are serialized with a process-wide lock.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        kwargs = {}
        self._shared_connection = False
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
                self._shared_connection = True
        self.engine = create_engine(database_url, **kwargs)
        if database_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._write_lock = threading.RLock()

    def init_db(self):
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Commit everything done with the yielded session, or nothing."""
        with self._write_lock:
            db = self.SessionLocal()
            try:
                yield db
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Read-only session.

        An in-memory database lives on one shared connection, so reads take
        the write lock too.
        """
        with (self._write_lock if self._shared_connection else nullcontext()):
            db = self.SessionLocal()
            try:
                yield db
            finally:
                db.close()


# --- Links ---

def upsert_link(db: Session, item_id: str, access_token: str, alias: Optional[str] = None,
                institution_id: Optional[str] = None) -> PlaidLink:
    link = db.get(PlaidLink, item_id)
    if link is None:
        link = PlaidLink(id=item_id, access_token=access_token, alias=alias or item_id,
                         institution_id=institution_id, link_state=LINK_ACTIVE)
        db.add(link)
    else:
        # A fresh token from the linking flow repairs a degraded link.
        link.access_token = access_token
        link.link_state = LINK_ACTIVE
        if alias:
            link.alias = alias
        if institution_id:
            link.institution_id = institution_id
    db.flush()
    return link


def get_link(db: Session, item_id: str) -> Optional[PlaidLink]:
    return db.get(PlaidLink, item_id)


def list_links(db: Session) -> List[PlaidLink]:
    return db.query(PlaidLink).order_by(PlaidLink.alias).all()


def set_link_state(db: Session, item_id: str, state: str):
    if state not in (LINK_ACTIVE, LINK_REQUIRES_VERIFICATION):
        raise ValueError(f"unknown link state {state}")
    link = db.get(PlaidLink, item_id)
    if link is None:
        raise KeyError(item_id)
    link.link_state = state


def delete_link(db: Session, item_id: str) -> Optional[PlaidLink]:
    """Delete a link and its accounts. Transactions it produced are kept."""
    link = db.get(PlaidLink, item_id)
    if link is None:
        return None
    db.delete(link)
    db.flush()
    return link


# --- Cursor ---

def get_cursor(db: Session, item_id: str) -> Optional[str]:
    link = db.get(PlaidLink, item_id)
    if link is None:
        raise KeyError(item_id)
    return link.sync_cursor


def set_cursor(db: Session, item_id: str, cursor: Optional[str]):
    link = db.get(PlaidLink, item_id)
    if link is None:
        raise KeyError(item_id)
    link.sync_cursor = cursor
    link.last_synced_at = datetime.now(timezone.utc)


# --- Accounts ---

def upsert_account(db: Session, item_id: str, account_id: str, name: str, type: str,
                   mask: Optional[str] = None) -> Account:
    account = db.get(Account, account_id)
    if account is None:
        account = Account(id=account_id, item_id=item_id)
        db.add(account)
    account.item_id = item_id
    account.name = name
    account.type = type
    account.mask = mask
    db.flush()
    return account


def get_account(db: Session, account_id: str) -> Optional[Account]:
    return db.get(Account, account_id)


def accounts_by_item(db: Session, item_id: str) -> List[Account]:
    return db.query(Account).filter(Account.item_id == item_id).order_by(Account.name).all()


# --- Transactions ---

def transaction_by_upstream_id(db: Session, plaid_txn_id: str) -> Optional[Transaction]:
    link = db.get(TransactionLink, plaid_txn_id)
    if link is None:
        return None
    return db.get(Transaction, link.txn_id)


def upsert_transaction(db: Session, item_id: str, txn, postings, tags: List[str]) -> bool:
    """
    Insert or replace a canonical transaction with its postings and tags.

    Keyed by the upstream transaction id.  Existing postings and tags are
    removed first, so a modified transaction never accumulates legs.

    Returns:
        True if a new transaction row was created, False if replaced.
    """
    txn_id = derive_id("txn", txn.upstream_id)
    row = db.get(Transaction, txn_id)
    created = row is None
    if created:
        row = Transaction(id=txn_id)
        db.add(row)

    row.date = txn.date
    row.narration = txn.narration
    row.payee = txn.payee
    row.source = txn.source_json()
    row.status = txn.status
    db.flush()

    link = db.get(TransactionLink, txn.upstream_id)
    if link is None:
        db.add(TransactionLink(plaid_txn_id=txn.upstream_id, item_id=item_id,
                               account_id=txn.account_id, txn_id=txn_id))
    else:
        link.item_id = item_id
        link.account_id = txn.account_id

    _clear_children(db, txn_id)
    db.flush()

    for index, posting in enumerate(postings):
        db.add(Posting(
            id=f"{txn_id}:{index}",
            txn_id=txn_id,
            account=posting.account,
            amount=str(posting.amount),
            currency=posting.currency,
            status=posting.status,
        ))
    for value in dict.fromkeys(tags):
        db.add(Tag(id=derive_id("tag", txn_id, value), txn_id=txn_id, value=value))
    db.flush()
    return created


def delete_transaction(db: Session, plaid_txn_id: str) -> bool:
    """Remove a transaction with its postings and tags. Accounts and links are untouched."""
    link = db.get(TransactionLink, plaid_txn_id)
    if link is None:
        return False
    txn_id = link.txn_id
    _clear_children(db, txn_id)
    db.delete(link)
    db.flush()
    row = db.get(Transaction, txn_id)
    if row is not None:
        db.delete(row)
        db.flush()
    return True


def _clear_children(db: Session, txn_id: str):
    db.query(Posting).filter(Posting.txn_id == txn_id).delete()
    db.query(Tag).filter(Tag.txn_id == txn_id).delete()


def postings_for(db: Session, txn_id: str) -> List[Posting]:
    return db.query(Posting).filter(Posting.txn_id == txn_id).order_by(Posting.id).all()


def tags_for(db: Session, txn_id: str) -> List[str]:
    return [t.value for t in db.query(Tag).filter(Tag.txn_id == txn_id).order_by(Tag.value).all()]


def item_for(db: Session, txn_id: str) -> Optional[str]:
    link = db.query(TransactionLink).filter(TransactionLink.txn_id == txn_id).first()
    return link.item_id if link else None


def iter_transactions(db: Session, begin: Optional[date] = None, until: Optional[date] = None) -> List[Transaction]:
    query = db.query(Transaction)
    if begin is not None:
        query = query.filter(Transaction.date >= begin)
    if until is not None:
        query = query.filter(Transaction.date <= until)
    return query.order_by(Transaction.date, Transaction.id).all()
