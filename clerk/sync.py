"""
sync.py
-------

Incremental synchronization of Plaid links into the local ledger.

Each page returned by ``/transactions/sync`` is normalized, categorized,
expanded into postings and written together with the page's cursor in one
database transaction.  A page is either fully applied with its cursor, or not
at all, in which case the next sync fetches it again.
"""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from clerk import database
from clerk.normalize import POSTED, CanonicalTransaction, NormalizationError, from_source, to_canonical
from clerk.plaid_integration import CredentialError, DeltaPage, TransientUpstreamError, UpstreamError
from clerk.postings import collect_tags, default_account_path, generate, narration_for
from clerk.rules import RuleEvaluationError, RuleSet
from clerk.settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    item_id: str
    pages: int = 0
    added: int = 0
    modified: int = 0
    removed: int = 0
    categorization_failures: int = 0
    failed: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    error: Optional[str] = None
    requires_verification: bool = False
    cancelled: bool = False
    skipped: bool = False
    persistence_failed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.requires_verification and not self.failed

    def merge(self, counts: "PageCounts"):
        self.added += counts.added
        self.modified += counts.modified
        self.removed += counts.removed
        self.categorization_failures += counts.categorization_failures
        self.failed.extend(counts.failed)


@dataclass
class PageCounts:
    added: int = 0
    modified: int = 0
    removed: int = 0
    categorization_failures: int = 0
    failed: List[str] = field(default_factory=list)


@dataclass
class RecategorizeReport:
    updated: int = 0
    skipped: int = 0
    categorization_failures: int = 0
    failed: List[str] = field(default_factory=list)


class PersistenceError(Exception):
    """A page could not be written; it was rolled back and its cursor kept."""

    def __init__(self, message: str, report: SyncReport):
        self.report = report
        super().__init__(message)


class TransactionPipeline:
    """normalized transaction -> rules -> postings, against an open session."""

    def __init__(self, rules: RuleSet):
        self.rules = rules

    def categorize(self, txn: CanonicalTransaction, counts) -> list:
        try:
            return self.rules.evaluate(txn)
        except RuleEvaluationError as e:
            # Not fatal: the transaction is stored uncategorized.
            logger.warning("Categorization failed for transaction %s: %s", txn.upstream_id, e)
            counts.categorization_failures += 1
            return []

    def origin_account(self, db: Session, account_id: str) -> str:
        alias = self.rules.account_path(account_id)
        if alias:
            return alias
        account = database.get_account(db, account_id)
        if account is None:
            return default_account_path(account_id)
        return default_account_path(account_id, account.name, account.type)

    def apply(self, db: Session, item_id: str, txn: CanonicalTransaction, counts) -> bool:
        directives = self.categorize(txn, counts)
        postings = generate(txn, directives, self.origin_account(db, txn.account_id))
        txn = dataclasses.replace(txn, narration=narration_for(txn, directives))
        return database.upsert_transaction(db, item_id, txn, postings, collect_tags(directives))


class SyncEngine:
    def __init__(self, store: database.Store, client, rules: Optional[RuleSet] = None,
                 settings: Optional[Settings] = None, sleep: Callable[[float], None] = time.sleep):
        self.store = store
        self.client = client
        self.rules = rules or RuleSet.empty()
        self.settings = settings or Settings()
        self.sleep = sleep
        self.pipeline = TransactionPipeline(self.rules)

    def _fetch(self, access_token: str, cursor: Optional[str]) -> DeltaPage:
        """Fetch one page, retrying transient failures with exponential backoff."""
        attempt = 0
        while True:
            try:
                return self.client.fetch_delta(access_token, cursor)
            except TransientUpstreamError as e:
                if attempt >= self.settings.max_retries:
                    raise
                wait_time = min(self.settings.backoff * (2 ** attempt), self.settings.backoff_max)
                attempt += 1
                logger.warning(f"Transient upstream error, retrying in {wait_time}s "
                               f"(attempt {attempt}/{self.settings.max_retries}): {e}")
                self.sleep(wait_time)

    def _apply_page(self, db: Session, item_id: str, page: DeltaPage) -> PageCounts:
        counts = PageCounts()

        for account in page.accounts:
            if account.get("account_id"):
                database.upsert_account(db, item_id, account["account_id"], account["name"],
                                        account["type"], account.get("mask"))

        for kind, records in (("added", page.added), ("modified", page.modified)):
            for raw in records:
                try:
                    txn = to_canonical(raw)
                except NormalizationError as e:
                    logger.warning("Skipping malformed %s record %s: %s", kind, e.upstream_id, e)
                    counts.failed.append(e.upstream_id or "<missing id>")
                    continue
                self.pipeline.apply(db, item_id, txn, counts)
                setattr(counts, kind, getattr(counts, kind) + 1)

        for ref in page.removed:
            plaid_txn_id = ref.get("transaction_id") if isinstance(ref, dict) else ref
            if not plaid_txn_id:
                continue
            if database.delete_transaction(db, plaid_txn_id):
                counts.removed += 1
            else:
                logger.debug("Removed transaction %s was never stored", plaid_txn_id)

        database.set_cursor(db, item_id, page.next_cursor)
        return counts

    def _mark_requires_verification(self, item_id: str):
        with self.store.transaction() as db:
            database.set_link_state(db, item_id, database.LINK_REQUIRES_VERIFICATION)

    def sync(self, link, cancel=None) -> SyncReport:
        """
        Pull every pending page for one link.

        Args:
            link: A ``PlaidLink`` (anything with ``id`` and ``access_token``).
            cancel: Optional ``threading.Event``, checked between pages.

        Returns:
            A SyncReport; upstream failures are recorded in it, not raised.

        Raises:
            PersistenceError: A page failed to commit. Earlier pages stay
                committed, the failed page's cursor was not advanced.
        """
        report = SyncReport(item_id=link.id)
        with self.store.session() as db:
            cursor = database.get_cursor(db, link.id)
        report.cursor = cursor
        logger.info("Syncing link %s from cursor %r", link.id, cursor)

        while True:
            if cancel is not None and cancel.is_set():
                logger.info("Sync of link %s cancelled after %d pages", link.id, report.pages)
                report.cancelled = True
                break

            try:
                page = self._fetch(link.access_token, cursor)
            except CredentialError as e:
                logger.warning("Link %s requires verification: %s", link.id, e)
                self._mark_requires_verification(link.id)
                report.requires_verification = True
                report.error = str(e)
                break
            except UpstreamError as e:
                logger.error("Upstream error syncing link %s: %s", link.id, e)
                report.error = str(e)
                break
            except Exception as e:
                logger.exception("Unexpected error fetching page for link %s", link.id)
                report.error = f"{type(e).__name__}: {e}"
                break

            try:
                with self.store.transaction() as db:
                    counts = self._apply_page(db, link.id, page)
            except Exception as e:
                logger.error("Failed to persist page for link %s, rolled back: %s", link.id, e)
                report.error = f"Persistence failure: {e}"
                report.persistence_failed = True
                raise PersistenceError(report.error, report) from e

            report.merge(counts)
            report.pages += 1
            cursor = page.next_cursor
            report.cursor = cursor
            logger.info("Committed page %d for link %s: +%d ~%d -%d",
                        report.pages, link.id, counts.added, counts.modified, counts.removed)

            if not page.has_more:
                break

        return report

    def sync_all(self, links=None, cancel=None) -> List[SyncReport]:
        """Sync links one after another; one link's failure never stops the rest."""
        if links is None:
            with self.store.session() as db:
                links = database.list_links(db)

        reports = []
        for link in links:
            if link.link_state == database.LINK_REQUIRES_VERIFICATION:
                logger.warning("Skipping link %s (%s): requires verification", link.id, link.alias)
                reports.append(SyncReport(item_id=link.id, requires_verification=True, skipped=True))
                continue
            try:
                reports.append(self.sync(link, cancel=cancel))
            except PersistenceError as e:
                reports.append(e.report)
            if cancel is not None and cancel.is_set():
                break
        return reports


def recategorize(store: database.Store, rules: RuleSet, include_posted: bool = False) -> RecategorizeReport:
    """
    Re-run the rules over stored transactions using their saved source payload.

    Posted transactions are settled and only regenerated with
    ``include_posted``.
    """
    pipeline = TransactionPipeline(rules)
    report = RecategorizeReport()
    with store.transaction() as db:
        for row in database.iter_transactions(db):
            if row.status == POSTED and not include_posted:
                report.skipped += 1
                continue
            try:
                txn = from_source(row.source)
            except (NormalizationError, ValueError, TypeError) as e:
                logger.warning("Cannot rebuild transaction %s from source: %s", row.id, e)
                report.failed.append(row.id)
                continue
            item_id = database.item_for(db, row.id)
            pipeline.apply(db, item_id, txn, report)
            report.updated += 1
    return report
