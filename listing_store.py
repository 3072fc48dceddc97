"""
Persistence for scraped listings and search snapshots.

Listings are upserted by source URL in small batches wrapped in retrying
transactions. Search results can be frozen as ordered snapshots so that
paginated re-reads inside a freshness window keep the same order.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

from sqlalchemy import create_engine, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker
from sqlalchemy.pool import StaticPool

from listing_parser import ExternalListing, Platform, moq_in_bounds, parse_moq, parse_price
from models import Base, ListingCategory, ListingSearch, ListingSearchItem, SavedListing

T = TypeVar("T")

DEFAULT_DATABASE_URL = "sqlite:///moq_pools.db"

TRANSIENT_MARKERS = (
    'connection closed',
    'connection was closed',
    'server closed the connection',
    'closed the connection unexpectedly',
    'connection reset',
    'terminating connection',
    'connection refused',
    'database is locked',
)


def create_engine_from_env(url: Optional[str] = None) -> Engine:
    """Build the SQLAlchemy engine from an explicit URL or DATABASE_URL."""
    url = url or os.environ.get('DATABASE_URL', DEFAULT_DATABASE_URL)
    if url.startswith('sqlite'):
        kwargs = {'connect_args': {'check_same_thread': False}}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


def is_transient_error(exc: BaseException) -> bool:
    """True for "connection closed" class database errors worth retrying."""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    if isinstance(exc, (DBAPIError, DisconnectionError)):
        message = str(exc).lower()
        return any(marker in message for marker in TRANSIENT_MARKERS)
    return False


def normalize_query(q: Optional[str]) -> str:
    return ' '.join((q or '').lower().split())


def _platform_value(platform) -> Optional[str]:
    if platform is None:
        return None
    return platform.value if isinstance(platform, Platform) else str(platform)


def _chunks(items: Sequence[T], size: int) -> Iterable[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class UpsertReport:
    """Outcome of a batched upsert run."""

    saved: int = 0
    failed: int = 0
    urls: List[str] = field(default_factory=list)
    failed_urls: List[str] = field(default_factory=list)


@dataclass
class SnapshotPage:
    """One page of a frozen search ordering."""

    search_id: str
    total: int
    created_at: datetime
    listings: List[SavedListing]


class SqlRepository:
    """Session handling shared by the listing and pool repositories."""

    def __init__(self, engine: Engine, logger=None, max_retries: int = 3,
                 base_delay: float = 0.5, sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], datetime] = datetime.utcnow):
        """Initialize the repository.

        Args:
            engine: SQLAlchemy engine
            logger: Logger instance
            max_retries: Retries per transaction on transient errors
            base_delay: First backoff delay in seconds (doubles per retry)
            sleep: Sleep function used between retries
            clock: Returns the current UTC time
        """
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self.logger = logger or logging.getLogger(__name__)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock

    def create_schema(self):
        Base.metadata.create_all(self.engine)

    def run_in_transaction(self, operation: Callable[[Session], T], label: str = "") -> T:
        """Run operation(session) in a transaction, retrying transient failures.

        Args:
            operation: Callable receiving an open session
            label: Short description for log messages

        Returns:
            Whatever operation returns

        Raises:
            SQLAlchemyError: when the error is permanent or retries are exhausted
        """
        attempt = 0
        while True:
            try:
                with self.session_factory() as session:
                    with session.begin():
                        return operation(session)
            except SQLAlchemyError as e:
                if not is_transient_error(e) or attempt >= self.max_retries:
                    raise
                delay = self.base_delay * (2 ** attempt)
                attempt += 1
                self.logger.info(f"Transient database error {label}(attempt {attempt}/"
                                 f"{self.max_retries}), retrying in {delay:.1f}s: {e}")
                self.sleep(delay)


class ListingRepository(SqlRepository):
    """Narrow data-access layer for SavedListing and search snapshots."""

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    def upsert_by_url(self, listing: ExternalListing, categories: Sequence[str] = (),
                      terms: Sequence[str] = ()) -> SavedListing:
        """Insert or update one listing keyed by its URL."""
        return self.run_in_transaction(
            lambda session: self._upsert_one(session, listing, categories, terms),
            label=f"upserting {listing.url} ",
        )

    def upsert_many(self, listings: Sequence[ExternalListing], categories: Sequence[str] = (),
                    terms: Sequence[str] = (), batch_size: int = 10,
                    continue_on_error: bool = True) -> UpsertReport:
        """Upsert listings in batches, falling back to row-by-row on batch failure.

        Args:
            listings: Listings to persist
            categories: Category tags merged into every listing
            terms: Search terms merged into every listing
            batch_size: Rows per transaction
            continue_on_error: Skip rows that still fail instead of raising

        Returns:
            UpsertReport with saved/failed counts
        """
        report = UpsertReport()

        for batch in _chunks(list(listings), max(1, batch_size)):
            try:
                self.run_in_transaction(
                    lambda session: [self._upsert_one(session, item, categories, terms)
                                     for item in batch],
                    label="upserting batch ",
                )
                report.saved += len(batch)
                report.urls.extend(item.url for item in batch)
                continue
            except SQLAlchemyError as e:
                self.logger.info(f"Batch of {len(batch)} failed, falling back to "
                                 f"sequential upserts: {e}")

            for item in batch:
                try:
                    self.upsert_by_url(item, categories, terms)
                    report.saved += 1
                    report.urls.append(item.url)
                except SQLAlchemyError as e:
                    if not continue_on_error:
                        raise
                    report.failed += 1
                    report.failed_urls.append(item.url)
                    self.logger.info(f"Skipping listing {item.url}: {e}")

        return report

    def _upsert_one(self, session: Session, listing: ExternalListing,
                    categories: Sequence[str], terms: Sequence[str]) -> SavedListing:
        row = session.scalar(
            select(SavedListing)
            .where(SavedListing.url == listing.url)
            .options(selectinload(SavedListing.category_rows))
        )
        now = self.clock()
        if row is None:
            row = SavedListing(url=listing.url, title=listing.title, terms=[], created_at=now)
            session.add(row)

        row.title = listing.title
        row.platform = _platform_value(listing.platform) or row.platform
        for attr in ('image', 'price_raw', 'currency', 'moq_raw', 'store_name',
                     'description', 'rating_raw', 'orders_raw'):
            value = getattr(listing, attr)
            if value is not None:
                setattr(row, attr, value)

        price_min, price_max = listing.price_min, listing.price_max
        if price_min is None and listing.price_raw:
            price_min, price_max, currency, _ = parse_price(listing.price_raw)
            row.currency = row.currency or currency
        if price_min is not None:
            row.price_min = price_min
            row.price_max = price_max if price_max is not None else price_min

        moq = listing.moq if listing.moq is not None else parse_moq(listing.moq_raw)
        moq = moq_in_bounds(moq)
        if moq is not None:
            row.moq = moq

        if terms:
            row.terms = list(dict.fromkeys([*(row.terms or []), *terms]))

        existing = {category_row.category for category_row in row.category_rows}
        for category in dict.fromkeys(categories):
            if category not in existing:
                row.category_rows.append(ListingCategory(category=category))

        complete = bool(row.title and row.image and row.price_min is not None)
        row.last_scrape_status = 'OK' if complete else 'WEAK'
        row.updated_at = now
        session.flush()
        return row

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_url(self, url: str) -> Optional[SavedListing]:
        return self.run_in_transaction(
            lambda session: session.scalar(
                select(SavedListing)
                .where(SavedListing.url == url)
                .options(selectinload(SavedListing.category_rows))
            )
        )

    def count(self, platform=None) -> int:
        def operation(session: Session) -> int:
            stmt = select(func.count()).select_from(SavedListing)
            if platform is not None:
                stmt = stmt.where(SavedListing.platform == _platform_value(platform))
            return session.scalar(stmt) or 0

        return self.run_in_transaction(operation)

    def search(self, q: Optional[str] = None, platforms: Optional[Sequence] = None,
               categories: Optional[Sequence[str]] = None, offset: int = 0,
               limit: int = 20) -> List[SavedListing]:
        """Query saved listings.

        Args:
            q: Case-insensitive substring matched against titles
            platforms: Restrict to these platforms
            categories: Keep listings tagged with at least one of these
            offset: Rows to skip
            limit: Maximum rows to return

        Returns:
            Listings, most recently updated first
        """
        def operation(session: Session) -> List[SavedListing]:
            stmt = select(SavedListing).options(selectinload(SavedListing.category_rows))
            query = normalize_query(q)
            if query:
                stmt = stmt.where(SavedListing.title.ilike(f"%{query}%"))
            if platforms:
                stmt = stmt.where(SavedListing.platform.in_([_platform_value(p) for p in platforms]))
            if categories:
                tagged = select(ListingCategory.listing_id).where(
                    ListingCategory.category.in_(list(categories))
                )
                stmt = stmt.where(SavedListing.id.in_(tagged))
            stmt = (stmt.order_by(SavedListing.updated_at.desc(), SavedListing.id)
                    .offset(max(0, offset)).limit(max(0, limit)))
            return list(session.scalars(stmt))

        return self.run_in_transaction(operation)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def save_snapshot(self, q: str, platform=None, filters: Optional[dict] = None,
                      urls: Sequence[str] = ()) -> str:
        """Freeze the order of a result set.

        Args:
            q: Search query
            platform: Platform the search was restricted to, if any
            filters: Extra filters the results depend on
            urls: Listing URLs in display order (unknown URLs are skipped)

        Returns:
            Snapshot id
        """
        def operation(session: Session) -> str:
            ordered = list(dict.fromkeys(urls))
            ids = dict(session.execute(
                select(SavedListing.url, SavedListing.id).where(SavedListing.url.in_(ordered))
            ).all()) if ordered else {}

            search = ListingSearch(
                q=normalize_query(q),
                platform=_platform_value(platform),
                filters_json=json.dumps(filters or {}, sort_keys=True),
                created_at=self.clock(),
            )
            position = 0
            for url in ordered:
                listing_id = ids.get(url)
                if listing_id is None:
                    continue
                search.items.append(ListingSearchItem(listing_id=listing_id, position=position))
                position += 1
            search.total = position
            session.add(search)
            session.flush()
            return search.id

        return self.run_in_transaction(operation, label="saving snapshot ")

    def load_snapshot(self, q: str, platform=None, filters: Optional[dict] = None,
                      max_age: timedelta = timedelta(minutes=30), offset: int = 0,
                      limit: Optional[int] = None) -> Optional[SnapshotPage]:
        """Return a page of the newest snapshot for a query, if still fresh."""
        def operation(session: Session) -> Optional[SnapshotPage]:
            search = session.scalar(
                select(ListingSearch)
                .where(ListingSearch.q == normalize_query(q))
                .where(ListingSearch.platform == _platform_value(platform))
                .where(ListingSearch.filters_json == json.dumps(filters or {}, sort_keys=True))
                .order_by(ListingSearch.created_at.desc())
                .limit(1)
            )
            if search is None or self.clock() - search.created_at > max_age:
                return None

            stmt = (select(ListingSearchItem)
                    .where(ListingSearchItem.search_id == search.id)
                    .order_by(ListingSearchItem.position)
                    .options(selectinload(ListingSearchItem.listing)
                             .selectinload(SavedListing.category_rows))
                    .offset(max(0, offset)))
            if limit is not None:
                stmt = stmt.limit(max(0, limit))
            items = list(session.scalars(stmt))
            return SnapshotPage(
                search_id=search.id,
                total=search.total,
                created_at=search.created_at,
                listings=[item.listing for item in items],
            )

        return self.run_in_transaction(operation)
