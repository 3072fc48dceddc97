#!/usr/bin/env python3
"""
Tests for the listing store: upserts, retries, search and snapshots.
"""

from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, OperationalError

from listing_parser import ExternalListing, Platform
from listing_store import ListingRepository, create_engine_from_env, is_transient_error


class FakeClock:
    def __init__(self, start=datetime(2026, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_repository(clock=None, **kwargs) -> ListingRepository:
    repository = ListingRepository(create_engine_from_env("sqlite://"),
                                   clock=clock or FakeClock(), sleep=lambda s: None, **kwargs)
    repository.create_schema()
    return repository


def make_listing(n: int, title: str = None, **kwargs) -> ExternalListing:
    fields = dict(
        platform=Platform.ALIBABA,
        url=f"https://www.alibaba.com/product-detail/Item_{n}.html",
        title=title or f"Silicone Phone Case {n}",
        image=f"/cache/{n:040d}.jpg",
        price_raw="US$0.85 - 1.20",
    )
    fields.update(kwargs)
    return ExternalListing(**fields)


def connection_closed() -> OperationalError:
    return OperationalError("INSERT INTO saved_listings", {}, Exception("connection closed"))


def test_upsert_by_url_updates_in_place():
    """Test that re-upserting a URL updates the row instead of adding one."""
    print("Testing upsert_by_url...")
    repository = make_repository()

    repository.upsert_by_url(make_listing(1, title="Old title"), categories=["phone"], terms=["case"])
    saved = repository.upsert_by_url(make_listing(1, title="New title"), categories=["accessories"],
                                     terms=["silicone case"])

    assert repository.count() == 1
    row = repository.get_by_url(make_listing(1).url)
    assert row.id == saved.id
    assert row.title == "New title"
    assert row.categories == ["accessories", "phone"]
    assert row.terms == ["case", "silicone case"]
    print("✓ upsert_by_url works!")


def test_derived_fields_and_status():
    """Test price/MOQ derivation from text and the OK/WEAK status."""
    print("\nTesting derived fields...")
    repository = make_repository()

    complete = repository.upsert_by_url(make_listing(1, moq_raw="MOQ 500"))
    assert (complete.price_min, complete.price_max, complete.currency) == (0.85, 1.20, 'USD')
    assert complete.moq == 500
    assert complete.last_scrape_status == 'OK'

    noisy = repository.upsert_by_url(make_listing(2, image=None, moq=999999))
    assert noisy.moq is None
    assert noisy.last_scrape_status == 'WEAK'

    # A later scrape without an image keeps the stored one
    again = repository.upsert_by_url(make_listing(1, image=None))
    assert again.image == make_listing(1).image
    assert again.last_scrape_status == 'OK'
    print("✓ Derived fields work!")


def test_transient_errors_are_retried():
    """Test retry with exponential backoff on connection-closed errors."""
    print("\nTesting transient retries...")
    delays = []
    repository = make_repository(max_retries=3, base_delay=0.5)
    repository.sleep = delays.append

    assert is_transient_error(connection_closed())
    assert not is_transient_error(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")))

    attempts = []

    def flaky(session):
        attempts.append(1)
        if len(attempts) < 3:
            raise connection_closed()
        return "done"

    assert repository.run_in_transaction(flaky) == "done"
    assert len(attempts) == 3
    assert delays == [0.5, 1.0]

    def always_closed(session):
        raise connection_closed()

    try:
        repository.run_in_transaction(always_closed)
        raise AssertionError("expected OperationalError")
    except OperationalError:
        pass
    assert len(delays) == 2 + 3
    print("✓ Transient retries work!")


def test_upsert_many_falls_back_to_rows():
    """Test batch failure falling back to per-row upserts that skip bad rows."""
    print("\nTesting upsert_many...")
    repository = make_repository()
    original = repository._upsert_one

    def fail_on_bad_url(session, listing, categories, terms):
        if listing.url.endswith("Item_3.html"):
            raise IntegrityError("INSERT", {}, Exception("value too long"))
        return original(session, listing, categories, terms)

    repository._upsert_one = fail_on_bad_url
    listings = [make_listing(n) for n in range(1, 6)]

    report = repository.upsert_many(listings, terms=["case"], batch_size=2)
    assert report.saved == 4
    assert report.failed == 1
    assert report.failed_urls == [make_listing(3).url]
    assert report.urls == [listing.url for listing in listings if not listing.url.endswith("Item_3.html")]
    assert repository.count() == 4

    try:
        repository.upsert_many(listings, batch_size=2, continue_on_error=False)
        raise AssertionError("expected IntegrityError")
    except IntegrityError:
        pass
    print("✓ upsert_many works!")


def test_search_filters():
    """Test title, platform and category filters plus pagination."""
    print("\nTesting search...")
    clock = FakeClock()
    repository = make_repository(clock=clock)

    repository.upsert_by_url(make_listing(1, title="Silicone Phone Case"), categories=["phone"])
    clock.advance(seconds=1)
    repository.upsert_by_url(make_listing(2, title="Leather Phone Case"), categories=["leather"])
    clock.advance(seconds=1)
    repository.upsert_by_url(make_listing(3, title="Canvas Tote Bag", platform=Platform.C1688,
                                          url="https://detail.1688.com/offer/3.html"),
                             categories=["bags"])

    titles = [row.title for row in repository.search("phone CASE")]
    assert titles == ["Leather Phone Case", "Silicone Phone Case"]

    assert [row.title for row in repository.search(platforms=[Platform.C1688])] == ["Canvas Tote Bag"]
    assert [row.title for row in repository.search(categories=["phone", "bags"])] == \
        ["Canvas Tote Bag", "Silicone Phone Case"]
    assert [row.title for row in repository.search(offset=1, limit=1)] == ["Leather Phone Case"]
    assert repository.count(Platform.ALIBABA) == 2
    print("✓ Search works!")


def test_snapshots():
    """Test that snapshots freeze an order and expire after the freshness window."""
    print("\nTesting snapshots...")
    clock = FakeClock()
    repository = make_repository(clock=clock)
    listings = [make_listing(n) for n in range(1, 4)]
    repository.upsert_many(listings)

    order = [listings[2].url, listings[0].url, "https://unknown.example/x", listings[1].url]
    filters = {'platforms': ['ALIBABA'], 'limit': 30}
    repository.save_snapshot("Phone  Case", "ALIBABA", filters, order)

    # Newer updates must not reorder the snapshot
    clock.advance(minutes=5)
    repository.upsert_by_url(make_listing(2, title="Bumped"))

    page = repository.load_snapshot("phone case", Platform.ALIBABA, filters, timedelta(minutes=30))
    assert page.total == 3
    assert [row.url for row in page.listings] == [listings[2].url, listings[0].url, listings[1].url]

    second_page = repository.load_snapshot("phone case", "ALIBABA", filters, timedelta(minutes=30),
                                           offset=1, limit=1)
    assert [row.url for row in second_page.listings] == [listings[0].url]

    assert repository.load_snapshot("phone case", "C1688", filters, timedelta(minutes=30)) is None
    assert repository.load_snapshot("phone case", "ALIBABA", {'limit': 10}, timedelta(minutes=30)) is None

    clock.advance(minutes=31)
    assert repository.load_snapshot("phone case", "ALIBABA", filters, timedelta(minutes=30)) is None
    print("✓ Snapshots work!")


def main():
    """Run all tests."""
    print("=" * 60)
    print("Listing Store Tests")
    print("=" * 60)

    try:
        test_upsert_by_url_updates_in_place()
        test_derived_fields_and_status()
        test_transient_errors_are_retried()
        test_upsert_many_falls_back_to_rows()
        test_search_filters()
        test_snapshots()

        print("\n" + "=" * 60)
        print("ALL TESTS PASSED! ✓")
        print("=" * 60)

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    exit(main())
