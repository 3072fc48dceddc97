#!/usr/bin/env python3
"""
Wholesale Listing Scraper (Async Version)

Searches B2B marketplaces (Alibaba, 1688, Made-in-China, IndiaMART) for a
query, parses the result pages into listings, falls back to a headless
browser when the static HTML under-yields, caches listing images locally and
persists everything to the listing store with a frozen search snapshot.
"""

import argparse
import asyncio
import csv
import json
import logging
import os
import sys
import time
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote, quote_plus, urlparse

import aiohttp
from sqlalchemy.exc import SQLAlchemyError

from image_cache import ImageCache, ImageRejected, PillowTranscoder
from listing_parser import ExternalListing, ListingParser, Platform
from listing_store import ListingRepository, create_engine_from_env, normalize_query
from playwright_crawler import BrowserAutomation, NullBrowserAutomation, PlaywrightCrawler, merge_listings

PLACEHOLDER_IMAGE = '/seed/placeholder.jpg'
DEFAULT_CACHE_DIR = 'public/cache'

DEFAULT_PLATFORMS = [Platform.ALIBABA, Platform.C1688, Platform.MADE_IN_CHINA, Platform.INDIAMART]


# ============================================================================
# Error Handling and Logging
# ============================================================================

class ScraperLogger:
    """Centralized logging system for the scraper."""

    def __init__(self, log_dir: str = "logs"):
        """Initialize logger with separate error and activity logs.

        Args:
            log_dir: Directory to store log files
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.logger = logging.getLogger("MOQScraper")
        self.logger.setLevel(logging.DEBUG)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        # Console handler for user-facing messages
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(logging.Formatter('%(message)s'))

        # File handler for detailed logs
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        file_handler = logging.FileHandler(self.log_dir / f"scraper_{timestamp}.log")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

        self.logger.addHandler(console_handler)
        self.logger.addHandler(file_handler)

        # Error log CSV
        self.error_log_path = self.log_dir / f"errors_{timestamp}.csv"
        self._init_error_log()

    def _init_error_log(self):
        """Initialize the error log CSV file."""
        with open(self.error_log_path, 'w', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                'timestamp', 'platform', 'query', 'error_type',
                'error_message', 'url'
            ])

    def log_error(self, platform: str, query: str, error_type: str,
                  error_message: str, url: str = ""):
        """Log an error to both console and CSV file.

        Args:
            platform: Source platform name
            query: Search query being processed
            error_type: Type of error (e.g., 'Fetch', 'Config', 'Store')
            error_message: Detailed error message
            url: URL that caused the error
        """
        timestamp = datetime.now().isoformat()

        self.logger.error(
            f"Error processing {platform} ({query}): {error_type} - {error_message}"
        )

        with open(self.error_log_path, 'a', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            writer.writerow([
                timestamp, platform, query, error_type, error_message, url
            ])

    def info(self, message: str):
        """Log an info message."""
        self.logger.info(message)

    def debug(self, message: str):
        """Log a debug message."""
        self.logger.debug(message)

    def warning(self, message: str):
        """Log a warning message."""
        self.logger.warning(message)


@dataclass
class ScrapeError:
    """A failure attributed to one source (or to the store when platform is None)."""

    platform: Optional[Platform]
    kind: str
    message: str
    url: str = ""


@dataclass
class ScrapeResult:
    """Listings for a search plus the errors met while producing them."""

    listings: List[ExternalListing] = field(default_factory=list)
    errors: List[ScrapeError] = field(default_factory=list)
    platforms: List[Platform] = field(default_factory=list)
    source: str = "scrape"  # scrape, cache, snapshot

    @property
    def all_failed(self) -> bool:
        """True when every searched source errored and nothing was found."""
        if self.listings or not self.platforms:
            return False
        failed = {error.platform for error in self.errors if error.platform is not None}
        return all(platform in failed for platform in self.platforms)


# ============================================================================
# Per-Domain Rate Limiting
# ============================================================================

class RateLimiter:
    """Per-domain rate limiter for respectful scraping."""

    def __init__(self, requests_per_second: float = 2.0):
        """Initialize rate limiter.

        Args:
            requests_per_second: Maximum requests per second per domain
        """
        self.requests_per_second = requests_per_second
        self.min_interval = 1.0 / requests_per_second
        self.domain_intervals: Dict[str, float] = {}
        self.domain_last_request: Dict[str, float] = {}
        self.locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def set_domain_rate(self, domain: str, requests_per_second: float):
        """Override the rate for one domain (from site configuration)."""
        if requests_per_second > 0:
            self.domain_intervals[domain] = 1.0 / requests_per_second

    async def wait_if_needed(self, url: str):
        """Wait if necessary to respect rate limit for this domain.

        Args:
            url: URL being requested
        """
        domain = urlparse(url).netloc
        min_interval = self.domain_intervals.get(domain, self.min_interval)

        async with self.locks[domain]:
            now = time.time()
            last_request = self.domain_last_request.get(domain, 0)
            time_since_last = now - last_request

            if time_since_last < min_interval:
                await asyncio.sleep(min_interval - time_since_last)

            self.domain_last_request[domain] = time.time()


# ============================================================================
# Response and Search Caching
# ============================================================================

class ResponseCache:
    """Short-lived cache of fetched search pages keyed by URL."""

    def __init__(self, max_size: int = 200, ttl_seconds: float = 600.0,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize response cache.

        Args:
            max_size: Maximum number of cached responses
            ttl_seconds: Seconds a cached page stays usable
            clock: Monotonic time source
        """
        self.entries: "OrderedDict[str, Tuple[float, bytes, Dict]]" = OrderedDict()
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    async def get(self, url: str) -> Optional[Tuple[bytes, Dict]]:
        """Get a fresh cached response for URL.

        Returns:
            Tuple of (content, headers) or None if missing or expired
        """
        entry = self.entries.get(url)
        if entry is None:
            return None
        stored_at, content, headers = entry
        if self.clock() - stored_at > self.ttl_seconds:
            del self.entries[url]
            return None
        self.entries.move_to_end(url)
        return content, headers

    async def set(self, url: str, content: bytes, headers: Dict):
        """Cache response for URL, dropping least recently used pages past max_size."""
        self.entries[url] = (self.clock(), content, headers)
        self.entries.move_to_end(url)
        while len(self.entries) > self.max_size:
            self.entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self.entries)


class SearchCache:
    """In-process cache of recent search results with a TTL and a size cap."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 256,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize search cache.

        Args:
            ttl_seconds: How long an entry stays valid
            max_size: Maximum number of entries (least recently used evicted)
            clock: Monotonic clock returning seconds
        """
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.clock = clock
        self.entries: "OrderedDict[tuple, Tuple[float, ScrapeResult]]" = OrderedDict()

    @staticmethod
    def make_key(query: str, platforms: Sequence[Platform], limit: int) -> tuple:
        return normalize_query(query), tuple(sorted(p.value for p in platforms)), limit

    def get(self, key: tuple) -> Optional[ScrapeResult]:
        entry = self.entries.get(key)
        if entry is None:
            return None
        stored_at, result = entry
        if self.clock() - stored_at > self.ttl_seconds:
            del self.entries[key]
            return None
        self.entries.move_to_end(key)
        return result

    def set(self, key: tuple, result: ScrapeResult):
        self.entries[key] = (self.clock(), result)
        self.entries.move_to_end(key)
        while len(self.entries) > self.max_size:
            self.entries.popitem(last=False)

    def clear(self):
        self.entries.clear()

    def __len__(self) -> int:
        return len(self.entries)


# ============================================================================
# Async HTTP Client
# ============================================================================

def is_retryable_status(status: int) -> bool:
    """Rate limiting and server errors are worth another attempt."""
    return status == 429 or status >= 500


class AsyncHTTPClient:
    """Async HTTP client with connection pooling, rate limiting and retries."""

    def __init__(self, logger: ScraperLogger, rate_limiter: RateLimiter,
                 cache: ResponseCache, proxy: Optional[str] = None,
                 max_retries: int = 2, retry_delay: float = 1.0):
        """Initialize async HTTP client.

        Args:
            logger: Logger instance
            rate_limiter: Rate limiter instance
            cache: Response cache instance
            proxy: Optional HTTP proxy URL
            max_retries: Retries on connection errors, timeouts, 429 and 5xx
            retry_delay: First retry delay in seconds (doubles per retry)
        """
        self.logger = logger
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.proxy = proxy
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Initialize aiohttp session with pooled connections."""
        connector = aiohttp.TCPConnector(
            limit=100,
            limit_per_host=10,
            ttl_dns_cache=300,
        )

        timeout = aiohttp.ClientTimeout(
            total=30,
            connect=10,
            sock_read=20
        )

        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            headers={
                'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                              '(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36',
                'Accept-Language': 'en-US,en;q=0.9',
            }
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close the session."""
        if self.session:
            await self.session.close()

    async def get(self, url: str, use_cache: bool = True,
                  headers: Optional[Dict[str, str]] = None) -> Optional[Tuple[bytes, Dict]]:
        """Perform async GET request with rate limiting, caching and retries.

        Args:
            url: URL to fetch
            use_cache: Whether to use cached response
            headers: Extra request headers (Referer, Accept...)

        Returns:
            Tuple of (content, headers) or None on error
        """
        if use_cache:
            cached = await self.cache.get(url)
            if cached:
                self.logger.debug(f"Cache hit: {url}")
                return cached

        for attempt in range(self.max_retries + 1):
            await self.rate_limiter.wait_if_needed(url)

            try:
                async with self.session.get(url, headers=headers, proxy=self.proxy) as response:
                    response.raise_for_status()
                    content = await response.read()
                    response_headers = dict(response.headers)

                    if use_cache:
                        await self.cache.set(url, content, response_headers)

                    return content, response_headers

            except aiohttp.ClientResponseError as e:
                if not is_retryable_status(e.status):
                    self.logger.debug(f"HTTP {e.status} fetching {url}")
                    return None
                problem = f"HTTP {e.status}"
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                problem = repr(e)
            except aiohttp.ClientError as e:
                self.logger.debug(f"HTTP error fetching {url}: {str(e)}")
                return None

            if attempt >= self.max_retries:
                self.logger.debug(f"Giving up on {url} after {attempt + 1} attempts: {problem}")
                return None
            delay = self.retry_delay * (2 ** attempt)
            self.logger.debug(f"Transient error fetching {url}, retrying in {delay:.1f}s: {problem}")
            await asyncio.sleep(delay)

        return None


# ============================================================================
# Site-Specific Configuration
# ============================================================================

DEFAULT_SITES: Dict[str, Dict] = {
    Platform.ALIBABA.value: {
        'search_url': 'https://www.alibaba.com/trade/search?SearchText={q}',
        'referer': 'https://www.alibaba.com/',
        'rate_limit': 1.0,
        'use_browser': True,
    },
    Platform.C1688.value: {
        'search_url': 'https://s.1688.com/selloffer/offer_search.htm?keywords={q}',
        'referer': 'https://www.1688.com/',
        'rate_limit': 0.5,
        'use_browser': True,
    },
    Platform.MADE_IN_CHINA.value: {
        'search_url': 'https://www.made-in-china.com/multi-search/{path_q}/F1/1.html',
        'referer': 'https://www.made-in-china.com/',
        'rate_limit': 1.0,
        'use_browser': True,
    },
    Platform.INDIAMART.value: {
        'search_url': 'https://dir.indiamart.com/search.mp?ss={q}',
        'referer': 'https://dir.indiamart.com/',
        'rate_limit': 1.0,
        'use_browser': True,
    },
}


class SiteConfig:
    """Per-platform search settings: URL templates, selectors, rates, browser use.

    Built-in defaults are overlaid with an optional JSON file keyed by
    platform name, e.g. {"ALIBABA": {"card_selectors": [".my-card"]}}.
    Keys starting with "_" are ignored.
    """

    def __init__(self, config_file: Optional[str] = None, logger=None,
                 environ: Optional[Dict[str, str]] = None):
        """Initialize site configuration.

        Args:
            config_file: Path to JSON configuration file (optional)
            logger: Logger instance for debug output
            environ: Environment mapping for cookie lookup (defaults to os.environ)
        """
        self.logger = logger
        self.environ = environ if environ is not None else os.environ
        self.config: Dict[str, Dict] = {name: dict(site) for name, site in DEFAULT_SITES.items()}

        if config_file:
            self.load_config(config_file)

    def load_config(self, config_file: str) -> bool:
        """Load configuration from JSON file, merging over the defaults.

        Returns:
            True if config loaded successfully, False otherwise
        """
        try:
            config_path = Path(config_file)
            if not config_path.exists():
                if self.logger:
                    self.logger.info(f"Config file not found: {config_file}, using defaults")
                return False

            with open(config_path, 'r', encoding='utf-8') as f:
                loaded = json.load(f)

            loaded = {k: v for k, v in loaded.items() if not k.startswith('_')}
            for name, site in loaded.items():
                if not isinstance(site, dict):
                    continue
                key = name.upper()
                self.config.setdefault(key, {}).update(
                    {k: v for k, v in site.items() if not k.startswith('_')}
                )

            if self.logger:
                self.logger.info(f"Loaded site configuration for {len(loaded)} platforms")
            return True

        except json.JSONDecodeError as e:
            if self.logger:
                self.logger.warning(f"Invalid JSON in config file: {e}")
            return False
        except OSError as e:
            if self.logger:
                self.logger.warning(f"Error loading config file: {e}")
            return False

    def get_site_config(self, platform: Platform) -> Dict:
        return self.config.get(platform.value, {})

    def get_search_url(self, platform: Platform, query: str) -> Optional[str]:
        """Format the platform's search URL template for a query."""
        template = self.get_site_config(platform).get('search_url')
        if not template:
            return None
        path_query = quote(query.strip().replace(' ', '_'))
        return template.format(q=quote_plus(query.strip()), path_q=path_query)

    def get_card_selectors(self) -> Dict[Platform, List[str]]:
        selectors = {}
        for platform in Platform:
            configured = self.get_site_config(platform).get('card_selectors')
            if configured:
                selectors[platform] = list(configured)
        return selectors

    def get_headers(self, platform: Platform) -> Dict[str, str]:
        referer = self.get_site_config(platform).get('referer')
        return {'Referer': referer} if referer else {}

    def get_rate_limit(self, platform: Platform, default: float = 2.0) -> float:
        return float(self.get_site_config(platform).get('rate_limit', default))

    def should_use_browser(self, platform: Platform) -> bool:
        return bool(self.get_site_config(platform).get('use_browser', True))

    def get_fallback_threshold(self, platform: Platform, default: int) -> int:
        return int(self.get_site_config(platform).get('fallback_threshold', default))

    def get_cookies(self, platform: Platform) -> Optional[str]:
        """Cookie string for the headless context from MOQ_COOKIES_<PLATFORM>."""
        return self.environ.get(f"MOQ_COOKIES_{platform.value}") or None

    def configure_rate_limiter(self, rate_limiter: RateLimiter):
        for platform in Platform:
            site = self.get_site_config(platform)
            template = site.get('search_url')
            if template and 'rate_limit' in site:
                rate_limiter.set_domain_rate(urlparse(template).netloc, float(site['rate_limit']))


def saved_to_listing(row) -> ExternalListing:
    """Rebuild an ExternalListing from a SavedListing row."""
    platform = Platform(row.platform) if row.platform in Platform.__members__ else None
    return ExternalListing(
        platform=platform,
        url=row.url,
        title=row.title,
        image=row.image,
        price_raw=row.price_raw,
        price_min=row.price_min,
        price_max=row.price_max,
        currency=row.currency,
        moq_raw=row.moq_raw,
        moq=row.moq,
        store_name=row.store_name,
        description=row.description,
        rating_raw=row.rating_raw,
        orders_raw=row.orders_raw,
    )


# ============================================================================
# Main Orchestrator
# ============================================================================

class AsyncListingScraper:
    """Search orchestrator: cache, snapshot, scrape, images, persist."""

    def __init__(self, http_client, logger: ScraperLogger,
                 parser: Optional[ListingParser] = None,
                 repository: Optional[ListingRepository] = None,
                 image_cache: Optional[ImageCache] = None,
                 browser: Optional[BrowserAutomation] = None,
                 site_config: Optional[SiteConfig] = None,
                 search_cache: Optional[SearchCache] = None,
                 fallback_threshold: int = 8,
                 snapshot_max_age: timedelta = timedelta(minutes=30),
                 batch_size: int = 10,
                 max_concurrent_images: int = 8,
                 placeholder_image: str = PLACEHOLDER_IMAGE):
        """Initialize the orchestrator.

        Args:
            http_client: Client exposing async get(url, use_cache, headers)
            logger: Logger instance
            parser: HTML parser
            repository: Listing store; None disables snapshots and persistence
            image_cache: Image cache; None keeps external image URLs
            browser: Headless fallback capability
            site_config: Per-platform configuration
            search_cache: In-process result cache
            fallback_threshold: Run the browser when static parsing yields fewer listings
            snapshot_max_age: Freshness window for stored snapshots
            batch_size: Rows per store transaction
            max_concurrent_images: Parallel image downloads
            placeholder_image: Image path used when an image is rejected
        """
        self.http_client = http_client
        self.logger = logger
        self.site_config = site_config or SiteConfig(logger=logger)
        self.parser = parser or ListingParser(logger, self.site_config.get_card_selectors())
        self.repository = repository
        self.image_cache = image_cache
        self.browser = browser or NullBrowserAutomation()
        self.search_cache = search_cache or SearchCache()
        self.fallback_threshold = fallback_threshold
        self.snapshot_max_age = snapshot_max_age
        self.batch_size = batch_size
        self.max_concurrent_images = max_concurrent_images
        self.placeholder_image = placeholder_image

        self.stats = {
            'searches': 0,
            'cache_hits': 0,
            'snapshot_hits': 0,
            'listings_scraped': 0,
            'images_cached': 0,
            'images_rejected': 0,
            'listings_saved': 0,
            'errors_encountered': 0,
        }

    async def search(self, query: str, platforms: Optional[Sequence] = None,
                     limit: int = 30) -> ScrapeResult:
        """Return listings for a query across platforms.

        Args:
            query: Free-text search query
            platforms: Platforms (or their names) to search; defaults to all configured
            limit: Maximum listings per platform

        Returns:
            ScrapeResult with listings and per-source errors
        """
        platforms = [Platform(p) if not isinstance(p, Platform) else p
                     for p in (platforms or DEFAULT_PLATFORMS)]
        self.stats['searches'] += 1

        key = SearchCache.make_key(query, platforms, limit)
        cached = self.search_cache.get(key)
        if cached is not None:
            self.stats['cache_hits'] += 1
            self.logger.debug(f"Search cache hit for {query!r}")
            return ScrapeResult(list(cached.listings), list(cached.errors), platforms, "cache")

        snapshot = await self._load_snapshot(query, platforms, limit)
        if snapshot is not None:
            self.stats['snapshot_hits'] += 1
            self.search_cache.set(key, snapshot)
            return snapshot

        result = ScrapeResult(platforms=platforms)
        outcomes = await asyncio.gather(*(self._scrape_platform(platform, query, limit)
                                          for platform in platforms))
        seen = set()
        for listings, errors in outcomes:
            result.errors.extend(errors)
            for listing in listings:
                if listing.url not in seen:
                    seen.add(listing.url)
                    result.listings.append(listing)
        self.stats['listings_scraped'] += len(result.listings)

        rejected: List[ExternalListing] = []
        if self.image_cache is not None and result.listings:
            rejected = await self._cache_images(result.listings)

        if self.repository is not None and result.listings:
            result.errors.extend(await self._persist(query, platforms, limit, result.listings))

        # Placeholder is for rendering only, never stored
        for listing in rejected:
            listing.image = self.placeholder_image

        if result.listings:
            self.search_cache.set(key, result)
        elif result.all_failed:
            self.logger.info(f"Every source failed for {query!r}")
        else:
            self.logger.info(f"No listings found for {query!r}")

        self.stats['errors_encountered'] += len(result.errors)
        return result

    async def _scrape_platform(self, platform: Platform, query: str,
                               limit: int) -> Tuple[List[ExternalListing], List[ScrapeError]]:
        """Static fetch + parse, then the headless fallback when under threshold."""
        errors: List[ScrapeError] = []
        search_url = self.site_config.get_search_url(platform, query)
        if not search_url:
            message = "No search URL configured"
            self.logger.log_error(platform.value, query, "Config", message)
            return [], [ScrapeError(platform, "config", message)]

        self.logger.info(f"Searching {platform.value}: {search_url}")
        listings: List[ExternalListing] = []

        result = await self.http_client.get(search_url, use_cache=True,
                                            headers=self.site_config.get_headers(platform))
        if result is None:
            message = "Static fetch failed"
            self.logger.log_error(platform.value, query, "Fetch", message, search_url)
            errors.append(ScrapeError(platform, "fetch", message, search_url))
        else:
            content, _ = result
            listings = self.parser.parse(content, search_url, limit, platform)
            self.logger.info(f"  {platform.value}: {len(listings)} listings from static HTML")

        threshold = min(limit, self.site_config.get_fallback_threshold(platform, self.fallback_threshold))
        if len(listings) < threshold and self.site_config.should_use_browser(platform):
            def parse(html, base_url, parse_limit):
                return self.parser.parse(html, base_url, parse_limit, platform)

            try:
                rendered = await self.browser.collect_listings(
                    search_url, parse, limit, cookies=self.site_config.get_cookies(platform)
                )
            except Exception as e:
                self.logger.log_error(platform.value, query, "Browser", str(e), search_url)
                errors.append(ScrapeError(platform, "browser", str(e), search_url))
                rendered = []
            if rendered:
                self.logger.info(f"  {platform.value}: {len(rendered)} listings from headless render")
            listings = merge_listings(listings, rendered, limit)

        return listings, errors

    async def _cache_images(self, listings: List[ExternalListing]) -> List[ExternalListing]:
        """Swap external image URLs for verified /cache/ paths.

        Rejected images are cleared so the store keeps whatever image it
        already has. Returns the listings whose image was rejected.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent_images)
        rejected: List[ExternalListing] = []

        async def cache_one(listing: ExternalListing):
            if not listing.image:
                return
            async with semaphore:
                try:
                    listing.image = await self.image_cache.cache_image(listing.image)
                    self.stats['images_cached'] += 1
                except ImageRejected as e:
                    self.logger.debug(f"Image rejected for {listing.url}: {e.reason.value}")
                    listing.image = None
                    rejected.append(listing)
                    self.stats['images_rejected'] += 1

        await asyncio.gather(*(cache_one(listing) for listing in listings))
        return rejected

    @staticmethod
    def _snapshot_scope(platforms: List[Platform], limit: int) -> Tuple[Optional[str], Dict]:
        platform = platforms[0].value if len(platforms) == 1 else None
        filters = {'platforms': sorted(p.value for p in platforms), 'limit': limit}
        return platform, filters

    async def _load_snapshot(self, query: str, platforms: List[Platform],
                             limit: int) -> Optional[ScrapeResult]:
        if self.repository is None:
            return None
        platform, filters = self._snapshot_scope(platforms, limit)
        try:
            page = await asyncio.to_thread(self.repository.load_snapshot, query, platform,
                                           filters, self.snapshot_max_age)
        except SQLAlchemyError as e:
            self.logger.log_error(platform or "ALL", query, "Store", f"Snapshot lookup failed: {e}")
            return None
        if page is None or not page.listings:
            return None
        self.logger.info(f"Serving {len(page.listings)} listings for {query!r} from snapshot "
                         f"taken {page.created_at.isoformat()}")
        return ScrapeResult([saved_to_listing(row) for row in page.listings], [],
                            platforms, "snapshot")

    async def _persist(self, query: str, platforms: List[Platform], limit: int,
                       listings: List[ExternalListing]) -> List[ScrapeError]:
        """Upsert listings and freeze their order as a snapshot."""
        platform, filters = self._snapshot_scope(platforms, limit)
        terms = [normalize_query(query)]
        try:
            report = await asyncio.to_thread(self.repository.upsert_many, listings, (), terms,
                                             self.batch_size, True)
            self.stats['listings_saved'] += report.saved
            if report.failed:
                self.logger.info(f"  {report.failed} listings could not be saved")
            await asyncio.to_thread(self.repository.save_snapshot, query, platform,
                                    filters, report.urls)
        except SQLAlchemyError as e:
            self.logger.log_error(platform or "ALL", query, "Store", str(e))
            return [ScrapeError(None, "store", str(e))]
        return []

    def print_summary(self):
        """Print final summary statistics."""
        self.logger.info("\n" + "=" * 60)
        self.logger.info("SEARCH COMPLETE")
        self.logger.info("=" * 60)
        self.logger.info(f"Searches: {self.stats['searches']} "
                         f"(cache hits {self.stats['cache_hits']}, "
                         f"snapshot hits {self.stats['snapshot_hits']})")
        self.logger.info(f"Listings scraped: {self.stats['listings_scraped']}")
        self.logger.info(f"Listings saved: {self.stats['listings_saved']}")
        self.logger.info(f"Images cached: {self.stats['images_cached']} "
                         f"(rejected {self.stats['images_rejected']})")
        self.logger.info(f"Errors encountered: {self.stats['errors_encountered']}")
        self.logger.info(f"Error log: {self.logger.error_log_path}")


async def run_search(args) -> ScrapeResult:
    """Wire the components from CLI arguments and run one search."""
    logger = ScraperLogger(args.log_dir)
    site_config = SiteConfig(args.site_config, logger)
    rate_limiter = RateLimiter(args.rate_limit)
    site_config.configure_rate_limiter(rate_limiter)

    repository = ListingRepository(create_engine_from_env(args.db), logger=logger)
    repository.create_schema()

    proxy = os.environ.get('MOQ_PROXY_URL') or None
    if args.no_browser:
        browser: BrowserAutomation = NullBrowserAutomation()
    else:
        browser = PlaywrightCrawler(logger, proxy=proxy)

    async with AsyncHTTPClient(logger, rate_limiter, ResponseCache(), proxy=proxy) as http_client:
        image_cache = None
        if not args.no_images:
            image_cache = ImageCache(http_client, args.cache_dir, logger, transcoder=PillowTranscoder(),
                                     jpeg_transcode=not args.no_transcode)

        async with browser:
            scraper = AsyncListingScraper(
                http_client,
                logger,
                repository=repository,
                image_cache=image_cache,
                browser=browser,
                site_config=site_config,
                fallback_threshold=args.fallback_threshold,
            )
            result = await scraper.search(args.query, args.platform or None, args.limit)

    for listing in result.listings:
        moq = listing.moq if listing.moq is not None else '?'
        logger.info(f"  [{listing.platform.value if listing.platform else '-'}] "
                    f"{listing.title[:70]} | {listing.price_raw or '-'} | MOQ {moq}")
    for error in result.errors:
        logger.info(f"  ✗ {error.platform.value if error.platform else 'store'}: "
                    f"{error.kind} - {error.message}")
    scraper.print_summary()
    return result


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Main entry point with CLI argument parsing."""
    parser = argparse.ArgumentParser(
        description='Wholesale listing scraper for B2B marketplaces',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Search every configured platform
  python listing_scraper_async.py --query "silicone phone case"

  # Only Alibaba and 1688, 20 listings each
  python listing_scraper_async.py --query "led strip" --platform ALIBABA C1688 --limit 20

  # Static HTML only, keep external image URLs
  python listing_scraper_async.py --query "tote bag" --no-browser --no-images
        '''
    )

    parser.add_argument('--query', '-q', type=str, required=True, metavar='TEXT',
                        help='Search query')
    parser.add_argument('--platform', type=str, nargs='*', metavar='NAME',
                        choices=[p.value for p in Platform],
                        help='Platforms to search (default: ALIBABA C1688 MADE_IN_CHINA INDIAMART)')
    parser.add_argument('--limit', type=int, default=30, metavar='N',
                        help='Maximum listings per platform (default: 30)')
    parser.add_argument('--db', type=str, default=None, metavar='URL',
                        help='Database URL (default: $DATABASE_URL or sqlite:///moq_pools.db)')
    parser.add_argument('--cache-dir', type=str,
                        default=os.environ.get('MOQ_CACHE_DIR', DEFAULT_CACHE_DIR), metavar='DIR',
                        help='Image cache directory (default: $MOQ_CACHE_DIR or public/cache)')
    parser.add_argument('--site-config', type=str, default=None, metavar='FILE',
                        help='Path to site configuration JSON file')
    parser.add_argument('--log-dir', type=str, default='logs', metavar='DIR',
                        help='Directory for log files (default: logs/)')
    parser.add_argument('--no-browser', action='store_true',
                        help='Disable the headless browser fallback')
    parser.add_argument('--no-images', action='store_true',
                        help='Keep external image URLs instead of caching them')
    parser.add_argument('--no-transcode', action='store_true',
                        help='Keep original image bytes instead of normalizing to JPEG')
    parser.add_argument('--rate-limit', type=float, default=2.0, metavar='N',
                        help='Requests per second per domain (default: 2.0)')
    parser.add_argument('--fallback-threshold', type=int, default=8, metavar='N',
                        help='Use the headless browser when static HTML yields fewer listings (default: 8)')

    args = parser.parse_args()
    result = asyncio.run(run_search(args))
    sys.exit(1 if result.all_failed else 0)


if __name__ == "__main__":
    main()
