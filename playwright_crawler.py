#!/usr/bin/env python3
"""
Playwright-based fallback for marketplace search pages that render with JavaScript.

The static fetch + parse path handles most result pages. When it yields too
few listings the orchestrator hands the search URL to a BrowserAutomation,
which loads it in headless Chromium, repeatedly parses the live DOM and pages
through "load more"/"next" controls or scrolling until it runs dry.
"""

import asyncio
from typing import Callable, Dict, List, Optional
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Page, async_playwright

from listing_parser import ExternalListing

ParseFn = Callable[[str, str, int], List[ExternalListing]]

USER_AGENT = ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
              '(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36')
MOBILE_USER_AGENT = ('Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 '
                     '(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1')

DESKTOP_VIEWPORT = {'width': 1366, 'height': 900}
MOBILE_VIEWPORT = {'width': 390, 'height': 844}

EXTRA_HEADERS = {
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
    'Upgrade-Insecure-Requests': '1',
}

# Tried in order before falling back to scrolling
LOAD_MORE_SELECTORS = [
    'button:has-text("Load more")',
    'button:has-text("Show more")',
    'a:has-text("Load more")',
    '[class*="load-more"]',
    '[class*="loadMore"]',
    'a[rel="next"]',
    'a.next',
    '.pagination .next a',
    'a:has-text("Next")',
]


def parse_cookie_string(cookie_string: Optional[str], url: str) -> List[Dict[str, str]]:
    """Turn "a=b; c=d" into Playwright cookie dicts scoped to the URL's site.

    Args:
        cookie_string: Raw Cookie header value
        url: Page URL the cookies belong to

    Returns:
        List of cookie dicts accepted by BrowserContext.add_cookies
    """
    if not cookie_string:
        return []

    host = urlparse(url).hostname or ''
    labels = host.split('.')
    domain = '.' + '.'.join(labels[-2:]) if len(labels) >= 2 else host

    cookies = []
    for part in cookie_string.split(';'):
        name, sep, value = part.strip().partition('=')
        if not sep or not name:
            continue
        cookies.append({'name': name.strip(), 'value': value.strip(),
                        'domain': domain, 'path': '/'})
    return cookies


def merge_listings(listings: List[ExternalListing], extra: List[ExternalListing],
                   limit: int) -> List[ExternalListing]:
    """Append listings from extra whose URLs are new, keeping first occurrences."""
    seen = {listing.url for listing in listings}
    merged = list(listings)
    for listing in extra:
        if len(merged) >= limit:
            break
        if listing.url in seen:
            continue
        seen.add(listing.url)
        merged.append(listing)
    return merged


class BrowserAutomation:
    """Headless rendering capability used when static HTML under-yields."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def collect_listings(self, url: str, parse: ParseFn, limit: int,
                               cookies: Optional[str] = None) -> List[ExternalListing]:
        raise NotImplementedError


class NullBrowserAutomation(BrowserAutomation):
    """Used when headless automation is disabled: never yields anything."""

    async def collect_listings(self, url: str, parse: ParseFn, limit: int,
                               cookies: Optional[str] = None) -> List[ExternalListing]:
        return []


class PlaywrightCrawler(BrowserAutomation):
    """Headless Chromium crawler for JavaScript-rendered search result pages."""

    def __init__(self, logger, proxy: Optional[str] = None, headless: bool = True,
                 max_steps: int = 8, idle_limit: int = 3, scroll_delay: float = 1.5,
                 nav_timeout_ms: int = 30000, sleep=asyncio.sleep):
        """Initialize Playwright crawler.

        Args:
            logger: Logger instance for error reporting
            proxy: Optional proxy server URL for the browser
            headless: Run Chromium without a window
            max_steps: Maximum parse/advance rounds per context
            idle_limit: Stop after this many rounds without new URLs
            scroll_delay: Seconds to wait after each click or scroll
            nav_timeout_ms: Navigation timeout in milliseconds
            sleep: Coroutine function used for the post-advance wait
        """
        self.logger = logger
        self.proxy = proxy
        self.headless = headless
        self.max_steps = max_steps
        self.idle_limit = idle_limit
        self.scroll_delay = scroll_delay
        self.nav_timeout_ms = nav_timeout_ms
        self.sleep = sleep
        self.browser: Optional[Browser] = None
        self.playwright = None
        self.launch_failed = False
        self._launch_lock: Optional[asyncio.Lock] = None

    async def __aenter__(self):
        """Chromium is launched on the first collect_listings call."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close browser and Playwright."""
        if self.browser:
            await self.browser.close()
            self.browser = None
        if self.playwright:
            await self.playwright.stop()
            self.playwright = None

    async def _ensure_browser(self) -> bool:
        """Start Playwright and Chromium once. Returns False if the launch failed."""
        if self.browser is not None:
            return True
        if self.launch_failed:
            return False
        if self._launch_lock is None:
            self._launch_lock = asyncio.Lock()

        async with self._launch_lock:
            if self.browser is not None or self.launch_failed:
                return self.browser is not None

            launch_args = {
                'headless': self.headless,
                'args': [
                    '--disable-blink-features=AutomationControlled',
                    '--disable-dev-shm-usage',
                    '--no-sandbox',
                    '--disable-setuid-sandbox',
                ],
            }
            if self.proxy:
                launch_args['proxy'] = {'server': self.proxy}

            try:
                self.playwright = await async_playwright().start()
                self.browser = await self.playwright.chromium.launch(**launch_args)
            except Exception as e:
                self.logger.info(f"Could not start headless Chromium, skipping browser fallback: {e}")
                self.launch_failed = True
                if self.playwright:
                    try:
                        await self.playwright.stop()
                    except Exception as stop_error:
                        self.logger.debug(f"Playwright stop failed: {stop_error}")
                    self.playwright = None
                return False

            self.logger.debug("Headless Chromium started")
            return True

    async def collect_listings(self, url: str, parse: ParseFn, limit: int,
                               cookies: Optional[str] = None) -> List[ExternalListing]:
        """Render a search page and collect listings from it.

        A desktop context is tried first; a mobile context is tried when the
        desktop one yields less than half the limit.

        Args:
            url: Search results URL
            parse: parse(html, base_url, limit) -> listings
            limit: Maximum number of listings
            cookies: Optional cookie string injected into the context

        Returns:
            Distinct listings, first occurrence wins
        """
        if not await self._ensure_browser():
            return []

        listings = await self._collect_with_context(url, parse, limit, cookies, mobile=False)
        if len(listings) < max(1, limit // 2):
            self.logger.info(f"  Desktop render gave {len(listings)} listings, trying mobile layout")
            mobile = await self._collect_with_context(url, parse, limit, cookies, mobile=True)
            listings = merge_listings(listings, mobile, limit)

        self.logger.info(f"Playwright collected {len(listings)} listings from {url[:80]}")
        return listings

    async def _collect_with_context(self, url: str, parse: ParseFn, limit: int,
                                    cookies: Optional[str], mobile: bool) -> List[ExternalListing]:
        context: Optional[BrowserContext] = None
        try:
            if mobile:
                context = await self.browser.new_context(
                    viewport=MOBILE_VIEWPORT, user_agent=MOBILE_USER_AGENT,
                    is_mobile=True, has_touch=True, extra_http_headers=EXTRA_HEADERS,
                )
            else:
                context = await self.browser.new_context(
                    viewport=DESKTOP_VIEWPORT, user_agent=USER_AGENT,
                    extra_http_headers=EXTRA_HEADERS,
                )
            cookie_list = parse_cookie_string(cookies, url)
            if cookie_list:
                await context.add_cookies(cookie_list)

            page = await context.new_page()
            await page.goto(url, wait_until='domcontentloaded', timeout=self.nav_timeout_ms)
            return await self.collect_from_page(page, url, parse, limit)
        except Exception as e:
            layout = 'mobile' if mobile else 'desktop'
            self.logger.info(f"  ✗ Playwright {layout} render failed for {url[:80]}: {str(e)}")
            return []
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    self.logger.debug(f"Error closing browser context: {e}")

    async def collect_from_page(self, page: Page, url: str, parse: ParseFn,
                                limit: int) -> List[ExternalListing]:
        """Parse, advance and re-parse a loaded page until it stops producing new URLs.

        Errors end the loop; listings gathered so far are returned.
        """
        listings: List[ExternalListing] = []
        seen = set()
        idle_steps = 0

        for step in range(self.max_steps):
            try:
                html = await page.content()
            except Exception as e:
                self.logger.debug(f"Could not read page content at step {step}: {e}")
                break

            new_count = 0
            for listing in parse(html, url, limit):
                if listing.url in seen:
                    continue
                seen.add(listing.url)
                listings.append(listing)
                new_count += 1
                if len(listings) >= limit:
                    break

            self.logger.debug(f"  Step {step + 1}: {new_count} new listings ({len(listings)} total)")
            if len(listings) >= limit:
                break

            idle_steps = 0 if new_count else idle_steps + 1
            if idle_steps >= self.idle_limit:
                break

            await self._advance(page)
            await self.sleep(self.scroll_delay)

        return listings[:limit]

    async def _advance(self, page: Page) -> bool:
        """Click a load-more/next control, else scroll to the bottom."""
        for selector in LOAD_MORE_SELECTORS:
            try:
                element = await page.query_selector(selector)
                if element is not None and await element.is_visible():
                    await element.click()
                    return True
            except Exception as e:
                self.logger.debug(f"Load-more selector {selector} failed: {e}")

        try:
            await page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
            return True
        except Exception as e:
            self.logger.debug(f"Scrolling failed: {e}")
            return False
