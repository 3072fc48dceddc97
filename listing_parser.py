"""
Heuristic listing extraction for B2B marketplace search pages.

Turns a raw search-results document from Alibaba, 1688, Made-in-China,
IndiaMART and similar sites into a bounded list of ExternalListing records.
Best-effort: unmatched pages produce an empty list, never an exception.
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag


class Platform(str, Enum):
    """Source marketplaces listings are scraped from."""

    C1688 = "C1688"
    ALIBABA = "ALIBABA"
    TAOBAO = "TAOBAO"
    MADE_IN_CHINA = "MADE_IN_CHINA"
    INDIAMART = "INDIAMART"
    SEA_LOCAL = "SEA_LOCAL"
    ALIEXPRESS = "ALIEXPRESS"
    GLOBAL_SOURCES = "GLOBAL_SOURCES"


# Host suffix -> platform. Order matters: 1688 before alibaba (1688 CDN is alicdn too).
PLATFORM_HOSTS: List[Tuple[str, Platform]] = [
    ('1688.com', Platform.C1688),
    ('alibaba.com', Platform.ALIBABA),
    ('alicdn.com', Platform.ALIBABA),
    ('taobao.com', Platform.TAOBAO),
    ('tmall.com', Platform.TAOBAO),
    ('made-in-china.com', Platform.MADE_IN_CHINA),
    ('micstatic.com', Platform.MADE_IN_CHINA),
    ('indiamart.com', Platform.INDIAMART),
    ('imimg.com', Platform.INDIAMART),
    ('aliexpress.com', Platform.ALIEXPRESS),
    ('aliexpress-media.com', Platform.ALIEXPRESS),
    ('globalsources.com', Platform.GLOBAL_SOURCES),
]

MOQ_MIN_EXCLUSIVE = 0
MOQ_MAX = 100000


@dataclass
class ExternalListing:
    """One product card scraped from a marketplace search page."""

    platform: Optional[Platform]
    url: str
    title: str
    image: Optional[str] = None
    price_raw: Optional[str] = None
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    currency: Optional[str] = None
    moq_raw: Optional[str] = None
    moq: Optional[int] = None
    store_name: Optional[str] = None
    description: Optional[str] = None
    rating_raw: Optional[str] = None
    orders_raw: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['platform'] = self.platform.value if self.platform else None
        return data


def platform_for_url(url: str) -> Optional[Platform]:
    """Infer the source platform from a URL's host."""
    if not url:
        return None
    if url.startswith('//'):
        url = 'https:' + url
    host = (urlparse(url).hostname or '').lower()
    for suffix, platform in PLATFORM_HOSTS:
        if host == suffix or host.endswith('.' + suffix):
            return platform
    return None


# ============================================================================
# Price / MOQ / order-count text parsing
# ============================================================================

CURRENCY_SYMBOLS = [
    ('US$', 'USD'),
    ('USD', 'USD'),
    ('CN¥', 'CNY'),
    ('RMB', 'CNY'),
    ('¥', 'CNY'),
    ('￥', 'CNY'),
    ('₹', 'INR'),
    ('Rs.', 'INR'),
    ('Rs', 'INR'),
    ('INR', 'INR'),
    ('€', 'EUR'),
    ('£', 'GBP'),
    ('$', 'USD'),
]

_SYMBOL_PATTERN = '|'.join(re.escape(sym) for sym, _ in CURRENCY_SYMBOLS)
_NUMBER = r'\d[\d,]*(?:\.\d+)?'

PRICE_RE = re.compile(
    rf'(?P<sym>{_SYMBOL_PATTERN})\s*(?P<lo>{_NUMBER})'
    rf'(?:\s*[-~–]\s*(?:{_SYMBOL_PATTERN})?\s*(?P<hi>{_NUMBER}))?'
)

MOQ_UNITS = (
    r'pieces|piece|pcs|pc|units|unit|sets|set|pairs|pair|boxes|box|cartons|carton|'
    r'bags|bag|rolls|roll|packs|pack|dozens|dozen|kilograms|kilogram|kgs|kg|'
    r'tons|ton|metric tons|meters|meter|square meters|liters|liter|bottles|bottle'
)

MOQ_PATTERNS = [
    re.compile(r'MOQ\s*[:：]?\s*[≥>]?\s*(\d[\d,]*)', re.IGNORECASE),
    re.compile(r'Min\.?\s*(?:imum)?\s*Order\s*(?:Quantity)?\s*[:：]?\s*[≥>]?\s*(\d[\d,]*)',
               re.IGNORECASE),
    re.compile(rf'(\d[\d,]*)\s*(?:{MOQ_UNITS})\s*\(\s*Min\.?\s*Order\s*\)', re.IGNORECASE),
    re.compile(r'(\d[\d,]*)\s*(?:件|个|套|双)?\s*起批'),
    re.compile(rf'(?<![\d.])(\d[\d,]*)\s*(?:{MOQ_UNITS})\b', re.IGNORECASE),
]

ORDERS_RE = re.compile(r'(\d[\d,.]*?)\s*\+?\s*(?:sold|orders)', re.IGNORECASE)
RATING_RE = re.compile(r'(\d(?:\.\d)?)\s*/\s*5')


def _to_number(text: str) -> Optional[float]:
    try:
        return float(text.replace(',', ''))
    except (TypeError, ValueError):
        return None


def parse_price(text: Optional[str]) -> Tuple[Optional[float], Optional[float], Optional[str], Optional[str]]:
    """Parse the first currency-prefixed price or price range in text.

    Args:
        text: Free text from a listing card

    Returns:
        Tuple of (price_min, price_max, currency, matched raw text);
        all None when no price is found
    """
    if not text:
        return None, None, None, None

    match = PRICE_RE.search(text)
    if not match:
        return None, None, None, None

    symbol = match.group('sym')
    currency = next(code for sym, code in CURRENCY_SYMBOLS if sym == symbol)
    low = _to_number(match.group('lo'))
    high = _to_number(match.group('hi')) if match.group('hi') else low
    if low is not None and high is not None and high < low:
        low, high = high, low
    return low, high, currency, match.group(0).strip()


def moq_in_bounds(value: Optional[int]) -> Optional[int]:
    """Discard MOQ values outside (0, 100000]; those are usually dates or weights."""
    if value is None:
        return None
    if value <= MOQ_MIN_EXCLUSIVE or value > MOQ_MAX:
        return None
    return value


def find_moq_text(text: Optional[str]) -> Optional[str]:
    """Return the substring of text that the MOQ heuristics matched."""
    if not text:
        return None
    for pattern in MOQ_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0).strip()
    return None


def parse_moq(text: Optional[str]) -> Optional[int]:
    """Parse a minimum order quantity from free text.

    The first matching pattern wins; a value outside (0, 100000] is treated
    as noise and yields None rather than falling through to later patterns.

    Args:
        text: Free text such as "MOQ 500" or "Min. Order: 10 Pieces"

    Returns:
        MOQ as int, or None
    """
    if not text:
        return None
    for pattern in MOQ_PATTERNS:
        match = pattern.search(text)
        if match:
            number = _to_number(match.group(1))
            if number is None:
                return None
            return moq_in_bounds(int(number))
    return None


def parse_orders(text: Optional[str]) -> Optional[int]:
    """Parse an order/sold count such as "1,234 sold"."""
    if not text:
        return None
    match = ORDERS_RE.search(text)
    if not match:
        return None
    digits = re.sub(r'[,.]', '', match.group(1))
    return int(digits) if digits.isdigit() else None


# ============================================================================
# Placeholder image detection
# ============================================================================

# (host substring or None for any host, path regex)
PLACEHOLDER_PATTERNS: List[Tuple[Optional[str], re.Pattern]] = [
    ('made-in-china.com', re.compile(r'/common/img/space\.png$', re.IGNORECASE)),
    ('micstatic.com', re.compile(r'/common/img/space\.png$', re.IGNORECASE)),
    ('micstatic.com', re.compile(r'/(?:no[-_]?pic|nopic)\.', re.IGNORECASE)),
    ('alicdn.com', re.compile(r'\d{4,6}-\d-tps-\d{2,4}-\d{2,4}\.(?:png|jpe?g)$', re.IGNORECASE)),
    ('imimg.com', re.compile(r'/(?:default|no[-_]?image)[^/]*$', re.IGNORECASE)),
    (None, re.compile(r'(?:^|[/_-])(?:no[-_]?image|noimage|placeholder|blank|spacer|loading)'
                      r'(?:[._-][^/]*)?\.(?:png|gif|jpe?g|svg|webp)$', re.IGNORECASE)),
    (None, re.compile(r'(?:^|/)(?:sprite|favicon|logo)(?:[._-][^/]*)?\.(?:png|gif|svg|ico)$',
                      re.IGNORECASE)),
]

THUMBNAIL_SIZE_RE = re.compile(r'[_-](\d{1,3})x(\d{1,3})(?=[._-]|$)')
TPS_SIZE_RE = re.compile(r'tps-(\d+)-(\d+)\.(?:png|jpe?g)$', re.IGNORECASE)
MIN_THUMBNAIL_SIDE = 200

# alicdn serves these thumbnail sizes as 350x350 variants too
THUMBNAIL_UPGRADES = {'_50x50': '_350x350', '_80x80': '_350x350', '_120x120': '_350x350'}


def upgrade_thumbnail(url: str) -> str:
    """Swap small alicdn thumbnail size tokens for the 350x350 variant."""
    if 'alicdn.com' not in url:
        return url
    for small, large in THUMBNAIL_UPGRADES.items():
        if small in url:
            return url.replace(small, large)
    return url


def is_placeholder_image(url: Optional[str]) -> bool:
    """Check an image URL against known placeholder/icon patterns.

    Args:
        url: Absolute image URL

    Returns:
        True if the URL points at a stock "no image" graphic, sprite or tiny badge
    """
    if not url:
        return False
    if url.startswith('//'):
        url = 'https:' + url
    parsed = urlparse(url)
    host = (parsed.hostname or '').lower()
    path = parsed.path or ''

    for host_part, pattern in PLACEHOLDER_PATTERNS:
        if host_part and host_part not in host:
            continue
        if pattern.search(path):
            return True

    tps = TPS_SIZE_RE.search(path)
    if tps and min(int(tps.group(1)), int(tps.group(2))) < MIN_THUMBNAIL_SIDE:
        return True

    # Size tokens like _50x50 on CDN thumbnails
    for match in THUMBNAIL_SIZE_RE.finditer(path):
        if int(match.group(1)) < MIN_THUMBNAIL_SIDE or int(match.group(2)) < MIN_THUMBNAIL_SIDE:
            return True

    return False


# ============================================================================
# Selectors
# ============================================================================

CARD_SELECTORS: Dict[Platform, List[str]] = {
    Platform.ALIBABA: [
        '.fy23-search-card',
        '.organic-list .list-no-v2-outter',
        '.search-card-info',
        '[data-content="productItem"]',
        '.J-offer-wrapper',
    ],
    Platform.C1688: [
        '.offer-list-row .offer-item',
        '.sm-offer-item',
        '.search-offer-item',
        '.card-container',
    ],
    Platform.MADE_IN_CHINA: [
        '.prod-list .list-node',
        '.product-item',
        '.prod-info',
    ],
    Platform.INDIAMART: [
        '.prd-card',
        '.card.brs5',
        '.lst-cl',
        '.prd-listing',
    ],
    Platform.ALIEXPRESS: [
        '.search-item-card-wrapper-gallery',
        '.list--gallery--C2f2tvm > a',
    ],
    Platform.GLOBAL_SOURCES: [
        '.product-item',
        '.item-list .item',
    ],
}

GENERIC_CARD_SELECTORS = [
    '.product-card',
    '.product-item',
    '[class*="product-card"]',
    '[data-product-id]',
]

PRODUCT_PATH_PATTERNS: Dict[Platform, re.Pattern] = {
    Platform.ALIBABA: re.compile(r'/product-detail/|/p-detail/', re.IGNORECASE),
    Platform.C1688: re.compile(r'detail\.1688\.com/offer/\d+|/offer/\d+\.html', re.IGNORECASE),
    Platform.MADE_IN_CHINA: re.compile(r'/product/|/prod/|-Product-', re.IGNORECASE),
    Platform.INDIAMART: re.compile(r'/proddetail/|/products/', re.IGNORECASE),
    Platform.ALIEXPRESS: re.compile(r'/item/\d+', re.IGNORECASE),
    Platform.TAOBAO: re.compile(r'item\.taobao\.com|detail\.tmall\.com', re.IGNORECASE),
    Platform.GLOBAL_SOURCES: re.compile(r'/product/|/p/', re.IGNORECASE),
}

GENERIC_PRODUCT_PATH = re.compile(r'/product/|/product-detail/|/item/|/offer/|/proddetail/|/p/',
                                  re.IGNORECASE)

STORE_NAME_SELECTORS = [
    '.search-card-e-company',
    '.supplier-name',
    '.company-name',
    '.companyname',
    '.store-name',
    '.compName',
    '[class*="company"]',
    '[class*="supplier"]',
]

LAZY_IMAGE_ATTRIBUTES = ['data-src', 'data-lazy-src', 'data-original', 'data-lazyload',
                         'data-ks-lazyload']

CONTAINER_TAGS = ('li', 'article', 'div', 'section', 'td')


class ListingParser:
    """Extracts ExternalListing records from marketplace search HTML."""

    def __init__(self, logger=None, extra_card_selectors: Optional[Dict[Platform, List[str]]] = None):
        """Initialize the parser.

        Args:
            logger: Logger instance (falls back to the module logger)
            extra_card_selectors: Per-platform selectors tried before the built-in ones
        """
        self.logger = logger or logging.getLogger(__name__)
        self.extra_card_selectors = extra_card_selectors or {}

    def parse(self, html: str, base_url: str, limit: int = 60,
              platform: Optional[Platform] = None) -> List[ExternalListing]:
        """Extract up to `limit` listings from a search-results page.

        Args:
            html: Raw HTML document
            base_url: URL the document was fetched from, used to resolve links
            limit: Maximum number of listings to return
            platform: Source platform (inferred from base_url when None)

        Returns:
            Listings in document order, deduplicated by URL
        """
        if not html or limit <= 0:
            return []

        platform = platform or platform_for_url(base_url)
        soup = BeautifulSoup(html, 'lxml')

        cards = self._match_cards(soup, platform)
        if cards:
            listings = self._from_cards(cards, base_url, platform, limit)
            self.logger.debug(f"Card mode: {len(listings)} listings from {base_url}")
        else:
            listings = self._from_anchors(soup, base_url, platform, limit)
            self.logger.debug(f"Anchor mode: {len(listings)} listings from {base_url}")

        return listings

    def _selectors_for(self, platform: Optional[Platform]) -> List[str]:
        selectors: List[str] = []
        if platform:
            selectors.extend(self.extra_card_selectors.get(platform, []))
            selectors.extend(CARD_SELECTORS.get(platform, []))
        selectors.extend(GENERIC_CARD_SELECTORS)
        return selectors

    def _match_cards(self, soup: BeautifulSoup, platform: Optional[Platform]) -> List[Tag]:
        """Return the cards matched by the first selector that matches anything."""
        for selector in self._selectors_for(platform):
            try:
                cards = soup.select(selector)
            except ValueError as e:
                self.logger.debug(f"Bad selector {selector!r}: {e}")
                continue
            if cards:
                return cards
        return []

    def _product_path(self, platform: Optional[Platform]) -> re.Pattern:
        return PRODUCT_PATH_PATTERNS.get(platform, GENERIC_PRODUCT_PATH) if platform else GENERIC_PRODUCT_PATH

    def _from_cards(self, cards: List[Tag], base_url: str,
                    platform: Optional[Platform], limit: int) -> List[ExternalListing]:
        product_path = self._product_path(platform)
        listings: List[ExternalListing] = []
        seen = set()

        for card in cards:
            anchor = self._pick_anchor(card, product_path)
            if anchor is None:
                continue
            url = self._resolve(base_url, anchor.get('href'))
            if not url or url in seen:
                continue

            title = self._extract_title(card, anchor)
            if not title:
                continue

            seen.add(url)
            listings.append(self._build_listing(card, url, title, base_url, platform))
            if len(listings) >= limit:
                break

        return listings

    def _from_anchors(self, soup: BeautifulSoup, base_url: str,
                      platform: Optional[Platform], limit: int) -> List[ExternalListing]:
        """Fallback: every product-path anchor with text becomes a listing."""
        product_path = self._product_path(platform)
        listings: List[ExternalListing] = []
        seen = set()

        for anchor in soup.find_all('a', href=True):
            href = anchor['href']
            if not product_path.search(href):
                continue
            url = self._resolve(base_url, href)
            if not url or url in seen:
                continue

            title = (anchor.get('title') or anchor.get_text(' ', strip=True)).strip()
            if not title:
                continue

            seen.add(url)
            block = self._containing_block(anchor)
            listings.append(self._build_listing(block, url, title, base_url, platform))
            if len(listings) >= limit:
                break

        return listings

    def _pick_anchor(self, card: Tag, product_path: re.Pattern) -> Optional[Tag]:
        anchors = [card] if card.name == 'a' and card.get('href') else []
        anchors.extend(card.find_all('a', href=True))
        for anchor in anchors:
            if product_path.search(anchor['href']):
                return anchor
        return anchors[0] if anchors else None

    def _containing_block(self, anchor: Tag) -> Tag:
        for parent in anchor.parents:
            if parent.name in CONTAINER_TAGS:
                return parent
        return anchor.parent or anchor

    def _extract_title(self, card: Tag, anchor: Tag) -> str:
        """First non-empty of: title attribute, heading text, anchor text."""
        for node in (anchor, card):
            title = node.get('title')
            if title and title.strip():
                return title.strip()

        heading = card.find(['h1', 'h2', 'h3', 'h4'])
        if heading and heading.get_text(strip=True):
            return heading.get_text(' ', strip=True)

        return anchor.get_text(' ', strip=True)

    def _extract_image(self, card: Tag, base_url: str) -> Optional[str]:
        for img in card.find_all('img'):
            candidates = [img.get(attr) for attr in LAZY_IMAGE_ATTRIBUTES]
            candidates.append(img.get('src'))
            srcset = img.get('srcset') or img.get('data-srcset')
            if srcset:
                candidates.append(srcset.split(',')[0].strip().split(' ')[0])

            for candidate in candidates:
                if not candidate or not candidate.strip():
                    continue
                candidate = candidate.strip()
                if candidate.startswith('data:'):
                    continue
                resolved = self._resolve(base_url, candidate)
                if not resolved:
                    continue
                resolved = upgrade_thumbnail(resolved)
                if is_placeholder_image(resolved):
                    continue
                return resolved
        return None

    def _extract_store_name(self, card: Tag) -> Optional[str]:
        for selector in STORE_NAME_SELECTORS:
            element = card.select_one(selector)
            if element and element.get_text(strip=True):
                return element.get_text(' ', strip=True)
        return None

    def _build_listing(self, card: Tag, url: str, title: str, base_url: str,
                       platform: Optional[Platform]) -> ExternalListing:
        text = card.get_text(' ', strip=True)
        price_min, price_max, currency, price_raw = parse_price(text)
        orders = ORDERS_RE.search(text)
        rating = RATING_RE.search(text)

        return ExternalListing(
            platform=platform or platform_for_url(url),
            url=url,
            title=title[:300],
            image=self._extract_image(card, base_url),
            price_raw=price_raw,
            price_min=price_min,
            price_max=price_max,
            currency=currency,
            moq_raw=find_moq_text(text),
            moq=parse_moq(text),
            store_name=self._extract_store_name(card),
            rating_raw=rating.group(0) if rating else None,
            orders_raw=orders.group(0) if orders else None,
        )

    def _resolve(self, base_url: str, href: Optional[str]) -> Optional[str]:
        if not href:
            return None
        href = href.strip()
        if not href or href.startswith(('javascript:', 'data:', 'mailto:', '#')):
            return None
        if href.startswith('//'):
            return 'https:' + href
        return urljoin(base_url, href)
