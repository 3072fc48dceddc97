"""
Content-addressed image cache for scraped listing images.

External image URLs are fetched once, validated (real image bytes, not a
placeholder, not a tiny badge, not block-listed) and stored as
<sha1-of-url>.<ext> in the cache directory, which is served at /cache/.
"""

import asyncio
import hashlib
import io
import json
import logging
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple
from urllib.parse import unquote, urlparse

import imagehash
from PIL import Image, UnidentifiedImageError

from listing_parser import Platform, is_placeholder_image, platform_for_url


ALLOWED_IMAGE_HOSTS = [
    'alicdn.com',
    'alibaba.com',
    '1688.com',
    'made-in-china.com',
    'micstatic.com',
    'imimg.com',
    'indiamart.com',
    'aliexpress-media.com',
    'aliexpress.com',
    'taobao.com',
    'tbcdn.cn',
    'globalsources.com',
]

REFERERS: Dict[Platform, str] = {
    Platform.ALIBABA: 'https://www.alibaba.com/',
    Platform.C1688: 'https://www.1688.com/',
    Platform.TAOBAO: 'https://www.taobao.com/',
    Platform.MADE_IN_CHINA: 'https://www.made-in-china.com/',
    Platform.INDIAMART: 'https://dir.indiamart.com/',
    Platform.ALIEXPRESS: 'https://www.aliexpress.com/',
    Platform.GLOBAL_SOURCES: 'https://www.globalsources.com/',
}

USER_AGENT = ('Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
              '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36')

SUPPORTED_EXTENSIONS = ('jpg', 'png', 'webp')
MIN_IMAGE_BYTES = 2000
MIN_IMAGE_SIDE = 120
PHASH_DISTANCE = 5
TRANSCODE_TIMEOUT = 10.0
PUBLIC_PREFIX = '/cache'
BLOCKLIST_FILENAME = 'blocked_hashes.json'

# Platforms whose images are always served as JPEG
JPEG_PLATFORMS = {Platform.MADE_IN_CHINA}


class RejectReason(str, Enum):
    """Why an image URL or payload was refused by the cache."""

    UNSUPPORTED_PROTOCOL = "unsupported_protocol"
    BAD_HOST = "bad_host"
    PLACEHOLDER = "placeholder"
    FETCH_FAILED = "fetch_failed"
    TOO_SMALL = "too_small"
    NOT_AN_IMAGE = "not_an_image"
    BLOCKED = "blocked"


class ImageRejected(Exception):
    """Raised when an image cannot or must not be cached."""

    def __init__(self, reason: RejectReason, url: str, detail: str = ""):
        self.reason = reason
        self.url = url
        self.detail = detail
        message = f"{reason.value} rejected: {url}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


# ============================================================================
# Byte sniffing
# ============================================================================

def detect_image_ext_from_bytes(data: bytes) -> str:
    """Detect the image format from magic bytes.

    Args:
        data: Raw payload

    Returns:
        'jpg', 'png', 'webp' or 'unknown'
    """
    if not data:
        return 'unknown'
    if data[:3] == b'\xff\xd8\xff':
        return 'jpg'
    if data[:8] == b'\x89PNG\r\n\x1a\n':
        return 'png'
    if len(data) >= 12 and data[:4] == b'RIFF' and data[8:12] == b'WEBP':
        return 'webp'
    return 'unknown'


def header_matches_ext(data: bytes, ext: str) -> bool:
    """Check that a file's header bytes agree with its extension."""
    ext = ext.lower().lstrip('.')
    if ext == 'jpeg':
        ext = 'jpg'
    return detect_image_ext_from_bytes(data) == ext


def normalize_image_url(url: str, allowed_hosts: Optional[List[str]] = None) -> str:
    """Decode and validate an external image URL.

    Args:
        url: Image URL as scraped (may be protocol-relative or percent-encoded)
        allowed_hosts: Host suffix allow-list (defaults to ALLOWED_IMAGE_HOSTS)

    Returns:
        Normalized absolute URL

    Raises:
        ImageRejected: UNSUPPORTED_PROTOCOL or BAD_HOST
    """
    original = url
    url = (url or '').strip()
    if '%3A%2F%2F' in url.upper()[:16]:
        url = unquote(url)
    if url.startswith('//'):
        url = 'https:' + url

    parsed = urlparse(url)
    if parsed.scheme.lower() not in ('http', 'https'):
        raise ImageRejected(RejectReason.UNSUPPORTED_PROTOCOL, original)

    host = (parsed.hostname or '').lower()
    hosts = allowed_hosts if allowed_hosts is not None else ALLOWED_IMAGE_HOSTS
    if not host or not any(host == h or host.endswith('.' + h) for h in hosts):
        raise ImageRejected(RejectReason.BAD_HOST, original, host)

    return url


def cache_key(url: str) -> str:
    return hashlib.sha1(url.encode('utf-8')).hexdigest()


# ============================================================================
# Transcoding capability
# ============================================================================

class NullTranscoder:
    """Image capability used when no image library should be involved.

    Reports no dimensions, no perceptual hash and never transcodes.
    """

    def dimensions(self, data: bytes) -> Optional[Tuple[int, int]]:
        return None

    def to_jpeg(self, data: bytes) -> Optional[bytes]:
        return None

    def perceptual_hash(self, data: bytes) -> Optional[str]:
        return None


class PillowTranscoder(NullTranscoder):
    """Pillow/imagehash-backed image capability."""

    def __init__(self, quality: int = 88):
        self.quality = quality

    def dimensions(self, data: bytes) -> Optional[Tuple[int, int]]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return img.size
        except (UnidentifiedImageError, OSError):
            return None

    def to_jpeg(self, data: bytes) -> Optional[bytes]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                if img.mode not in ('RGB', 'L'):
                    img = img.convert('RGB')
                out = io.BytesIO()
                img.save(out, format='JPEG', quality=self.quality, optimize=True)
                return out.getvalue()
        except (UnidentifiedImageError, OSError):
            return None

    def perceptual_hash(self, data: bytes) -> Optional[str]:
        try:
            with Image.open(io.BytesIO(data)) as img:
                return str(imagehash.phash(img))
        except (UnidentifiedImageError, OSError):
            return None


# ============================================================================
# Cache
# ============================================================================

class ImageCache:
    """Fetches, validates and stores external images by URL hash."""

    def __init__(self, http_client, cache_dir, logger=None,
                 transcoder: Optional[NullTranscoder] = None,
                 min_bytes: int = MIN_IMAGE_BYTES,
                 min_side: int = MIN_IMAGE_SIDE,
                 allowed_hosts: Optional[List[str]] = None,
                 phash_distance: int = PHASH_DISTANCE,
                 transcode_timeout: float = TRANSCODE_TIMEOUT,
                 jpeg_transcode: bool = True):
        """Initialize the image cache.

        Args:
            http_client: Client exposing async get(url, use_cache, headers)
                returning (content, headers) or None
            cache_dir: Directory files are written to
            logger: Logger instance
            transcoder: Image capability, PillowTranscoder by default
                (NullTranscoder disables decoding)
            min_bytes: Payloads smaller than this are rejected
            min_side: Images with a side shorter than this are rejected
            allowed_hosts: Host suffix allow-list
            phash_distance: Hamming distance under which a perceptual hash
                counts as a block-list match
            transcode_timeout: Seconds allowed for one JPEG transcode
            jpeg_transcode: Normalize images to JPEG for platforms that need it
        """
        self.http_client = http_client
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logger or logging.getLogger(__name__)
        self.transcoder = transcoder if transcoder is not None else PillowTranscoder()
        self.min_bytes = min_bytes
        self.min_side = min_side
        self.allowed_hosts = allowed_hosts
        self.phash_distance = phash_distance
        self.transcode_timeout = transcode_timeout
        self.jpeg_transcode = jpeg_transcode

        self.blocked_sha1: Set[str] = set()
        self.blocked_phash: Set[str] = set()
        self._load_blocklist()

    @staticmethod
    def public_path(filename: str) -> str:
        return f"{PUBLIC_PREFIX}/{filename}"

    def local_path(self, public_path: str) -> Path:
        """Map a /cache/<file> path back to the file on disk."""
        return self.cache_dir / Path(public_path).name

    async def cache_image(self, url: str) -> str:
        """Return the /cache/ path of a verified copy of an external image.

        Args:
            url: External image URL

        Returns:
            Public path such as /cache/<sha1>.jpg

        Raises:
            ImageRejected: when the URL or payload is refused
        """
        normalized = normalize_image_url(url, self.allowed_hosts)
        if is_placeholder_image(normalized):
            raise ImageRejected(RejectReason.PLACEHOLDER, url)

        platform = platform_for_url(normalized)
        key = cache_key(normalized)

        cached = await self._reuse_cached(key, platform)
        if cached:
            return cached

        result = await self.http_client.get(normalized, use_cache=False,
                                            headers=self._headers_for(platform))
        if not result:
            raise ImageRejected(RejectReason.FETCH_FAILED, url)

        data, headers = result
        data, ext = await self._validate(data, headers or {}, url, platform)

        filename = f"{key}.{ext}"
        (self.cache_dir / filename).write_bytes(data)
        self.logger.debug(f"Cached {normalized} -> {filename} ({len(data)} bytes)")
        return self.public_path(filename)

    async def _reuse_cached(self, key: str, platform: Optional[Platform]) -> Optional[str]:
        """Return the path of a valid cached file for key, deleting invalid ones."""
        for ext in SUPPORTED_EXTENSIONS:
            path = self.cache_dir / f"{key}.{ext}"
            if not path.exists():
                continue

            data = path.read_bytes()
            if not header_matches_ext(data[:16], ext):
                self.logger.info(f"Cached file failed header check, re-fetching: {path.name}")
                path.unlink(missing_ok=True)
                continue

            if platform in JPEG_PLATFORMS and ext != 'jpg':
                converted = await self._transcode(data)
                if converted:
                    jpg_path = self.cache_dir / f"{key}.jpg"
                    jpg_path.write_bytes(converted)
                    path.unlink(missing_ok=True)
                    return self.public_path(jpg_path.name)

            return self.public_path(path.name)
        return None

    async def _validate(self, data: bytes, headers: Dict, url: str,
                        platform: Optional[Platform]) -> Tuple[bytes, str]:
        if len(data) < self.min_bytes:
            raise ImageRejected(RejectReason.TOO_SMALL, url, f"{len(data)} bytes")

        ext = detect_image_ext_from_bytes(data)
        if ext == 'unknown':
            content_type = headers.get('Content-Type') or headers.get('content-type') or ''
            raise ImageRejected(RejectReason.NOT_AN_IMAGE, url, content_type)

        size = await asyncio.to_thread(self.transcoder.dimensions, data)
        if size and min(size) < self.min_side:
            raise ImageRejected(RejectReason.TOO_SMALL, url, f"{size[0]}x{size[1]}")

        if await asyncio.to_thread(self.is_blocked, data):
            raise ImageRejected(RejectReason.BLOCKED, url)

        if platform in JPEG_PLATFORMS and ext != 'jpg':
            converted = await self._transcode(data)
            if converted:
                return converted, 'jpg'

        return data, ext

    async def _transcode(self, data: bytes) -> Optional[bytes]:
        if not self.jpeg_transcode:
            return None
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.transcoder.to_jpeg, data),
                                          timeout=self.transcode_timeout)
        except asyncio.TimeoutError:
            self.logger.info("JPEG transcode timed out, keeping original bytes")
            return None

    def _headers_for(self, platform: Optional[Platform]) -> Dict[str, str]:
        headers = {
            'User-Agent': USER_AGENT,
            'Accept': 'image/avif,image/webp,image/apng,image/*,*/*;q=0.8',
        }
        referer = REFERERS.get(platform) if platform else None
        if referer:
            headers['Referer'] = referer
        return headers

    # ------------------------------------------------------------------
    # Block-list
    # ------------------------------------------------------------------

    def is_blocked(self, data: bytes) -> bool:
        """Check a payload against the SHA-1 and perceptual-hash block-lists."""
        if hashlib.sha1(data).hexdigest() in self.blocked_sha1:
            return True

        if not self.blocked_phash:
            return False
        phash = self.transcoder.perceptual_hash(data)
        if not phash:
            return False
        candidate = imagehash.hex_to_hash(phash)
        for blocked in self.blocked_phash:
            if candidate - imagehash.hex_to_hash(blocked) < self.phash_distance:
                return True
        return False

    def block(self, data: bytes) -> str:
        """Add a payload (logo, "no image" banner...) to the persisted block-list.

        Returns:
            SHA-1 of the payload
        """
        digest = hashlib.sha1(data).hexdigest()
        self.blocked_sha1.add(digest)
        phash = self.transcoder.perceptual_hash(data)
        if phash:
            self.blocked_phash.add(phash)
        self._save_blocklist()
        return digest

    def _load_blocklist(self):
        blocklist_file = self.cache_dir / BLOCKLIST_FILENAME
        if not blocklist_file.exists():
            return
        try:
            with open(blocklist_file, 'r') as f:
                data = json.load(f)
            self.blocked_sha1 = set(data.get('sha1', []))
            self.blocked_phash = set(data.get('phash', []))
            self.logger.debug(f"Loaded {len(self.blocked_sha1)} blocked image hashes")
        except (OSError, ValueError) as e:
            self.logger.info(f"Error loading image block-list: {e}")

    def _save_blocklist(self):
        blocklist_file = self.cache_dir / BLOCKLIST_FILENAME
        with open(blocklist_file, 'w') as f:
            json.dump({'sha1': sorted(self.blocked_sha1),
                       'phash': sorted(self.blocked_phash)}, f, indent=2)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def audit(self, delete: bool = True) -> Dict[str, int]:
        """Sweep the cache directory for corrupt or block-listed files.

        Args:
            delete: If True, delete offending files. If False, just count them.

        Returns:
            Statistics dict with counts
        """
        stats = {'scanned': 0, 'bad_header': 0, 'blocked': 0, 'deleted': 0}

        for path in sorted(self.cache_dir.iterdir()):
            ext = path.suffix.lower().lstrip('.')
            if not path.is_file() or ext not in SUPPORTED_EXTENSIONS:
                continue
            stats['scanned'] += 1

            data = path.read_bytes()
            offending = False
            if not header_matches_ext(data[:16], ext):
                stats['bad_header'] += 1
                offending = True
            elif self.is_blocked(data):
                stats['blocked'] += 1
                offending = True

            if offending:
                self.logger.debug(f"Offending cache file: {path.name}")
                if delete:
                    path.unlink()
                    stats['deleted'] += 1

        return stats
