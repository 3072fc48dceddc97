#!/usr/bin/env python3
"""
Tests for the content-addressed image cache.
"""

import asyncio
import io
import os
import tempfile
import threading
from pathlib import Path

from PIL import Image

from image_cache import (
    ImageCache,
    ImageRejected,
    NullTranscoder,
    PillowTranscoder,
    RejectReason,
    cache_key,
    detect_image_ext_from_bytes,
    normalize_image_url,
)


class FakeHTTPClient:
    """Serves canned (content, headers) responses and counts requests."""

    def __init__(self, responses=None):
        self.responses = responses or {}
        self.calls = []

    async def get(self, url, use_cache=True, headers=None):
        self.calls.append((url, headers))
        return self.responses.get(url)


def noise_image(size=(300, 300), fmt='PNG') -> bytes:
    """Random-pixel image that cannot be compressed below the byte floor."""
    img = Image.frombytes('RGB', size, os.urandom(size[0] * size[1] * 3))
    out = io.BytesIO()
    img.save(out, format=fmt)
    return out.getvalue()


def rejection_reason(coro) -> RejectReason:
    try:
        asyncio.run(coro)
    except ImageRejected as e:
        return e.reason
    raise AssertionError("expected ImageRejected")


def test_detect_image_ext():
    """Test magic-byte sniffing."""
    print("Testing detect_image_ext_from_bytes...")
    assert detect_image_ext_from_bytes(b'\xff\xd8\xff\xe0' + b'\x00' * 20) == 'jpg'
    assert detect_image_ext_from_bytes(b'\x89PNG\r\n\x1a\n' + b'\x00' * 20) == 'png'
    assert detect_image_ext_from_bytes(b'RIFF\x24\x00\x00\x00WEBPVP8 ') == 'webp'
    assert detect_image_ext_from_bytes(b'GIF89a') == 'unknown'
    assert detect_image_ext_from_bytes(b'<html>') == 'unknown'
    assert detect_image_ext_from_bytes(b'') == 'unknown'
    print("✓ Extension detection works!")


def test_normalize_image_url():
    """Test URL normalization and host/protocol rejection."""
    print("\nTesting normalize_image_url...")
    assert normalize_image_url("  //s.alicdn.com/kf/H1.jpg ") == "https://s.alicdn.com/kf/H1.jpg"
    assert normalize_image_url("https%3A%2F%2Fs.alicdn.com%2Fkf%2FH1.jpg") == "https://s.alicdn.com/kf/H1.jpg"

    for url, reason in [
        ("data:image/png;base64,iVBORw0KGgo=", RejectReason.UNSUPPORTED_PROTOCOL),
        ("ftp://s.alicdn.com/kf/H1.jpg", RejectReason.UNSUPPORTED_PROTOCOL),
        ("https://evil.example.com/H1.jpg", RejectReason.BAD_HOST),
        ("https://alicdn.com.evil.net/H1.jpg", RejectReason.BAD_HOST),
    ]:
        try:
            normalize_image_url(url)
            raise AssertionError(f"expected rejection for {url}")
        except ImageRejected as e:
            assert e.reason == reason, (url, e.reason)
    print("✓ URL normalization works!")


def test_cache_hit_is_idempotent():
    """Test that a second request for the same URL reuses the cached file."""
    print("\nTesting cache reuse...")
    url = "https://s.alicdn.com/@sc04/kf/Hcase.jpg_300x300.jpg"
    client = FakeHTTPClient({url: (noise_image(), {'Content-Type': 'image/jpeg'})})

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp, transcoder=PillowTranscoder())
        first = asyncio.run(cache.cache_image(url))
        second = asyncio.run(cache.cache_image(url))

        # Format comes from magic bytes, not content-type
        assert first == f"/cache/{cache_key(url)}.png"
        assert second == first
        assert len(client.calls) == 1
        assert client.calls[0][1]['Referer'] == 'https://www.alibaba.com/'
        assert cache.local_path(first).exists()
    print("✓ Cache reuse works!")


def test_corrupt_cached_file_is_refetched():
    """Test that a cached file failing its header check is replaced."""
    print("\nTesting corrupt cache file recovery...")
    url = "https://s.alicdn.com/@sc04/kf/Hbroken.jpg"
    client = FakeHTTPClient({url: (noise_image(fmt='JPEG'), {})})

    with tempfile.TemporaryDirectory() as tmp:
        corrupt = Path(tmp) / f"{cache_key(url)}.jpg"
        corrupt.write_bytes(b'<html>not an image</html>')

        cache = ImageCache(client, tmp, transcoder=NullTranscoder())
        path = asyncio.run(cache.cache_image(url))

        assert path == f"/cache/{corrupt.name}"
        assert len(client.calls) == 1
        assert detect_image_ext_from_bytes(corrupt.read_bytes()) == 'jpg'
    print("✓ Corrupt file recovery works!")


def test_placeholder_rejected_without_fetch():
    """Test that placeholder URLs are refused before any network call or write."""
    print("\nTesting placeholder rejection...")
    client = FakeHTTPClient()

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp)
        reason = rejection_reason(cache.cache_image("https://www.made-in-china.com/common/img/space.png"))
        assert reason == RejectReason.PLACEHOLDER
        assert client.calls == []
        assert list(Path(tmp).iterdir()) == []
    print("✓ Placeholder rejection works!")


def test_small_payload_rejected():
    """Test that tiny payloads are refused even when labelled image/jpeg."""
    print("\nTesting byte floor...")
    url = "https://s.alicdn.com/@sc04/kf/Hbadge.jpg"
    payload = b'\xff\xd8\xff\xe0' + b'\x00' * 500
    client = FakeHTTPClient({url: (payload, {'Content-Type': 'image/jpeg'})})

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp)
        assert rejection_reason(cache.cache_image(url)) == RejectReason.TOO_SMALL
        assert list(Path(tmp).iterdir()) == []
    print("✓ Byte floor works!")


def test_content_checks():
    """Test fetch failure, non-image payloads and undersized images."""
    print("\nTesting payload validation...")
    html_url = "https://s.alicdn.com/@sc04/kf/Hhtml.jpg"
    tiny_url = "https://s.alicdn.com/@sc04/kf/Htiny.jpg"
    client = FakeHTTPClient({
        html_url: (b'<html>' + b' ' * 4000 + b'</html>', {'Content-Type': 'text/html'}),
        tiny_url: (noise_image(size=(60, 60)), {'Content-Type': 'image/png'}),
    })

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp, transcoder=PillowTranscoder())
        missing = "https://s.alicdn.com/@sc04/kf/Hmissing.jpg"
        assert rejection_reason(cache.cache_image(missing)) == RejectReason.FETCH_FAILED
        assert rejection_reason(cache.cache_image(html_url)) == RejectReason.NOT_AN_IMAGE
        assert rejection_reason(cache.cache_image(tiny_url)) == RejectReason.TOO_SMALL
        assert list(Path(tmp).iterdir()) == []
    print("✓ Payload validation works!")


def test_made_in_china_transcoded_to_jpeg():
    """Test JPEG normalization for platforms that require it."""
    print("\nTesting JPEG transcode...")
    url = "https://image.made-in-china.com/2f0j00abc/Office-Chair.png"
    client = FakeHTTPClient({url: (noise_image(), {'Content-Type': 'image/png'})})

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp, transcoder=PillowTranscoder())
        path = asyncio.run(cache.cache_image(url))
        assert path == f"/cache/{cache_key(url)}.jpg"
        assert detect_image_ext_from_bytes(cache.local_path(path).read_bytes()) == 'jpg'
    print("✓ JPEG transcode works!")


def test_blocklist_and_audit():
    """Test block-listing, its persistence and the cache audit sweep."""
    print("\nTesting block-list...")
    logo = noise_image()
    url = "https://s.alicdn.com/@sc04/kf/Hlogo.png"
    client = FakeHTTPClient({url: (logo, {})})

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp, transcoder=PillowTranscoder())
        cache.block(logo)
        assert rejection_reason(cache.cache_image(url)) == RejectReason.BLOCKED

        # Block-list survives a restart
        reloaded = ImageCache(client, tmp, transcoder=PillowTranscoder())
        assert reloaded.is_blocked(logo)
        assert not reloaded.is_blocked(noise_image())

        # Audit removes block-listed and corrupt files, keeps good ones
        good = Path(tmp) / "good.png"
        good.write_bytes(noise_image())
        (Path(tmp) / "logo.png").write_bytes(logo)
        (Path(tmp) / "broken.jpg").write_bytes(b'GIF89a' + b'\x00' * 100)

        stats = reloaded.audit(delete=True)
        assert stats == {'scanned': 3, 'bad_header': 1, 'blocked': 1, 'deleted': 2}
        assert good.exists()
        assert not (Path(tmp) / "logo.png").exists()
    print("✓ Block-list works!")


def test_default_decoding_and_no_jpeg_transcode():
    """Test that size checks run by default and jpeg_transcode=False keeps the format."""
    print("\nTesting default transcoder...")
    tiny_url = "https://s.alicdn.com/@sc04/kf/Htiny.png"
    mic_url = "https://image.made-in-china.com/2f0j00abc/Desk-Lamp.png"
    client = FakeHTTPClient({
        tiny_url: (noise_image(size=(60, 60)), {'Content-Type': 'image/png'}),
        mic_url: (noise_image(), {'Content-Type': 'image/png'}),
    })

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp, jpeg_transcode=False)
        assert isinstance(cache.transcoder, PillowTranscoder)
        assert rejection_reason(cache.cache_image(tiny_url)) == RejectReason.TOO_SMALL

        path = asyncio.run(cache.cache_image(mic_url))
        assert path == f"/cache/{cache_key(mic_url)}.png"
        assert detect_image_ext_from_bytes(cache.local_path(path).read_bytes()) == 'png'
    print("✓ Default transcoder works!")


class ThreadRecordingTranscoder(PillowTranscoder):
    """Records which threads decode images."""

    def __init__(self):
        super().__init__()
        self.threads = []

    def dimensions(self, data):
        self.threads.append(threading.current_thread())
        return super().dimensions(data)

    def perceptual_hash(self, data):
        self.threads.append(threading.current_thread())
        return super().perceptual_hash(data)


def test_decoding_runs_off_event_loop():
    """Test that image decoding during validation runs in worker threads."""
    print("\nTesting off-loop decoding...")
    url = "https://s.alicdn.com/@sc04/kf/Hlamp.png"
    client = FakeHTTPClient({url: (noise_image(), {'Content-Type': 'image/png'})})
    transcoder = ThreadRecordingTranscoder()

    with tempfile.TemporaryDirectory() as tmp:
        cache = ImageCache(client, tmp, transcoder=transcoder)
        # A perceptual-hash entry forces a hash computation for every payload
        cache.blocked_phash.add('0' * 16)
        asyncio.run(cache.cache_image(url))

    assert len(transcoder.threads) == 2
    assert all(thread is not threading.main_thread() for thread in transcoder.threads)
    print("✓ Off-loop decoding works!")


def main():
    """Run all tests."""
    print("=" * 60)
    print("Image Cache Tests")
    print("=" * 60)

    try:
        test_detect_image_ext()
        test_normalize_image_url()
        test_cache_hit_is_idempotent()
        test_corrupt_cached_file_is_refetched()
        test_placeholder_rejected_without_fetch()
        test_small_payload_rejected()
        test_content_checks()
        test_made_in_china_transcoded_to_jpeg()
        test_blocklist_and_audit()
        test_default_decoding_and_no_jpeg_transcode()
        test_decoding_runs_off_event_loop()

        print("\n" + "=" * 60)
        print("ALL TESTS PASSED! ✓")
        print("=" * 60)

    except AssertionError as e:
        print(f"\n✗ Test failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    exit(main())
