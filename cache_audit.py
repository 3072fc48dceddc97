#!/usr/bin/env python3
"""
Image cache maintenance: sweep for corrupt or block-listed files.

Placeholder banners and supplier logos that slip through URL filtering can be
block-listed from a sample file; every later download whose SHA-1 matches, or
whose perceptual hash is within the distance threshold, is refused.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List

from image_cache import BLOCKLIST_FILENAME, PHASH_DISTANCE, ImageCache, PillowTranscoder

DEFAULT_CACHE_DIR = 'public/cache'


def _setup_logging() -> logging.Logger:
    """Set up console logging."""
    logger = logging.getLogger("CacheAudit")
    logger.setLevel(logging.INFO)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(handler)
    return logger


def block_samples(cache: ImageCache, samples: List[Path]) -> int:
    """Add sample image files to the cache's block-list.

    Args:
        cache: Image cache owning the block-list
        samples: Image files to block

    Returns:
        Number of samples blocked
    """
    blocked = 0
    for sample in samples:
        if not sample.is_file():
            cache.logger.info(f"  ✗ Sample not found: {sample}")
            continue
        digest = cache.block(sample.read_bytes())
        cache.logger.info(f"  Blocked {sample.name} (sha1 {digest[:12]})")
        blocked += 1
    return blocked


def run_audit(cache_dir: Path, delete: bool = False, block: List[Path] = (),
              threshold: int = PHASH_DISTANCE, logger=None) -> Dict[str, int]:
    """Block-list samples, then sweep the cache directory.

    Returns:
        Audit statistics plus the number of newly blocked samples
    """
    cache = ImageCache(None, cache_dir, logger or _setup_logging(),
                       transcoder=PillowTranscoder(), phash_distance=threshold)
    stats = {'samples_blocked': block_samples(cache, list(block))}
    stats.update(cache.audit(delete=delete))
    return stats


def main():
    parser = argparse.ArgumentParser(
        description='Audit the listing image cache for corrupt or block-listed files'
    )
    parser.add_argument(
        'cache_dir',
        type=Path,
        nargs='?',
        default=Path(os.environ.get('MOQ_CACHE_DIR', DEFAULT_CACHE_DIR)),
        help='Image cache directory (default: $MOQ_CACHE_DIR or public/cache)'
    )
    parser.add_argument(
        '--block',
        type=Path,
        nargs='*',
        default=[],
        metavar='FILE',
        help=f'Sample images to add to {BLOCKLIST_FILENAME} before sweeping'
    )
    parser.add_argument(
        '--threshold',
        type=int,
        default=PHASH_DISTANCE,
        help=f'Maximum perceptual hash distance for a block-list match (default: {PHASH_DISTANCE})'
    )
    parser.add_argument(
        '--delete',
        action='store_true',
        help='Delete offending files (default: just report, don\'t delete)'
    )

    args = parser.parse_args()

    if not args.cache_dir.exists():
        print(f"\nError: Cache directory not found: {args.cache_dir}")
        return 1

    print("=" * 60)
    print("Image Cache Audit")
    print("=" * 60)
    print(f"Cache directory: {args.cache_dir}")
    print(f"Delete mode: {'ENABLED' if args.delete else 'DISABLED (dry-run)'}")
    print("=" * 60 + "\n")

    stats = run_audit(args.cache_dir, delete=args.delete, block=args.block,
                      threshold=args.threshold)

    print("\n" + "=" * 60)
    print("IMAGE CACHE AUDIT - SUMMARY")
    print("=" * 60)
    print(f"Samples blocked: {stats['samples_blocked']}")
    print(f"Files scanned: {stats['scanned']}")
    print(f"Bad headers: {stats['bad_header']}")
    print(f"Block-listed: {stats['blocked']}")
    print(f"Files deleted: {stats['deleted']}")
    print("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(main())
