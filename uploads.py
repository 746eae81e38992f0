"""
Boundary with the image upload service.

Image URLs on products must come from an allowed content host. When a product
is deleted its images are purged best-effort: failures are logged and never
reach the caller.
"""
import logging
from fnmatch import fnmatch
from typing import Iterable, List, Optional
from urllib.parse import urlparse

import requests

import config

logger = logging.getLogger(__name__)


def is_allowed_image_url(url: str, allowlist: Optional[List[str]] = None) -> bool:
    patterns = config.IMAGE_HOST_ALLOWLIST if allowlist is None else allowlist
    if url.startswith("/"):
        return True
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    if not patterns:
        return True
    host = parsed.hostname.lower()
    return any(fnmatch(host, pattern) for pattern in patterns)


def collect_image_urls(product: dict) -> List[str]:
    urls = [product.get("hero_image")]
    urls.extend(product.get("gallery") or [])
    for variant in product.get("color_variants") or []:
        urls.extend(variant.get("images") or [])
    seen = set()
    out = []
    for url in urls:
        if url and url not in seen:
            seen.add(url)
            out.append(url)
    return out


def purge_images(urls: Iterable[str], service_url: Optional[str] = None, timeout: float = 5) -> int:
    target = service_url or config.UPLOAD_SERVICE_URL
    urls = list(urls)
    if not target:
        logger.info("UPLOAD_SERVICE_URL not set, skipping purge of %d image(s)", len(urls))
        return 0
    purged = 0
    for url in urls:
        try:
            resp = requests.delete(target, json={"url": url}, timeout=timeout)
            resp.raise_for_status()
            purged += 1
        except requests.RequestException as e:
            logger.warning("Failed to purge image %s: %s", url, e)
    return purged
