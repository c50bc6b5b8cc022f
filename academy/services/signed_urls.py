"""Helpers for time-limited (presigned) media URLs."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlsplit

from .storage import PersistentStore, VIDEO_URL_CACHE_KEY


LOGGER = logging.getLogger(__name__)

DEFAULT_EXPIRY_BUFFER = 300.0
CACHE_TTL_SECONDS = 3600.0

_AMZ_DATE_FORMAT = "%Y%m%dT%H%M%SZ"


def _first_param(params: Dict[str, list], name: str) -> Optional[str]:
    # Query keys are matched case-insensitively; presigners differ in casing.
    lowered = name.lower()
    for key, values in params.items():
        if key.lower() == lowered and values:
            return values[0]
    return None


def parse_expiry(url: str) -> Optional[float]:
    """Return the absolute expiry of *url* as a POSIX timestamp.

    Two signing schemes are understood:

    * SigV4 presigned URLs carry ``X-Amz-Date`` (``YYYYMMDDTHHMMSSZ``) and
      ``X-Amz-Expires`` (seconds of validity).
    * Legacy S3 and CloudFront URLs carry ``Expires`` as epoch seconds.

    ``None`` is returned when the URL carries no readable expiry.
    """

    if not url:
        return None
    try:
        params = parse_qs(urlsplit(url).query)
    except ValueError:
        return None

    amz_date = _first_param(params, "X-Amz-Date")
    amz_expires = _first_param(params, "X-Amz-Expires")
    if amz_date and amz_expires:
        try:
            signed_at = datetime.strptime(amz_date, _AMZ_DATE_FORMAT).replace(
                tzinfo=timezone.utc
            )
            return signed_at.timestamp() + float(int(amz_expires))
        except ValueError:
            LOGGER.debug("Unreadable SigV4 expiry parameters in %s", url)
            return None

    legacy = _first_param(params, "Expires")
    if legacy:
        try:
            return float(int(legacy))
        except ValueError:
            LOGGER.debug("Unreadable Expires parameter in %s", url)
            return None
    return None


def is_expired(url: str, now: Optional[float] = None, buffer: float = DEFAULT_EXPIRY_BUFFER) -> bool:
    """Return ``True`` when *url* expires within *buffer* seconds of *now*.

    URLs without expiry information are never considered expired.
    """

    expiry = parse_expiry(url)
    if expiry is None:
        return False
    current = time.time() if now is None else now
    return current >= expiry - buffer


def seconds_until_expiry(url: str, now: Optional[float] = None) -> Optional[float]:
    expiry = parse_expiry(url)
    if expiry is None:
        return None
    current = time.time() if now is None else now
    return expiry - current


class SignedUrlCache:
    """Persisted ``video_id -> {url, timestamp}`` map of recently fetched URLs."""

    def __init__(
        self,
        store: PersistentStore,
        *,
        buffer: float = DEFAULT_EXPIRY_BUFFER,
        ttl: float = CACHE_TTL_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._buffer = buffer
        self._ttl = ttl
        self._clock = clock or store.now

    def _load(self) -> Dict[str, Any]:
        value = self._store.get(VIDEO_URL_CACHE_KEY, {})
        return value if isinstance(value, dict) else {}

    def get(self, video_id: str) -> Optional[str]:
        entry = self._load().get(video_id)
        if not isinstance(entry, dict):
            return None
        url = entry.get("url")
        timestamp = entry.get("timestamp")
        if not isinstance(url, str) or not isinstance(timestamp, (int, float)):
            return None
        now = self._clock()
        if now - float(timestamp) >= self._ttl:
            LOGGER.debug("Cached URL for video %s is older than %ss", video_id, self._ttl)
            return None
        if is_expired(url, now, self._buffer):
            LOGGER.debug("Cached URL for video %s is about to expire", video_id)
            return None
        return url

    def put(self, video_id: str, url: str) -> None:
        entries = self._load()
        entries[video_id] = {"url": url, "timestamp": self._clock()}
        self._store.set(VIDEO_URL_CACHE_KEY, entries)

    def invalidate(self, video_id: str) -> None:
        entries = self._load()
        if entries.pop(video_id, None) is not None:
            self._store.set(VIDEO_URL_CACHE_KEY, entries)

    def clear(self) -> None:
        self._store.delete(VIDEO_URL_CACHE_KEY)


__all__ = [
    "CACHE_TTL_SECONDS",
    "DEFAULT_EXPIRY_BUFFER",
    "SignedUrlCache",
    "is_expired",
    "parse_expiry",
    "seconds_until_expiry",
]
