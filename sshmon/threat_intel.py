"""Best-effort IP enrichment for sshmon.

Looks up geolocation and network ownership for attacker addresses through
the free ip-api.com service and, when an API key is configured, the
address reputation on AbuseIPDB. Lookups are cached per IP and each source
is rate limited to its free tier. Anything that goes wrong yields an empty
result so callers never have to care.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

LOGGER = logging.getLogger(__name__)

IP_API_URL = "http://ip-api.com/json/{ip}?fields=status,country,countryCode,city,lat,lon,isp,as"
ABUSEIPDB_URL = "https://api.abuseipdb.com/api/v2/check"
RATE_LIMIT = 45
RATE_WINDOW = 60.0
ABUSEIPDB_DAILY_LIMIT = 1000
ABUSEIPDB_WINDOW = 86400.0
MAX_CACHE_SIZE = 10000


def is_public_address(ip: str) -> bool:
    """True only for globally routable addresses."""
    try:
        return ipaddress.ip_address(ip).is_global
    except ValueError:
        return False


def _fetch_ip_api(ip: str, timeout: float) -> Dict[str, Any]:
    req = urllib.request.Request(
        IP_API_URL.format(ip=ip), headers={"User-Agent": "sshmon"}
    )
    with urllib.request.urlopen(req, timeout=timeout) as response:
        return json.loads(response.read().decode())


def _fetch_abuseipdb(ip: str, api_key: str, timeout: float) -> Dict[str, Any]:
    query = urllib.parse.urlencode({"ipAddress": ip, "maxAgeInDays": 90})
    req = urllib.request.Request(
        f"{ABUSEIPDB_URL}?{query}",
        headers={"Key": api_key, "Accept": "application/json", "User-Agent": "sshmon"},
    )
    with urllib.request.urlopen(req, timeout=timeout) as response:
        return json.loads(response.read().decode()).get("data") or {}


def _take(calls: Deque[float], limit: int, window: float, now: float) -> bool:
    """Record one call in a rolling window unless ``limit`` is reached."""
    while calls and now - calls[0] >= window:
        calls.popleft()
    if len(calls) >= limit:
        return False
    calls.append(now)
    return True


class ThreatIntel:
    """Cached, rate limited IP lookup client."""

    def __init__(
        self,
        enabled: bool = True,
        timeout: float = 5.0,
        cache_ttl: float = 604800,
        rate_limit: int = RATE_LIMIT,
        fetch: Optional[Callable[[str, float], Dict[str, Any]]] = None,
        abuseipdb_key: str = "",
        abuse_fetch: Optional[Callable[[str, str, float], Dict[str, Any]]] = None,
        abuse_daily_limit: int = ABUSEIPDB_DAILY_LIMIT,
        max_cache_size: int = MAX_CACHE_SIZE,
    ):
        self.enabled = enabled
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.rate_limit = rate_limit
        self.abuseipdb_key = abuseipdb_key
        self.abuse_daily_limit = abuse_daily_limit
        self.max_cache_size = max_cache_size
        self._fetch = fetch or _fetch_ip_api
        self._abuse_fetch = abuse_fetch or _fetch_abuseipdb
        self._cache: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._calls: Deque[float] = deque()
        self._abuse_calls: Deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def cached_count(self) -> int:
        with self._lock:
            return len(self._cache)

    def lookup(self, ip: str) -> Dict[str, Any]:
        """Return enrichment data for ``ip`` or ``{}``."""
        if not self.enabled or not is_public_address(ip):
            return {}

        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(ip)
            if cached is not None and now - cached[0] < self.cache_ttl:
                return dict(cached[1])
            use_geo = _take(self._calls, self.rate_limit, RATE_WINDOW, now)
            if not use_geo:
                LOGGER.warning("ip-api rate limit reached, skipping lookup for %s", ip)
            use_abuse = False
            if self.abuseipdb_key:
                use_abuse = _take(
                    self._abuse_calls, self.abuse_daily_limit, ABUSEIPDB_WINDOW, now
                )
                if not use_abuse:
                    LOGGER.warning("AbuseIPDB daily limit reached, skipping lookup for %s", ip)

        if not use_geo and not use_abuse:
            return {}
        result: Dict[str, Any] = {}
        if use_geo:
            result.update(self._query(ip))
        if use_abuse:
            result.update(self._query_abuseipdb(ip))

        # A lookup missing a rate limited source is retried next time.
        complete = use_geo and (use_abuse or not self.abuseipdb_key)
        if complete:
            self._store(ip, result)
        return dict(result)

    def _store(self, ip: str, result: Dict[str, Any]) -> None:
        now = time.monotonic()
        with self._lock:
            expired = [key for key, (stamp, _) in self._cache.items() if now - stamp >= self.cache_ttl]
            for key in expired:
                del self._cache[key]
            self._cache.pop(ip, None)
            while self._cache and len(self._cache) >= self.max_cache_size:
                # oldest first
                del self._cache[next(iter(self._cache))]
            self._cache[ip] = (now, result)

    def _query(self, ip: str) -> Dict[str, Any]:
        try:
            data = self._fetch(ip, self.timeout)
        except (urllib.error.URLError, OSError, ValueError) as exc:
            LOGGER.debug("ip-api lookup for %s failed: %s", ip, exc)
            return {}

        if data.get("status") != "success":
            LOGGER.debug("ip-api returned no data for %s: %s", ip, data.get("message"))
            return {}
        return {
            "country": data.get("countryCode") or data.get("country", "Unknown"),
            "city": data.get("city", "Unknown"),
            "isp": data.get("isp", "Unknown"),
            "asn": data.get("as", "Unknown"),
            "latitude": data.get("lat", 0),
            "longitude": data.get("lon", 0),
        }

    def _query_abuseipdb(self, ip: str) -> Dict[str, Any]:
        try:
            data = self._abuse_fetch(ip, self.abuseipdb_key, self.timeout)
        except (urllib.error.URLError, OSError, ValueError) as exc:
            LOGGER.debug("AbuseIPDB lookup for %s failed: %s", ip, exc)
            return {}

        if "abuseConfidenceScore" not in data:
            return {}
        return {
            "abuse_score": data.get("abuseConfidenceScore", 0),
            "total_reports": data.get("totalReports", 0),
            "is_tor": bool(data.get("isTor", False)),
            "usage_type": data.get("usageType") or "Unknown",
            "domain": data.get("domain") or "Unknown",
        }

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()


_threat_intel: Optional[ThreatIntel] = None
_threat_intel_lock = threading.Lock()


def get_threat_intel() -> ThreatIntel:
    """Get or create the global threat-intel client from configuration."""
    global _threat_intel
    with _threat_intel_lock:
        if _threat_intel is None:
            from .config import get_config

            cfg = get_config().threat_intel
            _threat_intel = ThreatIntel(
                enabled=cfg.enabled,
                timeout=cfg.timeout,
                cache_ttl=cfg.cache_ttl,
                abuseipdb_key=cfg.abuseipdb_key,
            )
        return _threat_intel
