"""
Geocoding Validator

Turns a free-text place name into a structured, scored location using the
Nominatim search API. Successful lookups are cached with a TTL so repeated
turns in one call do not hit the provider again.
"""

import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel

from ..config.settings import Settings, settings as default_settings
from ..exceptions import GeocodingError

logger = logging.getLogger(__name__)


class GeocodeData(BaseModel):
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    country_code: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    display_name: Optional[str] = None
    confidence: float = 0.0

    @property
    def is_complete(self) -> bool:
        return bool(self.city or self.state or self.country)


class GeocodeResult(BaseModel):
    success: bool
    data: Optional[GeocodeData] = None
    error: Optional[str] = None
    cached: bool = False
    provider: str = "nominatim"


class GeocodingValidator:
    """Cached, timeout-bound geocoding client"""

    def __init__(self, settings: Optional[Settings] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings or default_settings
        self.provider = self.settings.GEOCODING_PROVIDER
        self.base_url = self.settings.GEOCODING_BASE_URL
        self.cache_ttl = self.settings.GEOCODING_CACHE_TTL_SECONDS
        self.max_cache_size = self.settings.GEOCODING_MAX_CACHE_SIZE
        self.clock = clock
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.GEOCODING_TIMEOUT_SECONDS,
            headers={"User-Agent": self.settings.GEOCODING_USER_AGENT},
        )

        self._cache: "OrderedDict[str, Tuple[float, GeocodeData]]" = OrderedDict()
        self.cache_hits = 0
        self.cache_misses = 0

    @staticmethod
    def normalize(location_text: str) -> str:
        return " ".join(location_text.lower().split())

    def cache_key(self, location_text: str) -> str:
        return f"{self.provider}:{self.normalize(location_text)}"

    def _cache_get(self, key: str) -> Optional[GeocodeData]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, data = entry
        if self.clock() - stored_at >= self.cache_ttl:
            del self._cache[key]
            return None
        return data

    def _cache_put(self, key: str, data: GeocodeData) -> None:
        if key in self._cache:
            del self._cache[key]
        while len(self._cache) >= self.max_cache_size:
            evicted, _ = self._cache.popitem(last=False)
            logger.debug(f"Geocoding cache full, evicted {evicted}")
        self._cache[key] = (self.clock(), data)

    async def geocode(self, location_text: str) -> GeocodeResult:
        """Geocode a place name. Never raises; failures come back with success=False."""
        if not location_text or not location_text.strip():
            return GeocodeResult(success=False, error="empty location", provider=self.provider)

        key = self.cache_key(location_text)
        cached = self._cache_get(key)
        if cached is not None:
            self.cache_hits += 1
            logger.debug(f"📍 Geocoding cache hit for '{location_text}'")
            return GeocodeResult(success=True, data=cached, cached=True, provider=self.provider)
        self.cache_misses += 1

        try:
            hits = await self._search(location_text)
        except httpx.TimeoutException:
            logger.warning(f"⏱️ Geocoding timed out for '{location_text}'")
            return GeocodeResult(success=False, error="timeout", provider=self.provider)
        except (httpx.HTTPError, GeocodingError, ValueError) as e:
            logger.error(f"Geocoding failed for '{location_text}': type={type(e).__name__} detail={e}")
            return GeocodeResult(success=False, error=str(e) or type(e).__name__, provider=self.provider)

        if not hits:
            logger.info(f"📍 No geocoding results for '{location_text}'")
            return GeocodeResult(success=False, error="no results", provider=self.provider)

        data = self.parse_hit(self.best_hit(hits))
        self._cache_put(key, data)
        logger.info(f"📍 Geocoded '{location_text}' -> {data.display_name} ({data.confidence:.2f})")
        return GeocodeResult(success=True, data=data, provider=self.provider)

    async def _search(self, location_text: str) -> List[Dict[str, Any]]:
        params = {
            "format": "json",
            "q": location_text,
            "limit": self.settings.GEOCODING_RESULT_LIMIT,
            "addressdetails": 1,
        }
        response = await self.http_client.get(self.base_url, params=params)
        if response.status_code != 200:
            raise GeocodingError(
                f"Geocoding API error: {response.status_code}",
                status_code=response.status_code,
                provider=self.provider,
            )
        payload = response.json()
        if not isinstance(payload, list):
            raise GeocodingError("Unexpected geocoding payload", provider=self.provider)
        return payload

    @staticmethod
    def best_hit(hits: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Highest importance wins; the provider's order breaks ties"""
        best = hits[0]
        for hit in hits[1:]:
            if float(hit.get("importance") or 0.0) > float(best.get("importance") or 0.0):
                best = hit
        return best

    @staticmethod
    def parse_hit(hit: Dict[str, Any]) -> GeocodeData:
        address = hit.get("address") or {}

        def _float(value) -> Optional[float]:
            try:
                return float(value)
            except (TypeError, ValueError):
                return None

        importance = _float(hit.get("importance")) or 0.0
        country_code = address.get("country_code")
        return GeocodeData(
            city=address.get("city") or address.get("town") or address.get("village"),
            state=address.get("state"),
            country=address.get("country"),
            country_code=country_code.upper() if country_code else None,
            latitude=_float(hit.get("lat")),
            longitude=_float(hit.get("lon")),
            display_name=hit.get("display_name"),
            confidence=max(0.0, min(1.0, importance)),
        )

    async def validate_with_confidence(self, location_text: str,
                                       min_confidence: Optional[float] = None) -> Dict[str, Any]:
        """Geocode and report whether the hit is complete and confident enough to act on"""
        threshold = self.settings.LOCATION_CONFIDENCE_THRESHOLD if min_confidence is None else min_confidence
        result = await self.geocode(location_text)
        if not result.success or result.data is None:
            return {"is_valid": False, "confidence": 0.0, "result": result}
        sufficient = result.data.confidence >= threshold
        return {
            "is_valid": sufficient and result.data.is_complete,
            "confidence": result.data.confidence,
            "has_sufficient_confidence": sufficient,
            "is_complete": result.data.is_complete,
            "result": result,
        }

    def clear_expired_cache(self) -> int:
        now = self.clock()
        expired = [key for key, (stored_at, _) in self._cache.items() if now - stored_at >= self.cache_ttl]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.info(f"🧹 Cleared {len(expired)} expired geocoding cache entries")
        return len(expired)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        total = self.cache_hits + self.cache_misses
        return {
            "provider": self.provider,
            "size": len(self._cache),
            "max_size": self.max_cache_size,
            "ttl_seconds": self.cache_ttl,
            "hits": self.cache_hits,
            "misses": self.cache_misses,
            "hit_rate": round(self.cache_hits / total, 3) if total else 0.0,
        }

    async def aclose(self) -> None:
        await self.http_client.aclose()
