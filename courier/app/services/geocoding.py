"""
Geocoding service.

Resolves free-text addresses to coordinates (and back) through a
Nominatim-compatible HTTP provider, with a process-lifetime cache.

Failure contract:
    - Bad input (address shorter than 3 characters, invalid coordinates)
      raises a domain error.
    - Provider trouble never raises. It comes back as a ResolutionFailure
      whose ErrorKind tells the caller what happened: TIMEOUT, LOOKUP_FAILED
      (network error, bad response, circuit open) or NOT_FOUND.
    - resolve_or_default() is the single place that substitutes the default
      city coordinates for an unresolvable address.

Cache policy:
    Keyed by the trimmed input string, no expiry. Successes and NOT_FOUND
    results are cached; transient failures are not, so the next call
    retries the provider. A later success overwrites an older failure.
"""

import asyncio
import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

import httpx

from courier.app.core.config import settings
from courier.app.core.exceptions import InvalidAddressError
from courier.app.core.reliability import CircuitBreaker, CircuitOpenError
from courier.app.services.estimator import validate_coordinates

logger = logging.getLogger(__name__)

MIN_ADDRESS_LENGTH = 3
MIN_SUGGESTION_QUERY_LENGTH = 2


class ErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    LOOKUP_FAILED = "lookup_failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lng: float
    canonical_address: str
    is_fallback: bool = False

    @property
    def coordinates(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class ResolutionFailure:
    kind: ErrorKind
    message: str

    @property
    def is_terminal(self) -> bool:
        """Terminal failures are worth caching; transient ones are retried."""
        return self.kind == ErrorKind.NOT_FOUND


@dataclass(frozen=True)
class AddressSuggestion:
    name: str
    display_name: str
    lat: float
    lng: float


@dataclass
class SuggestionResult:
    suggestions: List[AddressSuggestion] = field(default_factory=list)
    error: Optional[ResolutionFailure] = None


Resolution = Union[GeocodeResult, ResolutionFailure]


class GeocodeCache:
    """
    Process-lifetime address cache.

    Guarded by a plain lock: critical sections never await, so the cache
    is safe from concurrent coroutines and from other threads alike.
    """

    def __init__(self):
        self._entries: Dict[str, Resolution] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Resolution]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, value: Resolution) -> None:
        if isinstance(value, ResolutionFailure) and not value.is_terminal:
            return
        with self._lock:
            existing = self._entries.get(key)
            # Never let a failure replace a known good result
            if isinstance(existing, GeocodeResult) and isinstance(value, ResolutionFailure):
                return
            self._entries[key] = value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)


class NominatimClient:
    """
    HTTP adapter for a Nominatim-compatible search API.

    Sole responsibility: build requests, send them, return decoded JSON.
    Raises httpx errors; the Geocoder translates them into ErrorKinds.
    """

    def __init__(
        self,
        base_url: str = settings.geocoder_base_url,
        country_codes: str = settings.geocoder_country_codes,
        user_agent: str = settings.geocoder_user_agent,
        timeout: float = settings.geocoder_timeout_seconds,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.country_codes = country_codes
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": user_agent, "Accept": "application/json"},
            transport=transport,
        )

    async def search(self, query: str, limit: int, address_details: bool = False) -> list:
        params = {
            "format": "json",
            "q": query,
            "limit": limit,
            "countrycodes": self.country_codes,
        }
        if address_details:
            params["addressdetails"] = 1

        response = await self._client.get("/search", params=params)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, list):
            raise ValueError("search response is not a list")
        return data

    async def reverse(self, lat: float, lng: float) -> dict:
        response = await self._client.get(
            "/reverse",
            params={
                "format": "json",
                "lat": lat,
                "lon": lng,
                "zoom": 18,
                "addressdetails": 1,
            },
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError("reverse response is not an object")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()


class Geocoder:
    """
    Address resolution with caching, bounded-time lookups and a circuit
    breaker around the provider.
    """

    def __init__(
        self,
        provider,
        cache: Optional[GeocodeCache] = None,
        timeout: float = settings.geocoder_timeout_seconds,
        breaker: Optional[CircuitBreaker] = None,
        suggestion_limit: int = settings.geocoder_suggestion_limit,
    ):
        self.provider = provider
        self.cache = cache or GeocodeCache()
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(
            failure_threshold=settings.geocoder_failure_threshold,
            reset_timeout=settings.geocoder_reset_timeout,
        )
        self.suggestion_limit = suggestion_limit
        self._inflight: Dict[str, asyncio.Future] = {}

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _bounded(self, func, *args, **kwargs):
        return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)

    async def _call_provider(self, func, *args, **kwargs):
        """
        Call the provider under the hard timeout and circuit breaker.

        Returns (data, None) on success or (None, ResolutionFailure).
        """
        try:
            data = await self.breaker.call(self._bounded, func, *args, **kwargs)
            return data, None
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return None, ResolutionFailure(ErrorKind.TIMEOUT, "Geocoding request timed out")
        except CircuitOpenError:
            return None, ResolutionFailure(ErrorKind.LOOKUP_FAILED, "Geocoding provider temporarily disabled")
        except (httpx.HTTPError, OSError, ValueError) as exc:
            return None, ResolutionFailure(ErrorKind.LOOKUP_FAILED, f"Geocoding lookup failed: {exc}")

    # ------------------------------------------------------------------
    # Forward resolution
    # ------------------------------------------------------------------

    async def resolve(self, address_text: Optional[str]) -> Resolution:
        """
        Resolve an address to coordinates and a canonical address.

        Raises:
            InvalidAddressError: If the trimmed address is under 3 characters
        """
        key = (address_text or "").strip()
        if len(key) < MIN_ADDRESS_LENGTH:
            raise InvalidAddressError(address_text or "")

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Geocode cache hit", extra={"address": key})
            return cached

        # Concurrent callers for the same uncached address share one lookup
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._lookup(key))
            self._inflight[key] = future
            future.add_done_callback(lambda _f, k=key: self._inflight.pop(k, None))

        return await asyncio.shield(future)

    async def _lookup(self, key: str) -> Resolution:
        data, failure = await self._call_provider(self.provider.search, key, 1)
        if failure is not None:
            logger.warning(
                "Geocoding failed",
                extra={"address": key, "kind": failure.kind.value, "reason": failure.message},
            )
            return failure

        if not data:
            failure = ResolutionFailure(ErrorKind.NOT_FOUND, f"No coordinates found for address: {key}")
            self.cache.set(key, failure)
            return failure

        try:
            first = data[0]
            result = GeocodeResult(
                lat=float(first["lat"]),
                lng=float(first["lon"]),
                canonical_address=first.get("display_name") or key,
            )
        except (KeyError, TypeError, ValueError):
            return ResolutionFailure(ErrorKind.LOOKUP_FAILED, "Malformed geocoding response")

        self.cache.set(key, result)
        return result

    async def resolve_or_default(self, address_text: Optional[str]) -> GeocodeResult:
        """
        Resolve an address, falling back to the default city when the
        lookup fails. The fallback is flagged with is_fallback=True.
        """
        result = await self.resolve(address_text)
        if isinstance(result, GeocodeResult):
            return result

        logger.info(
            "Using default city coordinates",
            extra={"address": address_text, "kind": result.kind.value},
        )
        return GeocodeResult(
            lat=settings.default_city_lat,
            lng=settings.default_city_lng,
            canonical_address=settings.default_city_name,
            is_fallback=True,
        )

    # ------------------------------------------------------------------
    # Autocomplete
    # ------------------------------------------------------------------

    async def suggest(self, query_text: Optional[str], limit: Optional[int] = None) -> SuggestionResult:
        """
        Ranked address candidates for autocomplete.

        Never raises: short queries, empty results and provider errors all
        produce an empty list, the latter with an error marker.
        """
        query = (query_text or "").strip()
        if len(query) < MIN_SUGGESTION_QUERY_LENGTH:
            return SuggestionResult()

        limit = self.suggestion_limit if limit is None else min(limit, 20)
        if limit <= 0:
            return SuggestionResult()

        data, failure = await self._call_provider(self.provider.search, query, limit, address_details=True)
        if failure is not None:
            return SuggestionResult(error=failure)

        suggestions = []
        for item in data:
            if not isinstance(item, dict):
                continue
            display_name = item.get("display_name")
            if not display_name or not item.get("lat") or not item.get("lon"):
                continue
            try:
                lat, lng = float(item["lat"]), float(item["lon"])
            except (TypeError, ValueError):
                continue
            name = item.get("name") or display_name.split(",")[0].strip() or "Unknown Location"
            suggestions.append(AddressSuggestion(name=name, display_name=display_name, lat=lat, lng=lng))

        return SuggestionResult(suggestions=suggestions[:limit])

    # ------------------------------------------------------------------
    # Reverse resolution
    # ------------------------------------------------------------------

    async def reverse_resolve(self, lat: float, lng: float) -> Union[str, ResolutionFailure]:
        """
        Address text for a point on the map.

        Raises:
            InvalidCoordinatesError: For NaN or out-of-range coordinates
        """
        validate_coordinates(lat, lng)

        data, failure = await self._call_provider(self.provider.reverse, lat, lng)
        if failure is not None:
            logger.warning(
                "Reverse geocoding failed",
                extra={"lat": lat, "lng": lng, "kind": failure.kind.value},
            )
            return failure

        display_name = data.get("display_name")
        if not display_name:
            return ResolutionFailure(ErrorKind.NOT_FOUND, "No address found for coordinates")
        return display_name

    async def aclose(self) -> None:
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()


_geocoder: Optional[Geocoder] = None


def get_geocoder() -> Geocoder:
    """
    Shared Geocoder instance (one cache per process).

    This can be used as a FastAPI dependency.
    """
    global _geocoder
    if _geocoder is None:
        _geocoder = Geocoder(provider=NominatimClient())
    return _geocoder


async def close_geocoder() -> None:
    global _geocoder
    if _geocoder is not None:
        await _geocoder.aclose()
        _geocoder = None
