"""Google geocoding adapter with a persistent address cache."""

from typing import Any, Final

import requests

from src.config.logging_config import get_logger
from src.domain.exceptions import GeocodingError, RepositoryError
from src.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)

GEOCODE_ENDPOINT: Final[str] = "https://maps.googleapis.com/maps/api/geocode/json"
DEFAULT_GEOCODE_TIMEOUT_SECONDS: Final[float] = 10.0
# Statuses that mean "no such address" rather than a service failure
_EMPTY_RESULT_STATUSES: Final[frozenset[str]] = frozenset({"ZERO_RESULTS"})


def address_cache_key(address_lines: list[str]) -> str:
    """Cache key of an address: non-blank lines joined by ', '."""
    return ", ".join(line.strip() for line in address_lines if line and line.strip())


class GoogleGeocoder:
    """Geocodes address lines, consulting the repository cache first.

    Only successful lookups are cached. Without an API key the geocoder
    answers from the cache alone.
    """

    def __init__(
        self,
        api_key: str | None,
        repository: RepositoryProtocol,
        *,
        timeout: float = DEFAULT_GEOCODE_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.api_key = api_key
        self.repository = repository
        self.timeout = timeout
        self._session = session or requests.Session()

    def geocode(self, address_lines: list[str]) -> tuple[float, float] | None:
        """Return (latitude, longitude) for the address, or None if unknown.

        Raises:
            GeocodingError: When the service cannot be reached or rejects the request
        """
        key = address_cache_key(address_lines)
        if not key:
            return None

        try:
            cached = self.repository.get_cached_geocode(key)
        except RepositoryError as exc:
            logger.warning("geocode_cache_read_failed", address=key, error=str(exc))
            cached = None
        if cached is not None:
            logger.debug("geocode_cache_hit", address=key)
            return cached

        if not self.api_key:
            logger.warning("geocode_api_key_missing", address=key)
            return None

        coordinates = self._request(key)
        if coordinates is not None:
            try:
                self.repository.save_geocode(key, coordinates[0], coordinates[1])
            except RepositoryError as exc:
                logger.warning(
                    "geocode_cache_write_failed", address=key, error=str(exc)
                )
        return coordinates

    def _request(self, address: str) -> tuple[float, float] | None:
        try:
            response = self._session.get(
                GEOCODE_ENDPOINT,
                params={"address": address, "key": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise GeocodingError(f"Geocoding request failed: {exc}") from exc

        status = payload.get("status")
        if status in _EMPTY_RESULT_STATUSES:
            logger.info("geocode_no_result", address=address)
            return None
        if status != "OK":
            raise GeocodingError(
                f"Geocoding failed with status {status}: "
                f"{payload.get('error_message', '')}".strip()
            )

        results = payload.get("results") or []
        if not results:
            return None
        location = results[0]["geometry"]["location"]
        logger.info("geocode_resolved", address=address)
        return float(location["lat"]), float(location["lng"])
