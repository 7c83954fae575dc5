# Cache-aside access to AtB data and the request handlers built on it.

import logging
from typing import Any, Callable, Optional, Protocol, Type, TypeVar

from atb_errors import (
    ApiError,
    NotFoundError,
    ParseError,
    TransformError,
    UpstreamError,
)
from atb_models import (
    DepartureList,
    JsonDict,
    Stop,
    StopDirectory,
    convert_bus_stops,
    convert_forecasts,
)
from ttl_cache import DEFAULT_TTL, TTLCache

log = logging.getLogger("atb_proxy.api")

STOPS_KEY = "stops"

# node ids must fit a signed 64-bit integer
MAX_NODE_ID = 2**63 - 1

T = TypeVar("T")


class UpstreamClient(Protocol):
    def fetch_stops(self) -> JsonDict: ...

    def fetch_forecast(self, node_id: int) -> JsonDict: ...


def parse_node_id(value: Optional[str]) -> int:
    if not value or not value.isascii() or not value.isdigit():
        raise ParseError(value or "")
    if len(value) > len(str(MAX_NODE_ID)):
        raise ParseError(value)
    try:
        node_id = int(value)
    except ValueError as exc:
        raise ParseError(value) from exc
    if node_id > MAX_NODE_ID:
        raise ParseError(value)
    return node_id


class BusAPI:
    """Serves bus stops and departures, backed by one shared TTLCache.

    Stops and departures live in the same store under different keys: the
    stop directory under ``"stops"`` with ``stops_ttl``, departures under the
    node id with the store default (the departures TTL).
    """

    def __init__(self, client: UpstreamClient, cache: TTLCache, stops_ttl: float) -> None:
        self.client = client
        self.cache = cache
        self.stops_ttl = stops_ttl

    @classmethod
    def create(
        cls,
        client: UpstreamClient,
        stops_ttl: float,
        departures_ttl: float,
        cleanup_interval: float = 30,
    ) -> "BusAPI":
        cache = TTLCache(default_ttl=departures_ttl, cleanup_interval=cleanup_interval)
        return cls(client, cache, stops_ttl)

    def _fetch_or_populate(
        self,
        key: str,
        ttl: float,
        expected: Type[T],
        fetch: Callable[[], Any],
        transform: Callable[[Any], T],
    ) -> T:
        cached, found = self.cache.get(key)
        if found:
            if isinstance(cached, expected):
                return cached
            log.warning(
                "Cached value for %r is %s, expected %s; refetching",
                key,
                type(cached).__name__,
                expected.__name__,
            )

        log.debug("Cache miss for %r", key)
        try:
            raw = fetch()
        except UpstreamError:
            raise
        except Exception as exc:
            raise UpstreamError(f"upstream call for {key!r} failed") from exc

        try:
            value = transform(raw)
        except TransformError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise TransformError(f"could not interpret upstream data for {key!r}") from exc

        # concurrent misses may both get here; last write wins
        self.cache.set(key, value, ttl)
        return value

    def fetch_stop_directory(self) -> StopDirectory:
        return self._fetch_or_populate(
            STOPS_KEY,
            self.stops_ttl,
            StopDirectory,
            self.client.fetch_stops,
            convert_bus_stops,
        )

    def fetch_departures(self, node_id: int) -> DepartureList:
        return self._fetch_or_populate(
            str(node_id),
            DEFAULT_TTL,
            DepartureList,
            lambda: self.client.fetch_forecast(node_id),
            lambda raw: convert_forecasts(node_id, raw),
        )

    def _stop_directory_or_fail(
        self, message: str = "failed to get bus stops from atb"
    ) -> StopDirectory:
        try:
            return self.fetch_stop_directory()
        except (UpstreamError, TransformError) as exc:
            raise ApiError(500, message, exc) from exc

    def _known_stop(
        self, raw_node_id: Optional[str], failure: str = "failed to get bus stops from atb"
    ) -> Stop:
        try:
            node_id = parse_node_id(raw_node_id)
        except ParseError as exc:
            raise ApiError(400, "missing or invalid nodeID", exc) from exc
        stops = self._stop_directory_or_fail(failure)
        if node_id not in stops:
            raise ApiError(404, str(NotFoundError(node_id)))
        return stops.stops[stops.index[node_id]]

    # Handlers: return a JSON-ready payload or raise ApiError.

    def list_stops(self) -> JsonDict:
        return self._stop_directory_or_fail().to_dict()

    def get_stop(self, raw_node_id: Optional[str]) -> JsonDict:
        return self._known_stop(raw_node_id).to_dict()

    def get_departures(self, raw_node_id: Optional[str]) -> JsonDict:
        stop = self._known_stop(raw_node_id, "could not get bus stops from atb")
        try:
            departures = self.fetch_departures(stop.node_id)
        except (UpstreamError, TransformError) as exc:
            raise ApiError(500, "could not get departures from atb", exc) from exc
        return departures.to_dict()

    def not_found(self) -> JsonDict:
        raise ApiError(404, "route not found")

    def close(self) -> None:
        self.cache.close()
