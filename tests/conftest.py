from typing import Any, Dict, List, Optional

import pytest

from atb_api import BusAPI
from atb_errors import UpstreamError
from ttl_cache import TTLCache

STOPS_TTL = 600
DEPARTURES_TTL = 30


def raw_stop(node_id: str, stop_id: int, name: str) -> Dict[str, Any]:
    return {
        "cinFermata": stop_id,
        "codAzNodo": node_id,
        "descrizione": name,
        "lon": "10398045",
        "lat": 63415643,
        "codeMobile": f"{node_id} ({name[:5]})",
        "nomeMobile": f"{name[:5]} ({node_id})",
    }


RAW_STOPS = {
    "Fermate": [
        raw_stop("101", 1, "Prof. Brochs gt"),
        raw_stop("102", 2, "Munkegata"),
        raw_stop("103", 3, "Studentersamfundet"),
    ]
}

RAW_FORECAST = {
    "InfoNodo": [{"codAzNodo": "101", "nomeNodo": "Prof. Brochs gt"}],
    "Orari": [
        {
            "codAzLinea": "5",
            "descrizioneLinea": "5",
            "orario": "26.02.2015 22:55",
            "orarioSched": "26.02.2015 22:54",
            "statoPrevisione": "Prev",
            "capDest": "Dragvoll",
        },
        {
            "codAzLinea": "22",
            "descrizioneLinea": "22",
            "orario": "26.02.2015 23:10",
            "orarioSched": "26.02.2015 23:10",
            "statoPrevisione": "Sched",
            "capDest": "Vestlia",
        },
    ],
    "total": 2,
}


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    def __init__(self, stops: Any = None, forecast: Any = None) -> None:
        self.stops = RAW_STOPS if stops is None else stops
        self.forecast = RAW_FORECAST if forecast is None else forecast
        self.stop_calls = 0
        self.forecast_calls: List[int] = []
        self.stops_error: Optional[Exception] = None
        self.forecast_error: Optional[Exception] = None

    def fetch_stops(self) -> Any:
        self.stop_calls += 1
        if self.stops_error is not None:
            raise self.stops_error
        return self.stops

    def fetch_forecast(self, node_id: int) -> Any:
        self.forecast_calls.append(node_id)
        if self.forecast_error is not None:
            raise self.forecast_error
        return self.forecast


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def api(client: FakeClient, clock: FakeClock) -> BusAPI:
    cache = TTLCache(default_ttl=DEPARTURES_TTL, clock=clock)
    return BusAPI(client, cache, stops_ttl=STOPS_TTL)


def failing(message: str = "connection refused by 10.0.0.7:80 secret_pass") -> UpstreamError:
    return UpstreamError(message)
