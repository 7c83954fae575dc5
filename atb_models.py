# Public bus stop / departure shapes and conversion from raw AtB records.

from dataclasses import dataclass, field
import datetime
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, TypedDict

from atb_errors import TransformError

JsonDict = Dict[str, Any]

# AtB reports coordinates as decimal degrees multiplied by this factor.
COORDINATE_SCALE = 1_000_000

ATB_TIME_FORMAT = "%d.%m.%Y %H:%M"
ISO_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.000"

REALTIME_STATUS = "Prev"


class RawBusStop(TypedDict, total=False):
    cinFermata: int
    codAzNodo: str
    descrizione: str
    lon: str
    lat: int
    codeMobile: str
    nomeMobile: str


class RawBusStops(TypedDict, total=False):
    Fermate: List[RawBusStop]


class RawForecast(TypedDict, total=False):
    codAzLinea: str
    descrizioneLinea: str
    orario: str
    orarioSched: str
    statoPrevisione: str
    capDest: str


class RawForecasts(TypedDict, total=False):
    InfoNodo: List[JsonDict]
    Orari: List[RawForecast]
    total: int


@dataclass(frozen=True)
class Stop:
    stop_id: int
    node_id: int
    description: str
    longitude: float
    latitude: float
    mobile_code: str
    mobile_name: str

    def to_dict(self) -> JsonDict:
        return {
            "stopId": self.stop_id,
            "nodeId": self.node_id,
            "description": self.description,
            "longitude": self.longitude,
            "latitude": self.latitude,
            "mobileCode": self.mobile_code,
            "mobileName": self.mobile_name,
        }


@dataclass(frozen=True)
class StopDirectory:
    """All known bus stops plus a nodeId index into them.

    The index is built from the directory's own tuple when the directory is
    constructed, so the two can only ever be replaced together.
    """

    stops: Tuple[Stop, ...]
    index: Mapping[int, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        positions: Dict[int, int] = {}
        for i, stop in enumerate(self.stops):
            if stop.node_id in positions:
                raise TransformError(f"duplicate nodeID {stop.node_id} in stop list")
            positions[stop.node_id] = i
        object.__setattr__(self, "index", MappingProxyType(positions))

    def __len__(self) -> int:
        return len(self.stops)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.index

    def lookup(self, node_id: int) -> Optional[Stop]:
        i = self.index.get(node_id)
        if i is None:
            return None
        return self.stops[i]

    def to_dict(self) -> JsonDict:
        return {"stops": [stop.to_dict() for stop in self.stops]}


@dataclass(frozen=True)
class Departure:
    line: str
    destination: str
    registered_departure_time: str
    scheduled_departure_time: str
    is_realtime_data: bool

    def to_dict(self) -> JsonDict:
        return {
            "line": self.line,
            "registeredDepartureTime": self.registered_departure_time,
            "scheduledDepartureTime": self.scheduled_departure_time,
            "destination": self.destination,
            "isRealtimeData": self.is_realtime_data,
        }


@dataclass(frozen=True)
class DepartureList:
    node_id: int
    is_going_towards_centrum: bool
    departures: Tuple[Departure, ...]

    def to_dict(self) -> JsonDict:
        return {
            "isGoingTowardsCentrum": self.is_going_towards_centrum,
            "departures": [d.to_dict() for d in self.departures],
        }


def parse_coordinate(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise TransformError(f"invalid coordinate: {value!r}")
    text = str(value).strip()
    try:
        number = float(text)
    except ValueError as exc:
        raise TransformError(f"invalid coordinate: {value!r}") from exc
    if "." in text:
        return number
    return number / COORDINATE_SCALE


def parse_node_id(value: Any) -> int:
    text = str(value).strip() if value is not None else ""
    if not text.isdigit():
        raise TransformError(f"invalid nodeID in upstream data: {value!r}")
    return int(text)


def convert_time(value: Any) -> str:
    if not isinstance(value, str):
        raise TransformError(f"invalid departure time: {value!r}")
    try:
        parsed = datetime.datetime.strptime(value.strip(), ATB_TIME_FORMAT)
    except ValueError as exc:
        raise TransformError(f"invalid departure time: {value!r}") from exc
    return parsed.strftime(ISO_TIME_FORMAT)


def is_going_towards_centrum(node_id: int) -> bool:
    # fifth digit of an AtB node id is 1 for stops served towards the centre
    digits = str(node_id)
    return len(digits) >= 5 and digits[4] == "1"


def convert_bus_stop(raw: RawBusStop) -> Stop:
    if not isinstance(raw, dict):
        raise TransformError(f"invalid bus stop record: {raw!r}")
    try:
        stop_id = int(raw["cinFermata"])
    except (KeyError, TypeError, ValueError) as exc:
        raise TransformError(f"invalid stop id in record: {raw!r}") from exc
    return Stop(
        stop_id=stop_id,
        node_id=parse_node_id(raw.get("codAzNodo")),
        description=raw.get("descrizione") or "",
        longitude=parse_coordinate(raw.get("lon")),
        latitude=parse_coordinate(raw.get("lat")),
        mobile_code=raw.get("codeMobile") or "",
        mobile_name=raw.get("nomeMobile") or "",
    )


def convert_bus_stops(raw: RawBusStops) -> StopDirectory:
    if not isinstance(raw, dict):
        raise TransformError("stop list is not an object")
    records = raw.get("Fermate")
    if not isinstance(records, list):
        raise TransformError("stop list has no Fermate array")
    return StopDirectory(stops=tuple(convert_bus_stop(r) for r in records))


def convert_forecast(raw: RawForecast) -> Departure:
    if not isinstance(raw, dict):
        raise TransformError(f"invalid forecast record: {raw!r}")
    return Departure(
        line=raw.get("codAzLinea") or "",
        destination=raw.get("capDest") or "",
        registered_departure_time=convert_time(raw.get("orario")),
        scheduled_departure_time=convert_time(raw.get("orarioSched")),
        is_realtime_data=raw.get("statoPrevisione") == REALTIME_STATUS,
    )


def convert_forecasts(node_id: int, raw: RawForecasts) -> DepartureList:
    if not isinstance(raw, dict):
        raise TransformError("forecast is not an object")
    records: Sequence[RawForecast] = raw.get("Orari") or []
    if not isinstance(records, list):
        raise TransformError("forecast Orari is not an array")
    return DepartureList(
        node_id=node_id,
        is_going_towards_centrum=is_going_towards_centrum(node_id),
        departures=tuple(convert_forecast(r) for r in records),
    )
