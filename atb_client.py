# Client for the AtB InfoTransit SOAP service.

from dataclasses import dataclass, field
import json
import logging
import random
import time
from typing import Any, Dict, Optional, Tuple
from xml.etree import ElementTree
from xml.sax.saxutils import escape

import requests

from atb_errors import MissingConfig, UpstreamError
from atb_models import JsonDict

log = logging.getLogger("atb_proxy.client")

DEFAULT_URL = "http://st.atb.no/InfoTransit/userservices.asmx"
INFOTRANSIT_NS = "http://miz.it/infotransit"

SOAP_CONTENT_TYPE = "application/soap+xml; charset=utf-8"

ENVELOPE = """<?xml version="1.0" encoding="utf-8"?>
<soap12:Envelope xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance" \
xmlns:xsd="http://www.w3.org/2001/XMLSchema" \
xmlns:soap12="http://www.w3.org/2003/05/soap-envelope">
  <soap12:Body>
    <{method} xmlns="{ns}">
      <auth>
        <user>{user}</user>
        <password>{password}</password>
      </auth>{extra}
    </{method}>
  </soap12:Body>
</soap12:Envelope>"""


@dataclass(frozen=True)
class Method:
    name: str
    result: str

    def envelope(self, user: str, password: str, **params: Any) -> str:
        extra = "".join(
            f"\n      <{key}>{escape(str(value))}</{key}>" for key, value in params.items()
        )
        return ENVELOPE.format(
            method=self.name,
            ns=INFOTRANSIT_NS,
            user=escape(user),
            password=escape(password),
            extra=extra,
        )

    def parse_response(self, body: bytes) -> JsonDict:
        try:
            root = ElementTree.fromstring(body)
        except ElementTree.ParseError as exc:
            raise UpstreamError(f"{self.name}: invalid XML response") from exc
        node = root.find(f".//{{{INFOTRANSIT_NS}}}{self.result}")
        if node is None or not (node.text or "").strip():
            raise UpstreamError(f"{self.name}: response has no {self.result}")
        try:
            data = json.loads(node.text)
        except ValueError as exc:
            raise UpstreamError(f"{self.name}: invalid JSON in response") from exc
        if not isinstance(data, dict):
            raise UpstreamError(f"{self.name}: unexpected JSON document")
        return data


BUS_STOPS_LIST = Method("GetBusStopsList", "GetBusStopsListResult")
REALTIME_FORECAST = Method("getUserRealTimeForecastByStop", "getUserRealTimeForecastByStopResult")


def compute_backoff(attempt: int, base: float, maximum: float) -> float:
    delay = min(maximum, base * (2**attempt))
    return delay * (0.7 + random.random() * 0.6)


@dataclass
class Client:
    username: str
    password: str
    url: str = DEFAULT_URL
    timeout: Tuple[float, float] = (3.0, 10.0)
    max_retries: int = 0
    backoff_base: float = 0.5
    backoff_max: float = 6.0
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def post(self, method: Method, **params: Any) -> JsonDict:
        envelope = method.envelope(self.username, self.password, **params)
        attempt = 0
        while True:
            try:
                resp = self.session.post(
                    self.url,
                    data=envelope.encode("utf-8"),
                    headers={"Content-Type": SOAP_CONTENT_TYPE},
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                if attempt >= self.max_retries:
                    raise UpstreamError(f"{method.name}: request failed") from exc
                log.debug("%s failed, retrying: %s", method.name, exc)
                time.sleep(compute_backoff(attempt, self.backoff_base, self.backoff_max))
                attempt += 1
                continue

            if 500 <= resp.status_code <= 599 and attempt < self.max_retries:
                time.sleep(compute_backoff(attempt, self.backoff_base, self.backoff_max))
                attempt += 1
                continue

            if resp.status_code >= 400:
                raise UpstreamError(
                    f"{method.name}: upstream returned {resp.status_code}",
                    status=resp.status_code,
                )
            return method.parse_response(resp.content)

    def fetch_stops(self) -> JsonDict:
        log.debug("Fetching bus stops from %s", self.url)
        return self.post(BUS_STOPS_LIST)

    def fetch_forecast(self, node_id: int) -> JsonDict:
        log.debug("Fetching forecast for nodeID=%d", node_id)
        return self.post(REALTIME_FORECAST, busStopId=node_id)


def load_credentials(path: str) -> Dict[str, str]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise MissingConfig(f"cannot read AtB config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise MissingConfig(f"AtB config {path} is not a JSON object")
    return {key: str(data[key]) for key in ("Username", "Password", "URL") if data.get(key)}


def client_from_settings(
    *,
    config_path: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    url: Optional[str] = None,
    timeout: Tuple[float, float] = (3.0, 10.0),
    max_retries: int = 0,
) -> Client:
    values: Dict[str, str] = load_credentials(config_path) if config_path else {}
    username = username or values.get("Username")
    password = password or values.get("Password")
    if not username or not password:
        raise MissingConfig("AtB credentials not set")
    return Client(
        username=username,
        password=password,
        url=url or values.get("URL") or DEFAULT_URL,
        timeout=timeout,
        max_retries=max_retries,
    )
