#!/usr/bin/env python3
# JSON API for AtB bus stops and departures.

from dataclasses import dataclass, field
import json
import logging
import os
from typing import Any, Callable, FrozenSet, List, Optional

from dotenv import load_dotenv
from flask import Flask, Response, request
from werkzeug.exceptions import MethodNotAllowed, NotFound

from atb_api import BusAPI
from atb_client import client_from_settings
from atb_errors import ApiError, InvalidConfig

log = logging.getLogger("atb_proxy")


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_csv(name: str, default: str) -> List[str]:
    value = os.getenv(name, default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    atb_config: Optional[str] = None
    atb_user: Optional[str] = None
    atb_pass: Optional[str] = None
    atb_url: Optional[str] = None
    connect_timeout_sec: float = 3.0
    read_timeout_sec: float = 10.0
    max_retries: int = 0
    stops_ttl_sec: int = 1800
    departures_ttl_sec: int = 60
    cleanup_interval_sec: int = 30
    cors_allowed_origins: FrozenSet[str] = field(default_factory=frozenset)
    enable_hsts: bool = False
    hsts_max_age_sec: int = 15552000
    host: str = "127.0.0.1"
    port: int = 8080

    def __post_init__(self) -> None:
        # 0 would select the cache default TTL, so require a real duration
        for name in ("stops_ttl_sec", "departures_ttl_sec"):
            if getattr(self, name) <= 0:
                raise InvalidConfig(f"{name} must be positive, got {getattr(self, name)}")
        if self.cleanup_interval_sec < 0:
            raise InvalidConfig(
                f"cleanup_interval_sec must not be negative, got {self.cleanup_interval_sec}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            atb_config=os.getenv("ATB_CONFIG") or None,
            atb_user=os.getenv("ATB_USER") or None,
            atb_pass=os.getenv("ATB_PASS") or None,
            atb_url=os.getenv("ATB_URL") or None,
            connect_timeout_sec=env_float("ATB_CONNECT_TIMEOUT_SEC", 3.0),
            read_timeout_sec=env_float("ATB_READ_TIMEOUT_SEC", 10.0),
            max_retries=env_int("ATB_MAX_RETRIES", 0),
            stops_ttl_sec=env_int("STOPS_CACHE_TTL_SEC", 1800),
            departures_ttl_sec=env_int("DEPARTURES_CACHE_TTL_SEC", 60),
            cleanup_interval_sec=env_int("CACHE_CLEANUP_INTERVAL_SEC", 30),
            cors_allowed_origins=frozenset(env_csv("CORS_ALLOWED_ORIGINS", "")),
            enable_hsts=env_bool("ENABLE_HSTS", False),
            hsts_max_age_sec=env_int("HSTS_MAX_AGE_SEC", 15552000),
            host=os.getenv("APP_HOST", "127.0.0.1"),
            port=env_int("APP_PORT", 8080),
        )


def marshal(data: Any, indent: bool) -> str:
    if indent:
        return json.dumps(data, indent=2)
    return json.dumps(data, separators=(",", ":"))


def json_response(data: Any, status: int = 200, indent: bool = False) -> Response:
    return Response(marshal(data, indent), status=status, mimetype="application/json")


def error_response(err: ApiError) -> Response:
    if err.cause is not None:
        level = logging.WARNING if err.status >= 500 else logging.DEBUG
        log.log(level, "%s %s -> %d: %s", request.method, request.path, err.status, err.cause)
    return json_response(err.to_dict(), status=err.status, indent=True)


def serve(handler: Callable[..., Any], *args: Any) -> Response:
    try:
        data = handler(*args)
    except ApiError as err:
        return error_response(err)
    except Exception:
        log.exception("Unhandled error serving %s", request.path)
        return error_response(ApiError(500, "internal error"))
    return json_response(data, indent="pretty" in request.args)


def create_app(api: BusAPI, settings: Optional[Settings] = None) -> Flask:
    settings = settings or Settings()
    app = Flask(__name__)

    @app.after_request
    def add_common_headers(resp: Response) -> Response:
        origin = request.headers.get("Origin")
        if origin and origin in settings.cors_allowed_origins:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Vary"] = "Origin"
            resp.headers["Access-Control-Allow-Methods"] = "GET"
            resp.headers["Access-Control-Max-Age"] = "600"

        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")

        if settings.enable_hsts and request.is_secure:
            resp.headers.setdefault(
                "Strict-Transport-Security",
                f"max-age={settings.hsts_max_age_sec}; includeSubDomains",
            )
        return resp

    # unknown paths and unsupported methods are both reported as 404
    @app.errorhandler(NotFound)
    @app.errorhandler(MethodNotAllowed)
    def route_not_found(_exc: Exception) -> Response:
        return serve(api.not_found)

    @app.route("/api/v1/busstops", methods=["GET"])
    def bus_stops() -> Response:
        return serve(api.list_stops)

    @app.route("/api/v1/busstops/<node_id>", methods=["GET"])
    def bus_stop(node_id: str) -> Response:
        return serve(api.get_stop, node_id)

    @app.route("/api/v1/departures/<node_id>", methods=["GET"])
    def departures(node_id: str) -> Response:
        return serve(api.get_departures, node_id)

    return app


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    settings = Settings.from_env()
    client = client_from_settings(
        config_path=settings.atb_config,
        username=settings.atb_user,
        password=settings.atb_pass,
        url=settings.atb_url,
        timeout=(settings.connect_timeout_sec, settings.read_timeout_sec),
        max_retries=settings.max_retries,
    )
    api = BusAPI.create(
        client,
        stops_ttl=settings.stops_ttl_sec,
        departures_ttl=settings.departures_ttl_sec,
        cleanup_interval=settings.cleanup_interval_sec,
    )
    app = create_app(api, settings)
    log.info(
        "Serving AtB API on %s:%d (stops ttl %ds, departures ttl %ds)",
        settings.host,
        settings.port,
        settings.stops_ttl_sec,
        settings.departures_ttl_sec,
    )
    try:
        app.run(host=settings.host, port=settings.port, threaded=True)
    finally:
        api.close()


if __name__ == "__main__":
    main()
