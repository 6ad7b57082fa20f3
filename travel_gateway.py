#!/usr/bin/env python3
# Train / bus / flight search gateway for the travel frontend.

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
import json
import logging
import os
import time
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, jsonify, make_response, request, Response
import requests
from werkzeug.exceptions import HTTPException, MethodNotAllowed

load_dotenv()

log = logging.getLogger("travel_gateway")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


API_PREFIX = "/api"

DEFAULT_ALLOWED_ORIGINS = (
    "http://localhost:5173",
    "http://localhost:5174",
    "http://localhost:3000",
    "https://travel-grid.vercel.app",
)

DEFAULT_RAPIDAPI_HOST = "irctc-api2.p.rapidapi.com"
DEFAULT_TRAIN_API_URL = "https://irctc-api2.p.rapidapi.com/trainAvailability"
DEFAULT_BUS_RESOURCE_URL = (
    "https://api.data.gov.in/resource/1f10d3eb-a425-4246-8800-3f72bf7ad2b0"
)
DEFAULT_FLIGHT_API_URL = "http://api.aviationstack.com/v1/flights"

FETCH_TIMEOUT_SEC = 20.0
BULK_FETCH_TIMEOUT_SEC = 60.0
FLIGHT_RESULT_LIMIT = 100
READ_CHUNK_BYTES = 64 * 1024

CORS_ALLOW_METHODS = "GET,POST,PUT,DELETE,OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type, Authorization"

APP_HOST = os.getenv("APP_HOST", "127.0.0.1")
APP_PORT = env_int("APP_PORT", 5010)

JsonDict = Dict[str, Any]
Envelope = Tuple[Any, int]


@dataclass(frozen=True)
class GatewayConfig:
    rapidapi_key: Optional[str] = None
    rapidapi_host: str = DEFAULT_RAPIDAPI_HOST
    data_gov_api_key: Optional[str] = None
    aviation_api_key: Optional[str] = None
    allowed_origins: FrozenSet[str] = frozenset(DEFAULT_ALLOWED_ORIGINS)
    train_api_url: str = DEFAULT_TRAIN_API_URL
    bus_resource_url: str = DEFAULT_BUS_RESOURCE_URL
    flight_api_url: str = DEFAULT_FLIGHT_API_URL
    fetch_timeout_sec: float = FETCH_TIMEOUT_SEC
    bulk_fetch_timeout_sec: float = BULK_FETCH_TIMEOUT_SEC

    def secrets(self) -> List[str]:
        keys = (self.rapidapi_key, self.data_gov_api_key, self.aviation_api_key)
        return [key for key in keys if key]


def parse_allowed_origins(raw: Optional[str]) -> FrozenSet[str]:
    origins = [item.strip() for item in (raw or "").split(",") if item.strip()]
    return frozenset(origins or DEFAULT_ALLOWED_ORIGINS)


def load_config() -> GatewayConfig:
    """Read the gateway configuration from the environment.

    Missing API keys are kept as ``None``; the adapters report them as a
    configuration fault when a search actually needs them.
    """
    return GatewayConfig(
        rapidapi_key=os.getenv("RAPIDAPI_KEY") or None,
        rapidapi_host=os.getenv("RAPIDAPI_HOST") or DEFAULT_RAPIDAPI_HOST,
        data_gov_api_key=os.getenv("DATA_GOV_API_KEY") or None,
        aviation_api_key=os.getenv("AVIATION_API_KEY") or None,
        allowed_origins=parse_allowed_origins(os.getenv("ALLOWED_ORIGINS")),
        train_api_url=os.getenv("TRAIN_API_URL", DEFAULT_TRAIN_API_URL),
        bus_resource_url=os.getenv("BUS_RESOURCE_URL", DEFAULT_BUS_RESOURCE_URL),
        flight_api_url=os.getenv("FLIGHT_API_URL", DEFAULT_FLIGHT_API_URL),
        fetch_timeout_sec=env_float("FETCH_TIMEOUT_SEC", FETCH_TIMEOUT_SEC),
        bulk_fetch_timeout_sec=env_float("BULK_FETCH_TIMEOUT_SEC", BULK_FETCH_TIMEOUT_SEC),
    )


class FetchTimeout(requests.Timeout):
    def __init__(self, url: str, timeout_sec: float):
        super().__init__(f"upstream call exceeded {timeout_sec:g}s: {url}")
        self.timeout_sec = timeout_sec


class UpstreamError(Exception):
    def __init__(self, status: int, body: str):
        super().__init__(f"upstream returned HTTP {status}")
        self.status = status
        self.body = body


@dataclass
class UpstreamReply:
    status_code: int
    content: bytes
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.content.decode(self.encoding or "utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.text)


# CORS


def cors_headers(origin: str, allowed_origins: Iterable[str]) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Allow-Credentials": "true",
    }
    # No Origin header means a non-browser caller.
    if not origin:
        headers["Access-Control-Allow-Origin"] = "*"
    elif origin in allowed_origins:
        headers["Access-Control-Allow-Origin"] = origin
    else:
        headers["Access-Control-Allow-Origin"] = "null"
    return headers


def json_response(body: Any, status: int, origin: str, config: GatewayConfig) -> Response:
    resp = jsonify(body)
    resp.status_code = status
    resp.headers.update(cors_headers(origin, config.allowed_origins))
    return resp


def preflight_response(origin: str, config: GatewayConfig) -> Response:
    resp = make_response("", 204)
    resp.headers.update(cors_headers(origin, config.allowed_origins))
    return resp


# Outbound calls


def timed_fetch(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Mapping[str, str]] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout_sec: float = FETCH_TIMEOUT_SEC,
    clock: Callable[[], float] = time.monotonic,
) -> UpstreamReply:
    """GET ``url`` and read the whole body within ``timeout_sec`` seconds.

    requests only bounds individual socket operations, so the request and
    the body read run on a worker thread and the caller waits at most
    ``timeout_sec`` for it. When the wait expires the response is closed
    and ``FetchTimeout`` raised. No retries.
    """
    deadline = clock() + timeout_sec
    request_headers = {"Accept": "application/json"}
    request_headers.update(headers or {})
    opened: List[Any] = []

    def read_reply() -> UpstreamReply:
        try:
            resp = session.get(
                url,
                params=params,
                headers=request_headers,
                timeout=(timeout_sec, timeout_sec),
                stream=True,
            )
        except requests.Timeout as exc:
            raise FetchTimeout(url, timeout_sec) from exc
        opened.append(resp)
        try:
            chunks: List[bytes] = []
            for chunk in resp.iter_content(chunk_size=READ_CHUNK_BYTES):
                if clock() > deadline:
                    raise FetchTimeout(url, timeout_sec)
                chunks.append(chunk)
            return UpstreamReply(resp.status_code, b"".join(chunks), resp.encoding)
        finally:
            resp.close()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="upstream")
    try:
        future = executor.submit(read_reply)
        try:
            return future.result(timeout=timeout_sec)
        except FutureTimeout as exc:
            # Closing the response unblocks the worker's pending read.
            for resp in opened:
                resp.close()
            raise FetchTimeout(url, timeout_sec) from exc
    finally:
        executor.shutdown(wait=False)


def fetch_json(
    session: requests.Session,
    url: str,
    *,
    params: Optional[Mapping[str, str]] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout_sec: float = FETCH_TIMEOUT_SEC,
) -> Any:
    reply = timed_fetch(session, url, params=params, headers=headers, timeout_sec=timeout_sec)
    if not reply.ok:
        raise UpstreamError(reply.status_code, reply.text)
    return reply.json()


def redact(text: str, secrets: Iterable[str]) -> str:
    for secret in secrets:
        text = text.replace(secret, "***")
    return text


def data_array(payload: Any, key: str) -> List[Any]:
    if isinstance(payload, dict) and isinstance(payload.get(key), list):
        return payload[key]
    return []


def upstream_error_body(message: str, exc: UpstreamError) -> JsonDict:
    return {"message": message, "status": exc.status, "body": exc.body}


def transport_error_body(message: str, exc: Exception, config: GatewayConfig) -> JsonDict:
    return {"message": message, "error": redact(str(exc), config.secrets())}


def missing_params(query: Mapping[str, str], names: Tuple[str, ...]) -> Optional[Envelope]:
    if all(query.get(name) for name in names):
        return None
    return {"message": f"Missing required query parameters: {', '.join(names)}"}, 400


def reformat_date(date: str) -> Optional[str]:
    """Turn ``YYYY-MM-DD`` into ``DD-MM-YYYY``; ``None`` if it is not three parts."""
    parts = date.split("-")
    if len(parts) != 3 or not all(parts):
        return None
    year, month, day = parts
    return f"{day}-{month}-{year}"


def parse_total(value: Any) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def filter_routes(records: Iterable[Any], origin: str, destination: str) -> List[JsonDict]:
    origin = origin.lower()
    destination = destination.lower()
    matches: List[JsonDict] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        rec_from = str(record.get("from") or "").lower()
        rec_to = str(record.get("to") or "").lower()
        if origin in rec_from and destination in rec_to:
            matches.append(record)
    return matches


# Adapters


def search_trains(
    config: GatewayConfig, session: requests.Session, query: Mapping[str, str]
) -> Envelope:
    invalid = missing_params(query, ("from", "to", "date"))
    if invalid:
        return invalid

    formatted_date = reformat_date(query["date"])
    if formatted_date is None:
        return {"message": "Invalid date format. Expect YYYY-MM-DD"}, 400

    if not config.rapidapi_key:
        return {"message": "Server config error: RAPIDAPI_KEY missing"}, 500

    params = {"source": query["from"], "destination": query["to"], "date": formatted_date}
    headers = {"X-RapidAPI-Key": config.rapidapi_key, "X-RapidAPI-Host": config.rapidapi_host}
    try:
        payload = fetch_json(
            session,
            config.train_api_url,
            params=params,
            headers=headers,
            timeout_sec=config.fetch_timeout_sec,
        )
    except UpstreamError as exc:
        log.warning("Train API returned %s", exc.status)
        return upstream_error_body("External API error", exc), 502
    except (requests.RequestException, ValueError) as exc:
        log.warning("Train API call failed: %s", redact(str(exc), config.secrets()))
        return transport_error_body("Failed to fetch train data", exc, config), 500

    return data_array(payload, "data"), 200


def search_buses(
    config: GatewayConfig, session: requests.Session, query: Mapping[str, str]
) -> Envelope:
    invalid = missing_params(query, ("from", "to"))
    if invalid:
        return invalid

    if not config.data_gov_api_key:
        return {"message": "Server config error: DATA_GOV_API_KEY missing"}, 500

    def resource_params(limit: int) -> Dict[str, str]:
        return {"api-key": config.data_gov_api_key or "", "format": "json", "limit": str(limit)}

    # The resource has no route filter: count, pull everything, filter here.
    try:
        try:
            count_payload = fetch_json(
                session,
                config.bus_resource_url,
                params=resource_params(1),
                timeout_sec=config.fetch_timeout_sec,
            )
        except UpstreamError as exc:
            log.warning("Bus count call returned %s", exc.status)
            return upstream_error_body("Failed to fetch bus data count", exc), 502

        total = parse_total(count_payload.get("total") if isinstance(count_payload, dict) else None)
        if not total:
            return [], 200

        try:
            all_payload = fetch_json(
                session,
                config.bus_resource_url,
                params=resource_params(total),
                timeout_sec=config.bulk_fetch_timeout_sec,
            )
        except UpstreamError as exc:
            log.warning("Bus fetch-all call returned %s", exc.status)
            return upstream_error_body("Failed to fetch bus data", exc), 502
    except (requests.RequestException, ValueError) as exc:
        log.warning("Bus API call failed: %s", redact(str(exc), config.secrets()))
        return transport_error_body("Failed to fetch bus data", exc, config), 500

    records = data_array(all_payload, "records")
    return filter_routes(records, query["from"], query["to"]), 200


def search_flights(
    config: GatewayConfig, session: requests.Session, query: Mapping[str, str]
) -> Envelope:
    invalid = missing_params(query, ("from", "to", "date"))
    if invalid:
        return invalid

    if not config.aviation_api_key:
        return {"message": "Server config error: AVIATION_API_KEY missing"}, 500

    # The free tier ignores route/date filters; results come back unfiltered.
    params = {"access_key": config.aviation_api_key, "limit": str(FLIGHT_RESULT_LIMIT)}
    try:
        payload = fetch_json(
            session, config.flight_api_url, params=params, timeout_sec=config.fetch_timeout_sec
        )
    except UpstreamError as exc:
        log.warning("Flight API returned %s", exc.status)
        return upstream_error_body("Failed to fetch flight data", exc), 502
    except (requests.RequestException, ValueError) as exc:
        log.warning("Flight API call failed: %s", redact(str(exc), config.secrets()))
        return transport_error_body("Failed to fetch flight data", exc, config), 500

    return data_array(payload, "data"), 200


def health(config: GatewayConfig, session: requests.Session, query: Mapping[str, str]) -> Envelope:
    return {"message": "API is running smoothly!"}, 200


Handler = Callable[[GatewayConfig, requests.Session, Mapping[str, str]], Envelope]

ROUTES: List[Tuple[str, str, Handler]] = [
    ("GET", f"{API_PREFIX}/health", health),
    ("GET", f"{API_PREFIX}/trains/search", search_trains),
    ("GET", f"{API_PREFIX}/buses/search", search_buses),
    ("GET", f"{API_PREFIX}/flights/search", search_flights),
]

CATCH_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def request_origin() -> str:
    return request.headers.get("Origin", "")


def create_app(
    config: Optional[GatewayConfig] = None, session: Optional[requests.Session] = None
) -> Flask:
    gateway_config = config if config is not None else load_config()
    upstream = session if session is not None else requests.Session()

    app = Flask(__name__)

    def make_view(handler: Handler) -> Callable[[], Response]:
        def view() -> Response:
            body, status = handler(gateway_config, upstream, request.args)
            return json_response(body, status, request_origin(), gateway_config)

        return view

    for method, path, handler in ROUTES:
        app.add_url_rule(
            path,
            endpoint=handler.__name__,
            view_func=make_view(handler),
            methods=[method],
            provide_automatic_options=False,
        )

    def not_implemented(rest: str) -> Response:
        body = {"success": False, "message": "API route not implemented"}
        return json_response(body, 501, request_origin(), gateway_config)

    def not_found(rest: str = "") -> Response:
        return Response("Not Found", status=404, mimetype="text/plain")

    app.add_url_rule(
        f"{API_PREFIX}/<path:rest>",
        endpoint="not_implemented",
        view_func=not_implemented,
        methods=CATCH_ALL_METHODS,
        provide_automatic_options=False,
    )
    app.add_url_rule(
        "/",
        endpoint="not_found",
        view_func=not_found,
        methods=CATCH_ALL_METHODS,
        provide_automatic_options=False,
    )
    app.add_url_rule(
        "/<path:rest>",
        endpoint="not_found",
        view_func=not_found,
        methods=CATCH_ALL_METHODS,
        provide_automatic_options=False,
    )

    @app.before_request
    def answer_preflight() -> Optional[Response]:
        if request.method == "OPTIONS":
            return preflight_response(request_origin(), gateway_config)
        return None

    @app.after_request
    def add_common_headers(resp: Response) -> Response:
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        return resp

    def internal_error(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return exc
        log.exception("Unhandled error on %s %s", request.method, request.path)
        body = {
            "message": "Internal gateway error",
            "error": redact(str(exc), gateway_config.secrets()),
        }
        return json_response(body, 500, request_origin(), gateway_config)

    def method_not_allowed(exc: MethodNotAllowed) -> Response:
        if request.path.startswith(f"{API_PREFIX}/"):
            return not_implemented(request.path)
        return not_found()

    app.register_error_handler(MethodNotAllowed, method_not_allowed)
    app.register_error_handler(Exception, internal_error)
    return app


app = create_app()


if __name__ == "__main__":
    app.run(host=APP_HOST, port=APP_PORT)
