from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask

from .config import settings
from .cors import ALLOW_METHODS, OriginPolicy, sanitize_response_headers
from .forwarder import UPSTREAM_ERROR, UpstreamForwarder, UpstreamUnavailable, relay_body
from .observability import Timer, configure_logging, log_event, log_http_request, request_id_from_headers
from .otel import record_admission_rejected_metric, record_http_request_metric, setup_otel
from .ratelimit import AdmissionController, AllowAll, SlidingWindowRateLimiter
from .validation import RequestRejected, parse_chat_body, require_bearer

RATE_LIMITED_BODY = "Too many requests"


class ErrorBody(BaseModel):
    error: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup notices and upstream client shutdown."""

    if settings.origin_policy_downgraded:
        log_event(
            "config.origin_policy_downgraded",
            severity="WARNING",
            reason="ORIGIN_POLICY=fixed requires ALLOWED_ORIGIN; using wildcard",
        )
    if settings.rate_limit_enabled:
        log_event(
            "admission.per_instance",
            severity="WARNING",
            detail="rate limit state is in-process; each instance counts separately and restarts reset it",
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.rate_limit_max_requests,
        )

    yield

    await _forwarder.aclose()


app = FastAPI(
    title="Chat Edge Proxy",
    version=settings.version,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
    lifespan=lifespan,
)

configure_logging()
setup_otel(app)

_policy = OriginPolicy.from_settings(settings)

_limiter: AdmissionController
if settings.rate_limit_enabled:
    _limiter = SlidingWindowRateLimiter(
        window_ms=settings.rate_limit_window_ms,
        max_requests=settings.rate_limit_max_requests,
    )
else:
    _limiter = AllowAll()

_forwarder = UpstreamForwarder(
    settings.upstream_url,
    timeout_s=settings.upstream_timeout_s,
    connect_timeout_s=settings.upstream_connect_timeout_s,
)


def _client_key(request: Request) -> str:
    """Best-effort client address; shared NAT addresses share a budget.

    Only the right-most X-Forwarded-For hop is used, and only when a trusted
    front proxy appends it. Earlier hops are whatever the caller sent.
    """

    if settings.trust_forwarded_for:
        xff = request.headers.get("x-forwarded-for")
        last = xff.split(",")[-1].strip() if xff else ""
        if last:
            return last
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorBody(error=message).model_dump(),
        headers=_policy.origin_headers(),
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    """500 for unexpected failures, still readable by the allowed origin."""

    headers = _policy.origin_headers()
    rid = getattr(request.state, "request_id", None)
    if rid:
        headers["X-Request-Id"] = rid
    return JSONResponse(
        status_code=500,
        content=ErrorBody(error="Internal Server Error").model_dump(),
        headers=headers,
    )


@app.middleware("http")
async def _request_middleware(request: Request, call_next):
    """Request ID propagation and one structured access-log line per request."""

    timer = Timer()
    rid = request_id_from_headers({k.lower(): v for k, v in request.headers.items()})
    request.state.request_id = rid
    remote_ip = _client_key(request)
    user_agent = request.headers.get("user-agent", "")

    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = timer.ms()
        record_http_request_metric(
            method=request.method, path=request.url.path, status_code=500, latency_ms=latency_ms
        )
        log_http_request(
            request_id=rid,
            method=request.method,
            path=request.url.path,
            status=500,
            latency_ms=latency_ms,
            remote_ip=remote_ip,
            user_agent=user_agent,
            error_type=type(e).__name__,
            severity="ERROR",
        )
        raise

    # Upstream may already carry its own request id; keep it.
    if "x-request-id" not in response.headers:
        response.headers["X-Request-Id"] = rid

    latency_ms = timer.ms()
    status_code = int(response.status_code)
    record_http_request_metric(
        method=request.method, path=request.url.path, status_code=status_code, latency_ms=latency_ms
    )
    log_http_request(
        request_id=rid,
        method=request.method,
        path=request.url.path,
        status=status_code,
        latency_ms=latency_ms,
        remote_ip=remote_ip,
        user_agent=user_agent,
        limited=status_code == 429,
        error_type=getattr(request.state, "error_type", None),
        severity="ERROR" if status_code >= 500 else "WARNING" if status_code >= 400 else "INFO",
    )
    return response


# ---- Health ----
@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/ready")
def ready() -> dict[str, object]:
    """Readiness probe. Never calls the upstream."""

    return {
        "ready": True,
        "version": app.version,
        "origin_policy": settings.origin_policy,
        "rate_limit_enabled": settings.rate_limit_enabled,
    }


# ---- Proxy ----
@app.api_route(
    settings.proxy_path,
    methods=["OPTIONS", "POST", "GET", "HEAD", "PUT", "PATCH", "DELETE"],
    include_in_schema=False,
)
async def chat_completions(request: Request) -> Response:
    # Preflight never touches admission state or the upstream.
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=_policy.preflight_headers(request.headers))

    if request.method != "POST":
        headers = _policy.origin_headers()
        headers["Allow"] = ALLOW_METHODS
        request.state.error_type = "MethodNotAllowed"
        return PlainTextResponse("Method Not Allowed", status_code=405, headers=headers)

    if not _limiter.check_and_record(_client_key(request)):
        record_admission_rejected_metric()
        return PlainTextResponse(RATE_LIMITED_BODY, status_code=429, headers=_policy.origin_headers())

    try:
        authorization = require_bearer(request.headers)
        # Buffered once; the parsed object is what gets forwarded.
        body = parse_chat_body(await request.body())
    except RequestRejected as rr:
        request.state.error_type = "RequestRejected"
        return _error(rr.status_code, rr.detail)

    rid = getattr(request.state, "request_id", None)
    try:
        upstream = await _forwarder.forward(
            body,
            authorization=authorization,
            inbound_headers=request.headers,
            request_id=rid,
        )
    except UpstreamUnavailable:
        request.state.error_type = "UpstreamUnavailable"
        return _error(502, UPSTREAM_ERROR)

    response = StreamingResponse(
        relay_body(upstream, request_id=rid),
        status_code=upstream.status_code,
        # Runs even if the client goes away before the body iterator starts.
        background=BackgroundTask(upstream.aclose),
    )
    for name, value in sanitize_response_headers(upstream.headers.multi_items(), _policy):
        response.headers.append(name, value)
    return response
