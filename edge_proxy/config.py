from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .version import get_version

# Pick up a local .env for development. Variables already set in the process
# environment (CI, the hosting platform) are never overridden.
load_dotenv: Callable[..., object] | None
try:
    from dotenv import load_dotenv as _load_dotenv  # python-dotenv
except ImportError:  # pragma: no cover
    load_dotenv = None
else:
    load_dotenv = _load_dotenv

_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"
if load_dotenv is not None and _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)


DEFAULT_UPSTREAM_URL = "https://api.electronhub.ai/v1/chat/completions"

ORIGIN_POLICY_FIXED = "fixed"
ORIGIN_POLICY_WILDCARD = "wildcard"
_ALLOWED_ORIGIN_POLICIES = {ORIGIN_POLICY_FIXED, ORIGIN_POLICY_WILDCARD}


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v.strip() if v is not None and v.strip() != "" else default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v.strip())
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the edge proxy.

    Everything comes from environment variables; there is no config file.
    """

    version: str

    # ---- CORS ----
    origin_policy: str  # fixed | wildcard
    allowed_origin: str  # only meaningful for the fixed policy

    # ---- Upstream ----
    upstream_url: str
    upstream_timeout_s: float
    upstream_connect_timeout_s: float

    # ---- Inbound surface ----
    proxy_path: str

    # ---- Admission control ----
    rate_limit_enabled: bool
    rate_limit_window_ms: int
    rate_limit_max_requests: int
    trust_forwarded_for: bool

    # ---- OpenTelemetry ----
    otel_enabled: bool
    otel_exporter_otlp_endpoint: str | None
    otel_service_name: str
    otel_traces_exporter: str

    # Set when ORIGIN_POLICY=fixed was requested without ALLOWED_ORIGIN.
    origin_policy_downgraded: bool = False

    @property
    def fixed_origin(self) -> bool:
        return self.origin_policy == ORIGIN_POLICY_FIXED


def load_settings() -> Settings:
    origin_policy = _env_str("ORIGIN_POLICY", ORIGIN_POLICY_WILDCARD).lower()
    if origin_policy not in _ALLOWED_ORIGIN_POLICIES:
        origin_policy = ORIGIN_POLICY_WILDCARD
    allowed_origin = _env_str("ALLOWED_ORIGIN", "")

    # A fixed policy needs an origin to echo; never emit an empty
    # Access-Control-Allow-Origin alongside allow-credentials.
    downgraded = False
    if origin_policy == ORIGIN_POLICY_FIXED and not allowed_origin:
        origin_policy = ORIGIN_POLICY_WILDCARD
        downgraded = True

    proxy_path = _env_str("PROXY_PATH", "/v1/chat/completions")
    if not proxy_path.startswith("/"):
        proxy_path = "/" + proxy_path

    return Settings(
        version=_env_str("APP_VERSION", get_version()),
        origin_policy=origin_policy,
        allowed_origin=allowed_origin,
        upstream_url=_env_str("UPSTREAM_URL", DEFAULT_UPSTREAM_URL),
        upstream_timeout_s=_env_float("UPSTREAM_TIMEOUT_S", 300.0),
        upstream_connect_timeout_s=_env_float("UPSTREAM_CONNECT_TIMEOUT_S", 10.0),
        proxy_path=proxy_path,
        rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
        rate_limit_window_ms=max(1, _env_int("RATE_LIMIT_WINDOW_MS", 60_000)),
        rate_limit_max_requests=max(0, _env_int("RATE_LIMIT_MAX_REQUESTS", 60)),
        trust_forwarded_for=_env_bool("TRUST_FORWARDED_FOR", False),
        otel_enabled=_env_bool("OTEL_ENABLED", False),
        otel_exporter_otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
        otel_service_name=_env_str("OTEL_SERVICE_NAME", "chat-edge-proxy"),
        otel_traces_exporter=_env_str("OTEL_TRACES_EXPORTER", "auto").lower(),
        origin_policy_downgraded=downgraded,
    )


settings = load_settings()
