"""pytest configuration.

Tests run from a plain checkout: the repo root is put on `sys.path` so
`import edge_proxy` resolves to `./edge_proxy` without an install.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


_ENV_KEYS = [
    "ORIGIN_POLICY",
    "ALLOWED_ORIGIN",
    "UPSTREAM_URL",
    "UPSTREAM_TIMEOUT_S",
    "UPSTREAM_CONNECT_TIMEOUT_S",
    "PROXY_PATH",
    "RATE_LIMIT_ENABLED",
    "RATE_LIMIT_WINDOW_MS",
    "RATE_LIMIT_MAX_REQUESTS",
    "TRUST_FORWARDED_FOR",
    "OTEL_ENABLED",
    "APP_VERSION",
]


@pytest.fixture(autouse=True)
def _restore_env_after_test():
    before = {k: os.environ.get(k) for k in _ENV_KEYS}
    yield
    for key, value in before.items():
        if value is None:
            os.environ.pop(key, None)
            continue
        os.environ[key] = value
