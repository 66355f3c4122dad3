from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _dist_version
from pathlib import Path

DIST_NAME = "chat-edge-proxy"
_PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def get_version() -> str:
    """Resolve the proxy version.

    Installed distribution metadata wins; a source checkout falls back to the
    `[project].version` in pyproject.toml, then to "0.0.0".
    """

    try:
        return _dist_version(DIST_NAME)
    except PackageNotFoundError:
        pass

    try:
        data = tomllib.loads(_PYPROJECT.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.0.0"
    v = data.get("project", {}).get("version")
    if isinstance(v, str) and v.strip():
        return v.strip()
    return "0.0.0"
