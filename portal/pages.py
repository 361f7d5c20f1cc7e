from __future__ import annotations

from pathlib import Path

API_PREFIX = "/api/"
AUTH_PREFIX = "/auth/"
HEALTH_PATH = "/healthz"


def is_backend_path(path: str) -> bool:
    return path.startswith(API_PREFIX) or path.startswith(AUTH_PREFIX)


def counts_as_page_view(method: str, path: str) -> bool:
    """GET requests outside the API, auth and health endpoints are page views."""
    return method == "GET" and not is_backend_path(path) and path != HEALTH_PATH


def clean_url(path: str) -> str | None:
    """Extension-less URL for a ``*.html`` path, or None if no redirect applies."""
    if is_backend_path(path) or not path.endswith(".html"):
        return None
    stripped = path[: -len(".html")]
    if stripped in ("", "/index"):
        return "/"
    return stripped


def page_name(path: str) -> str | None:
    """Page name for an extension-less path (``/home`` -> ``home``), else None."""
    if is_backend_path(path) or path == "/":
        return None
    name = path.lstrip("/")
    if not name or "." in name:
        return None
    return name


def resolve_page(public_dir: Path, path: str) -> Path | None:
    """HTML file that serves ``path``, confined to ``public_dir``."""
    if path == "/":
        candidate = public_dir / "index.html"
    else:
        name = page_name(path)
        if name is None:
            return None
        candidate = public_dir / f"{name}.html"
    root = public_dir.resolve()
    try:
        resolved = candidate.resolve()
        resolved.relative_to(root)
    except (OSError, ValueError):
        return None
    return resolved if resolved.is_file() else None
