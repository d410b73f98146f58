from __future__ import annotations

import re
from typing import Optional

from .errors import InvalidInput

MAX_NAME_LENGTH = 50

_NAME_INVALID_RE = re.compile(r"[^a-z0-9-]")
_DASHES_RE = re.compile(r"-+")

# https://<host>/<owner>/<repo>[/]
_REMOTE_REFERENCE_RE = re.compile(
    r"^https://"
    r"(?P<host>(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}|localhost)"
    r"(?::(?P<port>\d{1,5}))?"
    r"/(?P<owner>[\w-]+)"
    r"/(?P<repo>[\w.-]+?)"
    r"/?$",
    re.IGNORECASE,
)

_DOMAIN_RE = re.compile(
    r"^(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)


def normalize_app_name(name: str) -> str:
    """Canonical application name: ``"My App!!"`` becomes ``"my-app"``.

    The result may be empty; callers must reject that.
    """
    v = (name or "").lower()
    v = _NAME_INVALID_RE.sub("-", v)
    v = _DASHES_RE.sub("-", v).strip("-")
    # Truncation can expose a trailing dash
    return v[:MAX_NAME_LENGTH].strip("-")


def require_app_name(name: str) -> str:
    canonical = normalize_app_name(name)
    if not canonical:
        raise InvalidInput(f"Invalid application name: {name!r}")
    return canonical


def is_valid_remote_reference(url: str) -> bool:
    if not url or url != url.strip() or any(ch.isspace() for ch in url):
        return False
    m = _REMOTE_REFERENCE_RE.match(url)
    if not m:
        return False
    repo = m.group("repo")
    if repo in {".", ".."} or repo.startswith("."):
        return False
    port = m.group("port")
    if port is not None and not 0 < int(port) <= 65535:
        return False
    return True


def validate_remote_reference(url: str) -> str:
    if not is_valid_remote_reference(url):
        raise InvalidInput(
            f"Invalid repository URL: {url!r}. Expected https://<host>/<owner>/<repo>"
        )
    return url


def normalize_host(value: str) -> str:
    v = (value or "").strip().lower()
    if v.startswith("http://"):
        v = v[len("http://") :]
    elif v.startswith("https://"):
        v = v[len("https://") :]
    v = v.split("/", 1)[0]
    v = v.split(":", 1)[0]
    v = v.strip(".")
    return v


def normalize_domain(value: str) -> str:
    v = normalize_host(value)
    if v.startswith("www."):
        v = v[len("www.") :]
    return v


def is_local_domain(domain: str) -> bool:
    d = normalize_domain(domain)
    return d in {"localhost", "127.0.0.1", "0.0.0.0"} or d.endswith(".localhost")


def is_valid_domain(value: Optional[str]) -> bool:
    if not value or len(value) > 253:
        return False
    v = value.lower()
    return v == "localhost" or bool(_DOMAIN_RE.fullmatch(v))


def build_app_domain(name: str, base_domain: str) -> str:
    """Public hostname for an application: ``<name>.<base_domain>``."""
    base = normalize_domain(base_domain) or "localhost"
    return f"{normalize_app_name(name)}.{base}"
