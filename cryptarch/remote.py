"""HTTPS-only collaborators: package list source and second-stage script."""

from __future__ import annotations

import os
from urllib.parse import urlparse

from .errors import ToolInvocationError, ValidationError
from .executil import run, trace, warn, with_backoff

CURL_TLS = ["curl", "--proto", "=https", "--tlsv1.2", "-sSf"]
FETCH_TIMEOUT = 120.0


def _require_https(url: str, field: str) -> None:
    if urlparse(url or "").scheme != "https":
        raise ValidationError(field, f"{url!r} must be an https:// URL")


def parse_package_list(text: str) -> list[str]:
    packages: list[str] = []
    for line in text.splitlines():
        item = line.split("#", 1)[0].strip()
        if item and item not in packages:
            packages.append(item)
    return packages


def _fetch(cmd: list[str], attempts: int):
    def _on_retry(attempt, exc):
        warn("remote.fetch_retry", cmd=cmd, attempt=attempt, error=str(exc))

    return with_backoff(
        lambda: run(cmd, check=True, timeout=FETCH_TIMEOUT),
        tries=attempts,
        retry_on=(ToolInvocationError,),
        on_retry=_on_retry,
    )


def fetch_package_list(url: str, attempts: int = 3) -> list[str]:
    _require_https(url, "package_list_url")
    res = _fetch(CURL_TLS + [url], attempts)
    packages = parse_package_list(res.out or "")
    if not packages:
        raise ValidationError("package_list_url", f"{url} returned an empty package list")
    trace("remote.package_list", url=url, count=len(packages))
    return packages


def fetch_second_stage(url: str, dest: str, attempts: int = 3) -> str:
    """Download the post-install script to ``dest``; it is never executed here."""

    _require_https(url, "post_install_script_url")
    os.makedirs(os.path.dirname(dest), exist_ok=True)
    _fetch(CURL_TLS + ["-o", dest, url], attempts)
    os.chmod(dest, 0o755)
    trace("remote.second_stage", url=url, dest=dest)
    return dest
