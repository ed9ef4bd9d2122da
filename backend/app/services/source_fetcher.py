"""Retrieve the raw bytes behind an import run's source locator."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from urllib.parse import urlparse

import httpx

from app.core.config import get_settings
from app.core.errors import FetchError

logger = logging.getLogger(__name__)

USER_AGENT = "Sheet-Importer/1.0"


def is_remote_locator(locator: str) -> bool:
    return urlparse(locator).scheme in ("http", "https")


def _timed_out(timeout: float) -> FetchError:
    return FetchError(f"Timed out after {timeout:g}s fetching source file")


def _check_deadline(deadline: float | None, timeout: float) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise _timed_out(timeout)


def _read_capped(
    chunks, max_bytes: int, deadline: float | None = None, timeout: float = 0.0
) -> bytes:
    buffer = bytearray()
    for chunk in chunks:
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise FetchError(f"Source file exceeds the {max_bytes} byte limit")
        _check_deadline(deadline, timeout)
    return bytes(buffer)


def _fetch_remote(url: str, timeout: float, max_bytes: int) -> bytes:
    """Download ``url``; the whole transfer must finish within ``timeout``.

    httpx timeouts apply per connect/read operation, so a server trickling
    bytes is bounded by the overall deadline instead.
    """
    deadline = time.monotonic() + timeout
    try:
        with httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        ) as client:
            with client.stream("GET", url) as response:
                _check_deadline(deadline, timeout)
                response.raise_for_status()
                declared = response.headers.get("Content-Length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise FetchError(f"Source file exceeds the {max_bytes} byte limit")
                return _read_capped(response.iter_bytes(), max_bytes, deadline, timeout)
    except httpx.TimeoutException as exc:
        raise _timed_out(timeout) from exc
    except httpx.HTTPStatusError as exc:
        raise FetchError(
            f"Source file request returned HTTP {exc.response.status_code}"
        ) from exc
    except httpx.RequestError as exc:
        raise FetchError(f"Could not fetch source file: {exc}") from exc


def _fetch_local(locator: str, uploads_dir: Path, max_bytes: int) -> bytes:
    path = Path(locator).resolve()
    if not path.is_relative_to(uploads_dir):
        raise FetchError("Local source files must live in the uploads directory")
    try:
        if path.stat().st_size > max_bytes:
            raise FetchError(f"Source file exceeds the {max_bytes} byte limit")
        return path.read_bytes()
    except FileNotFoundError as exc:
        raise FetchError(f"Source file not found: {path.name}") from exc
    except OSError as exc:
        raise FetchError(f"Could not read source file: {exc}") from exc


def fetch_source(locator: str) -> bytes:
    """Return the bytes for an http(s) URL or a staged upload path.

    Raises:
        FetchError: unreachable, timed out, non-2xx, oversized, or not allowed.
    """
    settings = get_settings()
    if not locator:
        raise FetchError("Source locator is empty")

    if is_remote_locator(locator):
        content = _fetch_remote(
            locator, settings.fetch_timeout_seconds, settings.max_source_bytes
        )
    elif urlparse(locator).scheme in ("", "file"):
        local = urlparse(locator).path if locator.startswith("file:") else locator
        content = _fetch_local(
            local, Path(settings.uploads_dir).resolve(), settings.max_source_bytes
        )
    else:
        raise FetchError(f"Unsupported source locator scheme: {urlparse(locator).scheme}")

    logger.info(f"Fetched {len(content)} bytes from source")
    return content
